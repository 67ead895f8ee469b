from __future__ import annotations

import logging
import os
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from errors import Conflict, EngineError, TransientStorageFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = int(os.getenv("APP_TX_MAX_ATTEMPTS", "3"))
BACKOFF_SECONDS = float(os.getenv("APP_TX_BACKOFF_SECONDS", "0.05"))

_TRANSIENT_MARKERS = (
    "database is locked",
    "database table is locked",
    "busy",
    "deadlock",
    "lock wait timeout",
    "could not serialize",
)


def is_transient(exc: DBAPIError) -> bool:
    if exc.connection_invalidated:
        return True
    message = str(exc.orig or exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def run_atomic(
    db: Session,
    work: Callable[[Session], T],
    *,
    max_attempts: int | None = None,
    backoff: float | None = None,
) -> T:
    """
    work(db) を1トランザクションで実行して commit する。
    失敗したら必ず rollback。ロック待ち・デッドロックだけは backoff 付きで再実行する。
    """
    attempts = max_attempts if max_attempts is not None else MAX_ATTEMPTS
    delay = backoff if backoff is not None else BACKOFF_SECONDS
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            result = work(db)
            db.commit()
            return result
        except EngineError:
            db.rollback()
            raise
        except IntegrityError as exc:
            db.rollback()
            raise Conflict("constraint violated") from exc
        except DBAPIError as exc:
            db.rollback()
            if not is_transient(exc):
                raise
            if attempt == attempts:
                raise TransientStorageFailure(
                    f"storage busy after {attempts} attempt(s)"
                ) from exc
            logger.warning(
                "transient storage failure attempt=%s/%s error=%s",
                attempt,
                attempts,
                exc.orig,
            )
            time.sleep(delay * (2 ** (attempt - 1)))
        except Exception:
            db.rollback()
            raise

    raise AssertionError("unreachable")
