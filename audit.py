from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional, Protocol

from pydantic import BaseModel

from crud import utcnow

logger = logging.getLogger(__name__)


class AuditEvent(BaseModel):
    actor_id: Optional[str] = None
    operation: str
    entity_type: str
    entity_id: str
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    at: datetime


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """監査イベントを1行のJSONとして audit ロガーに出す"""

    def __init__(self, logger_name: str = "audit"):
        self._logger = logging.getLogger(logger_name)

    def record(self, event: AuditEvent) -> None:
        self._logger.info(json.dumps(event.model_dump(mode="json"), ensure_ascii=False, sort_keys=True))


def make_event(
    operation: str,
    entity_type: str,
    entity_id: str,
    *,
    actor_id: str | None = None,
    before: BaseModel | dict | None = None,
    after: BaseModel | dict | None = None,
) -> AuditEvent:
    def _dump(value):
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json")
        return value

    return AuditEvent(
        actor_id=actor_id,
        operation=operation,
        entity_type=entity_type,
        entity_id=entity_id,
        before=_dump(before),
        after=_dump(after),
        at=utcnow(),
    )


def notify(sink: AuditSink | None, events: list[AuditEvent]) -> None:
    """Best effort: a failing sink is logged and never reaches the caller."""
    if sink is None:
        return
    for event in events:
        try:
            sink.record(event)
        except Exception:
            logger.exception(
                "audit sink failed operation=%s entity=%s/%s",
                event.operation,
                event.entity_type,
                event.entity_id,
            )
