"""
Per-unit state machine for uniquely tagged asset items.

Every transition is one conditional UPDATE whose affected-row count decides
the outcome, so two sessions racing on the same row cannot both win. The
caller owns the transaction: nothing here commits.
"""
from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from crud import utcnow
from errors import Conflict, InvalidArgument, NotFound
from orm import AssetItemORM, LoanLineORM

MAINTENANCE_STATUSES = {"EN_STOCK", "HS", "REPARATION"}


def _current_status(db: Session, item_id: str) -> str | None:
    return db.execute(
        select(AssetItemORM.status).where(AssetItemORM.id == item_id)
    ).scalar_one_or_none()


def _set_status(db: Session, item_id: str, status: str, *conditions):
    return db.execute(
        update(AssetItemORM)
        .where(AssetItemORM.id == item_id, *conditions)
        .values(status=status, updated_at=utcnow())
        .execution_options(synchronize_session="evaluate")
    )


def reserve(db: Session, item_id: str) -> str:
    """EN_STOCK -> PRETE. Returns the prior status."""
    result = _set_status(db, item_id, "PRETE", AssetItemORM.status == "EN_STOCK")
    if result.rowcount == 1:
        return "EN_STOCK"

    current = _current_status(db, item_id)
    if current is None:
        raise NotFound("asset item not found")
    raise Conflict(f"asset item is not available (status={current})")


def release(db: Session, item_id: str) -> str:
    """PRETE -> EN_STOCK. Already released items are left as they are."""
    result = _set_status(db, item_id, "EN_STOCK", AssetItemORM.status == "PRETE")
    if result.rowcount == 1:
        return "PRETE"

    current = _current_status(db, item_id)
    if current is None:
        raise NotFound("asset item not found")
    return current


def has_open_line(db: Session, item_id: str) -> bool:
    stmt = select(LoanLineORM.id).where(
        LoanLineORM.asset_item_id == item_id,
        LoanLineORM.returned_at.is_(None),
    )
    return db.execute(stmt).first() is not None


def set_maintenance_status(db: Session, item_id: str, status: str) -> str:
    """HS / REPARATION / EN_STOCK for items that are not out on loan. Returns the prior status."""
    if status not in MAINTENANCE_STATUSES:
        raise InvalidArgument(f"status must be one of {sorted(MAINTENANCE_STATUSES)}")

    prior = _current_status(db, item_id)
    if prior is None:
        raise NotFound("asset item not found")
    if prior == "PRETE" or has_open_line(db, item_id):
        raise Conflict("asset item is loaned; return it first")

    result = _set_status(db, item_id, status, AssetItemORM.status != "PRETE")
    if result.rowcount == 0:
        raise Conflict("asset item is loaned; return it first")
    return prior
