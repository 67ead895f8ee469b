from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from crud import utcnow
from errors import Conflict, InsufficientStock, InvalidArgument, NotFound
from orm import StockItemORM


def _counters(db: Session, stock_item_id: str) -> tuple[int, int] | None:
    row = db.execute(
        select(StockItemORM.quantity, StockItemORM.loaned).where(StockItemORM.id == stock_item_id)
    ).first()
    return (int(row[0]), int(row[1])) if row else None


def _update(db: Session, stock_item_id: str, *conditions, **values):
    values["updated_at"] = utcnow()
    return db.execute(
        update(StockItemORM)
        .where(StockItemORM.id == stock_item_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session="evaluate")
    )


def reserve(db: Session, stock_item_id: str, qty: int) -> None:
    if qty is None or qty <= 0:
        raise InvalidArgument("quantity must be a positive integer")

    # check and increment in one statement: quantity - loaned >= qty
    result = _update(
        db,
        stock_item_id,
        StockItemORM.quantity - StockItemORM.loaned >= qty,
        loaned=StockItemORM.loaned + qty,
    )
    if result.rowcount == 1:
        return

    counters = _counters(db, stock_item_id)
    if counters is None:
        raise NotFound("stock item not found")
    quantity, loaned = counters
    raise InsufficientStock(f"insufficient stock: {quantity - loaned} available, {qty} requested")


def release(db: Session, stock_item_id: str, qty: int) -> None:
    if qty is None or qty <= 0:
        raise InvalidArgument("quantity must be a positive integer")

    result = _update(db, stock_item_id, StockItemORM.loaned >= qty, loaned=StockItemORM.loaned - qty)
    if result.rowcount == 1:
        return

    # 二重返却でもマイナスにはしない
    result = _update(db, stock_item_id, StockItemORM.loaned < qty, loaned=0)
    if result.rowcount == 0:
        raise NotFound("stock item not found")


def adjust_quantity(db: Session, stock_item_id: str, delta: int) -> None:
    if not delta:
        raise InvalidArgument("delta must be a non-zero integer")

    result = _update(
        db,
        stock_item_id,
        StockItemORM.quantity + delta >= StockItemORM.loaned,
        StockItemORM.quantity + delta >= 0,
        quantity=StockItemORM.quantity + delta,
    )
    if result.rowcount == 1:
        return

    counters = _counters(db, stock_item_id)
    if counters is None:
        raise NotFound("stock item not found")
    quantity, loaned = counters
    raise Conflict(f"quantity {quantity + delta} would drop below loaned units ({loaned})")
