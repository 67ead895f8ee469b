"""
Loan aggregate: OPEN -> CLOSED lifecycle and the lines it owns.

Functions take the caller's session as the unit of work and only flush;
`reservations.ReservationEngine` decides when to commit. Each mutation starts
by touching the loan row (`lock_loan`) so that concurrent operations on the
same loan are serialized before any lifecycle check is made.
"""
from __future__ import annotations

from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

import ledger
import registry
from crud import employee_exists, utcnow
from errors import InvalidArgument, InvalidState, NotFound
from models import AssetTarget, StockTarget
from orm import AssetItemORM, AssetModelORM, LoanLineORM, LoanORM, StockItemORM

SIGNATURE_KINDS = {"pickup", "return"}


def line_target(
    asset_item_id: Optional[str],
    stock_item_id: Optional[str],
    quantity: Optional[int] = None,
) -> AssetTarget | StockTarget:
    """Exactly one of asset_item_id / stock_item_id."""
    if bool(asset_item_id) == bool(stock_item_id):
        raise InvalidArgument("specify exactly one of asset_item_id or stock_item_id")
    if asset_item_id:
        if quantity not in (None, 1):
            raise InvalidArgument("asset lines always have quantity 1")
        return AssetTarget(asset_item_id=asset_item_id)
    return StockTarget(stock_item_id=stock_item_id, quantity=1 if quantity is None else quantity)


def lock_loan(db: Session, loan_id: str) -> LoanORM:
    result = db.execute(
        update(LoanORM)
        .where(LoanORM.id == loan_id, LoanORM.deleted_at.is_(None))
        .values(updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound("loan not found")

    return db.execute(
        select(LoanORM)
        .where(LoanORM.id == loan_id)
        .options(selectinload(LoanORM.lines))
        .execution_options(populate_existing=True)
    ).scalar_one()


def _lock_open_loan(db: Session, loan_id: str, message: str) -> LoanORM:
    loan = lock_loan(db, loan_id)
    if loan.status == "CLOSED":
        raise InvalidState(message)
    return loan


def _asset_label(db: Session, item_id: str) -> str:
    row = db.execute(
        select(AssetModelORM.brand, AssetModelORM.model_name, AssetItemORM.asset_tag, AssetItemORM.serial)
        .join(AssetModelORM, AssetItemORM.asset_model_id == AssetModelORM.id)
        .where(AssetItemORM.id == item_id)
    ).first()
    if not row:
        return ""
    brand, model_name, tag, serial = row
    ident = tag or serial
    return f"{brand} {model_name} ({ident})" if ident else f"{brand} {model_name}"


def _stock_label(db: Session, stock_item_id: str) -> str:
    row = db.execute(
        select(AssetModelORM.brand, AssetModelORM.model_name)
        .join(StockItemORM, StockItemORM.asset_model_id == AssetModelORM.id)
        .where(StockItemORM.id == stock_item_id)
    ).first()
    return f"{row[0]} {row[1]}" if row else ""


def _release_line(db: Session, line: LoanLineORM) -> None:
    # 参照先が削除済みなら戻す在庫はない
    if line.kind == "asset":
        if line.asset_item_id:
            registry.release(db, line.asset_item_id)
    elif line.stock_item_id:
        ledger.release(db, line.stock_item_id, line.quantity)


def _return_locked_line(db: Session, line: LoanLineORM) -> bool:
    if line.returned_at is not None:
        return False
    _release_line(db, line)
    line.returned_at = utcnow()
    return True


# ---------- lifecycle ----------
def open_loan(db: Session, employee_id: str, *, created_by: str | None = None) -> LoanORM:
    if not employee_exists(db, employee_id):
        raise NotFound("employee not found")

    now = utcnow()
    loan = LoanORM(
        id=str(uuid4()),
        employee_id=employee_id,
        created_by=created_by,
        status="OPEN",
        opened_at=now,
        updated_at=now,
    )
    db.add(loan)
    db.flush()
    return loan


def add_line(db: Session, loan_id: str, target: AssetTarget | StockTarget) -> LoanLineORM:
    loan = _lock_open_loan(db, loan_id, "cannot add lines to a closed loan")

    # 在庫側が失敗したら明細は作らない（例外はそのまま上へ）
    if isinstance(target, AssetTarget):
        registry.reserve(db, target.asset_item_id)
        line = LoanLineORM(
            id=str(uuid4()),
            loan_id=loan.id,
            kind="asset",
            asset_item_id=target.asset_item_id,
            quantity=1,
            label=_asset_label(db, target.asset_item_id),
            added_at=utcnow(),
        )
    else:
        ledger.reserve(db, target.stock_item_id, target.quantity)
        line = LoanLineORM(
            id=str(uuid4()),
            loan_id=loan.id,
            kind="stock",
            stock_item_id=target.stock_item_id,
            quantity=target.quantity,
            label=_stock_label(db, target.stock_item_id),
            added_at=utcnow(),
        )

    loan.lines.append(line)
    db.flush()
    return line


def remove_line(db: Session, loan_id: str, line_id: str) -> tuple[LoanORM, LoanLineORM]:
    loan = _lock_open_loan(db, loan_id, "cannot modify a closed loan")

    line = next((l for l in loan.lines if l.id == line_id), None)
    if line is None:
        raise NotFound("loan line not found")
    if line.returned_at is not None:
        raise InvalidState("returned lines are kept as history and cannot be removed")

    _release_line(db, line)
    loan.lines.remove(line)
    db.flush()
    return loan, line


def loan_id_for_line(db: Session, line_id: str) -> str:
    loan_id = db.execute(
        select(LoanLineORM.loan_id).where(LoanLineORM.id == line_id)
    ).scalar_one_or_none()
    if loan_id is None:
        raise NotFound("loan line not found")
    return loan_id


def return_line(db: Session, line_id: str) -> tuple[LoanLineORM, bool]:
    """Returns (line, changed). Returning a line twice is a no-op."""
    loan = lock_loan(db, loan_id_for_line(db, line_id))
    line = next((l for l in loan.lines if l.id == line_id), None)
    if line is None:
        raise NotFound("loan line not found")

    changed = _return_locked_line(db, line)
    db.flush()
    return line, changed


def close_loan(db: Session, loan_id: str) -> LoanORM:
    loan = _lock_open_loan(db, loan_id, "loan is already closed")

    outstanding = [l for l in loan.lines if l.returned_at is None]
    if outstanding:
        raise InvalidState(f"{len(outstanding)} line(s) not returned yet")

    now = utcnow()
    loan.status = "CLOSED"
    loan.closed_at = now
    db.flush()
    return loan


def force_return_all(db: Session, loan_id: str) -> tuple[LoanORM, list[LoanLineORM]]:
    loan = _lock_open_loan(db, loan_id, "loan is already closed")

    returned = [l for l in loan.lines if _return_locked_line(db, l)]
    db.flush()
    return close_loan(db, loan_id), returned


def delete_loan(db: Session, loan_id: str, *, deleted_by: str | None = None) -> LoanORM:
    """論理削除。署名済み・クローズ済みの貸出は消せない。"""
    loan = _lock_open_loan(db, loan_id, "cannot delete a closed loan")
    if loan.pickup_signature_ref or loan.return_signature_ref:
        raise InvalidState("cannot delete a signed loan")

    for line in loan.lines:
        _return_locked_line(db, line)

    loan.deleted_at = utcnow()
    loan.deleted_by = deleted_by
    db.flush()
    return loan


def record_signature(db: Session, loan_id: str, kind: str, reference: str) -> LoanORM:
    if kind not in SIGNATURE_KINDS:
        raise InvalidArgument(f"signature kind must be one of {sorted(SIGNATURE_KINDS)}")
    reference = (reference or "").strip()
    if not reference:
        raise InvalidArgument("signature reference is empty")

    loan = lock_loan(db, loan_id)
    now = utcnow()
    if kind == "pickup":
        loan.pickup_signature_ref = reference
        loan.pickup_signed_at = now
    else:
        loan.return_signature_ref = reference
        loan.return_signed_at = now
    db.flush()
    return loan
