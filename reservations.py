"""
Single entry point for every mutation that touches loans or inventory counters.

Each public method runs its work through `transaction.run_atomic`, so the loan,
its lines and the registry/ledger counters commit together or not at all.
Audit events are collected while the transaction is open and handed to the
sink only after the commit succeeded.
"""
from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

import crud
import ledger
import loans
import registry
from audit import AuditEvent, AuditSink, make_event, notify
from errors import Conflict, EngineError, InvalidArgument, NotFound
from models import (
    AssetItem,
    AssetModelDeleted,
    AssetModelsBatchDeleted,
    AssetTarget,
    BatchCloseResult,
    Loan,
    LoanLine,
    StockItem,
)
from orm import AssetItemORM, AssetModelORM, StockItemORM
from transaction import run_atomic

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _inventory_snapshot(db: Session, asset_item_ids, stock_item_ids) -> dict[tuple[str, str], dict]:
    """Reads the counters the caller is about to change, keyed by (entity type, id)."""
    snapshot: dict[tuple[str, str], dict] = {}
    asset_ids = sorted({i for i in asset_item_ids if i})
    if asset_ids:
        rows = db.execute(
            select(AssetItemORM.id, AssetItemORM.status)
            .where(AssetItemORM.id.in_(asset_ids))
            .order_by(AssetItemORM.id)
            .with_for_update()
        ).all()
        for item_id, status in rows:
            snapshot[("AssetItem", item_id)] = {"status": status}
    stock_ids = sorted({i for i in stock_item_ids if i})
    if stock_ids:
        rows = db.execute(
            select(StockItemORM.id, StockItemORM.loaned)
            .where(StockItemORM.id.in_(stock_ids))
            .order_by(StockItemORM.id)
            .with_for_update()
        ).all()
        for stock_id, loaned in rows:
            snapshot[("StockItem", stock_id)] = {"loaned": int(loaned)}
    return snapshot


def _delete_asset_model(db: Session, model_id: str) -> AssetModelDeleted:
    result = db.execute(
        update(AssetModelORM)
        .where(AssetModelORM.id == model_id)
        .values(updated_at=crud.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound("asset model not found")

    # 貸出中でないものだけ消して、残りがあれば全体を取り消す
    items_deleted = db.execute(
        delete(AssetItemORM).where(
            AssetItemORM.asset_model_id == model_id,
            AssetItemORM.status != "PRETE",
        )
    ).rowcount
    stock_deleted = db.execute(
        delete(StockItemORM).where(
            StockItemORM.asset_model_id == model_id,
            StockItemORM.loaned == 0,
        )
    ).rowcount

    loaned_items = db.execute(
        select(func.count(AssetItemORM.id)).where(AssetItemORM.asset_model_id == model_id)
    ).scalar_one()
    loaned_units = db.execute(
        select(func.coalesce(func.sum(StockItemORM.loaned), 0)).where(
            StockItemORM.asset_model_id == model_id
        )
    ).scalar_one()
    if loaned_items or loaned_units:
        raise Conflict(
            f"asset model is in use: {loaned_items} item(s) and {loaned_units} stock unit(s) on loan"
        )

    db.execute(delete(AssetModelORM).where(AssetModelORM.id == model_id))
    db.flush()
    return AssetModelDeleted(
        asset_model_id=model_id,
        asset_items_deleted=items_deleted,
        stock_items_deleted=stock_deleted,
    )


class ReservationEngine:
    def __init__(
        self,
        db: Session,
        *,
        actor_id: str | None = None,
        audit: AuditSink | None = None,
        max_attempts: int | None = None,
        backoff: float | None = None,
    ):
        self.db = db
        self.actor_id = actor_id
        self.audit = audit
        self.max_attempts = max_attempts
        self.backoff = backoff

    def _event(self, operation: str, entity_type: str, entity_id: str, *, before=None, after=None) -> AuditEvent:
        return make_event(
            operation,
            entity_type,
            entity_id,
            actor_id=self.actor_id,
            before=before,
            after=after,
        )

    def _run(self, operation: str, work: Callable[[Session], tuple[T, list[AuditEvent]]]) -> T:
        result, events = run_atomic(
            self.db,
            work,
            max_attempts=self.max_attempts,
            backoff=self.backoff,
        )
        logger.info("committed operation=%s actor=%s", operation, self.actor_id)
        notify(self.audit, events)
        return result

    def _lock_lines(self, db: Session, loan_id: str, line_ids: set[str] | None = None) -> dict:
        """Locks the loan, then snapshots the inventory its outstanding lines point at."""
        loan = loans.lock_loan(db, loan_id)
        lines = [
            l for l in loan.lines
            if l.returned_at is None and (line_ids is None or l.id in line_ids)
        ]
        return _inventory_snapshot(
            db,
            [l.asset_item_id for l in lines],
            [l.stock_item_id for l in lines],
        )

    def _inventory_events(self, db: Session, operation: str, snapshot: dict) -> list[AuditEvent]:
        events: list[AuditEvent] = []
        for (entity_type, entity_id), before in snapshot.items():
            if entity_type == "AssetItem":
                after = crud.get_asset_item(db, entity_id)
                changed = after is not None and after.status != before["status"]
            else:
                after = crud.get_stock_item(db, entity_id)
                changed = after is not None and after.loaned != before["loaned"]
            if changed:
                events.append(self._event(operation, entity_type, entity_id, before=before, after=after))
        return events

    # ---------- loans ----------
    def open_loan(self, employee_id: str) -> Loan:
        def work(db: Session):
            loan = crud.loan_to_schema(loans.open_loan(db, employee_id, created_by=self.actor_id))
            return loan, [self._event("open_loan", "Loan", loan.id, after=loan)]

        return self._run("open_loan", work)

    def add_line(
        self,
        loan_id: str,
        *,
        asset_item_id: str | None = None,
        stock_item_id: str | None = None,
        quantity: int | None = None,
    ) -> LoanLine:
        target = loans.line_target(asset_item_id, stock_item_id, quantity)

        def work(db: Session):
            loans.lock_loan(db, loan_id)
            if isinstance(target, AssetTarget):
                snapshot = _inventory_snapshot(db, [target.asset_item_id], [])
            else:
                snapshot = _inventory_snapshot(db, [], [target.stock_item_id])
            line = crud.line_to_schema(loans.add_line(db, loan_id, target))
            events = [self._event("add_line", "LoanLine", line.id, after=line)]
            events += self._inventory_events(db, "add_line", snapshot)
            return line, events

        return self._run("add_line", work)

    def remove_line(self, loan_id: str, line_id: str) -> Loan:
        def work(db: Session):
            snapshot = self._lock_lines(db, loan_id, {line_id})
            loan_row, line_row = loans.remove_line(db, loan_id, line_id)
            line = crud.line_to_schema(line_row)
            events = [self._event("remove_line", "LoanLine", line.id, before=line)]
            events += self._inventory_events(db, "remove_line", snapshot)
            return crud.loan_to_schema(loan_row), events

        return self._run("remove_line", work)

    def return_line(self, line_id: str) -> LoanLine:
        """Idempotent: a line that is already returned comes back unchanged."""

        def work(db: Session):
            snapshot = self._lock_lines(db, loans.loan_id_for_line(db, line_id), {line_id})
            line_row, changed = loans.return_line(db, line_id)
            line = crud.line_to_schema(line_row)
            if not changed:
                return line, []
            events = [self._event("return_line", "LoanLine", line.id, before={"returned_at": None}, after=line)]
            events += self._inventory_events(db, "return_line", snapshot)
            return line, events

        return self._run("return_line", work)

    def close_loan(self, loan_id: str) -> Loan:
        def work(db: Session):
            loan = crud.loan_to_schema(loans.close_loan(db, loan_id))
            return loan, [self._event("close_loan", "Loan", loan.id, before={"status": "OPEN"}, after=loan)]

        return self._run("close_loan", work)

    def force_return_all(self, loan_id: str) -> Loan:
        def work(db: Session):
            snapshot = self._lock_lines(db, loan_id)
            loan_row, returned = loans.force_return_all(db, loan_id)
            events: list[AuditEvent] = []
            for line_row in returned:
                line = crud.line_to_schema(line_row)
                events.append(
                    self._event("force_return_all", "LoanLine", line.id, before={"returned_at": None}, after=line)
                )
            events += self._inventory_events(db, "force_return_all", snapshot)
            loan = crud.loan_to_schema(loan_row)
            events.append(self._event("force_return_all", "Loan", loan.id, before={"status": "OPEN"}, after=loan))
            return loan, events

        return self._run("force_return_all", work)

    def batch_close(self, loan_ids: list[str]) -> list[BatchCloseResult]:
        """Each loan is closed in its own transaction; one failure does not stop the rest."""
        results: list[BatchCloseResult] = []
        for loan_id in loan_ids:
            try:
                self.close_loan(loan_id)
            except EngineError as exc:
                logger.info("batch close skipped loan=%s code=%s", loan_id, exc.code)
                results.append(BatchCloseResult(loan_id=loan_id, ok=False, code=exc.code, detail=exc.detail))
            except Exception as exc:
                # run_atomic はもう rollback 済み。残りの id は続ける
                logger.exception("batch close failed loan=%s", loan_id)
                results.append(
                    BatchCloseResult(loan_id=loan_id, ok=False, code=EngineError.code, detail=str(exc))
                )
            else:
                results.append(BatchCloseResult(loan_id=loan_id, ok=True))
        return results

    def delete_loan(self, loan_id: str) -> None:
        def work(db: Session):
            snapshot = self._lock_lines(db, loan_id)
            before = crud.loan_to_schema(loans.lock_loan(db, loan_id))
            loan_row = loans.delete_loan(db, loan_id, deleted_by=self.actor_id)
            events = self._inventory_events(db, "delete_loan", snapshot)
            events.append(
                self._event(
                    "delete_loan",
                    "Loan",
                    loan_id,
                    before=before,
                    after={"deleted_at": loan_row.deleted_at, "deleted_by": loan_row.deleted_by},
                )
            )
            return None, events

        self._run("delete_loan", work)

    def record_signature(self, loan_id: str, kind: str, reference: str) -> Loan:
        def work(db: Session):
            loan = crud.loan_to_schema(loans.record_signature(db, loan_id, kind, reference))
            return loan, [
                self._event("record_signature", "Loan", loan.id, after={"kind": kind, "reference": reference.strip()})
            ]

        return self._run("record_signature", work)

    # ---------- inventory ----------
    def set_maintenance_status(self, item_id: str, status: str) -> AssetItem:
        def work(db: Session):
            prior = registry.set_maintenance_status(db, item_id, status)
            item = crud.get_asset_item(db, item_id)
            return item, [
                self._event("set_maintenance_status", "AssetItem", item_id, before={"status": prior}, after=item)
            ]

        return self._run("set_maintenance_status", work)

    def adjust_stock(self, stock_item_id: str, delta: int) -> StockItem:
        def work(db: Session):
            ledger.adjust_quantity(db, stock_item_id, delta)
            stock = crud.get_stock_item(db, stock_item_id)
            return stock, [
                self._event(
                    "adjust_stock",
                    "StockItem",
                    stock_item_id,
                    before={"quantity": stock.quantity - delta},
                    after=stock,
                )
            ]

        return self._run("adjust_stock", work)

    def delete_asset_model(self, model_id: str) -> AssetModelDeleted:
        def work(db: Session):
            before = crud.get_asset_model(db, model_id)
            result = _delete_asset_model(db, model_id)
            return result, [
                self._event("delete_asset_model", "AssetModel", model_id, before=before, after=result)
            ]

        return self._run("delete_asset_model", work)

    def batch_delete_asset_models(self, model_ids: list[str]) -> AssetModelsBatchDeleted:
        """All or nothing. Unknown ids are skipped as long as at least one model exists."""
        if not model_ids:
            raise InvalidArgument("at least one asset model id is required")
        ids = list(dict.fromkeys(model_ids))

        def work(db: Session):
            deleted: list[AssetModelDeleted] = []
            events: list[AuditEvent] = []
            for model_id in ids:
                before = crud.get_asset_model(db, model_id)
                try:
                    result = _delete_asset_model(db, model_id)
                except NotFound:
                    logger.info("batch delete skipped missing asset model=%s", model_id)
                    continue
                deleted.append(result)
                events.append(
                    self._event("batch_delete_asset_models", "AssetModel", model_id, before=before, after=result)
                )
            if not deleted:
                raise NotFound("no asset model found for the given ids")
            summary = AssetModelsBatchDeleted(
                models_deleted=len(deleted),
                asset_items_deleted=sum(d.asset_items_deleted for d in deleted),
                stock_items_deleted=sum(d.stock_items_deleted for d in deleted),
                results=deleted,
            )
            return summary, events

        return self._run("batch_delete_asset_models", work)
