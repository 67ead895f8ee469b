from sqlalchemy import update

import crud
from orm import AssetItemORM, StockItemORM
from reconcile_counters import reconcile


def _drift(db_session, engine_factory, make_employee, make_asset_item, make_stock_item):
    emp = make_employee()
    loaned_item = make_asset_item(asset_tag="LAP-001")
    idle_item = make_asset_item(asset_tag="LAP-002", model_name="Latitude 7440")
    stock = make_stock_item(quantity=5)

    engine = engine_factory()
    loan = engine.open_loan(emp.id)
    engine.add_line(loan.id, asset_item_id=loaned_item.id)
    engine.add_line(loan.id, stock_item_id=stock.id, quantity=2)

    # カウンタを壊す
    db_session.execute(update(AssetItemORM).where(AssetItemORM.id == loaned_item.id).values(status="EN_STOCK"))
    db_session.execute(update(AssetItemORM).where(AssetItemORM.id == idle_item.id).values(status="PRETE"))
    db_session.execute(update(StockItemORM).where(StockItemORM.id == stock.id).values(loaned=4))
    db_session.commit()
    return loaned_item, idle_item, stock


def test_dry_run_reports_without_writing(db_path, db_session, engine_factory, make_employee, make_asset_item, make_stock_item):
    loaned_item, idle_item, stock = _drift(db_session, engine_factory, make_employee, make_asset_item, make_stock_item)

    result = reconcile(db_path)

    assert result["applied"] is False
    assert result["stock"] == [{"id": stock.id, "loaned": 4, "expected": 2}]
    assert {(a["id"], a["expected"]) for a in result["assets"]} == {
        (loaned_item.id, "PRETE"),
        (idle_item.id, "EN_STOCK"),
    }
    assert result["errors"] == []

    db_session.expire_all()
    assert crud.get_stock_item(db_session, stock.id).loaned == 4


def test_apply_restores_counters(db_path, db_session, engine_factory, make_employee, make_asset_item, make_stock_item):
    loaned_item, idle_item, stock = _drift(db_session, engine_factory, make_employee, make_asset_item, make_stock_item)

    reconcile(db_path, apply=True)

    db_session.expire_all()
    assert crud.get_stock_item(db_session, stock.id).loaned == 2
    assert crud.get_asset_item(db_session, loaned_item.id).status == "PRETE"
    assert crud.get_asset_item(db_session, idle_item.id).status == "EN_STOCK"

    # 2回目は差分なし
    again = reconcile(db_path)
    assert again["stock"] == [] and again["assets"] == []


def test_deleted_loans_do_not_count(db_path, db_session, engine_factory, make_employee, make_stock_item):
    emp = make_employee()
    stock = make_stock_item(quantity=5)
    engine = engine_factory()
    loan = engine.open_loan(emp.id)
    engine.add_line(loan.id, stock_item_id=stock.id, quantity=3)
    engine.delete_loan(loan.id)

    result = reconcile(db_path)
    assert result["stock"] == []
