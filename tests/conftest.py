import os
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# ---- テスト用DBパス（db を import する前に決める）----
_TMP_DIR = Path(tempfile.mkdtemp(prefix="loans_app_"))
os.environ["APP_DB_PATH"] = str(_TMP_DIR / "test_loans.db")
os.environ.setdefault("APP_DB_TIMEOUT", "10")
os.environ.setdefault("APP_TX_BACKOFF_SECONDS", "0.01")


@pytest.fixture(scope="session")
def app_module():
    import main

    return main


@pytest.fixture(scope="session")
def db_path(app_module):
    from db import DB_PATH

    return DB_PATH


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as c:
        yield c


@pytest.fixture()
def session_factory(app_module):
    from db import SessionLocal

    return SessionLocal


@pytest.fixture()
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def audit_events():
    class _Collect:
        def __init__(self):
            self.events = []

        def record(self, event):
            self.events.append(event)

    return _Collect()


@pytest.fixture()
def engine_factory(session_factory, audit_events):
    from reservations import ReservationEngine

    sessions = []

    def _make(actor_id="clerk-1", audit=audit_events, **kwargs):
        db = session_factory()
        sessions.append(db)
        return ReservationEngine(db, actor_id=actor_id, audit=audit, **kwargs)

    yield _make
    for db in sessions:
        db.close()


@pytest.fixture(autouse=True)
def clean_db(app_module, db_session):
    # 各テスト前にテーブルを全消し（順序注意：lines -> loans -> stock/items -> models -> employees）
    from sqlalchemy import delete
    from orm import AssetItemORM, AssetModelORM, EmployeeORM, LoanLineORM, LoanORM, StockItemORM

    db_session.execute(delete(LoanLineORM))
    db_session.execute(delete(LoanORM))
    db_session.execute(delete(StockItemORM))
    db_session.execute(delete(AssetItemORM))
    db_session.execute(delete(AssetModelORM))
    db_session.execute(delete(EmployeeORM))
    db_session.commit()
    yield


# ---------- data helpers ----------
@pytest.fixture()
def make_employee(db_session):
    import crud
    from models import EmployeeIn

    def _make(first_name="Alice", last_name="Martin", email=None):
        return crud.create_employee(db_session, EmployeeIn(first_name=first_name, last_name=last_name, email=email))

    return _make


@pytest.fixture()
def make_asset_item(db_session):
    import crud
    from models import AssetItemIn, AssetModelIn

    def _make(asset_tag="LAP-001", serial=None, brand="Dell", model_name="Latitude 5440"):
        created = crud.create_asset_model(
            db_session, AssetModelIn(type="laptop", brand=brand, model_name=model_name)
        )
        return crud.create_asset_item(
            db_session,
            AssetItemIn(asset_model_id=created.asset_model.id, asset_tag=asset_tag, serial=serial),
        )

    return _make


@pytest.fixture()
def make_stock_item(db_session):
    import crud
    from models import AssetModelIn

    def _make(quantity=5, brand="Logitech", model_name="USB-C Adapter"):
        created = crud.create_asset_model(
            db_session,
            AssetModelIn(type="adapter", brand=brand, model_name=model_name, quantity=quantity, consumable=True),
        )
        return created.stock_item

    return _make
