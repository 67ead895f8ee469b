from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
from dependencies import get_db, get_engine
from errors import NotFound
from filter_helpers import blank_to_none, normalize_asset_status, normalize_limit, normalize_offset
from models import (
    AssetItem,
    AssetItemIn,
    AssetItemUpdate,
    AssetModel,
    AssetModelCreated,
    AssetModelDeleted,
    AssetModelIn,
    AssetModelUpdate,
    AssetModelsBatchDelete,
    AssetModelsBatchDeleted,
    Employee,
    EmployeeIn,
    EmployeeUpdate,
    StatusUpdate,
    StockAdjust,
    StockItem,
    StockItemIn,
    StockItemUpdate,
)
from reservations import ReservationEngine

router = APIRouter()


# ---------- asset models ----------
@router.post("/asset-models", response_model=AssetModelCreated, status_code=201)
def create_asset_model_api(body: AssetModelIn, db: Session = Depends(get_db)):
    return crud.create_asset_model(db, body)


@router.get("/asset-models", response_model=list[AssetModel])
def list_asset_models_api(type: Optional[str] = None, db: Session = Depends(get_db)):
    return crud.list_asset_models(db, type=blank_to_none(type))


@router.get("/asset-models/{model_id}", response_model=AssetModel)
def get_asset_model_api(model_id: str, db: Session = Depends(get_db)):
    m = crud.get_asset_model(db, model_id)
    if not m:
        raise NotFound("asset model not found")
    return m


@router.patch("/asset-models/{model_id}", response_model=AssetModel)
def update_asset_model_api(model_id: str, body: AssetModelUpdate, db: Session = Depends(get_db)):
    updated = crud.update_asset_model(db, model_id, body)
    if not updated:
        raise NotFound("asset model not found")
    return updated


@router.delete("/asset-models/{model_id}", response_model=AssetModelDeleted)
def delete_asset_model_api(model_id: str, engine: ReservationEngine = Depends(get_engine)):
    return engine.delete_asset_model(model_id)


@router.post("/asset-models/batch-delete", response_model=AssetModelsBatchDeleted)
def batch_delete_asset_models_api(
    body: AssetModelsBatchDelete,
    engine: ReservationEngine = Depends(get_engine),
):
    return engine.batch_delete_asset_models(body.asset_model_ids)


# ---------- asset items ----------
@router.post("/asset-items", response_model=AssetItem, status_code=201)
def create_asset_item_api(body: AssetItemIn, db: Session = Depends(get_db)):
    return crud.create_asset_item(db, body)


@router.get("/asset-items", response_model=list[AssetItem])
def list_asset_items_api(
    q: Optional[str] = None,
    status: Optional[str] = None,
    asset_model_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return crud.list_asset_items(
        db,
        q=blank_to_none(q),
        status=normalize_asset_status(status),
        asset_model_id=blank_to_none(asset_model_id),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.get("/asset-items/{item_id}", response_model=AssetItem)
def get_asset_item_api(item_id: str, db: Session = Depends(get_db)):
    item = crud.get_asset_item(db, item_id)
    if not item:
        raise NotFound("asset item not found")
    return item


@router.patch("/asset-items/{item_id}", response_model=AssetItem)
def update_asset_item_api(item_id: str, body: AssetItemUpdate, db: Session = Depends(get_db)):
    updated = crud.update_asset_item(db, item_id, body)
    if not updated:
        raise NotFound("asset item not found")
    return updated


@router.delete("/asset-items/{item_id}", status_code=204)
def delete_asset_item_api(item_id: str, db: Session = Depends(get_db)):
    ok = crud.delete_asset_item(db, item_id)
    if not ok:
        raise NotFound("asset item not found")
    return None


@router.post("/asset-items/{item_id}/status", response_model=AssetItem)
def set_asset_item_status_api(
    item_id: str,
    body: StatusUpdate,
    engine: ReservationEngine = Depends(get_engine),
):
    return engine.set_maintenance_status(item_id, body.status)


# ---------- stock items ----------
@router.post("/stock-items", response_model=StockItem, status_code=201)
def create_stock_item_api(body: StockItemIn, db: Session = Depends(get_db)):
    return crud.create_stock_item(db, body)


@router.get("/stock-items", response_model=list[StockItem])
def list_stock_items_api(asset_model_id: Optional[str] = None, db: Session = Depends(get_db)):
    return crud.list_stock_items(db, asset_model_id=blank_to_none(asset_model_id))


@router.get("/stock-items/{stock_item_id}", response_model=StockItem)
def get_stock_item_api(stock_item_id: str, db: Session = Depends(get_db)):
    s = crud.get_stock_item(db, stock_item_id)
    if not s:
        raise NotFound("stock item not found")
    return s


@router.patch("/stock-items/{stock_item_id}", response_model=StockItem)
def update_stock_item_api(stock_item_id: str, body: StockItemUpdate, db: Session = Depends(get_db)):
    updated = crud.update_stock_item(db, stock_item_id, body)
    if not updated:
        raise NotFound("stock item not found")
    return updated


@router.delete("/stock-items/{stock_item_id}", status_code=204)
def delete_stock_item_api(stock_item_id: str, db: Session = Depends(get_db)):
    ok = crud.delete_stock_item(db, stock_item_id)
    if not ok:
        raise NotFound("stock item not found")
    return None


@router.post("/stock-items/{stock_item_id}/adjust", response_model=StockItem)
def adjust_stock_item_api(
    stock_item_id: str,
    body: StockAdjust,
    engine: ReservationEngine = Depends(get_engine),
):
    return engine.adjust_stock(stock_item_id, body.delta)


# ---------- employees ----------
@router.post("/employees", response_model=Employee, status_code=201)
def create_employee_api(body: EmployeeIn, db: Session = Depends(get_db)):
    return crud.create_employee(db, body)


@router.get("/employees", response_model=list[Employee])
def list_employees_api(q: Optional[str] = None, db: Session = Depends(get_db)):
    return crud.list_employees(db, q=blank_to_none(q))


@router.get("/employees/{employee_id}", response_model=Employee)
def get_employee_api(employee_id: str, db: Session = Depends(get_db)):
    e = crud.get_employee(db, employee_id)
    if not e:
        raise NotFound("employee not found")
    return e


@router.patch("/employees/{employee_id}", response_model=Employee)
def update_employee_api(employee_id: str, body: EmployeeUpdate, db: Session = Depends(get_db)):
    updated = crud.update_employee(db, employee_id, body)
    if not updated:
        raise NotFound("employee not found")
    return updated


@router.delete("/employees/{employee_id}", status_code=204)
def delete_employee_api(employee_id: str, db: Session = Depends(get_db)):
    ok = crud.delete_employee(db, employee_id)
    if not ok:
        raise NotFound("employee not found")
    return None
