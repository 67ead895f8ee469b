from pydantic import BaseModel, Field
from typing import Annotated, Optional, Literal, Union
from datetime import datetime

AssetStatus = Literal["EN_STOCK", "PRETE", "HS", "REPARATION"]
LoanStatus = Literal["OPEN", "CLOSED"]
SignatureKind = Literal["pickup", "return"]

# ---------- Catalog ----------
class AssetModelIn(BaseModel):
    type: str
    brand: str
    model_name: str
    description: Optional[str] = None
    # when set, units are created together with the model
    quantity: Optional[int] = Field(default=None, ge=0)
    consumable: bool = False

class AssetModelUpdate(BaseModel):
    type: Optional[str] = None
    brand: Optional[str] = None
    model_name: Optional[str] = None
    description: Optional[str] = None

class AssetModel(BaseModel):
    id: str
    type: str
    brand: str
    model_name: str
    description: Optional[str] = None
    available_items: int = 0
    created_at: datetime
    updated_at: datetime

class AssetItemIn(BaseModel):
    asset_model_id: str
    asset_tag: Optional[str] = None
    serial: Optional[str] = None
    notes: Optional[str] = None

class AssetItemUpdate(BaseModel):
    asset_tag: Optional[str] = None
    serial: Optional[str] = None
    notes: Optional[str] = None

class AssetItem(AssetItemIn):
    id: str
    status: AssetStatus = "EN_STOCK"
    created_at: datetime
    updated_at: datetime

class StatusUpdate(BaseModel):
    status: AssetStatus

class StockItemIn(BaseModel):
    asset_model_id: str
    quantity: int = 0
    notes: Optional[str] = None

class StockItem(StockItemIn):
    id: str
    loaned: int = 0
    available: int = 0
    created_at: datetime
    updated_at: datetime

class StockItemUpdate(BaseModel):
    notes: Optional[str] = None

class StockAdjust(BaseModel):
    delta: int

class AssetModelCreated(BaseModel):
    asset_model: AssetModel
    asset_items: list[AssetItem] = []
    stock_item: Optional[StockItem] = None

class AssetModelDeleted(BaseModel):
    asset_model_id: str
    asset_items_deleted: int
    stock_items_deleted: int

class AssetModelsBatchDelete(BaseModel):
    asset_model_ids: list[str]

class AssetModelsBatchDeleted(BaseModel):
    models_deleted: int
    asset_items_deleted: int
    stock_items_deleted: int
    results: list[AssetModelDeleted] = []

class EmployeeIn(BaseModel):
    first_name: str
    last_name: str
    email: Optional[str] = None
    dept: Optional[str] = None

class EmployeeUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    dept: Optional[str] = None

class Employee(EmployeeIn):
    id: str
    created_at: datetime
    updated_at: datetime

# ---------- Loan ----------
class LoanOpen(BaseModel):
    employee_id: str

class LoanLineIn(BaseModel):
    asset_item_id: Optional[str] = None
    stock_item_id: Optional[str] = None
    quantity: Optional[int] = None

class AssetTarget(BaseModel):
    kind: Literal["asset"] = "asset"
    asset_item_id: str

class StockTarget(BaseModel):
    kind: Literal["stock"] = "stock"
    stock_item_id: str
    quantity: int

class _LineBase(BaseModel):
    id: str
    loan_id: str
    label: str
    added_at: datetime
    returned_at: Optional[datetime] = None

class AssetLine(_LineBase):
    kind: Literal["asset"] = "asset"
    asset_item_id: Optional[str] = None
    quantity: Literal[1] = 1

class StockLine(_LineBase):
    kind: Literal["stock"] = "stock"
    stock_item_id: Optional[str] = None
    quantity: int

LoanLine = Annotated[Union[AssetLine, StockLine], Field(discriminator="kind")]

class Loan(BaseModel):
    id: str
    employee_id: str
    created_by: Optional[str] = None
    status: LoanStatus = "OPEN"
    opened_at: datetime
    closed_at: Optional[datetime] = None
    pickup_signature_ref: Optional[str] = None
    pickup_signed_at: Optional[datetime] = None
    return_signature_ref: Optional[str] = None
    return_signed_at: Optional[datetime] = None
    lines: list[LoanLine] = []

class SignatureIn(BaseModel):
    reference: str

class BatchCloseIn(BaseModel):
    loan_ids: list[str]

class BatchCloseResult(BaseModel):
    loan_id: str
    ok: bool
    code: Optional[str] = None
    detail: Optional[str] = None

class PageMeta(BaseModel):
    total: int
    limit: int
    offset: int
    total_pages: int
