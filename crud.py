from __future__ import annotations

from datetime import datetime, timezone

from typing import Optional
from uuid import uuid4

from sqlalchemy import select, delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from errors import Conflict, InvalidArgument, NotFound
from models import (
    AssetItem,
    AssetItemIn,
    AssetItemUpdate,
    AssetLine,
    AssetModel,
    AssetModelCreated,
    AssetModelIn,
    AssetModelUpdate,
    Employee,
    EmployeeIn,
    EmployeeUpdate,
    Loan,
    StockItem,
    StockItemIn,
    StockItemUpdate,
    StockLine,
)
from orm import AssetItemORM, AssetModelORM, EmployeeORM, LoanLineORM, LoanORM, StockItemORM

TAG_ATTEMPTS = 3

# 種別ごとの管理番号プレフィックス
TAG_PREFIXES = {
    "laptop": "LAP-",
    "desktop": "DSK-",
    "monitor": "MON-",
    "keyboard": "KB-",
    "mouse": "MS-",
    "headset": "HS-",
    "webcam": "WC-",
    "docking station": "DOCK-",
    "phone": "TEL-",
    "cable": "CAB-",
    "adapter": "ADP-",
}

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def persist(db: Session, *, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()

def _asset_model_to_schema(m: AssetModelORM, available_items: int = 0) -> AssetModel:
    return AssetModel(
        id=m.id,
        type=m.type,
        brand=m.brand,
        model_name=m.model_name,
        description=m.description,
        available_items=available_items,
        created_at=m.created_at,
        updated_at=m.updated_at,
    )

def asset_item_to_schema(a: AssetItemORM) -> AssetItem:
    return AssetItem(
        id=a.id,
        asset_model_id=a.asset_model_id,
        asset_tag=a.asset_tag,
        serial=a.serial,
        notes=a.notes,
        status=a.status,  # type: ignore
        created_at=a.created_at,
        updated_at=a.updated_at,
    )

def stock_item_to_schema(s: StockItemORM) -> StockItem:
    return StockItem(
        id=s.id,
        asset_model_id=s.asset_model_id,
        quantity=s.quantity,
        loaned=s.loaned,
        available=s.quantity - s.loaned,
        notes=s.notes,
        created_at=s.created_at,
        updated_at=s.updated_at,
    )

def _employee_to_schema(e: EmployeeORM) -> Employee:
    return Employee(
        id=e.id,
        first_name=e.first_name,
        last_name=e.last_name,
        email=e.email,
        dept=e.dept,
        created_at=e.created_at,
        updated_at=e.updated_at,
    )

def line_to_schema(l: LoanLineORM) -> AssetLine | StockLine:
    if l.kind == "asset":
        return AssetLine(
            id=l.id,
            loan_id=l.loan_id,
            asset_item_id=l.asset_item_id,
            label=l.label,
            added_at=l.added_at,
            returned_at=l.returned_at,
        )
    return StockLine(
        id=l.id,
        loan_id=l.loan_id,
        stock_item_id=l.stock_item_id,
        quantity=l.quantity,
        label=l.label,
        added_at=l.added_at,
        returned_at=l.returned_at,
    )

def loan_to_schema(l: LoanORM) -> Loan:
    return Loan(
        id=l.id,
        employee_id=l.employee_id,
        created_by=l.created_by,
        status=l.status,  # type: ignore
        opened_at=l.opened_at,
        closed_at=l.closed_at,
        pickup_signature_ref=l.pickup_signature_ref,
        pickup_signed_at=l.pickup_signed_at,
        return_signature_ref=l.return_signature_ref,
        return_signed_at=l.return_signed_at,
        lines=[line_to_schema(line) for line in l.lines],
    )


# ---------- AssetModel ----------
def _available_counts(db: Session, model_ids: list[str]) -> dict[str, int]:
    if not model_ids:
        return {}
    rows = db.execute(
        select(AssetItemORM.asset_model_id, func.count())
        .where(AssetItemORM.asset_model_id.in_(model_ids), AssetItemORM.status == "EN_STOCK")
        .group_by(AssetItemORM.asset_model_id)
    ).all()
    return {r[0]: int(r[1]) for r in rows}


def get_asset_model(db: Session, model_id: str) -> Optional[AssetModel]:
    row = db.get(AssetModelORM, model_id)
    if not row:
        return None
    counts = _available_counts(db, [row.id])
    return _asset_model_to_schema(row, counts.get(row.id, 0))


def list_asset_models(db: Session, *, type: str | None = None) -> list[AssetModel]:
    stmt = select(AssetModelORM)
    if type:
        stmt = stmt.where(AssetModelORM.type == type)
    stmt = stmt.order_by(AssetModelORM.brand.asc(), AssetModelORM.model_name.asc())
    rows = db.execute(stmt).scalars().all()
    counts = _available_counts(db, [m.id for m in rows])
    return [_asset_model_to_schema(m, counts.get(m.id, 0)) for m in rows]


def tag_prefix_for(type: str) -> str:
    return TAG_PREFIXES.get((type or "").strip().lower(), "ASSET-")


def _next_tag_number(db: Session, prefix: str) -> int:
    tags = db.execute(
        select(AssetItemORM.asset_tag).where(AssetItemORM.asset_tag.like(f"{prefix}%"))
    ).scalars().all()
    highest = 0
    for tag in tags:
        suffix = tag[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest + 1


def _add_tagged_items(
    db: Session, model_id: str, prefix: str, count: int, *, notes: str, now: datetime
) -> list[AssetItemORM]:
    # 番号の採番と INSERT の間に他の登録が割り込んだら取り直す
    for _ in range(TAG_ATTEMPTS):
        start = _next_tag_number(db, prefix)
        items = [
            AssetItemORM(
                id=str(uuid4()),
                asset_model_id=model_id,
                asset_tag=f"{prefix}{n:03d}",
                status="EN_STOCK",
                notes=notes,
                created_at=now,
                updated_at=now,
            )
            for n in range(start, start + count)
        ]
        try:
            with db.begin_nested():
                db.add_all(items)
        except IntegrityError:
            continue
        return items
    raise Conflict(f"could not allocate {prefix} asset tags, try again")


def create_asset_model(db: Session, body: AssetModelIn, *, commit: bool = True) -> AssetModelCreated:
    now = utcnow()
    m = AssetModelORM(
        id=str(uuid4()),
        type=body.type,
        brand=body.brand,
        model_name=body.model_name,
        description=body.description,
        created_at=now,
        updated_at=now,
    )
    db.add(m)
    db.flush()

    items: list[AssetItemORM] = []
    stock: StockItemORM | None = None
    notes = f"created with model {body.brand} {body.model_name}"

    if body.consumable and body.quantity is not None:
        stock = StockItemORM(
            id=str(uuid4()),
            asset_model_id=m.id,
            quantity=body.quantity,
            loaned=0,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        db.add(stock)
    elif body.quantity:
        items = _add_tagged_items(db, m.id, tag_prefix_for(body.type), body.quantity, notes=notes, now=now)

    persist(db, commit=commit)
    return AssetModelCreated(
        asset_model=_asset_model_to_schema(m, len(items)),
        asset_items=[asset_item_to_schema(i) for i in items],
        stock_item=stock_item_to_schema(stock) if stock else None,
    )


def update_asset_model(
    db: Session, model_id: str, body: AssetModelUpdate, *, commit: bool = True
) -> Optional[AssetModel]:
    m = db.get(AssetModelORM, model_id)
    if not m:
        return None

    data = body.model_dump(exclude_unset=True)
    for k, v in data.items():
        if v is not None:
            setattr(m, k, v)
    m.updated_at = utcnow()

    persist(db, commit=commit)
    return get_asset_model(db, model_id)


# ---------- AssetItem ----------
def asset_tag_exists(db: Session, asset_tag: str, exclude_item_id: Optional[str] = None) -> bool:
    stmt = select(AssetItemORM.id).where(AssetItemORM.asset_tag == asset_tag)
    if exclude_item_id:
        stmt = stmt.where(AssetItemORM.id != exclude_item_id)
    return db.execute(stmt).first() is not None


def serial_exists(db: Session, serial: str, exclude_item_id: Optional[str] = None) -> bool:
    stmt = select(AssetItemORM.id).where(AssetItemORM.serial == serial)
    if exclude_item_id:
        stmt = stmt.where(AssetItemORM.id != exclude_item_id)
    return db.execute(stmt).first() is not None


def get_asset_item(db: Session, item_id: str) -> Optional[AssetItem]:
    row = db.get(AssetItemORM, item_id)
    return asset_item_to_schema(row) if row else None


def create_asset_item(db: Session, body: AssetItemIn, *, commit: bool = True) -> AssetItem:
    if not db.get(AssetModelORM, body.asset_model_id):
        raise NotFound("asset model not found")
    if body.asset_tag and asset_tag_exists(db, body.asset_tag):
        raise Conflict("asset_tag already exists")
    if body.serial and serial_exists(db, body.serial):
        raise Conflict("serial already exists")

    now = utcnow()
    a = AssetItemORM(
        id=str(uuid4()),
        asset_model_id=body.asset_model_id,
        asset_tag=body.asset_tag,
        serial=body.serial,
        notes=body.notes,
        status="EN_STOCK",
        created_at=now,
        updated_at=now,
    )
    db.add(a)
    persist(db, commit=commit)
    if commit:
        db.refresh(a)
    return asset_item_to_schema(a)


def update_asset_item(
    db: Session, item_id: str, body: AssetItemUpdate, *, commit: bool = True
) -> Optional[AssetItem]:
    a = db.get(AssetItemORM, item_id)
    if not a:
        return None

    if body.asset_tag and asset_tag_exists(db, body.asset_tag, exclude_item_id=item_id):
        raise Conflict("asset_tag already exists")
    if body.serial and serial_exists(db, body.serial, exclude_item_id=item_id):
        raise Conflict("serial already exists")

    # status は貸出/保守の操作でしか変えない
    data = body.model_dump(exclude_unset=True)
    for k, v in data.items():
        setattr(a, k, v)
    a.updated_at = utcnow()

    persist(db, commit=commit)
    if commit:
        db.refresh(a)
    return asset_item_to_schema(a)


def delete_asset_item(db: Session, item_id: str, *, commit: bool = True) -> bool:
    result = db.execute(
        delete(AssetItemORM).where(AssetItemORM.id == item_id, AssetItemORM.status != "PRETE")
    )
    if result.rowcount == 0:
        if db.get(AssetItemORM, item_id) is not None:
            raise Conflict("asset item is loaned and cannot be deleted")
        return False
    persist(db, commit=commit)
    return True


def build_asset_items_query(q: str | None, status: str | None, asset_model_id: str | None):
    stmt = select(AssetItemORM)

    if q:
        like = f"%{q}%"
        stmt = stmt.where(
            or_(
                AssetItemORM.asset_tag.ilike(like),
                AssetItemORM.serial.ilike(like),
                AssetItemORM.notes.ilike(like),
            )
        )
    if status:
        stmt = stmt.where(AssetItemORM.status == status)

    if asset_model_id:
        stmt = stmt.where(AssetItemORM.asset_model_id == asset_model_id)

    return stmt


def list_asset_items(
    db: Session,
    *,
    q: str | None = None,
    status: str | None = None,
    asset_model_id: str | None = None,
    limit: int | None = 50,
    offset: int = 0,
) -> list[AssetItem]:
    stmt = build_asset_items_query(q, status, asset_model_id)
    stmt = stmt.order_by(AssetItemORM.asset_tag.asc(), AssetItemORM.created_at.asc())
    if limit is not None:
        stmt = stmt.limit(limit)
    stmt = stmt.offset(offset)
    rows = db.execute(stmt).scalars().all()
    return [asset_item_to_schema(a) for a in rows]


# ---------- StockItem ----------
def get_stock_item(db: Session, stock_item_id: str) -> Optional[StockItem]:
    row = db.get(StockItemORM, stock_item_id)
    return stock_item_to_schema(row) if row else None


def create_stock_item(db: Session, body: StockItemIn, *, commit: bool = True) -> StockItem:
    if body.quantity < 0:
        raise InvalidArgument("quantity must not be negative")
    if not db.get(AssetModelORM, body.asset_model_id):
        raise NotFound("asset model not found")
    exists = db.execute(
        select(StockItemORM.id).where(StockItemORM.asset_model_id == body.asset_model_id)
    ).first()
    if exists:
        raise Conflict("asset model already has a stock item")

    now = utcnow()
    s = StockItemORM(
        id=str(uuid4()),
        asset_model_id=body.asset_model_id,
        quantity=body.quantity,
        loaned=0,
        notes=body.notes,
        created_at=now,
        updated_at=now,
    )
    db.add(s)
    persist(db, commit=commit)
    if commit:
        db.refresh(s)
    return stock_item_to_schema(s)


def list_stock_items(db: Session, *, asset_model_id: str | None = None) -> list[StockItem]:
    stmt = select(StockItemORM)
    if asset_model_id:
        stmt = stmt.where(StockItemORM.asset_model_id == asset_model_id)
    stmt = stmt.order_by(StockItemORM.created_at.asc())
    return [stock_item_to_schema(s) for s in db.execute(stmt).scalars().all()]


def update_stock_item(
    db: Session, stock_item_id: str, body: StockItemUpdate, *, commit: bool = True
) -> Optional[StockItem]:
    # 数量は adjust_stock でしか変えない
    s = db.get(StockItemORM, stock_item_id)
    if not s:
        return None

    data = body.model_dump(exclude_unset=True)
    for k, v in data.items():
        setattr(s, k, v)
    s.updated_at = utcnow()

    persist(db, commit=commit)
    if commit:
        db.refresh(s)
    return stock_item_to_schema(s)


def delete_stock_item(db: Session, stock_item_id: str, *, commit: bool = True) -> bool:
    result = db.execute(
        delete(StockItemORM).where(StockItemORM.id == stock_item_id, StockItemORM.loaned == 0)
    )
    if result.rowcount == 0:
        if db.get(StockItemORM, stock_item_id) is not None:
            raise Conflict("stock item has loaned units and cannot be deleted")
        return False
    persist(db, commit=commit)
    return True


# ---------- Employee ----------
def employee_exists(db: Session, employee_id: str) -> bool:
    return db.execute(select(EmployeeORM.id).where(EmployeeORM.id == employee_id)).first() is not None


def get_employee(db: Session, employee_id: str) -> Optional[Employee]:
    row = db.get(EmployeeORM, employee_id)
    return _employee_to_schema(row) if row else None


def create_employee(db: Session, body: EmployeeIn, *, commit: bool = True) -> Employee:
    first_name = (body.first_name or "").strip()
    last_name = (body.last_name or "").strip()
    if not first_name or not last_name:
        raise InvalidArgument("first_name/last_name is empty")
    email = (body.email or "").strip() or None
    if email and db.execute(select(EmployeeORM.id).where(EmployeeORM.email == email)).first():
        raise Conflict("email already exists")

    now = utcnow()
    e = EmployeeORM(
        id=str(uuid4()),
        first_name=first_name,
        last_name=last_name,
        email=email,
        dept=(body.dept or "").strip() or None,
        created_at=now,
        updated_at=now,
    )
    db.add(e)
    persist(db, commit=commit)
    return _employee_to_schema(e)


def list_employees(db: Session, *, q: str | None = None) -> list[Employee]:
    stmt = select(EmployeeORM)
    if q:
        like = f"%{q}%"
        stmt = stmt.where(
            or_(
                EmployeeORM.first_name.ilike(like),
                EmployeeORM.last_name.ilike(like),
                EmployeeORM.email.ilike(like),
            )
        )
    stmt = stmt.order_by(EmployeeORM.last_name.asc(), EmployeeORM.first_name.asc())
    return [_employee_to_schema(e) for e in db.execute(stmt).scalars().all()]


def update_employee(
    db: Session, employee_id: str, body: EmployeeUpdate, *, commit: bool = True
) -> Optional[Employee]:
    e = db.get(EmployeeORM, employee_id)
    if not e:
        return None

    data = body.model_dump(exclude_unset=True)
    for k in ("first_name", "last_name"):
        if k in data:
            data[k] = (data[k] or "").strip()
            if not data[k]:
                raise InvalidArgument(f"{k} is empty")
    for k in ("email", "dept"):
        if k in data:
            data[k] = (data[k] or "").strip() or None

    email = data.get("email")
    if email and email != e.email:
        taken = db.execute(
            select(EmployeeORM.id).where(EmployeeORM.email == email, EmployeeORM.id != employee_id)
        ).first()
        if taken:
            raise Conflict("email already exists")

    for k, v in data.items():
        setattr(e, k, v)
    e.updated_at = utcnow()

    persist(db, commit=commit)
    return _employee_to_schema(e)


def delete_employee(db: Session, employee_id: str, *, commit: bool = True) -> bool:
    # 貸出履歴が1件でもあれば消さない（loans.employee_id は RESTRICT）
    has_loans = select(LoanORM.id).where(LoanORM.employee_id == EmployeeORM.id).exists()
    result = db.execute(
        delete(EmployeeORM)
        .where(EmployeeORM.id == employee_id, ~has_loans)
    )
    if result.rowcount == 0:
        if not employee_exists(db, employee_id):
            return False
        open_loans = db.execute(
            select(func.count(LoanORM.id)).where(
                LoanORM.employee_id == employee_id,
                LoanORM.status == "OPEN",
                LoanORM.deleted_at.is_(None),
            )
        ).scalar_one()
        if open_loans:
            raise Conflict(f"employee has {open_loans} open loan(s)")
        raise Conflict("employee has loan history and cannot be deleted")
    persist(db, commit=commit)
    return True


# ---------- Loan (read side) ----------
def get_loan(db: Session, loan_id: str) -> Optional[Loan]:
    row = db.execute(
        select(LoanORM)
        .where(LoanORM.id == loan_id, LoanORM.deleted_at.is_(None))
        .options(selectinload(LoanORM.lines))
        .execution_options(populate_existing=True)
    ).scalars().first()
    return loan_to_schema(row) if row else None


def build_loans_query(status: str | None, employee_id: str | None):
    stmt = select(LoanORM).where(LoanORM.deleted_at.is_(None))
    if status:
        stmt = stmt.where(LoanORM.status == status)
    if employee_id:
        stmt = stmt.where(LoanORM.employee_id == employee_id)
    return stmt


def loans_meta(
    db: Session,
    *,
    status: str | None,
    employee_id: str | None,
    limit: int,
    offset: int,
) -> dict:
    stmt = build_loans_query(status, employee_id)
    total = int(db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one())
    total_pages = max(1, (total + limit - 1) // limit)
    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "total_pages": total_pages,
    }


def list_loans(
    db: Session,
    *,
    status: str | None = None,
    employee_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Loan]:
    stmt = build_loans_query(status, employee_id)
    stmt = stmt.options(selectinload(LoanORM.lines)).order_by(LoanORM.opened_at.desc())
    stmt = stmt.limit(limit).offset(offset)
    rows = db.execute(stmt).scalars().all()
    return [loan_to_schema(l) for l in rows]


def list_loan_lines_for_export(db: Session, *, status: str | None = None) -> list[dict]:
    """貸出明細を社員名つきで返す（CSV出力用）"""
    stmt = (
        select(LoanLineORM, LoanORM, EmployeeORM)
        .join(LoanORM, LoanLineORM.loan_id == LoanORM.id)
        .join(EmployeeORM, LoanORM.employee_id == EmployeeORM.id)
        .where(LoanORM.deleted_at.is_(None))
    )
    if status:
        stmt = stmt.where(LoanORM.status == status)
    stmt = stmt.order_by(LoanORM.opened_at.asc(), LoanLineORM.added_at.asc())

    rows = []
    for line, loan, emp in db.execute(stmt).all():
        rows.append({
            "loan_id": loan.id,
            "loan_status": loan.status,
            "employee": f"{emp.first_name} {emp.last_name}",
            "kind": line.kind,
            "label": line.label,
            "quantity": line.quantity,
            "added_at": line.added_at,
            "returned_at": line.returned_at,
        })
    return rows
