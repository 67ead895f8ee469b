from datetime import datetime
from sqlalchemy import String, DateTime, Text, ForeignKey, Integer, CheckConstraint, Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db import Base


class AssetModelORM(Base):
    __tablename__ = "asset_models"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    brand: Mapped[str] = mapped_column(String, nullable=False)
    model_name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # rows are removed by the database cascade, never one by one through the ORM
    items: Mapped[list["AssetItemORM"]] = relationship(back_populates="asset_model", passive_deletes=True)
    stock_items: Mapped[list["StockItemORM"]] = relationship(back_populates="asset_model", passive_deletes=True)


class AssetItemORM(Base):
    __tablename__ = "asset_items"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    asset_model_id: Mapped[str] = mapped_column(
        String, ForeignKey("asset_models.id", ondelete="CASCADE"), nullable=False, index=True
    )
    asset_tag: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    serial: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String, nullable=False, default="EN_STOCK", index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    asset_model: Mapped[AssetModelORM] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint(
            "status IN ('EN_STOCK', 'PRETE', 'HS', 'REPARATION')",
            name="ck_asset_items_status",
        ),
    )


class StockItemORM(Base):
    __tablename__ = "stock_items"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    asset_model_id: Mapped[str] = mapped_column(
        String, ForeignKey("asset_models.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    loaned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    asset_model: Mapped[AssetModelORM] = relationship(back_populates="stock_items")

    __table_args__ = (
        CheckConstraint("loaned >= 0", name="ck_stock_items_loaned_non_negative"),
        CheckConstraint("loaned <= quantity", name="ck_stock_items_loaned_le_quantity"),
    )


class EmployeeORM(Base):
    __tablename__ = "employees"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    dept: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class LoanORM(Base):
    __tablename__ = "loans"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    employee_id: Mapped[str] = mapped_column(
        String, ForeignKey("employees.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(String, nullable=False, default="OPEN", index=True)
    opened_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    pickup_signature_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    pickup_signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    return_signature_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    return_signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    deleted_by: Mapped[str | None] = mapped_column(String, nullable=True)

    lines: Mapped[list["LoanLineORM"]] = relationship(
        back_populates="loan",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="LoanLineORM.added_at",
    )

    __table_args__ = (
        CheckConstraint("status IN ('OPEN', 'CLOSED')", name="ck_loans_status"),
    )


class LoanLineORM(Base):
    __tablename__ = "loan_lines"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    loan_id: Mapped[str] = mapped_column(
        String, ForeignKey("loans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String, nullable=False)

    asset_item_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("asset_items.id", ondelete="SET NULL"), nullable=True, index=True
    )
    stock_item_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("stock_items.id", ondelete="SET NULL"), nullable=True, index=True
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    label: Mapped[str] = mapped_column(String, nullable=False, default="")

    added_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    returned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    loan: Mapped[LoanORM] = relationship(back_populates="lines")

    __table_args__ = (
        CheckConstraint("kind IN ('asset', 'stock')", name="ck_loan_lines_kind"),
        CheckConstraint("quantity > 0", name="ck_loan_lines_quantity_positive"),
        CheckConstraint("kind = 'stock' OR quantity = 1", name="ck_loan_lines_asset_quantity"),
        CheckConstraint(
            "asset_item_id IS NULL OR stock_item_id IS NULL",
            name="ck_loan_lines_single_target",
        ),
        # at most one unreturned line per asset item
        Index(
            "uq_loan_lines_open_asset_item",
            "asset_item_id",
            unique=True,
            sqlite_where=text("returned_at IS NULL AND asset_item_id IS NOT NULL"),
            postgresql_where=text("returned_at IS NULL AND asset_item_id IS NOT NULL"),
        ),
    )
