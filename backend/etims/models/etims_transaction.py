"""
eTIMS Transaction Ledger model

One row per fiscal operation attempted against the authority. Rows are
never deleted: the ledger is both the audit trail and the system of
record for replaying failed submissions (``items_data`` holds the exact
outbound payload).
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from etims.db.base import Base, TimestampMixin, utcnow


def _values(enum_cls):
    return [member.value for member in enum_cls]


class TransactionKind(str, enum.Enum):
    """Kinds of fiscal operation recorded in the ledger."""
    ITEM_REGISTRATION = "item_registration"
    ITEM_COMPOSITION = "item_composition"
    SALE = "sale"
    PURCHASE = "purchase"
    STOCK_IN = "stock_in"
    STOCK_OUT = "stock_out"


class TransactionStatus(str, enum.Enum):
    """Ledger entry status.

    pending -> success | failed, failed -> retry -> pending.
    A success entry is final.
    """
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRY = "retry"


# Business link columns a kind may populate, and whether one is required
KIND_LINKS = {
    TransactionKind.ITEM_REGISTRATION: (("ingredient_id", "recipe_id"), True),
    TransactionKind.ITEM_COMPOSITION: (("recipe_id",), True),
    TransactionKind.SALE: (("sales_order_id",), True),
    TransactionKind.PURCHASE: (("supplier_order_id",), True),
    TransactionKind.STOCK_IN: (("supplier_order_id", "sales_order_id"), False),
    TransactionKind.STOCK_OUT: (("supplier_order_id", "sales_order_id"), False),
}

LINK_FIELDS = ("ingredient_id", "recipe_id", "sales_order_id", "supplier_order_id")


class EtimsTransaction(Base, TimestampMixin):
    """A single attempted eTIMS submission."""

    __tablename__ = "kra_transactions"
    __table_args__ = (
        Index("idx_kra_tx_type_status", "transaction_type", "status"),
        Index("idx_kra_tx_sales_order", "sales_order_id"),
        Index("idx_kra_tx_supplier_order", "supplier_order_id"),
        Index("idx_kra_tx_ingredient", "ingredient_id"),
        Index("idx_kra_tx_idempotency", "idempotency_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_type: Mapped[TransactionKind] = mapped_column(
        Enum(TransactionKind, native_enum=False, values_callable=_values, length=32),
        nullable=False,
    )
    transaction_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    # Locally assigned document numbers
    kra_invoice_no: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    kra_sar_no: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Authority response
    kra_result_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    kra_result_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kra_receipt_data: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    # Business links (ids live in the external datastore)
    supplier_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sales_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ingredient_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    recipe_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Outbound payload snapshot, replayable as-is
    items_data: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    total_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    vat_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, native_enum=False, values_callable=_values, length=16),
        default=TransactionStatus.PENDING,
        nullable=False,
        index=True,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<EtimsTransaction id={self.id} type={self.transaction_type.value} "
            f"status={self.status.value}>"
        )
