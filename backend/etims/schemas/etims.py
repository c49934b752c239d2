"""eTIMS request, record and result schemas."""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from etims.models.etims_transaction import TransactionKind, TransactionStatus
from etims.services.etims.codes import PaymentType, StockMovementType, TaxType

RecordId = Union[int, str]


# ===== Business records =====


class ItemRecord(BaseModel):
    """Anything registrable with the authority as an item."""

    id: RecordId
    name: str
    unit: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    item_cd: Optional[str] = None
    item_cls_cd: Optional[str] = None

    model_config = {"from_attributes": True}

    @property
    def price(self) -> Decimal:
        return Decimal("0")

    @property
    def is_registered(self) -> bool:
        return bool(self.item_cd and self.item_cls_cd)


class IngredientRecord(ItemRecord):
    """Stock ingredient; registered as a raw material."""

    unit: Optional[str] = "pcs"
    cost_per_unit: Decimal = Decimal("0")

    @property
    def price(self) -> Decimal:
        return self.cost_per_unit


class CompositionComponent(BaseModel):
    """One ingredient line of a composite item."""

    ingredient_id: RecordId
    name: str
    quantity: Decimal
    unit: Optional[str] = None
    item_cd: Optional[str] = None
    item_cls_cd: Optional[str] = None


class RecipeRecord(ItemRecord):
    """Sellable recipe; registered as a finished product with a composition."""

    unit: Optional[str] = "portion"
    sell_price: Decimal = Field(default=Decimal("0"), alias="price")
    components: List[CompositionComponent] = []

    model_config = {"from_attributes": True, "populate_by_name": True}

    @property
    def price(self) -> Decimal:
        return self.sell_price


class ItemClassification(BaseModel):
    """Caller-supplied classification for an item registration."""

    code: str = Field(min_length=1, max_length=10)
    tax_type: Optional[TaxType] = None


# ===== Transactions =====


class SaleLine(BaseModel):
    name: str
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    unit: Optional[str] = None
    item_cd: Optional[str] = None
    item_cls_cd: Optional[str] = None
    tax_type: Optional[TaxType] = None


class SaleOrder(BaseModel):
    """A completed sales order to report."""

    id: RecordId
    items: List[SaleLine]
    invoice_no: Optional[int] = Field(default=None, gt=0)
    customer_name: Optional[str] = None
    customer_tin: Optional[str] = None
    payment_type: PaymentType = PaymentType.CASH
    remark: Optional[str] = None


class PurchaseLine(BaseModel):
    name: str
    quantity: Decimal = Field(gt=0)
    cost_per_unit: Decimal = Field(ge=0)
    unit: Optional[str] = None
    item_cd: Optional[str] = None
    item_cls_cd: Optional[str] = None
    tax_type: Optional[TaxType] = None


class SupplierOrder(BaseModel):
    """A received supplier order to report as a purchase."""

    id: RecordId
    items: List[PurchaseLine]
    invoice_number: Optional[str] = None
    supplier_name: Optional[str] = None
    supplier_tin: Optional[str] = None
    supplier_bhf_id: Optional[str] = None
    vat_amount: Decimal = Decimal("0")
    payment_type: PaymentType = PaymentType.CASH
    remark: Optional[str] = None


class StockLine(BaseModel):
    name: str
    quantity: Decimal = Field(gt=0)
    cost_per_unit: Decimal = Field(default=Decimal("0"), ge=0)
    unit: Optional[str] = None
    item_cd: Optional[str] = None
    item_cls_cd: Optional[str] = None
    tax_type: Optional[TaxType] = None


class StockMovementRequest(BaseModel):
    items: List[StockLine]
    movement_type: StockMovementType = StockMovementType.PURCHASE
    idempotency_key: Optional[str] = Field(default=None, max_length=128)
    supplier_order_id: Optional[str] = None
    sales_order_id: Optional[str] = None
    remark: Optional[str] = None


class StockMasterRequest(BaseModel):
    item_cd: str
    remaining_qty: Decimal = Field(ge=0)


# ===== Results =====


class FiscalOutcome(str, enum.Enum):
    """How a fiscal operation ended, from the caller's point of view."""

    SUCCESS = "success"
    DEGRADED = "degraded"          # accepted, but a follow-up step failed
    REJECTED = "rejected"          # authority answered with a non-success code
    NETWORK_FAILURE = "network_failure"
    INVALID = "invalid"            # refused locally, never transmitted


class ComponentResult(BaseModel):
    name: str
    item_cd: Optional[str] = None
    success: bool
    error: Optional[str] = None
    ledger_entry_id: Optional[int] = None


class FiscalResult(BaseModel):
    """Result of a fiscal operation. Failures are values, not exceptions."""

    outcome: FiscalOutcome
    message: str
    error: Optional[str] = None
    result_code: Optional[str] = None
    result_message: Optional[str] = None
    ledger_entry_id: Optional[int] = None
    data: Optional[Dict[str, Any]] = None

    item_cd: Optional[str] = None
    item_cls_cd: Optional[str] = None
    invoice_no: Optional[int] = None
    sar_no: Optional[int] = None
    status: Optional[str] = None
    duplicate: bool = False
    components: List[ComponentResult] = []
    warnings: List[str] = []

    @property
    def success(self) -> bool:
        return self.outcome in (FiscalOutcome.SUCCESS, FiscalOutcome.DEGRADED)


class SyncError(BaseModel):
    item_name: str
    error: str


class SyncReport(BaseModel):
    """Outcome of a bulk item registration sweep."""

    synced: int = 0
    registered: int = 0
    already_registered: int = 0
    errors: List[SyncError] = []

    @property
    def success(self) -> bool:
        return not self.errors


# ===== Responses =====


class FiscalResultResponse(BaseModel):
    success: bool
    outcome: FiscalOutcome
    message: str
    error: Optional[str] = None
    result_code: Optional[str] = None
    result_message: Optional[str] = None
    ledger_entry_id: Optional[int] = None
    item_cd: Optional[str] = None
    item_cls_cd: Optional[str] = None
    invoice_no: Optional[int] = None
    sar_no: Optional[int] = None
    status: Optional[str] = None
    duplicate: bool = False
    components: List[ComponentResult] = []
    warnings: List[str] = []
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_result(cls, result: FiscalResult) -> "FiscalResultResponse":
        return cls(success=result.success, **result.model_dump())


class SyncReportResponse(BaseModel):
    success: bool
    synced: int
    registered: int
    already_registered: int
    errors: List[SyncError]

    @classmethod
    def from_report(cls, report: SyncReport) -> "SyncReportResponse":
        return cls(success=report.success, **report.model_dump())


class LedgerEntryResponse(BaseModel):
    id: int
    transaction_type: TransactionKind
    transaction_date: datetime
    status: TransactionStatus
    kra_invoice_no: Optional[int] = None
    kra_sar_no: Optional[int] = None
    kra_result_code: Optional[str] = None
    kra_result_message: Optional[str] = None
    supplier_order_id: Optional[str] = None
    sales_order_id: Optional[str] = None
    ingredient_id: Optional[str] = None
    recipe_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    total_amount: Optional[Decimal] = None
    vat_amount: Optional[Decimal] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    items_data: Optional[Dict[str, Any]] = None

    model_config = {"from_attributes": True}


class LedgerStatisticsResponse(BaseModel):
    total: int
    by_type: Dict[str, int]
    by_status: Dict[str, int]
    by_result_code: Dict[str, int]
    success_rate: float
