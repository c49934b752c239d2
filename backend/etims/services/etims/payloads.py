"""
eTIMS wire payloads

One model per transaction class. Python attribute names are snake_case;
the authority's camelCase names are produced by the alias generator and
only appear when a payload is serialized with ``to_wire()`` at the
transport boundary. Amounts are Decimals internally and JSON numbers on
the wire.
"""

from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from etims.core.exceptions import FiscalValidationError
from etims.services.etims.codes import (
    CONFIRMED_STATUS,
    TAX_CLASSES,
    ItemType,
    PackageUnit,
    PaymentType,
    ReceiptType,
    RegistrationType,
    SalesType,
    StockMovementType,
    TaxType,
    UnitCode,
)
from etims.services.etims.totals import CENT

Amount = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class WirePayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

class ItemPayload(WirePayload):
    """saveItem"""
    item_cd: str = Field(min_length=1, max_length=20)
    item_cls_cd: str = Field(min_length=1, max_length=10)
    item_ty_cd: ItemType = ItemType.RAW_MATERIAL
    item_nm: str = Field(min_length=1, max_length=200)
    item_std_nm: Optional[str] = None
    orgn_nat_cd: str
    pkg_unit_cd: PackageUnit = PackageUnit.NO_PACKAGE
    qty_unit_cd: UnitCode = UnitCode.PIECE
    tax_ty_cd: TaxType = TaxType.B
    btch_no: Optional[str] = None
    bcd: Optional[str] = None
    dft_prc: Amount = Field(ge=0)
    grp_prc_l1: Amount = Field(ge=0)
    grp_prc_l2: Amount = Field(ge=0)
    grp_prc_l3: Amount = Field(ge=0)
    grp_prc_l4: Amount = Field(ge=0)
    grp_prc_l5: Optional[Amount] = None
    add_info: Optional[str] = None
    sfty_qty: Optional[Amount] = None
    isrc_aplcb_yn: str = "N"
    use_yn: str = "Y"
    regr_nm: str = Field(max_length=20)
    regr_id: str = Field(max_length=20)
    modr_nm: str = Field(max_length=20)
    modr_id: str = Field(max_length=20)


class ItemCompositionPayload(WirePayload):
    """saveItemComposition: one component of a composite item."""
    item_cd: str
    cpst_item_cd: str
    cpst_qty: Amount = Field(gt=0)
    regr_id: str = Field(max_length=20)
    regr_nm: str = Field(max_length=20)


class StockMasterPayload(WirePayload):
    """saveStockMaster: remaining quantity of an item."""
    item_cd: str
    rsd_qty: Amount
    regr_id: str = Field(max_length=20)
    regr_nm: str = Field(max_length=20)
    modr_nm: str = Field(max_length=20)
    modr_id: str = Field(max_length=20)


# ---------------------------------------------------------------------------
# Transaction lines
# ---------------------------------------------------------------------------

class ItemLine(WirePayload):
    item_seq: int = Field(ge=1)
    item_cd: str
    item_cls_cd: str
    item_nm: str
    bcd: Optional[str] = None
    pkg_unit_cd: PackageUnit = PackageUnit.NO_PACKAGE
    pkg: Amount = Decimal("1")
    qty_unit_cd: UnitCode = UnitCode.PIECE
    qty: Amount = Field(gt=0)
    prc: Amount = Field(ge=0)
    sply_amt: Amount
    tax_ty_cd: TaxType = TaxType.B
    taxbl_amt: Amount
    tax_amt: Amount
    tot_amt: Amount


class SaleItemLine(ItemLine):
    dc_rt: Amount = Decimal("0")
    dc_amt: Amount = Decimal("0")
    isrcc_cd: Optional[str] = None
    isrcc_nm: Optional[str] = None
    isrc_rt: Optional[Amount] = None
    isrc_amt: Optional[Amount] = None


class PurchaseItemLine(ItemLine):
    spplr_item_cls_cd: Optional[str] = None
    spplr_item_cd: Optional[str] = None
    spplr_item_nm: Optional[str] = None
    dc_rt: Amount = Decimal("0")
    dc_amt: Amount = Decimal("0")
    item_expr_dt: Optional[str] = None


class StockItemLine(ItemLine):
    tot_dc_amt: Amount = Decimal("0")
    item_expr_dt: Optional[str] = None


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

class TaxSummary(WirePayload):
    """Five-class tax breakdown plus grand totals."""
    tot_item_cnt: int
    taxbl_amt_a: Amount = Decimal("0")
    taxbl_amt_b: Amount = Decimal("0")
    taxbl_amt_c: Amount = Decimal("0")
    taxbl_amt_d: Amount = Decimal("0")
    taxbl_amt_e: Amount = Decimal("0")
    tax_rt_a: Amount = Decimal("0")
    tax_rt_b: Amount = Decimal("0")
    tax_rt_c: Amount = Decimal("0")
    tax_rt_d: Amount = Decimal("0")
    tax_rt_e: Amount = Decimal("0")
    tax_amt_a: Amount = Decimal("0")
    tax_amt_b: Amount = Decimal("0")
    tax_amt_c: Amount = Decimal("0")
    tax_amt_d: Amount = Decimal("0")
    tax_amt_e: Amount = Decimal("0")
    tot_taxbl_amt: Amount
    tot_tax_amt: Amount
    tot_amt: Amount


class ReceiptBlock(WirePayload):
    """Denormalized receipt header/footer for printing."""
    cust_tin: Optional[str] = None
    cust_mbl_no: Optional[str] = None
    rpt_no: int = 1
    rcpt_pbct_dt: str
    trde_nm: str
    adrs: str
    top_msg: str
    btm_msg: str
    prchr_acptc_yn: str = "N"


class SalePayload(TaxSummary):
    """saveTrnsSalesOsdc"""
    invc_no: int
    org_invc_no: int = 0
    cust_tin: Optional[str] = None
    cust_nm: str = "Walk-in Customer"
    sales_ty_cd: SalesType = SalesType.NORMAL
    rcpt_ty_cd: ReceiptType = ReceiptType.SALE
    pmt_ty_cd: PaymentType = PaymentType.CASH
    sales_stts_cd: str = CONFIRMED_STATUS
    cfm_dt: str
    sales_dt: str
    stock_rls_dt: Optional[str] = None
    cncl_req_dt: Optional[str] = None
    cncl_dt: Optional[str] = None
    rfd_dt: Optional[str] = None
    rfd_rsn_cd: Optional[str] = None
    prchr_acptc_yn: str = "N"
    remark: Optional[str] = None
    regr_id: str
    regr_nm: str
    modr_id: str
    modr_nm: str
    receipt: ReceiptBlock
    item_list: List[SaleItemLine]


class PurchasePayload(TaxSummary):
    """insertTrnsPurchase"""
    invc_no: int
    org_invc_no: int = 0
    spplr_tin: Optional[str] = None
    spplr_bhf_id: Optional[str] = None
    spplr_nm: str = "Unknown Supplier"
    spplr_invc_no: Optional[str] = None
    reg_ty_cd: RegistrationType = RegistrationType.MANUAL
    pchs_ty_cd: SalesType = SalesType.NORMAL
    rcpt_ty_cd: ReceiptType = ReceiptType.PURCHASE
    pmt_ty_cd: PaymentType = PaymentType.CASH
    pchs_stts_cd: str = CONFIRMED_STATUS
    cfm_dt: str
    pchs_dt: str
    wrhs_dt: Optional[str] = None
    cncl_req_dt: Optional[str] = None
    cncl_dt: Optional[str] = None
    rfd_dt: Optional[str] = None
    remark: Optional[str] = None
    regr_nm: str
    regr_id: str
    modr_nm: str
    modr_id: str
    item_list: List[PurchaseItemLine]


class StockPayload(WirePayload):
    """insertStockIO"""
    sar_no: int
    org_sar_no: int
    reg_ty_cd: RegistrationType = RegistrationType.MANUAL
    cust_tin: Optional[str] = None
    cust_nm: Optional[str] = None
    cust_bhf_id: Optional[str] = None
    sar_ty_cd: StockMovementType
    ocrn_dt: str
    tot_item_cnt: int
    tot_taxbl_amt: Amount
    tot_tax_amt: Amount
    tot_amt: Amount
    remark: Optional[str] = None
    regr_id: str
    regr_nm: str
    modr_nm: str
    modr_id: str
    item_list: List[StockItemLine]


TransactionPayload = Union[SalePayload, PurchasePayload, StockPayload]


def _cents(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT)


def _mismatch(what: str, expected: Decimal, actual: Decimal, field: str) -> FiscalValidationError:
    return FiscalValidationError(
        f"{what}: expected {_cents(expected)}, got {_cents(actual)}",
        field=field,
        details={"expected": str(_cents(expected)), "actual": str(_cents(actual))},
    )


def check_totals(payload: TransactionPayload) -> None:
    """Reject a transaction whose arithmetic does not reconcile.

    Checks every line (``totAmt == taxblAmt + taxAmt``), the five-class
    buckets against the grand totals, and ``totAmt == totTaxblAmt +
    totTaxAmt``. Raises FiscalValidationError on the first mismatch.
    """
    lines = payload.item_list
    if not lines:
        raise FiscalValidationError("Transaction has no line items", field="itemList")
    if payload.tot_item_cnt != len(lines):
        raise FiscalValidationError(
            f"totItemCnt is {payload.tot_item_cnt} but itemList has {len(lines)} lines",
            field="totItemCnt",
        )

    for line in lines:
        if _cents(line.tot_amt) != _cents(line.taxbl_amt + line.tax_amt):
            raise _mismatch(
                f"Line {line.item_seq} totAmt", line.taxbl_amt + line.tax_amt, line.tot_amt,
                f"itemList[{line.item_seq}].totAmt",
            )

    if isinstance(payload, TaxSummary):
        taxable = sum((getattr(payload, f"taxbl_amt_{t.value.lower()}") for t in TAX_CLASSES), Decimal("0"))
        tax = sum((getattr(payload, f"tax_amt_{t.value.lower()}") for t in TAX_CLASSES), Decimal("0"))
    else:
        taxable = sum((line.taxbl_amt for line in lines), Decimal("0"))
        tax = sum((line.tax_amt for line in lines), Decimal("0"))

    if _cents(payload.tot_taxbl_amt) != _cents(taxable):
        raise _mismatch("totTaxblAmt", taxable, payload.tot_taxbl_amt, "totTaxblAmt")
    if _cents(payload.tot_tax_amt) != _cents(tax):
        raise _mismatch("totTaxAmt", tax, payload.tot_tax_amt, "totTaxAmt")
    expected_total = payload.tot_taxbl_amt + payload.tot_tax_amt
    if _cents(payload.tot_amt) != _cents(expected_total):
        raise _mismatch("totAmt", expected_total, payload.tot_amt, "totAmt")

