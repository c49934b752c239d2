"""Tests for eTIMS money arithmetic and the totals check.

The property tests build real sale and purchase documents from random
lines and require them to reconcile to the cent.
"""

from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from hypothesis import given, settings, strategies as st

from etims.core.config import FiscalConfig
from etims.core.exceptions import FiscalValidationError
from etims.schemas.etims import PurchaseLine, SaleLine, SaleOrder, SupplierOrder
from etims.services.etims.codes import TAX_CLASSES, TaxType
from etims.services.etims.payloads import check_totals
from etims.services.etims.service import EtimsService
from etims.services.etims.totals import TaxBuckets, apportion, line_amounts, money

FIXED_NOW = datetime(2026, 3, 14, 12, 30, 5, tzinfo=ZoneInfo("Africa/Nairobi"))


def _builder() -> EtimsService:
    """Service used only for document building; never talks to the authority."""
    config = FiscalConfig(
        base_url="https://etims.test/etims-api",
        tin="P051234567A",
        bhf_id="00",
        cmc_key="key",
        business_name="Test Kitchen",
        address="Nairobi",
        phone="+254700000000",
        email="kitchen@example.co.ke",
    )
    return EtimsService(config, client=None, ledger=None, store=None, clock=lambda: FIXED_NOW)


prices = st.decimals(min_value=Decimal("0"), max_value=Decimal("50000"), places=2)
quantities = st.decimals(min_value=Decimal("0.001"), max_value=Decimal("500"), places=3)
tax_types = st.sampled_from(TAX_CLASSES)

sale_lines = st.builds(
    SaleLine,
    name=st.just("Item"),
    quantity=quantities,
    unit_price=prices,
    tax_type=tax_types,
)


class TestMoney:
    """Tests for rounding helpers."""

    def test_rounds_half_up(self):
        assert money(Decimal("0.125")) == Decimal("0.13")
        assert money(Decimal("0.124")) == Decimal("0.12")

    def test_float_goes_through_str(self):
        assert money(2.675) == Decimal("2.68")

    def test_line_amounts_tax_on_top(self):
        amounts = line_amounts(Decimal("5.00"), 2, 16)
        assert amounts.supply == Decimal("10.00")
        assert amounts.taxable == Decimal("10.00")
        assert amounts.tax == Decimal("1.60")
        assert amounts.total == Decimal("11.60")


class TestApportion:
    """Tests for splitting an invoice-level amount across lines."""

    def test_even_split(self):
        assert apportion(Decimal("40"), 4) == [Decimal("10.00")] * 4

    def test_residue_on_last_part(self):
        assert apportion(Decimal("10"), 3) == [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")]

    def test_rejects_zero_parts(self):
        with pytest.raises(ValueError):
            apportion(Decimal("1"), 0)

    @settings(max_examples=200)
    @given(
        total=st.decimals(min_value=Decimal("0"), max_value=Decimal("1000000"), places=2),
        parts=st.integers(min_value=1, max_value=60),
    )
    def test_shares_always_sum_to_total(self, total, parts):
        shares = apportion(total, parts)
        assert len(shares) == parts
        assert sum(shares) == total
        assert all(share >= 0 for share in shares)


class TestTaxBuckets:
    """Tests for the five-class breakdown."""

    def test_payload_fields(self):
        buckets = TaxBuckets()
        buckets.add(TaxType.B, Decimal("10.00"), Decimal("1.60"))
        buckets.add(TaxType.A, Decimal("3.00"), Decimal("0"))
        rates = {t: Decimal("0") for t in TAX_CLASSES}
        rates[TaxType.B] = Decimal("16")

        fields = buckets.payload_fields(rates)

        assert fields["taxbl_amt_b"] == Decimal("10.00")
        assert fields["tax_amt_b"] == Decimal("1.60")
        assert fields["tax_rt_b"] == Decimal("16")
        assert fields["taxbl_amt_a"] == Decimal("3.00")
        assert fields["tot_taxbl_amt"] == Decimal("13.00")
        assert fields["tot_tax_amt"] == Decimal("1.60")
        assert fields["tot_amt"] == Decimal("14.60")


class TestSaleTotals:
    """Reconciliation of built sale documents."""

    def test_two_line_sale(self):
        order = SaleOrder(id=1, items=[
            SaleLine(name="Chapati", quantity=2, unit_price=Decimal("5.0")),
            SaleLine(name="Chai", quantity=1, unit_price=Decimal("3.0")),
        ])

        payload = _builder().build_sale(order, invoice_no=1)

        assert payload.tot_taxbl_amt == Decimal("13.00")
        assert payload.tot_tax_amt == Decimal("2.08")
        assert payload.tot_amt == Decimal("15.08")
        assert payload.tax_rt_b == Decimal("16")
        check_totals(payload)

    @settings(max_examples=150, deadline=None)
    @given(lines=st.lists(sale_lines, min_size=1, max_size=12))
    def test_built_sales_always_reconcile(self, lines):
        payload = _builder().build_sale(SaleOrder(id="prop", items=lines), invoice_no=7)

        check_totals(payload)
        assert payload.tot_amt == payload.tot_taxbl_amt + payload.tot_tax_amt
        for line in payload.item_list:
            assert line.tot_amt == line.taxbl_amt + line.tax_amt
        bucket_taxable = sum(getattr(payload, f"taxbl_amt_{t.value.lower()}") for t in TAX_CLASSES)
        bucket_tax = sum(getattr(payload, f"tax_amt_{t.value.lower()}") for t in TAX_CLASSES)
        assert bucket_taxable == payload.tot_taxbl_amt
        assert bucket_tax == payload.tot_tax_amt

    @settings(max_examples=100, deadline=None)
    @given(
        costs=st.lists(st.tuples(prices, quantities), min_size=1, max_size=10),
        vat=st.decimals(min_value=Decimal("0"), max_value=Decimal("100000"), places=2),
    )
    def test_built_purchases_always_reconcile(self, costs, vat):
        order = SupplierOrder(
            id="po-prop",
            vat_amount=vat,
            items=[PurchaseLine(name="Stock", cost_per_unit=c, quantity=q) for c, q in costs],
        )

        payload = _builder().build_purchase(order, invoice_no=9)

        check_totals(payload)
        assert payload.tot_tax_amt == vat


class TestCheckTotals:
    """Tampered documents are refused."""

    def _sale(self):
        order = SaleOrder(id=1, items=[
            SaleLine(name="Chapati", quantity=2, unit_price=Decimal("5.0")),
            SaleLine(name="Chai", quantity=1, unit_price=Decimal("3.0")),
        ])
        return _builder().build_sale(order, invoice_no=1)

    def test_grand_total_mismatch(self):
        payload = self._sale().model_copy(update={"tot_amt": Decimal("15.09")})
        with pytest.raises(FiscalValidationError) as exc_info:
            check_totals(payload)
        assert exc_info.value.field == "totAmt"

    def test_bucket_mismatch(self):
        payload = self._sale().model_copy(update={"tax_amt_b": Decimal("2.00")})
        with pytest.raises(FiscalValidationError) as exc_info:
            check_totals(payload)
        assert exc_info.value.field == "totTaxAmt"

    def test_line_mismatch(self):
        payload = self._sale()
        first = payload.item_list[0].model_copy(update={"tot_amt": Decimal("99.99")})
        tampered = payload.model_copy(update={"item_list": [first] + payload.item_list[1:]})
        with pytest.raises(FiscalValidationError) as exc_info:
            check_totals(tampered)
        assert exc_info.value.field == "itemList[1].totAmt"

    def test_item_count_mismatch(self):
        payload = self._sale().model_copy(update={"tot_item_cnt": 3})
        with pytest.raises(FiscalValidationError):
            check_totals(payload)

    def test_empty_document(self):
        payload = _builder().build_sale(SaleOrder(id=1, items=[]), invoice_no=1)
        with pytest.raises(FiscalValidationError) as exc_info:
            check_totals(payload)
        assert exc_info.value.field == "itemList"
