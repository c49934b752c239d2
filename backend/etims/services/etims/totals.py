"""Money arithmetic for eTIMS documents.

All amounts are Decimals rounded half-up to cents. Tax is charged on top
of the supply amount, so a line's total is ``taxable + tax``.
"""

from dataclasses import dataclass, field
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Dict, List, Union

from etims.services.etims.codes import TAX_CLASSES, TaxType

CENT = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def money(value: Number) -> Decimal:
    """Round to cents. Floats go through ``str`` to avoid binary drift."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    return Decimal(value)


@dataclass(frozen=True)
class LineAmounts:
    supply: Decimal
    taxable: Decimal
    tax: Decimal

    @property
    def total(self) -> Decimal:
        return self.taxable + self.tax


def line_amounts(unit_price: Number, quantity: Number, rate_percent: Number) -> LineAmounts:
    """Supply = price x qty; tax = supply x rate."""
    supply = money(to_decimal(unit_price) * to_decimal(quantity))
    tax = money(supply * to_decimal(rate_percent) / Decimal(100))
    return LineAmounts(supply=supply, taxable=supply, tax=tax)


def apportion(total: Number, parts: int) -> List[Decimal]:
    """Split ``total`` into ``parts`` equal cent amounts.

    Rounding residue goes to the last part so the shares always sum to
    ``total`` exactly.
    """
    if parts < 1:
        raise ValueError("parts must be positive")
    total = money(total)
    share = (total / parts).quantize(CENT, rounding=ROUND_DOWN)
    shares = [share] * parts
    shares[-1] = total - share * (parts - 1)
    return shares


@dataclass
class TaxBuckets:
    """Per-class taxable and tax accumulators for classes A-E."""

    taxable: Dict[TaxType, Decimal] = field(
        default_factory=lambda: {t: Decimal("0.00") for t in TAX_CLASSES}
    )
    tax: Dict[TaxType, Decimal] = field(
        default_factory=lambda: {t: Decimal("0.00") for t in TAX_CLASSES}
    )

    def add(self, tax_type: TaxType, taxable: Decimal, tax: Decimal) -> None:
        self.taxable[tax_type] += taxable
        self.tax[tax_type] += tax

    @property
    def total_taxable(self) -> Decimal:
        return sum(self.taxable.values(), Decimal("0.00"))

    @property
    def total_tax(self) -> Decimal:
        return sum(self.tax.values(), Decimal("0.00"))

    @property
    def total(self) -> Decimal:
        return self.total_taxable + self.total_tax

    def payload_fields(self, rates: Dict[TaxType, Decimal]) -> Dict[str, Decimal]:
        """Flatten into ``taxbl_amt_a``.. ``tax_rt_a``.. ``tax_amt_a``.. fields."""
        fields: Dict[str, Decimal] = {}
        for tax_type in TAX_CLASSES:
            suffix = tax_type.value.lower()
            fields[f"taxbl_amt_{suffix}"] = self.taxable[tax_type]
            fields[f"tax_rt_{suffix}"] = rates.get(tax_type, Decimal("0"))
            fields[f"tax_amt_{suffix}"] = self.tax[tax_type]
        fields["tot_taxbl_amt"] = self.total_taxable
        fields["tot_tax_amt"] = self.total_tax
        fields["tot_amt"] = self.total
        return fields
