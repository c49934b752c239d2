"""
KRA eTIMS code vocabularies

Tax classes, unit codes, document type codes and item code generation.
Lookups that translate free-text master data (units, categories) are
total: unknown values map to a documented default instead of failing,
so incomplete master data never blocks an item registration.
"""

import hashlib
import re
import secrets
import string
import time
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

SUCCESS_CODE = "000"
NETWORK_ERROR = "NETWORK_ERROR"
LOCAL_VALIDATION = "LOCAL_VALIDATION"


class TaxType(str, Enum):
    """Authority tax classes."""
    A = "A"  # Exempt
    B = "B"  # Standard rate
    C = "C"  # Zero rated
    D = "D"  # Non-VAT
    E = "E"  # Reduced rate

    @classmethod
    def standard(cls) -> "TaxType":
        return cls.B


TAX_CLASSES = tuple(TaxType)


def tax_rate_for(tax_type: TaxType, standard_rate: Decimal, reduced_rate: Decimal) -> Decimal:
    """Percentage applied to a taxable amount of the given class."""
    if tax_type is TaxType.B:
        return Decimal(standard_rate)
    if tax_type is TaxType.E:
        return Decimal(reduced_rate)
    return Decimal("0")


class UnitCode(str, Enum):
    """Authority quantity unit codes."""
    BAG = "BG"
    BOX = "BOX"
    CAN = "CA"
    DOZEN = "DZ"
    GRAM = "GRM"
    KILOGRAM = "KG"
    LITRE = "L"
    MILLIGRAM = "MGM"
    PACKET = "PA"
    SET = "SET"
    PIECE = "U"


UNIT_ALIASES = {
    "bag": UnitCode.BAG,
    "box": UnitCode.BOX,
    "can": UnitCode.CAN,
    "dozen": UnitCode.DOZEN,
    "gram": UnitCode.GRAM,
    "g": UnitCode.GRAM,
    "kg": UnitCode.KILOGRAM,
    "kilogram": UnitCode.KILOGRAM,
    "kilo gramme": UnitCode.KILOGRAM,
    "litre": UnitCode.LITRE,
    "liter": UnitCode.LITRE,
    "l": UnitCode.LITRE,
    "milligram": UnitCode.MILLIGRAM,
    "mg": UnitCode.MILLIGRAM,
    "packet": UnitCode.PACKET,
    "set": UnitCode.SET,
    "piece": UnitCode.PIECE,
    "pieces": UnitCode.PIECE,
    "item": UnitCode.PIECE,
    "number": UnitCode.PIECE,
    "pcs": UnitCode.PIECE,
    "u": UnitCode.PIECE,
    "portion": UnitCode.PIECE,
    "serving": UnitCode.PIECE,
    "plate": UnitCode.PIECE,
    "bowl": UnitCode.PIECE,
}


def to_unit_code(unit: Optional[str]) -> UnitCode:
    """Map a free-text unit to an authority unit code.

    Unrecognized or empty units map to ``UnitCode.PIECE``.
    """
    if not unit:
        return UnitCode.PIECE
    return UNIT_ALIASES.get(unit.strip().lower(), UnitCode.PIECE)


class PackageUnit(str, Enum):
    NO_PACKAGE = "NT"


class ItemType(str, Enum):
    RAW_MATERIAL = "1"
    FINISHED_PRODUCT = "2"
    SERVICE = "3"


class SalesType(str, Enum):
    NORMAL = "N"


class ReceiptType(str, Enum):
    SALE = "S"
    PURCHASE = "P"


class PaymentType(str, Enum):
    CASH = "01"
    CREDIT = "02"
    CASH_CREDIT = "03"
    BANK_CHECK = "04"
    CARD = "05"
    MOBILE_MONEY = "06"
    OTHER = "07"


class RegistrationType(str, Enum):
    MANUAL = "M"
    AUTOMATIC = "A"


CONFIRMED_STATUS = "02"


class StockMovementType(str, Enum):
    """Stock in/out reason codes (``sarTyCd``). Codes below 10 are incoming."""
    IMPORT = "01"
    PURCHASE = "02"
    RETURN_IN = "03"
    MOVEMENT_IN = "04"
    PROCESSING_IN = "05"
    ADJUSTMENT_IN = "06"
    SALE = "11"
    RETURN_OUT = "12"
    MOVEMENT_OUT = "13"
    PROCESSING_OUT = "14"
    DISCARDING = "15"
    ADJUSTMENT_OUT = "16"

    @property
    def is_incoming(self) -> bool:
        return int(self.value) < 10


DEFAULT_CLASSIFICATION = "5059690800"

CATEGORY_CLASSIFICATIONS = {
    "meats": "73131600",
    "drinks": "50200000",
    "vegetables": "50400000",
    "package": "24120000",
    "dairy": "50130000",
    "grains": "50130000",
    "oil": "50150000",
    "fruits": "50300000",
    "canned": "50460000",
    "nuts": "50100000",
}


def classification_for(category: Optional[str]) -> str:
    """Item classification code for a product category; food default otherwise."""
    if not category:
        return DEFAULT_CLASSIFICATION
    return CATEGORY_CLASSIFICATIONS.get(category.strip().lower(), DEFAULT_CLASSIFICATION)


# <country prefix><last 6 digits of epoch ms><6 random alphanumerics>
ITEM_CODE_PATTERN = re.compile(r"^[A-Z]{2}\d{6}[A-Z0-9]{6}$")
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_item_code(prefix: str = "KE") -> str:
    """Generate a system item code."""
    stamp = str(int(time.time() * 1000))[-6:]
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))
    return f"{prefix.upper()[:2]}{stamp}{suffix}"


def format_date(value: datetime) -> str:
    return value.strftime("%Y%m%d")


def format_datetime(value: datetime) -> str:
    return value.strftime("%Y%m%d%H%M%S")


def document_number_for(business_id) -> int:
    """Deterministic invoice number for a business record id.

    Short numeric ids are used as-is; anything else is hashed into the
    authority's positive integer range, so the same id always yields the
    same number.
    """
    text = str(business_id).strip()
    if text.isdigit() and 0 < len(text) <= 9 and int(text) > 0:
        return int(text)
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return int(digest[:15], 16) % 999_999_999 + 1
