"""Application configuration using pydantic-settings.

All environment variables are read through the ``settings`` object.
The fiscal integration gets its own immutable ``FiscalConfig`` value,
built once from the settings at startup and handed to the transport
client and the domain service. Nothing mutates it afterwards.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict

from etims.core.exceptions import FiscalConfigurationError


# Authority operation name -> endpoint path
ENDPOINTS: Dict[str, str] = {
    "initialization": "/selectInitOsdcInfo",
    "code_list": "/selectCodeList",
    "item_classification": "/selectItemClsList",
    "branch_list": "/selectBhfList",
    "notices": "/selectNotices",
    "items": "/saveItem",
    "item_list": "/selectItemList",
    "item_composition": "/saveItemComposition",
    "purchases": "/insertTrnsPurchase",
    "sales": "/saveTrnsSalesOsdc",
    "stock_io": "/insertStockIO",
    "stock_master": "/saveStockMaster",
    "stock_moves": "/selectStockMoveList",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = "sqlite:///./etims.db"

    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    api_v1_prefix: str = "/api/v1"

    # ==========================================================================
    # KRA eTIMS
    # ==========================================================================
    kra_base_url: str = "https://etims-api-test.kra.go.ke/etims-api"
    kra_tin: Optional[str] = None
    kra_bhf_id: Optional[str] = None
    kra_cmc_key: Optional[str] = None
    kra_timeout_seconds: float = 5.0
    kra_max_attempts: int = 3

    # Business identity printed on receipts
    business_name: Optional[str] = None
    business_address: Optional[str] = None
    business_phone: Optional[str] = None
    business_email: Optional[str] = None

    default_tax_rate: Decimal = Decimal("16")
    reduced_tax_rate: Decimal = Decimal("8")
    default_currency: str = "KES"
    default_country: str = "KE"
    timezone: str = "Africa/Nairobi"

    receipt_top_message: str = "Thank you for dining with us!"
    receipt_bottom_message: str = "Please come again"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()


class FiscalConfig(BaseModel):
    """Process-wide authority configuration. Frozen after construction."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    # (operation, path) pairs, immutable like the rest of the config
    endpoints: Tuple[Tuple[str, str], ...] = tuple(ENDPOINTS.items())

    tin: str
    bhf_id: str
    cmc_key: str

    business_name: str
    address: str
    phone: str
    email: str

    default_tax_rate: Decimal = Decimal("16")
    reduced_tax_rate: Decimal = Decimal("8")
    default_currency: str = "KES"
    default_country: str = "KE"
    timezone: str = "Africa/Nairobi"

    receipt_top_message: str = "Thank you for dining with us!"
    receipt_bottom_message: str = "Please come again"

    timeout_seconds: float = 5.0
    max_attempts: int = 3

    def url_for(self, operation: str) -> str:
        try:
            path = dict(self.endpoints)[operation]
        except KeyError:
            raise FiscalConfigurationError(f"Unknown eTIMS operation: {operation!r}")
        return f"{self.base_url.rstrip('/')}{path}"

    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "tin": self.tin,
            "bhfId": self.bhf_id,
            "cmcKey": self.cmc_key,
        }

    @property
    def registrar(self) -> str:
        """Registrar/modifier identity; the authority caps it at 20 chars."""
        return self.business_name[:20]


_REQUIRED = {
    "kra_base_url": "KRA_BASE_URL",
    "kra_tin": "KRA_TIN",
    "kra_bhf_id": "KRA_BHF_ID",
    "kra_cmc_key": "KRA_CMC_KEY",
    "business_name": "BUSINESS_NAME",
    "business_address": "BUSINESS_ADDRESS",
    "business_phone": "BUSINESS_PHONE",
    "business_email": "BUSINESS_EMAIL",
}


def build_fiscal_config(source: Optional[Settings] = None) -> FiscalConfig:
    """Build the fiscal configuration, failing on missing tenant identity."""
    source = source or settings
    missing = [env for field, env in _REQUIRED.items() if not getattr(source, field)]
    if missing:
        raise FiscalConfigurationError(
            "FATAL: eTIMS configuration incomplete, set "
            + ", ".join(missing)
        )
    if source.kra_max_attempts < 1:
        raise FiscalConfigurationError("KRA_MAX_ATTEMPTS must be at least 1")

    return FiscalConfig(
        base_url=source.kra_base_url,
        tin=source.kra_tin,
        bhf_id=source.kra_bhf_id,
        cmc_key=source.kra_cmc_key,
        business_name=source.business_name,
        address=source.business_address,
        phone=source.business_phone,
        email=source.business_email,
        default_tax_rate=source.default_tax_rate,
        reduced_tax_rate=source.reduced_tax_rate,
        default_currency=source.default_currency,
        default_country=source.default_country,
        timezone=source.timezone,
        receipt_top_message=source.receipt_top_message,
        receipt_bottom_message=source.receipt_bottom_message,
        timeout_seconds=source.kra_timeout_seconds,
        max_attempts=source.kra_max_attempts,
    )


@lru_cache
def get_fiscal_config() -> FiscalConfig:
    """Get the cached fiscal configuration (called once at startup)."""
    return build_fiscal_config()
