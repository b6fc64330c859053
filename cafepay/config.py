from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cafepay.models import MerchantIdentity

# Shipped in sample .env files; treated the same as an unset token
PLACEHOLDER_TOKEN = "YOUR_BAKONG_API_TOKEN_HERE"


class Settings(BaseSettings):
    # Bakong settlement API
    bakong_base_url: str = Field(default="https://api-bakong.nbc.gov.kh", alias="BAKONG_BASE_URL")
    bakong_token: str = Field(default="", alias="BAKONG_TOKEN")
    settlement_timeout_secs: float = Field(default=10.0, gt=0, alias="SETTLEMENT_TIMEOUT_SECS")

    # Merchant identity encoded into every QR
    bakong_account_id: str = Field(default="", alias="BAKONG_ACCOUNT_ID")
    merchant_name: str = Field(default="CVG Cafe", alias="MERCHANT_NAME")
    merchant_city: str = Field(default="Phnom Penh", alias="MERCHANT_CITY")
    default_currency: str = Field(default="USD", alias="CURRENCY")

    # Orders
    # Bill number tag holds 25 chars: prefix + "-" + 14-digit stamp + "-" + 3 digits
    order_prefix: str = Field(default="CAFE", min_length=1, max_length=5, alias="ORDER_PREFIX")
    payment_ttl_secs: int = Field(default=600, gt=0, alias="PAYMENT_TTL_SECS")
    order_retention_secs: int = Field(default=3600, alias="ORDER_RETENTION_SECS")

    # HTTP / process
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=4000, alias="PORT")
    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,  # Settings(bakong_token=...) in tests
    )

    @field_validator("default_currency", "log_level")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def settlement_enabled(self) -> bool:
        token = self.bakong_token.strip()
        return bool(token) and token != PLACEHOLDER_TOKEN

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def merchant_identity(self) -> MerchantIdentity:
        return MerchantIdentity(
            account_id=self.bakong_account_id.strip(),
            name=self.merchant_name,
            city=self.merchant_city,
        )


settings = Settings()
