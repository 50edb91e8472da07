from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(..., alias="DATABASE_URL")

    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Quantum installment amounts are rounded to; the last installment absorbs the remainder.
    fee_rounding_unit: Decimal = Field(Decimal("1"), alias="FEE_ROUNDING_UNIT", gt=0)
    payment_max_retries: int = Field(3, alias="PAYMENT_MAX_RETRIES", ge=1)
    # Tolerance for payment timestamps slightly ahead of the server clock
    payment_clock_skew_seconds: int = Field(300, alias="PAYMENT_CLOCK_SKEW_SECONDS", ge=0)
    receipt_prefix: str = Field("RCP", alias="RECEIPT_PREFIX")
    report_cache_enabled: bool = Field(True, alias="REPORT_CACHE_ENABLED")
    defaulter_days: int = Field(30, alias="DEFAULTER_DAYS", ge=0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
