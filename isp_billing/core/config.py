from decimal import Decimal
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "ISP Billing Engine"
    env: str = "dev"

    # DATABASE
    database_url: str = "sqlite:///./isp_billing.db"
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # BILLING CYCLE
    billing_vat_rate: Decimal = Field(default=Decimal("0.12"), ge=0, le=1)
    billing_vat_on_carry_forward: bool = True
    billing_due_days: int = Field(default=7, ge=0, le=60)
    billing_clamp_short_months: bool = True
    billing_advance_generation_days: int = Field(default=0, ge=0, le=28)
    billing_prorate_first_invoice: bool = True
    billing_system_operator_id: str = "system"

    # PAYMENT SETTLEMENT WORKER
    payment_gateway_provider: str = "stub"
    payment_gateway_base_url: str | None = None
    payment_gateway_api_key: str | None = None
    payment_gateway_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    payment_batch_limit: int = Field(default=20, ge=1, le=500)
    payment_max_attempts: int = Field(default=3, ge=1, le=20)
    payment_retry_base_seconds: int = Field(default=120, ge=1, le=86_400)
    payment_retry_max_seconds: int = Field(default=3600, ge=1, le=86_400)
    payment_processing_stale_seconds: int = Field(default=600, ge=30, le=86_400)
    worker_lock_ttl_seconds: int = Field(default=300, ge=10, le=86_400)
    worker_contention_warn_ticks: int = Field(default=5, ge=1, le=1000)

    # DOCUMENT DISPATCH
    document_sender_provider: str = "smtp"
    document_storage_dir: Path = Path("storage/billing")
    dispatch_max_attempts: int = Field(default=3, ge=1, le=20)
    dispatch_batch_size: int = Field(default=50, ge=1, le=1000)
    smtp_host: str | None = None
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_sender_email: str | None = None
    smtp_reply_to_email: str | None = None
    smtp_use_starttls: bool = True
    smtp_use_ssl: bool = False
    smtp_timeout_seconds: int = Field(default=20, ge=1, le=300)

    @field_validator(
        "payment_gateway_base_url",
        "payment_gateway_api_key",
        "smtp_host",
        "smtp_username",
        "smtp_password",
        "smtp_sender_email",
        "smtp_reply_to_email",
        mode="before",
    )
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("payment_gateway_provider", "document_sender_provider", mode="before")
    @classmethod
    def normalize_provider_name(cls, value: str) -> str:
        return str(value or "").strip().lower()

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        if self.payment_retry_max_seconds < self.payment_retry_base_seconds:
            raise ValueError("PAYMENT_RETRY_MAX_SECONDS cannot be lower than PAYMENT_RETRY_BASE_SECONDS")

        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if self.payment_gateway_provider == "stub":
            raise ValueError("PAYMENT_GATEWAY_PROVIDER cannot be 'stub' in production")
        if self.payment_gateway_provider == "http":
            if not self.payment_gateway_base_url:
                raise ValueError("PAYMENT_GATEWAY_BASE_URL is required in production")
            if not self.payment_gateway_base_url.lower().startswith("https://"):
                raise ValueError("PAYMENT_GATEWAY_BASE_URL must use https in production")

        if self.smtp_use_ssl and self.smtp_use_starttls:
            raise ValueError("Set only one of SMTP_USE_SSL or SMTP_USE_STARTTLS in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
