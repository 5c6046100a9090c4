"""Central application configuration powered by Pydantic settings."""

from __future__ import annotations

from typing import List

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class SMTPSettings(BaseSettings):
    """Outgoing mail server configuration."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    host: str | None = Field(default=None, validation_alias="SMTP_HOST")
    port: int = Field(default=587, validation_alias="SMTP_PORT")
    username: str | None = Field(default=None, validation_alias="SMTP_USER")
    password: str | None = Field(default=None, validation_alias="SMTP_PASS")
    from_address: str = Field(default="bookings@rentdesk.local", validation_alias="EMAIL_FROM")

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.username and self.password)


class RentalSettings(BaseSettings):
    """Mileage allowances and pricing defaults applied by the booking workflow."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    free_mileage_per_day: int = Field(default=100, validation_alias="FREE_MILEAGE_PER_DAY")
    extra_mileage_rate: float = Field(default=50.0, validation_alias="EXTRA_MILEAGE_RATE")
    currency_symbol: str = Field(default="Rs.", validation_alias="CURRENCY_SYMBOL")
    reminder_lead_hours: int = Field(default=24, validation_alias="REMINDER_LEAD_HOURS")


class InvoiceSettings(BaseSettings):
    """Invoice numbering, tax and payment terms."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    prefix: str = Field(default="INV", validation_alias="INVOICE_PREFIX")
    tax_rate: float = Field(default=0.0, validation_alias="INVOICE_TAX_RATE")
    payment_terms_days: int = Field(default=7, validation_alias="INVOICE_PAYMENT_TERMS_DAYS")
    default_terms: str = Field(
        default="Payment is due within the agreed payment terms. Late returns are charged per day.",
        validation_alias="INVOICE_DEFAULT_TERMS",
    )


class Settings(BaseSettings):
    """Application settings loaded from the environment with validation."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")
    secret_key: str = Field(default="supersecret", validation_alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", validation_alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    stripe_secret_key: str | None = Field(default=None, validation_alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str | None = Field(default=None, validation_alias="STRIPE_WEBHOOK_SECRET")
    public_url: str = Field(default="http://localhost:3000", validation_alias="PUBLIC_URL")
    env: str = Field(default="development", validation_alias="ENV")

    smtp: SMTPSettings = Field(default_factory=SMTPSettings)
    rental: RentalSettings = Field(default_factory=RentalSettings)
    invoice: InvoiceSettings = Field(default_factory=InvoiceSettings)

    @field_validator("env", mode="before")
    @classmethod
    def _normalise_env(cls, value: str | None) -> str:
        if not value:
            return "development"
        return str(value).lower()

    @model_validator(mode="after")
    def _validate_production_requirements(self) -> "Settings":
        if self.env != "production":
            return self

        missing: List[str] = []
        if not self.database_url:
            missing.append("DATABASE_URL")
        if not self.secret_key or self.secret_key == "supersecret":
            missing.append("SECRET_KEY")
        if not self.stripe_secret_key:
            missing.append("STRIPE_SECRET_KEY")
        if not self.smtp.host:
            missing.append("SMTP_HOST")
        if not self.smtp.username:
            missing.append("SMTP_USER")
        if not self.smtp.password:
            missing.append("SMTP_PASS")

        if missing:
            required = ", ".join(sorted(set(missing)))
            raise ValueError("Missing required environment variables for production: " + required)
        return self


settings = Settings()
