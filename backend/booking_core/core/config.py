from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator
from typing import Any, ClassVar
from pathlib import Path
import os


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore", case_sensitive=True)

    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "booking-core"

    # Database URL
    # Use an absolute path so running the app from different directories
    # (e.g., repo root or backend/) always resolves the same DB file.
    BASE_DIR: ClassVar[Path] = Path(__file__).resolve().parents[2]
    SQLALCHEMY_DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'booking_core.db'}"

    # Upper bound on a row-lock wait inside the slot guard. Exceeding it
    # surfaces as a lock timeout (503), never as a slot conflict.
    DB_LOCK_TIMEOUT_MS: int = 5000

    # Redis backs the optional per-slot advisory lock and the outbox fanout.
    # Empty/none/disabled turns both into no-ops.
    REDIS_URL: str = "redis://localhost:6379/0"
    SLOT_LOCK_TTL_SECONDS: int = 15
    SLOT_LOCK_BLOCKING_SECONDS: float = 2.0

    # Payment gateway webhook authenticity
    PAYMENT_WEBHOOK_SECRET: str = ""
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Platform fee split (minor currency units / percent)
    PLATFORM_FEE_MINOR: int = 338
    GATEWAY_COST_MINOR: int = 38
    PROVIDER_SHARE_PERCENT: int = 40

    # Default currency code used on payment records
    DEFAULT_CURRENCY: str = "usd"

    # A confirmed booking whose start passed this long ago without completion
    # is swept to "missed".
    MISSED_GRACE_MINUTES: int = 30

    LOG_LEVEL: str = "INFO"

    @field_validator("PAYMENT_WEBHOOK_SECRET", "REDIS_URL", mode="before")
    def strip_whitespace(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("DEFAULT_CURRENCY", mode="before")
    def lower_currency(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("PROVIDER_SHARE_PERCENT")
    def share_in_range(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("PROVIDER_SHARE_PERCENT must be between 0 and 100")
        return v

    @model_validator(mode="after")
    def gateway_cost_within_fee(self) -> "Settings":
        if self.GATEWAY_COST_MINOR < 0 or self.PLATFORM_FEE_MINOR < 0:
            raise ValueError("fee amounts must be non-negative")
        if self.GATEWAY_COST_MINOR > self.PLATFORM_FEE_MINOR:
            raise ValueError("GATEWAY_COST_MINOR cannot exceed PLATFORM_FEE_MINOR")
        return self


def load_settings() -> "Settings":
    return Settings(_env_file=os.getenv("ENV_FILE", str(Path(__file__).resolve().parents[3] / ".env")))


settings = load_settings()


def redis_enabled() -> bool:
    url = (settings.REDIS_URL or "").strip()
    return bool(url) and url.lower() not in {"none", "disabled", "false", "0"}
