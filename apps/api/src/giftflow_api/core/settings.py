from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./giftflow.db"

    # Application URLs
    api_base_url: str = "http://localhost:8000"
    redemption_base_url: str = "http://localhost:3000/redeem"

    # Internal API security
    internal_api_key: str = ""

    # Card issuing API (on-demand provisioning tier)
    card_issuing_api_url: str | None = None
    card_issuing_api_key: str | None = None
    card_issuing_timeout_seconds: float = 10.0

    # Reward provisioning
    provisioning_claim_attempts: int = 5
    provisioning_lease_seconds: int = 300
    low_inventory_threshold: int = 10

    # SMS gateway
    sms_provider: str = "twilio"
    sms_gateway_base_url: str = "https://api.twilio.com/2010-04-01"
    sms_account_sid: str | None = None
    sms_auth_token: str | None = None
    sms_from_number: str | None = None
    sms_timeout_seconds: float = 10.0
    sms_status_callback_url: str | None = None

    # Telephony webhooks
    qualifying_call_dispositions: list[str] = Field(
        default_factory=lambda: ["interested", "completed", "qualified", "sale"]
    )

    @field_validator("qualifying_call_dispositions", mode="before")
    @classmethod
    def _parse_dispositions(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return []

    # Time-delayed condition sweep
    condition_sweep_worker_enabled: bool = False
    condition_sweep_interval_seconds: int = 300
    condition_sweep_limit: int = 200
    condition_sweep_trigger_label: str = "scheduler"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
