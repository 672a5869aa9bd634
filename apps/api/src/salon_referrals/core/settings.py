from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    version: str = "0.1.0"
    database_url: str = "sqlite+aiosqlite:///./salon_referrals.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "salon-referrals-default"

    # Square provider
    square_access_token: str = ""
    square_environment: Literal["sandbox", "production"] = "sandbox"
    square_api_version: str = "2024-10-17"
    square_location_id: str | None = None
    square_timeout_seconds: float = 15.0
    square_referral_code_attribute_key: str = "referral_code"
    square_personal_code_attribute_key: str = "personal_referral_code"

    # Referral rewards
    referral_base_url: str = "https://studio.example.com"
    friend_reward_cents: int = 1000
    referrer_reward_cents: int = 1000
    reward_currency: str = "USD"
    referrer_reward_promotion_orders_enabled: bool = False
    personal_code_max_attempts: int = 10
    referral_code_field_hints: list[str] = Field(
        default_factory=lambda: ["referral", "referred", "referrer", "ref code", "ref_code", "invite"]
    )

    # Email delivery
    referral_email_enabled: bool = True
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str = "rewards@studio.example.com"

    # SMS delivery
    sms_enabled: bool = False
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_messaging_service_sid: str | None = None
    twilio_phone_number: str | None = None
    twilio_timeout_seconds: float = 10.0
    referral_sms_template: str = (
        "Hi [Name], thanks for visiting! Share your link and your friends get $10 off: [referral_url]"
    )

    # Event processing
    referral_events_enabled: bool = True
    referral_event_task_queue: str = "referral-events"
    referral_event_max_retries: int = 5
    referral_event_retry_backoff_max_seconds: int = 600

    @field_validator("referral_code_field_hints", mode="before")
    @classmethod
    def _parse_field_hints(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return []

    @field_validator("referral_base_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value: object) -> object:
        if isinstance(value, str):
            return value.rstrip("/")
        return value

    @property
    def square_base_url(self) -> str:
        if self.square_environment == "production":
            return "https://connect.squareup.com"
        return "https://connect.squareupsandbox.com"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
