# backend/bookingcore/core/config.py
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_BACKEND_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    environment: str = Field(
        default="development",
        description="Deployment environment (development|staging|production)",
    )
    log_level: str = Field(default="INFO", description="Root log level")

    database_url: str = Field(
        default=f"sqlite:///{_BACKEND_ROOT / 'bookings.db'}",
        description="SQLAlchemy database URL for the booking store",
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Booking policy
    booking_conflict_check_enabled: bool = Field(
        default=True,
        description="Reject new bookings that overlap an active booking of any listed coach",
    )
    booking_request_ttl_hours: Optional[int] = Field(
        default=None,
        description=(
            "Hours after which unanswered requests are auto-cancelled by "
            "expire_stale_bookings(); None disables expiry"
        ),
    )

    # Notifications
    notification_channel: Literal["database", "logging"] = Field(
        default="database",
        description="Where dispatched booking notifications are delivered",
    )
    outbox_batch_size: int = Field(default=200, description="Outbox rows fetched per dispatch pass")
    outbox_max_attempts: int = Field(
        default=5, description="Delivery attempts before an outbox row is marked FAILED"
    )

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("database_url", mode="after")
    @classmethod
    def _normalize_database_url(cls, v: str) -> str:
        """Hosted providers hand out postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[len("postgres://") :]
        return v

    @field_validator("booking_request_ttl_hours")
    @classmethod
    def _validate_ttl(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("booking_request_ttl_hours must be positive when set")
        return v


settings = Settings()
