"""Runtime settings loaded from environment variables and .env files."""

import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_EINVOICE_BASE_URL = "https://api.einvoice.nat.gov.tw"


class Settings(BaseModel):
    """Settings for the resolver, the lookup client and logging."""

    einvoice_app_id: str | None = Field(
        default=None,
        description="App ID issued by the e-invoice platform; enables lookups.",
    )
    einvoice_base_url: str = Field(default=DEFAULT_EINVOICE_BASE_URL)
    einvoice_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds allowed for one authoritative lookup.",
    )
    min_text_confidence: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Recognised text candidates at or below this are dropped.",
    )
    log_level: str = Field(default="WARNING")
    log_format: str = Field(default="plain", description="plain or json")

    @property
    def lookup_enabled(self) -> bool:
        return bool(self.einvoice_app_id)


def _env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once, reading a .env file if present."""
    load_dotenv()
    values = {
        "einvoice_app_id": _env("EINVOICE_APP_ID"),
        "einvoice_base_url": _env("EINVOICE_BASE_URL"),
        "einvoice_timeout": _env("EINVOICE_TIMEOUT"),
        "min_text_confidence": _env("SLIPCHECK_MIN_TEXT_CONFIDENCE"),
        "log_level": _env("SLIPCHECK_LOG_LEVEL"),
        "log_format": _env("SLIPCHECK_LOG_FORMAT"),
    }
    return Settings(**{key: value for key, value in values.items() if value is not None})
