"""Service configuration using pydantic-settings."""

from __future__ import annotations

import os
import tempfile
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

_DEFAULT_PERSISTENT_DIR = os.path.join(tempfile.gettempdir(), "wexdownloader-temp")


class Settings(BaseSettings):
    """All configuration loaded from environment / .env file."""

    # ── Listener ──────────────────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3053)
    log_level: str = Field(default="INFO")

    # ── Browser ───────────────────────────────────────────────────────────────
    persistent_dir: str = Field(
        default=_DEFAULT_PERSISTENT_DIR,
        description="Root under which per-request working areas are created",
    )
    headless: bool = Field(default=True)

    # ── Retry / timeouts ──────────────────────────────────────────────────────
    # Backoff is a fixed delay between attempts, not exponential.
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=2.0, ge=0)
    api_timeout_seconds: float = Field(default=10.0)
    navigation_timeout_seconds: float = Field(default=30.0)
    download_timeout_seconds: float = Field(default=30.0)
    relay_timeout_seconds: float = Field(default=30.0)
    reload_timeout_seconds: float = Field(default=5.0)

    # ── Missive ───────────────────────────────────────────────────────────────
    missive_api_key: Optional[str] = Field(default=None)
    missive_api_base_url: str = Field(default="https://public.missiveapp.com/v1")

    # ── Routing ───────────────────────────────────────────────────────────────
    # File names containing routing_marker (case-insensitive) go to the
    # grand-total endpoint; everything else goes to the report endpoint.
    routing_marker: str = Field(default="grandtotalreport")
    grand_total_webhook_url: Optional[str] = Field(default=None)
    report_webhook_url: Optional[str] = Field(default=None)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
