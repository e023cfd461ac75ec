"""Configuration helpers for the transcription relay."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


@dataclass
class Settings:
    """Centralized environment-driven configuration.

    The Speechmatics API key is the only required value; everything else has a
    default that matches the hosted Speechmatics endpoints.
    """

    speechmatics_api_key: Optional[str] = os.getenv("SPEECHMATICS_API_KEY")
    speechmatics_api_url: str = os.getenv("SPEECHMATICS_API_URL", "https://asr.api.speechmatics.com/v2")
    speechmatics_rt_url: str = os.getenv("SPEECHMATICS_RT_URL", "wss://eu2.rt.speechmatics.com/v2")
    default_language: str = os.getenv("DEFAULT_LANGUAGE", "ar")
    max_concurrent_sessions: int = int(os.getenv("MAX_CONCURRENT_SESSIONS", "2"))
    # Seconds between liveness checks on each client socket
    keepalive_interval: float = float(os.getenv("KEEPALIVE_INTERVAL_SECONDS", "30"))
    rt_max_delay: float = float(os.getenv("RT_MAX_DELAY", "2.0"))
    max_upload_bytes: int = int(os.getenv("MAX_UPLOAD_BYTES", str(100 * 1024 * 1024)))
    batch_poll_attempts: int = int(os.getenv("BATCH_POLL_ATTEMPTS", "30"))
    batch_poll_base_delay: float = float(os.getenv("BATCH_POLL_BASE_DELAY", "3.0"))
    batch_poll_max_delay: float = float(os.getenv("BATCH_POLL_MAX_DELAY", "30.0"))
    batch_create_timeout: float = float(os.getenv("BATCH_CREATE_TIMEOUT", "120.0"))
    batch_poll_timeout: float = float(os.getenv("BATCH_POLL_TIMEOUT", "10.0"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "3000"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance to avoid repeated environment reads."""

    return Settings()


settings = get_settings()
