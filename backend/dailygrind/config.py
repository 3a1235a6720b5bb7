from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)
    """Application runtime configuration."""

    app_name: str = "Daily Grind"
    host: str = os.getenv("DG_HOST", "127.0.0.1")
    port: int = int(os.getenv("DG_PORT", "8080"))
    log_level: str = os.getenv("DG_LOG_LEVEL", "INFO")

    sqlite_path: Path = Path(os.getenv("DG_SQLITE_PATH", "./data/dailygrind.db"))
    state_dir: Path = Path(os.getenv("DG_STATE_DIR", "./data/state"))
    export_dir: Path = Path(os.getenv("DG_EXPORT_DIR", "./data/exports"))

    timezone: str = os.getenv("TZ", "UTC")
    daily_limit_hours: float = float(os.getenv("DG_DAILY_LIMIT_HOURS", "8"))
    tick_interval_seconds: float = float(os.getenv("DG_TICK_INTERVAL", "1"))

    bucket_project_name: str = os.getenv("DG_BUCKET_PROJECT_NAME", "Internal Activities")
    bucket_project_description: str = "Time spent on practice, learning and other internal activities."

    token_secret: str = os.getenv("DG_TOKEN_SECRET", "change-me")
    token_ttl_hours: int = int(os.getenv("DG_TOKEN_TTL_HOURS", "720"))
    allow_registration: bool = os.getenv("DG_ALLOW_REGISTRATION", "true").lower() == "true"

    summarizer_url: Optional[str] = os.getenv("DG_SUMMARIZER_URL")
    summarizer_api_key: Optional[str] = os.getenv("DG_SUMMARIZER_API_KEY")
    summarizer_timeout: int = int(os.getenv("DG_SUMMARIZER_TIMEOUT", "60"))

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return str(value or "INFO").strip().upper()

    @field_validator("summarizer_url", mode="before")
    @classmethod
    def _strip_summarizer_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip().rstrip("/")
        return text or None

    def ensure_directories(self) -> None:
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.export_dir.mkdir(parents=True, exist_ok=True)


settings = Settings()

# Ensure essential directories exist
settings.ensure_directories()
