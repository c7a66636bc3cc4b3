"""
Configuration
=============
Loads environment variables (and a local .env file) using python-dotenv.

Environment Variables:
    DATABASE_URL         Hosted Postgres connection string (default: local SQLite)
    SUPABASE_URL         Base URL of the hosted project (auth + storage APIs)
    SUPABASE_ANON_KEY    Public API key sent as `apikey` / bearer token
    ISSUE_IMAGES_BUCKET  Storage bucket for issue screenshots (default: issue-images)
    APP_BASE_URL         Where password-reset links send the user back to
    LOG_LEVEL            DEBUG / INFO / WARNING / ERROR (default: INFO)
    LOG_DIR              Directory for the daily log file (unset: console only)
    HTTP_TIMEOUT         Seconds per auth/storage request (default: 10)
    DISPLAY_TIMEZONE     Timezone for dates when the browser's is unknown (default: UTC)

Without SUPABASE_URL / SUPABASE_ANON_KEY the forum still runs; screenshot
upload and the password-reset flow are switched off.
"""
from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_DATABASE_URL = "sqlite:///statafix.db"
DEFAULT_BUCKET = "issue-images"


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    supabase_url: str = ""
    supabase_anon_key: str = ""
    issue_images_bucket: str = DEFAULT_BUCKET
    app_base_url: str = "http://localhost:8501"
    log_level: str = "INFO"
    log_dir: str = ""
    http_timeout: float = 10.0
    display_timezone: str = "UTC"

    @property
    def hosted_services_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    @property
    def reset_redirect_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/?page=reset-password"


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def load_settings(dotenv: bool = True) -> Settings:
    if dotenv:
        load_dotenv()
    return Settings(
        database_url=os.getenv("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL,
        supabase_url=os.getenv("SUPABASE_URL", "").strip().rstrip("/"),
        supabase_anon_key=os.getenv("SUPABASE_ANON_KEY", "").strip(),
        issue_images_bucket=os.getenv("ISSUE_IMAGES_BUCKET", "").strip() or DEFAULT_BUCKET,
        app_base_url=os.getenv("APP_BASE_URL", "").strip() or "http://localhost:8501",
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        log_dir=os.getenv("LOG_DIR", "").strip(),
        http_timeout=_float_env("HTTP_TIMEOUT", 10.0),
        display_timezone=os.getenv("DISPLAY_TIMEZONE", "").strip() or "UTC",
    )
