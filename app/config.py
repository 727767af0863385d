from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env staat in de project root, naast pyproject.toml
ENV_FILE = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(ENV_FILE, override=False)


class Settings(BaseSettings):
    # ---- App / Infra ----
    # Niet verplicht op class-niveau; de pool valideert bij aanmaken.
    DATABASE_URL: Optional[str] = Field(default_factory=lambda: os.getenv("DATABASE_URL"))

    # ---- OpenAI ----
    OPENAI_API_KEY: Optional[str] = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    OPENAI_MODEL: str = "gpt-4.1-mini"

    # ---- Schedule ----
    PIPELINE_TIMEZONE: str = "Asia/Seoul"
    PIPELINE_SCHEDULE_HOUR: int = Field(default=3, ge=0, le=23)
    PIPELINE_SCHEDULE_MINUTE: int = Field(default=0, ge=0, le=59)
    PUBLISHER_INTERVAL_MINUTES: int = Field(default=120, ge=1)
    RUN_RETRY_DELAY_SECONDS: float = Field(default=300.0, ge=0)

    # ---- Ranking / classification ----
    RANKING_TOP_N: int = Field(default=10, ge=1)
    CATEGORY_TOP_K: int = Field(default=10, ge=1)
    CLASSIFY_CHUNK_SIZE: int = Field(default=150, ge=1)
    CLASSIFY_MIN_INTERVAL_SECONDS: float = Field(default=10.0, ge=0)

    # ---- Post queue ----
    POST_MAX_RETRIES: int = Field(default=3, ge=1)
    POST_MIN_BODY_LENGTH: int = Field(default=500, ge=0)

    # ---- Sources ----
    SOURCE_CONNECTORS: List[str] = Field(default_factory=lambda: ["demo"])

    # ---- Blog publishing (Tistory) ----
    BLOG_URL: Optional[str] = None
    BLOG_LOGIN_URL: str = "https://www.tistory.com/auth/login"
    BLOG_LOGIN_ID: Optional[str] = None
    BLOG_PASSWORD: Optional[str] = None
    PLAYWRIGHT_HEADLESS: bool = True
    # Leeg: sessie in de publish_session tabel. Gezet: JSON-bestand (lokaal zonder database).
    PUBLISH_SESSION_FILE: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()


def require_database_url() -> str:
    """
    Runtime check with a clear message when the DSN is missing.
    """
    dsn = (settings.DATABASE_URL or os.getenv("DATABASE_URL") or "").strip()
    if not dsn:
        raise RuntimeError(
            "DATABASE_URL ontbreekt. Zet deze in .env "
            f"(geprobeerd te laden vanaf: {ENV_FILE})."
        )
    return dsn


def require_openai() -> None:
    if not settings.OPENAI_API_KEY:
        raise RuntimeError(
            "OPENAI_API_KEY ontbreekt. Controleer .env "
            f"(geprobeerd te laden vanaf: {ENV_FILE})."
        )


def require_blog_credentials() -> tuple[str, str, str]:
    """
    Return (blog_url, login_id, password) or fail loudly before a browser is launched.
    """
    missing = [
        name
        for name, value in (
            ("BLOG_URL", settings.BLOG_URL),
            ("BLOG_LOGIN_ID", settings.BLOG_LOGIN_ID),
            ("BLOG_PASSWORD", settings.BLOG_PASSWORD),
        )
        if not value
    ]
    if missing:
        raise RuntimeError(
            f"{', '.join(missing)} ontbreekt. Zet deze in .env (bron: {ENV_FILE})."
        )
    return settings.BLOG_URL.rstrip("/"), settings.BLOG_LOGIN_ID, settings.BLOG_PASSWORD
