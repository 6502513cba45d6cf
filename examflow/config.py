"""Runtime configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from platformdirs import user_data_dir

APP_NAME = "examflow"

load_dotenv()


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for the application."""

    database_url: str
    search_api_url: Optional[str] = None
    search_api_key: Optional[str] = None
    search_auth_header: str = "Authorization"
    search_hits_per_page: int = 20
    search_timeout_ms: int = 2000
    search_debounce_ms: int = 300
    jwt_secret: str = "dev-secret"
    jwt_algorithm: str = "HS256"
    log_level: str = "INFO"
    db_echo: bool = False

    def engine_options(self) -> Dict[str, object]:
        """Return keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.db_echo, "future": True}
        if self.is_sqlite:
            options["connect_args"] = {"check_same_thread": False}
        return options

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def search_timeout(self) -> float:
        return self.search_timeout_ms / 1000.0


def _default_sqlite_url() -> str:
    data_dir = Path(user_data_dir(APP_NAME, APP_NAME))
    data_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{data_dir / 'examflow.db'}"


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer") from exc


def _get_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    """Build :class:`Settings` from the current environment."""

    return Settings(
        database_url=os.getenv("EXAMFLOW_DATABASE_URL") or _default_sqlite_url(),
        search_api_url=os.getenv("SEARCH_API_URL") or None,
        search_api_key=os.getenv("SEARCH_API_KEY") or None,
        search_auth_header=os.getenv("SEARCH_AUTH_HEADER", "Authorization"),
        search_hits_per_page=max(1, _get_int_env("SEARCH_HITS_PER_PAGE", 20)),
        search_timeout_ms=max(1, _get_int_env("SEARCH_TIMEOUT_MS", 2000)),
        search_debounce_ms=max(0, _get_int_env("SEARCH_DEBOUNCE_MS", 300)),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        db_echo=_get_bool_env("DB_ECHO"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, resolving them on first use."""

    return load_settings()


__all__ = ["APP_NAME", "Settings", "get_settings", "load_settings"]
