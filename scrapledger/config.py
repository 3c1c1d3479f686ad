"""Runtime configuration read from the environment and ``.env``."""

import logging
import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from .errors import ConfigurationError

DEFAULT_DB_PATH = "scrapledger.db"
DEFAULT_BACKEND_URL = "http://localhost:8000"


def _int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigurationError(f"{name} must be at least {minimum}, got {value}")
    return value


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
    if not value > 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def normalize_backend_url(url: str) -> str:
    """Strip trailing slashes and require an http(s) URL with a host."""
    url = (url or "").strip().rstrip("/")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"Backend URL must be an http(s) URL, got {url!r}")
    return url


@dataclass
class Settings:
    db_path: str = DEFAULT_DB_PATH
    backend_url: str = DEFAULT_BACKEND_URL
    sync_timeout: float = 30.0
    probe_timeout: float = 5.0
    max_retries: int = 3
    bill_prefix: str = "FAM"
    log_level: str = "INFO"
    port: int = 5001
    debug: bool = False

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Settings":
        """Build settings from environment variables.

        Values in ``.env`` are loaded first and never override variables
        already set in the process environment.

        Raises:
            ConfigurationError: If a value is malformed.
        """
        load_dotenv(dotenv_path)

        log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ConfigurationError(f"Unknown LOG_LEVEL {log_level!r}")

        bill_prefix = os.getenv("BILL_PREFIX", "FAM").strip()
        if not bill_prefix:
            raise ConfigurationError("BILL_PREFIX cannot be empty")

        return cls(
            db_path=os.getenv("SCRAPLEDGER_DB_PATH", DEFAULT_DB_PATH),
            backend_url=normalize_backend_url(
                os.getenv("SCRAPLEDGER_BACKEND_URL", DEFAULT_BACKEND_URL)
            ),
            sync_timeout=_float("SYNC_TIMEOUT", 30.0),
            probe_timeout=_float("PROBE_TIMEOUT", 5.0),
            max_retries=_int("SYNC_MAX_RETRIES", 3, minimum=1),
            bill_prefix=bill_prefix,
            log_level=log_level,
            port=_int("PORT", 5001, minimum=1),
            debug=_bool("DEBUG", False),
        )
