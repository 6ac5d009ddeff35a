from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from .errors import ConfigurationError

AIRTABLE_API = "https://api.airtable.com/v0"
DEFAULT_TABLE_NAME = "Final list"
DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_RETRIES = 5
DEFAULT_TIMEOUT = 20.0


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class StoreSettings:
    """Server-side settings for reaching the remote guest table."""

    base_id: str
    table_name: str
    api_key: str
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls) -> "StoreSettings":
        base_id = os.getenv("AIRTABLE_BASE_ID", "").strip()
        api_key = os.getenv("AIRTABLE_API_KEY", "").strip()
        if not base_id:
            raise ConfigurationError("Missing AIRTABLE_BASE_ID environment variable")
        if not api_key:
            raise ConfigurationError("Missing AIRTABLE_API_KEY environment variable")
        return cls(
            base_id=base_id,
            table_name=os.getenv("AIRTABLE_TABLE_NAME") or DEFAULT_TABLE_NAME,
            api_key=api_key,
            timeout=_env_float("AIRTABLE_TIMEOUT", DEFAULT_TIMEOUT),
        )

    @property
    def table_url(self) -> str:
        return f"{AIRTABLE_API}/{quote(self.base_id, safe='')}/{quote(self.table_name, safe='')}"


def operator_pins() -> dict[str, str]:
    """PINs per operator role; an empty PIN never matches."""

    return {
        "hostess": os.getenv("HOSTESS_PIN", ""),
        "admin": os.getenv("ADMIN_PIN", ""),
    }


@dataclass(frozen=True)
class ClientSettings:
    """Operator-side settings: where the check-in API lives and where the queue is kept."""

    api_url: str = "http://127.0.0.1:8000"
    data_dir: Path = Path.home() / ".guestlist"
    page_size: int = DEFAULT_PAGE_SIZE
    max_retries: int = DEFAULT_MAX_RETRIES
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls) -> "ClientSettings":
        data_dir = os.getenv("GUESTLIST_DATA_DIR", "").strip()
        return cls(
            api_url=os.getenv("GUESTLIST_API_URL") or cls.api_url,
            data_dir=Path(data_dir) if data_dir else cls.data_dir,
            page_size=_env_int("GUESTLIST_PAGE_SIZE", DEFAULT_PAGE_SIZE),
            max_retries=_env_int("GUESTLIST_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            timeout=_env_float("GUESTLIST_TIMEOUT", DEFAULT_TIMEOUT),
        )
