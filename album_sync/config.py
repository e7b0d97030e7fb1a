"""Runtime configuration passed explicitly to the client, store and pools.

Values come from (lowest to highest precedence) the built-in defaults, the
environment (a ``.env`` file is loaded by the CLI with python-dotenv) and the
command-line flags.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from album_sync.errors import ConfigurationError
from album_sync.pagination import DEFAULT_PAGE_SIZE

ENV_PREFIX = "ALBUM_SYNC_"

DEFAULT_HOME = Path.home() / ".album_sync"
DEFAULT_RETRIES = 2
DEFAULT_WORKERS = 4
DEFAULT_TIMEOUT = 120.0

API_ROOT = "https://api.smugmug.com"
UPLOAD_URI = "https://upload.smugmug.com/"

API_TOKEN_FILE = "apiToken.json"
USER_TOKEN_FILE = "userToken.json"
DB_FILE = "images.db"
LOG_DIR = "logs"


def _env(name: str, default: str | None = None) -> str | None:
    return os.getenv(ENV_PREFIX + name, default)


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class SyncConfig:
    home: Path = DEFAULT_HOME
    retries: int = DEFAULT_RETRIES
    workers: int = DEFAULT_WORKERS
    allow_duplicates: bool = False
    page_size: int = DEFAULT_PAGE_SIZE
    api_root: str = API_ROOT
    upload_uri: str = UPLOAD_URI
    timeout: float = DEFAULT_TIMEOUT
    retry_delay: float = 0.0

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ConfigurationError(f"retries cannot be negative, got {self.retries}")
        if self.workers < 1:
            raise ConfigurationError(f"workers must be at least 1, got {self.workers}")
        if self.page_size < 1:
            raise ConfigurationError(f"page_size must be at least 1, got {self.page_size}")
        if self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")
        if self.retry_delay < 0:
            raise ConfigurationError(f"retry_delay cannot be negative, got {self.retry_delay}")

    @classmethod
    def from_env(cls) -> "SyncConfig":
        return cls(
            home=Path(_env("HOME") or DEFAULT_HOME).expanduser(),
            retries=_env_int("RETRIES", DEFAULT_RETRIES),
            workers=_env_int("WORKERS", DEFAULT_WORKERS),
            allow_duplicates=_env_bool("ALLOW_DUPES", False),
            page_size=_env_int("PAGE_SIZE", DEFAULT_PAGE_SIZE),
            api_root=(_env("API_ROOT") or API_ROOT).rstrip("/"),
            upload_uri=_env("UPLOAD_URI") or UPLOAD_URI,
            timeout=_env_float("TIMEOUT", DEFAULT_TIMEOUT),
            retry_delay=_env_float("RETRY_DELAY", 0.0),
        )

    def with_overrides(self, **changes) -> "SyncConfig":
        """Copy with every non-None keyword applied (CLI flags that were not given stay None)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def attempts(self) -> int:
        """Total tries per upload: the first one plus the retries."""
        return self.retries + 1

    @property
    def db_path(self) -> Path:
        return self.home / DB_FILE

    @property
    def api_token_path(self) -> Path:
        return self.home / API_TOKEN_FILE

    @property
    def user_token_path(self) -> Path:
        return self.home / USER_TOKEN_FILE

    @property
    def log_dir(self) -> Path:
        return self.home / LOG_DIR
