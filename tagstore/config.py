"""
Configuration for tagstore providers.

Settings live in a TOML file (``tagstore.toml``) in the config directory,
which is ``$TAGSTORE_HOME`` or ``~/.tagstore``. Environment variables
override individual values from the file.
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .retry import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
    DUPLICATE_KEY_CODES,
    DUPLICATE_KEY_MESSAGES,
    INDEX_CONFLICT_MESSAGES,
)

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore


CONFIG_FILENAME = "tagstore.toml"
CONFIG_VERSION = 1

DEFAULT_CONNECTION_STRING = "mongodb://localhost:27017"
DEFAULT_TIMEOUT = 10.0  # seconds, per backend call

# Environment overrides
ENV_HOME = "TAGSTORE_HOME"
ENV_CONNECTION_STRING = "TAGSTORE_CONNECTION_STRING"
ENV_DB_PREFIX = "TAGSTORE_DB_PREFIX"
ENV_TIMEOUT = "TAGSTORE_TIMEOUT"
ENV_MAX_ATTEMPTS = "TAGSTORE_MAX_ATTEMPTS"
ENV_RETRY_DELAY = "TAGSTORE_RETRY_DELAY"


@dataclass
class ProviderSettings:
    """Everything needed to build a MongoDBProvider."""
    path: Optional[Path] = None
    version: int = CONFIG_VERSION
    connection_string: str = DEFAULT_CONNECTION_STRING
    db_prefix: str = ""
    timeout: float = DEFAULT_TIMEOUT
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    time_between_retries: float = DEFAULT_RETRY_DELAY
    duplicate_key_messages: list[str] = field(
        default_factory=lambda: list(DUPLICATE_KEY_MESSAGES)
    )
    duplicate_key_codes: list[int] = field(
        default_factory=lambda: list(DUPLICATE_KEY_CODES)
    )
    index_conflict_messages: list[str] = field(
        default_factory=lambda: list(INDEX_CONFLICT_MESSAGES)
    )

    @property
    def config_path(self) -> Optional[Path]:
        """Path to the TOML config file."""
        if self.path is None:
            return None
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path is not None and self.config_path.exists()


def get_config_dir() -> Path:
    """Config directory: $TAGSTORE_HOME, else ~/.tagstore."""
    home = os.environ.get(ENV_HOME)
    if home:
        return Path(home).expanduser()
    return Path.home() / ".tagstore"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def apply_env_overrides(settings: ProviderSettings) -> ProviderSettings:
    """Override settings from TAGSTORE_* environment variables, in place."""
    conn = os.environ.get(ENV_CONNECTION_STRING)
    if conn:
        settings.connection_string = conn
    prefix = os.environ.get(ENV_DB_PREFIX)
    if prefix is not None:
        settings.db_prefix = prefix
    settings.timeout = _env_float(ENV_TIMEOUT, settings.timeout)
    settings.max_attempts = _env_int(ENV_MAX_ATTEMPTS, settings.max_attempts)
    settings.time_between_retries = _env_float(ENV_RETRY_DELAY, settings.time_between_retries)
    return settings


def load_settings(config_dir: Path) -> ProviderSettings:
    """
    Load settings from a config directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = config_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if not isinstance(version, int) or isinstance(version, bool):
        raise ValueError(
            f"Invalid config in {config_path}: version must be an integer, got {version!r}"
        )
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    connection: dict[str, Any] = data.get("connection", {})
    retry: dict[str, Any] = data.get("retry", {})
    defaults = ProviderSettings()

    try:
        return ProviderSettings(
            path=config_dir,
            version=version,
            connection_string=str(connection.get("uri", defaults.connection_string)),
            db_prefix=str(connection.get("db_prefix", defaults.db_prefix)),
            timeout=float(connection.get("timeout", defaults.timeout)),
            max_attempts=int(retry.get("max_attempts", defaults.max_attempts)),
            time_between_retries=float(retry.get("delay", defaults.time_between_retries)),
            duplicate_key_messages=list(
                retry.get("duplicate_key_messages", defaults.duplicate_key_messages)
            ),
            duplicate_key_codes=[
                int(code)
                for code in retry.get("duplicate_key_codes", defaults.duplicate_key_codes)
            ],
            index_conflict_messages=list(
                retry.get("index_conflict_messages", defaults.index_conflict_messages)
            ),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid config in {config_path}: {e}") from e


def save_settings(settings: ProviderSettings) -> None:
    """
    Save settings to their config directory.

    Creates the directory if it doesn't exist.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")
    if settings.path is None:
        raise ValueError("settings have no config directory")

    settings.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": settings.version,
        },
        "connection": {
            "uri": settings.connection_string,
            "db_prefix": settings.db_prefix,
            "timeout": settings.timeout,
        },
        "retry": {
            "max_attempts": settings.max_attempts,
            "delay": settings.time_between_retries,
            "duplicate_key_messages": list(settings.duplicate_key_messages),
            "duplicate_key_codes": list(settings.duplicate_key_codes),
            "index_conflict_messages": list(settings.index_conflict_messages),
        },
    }

    with open(settings.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_default_settings(config_dir: Optional[Path] = None) -> ProviderSettings:
    """
    Load settings if a config file exists, else defaults; then apply env overrides.

    This is the main entry point for settings.
    """
    config_dir = config_dir if config_dir is not None else get_config_dir()
    if (config_dir / CONFIG_FILENAME).exists():
        settings = load_settings(config_dir)
    else:
        settings = ProviderSettings(path=config_dir)
    return apply_env_overrides(settings)
