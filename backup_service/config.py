"""
Configuration for the backup service.
"""
import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"
TOKEN_URL = "https://api.dropbox.com/oauth2/token"

DEFAULT_CHUNK_SIZE = 32 * 1024 * 1024
# Remote limit for the body of a single append request.
MAX_CHUNK_SIZE = 150 * 1024 * 1024
DEFAULT_MAX_CONCURRENT = 5
LIST_FOLDER_LIMIT = 2000

ENV_VARS = {
    "local_dir": "LOCAL_DIR",
    "remote_dir": "REMOTE_DIR",
    "token": "TOKEN",
    "refresh_token": "REFRESH_TOKEN",
    "app_key": "APP_KEY",
    "app_secret": "APP_SECRET",
    "max_concurrent": "MAX_CONCURRENT",
    "chunk_size": "CHUNK_SIZE",
    "log_dir": "LOG_DIR",
}

# Settings where an empty environment value is meaningful.
EMPTY_ALLOWED = {"remote_dir"}


@dataclass
class BackupConfig:
    """Settings for one backup run."""
    local_dir: Path
    remote_dir: str
    token: Optional[str] = None
    refresh_token: Optional[str] = None
    app_key: Optional[str] = None
    app_secret: Optional[str] = None
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    chunk_size: int = DEFAULT_CHUNK_SIZE
    pattern: str = "*"
    list_limit: int = LIST_FOLDER_LIMIT
    timeout: float = 60.0
    retry_attempts: int = 3
    retry_min_wait: float = 1.0
    retry_max_wait: float = 10.0
    log_dir: Optional[Path] = None
    api_url: str = API_URL
    content_url: str = CONTENT_URL
    token_url: str = TOKEN_URL

    def __post_init__(self):
        """Validate the configuration."""
        if not self.local_dir:
            raise ValueError("local_dir must be set")
        self.local_dir = Path(self.local_dir)
        if self.log_dir is not None:
            self.log_dir = Path(self.log_dir)
        if self.remote_dir is None:
            raise ValueError("remote_dir must be set")
        # The root is listed as "", never "/".
        self.remote_dir = self.remote_dir.rstrip("/")
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {self.max_concurrent}")
        if not 0 < self.chunk_size <= MAX_CHUNK_SIZE:
            raise ValueError(
                f"chunk_size must be between 1 and {MAX_CHUNK_SIZE} bytes, got {self.chunk_size}"
            )
        if not 1 <= self.list_limit <= LIST_FOLDER_LIMIT:
            raise ValueError(f"list_limit must be between 1 and {LIST_FOLDER_LIMIT}")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if not self.token and not self.has_refresh_credentials:
            raise ValueError(
                "Either token or refresh_token, app_key and app_secret must be set"
            )

    @property
    def has_refresh_credentials(self) -> bool:
        return bool(self.refresh_token and self.app_key and self.app_secret)


def read_config_file(config_file: Optional[Path] = None) -> Dict[str, Any]:
    """Load configuration values from a JSON file.

    Args:
        config_file: Path to config file

    Returns:
        Dictionary of configuration values

    Raises:
        ValueError: If the file cannot be read or is not a JSON object
    """
    if not config_file:
        return {}

    try:
        with open(config_file) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Error loading config file {config_file}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_file} must contain a JSON object")
    return data


def _coerce(name: str, value: Any) -> Any:
    if name in ("max_concurrent", "chunk_size", "list_limit", "retry_attempts"):
        return int(value)
    if name in ("timeout", "retry_min_wait", "retry_max_wait"):
        return float(value)
    return value


def load_config(config_file: Optional[Path] = None,
                overrides: Optional[Mapping[str, Any]] = None,
                environ: Optional[Mapping[str, str]] = None) -> BackupConfig:
    """Build a BackupConfig from a config file, the environment and overrides.

    Later sources win: file values, then environment variables, then
    non-None ``overrides`` (typically command line flags).

    Args:
        config_file: Optional JSON config file
        overrides: Explicit values, None entries are ignored
        environ: Environment mapping, defaults to ``os.environ``

    Returns:
        Validated BackupConfig
    """
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(BackupConfig)}
    values: Dict[str, Any] = {}

    for key, value in read_config_file(config_file).items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {key}")
            continue
        values[key] = value

    for key, var in ENV_VARS.items():
        value = environ.get(var)
        if value is None:
            continue
        # An empty REMOTE_DIR selects the remote root.
        if value or key in EMPTY_ALLOWED:
            values[key] = value

    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    for required in ("local_dir", "remote_dir"):
        if required not in values:
            raise ValueError(
                f"{required} is not configured (set {ENV_VARS[required]} or pass it explicitly)"
            )

    try:
        coerced = {key: _coerce(key, value) for key, value in values.items()}
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid configuration value: {e}") from e

    return BackupConfig(**coerced)
