"""Configuration for pygrive.

Settings are resolved per sync root.

Precedence (highest to lowest):
    CLI options > Environment variables > ``<root>/.grive`` JSON file > Built-in defaults

Environment variables:
    GRIVE_ACCESS_TOKEN: OAuth2 access token for the Drive API
    GRIVE_API_URL: Drive API base URL
    GRIVE_UPLOAD_URL: Drive upload endpoint base URL
    GRIVE_ROOT_FOLDER_ID: Remote folder mapped to the sync root (default: "root")
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from .api import DEFAULT_API_URL, DEFAULT_UPLOAD_URL
from .exceptions import GriveConfigError
from .utils import CONFIG_FILE_NAME, DEFAULT_MAX_WORKERS

logger = logging.getLogger(__name__)

_ENV_KEYS = {
    "access_token": "GRIVE_ACCESS_TOKEN",
    "api_url": "GRIVE_API_URL",
    "upload_url": "GRIVE_UPLOAD_URL",
    "root_folder_id": "GRIVE_ROOT_FOLDER_ID",
}


@dataclass
class Config:
    """Resolved settings for one sync root."""

    access_token: Optional[str] = None
    api_url: str = DEFAULT_API_URL
    upload_url: str = DEFAULT_UPLOAD_URL
    root_folder_id: str = "root"
    upload_speed: int = 0
    """Upload limit in kB/s (0 = unlimited)"""
    download_speed: int = 0
    """Download limit in kB/s (0 = unlimited)"""
    max_workers: int = DEFAULT_MAX_WORKERS
    trust_mtime: bool = True
    """Trust unchanged size and mtime instead of rehashing"""
    ignore: list[str] = field(default_factory=list)
    """Extra ignore rule lines appended after .griveignore"""

    def is_configured(self) -> bool:
        """Check whether an access token is available."""
        return bool(self.access_token)

    def require_access_token(self) -> str:
        """Return the access token or raise if it is missing."""
        if not self.is_configured():
            raise GriveConfigError(
                "Access token not configured. Set GRIVE_ACCESS_TOKEN or pass "
                "--access-token to authorize pygrive."
            )
        return self.access_token


def _read_config_file(root: Path) -> dict[str, Any]:
    config_file = root / CONFIG_FILE_NAME
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise GriveConfigError(f"Cannot read config file {config_file}: {e}") from e
    if not isinstance(data, dict):
        raise GriveConfigError(f"Config file {config_file} must hold a JSON object")
    return data


def _coerce(name: str, value: Any) -> Any:
    if name in ("upload_speed", "download_speed", "max_workers"):
        try:
            number = int(value)
        except (TypeError, ValueError) as e:
            raise GriveConfigError(f"Invalid value for {name}: {value!r}") from e
        if number < 0 or (name == "max_workers" and number < 1):
            raise GriveConfigError(f"Invalid value for {name}: {value!r}")
        return number
    if name == "trust_mtime":
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if name == "ignore":
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]
    return value


def load_config(root: Path, **overrides: Any) -> Config:
    """Load configuration for a sync root.

    Args:
        root: Sync root directory
        **overrides: Values from the command line; ``None`` values are ignored

    Returns:
        Resolved Config

    Raises:
        GriveConfigError: If the config file or a value is invalid
    """
    values: dict[str, Any] = {}
    known = {f.name for f in fields(Config)}

    for key, value in _read_config_file(root).items():
        if key in known:
            values[key] = value
        else:
            logger.debug("Ignoring unknown config key %r", key)

    for key, env_name in _ENV_KEYS.items():
        env_value = os.environ.get(env_name)
        if env_value:
            values[key] = env_value

    for key, value in overrides.items():
        if key not in known:
            raise GriveConfigError(f"Unknown config option: {key}")
        if value is not None:
            values[key] = value

    return Config(**{key: _coerce(key, value) for key, value in values.items()})


def save_access_token(root: Path, access_token: str) -> Path:
    """Store the access token in ``<root>/.grive``, keeping the other saved keys.

    Only the token is written; one-off command line settings are never
    persisted.

    Args:
        root: Sync root directory
        access_token: Token to remember

    Returns:
        Path of the written file

    Raises:
        GriveConfigError: If the existing config file cannot be read
    """
    data = _read_config_file(root)
    data["access_token"] = access_token
    config_file = root / CONFIG_FILE_NAME
    fd, tmp_name = tempfile.mkstemp(dir=root, prefix=".grive.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, config_file)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    logger.debug("Saved config to %s", config_file)
    return config_file
