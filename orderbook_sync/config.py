"""
config.py - Settings for the sync engine

Settings come from config/settings.json (optional) and are overridden by
environment variables. Secrets live in config/secrets.env and are loaded
into the environment with load_env_file().
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Mapping, Optional

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("Config")

BASE_DIR = Path(__file__).parent.parent
CONFIG_DIR = BASE_DIR / "config"
SETTINGS_PATH = CONFIG_DIR / "settings.json"
SECRETS_PATH = CONFIG_DIR / "secrets.env"

# Identity every device shares when anonymous sign-in is unavailable
SHARED_OWNER_ID = "shared-orderbook-owner"

RETRY_LIMIT = 3
RETRY_DELAY_SECONDS = 30.0
REMOTE_TIMEOUT_SECONDS = 30.0
PROBE_INTERVAL_SECONDS = 15.0

# env var -> (settings key, type)
ENV_OVERRIDES = {
    "ORDERBOOK_DATA_DIR": ("data_dir", str),
    "ORDERBOOK_LOCAL_BACKEND": ("local_backend", str),
    "ORDERBOOK_DB_PATH": ("db_path", str),
    "ORDERBOOK_REMOTE_ENABLED": ("remote_enabled", bool),
    "ORDERBOOK_REMOTE_URL": ("remote_url", str),
    "ORDERBOOK_AUTH_URL": ("auth_url", str),
    "ORDERBOOK_API_KEY": ("api_key", str),
    "ORDERBOOK_SHARED_OWNER_ID": ("shared_owner_id", str),
    "ORDERBOOK_RETRY_LIMIT": ("retry_limit", int),
    "ORDERBOOK_RETRY_DELAY": ("retry_delay", float),
    "ORDERBOOK_REMOTE_TIMEOUT": ("remote_timeout", float),
    "ORDERBOOK_PROBE_URL": ("probe_url", str),
    "ORDERBOOK_PROBE_INTERVAL": ("probe_interval", float),
    "ORDERBOOK_IMAGES_ENABLED": ("images_enabled", bool),
    "ORDERBOOK_IMAGE_UPLOAD_URL": ("image_upload_url", str),
    "ORDERBOOK_IMAGE_UPLOAD_PRESET": ("image_upload_preset", str),
    "ORDERBOOK_STATUS_PORT": ("status_port", int),
}


def load_env_file(path) -> bool:
    """Load KEY=VALUE lines into os.environ. Returns False if the file is missing."""
    if not os.path.exists(path):
        return False
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, val = line.split('=', 1)
            os.environ[key.strip()] = val.strip()
    return True


def _to_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime settings, read once by the composition root."""

    def __init__(self, **overrides):
        data_dir = Path(overrides.pop("data_dir", BASE_DIR / "data"))
        self.data_dir: Path = data_dir
        self.local_backend: str = overrides.pop("local_backend", "sqlite")
        self.db_path: Path = Path(overrides.pop("db_path", data_dir / "orderbook.db"))

        self.remote_enabled: bool = _to_bool(overrides.pop("remote_enabled", False))
        self.remote_url: str = overrides.pop("remote_url", "")
        self.auth_url: str = overrides.pop("auth_url", "")
        self.api_key: str = overrides.pop("api_key", "")
        self.shared_owner_id: str = overrides.pop("shared_owner_id", SHARED_OWNER_ID)

        self.retry_limit: int = int(overrides.pop("retry_limit", RETRY_LIMIT))
        self.retry_delay: float = float(overrides.pop("retry_delay", RETRY_DELAY_SECONDS))
        self.remote_timeout: float = float(overrides.pop("remote_timeout", REMOTE_TIMEOUT_SECONDS))

        self.probe_url: str = overrides.pop("probe_url", "")
        self.probe_interval: float = float(overrides.pop("probe_interval", PROBE_INTERVAL_SECONDS))

        self.images_enabled: bool = _to_bool(overrides.pop("images_enabled", False))
        self.image_upload_url: str = overrides.pop("image_upload_url", "")
        self.image_upload_preset: str = overrides.pop("image_upload_preset", "")

        self.status_port: int = int(overrides.pop("status_port", 8001))

        if overrides:
            raise ValueError(f"Unknown settings: {', '.join(sorted(overrides))}")

        if self.local_backend not in ("sqlite", "memory"):
            raise ValueError(f"Unsupported local_backend: {self.local_backend}")
        if self.retry_limit < 1:
            raise ValueError("retry_limit must be at least 1")

    def to_dict(self) -> Dict:
        """Settings safe to expose (no api key)."""
        return {
            "data_dir": str(self.data_dir),
            "local_backend": self.local_backend,
            "db_path": str(self.db_path),
            "remote_enabled": self.remote_enabled,
            "remote_url": self.remote_url,
            "retry_limit": self.retry_limit,
            "retry_delay": self.retry_delay,
            "remote_timeout": self.remote_timeout,
            "probe_url": self.probe_url,
            "images_enabled": self.images_enabled,
            "status_port": self.status_port,
        }


def load_settings(path=None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from a JSON file and environment overrides.

    Args:
        path: JSON settings file; defaults to config/settings.json
        env: Mapping to read overrides from; defaults to os.environ

    Returns:
        Settings instance
    """
    path = Path(path) if path else SETTINGS_PATH
    env = os.environ if env is None else env

    values: Dict = {}
    if path.exists():
        try:
            with open(path, 'r') as f:
                values = json.load(f)
            logger.info(f"Settings loaded from {path}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid settings file {path}: {e}") from e
        if not isinstance(values, dict):
            raise ValueError(f"Settings file {path} must contain a JSON object")

    for env_key, (key, cast) in ENV_OVERRIDES.items():
        if env_key in env:
            raw = env[env_key]
            values[key] = _to_bool(raw) if cast is bool else cast(raw)

    return Settings(**values)
