"""Settings loaded from the environment, .env and config/app_settings.json."""

import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .orchestrator import (
    DEFAULT_INTERVAL_MS,
    DEFAULT_STATUS_RESET_SECONDS,
    DEFAULT_SYNC_ENDPOINT,
    PATIENTS_VIEW,
)

logger = logging.getLogger(__name__)

_ROOT_DIR = Path(__file__).resolve().parent.parent
_APP_CONFIG_PATH = _ROOT_DIR / "config" / "app_settings.json"


def _load_app_config(path: Path = _APP_CONFIG_PATH) -> dict:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning(f"Ignoring unreadable config file {path}: {exc}")
        return {}


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_list(value) -> List[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in (value or [])]


class Settings:
    """Resolved settings. Each value comes from the environment, then the JSON config, then the default."""

    def __init__(self, app_config: Optional[dict] = None):
        self._app_config = app_config if app_config is not None else {}

        self.api_url = self._get_config_value("HANDOVER_API_URL", "handover_api_url", "http://localhost:5000")
        self.api_key = self._get_config_value("HANDOVER_API_KEY", "handover_api_key")
        self.sync_endpoint = self._get_config_value("SYNC_ENDPOINT", "sync_endpoint", DEFAULT_SYNC_ENDPOINT)
        self.sync_interval_ms = int(self._get_config_value("SYNC_INTERVAL_MS", "sync_interval_ms", DEFAULT_INTERVAL_MS))
        self.auto_start = _as_bool(self._get_config_value("SYNC_AUTO_START", "sync_auto_start", False))
        self.run_on_start = _as_bool(self._get_config_value("SYNC_RUN_ON_START", "sync_run_on_start", False))
        self.status_reset_seconds = float(
            self._get_config_value("SYNC_STATUS_RESET_SECONDS", "sync_status_reset_seconds", DEFAULT_STATUS_RESET_SECONDS)
        )
        self.invalidate_keys = _as_list(self._get_config_value("SYNC_INVALIDATE_KEYS", "sync_invalidate_keys", [PATIENTS_VIEW]))
        self.sweep_units = _as_bool(self._get_config_value("SYNC_SWEEP_UNITS", "sync_sweep_units", False))

        timeout = self._get_config_value("HTTP_TIMEOUT_SECONDS", "http_timeout_seconds")
        self.http_timeout = float(timeout) if timeout not in (None, "") else None

        self.allowed_origins = _as_list(self._get_config_value("ALLOWED_ORIGINS", "allowed_origins", []))
        if not self.allowed_origins:
            self.allowed_origins = ["http://localhost:3000"]

        self.log_dir = Path(self._get_config_value("LOG_DIR", "log_dir", _ROOT_DIR / "logs"))

        if self.sync_interval_ms <= 0:
            raise ValueError("SYNC_INTERVAL_MS must be positive")

    def _get_config_value(self, env_key: str, config_key: str, default=None):
        env_val = os.getenv(env_key)
        if env_val:
            return env_val
        return self._app_config.get(config_key, default)


def load_settings(config_path: Path = _APP_CONFIG_PATH) -> Settings:
    """Load .env into the environment and resolve settings."""
    load_dotenv()
    return Settings(_load_app_config(config_path))
