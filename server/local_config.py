"""
Local Server Configuration
Settings for the ZIM cache server: storage location, worker pool sizes, telemetry cadence
"""

import copy
import json
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class LocalConfig:
    """
    Manages server settings.

    Precedence (highest first): environment variables (.env is loaded),
    the JSON settings file, DEFAULT_CONFIG.
    """

    DEFAULT_CONFIG = {
        "storage_folder": "./uploads",      # Stored archives, named <sha256>.zim
        "static_folder": "./static",        # index.html and frontend assets
        "host": "127.0.0.1",
        "port": 8080,
        "blocking_workers": 4,              # Threads for archive open/search/browse
        "progress_interval_ms": 500,        # Cadence of /progress events
        "search_result_limit": 50,
        "default_file_name": "unknown.zim", # Used when the upload carries no filename
        "log_level": "INFO",
    }

    # Setting -> environment variable
    ENV_OVERRIDES = {
        "storage_folder": "ZIM_STORAGE_PATH",
        "static_folder": "ZIM_STATIC_PATH",
        "host": "HOST",
        "port": "PORT",
        "blocking_workers": "BLOCKING_WORKERS",
        "progress_interval_ms": "PROGRESS_INTERVAL_MS",
        "log_level": "LOG_LEVEL",
    }

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                 use_env: bool = True):
        """Initialize config with optional settings file and explicit overrides"""
        if config_path:
            self.config_path = Path(config_path)
        else:
            self.config_path = Path(os.getenv("ZIM_CACHE_SETTINGS", "local_settings.json"))

        self.config = self._load_config()
        if use_env:
            self._apply_env()
        if overrides:
            self.config = self._merge_config(self.config, overrides)

    def _load_config(self) -> Dict[str, Any]:
        """Load config from file or fall back to defaults"""
        defaults = copy.deepcopy(self.DEFAULT_CONFIG)
        if self.config_path.exists():
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    saved_config = json.load(f)
                return self._merge_config(defaults, saved_config)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning("Error loading config %s: %s. Using defaults.", self.config_path, e)
        return defaults

    def _merge_config(self, default: Dict, saved: Dict) -> Dict:
        """Recursively merge saved config with defaults, ignoring unknown keys"""
        result = default.copy()
        for key, value in saved.items():
            if key in result:
                if isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = self._merge_config(result[key], value)
                else:
                    result[key] = value
        return result

    def _apply_env(self) -> None:
        load_dotenv()
        for key, env_name in self.ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw is None or raw == "":
                continue
            if isinstance(self.DEFAULT_CONFIG[key], int):
                try:
                    self.config[key] = int(raw)
                except ValueError:
                    logger.warning("Ignoring %s=%r: expected an integer", env_name, raw)
            else:
                self.config[key] = raw

    def get(self, key: str, default: Any = None) -> Any:
        return self.config.get(key, default)

    # Convenience accessors

    def get_storage_folder(self) -> Path:
        return Path(self.config["storage_folder"])

    def get_static_folder(self) -> Path:
        return Path(self.config["static_folder"])

    def get_progress_interval(self) -> float:
        """Seconds between progress events"""
        return max(int(self.config["progress_interval_ms"]), 1) / 1000.0

    def get_blocking_workers(self) -> int:
        return max(int(self.config["blocking_workers"]), 1)


# Singleton instance
_config_instance: Optional[LocalConfig] = None


def get_local_config() -> LocalConfig:
    """Get or create the singleton config instance"""
    global _config_instance
    if _config_instance is None:
        _config_instance = LocalConfig()
    return _config_instance
