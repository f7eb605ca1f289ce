"""
Configuration loader for the SC Event Tracker.

Provides centralized configuration management with .env overrides.
JSON files live next to this module; environment variables win over
file values for everything a deployment needs to change (Redis location,
service URL, credentials, reconciliation interval).

Usage:
    from config.loader import get_config, get_key

    config = get_config()
    interval = config.get_timing_config()["reconciliation"]["interval_seconds"]
    key = get_key("container_processes", container_id="host-1234")
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

# Resolve config directory relative to this file
_CONFIG_DIR = Path(__file__).parent
_PROJECT_ROOT = _CONFIG_DIR.parent


def _load_json(filepath: Path) -> Dict[str, Any]:
    """Load a JSON config file. Returns empty dict if file doesn't exist."""
    try:
        with open(filepath, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"[CONFIG_WARN] Config file not found: {filepath}")
        return {}
    except json.JSONDecodeError as e:
        print(f"[CONFIG_ERROR] Invalid JSON in {filepath}: {e}")
        return {}


def get_env_var(var_name: str, default_value: Any, var_type: type) -> Any:
    """Get environment variable with type conversion and fallback."""
    value = os.getenv(var_name, None)
    if value is None:
        return default_value
    try:
        if var_type == bool:
            return value.lower() in ("true", "1", "yes")
        return var_type(value)
    except (ValueError, TypeError):
        return default_value


class ConfigLoader:
    """
    Central configuration manager for the SC Event Tracker.

    Loads configuration from JSON files in the config/ directory with .env overrides.
    All accessor methods are cached via @lru_cache.
    """

    _instance: Optional["ConfigLoader"] = None

    def __init__(self):
        self._config_dir = _CONFIG_DIR
        self._project_root = _PROJECT_ROOT

    @classmethod
    def get_instance(cls) -> "ConfigLoader":
        """Singleton accessor."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    # ------------------------------------------------------------------
    # Core config file loaders (cached)
    # ------------------------------------------------------------------

    @lru_cache(maxsize=1)
    def get_app_config(self) -> Dict[str, Any]:
        """Load general application settings (logging, environment namespace)."""
        return _load_json(self._config_dir / "app.json")

    @lru_cache(maxsize=1)
    def get_timing_config(self) -> Dict[str, Any]:
        """Load timing intervals, backoffs and timeouts, with env overrides."""
        timing = _load_json(self._config_dir / "timing.json")
        reconciliation = timing.setdefault("reconciliation", {})
        reconciliation["interval_seconds"] = get_env_var(
            "RECONCILIATION_INTERVAL_SECONDS",
            reconciliation.get("interval_seconds", 30),
            float,
        )
        return timing

    @lru_cache(maxsize=1)
    def get_redis_config(self) -> Dict[str, Any]:
        """Load Redis connection settings and key templates, with env overrides."""
        redis_cfg = _load_json(self._config_dir / "redis.json")
        host = get_env_var("REDIS_HOST", redis_cfg.get("host", "localhost"), str)
        port = get_env_var("REDIS_PORT", redis_cfg.get("port", 6379), int)
        db = get_env_var("REDIS_DB", redis_cfg.get("db", 0), int)
        redis_cfg["host"] = host
        redis_cfg["port"] = port
        redis_cfg["db"] = db
        redis_cfg["redis_url"] = get_env_var(
            "REDIS_URL", redis_cfg.get("redis_url") or f"redis://{host}:{port}/{db}", str
        )
        return redis_cfg

    @lru_cache(maxsize=1)
    def get_websocket_config(self) -> Dict[str, Any]:
        """Load WebSocket subscription settings."""
        return _load_json(self._config_dir / "websocket.json")

    @lru_cache(maxsize=1)
    def get_services_config(self) -> Dict[str, Any]:
        """Load directory / execution service settings, with env overrides."""
        services = _load_json(self._config_dir / "services.json")
        services["service_url"] = get_env_var(
            "TRACKER_SERVICE_URL", services.get("service_url", "http://localhost:3010"), str
        ).rstrip("/")
        services["internal_token"] = get_env_var(
            "INTERNAL_API_TOKEN", services.get("internal_token", ""), str
        )
        return services

    # ------------------------------------------------------------------
    # Environment namespace
    # ------------------------------------------------------------------

    def get_environment(self) -> str:
        """Deployment namespace used to prefix dedup markers (TRACKER_ENV)."""
        return get_env_var("TRACKER_ENV", self.get_app_config().get("environment", "development"), str)

    # ------------------------------------------------------------------
    # Redis key helpers
    # ------------------------------------------------------------------

    def get_key_template(self, key_name: str) -> str:
        """Get a Redis key template by name."""
        keys = self.get_redis_config().get("keys", {})
        return keys.get(key_name, key_name)

    def get_redis_key(self, key_name: str, **params: Any) -> str:
        """Render a Redis key template with the given parameters."""
        return self.get_key_template(key_name).format(**params)

    # ------------------------------------------------------------------
    # Arbitrary config file loader
    # ------------------------------------------------------------------

    @lru_cache(maxsize=16)
    def get_config_file(self, config_name: str) -> Dict[str, Any]:
        """Load an arbitrary JSON config file from config/ directory."""
        return _load_json(self._config_dir / f"{config_name}.json")

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        """Clear all cached configurations (useful for testing)."""
        for method_name in dir(self):
            method = getattr(self, method_name)
            if hasattr(method, "cache_clear"):
                method.cache_clear()


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------


def get_config() -> ConfigLoader:
    """Get the singleton ConfigLoader instance."""
    return ConfigLoader.get_instance()


def get_key(key_name: str, **params: Any) -> str:
    """Render a Redis key by name (convenience function)."""
    return get_config().get_redis_key(key_name, **params)
