"""Configuration loader with environment variable expansion and defaults."""

import copy
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError


DEFAULT_CONFIG: Dict[str, Any] = {
    "postgresql": {
        "host": "localhost",
        "port": 5432,
        "database": "billing",
        "user": "billing",
        "password": "",
        "schema": "public",
    },
    "collection": {
        "window": "1h",
        "cluster_timeout_seconds": 300,
        "http_timeout_seconds": 30,
        "mapping_retention_days": 30,
        "bucket_seconds": 3600,
        "run_lock_key": 74201,
        "excluded_namespaces": [],
    },
    "storage": {
        "hours_per_month": 730,
        "min_offline_bytes": 10000,
        "min_online_bytes": 100000,
    },
    "rates": {
        "cpu_hour_credits": 0.5,
        "gpu_hour_credits": 10.0,
        "ram_gb_hour_credits": 0.05,
        "online_storage_gb_month_credits": 2.0,
        "offline_storage_gb_month_credits": 0.12,
        "credit_value": 0.25,
    },
    "api": {
        "cron_secret": None,
    },
    "billing": {
        "meter_url": None,
        "meter_path": "/v1/billing/meter_events",
        "api_key": None,
        "timeout_seconds": 30,
    },
    "logging": {
        "level": "INFO",
        "format": "console",
    },
}


def deep_merge(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge two configuration dictionaries (override wins, nested dicts merge).

    Args:
        base: Base configuration
        override: Values taking precedence

    Returns:
        New merged dictionary
    """
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


class ConfigLoader:
    """Load and parse configuration with environment variable expansion."""

    def __init__(self, config_path: str = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to config.yaml (defaults to config/config.yaml at the repository root,
                or USAGE_AGGREGATOR_CONFIG when set)
        """
        if config_path is None:
            config_path = os.environ.get("USAGE_AGGREGATOR_CONFIG")
        if config_path is None:
            base_dir = Path(__file__).parent.parent
            config_path = base_dir / "config" / "config.yaml"

        self.config_path = Path(config_path)
        self._config = None

    def load(self) -> Dict[str, Any]:
        """Load configuration from YAML file with environment variable expansion.

        Returns:
            Configuration dictionary merged over the built-in defaults

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If config file is invalid
            ConfigurationError: If the top level is not a mapping
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}

        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._config = deep_merge(DEFAULT_CONFIG, self._expand_env_vars(raw_config))
        return self._config

    def _expand_env_vars(self, obj: Any) -> Any:
        """Recursively expand environment variables in configuration.

        Supports:
        - ${VAR_NAME}: Required variable (raises if not set)
        - ${VAR_NAME:-default}: Variable with default value

        Args:
            obj: Configuration object (dict, list, str, etc.)

        Returns:
            Object with environment variables expanded
        """
        if isinstance(obj, dict):
            return {k: self._expand_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._expand_env_vars(item) for item in obj]
        elif isinstance(obj, str):
            return self._expand_string(obj)
        else:
            return obj

    def _expand_string(self, value: str) -> str:
        """Expand environment variables in a string.

        Args:
            value: String possibly containing ${VAR_NAME} or ${VAR_NAME:-default}

        Returns:
            String with environment variables expanded

        Raises:
            ConfigurationError: If required environment variable is not set
        """
        pattern = r"\$\{([A-Z_][A-Z0-9_]*)(:-([^}]*))?\}"

        def replacer(match):
            var_name = match.group(1)
            has_default = match.group(2) is not None
            default_value = match.group(3) if has_default else None

            env_value = os.environ.get(var_name)

            if env_value is not None:
                return env_value
            elif has_default:
                return default_value
            else:
                raise ConfigurationError(
                    f"Required environment variable '{var_name}' is not set. " f"Found in configuration value: {value}"
                )

        return re.sub(pattern, replacer, value)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key_path: Dot-separated path (e.g., 'collection.cluster_timeout_seconds')
            default: Default value if key doesn't exist

        Returns:
            Configuration value
        """
        if self._config is None:
            self.load()
        return lookup(self._config, key_path, default)

    @property
    def config(self) -> Dict[str, Any]:
        """Get full configuration dictionary."""
        if self._config is None:
            self.load()
        return self._config


def lookup(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """Resolve a dot-separated path in a configuration dictionary.

    Args:
        config: Configuration dictionary
        key_path: Dot-separated path (e.g., 'rates.credit_value')
        default: Returned when any segment is missing or the value is None

    Returns:
        Configuration value
    """
    value = config
    for key in key_path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return default if value is None else value


# Singleton instance for convenience
_default_loader = None


def get_config(config_path: str = None, reload: bool = False) -> Dict[str, Any]:
    """Get configuration (singleton pattern).

    Args:
        config_path: Path to config.yaml (optional)
        reload: Force reload from file

    Returns:
        Configuration dictionary
    """
    global _default_loader

    if _default_loader is None or reload:
        _default_loader = ConfigLoader(config_path)
        return _default_loader.load()

    return _default_loader.config
