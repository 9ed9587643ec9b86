"""Configuration management and validation service."""

import os
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from dataclasses import dataclass

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    path: str
    message: str


class ConfigValidationException(Exception):
    """Raised when config validation fails."""

    def __init__(self, errors: List[ConfigValidationError]):
        self.errors = errors
        messages = [f"{e.path}: {e.message}" for e in errors]
        super().__init__("Configuration validation failed:\n" + "\n".join(messages))


# Configuration schema definition
CONFIG_SCHEMA = {
    "server": {
        "type": "dict",
        "required": False,
        "properties": {
            "host": {"type": "str", "required": False},
            "port": {"type": "int", "required": False, "min": 1, "max": 65535},
            "debug": {"type": "bool", "required": False},
            "cors_origins": {"type": "list", "required": False},
        }
    },
    "database": {
        "type": "dict",
        "required": False,
        "properties": {
            "url": {"type": "str", "required": False},
            "echo": {"type": "bool", "required": False},
        }
    },
    "provider": {
        "type": "dict",
        "required": False,
        "properties": {
            "base_url": {"type": "str", "required": False},
            "api_key": {"type": "str", "required": False},
            "secondary_api_key": {"type": "str", "required": False},
            "timeout_seconds": {"type": "float", "required": False, "min": 1, "max": 300},
            "retry_count": {"type": "int", "required": False, "min": 1, "max": 10},
            "retry_delay": {"type": "float", "required": False, "min": 0},
        }
    },
    "sync": {
        "type": "dict",
        "required": False,
        "properties": {
            "currency_batch_size": {"type": "int", "required": False, "min": 1, "max": 10000},
            "pair_batch_size": {"type": "int", "required": False, "min": 1, "max": 10000},
        }
    },
    "exchange": {
        "type": "dict",
        "required": False,
        "properties": {
            "require_known_currencies": {"type": "bool", "required": False},
        }
    },
    "auth": {
        "type": "dict",
        "required": False,
        "properties": {
            "jwt_secret": {"type": "str", "required": False},
            "jwt_algorithm": {"type": "str", "required": False, "options": ["HS256", "HS384", "HS512"]},
        }
    },
    "logging": {
        "type": "dict",
        "required": False,
        "properties": {
            "level": {"type": "str", "required": False, "options": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
            "format": {"type": "str", "required": False},
            "directory": {"type": "str", "required": False},
        }
    },
}

# Environment variables that take precedence over the file
ENV_OVERRIDES = {
    "provider.api_key": "CHANGENOW_API_KEY",
    "provider.secondary_api_key": "CHANGENOW_X_API_KEY",
    "database.url": "DATABASE_URL",
    "auth.jwt_secret": "JWT_SECRET",
}

DEFAULTS = {
    "server.host": "0.0.0.0",
    "server.port": 3000,
    "server.debug": False,
    "server.cors_origins": ["http://localhost:5173", "http://localhost:3000"],
    "database.url": "sqlite+aiosqlite:///./blockhaven.db",
    "database.echo": False,
    "provider.base_url": "https://api.changenow.io/v2",
    "provider.api_key": "",
    "provider.secondary_api_key": "",
    "provider.timeout_seconds": 30.0,
    "provider.retry_count": 3,
    "provider.retry_delay": 1.0,
    "sync.currency_batch_size": 500,
    "sync.pair_batch_size": 1000,
    "exchange.require_known_currencies": True,
    "auth.jwt_secret": "",
    "auth.jwt_algorithm": "HS256",
    "logging.level": "INFO",
    "logging.format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}

PYTHON_TYPES = {
    "str": str,
    "int": int,
    "float": (int, float),
    "bool": bool,
    "list": list,
    "dict": dict,
}


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def iter_violations(data: Dict[str, Any], schema: Dict[str, Any], path: str = "") -> Iterator[ConfigValidationError]:
    """Yield every schema violation in ``data``, depth first."""
    for key in data:
        if key not in schema:
            yield ConfigValidationError(_join(path, key), f"Unknown configuration key '{key}'")

    for key, rules in schema.items():
        key_path = _join(path, key)
        if key in data:
            yield from _check_value(data[key], rules, key_path)
        elif rules.get("required", False):
            yield ConfigValidationError(key_path, "Required field missing")


def _check_value(value: Any, rules: Dict[str, Any], path: str) -> Iterator[ConfigValidationError]:
    kind = rules.get("type")
    if kind not in PYTHON_TYPES:
        return

    # bool is an int subclass; never accept it for numeric fields
    numeric = kind in ("int", "float")
    if not isinstance(value, PYTHON_TYPES[kind]) or (numeric and isinstance(value, bool)):
        yield ConfigValidationError(path, f"Expected {kind}, got {type(value).__name__}")
        return

    if kind == "dict":
        yield from iter_violations(value, rules.get("properties", {}), path)
        return

    if numeric and "min" in rules and value < rules["min"]:
        yield ConfigValidationError(path, f"Value {value} is below minimum {rules['min']}")
    if numeric and "max" in rules and value > rules["max"]:
        yield ConfigValidationError(path, f"Value {value} is above maximum {rules['max']}")
    if "options" in rules and value not in rules["options"]:
        yield ConfigValidationError(path, f"Value '{value}' not in allowed options: {rules['options']}")


class ConfigService:
    """Loads ``config.yaml`` once and answers dot-notation lookups."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: Path to the YAML file. Falls back to $BLOCKHAVEN_CONFIG,
                then config.yaml in the backend directory.
        """
        self.config_path = (
            config_path
            or os.environ.get("BLOCKHAVEN_CONFIG")
            or str(Path(__file__).resolve().parents[2] / "config.yaml")
        )
        self._config: Dict[str, Any] = {}

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, "r") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigValidationException([ConfigValidationError("", f"Invalid YAML syntax: {e}")])

        if loaded is None:
            return {}
        if not isinstance(loaded, dict):
            raise ConfigValidationException([
                ConfigValidationError("", f"Config must be a dictionary, got {type(loaded).__name__}")
            ])
        return loaded

    def load_and_validate(self) -> Dict[str, Any]:
        """Load the file and check it against CONFIG_SCHEMA.

        A missing file is not an error; every key then takes its default.

        Raises:
            ConfigValidationException: listing every violation found
        """
        if not os.path.exists(self.config_path):
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._config = {}
            return self._config

        config = self._read()
        errors = list(iter_violations(config, CONFIG_SCHEMA))
        if errors:
            raise ConfigValidationException(errors)

        self._config = config
        logger.info(f"Configuration loaded and validated from {self.config_path}")
        return config

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a dot-notation key such as ``provider.api_key``.

        Environment overrides win, then the file, then DEFAULTS, then ``default``.
        """
        env_name = ENV_OVERRIDES.get(key)
        if env_name and os.environ.get(env_name):
            return os.environ[env_name]

        node: Any = self._config
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return DEFAULTS.get(key, default)
            node = node[part]
        return node


# Global config service instance
config_service = ConfigService()
