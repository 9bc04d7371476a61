"""Configuration management and validation service."""

import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
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


EXCHANGE_CREDENTIALS_SCHEMA = {
    "api_key": {"type": "str", "required": False},
    "api_secret": {"type": "str", "required": False},
    "sandbox": {"type": "bool", "required": False},
    "retry_count": {"type": "int", "required": False, "min": 1, "max": 10},
    "retry_delay": {"type": "float", "required": False, "min": 0},
}

# Configuration schema definition
CONFIG_SCHEMA = {
    "server": {
        "type": "dict",
        "required": False,
        "properties": {
            "host": {"type": "str", "required": False},
            "port": {"type": "int", "required": False, "min": 1, "max": 65535},
            "debug": {"type": "bool", "required": False},
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
    "engine": {
        "type": "dict",
        "required": False,
        "properties": {
            "default_cooldown_seconds": {"type": "float", "required": False, "min": 0.1},
            "candle_interval": {"type": "str", "required": False, "options": ["1m", "5m", "15m", "1h", "4h", "1d"]},
            "candle_limit": {"type": "int", "required": False, "min": 1, "max": 1000},
            "market_data_ttl_seconds": {"type": "float", "required": False, "min": 0},
            "retry_base_delay_seconds": {"type": "float", "required": False, "min": 0},
            "stop_timeout_seconds": {"type": "float", "required": False, "min": 0.1},
            "resume_on_startup": {"type": "bool", "required": False},
        }
    },
    "exchanges": {
        # Keyed by ccxt exchange id; each entry uses EXCHANGE_CREDENTIALS_SCHEMA
        "type": "mapping",
        "required": False,
        "values": EXCHANGE_CREDENTIALS_SCHEMA,
    },
    "logging": {
        "type": "dict",
        "required": False,
        "properties": {
            "level": {"type": "str", "required": False, "options": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
            "format": {"type": "str", "required": False},
            "bot_logs_dir": {"type": "str", "required": False},
        }
    },
}

# Values used when the config file omits them
DEFAULTS = {
    "engine.default_cooldown_seconds": 5.0,
    "engine.candle_interval": "1m",
    "engine.candle_limit": 100,
    "engine.market_data_ttl_seconds": 5.0,
    "engine.retry_base_delay_seconds": 1.0,
    "engine.stop_timeout_seconds": 10.0,
    "engine.resume_on_startup": True,
    "logging.level": "INFO",
    "logging.format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
}


class ConfigService:
    """Service for loading and validating configuration."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize config service.

        Args:
            config_path: Path to config file. If None, uses default location.
        """
        if config_path is None:
            # BOTENGINE_CONFIG wins over the file next to the backend package
            config_path = os.environ.get("BOTENGINE_CONFIG")
        if config_path is None:
            backend_dir = Path(__file__).parent.parent.parent
            config_path = str(backend_dir / "config.yaml")

        self.config_path = config_path
        self._config: Dict[str, Any] = {}

    def load_and_validate(self) -> Dict[str, Any]:
        """Load and validate the configuration file.

        Returns:
            Validated configuration dictionary.

        Raises:
            ConfigValidationException: If validation fails.
        """
        errors: List[ConfigValidationError] = []

        if not os.path.exists(self.config_path):
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._config = {}
            return self._config

        try:
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            errors.append(ConfigValidationError(
                path="",
                message=f"Invalid YAML syntax: {str(e)}"
            ))
            raise ConfigValidationException(errors)

        if config is None:
            config = {}

        if not isinstance(config, dict):
            errors.append(ConfigValidationError(
                path="",
                message=f"Config must be a dictionary, got {type(config).__name__}"
            ))
            raise ConfigValidationException(errors)

        errors.extend(self.validate(config))

        if errors:
            raise ConfigValidationException(errors)

        self._config = config
        logger.info(f"Configuration loaded and validated from {self.config_path}")
        return config

    def load_dict(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and install an in-memory configuration.

        Raises:
            ConfigValidationException: If validation fails.
        """
        errors = self.validate(config)
        if errors:
            raise ConfigValidationException(errors)
        self._config = config
        return config

    def validate(self, config: Dict[str, Any]) -> List[ConfigValidationError]:
        """Validate a configuration dictionary against the schema."""
        return self._validate_dict(config, CONFIG_SCHEMA, "")

    def _validate_dict(
        self,
        data: Dict[str, Any],
        schema: Dict[str, Any],
        path: str
    ) -> List[ConfigValidationError]:
        """Validate a dictionary against schema.

        Args:
            data: Data to validate
            schema: Schema to validate against
            path: Current path for error messages

        Returns:
            List of validation errors
        """
        errors = []

        for key in data:
            if key not in schema:
                errors.append(ConfigValidationError(
                    path=f"{path}.{key}" if path else key,
                    message=f"Unknown configuration key '{key}'"
                ))

        for key, prop_schema in schema.items():
            current_path = f"{path}.{key}" if path else key

            if key not in data:
                if prop_schema.get("required", False):
                    errors.append(ConfigValidationError(
                        path=current_path,
                        message="Required field missing"
                    ))
                continue

            errors.extend(self._validate_value(data[key], prop_schema, current_path))

        return errors

    def _validate_value(
        self,
        value: Any,
        schema: Dict[str, Any],
        path: str
    ) -> List[ConfigValidationError]:
        """Validate a single value against schema.

        Args:
            value: Value to validate
            schema: Schema to validate against
            path: Current path for error messages

        Returns:
            List of validation errors
        """
        errors = []
        expected_type = schema.get("type")

        type_map = {
            "str": str,
            "int": int,
            "float": (int, float),
            "bool": bool,
            "list": list,
        }

        if expected_type in ("dict", "mapping"):
            if not isinstance(value, dict):
                errors.append(ConfigValidationError(
                    path=path,
                    message=f"Expected dict, got {type(value).__name__}"
                ))
                return errors

            if expected_type == "dict" and "properties" in schema:
                errors.extend(self._validate_dict(value, schema["properties"], path))
            elif expected_type == "mapping":
                # Free-form keys, every value validated against the same schema
                for key, item in value.items():
                    item_path = f"{path}.{key}"
                    if not isinstance(item, dict):
                        errors.append(ConfigValidationError(
                            path=item_path,
                            message=f"Expected dict, got {type(item).__name__}"
                        ))
                        continue
                    errors.extend(self._validate_dict(item, schema["values"], item_path))

        elif expected_type in type_map:
            expected = type_map[expected_type]
            # bool is an int subclass; do not let True pass as a number
            if not isinstance(value, expected) or (expected_type in ("int", "float") and isinstance(value, bool)):
                errors.append(ConfigValidationError(
                    path=path,
                    message=f"Expected {expected_type}, got {type(value).__name__}"
                ))
                return errors

            if expected_type in ("int", "float"):
                if "min" in schema and value < schema["min"]:
                    errors.append(ConfigValidationError(
                        path=path,
                        message=f"Value {value} is below minimum {schema['min']}"
                    ))
                if "max" in schema and value > schema["max"]:
                    errors.append(ConfigValidationError(
                        path=path,
                        message=f"Value {value} is above maximum {schema['max']}"
                    ))

            if "options" in schema and value not in schema["options"]:
                errors.append(ConfigValidationError(
                    path=path,
                    message=f"Value '{value}' not in allowed options: {schema['options']}"
                ))

        return errors

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Falls back to the built-in default for the key, then to ``default``.

        Args:
            key: Dot-notation key (e.g., "engine.candle_limit")
            default: Default value if not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return DEFAULTS.get(key, default)

        return value

    def exchange_credentials(self, exchange_id: str) -> Dict[str, Any]:
        """Per-exchange overrides from the ``exchanges`` section."""
        return dict(self.get(f"exchanges.{exchange_id}", {}) or {})


def configure_logging(service: "ConfigService") -> None:
    """Apply the ``logging`` section to the root logger."""
    level = service.get("logging.level")
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=service.get("logging.format"))
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))


# Global config service instance
config_service = ConfigService()
