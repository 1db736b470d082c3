"""Configuration management for StackPilot.

This module handles YAML configuration loading, validation, and
environment variable override support. Every setting has a default, so
running without a configuration file is allowed.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional
import yaml


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


DEFAULT_CONFIG: Dict[str, Any] = {
    "aws": {
        "profile": None,
        "region": None,
        "staging_bucket": None,
    },
    "templates": {
        "directory": "cloudformation",
    },
    "execution": {
        "timeout_seconds": 0,
        "cleanup_timeout_seconds": 10,
        "poll_seconds": 1,
    },
    "logging": {
        "verbosity": 0,
    },
}

ENVIRONMENT_OVERRIDES = {
    "AWS_PROFILE": "aws.profile",
    "AWS_REGION": "aws.region",
    "STACKPILOT_TEMPLATE_DIR": "templates.directory",
    "STACKPILOT_STAGING_BUCKET": "aws.staging_bucket",
}

AUTO_DETECT_PATHS = ("stackpilot.yaml", "config/stackpilot.yaml")


class Configuration:
    """Configuration management with YAML loading and validation.

    This class merges an optional YAML file over the built-in defaults,
    applies environment variable overrides and validates the result.
    """

    def __init__(self, config_path: Optional[str] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Optional path to configuration file.
                        If None, auto-detects stackpilot.yaml in current directory.

        Raises:
            ConfigurationError: When configuration file is invalid
        """
        self._config: Dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)
        self._config_path = self._resolve_config_path(config_path)
        if self._config_path is not None:
            self._load_configuration()
        self._apply_environment_overrides()
        self._validate_configuration()

    @property
    def config_path(self) -> Optional[Path]:
        return self._config_path

    def _resolve_config_path(self, config_path: Optional[str]) -> Optional[Path]:
        """Resolve configuration file path.

        Args:
            config_path: Optional path to configuration file

        Returns:
            Resolved Path, or None when no file was given or detected

        Raises:
            ConfigurationError: When an explicitly given file is not found
        """
        if config_path:
            path = Path(config_path)
            if not path.exists():
                raise ConfigurationError(
                    f"Configuration file not found: {path}. "
                    "Please create a configuration file or specify a valid path."
                )
            return path

        for candidate in AUTO_DETECT_PATHS:
            path = Path(candidate)
            if path.exists():
                return path
        return None

    def _load_configuration(self) -> None:
        """Load configuration from YAML file and merge it over the defaults.

        Raises:
            ConfigurationError: When YAML file is invalid
        """
        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file {self._config_path}: {e}"
            )
        except IOError as e:
            raise ConfigurationError(
                f"Unable to read configuration file {self._config_path}: {e}"
            )

        if not isinstance(loaded, dict):
            raise ConfigurationError(
                f"Configuration file {self._config_path} must contain a mapping"
            )
        self._merge(self._config, loaded)

    def _merge(self, target: Dict[str, Any], source: Dict[str, Any]) -> None:
        for key, value in source.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                self._merge(target[key], value)
            else:
                target[key] = value

    def _validate_configuration(self) -> None:
        """Validate configuration value types and ranges.

        Raises:
            ConfigurationError: When a value is malformed
        """
        for section in ("aws", "templates", "execution", "logging"):
            if not isinstance(self._config.get(section), dict):
                raise ConfigurationError(f"Configuration section '{section}' must be a mapping")

        for key in ("aws.profile", "aws.region", "aws.staging_bucket"):
            value = self.get(key)
            if value is not None and not isinstance(value, str):
                raise ConfigurationError(f"Field '{key}' must be a string")

        directory = self.get("templates.directory")
        if not isinstance(directory, str) or not directory:
            raise ConfigurationError("Field 'templates.directory' must be a non-empty string")

        for key in ("execution.timeout_seconds", "execution.cleanup_timeout_seconds"):
            value = self.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigurationError(f"Field '{key}' must be a non-negative number")

        poll = self.get("execution.poll_seconds")
        if isinstance(poll, bool) or not isinstance(poll, (int, float)) or poll <= 0:
            raise ConfigurationError("Field 'execution.poll_seconds' must be a positive number")

        verbosity = self.get("logging.verbosity")
        if isinstance(verbosity, bool) or not isinstance(verbosity, int) or verbosity < 0:
            raise ConfigurationError("Field 'logging.verbosity' must be a non-negative integer")

    def _apply_environment_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        for variable, key_path in ENVIRONMENT_OVERRIDES.items():
            if os.environ.get(variable):
                self._set_nested_value(key_path, os.environ[variable])

    def _set_nested_value(self, key_path: str, value: Any) -> None:
        """Set nested configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.region')
            value: Value to set
        """
        keys = key_path.split(".")
        current = self._config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def set(self, key_path: str, value: Any) -> None:
        """Override a value (e.g. from a command line flag) and revalidate.

        Raises:
            ConfigurationError: When the new value is invalid
        """
        self._set_nested_value(key_path, value)
        self._validate_configuration()

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.region')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split(".")
        current = self._config

        try:
            for key in keys:
                current = current[key]
            return current
        except (KeyError, TypeError):
            return default

    def get_profile(self) -> Optional[str]:
        return self.get("aws.profile")

    def get_region(self) -> Optional[str]:
        return self.get("aws.region")

    def get_staging_bucket(self) -> Optional[str]:
        return self.get("aws.staging_bucket")

    def get_template_directory(self) -> str:
        return self.get("templates.directory")

    def get_timeout(self) -> Optional[float]:
        """Get the overall command deadline in seconds (None for no deadline)."""
        return self.get("execution.timeout_seconds") or None

    def get_cleanup_timeout(self) -> float:
        return self.get("execution.cleanup_timeout_seconds")

    def get_poll_seconds(self) -> float:
        return self.get("execution.poll_seconds")

    def get_verbosity(self) -> int:
        return self.get("logging.verbosity")

    def to_dict(self) -> Dict[str, Any]:
        """Get complete configuration as dictionary.

        Returns:
            Complete configuration dictionary
        """
        return copy.deepcopy(self._config)
