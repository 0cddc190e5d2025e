"""
Configuration management for toolhost.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from toolhost.mcp.tools.supervisor import DEFAULT_CANCEL_GRACE, DEFAULT_MAX_CONCURRENCY, DEFAULT_TIMEOUTS

log = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path.home() / ".config" / "toolhost" / "config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "max_concurrency": DEFAULT_MAX_CONCURRENCY,
    "cancel_grace": DEFAULT_CANCEL_GRACE,
    "timeouts": dict(DEFAULT_TIMEOUTS),
    "servers": {
        "filesystem": {"root": "."},
        "spider": {"user_agent": "toolhost-spider", "max_page_bytes": 2_000_000},
        "tavily": {"base_url": "https://api.tavily.com"},
    },
    "credentials": {},
}

# environment variable -> (section, key); section None means top level
ENV_OVERRIDES = {
    "TOOLHOST_MAX_CONCURRENCY": (None, "max_concurrency"),
    "TOOLHOST_CANCEL_GRACE": (None, "cancel_grace"),
    "TAVILY_API_KEY": ("credentials", "tavily"),
}


class ConfigError(Exception):
    """The configuration cannot be loaded or holds an invalid value."""


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Manages configuration for the toolhost servers."""

    def __init__(self, config_file: Optional[Union[str, Path]] = None, environ: Optional[Mapping[str, str]] = None):
        """
        Load defaults, the YAML file and environment overrides, in that order.

        Args:
            config_file: Explicit config path; it must exist when given
            environ: Environment to read overrides from (defaults to os.environ)

        Raises:
            ConfigError: If the file is unreadable or malformed
        """
        self.explicit = config_file is not None
        self.config_file = Path(config_file) if config_file is not None else DEFAULT_CONFIG_FILE
        self.config = _merge(DEFAULT_CONFIG, self._load_config())
        self._apply_environment(os.environ if environ is None else environ)

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file."""
        try:
            with open(self.config_file, "r") as f:
                loaded = yaml.safe_load(f) or {}
        except FileNotFoundError:
            if self.explicit:
                raise ConfigError(f"Config file not found: {self.config_file}") from None
            log.debug(f"No config file at {self.config_file}, using defaults")
            return {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing YAML config file {self.config_file}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Error reading config file {self.config_file}: {e}") from e

        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file {self.config_file} must contain a mapping")
        log.info(f"Loaded configuration from {self.config_file}")
        return loaded

    def _apply_environment(self, environ: Mapping[str, str]) -> None:
        for variable, (section, key) in ENV_OVERRIDES.items():
            value = environ.get(variable)
            if not value:
                continue
            log.debug(f"Applying {variable} from environment")
            target = self.config.setdefault(section, {}) if section else self.config
            target[key] = value

    def set_override(self, key: str, value: Any) -> None:
        """Apply a command-line override; ignored when value is None."""
        if value is not None:
            self.config[key] = value

    def set_credential(self, server: str, credential: Optional[str]) -> None:
        if credential:
            self.config.setdefault("credentials", {})[server] = credential

    def get_max_concurrency(self) -> int:
        """Get the global concurrency limit."""
        value = self._number("max_concurrency", self.config.get("max_concurrency"), int)
        if value < 1:
            raise ConfigError(f"max_concurrency must be at least 1, got {value}")
        return value

    def get_cancel_grace(self) -> float:
        value = self._number("cancel_grace", self.config.get("cancel_grace"), float)
        if value < 0:
            raise ConfigError(f"cancel_grace must not be negative, got {value}")
        return value

    def get_timeouts(self) -> Dict[str, float]:
        """Get the seconds allowed per timeout class."""
        timeouts = self.config.get("timeouts") or {}
        if not isinstance(timeouts, dict):
            raise ConfigError("timeouts must be a mapping of timeout class to seconds")
        result = {}
        for name, seconds in timeouts.items():
            value = self._number(f"timeouts.{name}", seconds, float)
            if value <= 0:
                raise ConfigError(f"timeouts.{name} must be positive, got {value}")
            result[name] = value
        return result

    def get_server_settings(self, server: str) -> Dict[str, Any]:
        """Get the settings block of one server (empty when absent)."""
        settings = (self.config.get("servers") or {}).get(server) or {}
        if not isinstance(settings, dict):
            raise ConfigError(f"servers.{server} must be a mapping")
        return dict(settings)

    def get_credential(self, server: str) -> Optional[str]:
        """Get the credential configured for a server."""
        return (self.config.get("credentials") or {}).get(server)

    @staticmethod
    def _number(name: str, value: Any, kind: type) -> Any:
        try:
            return kind(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{name} must be a number, got {value!r}") from e
