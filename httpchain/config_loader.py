"""Config Loader - Loads client defaults from YAML.

Handles ${ENV_VAR} substitution and maps interceptor names to the built-in
interceptors in httpchain.interceptors.REGISTRY.

Example file:
    base_url: https://api.example.com
    timeout: 5
    proxy: ${CORP_PROXY}
    interceptors: [logging, trace]
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from httpchain.interceptors import lookup
from httpchain.models import ClientConfig


class ConfigError(Exception):
    """Raised when configuration loading fails."""


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_client_config(config_path: Path) -> ClientConfig:
    """Load a ClientConfig from YAML with ${ENV_VAR} substitution."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    return parse_client_config(_substitute_env_vars(raw_config))


def parse_client_config(raw_config: dict[str, Any]) -> ClientConfig:
    """Validate a config mapping, resolving interceptor names to functions."""
    raw_config = dict(raw_config)
    names = raw_config.pop("interceptors", None) or []
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise ConfigError("'interceptors' must be a list of interceptor names")

    try:
        interceptors = tuple(lookup(name) for name in names)
    except KeyError as e:
        raise ConfigError(str(e.args[0])) from e

    try:
        return ClientConfig.model_validate({**raw_config, "interceptors": interceptors})
    except ValidationError as e:
        raise ConfigError(f"Invalid config structure: {e}") from e


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_PATTERN.sub(replacer, s)
