"""
Configuration file loader for OpsGuard.

Supports loading configuration from YAML and TOML files with environment variable
overrides and a standard search path.

File layout::

    remediation:
      max_tier: 3
      dry_run: false
      executor_workers: 8
    access:
      map_file: /etc/opsguard/hosts.yaml
    storage:
      state_db: /var/lib/opsguard/state.db
    escalation:
      redact_env_prefix: OPSGUARD_CRED_
      webhook_url: https://tickets.example.com/hooks/opsguard
    logging:
      level: INFO
      file: /var/log/opsguard.log
      json: false
    policies:
      restart:
        max_occurrences: 3
        window_hours: 6
"""

import os
import sys
import logging
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .exceptions import InvalidConfigError, MissingConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "OPSGUARD_"

_TRUE_VALUES = ("true", "1", "yes", "on")


def load_yaml_file(path: Path) -> dict:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Dictionary containing configuration data

    Raises:
        MissingConfigError: If file doesn't exist
        InvalidConfigError: If YAML parsing fails
    """
    if not path.exists():
        raise MissingConfigError(f"Config file not found: {path}")

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidConfigError(f"Failed to parse YAML config file {path}: {e}") from e

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise InvalidConfigError(f"Config file {path} must contain a mapping")
    return config


def load_toml_file(path: Path) -> dict:
    """
    Load configuration from a TOML file.

    Raises:
        MissingConfigError: If file doesn't exist
        InvalidConfigError: If TOML parsing fails
    """
    if not path.exists():
        raise MissingConfigError(f"Config file not found: {path}")

    try:
        with open(path, 'rb') as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise InvalidConfigError(f"Failed to parse TOML config file {path}: {e}") from e


def load_config_file(path: str | Path) -> dict:
    """
    Load configuration from a YAML or TOML file.

    The file format is determined by the file extension (.yaml, .yml, or .toml).

    Raises:
        InvalidConfigError: If file extension is not supported or parsing fails
        MissingConfigError: If file doesn't exist
    """
    file_path = Path(path)
    suffix = file_path.suffix.lower()

    if suffix in ['.yaml', '.yml']:
        return load_yaml_file(file_path)
    elif suffix == '.toml':
        return load_toml_file(file_path)
    else:
        raise InvalidConfigError(
            f"Unsupported config file format: {suffix}. "
            "Supported formats: .yaml, .yml, .toml"
        )


def find_config_file() -> Optional[Path]:
    """
    Search for a configuration file in standard locations.

    Search order:
    1. ./opsguard.yaml
    2. ./opsguard.toml
    3. ~/.opsguard.yaml
    4. ~/.opsguard.toml
    5. /etc/opsguard.yaml
    6. /etc/opsguard.toml

    Returns:
        Path to the first configuration file found, or None if no file is found
    """
    search_paths = [
        Path.cwd() / "opsguard.yaml",
        Path.cwd() / "opsguard.toml",
        Path.home() / ".opsguard.yaml",
        Path.home() / ".opsguard.toml",
        Path("/etc/opsguard.yaml"),
        Path("/etc/opsguard.toml"),
    ]

    for path in search_paths:
        if path.exists() and path.is_file():
            logger.info(f"Found configuration file: {path}")
            return path

    logger.debug("No configuration file found in standard locations")
    return None


def _env_int(name: str) -> Optional[int]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid {ENV_PREFIX}{name}={value!r}, ignoring")
        return None


def _env_bool(name: str) -> Optional[bool]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value == "":
        return None
    return value.lower() in _TRUE_VALUES


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    return value or None


def get_env_config() -> dict:
    """
    Extract configuration from OPSGUARD_* environment variables.

    Environment variables override file-based configuration. Credential
    variables (OPSGUARD_CRED_*) are not configuration and are ignored here.

    Returns:
        Nested dictionary in the file layout
    """
    sections: Dict[str, Dict[str, Any]] = {
        "remediation": {
            "max_tier": _env_int("MAX_TIER"),
            "dry_run": _env_bool("DRY_RUN"),
            "executor_workers": _env_int("EXECUTOR_WORKERS"),
        },
        "access": {"map_file": _env_str("ACCESS_MAP")},
        "storage": {"state_db": _env_str("STATE_DB")},
        "escalation": {
            "redact_env_prefix": _env_str("REDACT_PREFIX"),
            "webhook_url": _env_str("WEBHOOK_URL"),
        },
        "logging": {
            "level": _env_str("LOG_LEVEL"),
            "file": _env_str("LOG_FILE"),
            "json": _env_bool("JSON_LOGS"),
        },
    }

    config = {}
    for section, values in sections.items():
        present = {k: v for k, v in values.items() if v is not None}
        if present:
            config[section] = present
    return config


def deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries, with override values taking precedence.

    Args:
        base: Base dictionary
        override: Override dictionary (values take precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


# (section, key) -> OpsGuardConfig field
_FIELD_MAP = {
    ("remediation", "max_tier"): "max_tier",
    ("remediation", "dry_run"): "dry_run",
    ("remediation", "executor_workers"): "executor_workers",
    ("access", "map_file"): "access_map_file",
    ("storage", "state_db"): "state_db",
    ("escalation", "redact_env_prefix"): "redact_env_prefix",
    ("escalation", "webhook_url"): "webhook_url",
    ("logging", "level"): "log_level",
    ("logging", "file"): "log_file",
    ("logging", "json"): "json_logs",
}


def flatten_config(config: dict) -> dict:
    """
    Flatten nested configuration dictionary to match OpsGuardConfig fields.

    The ``policies`` section is passed through as ``policy_overrides``.
    Unknown sections and keys are ignored with a warning.
    """
    flat: Dict[str, Any] = {}

    for section, values in config.items():
        if section == "policies":
            if not isinstance(values, dict):
                raise InvalidConfigError("'policies' section must be a mapping")
            flat["policy_overrides"] = values
            continue
        if not isinstance(values, dict):
            logger.warning(f"Ignoring non-mapping config section '{section}'")
            continue
        for key, value in values.items():
            field_name = _FIELD_MAP.get((section, key))
            if field_name is None:
                logger.warning(f"Ignoring unknown config key '{section}.{key}'")
                continue
            flat[field_name] = value

    return flat


def merge_config(file_config: dict, env_config: dict) -> dict:
    """
    Merge file-based and environment-based configuration.

    Environment variables take precedence over file-based configuration.

    Returns:
        Merged configuration dictionary (flattened)
    """
    merged = deep_merge(file_config, env_config)
    return flatten_config(merged)


def load_config_with_overrides(config_path: Optional[str] = None) -> dict:
    """
    Load configuration from file with environment variable overrides.

    Args:
        config_path: Optional explicit path to config file.
                    If None, searches standard locations.

    Returns:
        Dictionary containing merged configuration

    Raises:
        MissingConfigError: If explicit config_path is provided but doesn't exist
        InvalidConfigError: If config parsing fails
    """
    file_config = {}

    if config_path:
        file_config = load_config_file(config_path)
        logger.info(f"Loaded configuration from: {config_path}")
    else:
        found_path = find_config_file()
        if found_path:
            file_config = load_config_file(found_path)
            logger.info(f"Loaded configuration from: {found_path}")

    env_config = get_env_config()
    if env_config:
        logger.info("Applying environment variable overrides")

    return merge_config(file_config, env_config)
