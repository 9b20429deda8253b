"""Configuration management for OpsGuard.

Configuration can be loaded from environment variables, YAML/TOML files, or direct
instantiation.

Classes:
    OpsGuardConfig: Main configuration dataclass with validation.

Example:
    >>> from opsguard.config import OpsGuardConfig
    >>>
    >>> # Load from environment variables
    >>> config = OpsGuardConfig.from_env()
    >>>
    >>> # Load from file with env overrides
    >>> config = OpsGuardConfig.from_file("opsguard.yaml")
    >>>
    >>> # Automatic search of the standard locations
    >>> config = OpsGuardConfig.load()
    >>> config.validate()
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .config_loader import get_env_config, flatten_config, load_config_with_overrides
from .exceptions import InvalidConfigError
from .policy import MAX_TIER, MIN_TIER, PolicyTable
from .remediation.escalation import DEFAULT_CREDENTIAL_PREFIX

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class OpsGuardConfig:
    """
    Configuration for OpsGuard.

    Configuration can be loaded from:
    1. Configuration files (YAML or TOML)
    2. Environment variables (override file settings)
    3. Direct instantiation with parameters

    Environment variables:
        OPSGUARD_MAX_TIER: Highest agent tier deployed (default: 3)
        OPSGUARD_DRY_RUN: Skip backends, report what would run (default: false)
        OPSGUARD_EXECUTOR_WORKERS: Worker threads for backend calls (default: 8)
        OPSGUARD_ACCESS_MAP: Host access map file (YAML or JSON)
        OPSGUARD_STATE_DB: SQLite state database (default: opsguard.db)
        OPSGUARD_REDACT_PREFIX: Credential env var prefix (default: OPSGUARD_CRED_)
        OPSGUARD_WEBHOOK_URL: Escalation webhook endpoint (optional)
        OPSGUARD_LOG_LEVEL: Logging level (default: "INFO")
        OPSGUARD_LOG_FILE: Log file path (optional)
        OPSGUARD_JSON_LOGS: Emit JSON log lines (default: false)

    Config file locations (searched in order):
        ./opsguard.yaml, ./opsguard.toml
        ~/.opsguard.yaml, ~/.opsguard.toml
        /etc/opsguard.yaml, /etc/opsguard.toml
    """
    # Remediation
    max_tier: int = MAX_TIER
    dry_run: bool = False
    executor_workers: int = 8

    # Access and state
    access_map_file: Optional[str] = None
    state_db: str = "opsguard.db"

    # Escalation
    redact_env_prefix: str = DEFAULT_CREDENTIAL_PREFIX
    webhook_url: Optional[str] = None

    # Logging configuration
    log_level: str = "INFO"
    log_file: Optional[str] = None
    json_logs: bool = False

    # Per-kind policy overrides, e.g. {"restart": {"max_occurrences": 3}}
    policy_overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            InvalidConfigError: If any configuration value is invalid
        """
        errors = []

        if isinstance(self.max_tier, bool) or not isinstance(self.max_tier, int) \
                or not (MIN_TIER <= self.max_tier <= MAX_TIER):
            errors.append(f"max_tier must be between {MIN_TIER} and {MAX_TIER}, got {self.max_tier!r}")
        if self.executor_workers <= 0:
            errors.append(f"executor_workers must be positive, got {self.executor_workers}")
        if not self.state_db:
            errors.append("state_db must not be empty")
        if not self.redact_env_prefix:
            errors.append("redact_env_prefix must not be empty")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(
                f"log_level must be one of {sorted(VALID_LOG_LEVELS)}, got '{self.log_level}'"
            )

        try:
            self.policies()
        except InvalidConfigError as e:
            errors.append(str(e))

        if errors:
            raise InvalidConfigError("Configuration validation failed:\n  - " + "\n  - ".join(errors))

    def policies(self) -> PolicyTable:
        """Default policy table with this configuration's overrides applied."""
        return PolicyTable.default().with_overrides(self.policy_overrides)

    @classmethod
    def from_env(cls) -> 'OpsGuardConfig':
        """
        Create configuration from environment variables only.

        Returns:
            OpsGuardConfig instance populated from environment variables
        """
        return cls(**flatten_config(get_env_config()))

    @classmethod
    def from_file(cls, config_path: Optional[str] = None) -> 'OpsGuardConfig':
        """
        Create configuration from file with environment variable overrides.

        Loads configuration from YAML or TOML file and applies environment
        variable overrides. If no path is provided, searches standard locations.

        Args:
            config_path: Optional explicit path to config file.
                        If None, searches standard locations.

        Returns:
            OpsGuardConfig instance with merged configuration

        Raises:
            MissingConfigError: If explicit config_path doesn't exist
            InvalidConfigError: If config parsing fails

        Example:
            >>> config = OpsGuardConfig.from_file("my-config.yaml")
            >>> config = OpsGuardConfig.from_file()  # Auto-search
        """
        config_dict = load_config_with_overrides(config_path)
        try:
            return cls(**config_dict)
        except TypeError as e:
            raise InvalidConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def load(cls, config_path: Optional[str] = None, use_file: bool = True) -> 'OpsGuardConfig':
        """
        Load configuration.

        This is the recommended method for loading configuration.

        Args:
            config_path: Optional explicit path to config file
            use_file: If True, reads a config file before env vars

        Example:
            >>> config = OpsGuardConfig.load()
            >>> config = OpsGuardConfig.load("my-config.yaml")
            >>> config = OpsGuardConfig.load(use_file=False)
        """
        if use_file:
            return cls.from_file(config_path)
        else:
            return cls.from_env()
