"""
Centralized logging configuration for OpsGuard.

Provides one place to configure handlers so that embedding applications and
the CLI do not stack duplicate basicConfig() calls.

Functions:
    setup_logging: Configure console and optional rotating file logging.
    reset_logging_config: Drop configured handlers (tests).
    configure_cli_logging: Map CLI verbosity flags to a level.

Example:
    >>> from opsguard.logging_config import setup_logging
    >>> setup_logging(level='DEBUG', log_file='opsguard.log')
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from .logging_context import JSONFormatter


# Track if logging has been configured to avoid duplicate configuration
_LOGGING_CONFIGURED = False

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
SHORT_FORMAT = '%(name)s - %(levelname)s - %(message)s'


def setup_logging(
    level: str = 'INFO',
    log_file: Optional[str | Path] = None,
    log_format: Optional[str] = None,
    include_timestamp: bool = True,
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> None:
    """
    Configure logging for OpsGuard.

    Sets up console and optional file logging with consistent formatting.
    Call once at application startup; later calls only adjust the level.

    Args:
        level: Log level ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
        log_file: Optional path to log file. Enables rotating file logging.
        log_format: Custom log format string. Ignored when use_json is set.
        include_timestamp: Whether to include timestamps in log messages.
        use_json: Emit one JSON object per record, including incident context.
        max_bytes: Maximum size of log file before rotation (default 10MB).
        backup_count: Number of backup log files to keep (default 5).
    """
    global _LOGGING_CONFIGURED

    root_logger = logging.getLogger()

    if _LOGGING_CONFIGURED:
        root_logger.setLevel(getattr(logging, level.upper()))
        return

    if use_json:
        formatter: logging.Formatter = JSONFormatter()
    else:
        if log_format is None:
            log_format = DEFAULT_FORMAT if include_timestamp else SHORT_FORMAT
        formatter = logging.Formatter(log_format)

    root_logger.setLevel(getattr(logging, level.upper()))

    # Remove any existing handlers to prevent duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to file: {log_path}")

    _LOGGING_CONFIGURED = True

    root_logger.debug(f"Logging configured at {level} level")


def reset_logging_config() -> None:
    """Reset logging configuration. Intended for test teardown."""
    global _LOGGING_CONFIGURED

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    _LOGGING_CONFIGURED = False


def configure_cli_logging(verbose: bool = False, quiet: bool = False) -> None:
    """
    Configure logging for CLI usage.

    Args:
        verbose: Enable DEBUG level logging
        quiet: Only show WARNING and above
    """
    if quiet:
        level = 'WARNING'
    elif verbose:
        level = 'DEBUG'
    else:
        level = 'INFO'

    setup_logging(
        level=level,
        include_timestamp=verbose  # Only show timestamps in verbose mode
    )
