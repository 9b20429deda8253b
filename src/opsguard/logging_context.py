"""
Structured logging with incident correlation fields.

Log records emitted while a remediation request is in flight carry the
incident_id, service and action_kind of that request, so that interleaved
concurrent remediations can be told apart in the log stream.
"""

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

CONTEXT_FIELDS = ('incident_id', 'service', 'action_kind', 'host_id', 'agent_tier')

# Context variables survive thread-pool hand-off when copied explicitly
remediation_context: contextvars.ContextVar[dict] = contextvars.ContextVar(
    'remediation_context', default={}
)


class ContextualLogger(logging.LoggerAdapter):
    """
    Logger adapter that injects the current remediation context.

    Usage:
        logger = get_logger(__name__)
        with LoggingContext(incident_id='inc-42', service='api'):
            logger.info("Reserving cooldown slot")
    """

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        """Inject context variables into log extra fields."""
        ctx = remediation_context.get({})
        extra = dict(kwargs.get('extra') or {})

        for key in CONTEXT_FIELDS:
            if ctx.get(key) is not None:
                extra[key] = ctx[key]

        kwargs['extra'] = extra
        return msg, kwargs


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        ctx = remediation_context.get({})
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is None:
                value = ctx.get(key)
            if value is not None:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def get_logger(name: str) -> ContextualLogger:
    """Get a contextual logger instance for the given module name."""
    return ContextualLogger(logging.getLogger(name), {})


def set_context(**kwargs: Any) -> contextvars.Token:
    """
    Merge values into the current remediation context.

    Returns:
        Token to restore the previous context with remediation_context.reset()
    """
    current = remediation_context.get({}).copy()
    current.update(kwargs)
    return remediation_context.set(current)


def get_context() -> dict:
    """Get current remediation context."""
    return remediation_context.get({}).copy()


def clear_context() -> None:
    """Clear remediation context."""
    remediation_context.set({})


class LoggingContext:
    """
    Context manager for setting remediation logging context.

    Usage:
        with LoggingContext(incident_id='inc-42'):
            logger.info("Processing")  # Includes incident_id
    """

    def __init__(self, **kwargs: Any):
        self.kwargs = kwargs
        self.token: Optional[contextvars.Token] = None

    def __enter__(self):
        self.token = set_context(**self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token:
            remediation_context.reset(self.token)
        return False
