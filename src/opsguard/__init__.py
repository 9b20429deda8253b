"""
OpsGuard: Remediation Orchestration Core.

Decides whether an automated remediation action may run, which access path
to use, executes it with independent verification, and escalates anything
that is denied or fails.
"""
from .version import __version__, VERSION_INFO, get_version, get_version_info
from .logging_context import (
    get_logger,
    set_context,
    get_context,
    clear_context,
    LoggingContext,
)
from .models import (
    ActionKind,
    AccessMethod,
    Outcome,
    HostAccessMap,
    PlaybookDescriptor,
    Diagnostics,
    ExecutionRecord,
    EscalationTicket,
)
from .policy import ActionPolicy, PolicyTable
from .remediation import Orchestrator, RemediationRequest, RemediationReport

__all__ = [
    "__version__",
    "VERSION_INFO",
    "get_version",
    "get_version_info",
    "get_logger",
    "set_context",
    "get_context",
    "clear_context",
    "LoggingContext",
    "ActionKind",
    "AccessMethod",
    "Outcome",
    "HostAccessMap",
    "PlaybookDescriptor",
    "Diagnostics",
    "ExecutionRecord",
    "EscalationTicket",
    "ActionPolicy",
    "PolicyTable",
    "Orchestrator",
    "RemediationRequest",
    "RemediationReport",
]
