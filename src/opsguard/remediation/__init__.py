"""
Remediation orchestration for OpsGuard.

This module decides whether a remediation action may run and runs it:
- Tier gate (agent authority vs. playbook minimum)
- Host access resolution (root / sudo / limited)
- Per-service cooldown windows with reserve/commit/rollback
- Backend execution with independent verification
- Escalation of denied and failed actions

Classes:
    Orchestrator: Facade sequencing one request to a terminal state
    RemediationRequest: One playbook invocation
    RemediationReport: Terminal result with record and ticket
"""

from .access import AccessResolver, ResolvedAccess, INSUFFICIENT_ACCESS
from .backends import CommandBackend, WebhookBackend, HttpHealthProbe
from .cooldown import CooldownTracker
from .escalation import EscalationManager, RedactionFilter, recommended_tier_for
from .executor import (
    ActionExecutor,
    Backend,
    ExecutionContext,
    ExecutionOutcome,
    FunctionBackend,
    FunctionProbe,
    VerificationProbe,
)
from .orchestrator import (
    IncidentState,
    Orchestrator,
    RemediationReport,
    RemediationRequest,
)
from .tier_gate import TierGate

__all__ = [
    "AccessResolver",
    "ResolvedAccess",
    "INSUFFICIENT_ACCESS",
    "CommandBackend",
    "WebhookBackend",
    "HttpHealthProbe",
    "CooldownTracker",
    "EscalationManager",
    "RedactionFilter",
    "recommended_tier_for",
    "ActionExecutor",
    "Backend",
    "ExecutionContext",
    "ExecutionOutcome",
    "FunctionBackend",
    "FunctionProbe",
    "VerificationProbe",
    "IncidentState",
    "Orchestrator",
    "RemediationReport",
    "RemediationRequest",
    "TierGate",
]
