"""
Custom exception types for OpsGuard.

Policy denials (tier, access, cooldown) are resolved by the orchestrator into
terminal Denied records. Execution failures are surfaced to escalation.
"""
from datetime import datetime
from typing import Optional


class OpsGuardError(Exception):
    """Base exception for all OpsGuard errors."""
    pass


# Policy denials
class PolicyDenied(OpsGuardError):
    """Base exception for a gate refusing an action."""

    #: Short name of the policy that caused the denial.
    policy = "policy"

    def __init__(self, message: str):
        super().__init__(message)
        self.reason = message


class TierDenied(PolicyDenied):
    """Agent tier is below the playbook minimum, or unknown."""

    policy = "tier"

    def __init__(self, message: str, agent_tier=None, required_tier: Optional[int] = None):
        super().__init__(message)
        self.agent_tier = agent_tier
        self.required_tier = required_tier


class AccessDenied(PolicyDenied):
    """Host access is insufficient for the action, or unresolved."""

    policy = "access"

    def __init__(self, message: str, host_id: Optional[str] = None):
        super().__init__(message)
        self.host_id = host_id


class NoAccessMapEntry(AccessDenied):
    """Host is not present in the access map."""
    pass


class CooldownDenied(PolicyDenied):
    """Cooldown quota exhausted for a (service, action kind) pair."""

    policy = "cooldown"

    def __init__(self, message: str, retry_after: Optional[datetime] = None):
        super().__init__(message)
        self.retry_after = retry_after


class AbortedError(PolicyDenied):
    """Incident was aborted before the action executed."""

    policy = "aborted"


# Execution errors
class ExecutionFailed(OpsGuardError):
    """Backend call or verification step failed."""
    pass


class BackendUnavailable(OpsGuardError):
    """Transport or infrastructure error reaching a backend."""
    pass


# Orchestration errors
class IncidentClosedError(OpsGuardError):
    """Action kind already ran to a terminal state for this incident."""
    pass


class ReservationError(OpsGuardError):
    """Reservation used out of protocol (double commit, unknown key)."""
    pass


# Storage errors
class StorageError(OpsGuardError):
    """Persisted state could not be read or written."""
    pass


# Configuration errors
class ConfigurationError(OpsGuardError):
    """Base exception for configuration errors."""
    pass


class InvalidConfigError(ConfigurationError):
    """Invalid configuration."""
    pass


class MissingConfigError(ConfigurationError):
    """Required configuration missing."""
    pass


__all__ = [
    "OpsGuardError",
    "PolicyDenied",
    "TierDenied",
    "AccessDenied",
    "NoAccessMapEntry",
    "CooldownDenied",
    "AbortedError",
    "ExecutionFailed",
    "BackendUnavailable",
    "IncidentClosedError",
    "ReservationError",
    "StorageError",
    "ConfigurationError",
    "InvalidConfigError",
    "MissingConfigError",
]
