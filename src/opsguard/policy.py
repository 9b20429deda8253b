"""
Declarative remediation policy table.

Every gate in the core consults this table instead of carrying its own
constants, so changing how often a service may be restarted, or which tier
may redeploy, is a data edit.

Tiers:
    1: observe (read-only diagnostics)
    2: investigate and apply safe remediations (restart, key rotation)
    3: full remediation (redeploy)

Example:
    >>> from opsguard.policy import PolicyTable
    >>> from opsguard.models import ActionKind
    >>> table = PolicyTable.default()
    >>> table.get(ActionKind.RESTART).max_occurrences
    2
"""
import logging
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Dict, Iterator, Mapping, Optional

from .exceptions import InvalidConfigError
from .models import ActionKind, PlaybookDescriptor

logger = logging.getLogger(__name__)

MIN_TIER = 1
MAX_TIER = 3


@dataclass(frozen=True)
class ActionPolicy:
    """
    Static policy for one action kind.

    Attributes:
        action_kind: Action class the policy applies to
        min_tier: Lowest agent tier allowed to run the action
        window: Fixed cooldown window length (None disables rate limiting)
        max_occurrences: Maximum actions per window (None means unlimited)
        requires_write: Whether the action mutates the host
        verify_timeout: Seconds to wait for the verification probe
        execution_timeout: Seconds to wait for the backend call
        escalate_with_diagnosis: Failed attempts must carry a diagnosis
    """
    action_kind: ActionKind
    min_tier: int
    window: Optional[timedelta]
    max_occurrences: Optional[int]
    requires_write: bool
    verify_timeout: float
    execution_timeout: float
    escalate_with_diagnosis: bool = False

    @property
    def rate_limited(self) -> bool:
        return self.window is not None and self.max_occurrences is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_kind": self.action_kind.value,
            "min_tier": self.min_tier,
            "window_seconds": self.window.total_seconds() if self.window else None,
            "max_occurrences": self.max_occurrences,
            "requires_write": self.requires_write,
            "verify_timeout": self.verify_timeout,
            "execution_timeout": self.execution_timeout,
            "escalate_with_diagnosis": self.escalate_with_diagnosis,
        }


DEFAULT_POLICIES: Dict[ActionKind, ActionPolicy] = {
    ActionKind.RESTART: ActionPolicy(
        action_kind=ActionKind.RESTART,
        min_tier=2,
        window=timedelta(hours=4),
        max_occurrences=2,
        requires_write=True,
        verify_timeout=60.0,
        execution_timeout=120.0,
        escalate_with_diagnosis=True,
    ),
    ActionKind.REDEPLOY: ActionPolicy(
        action_kind=ActionKind.REDEPLOY,
        min_tier=3,
        window=timedelta(hours=24),
        max_occurrences=1,
        requires_write=True,
        verify_timeout=300.0,
        execution_timeout=900.0,
    ),
    # One rotation per hour
    ActionKind.ROTATE_KEY: ActionPolicy(
        action_kind=ActionKind.ROTATE_KEY,
        min_tier=2,
        window=timedelta(hours=1),
        max_occurrences=1,
        requires_write=True,
        verify_timeout=60.0,
        execution_timeout=300.0,
    ),
    ActionKind.INSPECT_LOGS: ActionPolicy(
        action_kind=ActionKind.INSPECT_LOGS,
        min_tier=1,
        window=None,
        max_occurrences=None,
        requires_write=False,
        verify_timeout=30.0,
        execution_timeout=60.0,
    ),
}

# Keys accepted in a "policies:" config section
_OVERRIDE_KEYS = {
    "min_tier",
    "window_seconds",
    "window_hours",
    "max_occurrences",
    "verify_timeout",
    "execution_timeout",
    "escalate_with_diagnosis",
}


class PolicyTable:
    """Lookup of ActionPolicy by ActionKind."""

    def __init__(self, policies: Optional[Mapping[ActionKind, ActionPolicy]] = None):
        self._policies: Dict[ActionKind, ActionPolicy] = dict(policies or DEFAULT_POLICIES)

        missing = [kind.value for kind in ActionKind if kind not in self._policies]
        if missing:
            raise InvalidConfigError(f"Policy table missing action kinds: {missing}")

    @classmethod
    def default(cls) -> 'PolicyTable':
        return cls(DEFAULT_POLICIES)

    def get(self, action_kind: ActionKind) -> ActionPolicy:
        return self._policies[ActionKind(action_kind)]

    def __iter__(self) -> Iterator[ActionPolicy]:
        return iter(self._policies[kind] for kind in ActionKind)

    def with_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> 'PolicyTable':
        """
        Return a new table with per-kind overrides applied.

        Args:
            overrides: ``{"restart": {"max_occurrences": 3, "window_hours": 2}}``

        Raises:
            InvalidConfigError: On unknown kinds, unknown keys or bad values
        """
        policies = dict(self._policies)

        for kind_name, values in (overrides or {}).items():
            try:
                kind = ActionKind(kind_name)
            except ValueError:
                raise InvalidConfigError(f"Unknown action kind in policies: '{kind_name}'")

            if not isinstance(values, Mapping):
                raise InvalidConfigError(f"Policy override for '{kind_name}' must be a mapping")

            unknown = set(values) - _OVERRIDE_KEYS
            if unknown:
                raise InvalidConfigError(
                    f"Unknown policy keys for '{kind_name}': {sorted(unknown)}"
                )

            try:
                changes = _parse_override(values)
            except (TypeError, ValueError) as e:
                raise InvalidConfigError(f"Invalid policy value for '{kind_name}': {e}") from e

            policy = replace(policies[kind], **changes)
            _validate_policy(policy)
            policies[kind] = policy
            logger.info(f"Applied policy override for {kind.value}: {changes}")

        return PolicyTable(policies)

    def for_playbook(self, playbook: PlaybookDescriptor) -> ActionPolicy:
        """
        Effective policy for a playbook invocation.

        The minimum tier is the stricter of the table and the playbook. A
        playbook cooldown override replaces the window and count.
        """
        policy = self.get(playbook.action_kind)
        changes: Dict[str, Any] = {"min_tier": max(policy.min_tier, playbook.min_tier)}

        override = playbook.cooldown_override
        if override is not None:
            changes["window"] = timedelta(seconds=override.window_seconds)
            if override.max_occurrences is not None:
                changes["max_occurrences"] = override.max_occurrences

        return replace(policy, **changes)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {policy.action_kind.value: policy.to_dict() for policy in self}


def _validate_policy(policy: ActionPolicy) -> None:
    errors = []
    if not (MIN_TIER <= policy.min_tier <= MAX_TIER):
        errors.append(f"min_tier must be between {MIN_TIER} and {MAX_TIER}, got {policy.min_tier}")
    if policy.window is not None and policy.window.total_seconds() <= 0:
        errors.append("window must be positive")
    if policy.max_occurrences is not None and policy.max_occurrences < 1:
        errors.append(f"max_occurrences must be >= 1, got {policy.max_occurrences}")
    if policy.verify_timeout <= 0:
        errors.append("verify_timeout must be positive")
    if policy.execution_timeout <= 0:
        errors.append("execution_timeout must be positive")

    if errors:
        raise InvalidConfigError(
            f"Invalid policy for {policy.action_kind.value}: " + "; ".join(errors)
        )


def _parse_override(values: Mapping[str, Any]) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if "min_tier" in values:
        changes["min_tier"] = int(values["min_tier"])
    if "window_seconds" in values:
        changes["window"] = timedelta(seconds=float(values["window_seconds"]))
    if "window_hours" in values:
        changes["window"] = timedelta(hours=float(values["window_hours"]))
    if "max_occurrences" in values:
        max_occ = values["max_occurrences"]
        changes["max_occurrences"] = None if max_occ is None else int(max_occ)
    for key in ("verify_timeout", "execution_timeout"):
        if key in values:
            changes[key] = float(values[key])
    if "escalate_with_diagnosis" in values:
        changes["escalate_with_diagnosis"] = bool(values["escalate_with_diagnosis"])
    return changes
