"""
Data models for OpsGuard.

Externally supplied descriptors (host access map, playbooks) are pydantic
models so malformed input is rejected at load time. Records produced by the
core (execution records, escalation tickets, cooldown windows) are plain
dataclasses.
"""
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import InvalidConfigError


def generate_id(prefix: str, now: datetime) -> str:
    """Time-sortable identifier, e.g. ``rec-20260101120000123456-1a2b3c4d``."""
    return f"{prefix}-{now.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


class ActionKind(str, Enum):
    """Remediation action classes."""
    RESTART = "restart"
    REDEPLOY = "redeploy"
    ROTATE_KEY = "rotate_key"
    INSPECT_LOGS = "inspect_logs"


class AccessMethod(str, Enum):
    """Permission level available on a target host."""
    ROOT = "root"
    SUDO = "sudo"
    LIMITED = "limited"


class Outcome(str, Enum):
    """Terminal outcome of one remediation request."""
    SUCCESS = "success"
    FAILED = "failed"
    DENIED = "denied"


class HostEntry(BaseModel):
    """One row of the host access map."""

    model_config = ConfigDict(frozen=True)

    address: Optional[str] = None
    user: str = "root"
    method: AccessMethod
    prefix: str = ""

    @field_validator('method', mode='before')
    @classmethod
    def normalize_method(cls, v: Any) -> Any:
        """Accept access methods in any case."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator('prefix', mode='before')
    @classmethod
    def normalize_prefix(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v).strip()


class HostAccessMap(BaseModel):
    """
    Host identifier to access entry mapping.

    Frozen once loaded; the orchestrator snapshots one instance per incident.

    Example:
        >>> access_map = HostAccessMap.from_dict({
        ...     "web-01": {"user": "deploy", "method": "sudo"},
        ...     "nas": {"user": "admin", "method": "limited"},
        ... })
    """

    model_config = ConfigDict(frozen=True)

    hosts: Dict[str, HostEntry] = Field(default_factory=dict)

    def get(self, host_id: str) -> Optional[HostEntry]:
        return self.hosts.get(host_id)

    def __contains__(self, host_id: object) -> bool:
        return host_id in self.hosts

    def __len__(self) -> int:
        return len(self.hosts)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HostAccessMap':
        """
        Build from a mapping, with or without a top-level ``hosts`` key.
        """
        if "hosts" in data and isinstance(data["hosts"], dict):
            data = data["hosts"]
        return cls(hosts=data)

    @classmethod
    def from_file(cls, path: str | Path) -> 'HostAccessMap':
        """
        Load an access map from a YAML or JSON file.

        Raises:
            FileNotFoundError: If the file does not exist
            InvalidConfigError: If the file cannot be parsed or validated
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Access map not found: {path}")

        text = path.read_text()
        try:
            if path.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                import yaml
                data = yaml.safe_load(text)
        except Exception as e:
            raise InvalidConfigError(f"Failed to parse access map {path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise InvalidConfigError(f"Access map {path} must be a mapping")

        try:
            return cls.from_dict(data)
        except ValueError as e:
            raise InvalidConfigError(f"Invalid access map {path}: {e}") from e


class CooldownOverride(BaseModel):
    """Playbook-specific replacement for an action kind's cooldown window."""

    model_config = ConfigDict(frozen=True)

    window_seconds: float = Field(gt=0)
    max_occurrences: Optional[int] = Field(default=None, ge=1)


class PlaybookDescriptor(BaseModel):
    """Read-only description of the playbook requesting an action."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    min_tier: int = Field(ge=1)
    action_kind: ActionKind
    cooldown_override: Optional[CooldownOverride] = None


@dataclass
class Service:
    """Registry entry for a remediable unit."""

    name: str
    host_id: str
    status: str = "unknown"
    last_outcome: Optional[Outcome] = None
    updated_at: Optional[datetime] = None


@dataclass
class CooldownWindow:
    """Rate-limit window state for one (service, action kind) pair."""

    service: str
    action_kind: ActionKind
    count: int
    window_start: datetime
    last_action_timestamp: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, ActionKind]:
        return (self.service, self.action_kind)

    def copy(self) -> 'CooldownWindow':
        return CooldownWindow(
            service=self.service,
            action_kind=self.action_kind,
            count=self.count,
            window_start=self.window_start,
            last_action_timestamp=self.last_action_timestamp,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "action_kind": self.action_kind.value,
            "count": self.count,
            "window_start": self.window_start.isoformat(),
            "last_action_timestamp": (
                self.last_action_timestamp.isoformat()
                if self.last_action_timestamp else None
            ),
        }


class ReservationState(str, Enum):
    PROVISIONAL = "provisional"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Reservation:
    """Provisional claim on one unit of cooldown quota."""

    reservation_id: str
    service: str
    action_kind: ActionKind
    window_start: datetime
    reserved_at: datetime
    limited: bool = True
    state: ReservationState = ReservationState.PROVISIONAL
    # Set when the claim opened a new window; rollback restores previous_window
    opened_window: bool = False
    previous_window: Optional[CooldownWindow] = field(default=None, repr=False)

    @property
    def key(self) -> Tuple[str, ActionKind]:
        return (self.service, self.action_kind)


@dataclass(frozen=True)
class ExecutionRecord:
    """
    Immutable audit entry for one terminal remediation outcome.

    Attributes:
        record_id: Monotonic-sortable identifier
        incident_id: Incident the action belongs to
        service: Target service
        host_id: Target host identifier
        action_kind: Action class
        tier: Tier of the invoking agent (None when unspecified)
        started_at: When the request entered the orchestrator
        ended_at: When the terminal state was reached
        outcome: Success, Failed or Denied
        detail: Human-readable detail
        denial_policy: Gate that refused the action (tier/access/cooldown/aborted)
        playbook: Playbook name
        dry_run: Whether the backend was skipped
    """
    record_id: str
    incident_id: str
    service: str
    host_id: str
    action_kind: ActionKind
    tier: Optional[int]
    started_at: datetime
    ended_at: datetime
    outcome: Outcome
    detail: str = ""
    denial_policy: Optional[str] = None
    playbook: Optional[str] = None
    dry_run: bool = False

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "record_id": self.record_id,
            "incident_id": self.incident_id,
            "service": self.service,
            "host_id": self.host_id,
            "action_kind": self.action_kind.value,
            "tier": self.tier,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "outcome": self.outcome.value,
            "detail": self.detail,
            "denial_policy": self.denial_policy,
            "playbook": self.playbook,
            "dry_run": self.dry_run,
        }


@dataclass
class Diagnostics:
    """
    Caller-supplied context attached to an escalation.

    log_tail is opaque to the core; it is carried through as text.
    """
    log_tail: str = ""
    diagnosis: str = ""
    backend_output: str = ""
    verification_output: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EscalationTicket:
    """Terminal hand-off of a denied or failed remediation to a human."""

    ticket_id: str
    incident_id: str
    service: str
    action_kind: ActionKind
    outcome: Outcome
    action_refs: Tuple[str, ...]
    payload: Dict[str, Any]
    created_at: datetime
    denial_policy: Optional[str] = None
    diagnosis_required: bool = False
    recommended_tier: Optional[int] = None

    def summary(self) -> str:
        """One-line human-readable summary."""
        reason = self.denial_policy or "execution"
        target = (
            f"tier {self.recommended_tier}" if self.recommended_tier
            else "human operator"
        )
        return (
            f"[ESCALATION] {self.action_kind.value} on {self.service} "
            f"{self.outcome.value} ({reason}); incident {self.incident_id} "
            f"handed to {target}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "incident_id": self.incident_id,
            "service": self.service,
            "action_kind": self.action_kind.value,
            "outcome": self.outcome.value,
            "action_refs": list(self.action_refs),
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "denial_policy": self.denial_policy,
            "diagnosis_required": self.diagnosis_required,
            "recommended_tier": self.recommended_tier,
            "summary": self.summary(),
        }


__all__: List[str] = [
    "generate_id",
    "ActionKind",
    "AccessMethod",
    "Outcome",
    "HostEntry",
    "HostAccessMap",
    "CooldownOverride",
    "PlaybookDescriptor",
    "Service",
    "CooldownWindow",
    "ReservationState",
    "Reservation",
    "ExecutionRecord",
    "Diagnostics",
    "EscalationTicket",
]
