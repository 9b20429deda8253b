"""
Remediation orchestrator for OpsGuard.

Sequences one remediation request through the gates and executes it:

    Requested -> Gated -> AccessChecked -> Reserved -> Executing
        -> Succeeded | Failed | Denied

Gate failures end Denied immediately. Tier and access denials never touch
the cooldown tracker. Failed is only reachable after Executing. Every
terminal state writes exactly one ExecutionRecord, and any Denied or Failed
outcome is handed to the escalation manager. Nothing is retried: a second
request for the same (incident, service, action kind) is refused.

Classes:
    IncidentState: State machine states
    RemediationRequest: One playbook invocation
    RemediationReport: Terminal result of a request
    Orchestrator: Facade over the tier gate, access resolver, cooldown
        tracker, executor and escalation manager

Example:
    >>> orchestrator = Orchestrator(
    ...     store=SQLiteStateStore("opsguard.db"),
    ...     access_map=HostAccessMap.from_file("hosts.yaml"),
    ... )
    >>> report = orchestrator.remediate(
    ...     RemediationRequest(
    ...         incident_id="inc-42",
    ...         service="api",
    ...         host_id="web-01",
    ...         playbook=PlaybookDescriptor(name="restart-api", min_tier=2, action_kind="restart"),
    ...         agent_tier=2,
    ...     ),
    ...     backend=restart_container,
    ...     probe=health_check,
    ... )
    >>> print(report.summary())
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from ..exceptions import (
    AbortedError,
    AccessDenied,
    ConfigurationError,
    CooldownDenied,
    IncidentClosedError,
    PolicyDenied,
    StorageError,
)
from ..logging_context import LoggingContext, get_logger
from ..models import (
    ActionKind,
    Diagnostics,
    EscalationTicket,
    ExecutionRecord,
    HostAccessMap,
    Outcome,
    PlaybookDescriptor,
    Reservation,
    ReservationState,
    Service,
    generate_id,
)
from ..policy import MAX_TIER, ActionPolicy, PolicyTable
from ..storage.state_store import MemoryStateStore, StateStore
from .access import AccessResolver
from .cooldown import CooldownTracker
from .escalation import EscalationManager, RedactionFilter
from .executor import ActionExecutor, ExecutionOutcome, as_backend, as_probe
from .tier_gate import TierGate

logger = get_logger(__name__)

AccessMapSource = Union[HostAccessMap, Callable[[], HostAccessMap], None]
ClaimKey = Tuple[str, str, ActionKind]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IncidentState(str, Enum):
    REQUESTED = "requested"
    GATED = "gated"
    ACCESS_CHECKED = "access_checked"
    RESERVED = "reserved"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DENIED = "denied"


TERMINAL_STATES = {IncidentState.SUCCEEDED, IncidentState.FAILED, IncidentState.DENIED}


@dataclass
class RemediationRequest:
    """
    One playbook invocation by an agent.

    ``agent_tier`` is taken as given; anything other than a known integer
    tier is denied by the tier gate.
    """
    incident_id: str
    service: str
    host_id: str
    playbook: PlaybookDescriptor
    agent_tier: Any = None
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def action_kind(self) -> ActionKind:
        return self.playbook.action_kind


@dataclass
class RemediationReport:
    """Terminal result of one request, with its audit record and ticket."""

    request: RemediationRequest
    record: ExecutionRecord
    state: IncidentState
    transitions: List[IncidentState] = field(default_factory=list)
    ticket: Optional[EscalationTicket] = None
    execution: Optional[ExecutionOutcome] = None
    retry_after: Optional[datetime] = None

    @property
    def outcome(self) -> Outcome:
        return self.record.outcome

    @property
    def succeeded(self) -> bool:
        return self.record.outcome == Outcome.SUCCESS

    def summary(self) -> str:
        """Human-readable one-paragraph summary."""
        record = self.record
        lines = [
            f"[{record.outcome.value.upper()}] {record.action_kind.value} on "
            f"{record.service} ({record.host_id}) for incident {record.incident_id}"
        ]
        if record.denial_policy:
            lines.append(f"Denied by {record.denial_policy} policy: {record.detail}")
        elif record.detail:
            lines.append(record.detail)
        if self.retry_after:
            lines.append(f"Retry after {self.retry_after.isoformat()}")
        if self.ticket:
            target = (
                f"tier {self.ticket.recommended_tier}"
                if self.ticket.recommended_tier else "human operator"
            )
            lines.append(f"Escalated to {target} (ticket {self.ticket.ticket_id})")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "transitions": [s.value for s in self.transitions],
            "record": self.record.to_dict(),
            "ticket": self.ticket.to_dict() if self.ticket else None,
            "retry_after": self.retry_after.isoformat() if self.retry_after else None,
            "summary": self.summary(),
        }


class Orchestrator:
    """
    Remediation orchestration facade.

    Thread-safe: concurrent requests for different services proceed in
    parallel; the cooldown tracker serializes quota per (service, kind).
    """

    def __init__(
        self,
        store: Optional[StateStore] = None,
        access_map: AccessMapSource = None,
        policies: Optional[PolicyTable] = None,
        max_tier: int = MAX_TIER,
        executor: Optional[ActionExecutor] = None,
        escalation: Optional[EscalationManager] = None,
        notifiers: Optional[Sequence[Any]] = None,
        dry_run: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize orchestrator.

        Args:
            store: Durable state (in-memory if None)
            access_map: Access map, or a loader called once per incident
            policies: Policy table (defaults if None)
            max_tier: Highest agent tier deployed
            executor: Action executor (built from policies if None)
            escalation: Escalation manager (built from store if None)
            notifiers: Sinks for escalation tickets and success reports
            dry_run: Skip backends; used only when executor is None
            clock: Time source
        """
        self.store = store or MemoryStateStore()
        self.policies = policies or PolicyTable.default()
        self.clock = clock
        self.notifiers: List[Any] = list(notifiers or [])

        self.tier_gate = TierGate(max_tier)
        self.cooldowns = CooldownTracker(self.store, self.policies)
        self.executor = executor or ActionExecutor(self.policies, dry_run=dry_run, clock=clock)
        self.escalation = escalation or EscalationManager(
            self.store, self.notifiers, max_tier=max_tier, clock=clock
        )

        self._access_source = access_map
        self._incident_access: Dict[str, HostAccessMap] = {}
        self.services: Dict[str, Service] = {}

        self._lock = threading.Lock()
        self._claimed: Set[ClaimKey] = set()
        self._aborted: Set[str] = set()
        self._pending: Dict[str, List[Reservation]] = {}

        logger.info(
            f"Initialized Orchestrator (max_tier={max_tier}, "
            f"dry_run={self.executor.dry_run})"
        )

    @classmethod
    def from_config(cls, config, notifiers: Optional[Sequence[Any]] = None) -> 'Orchestrator':
        """
        Build an orchestrator from an OpsGuardConfig.

        The access map file, if configured, is re-read for every new incident.
        """
        from ..storage.state_store import SQLiteStateStore

        store = SQLiteStateStore(config.state_db)
        policies = PolicyTable.default().with_overrides(config.policy_overrides)

        access_map: AccessMapSource = None
        if config.access_map_file:
            path = config.access_map_file
            access_map = lambda: HostAccessMap.from_file(path)  # noqa: E731

        executor = ActionExecutor(
            policies,
            max_workers=config.executor_workers,
            dry_run=config.dry_run,
        )
        escalation = EscalationManager(
            store,
            notifiers,
            max_tier=config.max_tier,
            redactor=RedactionFilter(prefix=config.redact_env_prefix),
        )
        return cls(
            store=store,
            access_map=access_map,
            policies=policies,
            max_tier=config.max_tier,
            executor=executor,
            escalation=escalation,
            notifiers=notifiers,
        )

    def _access_map_for(self, incident_id: str, host_id: str) -> HostAccessMap:
        """
        Access map snapshot, frozen for the lifetime of an incident.

        Raises:
            AccessDenied: If the map cannot be loaded. Nothing is cached, so
                the next incident loads it again.
        """
        with self._lock:
            snapshot = self._incident_access.get(incident_id)
        if snapshot is not None:
            return snapshot

        source = self._access_source
        if source is None:
            snapshot = HostAccessMap()
        elif isinstance(source, HostAccessMap):
            snapshot = source
        else:
            try:
                snapshot = source()
            except (ConfigurationError, OSError, ValueError) as e:
                logger.error(f"Access map unavailable: {e}")
                raise AccessDenied(f"access map unavailable: {e}", host_id=host_id) from e

        with self._lock:
            return self._incident_access.setdefault(incident_id, snapshot)

    def _claim(self, request: RemediationRequest) -> ClaimKey:
        key = (request.incident_id, request.service, request.action_kind)
        with self._lock:
            if key in self._claimed or self._has_record(request):
                raise IncidentClosedError(
                    f"{request.action_kind.value} on {request.service} already "
                    f"reached a terminal state for incident {request.incident_id}"
                )
            self._claimed.add(key)
        return key

    def _has_record(self, request: RemediationRequest) -> bool:
        records = self.store.list_records(
            incident_id=request.incident_id, service=request.service
        )
        return any(r.action_kind == request.action_kind for r in records)

    def _release_claim(self, key: ClaimKey, request: RemediationRequest, previous_status: str) -> None:
        """Drop the claim of a request that ended without a record."""
        try:
            if self._has_record(request):
                return
        except StorageError as e:
            logger.error(f"Cannot confirm record for {request.service}: {e}")

        with self._lock:
            self._claimed.discard(key)
            service = self.services.get(request.service)
            if service is not None and service.status == "remediating":
                service.status = previous_status
                service.updated_at = self.clock()
        logger.warning(
            f"Released claim on {request.action_kind.value} for {request.service}; "
            f"no record was written"
        )

    def _register_service(self, request: RemediationRequest) -> str:
        """Mark a service as remediating and return its previous status."""
        with self._lock:
            if request.service not in self.services:
                self.services[request.service] = Service(
                    name=request.service, host_id=request.host_id
                )
            service = self.services[request.service]
            previous = service.status
            service.status = "remediating"
            service.updated_at = self.clock()
        return previous

    def _update_service(self, name: str, outcome: Outcome) -> None:
        with self._lock:
            service = self.services[name]
            service.last_outcome = outcome
            service.status = "healthy" if outcome == Outcome.SUCCESS else "escalated"
            service.updated_at = self.clock()

    def remediate(
        self,
        request: RemediationRequest,
        backend: Any,
        probe: Any,
        diagnostics: Optional[Diagnostics] = None,
    ) -> RemediationReport:
        """
        Run one request to a terminal state.

        Args:
            request: The playbook invocation
            backend: Backend or callable performing the action
            probe: VerificationProbe or callable checking the result
            diagnostics: Log tail and diagnosis attached on escalation

        Returns:
            RemediationReport for the terminal state

        Raises:
            IncidentClosedError: If this (incident, service, kind) already
                reached a terminal state. Nothing is recorded.
            StorageError: If state could not be read or written. The claim
                is released so the request can be retried.
        """
        backend = as_backend(backend)
        probe = as_probe(probe)
        key = self._claim(request)
        previous_status = self._register_service(request)

        try:
            return self._run(request, backend, probe, diagnostics)
        except BaseException:
            self._release_claim(key, request, previous_status)
            raise

    def _run(
        self,
        request: RemediationRequest,
        backend: Any,
        probe: Any,
        diagnostics: Optional[Diagnostics],
    ) -> RemediationReport:
        started_at = self.clock()
        transitions = [IncidentState.REQUESTED]
        policy = self.policies.for_playbook(request.playbook)

        with LoggingContext(
            incident_id=request.incident_id,
            service=request.service,
            action_kind=request.action_kind.value,
            host_id=request.host_id,
            agent_tier=request.agent_tier,
        ):
            logger.info(
                f"Remediation requested: {request.playbook.name} "
                f"({request.action_kind.value}) on {request.service}"
            )
            try:
                self._check_aborted(request.incident_id)
                self.tier_gate.require(request.agent_tier, policy.min_tier)
                transitions.append(IncidentState.GATED)

                resolver = AccessResolver(
                    self._access_map_for(request.incident_id, request.host_id)
                )
                access = resolver.authorize(request.host_id, policy)
                transitions.append(IncidentState.ACCESS_CHECKED)

                reservation = self.cooldowns.try_reserve(
                    request.service, request.action_kind, self.clock(), policy
                )
                transitions.append(IncidentState.RESERVED)
                self._hold(request.incident_id, reservation)
            except PolicyDenied as e:
                return self._deny(request, policy, started_at, transitions, e, diagnostics)

            try:
                self._begin_execution(request.incident_id, reservation)
            except AbortedError as e:
                return self._deny(request, policy, started_at, transitions, e, diagnostics)

            transitions.append(IncidentState.EXECUTING)
            try:
                execution = self.executor.execute(
                    request.action_kind,
                    access,
                    request.service,
                    backend,
                    probe,
                    incident_id=request.incident_id,
                    policy=policy,
                    playbook=request.playbook.name,
                    params=request.params,
                )
            except Exception:
                self.cooldowns.rollback(reservation)
                raise

            if execution.dry_run or not execution.backend_started:
                self.cooldowns.rollback(reservation)
            else:
                # The slot was counted at reserve time; the action still gets its record
                try:
                    self.cooldowns.commit(reservation, execution.outcome)
                except StorageError as e:
                    logger.error(f"Could not commit {reservation.reservation_id}: {e}")

            return self._finish(request, policy, started_at, transitions, execution, diagnostics)

    def _hold(self, incident_id: str, reservation: Reservation) -> None:
        with self._lock:
            self._pending.setdefault(incident_id, []).append(reservation)

    def _begin_execution(self, incident_id: str, reservation: Reservation) -> None:
        """Move a held reservation to executing, unless the incident was aborted."""
        with self._lock:
            held = self._pending.get(incident_id, [])
            if reservation in held:
                held.remove(reservation)
            if not held:
                self._pending.pop(incident_id, None)
            aborted = incident_id in self._aborted

        if aborted:
            self.cooldowns.rollback(reservation)
            raise AbortedError(f"Incident {incident_id} was aborted before execution")

    def _check_aborted(self, incident_id: str) -> None:
        with self._lock:
            if incident_id in self._aborted:
                raise AbortedError(f"Incident {incident_id} was aborted")

    def abort(self, incident_id: str) -> int:
        """
        Abort an incident.

        Reservations not yet executing are rolled back; later requests for
        the incident end Denied with policy ``aborted``. Actions already
        executing run to completion.

        Returns:
            Number of reservations rolled back
        """
        with self._lock:
            self._aborted.add(incident_id)
            held = self._pending.pop(incident_id, [])

        for reservation in held:
            self.cooldowns.rollback(reservation)

        logger.warning(f"Aborted incident {incident_id} ({len(held)} reservation(s) released)")
        return len(held)

    def close_incident(self, incident_id: str) -> int:
        """
        Forget the in-memory state of a finished incident.

        Claims whose record is persisted are dropped; the store keeps
        refusing repeats for them. The access map snapshot and the abort
        flag go once no request of the incident is still in flight.

        Returns:
            Number of claims dropped
        """
        finished = {
            (r.incident_id, r.service, r.action_kind)
            for r in self.store.list_records(incident_id=incident_id)
        }
        with self._lock:
            dropped = [key for key in self._claimed if key[0] == incident_id and key in finished]
            self._claimed.difference_update(dropped)
            in_flight = any(key[0] == incident_id for key in self._claimed)
            if not in_flight:
                self._incident_access.pop(incident_id, None)
                self._aborted.discard(incident_id)
                self._pending.pop(incident_id, None)

        logger.debug(
            f"Closed incident {incident_id}: {len(dropped)} claim(s) dropped"
            + (", requests still in flight" if in_flight else "")
        )
        return len(dropped)

    def _record(
        self,
        request: RemediationRequest,
        started_at: datetime,
        outcome: Outcome,
        detail: str,
        denial_policy: Optional[str] = None,
        dry_run: bool = False,
    ) -> ExecutionRecord:
        tier = request.agent_tier
        if isinstance(tier, bool) or not isinstance(tier, int):
            tier = None

        ended_at = self.clock()
        record = ExecutionRecord(
            record_id=generate_id("rec", ended_at),
            incident_id=request.incident_id,
            service=request.service,
            host_id=request.host_id,
            action_kind=request.action_kind,
            tier=tier,
            started_at=started_at,
            ended_at=ended_at,
            outcome=outcome,
            detail=detail,
            denial_policy=denial_policy,
            playbook=request.playbook.name,
            dry_run=dry_run,
        )
        self.store.append_record(record)
        self._update_service(request.service, outcome)
        return record

    def _deny(
        self,
        request: RemediationRequest,
        policy: ActionPolicy,
        started_at: datetime,
        transitions: List[IncidentState],
        error: PolicyDenied,
        diagnostics: Optional[Diagnostics],
    ) -> RemediationReport:
        transitions.append(IncidentState.DENIED)
        record = self._record(
            request, started_at, Outcome.DENIED, error.reason, denial_policy=error.policy
        )
        retry_after = error.retry_after if isinstance(error, CooldownDenied) else None

        diag = diagnostics or Diagnostics()
        extra = dict(diag.extra)
        if retry_after:
            extra["retry_after"] = retry_after.isoformat()
        ticket = self.escalation.escalate(
            record,
            Diagnostics(
                log_tail=diag.log_tail,
                diagnosis=diag.diagnosis,
                backend_output=diag.backend_output,
                verification_output=diag.verification_output,
                extra=extra,
            ),
            policy,
        )

        logger.warning(f"Remediation denied by {error.policy} policy: {error.reason}")
        return RemediationReport(
            request=request,
            record=record,
            state=IncidentState.DENIED,
            transitions=transitions,
            ticket=ticket,
            retry_after=retry_after,
        )

    def _finish(
        self,
        request: RemediationRequest,
        policy: ActionPolicy,
        started_at: datetime,
        transitions: List[IncidentState],
        execution: ExecutionOutcome,
        diagnostics: Optional[Diagnostics],
    ) -> RemediationReport:
        detail = execution.backend_detail if execution.dry_run else execution.detail
        record = self._record(
            request, started_at, execution.outcome, detail, dry_run=execution.dry_run
        )

        if execution.succeeded:
            transitions.append(IncidentState.SUCCEEDED)
            report = RemediationReport(
                request=request,
                record=record,
                state=IncidentState.SUCCEEDED,
                transitions=transitions,
                execution=execution,
            )
            logger.info(f"Remediation succeeded: {detail}")
            self._notify(report)
            return report

        transitions.append(IncidentState.FAILED)
        diag = diagnostics or Diagnostics()
        extra = dict(diag.extra)
        extra["failure_kind"] = execution.failure_kind
        ticket = self.escalation.escalate(
            record,
            Diagnostics(
                log_tail=diag.log_tail,
                diagnosis=diag.diagnosis,
                backend_output=execution.backend_detail,
                verification_output=execution.verification_detail,
                extra=extra,
            ),
            policy,
        )
        logger.error(f"Remediation failed ({execution.failure_kind}); escalated as {ticket.ticket_id}")
        return RemediationReport(
            request=request,
            record=record,
            state=IncidentState.FAILED,
            transitions=transitions,
            ticket=ticket,
            execution=execution,
        )

    def _notify(self, report: RemediationReport) -> None:
        for notifier in self.notifiers:
            try:
                notifier.notify(report)
            except Exception as e:
                logger.error(f"Notifier {notifier.__class__.__name__} failed: {e}")

    def history(self, incident_id: Optional[str] = None, service: Optional[str] = None) -> List[ExecutionRecord]:
        return self.store.list_records(incident_id=incident_id, service=service)

    def close(self) -> None:
        self.executor.close()
        self.store.close()
