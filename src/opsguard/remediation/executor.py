"""
Action execution with independent verification.

The executor does not know how a restart or a redeploy is physically carried
out. It calls an opaque backend capability, then a verification probe, and
reports ``Success`` only if both pass. A backend may say "command completed"
while the service is still crash-looping; verification catches that.

Both calls are bounded by the action kind's timeouts. Remote commands cannot
be interrupted safely, so a call that overruns is abandoned to its own daemon
thread and the attempt is reported as failed. An abandoned call gives up its
worker slot at once; it never delays the calls that come after it.

Classes:
    ExecutionContext: What a backend or probe gets to see
    Backend: Capability contract for remediation drivers
    VerificationProbe: Capability contract for post-action checks
    ExecutionOutcome: Result of one attempt
    ActionExecutor: Runs backend plus verification under timeouts
"""
import contextvars
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Union

from ..exceptions import BackendUnavailable, ExecutionFailed, OpsGuardError
from ..models import ActionKind, Outcome
from ..policy import ActionPolicy, PolicyTable
from .access import ResolvedAccess

logger = logging.getLogger(__name__)

ProbeResult = Union[bool, Tuple[bool, str]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CallTimedOut(Exception):
    """A bounded call started but did not return in time."""


class _CallNotStarted(Exception):
    """A bounded call never got a worker slot before its deadline."""


@dataclass(frozen=True)
class ExecutionContext:
    """Inputs handed to backends and probes for one attempt."""

    incident_id: str
    service: str
    action_kind: ActionKind
    access: ResolvedAccess
    playbook: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


class Backend(ABC):
    """
    Remediation driver contract.

    Implementations perform one action (restart a container, run a playbook,
    roll a Helm release) and report ``(success, detail)``. Raise
    BackendUnavailable for transport or infrastructure failures that say
    nothing about the remediation itself.
    """

    name = "backend"

    @abstractmethod
    def execute(self, context: ExecutionContext) -> Tuple[bool, str]:
        """Run the action and return (success, detail)."""

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.name})"


class VerificationProbe(ABC):
    """Post-action check contract (health check, rollout status)."""

    name = "probe"

    @abstractmethod
    def verify(self, context: ExecutionContext) -> ProbeResult:
        """Return True/False, or (passed, detail)."""


class FunctionBackend(Backend):
    """Adapts a plain callable ``fn(context) -> (success, detail)``."""

    def __init__(self, fn: Callable[[ExecutionContext], Tuple[bool, str]], name: Optional[str] = None):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "function")

    def execute(self, context: ExecutionContext) -> Tuple[bool, str]:
        return self.fn(context)


class FunctionProbe(VerificationProbe):
    """Adapts a plain callable ``fn(context) -> bool | (bool, detail)``."""

    def __init__(self, fn: Callable[[ExecutionContext], ProbeResult], name: Optional[str] = None):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "function")

    def verify(self, context: ExecutionContext) -> ProbeResult:
        return self.fn(context)


def as_backend(backend: Union[Backend, Callable]) -> Backend:
    if isinstance(backend, Backend):
        return backend
    if callable(backend):
        return FunctionBackend(backend)
    raise TypeError(f"Backend must be a Backend or callable, got {type(backend).__name__}")


def as_probe(probe: Union[VerificationProbe, Callable]) -> VerificationProbe:
    if isinstance(probe, VerificationProbe):
        return probe
    if callable(probe):
        return FunctionProbe(probe)
    raise TypeError(f"Probe must be a VerificationProbe or callable, got {type(probe).__name__}")


def _normalize_probe_result(result: ProbeResult) -> Tuple[bool, str]:
    if isinstance(result, tuple):
        passed, detail = result
        return bool(passed), str(detail)
    return bool(result), "passed" if result else "failed"


@dataclass
class ExecutionOutcome:
    """
    Result of one backend call plus verification.

    Attributes:
        outcome: SUCCESS only if backend and verification both passed
        backend_success: What the backend reported
        backend_detail: Backend free-form output
        verification_passed: Probe verdict, None when verification did not run
        verification_detail: Probe output
        failure_kind: backend, backend_unavailable, execution_timeout,
            not_started, verification, verification_timeout or
            verification_not_started
        dry_run: Backend and probe were skipped
        backend_started: False when the backend was never invoked
    """
    outcome: Outcome
    started_at: datetime
    ended_at: datetime
    backend_started: bool = True
    backend_success: bool = False
    backend_detail: str = ""
    verification_passed: Optional[bool] = None
    verification_detail: str = ""
    failure_kind: Optional[str] = None
    dry_run: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @property
    def detail(self) -> str:
        parts = [f"backend: {self.backend_detail or ('ok' if self.backend_success else 'failed')}"]
        if self.verification_passed is not None or self.verification_detail:
            verdict = "passed" if self.verification_passed else "failed"
            parts.append(f"verification {verdict}: {self.verification_detail}")
        return "; ".join(parts)

    def as_error(self) -> Optional[OpsGuardError]:
        """Taxonomy exception describing a failed attempt, None on success."""
        if self.succeeded:
            return None
        if self.failure_kind == "backend_unavailable":
            return BackendUnavailable(self.backend_detail)
        return ExecutionFailed(self.detail)


class ActionExecutor:
    """
    Dispatches remediation actions to pluggable backends.

    Example:
        >>> executor = ActionExecutor()
        >>> result = executor.execute(
        ...     ActionKind.RESTART, access, "api",
        ...     backend=lambda ctx: (True, "restarted"),
        ...     probe=lambda ctx: True,
        ... )
        >>> result.outcome
        <Outcome.SUCCESS: 'success'>
    """

    def __init__(
        self,
        policies: Optional[PolicyTable] = None,
        max_workers: int = 8,
        dry_run: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize action executor.

        Args:
            policies: Policy table providing per-kind timeouts
            max_workers: Backend/probe calls allowed to run at once. Calls
                abandoned after a timeout no longer count.
            dry_run: If True, report what would run without calling backends
            clock: Time source
        """
        self.policies = policies or PolicyTable.default()
        self.dry_run = dry_run
        self.clock = clock
        self.max_workers = max_workers
        self._slots = threading.BoundedSemaphore(max_workers)
        self._closed = threading.Event()
        self._thread_ids = itertools.count(1)

        logger.info(f"Initialized ActionExecutor (workers={max_workers}, dry_run={dry_run})")

    def _call_bounded(self, fn: Callable, context: ExecutionContext, timeout: float):
        """
        Run ``fn(context)`` on a dedicated daemon thread, waiting at most
        ``timeout`` seconds in total.

        Raises:
            _CallNotStarted: No slot freed up before the deadline, or the
                executor is closed. ``fn`` was never called.
            _CallTimedOut: ``fn`` is still running; it is abandoned and its
                slot released.
        """
        deadline = time.monotonic() + timeout
        if self._closed.is_set():
            raise _CallNotStarted("executor is closed")
        if not self._slots.acquire(timeout=timeout):
            raise _CallNotStarted(f"no free worker within {timeout}s")

        done = threading.Event()
        result: Dict[str, Any] = {}

        def run():
            try:
                result["value"] = fn(context)
            except BaseException as e:
                result["error"] = e
            finally:
                done.set()

        # Copy contextvars so worker logs keep the incident context
        ctx = contextvars.copy_context()
        thread = threading.Thread(
            target=ctx.run,
            args=(run,),
            name=f"opsguard-exec-{next(self._thread_ids)}",
            daemon=True,
        )
        try:
            thread.start()
            finished = done.wait(max(0.0, deadline - time.monotonic()))
        finally:
            self._slots.release()

        if not finished:
            logger.warning(f"Abandoning {thread.name} after {timeout}s")
            raise _CallTimedOut(f"timed out after {timeout}s")
        if "error" in result:
            raise result["error"]
        return result["value"]

    def execute(
        self,
        action_kind: ActionKind,
        access: ResolvedAccess,
        service: str,
        backend: Union[Backend, Callable],
        probe: Union[VerificationProbe, Callable],
        incident_id: str = "",
        policy: Optional[ActionPolicy] = None,
        playbook: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> ExecutionOutcome:
        """
        Run one remediation attempt and its verification.

        Never raises for backend or probe failures; they become a FAILED
        outcome with ``failure_kind`` set.
        """
        action_kind = ActionKind(action_kind)
        policy = policy or self.policies.get(action_kind)
        backend = as_backend(backend)
        probe = as_probe(probe)
        context = ExecutionContext(
            incident_id=incident_id,
            service=service,
            action_kind=action_kind,
            access=access,
            playbook=playbook,
            params=dict(params or {}),
        )
        started_at = self.clock()

        if self.dry_run:
            message = (
                f"[DRY RUN] Would run {action_kind.value} on {service} "
                f"via {backend} as {access.target}"
            )
            logger.info(message)
            return ExecutionOutcome(
                outcome=Outcome.SUCCESS,
                started_at=started_at,
                ended_at=self.clock(),
                backend_success=True,
                backend_detail=message,
                dry_run=True,
            )

        logger.info(f"Executing {action_kind.value} on {service} via {backend}")

        try:
            backend_success, backend_detail = self._call_bounded(
                backend.execute, context, policy.execution_timeout
            )
            backend_success = bool(backend_success)
            backend_detail = str(backend_detail)
        except _CallNotStarted as e:
            logger.error(f"{action_kind.value} on {service} was not started: {e}")
            return ExecutionOutcome(
                outcome=Outcome.FAILED,
                started_at=started_at,
                ended_at=self.clock(),
                backend_started=False,
                backend_detail=f"backend not started: {e}",
                failure_kind="not_started",
            )
        except _CallTimedOut:
            logger.error(
                f"{action_kind.value} on {service} exceeded {policy.execution_timeout}s"
            )
            return ExecutionOutcome(
                outcome=Outcome.FAILED,
                started_at=started_at,
                ended_at=self.clock(),
                backend_detail=f"backend timed out after {policy.execution_timeout}s",
                failure_kind="execution_timeout",
            )
        except BackendUnavailable as e:
            logger.error(f"Backend unavailable for {action_kind.value} on {service}: {e}")
            return ExecutionOutcome(
                outcome=Outcome.FAILED,
                started_at=started_at,
                ended_at=self.clock(),
                backend_detail=f"backend unavailable: {e}",
                failure_kind="backend_unavailable",
            )
        except Exception as e:
            logger.exception(f"Backend error for {action_kind.value} on {service}")
            backend_success, backend_detail = False, f"backend error: {e}"

        verification_passed, verification_detail, verification_failure = self._verify(
            probe, context, policy
        )

        if not backend_success:
            failure_kind = "backend"
        else:
            failure_kind = verification_failure

        outcome = Outcome.SUCCESS if failure_kind is None else Outcome.FAILED
        result = ExecutionOutcome(
            outcome=outcome,
            started_at=started_at,
            ended_at=self.clock(),
            backend_success=backend_success,
            backend_detail=backend_detail,
            verification_passed=verification_passed,
            verification_detail=verification_detail,
            failure_kind=failure_kind,
        )

        if result.succeeded:
            logger.info(f"{action_kind.value} on {service} succeeded and verified")
        else:
            logger.error(
                f"{action_kind.value} on {service} failed ({failure_kind}): {result.detail}"
            )
        return result

    def _verify(
        self,
        probe: VerificationProbe,
        context: ExecutionContext,
        policy: ActionPolicy,
    ) -> Tuple[bool, str, Optional[str]]:
        """Returns (passed, detail, failure_kind)."""
        try:
            passed, detail = _normalize_probe_result(
                self._call_bounded(probe.verify, context, policy.verify_timeout)
            )
        except _CallNotStarted as e:
            logger.error(f"Verification on {context.service} was not started: {e}")
            return False, f"verification not started: {e}", "verification_not_started"
        except _CallTimedOut:
            logger.error(
                f"Verification of {context.action_kind.value} on {context.service} "
                f"timed out after {policy.verify_timeout}s"
            )
            return False, f"verification timed out after {policy.verify_timeout}s", "verification_timeout"
        except Exception as e:
            logger.exception(f"Verification probe error on {context.service}")
            return False, f"probe error: {e}", "verification"

        return passed, detail, None if passed else "verification"

    def close(self) -> None:
        """Stop accepting work. In-flight calls are not interrupted."""
        self._closed.set()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
