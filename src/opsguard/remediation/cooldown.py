"""
Cooldown tracking for remediation actions.

Each (service, action kind) pair has a fixed window anchored at the first
action in that window. Quota is claimed in two phases: ``try_reserve``
provisionally increments the window count, then ``commit`` finalizes the
claim once the action ran, or ``rollback`` releases it when the action never
ran. Provisional increments stop two concurrent callers from both reading
"0 used" and both proceeding.

Locks are per key, so unrelated services never contend. No lock is held
between reserve and commit, i.e. never across execution. Each step is one
atomic ``StateStore.update_window`` call, so trackers in separate processes
sharing a database never both claim the last slot.

Example:
    >>> tracker = CooldownTracker(MemoryStateStore(), PolicyTable.default())
    >>> reservation = tracker.try_reserve("api", ActionKind.RESTART, now)
    >>> tracker.commit(reservation, Outcome.SUCCESS)
"""
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import CooldownDenied, ReservationError
from ..models import (
    ActionKind,
    CooldownWindow,
    Outcome,
    Reservation,
    ReservationState,
)
from ..policy import ActionPolicy, PolicyTable
from ..storage.state_store import StateStore

logger = logging.getLogger(__name__)

Key = Tuple[str, ActionKind]


class CooldownTracker:
    """
    Per-service rate limiting with independent windows per action kind.

    The tracker is the only writer of cooldown windows. Every mutation is
    written through to the state store so limits survive restarts.
    """

    def __init__(self, store: StateStore, policies: Optional[PolicyTable] = None):
        """
        Initialize cooldown tracker.

        Args:
            store: Persistent window storage
            policies: Policy table providing windows and limits
        """
        self.store = store
        self.policies = policies or PolicyTable.default()

        self._locks: Dict[Key, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: Key) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def try_reserve(
        self,
        service: str,
        action_kind: ActionKind,
        now: datetime,
        policy: Optional[ActionPolicy] = None,
    ) -> Reservation:
        """
        Provisionally claim one action slot.

        Args:
            service: Target service
            action_kind: Action class
            now: Current time; timestamps on the window boundary open a new window
            policy: Effective policy (defaults to the table entry)

        Returns:
            A provisional Reservation

        Raises:
            CooldownDenied: If the window is full. ``retry_after`` is the
                window end. The window is left untouched.
        """
        action_kind = ActionKind(action_kind)
        policy = policy or self.policies.get(action_kind)
        reservation_id = f"rsv-{uuid.uuid4().hex[:12]}"

        if not policy.rate_limited:
            return Reservation(
                reservation_id=reservation_id,
                service=service,
                action_kind=action_kind,
                window_start=now,
                reserved_at=now,
                limited=False,
            )

        key = (service, action_kind)
        reserved: Dict[str, Any] = {}

        def reserve(stored: Optional[CooldownWindow]) -> CooldownWindow:
            opened = stored is None or now - stored.window_start >= policy.window
            if opened:
                window = CooldownWindow(
                    service=service,
                    action_kind=action_kind,
                    count=0,
                    window_start=now,
                    last_action_timestamp=stored.last_action_timestamp if stored else None,
                )
            else:
                window = stored

            if window.count >= policy.max_occurrences:
                retry_after = window.window_start + policy.window
                logger.warning(
                    f"Cooldown denied {action_kind.value} on {service}: "
                    f"{window.count}/{policy.max_occurrences} used, retry after "
                    f"{retry_after.isoformat()}"
                )
                raise CooldownDenied(
                    f"{action_kind.value} quota exhausted for {service} "
                    f"({window.count}/{policy.max_occurrences} in "
                    f"{policy.window}); retry after {retry_after.isoformat()}",
                    retry_after=retry_after,
                )

            window.count += 1
            reserved["opened"] = opened
            reserved["previous"] = stored if opened else None
            return window

        with self._lock_for(key):
            window = self.store.update_window(service, action_kind, reserve)

        logger.info(
            f"Reserved {action_kind.value} slot for {service} "
            f"({window.count}/{policy.max_occurrences})"
        )
        return Reservation(
            reservation_id=reservation_id,
            service=service,
            action_kind=action_kind,
            window_start=window.window_start,
            reserved_at=now,
            opened_window=reserved["opened"],
            previous_window=reserved["previous"],
        )

    def commit(self, reservation: Reservation, outcome: Outcome) -> None:
        """
        Finalize a reservation after the action was attempted.

        Attempts consume quota whatever their outcome.

        Raises:
            ReservationError: If the reservation is not provisional
        """
        self._require_provisional(reservation, "commit")

        if reservation.limited:
            def stamp(window: Optional[CooldownWindow]) -> Optional[CooldownWindow]:
                if window is not None and window.window_start == reservation.window_start:
                    last = window.last_action_timestamp
                    if last is None or reservation.reserved_at > last:
                        window.last_action_timestamp = reservation.reserved_at
                return window

            with self._lock_for(reservation.key):
                self.store.update_window(reservation.service, reservation.action_kind, stamp)

        reservation.state = ReservationState.COMMITTED
        logger.info(
            f"Committed {reservation.action_kind.value} slot for "
            f"{reservation.service} (outcome={Outcome(outcome).value})"
        )

    def rollback(self, reservation: Reservation) -> None:
        """
        Release a reservation whose action never ran.

        Restores the window to its pre-reservation state. Rolling back an
        already rolled back reservation is a no-op.

        Raises:
            ReservationError: If the reservation was already committed
        """
        if reservation.state == ReservationState.ROLLED_BACK:
            return
        self._require_provisional(reservation, "rollback")

        if reservation.limited:
            def release(window: Optional[CooldownWindow]) -> Optional[CooldownWindow]:
                # A window that has since rolled over no longer holds this claim
                if window is None or window.window_start != reservation.window_start:
                    return window
                window.count = max(0, window.count - 1)
                if window.count == 0 and reservation.opened_window:
                    return reservation.previous_window
                return window

            with self._lock_for(reservation.key):
                self.store.update_window(reservation.service, reservation.action_kind, release)

        reservation.state = ReservationState.ROLLED_BACK
        logger.info(
            f"Rolled back {reservation.action_kind.value} slot for {reservation.service}"
        )

    @staticmethod
    def _require_provisional(reservation: Reservation, operation: str) -> None:
        if reservation.state != ReservationState.PROVISIONAL:
            raise ReservationError(
                f"Cannot {operation} reservation {reservation.reservation_id} "
                f"in state {reservation.state.value}"
            )

    def snapshot(self, service: str, action_kind: ActionKind) -> Optional[CooldownWindow]:
        """Current stored window for a key, or None."""
        return self.store.load_window(service, ActionKind(action_kind))

    def list_windows(self, service: Optional[str] = None) -> List[CooldownWindow]:
        return self.store.list_windows(service)

    def status(
        self,
        service: str,
        action_kind: ActionKind,
        now: datetime,
        policy: Optional[ActionPolicy] = None,
    ) -> Dict[str, Any]:
        """
        Read-only view of remaining quota for a key.

        Returns:
            Dict with used, max_occurrences, remaining and retry_after
        """
        action_kind = ActionKind(action_kind)
        policy = policy or self.policies.get(action_kind)

        if not policy.rate_limited:
            return {
                "service": service,
                "action_kind": action_kind.value,
                "used": 0,
                "max_occurrences": None,
                "remaining": None,
                "retry_after": None,
            }

        window = self.store.load_window(service, action_kind)
        if window is None or now - window.window_start >= policy.window:
            used = 0
            retry_after = None
        else:
            used = window.count
            retry_after = (
                window.window_start + policy.window
                if used >= policy.max_occurrences else None
            )

        return {
            "service": service,
            "action_kind": action_kind.value,
            "used": used,
            "max_occurrences": policy.max_occurrences,
            "remaining": max(0, policy.max_occurrences - used),
            "retry_after": retry_after.isoformat() if retry_after else None,
        }
