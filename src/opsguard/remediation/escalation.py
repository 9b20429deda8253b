"""
Escalation of denied and failed remediation actions.

Any action that ends Denied or Failed becomes an EscalationTicket. The
ticket carries everything a higher-tier agent or a human needs to pick the
incident up: backend and verification output, the opaque log tail, the
denial policy and a free-text diagnosis. Automatic retries stop here.

Credential values found in ``OPSGUARD_CRED_*`` environment variables are
scrubbed from every payload string before the ticket is stored or sent.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import quote_plus

from ..models import (
    ActionKind,
    Diagnostics,
    EscalationTicket,
    ExecutionRecord,
    Outcome,
    generate_id,
)
from ..policy import MAX_TIER, ActionPolicy
from ..storage.state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIAL_PREFIX = "OPSGUARD_CRED_"

# Values shorter than this are still redacted but may match unrelated text
SHORT_CREDENTIAL_LENGTH = 4


class RedactionFilter:
    """
    Replaces known credential values with ``[REDACTED:VAR_NAME]``.

    The replacement table is built once, at construction, from environment
    variables whose name starts with ``prefix``. URL-encoded forms are
    matched too and tagged ``:urlencoded``.

    Example:
        >>> os.environ["OPSGUARD_CRED_DB_PASS"] = "hunter22"
        >>> RedactionFilter().redact("login with hunter22")
        'login with [REDACTED:OPSGUARD_CRED_DB_PASS]'
    """

    def __init__(
        self,
        prefix: str = DEFAULT_CREDENTIAL_PREFIX,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.prefix = prefix
        self.replacements: Dict[str, str] = {}

        env = os.environ if environ is None else environ
        for name, value in env.items():
            if not name.startswith(prefix) or not value:
                continue
            if len(value) < SHORT_CREDENTIAL_LENGTH:
                logger.warning(
                    f"{name} value is shorter than {SHORT_CREDENTIAL_LENGTH} "
                    f"characters; redaction may hit unrelated text"
                )
            self.replacements[value] = f"[REDACTED:{name}]"
            encoded = quote_plus(value)
            if encoded != value:
                self.replacements[encoded] = f"[REDACTED:{name}:urlencoded]"

        # Longest first so a value containing another is replaced whole
        self._ordered = sorted(self.replacements.items(), key=lambda kv: len(kv[0]), reverse=True)

    def redact(self, text: str) -> str:
        if not self._ordered or not text:
            return text
        for value, placeholder in self._ordered:
            text = text.replace(value, placeholder)
        return text

    def redact_value(self, value: Any) -> Any:
        """Recursively redact strings inside dicts, lists and tuples."""
        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, dict):
            return {k: self.redact_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.redact_value(v) for v in value]
        return value


def recommended_tier_for(current_tier: Optional[int], max_tier: int = MAX_TIER) -> Optional[int]:
    """
    Next tier up that may take over, or None for a human operator.

    An unknown current tier hands straight to a human.
    """
    if isinstance(current_tier, bool) or not isinstance(current_tier, int):
        return None
    nxt = current_tier + 1
    if nxt > max_tier:
        return None
    return nxt


class EscalationManager:
    """
    Composes escalation tickets and delivers them to notification sinks.

    Example:
        >>> manager = EscalationManager(store, notifiers=[LoggingNotifier()])
        >>> ticket = manager.escalate(record, Diagnostics(log_tail="..."))
        >>> ticket.recommended_tier
        3
    """

    def __init__(
        self,
        store: StateStore,
        notifiers: Optional[Sequence[Any]] = None,
        max_tier: int = MAX_TIER,
        redactor: Optional[RedactionFilter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize escalation manager.

        Args:
            store: Store tickets are appended to
            notifiers: Sinks with a ``notify(payload) -> bool`` method
            max_tier: Highest agent tier deployed
            redactor: Credential scrubber (built from the environment if None)
            clock: Time source
        """
        self.store = store
        self.notifiers: List[Any] = list(notifiers or [])
        self.max_tier = max_tier
        self.redactor = redactor or RedactionFilter()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def add_notifier(self, notifier: Any) -> None:
        self.notifiers.append(notifier)

    def escalate(
        self,
        record: ExecutionRecord,
        diagnostics: Optional[Diagnostics] = None,
        policy: Optional[ActionPolicy] = None,
        action_refs: Optional[Iterable[str]] = None,
    ) -> EscalationTicket:
        """
        Build, persist and deliver the ticket for a denied or failed record.

        Args:
            record: Terminal record of the action that did not succeed
            diagnostics: Caller-supplied context (log tail, diagnosis)
            policy: Effective policy of the action kind
            action_refs: Extra record ids related to the incident

        Returns:
            The stored EscalationTicket

        Raises:
            ValueError: If the record succeeded
        """
        if record.outcome == Outcome.SUCCESS:
            raise ValueError(f"Record {record.record_id} succeeded; nothing to escalate")

        diagnostics = diagnostics or Diagnostics()
        diagnosis_required = (
            record.action_kind == ActionKind.RESTART
            or bool(policy and policy.escalate_with_diagnosis)
        )

        payload = self.redactor.redact_value({
            "service": record.service,
            "host_id": record.host_id,
            "action_kind": record.action_kind.value,
            "playbook": record.playbook,
            "agent_tier": record.tier,
            "outcome": record.outcome.value,
            "detail": record.detail,
            "backend_output": diagnostics.backend_output,
            "verification_output": diagnostics.verification_output,
            "log_tail": diagnostics.log_tail,
            "diagnosis": diagnostics.diagnosis,
            "extra": dict(diagnostics.extra),
        })

        refs = [record.record_id]
        for ref in action_refs or ():
            if ref not in refs:
                refs.append(ref)

        now = self.clock()
        ticket = EscalationTicket(
            ticket_id=generate_id("esc", now),
            incident_id=record.incident_id,
            service=record.service,
            action_kind=record.action_kind,
            outcome=record.outcome,
            action_refs=tuple(refs),
            payload=payload,
            created_at=now,
            denial_policy=record.denial_policy,
            diagnosis_required=diagnosis_required,
            recommended_tier=recommended_tier_for(record.tier, self.max_tier),
        )

        self.store.append_ticket(ticket)
        logger.warning(ticket.summary())

        self._deliver(ticket)
        return ticket

    def _deliver(self, ticket: EscalationTicket) -> None:
        for notifier in self.notifiers:
            try:
                if not notifier.notify(ticket):
                    logger.warning(f"Notifier {notifier.__class__.__name__} did not deliver {ticket.ticket_id}")
            except Exception as e:
                # The ticket is already stored; a broken sink must not mask it
                logger.error(f"Notifier {notifier.__class__.__name__} failed for {ticket.ticket_id}: {e}")
