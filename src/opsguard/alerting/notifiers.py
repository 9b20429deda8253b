"""
Notification channels for OpsGuard.

Sinks receive EscalationTickets (denied or failed actions) and
RemediationReports (successful actions). Both expose ``summary()`` and
``to_dict()``, which is all a sink relies on.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


def _outcome_of(payload: Any) -> str:
    outcome = getattr(payload, "outcome", None)
    return getattr(outcome, "value", str(outcome or "info"))


class Notifier(ABC):
    """Abstract base class for notification sinks."""

    @abstractmethod
    def notify(self, payload: Any) -> bool:
        """
        Deliver a ticket or report.

        Args:
            payload: EscalationTicket or RemediationReport

        Returns:
            True if the notification was delivered
        """
        pass


class LoggingNotifier(Notifier):
    """Writes notifications to the OpsGuard log."""

    def __init__(self, logger_name: str = "opsguard.notifications"):
        self.log = logging.getLogger(logger_name)

    def notify(self, payload: Any) -> bool:
        level = logging.INFO if _outcome_of(payload) == "success" else logging.WARNING
        self.log.log(level, payload.summary())
        return True


class ConsoleNotifier(Notifier):
    """
    Console/stdout notifier for operators running the CLI.

    Prints notifications with color coding by outcome.
    """

    # ANSI color codes
    COLORS = {
        "denied": "\033[93m",  # Yellow
        "failed": "\033[91m",  # Red
        "success": "\033[92m",  # Green
        "reset": "\033[0m"
    }

    def __init__(self, use_colors: bool = True):
        """
        Initialize console notifier.

        Args:
            use_colors: Whether to use ANSI colors
        """
        self.use_colors = use_colors
        self.sent: List[Dict[str, Any]] = []

    def notify(self, payload: Any) -> bool:
        """Print notification to console."""
        try:
            outcome = _outcome_of(payload)
            color = self.COLORS.get(outcome, "") if self.use_colors else ""
            reset = self.COLORS["reset"] if self.use_colors else ""

            print(f"\n{color}{'='*60}{reset}")
            print(f"{color}{payload.summary()}{reset}")
            print(f"{color}{'='*60}{reset}")

            data = payload.to_dict()
            details = data.get("payload") or data.get("record") or {}
            for key in ("detail", "backend_output", "verification_output", "diagnosis"):
                if details.get(key):
                    print(f"{key}: {details[key]}")
            print()

            self.sent.append(data)
            return True

        except Exception as e:
            logger.error(f"Console notifier error: {e}")
            return False


class WebhookNotifier(Notifier):
    """
    Generic webhook notifier.

    POSTs the payload as JSON to an endpoint. Can be used to open tickets
    in an incident tracker or page an on-call rotation.
    """

    def __init__(
        self,
        webhook_url: str,
        headers: Optional[Dict[str, str]] = None,
        auth_token: Optional[str] = None,
        timeout: float = 10,
    ):
        """
        Initialize webhook notifier.

        Args:
            webhook_url: Webhook URL to POST notifications to
            headers: Optional custom headers
            auth_token: Optional authorization token (added to headers)
            timeout: Request timeout in seconds
        """
        self.webhook_url = webhook_url
        self.headers = dict(headers or {})
        self.timeout = timeout

        if auth_token:
            self.headers['Authorization'] = f'Bearer {auth_token}'

        self.headers['Content-Type'] = 'application/json'

    def notify(self, payload: Any) -> bool:
        """Send notification to webhook."""
        try:
            body = json.loads(json.dumps(payload.to_dict(), default=str))
            response = requests.post(
                self.webhook_url,
                json=body,
                headers=self.headers,
                timeout=self.timeout,
            )
            response.raise_for_status()

            logger.debug(f"Webhook notification sent to {self.webhook_url}")
            return True

        except requests.RequestException as e:
            logger.error(f"Webhook notifier error: {e}")
            return False
