"""
Notification sinks for OpsGuard.

Escalation tickets and success reports are delivered to every configured
sink: the log, the console, or a webhook endpoint.
"""

from .notifiers import (
    Notifier,
    LoggingNotifier,
    ConsoleNotifier,
    WebhookNotifier,
)

__all__ = [
    "Notifier",
    "LoggingNotifier",
    "ConsoleNotifier",
    "WebhookNotifier",
]
