"""
Reference backends and probes.

Concrete remediation drivers live outside the core; these cover the two
generic cases, a shell command run on the target host through its access
prefix and an HTTP webhook into an external automation system, plus an HTTP
health check for verification.

Classes:
    CommandBackend: Run a command (over SSH by default) with the host prefix
    WebhookBackend: POST the action to an automation endpoint
    HttpHealthProbe: Verify a service through an HTTP health endpoint

Example:
    >>> backend = CommandBackend("docker restart {service}")
    >>> probe = HttpHealthProbe("http://{address}:8080/health")
"""
import logging
import subprocess
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..exceptions import BackendUnavailable
from .executor import Backend, ExecutionContext, VerificationProbe

logger = logging.getLogger(__name__)

# ssh exits 255 when the connection itself fails
SSH_CONNECTION_ERROR = 255


def _template_fields(context: ExecutionContext) -> Dict[str, Any]:
    return {
        "service": context.service,
        "host_id": context.access.host_id,
        "address": context.access.address or context.access.host_id,
        "user": context.access.user,
        "action": context.action_kind.value,
        "incident_id": context.incident_id,
        "playbook": context.playbook or "",
        **context.params,
    }


class CommandBackend(Backend):
    """
    Runs a command template against the target host.

    The command is formatted with the context fields (``{service}``,
    ``{host_id}``, ``{address}``, ``{user}``, ``{action}``, plus request
    params) and prefixed per the host's access method.

    Example:
        >>> backend = CommandBackend("systemctl restart {service}")
        >>> # on a sudo host: ssh deploy@10.0.0.5 'sudo systemctl restart api'
    """

    def __init__(self, command: str, ssh: bool = True, timeout: float = 60, ssh_options: Optional[List[str]] = None):
        """
        Initialize command backend.

        Args:
            command: Command template
            ssh: Run over ssh to the host; False runs locally
            timeout: Seconds before the process is killed
            ssh_options: Extra ssh arguments
        """
        self.command = command
        self.ssh = ssh
        self.timeout = timeout
        self.ssh_options = ssh_options if ssh_options is not None else ["-o", "BatchMode=yes"]
        self.name = command.split()[0] if command.strip() else "command"

    def build_command(self, context: ExecutionContext) -> Tuple[Any, bool]:
        """Return (args, shell) for subprocess.run."""
        command = context.access.wrap(self.command.format(**_template_fields(context)))
        if self.ssh:
            return ["ssh", *self.ssh_options, context.access.target, command], False
        return command, True

    def execute(self, context: ExecutionContext) -> Tuple[bool, str]:
        args, shell = self.build_command(context)
        logger.info(f"Executing command on {context.access.target}: {self.command}")

        try:
            result = subprocess.run(
                args,
                shell=shell,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise BackendUnavailable(f"Command runner not found: {e}") from e
        except subprocess.TimeoutExpired:
            return False, f"Command timed out after {self.timeout}s"

        if self.ssh and result.returncode == SSH_CONNECTION_ERROR:
            raise BackendUnavailable(
                f"ssh to {context.access.target} failed: {result.stderr.strip()}"
            )

        if result.returncode == 0:
            return True, result.stdout.strip() or "Command executed successfully"
        return False, (
            f"Command exited {result.returncode}: "
            f"{(result.stderr or result.stdout).strip()}"
        )

    def validate(self) -> Optional[str]:
        """Validate backend configuration."""
        if not self.command.strip():
            return "Command is required"
        if self.timeout <= 0:
            return "Timeout must be positive"
        return None


class WebhookBackend(Backend):
    """
    Delegates the action to an external automation endpoint.

    2xx is success, any other status is a failed remediation. Connection
    errors and timeouts mean the automation system itself is unreachable.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
        timeout: float = 30,
    ):
        self.url = url
        self.method = method.upper()
        self.headers = headers or {}
        self.payload = payload or {}
        self.timeout = timeout

    def execute(self, context: ExecutionContext) -> Tuple[bool, str]:
        fields = _template_fields(context)
        request_payload = {**self.payload, **fields}

        logger.info(f"Calling webhook: {self.method} {self.url}")
        try:
            response = requests.request(
                method=self.method,
                url=self.url.format(**fields),
                json=request_payload,
                headers=self.headers,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise BackendUnavailable(f"Webhook {self.url} unreachable: {e}") from e

        if 200 <= response.status_code < 300:
            return True, f"Webhook call successful: {response.status_code} {response.text[:500]}"
        return False, f"Webhook returned error: {response.status_code} {response.text[:500]}"

    def validate(self) -> Optional[str]:
        """Validate backend configuration."""
        if not self.url:
            return "URL is required"
        if self.method not in ["GET", "POST", "PUT", "PATCH", "DELETE"]:
            return f"Invalid HTTP method: {self.method}"
        if self.timeout <= 0:
            return "Timeout must be positive"
        return None


class HttpHealthProbe(VerificationProbe):
    """Passes when the health URL answers with the expected status."""

    name = "http-health"

    def __init__(self, url: str, expected_status: int = 200, timeout: float = 10):
        self.url = url
        self.expected_status = expected_status
        self.timeout = timeout

    def verify(self, context: ExecutionContext) -> Tuple[bool, str]:
        url = self.url.format(**_template_fields(context))
        try:
            response = requests.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            return False, f"Health check {url} failed: {e}"

        if response.status_code == self.expected_status:
            return True, f"{url} returned {response.status_code}"
        return False, (
            f"{url} returned {response.status_code}, expected {self.expected_status}"
        )
