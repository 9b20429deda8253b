"""
Host access resolution.

Maps a host identifier to the user, command prefix and access method an
agent must use. Hosts with ``limited`` access resolve as non-executable:
write-class actions against them are denied outright.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from ..exceptions import AccessDenied, NoAccessMapEntry
from ..models import AccessMethod, HostAccessMap
from ..policy import ActionPolicy

logger = logging.getLogger(__name__)

INSUFFICIENT_ACCESS = "insufficient host access"


@dataclass(frozen=True)
class ResolvedAccess:
    """Connection parameters for one host."""

    host_id: str
    user: str
    prefix: str
    method: AccessMethod
    address: Optional[str] = None

    @property
    def executable(self) -> bool:
        """Whether write actions may run on this host."""
        return self.method != AccessMethod.LIMITED

    def wrap(self, command: str) -> str:
        """Prefix a command for this host's access method."""
        if self.prefix:
            return f"{self.prefix} {command}"
        return command

    @property
    def target(self) -> str:
        """user@address, or user@host_id when no address is known."""
        return f"{self.user}@{self.address or self.host_id}"


class AccessResolver:
    """
    Sole authority on host access parameters.

    Example:
        >>> resolver = AccessResolver(HostAccessMap.from_dict({
        ...     "web-01": {"user": "deploy", "method": "sudo"},
        ... }))
        >>> resolver.resolve("web-01").prefix
        'sudo'
    """

    def __init__(self, access_map: HostAccessMap):
        self.access_map = access_map

    def resolve(self, host_id: str) -> ResolvedAccess:
        """
        Resolve a host to its access parameters.

        Raises:
            NoAccessMapEntry: If the host is not in the access map
        """
        entry = self.access_map.get(host_id)
        if entry is None:
            logger.warning(f"No access map entry for host '{host_id}'")
            raise NoAccessMapEntry(
                f"No access map entry for host '{host_id}'", host_id=host_id
            )

        prefix = entry.prefix
        if entry.method == AccessMethod.SUDO and not prefix:
            prefix = "sudo"

        resolved = ResolvedAccess(
            host_id=host_id,
            user=entry.user,
            prefix=prefix,
            method=entry.method,
            address=entry.address,
        )
        logger.debug(
            f"Resolved host '{host_id}' as {resolved.target} "
            f"(method={resolved.method.value})"
        )
        return resolved

    def authorize(self, host_id: str, policy: ActionPolicy) -> ResolvedAccess:
        """
        Resolve a host and check it permits the action class.

        Raises:
            NoAccessMapEntry: If the host is unknown
            AccessDenied: If the action writes and the host is limited
        """
        resolved = self.resolve(host_id)

        if policy.requires_write and not resolved.executable:
            logger.warning(
                f"Denied {policy.action_kind.value} on '{host_id}': {INSUFFICIENT_ACCESS}"
            )
            raise AccessDenied(INSUFFICIENT_ACCESS, host_id=host_id)

        return resolved
