"""
Tier gate for remediation playbooks.

Authorization is a pure function of the agent's tier and the required tier.
It fails closed: anything that is not a known tier at or above the required
one is refused.
"""
import logging
from typing import Any

from ..exceptions import TierDenied
from ..policy import MAX_TIER, MIN_TIER

logger = logging.getLogger(__name__)


def _is_known_tier(tier: Any, max_tier: int) -> bool:
    # bool is an int subclass; True must not pass as tier 1
    if isinstance(tier, bool) or not isinstance(tier, int):
        return False
    return MIN_TIER <= tier <= max_tier


class TierGate:
    """
    Validates agent authority against playbook requirements.

    Example:
        >>> gate = TierGate(max_tier=3)
        >>> gate.authorize(2, 2)
        True
        >>> gate.authorize(1, 2)
        False
        >>> gate.authorize(None, 1)
        False
    """

    def __init__(self, max_tier: int = MAX_TIER):
        """
        Args:
            max_tier: Highest tier this deployment recognizes. Agents claiming
                a higher tier are treated as unknown.
        """
        if not (MIN_TIER <= max_tier <= MAX_TIER):
            raise ValueError(f"max_tier must be between {MIN_TIER} and {MAX_TIER}, got {max_tier}")
        self.max_tier = max_tier

    def authorize(self, agent_tier: Any, playbook_min_tier: Any) -> bool:
        """Return True only if agent_tier is known and >= playbook_min_tier."""
        if not _is_known_tier(agent_tier, self.max_tier):
            return False
        # A requirement outside the known range cannot be satisfied
        if not _is_known_tier(playbook_min_tier, MAX_TIER):
            return False
        return agent_tier >= playbook_min_tier

    def require(self, agent_tier: Any, playbook_min_tier: Any) -> None:
        """
        Raise TierDenied unless authorize() passes.

        Raises:
            TierDenied: With the agent and required tiers attached
        """
        if self.authorize(agent_tier, playbook_min_tier):
            return

        if not _is_known_tier(agent_tier, self.max_tier):
            message = (
                f"Unknown or unspecified agent tier {agent_tier!r} "
                f"(recognized tiers {MIN_TIER}-{self.max_tier})"
            )
        else:
            message = (
                f"Tier {agent_tier} agents may not run this playbook; "
                f"minimum tier is {playbook_min_tier}"
            )

        logger.warning(f"Tier gate denied: {message}")
        raise TierDenied(message, agent_tier=agent_tier, required_tier=playbook_min_tier)
