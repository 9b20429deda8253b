"""
Tests for the tier gate.
"""
import pytest

from opsguard.exceptions import PolicyDenied, TierDenied
from opsguard.remediation.tier_gate import TierGate


class TestAuthorize:
    """Tests for TierGate.authorize."""

    @pytest.mark.parametrize("agent_tier,required,expected", [
        (1, 1, True),
        (2, 1, True),
        (3, 3, True),
        (1, 2, False),
        (2, 3, False),
    ])
    def test_known_tiers(self, agent_tier, required, expected):
        """Test that a known tier passes only at or above the minimum."""
        assert TierGate().authorize(agent_tier, required) is expected

    @pytest.mark.parametrize("agent_tier", [None, 0, -1, 4, "2", 2.0, True])
    def test_unknown_tier_fails_closed(self, agent_tier):
        """Test that unknown or unspecified tiers are always denied."""
        assert TierGate().authorize(agent_tier, 1) is False

    def test_tier_above_configured_max_is_unknown(self):
        """Test that a deployment with two tiers does not recognize tier 3."""
        gate = TierGate(max_tier=2)

        assert gate.authorize(2, 2) is True
        assert gate.authorize(3, 1) is False

    def test_unsatisfiable_requirement(self):
        """Test that a minimum outside the tier range can never be met."""
        assert TierGate().authorize(3, 4) is False
        assert TierGate().authorize(3, None) is False

    def test_invalid_max_tier(self):
        """Test that the gate refuses a nonsensical max tier."""
        with pytest.raises(ValueError):
            TierGate(max_tier=0)


class TestRequire:
    """Tests for TierGate.require."""

    def test_passes_silently(self):
        TierGate().require(2, 2)

    def test_raises_tier_denied(self):
        """Test that insufficient tiers raise TierDenied with details."""
        with pytest.raises(TierDenied) as exc_info:
            TierGate().require(1, 3)

        err = exc_info.value
        assert isinstance(err, PolicyDenied)
        assert err.policy == "tier"
        assert err.agent_tier == 1
        assert err.required_tier == 3
        assert "minimum tier is 3" in err.reason

    def test_unknown_tier_message(self):
        with pytest.raises(TierDenied, match="Unknown or unspecified"):
            TierGate().require(None, 1)
