"""Tests for subscription tiers."""

import pytest

from texforge.tiers import SubscriptionTier


class TestParse:
    """Test SubscriptionTier.parse."""

    def test_parse_values(self):
        """Canonical values parse to their members."""
        assert SubscriptionTier.parse("free") is SubscriptionTier.FREE
        assert SubscriptionTier.parse("tier4") is SubscriptionTier.TIER4

    def test_parse_aliases(self):
        """Marketing names map onto numbered tiers."""
        assert SubscriptionTier.parse("Basic") is SubscriptionTier.TIER1
        assert SubscriptionTier.parse("PRO") is SubscriptionTier.TIER3
        assert SubscriptionTier.parse("power") is SubscriptionTier.TIER5

    def test_alias_members_are_identical(self):
        assert SubscriptionTier.PRO is SubscriptionTier.TIER3

    def test_parse_member_passthrough(self):
        assert SubscriptionTier.parse(SubscriptionTier.TIER2) is SubscriptionTier.TIER2

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Unknown subscription tier"):
            SubscriptionTier.parse("gold")


class TestAllows:
    """Test tier ordering."""

    def test_same_tier(self):
        assert SubscriptionTier.FREE.allows(SubscriptionTier.FREE)

    def test_lower_tier_denied(self):
        assert not SubscriptionTier.FREE.allows(SubscriptionTier.TIER1)
        assert not SubscriptionTier.PRO.allows(SubscriptionTier.POWER)

    def test_higher_tier_allowed(self):
        assert SubscriptionTier.POWER.allows(SubscriptionTier.TIER3)
        assert SubscriptionTier.TIER2.allows(SubscriptionTier.BASIC)

    def test_ranks_are_ordered(self):
        ranks = [t.rank for t in (
            SubscriptionTier.FREE,
            SubscriptionTier.TIER1,
            SubscriptionTier.TIER2,
            SubscriptionTier.TIER3,
            SubscriptionTier.TIER4,
            SubscriptionTier.TIER5,
        )]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 6
