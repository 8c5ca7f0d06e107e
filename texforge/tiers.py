"""Subscription tiers and model eligibility."""

from enum import Enum


class SubscriptionTier(str, Enum):
    """Subscription tier of a caller.

    BASIC, PRO and POWER are aliases of TIER1, TIER3 and TIER5.
    """

    FREE = "free"
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"
    TIER4 = "tier4"
    TIER5 = "tier5"
    BASIC = "tier1"
    PRO = "tier3"
    POWER = "tier5"

    @property
    def rank(self) -> int:
        return _RANKS[self.value]

    def allows(self, required: "SubscriptionTier") -> bool:
        """True if a caller on this tier may use something that requires `required`."""
        return self.rank >= required.rank

    @classmethod
    def parse(cls, value) -> "SubscriptionTier":
        """Parse a tier from its value or name, case-insensitively."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for member_name, member in cls.__members__.items():
            if text == member.value or text == member_name.lower():
                return member
        raise ValueError(f"Unknown subscription tier: {value!r}")


_RANKS = {
    "free": 0,
    "tier1": 1,
    "tier2": 2,
    "tier3": 3,
    "tier4": 4,
    "tier5": 5,
}
