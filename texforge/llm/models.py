"""Model descriptors and provider completions."""

from dataclasses import dataclass
from typing import Optional

from texforge.tiers import SubscriptionTier


@dataclass(frozen=True)
class ModelDescriptor:
    """A model offered by a provider, gated by a minimum subscription tier."""
    id: str
    provider: str
    tier: SubscriptionTier

    def allowed_for(self, tier: SubscriptionTier) -> bool:
        return tier.allows(self.tier)


@dataclass
class Completion:
    """Raw text returned by one provider call."""
    text: str
    provider: str
    model: str
    tokens_used: Optional[int] = None  # None when the provider omits usage
    latency_ms: int = 0


@dataclass
class CompletionRequest:
    """One prompt sent to one model."""
    model: str
    system: str
    prompt: str
    temperature: float = 0.2
    max_tokens: int = 4000
    timeout_seconds: float = 60.0
