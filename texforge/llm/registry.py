"""Provider registry: availability, rate-limit cooldowns and token budgets.

One registry is shared by every request in the process. Each provider entry
has its own asyncio lock; every read-modify-write of rate-limit or budget
state happens while holding it.
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional

import httpx
import structlog

from texforge.config import TexforgeConfig
from texforge.core.errors import ProviderUnavailableError, TokenBudgetExceededError
from texforge.llm.models import ModelDescriptor
from texforge.llm.providers import LLMProvider, build_provider
from texforge.tiers import SubscriptionTier

log = structlog.get_logger()


@dataclass
class TokenBudget:
    """Cumulative token allowance of a metered provider."""
    max: int
    used: int = 0
    reserved: int = 0  # held by in-flight calls

    @property
    def remaining(self) -> int:
        return self.max - self.used - self.reserved


@dataclass
class ProviderProfile:
    """Live state of one provider."""
    name: str
    display_name: str
    models: List[ModelDescriptor]
    available: bool
    rate_limited: bool = False
    rate_limit_clear_at: Optional[float] = None  # wall-clock seconds
    token_budget: Optional[TokenBudget] = None
    last_error: Optional[str] = None
    _generation: int = field(default=0, repr=False)

    @property
    def metered(self) -> bool:
        return self.token_budget is not None


@dataclass(frozen=True)
class Candidate:
    """A (provider, model) pair the orchestrator may call."""
    provider: str
    model: ModelDescriptor
    explicit: bool = False


class ProviderRegistry:
    """Tracks every provider's availability, cooldown and budget.

    Profiles are kept in chain priority order. The model index is built once
    at construction and never changes.
    """

    def __init__(
        self,
        profiles: Iterable[ProviderProfile],
        clients: Mapping[str, LLMProvider],
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self._profiles: Dict[str, ProviderProfile] = {p.name: p for p in profiles}
        self._clients = dict(clients)
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

        self._locks: Dict[str, asyncio.Lock] = {
            name: asyncio.Lock() for name in self._profiles
        }
        self._clear_handles: Dict[str, asyncio.TimerHandle] = {}
        self._clear_tasks: set[asyncio.Task] = set()

        self._model_index: Dict[str, ModelDescriptor] = {}
        for profile in self._profiles.values():
            for model in profile.models:
                # First provider in chain order owns a model id listed twice
                self._model_index.setdefault(model.id, model)

        log.info("provider_registry_initialized",
                 chain=list(self._profiles),
                 available=[p.name for p in self._profiles.values() if p.available],
                 models=len(self._model_index))

    @classmethod
    def from_config(
        cls,
        config: TexforgeConfig,
        env: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> "ProviderRegistry":
        """Build the registry and provider clients from configuration.

        A provider is available iff its API key environment variable is set.
        Providers not named in the chain are not loaded.
        """
        env = os.environ if env is None else env
        profiles = []
        clients: Dict[str, LLMProvider] = {}

        for name in config.chain:
            provider_config = config.providers.get(name)
            if provider_config is None:
                log.warning("chain_provider_unknown", provider=name)
                continue

            api_key = env.get(provider_config.api_key_env) or None
            models = [
                ModelDescriptor(id=m.id, provider=name, tier=m.tier)
                for m in provider_config.models
            ]
            budget = (
                TokenBudget(max=provider_config.token_budget)
                if provider_config.token_budget else None
            )
            profiles.append(ProviderProfile(
                name=name,
                display_name=provider_config.display_name,
                models=models,
                available=api_key is not None,
                token_budget=budget,
            ))
            clients[name] = build_provider(name, provider_config, api_key, transport=transport)

        return cls(
            profiles,
            clients,
            cooldown_seconds=config.generation.rate_limit_cooldown_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Lookups

    @property
    def chain(self) -> List[str]:
        return list(self._profiles)

    def profile(self, name: str) -> ProviderProfile:
        return self._profiles[name]

    def client(self, name: str) -> LLMProvider:
        if name not in self._clients:
            raise ProviderUnavailableError(f"No client for provider '{name}'", provider=name)
        return self._clients[name]

    def model(self, model_id: str) -> Optional[ModelDescriptor]:
        """Static model id -> descriptor lookup."""
        return self._model_index.get(model_id)

    def is_usable(self, name: str) -> bool:
        """Available, not rate limited and, if metered, with budget left."""
        profile = self._profiles.get(name)
        if profile is None or not profile.available or profile.rate_limited:
            return False
        if profile.token_budget is not None and profile.token_budget.remaining <= 0:
            return False
        return True

    def ordered_chain(
        self,
        requested_model: Optional[str] = None,
        tier: SubscriptionTier = SubscriptionTier.POWER,
        usable_only: bool = True,
    ) -> List[Candidate]:
        """Attempt order for one request.

        The requested model comes first when it exists, its provider is
        available and the tier allows it; otherwise it is ignored. Then each
        provider in priority order with its first tier-eligible model.
        Unavailable providers are always left out; with usable_only=False,
        rate-limited and out-of-budget providers stay in so the caller can
        report them.
        """
        candidates: List[Candidate] = []

        if requested_model:
            model = self.model(requested_model)
            if model is None:
                log.info("requested_model_unknown", model=requested_model)
            elif not model.allowed_for(tier):
                log.info("requested_model_above_tier",
                         model=requested_model, required=model.tier.value, tier=tier.value)
            elif not self._profiles[model.provider].available:
                log.info("requested_model_provider_unavailable",
                         model=requested_model, provider=model.provider)
            elif usable_only and not self.is_usable(model.provider):
                log.info("requested_model_provider_unusable",
                         model=requested_model, provider=model.provider)
            else:
                candidates.append(Candidate(model.provider, model, explicit=True))

        for profile in self._profiles.values():
            if not profile.available:
                continue
            if usable_only and not self.is_usable(profile.name):
                continue
            model = next((m for m in profile.models if m.allowed_for(tier)), None)
            if model is None:
                continue
            candidates.append(Candidate(profile.name, model))

        return candidates

    def available_models(self, tier: SubscriptionTier) -> List[ModelDescriptor]:
        """Models of available providers that `tier` may use, in chain order."""
        return [
            model
            for profile in self._profiles.values() if profile.available
            for model in profile.models if model.allowed_for(tier)
        ]

    def most_capable_model(self) -> Optional[ModelDescriptor]:
        """Highest-tier model of a usable provider; ties go to chain order."""
        best: Optional[ModelDescriptor] = None
        for profile in self._profiles.values():
            if not self.is_usable(profile.name):
                continue
            for model in profile.models:
                if best is None or model.tier.rank > best.tier.rank:
                    best = model
        return best

    def status(self) -> Dict[str, dict]:
        """Snapshot of every profile for diagnostics."""
        snapshot = {}
        for profile in self._profiles.values():
            budget = profile.token_budget
            snapshot[profile.name] = {
                "display_name": profile.display_name,
                "available": profile.available,
                "usable": self.is_usable(profile.name),
                "rate_limited": profile.rate_limited,
                "rate_limit_clear_at": profile.rate_limit_clear_at,
                "tokens_used": budget.used if budget else None,
                "tokens_reserved": budget.reserved if budget else None,
                "token_budget": budget.max if budget else None,
                "models": [m.id for m in profile.models],
                "last_error": profile.last_error,
            }
        return snapshot

    # ------------------------------------------------------------------
    # Rate limits

    async def mark_rate_limited(self, name: str, cooldown: Optional[float] = None) -> None:
        """Skip a provider until the cooldown elapses.

        The clear is scheduled on the event loop. A newer signal cancels the
        pending clear and bumps the generation so a clear already in flight
        for the older signal does nothing.
        """
        cooldown = self.cooldown_seconds if cooldown is None else cooldown
        profile = self._profiles[name]
        loop = asyncio.get_running_loop()

        async with self._locks[name]:
            profile._generation += 1
            generation = profile._generation
            profile.rate_limited = True
            profile.rate_limit_clear_at = self._clock() + cooldown

            previous = self._clear_handles.pop(name, None)
            if previous is not None:
                previous.cancel()
            self._clear_handles[name] = loop.call_later(
                cooldown, self._spawn_clear, name, generation
            )

        log.warning("provider_rate_limited", provider=name, cooldown_seconds=cooldown)

    def _spawn_clear(self, name: str, generation: int) -> None:
        task = asyncio.ensure_future(self._clear_rate_limit(name, generation))
        self._clear_tasks.add(task)
        task.add_done_callback(self._clear_tasks.discard)

    async def _clear_rate_limit(self, name: str, generation: int) -> None:
        profile = self._profiles[name]
        async with self._locks[name]:
            if profile._generation != generation:
                log.debug("rate_limit_clear_superseded", provider=name)
                return
            profile.rate_limited = False
            profile.rate_limit_clear_at = None
            self._clear_handles.pop(name, None)
        log.info("provider_rate_limit_cleared", provider=name)

    # ------------------------------------------------------------------
    # Token budgets

    async def reserve_tokens(self, name: str, estimate: int) -> int:
        """Hold `estimate` tokens of a metered provider's budget.

        Returns the amount reserved (0 for unmetered providers).

        Raises:
            TokenBudgetExceededError: if the estimate does not fit
        """
        profile = self._profiles[name]
        if profile.token_budget is None:
            return 0

        async with self._locks[name]:
            budget = profile.token_budget
            if estimate > budget.remaining:
                log.warning("token_budget_exceeded",
                            provider=name,
                            estimate=estimate,
                            used=budget.used,
                            reserved=budget.reserved,
                            max=budget.max)
                raise TokenBudgetExceededError(
                    f"{name} token budget exceeded "
                    f"({budget.used + budget.reserved}+{estimate} > {budget.max})",
                    provider=name,
                )
            budget.reserved += estimate
            return estimate

    async def record_token_usage(self, name: str, tokens: int, reserved: int = 0) -> None:
        """Add `tokens` to the used count and release `reserved`."""
        profile = self._profiles[name]
        if profile.token_budget is None:
            return

        async with self._locks[name]:
            budget = profile.token_budget
            budget.reserved = max(0, budget.reserved - reserved)
            budget.used += max(0, tokens)
            used, limit = budget.used, budget.max

        log.info("token_usage_recorded", provider=name, tokens=tokens, used=used, max=limit)

    async def release_tokens(self, name: str, reserved: int) -> None:
        """Give back a reservation for a call that did not complete."""
        if reserved:
            await self.record_token_usage(name, 0, reserved=reserved)

    async def record_error(self, name: str, message: str) -> None:
        async with self._locks[name]:
            self._profiles[name].last_error = message

    def close(self) -> None:
        """Cancel pending cooldown clears (process shutdown)."""
        for handle in self._clear_handles.values():
            handle.cancel()
        self._clear_handles.clear()
        for task in list(self._clear_tasks):
            task.cancel()
