"""Generation orchestrator: provider selection, fallback and classification.

``generate`` walks the candidate sequence from the registry until one
provider returns text. ``repair`` makes a single call to the most capable
configured model. Neither raises on provider failure; both return a
GenerationOutcome.
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import structlog

from texforge.compiler.diagnostics import DiagnosticEntry
from texforge.config import GenerationConfig
from texforge.core.errors import (
    ClassifiedError,
    ErrorCategory,
    ProviderCallError,
    classify_provider_error,
    user_message,
)
from texforge.llm.extraction import extract_source
from texforge.llm.models import CompletionRequest, ModelDescriptor
from texforge.llm.prompts import (
    ERROR_CORRECTION_PROMPT,
    LATEX_SYSTEM_PROMPT,
    build_generation_prompt,
    build_repair_prompt,
    estimate_request_tokens,
)
from texforge.llm.registry import Candidate, ProviderRegistry
from texforge.tiers import SubscriptionTier

log = structlog.get_logger()


@dataclass(frozen=True)
class GenerationRequest:
    """One inbound generation call. The tier is already validated by billing."""
    content: str
    document_type: str = "basic"
    model: Optional[str] = None
    use_math: Optional[bool] = None
    split_tables: Optional[bool] = None
    tier: SubscriptionTier = SubscriptionTier.FREE


@dataclass(frozen=True)
class ProviderAttempt:
    """A candidate that was tried or skipped, and why it did not succeed."""
    provider: str
    model: str
    category: ErrorCategory
    error: str
    called: bool = True


@dataclass(frozen=True)
class GenerationOutcome:
    """Structured result of a generation or repair call."""
    succeeded: bool
    source_text: str = ""
    failure_reason: Optional[str] = None
    exhausted_providers: Tuple[ProviderAttempt, ...] = ()
    provider: Optional[str] = None
    model: Optional[str] = None

    def to_dict(self) -> dict:
        """Caller contract: {succeeded, source, error}."""
        return {
            "succeeded": self.succeeded,
            "source": self.source_text if self.succeeded else None,
            "error": self.failure_reason,
        }


class GenerationOrchestrator:
    """Routes generation requests across the provider chain."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config: Optional[GenerationConfig] = None,
        system_prompt: str = LATEX_SYSTEM_PROMPT,
    ):
        self.registry = registry
        self.config = config or GenerationConfig()
        self.system_prompt = system_prompt

    async def generate(self, request: GenerationRequest) -> GenerationOutcome:
        """Produce LaTeX for `request`, falling back across providers."""
        prompt = build_generation_prompt(
            request.content,
            request.document_type,
            use_math=request.use_math,
            split_tables=request.split_tables,
        )
        candidates = self.registry.ordered_chain(
            requested_model=request.model,
            tier=request.tier,
            usable_only=False,
        )
        log.info("generation_started",
                 document_type=request.document_type,
                 requested_model=request.model,
                 tier=request.tier.value,
                 candidates=[f"{c.provider}:{c.model.id}" for c in candidates])

        return await self._run(candidates, self.system_prompt, prompt, purpose="generate")

    async def repair(
        self,
        source: str,
        diagnostics: str,
        errors: Sequence[DiagnosticEntry] = (),
    ) -> GenerationOutcome:
        """One attempt at a corrected source, with no fallback chain."""
        model = self._repair_model()
        if model is None:
            log.warning("repair_no_usable_model", configured=self.config.repair_model)
            return GenerationOutcome(
                succeeded=False,
                failure_reason=user_message(ErrorCategory.EXHAUSTED),
            )

        prompt = build_repair_prompt(source, diagnostics, errors)
        log.info("repair_started", provider=model.provider, model=model.id,
                 structured_errors=len(errors))
        return await self._run(
            [Candidate(model.provider, model, explicit=True)],
            ERROR_CORRECTION_PROMPT,
            prompt,
            purpose="repair",
        )

    def _repair_model(self) -> Optional[ModelDescriptor]:
        configured = self.registry.model(self.config.repair_model)
        if configured is not None and self.registry.is_usable(configured.provider):
            return configured
        return self.registry.most_capable_model()

    async def _run(
        self,
        candidates: Sequence[Candidate],
        system: str,
        prompt: str,
        purpose: str,
    ) -> GenerationOutcome:
        attempts: List[ProviderAttempt] = []
        tried: set[str] = set()

        for candidate in candidates:
            # Each provider is attempted at most once per request
            if candidate.provider in tried:
                continue
            tried.add(candidate.provider)

            if not self.registry.is_usable(candidate.provider):
                profile = self.registry.profile(candidate.provider)
                category = (
                    ErrorCategory.RATE_LIMITED if profile.rate_limited
                    else ErrorCategory.UNAVAILABLE
                )
                attempts.append(ProviderAttempt(
                    provider=candidate.provider,
                    model=candidate.model.id,
                    category=category,
                    error="rate limited" if profile.rate_limited else "not usable",
                    called=False,
                ))
                log.debug("provider_skipped", provider=candidate.provider,
                          reason=category.value, purpose=purpose)
                continue

            try:
                text = await self._call(candidate, system, prompt)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                classified = classify_provider_error(e)
                if classified.category == ErrorCategory.FATAL:
                    raise
                attempts.append(await self._record_failure(candidate, classified, purpose))
                continue

            source = extract_source(text)
            if not source:
                attempts.append(await self._record_failure(
                    candidate,
                    classify_provider_error(ProviderCallError(
                        f"{candidate.provider} returned an empty response",
                        provider=candidate.provider,
                    )),
                    purpose,
                ))
                continue

            log.info("generation_succeeded",
                     provider=candidate.provider,
                     model=candidate.model.id,
                     purpose=purpose,
                     failed_before=len(attempts))
            return GenerationOutcome(
                succeeded=True,
                source_text=source,
                exhausted_providers=tuple(attempts),
                provider=candidate.provider,
                model=candidate.model.id,
            )

        log.error("providers_exhausted",
                  purpose=purpose,
                  attempts=[f"{a.provider}:{a.category.value}" for a in attempts])
        return GenerationOutcome(
            succeeded=False,
            failure_reason=user_message(ErrorCategory.EXHAUSTED),
            exhausted_providers=tuple(attempts),
        )

    async def _call(self, candidate: Candidate, system: str, prompt: str) -> str:
        """One bounded provider call with budget reservation and settlement."""
        cfg = self.config
        estimate = estimate_request_tokens(system, prompt, cfg.max_tokens)
        reserved = await self.registry.reserve_tokens(candidate.provider, estimate)

        request = CompletionRequest(
            model=candidate.model.id,
            system=system,
            prompt=prompt,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            timeout_seconds=cfg.timeout_seconds,
        )
        client = self.registry.client(candidate.provider)

        try:
            completion = await asyncio.wait_for(
                client.complete(request), timeout=cfg.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            await self.registry.release_tokens(candidate.provider, reserved)
            raise ProviderCallError(
                f"{candidate.provider} timed out after {cfg.timeout_seconds:g}s",
                provider=candidate.provider,
            ) from e
        except BaseException:
            await asyncio.shield(self.registry.release_tokens(candidate.provider, reserved))
            raise

        if reserved:
            used = completion.tokens_used if completion.tokens_used is not None else estimate
            await self.registry.record_token_usage(candidate.provider, used, reserved=reserved)

        return completion.text

    async def _record_failure(
        self,
        candidate: Candidate,
        classified: ClassifiedError,
        purpose: str,
    ) -> ProviderAttempt:
        if classified.category == ErrorCategory.RATE_LIMITED:
            await self.registry.mark_rate_limited(candidate.provider)

        await self.registry.record_error(candidate.provider, classified.message)
        log.warning("provider_failed",
                    provider=candidate.provider,
                    model=candidate.model.id,
                    category=classified.category.value,
                    error=classified.message,
                    purpose=purpose)
        return ProviderAttempt(
            provider=candidate.provider,
            model=candidate.model.id,
            category=classified.category,
            error=classified.message,
            called=classified.category != ErrorCategory.UNAVAILABLE,
        )
