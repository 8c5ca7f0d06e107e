"""Tests for the generation orchestrator."""

import asyncio

import pytest

from conftest import FENCED_DOCUMENT, FakeProvider
from texforge.compiler.diagnostics import DiagnosticEntry
from texforge.config import GenerationConfig
from texforge.core.errors import (
    ErrorCategory,
    ProviderCallError,
    ProviderRateLimitedError,
    user_message,
)
from texforge.core.orchestrator import GenerationOrchestrator, GenerationRequest
from texforge.llm.prompts import ERROR_CORRECTION_PROMPT, LATEX_SYSTEM_PROMPT
from texforge.tiers import SubscriptionTier

EXTRACTED = "\\documentclass{article}\n\\begin{document}\nHello\n\\end{document}"


def _orchestrator(registry, **config_kwargs):
    return GenerationOrchestrator(registry, GenerationConfig(**config_kwargs))


class TestGenerate:
    """Fallback across the chain."""

    @pytest.mark.asyncio
    async def test_first_provider_succeeds(self, make_registry):
        a, b = FakeProvider("a"), FakeProvider("b")
        orchestrator = _orchestrator(make_registry({"a": a, "b": b}))

        outcome = await orchestrator.generate(GenerationRequest(content="Hello", document_type="article"))

        assert outcome.succeeded
        assert outcome.source_text == EXTRACTED
        assert outcome.provider == "a"
        assert outcome.model == "a-model"
        assert outcome.exhausted_providers == ()
        assert len(a.calls) == 1
        assert b.calls == []

    @pytest.mark.asyncio
    async def test_prompt_contents(self, make_registry):
        a = FakeProvider("a")
        orchestrator = _orchestrator(make_registry({"a": a}), temperature=0.4)

        await orchestrator.generate(GenerationRequest(
            content="Quarterly results", document_type="report", use_math=True
        ))

        request = a.calls[0]
        assert request.system == LATEX_SYSTEM_PROMPT
        assert request.prompt.startswith("Document Type: report\n\nQuarterly results")
        assert "Use Math Mode: Yes" in request.prompt
        assert request.temperature == 0.4

    @pytest.mark.asyncio
    async def test_fallback_on_transient_error(self, make_registry):
        a = FakeProvider("a", [ProviderCallError("a HTTP 500", provider="a", status_code=500)])
        b = FakeProvider("b")
        registry = make_registry({"a": a, "b": b})

        outcome = await _orchestrator(registry).generate(GenerationRequest(content="x"))

        assert outcome.succeeded
        assert outcome.provider == "b"
        assert len(outcome.exhausted_providers) == 1
        attempt = outcome.exhausted_providers[0]
        assert attempt.provider == "a"
        assert attempt.category == ErrorCategory.TRANSIENT
        assert attempt.called
        assert registry.profile("a").last_error == "a HTTP 500"
        # Transient failures do not take the provider out of rotation
        assert registry.is_usable("a")

    @pytest.mark.asyncio
    async def test_rate_limit_marks_provider(self, make_registry):
        a = FakeProvider("a", [ProviderRateLimitedError("a rate limit (HTTP 429)", provider="a")])
        b = FakeProvider("b")
        registry = make_registry({"a": a, "b": b})

        outcome = await _orchestrator(registry).generate(GenerationRequest(content="x"))

        assert outcome.succeeded
        assert outcome.provider == "b"
        assert outcome.exhausted_providers[0].category == ErrorCategory.RATE_LIMITED
        assert registry.profile("a").rate_limited
        registry.close()

    @pytest.mark.asyncio
    async def test_rate_limited_provider_skipped_and_reported_once(self, make_registry):
        a, b = FakeProvider("a"), FakeProvider("b")
        registry = make_registry({"a": a, "b": b})
        await registry.mark_rate_limited("a")

        outcome = await _orchestrator(registry).generate(
            GenerationRequest(content="x", model="a-model")
        )

        assert outcome.provider == "b"
        assert a.calls == []
        skipped = [p for p in outcome.exhausted_providers if p.provider == "a"]
        assert len(skipped) == 1
        assert skipped[0].category == ErrorCategory.RATE_LIMITED
        assert not skipped[0].called
        registry.close()

    @pytest.mark.asyncio
    async def test_all_providers_fail(self, make_registry):
        a = FakeProvider("a", [ProviderCallError("a down", provider="a")])
        b = FakeProvider("b", [ProviderRateLimitedError("b busy", provider="b")])
        registry = make_registry({"a": a, "b": b})

        outcome = await _orchestrator(registry).generate(GenerationRequest(content="x"))

        assert not outcome.succeeded
        assert outcome.failure_reason == user_message(ErrorCategory.EXHAUSTED)
        assert [p.provider for p in outcome.exhausted_providers] == ["a", "b"]
        assert outcome.to_dict() == {
            "succeeded": False,
            "source": None,
            "error": "All AI providers failed to generate LaTeX. Please try again later.",
        }
        registry.close()

    @pytest.mark.asyncio
    async def test_all_providers_rate_limited(self, make_registry):
        clients = {name: FakeProvider(name) for name in ("a", "b", "c")}
        registry = make_registry(clients)
        for name in clients:
            await registry.mark_rate_limited(name)

        outcome = await _orchestrator(registry).generate(GenerationRequest(content="x"))

        assert not outcome.succeeded
        assert outcome.failure_reason == user_message(ErrorCategory.EXHAUSTED)
        assert [p.provider for p in outcome.exhausted_providers] == ["a", "b", "c"]
        assert all(p.category == ErrorCategory.RATE_LIMITED for p in outcome.exhausted_providers)
        assert all(not p.called for p in outcome.exhausted_providers)
        assert all(client.calls == [] for client in clients.values())
        registry.close()

    @pytest.mark.asyncio
    async def test_outcome_is_immutable(self, make_registry):
        a = FakeProvider("a", [ProviderCallError("a down", provider="a")])
        registry = make_registry({"a": a})

        outcome = await _orchestrator(registry).generate(GenerationRequest(content="x"))

        assert isinstance(outcome.exhausted_providers, tuple)
        with pytest.raises(AttributeError):
            outcome.exhausted_providers.append(outcome.exhausted_providers[0])
        registry.close()

    @pytest.mark.asyncio
    async def test_no_candidates(self, make_registry):
        registry = make_registry({"a": FakeProvider("a")}, unavailable=("a",))
        outcome = await _orchestrator(registry).generate(GenerationRequest(content="x"))
        assert not outcome.succeeded
        assert outcome.exhausted_providers == ()

    @pytest.mark.asyncio
    async def test_requested_model_first(self, make_registry):
        a, b = FakeProvider("a"), FakeProvider("b")
        registry = make_registry({"a": a, "b": b})

        outcome = await _orchestrator(registry).generate(
            GenerationRequest(content="x", model="b-model")
        )

        assert outcome.provider == "b"
        assert a.calls == []
        assert b.calls[0].model == "b-model"

    @pytest.mark.asyncio
    async def test_each_provider_called_at_most_once(self, make_registry):
        a = FakeProvider("a", [ProviderCallError("a down", provider="a")])
        b = FakeProvider("b")
        registry = make_registry({"a": a, "b": b})

        outcome = await _orchestrator(registry).generate(
            GenerationRequest(content="x", model="a-model")
        )

        assert outcome.provider == "b"
        assert len(a.calls) == 1

    @pytest.mark.asyncio
    async def test_tier_limits_candidates(self, make_registry):
        a, b = FakeProvider("a"), FakeProvider("b")
        registry = make_registry(
            {"a": a, "b": b},
            models={"a": [("a-big", "power")], "b": [("b-small", "free")]},
        )

        outcome = await _orchestrator(registry).generate(
            GenerationRequest(content="x", model="a-big", tier=SubscriptionTier.FREE)
        )

        assert outcome.provider == "b"
        assert a.calls == []

    @pytest.mark.asyncio
    async def test_empty_response_falls_back(self, make_registry):
        a = FakeProvider("a", ["   "])
        b = FakeProvider("b")
        outcome = await _orchestrator(make_registry({"a": a, "b": b})).generate(
            GenerationRequest(content="x")
        )
        assert outcome.provider == "b"
        assert outcome.exhausted_providers[0].category == ErrorCategory.TRANSIENT

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self, make_registry):
        a = FakeProvider("a", delay=2.0)
        b = FakeProvider("b")
        registry = make_registry({"a": a, "b": b}, budgets={"a": 100_000})

        outcome = await _orchestrator(registry, timeout_seconds=0.05).generate(
            GenerationRequest(content="x")
        )

        assert outcome.provider == "b"
        assert "timed out" in outcome.exhausted_providers[0].error
        budget = registry.profile("a").token_budget
        assert budget.reserved == 0
        assert budget.used == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, make_registry):
        a = FakeProvider("a", [RuntimeError("boom")])
        orchestrator = _orchestrator(make_registry({"a": a, "b": FakeProvider("b")}))
        with pytest.raises(RuntimeError, match="boom"):
            await orchestrator.generate(GenerationRequest(content="x"))


class TestTokenAccounting:
    """Budget reservation around provider calls."""

    @pytest.mark.asyncio
    async def test_reported_usage_recorded(self, make_registry):
        a = FakeProvider("a", tokens_used=500)
        registry = make_registry({"a": a}, budgets={"a": 100_000})

        await _orchestrator(registry).generate(GenerationRequest(content="x"))

        budget = registry.profile("a").token_budget
        assert budget.used == 500
        assert budget.reserved == 0

    @pytest.mark.asyncio
    async def test_estimate_used_when_usage_missing(self, make_registry):
        a = FakeProvider("a", tokens_used=None)
        registry = make_registry({"a": a}, budgets={"a": 100_000})

        await _orchestrator(registry, max_tokens=1000).generate(GenerationRequest(content="x"))

        budget = registry.profile("a").token_budget
        assert budget.used > 1000
        assert budget.reserved == 0

    @pytest.mark.asyncio
    async def test_over_budget_provider_skipped(self, make_registry):
        a, b = FakeProvider("a"), FakeProvider("b")
        registry = make_registry({"a": a, "b": b}, budgets={"a": 500})

        outcome = await _orchestrator(registry, max_tokens=4000).generate(
            GenerationRequest(content="x")
        )

        assert outcome.provider == "b"
        assert a.calls == []
        attempt = outcome.exhausted_providers[0]
        assert attempt.category == ErrorCategory.UNAVAILABLE
        assert not attempt.called

    @pytest.mark.asyncio
    async def test_cancellation_releases_reservation(self, make_registry):
        a = FakeProvider("a", delay=5.0)
        registry = make_registry({"a": a}, budgets={"a": 100_000})
        orchestrator = _orchestrator(registry, timeout_seconds=10)

        task = asyncio.ensure_future(orchestrator.generate(GenerationRequest(content="x")))
        await asyncio.sleep(0.05)
        assert registry.profile("a").token_budget.reserved > 0

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert registry.profile("a").token_budget.reserved == 0


class TestRepair:
    """Single-shot repair calls."""

    @pytest.mark.asyncio
    async def test_uses_configured_repair_model(self, make_registry):
        a, b = FakeProvider("a"), FakeProvider("b")
        orchestrator = _orchestrator(make_registry({"a": a, "b": b}), repair_model="b-model")

        outcome = await orchestrator.repair(
            "\\badcommand",
            "! Undefined control sequence.",
            [DiagnosticEntry(line=3, message="l.3 \\badcommand")],
        )

        assert outcome.succeeded
        assert outcome.provider == "b"
        assert a.calls == []
        request = b.calls[0]
        assert request.system == ERROR_CORRECTION_PROMPT
        assert "line 3" in request.prompt
        assert "\\badcommand" in request.prompt

    @pytest.mark.asyncio
    async def test_falls_back_to_most_capable(self, make_registry):
        a, b = FakeProvider("a"), FakeProvider("b")
        registry = make_registry(
            {"a": a, "b": b},
            models={"a": [("a-small", "free")], "b": [("b-big", "tier4")]},
        )
        orchestrator = _orchestrator(registry, repair_model="gpt-4o")

        outcome = await orchestrator.repair("src", "l.1 error")

        assert outcome.model == "b-big"

    @pytest.mark.asyncio
    async def test_no_chain_fallback(self, make_registry):
        a = FakeProvider("a")
        b = FakeProvider("b", [ProviderCallError("b down", provider="b")])
        orchestrator = _orchestrator(make_registry({"a": a, "b": b}), repair_model="b-model")

        outcome = await orchestrator.repair("src", "l.1 error")

        assert not outcome.succeeded
        assert a.calls == []
        assert len(b.calls) == 1

    @pytest.mark.asyncio
    async def test_no_usable_model(self, make_registry):
        registry = make_registry({"a": FakeProvider("a")}, unavailable=("a",))
        outcome = await _orchestrator(registry).repair("src", "l.1 error")
        assert not outcome.succeeded
        assert outcome.failure_reason == user_message(ErrorCategory.EXHAUSTED)

    @pytest.mark.asyncio
    async def test_repair_extracts_source(self, make_registry):
        b = FakeProvider("b", [FENCED_DOCUMENT])
        orchestrator = _orchestrator(make_registry({"b": b}), repair_model="b-model")
        outcome = await orchestrator.repair("src", "l.1 error")
        assert outcome.source_text == EXTRACTED
