"""Shared test fixtures."""

import asyncio
import tempfile
import textwrap
from pathlib import Path

import pytest

from texforge.llm.models import Completion, ModelDescriptor
from texforge.llm.registry import ProviderProfile, ProviderRegistry, TokenBudget
from texforge.tiers import SubscriptionTier

ALL_KEY_ENVS = (
    "GROQ_API_KEY",
    "TOGETHER_API_KEY",
    "HUGGINGFACE_API_KEY",
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "OPENROUTER_API_KEY",
)

FENCED_DOCUMENT = (
    "Here is your document:\n"
    "```latex\n"
    "\\documentclass{article}\n"
    "\\begin{document}\n"
    "Hello\n"
    "\\end{document}\n"
    "```\n"
)

FAKE_TECTONIC_HEADER = """#!/bin/sh
if [ "$1" = "--version" ]; then
  echo "tectonic 0.15.0"
  exit 0
fi
outdir=""
input=""
while [ $# -gt 0 ]; do
  case "$1" in
    --outdir) outdir="$2"; shift 2 ;;
    --chatter) shift 2 ;;
    --keep-logs) shift ;;
    *) input="$1"; shift ;;
  esac
done
"""

SUCCESS_SCRIPT = r"""
printf '%%PDF-1.4 fake\n' > "$outdir/input.pdf"
"""

FAILING_SCRIPT = r"""
printf '%s\n' 'error: input.tex:3: Undefined control sequence' >&2
printf '%s\n' 'l.3 \badcommand' >&2
exit 1
"""

# Compiles only sources containing the word FIXED
FIX_DEPENDENT_SCRIPT = r"""
if grep -q FIXED "$input"; then
  printf '%%PDF-1.4 fixed\n' > "$outdir/input.pdf"
  exit 0
fi
printf '%s\n' 'error: input.tex:3: Undefined control sequence' >&2
printf '%s\n' 'l.3 \badcommand' >&2
exit 1
"""

NO_PDF_SCRIPT = r"""
exit 0
"""

HANGING_SCRIPT = r"""
echo "started"
exec sleep 30
"""


class FakeProvider:
    """Scripted provider client.

    Each call consumes the next response; the last one repeats. A response
    that is an exception is raised instead of returned.
    """

    def __init__(self, name, responses=None, tokens_used=None, delay=0.0):
        self.name = name
        self.responses = list(responses if responses is not None else [FENCED_DOCUMENT])
        self.tokens_used = tokens_used
        self.delay = delay
        self.calls = []

    async def complete(self, request):
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(result, BaseException):
            raise result
        return Completion(
            text=result,
            provider=self.name,
            model=request.model,
            tokens_used=self.tokens_used,
        )


@pytest.fixture
def temp_dir():
    """Temporary directory for tests."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def make_registry():
    """Factory for registries over FakeProvider clients.

    `models` maps provider name to [(model_id, tier)]; by default every
    provider offers one free model named "<provider>-model".
    """

    def _make(clients, models=None, budgets=None, unavailable=(), cooldown=300.0):
        profiles = []
        for name in clients:
            specs = (models or {}).get(name, [(f"{name}-model", "free")])
            budget = None
            if budgets and name in budgets:
                budget = TokenBudget(max=budgets[name])
            profiles.append(ProviderProfile(
                name=name,
                display_name=name.title(),
                models=[
                    ModelDescriptor(id=model_id, provider=name, tier=SubscriptionTier.parse(tier))
                    for model_id, tier in specs
                ],
                available=name not in unavailable,
                token_budget=budget,
            ))
        return ProviderRegistry(profiles, clients, cooldown_seconds=cooldown)

    return _make


@pytest.fixture
def all_keys_env():
    """Environment with every default provider's API key set."""
    return {name: "test-key" for name in ALL_KEY_ENVS}


@pytest.fixture
def fake_tectonic(temp_dir):
    """Factory writing an executable stand-in for the tectonic binary."""

    def _make(body, name="tectonic"):
        path = temp_dir / name
        path.write_text(FAKE_TECTONIC_HEADER + textwrap.dedent(body))
        path.chmod(0o755)
        return str(path)

    return _make


@pytest.fixture
def work_root(temp_dir):
    """Parent directory for compiler working areas."""
    root = temp_dir / "work"
    root.mkdir()
    return root
