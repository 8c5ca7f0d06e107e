"""Compile, diagnose, repair once, recompile.

    Compile --ok--> Done(repaired=False)
       |
     failed --> Diagnose --> RepairGenerate --> Recompile --> Done(repaired=<recompile ok>)

A missing compiler short-circuits to a degraded preview. A failed repair call
returns the original source with the original compilation.
"""

from dataclasses import dataclass, replace
from typing import Optional

import structlog

from texforge.compiler.diagnostics import parse_diagnostics
from texforge.compiler.invoker import CompilationAttempt, TectonicCompiler
from texforge.compiler.preview import PreviewArtifact, render_preview
from texforge.core.errors import ErrorCategory, user_message
from texforge.core.orchestrator import GenerationOrchestrator

log = structlog.get_logger()


@dataclass(frozen=True)
class FixCycleResult:
    """Final state of one compile-with-repair request.

    ``final_source`` is always a source that was actually compiled (or
    previewed): the input, or the repaired text that was recompiled.
    """
    final_source: str
    final_compilation: Optional[CompilationAttempt] = None
    repaired: bool = False
    preview: Optional[PreviewArtifact] = None
    repair_attempted: bool = False

    @property
    def degraded(self) -> bool:
        return self.preview is not None

    @property
    def succeeded(self) -> bool:
        """True for a compiled artifact or a degraded preview."""
        if self.degraded:
            return True
        return self.final_compilation is not None and self.final_compilation.succeeded

    @property
    def error_category(self) -> Optional[ErrorCategory]:
        if self.succeeded:
            return None
        if self.repair_attempted:
            return ErrorCategory.REPAIR_EXHAUSTED
        return self.final_compilation.category if self.final_compilation else None

    def to_dict(self) -> dict:
        """Caller contract: {succeeded, artifact | preview, diagnostics, repaired}."""
        compilation = self.final_compilation
        result = {
            "succeeded": self.succeeded,
            "source": self.final_source,
            "repaired": self.repaired,
            "degraded": self.degraded,
            "artifact": None,
            "preview": None,
            "diagnostics": None,
            "errors": [],
            "error": None,
        }
        if self.degraded:
            result["preview"] = self.preview.encoded()
            result["error"] = user_message(ErrorCategory.COMPILER_UNAVAILABLE)
        elif compilation is not None and compilation.succeeded:
            result["artifact"] = compilation.encoded()
        elif compilation is not None:
            result["diagnostics"] = compilation.diagnostics
            result["errors"] = [
                {"line": entry.line, "message": entry.message} for entry in compilation.errors
            ]
            result["error"] = user_message(self.error_category)
        return result


class CompileFixCycle:
    """Couples the compiler, the diagnostic parser and the orchestrator."""

    def __init__(self, compiler: TectonicCompiler, orchestrator: GenerationOrchestrator):
        self.compiler = compiler
        self.orchestrator = orchestrator

    async def compile(self, source: str) -> CompilationAttempt:
        """Compile once and attach structured errors; no repair."""
        attempt = await self.compiler.compile(source)
        return self._with_errors(attempt)

    async def compile_without_repair(self, source: str) -> FixCycleResult:
        """Compile once, degrading to a preview when the compiler is missing."""
        if not await self.compiler.is_available():
            return self._degraded(source)
        attempt = await self.compile(source)
        if attempt.compiler_missing:
            return self._degraded(source)
        return FixCycleResult(final_source=source, final_compilation=attempt)

    async def compile_with_repair(self, source: str) -> FixCycleResult:
        """Compile `source`, repairing at most once on failure."""
        if not await self.compiler.is_available():
            return self._degraded(source)

        first = await self.compile(source)
        if first.succeeded:
            return FixCycleResult(final_source=source, final_compilation=first)

        if first.compiler_missing:
            return self._degraded(source)

        if not first.diagnostics.strip():
            log.info("repair_skipped_no_diagnostics", timed_out=first.timed_out)
            return FixCycleResult(final_source=source, final_compilation=first)

        log.info("compile_failed_repairing",
                 structured_errors=len(first.errors),
                 timed_out=first.timed_out)
        outcome = await self.orchestrator.repair(source, first.diagnostics, first.errors)
        if not outcome.succeeded:
            log.warning("repair_failed", reason=outcome.failure_reason)
            return FixCycleResult(
                final_source=source,
                final_compilation=first,
                repair_attempted=True,
            )

        # Single recompile; its outcome is final whatever it is
        second = await self.compile(outcome.source_text)
        if second.compiler_missing:
            return self._degraded(outcome.source_text)

        log.info("repair_recompiled",
                 succeeded=second.succeeded,
                 provider=outcome.provider,
                 model=outcome.model)
        return FixCycleResult(
            final_source=outcome.source_text,
            final_compilation=second,
            repaired=second.succeeded,
            repair_attempted=True,
        )

    def _with_errors(self, attempt: CompilationAttempt) -> CompilationAttempt:
        # Timeouts carry no line detail
        if attempt.succeeded or attempt.timed_out or not attempt.diagnostics:
            return attempt
        return replace(attempt, errors=tuple(parse_diagnostics(attempt.diagnostics)))

    def _degraded(self, source: str) -> FixCycleResult:
        log.info("compiler_unavailable_preview")
        return FixCycleResult(final_source=source, preview=render_preview(source))
