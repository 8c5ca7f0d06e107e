"""Run the tectonic binary against a LaTeX source.

Each compile gets its own temporary working area that is removed on every
exit path. The subprocess is killed on timeout and on cancellation.
"""

import asyncio
import base64
import shutil
import tempfile
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple

import structlog

from texforge.compiler.diagnostics import DiagnosticEntry
from texforge.config import CompilerConfig
from texforge.core.errors import ErrorCategory

log = structlog.get_logger()

INPUT_NAME = "input.tex"
ARTIFACT_NAME = "input.pdf"


@dataclass(frozen=True)
class CompilationAttempt:
    """Outcome of one compiler invocation.

    ``diagnostics`` is the compiler's raw output on failure; ``errors`` is
    filled in by whoever parses it.
    """
    succeeded: bool
    output: Optional[bytes] = None
    diagnostics: str = ""
    errors: Tuple[DiagnosticEntry, ...] = field(default_factory=tuple)
    error: Optional[str] = None
    timed_out: bool = False
    compiler_missing: bool = False
    duration_ms: int = 0

    @property
    def category(self) -> Optional[ErrorCategory]:
        if self.succeeded:
            return None
        if self.compiler_missing:
            return ErrorCategory.COMPILER_UNAVAILABLE
        if self.timed_out:
            return ErrorCategory.TIMEOUT
        return ErrorCategory.DIAGNOSTIC

    def encoded(self) -> Optional[str]:
        """Base64 of the compiled artifact, if any."""
        if self.output is None:
            return None
        return base64.b64encode(self.output).decode("ascii")


class TectonicCompiler:
    """Compiles LaTeX sources with the configured tectonic binary."""

    def __init__(self, config: Optional[CompilerConfig] = None):
        self.config = config or CompilerConfig()
        self._available: Optional[bool] = None
        self._probe_lock = asyncio.Lock()

    async def is_available(self) -> bool:
        """Whether the binary runs at all. Probed once per process."""
        if self._available is not None:
            return self._available

        async with self._probe_lock:
            if self._available is None:
                self._available = await self._probe()
                log.info("compiler_probe",
                         binary=self.config.binary,
                         available=self._available)
        return self._available

    async def _probe(self) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                self.config.binary, "--version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            log.warning("compiler_not_found", binary=self.config.binary, error=str(e))
            return False

        try:
            returncode = await asyncio.wait_for(
                process.wait(), timeout=self.config.probe_timeout_seconds
            )
        except asyncio.TimeoutError:
            log.warning("compiler_probe_timeout", binary=self.config.binary)
            return False
        finally:
            await _terminate(process)

        return returncode == 0

    @asynccontextmanager
    async def working_area(self) -> AsyncIterator[Path]:
        """A uniquely named directory, deleted however the block exits."""
        root = str(self.config.work_root) if self.config.work_root else None
        work_dir = Path(tempfile.mkdtemp(prefix="texforge-", dir=root))
        try:
            yield work_dir
        finally:
            try:
                shutil.rmtree(work_dir)
            except FileNotFoundError:
                pass
            except OSError as e:
                log.error("working_area_cleanup_failed", path=str(work_dir), error=str(e))
                raise

    def _command(self, input_path: Path, output_dir: Path) -> list[str]:
        command = [
            self.config.binary,
            "--outdir", str(output_dir),
            "--chatter", self.config.chatter,
        ]
        if self.config.keep_logs:
            command.append("--keep-logs")
        command.append(str(input_path))
        return command

    async def compile(self, source: str) -> CompilationAttempt:
        """Compile `source`; success means exit code 0 AND the PDF exists."""
        timeout = self.config.timeout_seconds
        start = time.perf_counter()

        async with self.working_area() as work_dir:
            input_path = work_dir / INPUT_NAME
            output_dir = work_dir / "output"
            output_dir.mkdir()
            input_path.write_text(source, encoding="utf-8")

            try:
                process = await asyncio.create_subprocess_exec(
                    *self._command(input_path, output_dir),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(work_dir),
                )
            except (FileNotFoundError, NotADirectoryError) as e:
                self._available = False
                log.warning("compiler_not_found", binary=self.config.binary, error=str(e))
                return CompilationAttempt(
                    succeeded=False,
                    error=f"Failed to start {self.config.binary}: {e}",
                    compiler_missing=True,
                )

            stdout_buf = bytearray()
            stderr_buf = bytearray()
            readers = [
                asyncio.ensure_future(_drain(process.stdout, stdout_buf)),
                asyncio.ensure_future(_drain(process.stderr, stderr_buf)),
            ]
            timed_out = False
            try:
                try:
                    await asyncio.wait_for(process.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    timed_out = True
            finally:
                await _terminate(process)
                await asyncio.gather(*readers, return_exceptions=True)

            duration_ms = int((time.perf_counter() - start) * 1000)
            stdout_text = stdout_buf.decode("utf-8", errors="replace")
            stderr_text = stderr_buf.decode("utf-8", errors="replace")
            captured = "\n".join(t for t in (stderr_text.strip(), stdout_text.strip()) if t)

            if timed_out:
                log.warning("compile_timeout", timeout_seconds=timeout, captured=len(captured))
                return CompilationAttempt(
                    succeeded=False,
                    diagnostics=captured,
                    error=f"Compilation timed out after {timeout:g} seconds",
                    timed_out=True,
                    duration_ms=duration_ms,
                )

            artifact = output_dir / ARTIFACT_NAME
            if process.returncode == 0 and artifact.is_file():
                log.info("compile_succeeded", duration_ms=duration_ms)
                return CompilationAttempt(
                    succeeded=True,
                    output=artifact.read_bytes(),
                    duration_ms=duration_ms,
                )

            if process.returncode == 0:
                error = "Compilation completed but PDF file was not created"
            else:
                error = f"{self.config.binary} exited with code {process.returncode}"
            log.info("compile_failed",
                     returncode=process.returncode,
                     duration_ms=duration_ms,
                     diagnostics_length=len(captured))
            return CompilationAttempt(
                succeeded=False,
                diagnostics=captured or error,
                error=error,
                duration_ms=duration_ms,
            )


async def _drain(stream: Optional[asyncio.StreamReader], buffer: bytearray) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        buffer.extend(chunk)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Kill the process if it is still running and reap it."""
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()
