"""texforge CLI - LaTeX documents from free-form text."""

import asyncio
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from texforge.compiler.diagnostics import summarize
from texforge.config import TexforgeConfig
from texforge.logging import setup_logging

console = Console()


def _build_services(config: TexforgeConfig):
    """Registry, orchestrator and compile-fix cycle for one CLI run."""
    from texforge.compiler.invoker import TectonicCompiler
    from texforge.core.cycle import CompileFixCycle
    from texforge.core.orchestrator import GenerationOrchestrator
    from texforge.llm.registry import ProviderRegistry

    registry = ProviderRegistry.from_config(config)
    orchestrator = GenerationOrchestrator(registry, config.generation)
    cycle = CompileFixCycle(TectonicCompiler(config.compiler), orchestrator)
    return registry, orchestrator, cycle


def _read_input(content_or_file: str) -> str:
    """Contents of the named file, or the argument itself when it names none."""
    try:
        is_file = Path(content_or_file).is_file()
    except (OSError, ValueError):
        # Too long or otherwise unusable as a path: it is free-form text
        is_file = False
    if is_file:
        return Path(content_or_file).read_text(encoding="utf-8")
    return content_or_file


def _write_result(result, output: Path) -> None:
    """Write the artifact (or preview) next to the .tex output."""
    compilation = result.final_compilation
    if result.degraded:
        preview_path = output.with_suffix(".html")
        preview_path.write_text(result.preview.html, encoding="utf-8")
        console.print(f"[yellow]⚠ Compiler unavailable, preview written to {preview_path}[/]")
    elif compilation is not None and compilation.succeeded:
        pdf_path = output.with_suffix(".pdf")
        pdf_path.write_bytes(compilation.output)
        note = " (after repair)" if result.repaired else ""
        console.print(f"[green]✓ PDF written to {pdf_path}{note}[/]")


def _print_compile_failure(result) -> None:
    compilation = result.final_compilation
    console.print(f"[red]✗ {result.to_dict()['error']}[/]")
    if compilation is None:
        return
    if compilation.errors:
        for line in summarize(list(compilation.errors)).splitlines():
            console.print(f"   [dim]{escape(line)}[/dim]")
    elif compilation.error:
        console.print(f"   [dim]{escape(compilation.error)}[/dim]")


@click.group()
@click.version_option(version="1.0.0")
@click.option("--config", "config_path", type=click.Path(), help="Path to texforge.toml")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path: Optional[str] = None, verbose: bool = False):
    """texforge - LaTeX documents from free-form text"""
    config = TexforgeConfig.load(config_path)
    setup_logging(
        level="DEBUG" if verbose else config.log_level,
        log_file=str(config.log_file) if config.log_file else None,
        json_format=config.json_logs,
    )
    ctx.obj = config


@cli.command()
@click.argument("content_or_file")
@click.option("--type", "document_type", default="basic", help="Document type (basic, article, presentation, report, book, letter)")
@click.option("--model", "-m", default=None, help="Preferred model id")
@click.option("--tier", default="free", help="Caller subscription tier")
@click.option("--math/--no-math", "use_math", default=None, help="Use math mode")
@click.option("--split-tables/--no-split-tables", default=None, help="Split wide tables")
@click.option("--compile", "do_compile", is_flag=True, help="Compile the result (repairing once)")
@click.option("--output", "-o", type=click.Path(), default="document.tex", help="Output .tex path")
@click.pass_obj
def generate(
    config: TexforgeConfig,
    content_or_file: str,
    document_type: str,
    model: Optional[str],
    tier: str,
    use_math: Optional[bool],
    split_tables: Optional[bool],
    do_compile: bool,
    output: str,
):
    """Generate LaTeX from text (or a text file)."""
    from texforge.core.orchestrator import GenerationRequest
    from texforge.tiers import SubscriptionTier

    try:
        caller_tier = SubscriptionTier.parse(tier)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--tier")

    request = GenerationRequest(
        content=_read_input(content_or_file),
        document_type=document_type,
        model=model,
        use_math=use_math,
        split_tables=split_tables,
        tier=caller_tier,
    )
    output_path = Path(output)

    async def execute():
        registry, orchestrator, cycle = _build_services(config)
        try:
            with console.status("[bold green]Generating..."):
                outcome = await orchestrator.generate(request)

            if not outcome.succeeded:
                console.print(f"[red]✗ {outcome.failure_reason}[/]")
                return False

            output_path.write_text(outcome.source_text, encoding="utf-8")
            console.print(
                f"[green]✓ LaTeX written to {output_path}[/] "
                f"[dim]({outcome.provider}:{outcome.model})[/dim]"
            )

            if not do_compile:
                return True

            with console.status("[bold green]Compiling..."):
                result = await cycle.compile_with_repair(outcome.source_text)

            if result.repaired:
                output_path.write_text(result.final_source, encoding="utf-8")
            if result.succeeded:
                _write_result(result, output_path)
                return True
            _print_compile_failure(result)
            return False
        finally:
            registry.close()

    if not asyncio.run(execute()):
        raise SystemExit(1)


@cli.command("compile")
@click.argument("tex_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--repair/--no-repair", default=True, help="Ask a provider to fix errors once")
@click.option("--output", "-o", type=click.Path(), default=None, help="Output path (default: next to input)")
@click.pass_obj
def compile_command(config: TexforgeConfig, tex_file: str, repair: bool, output: Optional[str]):
    """Compile a .tex file to PDF."""
    source = Path(tex_file).read_text(encoding="utf-8")
    output_path = Path(output) if output else Path(tex_file)

    async def execute():
        registry, _, cycle = _build_services(config)
        try:
            with console.status("[bold green]Compiling..."):
                if repair:
                    return await cycle.compile_with_repair(source)
                return await cycle.compile_without_repair(source)
        finally:
            registry.close()

    result = asyncio.run(execute())

    if result.repaired:
        fixed_path = output_path.with_name(f"{output_path.stem}.fixed.tex")
        fixed_path.write_text(result.final_source, encoding="utf-8")
        console.print(f"[cyan]Repaired source written to {fixed_path}[/]")

    if result.succeeded:
        _write_result(result, output_path)
        return

    _print_compile_failure(result)
    raise SystemExit(1)


@cli.command()
@click.option("--tier", default="power", help="Subscription tier to list models for")
@click.pass_obj
def models(config: TexforgeConfig, tier: str):
    """List models available to a subscription tier."""
    from texforge.llm.registry import ProviderRegistry
    from texforge.tiers import SubscriptionTier

    try:
        caller_tier = SubscriptionTier.parse(tier)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--tier")

    registry = ProviderRegistry.from_config(config)
    available = registry.available_models(caller_tier)

    if not available:
        console.print(f"[yellow]No models available for tier '{caller_tier.value}'[/]")
        console.print("[dim]Set a provider API key, e.g. GROQ_API_KEY or OPENAI_API_KEY[/dim]")
        return

    table = Table(title=f"Models for tier {caller_tier.value}")
    table.add_column("Model", style="cyan")
    table.add_column("Provider")
    table.add_column("Min tier", style="dim")
    for model in available:
        table.add_row(model.id, registry.profile(model.provider).display_name, model.tier.value)
    console.print(table)


@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="Show detailed information")
@click.pass_obj
def doctor(config: TexforgeConfig, verbose: bool = False):
    """Check texforge installation and configuration."""
    from texforge.core.doctor import get_all_checks
    from texforge.llm.registry import ProviderRegistry

    console.print(Panel("[bold cyan]texforge doctor[/bold cyan]", expand=False))

    registry = ProviderRegistry.from_config(config)
    results = get_all_checks(config, registry)

    for num, key in enumerate(["python", "config", "compiler", "providers"], start=1):
        check = results["checks"][key]
        _print_check(num, check, show_details=verbose or not check.passed)

    console.print()
    if results["all_passed"]:
        console.print("[green]✓ All checks passed[/green]")
    elif results["critical_passed"]:
        console.print("[yellow]⚠ Usable with warnings[/yellow]")
    else:
        console.print("[red]✗ Critical checks failed[/red]")
        raise SystemExit(1)


def _print_check(num: int, check, show_details: bool = True):
    """Helper to print a health check result."""

    status = "[green]✓[/green]" if check.passed else "[red]✗[/red]"
    console.print(f"[bold]{num}. {check.name}:[/] {status} {check.message}")

    if check.details and show_details:
        for line in check.details.split("\n"):
            console.print(f"   [dim]{line}[/dim]")


def main():
    cli()


if __name__ == "__main__":
    main()
