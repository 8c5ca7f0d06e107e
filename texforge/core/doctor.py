"""Health check functions for the texforge doctor command."""

import subprocess
import sys
from typing import Dict, List, Mapping, Optional, Tuple

import structlog

from texforge.config import TexforgeConfig, validate_config
from texforge.llm.registry import ProviderRegistry

log = structlog.get_logger()


class HealthCheck:
    """Result of a health check."""

    def __init__(self, name: str, passed: bool, message: str, details: Optional[str] = None):
        self.name = name
        self.passed = passed
        self.message = message
        self.details = details


def check_compiler(config: TexforgeConfig) -> HealthCheck:
    """Check that the tectonic binary runs."""
    binary = config.compiler.binary
    try:
        result = subprocess.run(
            [binary, "--version"],
            capture_output=True,
            text=True,
            timeout=config.compiler.probe_timeout_seconds,
        )
    except FileNotFoundError:
        return HealthCheck(
            name="Compiler",
            passed=False,
            message=f"'{binary}' not found",
            details="PDFs will be replaced by HTML previews. Install tectonic: https://tectonic-typesetting.github.io"
        )
    except subprocess.TimeoutExpired:
        return HealthCheck(
            name="Compiler",
            passed=False,
            message=f"'{binary} --version' timed out",
            details=None
        )
    except Exception as e:
        return HealthCheck(
            name="Compiler",
            passed=False,
            message=f"Error: {str(e)}",
            details=None
        )

    if result.returncode != 0:
        return HealthCheck(
            name="Compiler",
            passed=False,
            message=f"'{binary} --version' exited with code {result.returncode}",
            details=result.stderr.strip() or None
        )

    version = result.stdout.strip().splitlines()[0] if result.stdout.strip() else binary
    return HealthCheck(name="Compiler", passed=True, message=version, details=None)


def check_providers(registry: ProviderRegistry) -> Tuple[HealthCheck, List[str], List[str]]:
    """Check which providers have credentials and are usable.

    Returns:
        Tuple of (HealthCheck, usable providers, unavailable providers)
    """
    status = registry.status()
    usable = [name for name, s in status.items() if s["usable"]]
    unavailable = [name for name, s in status.items() if not s["available"]]

    lines = []
    for name, s in status.items():
        if not s["available"]:
            state = "no credentials"
        elif s["rate_limited"]:
            state = "rate limited"
        elif not s["usable"]:
            state = "budget exhausted"
        else:
            state = "ready"
        if s["token_budget"] is not None:
            state += f" ({s['tokens_used']}/{s['token_budget']} tokens)"
        lines.append(f"{s['display_name']}: {state}")

    if not usable:
        return (
            HealthCheck(
                name="Providers",
                passed=False,
                message="No usable AI provider",
                details="\n".join(lines)
            ),
            usable,
            unavailable,
        )

    return (
        HealthCheck(
            name="Providers",
            passed=True,
            message=f"{len(usable)} of {len(status)} providers usable",
            details="\n".join(lines)
        ),
        usable,
        unavailable,
    )


def check_python_version() -> HealthCheck:
    """Check Python version."""
    major, minor, micro = sys.version_info[:3]
    version_str = f"{major}.{minor}.{micro}"

    if (major, minor) >= (3, 10):
        return HealthCheck(name="Python Version", passed=True, message=version_str)
    return HealthCheck(
        name="Python Version",
        passed=False,
        message=f"{version_str} (requires >= 3.10)",
        details="Upgrade Python to 3.10 or higher"
    )


def check_config(config: TexforgeConfig, env: Optional[Mapping[str, str]] = None) -> HealthCheck:
    """Check configuration for problems."""
    warnings = validate_config(config, env=env)
    if warnings:
        return HealthCheck(
            name="Configuration",
            passed=True,
            message="Loaded with warnings",
            details="\n".join(warnings)
        )
    return HealthCheck(
        name="Configuration",
        passed=True,
        message="OK",
        details=f"Chain: {' -> '.join(config.chain)}"
    )


def get_all_checks(
    config: TexforgeConfig,
    registry: ProviderRegistry,
    env: Optional[Mapping[str, str]] = None,
) -> Dict:
    """Run all health checks and return results.

    Returns:
        Dictionary with check results and metadata
    """
    providers_check, usable, unavailable = check_providers(registry)
    results = {
        "python": check_python_version(),
        "config": check_config(config, env=env),
        "compiler": check_compiler(config),
        "providers": providers_check,
    }

    # A missing compiler degrades to previews, so only providers are critical
    critical_passed = all(
        check.passed for name, check in results.items()
        if name in ["python", "providers"]
    )

    log.debug("doctor_checks_complete",
              critical_passed=critical_passed,
              failed=[name for name, check in results.items() if not check.passed])

    return {
        "checks": results,
        "providers": {"usable": usable, "unavailable": unavailable},
        "all_passed": all(check.passed for check in results.values()),
        "critical_passed": critical_passed,
    }
