"""Error taxonomy for generation and compilation.

Provider exceptions are raised and caught inside the registry, the provider
clients and the orchestrator. Callers of the orchestrator and the compile-fix
cycle only ever see structured outcomes carrying a ClassifiedError.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
import structlog

log = structlog.get_logger()


class ErrorCategory(Enum):
    """Categories of errors for handling decisions."""

    UNAVAILABLE = "unavailable"                    # No credentials or budget - skip provider
    RATE_LIMITED = "rate_limited"                  # 429 - cooldown, self-clearing
    TRANSIENT = "transient"                        # Network, 5xx, bad payload - next provider
    EXHAUSTED = "exhausted"                        # Every provider failed - try again later
    COMPILER_UNAVAILABLE = "compiler_unavailable"  # Binary missing - degraded preview
    DIAGNOSTIC = "diagnostic"                      # Source does not compile - repair once
    TIMEOUT = "timeout"                            # Compiler killed after timeout
    REPAIR_EXHAUSTED = "repair_exhausted"          # Repair attempt used up
    FATAL = "fatal"                                # Unexpected - propagates


@dataclass
class ClassifiedError:
    """A classified error with handling metadata."""

    category: ErrorCategory
    message: str
    retryable: bool
    suggestion: Optional[str] = None
    original_exception: Optional[Exception] = None

    def __str__(self) -> str:
        """Human-readable error representation."""
        parts = [self.message]
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return " | ".join(parts)


class ProviderError(RuntimeError):
    """Provider failed to return a valid generation."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ProviderUnavailableError(ProviderError):
    """Provider has no credentials configured."""


class ProviderRateLimitedError(ProviderError):
    """Provider signalled a rate limit (HTTP 429 or equivalent)."""


class TokenBudgetExceededError(ProviderError):
    """A metered provider would exceed its token budget."""


class ProviderCallError(ProviderError):
    """Network, HTTP or payload failure on an otherwise usable provider."""

    def __init__(self, message: str, provider: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message, provider)
        self.status_code = status_code


# Messages shown to callers; provider error text is only logged
USER_MESSAGES = {
    ErrorCategory.UNAVAILABLE: "The selected AI provider is not available.",
    ErrorCategory.RATE_LIMITED: "The AI provider is busy. Please try again in a few minutes.",
    ErrorCategory.TRANSIENT: "The AI provider did not respond correctly.",
    ErrorCategory.EXHAUSTED: "All AI providers failed to generate LaTeX. Please try again later.",
    ErrorCategory.COMPILER_UNAVAILABLE: (
        "PDF compilation is not available in this environment; showing a preview instead."
    ),
    ErrorCategory.DIAGNOSTIC: "The LaTeX document failed to compile.",
    ErrorCategory.TIMEOUT: "LaTeX compilation timed out.",
    ErrorCategory.REPAIR_EXHAUSTED: (
        "Failed to fix LaTeX errors. Please check the syntax manually."
    ),
    ErrorCategory.FATAL: "An unexpected error occurred.",
}

ERROR_SUGGESTIONS = {
    "rate limit": "Provider rate limited - skipped until the cooldown clears",
    "too many requests": "Provider rate limited - skipped until the cooldown clears",
    "budget": "Token budget reached - provider skipped until restart",
    "missing": "Set the provider's API key environment variable",
    "timeout": "Provider timed out - falling back to the next provider",
    "timed out": "Provider timed out - falling back to the next provider",
    "connection": "Network issue - falling back to the next provider",
    "invalid json": "Response format error - falling back to the next provider",
}

RATE_LIMIT_PATTERNS = ("rate limit", "rate-limit", "ratelimit", "too many requests")


def is_rate_limit_message(message: str) -> bool:
    """True if an error message reads as a rate-limit signal."""
    msg_lower = message.lower()
    return any(p in msg_lower for p in RATE_LIMIT_PATTERNS)


def classify_provider_error(error: Exception) -> ClassifiedError:
    """Classify an exception raised while calling a provider.

    Args:
        error: The exception to classify

    Returns:
        ClassifiedError with category, retryability, and suggestions
    """
    error_msg = str(error)

    if isinstance(error, ProviderRateLimitedError):
        return _classified(ErrorCategory.RATE_LIMITED, error, retryable=True)

    if isinstance(error, (ProviderUnavailableError, TokenBudgetExceededError)):
        return _classified(ErrorCategory.UNAVAILABLE, error, retryable=False)

    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429:
        return _classified(ErrorCategory.RATE_LIMITED, error, retryable=True)

    if isinstance(error, ProviderCallError) and error.status_code == 429:
        return _classified(ErrorCategory.RATE_LIMITED, error, retryable=True)

    if is_rate_limit_message(error_msg):
        return _classified(ErrorCategory.RATE_LIMITED, error, retryable=True)

    if isinstance(error, (ProviderError, httpx.HTTPError, TimeoutError,
                          ConnectionError, ValueError, KeyError, TypeError)):
        return _classified(ErrorCategory.TRANSIENT, error, retryable=True)

    return _classified(ErrorCategory.FATAL, error, retryable=False)


def _classified(category: ErrorCategory, error: Exception, retryable: bool) -> ClassifiedError:
    message = str(error) or type(error).__name__
    return ClassifiedError(
        category=category,
        message=message,
        retryable=retryable,
        suggestion=_get_suggestion(message.lower()),
        original_exception=error,
    )


def _get_suggestion(error_msg: str) -> Optional[str]:
    """Get a suggestion for a lowercase error message."""
    for pattern, suggestion in ERROR_SUGGESTIONS.items():
        if pattern in error_msg:
            return suggestion
    return None


def user_message(category: ErrorCategory) -> str:
    """Caller-facing text for an error category."""
    return USER_MESSAGES[category]
