"""Pull LaTeX source out of a raw model response.

Each strategy takes the raw response and returns the source it found, or
None to defer to the next strategy. ``extract_source`` runs them in order and
falls back to the whole response.
"""

import re
from typing import Callable, Optional, Sequence

ExtractionStrategy = Callable[[str], Optional[str]]

DOCUMENT_START = "\\documentclass"

_LATEX_FENCE = re.compile(r"```(?:latex|tex)\b[ \t]*\r?\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```[^\n`]*\r?\n?(.*?)```", re.DOTALL)


def latex_fence(response: str) -> Optional[str]:
    """Body of the first ```latex (or ```tex) fenced block."""
    match = _LATEX_FENCE.search(response)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return None


def any_fence(response: str) -> Optional[str]:
    """Body of the first fenced block, whatever its label."""
    match = _ANY_FENCE.search(response)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return None


def document_start(response: str) -> Optional[str]:
    """Everything from the first \\documentclass on."""
    index = response.find(DOCUMENT_START)
    if index == -1:
        return None
    return response[index:].strip()


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    latex_fence,
    any_fence,
    document_start,
)


def extract_source(
    response: str,
    strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
) -> str:
    """Apply strategies in order; the raw response is the last resort."""
    for strategy in strategies:
        found = strategy(response)
        if found:
            return found
    return response.strip()
