"""Structured error locations from raw compiler diagnostics."""

import re
from dataclasses import dataclass
from typing import List

# TeX cites the offending line as "l.<n>"; tectonic prefixes errors with "<file>.tex:<n>:"
LINE_MARKER = re.compile(r"(?:(?<![\w.])l\.(\d+))|(?:\.tex:(\d+):)")

# Failure signatures worth appending when they follow a line marker
ERROR_SIGNATURES = (
    re.compile(r"Undefined control sequence"),
    re.compile(r"Missing \\\w+ inserted"),
    re.compile(r"Missing [{}] inserted"),
    re.compile(r"Extra [{}]"),
    re.compile(r"Missing \$ inserted"),
    re.compile(r"Missing (?:required )?argument"),
    re.compile(r"A node must have a label"),
    re.compile(r"Argument of \\pgffor@next has an extra \}"),
)


@dataclass(frozen=True)
class DiagnosticEntry:
    """One located compiler error."""
    line: int
    message: str


def matches_signature(text: str) -> bool:
    return any(pattern.search(text) for pattern in ERROR_SIGNATURES)


def parse_diagnostics(raw: str) -> List[DiagnosticEntry]:
    """Extract ``{line, message}`` entries in the order they appear.

    Consecutive markers for the same line merge into one entry. Lines without
    a location marker are dropped; the raw text stays with the
    caller. Never raises: anything that is not text yields no entries.
    """
    if not raw or not isinstance(raw, str):
        return []

    entries: List[DiagnosticEntry] = []
    lines = raw.splitlines()

    for i, text in enumerate(lines):
        match = LINE_MARKER.search(text)
        if not match:
            continue

        message = text
        if i + 1 < len(lines) and matches_signature(lines[i + 1]):
            message = f"{text} {lines[i + 1]}"

        line_number = int(match.group(1) or match.group(2))
        message = message.strip()
        # tectonic and TeX each cite the same error
        if entries and entries[-1].line == line_number:
            previous = entries.pop()
            message = f"{previous.message} {message}"
        entries.append(DiagnosticEntry(line=line_number, message=message))

    return entries


def summarize(entries: List[DiagnosticEntry], limit: int = 10) -> str:
    """Short multi-line summary for display."""
    shown = [f"line {entry.line}: {entry.message}" for entry in entries[:limit]]
    if len(entries) > limit:
        shown.append(f"... and {len(entries) - limit} more")
    return "\n".join(shown)
