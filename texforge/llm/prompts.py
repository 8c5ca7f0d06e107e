"""Prompt assembly for generation and repair."""

import math
from typing import Optional, Sequence

import structlog

from texforge.compiler.diagnostics import DiagnosticEntry

log = structlog.get_logger()

DOCUMENT_TYPES = ("basic", "article", "presentation", "report", "book", "letter")

LATEX_SYSTEM_PROMPT = """You are a LaTeX generator.

Return clean, fully compilable LaTeX for the user's input. The document is
compiled with Tectonic, so it must build without manual intervention.

Output rules:
- Return the entire document inside a single ```latex fenced block.
- Never add content that was not in the user's input; treat text literally.
- Never truncate, summarize or omit content, and leave no placeholder comments.
- Default to \\documentclass[12pt]{article} with \\usepackage[utf8]{inputenc}
  and \\usepackage[margin=1in]{geometry}.
- Do not add \\title, \\author, \\date or \\maketitle unless requested or the
  input is unambiguously formatted that way.
- Use sectioning commands only when the input already has headings.

Document types:
- basic: bare content in the document environment, nothing added.
- article: \\section and \\subsection for structure.
- presentation: beamer with frames, \\frametitle and a title slide; no fontspec.
- report: \\chapter as the top-level division.
- book: chapters, title page only if title fields are present.
- letter: \\address and \\signature, no sections.

Safety:
- Inline math in $...$, display math in \\[...\\], derivations in align.
- Tables with longtable, booktabs and array; keep width within 6.5in.
- Replace Unicode dashes and arrows with --, --- and \\rightarrow.
- In TikZ \\foreach lists never leave a label empty.
"""

ERROR_CORRECTION_PROMPT = """You are a LaTeX error correction assistant.

You receive a LaTeX document that fails to compile and the compiler's error
messages. Fix every error with minimal changes, preserving structure and
content, and return the full corrected document in a single ```latex fenced
block with no explanation.

Watch for unmatched braces and brackets, missing or extra $, undefined control
sequences, missing required arguments, TikZ/PGF loop syntax, special
characters, table formatting and unavailable fonts (replace fontspec font
selection with standard packages).
"""

# Rough words-to-tokens ratio used when a provider reports no usage
TOKENS_PER_WORD = 1.3


def build_generation_prompt(
    content: str,
    document_type: str,
    use_math: Optional[bool] = None,
    split_tables: Optional[bool] = None,
) -> str:
    """User prompt for a generation request.

    Only options the caller set explicitly are listed.
    """
    if document_type not in DOCUMENT_TYPES:
        log.info("document_type_unrecognized", document_type=document_type)

    prompt = f"Document Type: {document_type}\n\n{content}"

    options = []
    if split_tables is not None:
        options.append(f"Split Tables: {'Yes' if split_tables else 'No'}")
    if use_math is not None:
        options.append(f"Use Math Mode: {'Yes' if use_math else 'No'}")
    if options:
        prompt = f"{prompt}\n\nOptions:\n" + "\n".join(options)

    return prompt


def build_repair_prompt(
    source: str,
    diagnostics: str,
    errors: Sequence[DiagnosticEntry] = (),
) -> str:
    """User prompt asking for a corrected full source."""
    parts = ["I have a LaTeX document that fails to compile."]

    if errors:
        parts.append("Errors by line:\n" + "\n".join(
            f"- line {entry.line}: {entry.message}" for entry in errors
        ))

    parts.append(f"Compiler output:\n{diagnostics.strip()}")
    parts.append(
        "Fix the errors in the following LaTeX code and return the entire "
        f"corrected document:\n```latex\n{source}\n```"
    )
    return "\n\n".join(parts)


def estimate_tokens(text: str) -> int:
    """Conservative token estimate from the word count."""
    words = len(text.split())
    return math.ceil(words * TOKENS_PER_WORD)


def estimate_request_tokens(system: str, prompt: str, max_tokens: int) -> int:
    """Budget estimate for a call: both prompts plus the full response allowance."""
    return estimate_tokens(system) + estimate_tokens(prompt) + max_tokens
