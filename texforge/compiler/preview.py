"""HTML preview of a LaTeX source for environments without tectonic.

The preview maps a handful of structural commands to HTML, leaves math
delimiters in place for MathJax, and shows the raw source underneath.
"""

import base64
import html
import re
from dataclasses import dataclass

import structlog

log = structlog.get_logger()

MATHJAX_URL = "https://cdn.jsdelivr.net/npm/mathjax@3/es5/tex-mml-chtml.js"


@dataclass(frozen=True)
class PreviewArtifact:
    """A degraded, non-binary rendering of a source."""
    html: str
    content_type: str = "text/html"
    degraded: bool = True

    def encoded(self) -> str:
        return base64.b64encode(self.html.encode("utf-8")).decode("ascii")


_BODY = re.compile(r"\\begin\{document\}(.*?)(?:\\end\{document\}|\Z)", re.DOTALL)
_COMMENT = re.compile(r"(?<!\\)%.*$", re.MULTILINE)
_DISPLAY_MATH = re.compile(
    r"(\\\[.*?\\\]|\$\$.*?\$\$|\\begin\{(equation|align|gather|multline)\*?\}.*?\\end\{\2\*?\})",
    re.DOTALL,
)
_INLINE_MATH = re.compile(r"(?<!\\)\$(?!\$).+?(?<!\\)\$|\\\(.*?\\\)", re.DOTALL)

_HEADINGS = (
    (re.compile(r"\\(?:chapter)\*?\{([^{}]*)\}"), "h1"),
    (re.compile(r"\\(?:section|frametitle)\*?\{([^{}]*)\}"), "h2"),
    (re.compile(r"\\subsection\*?\{([^{}]*)\}"), "h3"),
    (re.compile(r"\\(?:subsubsection|paragraph)\*?\{([^{}]*)\}"), "h4"),
)
_INLINE_STYLES = (
    (re.compile(r"\\textbf\{([^{}]*)\}"), "strong"),
    (re.compile(r"\\(?:emph|textit)\{([^{}]*)\}"), "em"),
    (re.compile(r"\\underline\{([^{}]*)\}"), "u"),
    (re.compile(r"\\texttt\{([^{}]*)\}"), "code"),
)
_LISTS = {"itemize": "ul", "enumerate": "ol"}
_DROPPED = re.compile(
    r"\\(?:maketitle|tableofcontents|titlepage|newpage|clearpage|centering|noindent)\b"
    r"|\\(?:begin|end)\{(?:frame|center|flushleft|flushright|abstract)\}"
    r"|\\(?:label|vspace|hspace)\*?\{[^{}]*\}"
)


def _placeholder(index: int) -> str:
    return f"\x00MATH{index}\x00"


def latex_to_html(source: str) -> str:
    """Approximate HTML for the document body.

    Math is protected from escaping and restored verbatim so MathJax can
    typeset it client-side.
    """
    match = _BODY.search(source)
    body = match.group(1) if match else source
    body = _COMMENT.sub("", body)

    math_blocks: list[str] = []

    def protect(m: re.Match) -> str:
        math_blocks.append(m.group(0))
        return _placeholder(len(math_blocks) - 1)

    body = _DISPLAY_MATH.sub(protect, body)
    body = _INLINE_MATH.sub(protect, body)

    body = html.escape(body, quote=False)

    for pattern, tag in _HEADINGS:
        body = pattern.sub(lambda m, t=tag: f"\n<{t}>{m.group(1).strip()}</{t}>\n", body)
    for pattern, tag in _INLINE_STYLES:
        body = pattern.sub(lambda m, t=tag: f"<{t}>{m.group(1)}</{t}>", body)

    for env, tag in _LISTS.items():
        body = re.sub(rf"\\begin\{{{env}\}}(\[[^\]]*\])?", f"\n<{tag}>\n", body)
        body = re.sub(rf"\\end\{{{env}\}}", f"\n</{tag}>\n", body)
    body = re.sub(r"\\item(?:\[[^\]]*\])?\s*", "<li>", body)

    body = _DROPPED.sub("", body)
    body = body.replace("\\\\", "<br>")

    paragraphs = []
    for chunk in re.split(r"\n\s*\n", body):
        chunk = chunk.strip()
        if not chunk:
            continue
        if chunk.startswith("<") or chunk.startswith("\x00"):
            paragraphs.append(chunk)
        else:
            paragraphs.append(f"<p>{chunk}</p>")
    rendered = "\n".join(paragraphs)

    for index, block in enumerate(math_blocks):
        rendered = rendered.replace(_placeholder(index), html.escape(block, quote=False))

    return rendered


_PAGE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>LaTeX Preview</title>
  <script>
  MathJax = {{
    tex: {{
      inlineMath: [['$', '$'], ['\\\\(', '\\\\)']],
      displayMath: [['$$', '$$'], ['\\\\[', '\\\\]']],
      processEscapes: true,
      processEnvironments: true
    }},
    options: {{
      skipHtmlTags: ['script', 'noscript', 'style', 'textarea', 'pre']
    }}
  }};
  </script>
  <script id="MathJax-script" async src="{mathjax}"></script>
  <style>
    body {{ font-family: 'Latin Modern Roman', serif; line-height: 1.6; max-width: 800px; margin: 0 auto; padding: 20px; }}
    pre {{ background-color: #f5f5f5; padding: 10px; border-radius: 5px; overflow-x: auto; }}
    .latex-source {{ white-space: pre-wrap; font-family: monospace; }}
  </style>
</head>
<body>
  <p><em>Note: This is a preview. PDF compilation is not available in this environment.</em></p>
  <div class="latex-preview">
{body}
  </div>
  <h2>Raw LaTeX</h2>
  <pre class="latex-source">{source}</pre>
</body>
</html>
"""


def render_preview(source: str) -> PreviewArtifact:
    """Degraded preview of `source`; never fails on malformed input."""
    page = _PAGE.format(
        mathjax=MATHJAX_URL,
        body=latex_to_html(source),
        source=html.escape(source),
    )
    log.info("preview_rendered", source_length=len(source))
    return PreviewArtifact(html=page)
