# storefront/services/css_sanitizer.py
import re
from dataclasses import dataclass, field

BLOCKED_MARKER = "/* BLOCKED */"

# (pattern, name reported in `blocked`)
DANGEROUS_PATTERNS = [
    (re.compile(r"javascript\s*:", re.IGNORECASE), "javascript: URLs"),
    (re.compile(r"expression\s*\(", re.IGNORECASE), "expression()"),
    (re.compile(r"@import", re.IGNORECASE), "@import"),
    (re.compile(r"<script", re.IGNORECASE), "script tags"),
    (re.compile(r"behavior\s*:", re.IGNORECASE), "behavior:"),
    (re.compile(r"binding\s*:", re.IGNORECASE), "binding:"),
    (re.compile(r"-moz-binding", re.IGNORECASE), "-moz-binding"),
    (re.compile(r"vbscript\s*:", re.IGNORECASE), "vbscript:"),
    (re.compile(r"data\s*:\s*text/html", re.IGNORECASE), "data:text/html"),
]

_AT_BLOCKS = ("@media", "@keyframes", "@supports")


@dataclass
class SanitizeResult:
    safe: bool = True
    sanitized: str = ""
    blocked: list[str] = field(default_factory=list)


def sanitize(css) -> SanitizeResult:
    """Neutralise script-capable CSS constructs. Never raises."""
    if not css or not isinstance(css, str):
        return SanitizeResult()

    blocked: list[str] = []
    sanitized = css
    changed = True
    # repeat until nothing matches so a second call is a no-op
    while changed:
        changed = False
        for pattern, name in DANGEROUS_PATTERNS:
            sanitized, n = pattern.subn(BLOCKED_MARKER, sanitized)
            if n:
                changed = True
                if name not in blocked:
                    blocked.append(name)
    return SanitizeResult(safe=not blocked, sanitized=sanitized, blocked=blocked)


_CONTENT_STRING = re.compile(r"""content\s*:\s*["']([^"']*)["']""", re.IGNORECASE)
_PLACEHOLDER = re.compile(r"__CONTENT_PLACEHOLDER_(\d+)__")


def minify_css(css) -> str:
    if not css or not isinstance(css, str):
        return ""

    # keep content: "..." strings byte for byte
    kept: list[str] = []

    def _stash(m):
        kept.append(m.group(0))
        return f"__CONTENT_PLACEHOLDER_{len(kept) - 1}__"

    out = _CONTENT_STRING.sub(_stash, css)
    out = re.sub(r"/\*[\s\S]*?\*/", "", out)
    out = re.sub(r"\s+", " ", out)
    out = re.sub(r"\s*([{}:;,])\s*", r"\1", out)
    out = out.replace(";}", "}").strip()
    return _PLACEHOLDER.sub(lambda m: kept[int(m.group(1))], out)


def parse_css_blocks(css: str) -> dict:
    """Map selector -> declarations; at-rule blocks are keyed (at_rule, n) and kept whole."""
    blocks: dict = {}
    if not css:
        return blocks

    i, n = 0, len(css)
    while i < n:
        while i < n and css[i].isspace():
            i += 1
        if i >= n:
            break
        start = i
        while i < n and css[i] != "{":
            i += 1
        if i >= n:
            break
        selector = css[start:i].strip()
        i += 1

        if selector.startswith(_AT_BLOCKS):
            depth, body_start = 1, i
            while i < n and depth > 0:
                if css[i] == "{":
                    depth += 1
                elif css[i] == "}":
                    depth -= 1
                i += 1
            blocks[(selector, len(blocks))] = css[body_start:i - 1].strip()
        else:
            body_start = i
            while i < n and css[i] != "}":
                i += 1
            body = css[body_start:i].strip()
            i += 1
            if selector and body:
                blocks[selector] = body
    return blocks


def rebuild_css(blocks: dict) -> str:
    out = []
    for key, body in blocks.items():
        selector = key[0] if isinstance(key, tuple) else key
        out.append(f"{selector} {{ {body} }}")
    return "\n".join(out)
