import os
import re
from functools import lru_cache
from typing import List

DEFAULT_REPLACEMENT = "REDACTED"
MAX_ERROR_MESSAGE_CHARS = 500
_DEFAULT_PATTERNS = (
    (r"sk-[A-Za-z0-9_-]{10,}", "sk-REDACTED"),
    (r"gh[pousr]_[A-Za-z0-9]{20,}", "gh-REDACTED"),
    (r"github_pat_[A-Za-z0-9_]{20,}", "github_pat_REDACTED"),
    (r"AKIA[0-9A-Z]{16}", "AKIA_REDACTED"),
    (r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*\b", "Bearer REDACTED"),
    (
        r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|secret|password))\b\s*[:=]\s*([^\s,;]+)",
        r"\1=REDACTED",
    ),
)
_EXTRA_PATTERNS_ENV = "REDACTION_EXTRA_PATTERNS"


def redact(text: str) -> str:
    value = text or ""
    for regex, replacement in _compiled_patterns():
        value = regex.sub(replacement, value)
    return value


def short_error(text: object, limit: int = MAX_ERROR_MESSAGE_CHARS) -> str:
    """Collapse an error into a single redacted line suitable for persistence."""
    value = " ".join(str(text or "").split())
    value = redact(value)
    if len(value) > limit:
        value = value[: max(0, limit - 3)] + "..."
    return value


@lru_cache(maxsize=2)
def _compiled_patterns() -> List[tuple[re.Pattern[str], str]]:
    items: List[tuple[re.Pattern[str], str]] = [
        (re.compile(pattern), replacement) for pattern, replacement in _DEFAULT_PATTERNS
    ]
    extra_raw = (os.environ.get(_EXTRA_PATTERNS_ENV) or "").strip()
    if not extra_raw:
        return items
    for token in extra_raw.split(";;"):
        pattern = token.strip()
        if not pattern:
            continue
        try:
            items.append((re.compile(pattern), DEFAULT_REPLACEMENT))
        except re.error:
            continue
    return items
