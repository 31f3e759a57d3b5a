"""Redaction helpers for agent diagnostics that end up in logs."""

from __future__ import annotations

import re
from collections.abc import Callable

_MAX_PREVIEW_CHARS = 1_200

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(cookie|set-cookie)\s*:\s*[^\n\r]+"),
        r"\1: [redacted-cookie]",
    ),
    (
        re.compile(r"(?i)\b(password|passwd|secret|token)\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?"),
        r"\1=[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth|session)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
    (
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[redacted-email]",
    ),
)


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Redact credentials and addresses, then clamp to ``max_chars``."""

    compact = text.strip()
    if not compact:
        return ""

    redacted = compact
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]
