"""Sanitization helpers for agent diagnostics surfaced in errors and progress output."""

from __future__ import annotations

import re
from collections.abc import Callable

_MAX_PREVIEW_CHARS = 2_000

_Replacement = str | Callable[[re.Match[str]], str]

# CSI sequences (colors, cursor moves), OSC sequences (titles, hyperlinks) and lone escapes.
_CONTROL_SEQUENCE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
    r"|\x9b[0-?]*[ -/]*[@-~]",
)
_STRAY_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b(work_loop|openai|anthropic|claude)[a-z0-9_]*_?(api_)?(key|token)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)


def strip_control_sequences(text: str) -> str:
    """Remove terminal escape sequences and stray control characters."""

    without_sequences = _CONTROL_SEQUENCE.sub("", text)
    return _STRAY_CONTROL_CHARS.sub("", without_sequences)


def sanitize_diagnostic(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Strip terminal noise, redact obvious secrets and clamp payload size."""

    compact = strip_control_sequences(text).strip()
    if not compact:
        return ""

    redacted = compact
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[-max_chars:]
