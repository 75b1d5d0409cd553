"""Redaction and clamping for text stored in plan ledger diagnostics.

Processor stderr and hook output end up in ledger records and CLI output,
so tokens, credential assignments, signed URL parameters and e-mail
addresses are masked before anything is persisted.
"""

from __future__ import annotations

import re
from collections.abc import Callable

DEFAULT_PREVIEW_CHARS = 2_000

_CREDENTIAL_OWNERS = ("context_relay", "openai", "anthropic", "gemini", "github", "gh")

_BEARER = re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b")
_API_KEY = re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b")
_CREDENTIAL_ASSIGNMENT = re.compile(
    rf"(?i)\b({'|'.join(_CREDENTIAL_OWNERS)})[a-z0-9_]*_?(api_)?(key|token)\b"
    r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
)
_SIGNED_QUERY = re.compile(r"(?i)([?&](?:token|key|signature|auth))=[^&\s]+")
_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

_Redaction = tuple[re.Pattern[str], str | Callable[[re.Match[str]], str]]

_REDACTIONS: tuple[_Redaction, ...] = (
    (_BEARER, r"\1 [redacted-token]"),
    (_API_KEY, "[redacted-token]"),
    (_CREDENTIAL_ASSIGNMENT, "[redacted-secret]"),
    (_SIGNED_QUERY, lambda match: f"{match.group(1)}=[redacted]"),
    (_EMAIL, "[redacted-email]"),
)


def redact(text: str) -> str:
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_preview(text: str, *, max_chars: int = DEFAULT_PREVIEW_CHARS) -> str:
    """Strip, redact and clamp ``text`` to ``max_chars`` characters."""

    stripped = text.strip()
    if not stripped:
        return ""
    return redact(stripped)[:max_chars]
