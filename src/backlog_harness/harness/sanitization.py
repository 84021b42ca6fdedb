"""Redaction and clamping of worker output before it reaches the iteration log."""

from __future__ import annotations

import re
from collections.abc import Iterable

_MAX_PREVIEW_CHARS = 2_000
_ELISION = "\n...[truncated]...\n"
_CREDENTIAL_MARK = "[redacted-credential]"

_TOKEN_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}"), r"\1 [redacted-token]"),
    (re.compile(r"\b(?:sk|ghp|gho|xox[abp])[-_][A-Za-z0-9\-_]{8,}"), "[redacted-token]"),
    (re.compile(r"\bAIza[0-9A-Za-z\-_]{35}\b"), "[redacted-token]"),
    (
        re.compile(r"(?i)\b([a-z0-9_]*(?:api_key|token|secret))(\s*[:=]\s*)['\"]?[^'\"\s]+['\"]?"),
        r"\1\2[redacted-secret]",
    ),
    (re.compile(r"(?i)([?&](?:token|key|signature|auth)=)[^&\s]+"), r"\1[redacted]"),
)


def _literal_pattern(secrets: Iterable[str]) -> re.Pattern[str] | None:
    literals = sorted({secret for secret in secrets if secret}, key=len, reverse=True)
    if not literals:
        return None
    return re.compile("|".join(re.escape(literal) for literal in literals))


def redact(text: str, *, secrets: Iterable[str] = ()) -> str:
    """Replace configured credential values and token-shaped strings."""

    literal = _literal_pattern(secrets)
    if literal is not None:
        text = literal.sub(_CREDENTIAL_MARK, text)
    for pattern, replacement in _TOKEN_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_preview(
    text: str,
    *,
    max_chars: int = _MAX_PREVIEW_CHARS,
    secrets: Iterable[str] = (),
) -> str:
    """Redact, then clamp to ``max_chars`` keeping both ends.

    Workers print their completion token last, so the tail of the output is
    kept alongside the head.
    """

    compact = redact(text.strip(), secrets=secrets)
    if len(compact) <= max_chars:
        return compact
    head = max_chars // 2
    tail = max_chars - head
    return compact[:head] + _ELISION + compact[-tail:]
