# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Redactor — masks sensitive values in tool results and audit payloads.

Strings are scanned against built-in matchers (card numbers, SSNs, email
addresses, phone numbers, bearer tokens, ``key: value`` credentials) plus
operator-supplied patterns. Mapping entries whose key is a sensitive field
name are masked outright. Containers are walked recursively; every other
value passes through unchanged.

Masks contain nothing the matchers recognise, so redaction is idempotent.
Numeric matchers refuse to start or stop inside a longer digit run for the
same reason.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any

from .config import DEFAULT_REDACTION_FIELDS

logger = logging.getLogger(__name__)

FIELD_MASK = "[REDACTED]"
PATTERN_MASK = "[REDACTED]"

# Digit-run boundaries: not adjacent to a digit, nor to "<sep><digit>".
_NUM_START = r"(?<!\d)(?<!\d[-.\s])"
_NUM_END = r"(?!\d)(?![-.\s]\d)"

_CARD_RE = re.compile(_NUM_START + r"(?:\d{4}[-\s]?){3}(\d{4})" + _NUM_END)

# (name, pattern, replacement) applied in order
_BUILTIN_PATTERNS: tuple[tuple[str, re.Pattern[str], str], ...] = (
    ("ssn", re.compile(_NUM_START + r"\d{3}-\d{2}-\d{4}" + _NUM_END), "***-**-****"),
    (
        "email",
        re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "***@***.***",
    ),
    (
        "phone",
        re.compile(_NUM_START + r"(?:\+?1[-.\s]?)?(?:\(\d{3}\)|\d{3})[-.\s]?\d{3}[-.\s]?\d{4}" + _NUM_END),
        "(***) ***-****",
    ),
    (
        "bearer_token",
        re.compile(r"\bBearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
        "Bearer [REDACTED]",
    ),
    (
        "credential_pair",
        re.compile(
            r"\b(?:api[_-]?key|apikey|secret|token|password|authorization)\s*[:=]\s*[\"']?[^\s\"',}{]+",
            re.IGNORECASE,
        ),
        "[REDACTED_CREDENTIAL]",
    ),
)

# Blurs sensitive inputs before screenshots; injected into every page.
REDACTION_CSS = """
input[type="password"],
input[type="tel"],
input[name*="ssn"],
input[name*="credit"],
input[name*="card"],
input[name*="cvv"],
input[name*="social"],
[data-sensitive],
[data-redact] {
    filter: blur(8px) !important;
}
"""


def _mask_card(match: re.Match[str]) -> str:
    return f"****-****-****-{match.group(1)}"


def _compile_custom(patterns: Iterable[str]) -> tuple[re.Pattern[str], ...]:
    compiled = []
    for raw in patterns:
        try:
            compiled.append(re.compile(raw, re.IGNORECASE))
        except re.error as e:
            logger.warning("Ignoring invalid redaction pattern %r: %s", raw, e)
    return tuple(compiled)


class Redactor:
    """Pure, recursive masking of sensitive strings and fields."""

    def __init__(
        self,
        *,
        fields: Iterable[str] = DEFAULT_REDACTION_FIELDS,
        patterns: Iterable[str] = (),
        enabled: bool = True,
    ) -> None:
        self.enabled = enabled
        self.fields = frozenset(f.strip().lower() for f in fields if f.strip())
        self._custom = _compile_custom(patterns)

    def redact_text(self, text: str) -> str:
        if not self.enabled or not text:
            return text
        result = _CARD_RE.sub(_mask_card, text)
        for _name, pattern, replacement in _BUILTIN_PATTERNS:
            result = pattern.sub(replacement, result)
        for pattern in self._custom:
            result = pattern.sub(PATTERN_MASK, result)
        return result

    def redact(self, value: Any) -> Any:
        """Return a redacted copy of *value*. Input is never mutated."""
        if not self.enabled or value is None:
            return value
        if isinstance(value, str):
            return self.redact_text(value)
        if isinstance(value, dict):
            out: dict[Any, Any] = {}
            for key, item in value.items():
                if isinstance(key, str) and key.lower() in self.fields:
                    out[key] = FIELD_MASK
                else:
                    out[key] = self.redact(item)
            return out
        if isinstance(value, list | tuple):
            return [self.redact(item) for item in value]
        return value
