# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""RFC 9457 Problem Details for the broker's HTTP surface.

Maps internal exceptions and policy rejections onto structured JSON error
bodies. Every body carries the RFC 9457 fields plus an ``error`` member
(the human-readable message agents read first) and, where a policy
decided the outcome, a ``reason`` member naming that policy condition.

Key public API:

- ``ProblemType``   — error taxonomy (status 400/401/403/404/408/500/503).
- ``ProblemDetail`` — frozen dataclass (→ JSON dict / Starlette response).
- ``sanitize_detail()`` — scrub secrets & paths from error messages.
- Factory functions (``from_exception``, ``from_forbidden``, …).

Type URI namespace: ``https://www.retio.ai/webmcp/errors/{slug}``
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# ── Constants ────────────────────────────────────────────────────────

_ERROR_BASE = "https://www.retio.ai/webmcp/errors"

MAX_DETAIL_LENGTH = 200

# ── ProblemType taxonomy ─────────────────────────────────────────────


class ProblemType(StrEnum):
    """Broker error taxonomy."""

    # Admission
    VALIDATION_ERROR = "validation-error"

    # Access control
    AUTH_REQUIRED = "auth-required"
    AUTH_INVALID = "auth-invalid"
    FORBIDDEN = "forbidden"
    DESTINATION_BLOCKED = "destination-blocked"

    # Lookup
    SESSION_NOT_FOUND = "session-not-found"
    TOOL_NOT_FOUND = "tool-not-found"
    NOT_FOUND = "not-found"

    # Execution
    TIMEOUT = "timeout"
    EXECUTION_FAILED = "execution-failed"
    BROWSER_UNAVAILABLE = "browser-unavailable"
    SERVER_BUSY = "server-busy"
    TLS_REQUIRED = "tls-required"

    @property
    def uri(self) -> str:
        """Full type URI for RFC 9457 ``type`` field."""
        return f"{_ERROR_BASE}/{self.value}"


# ── Per-type metadata: (status, title) ───────────────────────────────

_TYPE_METADATA: dict[ProblemType, tuple[int, str]] = {
    ProblemType.VALIDATION_ERROR: (400, "Invalid Request"),
    ProblemType.AUTH_REQUIRED: (401, "Authentication Required"),
    ProblemType.AUTH_INVALID: (401, "Authentication Failed"),
    ProblemType.FORBIDDEN: (403, "Forbidden"),
    ProblemType.DESTINATION_BLOCKED: (403, "URL Blocked"),
    ProblemType.SESSION_NOT_FOUND: (404, "Session Not Found"),
    ProblemType.TOOL_NOT_FOUND: (404, "Tool Not Found"),
    ProblemType.NOT_FOUND: (404, "Not Found"),
    ProblemType.TIMEOUT: (408, "Request Timeout"),
    ProblemType.EXECUTION_FAILED: (500, "Execution Failed"),
    ProblemType.BROWSER_UNAVAILABLE: (503, "Browser Unavailable"),
    ProblemType.SERVER_BUSY: (503, "Server Busy"),
    ProblemType.TLS_REQUIRED: (421, "TLS Required"),
}

# ── Secret sanitization patterns ─────────────────────────────────────

_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"sk-[a-zA-Z0-9_-]{8,}"), "<redacted>"),
    (re.compile(r"Bearer\s+\S+"), "Bearer <redacted>"),
    (
        re.compile(
            r"(?:API_KEY|SECRET|TOKEN|PASSWORD|CREDENTIAL)\s*[=:]\s*\S+",
            re.IGNORECASE,
        ),
        "<redacted>",
    ),
    (re.compile(r"Basic\s+[A-Za-z0-9+/=]{8,}"), "Basic <redacted>"),
    (re.compile(r"://[^@\s]+@"), "://<redacted>@"),
    (
        re.compile(r"eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}"),
        "<redacted>",
    ),
]

_PATH_PATTERN = re.compile(
    r"(/(?:Users|home|tmp|var|etc|opt|root|srv|proc|sys|usr|Library"
    r"|Applications|private|snap|mnt|media|nix)/[\w./-]+"
    r"|[A-Z]:\\[\w.\\-]+)"
)

# Playwright prints a multi-line "Call log:" after the message proper.
_CALL_LOG_RE = re.compile(r"\n\s*=+\s*logs?\s*=+.*|\nCall log:.*", re.DOTALL | re.IGNORECASE)


def sanitize_detail(text: str) -> str:
    """Scrub secrets and filesystem paths from *text*.

    Drops Playwright call logs, applies ``_SECRET_PATTERNS`` and
    ``_PATH_PATTERN``, then truncates to ``MAX_DETAIL_LENGTH`` characters.
    """
    text = _CALL_LOG_RE.sub("", text).strip()
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    text = _PATH_PATTERN.sub("<path>", text)
    if len(text) > MAX_DETAIL_LENGTH:
        text = text[:MAX_DETAIL_LENGTH] + "..."
    return text


# ── ProblemDetail dataclass ──────────────────────────────────────────

# Standard RFC 9457 fields (plus ``error``) that extensions must never shadow.
_STANDARD_FIELDS = frozenset({"type", "title", "status", "detail", "instance", "error"})


@dataclass(frozen=True, slots=True)
class ProblemDetail:
    """RFC 9457 Problem Detail object with a broker ``error`` member."""

    type: str = "about:blank"
    title: str = ""
    status: int = 500
    detail: str = ""
    instance: str = ""
    extensions: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """JSON dict. Empty optional fields omitted, extensions merged at top level."""
        d: dict[str, Any] = {
            "error": self.detail or self.title or "Internal server error",
            "type": self.type,
            "status": self.status,
        }
        if self.title:
            d["title"] = self.title
        if self.detail:
            d["detail"] = self.detail
        if self.instance:
            d["instance"] = self.instance
        for k, v in self.extensions.items():
            if k not in _STANDARD_FIELDS:
                d[k] = v
        return d

    def to_response(self):
        """Starlette ``JSONResponse`` served as ``application/problem+json``."""
        from starlette.responses import JSONResponse

        headers = {"Cache-Control": "no-store", "Content-Language": "en"}
        if "retry_after" in self.extensions:
            headers["Retry-After"] = str(int(self.extensions["retry_after"]))
        return JSONResponse(
            content=self.to_dict(),
            status_code=self.status,
            media_type="application/problem+json",
            headers=headers,
        )


def _build(problem_type: ProblemType, detail: str, *, instance: str = "", **extensions: Any) -> ProblemDetail:
    status, title = _TYPE_METADATA[problem_type]
    ext = {k: v for k, v in extensions.items() if v is not None}
    return ProblemDetail(
        type=problem_type.uri,
        title=title,
        status=status,
        detail=detail,
        instance=instance,
        extensions=ext,
    )


# ── Exception → ProblemType mapping ──────────────────────────────────


def from_exception(exc: BaseException, *, instance: str = "") -> ProblemDetail:
    """Build a ProblemDetail from an exception.

    Known broker exceptions map onto their problem type. Anything else
    becomes a generic 500 whose detail is scrubbed, never a traceback.
    """
    from .errors import (
        AuthenticationError,
        AuthorizationError,
        BrokerError,
        BrowserError,
        DestinationBlockedError,
        PoolExhaustedError,
        SessionNotFoundError,
        ToolNotFoundError,
        ToolTimeoutError,
        ValidationError,
    )

    message = sanitize_detail(str(exc))

    if isinstance(exc, ValidationError):
        return _build(ProblemType.VALIDATION_ERROR, message, instance=instance)
    if isinstance(exc, AuthenticationError):
        return _build(ProblemType.AUTH_INVALID, message, instance=instance)
    if isinstance(exc, AuthorizationError):
        return _build(ProblemType.FORBIDDEN, message, instance=instance, reason=message)
    if isinstance(exc, DestinationBlockedError):
        return from_destination_blocked(exc.url, exc.reason, instance=instance)
    if isinstance(exc, SessionNotFoundError):
        return _build(ProblemType.SESSION_NOT_FOUND, message, instance=instance, sessionId=exc.session_id)
    if isinstance(exc, ToolNotFoundError):
        return _build(
            ProblemType.TOOL_NOT_FOUND,
            message,
            instance=instance,
            toolName=exc.tool_name,
            availableTools=list(exc.available),
        )
    if isinstance(exc, ToolTimeoutError | TimeoutError):
        return _build(ProblemType.TIMEOUT, message or "Operation timed out", instance=instance)
    if isinstance(exc, PoolExhaustedError):
        return _build(
            ProblemType.SERVER_BUSY,
            message,
            instance=instance,
            details=f"All {exc.max_instances} browser instances are busy",
            retry_after=1,
        )
    if isinstance(exc, BrowserError):
        return _build(ProblemType.BROWSER_UNAVAILABLE, message, instance=instance)
    if isinstance(exc, BrokerError):
        return _build(ProblemType.EXECUTION_FAILED, message, instance=instance)

    # Unknown exception: generic detail to prevent internal state leakage
    return ProblemDetail(
        type="about:blank",
        title="Internal Server Error",
        status=500,
        detail="Internal server error",
        instance=instance,
    )


# ── Factory functions ────────────────────────────────────────────────


def from_validation(detail: str, *, field_name: str = "", instance: str = "") -> ProblemDetail:
    """Build a 400 ProblemDetail for a missing or malformed field."""
    return _build(
        ProblemType.VALIDATION_ERROR,
        sanitize_detail(detail),
        instance=instance,
        field=field_name or None,
    )


def from_auth_missing(*, instance: str = "") -> ProblemDetail:
    """Build a 401 ProblemDetail for missing credentials."""
    return _build(ProblemType.AUTH_REQUIRED, "Unauthorized", instance=instance, reason="No credentials provided")


def from_auth_invalid(reason: str, *, instance: str = "") -> ProblemDetail:
    """Build a 401 ProblemDetail for rejected credentials."""
    return _build(ProblemType.AUTH_INVALID, "Unauthorized", instance=instance, reason=sanitize_detail(reason))


def from_forbidden(reason: str, *, role: str = "", instance: str = "") -> ProblemDetail:
    """Build a 403 ProblemDetail for an RBAC gate failure."""
    return _build(
        ProblemType.FORBIDDEN,
        "Forbidden",
        instance=instance,
        reason=reason,
        role=role or None,
    )


def from_destination_blocked(url: str, reason: str, *, instance: str = "") -> ProblemDetail:
    """Build a 403 ProblemDetail for a Destination Guard rejection."""
    return _build(
        ProblemType.DESTINATION_BLOCKED,
        "URL blocked by policy",
        instance=instance,
        reason=reason,
        url=sanitize_detail(url),
    )


def from_not_found(detail: str = "Not found", *, instance: str = "") -> ProblemDetail:
    """Build a 404 ProblemDetail for unknown routes."""
    return _build(ProblemType.NOT_FOUND, detail, instance=instance)


def from_tls_required(*, instance: str = "") -> ProblemDetail:
    """Build a 421 ProblemDetail for plain-HTTP requests when TLS is required."""
    return _build(
        ProblemType.TLS_REQUIRED,
        "HTTPS required",
        instance=instance,
        reason="This broker only accepts requests over TLS",
    )
