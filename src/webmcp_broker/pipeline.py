# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Security pipeline — ordered request stages as one pure ASGI middleware.

Stage order is explicit configuration, built by ``default_stages()``:

    auth → audit → rbac → destination

Each stage inspects a ``RequestContext`` and either returns ``None``
(continue) or a ``ProblemDetail`` (short-circuit: the problem response is
sent and neither later stages nor the route handler run, so no browser
instance is ever acquired for a rejected request). Stages that ran get a
``complete()`` callback with the final status and response body, which is
how the audit stage writes its ``RESPONSE`` entry.

Design:

- **Pure ASGI** — no BaseHTTPMiddleware (avoids body buffering, SSE issues).
- **Body buffered once** (1 MB max) and replayed to the route handler.
- **Response capture** via send-wrapper (same pattern as ``security_headers``).
- **Correlation id** from a sanitised ``X-Request-ID`` or a fresh UUID; bound
  to structlog contextvars and echoed back in the response.
- ``/health`` bypasses every stage.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from . import logging_config
from .audit import AuditEntry, Auditor, extract_path_ids, new_correlation_id
from .errors import AuthenticationError
from .problem_details import (
    ProblemDetail,
    from_auth_invalid,
    from_auth_missing,
    from_destination_blocked,
    from_forbidden,
    from_validation,
)
from .rbac import Role, check_request, resolve_role

if TYPE_CHECKING:
    from .auth import Authenticator, Identity
    from .config import BrokerConfig
    from .destination_guard import DestinationGuard

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────

_BYPASS_PATHS: frozenset[str] = frozenset({"/health"})

_MAX_BODY_BUFFER: int = 1024 * 1024  # 1 MB
_MAX_CAPTURE: int = 64 * 1024  # response bytes kept for the audit entry

_REQUEST_ID_RE = re.compile(r"^[a-zA-Z0-9._\-]{1,128}$")

STATE_KEY = "broker_context"


# ---------------------------------------------------------------------------
# Context and stage protocol
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RequestContext:
    """Per-request state shared by every stage and exposed to route handlers."""

    method: str
    path: str
    headers: dict[str, str]
    correlation_id: str
    client_ip: str = "unknown"
    raw_body: bytes = b""
    body: dict[str, Any] | None = None
    started: float = field(default_factory=time.perf_counter)
    identity: Identity | None = None
    role: Role | None = None
    audit_entry: AuditEntry | None = None

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


@runtime_checkable
class Stage(Protocol):
    """One interceptor in the security pipeline."""

    name: str

    async def check(self, ctx: RequestContext) -> ProblemDetail | None: ...

    def complete(self, ctx: RequestContext, status: int, body: bytes) -> None: ...


class _BaseStage:
    name = "stage"

    def complete(self, ctx: RequestContext, status: int, body: bytes) -> None:
        return None


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class AuthStage(_BaseStage):
    """Resolve the caller identity before anything else runs."""

    name = "auth"

    def __init__(self, authenticator: Authenticator) -> None:
        self.authenticator = authenticator

    async def check(self, ctx: RequestContext) -> ProblemDetail | None:
        try:
            ctx.identity = self.authenticator.authenticate(ctx.headers)
        except AuthenticationError as e:
            reason = str(e)
            logger.warning("Auth rejected: %s %s reason=%s", ctx.method, ctx.path, reason)
            if reason.endswith("required"):
                return from_auth_missing(instance=ctx.path)
            return from_auth_invalid(reason, instance=ctx.path)
        logging_config.bind_request(ctx.correlation_id, caller=ctx.identity.fingerprint)
        return None


class AuditStage(_BaseStage):
    """Record a REQUEST entry now and a RESPONSE entry on completion."""

    name = "audit"

    def __init__(self, auditor: Auditor) -> None:
        self.auditor = auditor

    async def check(self, ctx: RequestContext) -> ProblemDetail | None:
        if not self.auditor.enabled:
            return None
        session_id, tool_name = extract_path_ids(ctx.path)
        url = ctx.body.get("url") if ctx.body else None
        entry = AuditEntry(
            correlation_id=ctx.correlation_id,
            action="REQUEST",
            method=ctx.method,
            path=ctx.path,
            key_fingerprint=ctx.identity.fingerprint if ctx.identity else "none",
            client_ip=ctx.client_ip,
            session_id=session_id,
            tool_name=tool_name,
            url=url if isinstance(url, str) else None,
        )
        ctx.audit_entry = entry
        self.auditor.record(entry)
        return None

    def complete(self, ctx: RequestContext, status: int, body: bytes) -> None:
        if ctx.audit_entry is None:
            return
        payload = _parse_json_object(body) or {}
        error = payload.get("error")
        metadata = None
        if self.auditor.captures_outcome:
            metadata = {
                "toolName": payload.get("toolName"),
                "success": payload.get("success"),
                "pageChanged": payload.get("pageChanged"),
            }
            metadata = {k: v for k, v in metadata.items() if v is not None} or None
        self.auditor.record(
            ctx.audit_entry.completion(
                status_code=status,
                duration_ms=ctx.elapsed_ms,
                error=str(error) if error else None,
                metadata=metadata,
            )
        )


class RbacStage(_BaseStage):
    """Resolve the caller's role and apply the per-request gates."""

    name = "rbac"

    def __init__(self, *, enabled: bool, key_roles: Any) -> None:
        self.enabled = enabled
        self.key_roles = key_roles

    async def check(self, ctx: RequestContext) -> ProblemDetail | None:
        from .auth import ANONYMOUS

        identity = ctx.identity or ANONYMOUS
        ctx.role = resolve_role(identity, enabled=self.enabled, key_roles=self.key_roles)
        if not self.enabled:
            return None
        reason = check_request(ctx.role, ctx.method, ctx.path, ctx.body)
        if reason is not None:
            logger.warning("RBAC denied: role=%s %s %s", ctx.role, ctx.method, ctx.path)
            return from_forbidden(reason, role=ctx.role, instance=ctx.path)
        return None


class DestinationStage(_BaseStage):
    """Admission-time Destination Guard check on any body ``url`` field."""

    name = "destination"

    def __init__(self, guard: DestinationGuard) -> None:
        self.guard = guard

    async def check(self, ctx: RequestContext) -> ProblemDetail | None:
        if not ctx.body or "url" not in ctx.body:
            return None
        url = ctx.body["url"]
        if not isinstance(url, str):
            return from_validation("url must be a string", field_name="url", instance=ctx.path)
        decision = await self.guard.is_allowed_resolved(url)
        if not decision.allowed:
            logger.warning("Destination blocked: %s reason=%s", ctx.path, decision.reason)
            return from_destination_blocked(url, decision.reason, instance=ctx.path)
        return None


def default_stages(
    config: BrokerConfig,
    *,
    authenticator: Authenticator,
    auditor: Auditor,
    guard: DestinationGuard,
) -> list[Stage]:
    """The broker's stage order: auth → audit → rbac → destination."""
    return [
        AuthStage(authenticator),
        AuditStage(auditor),
        RbacStage(enabled=config.rbac_enabled, key_roles=config.api_key_roles),
        DestinationStage(guard),
    ]


# ---------------------------------------------------------------------------
# ASGI middleware
# ---------------------------------------------------------------------------


class SecurityPipeline:
    """Pure ASGI middleware running ``stages`` in order ahead of the app."""

    def __init__(self, app, stages: Sequence[Stage], *, bypass_paths: frozenset[str] = _BYPASS_PATHS) -> None:
        self.app = app
        self.stages = tuple(stages)
        self.bypass_paths = bypass_paths

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        scope.setdefault("state", {})

        if scope.get("path", "") in self.bypass_paths:
            await self.app(scope, receive, send)
            return

        headers = _header_dict(scope)
        ctx = RequestContext(
            method=scope.get("method", "GET"),
            path=scope.get("path", ""),
            headers=headers,
            correlation_id=_request_id(headers),
            client_ip=_client_ip(scope),
        )
        scope["state"][STATE_KEY] = ctx
        logging_config.bind_request(ctx.correlation_id, method=ctx.method, path=ctx.path)

        try:
            too_large, replay_receive = await _buffer_body(ctx, scope, receive)
            status = 500
            captured: list[bytes] = []
            captured_len = 0
            _started = False

            async def _capturing_send(message) -> None:
                nonlocal status, captured_len, _started
                if message["type"] == "http.response.start" and not _started:
                    _started = True
                    status = message["status"]
                    out_headers = list(message.get("headers", []))
                    out_headers.append((b"x-request-id", ctx.correlation_id.encode("latin-1")))
                    message = {**message, "headers": out_headers}
                elif message["type"] == "http.response.body" and captured_len < _MAX_CAPTURE:
                    chunk = message.get("body", b"")
                    captured.append(chunk)
                    captured_len += len(chunk)
                await send(message)

            ran: list[Stage] = []
            problem: ProblemDetail | None = None
            if too_large:
                problem = from_validation("Request body too large", instance=ctx.path)
            else:
                for stage in self.stages:
                    ran.append(stage)
                    problem = await stage.check(ctx)
                    if problem is not None:
                        break

            try:
                if problem is not None:
                    await problem.to_response()(scope, replay_receive, _capturing_send)
                else:
                    await self.app(scope, replay_receive, _capturing_send)
            except Exception:
                status = 500
                raise
            finally:
                body = b"".join(captured)
                for stage in ran:
                    try:
                        stage.complete(ctx, status, body)
                    except Exception:
                        logger.debug("Stage %s completion hook failed", stage.name, exc_info=True)
        finally:
            logging_config.clear_request()


# ── Static helpers ───────────────────────────────────────────────────


def _header_dict(scope: dict) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in scope.get("headers", []):
        headers[name.decode("latin-1").lower()] = value.decode("latin-1")
    return headers


def _request_id(headers: dict[str, str]) -> str:
    candidate = headers.get("x-request-id", "")
    if candidate and _REQUEST_ID_RE.match(candidate):
        return candidate
    return new_correlation_id()


def _client_ip(scope: dict) -> str:
    client = scope.get("client")
    if client:
        return str(client[0])
    return "unknown"


def _parse_json_object(raw: bytes) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


async def _buffer_body(ctx: RequestContext, scope: dict, receive: Callable) -> tuple[bool, Callable]:
    """Buffer the request body into *ctx* and return a replaying receive.

    Returns ``(too_large, replay_receive)``. Bodiless methods keep the
    original receive.
    """
    if scope.get("method", "GET") in ("GET", "HEAD", "DELETE", "OPTIONS"):
        return False, receive

    body_parts: list[bytes] = []
    total = 0
    too_large = False
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            break
        chunk = message.get("body", b"")
        total += len(chunk)
        if total <= _MAX_BODY_BUFFER:
            body_parts.append(chunk)
        else:
            too_large = True
        if not message.get("more_body", False):
            break

    body = b"".join(body_parts)
    ctx.raw_body = body
    ctx.body = _parse_json_object(body)

    _replayed = False

    async def replay_receive() -> dict:
        nonlocal _replayed
        if not _replayed:
            _replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return {"type": "http.disconnect"}

    return too_large, replay_receive


def get_context(request) -> RequestContext | None:
    """Fetch the pipeline's context from a Starlette request."""
    return request.scope.get("state", {}).get(STATE_KEY)
