# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Security response headers and optional TLS enforcement.

Outermost layer of the broker's middleware chain, so even requests the
security pipeline rejects leave with hardened headers. Pure ASGI: headers
are added on ``http.response.start`` without buffering the body, and
headers the app already set are never overwritten.

With ``require_tls`` on, plain-HTTP requests get 421 before anything else
runs, and HSTS is added to every response. ``X-Forwarded-Proto`` is
honoured only when the deployment says a proxy terminates TLS.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .problem_details import from_tls_required

if TYPE_CHECKING:
    from starlette.responses import Response

logger = logging.getLogger(__name__)

_SECURITY_HEADERS: tuple[tuple[bytes, bytes], ...] = (
    (b"x-content-type-options", b"nosniff"),
    (b"x-frame-options", b"DENY"),
    (b"content-security-policy", b"default-src 'none'; frame-ancestors 'none'"),
    (b"cache-control", b"no-store, max-age=0"),
    (b"referrer-policy", b"no-referrer"),
    (b"cross-origin-resource-policy", b"same-origin"),
)

_HSTS_HEADER: tuple[bytes, bytes] = (b"strict-transport-security", b"max-age=63072000; includeSubDomains")


def _headers_for(*, require_tls: bool) -> tuple[tuple[bytes, bytes], ...]:
    return (*_SECURITY_HEADERS, _HSTS_HEADER) if require_tls else _SECURITY_HEADERS


def apply_security_headers(response: Response, *, require_tls: bool = False) -> Response:
    """Harden a response that is sent from outside the middleware chain.

    Starlette's catch-all error handler answers from the outermost layer,
    above this middleware, so its responses are patched here instead.
    """
    for name, value in _headers_for(require_tls=require_tls):
        response.headers.setdefault(name.decode("latin-1"), value.decode("latin-1"))
    return response


def _is_https(scope: dict, *, trust_forwarded_proto: bool) -> bool:
    if scope.get("scheme") == "https":
        return True
    if not trust_forwarded_proto:
        return False
    for name, value in scope.get("headers", ()):
        if name == b"x-forwarded-proto":
            return value.decode("latin-1").split(",")[0].strip().lower() == "https"
    return False


class SecurityHeadersMiddleware:
    """Adds OWASP response headers; answers 421 to plain HTTP when TLS is required."""

    def __init__(self, app, *, require_tls: bool = False, trust_forwarded_proto: bool = False) -> None:
        self.app = app
        self.require_tls = require_tls
        self.trust_forwarded_proto = trust_forwarded_proto

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        scope.setdefault("state", {})

        if self.require_tls and not _is_https(scope, trust_forwarded_proto=self.trust_forwarded_proto):
            logger.info("Rejected plain HTTP request to %s", scope.get("path", ""))
            response = from_tls_required(instance=scope.get("path", "")).to_response()
            await response(scope, receive, self._wrap(send))
            return

        await self.app(scope, receive, self._wrap(send))

    def _wrap(self, send):
        injected = False

        async def _send_with_security_headers(message) -> None:
            nonlocal injected
            if message["type"] == "http.response.start" and not injected:
                injected = True
                headers = list(message.get("headers", []))
                existing = frozenset(h[0].lower() for h in headers)
                headers.extend(h for h in _headers_for(require_tls=self.require_tls) if h[0] not in existing)
                message = {**message, "headers": headers}
            await send(message)

        return _send_with_security_headers
