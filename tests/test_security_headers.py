# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for security headers middleware — OWASP headers, TLS enforcement, ASGI middleware."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

from starlette.responses import Response

from webmcp_broker.security_headers import (
    _HSTS_HEADER,
    _SECURITY_HEADERS,
    SecurityHeadersMiddleware,
    _is_https,
    apply_security_headers,
)

# ── TestIsHttps ───────────────────────────────────────────────────────


class TestIsHttps:
    """Tests for _is_https() helper."""

    def test_scheme_https(self):
        assert _is_https({"scheme": "https"}, trust_forwarded_proto=False) is True

    def test_scheme_http(self):
        assert _is_https({"scheme": "http"}, trust_forwarded_proto=False) is False

    def test_forwarded_proto_ignored_by_default(self):
        scope = {"scheme": "http", "headers": [(b"x-forwarded-proto", b"https")]}
        assert _is_https(scope, trust_forwarded_proto=False) is False

    def test_forwarded_proto_trusted(self):
        scope = {"scheme": "http", "headers": [(b"x-forwarded-proto", b"https, http")]}
        assert _is_https(scope, trust_forwarded_proto=True) is True

    def test_forwarded_proto_http(self):
        scope = {"scheme": "http", "headers": [(b"x-forwarded-proto", b"http")]}
        assert _is_https(scope, trust_forwarded_proto=True) is False


# ── TestSecurityHeaders ──────────────────────────────────────────────


class TestSecurityHeaders:
    """Tests for SecurityHeadersMiddleware ASGI behavior."""

    @staticmethod
    def _make_scope(*, scheme: str = "http", headers: list | None = None) -> dict:
        return {"type": "http", "scheme": scheme, "path": "/api/discover", "headers": headers or []}

    @staticmethod
    async def _echo_app(scope, receive, send):
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"ok"})

    async def _run(self, mw, scope) -> list[dict]:
        sent: list[dict] = []

        async def capture(message):
            sent.append(message)

        await mw(scope, AsyncMock(), capture)
        return sent

    async def test_standard_headers_injected(self):
        sent = await self._run(SecurityHeadersMiddleware(self._echo_app), self._make_scope())
        headers = dict(sent[0]["headers"])
        for name, value in _SECURITY_HEADERS:
            assert headers[name] == value
        assert _HSTS_HEADER[0] not in headers

    async def test_app_headers_not_overwritten(self):
        async def app(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": [(b"cache-control", b"max-age=5")]})
            await send({"type": "http.response.body", "body": b""})

        sent = await self._run(SecurityHeadersMiddleware(app), self._make_scope())
        values = [v for n, v in sent[0]["headers"] if n == b"cache-control"]
        assert values == [b"max-age=5"]

    async def test_injected_once(self):
        async def twice(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": []})
            await send({"type": "http.response.start", "status": 200, "headers": []})

        sent = await self._run(SecurityHeadersMiddleware(twice), self._make_scope())
        assert b"x-frame-options" in {h[0] for h in sent[0]["headers"]}
        assert b"x-frame-options" not in {h[0] for h in sent[1]["headers"]}

    async def test_non_http_passthrough(self):
        app = AsyncMock()
        mw = SecurityHeadersMiddleware(app, require_tls=True)
        scope = {"type": "lifespan"}
        await mw(scope, AsyncMock(), AsyncMock())
        app.assert_awaited_once()


class TestTlsEnforcement:
    @staticmethod
    async def _echo_app(scope, receive, send):
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"ok"})

    async def _run(self, mw, scope) -> list[dict]:
        sent: list[dict] = []

        async def capture(message):
            sent.append(message)

        await mw(scope, AsyncMock(), capture)
        return sent

    async def test_plain_http_rejected_with_421(self):
        app = AsyncMock()
        mw = SecurityHeadersMiddleware(app, require_tls=True)
        sent = await self._run(mw, {"type": "http", "scheme": "http", "path": "/api/discover", "headers": []})
        assert sent[0]["status"] == 421
        body = json.loads(sent[1]["body"])
        assert body["error"] == "HTTPS required"
        assert body["instance"] == "/api/discover"
        app.assert_not_awaited()

    async def test_421_response_includes_security_headers(self):
        mw = SecurityHeadersMiddleware(self._echo_app, require_tls=True)
        sent = await self._run(mw, {"type": "http", "scheme": "http", "path": "/", "headers": []})
        header_names = {h[0].lower() for h in sent[0]["headers"]}
        for name, _ in _SECURITY_HEADERS:
            assert name in header_names, f"421 missing header: {name!r}"
        assert _HSTS_HEADER[0] in header_names

    async def test_https_passes_with_hsts(self):
        mw = SecurityHeadersMiddleware(self._echo_app, require_tls=True)
        sent = await self._run(mw, {"type": "http", "scheme": "https", "path": "/", "headers": []})
        assert sent[0]["status"] == 200
        assert dict(sent[0]["headers"])[_HSTS_HEADER[0]] == _HSTS_HEADER[1]

    async def test_trusted_proxy(self):
        mw = SecurityHeadersMiddleware(self._echo_app, require_tls=True, trust_forwarded_proto=True)
        scope = {"type": "http", "scheme": "http", "path": "/", "headers": [(b"x-forwarded-proto", b"https")]}
        sent = await self._run(mw, scope)
        assert sent[0]["status"] == 200


# ── TestApplySecurityHeaders ──────────────────────────────────────────


class TestApplySecurityHeaders:
    """Tests for apply_security_headers() on responses built outside the chain."""

    def test_headers_added(self):
        response = apply_security_headers(Response("boom", status_code=500))
        for name, value in _SECURITY_HEADERS:
            assert response.headers[name.decode()] == value.decode()
        assert _HSTS_HEADER[0].decode() not in response.headers

    def test_hsts_when_tls_required(self):
        response = apply_security_headers(Response("boom"), require_tls=True)
        assert response.headers["strict-transport-security"] == _HSTS_HEADER[1].decode()

    def test_existing_header_kept(self):
        response = apply_security_headers(Response("boom", headers={"cache-control": "private"}))
        assert response.headers["cache-control"] == "private"
