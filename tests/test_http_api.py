# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""End-to-end tests of the HTTP surface through the full middleware chain.

The pool hands out Playwright-free ``FakeInstance``s, so every request runs
the real security pipeline, route handlers, session store and tool router.
"""

from __future__ import annotations

import asyncio
import base64

import httpx
import pytest
from playwright.async_api import Error as PlaywrightError

from tests._fakes import FakeClock, FakePage, FakePool
from webmcp_broker.audit import ListSink
from webmcp_broker.config import AuditLevel, BrokerConfig
from webmcp_broker.server import build_broker, create_app
from webmcp_broker.session_store import SessionStore

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


async def _search(page, input):
    return {"results": [f"{input.get('query', '')} result"]}


async def _add_to_cart(page, input):
    page.url = "https://shop.example.com/cart"
    return {"cartSize": 1}


class _Harness:
    def __init__(self, config: BrokerConfig | None = None, page_factory=FakePage) -> None:
        self.config = config or BrokerConfig()
        self.clock = FakeClock()
        self.pool = FakePool(max_instances=self.config.max_browsers, page_factory=page_factory)
        self.sessions = SessionStore(self.pool, clock=self.clock)
        self.sink = ListSink()
        self.broker = build_broker(self.config, pool=self.pool, sessions=self.sessions, audit_sink=self.sink)
        self.app = create_app(broker=self.broker)

    def client(self, **headers) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self.app),
            base_url="http://testserver",
            headers=headers,
        )


@pytest.fixture
def harness():
    return _Harness()


def _shop_page_factory(declared: dict):
    """Every instance renders the same shop, whose tool set the test controls."""

    def factory() -> FakePage:
        page = FakePage(title="Shop")
        page.declared = declared
        return page

    return factory


# ---------------------------------------------------------------------------
# Health and surface
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_health(self, harness):
        async with harness.client() as client:
            resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["activeSessions"] == 0
        assert body["pool"]["maxInstances"] == 5
        assert body["audit"] == {"recorded": 0, "flushed": 0, "dropped": 0, "failedFlushes": 0}

    async def test_health_needs_no_key(self):
        h = _Harness(BrokerConfig(api_key="k-1"))
        async with h.client() as client:
            assert (await client.get("/health")).status_code == 200

    async def test_security_headers_present(self, harness):
        async with harness.client() as client:
            resp = await client.get("/health")
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["x-frame-options"] == "DENY"

    async def test_unknown_route_is_problem_json(self, harness):
        async with harness.client() as client:
            resp = await client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.headers["content-type"] == "application/problem+json"

    async def test_unhandled_error_is_hardened_problem_json(self, harness, monkeypatch):
        async def crash(page):
            raise RuntimeError("reader exploded")

        monkeypatch.setattr(harness.broker.router, "discover", crash)
        transport = httpx.ASGITransport(app=harness.app, raise_app_exceptions=False)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            resp = await client.post("/api/discover", json={"url": "https://example.com"})
        assert resp.status_code == 500
        assert resp.headers["content-type"] == "application/problem+json"
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["x-frame-options"] == "DENY"
        assert harness.pool.released == [(harness.pool.last_instance, True)]

    async def test_tls_required(self):
        h = _Harness(BrokerConfig(require_tls=True))
        async with h.client() as client:
            resp = await client.get("/health")
        assert resp.status_code == 421


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessionLifecycle:
    async def test_create_get_delete(self, harness):
        async with harness.client() as client:
            resp = await client.post("/api/sessions", json={"url": "https://example.com", "ttlMinutes": 15})
            assert resp.status_code == 201
            created = resp.json()
            sid = created["sessionId"]
            assert created["url"] == "https://example.com"
            assert created["hasWebMCP"] is False
            assert any(t["name"] == "browser_click" for t in created["tools"])

            status = (await client.get(f"/api/sessions/{sid}")).json()
            assert status["status"] == "active"
            assert 895 <= status["remainingSeconds"] <= 900
            assert status["title"] == "Example Domain"

            assert (await client.delete(f"/api/sessions/{sid}")).status_code == 204
            gone = await client.get(f"/api/sessions/{sid}")
            assert gone.status_code == 404
            assert gone.json()["error"] == f"Session '{sid}' not found or expired"
            assert (await client.delete(f"/api/sessions/{sid}")).status_code == 404

        assert len(harness.pool.released) == 1

    async def test_ttl_clamped(self, harness):
        async with harness.client() as client:
            sid = (await client.post("/api/sessions", json={"url": "https://example.com", "ttlMinutes": 999})).json()[
                "sessionId"
            ]
            status = (await client.get(f"/api/sessions/{sid}")).json()
        assert status["remainingSeconds"] == 3600

    async def test_expired_session_is_404(self, harness):
        async with harness.client() as client:
            sid = (await client.post("/api/sessions", json={"url": "https://example.com", "ttlMinutes": 1})).json()[
                "sessionId"
            ]
            harness.clock.advance(61)
            resp = await client.post(f"/api/sessions/{sid}/tools/browser_click/call", json={"input": {"selector": "a"}})
        assert resp.status_code == 404
        assert harness.pool.released[0][0].page.click.await_count == 0

    async def test_missing_url_400(self, harness):
        async with harness.client() as client:
            resp = await client.post("/api/sessions", json={"ttlMinutes": 5})
        assert resp.status_code == 400
        assert resp.json()["error"] == "url is required"
        assert harness.pool.last_instance is None

    async def test_invalid_json_400(self, harness):
        async with harness.client() as client:
            resp = await client.post(
                "/api/sessions", content=b"{not json", headers={"content-type": "application/json"}
            )
        assert resp.status_code == 400

    async def test_navigation_failure_releases_instance(self):
        def broken_page():
            page = FakePage()
            page.goto_error = PlaywrightError("net::ERR_NAME_NOT_RESOLVED")
            return page

        h = _Harness(page_factory=broken_page)
        async with h.client() as client:
            resp = await client.post("/api/sessions", json={"url": "https://nx.example.com"})
        assert resp.status_code == 500
        assert "ERR_NAME_NOT_RESOLVED" in resp.json()["error"]
        assert h.sessions.active_count == 0
        assert len(h.pool.released) == 1

    async def test_viewport_and_user_agent_applied(self, harness):
        body = {"url": "https://example.com", "viewport": {"width": 800, "height": 600}, "userAgent": "Agent/2"}
        async with harness.client() as client:
            assert (await client.post("/api/sessions", json=body)).status_code == 201
        harness.pool.last_instance.apply_options.assert_awaited_once_with(
            viewport={"width": 800, "height": 600}, user_agent="Agent/2"
        )

    async def test_navigate_session(self, harness):
        async with harness.client() as client:
            sid = (await client.post("/api/sessions", json={"url": "https://example.com"})).json()["sessionId"]
            resp = await client.post(f"/api/sessions/{sid}/navigate", json={"url": "https://example.org/next"})
            assert resp.status_code == 200
            assert resp.json()["url"] == "https://example.org/next"
            status = (await client.get(f"/api/sessions/{sid}")).json()
        assert status["url"] == "https://example.org/next"

    async def test_authenticate_session(self, harness):
        body = {
            "cookies": [{"name": "sid", "value": "abc", "domain": "example.com", "path": "/"}],
            "localStorage": {"token": "t"},
            "headers": {"X-Tenant": "acme"},
        }
        async with harness.client() as client:
            sid = (await client.post("/api/sessions", json={"url": "https://example.com"})).json()["sessionId"]
            resp = await client.post(f"/api/sessions/{sid}/authenticate", json=body)
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        inst = harness.pool.last_instance
        inst.context.add_cookies.assert_awaited_once_with(body["cookies"])
        inst.set_extra_headers.assert_awaited_once_with({"X-Tenant": "acme"})

    async def test_screenshot(self, harness):
        async with harness.client() as client:
            sid = (await client.post("/api/sessions", json={"url": "https://example.com"})).json()["sessionId"]
            resp = await client.get(f"/api/sessions/{sid}/screenshot", params={"fullPage": "true"})
            bad = await client.get(f"/api/sessions/{sid}/screenshot", params={"format": "gif"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["format"] == "png"
        assert base64.b64decode(body["base64"]) == b"\x89PNG"
        assert bad.status_code == 400


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class TestToolCalls:
    async def test_failed_click_is_500_and_recorded(self, harness):
        async with harness.client() as client:
            sid = (await client.post("/api/sessions", json={"url": "https://example.com"})).json()["sessionId"]
            await client.post(f"/api/sessions/{sid}/recording", json={"enabled": True})
            harness.pool.last_instance.page.click.side_effect = PlaywrightError("waiting for locator('#missing')")

            resp = await client.post(
                f"/api/sessions/{sid}/tools/browser_click/call",
                json={"input": {"selector": "#missing"}, "timeout": 1000},
            )
            assert resp.status_code == 500
            body = resp.json()
            assert body["success"] is False
            assert body["toolName"] == "browser_click"
            assert "#missing" in body["error"]

            recording = (await client.get(f"/api/sessions/{sid}/recording")).json()
        assert recording["actionCount"] == 1
        assert recording["actions"][0]["success"] is False
        assert recording["actions"][0]["input"] == {"selector": "#missing"}

    async def test_declared_tool_and_page_change(self):
        declared = {"searchProducts": {"handler": _search}, "addToCart": {"handler": _add_to_cart}}
        h = _Harness(page_factory=_shop_page_factory(declared))
        async with h.client() as client:
            created = (await client.post("/api/sessions", json={"url": "https://shop.example.com"})).json()
            sid = created["sessionId"]
            assert created["hasWebMCP"] is True
            assert {t["name"] for t in created["tools"]} == {"searchProducts", "addToCart"}

            same = await client.post(
                f"/api/sessions/{sid}/tools/searchProducts/call", json={"input": {"query": "shoe"}}
            )
            assert same.status_code == 200
            assert same.json()["result"] == {"results": ["shoe result"]}
            assert same.json()["pageChanged"] is False
            assert "newUrl" not in same.json()

            moved = await client.post(f"/api/sessions/{sid}/tools/addToCart/call", json={})
            assert moved.json()["pageChanged"] is True
            assert moved.json()["newUrl"] == "https://shop.example.com/cart"

            status = (await client.get(f"/api/sessions/{sid}")).json()
        assert status["callCount"] == 2
        assert status["url"] == "https://shop.example.com/cart"

    async def test_unknown_tool_404_lists_available(self, harness):
        async with harness.client() as client:
            sid = (await client.post("/api/sessions", json={"url": "https://example.com"})).json()["sessionId"]
            resp = await client.post(f"/api/sessions/{sid}/tools/teleport/call", json={})
        assert resp.status_code == 404
        assert "browser_click" in resp.json()["availableTools"]

    async def test_call_queued_behind_delete_is_404(self):
        entered, gate = asyncio.Event(), asyncio.Event()
        fast_inputs = []

        async def slow(page, input):
            entered.set()
            await gate.wait()
            return {"done": True}

        async def fast(page, input):
            fast_inputs.append(input)
            return {}

        h = _Harness(page_factory=_shop_page_factory({"slow": {"handler": slow}, "fast": {"handler": fast}}))
        async with h.client() as client:
            sid = (await client.post("/api/sessions", json={"url": "https://shop.example.com"})).json()["sessionId"]
            slow_call = asyncio.create_task(client.post(f"/api/sessions/{sid}/tools/slow/call", json={}))
            await entered.wait()
            fast_call = asyncio.create_task(client.post(f"/api/sessions/{sid}/tools/fast/call", json={}))
            await asyncio.sleep(0.05)
            deleting = asyncio.create_task(client.delete(f"/api/sessions/{sid}"))
            await asyncio.sleep(0.05)
            assert h.pool.released == []

            gate.set()
            slow_resp, fast_resp, delete_resp = await asyncio.gather(slow_call, fast_call, deleting)

        assert slow_resp.status_code == 200
        assert slow_resp.json()["result"] == {"done": True}
        assert delete_resp.status_code == 204
        assert fast_resp.status_code == 404
        assert fast_resp.json()["error"] == f"Session '{sid}' not found or expired"
        assert fast_inputs == []
        assert len(h.pool.released) == 1

    async def test_in_session_navigation_to_internal_address_blocked(self, harness):
        async with harness.client() as client:
            sid = (await client.post("/api/sessions", json={"url": "https://example.com"})).json()["sessionId"]
            resp = await client.post(
                f"/api/sessions/{sid}/tools/browser_navigate/call",
                json={"input": {"url": "http://169.254.169.254/latest/meta-data/"}},
            )
        assert resp.status_code == 403
        assert harness.pool.last_instance.page.goto_calls == ["https://example.com"]

    async def test_stateless_execute(self, harness):
        async with harness.client() as client:
            resp = await client.post(
                "/api/execute",
                json={"url": "https://example.com", "toolName": "browser_get_page_content", "input": {}},
            )
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["result"]["html"] == "<html></html>"
        assert harness.pool.active_count == 0
        assert harness.sessions.active_count == 0

    async def test_stateless_execute_unknown_tool_keeps_instance(self, harness):
        async with harness.client() as client:
            resp = await client.post("/api/execute", json={"url": "https://example.com", "toolName": "nope"})
        assert resp.status_code == 404
        assert "browser_click" in resp.json()["availableTools"]
        assert harness.pool.released == [(harness.pool.last_instance, False)]

    async def test_stateless_execute_browser_failure_discards_instance(self):
        def broken_page():
            page = FakePage()
            page.goto_error = PlaywrightError("net::ERR_CONNECTION_REFUSED")
            return page

        h = _Harness(page_factory=broken_page)
        async with h.client() as client:
            resp = await client.post(
                "/api/execute", json={"url": "https://example.com", "toolName": "browser_get_page_content"}
            )
        assert resp.status_code == 500
        assert h.pool.released == [(h.pool.last_instance, True)]


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class TestDiscover:
    async def test_tool_set_read_fresh(self):
        declared = {"searchProducts": {"description": "Search", "handler": _search}}
        h = _Harness(page_factory=_shop_page_factory(declared))
        async with h.client() as client:
            first = (await client.post("/api/discover", json={"url": "https://shop.example.com"})).json()
            declared["addToCart"] = {"description": "Add", "handler": _add_to_cart}
            second = (await client.post("/api/discover", json={"url": "https://shop.example.com"})).json()
        assert first["hasWebMCP"] is True
        assert [t["name"] for t in first["tools"]] == ["searchProducts"]
        assert [t["name"] for t in second["tools"]] == ["searchProducts", "addToCart"]
        assert second["toolCount"] == 2
        assert h.pool.active_count == 0

    async def test_page_without_tools(self, harness):
        async with harness.client() as client:
            body = (await client.post("/api/discover", json={"url": "https://example.com"})).json()
        assert body["hasWebMCP"] is False
        assert body["title"] == "Example Domain"
        assert body["toolCount"] == len(body["tools"]) > 0

    @pytest.mark.parametrize(
        "url",
        [
            "http://127.0.0.1:8080/admin",
            "http://169.254.169.254/",
            "file:///etc/passwd",
            "http://10.1.2.3/",
            "http://127.1/",
            "http://169.254.43518/latest/meta-data",
        ],
    )
    async def test_blocked_destinations(self, harness, url):
        async with harness.client() as client:
            resp = await client.post("/api/discover", json={"url": url})
        assert resp.status_code == 403
        assert resp.json()["error"] == "URL blocked by policy"
        assert harness.pool.last_instance is None

    async def test_name_resolving_inside_blocked(self, harness, monkeypatch):
        async def resolve(hostname: str) -> list[str]:
            return ["127.0.0.1"]

        monkeypatch.setattr("webmcp_broker.destination_guard._resolve_dns", resolve)
        async with harness.client() as client:
            resp = await client.post("/api/discover", json={"url": "http://127.0.0.1.nip.io/"})
        assert resp.status_code == 403
        assert resp.json()["reason"].startswith("DNS rebinding blocked")
        assert harness.pool.last_instance is None


# ---------------------------------------------------------------------------
# Security chain
# ---------------------------------------------------------------------------


class TestSecurityChain:
    async def test_missing_key_401(self):
        h = _Harness(BrokerConfig(api_key="k-1"))
        async with h.client() as client:
            resp = await client.post("/api/discover", json={"url": "https://example.com"})
        assert resp.status_code == 401
        assert h.pool.last_instance is None

    async def test_valid_key(self):
        h = _Harness(BrokerConfig(api_key="k-1"))
        async with h.client(**{"X-API-Key": "k-1"}) as client:
            resp = await client.post("/api/discover", json={"url": "https://example.com"})
        assert resp.status_code == 200

    async def test_viewer_cannot_click(self):
        h = _Harness(BrokerConfig(api_key_roles={"viewer_k": "viewer", "admin_k": "admin"}, rbac_enabled=True))
        async with h.client(**{"X-API-Key": "admin_k"}) as admin:
            sid = (await admin.post("/api/sessions", json={"url": "https://example.com"})).json()["sessionId"]
        async with h.client(**{"X-API-Key": "viewer_k"}) as viewer:
            denied = await viewer.post(
                f"/api/sessions/{sid}/tools/browser_click/call", json={"input": {"selector": "a"}}
            )
            allowed = await viewer.post(f"/api/sessions/{sid}/tools/browser_screenshot/call", json={})
        assert denied.status_code == 403
        assert denied.json()["reason"] == "Insufficient permissions: tool 'browser_click' not allowed for viewer role"
        assert allowed.status_code == 200

    async def test_user_cannot_manage_recording(self):
        h = _Harness(BrokerConfig(api_key="user_k", rbac_enabled=True))
        async with h.client(**{"X-API-Key": "user_k"}) as client:
            sid = (await client.post("/api/sessions", json={"url": "https://example.com"})).json()["sessionId"]
            resp = await client.post(f"/api/sessions/{sid}/recording", json={"enabled": True})
        assert resp.status_code == 403

    async def test_audit_trail(self):
        h = _Harness(BrokerConfig(api_key="k-1", audit_level=AuditLevel.DETAILED))
        async with h.client(**{"X-API-Key": "k-1"}) as client:
            sid = (await client.post("/api/sessions", json={"url": "https://example.com"})).json()["sessionId"]
            await client.post(f"/api/sessions/{sid}/tools/browser_click/call", json={"input": {"selector": "a"}})
        await h.broker.auditor.flush()
        actions = [(e["action"], e["path"]) for e in h.sink.entries]
        assert actions == [
            ("REQUEST", "/api/sessions"),
            ("RESPONSE", "/api/sessions"),
            ("REQUEST", f"/api/sessions/{sid}/tools/browser_click/call"),
            ("RESPONSE", f"/api/sessions/{sid}/tools/browser_click/call"),
        ]
        last = h.sink.entries[-1]
        assert last["statusCode"] == 200
        assert last["metadata"]["toolName"] == "browser_click"
        assert all("k-1" not in str(e) for e in h.sink.entries)
