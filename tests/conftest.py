# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import webmcp_broker  # noqa: F401
except ImportError:
    raise ImportError("webmcp_broker is not installed. Run: pip install -e '.[test]'") from None

import pytest


@pytest.fixture(autouse=True)
def _block_real_playwright(request, monkeypatch):
    """Safety net: prevent real Chromium launches in unit tests.

    Tests that need a pool should patch ``webmcp_broker.browser_pool.async_playwright``
    (or ``BrowserInstance``) explicitly; that patch takes priority over this
    fixture. Tests that forget will get a clear error instead of silently
    trying to start a browser.
    """
    if "allow_real_playwright" in request.keywords:
        return

    def _no_real_playwright():
        raise RuntimeError(
            "Test tried to start real Playwright. Patch 'webmcp_broker.browser_pool.async_playwright' in your test."
        )

    monkeypatch.setattr("webmcp_broker.browser_pool.async_playwright", _no_real_playwright)


@pytest.fixture
def guard():
    from webmcp_broker.destination_guard import DestinationGuard

    return DestinationGuard()


@pytest.fixture
def redactor():
    from webmcp_broker.redaction import Redactor

    return Redactor()


@pytest.fixture(autouse=True)
def _offline_dns(monkeypatch):
    """Destination checks resolve hostnames; answer with a public address so no test touches the network."""

    async def _resolve(hostname: str) -> list[str]:
        return ["93.184.216.34"]

    monkeypatch.setattr("webmcp_broker.destination_guard._resolve_dns", _resolve)
