# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""BrowserInstance — one Chromium process with one isolated context and page.

The unit of pooling. An instance is owned by the pool while idle and by
exactly one session or stateless request while checked out.

Every browsing context the instance creates is hardened the same way:
service workers blocked (they would bypass context routing), no
permissions, no downloads, JS dialogs auto-dismissed, the redaction
stylesheet injected into every document, and (when egress control is on)
the Destination Guard installed at the network layer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .destination_guard import install_egress_guard
from .errors import BrowserError
from .redaction import REDACTION_CSS

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Dialog, Page, Playwright

    from .destination_guard import DestinationGuard

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "WebMCP-Broker/1.0 (+https://webmachinelearning.github.io/webmcp/)"
DEFAULT_VIEWPORT = {"width": 1280, "height": 720}
DEFAULT_LOCALE = "en-US"

# Re-applies the redaction stylesheet on every document, including after navigation.
_REDACTION_INIT_SCRIPT = (
    "(() => {"
    " const css = %s;"
    " const apply = () => {"
    "  if (document.getElementById('__webmcp_redaction')) return;"
    "  const s = document.createElement('style');"
    "  s.id = '__webmcp_redaction'; s.textContent = css;"
    "  (document.head || document.documentElement).appendChild(s);"
    " };"
    " if (document.readyState === 'loading') {"
    "  document.addEventListener('DOMContentLoaded', apply, { once: true });"
    " } else { apply(); }"
    "})();"
) % json.dumps(REDACTION_CSS)

_BROWSER_DEAD_PATTERNS = (
    "target closed",
    "target page",
    "browser has been closed",
    "connection closed",
    "browser disconnected",
)


def is_browser_dead_error(exc: BaseException) -> bool:
    """Detect browser crash/disconnect errors."""
    msg = str(exc).lower()
    return any(p in msg for p in _BROWSER_DEAD_PATTERNS)


@dataclass(frozen=True, slots=True)
class BrowserOptions:
    """Launch and context options shared by every pooled instance."""

    headless: bool = True
    locale: str = DEFAULT_LOCALE
    viewport_width: int = DEFAULT_VIEWPORT["width"]
    viewport_height: int = DEFAULT_VIEWPORT["height"]
    user_agent: str = DEFAULT_USER_AGENT
    egress_control: bool = True


# ── Chromium auto-install ─────────────────────────────────────────

_chromium_install_attempted = False
_AUTO_INSTALL_TIMEOUT = 300  # seconds; Chromium is a ~140MB download


async def _auto_install_chromium() -> bool:
    """Run ``playwright install chromium`` once per process.

    Returns True if install succeeded, False otherwise.
    """
    global _chromium_install_attempted  # noqa: PLW0603
    if _chromium_install_attempted:
        return False
    _chromium_install_attempted = True

    logger.info("Chromium not found — running 'playwright install chromium' …")
    try:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "playwright",
            "install",
            "chromium",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_AUTO_INSTALL_TIMEOUT)
        if proc.returncode == 0:
            logger.info("Chromium installed successfully")
            return True
        logger.warning(
            "playwright install chromium failed (rc=%d): %s",
            proc.returncode,
            stderr.decode(errors="replace")[:500],
        )
        return False
    except TimeoutError:
        logger.warning("Chromium install timed out after %ds", _AUTO_INSTALL_TIMEOUT)
        return False
    except Exception:
        logger.warning("Chromium auto-install failed", exc_info=True)
        return False


def chromium_launch_args(options: BrowserOptions) -> list[str]:
    """Return hardened Chromium launch arguments for container deployment."""
    return [
        f"--lang={options.locale}",
        "--disable-dev-shm-usage",  # /tmp instead of the small /dev/shm
        "--disable-extensions",
        "--disable-gpu",
        "--disable-software-rasterizer",
        "--disable-background-networking",
        "--disable-sync",
        "--no-first-run",
        "--force-webrtc-ip-handling-policy=disable_non_proxied_udp",
        "--disable-features=ServiceWorker,WebRtcHideLocalIpsWithMdns",
        "--deny-permission-prompts",
        "--disable-breakpad",
        "--no-pings",
        "--disable-domain-reliability",
        "--disable-component-update",
        "--noerrdialogs",
    ]


# ---------------------------------------------------------------------------
# BrowserInstance
# ---------------------------------------------------------------------------


class BrowserInstance:
    """One owned browser process plus its current context and page."""

    def __init__(self, options: BrowserOptions, *, guard: DestinationGuard | None = None) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.options = options
        self.guard = guard
        self.tainted = False
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._extra_headers: dict[str, str] = {}

    def __repr__(self) -> str:
        return f"BrowserInstance(id={self.id!r}, tainted={self.tainted})"

    @property
    def browser(self) -> Browser:
        if self._browser is None:
            raise BrowserError("Browser instance not launched")
        return self._browser

    @property
    def context(self) -> BrowserContext:
        if self._context is None:
            raise BrowserError("Browser instance has no context")
        return self._context

    @property
    def page(self) -> Page:
        if self._page is None:
            raise BrowserError("Browser instance has no page")
        return self._page

    # ── Lifecycle ────────────────────────────────────────────────────

    async def launch(self, playwright: Playwright) -> None:
        """Launch Chromium and open the first context.

        Auto-installs Chromium on the first 'executable doesn't exist' error.
        """
        args = chromium_launch_args(self.options)
        try:
            self._browser = await playwright.chromium.launch(headless=self.options.headless, args=args)
        except Exception as exc:
            if "executable doesn't exist" in str(exc).lower() and await _auto_install_chromium():
                self._browser = await playwright.chromium.launch(headless=self.options.headless, args=args)
            elif "executable doesn't exist" in str(exc).lower():
                raise BrowserError(
                    "Chromium is not installed and auto-install failed. Please run: playwright install chromium"
                ) from exc
            else:
                raise BrowserError(f"Browser launch failed: {exc}") from exc
        try:
            await self.reset()
        except Exception:
            await self.close()
            raise
        logger.info("Browser instance %s launched (headless=%s)", self.id, self.options.headless)

    async def reset(self) -> None:
        """Replace the context with a fresh one. Cookies and storage are wiped."""
        if self._context is not None:
            with suppress(Exception):
                await self._context.close()
            self._context = None
            self._page = None
        self._extra_headers = {}
        self.tainted = False

        self._context = await self.browser.new_context(
            viewport={"width": self.options.viewport_width, "height": self.options.viewport_height},
            user_agent=self.options.user_agent,
            locale=self.options.locale,
            service_workers="block",
            permissions=[],
            accept_downloads=False,
        )
        self._context.on("dialog", self._on_dialog)
        await self._context.add_init_script(_REDACTION_INIT_SCRIPT)
        if self.options.egress_control and self.guard is not None:
            await install_egress_guard(self._context, self.guard)
        self._page = await self._context.new_page()

    async def close(self) -> None:
        """Close context and browser. Safe to call on a crashed browser."""
        if self._context is not None:
            with suppress(Exception):
                await self._context.close()
        if self._browser is not None:
            with suppress(Exception):
                await self._browser.close()
        self._context = None
        self._page = None
        self._browser = None
        logger.debug("Browser instance %s closed", self.id)

    async def is_alive(self, timeout: float = 5.0) -> bool:
        """Two-stage health check: connection, then page responsiveness."""
        if self._browser is None or not self._browser.is_connected():
            return False
        if self._page is None or self._page.is_closed():
            return False
        try:
            await asyncio.wait_for(self._page.evaluate("1"), timeout=timeout)
            return True
        except Exception:
            return False

    # ── Per-session customisation ────────────────────────────────────

    async def apply_options(self, *, viewport: dict | None = None, user_agent: str | None = None) -> None:
        """Apply per-session viewport / user agent to the current page."""
        if viewport:
            await self.page.set_viewport_size(
                {
                    "width": int(viewport.get("width", self.options.viewport_width)),
                    "height": int(viewport.get("height", self.options.viewport_height)),
                }
            )
        if user_agent:
            await self.set_extra_headers({"User-Agent": user_agent})

    async def set_extra_headers(self, headers: dict[str, str]) -> None:
        """Merge *headers* into every request of the context."""
        self._extra_headers.update({str(k): str(v) for k, v in headers.items()})
        await self.context.set_extra_http_headers(self._extra_headers)

    async def screenshot(self, *, full_page: bool = False, image_type: str = "png") -> bytes:
        """Capture the page with the redaction stylesheet applied."""
        with suppress(Exception):
            await self.page.add_style_tag(content=REDACTION_CSS)
        return await self.page.screenshot(full_page=full_page, type=image_type)

    # ── Event handlers ───────────────────────────────────────────────

    async def _on_dialog(self, dialog: Dialog) -> None:
        logger.debug("Auto-dismissing %s dialog", dialog.type)
        with suppress(Exception):
            await dialog.dismiss()
