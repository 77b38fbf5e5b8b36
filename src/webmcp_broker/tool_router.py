# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tool Router: decides who runs a tool call and normalizes the outcome.

Resolution order for ``execute``:

1. A tool the page currently declares under exactly that name runs in-page.
2. A ``browser_*`` name runs through the automation command table.
3. Anything else is ``ToolNotFoundError`` listing what *is* available.

Declared tools are re-read on every call, never cached. ``page_changed``
compares the page URL immediately before and after the call.

A call that outlives its deadline is reported as a timeout (distinct from
failure) and taints the owning instance: its state can no longer be
trusted, so the pool discards it on release.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from . import automation, page_tools
from .browser_instance import is_browser_dead_error
from .errors import ADMISSION_ERRORS, ToolNotFoundError, ToolTimeoutError
from .page_tools import DiscoveryResult
from .session_store import ActionRecord

if TYPE_CHECKING:
    from playwright.async_api import Page

    from .browser_instance import BrowserInstance
    from .destination_guard import DestinationGuard
    from .redaction import Redactor

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT_MS = 30_000
DEFAULT_EXECUTE_TIMEOUT_MS = 60_000
DEFAULT_NAVIGATION_TIMEOUT_MS = 30_000
MAX_TIMEOUT_MS = 300_000
_COMMAND_DEADLINE_MARGIN_MS = 250


def clamp_timeout(value: Any, default: int) -> int:
    """Caller-supplied timeout in ms, clamped to (0, MAX_TIMEOUT_MS]; junk means *default*."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return default
    return min(int(value), MAX_TIMEOUT_MS)


@dataclass(slots=True)
class ExecutionResult:
    """Normalized outcome of one tool call."""

    tool_name: str
    success: bool
    duration_ms: int
    result: Any = None
    error: str | None = None
    page_changed: bool = False
    new_url: str | None = None
    timed_out: bool = False

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        return 408 if self.timed_out else 500

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"toolName": self.tool_name, "success": self.success}
        if self.success:
            d["result"] = self.result
        else:
            d["error"] = self.error or "Tool execution failed"
        d["executionTimeMs"] = self.duration_ms
        d["pageChanged"] = self.page_changed
        if self.new_url is not None:
            d["newUrl"] = self.new_url
        return d


class ToolRouter:
    """Unifies page-declared tools with the automation fallback."""

    def __init__(self, *, guard: DestinationGuard | None = None, redactor: Redactor | None = None) -> None:
        self._guard = guard
        self._redactor = redactor

    # ── Discovery ────────────────────────────────────────────────────

    async def discover(self, page: Page) -> DiscoveryResult:
        """Declared tools if the page has any, else the automation catalogue."""
        discovery = await page_tools.discover(page)
        if discovery.has_declared_tools:
            return discovery
        return DiscoveryResult(
            has_declared_tools=False,
            tools=tuple(automation.descriptors()),
            server_info=discovery.server_info,
        )

    # ── Navigation ───────────────────────────────────────────────────

    async def navigate(
        self,
        instance: BrowserInstance,
        url: str,
        *,
        timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS,
        wait_for_selector: str | None = None,
    ) -> str:
        """Guarded navigation. Returns the page title.

        Raises:
            DestinationBlockedError: *url* fails the Destination Guard.
            ToolTimeoutError: navigation outlived *timeout_ms*; the instance is tainted.
        """
        if self._guard is not None:
            await self._guard.check_resolved(url)
        page = instance.page
        try:
            async with asyncio.timeout(timeout_ms / 1000):
                await page.goto(url, wait_until="networkidle", timeout=timeout_ms)
                if wait_for_selector:
                    await page.wait_for_selector(wait_for_selector, timeout=timeout_ms)
                return await page.title()
        except TimeoutError:
            instance.tainted = True
            raise ToolTimeoutError(f"Navigation timed out after {timeout_ms}ms", timeout_ms=timeout_ms) from None
        except Exception as e:
            if isinstance(e, PlaywrightTimeoutError):
                instance.tainted = True
                raise ToolTimeoutError(f"Page load timeout: {e}", timeout_ms=timeout_ms) from e
            if is_browser_dead_error(e):
                instance.tainted = True
            raise

    # ── Execution ────────────────────────────────────────────────────

    async def execute(
        self,
        instance: BrowserInstance,
        tool_name: str,
        input: Mapping[str, Any] | None = None,
        *,
        timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS,
        record: Callable[[ActionRecord], None] | None = None,
    ) -> ExecutionResult:
        """Run *tool_name* against the instance's page.

        Execution failures and timeouts come back as an unsuccessful
        ``ExecutionResult``. Admission failures (unknown tool, blocked
        destination, invalid input) raise. Every attempt is passed to
        *record*, whatever its outcome.

        Raises:
            ToolNotFoundError: neither a declared tool nor an automation command.
            DestinationBlockedError: a navigating command was denied by the guard.
            ValidationError: required command input is missing.
        """
        input = dict(input or {})
        page = instance.page
        before_url = _safe_url(page)
        started = time.monotonic()
        result: ExecutionResult | None = None
        admission_error: str | None = None

        try:
            async with asyncio.timeout(timeout_ms / 1000):
                value = await self._dispatch(instance, tool_name, input, timeout_ms)
            result = ExecutionResult(tool_name=tool_name, success=True, duration_ms=0, result=value)
        except TimeoutError:
            instance.tainted = True
            logger.warning("Tool %s timed out after %dms on %s", tool_name, timeout_ms, instance.id)
            result = ExecutionResult(
                tool_name=tool_name,
                success=False,
                duration_ms=0,
                error=f"Tool execution timed out after {timeout_ms}ms",
                timed_out=True,
            )
        except ADMISSION_ERRORS as e:
            admission_error = str(e)
            raise
        except Exception as e:
            if is_browser_dead_error(e):
                instance.tainted = True
            logger.info("Tool %s failed: %s", tool_name, e)
            result = ExecutionResult(tool_name=tool_name, success=False, duration_ms=0, error=str(e))
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            after_url = _safe_url(page)
            if result is not None:
                result.duration_ms = duration_ms
                if after_url is not None and after_url != before_url:
                    result.page_changed = True
                    result.new_url = after_url
                if result.success and self._redactor is not None:
                    result.result = self._redactor.redact(result.result)
            if record is not None:
                record(
                    ActionRecord(
                        tool_name=tool_name,
                        input=self._redactor.redact(input) if self._redactor is not None else input,
                        success=result.success if result is not None else False,
                        duration_ms=duration_ms,
                        url=after_url or "",
                        error=result.error if result is not None else admission_error,
                    )
                )
        return result

    async def _dispatch(
        self, instance: BrowserInstance, tool_name: str, input: dict[str, Any], timeout_ms: int
    ) -> Any:
        page = instance.page
        discovery = await page_tools.discover(page)
        if discovery.find(tool_name) is not None:
            return await page_tools.invoke(page, tool_name, input)

        available = [*discovery.tool_names(), *automation.names()]
        if not automation.is_command_name(tool_name):
            raise ToolNotFoundError(tool_name, available=available)
        ctx = automation.CommandContext(
            context=instance.context,
            guard=self._guard,
            timeout_ms=max(1, timeout_ms - _COMMAND_DEADLINE_MARGIN_MS),
        )
        try:
            return await automation.execute(page, tool_name, input, ctx)
        except ToolNotFoundError:
            raise ToolNotFoundError(tool_name, available=available) from None


def _safe_url(page: Page) -> str | None:
    with suppress(Exception):
        return page.url
    return None
