# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""BrowserPool — bounded set of browser processes, one isolated context each.

Capacity is gated by ``asyncio.Semaphore`` (CPython FIFO-guaranteed): at
most ``max_instances`` instances are checked out at once, and the next
caller waits up to ``acquire_timeout`` seconds before receiving
``PoolExhaustedError``. Launches are never retried here; retry policy
belongs to the caller.

A released instance that is healthy gets a fresh context and rejoins the
idle set. A tainted (timed-out), crashed or unresettable instance is
closed and its slot freed.

Lifecycle follows the ``AsyncContextManager`` pattern::

    async with BrowserPool(max_instances=5) as pool:
        async with pool.instance() as inst:
            await inst.page.goto("https://example.com")
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from types import TracebackType

from playwright.async_api import Playwright, async_playwright

from .browser_instance import BrowserInstance, BrowserOptions
from .errors import ADMISSION_ERRORS, BrowserError, PoolExhaustedError

logger = logging.getLogger(__name__)

# Defaults
_DEFAULT_MAX_INSTANCES = 5
_ACQUIRE_TIMEOUT = 30.0


# ---------------------------------------------------------------------------
# Health snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PoolHealth:
    """Immutable snapshot of pool state for monitoring."""

    active: int
    idle: int
    max_instances: int
    waiting: int

    @property
    def size(self) -> int:
        """Live browser processes (checked out + idle)."""
        return self.active + self.idle

    def to_dict(self) -> dict[str, int]:
        return {
            "active": self.active,
            "idle": self.idle,
            "maxInstances": self.max_instances,
            "waiting": self.waiting,
        }


# ---------------------------------------------------------------------------
# BrowserPool
# ---------------------------------------------------------------------------


class BrowserPool:
    """Hands out ``BrowserInstance`` objects under a hard concurrency ceiling."""

    def __init__(
        self,
        *,
        max_instances: int = _DEFAULT_MAX_INSTANCES,
        acquire_timeout: float = _ACQUIRE_TIMEOUT,
        options: BrowserOptions | None = None,
        guard=None,
    ) -> None:
        if max_instances < 1:
            raise ValueError("max_instances must be >= 1")
        self._max_instances = max_instances
        self._acquire_timeout = acquire_timeout
        self._options = options or BrowserOptions()
        self._guard = guard

        self._playwright: Playwright | None = None
        self._semaphore = asyncio.Semaphore(max_instances)
        self._idle: list[BrowserInstance] = []
        self._checked_out: dict[str, BrowserInstance] = {}
        self._waiting = 0
        self._closed = False

    # ── AsyncContextManager ──────────────────────────────────────────

    async def __aenter__(self) -> BrowserPool:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close_all()

    async def start(self) -> None:
        """Start the Playwright driver. Browsers launch lazily on acquire."""
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        self._closed = False
        logger.info(
            "BrowserPool started (max_instances=%d, acquire_timeout=%.0fs)",
            self._max_instances,
            self._acquire_timeout,
        )

    # ── Acquire / release ────────────────────────────────────────────

    async def acquire(self) -> BrowserInstance:
        """Check out an instance, launching one if none is idle.

        Raises:
            PoolExhaustedError: no slot freed up within ``acquire_timeout``.
            BrowserError: the pool is closed or the browser failed to launch.
        """
        if self._closed:
            raise BrowserError("Browser pool is shut down")

        started = time.monotonic()
        self._waiting += 1
        try:
            async with asyncio.timeout(self._acquire_timeout):
                await self._semaphore.acquire()
        except TimeoutError:
            waited = time.monotonic() - started
            logger.warning("Pool exhausted after %.1fs (max=%d)", waited, self._max_instances)
            raise PoolExhaustedError(
                "Browser pool exhausted", max_instances=self._max_instances, waited=waited
            ) from None
        finally:
            self._waiting -= 1

        try:
            instance = await self._take_idle() or await self._launch()
        except BaseException:
            self._semaphore.release()
            raise
        self._checked_out[instance.id] = instance
        logger.debug("Pool acquired %s (active=%d)", instance.id, len(self._checked_out))
        return instance

    async def release(self, instance: BrowserInstance, *, discard: bool = False) -> None:
        """Return *instance* to the pool. Releasing twice is a logged no-op.

        The instance is closed instead of reused when *discard* is set, when it
        is tainted, when it no longer responds, or when its context reset fails.
        """
        if self._checked_out.pop(instance.id, None) is None:
            logger.warning("Pool release: instance '%s' not checked out (no-op)", instance.id)
            return
        try:
            reusable = not (discard or instance.tainted or self._closed) and await instance.is_alive()
            if reusable:
                try:
                    await instance.reset()
                except Exception as e:
                    logger.warning("Context reset failed for %s, discarding: %s", instance.id, e)
                    reusable = False
            if reusable:
                self._idle.append(instance)
                logger.debug("Pool reclaimed %s (idle=%d)", instance.id, len(self._idle))
            else:
                await instance.close()
                logger.info("Pool discarded %s (tainted=%s)", instance.id, instance.tainted)
        finally:
            self._semaphore.release()

    @asynccontextmanager
    async def instance(self):
        """Acquire an instance for the duration of one stateless request.

        Admission errors hand the instance back for reset and reuse; any other
        failure discards it.
        """
        inst = await self.acquire()
        try:
            yield inst
        except BaseException as e:
            await self.release(inst, discard=not isinstance(e, ADMISSION_ERRORS))
            raise
        else:
            await self.release(inst)

    # ── Monitoring ───────────────────────────────────────────────────

    def health(self) -> PoolHealth:
        """Return a snapshot of pool health."""
        return PoolHealth(
            active=len(self._checked_out),
            idle=len(self._idle),
            max_instances=self._max_instances,
            waiting=self._waiting,
        )

    @property
    def active_count(self) -> int:
        return len(self._checked_out)

    @property
    def size(self) -> int:
        return len(self._checked_out) + len(self._idle)

    # ── Internal ─────────────────────────────────────────────────────

    async def _take_idle(self) -> BrowserInstance | None:
        """Pop a responsive idle instance, closing dead ones along the way."""
        while self._idle:
            candidate = self._idle.pop()
            if await candidate.is_alive():
                return candidate
            logger.info("Idle instance %s is dead, discarding", candidate.id)
            await candidate.close()
        return None

    async def _launch(self) -> BrowserInstance:
        if self._playwright is None:
            await self.start()
        instance = BrowserInstance(self._options, guard=self._guard)
        await instance.launch(self._playwright)
        return instance

    # ── Shutdown ─────────────────────────────────────────────────────

    async def close_all(self) -> None:
        """Terminate every instance and the Playwright driver."""
        self._closed = True
        instances = [*self._idle, *self._checked_out.values()]
        self._idle.clear()
        self._checked_out.clear()
        for inst in instances:
            with suppress(Exception):
                await inst.close()
        if self._playwright is not None:
            with suppress(Exception):
                await self._playwright.stop()
            self._playwright = None
        logger.info("BrowserPool shut down (%d instances closed)", len(instances))
