# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""SessionStore — maps opaque session ids to live browser sessions.

Each session owns exactly one ``BrowserInstance`` from the pool until it
reaches a terminal state::

    CREATED ──navigate ok──▶ ACTIVE ──┬── ttl elapsed ──▶ EXPIRED
                                      └── close() ──────▶ CLOSED

TTL is absolute from creation (never sliding) and clamped to
[``MIN_TTL_MINUTES``, ``MAX_TTL_MINUTES``]. Expiry is enforced lazily on
every lookup and periodically by a background sweeper, so a caller never
operates on a logically expired session.

Removal from the session map is the single point of ownership transfer:
whoever pops the entry releases the instance, so close/sweep races never
double-release. Each session carries an ``asyncio.Lock`` that route
handlers hold (through ``Session.exclusive``) while driving its page.
Close and expiry mark the session ended, then take the same lock before
releasing, so an instance is never released under an in-flight operation
and a handler that was queued on the lock gets "not found" instead of a
page that now belongs to someone else.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from .errors import SessionNotFoundError

if TYPE_CHECKING:
    from .browser_instance import BrowserInstance
    from .browser_pool import BrowserPool

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_TTL_MINUTES = 15
MIN_TTL_MINUTES = 1
MAX_TTL_MINUTES = 60
_SWEEP_INTERVAL = 60.0
_MAX_RECORDED_ACTIONS = 1000


def clamp_ttl(ttl_minutes: Any) -> int:
    """Clamp a caller-supplied TTL into [1, 60] minutes; junk means the default."""
    if ttl_minutes is None or isinstance(ttl_minutes, bool):
        return DEFAULT_TTL_MINUTES
    try:
        value = int(float(ttl_minutes))
    except (TypeError, ValueError):
        return DEFAULT_TTL_MINUTES
    return max(MIN_TTL_MINUTES, min(MAX_TTL_MINUTES, value))


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SessionState(StrEnum):
    CREATED = "created"
    ACTIVE = "active"
    EXPIRED = "expired"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ActionRecord:
    """One executed action in a session's recording."""

    tool_name: str
    input: dict[str, Any]
    success: bool
    duration_ms: int
    url: str
    error: str | None = None
    timestamp: str = field(default_factory=lambda: _iso(time.time()))

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "timestamp": self.timestamp,
            "toolName": self.tool_name,
            "input": self.input,
            "success": self.success,
            "durationMs": self.duration_ms,
            "url": self.url,
        }
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass(slots=True)
class Session:
    """Mutable state of one live session."""

    id: str
    instance: BrowserInstance
    url: str
    ttl_minutes: int
    created_at: float  # wall clock, for display
    expires_at: float  # wall clock, for display
    deadline: float  # store clock, authoritative
    recording_enabled: bool = False
    state: SessionState = SessionState.CREATED
    title: str = ""
    call_count: int = 0
    has_webmcp: bool = False
    tool_count: int = 0
    recording: list[ActionRecord] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def page(self):
        return self.instance.page

    @property
    def ended(self) -> bool:
        return self.state in (SessionState.EXPIRED, SessionState.CLOSED)

    def activate(self) -> None:
        if self.state == SessionState.CREATED:
            self.state = SessionState.ACTIVE

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[Session]:
        """Hold the session lock while driving its page.

        Raises:
            SessionNotFoundError: the session ended while the caller waited.
        """
        async with self.lock:
            if self.ended:
                raise SessionNotFoundError(self.id)
            yield self

    def status(self, now: float) -> dict[str, Any]:
        """Caller-facing status snapshot."""
        return {
            "sessionId": self.id,
            "status": self.state.value,
            "url": self.url,
            "title": self.title,
            "createdAt": _iso(self.created_at),
            "expiresAt": _iso(self.expires_at),
            "remainingSeconds": max(0, int(self.deadline - now)),
            "callCount": self.call_count,
            "hasWebMCP": self.has_webmcp,
            "toolCount": self.tool_count,
            "recordingEnabled": self.recording_enabled,
        }


# ---------------------------------------------------------------------------
# SessionStore
# ---------------------------------------------------------------------------


class SessionStore:
    """Registry of live sessions with TTL enforcement."""

    def __init__(
        self,
        pool: BrowserPool,
        *,
        default_recording: bool = False,
        sweep_interval: float = _SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pool = pool
        self._default_recording = default_recording
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._sweeper_task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()

    # ── Lifecycle ────────────────────────────────────────────────────

    def create(self, instance: BrowserInstance, url: str, ttl_minutes: Any = None) -> Session:
        """Register a new session owning *instance*. Starts in ``CREATED``."""
        ttl = clamp_ttl(ttl_minutes)
        now_wall = time.time()
        session = Session(
            id=str(uuid.uuid4()),
            instance=instance,
            url=url,
            ttl_minutes=ttl,
            created_at=now_wall,
            expires_at=now_wall + ttl * 60,
            deadline=self._clock() + ttl * 60,
            recording_enabled=self._default_recording,
        )
        self._sessions[session.id] = session
        logger.info("Session created: %s (ttl=%dm, active=%d)", session.id, ttl, len(self._sessions))
        return session

    async def get(self, session_id: str) -> Session:
        """Return a live session.

        Raises:
            SessionNotFoundError: unknown, closed, or expired (expired ones are reaped here).
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if self._clock() >= session.deadline:
            await self._remove(session_id, SessionState.EXPIRED)
            raise SessionNotFoundError(session_id)
        return session

    async def close(self, session_id: str) -> bool:
        """Close a session and release its instance.

        Idempotent: returns False (never raises) when the session is already
        gone, closed or expired.
        """
        return await self._remove(session_id, SessionState.CLOSED)

    async def close_all(self) -> None:
        """Close every session and stop the sweeper. Used at shutdown."""
        await self.stop()
        for sid in list(self._sessions):
            await self._remove(sid, SessionState.CLOSED)

    # ── Recording ────────────────────────────────────────────────────

    def record_action(self, session_id: str, record: ActionRecord) -> None:
        """Append to the session's recording if enabled. Never raises."""
        session = self._sessions.get(session_id)
        if session is None or not session.recording_enabled:
            return
        session.recording.append(record)
        if len(session.recording) > _MAX_RECORDED_ACTIONS:
            del session.recording[0]

    async def set_recording(self, session_id: str, enabled: bool) -> Session:
        session = await self.get(session_id)
        session.recording_enabled = enabled
        logger.info("Session %s recording %s", session_id, "enabled" if enabled else "disabled")
        return session

    async def get_recording(self, session_id: str) -> list[ActionRecord]:
        session = await self.get(session_id)
        return list(session.recording)

    # ── Monitoring ───────────────────────────────────────────────────

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def now(self) -> float:
        return self._clock()

    # ── Sweeper ──────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the background expiry sweeper."""
        self._shutdown_event.clear()
        self._sweeper_task = asyncio.get_running_loop().create_task(self._sweep_loop(), name="webmcp-session-sweeper")
        self._sweeper_task.add_done_callback(self._handle_sweeper_crash)

    async def stop(self) -> None:
        self._shutdown_event.set()
        if self._sweeper_task and not self._sweeper_task.done():
            self._sweeper_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweeper_task
        self._sweeper_task = None

    def _handle_sweeper_crash(self, task: asyncio.Task) -> None:
        """Restart sweeper if it crashed unexpectedly (not cancelled)."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not self._shutdown_event.is_set():
            logger.error("Session sweeper crashed, restarting: %s", exc, exc_info=exc)
            self.start()

    async def _sweep_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                async with asyncio.timeout(self._sweep_interval):
                    await self._shutdown_event.wait()
                    return  # shutdown requested
            except TimeoutError:
                pass  # normal wakeup, run sweep cycle
            await self.sweep()

    async def sweep(self) -> int:
        """Expire every session past its deadline. Returns the count removed."""
        now = self._clock()
        expired = [sid for sid, s in self._sessions.items() if now >= s.deadline]
        removed = 0
        for sid in expired:
            if await self._remove(sid, SessionState.EXPIRED):
                removed += 1
        if removed:
            logger.info("Sweeper expired %d session(s) (active=%d)", removed, len(self._sessions))
        return removed

    # ── Internal ─────────────────────────────────────────────────────

    async def _remove(self, session_id: str, terminal: SessionState) -> bool:
        # Popping is the ownership transfer: only one caller ever gets the entry
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        # Marked before waiting so callers queued on the lock see the session as gone
        session.state = terminal
        async with session.lock:
            try:
                await self._pool.release(session.instance, discard=session.instance.tainted)
            except Exception as e:
                logger.warning("Releasing instance for session %s failed: %s", session_id, e)
        logger.info("Session %s: %s", terminal.value, session_id)
        return True
