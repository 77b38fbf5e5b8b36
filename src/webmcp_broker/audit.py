# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Auditor — buffered, fire-and-forget request/response audit trail.

Every audited request produces two entries (``REQUEST`` on entry,
``RESPONSE`` on completion). Entries are logged immediately, buffered, and
shipped to the configured sink in batches: on a fixed interval, or as soon
as the buffer reaches the batch size. ``record()`` never blocks and never
raises; sink failures are logged and the batch is dropped.

Caller identity is stored as a non-reversible fingerprint
(``key_`` + SHA3-256 prefix), never the credential itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .config import AuditLevel

if TYPE_CHECKING:
    import httpx

    from .redaction import Redactor

logger = logging.getLogger(__name__)

_SESSION_PATH_RE = re.compile(r"/sessions/([^/]+)")
_TOOL_PATH_RE = re.compile(r"/tools/([^/]+)")

# Hard cap on buffered entries while a slow sink catches up.
_MAX_BUFFER_FACTOR = 50

_FIELD_NAMES = {
    "correlation_id": "correlationId",
    "session_id": "sessionId",
    "tool_name": "toolName",
    "client_ip": "userIp",
    "key_fingerprint": "apiKeyHash",
    "status_code": "statusCode",
    "duration_ms": "durationMs",
}


def fingerprint(credential: str) -> str:
    """Stable, non-reversible identifier for *credential* (``key_xxxxxxxx``)."""
    if not credential:
        return "none"
    return "key_" + hashlib.sha3_256(credential.encode("utf-8")).hexdigest()[:8]


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def extract_path_ids(path: str) -> tuple[str | None, str | None]:
    """Return ``(session_id, tool_name)`` embedded in a route path."""
    session = _SESSION_PATH_RE.search(path)
    tool = _TOOL_PATH_RE.search(path)
    return (session.group(1) if session else None, tool.group(1) if tool else None)


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class AuditEntry:
    """One half of a request/response audit pair."""

    correlation_id: str
    action: str  # "REQUEST" | "RESPONSE"
    method: str
    path: str
    key_fingerprint: str = "none"
    client_ip: str = "unknown"
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat(timespec="milliseconds"))
    session_id: str | None = None
    tool_name: str | None = None
    url: str | None = None
    status_code: int | None = None
    duration_ms: int | None = None
    error: str | None = None
    metadata: dict[str, Any] | None = None

    def completion(
        self,
        *,
        status_code: int,
        duration_ms: int,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Derive the ``RESPONSE`` entry for this request."""
        return AuditEntry(
            correlation_id=self.correlation_id,
            action="RESPONSE",
            method=self.method,
            path=self.path,
            key_fingerprint=self.key_fingerprint,
            client_ip=self.client_ip,
            session_id=self.session_id,
            tool_name=self.tool_name,
            url=self.url,
            status_code=status_code,
            duration_ms=duration_ms,
            error=error,
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        """Sink payload: camelCase keys, unset fields omitted."""
        return {_FIELD_NAMES.get(k, k): v for k, v in asdict(self).items() if v is not None}

    def log_line(self) -> str:
        parts = [f"[AUDIT] {self.timestamp} {self.action} {self.method} {self.path}"]
        if self.session_id:
            parts.append(f"session={self.session_id}")
        if self.tool_name:
            parts.append(f"tool={self.tool_name}")
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.duration_ms is not None:
            parts.append(f"duration={self.duration_ms}ms")
        if self.error:
            parts.append(f"error={self.error}")
        return " ".join(parts)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


@runtime_checkable
class AuditSink(Protocol):
    """Destination for flushed audit batches."""

    async def write(self, batch: list[dict[str, Any]]) -> None: ...

    async def aclose(self) -> None: ...


class HttpSink:
    """POST each batch as a JSON array to an external collector."""

    def __init__(self, endpoint: str, *, client: httpx.AsyncClient | None = None, timeout: float = 5.0) -> None:
        import httpx

        self.endpoint = endpoint
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def write(self, batch: list[dict[str, Any]]) -> None:
        response = await self._client.post(self.endpoint, json=batch)
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class ListSink:
    """In-memory sink for testing. Captures every flushed entry."""

    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []
        self.batches = 0

    async def write(self, batch: list[dict[str, Any]]) -> None:
        self.entries.extend(batch)
        self.batches += 1

    async def aclose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Auditor
# ---------------------------------------------------------------------------


class AuditMeta:
    """Approximate auditor counters (diagnostics, not accounting)."""

    __slots__ = ("recorded", "flushed", "dropped", "failed_flushes")

    def __init__(self) -> None:
        self.recorded = 0
        self.flushed = 0
        self.dropped = 0
        self.failed_flushes = 0

    def snapshot(self) -> dict[str, int]:
        return {
            "recorded": self.recorded,
            "flushed": self.flushed,
            "dropped": self.dropped,
            "failedFlushes": self.failed_flushes,
        }


class Auditor:
    """Buffered audit recorder with interval and size-triggered flushing."""

    def __init__(
        self,
        level: AuditLevel = AuditLevel.BASIC,
        *,
        sink: AuditSink | None = None,
        flush_interval: float = 10.0,
        batch_size: int = 100,
        redactor: Redactor | None = None,
    ) -> None:
        self.level = level
        self.sink = sink
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.meta = AuditMeta()
        self._redactor = redactor
        self._buffer: list[dict[str, Any]] = []
        self._flush_task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._closed = False

    @property
    def enabled(self) -> bool:
        return self.level != AuditLevel.NONE

    @property
    def captures_outcome(self) -> bool:
        """True when tool name, success flag and page change are captured."""
        return self.level in (AuditLevel.DETAILED, AuditLevel.FULL)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def start(self) -> None:
        """Start the periodic flush loop. Requires a running event loop."""
        if self._flush_task is None and self.enabled:
            self._flush_task = asyncio.get_running_loop().create_task(self._periodic_flush_loop())

    def record(self, entry: AuditEntry) -> None:
        """Log and buffer *entry*. Never raises."""
        if not self.enabled or self._closed:
            return
        try:
            logger.info("%s", entry.log_line())
            payload = entry.to_dict()
            if self._redactor is not None:
                payload = self._redactor.redact(payload)
            if len(self._buffer) >= self.batch_size * _MAX_BUFFER_FACTOR:
                self.meta.dropped += 1
                return
            self._buffer.append(payload)
            self.meta.recorded += 1
            if len(self._buffer) >= self.batch_size:
                self._schedule_flush()
        except Exception:
            logger.debug("Audit record failed", exc_info=True)

    def _schedule_flush(self) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self.flush())
        except RuntimeError:
            # No running loop; the next periodic or final flush picks it up
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _periodic_flush_loop(self) -> None:
        try:
            while not self._closed:
                await asyncio.sleep(self.flush_interval)
                await self.flush()
        except asyncio.CancelledError:
            pass

    async def flush(self) -> int:
        """Ship buffered entries to the sink. Returns the batch size. Never raises."""
        if not self._buffer:
            return 0
        batch, self._buffer = self._buffer, []
        if self.sink is None:
            self.meta.flushed += len(batch)
            return len(batch)
        try:
            await self.sink.write(batch)
            self.meta.flushed += len(batch)
        except Exception as e:
            self.meta.failed_flushes += 1
            logger.warning("Audit flush of %d entries failed: %s", len(batch), type(e).__name__)
        return len(batch)

    async def aclose(self) -> None:
        """Stop the flush loop, drain the buffer, close the sink."""
        self._closed = True
        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self.flush()
        if self.sink is not None:
            with contextlib.suppress(Exception):
                await self.sink.aclose()
