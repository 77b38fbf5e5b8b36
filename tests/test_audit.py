# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for the Auditor — entries, batching, sinks, failure isolation."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from webmcp_broker.audit import (
    AuditEntry,
    Auditor,
    HttpSink,
    ListSink,
    extract_path_ids,
    fingerprint,
    new_correlation_id,
)
from webmcp_broker.config import AuditLevel
from webmcp_broker.redaction import Redactor


def _entry(**overrides) -> AuditEntry:
    fields = {"correlation_id": new_correlation_id(), "action": "REQUEST", "method": "POST", "path": "/api/sessions"}
    fields.update(overrides)
    return AuditEntry(**fields)


class _FailingSink:
    def __init__(self) -> None:
        self.calls = 0

    async def write(self, batch):
        self.calls += 1
        raise ConnectionError("collector down")

    async def aclose(self):
        raise RuntimeError("close failed")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_fingerprint_stable_and_opaque(self):
        fp = fingerprint("sk-live-123")
        assert fp == fingerprint("sk-live-123")
        assert fp.startswith("key_")
        assert len(fp) == 12
        assert "sk-live" not in fp
        assert fp != fingerprint("sk-live-124")

    def test_fingerprint_empty(self):
        assert fingerprint("") == "none"

    def test_correlation_ids_unique(self):
        assert len({new_correlation_id() for _ in range(100)}) == 100

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/api/sessions/abc/tools/searchProducts/call", ("abc", "searchProducts")),
            ("/api/sessions/abc", ("abc", None)),
            ("/api/discover", (None, None)),
        ],
    )
    def test_extract_path_ids(self, path, expected):
        assert extract_path_ids(path) == expected


class TestAuditEntry:
    def test_completion_copies_request_fields(self):
        req = _entry(session_id="s1", tool_name="t", key_fingerprint="key_abcd1234")
        resp = req.completion(status_code=200, duration_ms=12, metadata={"success": True})
        assert resp.action == "RESPONSE"
        assert resp.correlation_id == req.correlation_id
        assert resp.session_id == "s1"
        assert resp.status_code == 200
        assert resp.metadata == {"success": True}

    def test_to_dict_camel_case_and_sparse(self):
        data = _entry(session_id="s1", client_ip="10.1.2.3").to_dict()
        assert data["sessionId"] == "s1"
        assert data["userIp"] == "10.1.2.3"
        assert data["apiKeyHash"] == "none"
        assert "statusCode" not in data
        assert "error" not in data

    def test_log_line(self):
        line = _entry(session_id="s1").completion(status_code=404, duration_ms=3, error="gone").log_line()
        assert line.startswith("[AUDIT] ")
        assert "RESPONSE POST /api/sessions" in line
        assert "status=404" in line
        assert "error=gone" in line


# ---------------------------------------------------------------------------
# Auditor
# ---------------------------------------------------------------------------


class TestAuditor:
    async def test_flush_ships_batch(self):
        sink = ListSink()
        auditor = Auditor(sink=sink, batch_size=10)
        auditor.record(_entry())
        auditor.record(_entry(action="RESPONSE"))
        assert auditor.buffered == 2
        assert await auditor.flush() == 2
        assert [e["action"] for e in sink.entries] == ["REQUEST", "RESPONSE"]
        assert auditor.buffered == 0
        assert auditor.meta.snapshot()["flushed"] == 2

    async def test_batch_size_triggers_flush(self):
        sink = ListSink()
        auditor = Auditor(sink=sink, batch_size=3)
        for _ in range(3):
            auditor.record(_entry())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert sink.batches == 1
        assert len(sink.entries) == 3

    async def test_level_none_records_nothing(self):
        sink = ListSink()
        auditor = Auditor(AuditLevel.NONE, sink=sink)
        assert auditor.enabled is False
        auditor.record(_entry())
        assert auditor.buffered == 0
        await auditor.aclose()
        assert sink.entries == []

    def test_outcome_levels(self):
        assert Auditor(AuditLevel.BASIC).captures_outcome is False
        assert Auditor(AuditLevel.DETAILED).captures_outcome is True
        assert Auditor(AuditLevel.FULL).captures_outcome is True

    async def test_failing_sink_never_raises(self, caplog):
        sink = _FailingSink()
        auditor = Auditor(sink=sink, batch_size=100)
        auditor.record(_entry())
        assert await auditor.flush() == 1
        assert auditor.meta.failed_flushes == 1
        assert "Audit flush of 1 entries failed" in caplog.text
        await auditor.aclose()

    def test_record_without_loop_does_not_raise(self):
        auditor = Auditor(sink=ListSink(), batch_size=1)
        auditor.record(_entry())
        assert auditor.buffered == 1

    def test_buffer_cap_drops(self):
        auditor = Auditor(sink=None, batch_size=1)
        for _ in range(60):
            auditor.record(_entry())
        assert auditor.buffered == 50
        assert auditor.meta.dropped == 10

    async def test_payload_redacted(self):
        sink = ListSink()
        auditor = Auditor(sink=sink, redactor=Redactor())
        auditor.record(_entry(url="https://example.com/?email=jane@example.com", metadata={"password": "x"}))
        await auditor.flush()
        entry = sink.entries[0]
        assert "jane@example.com" not in entry["url"]
        assert entry["metadata"] == {"password": "[REDACTED]"}

    async def test_aclose_drains_and_stops(self):
        sink = ListSink()
        auditor = Auditor(sink=sink, flush_interval=60)
        auditor.start()
        auditor.record(_entry())
        await auditor.aclose()
        assert len(sink.entries) == 1
        auditor.record(_entry())
        assert auditor.buffered == 0

    async def test_periodic_flush(self):
        sink = ListSink()
        auditor = Auditor(sink=sink, flush_interval=0.01)
        auditor.start()
        auditor.record(_entry())
        await asyncio.sleep(0.05)
        assert len(sink.entries) == 1
        await auditor.aclose()


class TestHttpSink:
    async def test_posts_json_array(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(204)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sink = HttpSink("https://audit.example.com/ingest", client=client)
            await sink.write([{"action": "REQUEST"}])
            await sink.aclose()
            assert not client.is_closed

        assert seen == [("/ingest", [{"action": "REQUEST"}])]

    async def test_error_status_counts_as_failed_flush(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=transport) as client:
            auditor = Auditor(sink=HttpSink("https://audit.example.com/ingest", client=client))
            auditor.record(_entry())
            await auditor.flush()
        assert auditor.meta.failed_flushes == 1
