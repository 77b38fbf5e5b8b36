# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""HTTP route handlers.

Handlers never see rejected requests: authentication, RBAC and the
admission-time Destination Guard have already run in the security
pipeline. What remains here is resource handling: acquire or look up a
browser, drive it through the Tool Router, release it.

Broker exceptions propagate to the app's exception handlers, which turn
them into problem+json responses. Playwright failures on the page are
wrapped so their message survives scrubbing.
"""

from __future__ import annotations

import base64
import functools
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from playwright.async_api import Error as PlaywrightError
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.responses import JSONResponse, Response
from starlette.routing import Mount, Route

from .errors import BrokerError, SessionNotFoundError, ValidationError
from .schemas import (
    AuthenticateRequest,
    CreateSessionRequest,
    DiscoverRequest,
    ExecuteRequest,
    NavigateRequest,
    RecordingRequest,
    ToolCallRequest,
)
from .tool_router import (
    DEFAULT_EXECUTE_TIMEOUT_MS,
    DEFAULT_NAVIGATION_TIMEOUT_MS,
    DEFAULT_TOOL_TIMEOUT_MS,
    clamp_timeout,
)

if TYPE_CHECKING:
    from starlette.requests import Request

    from .audit import Auditor
    from .browser_pool import BrowserPool
    from .config import BrokerConfig
    from .destination_guard import DestinationGuard
    from .page_tools import DiscoveryResult
    from .redaction import Redactor
    from .session_store import Session, SessionStore
    from .tool_router import ToolRouter

logger = logging.getLogger(__name__)

_Body = TypeVar("_Body", bound=BaseModel)

_SCREENSHOT_FORMATS = ("png", "jpeg")


@dataclass(slots=True)
class Broker:
    """Process-scoped services shared by every handler, built once at start-up."""

    config: BrokerConfig
    pool: BrowserPool
    sessions: SessionStore
    router: ToolRouter
    guard: DestinationGuard
    redactor: Redactor
    auditor: Auditor


def _broker(request: Request) -> Broker:
    return request.app.state.broker


async def _parse(request: Request, model: type[_Body]) -> _Body:
    """Validate the JSON body against *model*.

    Raises:
        ValidationError: body is not a JSON object or fails the model.
    """
    raw = await request.body()
    try:
        data = json.loads(raw) if raw else {}
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "body"
        if first.get("type") == "missing":
            raise ValidationError(f"{field} is required") from None
        raise ValidationError(f"{field}: {first.get('msg', 'invalid value')}") from None


def _tools_payload(discovery: DiscoveryResult) -> list[dict[str, Any]]:
    return [t.to_dict() for t in discovery.tools]


async def _session(request: Request) -> Session:
    return await _broker(request).sessions.get(request.path_params["session_id"])


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


async def discover(request: Request) -> JSONResponse:
    """Stateless scan: borrow an instance, navigate, read its tools, give it back."""
    broker = _broker(request)
    body = await _parse(request, DiscoverRequest)
    timeout_ms = clamp_timeout(body.timeout, DEFAULT_NAVIGATION_TIMEOUT_MS)
    started = time.monotonic()

    async with broker.pool.instance() as instance:
        try:
            title = await broker.router.navigate(
                instance, body.url, timeout_ms=timeout_ms, wait_for_selector=body.wait_for_selector
            )
            discovery = await broker.router.discover(instance.page)
        except PlaywrightError as e:
            raise BrokerError(f"Discovery failed: {e}") from e

    return JSONResponse(
        {
            "url": body.url,
            "title": title,
            "hasWebMCP": discovery.has_declared_tools,
            "toolCount": len(discovery.tools),
            "tools": _tools_payload(discovery),
            "serverInfo": discovery.server_info,
            "scanDurationMs": int((time.monotonic() - started) * 1000),
        }
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


async def create_session(request: Request) -> JSONResponse:
    broker = _broker(request)
    body = await _parse(request, CreateSessionRequest)

    instance = await broker.pool.acquire()
    session = broker.sessions.create(instance, body.url, body.ttl_minutes)
    try:
        async with session.exclusive():
            await instance.apply_options(
                viewport=body.viewport.model_dump() if body.viewport else None,
                user_agent=body.user_agent,
            )
            session.title = await broker.router.navigate(instance, body.url)
            discovery = await broker.router.discover(instance.page)
    except BaseException as e:
        await broker.sessions.close(session.id)
        if isinstance(e, PlaywrightError):
            raise BrokerError(f"Failed to create session: {e}") from e
        raise

    session.url = instance.page.url
    session.has_webmcp = discovery.has_declared_tools
    session.tool_count = len(discovery.tools)
    session.activate()
    return JSONResponse(
        {
            "sessionId": session.id,
            "url": session.url,
            "expiresAt": session.status(broker.sessions.now())["expiresAt"],
            "hasWebMCP": discovery.has_declared_tools,
            "tools": _tools_payload(discovery),
        },
        status_code=201,
    )


async def get_session(request: Request) -> JSONResponse:
    broker = _broker(request)
    session = await _session(request)
    async with session.exclusive():
        try:
            session.title = await session.page.title()
            discovery = await broker.router.discover(session.page)
            session.url = session.page.url
            session.has_webmcp = discovery.has_declared_tools
            session.tool_count = len(discovery.tools)
        except PlaywrightError as e:
            # Status stays readable even when the page is wedged
            logger.info("Status refresh failed for session %s: %s", session.id, e)
    return JSONResponse(session.status(broker.sessions.now()))


async def delete_session(request: Request) -> Response:
    session_id = request.path_params["session_id"]
    if not await _broker(request).sessions.close(session_id):
        raise SessionNotFoundError(session_id)
    return Response(status_code=204)


async def navigate_session(request: Request) -> JSONResponse:
    broker = _broker(request)
    session = await _session(request)
    body = await _parse(request, NavigateRequest)
    timeout_ms = clamp_timeout(body.timeout, DEFAULT_NAVIGATION_TIMEOUT_MS)

    async with session.exclusive():
        try:
            title = await broker.router.navigate(
                session.instance, body.url, timeout_ms=timeout_ms, wait_for_selector=body.wait_for_selector
            )
            discovery = await broker.router.discover(session.page)
        except PlaywrightError as e:
            raise BrokerError(f"Navigation failed: {e}") from e
        session.url = session.page.url
        session.title = title
        session.has_webmcp = discovery.has_declared_tools
        session.tool_count = len(discovery.tools)

    return JSONResponse(
        {
            "url": session.url,
            "title": title,
            "hasWebMCP": discovery.has_declared_tools,
            "tools": _tools_payload(discovery),
        }
    )


async def list_session_tools(request: Request) -> JSONResponse:
    broker = _broker(request)
    session = await _session(request)
    async with session.exclusive():
        discovery = await broker.router.discover(session.page)
        session.has_webmcp = discovery.has_declared_tools
        session.tool_count = len(discovery.tools)
        url = session.page.url
    return JSONResponse({"url": url, "hasWebMCP": discovery.has_declared_tools, "tools": _tools_payload(discovery)})


async def authenticate_session(request: Request) -> JSONResponse:
    """Inject cookies, web storage and extra headers into the session's context."""
    session = await _session(request)
    body = await _parse(request, AuthenticateRequest)

    async with session.exclusive():
        instance = session.instance
        try:
            if body.cookies:
                await instance.context.add_cookies(body.cookies)
            if body.local_storage:
                await instance.page.evaluate(
                    "(items) => { for (const [k, v] of Object.entries(items)) localStorage.setItem(k, String(v)); }",
                    body.local_storage,
                )
            if body.session_storage:
                await instance.page.evaluate(
                    "(items) => { for (const [k, v] of Object.entries(items)) sessionStorage.setItem(k, String(v)); }",
                    body.session_storage,
                )
            if body.headers:
                await instance.set_extra_headers(body.headers)
        except PlaywrightError as e:
            raise BrokerError(f"Failed to inject authentication: {e}") from e

    logger.info(
        "Session %s: injected auth (cookies=%d, localStorage=%d, sessionStorage=%d, headers=%d)",
        session.id,
        len(body.cookies or ()),
        len(body.local_storage or ()),
        len(body.session_storage or ()),
        len(body.headers or ()),
    )
    return JSONResponse({"success": True})


async def get_recording(request: Request) -> JSONResponse:
    broker = _broker(request)
    session = await _session(request)
    actions = await broker.sessions.get_recording(session.id)
    return JSONResponse(
        {
            "sessionId": session.id,
            "recordingEnabled": session.recording_enabled,
            "actionCount": len(actions),
            "actions": [a.to_dict() for a in actions],
        }
    )


async def set_recording(request: Request) -> JSONResponse:
    broker = _broker(request)
    body = await _parse(request, RecordingRequest)
    session = await broker.sessions.set_recording(request.path_params["session_id"], body.enabled)
    return JSONResponse({"recordingEnabled": session.recording_enabled})


async def screenshot(request: Request) -> JSONResponse:
    session = await _session(request)
    full_page = request.query_params.get("fullPage", "").lower() == "true"
    image_type = request.query_params.get("format", "png").lower()
    if image_type not in _SCREENSHOT_FORMATS:
        raise ValidationError(f"format must be one of: {', '.join(_SCREENSHOT_FORMATS)}")

    async with session.exclusive():
        try:
            data = await session.instance.screenshot(full_page=full_page, image_type=image_type)
        except PlaywrightError as e:
            raise BrokerError(f"Screenshot failed: {e}") from e
        viewport = session.page.viewport_size or {}

    return JSONResponse(
        {
            "format": image_type,
            "width": viewport.get("width"),
            "height": viewport.get("height"),
            "base64": base64.b64encode(data).decode("ascii"),
        }
    )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


async def call_tool(request: Request) -> JSONResponse:
    broker = _broker(request)
    session = await _session(request)
    body = await _parse(request, ToolCallRequest)
    tool_name = request.path_params["tool_name"]

    async with session.exclusive():
        session.call_count += 1
        result = await broker.router.execute(
            session.instance,
            tool_name,
            body.input,
            timeout_ms=clamp_timeout(body.timeout, DEFAULT_TOOL_TIMEOUT_MS),
            record=functools.partial(broker.sessions.record_action, session.id),
        )
        if result.new_url is not None:
            session.url = result.new_url

    return JSONResponse(result.to_dict(), status_code=result.status_code)


async def execute(request: Request) -> JSONResponse:
    """Stateless one-shot: navigate a borrowed instance, run one tool, release it."""
    broker = _broker(request)
    body = await _parse(request, ExecuteRequest)
    timeout_ms = clamp_timeout(body.timeout, DEFAULT_EXECUTE_TIMEOUT_MS)

    async with broker.pool.instance() as instance:
        try:
            await broker.router.navigate(instance, body.url, timeout_ms=max(1, timeout_ms // 2))
        except PlaywrightError as e:
            raise BrokerError(f"Navigation failed: {e}") from e
        result = await broker.router.execute(instance, body.tool_name, body.input, timeout_ms=timeout_ms)

    return JSONResponse(result.to_dict(), status_code=result.status_code)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


async def health(request: Request) -> JSONResponse:
    broker = _broker(request)
    pool_health = broker.pool.health()
    return JSONResponse(
        {
            "status": "healthy",
            "activeSessions": broker.sessions.active_count,
            "browserPoolSize": pool_health.size,
            "pool": pool_health.to_dict(),
            "audit": broker.auditor.meta.snapshot(),
        }
    )


# ---------------------------------------------------------------------------
# Route table
# ---------------------------------------------------------------------------

API_PREFIX = "/api"

api_routes = [
    Route("/discover", discover, methods=["POST"]),
    Route("/sessions", create_session, methods=["POST"]),
    Route("/sessions/{session_id}", get_session, methods=["GET"]),
    Route("/sessions/{session_id}", delete_session, methods=["DELETE"]),
    Route("/sessions/{session_id}/navigate", navigate_session, methods=["POST"]),
    Route("/sessions/{session_id}/tools", list_session_tools, methods=["GET"]),
    Route("/sessions/{session_id}/tools/{tool_name}/call", call_tool, methods=["POST"]),
    Route("/sessions/{session_id}/authenticate", authenticate_session, methods=["POST"]),
    Route("/sessions/{session_id}/recording", get_recording, methods=["GET"]),
    Route("/sessions/{session_id}/recording", set_recording, methods=["POST"]),
    Route("/sessions/{session_id}/screenshot", screenshot, methods=["GET"]),
    Route("/execute", execute, methods=["POST"]),
]

routes = [
    Route("/health", health, methods=["GET"]),
    Mount(API_PREFIX, routes=api_routes),
]
