# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""WebMCP broker HTTP server.

Builds the Starlette app around one BrowserPool, one SessionStore and one
Auditor, all process-scoped and owned by the app lifespan.

Middleware chain (outermost first)::

    SecurityHeaders → SecurityPipeline(auth → audit → rbac → destination) → routes

Shutdown order: sessions (releasing their instances), then the pool, then
a final audit flush.
"""

from __future__ import annotations

import argparse
import contextlib
import functools
import logging
import os
import sys
from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware import Middleware

from . import __version__, logging_config
from .audit import Auditor, HttpSink
from .auth import Authenticator
from .browser_instance import BrowserOptions
from .browser_pool import BrowserPool
from .config import AuthMode, BrokerConfig
from .destination_guard import DestinationGuard
from .errors import BrokerError
from .pipeline import SecurityPipeline, default_stages
from .problem_details import ProblemDetail, from_exception, from_not_found
from .redaction import Redactor
from .routes import Broker, routes
from .security_headers import SecurityHeadersMiddleware, apply_security_headers
from .session_store import SessionStore
from .tool_router import ToolRouter

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

    from .audit import AuditSink

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


async def _broker_error(request: Request, exc: Exception) -> Response:
    problem = from_exception(exc, instance=request.url.path)
    if problem.status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, problem.detail)
    return problem.to_response()


async def _http_error(request: Request, exc: Exception) -> Response:
    if not isinstance(exc, HTTPException):
        return await _unhandled_error(request, exc)
    if exc.status_code == 404:
        return from_not_found(f"No route for {request.url.path}", instance=request.url.path).to_response()
    return ProblemDetail(
        title=str(exc.detail),
        status=exc.status_code,
        detail=str(exc.detail),
        instance=request.url.path,
    ).to_response()


async def _unhandled_error(request: Request, exc: Exception) -> Response:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    response = from_exception(exc, instance=request.url.path).to_response()
    return apply_security_headers(response, require_tls=request.app.state.broker.config.require_tls)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def build_broker(
    config: BrokerConfig,
    *,
    pool: BrowserPool | None = None,
    sessions: SessionStore | None = None,
    audit_sink: AuditSink | None = None,
) -> Broker:
    """Construct the service graph for *config*. Nothing is started yet."""
    guard = DestinationGuard(
        allowed_domains=config.allowed_domains,
        blocked_domains=config.blocked_domains,
        resolve_dns=config.dns_check,
    )
    redactor = Redactor(
        fields=config.redaction_fields,
        patterns=config.redaction_patterns,
        enabled=config.redaction_enabled,
    )
    if pool is None:
        pool = BrowserPool(
            max_instances=config.max_browsers,
            acquire_timeout=config.acquire_timeout,
            options=BrowserOptions(headless=config.headless, egress_control=config.egress_control),
            guard=guard,
        )
    if sessions is None:
        sessions = SessionStore(
            pool,
            default_recording=config.session_recording,
            sweep_interval=config.session_sweep_interval,
        )
    if audit_sink is None and config.audit_endpoint:
        audit_sink = HttpSink(config.audit_endpoint)
    auditor = Auditor(
        config.audit_level,
        sink=audit_sink,
        flush_interval=config.audit_flush_interval,
        batch_size=config.audit_batch_size,
        redactor=redactor,
    )
    return Broker(
        config=config,
        pool=pool,
        sessions=sessions,
        router=ToolRouter(guard=guard, redactor=redactor),
        guard=guard,
        redactor=redactor,
        auditor=auditor,
    )


def create_app(config: BrokerConfig | None = None, *, broker: Broker | None = None) -> Starlette:
    """Build the ASGI app. Tests pass a *broker* wired with doubles."""
    config = config or (broker.config if broker is not None else BrokerConfig.from_env())
    broker = broker or build_broker(config)
    authenticator = Authenticator(config)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        await broker.pool.start()
        broker.sessions.start()
        broker.auditor.start()
        logger.info(
            "WebMCP broker ready (max_browsers=%d, auth=%s, rbac=%s, audit=%s)",
            config.max_browsers,
            config.auth_mode,
            config.rbac_enabled,
            config.audit_level,
        )
        try:
            yield
        finally:
            await broker.sessions.close_all()
            await broker.pool.close_all()
            await broker.auditor.aclose()
            logger.info("WebMCP broker shut down")

    app = Starlette(
        routes=routes,
        middleware=[
            Middleware(
                SecurityHeadersMiddleware,
                require_tls=config.require_tls,
                trust_forwarded_proto=config.trust_forwarded_proto,
            ),
            Middleware(
                SecurityPipeline,
                stages=default_stages(config, authenticator=authenticator, auditor=broker.auditor, guard=broker.guard),
            ),
        ],
        exception_handlers={
            BrokerError: _broker_error,
            HTTPException: _http_error,
            Exception: _unhandled_error,
        },
        lifespan=lifespan,
    )
    app.state.broker = broker
    return app


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _parse_server_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI flags. Unset flags fall back to ``BROKER_*`` env vars."""
    parser = argparse.ArgumentParser(description="WebMCP browser automation broker")
    parser.add_argument("--host", default=None, help="Bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: 3000)")
    parser.add_argument("--max-browsers", type=int, default=None, help="Maximum concurrent browser instances")
    parser.add_argument(
        "--auth-mode",
        choices=[m.value for m in AuthMode],
        default=None,
        help="Authentication mode (default: apikey)",
    )
    parser.add_argument("--require-tls", action="store_true", default=None, help="Reject plain HTTP requests")
    parser.add_argument("--headed", action="store_true", default=False, help="Show browser windows (debugging)")
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    parser.add_argument("--console-logs", action="store_true", default=False, help="Human-readable logs")
    parser.add_argument(
        "--drain-timeout",
        type=int,
        default=30,
        help="Graceful shutdown drain timeout seconds (default: 30)",
    )
    args, _ = parser.parse_known_args(argv)
    return args


def _config_from_args(args: argparse.Namespace, environ=None) -> BrokerConfig:
    config = BrokerConfig.from_env(environ)
    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.max_browsers is not None:
        overrides["max_browsers"] = max(1, args.max_browsers)
    if args.auth_mode:
        overrides["auth_mode"] = AuthMode(args.auth_mode)
    if args.require_tls:
        overrides["require_tls"] = True
    if args.headed:
        overrides["headless"] = False
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    if args.console_logs:
        overrides["log_json"] = False
    return config.replace(**overrides) if overrides else config


async def _run_http_server(config: BrokerConfig, *, drain_timeout: int = 30) -> None:
    import uvicorn

    app = create_app(config)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
            log_config=None,
            timeout_graceful_shutdown=drain_timeout,
        )
    )
    await server.serve()


def main(argv: list[str] | None = None) -> None:
    """Entry point for ``webmcp-broker``."""
    args = _parse_server_args(argv if argv is not None else sys.argv[1:])
    try:
        config = _config_from_args(args, os.environ)
    except ValueError as e:
        print(f"webmcp-broker: {e}", file=sys.stderr)
        sys.exit(2)

    # Configure structlog BEFORE any log output
    logging_config.configure(json_output=config.log_json, level=config.log_level)

    if not config.api_key and not config.api_key_roles and config.auth_mode == AuthMode.API_KEY:
        logger.warning("SECURITY: no API key configured, every caller is accepted")
    if config.host not in ("127.0.0.1", "::1", "localhost") and not config.require_tls:
        logger.warning("SECURITY: listening on %s without --require-tls", config.host)

    logger.info("Starting WebMCP broker %s (host=%s, port=%d)", __version__, config.host, config.port)
    import anyio

    anyio.run(functools.partial(_run_http_server, config, drain_timeout=args.drain_timeout))


if __name__ == "__main__":
    main()
