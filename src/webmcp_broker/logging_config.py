# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Broker log output: stdlib ``logging`` records rendered through structlog.

Every module logs with ``logging.getLogger(__name__)``; ``configure`` installs
a single stderr handler whose formatter runs the structlog chain, so stdlib
records and request context come out as one JSON object per line (deployed)
or coloured console lines (``--console-logs``).

Request context lives in structlog contextvars. The security pipeline binds
the correlation id when a request enters and clears it after the response,
so every line logged while serving it carries the same ``request_id``.

Leaf module: imports nothing from the broker and can run before config loads.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")

# Context keys that may hold caller credentials; their values never reach the log stream.
_SECRET_KEYS = frozenset({"api_key", "authorization", "password", "token", "x-api-key"})
_SCRUBBED = "[REDACTED]"


def _scrub_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in list(event_dict):
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = _SCRUBBED
    return event_dict


def _pre_chain() -> list:
    """Processors shared by structlog loggers and bridged stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _scrub_secrets,
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _stderr_handler(json_output: bool) -> logging.Handler:
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(),
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    return handler


def configure(*, json_output: bool = True, level: str = "INFO") -> None:
    """Route all broker logging to stderr. Calling again replaces the handler.

    Args:
        json_output: JSON lines when True, ConsoleRenderer output otherwise.
        level: root level name; unknown names mean INFO.
    """
    structlog.configure(
        processors=[*_pre_chain(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers[:] = [_stderr_handler(json_output)]
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_request(request_id: str, **fields: str) -> None:
    """Attach *request_id* and *fields* to every line logged for this request."""
    structlog.contextvars.bind_contextvars(request_id=request_id, **fields)


def clear_request() -> None:
    structlog.contextvars.clear_contextvars()
