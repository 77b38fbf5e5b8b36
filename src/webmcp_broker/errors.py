# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Broker exception hierarchy.

All broker-specific errors inherit from BrokerError, allowing route handlers
to catch the base class for any broker failure or specific subclasses
for targeted handling. ``problem_details.from_exception`` maps each class
onto an HTTP status.
"""

from __future__ import annotations


class BrokerError(Exception):
    """Base exception for all broker errors."""


class ValidationError(BrokerError):
    """Request body is missing a required field or carries a malformed value."""


class BrowserError(BrokerError):
    """Browser launch, navigation, or interaction failure."""


class PoolExhaustedError(BrokerError):
    """No browser instance became available before the acquire timeout."""

    def __init__(self, message: str, *, max_instances: int = 0, waited: float = 0.0) -> None:
        super().__init__(message)
        self.max_instances = max_instances
        self.waited = waited


class SessionNotFoundError(BrokerError):
    """Session id is unknown, closed, or past its expiry time."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' not found or expired")
        self.session_id = session_id


class ToolNotFoundError(BrokerError):
    """Tool name matches neither a page-declared tool nor an automation command."""

    def __init__(self, tool_name: str, *, available: list[str] | None = None) -> None:
        super().__init__(f"Tool '{tool_name}' not found")
        self.tool_name = tool_name
        self.available = available or []


class ToolTimeoutError(BrokerError):
    """Navigation or tool execution exceeded its deadline."""

    def __init__(self, message: str, *, timeout_ms: int = 0) -> None:
        super().__init__(message)
        self.timeout_ms = timeout_ms


class DestinationBlockedError(BrokerError):
    """Destination Guard rejected a navigation target."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"URL blocked by policy: {reason}")
        self.url = url
        self.reason = reason


class AuthenticationError(BrokerError):
    """Caller credential is missing, malformed, or failed verification."""


class AuthorizationError(BrokerError):
    """Caller's role does not permit the requested operation."""


# Raised before the page was touched; the instance that saw them is still clean.
ADMISSION_ERRORS = (ToolNotFoundError, DestinationBlockedError, ValidationError)
