# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Pydantic request bodies for the HTTP surface.

Field names follow the wire format (camelCase) through aliases; unknown
fields are ignored. Numeric limits (TTL, timeouts) are clamped by the
consumers, not rejected here.
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _non_empty(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be empty")
    return value.strip()


NonEmptyStr = Annotated[str, AfterValidator(_non_empty)]


# ---------------------------------------------------------------------------
# Discovery / sessions
# ---------------------------------------------------------------------------


class Viewport(_Body):
    width: int = Field(gt=0, le=7680)
    height: int = Field(gt=0, le=4320)


class DiscoverRequest(_Body):
    url: NonEmptyStr = Field(description="Page to scan")
    wait_for_selector: str | None = Field(None, alias="waitForSelector")
    timeout: Any = Field(None, description="Navigation timeout in ms (default: 30000)")


class CreateSessionRequest(_Body):
    url: NonEmptyStr = Field(description="Initial navigation target")
    ttl_minutes: Any = Field(None, alias="ttlMinutes")
    viewport: Viewport | None = None
    user_agent: str | None = Field(None, alias="userAgent")


class NavigateRequest(_Body):
    url: NonEmptyStr
    wait_for_selector: str | None = Field(None, alias="waitForSelector")
    timeout: Any = None


class AuthenticateRequest(_Body):
    """Credentials injected into a session's browsing context."""

    cookies: list[dict[str, Any]] | None = None
    local_storage: dict[str, Any] | None = Field(None, alias="localStorage")
    session_storage: dict[str, Any] | None = Field(None, alias="sessionStorage")
    headers: dict[str, str] | None = None


class RecordingRequest(_Body):
    enabled: bool = True


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ToolCallRequest(_Body):
    input: dict[str, Any] = Field(default_factory=dict)
    timeout: Any = None


class ExecuteRequest(_Body):
    url: NonEmptyStr
    tool_name: NonEmptyStr = Field(alias="toolName")
    input: dict[str, Any] = Field(default_factory=dict)
    timeout: Any = None
