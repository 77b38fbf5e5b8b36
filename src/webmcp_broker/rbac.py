# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Role-based access control.

Roles:
    admin  — everything, including recording management.
    user   — every tool except script evaluation and tracing.
    viewer — read-only tools; may not send the broker anywhere new.

Role resolution order: explicit key→role map, then key prefix
(``admin_``/``viewer_``), then ``roles`` claim of a signed token, then
``user``. With RBAC disabled every caller is ``admin``.

Gate checks are pure functions over (role, method, path, body) so the
pipeline stage stays a thin adapter.
"""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .auth import Identity

_TOOL_CALL_RE = re.compile(r"/tools/([^/]+)/call")


class Role(StrEnum):
    ADMIN = "admin"
    USER = "user"
    VIEWER = "viewer"


@dataclass(frozen=True, slots=True)
class RolePermissions:
    """Fixed permission set attached to a role."""

    can_navigate: bool
    can_execute_tools: bool
    can_create_sessions: bool
    can_manage_recording: bool
    allowed_tools: tuple[str, ...]
    blocked_tools: tuple[str, ...] = ()

    def is_tool_allowed(self, tool_name: str) -> bool:
        """Deny patterns always win over allow patterns. Matching is case-sensitive."""
        if any(fnmatch.fnmatchcase(tool_name, p) for p in self.blocked_tools):
            return False
        return any(fnmatch.fnmatchcase(tool_name, p) for p in self.allowed_tools)


VIEWER_TOOLS = (
    "browser_screenshot",
    "browser_get_text",
    "browser_get_page_content",
    "browser_get_attribute",
    "browser_extract_table",
    "browser_get_all_links",
    "browser_get_computed_style",
    "browser_get_metrics",
    "browser_get_timing",
    "browser_list_tabs",
    "browser_list_frames",
    "browser_get_console_logs",
    "browser_get_media_state",
    "browser_get_bounding_box",
    "browser_count_elements",
    "browser_is_visible",
    "browser_is_enabled",
    "browser_get_cookies",
    "browser_get_local_storage",
    "browser_get_session_storage",
    "discover_tools",
    "get_session",
    "list_session_tools",
)

ROLE_PERMISSIONS: Mapping[Role, RolePermissions] = {
    Role.ADMIN: RolePermissions(
        can_navigate=True,
        can_execute_tools=True,
        can_create_sessions=True,
        can_manage_recording=True,
        allowed_tools=("*",),
    ),
    Role.USER: RolePermissions(
        can_navigate=True,
        can_execute_tools=True,
        can_create_sessions=True,
        can_manage_recording=False,
        allowed_tools=("*",),
        blocked_tools=("browser_evaluate", "browser_start_tracing", "browser_stop_tracing"),
    ),
    Role.VIEWER: RolePermissions(
        can_navigate=False,
        can_execute_tools=True,
        can_create_sessions=True,
        can_manage_recording=False,
        allowed_tools=VIEWER_TOOLS,
    ),
}


def _as_role(value: Any) -> Role | None:
    try:
        return Role(str(value).lower())
    except ValueError:
        return None


def resolve_role(identity: Identity, *, enabled: bool, key_roles: Mapping[str, str]) -> Role:
    """Map an authenticated caller to its role. Resolved once per request."""
    if not enabled:
        return Role.ADMIN

    credential = identity.credential if identity.method == "api_key" else ""
    if credential:
        explicit = _as_role(key_roles.get(credential)) if credential in key_roles else None
        if explicit is not None:
            return explicit
        if credential.startswith("admin_"):
            return Role.ADMIN
        if credential.startswith("viewer_"):
            return Role.VIEWER

    if identity.method == "token":
        claimed = identity.claims.get("roles") or ()
        roles = {r for r in (_as_role(c) for c in claimed) if r is not None}
        # Most privileged claimed role wins
        for role in (Role.ADMIN, Role.USER, Role.VIEWER):
            if role in roles:
                return role

    return Role.USER


def check_request(role: Role, method: str, path: str, body: Mapping[str, Any] | None) -> str | None:
    """Return a human-readable denial reason, or None when every gate passes."""
    perms = ROLE_PERMISSIONS[role]
    body = body or {}
    method = method.upper()

    if not perms.can_navigate and body.get("url"):
        return f"Insufficient permissions: navigation not allowed for {role} role"

    if not perms.can_create_sessions and method == "POST" and path.rstrip("/").endswith("/sessions"):
        return "Insufficient permissions: cannot create sessions"

    tool_name = None
    match = _TOOL_CALL_RE.search(path)
    if match:
        tool_name = match.group(1)
    elif path.rstrip("/").endswith("/execute") and isinstance(body.get("toolName"), str):
        tool_name = body["toolName"]
    if tool_name is not None:
        if not perms.can_execute_tools:
            return f"Insufficient permissions: tool execution not allowed for {role} role"
        if not perms.is_tool_allowed(tool_name):
            return f"Insufficient permissions: tool '{tool_name}' not allowed for {role} role"

    if "/recording" in path and not perms.can_manage_recording:
        return "Insufficient permissions: recording not allowed"

    return None
