# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""WebMCP broker: pooled, audited browser sessions for autonomous agents.

Turns a few headless Chromium processes into many short-lived, isolated
sessions and runs tools against them:
- page-declared tools read from ``navigator.modelContext``
- generic ``browser_*`` automation commands as the fallback

Every request passes the security pipeline (auth, audit, RBAC,
destination guard) and every tool result is redacted before it leaves.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import BrokerConfig
from .page_tools import DiscoveryResult, ToolDescriptor
from .tool_router import ExecutionResult

__all__ = [
    "BrokerConfig",
    "DiscoveryResult",
    "ExecutionResult",
    "ToolDescriptor",
    "__version__",
]
