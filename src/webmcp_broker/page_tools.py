# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Page tool reader: tools a page declares on ``navigator.modelContext``.

The declared set can change after any navigation or script run, so it is
read fresh on every call and never cached.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from playwright.async_api import Error as PlaywrightError

from .errors import BrowserError

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

EMPTY_SCHEMA: Mapping[str, Any] = {"type": "object", "properties": {}}

_READ_TOOLS_JS = """() => {
  const mc = navigator.modelContext;
  if (!mc) return null;
  const tools = Array.isArray(mc.tools) ? mc.tools : [];
  return {
    tools: tools.filter(t => t && typeof t.name === 'string').map(t => ({
      name: t.name,
      description: typeof t.description === 'string' ? t.description : '',
      inputSchema: t.inputSchema || null,
      category: typeof t.category === 'string' ? t.category : null,
    })),
    serverInfo: mc.serverInfo ? JSON.parse(JSON.stringify(mc.serverInfo)) : null,
  };
}"""

_INVOKE_TOOL_JS = """async ({ toolName, input }) => {
  const mc = navigator.modelContext;
  if (!mc) throw new Error('WebMCP not available on this page');
  const tool = (Array.isArray(mc.tools) ? mc.tools : []).find(t => t && t.name === toolName);
  if (!tool) throw new Error(`Tool '${toolName}' not found`);
  return await tool.handler(input);
}"""


@dataclass(frozen=True, slots=True)
class ToolDescriptor:
    """Name, description and input schema of one invocable tool."""

    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=lambda: dict(EMPTY_SCHEMA))
    category: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": dict(self.input_schema),
        }
        if self.category:
            d["category"] = self.category
        return d

    @classmethod
    def from_page(cls, raw: Mapping[str, Any]) -> ToolDescriptor:
        schema = raw.get("inputSchema")
        return cls(
            name=str(raw["name"]),
            description=str(raw.get("description") or ""),
            input_schema=schema if isinstance(schema, Mapping) else dict(EMPTY_SCHEMA),
            category=raw.get("category") or None,
        )


@dataclass(frozen=True, slots=True)
class DiscoveryResult:
    """One snapshot of what a page exposes."""

    has_declared_tools: bool
    tools: tuple[ToolDescriptor, ...] = ()
    server_info: Mapping[str, Any] | None = None

    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]

    def find(self, name: str) -> ToolDescriptor | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


NO_DECLARED_TOOLS = DiscoveryResult(has_declared_tools=False)


async def discover(page: Page) -> DiscoveryResult:
    """Read the page's declared tools. Read failures mean "no declared tools"."""
    try:
        raw = await page.evaluate(_READ_TOOLS_JS)
    except PlaywrightError as e:
        logger.debug("Tool discovery failed on %s: %s", page.url, e)
        return NO_DECLARED_TOOLS
    if not isinstance(raw, Mapping):
        return NO_DECLARED_TOOLS

    tools = tuple(ToolDescriptor.from_page(t) for t in raw.get("tools") or () if isinstance(t, Mapping))
    server_info = raw.get("serverInfo")
    return DiscoveryResult(
        has_declared_tools=bool(tools),
        tools=tools,
        server_info=server_info if isinstance(server_info, Mapping) else None,
    )


async def invoke(page: Page, name: str, input: Mapping[str, Any]) -> Any:
    """Call a declared tool's in-page handler and return its result verbatim.

    Raises:
        BrowserError: the handler threw, or the tool vanished since discovery.
    """
    try:
        return await page.evaluate(_INVOKE_TOOL_JS, {"toolName": name, "input": dict(input)})
    except PlaywrightError as e:
        raise BrowserError(str(e)) from e
