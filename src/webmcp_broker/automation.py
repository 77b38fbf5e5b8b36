# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Generic automation command table.

Pages that declare no tools of their own can still be driven through the
``browser_*`` commands registered here. Each command is a plain async
function ``(page, input, ctx) -> result`` keyed by name; adding a command
never touches the router.

The descriptors double as the fallback tool list that discovery returns
for pages without a declared tool set.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from playwright.async_api import Error as PlaywrightError

from .errors import ToolNotFoundError, ValidationError
from .page_tools import ToolDescriptor

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Page

    from .destination_guard import DestinationGuard

logger = logging.getLogger(__name__)

COMMAND_PREFIX = "browser_"
DEFAULT_COMMAND_TIMEOUT_MS = 30_000
_SETTLE_TIMEOUT_MS = 5_000
_DEFAULT_SCROLL_AMOUNT = 300
_WAIT_UNTIL = ("load", "domcontentloaded", "networkidle")
_SELECTOR_STATES = ("attached", "detached", "visible", "hidden")


@dataclass(frozen=True, slots=True)
class CommandContext:
    """What a command may touch besides the page itself."""

    context: BrowserContext
    guard: DestinationGuard | None = None
    timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS


CommandHandler = Callable[["Page", Mapping[str, Any], CommandContext], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class AutomationCommand:
    descriptor: ToolDescriptor
    handler: CommandHandler

    @property
    def name(self) -> str:
        return self.descriptor.name


_COMMANDS: dict[str, AutomationCommand] = {}


def command(
    name: str,
    description: str,
    *,
    category: str,
    properties: Mapping[str, Any] | None = None,
    required: tuple[str, ...] = (),
) -> Callable[[CommandHandler], CommandHandler]:
    """Register *handler* under *name* in the command table."""
    if not name.startswith(COMMAND_PREFIX):
        raise ValueError(f"automation command names must start with {COMMAND_PREFIX!r}: {name}")
    schema: dict[str, Any] = {"type": "object", "properties": dict(properties or {})}
    if required:
        schema["required"] = list(required)

    def decorator(handler: CommandHandler) -> CommandHandler:
        _COMMANDS[name] = AutomationCommand(
            descriptor=ToolDescriptor(name=name, description=description, input_schema=schema, category=category),
            handler=handler,
        )
        return handler

    return decorator


# ── Lookup ───────────────────────────────────────────────────────────


def is_command_name(name: str) -> bool:
    """True when *name* carries the automation prefix. Says nothing about existence."""
    return name.startswith(COMMAND_PREFIX)


def get(name: str) -> AutomationCommand:
    try:
        return _COMMANDS[name]
    except KeyError:
        raise ToolNotFoundError(name, available=names()) from None


def names() -> list[str]:
    return sorted(_COMMANDS)


def descriptors() -> list[ToolDescriptor]:
    return [_COMMANDS[n].descriptor for n in names()]


async def execute(page: Page, name: str, input: Mapping[str, Any], ctx: CommandContext) -> Any:
    """Run the command registered as *name*.

    Raises:
        ToolNotFoundError: no such command, even if the prefix matches.
        ValidationError: a required input is missing or malformed.
    """
    cmd = get(name)
    logger.debug("automation: %s", name)
    return await cmd.handler(page, input, ctx)


# ── Input helpers ────────────────────────────────────────────────────


def _str(input: Mapping[str, Any], key: str) -> str:
    value = input.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"'{key}' is required and must be a non-empty string")
    return value


def _opt_str(input: Mapping[str, Any], key: str) -> str | None:
    value = input.get(key)
    return value if isinstance(value, str) and value else None


def _timeout(input: Mapping[str, Any], ctx: CommandContext) -> int:
    value = input.get("timeout")
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return int(value)
    return ctx.timeout_ms


def _choice(input: Mapping[str, Any], key: str, choices: tuple[str, ...], default: str) -> str:
    value = input.get(key)
    return value if value in choices else default


async def _settle(page: Page) -> None:
    # Clicks may or may not navigate; a page that never goes idle is not an error
    with suppress(PlaywrightError):
        await page.wait_for_load_state("networkidle", timeout=_SETTLE_TIMEOUT_MS)


async def _location(page: Page) -> dict[str, str]:
    return {"url": page.url, "title": await page.title()}


_SELECTOR = {"selector": {"type": "string", "description": "CSS selector of the target element"}}
_TIMEOUT = {"timeout": {"type": "number", "description": "Timeout in ms (default: 30000)"}}


# ── Navigation ───────────────────────────────────────────────────────


@command(
    "browser_navigate",
    "Navigate to a URL",
    category="navigation",
    properties={
        "url": {"type": "string", "description": "URL to navigate to"},
        "wait_until": {"type": "string", "enum": list(_WAIT_UNTIL), "description": "Default: networkidle"},
        **_TIMEOUT,
    },
    required=("url",),
)
async def navigate(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, str]:
    url = _str(input, "url")
    if ctx.guard is not None:
        await ctx.guard.check_resolved(url)
    await page.goto(
        url,
        wait_until=_choice(input, "wait_until", _WAIT_UNTIL, "networkidle"),
        timeout=_timeout(input, ctx),
    )
    return await _location(page)


@command("browser_go_back", "Navigate back in browser history", category="navigation")
async def go_back(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, str]:
    await page.go_back(wait_until="networkidle", timeout=ctx.timeout_ms)
    return await _location(page)


@command("browser_go_forward", "Navigate forward in browser history", category="navigation")
async def go_forward(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, str]:
    await page.go_forward(wait_until="networkidle", timeout=ctx.timeout_ms)
    return await _location(page)


@command("browser_reload", "Reload the current page", category="navigation")
async def reload(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, str]:
    await page.reload(wait_until="networkidle", timeout=ctx.timeout_ms)
    return await _location(page)


# ── Interaction ──────────────────────────────────────────────────────


@command(
    "browser_click",
    "Click an element on the page",
    category="interaction",
    properties={
        **_SELECTOR,
        "button": {"type": "string", "enum": ["left", "right", "middle"], "description": "Default: left"},
        "click_count": {"type": "number", "description": "Number of clicks (default: 1)"},
        **_TIMEOUT,
    },
    required=("selector",),
)
async def click(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, bool]:
    click_count = input.get("click_count")
    await page.click(
        _str(input, "selector"),
        button=_choice(input, "button", ("left", "right", "middle"), "left"),
        click_count=click_count if isinstance(click_count, int) and click_count > 0 else 1,
        timeout=_timeout(input, ctx),
    )
    await _settle(page)
    return {"clicked": True}


@command(
    "browser_dblclick",
    "Double-click an element",
    category="interaction",
    properties=_SELECTOR,
    required=("selector",),
)
async def dblclick(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, bool]:
    await page.dblclick(_str(input, "selector"), timeout=ctx.timeout_ms)
    await _settle(page)
    return {"double_clicked": True}


@command("browser_hover", "Hover over an element", category="interaction", properties=_SELECTOR, required=("selector",))
async def hover(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, bool]:
    await page.hover(_str(input, "selector"), timeout=ctx.timeout_ms)
    return {"hovered": True}


@command(
    "browser_type",
    "Type text into an input field",
    category="interaction",
    properties={
        **_SELECTOR,
        "text": {"type": "string", "description": "Text to type"},
        "submit": {"type": "boolean", "description": "Press Enter afterwards"},
    },
    required=("selector", "text"),
)
async def type_text(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, bool]:
    selector = _str(input, "selector")
    text = input.get("text")
    if not isinstance(text, str):
        raise ValidationError("'text' is required and must be a string")
    await page.fill(selector, text, timeout=ctx.timeout_ms)
    if input.get("submit"):
        await page.press(selector, "Enter", timeout=ctx.timeout_ms)
        await _settle(page)
    return {"typed": True}


@command(
    "browser_press_key",
    "Press a keyboard key, optionally focused on an element",
    category="interaction",
    properties={
        "key": {"type": "string", "description": "Key name, e.g. Enter, ArrowDown, Control+A"},
        **_SELECTOR,
    },
    required=("key",),
)
async def press_key(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, str]:
    key = _str(input, "key")
    selector = _opt_str(input, "selector")
    if selector:
        await page.press(selector, key, timeout=ctx.timeout_ms)
    else:
        await page.keyboard.press(key)
    return {"pressed": key}


@command(
    "browser_select",
    "Select an option in a dropdown",
    category="interaction",
    properties={**_SELECTOR, "value": {"type": "string", "description": "Option value to select"}},
    required=("selector", "value"),
)
async def select(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, Any]:
    selected = await page.select_option(_str(input, "selector"), _str(input, "value"), timeout=ctx.timeout_ms)
    return {"selected": True, "values": selected}


@command(
    "browser_check",
    "Check a checkbox or radio button",
    category="interaction",
    properties=_SELECTOR,
    required=("selector",),
)
async def check(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, bool]:
    await page.check(_str(input, "selector"), timeout=ctx.timeout_ms)
    return {"checked": True}


@command("browser_uncheck", "Uncheck a checkbox", category="interaction", properties=_SELECTOR, required=("selector",))
async def uncheck(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, bool]:
    await page.uncheck(_str(input, "selector"), timeout=ctx.timeout_ms)
    return {"unchecked": True}


@command(
    "browser_click_text",
    "Click the element containing the given text",
    category="interaction",
    properties={
        "text": {"type": "string", "description": "Visible text to click"},
        "exact": {"type": "boolean", "description": "Require an exact match"},
    },
    required=("text",),
)
async def click_text(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, str]:
    text = _str(input, "text")
    await page.get_by_text(text, exact=bool(input.get("exact"))).first.click(timeout=ctx.timeout_ms)
    await _settle(page)
    return {"clicked_text": text}


# ── Capture ──────────────────────────────────────────────────────────


@command(
    "browser_screenshot",
    "Take a screenshot of the page",
    category="capture",
    properties={
        "full_page": {"type": "boolean", "description": "Capture the full scrollable page"},
        "format": {"type": "string", "enum": ["png", "jpeg"], "description": "Default: png"},
        "quality": {"type": "number", "description": "JPEG quality 0-100 (default: 80)"},
    },
)
async def screenshot(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, Any]:
    image_type = _choice(input, "format", ("png", "jpeg"), "png")
    kwargs: dict[str, Any] = {"full_page": bool(input.get("full_page")), "type": image_type}
    if image_type == "jpeg":
        quality = input.get("quality")
        kwargs["quality"] = int(quality) if isinstance(quality, (int, float)) and 0 <= quality <= 100 else 80
    data = await page.screenshot(**kwargs)
    viewport = page.viewport_size or {}
    return {
        "format": image_type,
        "base64": base64.b64encode(data).decode("ascii"),
        "width": viewport.get("width"),
        "height": viewport.get("height"),
    }


@command(
    "browser_get_text",
    "Get the text content of an element or of the whole page",
    category="capture",
    properties=_SELECTOR,
)
async def get_text(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, Any]:
    selector = _opt_str(input, "selector")
    if selector:
        return {"text": await page.text_content(selector, timeout=ctx.timeout_ms)}
    return {"text": await page.evaluate("() => document.body ? document.body.innerText : ''")}


@command("browser_get_page_content", "Get the page URL, title and HTML", category="capture")
async def get_page_content(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, str]:
    return {"url": page.url, "title": await page.title(), "html": await page.content()}


@command(
    "browser_get_attribute",
    "Get an attribute value of an element",
    category="capture",
    properties={**_SELECTOR, "attribute": {"type": "string", "description": "Attribute name"}},
    required=("selector", "attribute"),
)
async def get_attribute(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, Any]:
    value = await page.get_attribute(_str(input, "selector"), _str(input, "attribute"), timeout=ctx.timeout_ms)
    return {"value": value}


@command(
    "browser_count_elements",
    "Count the elements matching a selector",
    category="capture",
    properties=_SELECTOR,
    required=("selector",),
)
async def count_elements(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, int]:
    return {"count": await page.locator(_str(input, "selector")).count()}


@command(
    "browser_is_visible",
    "Check whether an element is visible",
    category="capture",
    properties=_SELECTOR,
    required=("selector",),
)
async def is_visible(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, bool]:
    return {"visible": await page.is_visible(_str(input, "selector"))}


# ── Waiting ──────────────────────────────────────────────────────────


@command(
    "browser_wait_for_selector",
    "Wait for an element to reach a state",
    category="waiting",
    properties={
        **_SELECTOR,
        "state": {"type": "string", "enum": list(_SELECTOR_STATES), "description": "Default: visible"},
        **_TIMEOUT,
    },
    required=("selector",),
)
async def wait_for_selector(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, bool]:
    await page.wait_for_selector(
        _str(input, "selector"),
        state=_choice(input, "state", _SELECTOR_STATES, "visible"),
        timeout=_timeout(input, ctx),
    )
    return {"found": True}


@command(
    "browser_wait_for_text",
    "Wait for text to appear on the page",
    category="waiting",
    properties={"text": {"type": "string", "description": "Text to wait for"}, **_TIMEOUT},
    required=("text",),
)
async def wait_for_text(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, bool]:
    await page.get_by_text(_str(input, "text")).first.wait_for(timeout=_timeout(input, ctx))
    return {"found": True}


# ── Scrolling ────────────────────────────────────────────────────────

_SCROLL_VECTORS = {"up": (0, -1), "down": (0, 1), "left": (-1, 0), "right": (1, 0)}


@command(
    "browser_scroll",
    "Scroll the page or an element",
    category="scrolling",
    properties={
        "direction": {"type": "string", "enum": list(_SCROLL_VECTORS), "description": "Scroll direction"},
        "amount": {"type": "number", "description": "Pixels to scroll (default: 300)"},
        **_SELECTOR,
    },
    required=("direction",),
)
async def scroll(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, Any]:
    direction = input.get("direction")
    if direction not in _SCROLL_VECTORS:
        raise ValidationError(f"'direction' must be one of: {', '.join(_SCROLL_VECTORS)}")
    amount = input.get("amount")
    if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount <= 0:
        amount = _DEFAULT_SCROLL_AMOUNT
    dx, dy = (v * int(amount) for v in _SCROLL_VECTORS[direction])

    selector = _opt_str(input, "selector")
    if selector:
        await page.locator(selector).first.evaluate("(el, [x, y]) => el.scrollBy(x, y)", [dx, dy])
    else:
        await page.mouse.wheel(dx, dy)
    return {"scrolled": direction, "amount": int(amount)}


@command("browser_scroll_to_bottom", "Scroll to the bottom of the page", category="scrolling")
async def scroll_to_bottom(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, str]:
    await page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")
    return {"scrolled": "bottom"}


# ── Script ───────────────────────────────────────────────────────────


@command(
    "browser_evaluate",
    "Evaluate a JavaScript expression in the page",
    category="script",
    properties={"script": {"type": "string", "description": "JavaScript expression or function"}},
    required=("script",),
)
async def evaluate(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> Any:
    return await page.evaluate(_str(input, "script"))


# ── Storage ──────────────────────────────────────────────────────────


@command(
    "browser_get_cookies",
    "Get cookies of the browsing context",
    category="storage",
    properties={"url": {"type": "string", "description": "Only cookies whose domain this URL contains"}},
)
async def get_cookies(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, Any]:
    cookies = await ctx.context.cookies()
    url = _opt_str(input, "url")
    if url:
        cookies = [c for c in cookies if c.get("domain", "").lstrip(".") in url]
    return {"cookies": cookies}


@command("browser_clear_cookies", "Clear all cookies of the browsing context", category="storage")
async def clear_cookies(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, bool]:
    await ctx.context.clear_cookies()
    return {"cleared": True}


@command(
    "browser_get_local_storage",
    "Read one localStorage key, or all of them",
    category="storage",
    properties={"key": {"type": "string", "description": "Key to read (omit for all)"}},
)
async def get_local_storage(page: Page, input: Mapping[str, Any], ctx: CommandContext) -> dict[str, Any]:
    key = _opt_str(input, "key")
    if key:
        return {"key": key, "value": await page.evaluate("(k) => localStorage.getItem(k)", key)}
    items = await page.evaluate("() => Object.fromEntries(Object.entries(localStorage))")
    return {"items": items, "count": len(items)}
