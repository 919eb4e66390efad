import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .browser import BrowserClient, BrowserContext, ToolResult
from .errors import ToolExecutionError


logger = logging.getLogger("uvicorn.error")

READ_ONLY_TOOLS = {"read_page"}

TOOL_SPECS: Dict[str, Dict[str, Any]] = {
    "navigate": {
        "description": "Load a URL in the active tab.",
        "parameters": {
            "type": "object",
            "properties": {"url": {"type": "string", "description": "Absolute http(s) URL."}},
            "required": ["url"],
        },
    },
    "click": {
        "description": "Click the element with the given id from the latest read_page output.",
        "parameters": {
            "type": "object",
            "properties": {"element_id": {"type": "string"}},
            "required": ["element_id"],
        },
    },
    "fill": {
        "description": "Replace the value of an input or textarea element with text.",
        "parameters": {
            "type": "object",
            "properties": {"element_id": {"type": "string"}, "text": {"type": "string"}},
            "required": ["element_id", "text"],
        },
    },
    "select": {
        "description": "Choose an option of a select element by its value or visible text.",
        "parameters": {
            "type": "object",
            "properties": {"element_id": {"type": "string"}, "value": {"type": "string"}},
            "required": ["element_id", "value"],
        },
    },
    "hover": {
        "description": "Move the pointer over an element to reveal menus or tooltips.",
        "parameters": {
            "type": "object",
            "properties": {"element_id": {"type": "string"}},
            "required": ["element_id"],
        },
    },
    "scroll": {
        "description": "Scroll the page; use it to trigger lazy loading.",
        "parameters": {
            "type": "object",
            "properties": {
                "direction": {"type": "string", "enum": ["up", "down"]},
                "pages": {"type": "number", "description": "Viewport heights to scroll, default 1."},
            },
        },
    },
    "go_back": {"description": "Navigate back in tab history.", "parameters": {"type": "object", "properties": {}}},
    "go_forward": {
        "description": "Navigate forward in tab history.",
        "parameters": {"type": "object", "properties": {}},
    },
    "refresh": {"description": "Reload the active tab.", "parameters": {"type": "object", "properties": {}}},
    "read_page": {
        "description": "Return a flattened text snapshot of the active tab with element ids. Call after every action.",
        "parameters": {"type": "object", "properties": {}},
    },
    "create_tab": {
        "description": "Open a new tab, optionally at a URL, and make it the active tab.",
        "parameters": {"type": "object", "properties": {"url": {"type": "string"}}},
    },
}

ACTION_TOOLSET = (
    "read_page",
    "navigate",
    "click",
    "fill",
    "select",
    "hover",
    "scroll",
    "go_back",
    "go_forward",
    "refresh",
    "create_tab",
)
SEARCH_TOOLSET = ("navigate", "read_page", "scroll")
PAGE_WORKER_TOOLSET = ("read_page", "navigate", "click", "scroll", "go_back", "refresh")


def _require(args: Dict[str, Any], key: str) -> str:
    value = args.get(key)
    if value is None or str(value).strip() == "":
        raise ToolExecutionError(f"missing required argument '{key}'")
    return str(value)


class ToolBox:
    """Browser tools bound to an explicit session/tab context."""

    def __init__(
        self,
        browser: BrowserClient,
        ctx: BrowserContext,
        names: Sequence[str] = ACTION_TOOLSET,
        *,
        short_timeout_s: float = 10.0,
        long_timeout_s: float = 45.0,
        on_call: Optional[Callable[[str, Dict[str, Any], ToolResult], None]] = None,
    ):
        self.browser = browser
        self.ctx = ctx
        self.names = [name for name in names if name in TOOL_SPECS]
        self.short_timeout_s = short_timeout_s
        self.long_timeout_s = long_timeout_s
        self.on_call = on_call
        self.history: List[Dict[str, Any]] = []
        self.opened_tabs: List[str] = []

    @property
    def specs(self) -> List[Dict[str, Any]]:
        return [{"type": "function", "function": {"name": name, **TOOL_SPECS[name]}} for name in self.names]

    def _call_for(self, name: str, args: Dict[str, Any]) -> Awaitable[ToolResult]:
        ctx = self.ctx
        if name == "navigate":
            url = _require(args, "url")
            if not url.startswith(("http://", "https://")):
                url = f"https://{url}"
            return self.browser.navigate(ctx, url)
        if name == "click":
            return self.browser.click(ctx, _require(args, "element_id"))
        if name == "fill":
            return self.browser.fill(ctx, _require(args, "element_id"), str(args.get("text") or ""))
        if name == "select":
            return self.browser.select(ctx, _require(args, "element_id"), _require(args, "value"))
        if name == "hover":
            return self.browser.hover(ctx, _require(args, "element_id"))
        if name == "scroll":
            direction = str(args.get("direction") or "down").lower()
            if direction not in ("up", "down"):
                raise ToolExecutionError(f"invalid scroll direction '{direction}'")
            try:
                pages = float(args.get("pages") or 1.0)
            except (TypeError, ValueError):
                raise ToolExecutionError("pages must be a number")
            return self.browser.scroll(ctx, direction, pages)
        if name == "go_back":
            return self.browser.go_back(ctx)
        if name == "go_forward":
            return self.browser.go_forward(ctx)
        if name == "refresh":
            return self.browser.refresh(ctx)
        if name == "read_page":
            return self.browser.read_page(ctx)
        if name == "create_tab":
            return self.browser.create_tab(ctx.session_id, args.get("url") or None)
        raise ToolExecutionError(f"unknown tool '{name}'")

    async def execute(self, name: str, args: Dict[str, Any]) -> ToolResult:
        if name not in self.names:
            result = ToolResult(success=False, detail=f"tool '{name}' is not available here")
        else:
            timeout = self.short_timeout_s if name in READ_ONLY_TOOLS else self.long_timeout_s
            try:
                result = await asyncio.wait_for(self._call_for(name, args), timeout=timeout)
            except ToolExecutionError as exc:
                result = ToolResult(success=False, detail=str(exc))
            except asyncio.TimeoutError:
                logger.info("Tool %s timed out after %ss (tab %s)", name, timeout, self.ctx.tab_id)
                result = ToolResult(success=False, detail=f"timed out after {timeout:g}s")
            except Exception as exc:
                logger.warning("Tool %s failed on tab %s: %r", name, self.ctx.tab_id, exc)
                result = ToolResult(success=False, detail=f"tool error: {exc}")
        if name == "create_tab" and result.success and result.data.get("tab_id"):
            self.ctx.tab_id = result.data["tab_id"]
            self.opened_tabs.append(self.ctx.tab_id)
        self.history.append({"tool": name, "args": args, "success": result.success})
        if self.on_call:
            self.on_call(name, args, result)
        return result

    async def dispatch(self, name: str, args: Dict[str, Any]) -> str:
        result = await self.execute(name, args)
        return result.as_text()
