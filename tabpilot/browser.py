from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx


@dataclass
class BrowserContext:
    session_id: str
    tab_id: Optional[str] = None


@dataclass
class ToolResult:
    success: bool
    detail: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    def as_text(self) -> str:
        prefix = "OK" if self.success else "FAILED"
        return f"{prefix}: {self.detail}" if self.detail else prefix


class BrowserClient:
    """HTTP client for the browser controller (actuation and page inspection)."""

    def __init__(self, base_url: str, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def _tab_url(self, ctx: BrowserContext, suffix: str = "") -> str:
        return f"{self.base_url}/sessions/{ctx.session_id}/tabs/{ctx.tab_id}{suffix}"

    async def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            resp = await self.client.request(method, url, json=payload)
            resp.raise_for_status()
            if not resp.content:
                return {}
            data = resp.json()
            if not isinstance(data, dict):
                return {"error": "invalid_response", "detail": f"expected a JSON object, got {type(data).__name__}"}
            return data
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}
        except ValueError as e:
            return {"error": "invalid_response", "detail": str(e)}

    @staticmethod
    def _failure(data: Dict[str, Any]) -> ToolResult:
        detail = data.get("detail")
        text = detail if isinstance(detail, str) else str(detail or data.get("error"))
        return ToolResult(success=False, detail=f"{data.get('error')}: {text}", data=data)

    async def perform(self, ctx: BrowserContext, action: str, params: Optional[Dict[str, Any]] = None) -> ToolResult:
        if not ctx.tab_id:
            return ToolResult(success=False, detail="no active tab")
        data = await self._request("POST", self._tab_url(ctx, f"/actions/{action}"), params or {})
        if data.get("error"):
            return self._failure(data)
        return ToolResult(success=bool(data.get("success", True)), detail=str(data.get("detail") or ""), data=data)

    async def navigate(self, ctx: BrowserContext, url: str) -> ToolResult:
        return await self.perform(ctx, "navigate", {"url": url})

    async def click(self, ctx: BrowserContext, element_id: str) -> ToolResult:
        return await self.perform(ctx, "click", {"element_id": element_id})

    async def fill(self, ctx: BrowserContext, element_id: str, text: str) -> ToolResult:
        return await self.perform(ctx, "fill", {"element_id": element_id, "text": text})

    async def select(self, ctx: BrowserContext, element_id: str, value: str) -> ToolResult:
        return await self.perform(ctx, "select", {"element_id": element_id, "value": value})

    async def hover(self, ctx: BrowserContext, element_id: str) -> ToolResult:
        return await self.perform(ctx, "hover", {"element_id": element_id})

    async def scroll(self, ctx: BrowserContext, direction: str = "down", pages: float = 1.0) -> ToolResult:
        return await self.perform(ctx, "scroll", {"direction": direction, "pages": pages})

    async def go_back(self, ctx: BrowserContext) -> ToolResult:
        return await self.perform(ctx, "back")

    async def go_forward(self, ctx: BrowserContext) -> ToolResult:
        return await self.perform(ctx, "forward")

    async def refresh(self, ctx: BrowserContext) -> ToolResult:
        return await self.perform(ctx, "refresh")

    async def read_page(self, ctx: BrowserContext) -> ToolResult:
        if not ctx.tab_id:
            return ToolResult(success=False, detail="no active tab")
        data = await self._request("GET", self._tab_url(ctx, "/dom/flattened"))
        if data.get("error"):
            return self._failure(data)
        return ToolResult(success=True, detail=str(data.get("text") or ""), data=data)

    async def create_tab(self, session_id: str, url: Optional[str] = None) -> ToolResult:
        payload = {"url": url} if url else {}
        data = await self._request("POST", f"{self.base_url}/sessions/{session_id}/tabs", payload)
        if data.get("error"):
            return self._failure(data)
        tab_id = data.get("tab_id")
        if not tab_id:
            return ToolResult(success=False, detail="controller returned no tab_id", data=data)
        return ToolResult(success=True, detail=f"opened tab {tab_id}", data={"tab_id": str(tab_id)})

    async def close_tab(self, ctx: BrowserContext) -> ToolResult:
        if not ctx.tab_id:
            return ToolResult(success=False, detail="no active tab")
        data = await self._request("DELETE", self._tab_url(ctx))
        if data.get("error"):
            return self._failure(data)
        return ToolResult(success=True, detail=f"closed tab {ctx.tab_id}")

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
