import json
import re
import time
from typing import Any, Dict, List, Optional

import httpx


ALLOWED_ROLES = {"system", "user", "assistant", "tool"}
DISALLOWED_FIELDS = {
    "reasoning",
    "seed",
    "logprobs",
    "top_logprobs",
    "parallel_tool_calls",
    "modalities",
    "audio",
}
_MODEL_SIZE_RE = re.compile(r"(\d+(?:\.\d+)?b)", re.IGNORECASE)


def _normalize_model_id(value: str) -> str:
    base = value.split(":")[0].strip()
    if "/" in base:
        base = base.rsplit("/", 1)[-1]
    return base.lower()


def resolve_model_id(preferred: Optional[str], available: List[str]) -> Optional[str]:
    if not preferred or not available:
        return None
    if preferred in available:
        return preferred
    base = preferred.split(":")[0]
    if base in available:
        return base
    target = _normalize_model_id(preferred)
    for mid in available:
        if _normalize_model_id(mid) == target:
            return mid
    size_match = _MODEL_SIZE_RE.search(preferred)
    if size_match:
        size_hint = size_match.group(1).lower()
        for mid in available:
            if size_hint in mid.lower():
                return mid
    return None


def _run_state_add_trace(run_state: Optional[Any], message: str, detail: Optional[dict] = None) -> None:
    if run_state is None:
        return
    tracer = getattr(run_state, "add_dev_trace", None)
    if callable(tracer):
        tracer(message, detail)


class ChatClient:
    """OpenAI-compatible /chat/completions client with tool-calling support."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        timeout: float = 120.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        self.client = httpx.AsyncClient(timeout=timeout, headers=headers)
        self.model_cache: Dict[str, Dict[str, Any]] = {}
        self.model_cache_ttl = 60.0

    async def list_models(self, base_url: Optional[str] = None) -> Dict[str, Any]:
        url = f"{(base_url or self.base_url).rstrip('/')}/models"
        resp = await self.client.get(url)
        resp.raise_for_status()
        return resp.json()

    async def list_models_cached(self, base_url: Optional[str] = None, force: bool = False) -> List[str]:
        url = (base_url or self.base_url).rstrip("/")
        now = time.monotonic()
        cached = self.model_cache.get(url)
        if cached and not force and now - cached["ts"] < self.model_cache_ttl:
            return cached["ids"]
        resp = await self.list_models(url)
        ids = [m.get("id") for m in resp.get("data", []) if m.get("id")]
        self.model_cache[url] = {"ts": now, "ids": ids}
        return ids

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            tool_calls = msg.get("tool_calls") if role == "assistant" else None
            if role == "tool":
                if not msg.get("tool_call_id"):
                    continue
                text = content if isinstance(content, str) else json.dumps(content, ensure_ascii=True)
                sanitized.append({"role": "tool", "tool_call_id": msg["tool_call_id"], "content": text or ""})
                continue
            if tool_calls:
                sanitized.append({"role": "assistant", "content": content or "", "tool_calls": tool_calls})
                continue
            if content is None:
                continue
            cleaned_content: Any
            if isinstance(content, str):
                if not content.strip():
                    continue
                cleaned_content = content
            elif isinstance(content, list):
                cleaned_items = [
                    item
                    for item in content
                    if isinstance(item, dict) and item.get("type") and (item.get("text") or item.get("image_url"))
                ]
                if not cleaned_items:
                    continue
                cleaned_content = cleaned_items
            else:
                cleaned_content = json.dumps(content, ensure_ascii=True)
            sanitized.append({"role": role, "content": cleaned_content})
        return sanitized

    def _sanitize_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in payload.items() if k not in DISALLOWED_FIELDS and v is not None}

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def _prepare_payload(
        self,
        payload: Dict[str, Any],
        base_url: str,
        run_state: Optional[Any],
    ) -> Dict[str, Any]:
        cleaned = self._sanitize_payload(payload)
        cleaned["messages"] = self._sanitize_messages(cleaned.get("messages"))
        if not cleaned.get("messages"):
            _run_state_add_trace(run_state, "Invalid payload: empty messages.")
            raise ValueError("messages must include at least one non-empty entry")
        model = str(cleaned.get("model") or "").strip()
        if not model:
            _run_state_add_trace(run_state, "Invalid payload: missing model.")
            raise ValueError("model is required")
        try:
            available = await self.list_models_cached(base_url)
        except (httpx.HTTPError, ValueError) as exc:
            # Hosted endpoints may not expose /models; send the configured id unchanged.
            _run_state_add_trace(run_state, "Model list lookup failed", {"error": str(exc)})
            return cleaned
        available = [m for m in available if m and "embed" not in m.lower()]
        cleaned["model"] = resolve_model_id(model, available) or model
        return cleaned

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
        response_format: Optional[dict] = None,
        base_url: Optional[str] = None,
        run_state: Optional[Any] = None,
    ) -> Dict[str, Any]:
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        target_base = (base_url or self.base_url).rstrip("/")
        url = f"{target_base}/chat/completions"
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": False,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice or "auto"
        if response_format:
            payload["response_format"] = response_format
        payload = await self._prepare_payload(payload, target_base, run_state)
        try:
            resp = await self.client.post(url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            _run_state_add_trace(
                run_state,
                "Chat completion rejected.",
                {"status_code": exc.response.status_code, "detail": detail},
            )
            raise
        data = resp.json()
        if isinstance(data, dict) and payload.get("model"):
            data["_model_used"] = payload.get("model")
        try:
            choices = data.get("choices") or []
            if choices:
                message = choices[0].get("message") or {}
                content = message.get("content")
                if (content is None or content == "") and not message.get("tool_calls"):
                    fallback = message.get("reasoning") or message.get("reasoning_content")
                    if fallback:
                        message["content"] = fallback
                        choices[0]["message"] = message
        except Exception:
            pass
        return data

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
