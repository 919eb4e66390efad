import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

import httpx
from pydantic import BaseModel, ValidationError

from .config import EndpointConfig
from .errors import ReasoningError, RoundTripLimitExceeded
from .llm import ChatClient


logger = logging.getLogger("uvicorn.error")

SUBMIT_TOOL = "submit_result"
SUBMIT_NUDGE = (
    f"Continue working with the available tools. When you are done, call `{SUBMIT_TOOL}` "
    "with arguments matching its schema. Do not answer in plain text."
)
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


@dataclass
class InvokeResult:
    turns: List[Dict[str, Any]]
    structured: Any
    rounds: int
    tool_calls: int = 0


def submission_tool(schema: Type[BaseModel]) -> Dict[str, Any]:
    parameters = schema.model_json_schema()
    parameters.pop("title", None)
    return {
        "type": "function",
        "function": {
            "name": SUBMIT_TOOL,
            "description": "Submit the final structured result. Call exactly once, when the work is finished.",
            "parameters": parameters,
        },
    }


def extract_json(raw: str) -> Optional[Any]:
    text = (raw or "").strip()
    if not text:
        return None
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    try:
        return json.loads(text)
    except Exception:
        pass
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(text[start : end + 1])
    except Exception:
        return None


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    parsed = extract_json(str(raw or ""))
    return parsed if isinstance(parsed, dict) else {}


def _validation_message(exc: ValidationError) -> str:
    problems = [f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in exc.errors()]
    return "Invalid submission, fix these fields and call submit_result again: " + "; ".join(problems[:8])


class ReasoningProvider:
    """Drives one structured-output exchange: optional tool loop, then a validated submission."""

    def __init__(
        self,
        lm_client: ChatClient,
        endpoint: EndpointConfig,
        *,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        run_state: Optional[Any] = None,
    ):
        self.lm_client = lm_client
        self.endpoint = endpoint
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.run_state = run_state

    async def _complete(self, messages: List[Dict[str, Any]], tool_specs: List[Dict[str, Any]]) -> Dict[str, Any]:
        try:
            resp = await self.lm_client.chat_completion(
                model=self.endpoint.model_id,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                tools=tool_specs,
                base_url=self.endpoint.base_url,
                run_state=self.run_state,
            )
        except (httpx.HTTPError, ValueError) as exc:
            raise ReasoningError(f"chat completion failed: {exc}") from exc
        try:
            return resp["choices"][0]["message"] or {}
        except (KeyError, IndexError, TypeError) as exc:
            raise ReasoningError("chat completion returned no choices") from exc

    async def invoke(
        self,
        conversation: List[Dict[str, Any]],
        *,
        system_prompt: str,
        schema: Type[BaseModel],
        tools: Optional[Any] = None,
        max_rounds: int = 3,
    ) -> InvokeResult:
        """Run the tool loop until a submission validates against `schema`.

        `tools` is any object exposing `specs` and `async dispatch(name, arguments) -> str`.
        Tool calls inside one reply run sequentially. Raises RoundTripLimitExceeded once
        `max_rounds` model replies pass without an accepted submission.
        """
        base_messages = [{"role": "system", "content": system_prompt}, *conversation]
        tool_specs = list(getattr(tools, "specs", None) or []) + [submission_tool(schema)]
        known = {spec["function"]["name"] for spec in tool_specs}
        turns: List[Dict[str, Any]] = []
        calls_made = 0
        for round_no in range(1, max_rounds + 1):
            message = await self._complete(base_messages + turns, tool_specs)
            tool_calls = message.get("tool_calls") or []
            content = message.get("content") or ""
            if not tool_calls:
                parsed = extract_json(content)
                if isinstance(parsed, dict):
                    try:
                        structured = schema.model_validate(parsed)
                        turns.append({"role": "assistant", "content": content})
                        return InvokeResult(turns=turns, structured=structured, rounds=round_no, tool_calls=calls_made)
                    except ValidationError as exc:
                        turns.append({"role": "assistant", "content": content})
                        turns.append({"role": "user", "content": _validation_message(exc)})
                        continue
                if content.strip():
                    turns.append({"role": "assistant", "content": content})
                turns.append({"role": "user", "content": SUBMIT_NUDGE})
                continue

            normalized_calls = []
            for idx, call in enumerate(tool_calls):
                fn = call.get("function") or {}
                normalized_calls.append(
                    {
                        "id": call.get("id") or f"call_{round_no}_{idx}",
                        "type": "function",
                        "function": {"name": fn.get("name") or "", "arguments": fn.get("arguments") or "{}"},
                    }
                )
            turns.append({"role": "assistant", "content": content, "tool_calls": normalized_calls})
            accepted: Optional[BaseModel] = None
            for call in normalized_calls:
                call_id = call["id"]
                name = call["function"]["name"]
                if accepted is not None:
                    turns.append({"role": "tool", "tool_call_id": call_id, "content": "Skipped: result already submitted."})
                    continue
                args = _parse_arguments(call["function"]["arguments"])
                if name == SUBMIT_TOOL:
                    try:
                        accepted = schema.model_validate(args)
                        turns.append({"role": "tool", "tool_call_id": call_id, "content": "Result accepted."})
                    except ValidationError as exc:
                        turns.append({"role": "tool", "tool_call_id": call_id, "content": _validation_message(exc)})
                    continue
                if name not in known or tools is None:
                    turns.append({"role": "tool", "tool_call_id": call_id, "content": f"Unknown tool: {name}"})
                    continue
                calls_made += 1
                result = await tools.dispatch(name, args)
                turns.append({"role": "tool", "tool_call_id": call_id, "content": result})
            if accepted is not None:
                return InvokeResult(turns=turns, structured=accepted, rounds=round_no, tool_calls=calls_made)
        logger.info("Reasoning loop hit round cap (%s) for %s", max_rounds, schema.__name__)
        raise RoundTripLimitExceeded(max_rounds)
