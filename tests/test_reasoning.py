from typing import List

import httpx
import pytest
from pydantic import BaseModel

from tabpilot.config import EndpointConfig
from tabpilot.errors import ReasoningError, RoundTripLimitExceeded
from tabpilot.reasoning import SUBMIT_TOOL, ReasoningProvider, extract_json, submission_tool
from tests.fakes import FakeChatClient, reply, submit, tool_call

MARKER = "SYSTEM (TEST)"


class Answer(BaseModel):
    answer: str
    sources: List[str] = []


class RecordingTools:
    specs = [{"type": "function", "function": {"name": "lookup", "parameters": {"type": "object"}}}]

    def __init__(self):
        self.calls = []

    async def dispatch(self, name, args):
        self.calls.append((name, args))
        return f"OK: looked up {args.get('q')}"


def make_provider(script):
    lm = FakeChatClient(scripts={MARKER: script})
    endpoint = EndpointConfig(base_url="http://llm.test/v1", model_id="test-model")
    return ReasoningProvider(lm, endpoint), lm


def test_submission_tool_uses_schema_parameters():
    spec = submission_tool(Answer)
    assert spec["function"]["name"] == SUBMIT_TOOL
    assert "answer" in spec["function"]["parameters"]["properties"]
    assert "title" not in spec["function"]["parameters"]


def test_extract_json_handles_fences_and_prose():
    assert extract_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert extract_json('Here you go: {"a": 2} thanks') == {"a": 2}
    assert extract_json("no json here") is None


@pytest.mark.asyncio
async def test_tool_round_then_submission():
    provider, lm = make_provider(
        [
            reply(tool_calls=[tool_call("lookup", {"q": "weather"}, call_id="c1")]),
            submit({"answer": "sunny", "sources": ["x"]}),
        ]
    )
    tools = RecordingTools()
    result = await provider.invoke(
        [{"role": "user", "content": "weather?"}], system_prompt=MARKER, schema=Answer, tools=tools, max_rounds=4
    )
    assert result.structured.answer == "sunny"
    assert result.rounds == 2
    assert result.tool_calls == 1
    assert tools.calls == [("lookup", {"q": "weather"})]
    assert result.turns[1] == {"role": "tool", "tool_call_id": "c1", "content": "OK: looked up weather"}
    assert lm.calls[0]["tools"] == ["lookup", SUBMIT_TOOL]
    second_request = lm.calls[1]["messages"]
    assert second_request[-1]["role"] == "tool"


@pytest.mark.asyncio
async def test_invalid_submission_is_returned_to_model():
    provider, lm = make_provider([submit({"sources": []}), submit({"answer": "fixed"})])
    result = await provider.invoke([{"role": "user", "content": "q"}], system_prompt=MARKER, schema=Answer)
    assert result.structured.answer == "fixed"
    feedback = result.turns[1]
    assert feedback["role"] == "tool"
    assert "Invalid submission" in feedback["content"]
    assert "answer" in feedback["content"]


@pytest.mark.asyncio
async def test_plain_json_content_is_accepted():
    provider, _ = make_provider([reply('```json\n{"answer": "plain"}\n```')])
    result = await provider.invoke([{"role": "user", "content": "q"}], system_prompt=MARKER, schema=Answer)
    assert result.structured.answer == "plain"
    assert result.rounds == 1


@pytest.mark.asyncio
async def test_prose_reply_gets_nudged_then_round_cap_raises():
    provider, lm = make_provider([reply("thinking..."), reply("still thinking")])
    with pytest.raises(RoundTripLimitExceeded) as excinfo:
        await provider.invoke([{"role": "user", "content": "q"}], system_prompt=MARKER, schema=Answer, max_rounds=2)
    assert excinfo.value.rounds == 2
    assert len(lm.calls) == 2
    assert SUBMIT_TOOL in lm.calls[1]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_unknown_tool_call_is_answered_not_dispatched():
    provider, _ = make_provider(
        [reply(tool_calls=[tool_call("teleport", {}, call_id="c9")]), submit({"answer": "ok"})]
    )
    tools = RecordingTools()
    result = await provider.invoke(
        [{"role": "user", "content": "q"}], system_prompt=MARKER, schema=Answer, tools=tools
    )
    assert tools.calls == []
    assert result.turns[1]["content"] == "Unknown tool: teleport"


@pytest.mark.asyncio
async def test_calls_after_accepted_submission_are_skipped():
    provider, _ = make_provider(
        [
            reply(
                tool_calls=[
                    tool_call(SUBMIT_TOOL, {"answer": "done"}, call_id="a"),
                    tool_call("lookup", {"q": "late"}, call_id="b"),
                ]
            )
        ]
    )
    tools = RecordingTools()
    result = await provider.invoke(
        [{"role": "user", "content": "q"}], system_prompt=MARKER, schema=Answer, tools=tools
    )
    assert result.structured.answer == "done"
    assert tools.calls == []
    assert result.turns[-1]["content"].startswith("Skipped")


@pytest.mark.asyncio
async def test_transport_failure_becomes_reasoning_error():
    provider, _ = make_provider([httpx.ConnectError("refused")])
    with pytest.raises(ReasoningError) as excinfo:
        await provider.invoke([{"role": "user", "content": "q"}], system_prompt=MARKER, schema=Answer)
    assert not isinstance(excinfo.value, RoundTripLimitExceeded)
