import pytest

from tabpilot.action_executor import ActionExecutor, build_instruction, trim_context
from tabpilot.browser import BrowserContext
from tabpilot.errors import RoundTripLimitExceeded
from tabpilot.schemas import OrchestrationState, PlanItem
from tabpilot.tools import ToolBox
from tests.fakes import FakeBrowserClient, FakeReasoningProvider


def make_state(n_subtasks=3):
    return OrchestrationState(
        task_plan=[PlanItem(id="1", label="Log in", status="in_progress")],
        subtask_plan=[PlanItem(id=str(i), label=f"sub {i}") for i in range(1, n_subtasks + 1)],
    )


def make_tools():
    return ToolBox(FakeBrowserClient(), BrowserContext("s1", "t1"))


def test_trim_context_drops_orphaned_tool_turns():
    turns = [
        {"role": "user", "content": "u1"},
        {"role": "assistant", "content": "", "tool_calls": [{"id": "c1"}]},
        {"role": "tool", "tool_call_id": "c1", "content": "r1"},
        {"role": "tool", "tool_call_id": "c2", "content": "r2"},
        {"role": "assistant", "content": "done"},
    ]
    assert trim_context(turns, 10) == turns
    assert trim_context(turns, 3) == [turns[-1]]
    assert trim_context(turns, 4) == turns[-4:]


def test_instruction_lists_completed_subtasks():
    done = PlanItem(id="1", label="open menu", status="completed", results=["menu open"])
    current = PlanItem(id="2", label="click login")
    instruction = build_instruction(PlanItem(id="1", label="Log in"), current, [done])
    assert instruction["role"] == "user"
    assert "open menu: menu open" in instruction["content"]
    assert '"label": "click login"' in instruction["content"]


@pytest.mark.asyncio
async def test_failure_stops_the_pass_and_leaves_rest_pending():
    provider = FakeReasoningProvider(
        responses={
            "SubtaskVerdict": [
                {"is_successful": True, "explanation": "menu opened"},
                {"is_successful": False, "explanation": "no login link"},
            ]
        }
    )
    progress = []

    async def on_progress(state):
        progress.append([s.status for s in state.subtask_plan])

    executor = ActionExecutor(provider, on_progress=on_progress)
    state = make_state()
    result = await executor.run(state, [{"role": "user", "content": "log in"}], make_tools())
    assert result.failed is True
    assert result.executed == 2
    assert [s.status for s in state.subtask_plan] == ["completed", "failed", "pending"]
    assert state.subtask_plan[1].results == ["no login link"]
    assert state.current_subtask_index == 1
    assert progress == [["completed", "pending", "pending"], ["completed", "failed", "pending"]]
    second_call = provider.calls[1]["conversation"]
    assert "menu opened" in second_call[-1]["content"]


@pytest.mark.asyncio
async def test_all_subtasks_complete_and_context_grows():
    provider = FakeReasoningProvider(
        responses={"SubtaskVerdict": [{"is_successful": True, "explanation": f"ok {i}"} for i in range(3)]}
    )
    executor = ActionExecutor(provider)
    state = make_state()
    result = await executor.run(state, [{"role": "user", "content": "go"}], make_tools())
    assert result.failed is False
    assert all(s.status == "completed" for s in state.subtask_plan)
    assert state.current_subtask_index == -1
    # goal + (instruction + submit call + tool ack) per subtask
    assert len(result.context) == 1 + 3 * 3
    assert provider.calls[0]["schema"] == "SubtaskVerdict"
    assert provider.calls[0]["max_rounds"] == 25


@pytest.mark.asyncio
async def test_context_is_trimmed_to_budget():
    provider = FakeReasoningProvider(
        responses={"SubtaskVerdict": [{"is_successful": True, "explanation": "ok"} for _ in range(3)]}
    )
    executor = ActionExecutor(provider, max_context_turns=4)
    result = await executor.run(make_state(), [{"role": "user", "content": "go"}], make_tools())
    assert len(result.context) <= 4
    assert result.context[0]["role"] != "tool"


@pytest.mark.asyncio
async def test_round_cap_becomes_failed_verdict():
    provider = FakeReasoningProvider(responses={"SubtaskVerdict": [RoundTripLimitExceeded(25)]})
    state = make_state(2)
    result = await ActionExecutor(provider).run(state, [], make_tools())
    assert result.failed is True
    assert state.subtask_plan[0].status == "failed"
    assert state.subtask_plan[0].results[0].startswith("Execution aborted")
    assert state.subtask_plan[1].status == "pending"
