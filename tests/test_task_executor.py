import pytest

from tabpilot.errors import PlanGenerationError
from tabpilot.schemas import OrchestrationState, PlanItem
from tabpilot.task_executor import (
    COMPLETING_CURRENT,
    DECOMPOSING,
    SELECTING,
    TERMINATED,
    TaskExecutor,
    select_transition,
)
from tests.fakes import FakeReasoningProvider


def make_state(task_statuses, subtask_statuses=(), task_index=0):
    tasks = [PlanItem(id=str(i), label=f"task {i}", status=s) for i, s in enumerate(task_statuses, start=1)]
    subtasks = [PlanItem(id=str(i), label=f"sub {i}", status=s) for i, s in enumerate(subtask_statuses, start=1)]
    return OrchestrationState(task_plan=tasks, subtask_plan=subtasks, current_task_index=task_index)


def test_completed_subtasks_complete_the_task_and_advance():
    state = make_state(["in_progress", "pending"], ["completed", "completed"], task_index=0)
    state.current_subtask_index = -1
    assert select_transition(state) == COMPLETING_CURRENT
    assert state.task_plan[0].status == "completed"
    assert state.current_task_index == 1
    assert state.current_subtask_index == 0
    assert state.subtask_plan == []
    assert select_transition(state) == SELECTING
    assert state.current_task_index == 1


def test_last_task_completion_terminates():
    state = make_state(["completed", "in_progress"], ["completed"], task_index=1)
    assert select_transition(state) == COMPLETING_CURRENT
    assert select_transition(state) == TERMINATED
    assert state.outcome == "completed"
    assert state.current_task_index == -1
    assert state.current_subtask_index == -1
    assert state.subtask_plan == []


def test_empty_task_plan_terminates():
    state = OrchestrationState()
    assert select_transition(state) == TERMINATED
    assert state.outcome == "completed"


def test_out_of_range_index_terminates():
    state = make_state(["pending"], task_index=5)
    assert select_transition(state) == TERMINATED


def test_pending_subtasks_do_not_complete_task():
    state = make_state(["in_progress"], ["completed", "pending"])
    assert select_transition(state) == SELECTING
    assert state.task_plan[0].status == "in_progress"
    assert len(state.subtask_plan) == 2


@pytest.mark.asyncio
async def test_decomposes_selected_task():
    provider = FakeReasoningProvider(
        responses={"SubtaskPlanOutput": [{"subtask_plan": ["open menu", {"label": "click login"}]}]}
    )
    executor = TaskExecutor(provider)
    state = make_state(["pending", "pending"])
    phase = await executor.advance(state, [{"role": "user", "content": "log in"}])
    assert phase == DECOMPOSING
    assert executor.phase == DECOMPOSING
    assert state.task_plan[0].status == "in_progress"
    assert [s.id for s in state.subtask_plan] == ["1", "2"]
    assert all(s.status == "pending" for s in state.subtask_plan)
    prompt = provider.calls[0]["system_prompt"]
    assert "SYSTEM (SUBTASK PLANNER)" in prompt
    assert "Previous attempt failed" not in prompt


@pytest.mark.asyncio
async def test_failed_subtask_triggers_replan_with_failure_context():
    provider = FakeReasoningProvider(responses={"SubtaskPlanOutput": [{"subtask_plan": ["try search box"]}]})
    executor = TaskExecutor(provider)
    state = make_state(["in_progress"], ["completed", "failed", "pending"])
    state.subtask_plan[1].results.append("Button 12 was not on the page")
    phase = await executor.advance(state, [])
    assert phase == DECOMPOSING
    assert state.replan_attempts == {"1": 1}
    prompt = provider.calls[0]["system_prompt"]
    assert "Previous attempt failed" in prompt
    assert "Button 12 was not on the page" in prompt
    assert "sub 3" in prompt
    assert "Do NOT simply repeat the same plan" in prompt
    assert [s.label for s in state.subtask_plan] == ["try search box"]


@pytest.mark.asyncio
async def test_failure_without_results_uses_placeholder():
    provider = FakeReasoningProvider(responses={"SubtaskPlanOutput": [{"subtask_plan": ["again"]}]})
    state = make_state(["in_progress"], ["failed"])
    await TaskExecutor(provider).advance(state, [])
    assert "No explanation provided" in provider.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_replan_cap_fails_the_task():
    provider = FakeReasoningProvider(responses={"SubtaskPlanOutput": []})
    executor = TaskExecutor(provider, max_replans_per_task=2)
    state = make_state(["in_progress", "pending"], ["failed"])
    state.replan_attempts["1"] = 2
    phase = await executor.advance(state, [])
    assert phase == TERMINATED
    assert state.task_plan[0].status == "failed"
    assert state.outcome == "failed"
    assert state.current_task_index == -1
    assert state.subtask_plan[0].status == "failed"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_empty_subtask_plan_raises_with_snapshot():
    provider = FakeReasoningProvider(responses={"SubtaskPlanOutput": [{"subtask_plan": []}]})
    state = make_state(["pending"])
    with pytest.raises(PlanGenerationError) as excinfo:
        await TaskExecutor(provider).advance(state, [])
    assert excinfo.value.snapshot["task_plan"][0]["id"] == "1"


@pytest.mark.asyncio
async def test_phase_sequence_across_task_completion():
    provider = FakeReasoningProvider(
        responses={"SubtaskPlanOutput": [{"subtask_plan": ["first"]}, {"subtask_plan": ["second"]}]}
    )
    executor = TaskExecutor(provider)
    state = make_state(["pending", "pending"])

    assert await executor.advance(state, []) == DECOMPOSING
    state.subtask_plan[0].status = "completed"
    assert await executor.advance(state, []) == DECOMPOSING
    assert state.task_plan[0].status == "completed"
    assert state.current_task_index == 1
    state.subtask_plan[0].status = "completed"
    assert await executor.advance(state, []) == TERMINATED

    assert executor.phase_history == [
        SELECTING,
        DECOMPOSING,
        COMPLETING_CURRENT,
        SELECTING,
        DECOMPOSING,
        COMPLETING_CURRENT,
        TERMINATED,
    ]
    assert state.outcome == "completed"
