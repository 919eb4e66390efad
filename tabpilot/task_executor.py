import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from . import agents
from .errors import PlanGenerationError, ReasoningError
from .reasoning import ReasoningProvider
from .schemas import OrchestrationState, PlanItem, SubtaskPlanOutput, number_plan


logger = logging.getLogger("uvicorn.error")

SELECTING = "selecting"
COMPLETING_CURRENT = "completing_current"
TERMINATED = "terminated"
DECOMPOSING = "decomposing"


def all_subtasks_completed(subtask_plan: List[PlanItem]) -> bool:
    return bool(subtask_plan) and all(item.status == "completed" for item in subtask_plan)


def all_tasks_completed(task_plan: List[PlanItem]) -> bool:
    return all(item.status == "completed" for item in task_plan)


def _terminate(state: OrchestrationState, outcome: str, keep_subtasks: bool = False) -> None:
    if not keep_subtasks:
        state.subtask_plan = []
    state.current_task_index = -1
    state.current_subtask_index = -1
    state.outcome = outcome  # type: ignore[assignment]


def select_transition(state: OrchestrationState) -> str:
    """One bookkeeping step taken each time control returns to the task executor.

    Mutates `state` in place. Returns COMPLETING_CURRENT when the current Task was just
    closed out (call again to select the next one), otherwise TERMINATED or SELECTING.
    """
    index = state.current_task_index
    if index != -1 and all_subtasks_completed(state.subtask_plan):
        if 0 <= index < len(state.task_plan):
            state.task_plan[index].status = "completed"
        state.current_task_index = index + 1
        state.current_subtask_index = 0
        state.subtask_plan = []
        return COMPLETING_CURRENT
    if index == -1 or all_tasks_completed(state.task_plan) or index >= len(state.task_plan):
        _terminate(state, "completed")
        return TERMINATED
    return SELECTING


def failed_subtask(subtask_plan: List[PlanItem]) -> Optional[PlanItem]:
    return next((item for item in subtask_plan if item.status == "failed"), None)


class TaskExecutor:
    def __init__(
        self,
        provider: ReasoningProvider,
        *,
        max_replans_per_task: int = 3,
        max_rounds: int = 3,
        run_state: Optional[Any] = None,
        on_task_completed: Optional[Callable[[OrchestrationState], Awaitable[None]]] = None,
    ):
        self.provider = provider
        self.on_task_completed = on_task_completed
        self.max_replans_per_task = max_replans_per_task
        self.max_rounds = max_rounds
        self.run_state = run_state
        self.phase = SELECTING
        self.phase_history: List[str] = []

    def _enter(self, phase: str) -> str:
        self.phase = phase
        self.phase_history.append(phase)
        return phase

    def _trace(self, message: str, detail: Optional[dict] = None) -> None:
        if self.run_state is not None:
            self.run_state.add_dev_trace(message, detail)

    async def advance(self, state: OrchestrationState, conversation: List[Dict[str, Any]]) -> str:
        """Move the workflow to its next phase; DECOMPOSING hands a fresh subtask plan to the executor."""
        phase = select_transition(state)
        if phase == COMPLETING_CURRENT:
            self._enter(phase)
            self._trace("Task completed", {"task_index": state.current_task_index - 1})
            if self.on_task_completed:
                await self.on_task_completed(state)
            phase = select_transition(state)
        if self._enter(phase) == TERMINATED:
            return phase

        task = state.task_plan[state.current_task_index]
        failure_context = ""
        failed = failed_subtask(state.subtask_plan)
        if failed is not None:
            attempts = state.replan_attempts.get(task.id, 0) + 1
            if attempts > self.max_replans_per_task:
                task.status = "failed"
                _terminate(state, "failed", keep_subtasks=True)
                logger.info("Task %s failed after %s replans", task.id, self.max_replans_per_task)
                self._trace("Replan limit reached", {"task_id": task.id, "failed_subtask": failed.id})
                return self._enter(TERMINATED)
            state.replan_attempts[task.id] = attempts
            failure_context = agents.build_failure_context([item.model_dump() for item in state.subtask_plan])
            self._trace("Replanning task", {"task_id": task.id, "attempt": attempts, "failed_subtask": failed.id})

        task.status = "in_progress"
        system_prompt = agents.build_subtask_planner_prompt(
            task.model_dump(),
            [item.model_dump() for item in state.task_plan],
            failure_context,
        )
        try:
            result = await self.provider.invoke(
                conversation,
                system_prompt=system_prompt,
                schema=SubtaskPlanOutput,
                max_rounds=self.max_rounds,
            )
        except ReasoningError as exc:
            raise PlanGenerationError(f"subtask planning failed for task {task.id}: {exc}", state.snapshot()) from exc
        drafts = [draft for draft in result.structured.subtask_plan if draft.label.strip()]
        if not drafts:
            raise PlanGenerationError(f"subtask planner returned no subtasks for task {task.id}", state.snapshot())
        state.subtask_plan = number_plan(drafts)
        state.current_subtask_index = 0
        return self._enter(DECOMPOSING)
