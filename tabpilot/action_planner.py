import logging
from typing import Any, Dict, List, Optional

from . import agents
from .errors import PlanGenerationError, ReasoningError
from .reasoning import ReasoningProvider
from .schemas import OrchestrationState, TaskPlanOutput, number_plan


logger = logging.getLogger("uvicorn.error")

MIN_TASKS = 3


async def plan_tasks(
    provider: ReasoningProvider,
    conversation: List[Dict[str, Any]],
    *,
    max_tasks: int = 10,
    max_rounds: int = 3,
    run_state: Optional[Any] = None,
) -> OrchestrationState:
    """Turn the request into an ordered list of coarse pending tasks.

    Ids are renumbered "1".."n" here; whatever the model sent is ignored. Plans longer
    than `max_tasks` are truncated. Short plans are kept.
    """
    try:
        result = await provider.invoke(
            conversation,
            system_prompt=agents.ACTION_PLANNER_SYSTEM,
            schema=TaskPlanOutput,
            max_rounds=max_rounds,
        )
    except ReasoningError as exc:
        raise PlanGenerationError(f"task planning failed: {exc}") from exc
    drafts = [draft for draft in result.structured.task_plan if draft.label.strip()]
    if not drafts:
        raise PlanGenerationError("task planner returned an empty plan")
    if len(drafts) > max_tasks:
        logger.info("Task plan truncated from %s to %s items", len(drafts), max_tasks)
        if run_state is not None:
            run_state.add_dev_trace("Task plan truncated", {"received": len(drafts), "kept": max_tasks})
        drafts = drafts[:max_tasks]
    if len(drafts) < MIN_TASKS and run_state is not None:
        run_state.add_dev_trace("Task plan shorter than usual", {"tasks": len(drafts)})
    return OrchestrationState(
        task_plan=number_plan(drafts),
        subtask_plan=[],
        current_task_index=0,
        current_subtask_index=0,
    )
