import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from . import agents
from .errors import ReasoningError
from .reasoning import ReasoningProvider
from .schemas import OrchestrationState, PlanItem, SubtaskVerdict
from .tools import ToolBox


logger = logging.getLogger("uvicorn.error")

ProgressCallback = Callable[[OrchestrationState], Awaitable[None]]


@dataclass
class ActionPassResult:
    failed: bool
    context: List[Dict[str, Any]] = field(default_factory=list)
    executed: int = 0


def trim_context(turns: List[Dict[str, Any]], max_turns: int) -> List[Dict[str, Any]]:
    """Keep the most recent `max_turns` turns; never start on a tool result cut off from its call."""
    if max_turns <= 0 or len(turns) <= max_turns:
        return list(turns)
    suffix = turns[-max_turns:]
    start = 0
    while start < len(suffix) and suffix[start].get("role") == "tool":
        start += 1
    return suffix[start:]


def build_instruction(task: Optional[PlanItem], subtask: PlanItem, completed: List[PlanItem]) -> Dict[str, Any]:
    lines = []
    if task is not None:
        lines.append(f"## Current task\n{task.label}: {task.description}")
    if completed:
        done = "\n".join(f"- {item.label}: {item.results[-1] if item.results else 'done'}" for item in completed)
        lines.append(f"## Subtasks already completed\n{done}")
    lines.append("## Subtask to execute now\n" + json.dumps(subtask.model_dump(), indent=2, ensure_ascii=False))
    return {"role": "user", "content": "\n\n".join(lines)}


class ActionExecutor:
    def __init__(
        self,
        provider: ReasoningProvider,
        *,
        max_rounds: int = 25,
        max_context_turns: int = 40,
        run_state: Optional[Any] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.provider = provider
        self.max_rounds = max_rounds
        self.max_context_turns = max_context_turns
        self.run_state = run_state
        self.on_progress = on_progress

    async def _judge(
        self,
        context: List[Dict[str, Any]],
        instruction: Dict[str, Any],
        tools: ToolBox,
    ) -> tuple[SubtaskVerdict, List[Dict[str, Any]]]:
        try:
            result = await self.provider.invoke(
                context + [instruction],
                system_prompt=agents.ACTION_EXECUTOR_SYSTEM,
                schema=SubtaskVerdict,
                tools=tools,
                max_rounds=self.max_rounds,
            )
        except ReasoningError as exc:
            logger.info("Subtask execution aborted: %s", exc)
            return SubtaskVerdict(is_successful=False, explanation=f"Execution aborted: {exc}"), []
        return result.structured, result.turns

    async def run(
        self,
        state: OrchestrationState,
        context: List[Dict[str, Any]],
        tools: ToolBox,
    ) -> ActionPassResult:
        """Execute subtasks in order from current_subtask_index until one fails or all complete."""
        running = list(context)
        task = state.current_task()
        completed_this_pass: List[PlanItem] = []
        executed = 0
        index = max(state.current_subtask_index, 0)
        while index < len(state.subtask_plan):
            subtask = state.subtask_plan[index]
            state.current_subtask_index = index
            subtask.status = "in_progress"
            instruction = build_instruction(task, subtask, completed_this_pass)
            verdict, turns = await self._judge(running, instruction, tools)
            executed += 1
            subtask.results.append(verdict.explanation)
            if not verdict.is_successful:
                subtask.status = "failed"
                if self.run_state is not None:
                    self.run_state.add_dev_trace(
                        "Subtask failed", {"subtask_id": subtask.id, "explanation": verdict.explanation}
                    )
                if self.on_progress:
                    await self.on_progress(state)
                return ActionPassResult(failed=True, context=running, executed=executed)
            subtask.status = "completed"
            completed_this_pass.append(subtask)
            running = trim_context(running + [instruction] + turns, self.max_context_turns)
            index += 1
            state.current_subtask_index = index if index < len(state.subtask_plan) else -1
            if self.on_progress:
                await self.on_progress(state)
        state.current_subtask_index = -1
        return ActionPassResult(failed=False, context=running, executed=executed)
