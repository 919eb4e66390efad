import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .action_executor import ActionExecutor
from .action_planner import plan_tasks
from .browser import BrowserClient, BrowserContext
from .config import AppSettings
from .errors import OrchestrationError
from .reasoning import ReasoningProvider
from .schemas import OrchestrationState
from .task_executor import TERMINATED, TaskExecutor
from .tools import ACTION_TOOLSET, ToolBox


logger = logging.getLogger("uvicorn.error")

Emit = Callable[[str, dict], Awaitable[Any]]


async def ensure_tab(browser: BrowserClient, ctx: BrowserContext) -> Optional[str]:
    """Open a tab when the caller gave none; returns the id of a tab opened here."""
    if ctx.tab_id:
        return None
    opened = await browser.create_tab(ctx.session_id)
    if not opened.success:
        raise OrchestrationError(f"could not open a browser tab: {opened.detail}")
    ctx.tab_id = opened.data["tab_id"]
    return ctx.tab_id


async def close_tabs(browser: BrowserClient, session_id: str, tab_ids: List[str]) -> None:
    for tab_id in tab_ids:
        closed = await browser.close_tab(BrowserContext(session_id=session_id, tab_id=tab_id))
        if not closed.success:
            logger.info("Tab %s not closed: %s", tab_id, closed.detail)


async def run_action_pipeline(
    *,
    conversation: List[Dict[str, Any]],
    planner: ReasoningProvider,
    executor: ReasoningProvider,
    browser: BrowserClient,
    ctx: BrowserContext,
    settings: AppSettings,
    emit: Emit,
    run_state: Optional[Any] = None,
) -> OrchestrationState:
    """Plan tasks, then alternate task decomposition and subtask execution until termination.

    Tabs opened by the pipeline itself are closed on the way out; a tab passed in by the
    caller is left open.
    """
    state = await plan_tasks(planner, conversation, max_tasks=settings.max_tasks, run_state=run_state)

    async def report(current: OrchestrationState) -> None:
        await emit("action_status", {**current.snapshot(), "phase": task_executor.phase})

    task_executor = TaskExecutor(
        planner,
        max_replans_per_task=settings.max_replans_per_task,
        run_state=run_state,
        on_task_completed=report,
    )

    await report(state)
    owned_tabs: List[str] = []
    opened = await ensure_tab(browser, ctx)
    if opened:
        owned_tabs.append(opened)
    action_executor = ActionExecutor(
        executor,
        max_rounds=settings.subtask_max_rounds,
        max_context_turns=settings.max_context_turns,
        run_state=run_state,
        on_progress=report,
    )
    tools = ToolBox(
        browser,
        ctx,
        ACTION_TOOLSET,
        short_timeout_s=settings.tool_timeout_short_s,
        long_timeout_s=settings.tool_timeout_long_s,
    )
    context = list(conversation)
    executed = 0
    try:
        while True:
            phase = await task_executor.advance(state, conversation)
            await report(state)
            if phase == TERMINATED:
                break
            result = await action_executor.run(state, context, tools)
            context = result.context
            executed += result.executed
    finally:
        await close_tabs(browser, ctx.session_id, owned_tabs + tools.opened_tabs)
    logger.info(
        "Action pipeline finished with outcome=%s after %s subtask runs and %s tool calls",
        state.outcome,
        executed,
        len(tools.history),
    )
    if run_state is not None:
        run_state.add_dev_trace("Action pipeline finished", {"outcome": state.outcome, "subtask_runs": executed})
    return state
