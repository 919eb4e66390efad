import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .browser import BrowserClient
from .config import AppSettings
from .page_worker import PageWorker
from .reasoning import ReasoningProvider
from .schemas import PageSummary, ResearchState, SearchResult
from .search_planner import plan_search
from .synthesizer import synthesize


logger = logging.getLogger("uvicorn.error")

Emit = Callable[[str, dict], Awaitable[Any]]


def merge_worker_output(state: ResearchState, summary: PageSummary) -> ResearchState:
    """Fold one worker's output into the shared state by concatenation."""
    return state.model_copy(
        update={
            "page_summaries": [*state.page_summaries, summary],
            "processed_urls": [*state.processed_urls, summary.url],
        }
    )


async def fan_out(
    results: List[SearchResult],
    worker: PageWorker,
    goal: str,
    session_id: str,
    state: ResearchState,
    *,
    max_parallel: int,
    emit: Emit,
) -> ResearchState:
    """One worker per result, at most `max_parallel` at a time; merges as each finishes."""
    semaphore = asyncio.Semaphore(max(1, max_parallel))

    async def run_one(result: SearchResult) -> PageSummary:
        async with semaphore:
            await emit("worker_started", {"url": result.url, "title": result.title})
            return await worker.run(result.url, goal, session_id)

    running: Dict[asyncio.Task, str] = {asyncio.create_task(run_one(result)): result.url for result in results}
    pending = set(running)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                url = running[task]
                try:
                    summary = task.result()
                except Exception as exc:
                    logger.warning("Page worker for %s crashed: %s", url, exc)
                    summary = PageSummary(url=url, summary=f"Page inaccessible: worker error ({exc}).", accessible=False)
                state = merge_worker_output(state, summary)
                await emit("worker_completed", {"url": url, "accessible": summary.accessible})
                await emit("research_status", state.snapshot())
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    return state


async def run_research_pipeline(
    *,
    conversation: List[Dict[str, Any]],
    goal: str,
    searcher: ReasoningProvider,
    researcher: ReasoningProvider,
    synthesizer: ReasoningProvider,
    browser: BrowserClient,
    session_id: str,
    settings: AppSettings,
    emit: Emit,
    run_state: Optional[Any] = None,
) -> ResearchState:
    results = await plan_search(
        searcher,
        browser,
        conversation,
        goal,
        session_id,
        search_url_template=settings.search_url_template,
        max_results=settings.max_search_results,
        max_rounds=settings.search_planner_max_rounds,
        short_timeout_s=settings.tool_timeout_short_s,
        long_timeout_s=settings.tool_timeout_long_s,
        run_state=run_state,
    )
    state = ResearchState(search_results=results)
    await emit("research_status", state.snapshot())
    worker = PageWorker(
        researcher,
        browser,
        max_rounds=settings.page_worker_max_rounds,
        short_timeout_s=settings.tool_timeout_short_s,
        long_timeout_s=settings.tool_timeout_long_s,
        run_state=run_state,
    )
    state = await fan_out(
        results,
        worker,
        goal,
        session_id,
        state,
        max_parallel=settings.max_parallel_workers,
        emit=emit,
    )
    if state.ready_for_synthesis():
        state = await synthesize(synthesizer, goal, state, run_state=run_state)
        await emit("research_status", state.snapshot())
    return state
