import logging
from typing import Any, Dict, List, Optional

from . import agents
from .errors import ReasoningError
from .reasoning import ReasoningProvider
from .schemas import PageSummary, ReportOutput, ResearchState


logger = logging.getLogger("uvicorn.error")


def ordered_summaries(state: ResearchState) -> List[PageSummary]:
    """Summaries in search-result order, independent of worker completion order."""
    rank = {result.url: idx for idx, result in enumerate(state.search_results)}
    return sorted(state.page_summaries, key=lambda item: (rank.get(item.url, len(rank)), item.url))


def fallback_report(goal: str, state: ResearchState) -> str:
    titles = {r.url: r.title for r in state.search_results}
    summaries = ordered_summaries(state)
    readable = [s for s in summaries if s.accessible]
    lines = [
        f"# Research Report: {goal}",
        "",
        "## Table of Contents",
        "- Executive Summary",
        "- Detailed Findings",
        "- Citations",
        "",
        "## Executive Summary",
        f"{len(readable)} of {len(summaries)} sources could be read. Their summaries are listed below unedited.",
        "",
        "## Detailed Findings",
    ]
    for idx, item in enumerate(summaries, start=1):
        lines.append("")
        lines.append(f"### Source {idx}: {titles.get(item.url) or item.url}")
        lines.append(item.summary)
        lines.append(f"- Source: {item.url}")
    lines.append("")
    lines.append("## Citations")
    for idx, item in enumerate(summaries, start=1):
        lines.append(f"{idx}. {titles.get(item.url) or 'Source'} - {item.url}")
    return "\n".join(lines)


async def synthesize(
    provider: ReasoningProvider,
    goal: str,
    state: ResearchState,
    *,
    max_rounds: int = 3,
    run_state: Optional[Any] = None,
) -> ResearchState:
    if not state.ready_for_synthesis():
        raise ValueError(
            f"synthesis requested with {len(state.processed_urls)} of {len(state.search_results)} pages processed"
        )
    titles: Dict[str, str] = {r.url: r.title for r in state.search_results}
    summaries = [item.model_dump() for item in ordered_summaries(state)]
    system_prompt = agents.SYNTHESIZER_SYSTEM.format(
        topic=goal,
        summaries=agents.build_summaries_block(summaries, titles),
    )
    report = ""
    try:
        result = await provider.invoke(
            [{"role": "user", "content": f"Write the research report for: {goal}"}],
            system_prompt=system_prompt,
            schema=ReportOutput,
            max_rounds=max_rounds,
        )
        report = result.structured.final_report.strip()
    except ReasoningError as exc:
        logger.warning("Synthesis failed, using fallback report: %s", exc)
        if run_state is not None:
            run_state.add_dev_trace("Synthesis fallback", {"error": str(exc)})
    if not report:
        report = fallback_report(goal, state)
    return state.model_copy(update={"final_report": report, "status": "completed"})
