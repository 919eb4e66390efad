import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus, urlparse

from . import agents
from .browser import BrowserClient, BrowserContext
from .errors import PlanGenerationError, ReasoningError
from .reasoning import ReasoningProvider
from .schemas import SearchResult, SearchResultsOutput
from .tools import SEARCH_TOOLSET, ToolBox


logger = logging.getLogger("uvicorn.error")


def build_search_url(template: str, goal: str) -> str:
    return template.replace("{query}", quote_plus(goal.strip()))


def _url_key(url: str) -> str:
    parsed = urlparse(url.strip())
    path = parsed.path.rstrip("/")
    query = f"?{parsed.query}" if parsed.query else ""
    return f"{parsed.netloc.lower()}{path}{query}"


def normalize_results(results: List[SearchResult], limit: int, search_host: str = "") -> List[SearchResult]:
    """Drop non-http(s) and search-engine links, de-duplicate by URL, keep at most `limit`."""
    seen = set()
    cleaned: List[SearchResult] = []
    for result in results:
        url = (result.url or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        if search_host and parsed.netloc.lower().endswith(search_host):
            continue
        key = _url_key(url)
        if key in seen:
            continue
        seen.add(key)
        cleaned.append(SearchResult(url=url, title=(result.title or "").strip()))
        if len(cleaned) >= limit:
            break
    return cleaned


async def plan_search(
    provider: ReasoningProvider,
    browser: BrowserClient,
    conversation: List[Dict[str, Any]],
    goal: str,
    session_id: str,
    *,
    search_url_template: str = "https://duckduckgo.com/?q={query}",
    max_results: int = 10,
    max_rounds: int = 12,
    short_timeout_s: float = 10.0,
    long_timeout_s: float = 45.0,
    run_state: Optional[Any] = None,
) -> List[SearchResult]:
    """Run one exploratory search in a dedicated tab and return the candidate pages."""
    search_url = build_search_url(search_url_template, goal)
    opened = await browser.create_tab(session_id, search_url)
    if not opened.success:
        raise PlanGenerationError(f"could not open search tab: {opened.detail}")
    ctx = BrowserContext(session_id=session_id, tab_id=opened.data["tab_id"])
    tools = ToolBox(browser, ctx, SEARCH_TOOLSET, short_timeout_s=short_timeout_s, long_timeout_s=long_timeout_s)
    try:
        result = await provider.invoke(
            conversation,
            system_prompt=agents.SEARCH_PLANNER_SYSTEM.format(search_url=search_url),
            schema=SearchResultsOutput,
            tools=tools,
            max_rounds=max_rounds,
        )
    except ReasoningError as exc:
        raise PlanGenerationError(f"search planning failed: {exc}") from exc
    finally:
        closed = await browser.close_tab(ctx)
        if not closed.success:
            logger.info("Search tab %s not closed: %s", ctx.tab_id, closed.detail)
    search_host = (urlparse(search_url).hostname or "").lower().removeprefix("www.")
    results = normalize_results(result.structured.search_results, max_results, search_host)
    if not results:
        raise PlanGenerationError("search produced no usable results")
    if run_state is not None:
        run_state.add_dev_trace(
            "Search results selected",
            {"received": len(result.structured.search_results), "kept": len(results)},
        )
    return results
