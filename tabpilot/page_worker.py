import logging
from typing import Any, Optional

from . import agents
from .browser import BrowserClient, BrowserContext
from .errors import ReasoningError, RoundTripLimitExceeded
from .reasoning import ReasoningProvider
from .schemas import PageSummary, PageSummaryOutput
from .tools import PAGE_WORKER_TOOLSET, ToolBox


logger = logging.getLogger("uvicorn.error")


class PageWorker:
    """Summarizes one URL in its own tab. Never raises for page or model trouble."""

    def __init__(
        self,
        provider: ReasoningProvider,
        browser: BrowserClient,
        *,
        max_rounds: int = 10,
        short_timeout_s: float = 10.0,
        long_timeout_s: float = 45.0,
        run_state: Optional[Any] = None,
    ):
        self.provider = provider
        self.browser = browser
        self.max_rounds = max_rounds
        self.short_timeout_s = short_timeout_s
        self.long_timeout_s = long_timeout_s
        self.run_state = run_state

    async def run(self, url: str, goal: str, session_id: str) -> PageSummary:
        opened = await self.browser.create_tab(session_id, url)
        if not opened.success:
            return PageSummary(url=url, summary=f"Page inaccessible: could not open a tab ({opened.detail}).", accessible=False)
        ctx = BrowserContext(session_id=session_id, tab_id=opened.data["tab_id"])
        tools = ToolBox(
            self.browser,
            ctx,
            PAGE_WORKER_TOOLSET,
            short_timeout_s=self.short_timeout_s,
            long_timeout_s=self.long_timeout_s,
        )
        try:
            result = await self.provider.invoke(
                [{"role": "user", "content": f"Research topic: {goal}\nSummarize the page at {url}."}],
                system_prompt=agents.PAGE_WORKER_SYSTEM.format(topic=goal, url=url),
                schema=PageSummaryOutput,
                tools=tools,
                max_rounds=self.max_rounds,
            )
        except RoundTripLimitExceeded:
            logger.info("Page worker gave up on %s after %s rounds", url, self.max_rounds)
            return PageSummary(
                url=url,
                summary=f"Page inaccessible: no summary after {self.max_rounds} attempts.",
                accessible=False,
            )
        except ReasoningError as exc:
            return PageSummary(url=url, summary=f"Page inaccessible: {exc}", accessible=False)
        finally:
            closed = await self.browser.close_tab(ctx)
            if not closed.success:
                logger.info("Worker tab %s not closed: %s", ctx.tab_id, closed.detail)
        output = result.structured
        summary = output.summary.strip() or "Page had no content relevant to the topic."
        return PageSummary(url=url, summary=summary, accessible=output.accessible)
