import asyncio
import itertools

import pytest

from tabpilot.errors import PlanGenerationError
from tabpilot.page_worker import PageWorker
from tabpilot.research_pipeline import fan_out, merge_worker_output, run_research_pipeline
from tabpilot.schemas import PageSummary, ResearchState, SearchResult
from tabpilot.search_planner import build_search_url, normalize_results, plan_search
from tabpilot.synthesizer import fallback_report, synthesize
from tests.conftest import make_settings
from tests.fakes import FakeBrowserClient, FakeReasoningProvider

URLS = ["https://a.example/1", "https://b.example/2", "https://c.example/3"]


class EventLog:
    def __init__(self):
        self.events = []

    async def __call__(self, event_type, payload):
        self.events.append((event_type, payload))

    def of(self, event_type):
        return [payload for kind, payload in self.events if kind == event_type]


def summarize_by_url(delay=0.0):
    async def handler(conversation, system_prompt, schema, tools):
        if delay:
            await asyncio.sleep(delay)
        url = next(u for u in URLS if u in system_prompt)
        return {"summary": f"facts from {url}", "accessible": True}

    return handler


def test_build_search_url_quotes_goal():
    assert build_search_url("https://duckduckgo.com/?q={query}", " best hiking boots ") == (
        "https://duckduckgo.com/?q=best+hiking+boots"
    )


def test_normalize_results_filters_and_dedupes():
    raw = [
        SearchResult(url="https://a.example/page/", title=" A "),
        SearchResult(url="https://A.example/page"),
        SearchResult(url="ftp://files.example/x"),
        SearchResult(url="https://duckduckgo.com/l/?uddg=1"),
        SearchResult(url="https://b.example/other"),
        SearchResult(url="https://c.example/third"),
    ]
    cleaned = normalize_results(raw, limit=2, search_host="duckduckgo.com")
    assert [r.url for r in cleaned] == ["https://a.example/page/", "https://b.example/other"]
    assert cleaned[0].title == "A"


@pytest.mark.asyncio
async def test_plan_search_closes_its_tab_and_rejects_empty_results():
    browser = FakeBrowserClient()
    provider = FakeReasoningProvider(
        responses={"SearchResultsOutput": [{"search_results": [{"url": "https://duckduckgo.com/?q=x"}]}]}
    )
    with pytest.raises(PlanGenerationError):
        await plan_search(provider, browser, [], "x", "s1")
    assert browser.open_tabs == {}
    assert browser.closed_tabs == ["tab-1"]
    assert "https://duckduckgo.com/?q=x" in provider.calls[0]["system_prompt"]


def test_merge_is_order_independent():
    base = ResearchState(search_results=[SearchResult(url=u) for u in URLS])
    summaries = [PageSummary(url=u, summary=u) for u in URLS]
    forward = base
    for item in summaries:
        forward = merge_worker_output(forward, item)
    backward = base
    for item in reversed(summaries):
        backward = merge_worker_output(backward, item)
    assert sorted(forward.processed_urls) == sorted(backward.processed_urls)
    assert {s.url for s in forward.page_summaries} == {s.url for s in backward.page_summaries}
    assert base.processed_urls == []


@pytest.mark.asyncio
async def test_one_worker_per_result_with_inaccessible_page(tmp_path):
    browser = FakeBrowserClient(fail_tabs_for=[URLS[1]])
    searcher = FakeReasoningProvider(
        responses={"SearchResultsOutput": [{"search_results": [{"url": u, "title": u[8]} for u in URLS]}]}
    )
    researcher = FakeReasoningProvider(handler=summarize_by_url())
    synthesizer = FakeReasoningProvider(responses={"ReportOutput": [{"final_report": "# Report\n\nBody"}]})
    emit = EventLog()
    state = await run_research_pipeline(
        conversation=[{"role": "user", "content": "compare"}],
        goal="compare",
        searcher=searcher,
        researcher=researcher,
        synthesizer=synthesizer,
        browser=browser,
        session_id="s1",
        settings=make_settings(tmp_path),
        emit=emit,
    )
    assert state.status == "completed"
    assert state.final_report == "# Report\n\nBody"
    assert sorted(state.processed_urls) == sorted(URLS)
    broken = next(s for s in state.page_summaries if s.url == URLS[1])
    assert broken.accessible is False
    assert broken.summary.startswith("Page inaccessible")
    assert len(researcher.calls) == 2
    assert len(emit.of("worker_started")) == 3
    assert len(emit.of("worker_completed")) == 3
    assert emit.of("research_status")[-1]["status"] == "completed"
    assert browser.open_tabs == {}
    synth_prompt = synthesizer.calls[0]["system_prompt"]
    assert synth_prompt.index(URLS[0]) < synth_prompt.index(URLS[2])


@pytest.mark.asyncio
async def test_fan_out_respects_parallel_limit():
    urls = [f"https://site{i}.example/" for i in range(6)]
    browser = FakeBrowserClient()
    counter = itertools.count()

    async def handler(conversation, system_prompt, schema, tools):
        await asyncio.sleep(0.02)
        return {"summary": f"s{next(counter)}", "accessible": True}

    worker = PageWorker(FakeReasoningProvider(handler=handler), browser)
    results = [SearchResult(url=u) for u in urls]
    state = await fan_out(
        results, worker, "goal", "s1", ResearchState(search_results=results), max_parallel=2, emit=EventLog()
    )
    assert browser.max_open_tabs <= 2
    assert len(state.processed_urls) == 6
    assert state.ready_for_synthesis()


@pytest.mark.asyncio
async def test_worker_round_cap_yields_inaccessible_summary():
    from tabpilot.errors import RoundTripLimitExceeded

    browser = FakeBrowserClient()
    worker = PageWorker(
        FakeReasoningProvider(responses={"PageSummaryOutput": [RoundTripLimitExceeded(10)]}), browser
    )
    summary = await worker.run(URLS[0], "goal", "s1")
    assert summary.accessible is False
    assert "10 attempts" in summary.summary
    assert browser.closed_tabs == ["tab-1"]


@pytest.mark.asyncio
async def test_synthesis_refuses_incomplete_state():
    state = ResearchState(search_results=[SearchResult(url=u) for u in URLS], processed_urls=URLS[:2])
    with pytest.raises(ValueError):
        await synthesize(FakeReasoningProvider(), "goal", state)


@pytest.mark.asyncio
async def test_synthesis_failure_uses_fallback_report():
    from tabpilot.errors import ReasoningError

    state = ResearchState(
        search_results=[SearchResult(url=URLS[0], title="Alpha"), SearchResult(url=URLS[1], title="Beta")],
        page_summaries=[PageSummary(url=URLS[1], summary="beta facts"), PageSummary(url=URLS[0], summary="alpha facts")],
        processed_urls=[URLS[1], URLS[0]],
    )
    provider = FakeReasoningProvider(responses={"ReportOutput": [ReasoningError("model down")]})
    done = await synthesize(provider, "goal", state)
    assert done.status == "completed"
    assert done.final_report == fallback_report("goal", state)
    assert "## Citations" in done.final_report
    assert done.final_report.index("alpha facts") < done.final_report.index("beta facts")
    assert state.status == "running"
