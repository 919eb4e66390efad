import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .action_pipeline import run_action_pipeline
from .browser import BrowserClient, BrowserContext
from .config import AppSettings
from .db import Database
from .errors import OrchestrationError
from .llm import ChatClient
from .reasoning import ReasoningProvider
from .research_pipeline import run_research_pipeline
from .router import classify_mode
from .schemas import Mode


logger = logging.getLogger("uvicorn.error")

SNAPSHOT_EVENTS = {"action_status", "research_status"}


@dataclass
class RunState:
    run_id: str
    goal: str = ""
    mode: Optional[str] = None
    snapshot: Dict[str, Any] = field(default_factory=dict)
    dev_trace_cb: Optional[Callable[[str, Optional[dict]], None]] = None
    pending_traces: Set[asyncio.Task] = field(default_factory=set)

    def add_dev_trace(self, message: str, detail: Optional[dict] = None) -> None:
        if self.dev_trace_cb:
            self.dev_trace_cb(message, detail)

    async def drain_traces(self) -> None:
        """Wait for in-flight dev_trace emits so they land before terminal events."""
        while self.pending_traces:
            batch = list(self.pending_traces)
            await asyncio.gather(*batch, return_exceptions=True)
            self.pending_traces.difference_update(batch)


class EventBus:
    """In-memory fan-out for SSE plus persisted events."""

    def __init__(self, db: Database):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()
        # Serializes seq allocation; research workers emit concurrently.
        self.write_lock = asyncio.Lock()

    async def emit(self, run_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("run_id", run_id)
        async with self.write_lock:
            stored = await self.db.add_event(run_id, event_type, safe_payload)
        async with self.lock:
            queues = list(self.subscribers.get(run_id, []))
            global_queues = list(self.global_subscribers)
        for q in queues:
            await q.put(stored)
        for q in global_queues:
            await q.put(stored)
        return stored

    async def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(run_id, []).append(queue)
        return queue

    async def subscribe_global(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.global_subscribers.append(queue)
        return queue

    async def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(run_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(run_id, None)

    async def unsubscribe_global(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.global_subscribers:
                self.global_subscribers.remove(queue)


def make_dev_trace_cb(
    bus: EventBus,
    run_id: str,
    pending: Optional[Set[asyncio.Task]] = None,
) -> Callable[[str, Optional[dict]], None]:
    pending = pending if pending is not None else set()

    def _cb(message: str, detail: Optional[dict] = None) -> None:
        payload: Dict[str, Any] = {"message": message}
        if detail is not None:
            payload["detail"] = detail
        task = asyncio.create_task(bus.emit(run_id, "dev_trace", payload))
        pending.add(task)
        task.add_done_callback(pending.discard)

    return _cb


def new_run_id() -> str:
    return str(uuid.uuid4())


def build_conversation(goal: str, conversation: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    turns = [dict(turn) for turn in (conversation or []) if isinstance(turn, dict) and turn.get("role")]
    goal = goal.strip()
    last_user = next((t for t in reversed(turns) if t.get("role") == "user"), None)
    if goal and (last_user is None or str(last_user.get("content") or "").strip() != goal):
        turns.append({"role": "user", "content": goal})
    return turns


def build_provider(
    lm_client: ChatClient,
    settings: AppSettings,
    role: str,
    run_state: Optional[RunState] = None,
) -> ReasoningProvider:
    return ReasoningProvider(
        lm_client,
        settings.endpoint_for(role),
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        run_state=run_state,
    )


async def run_request(
    *,
    run_id: str,
    goal: str,
    conversation: Optional[List[Dict[str, Any]]],
    session_id: str,
    tab_id: Optional[str],
    db: Database,
    bus: EventBus,
    lm_client: ChatClient,
    browser: BrowserClient,
    settings: AppSettings,
    mode_override: Optional[Mode] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> Dict[str, Any]:
    """Route one request to a pipeline and record its lifecycle on the event bus."""
    run_state = RunState(run_id=run_id, goal=goal)
    run_state.dev_trace_cb = make_dev_trace_cb(bus, run_id, run_state.pending_traces)
    convo = build_conversation(goal, conversation)
    await bus.emit(run_id, "run_started", {"goal": goal, "session_id": session_id})

    async def emit(event_type: str, payload: dict) -> None:
        if event_type in SNAPSHOT_EVENTS:
            run_state.snapshot = payload
            await db.update_run_snapshot(run_id, payload)
        await bus.emit(run_id, event_type, payload)

    async def pipeline() -> Dict[str, Any]:
        if mode_override:
            mode = mode_override
        else:
            mode = await classify_mode(build_provider(lm_client, settings, "router", run_state), convo)
        run_state.mode = mode
        await db.update_run_mode(run_id, mode)
        await bus.emit(run_id, "mode_selected", {"mode": mode, "forced": bool(mode_override)})
        if mode == "action":
            action_state = await run_action_pipeline(
                conversation=convo,
                planner=build_provider(lm_client, settings, "planner", run_state),
                executor=build_provider(lm_client, settings, "executor", run_state),
                browser=browser,
                ctx=BrowserContext(session_id=session_id, tab_id=tab_id),
                settings=settings,
                emit=emit,
                run_state=run_state,
            )
            status = "completed" if action_state.outcome == "completed" else "failed"
            return {"status": status, "final_report": "", "snapshot": action_state.snapshot()}
        research_state = await run_research_pipeline(
            conversation=convo,
            goal=goal,
            searcher=build_provider(lm_client, settings, "researcher", run_state),
            researcher=build_provider(lm_client, settings, "researcher", run_state),
            synthesizer=build_provider(lm_client, settings, "synthesizer", run_state),
            browser=browser,
            session_id=session_id,
            settings=settings,
            emit=emit,
            run_state=run_state,
        )
        return {
            "status": "completed",
            "final_report": research_state.final_report,
            "snapshot": research_state.snapshot(),
        }

    pipeline_task = asyncio.create_task(pipeline())
    stop_waiter = asyncio.create_task(stop_event.wait()) if stop_event is not None else None
    try:
        waiters = {pipeline_task} if stop_waiter is None else {pipeline_task, stop_waiter}
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        if not pipeline_task.done():
            pipeline_task.cancel()
            await asyncio.gather(pipeline_task, return_exceptions=True)
            logger.info("Run %s stopped", run_id)
            await run_state.drain_traces()
            await db.finalize_run(run_id, "stopped", snapshot=run_state.snapshot)
            await bus.emit(run_id, "archived", {"stopped": True, "snapshot": run_state.snapshot})
            return {"run_id": run_id, "status": "stopped"}
        outcome = pipeline_task.result()
    except OrchestrationError as exc:
        snapshot = exc.snapshot or run_state.snapshot
        logger.warning("Run %s failed: %s", run_id, exc)
        await run_state.drain_traces()
        await db.finalize_run(run_id, f"error: {exc}", snapshot=snapshot)
        await bus.emit(run_id, "run_error", {"error": str(exc), "kind": type(exc).__name__, "snapshot": snapshot})
        return {"run_id": run_id, "status": "error", "error": str(exc)}
    except Exception as exc:
        logger.exception("Run %s crashed", run_id)
        await run_state.drain_traces()
        await db.finalize_run(run_id, f"error: {exc}", snapshot=run_state.snapshot)
        await bus.emit(run_id, "run_error", {"error": str(exc), "kind": "internal", "snapshot": run_state.snapshot})
        return {"run_id": run_id, "status": "error", "error": str(exc)}
    finally:
        if stop_waiter is not None and not stop_waiter.done():
            stop_waiter.cancel()
        if not pipeline_task.done():
            pipeline_task.cancel()

    await run_state.drain_traces()
    await db.finalize_run(run_id, outcome["status"], outcome["final_report"], outcome["snapshot"])
    await bus.emit(
        run_id,
        "run_completed",
        {"mode": run_state.mode, "status": outcome["status"], "final_report": outcome["final_report"]},
    )
    await bus.emit(run_id, "archived", {"status": outcome["status"]})
    return {"run_id": run_id, **outcome}
