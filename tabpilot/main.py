import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .browser import BrowserClient
from .config import CONFIG_PATH, MASKED_KEY, AppSettings, load_settings, save_settings
from .db import Database
from .llm import ChatClient
from .orchestrator import EventBus, new_run_id, run_request
from .schemas import StartRunRequest


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_lm_client(request: Request) -> ChatClient:
    return request.app.state.lm_client


def get_browser_client(request: Request) -> BrowserClient:
    return request.app.state.browser_client


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_run_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.run_tasks


def get_run_stop_events(request: Request) -> Dict[str, asyncio.Event]:
    return request.app.state.run_stop_events


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def stop_run_internal(
    run_id: str,
    db: Database,
    bus: EventBus,
    run_stop_events: Dict[str, asyncio.Event],
) -> Dict[str, Any]:
    run = await db.get_run_summary(run_id)
    stop_event = run_stop_events.get(run_id)
    if not run:
        if stop_event:
            if not stop_event.is_set():
                stop_event.set()
            return {"ok": True, "status": "stopping"}
        raise HTTPException(status_code=404, detail="Run not found")
    if stop_event and not stop_event.is_set():
        stop_event.set()
        return {"ok": True, "status": "stopping"}
    status = run.get("status") or ""
    if status.startswith("error") or status in ("completed", "failed", "stopped"):
        return {"ok": True, "status": status}
    await db.update_run_status(run_id, "stopped")
    await bus.emit(run_id, "archived", {"stopped": True})
    return {"ok": True, "status": "stopped"}


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return settings.to_safe_dict()


@router.post("/settings")
async def update_settings_route(
    request: Request,
    body: Dict[str, Any] = Body(...),
    settings: AppSettings = Depends(get_settings),
    lm_client: ChatClient = Depends(get_lm_client),
    config_path: Path = Depends(get_config_path),
):
    changes = dict(body)
    if changes.get("llm_api_key") == MASKED_KEY:
        changes.pop("llm_api_key")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **changes})
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False)) from exc
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    lm_client.max_output_tokens = new_settings.max_tokens
    return new_settings.to_safe_dict()


@router.post("/api/run")
async def start_run(
    payload: StartRunRequest,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    lm_client: ChatClient = Depends(get_lm_client),
    browser_client: BrowserClient = Depends(get_browser_client),
    run_tasks: Dict[str, asyncio.Task] = Depends(get_run_tasks),
    run_stop_events: Dict[str, asyncio.Event] = Depends(get_run_stop_events),
):
    goal = payload.goal.strip()
    if not goal:
        raise HTTPException(status_code=400, detail="Goal is required.")
    session_id = payload.session_id or str(uuid.uuid4())
    run_id = new_run_id()
    await db.insert_run(run_id, goal, session_id)
    stop_event = asyncio.Event()
    run_stop_events[run_id] = stop_event

    async def run_and_cleanup() -> None:
        try:
            await run_request(
                run_id=run_id,
                goal=goal,
                conversation=payload.conversation,
                session_id=session_id,
                tab_id=payload.tab_id,
                db=db,
                bus=bus,
                lm_client=lm_client,
                browser=browser_client,
                settings=settings,
                mode_override=payload.mode,
                stop_event=stop_event,
            )
        finally:
            run_tasks.pop(run_id, None)
            run_stop_events.pop(run_id, None)
            # Ensure a terminal event is emitted even if the run ended early.
            try:
                if not await db.has_event(run_id, "archived"):
                    await bus.emit(run_id, "archived", {"status": "aborted"})
            except Exception:
                pass

    task = asyncio.create_task(run_and_cleanup())
    run_tasks[run_id] = task
    return {"run_id": run_id, "session_id": session_id}


@router.get("/api/runs")
async def list_runs(limit: int = 50, db: Database = Depends(get_db)):
    return {"runs": await db.list_runs(limit=limit)}


@router.get("/api/run/{run_id}")
async def get_run(run_id: str, db: Database = Depends(get_db)):
    run = await db.get_run_summary(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.get("/api/run/{run_id}/events")
async def list_run_events(run_id: str, after_seq: int = 0, db: Database = Depends(get_db)):
    run = await db.get_run_summary(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    events = await db.list_events(run_id, after_seq=after_seq)
    last_seq = events[-1]["seq"] if events else after_seq
    return {"events": events, "last_seq": last_seq}


@router.post("/api/run/{run_id}/stop")
async def stop_run(
    run_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    run_stop_events: Dict[str, asyncio.Event] = Depends(get_run_stop_events),
):
    return await stop_run_internal(run_id, db, bus, run_stop_events)


@router.get("/events")
async def stream_global_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe_global()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe_global(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/runs/{run_id}/events")
async def stream_events(
    run_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    # Preload past events then stream new ones
    async def event_generator():
        queue = await bus.subscribe(run_id)
        try:
            past = await db.list_events(run_id)
            last_seq = 0
            for ev in past:
                last_seq = ev["seq"]
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                if ev.get("seq", 0) <= last_seq:
                    continue
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(run_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    lm_client: Optional[ChatClient] = None,
    browser_client: Optional[BrowserClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            for task in list(app.state.run_tasks.values()):
                task.cancel()
            await app.state.lm_client.close()
            await app.state.browser_client.close()

    app = FastAPI(title="TabPilot Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.config_path = config_path or CONFIG_PATH
    app.state.db = db or Database(settings.database_path)
    app.state.lm_client = lm_client or ChatClient(
        settings.llm_base_url,
        api_key=settings.llm_api_key,
        max_output_tokens=settings.max_tokens,
        timeout=settings.llm_timeout_s,
    )
    app.state.browser_client = browser_client or BrowserClient(settings.browser_base_url)
    app.state.bus = EventBus(app.state.db)
    app.state.run_tasks = {}
    app.state.run_stop_events = {}
    app.include_router(router)
    return app


def main() -> None:
    import os

    import uvicorn

    settings = load_settings()
    reload_enabled = os.getenv("TABPILOT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "tabpilot.main:build_default_app",
            factory=True,
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass


def build_default_app() -> FastAPI:
    return create_app(load_settings())


if __name__ == "__main__":
    main()
