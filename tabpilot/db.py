import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS runs(
                    run_id TEXT PRIMARY KEY,
                    created_at TEXT,
                    goal TEXT,
                    session_id TEXT,
                    mode TEXT,
                    status TEXT,
                    final_report TEXT,
                    snapshot_json TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_events_run_seq ON events(run_id, seq);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def insert_run(self, run_id: str, goal: str, session_id: str, status: str = "running") -> None:
        await self.execute(
            "INSERT INTO runs(run_id, created_at, goal, session_id, status) VALUES (?,?,?,?,?)",
            (run_id, utc_now(), goal, session_id, status),
        )

    async def update_run_mode(self, run_id: str, mode: str) -> None:
        await self.execute("UPDATE runs SET mode=? WHERE run_id=?", (mode, run_id))

    async def update_run_snapshot(self, run_id: str, snapshot: Dict[str, Any]) -> None:
        await self.execute("UPDATE runs SET snapshot_json=? WHERE run_id=?", (json.dumps(snapshot), run_id))

    async def update_run_status(self, run_id: str, status: str) -> None:
        await self.execute("UPDATE runs SET status=? WHERE run_id=?", (status, run_id))

    async def finalize_run(
        self,
        run_id: str,
        status: str,
        final_report: str = "",
        snapshot: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.execute(
            "UPDATE runs SET status=?, final_report=?, snapshot_json=COALESCE(?, snapshot_json) WHERE run_id=?",
            (status, final_report, json.dumps(snapshot) if snapshot is not None else None, run_id),
        )

    async def next_event_seq(self, run_id: str) -> int:
        row = await self.fetchone("SELECT MAX(seq) as max_seq FROM events WHERE run_id=?", (run_id,))
        max_seq = row["max_seq"] if row and row["max_seq"] is not None else 0
        return int(max_seq) + 1

    async def add_event(self, run_id: str, event_type: str, payload: dict) -> dict:
        seq = await self.next_event_seq(run_id)
        created_at = utc_now()
        await self.execute(
            "INSERT INTO events(run_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
            (run_id, seq, event_type, json.dumps(payload), created_at),
        )
        return {"run_id": run_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, run_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE run_id=? AND seq>? ORDER BY seq ASC",
            (run_id, after_seq),
        )
        return [
            {
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload_json"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def has_event(self, run_id: str, event_type: str) -> bool:
        row = await self.fetchone(
            "SELECT 1 FROM events WHERE run_id=? AND event_type=? LIMIT 1",
            (run_id, event_type),
        )
        return row is not None

    async def get_run_summary(self, run_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT run_id, created_at, goal, session_id, mode, status, final_report, snapshot_json FROM runs WHERE run_id=?",
            (run_id,),
        )
        if not row:
            return None
        return {
            "run_id": row["run_id"],
            "created_at": row["created_at"],
            "goal": row["goal"],
            "session_id": row["session_id"],
            "mode": row["mode"],
            "status": row["status"],
            "final_report": row["final_report"],
            "snapshot": json.loads(row["snapshot_json"] or "{}"),
        }

    async def list_runs(self, limit: int = 50) -> List[dict]:
        rows = await self.fetchall(
            "SELECT run_id, created_at, goal, mode, status FROM runs ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
        return [dict(row) for row in rows]
