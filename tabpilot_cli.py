import argparse
import json
import sys
from typing import Any, Dict, Iterable, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
STATUS_MARK = {"pending": " ", "in_progress": ">", "completed": "x", "failed": "!"}
TERMINAL_EVENTS = {"archived"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def condense_text(value: str, limit: int = 160) -> str:
    compact = " ".join(str(value).split())
    if len(compact) <= limit:
        return compact
    return compact[: max(0, limit - 3)] + "..."


def format_plan(items: List[Dict[str, Any]], indent: str = "  ") -> List[str]:
    lines = []
    for item in items:
        mark = STATUS_MARK.get(item.get("status") or "pending", "?")
        lines.append(f"{indent}[{mark}] {item.get('id')}. {condense_text(item.get('label') or '', 100)}")
    return lines


def format_event(event: Dict[str, Any], view: str = "human") -> Optional[str]:
    event_type = event.get("event_type") or ""
    payload = event.get("payload") or {}
    seq = event.get("seq")
    prefix = f"[{seq:04d}] " if isinstance(seq, int) else ""
    if view == "debug":
        return f"{prefix}{event_type}: {json.dumps(payload, ensure_ascii=False)}"
    if event_type == "run_started":
        return f"{prefix}run_started: {condense_text(payload.get('goal') or '', 140)}"
    if event_type == "mode_selected":
        return f"{prefix}mode: {payload.get('mode')}"
    if event_type == "action_status":
        phase = f"phase={payload['phase']}, " if payload.get("phase") else ""
        lines = [
            f"{prefix}tasks ({phase}current={payload.get('current_task_index')}, "
            f"subtask={payload.get('current_subtask_index')}):"
        ]
        lines.extend(format_plan(payload.get("task_plan") or []))
        subtasks = payload.get("subtask_plan") or []
        if subtasks:
            lines.append("  subtasks:")
            lines.extend(format_plan(subtasks, indent="    "))
        return "\n".join(lines)
    if event_type == "research_status":
        total = len(payload.get("search_results") or [])
        done = len(payload.get("processed_urls") or [])
        return f"{prefix}research: {done}/{total} pages processed, status={payload.get('status')}"
    if event_type == "worker_completed":
        state = "ok" if payload.get("accessible") else "inaccessible"
        return f"{prefix}page {state}: {condense_text(payload.get('url') or '', 100)}"
    if event_type == "run_error":
        return f"{prefix}error: {payload.get('error')}"
    if event_type == "run_completed":
        lines = [f"{prefix}run_completed: status={payload.get('status')}"]
        report = payload.get("final_report") or ""
        if report:
            lines.append("")
            lines.append(report)
        return "\n".join(lines)
    if event_type == "archived":
        return f"{prefix}archived"
    return None


def iter_sse_events(response: httpx.Response) -> Iterable[Dict[str, Any]]:
    data_lines: List[str] = []
    for raw_line in response.iter_lines():
        if raw_line is None:
            continue
        line = raw_line.strip()
        if not line:
            if data_lines:
                joined = "\n".join(data_lines)
                data_lines.clear()
                try:
                    yield json.loads(joined)
                except json.JSONDecodeError:
                    continue
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        try:
            yield json.loads("\n".join(data_lines))
        except json.JSONDecodeError:
            return


def watch_run(client: httpx.Client, base: str, run_id: str, view: str = "human") -> int:
    exit_code = 0
    with client.stream("GET", _join_url(base, f"/runs/{run_id}/events")) as response:
        if response.status_code >= 400:
            print(f"Failed to stream events: HTTP {response.status_code}", file=sys.stderr)
            return 1
        for event in iter_sse_events(response):
            line = format_event(event, view=view)
            if line:
                print(line)
            if event.get("event_type") == "run_error":
                exit_code = 1
            if event.get("event_type") in TERMINAL_EVENTS:
                break
    return exit_code


def run_command(args: argparse.Namespace) -> int:
    goal = " ".join(args.goal).strip()
    if not goal:
        print("A goal is required.", file=sys.stderr)
        return 1
    payload: Dict[str, Any] = {"goal": goal}
    if args.session_id:
        payload["session_id"] = args.session_id
    if args.tab_id:
        payload["tab_id"] = args.tab_id
    if args.mode:
        payload["mode"] = args.mode
    timeout = httpx.Timeout(10.0, read=None)
    with httpx.Client(timeout=timeout) as client:
        resp = client.post(_join_url(args.base_url, "/api/run"), json=payload)
        if resp.status_code >= 400:
            print(f"Failed to start run: HTTP {resp.status_code} {resp.text}", file=sys.stderr)
            return 1
        run_id = resp.json()["run_id"]
        print(f"run_id: {run_id}")
        if args.no_watch:
            return 0
        try:
            return watch_run(client, args.base_url, run_id, view=args.view)
        except KeyboardInterrupt:
            client.post(_join_url(args.base_url, f"/api/run/{run_id}/stop"))
            print("Stop requested.")
            return 130


def status_command(args: argparse.Namespace) -> int:
    with httpx.Client(timeout=10) as client:
        resp = client.get(_join_url(args.base_url, f"/api/run/{args.run_id}"))
        if resp.status_code >= 400:
            print(f"Failed to fetch run: HTTP {resp.status_code}", file=sys.stderr)
            return 1
        run = resp.json()
    print(f"{run['run_id']}  mode={run.get('mode')}  status={run.get('status')}")
    print(f"goal: {condense_text(run.get('goal') or '', 140)}")
    snapshot = run.get("snapshot") or {}
    if snapshot.get("task_plan"):
        print("\n".join(format_plan(snapshot["task_plan"])))
    if run.get("final_report"):
        print()
        print(run["final_report"])
    return 0


def stop_command(args: argparse.Namespace) -> int:
    with httpx.Client(timeout=10) as client:
        resp = client.post(_join_url(args.base_url, f"/api/run/{args.run_id}/stop"))
        if resp.status_code >= 400:
            print(f"Failed to stop run: HTTP {resp.status_code}", file=sys.stderr)
            return 1
        print(f"status: {resp.json().get('status')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TabPilot CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Start a run and stream its progress")
    run.add_argument("goal", nargs="*", help="What the browser agent should do or find out")
    run.add_argument("--session-id", help="Browser session to use")
    run.add_argument("--tab-id", help="Tab the action pipeline starts in")
    run.add_argument("--mode", choices=["action", "research"], help="Skip routing and force a pipeline")
    run.add_argument("--no-watch", action="store_true", help="Print the run id and exit")
    run.add_argument("--view", default="human", choices=["human", "debug"])

    status = subparsers.add_parser("status", help="Show a run summary")
    status.add_argument("run_id")

    stop = subparsers.add_parser("stop", help="Stop an active run")
    stop.add_argument("run_id")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "run":
        return run_command(args)
    if args.command == "status":
        return status_command(args)
    if args.command == "stop":
        return stop_command(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
