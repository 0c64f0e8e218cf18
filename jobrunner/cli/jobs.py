from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from jobrunner.config.load_config import ConfigError, load_app_config
from jobrunner.runtime import engine, watchdog
from jobrunner.runtime.continuation import QueueContinuation
from jobrunner.runtime.errors import JobError
from jobrunner.runtime.registry import default_registry
from jobrunner.storage.sqlite_store import SQLiteStore


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def _load_items(path: str) -> list[dict[str, Any]]:
    """Items file: a JSON array of objects, or JSON Lines (one object per line)."""
    text = Path(path).expanduser().read_text(encoding="utf-8")
    stripped = text.lstrip()
    if stripped.startswith("["):
        items = json.loads(stripped)
    else:
        items = [json.loads(line) for line in text.splitlines() if line.strip()]
    if not all(isinstance(it, dict) for it in items):
        raise SystemExit(f"{path}: every item must be a JSON object")
    return items


def _parse_filters(values: list[str]) -> dict[str, Any]:
    filters: dict[str, Any] = {}
    for raw in values:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            raise SystemExit(f"--filter expects key=value, got {raw!r}")
        try:
            filters[key.strip()] = json.loads(value)
        except json.JSONDecodeError:
            filters[key.strip()] = value
    return filters


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start, drive and inspect durable batch jobs (SQLite-backed).")
    parser.add_argument("--db-path", default="", help="SQLite path (default: env JOBRUNNER_SQLITE_PATH or data/jobs.db).")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("start", help="Snapshot items into a new job.")
    p.add_argument("--kind", required=True, help="Registered job kind (e.g. dry_run, hero_audit).")
    p.add_argument("--items-file", required=True, help="JSON array or JSON Lines file of work items.")
    p.add_argument("--limit", type=int, default=0, help="Keep at most N items (0 = all).")
    p.add_argument("--filter", action="append", default=[], help="key=value item filter (repeatable).")
    p.add_argument("--workers", type=int, default=0, help="Initial parallel chains (default: per kind config).")
    p.add_argument("--run", action="store_true", help="Drain the job in the foreground after creating it.")

    p = sub.add_parser("process", help="Run exactly one worker-loop invocation.")
    p.add_argument("job_id")

    p = sub.add_parser("drain", help="Run invocations in the foreground until the job is terminal.")
    p.add_argument("job_id")
    p.add_argument("--workers", type=int, default=1, help="Chains to interleave (default: 1).")
    p.add_argument("--max-invocations", type=int, default=0, help="Stop after N invocations (0 = no limit).")

    p = sub.add_parser("status", help="Print job counters and task counts.")
    p.add_argument("job_id")

    p = sub.add_parser("traces", help="Print per-task outcomes in order.")
    p.add_argument("job_id")
    p.add_argument("--after", type=int, default=None, help="Only tasks with seq > after.")
    p.add_argument("--limit", type=int, default=100)
    p.add_argument("--status", action="append", default=[], help="Task status filter (repeatable).")

    p = sub.add_parser("cancel", help="Cancel a job and its pending tasks.")
    p.add_argument("job_id")
    p.add_argument("--reason", default="user_cancel", help="Optional reason to record.")

    sub.add_parser("watchdog", help="Reap stuck tasks and report stalled jobs.")
    return parser.parse_args(argv)


def _drain(job_id: str, *, db_path: str | None, workers: int, max_invocations: int) -> dict[str, Any]:
    config = load_app_config()
    registry = default_registry()
    queue = QueueContinuation()
    engine.kick(queue, job_id, workers=workers)
    n = queue.drain(
        lambda jid: engine.invoke_job(jid, registry=registry, config=config, db_path=db_path, continuation=queue),
        max_invocations=max_invocations or None,
    )
    store = SQLiteStore(db_path)
    try:
        return {"invocations": n, "job": engine.job_status(store, job_id)}
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db_path = args.db_path or None

    try:
        if args.command == "start":
            config = load_app_config()
            kind = default_registry().get(args.kind)
            store = SQLiteStore(db_path)
            try:
                job = engine.start_job(
                    store,
                    kind=kind,
                    config=config,
                    items=_load_items(args.items_file),
                    limit=int(args.limit),
                    filters=_parse_filters(args.filter),
                    workers=int(args.workers) or None,
                )
            finally:
                store.close()
            if args.run:
                workers = int(args.workers) or 1
                _print_json({"job_id": job.job_id, **_drain(job.job_id, db_path=db_path, workers=workers, max_invocations=0)})
            else:
                _print_json({"job_id": job.job_id, "total": job.total})
            return 0

        if args.command == "process":
            result = engine.invoke_job(
                args.job_id,
                registry=default_registry(),
                config=load_app_config(),
                db_path=db_path,
            )
            _print_json({"job_id": args.job_id, **result.to_dict()})
            return 0

        if args.command == "drain":
            _print_json(
                _drain(
                    args.job_id,
                    db_path=db_path,
                    workers=max(1, int(args.workers)),
                    max_invocations=int(args.max_invocations),
                )
            )
            return 0

        store = SQLiteStore(db_path)
        try:
            if args.command == "status":
                _print_json(engine.job_status(store, args.job_id))
            elif args.command == "traces":
                _print_json(
                    engine.task_traces(
                        store,
                        args.job_id,
                        limit=int(args.limit),
                        after_seq=args.after,
                        statuses=list(args.status) or None,
                    )
                )
            elif args.command == "cancel":
                _print_json(engine.cancel_job(store, args.job_id, reason=str(args.reason)))
            elif args.command == "watchdog":
                # No continuation here: stalled jobs are reported, not re-kicked.
                _print_json(watchdog.sweep(store, config=load_app_config(), continuation=None))
        finally:
            store.close()
        return 0
    except (JobError, ConfigError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
