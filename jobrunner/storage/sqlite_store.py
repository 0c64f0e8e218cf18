from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable


SCHEMA_VERSION = 3

JOB_STATUSES = ("pending", "running", "done", "cancelled", "failed")
TERMINAL_JOB_STATUSES = frozenset({"done", "cancelled", "failed"})
TASK_STATUSES = ("pending", "in_progress", "done", "cancelled")

# Target status -> statuses it may be entered from. Jobs never move backward.
_JOB_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "running": ("pending",),
    "done": ("pending", "running"),
    "cancelled": ("pending", "running"),
    "failed": ("pending", "running"),
}


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _placeholders(n: int) -> str:
    return ",".join(["?"] * int(n))


def default_db_path() -> str:
    return os.getenv("JOBRUNNER_SQLITE_PATH", "data/jobs.db")


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    kind: str
    created_at: float
    total: int
    status: str


@dataclass(frozen=True)
class ClaimResult:
    tasks: list[sqlite3.Row]
    # Tasks still pending/in_progress, read in the same transaction as the claim.
    remaining: int
    # True for the one claim that promoted the job from pending to running.
    started: bool = False


@dataclass(frozen=True)
class ReapResult:
    reset: int
    abandoned: int


@dataclass(frozen=True)
class CancelResult:
    cancelled: bool
    tasks_cancelled: int


def _opt_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def _job_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "job_id": row["job_id"],
        "kind": row["kind"],
        "status": row["status"],
        "total": int(row["total"]),
        "processed": int(row["processed"]),
        "succeeded": int(row["succeeded"]),
        "created_at": float(row["created_at"]),
        "started_at": _opt_float(row["started_at"]),
        "finished_at": _opt_float(row["finished_at"]),
        "error": row["error"],
    }


def _task_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    succeeded = row["succeeded"]
    return {
        "task_id": row["task_id"],
        "job_id": row["job_id"],
        "seq": int(row["seq"]),
        "status": row["status"],
        "attempt_count": int(row["attempt_count"]),
        "payload": json.loads(str(row["payload_json"])),
        "succeeded": bool(succeeded) if succeeded is not None else None,
        "verdict": row["verdict"],
        "reason": row["reason"],
        "error": row["error"],
        "result": json.loads(str(row["result_json"])) if row["result_json"] else {},
        "created_at": float(row["created_at"]),
        "updated_at": float(row["updated_at"]),
        "finished_at": _opt_float(row["finished_at"]),
    }


_TASK_COLUMNS = """
  task_id, job_id, seq, status, attempt_count, payload_json, succeeded, verdict, reason,
  error, result_json, created_at, updated_at, finished_at
"""

_JOB_COLUMNS = """
  job_id, kind, status, total, processed, succeeded, created_at, started_at, finished_at,
  config_json, error
"""


class SQLiteStore:
    """SQLite-backed store for jobs, tasks and trace events.

    Every mutation that other invocations can observe (claim, terminal task
    update + counter increment, cancel, reap) is a single transaction, so any
    number of worker invocations may share one database file as long as each
    one owns its own connection.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, which is what makes a
        select-then-update sequence atomic across concurrent connections.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1): jobs/tasks/events.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              kind TEXT NOT NULL,
              created_at REAL NOT NULL,
              started_at REAL,
              finished_at REAL,
              status TEXT NOT NULL,
              total INTEGER NOT NULL,
              processed INTEGER NOT NULL DEFAULT 0,
              succeeded INTEGER NOT NULL DEFAULT 0,
              config_json TEXT NOT NULL,
              error TEXT,
              CHECK (processed >= 0 AND processed <= total),
              CHECK (succeeded >= 0 AND succeeded <= processed)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
              task_id TEXT PRIMARY KEY,
              job_id TEXT NOT NULL,
              seq INTEGER NOT NULL,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              finished_at REAL,
              status TEXT NOT NULL,
              attempt_count INTEGER NOT NULL DEFAULT 0,
              payload_json TEXT NOT NULL,
              succeeded INTEGER,
              verdict TEXT,
              reason TEXT,
              error TEXT,
              result_json TEXT,
              UNIQUE (job_id, seq),
              FOREIGN KEY (job_id) REFERENCES jobs(job_id)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              event_id TEXT PRIMARY KEY,
              job_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              FOREIGN KEY (job_id) REFERENCES jobs(job_id)
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_job_status_seq ON tasks(job_id, status, seq);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_job_status_updated ON tasks(job_id, status, updated_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_job_ts ON events(job_id, created_at, event_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_kind_created ON jobs(kind, created_at);")

        # New databases start at schema_version=1 and migrate forward explicitly.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN;")
        try:
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                elif current == 2:
                    self._migrate_2_to_3(cur)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
                current += 1
                self._set_schema_version(current)
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Idempotency table for POST /jobs (API-level retries).
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
              key TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              request_hash TEXT NOT NULL,
              response_json TEXT NOT NULL
            );
            """
        )

    def _migrate_2_to_3(self, cur: sqlite3.Cursor) -> None:
        # Domain counters (e.g. hero_audit "cleared") live beside the fixed ones.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_counters (
              job_id TEXT NOT NULL,
              name TEXT NOT NULL,
              value INTEGER NOT NULL,
              PRIMARY KEY (job_id, name),
              FOREIGN KEY (job_id) REFERENCES jobs(job_id)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS secrets (
              name TEXT PRIMARY KEY,
              value TEXT NOT NULL,
              updated_at REAL NOT NULL
            );
            """
        )

    # --- Idempotency (API support)
    def get_idempotency(self, key: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT key, created_at, request_hash, response_json FROM idempotency_keys WHERE key = ? LIMIT 1;",
            (key,),
        ).fetchone()

    def put_idempotency(
        self, *, key: str, request_hash: str, response_json: str, commit: bool = True
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO idempotency_keys(key, created_at, request_hash, response_json)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(key) DO NOTHING;
            """,
            (key, _utc_ts(), request_hash, response_json),
        )
        if commit:
            self._conn.commit()

    # --- Secrets (key-value lookup for API credentials)
    def get_secret(self, name: str) -> str | None:
        row = self._conn.execute("SELECT value FROM secrets WHERE name = ? LIMIT 1;", (name,)).fetchone()
        return str(row["value"]) if row is not None else None

    def put_secret(self, name: str, value: str) -> None:
        self._conn.execute(
            """
            INSERT INTO secrets(name, value, updated_at) VALUES(?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at;
            """,
            (name, value, _utc_ts()),
        )
        self._conn.commit()

    # --- Jobs
    def get_job(self, *, job_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ? LIMIT 1;",
            (job_id,),
        ).fetchone()

    def get_job_status(self, *, job_id: str) -> str | None:
        row = self._conn.execute("SELECT status FROM jobs WHERE job_id = ? LIMIT 1;", (job_id,)).fetchone()
        return str(row["status"]) if row is not None else None

    def get_job_item(self, *, job_id: str) -> dict[str, Any] | None:
        row = self.get_job(job_id=job_id)
        if row is None:
            return None
        item = _job_row_to_dict(row)
        item["counters"] = self.get_counters(job_id=job_id)
        item["config_snapshot"] = json.loads(str(row["config_json"]))
        return item

    def get_counters(self, *, job_id: str) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT name, value FROM job_counters WHERE job_id = ? ORDER BY name;",
            (job_id,),
        ).fetchall()
        return {str(r["name"]): int(r["value"]) for r in rows}

    def create_job(
        self,
        *,
        kind: str,
        total: int,
        config: dict[str, Any],
        counters: Iterable[str] = (),
        commit: bool = True,
    ) -> JobRecord:
        job_id = _new_id("job")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO jobs(job_id, kind, created_at, status, total, processed, succeeded, config_json)
            VALUES(?, ?, ?, ?, ?, 0, 0, ?);
            """,
            (job_id, kind, created_at, "pending", int(total), _json_dumps(config)),
        )
        # Declared counters start at zero so status snapshots always carry them.
        self._conn.executemany(
            "INSERT OR IGNORE INTO job_counters(job_id, name, value) VALUES(?, ?, 0);",
            [(job_id, str(name)) for name in counters],
        )
        if commit:
            self._conn.commit()
        return JobRecord(job_id=job_id, kind=kind, created_at=created_at, total=int(total), status="pending")

    def create_tasks(self, *, job_id: str, payloads: list[dict[str, Any]], commit: bool = True) -> int:
        ts = _utc_ts()
        self._conn.executemany(
            """
            INSERT INTO tasks(task_id, job_id, seq, created_at, updated_at, status, payload_json)
            VALUES(?, ?, ?, ?, ?, 'pending', ?);
            """,
            [(_new_id("task"), job_id, i + 1, ts, ts, _json_dumps(p)) for i, p in enumerate(payloads)],
        )
        if commit:
            self._conn.commit()
        return len(payloads)

    def update_job_status(self, job_id: str, status: str, *, error: str | None = None) -> bool:
        """Move a job forward. Returns False when the transition is not allowed."""
        sources = _JOB_TRANSITIONS.get(status)
        if sources is None:
            raise ValueError(f"Invalid job status transition target: {status!r}")

        ts = _utc_ts()
        started_at = ts if status == "running" else None
        finished_at = ts if status in TERMINAL_JOB_STATUSES else None
        updated = self._conn.execute(
            f"""
            UPDATE jobs
            SET
              status = ?,
              started_at = COALESCE(started_at, ?),
              finished_at = COALESCE(finished_at, ?),
              error = COALESCE(?, error)
            WHERE job_id = ? AND status IN ({_placeholders(len(sources))});
            """,
            (status, started_at, finished_at, error, job_id, *sources),
        )
        self._conn.commit()
        return updated.rowcount == 1

    def mark_job_done_if_complete(self, *, job_id: str) -> bool:
        """Finish the job iff no task is pending/in_progress (checked in the same transaction)."""
        with self.transaction(mode="IMMEDIATE"):
            if self._count_open_tasks(job_id) > 0:
                return False
            ts = _utc_ts()
            updated = self._conn.execute(
                """
                UPDATE jobs
                SET
                  status = 'done',
                  started_at = COALESCE(started_at, ?),
                  finished_at = COALESCE(finished_at, ?)
                WHERE job_id = ? AND status IN ('pending', 'running');
                """,
                (ts, ts, job_id),
            )
            return updated.rowcount == 1

    def cancel_job(self, *, job_id: str) -> CancelResult:
        """Flip the job to cancelled and every still-pending task with it.

        In-progress tasks are left for their worker (cooperative cancellation).
        """
        with self.transaction(mode="IMMEDIATE"):
            ts = _utc_ts()
            updated = self._conn.execute(
                """
                UPDATE jobs
                SET status = 'cancelled', finished_at = COALESCE(finished_at, ?)
                WHERE job_id = ? AND status IN ('pending', 'running');
                """,
                (ts, job_id),
            )
            if updated.rowcount != 1:
                return CancelResult(cancelled=False, tasks_cancelled=0)
            tasks = self._conn.execute(
                """
                UPDATE tasks
                SET status = 'cancelled', updated_at = ?, finished_at = ?
                WHERE job_id = ? AND status = 'pending';
                """,
                (ts, ts, job_id),
            )
            return CancelResult(cancelled=True, tasks_cancelled=int(tasks.rowcount))

    def list_jobs_page(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
        kind: str | None = None,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if kind:
            where.append("kind = ?")
            params.append(kind)

        if statuses:
            where.append(f"status IN ({_placeholders(len(statuses))})")
            params.extend(statuses)

        if cursor is not None:
            created_at, job_id = cursor
            # Newest-first pagination (DESC).
            where.append("(created_at < ? OR (created_at = ? AND job_id < ?))")
            params.extend([float(created_at), float(created_at), str(job_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM jobs
            WHERE {where_sql}
            ORDER BY created_at DESC, job_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [_job_row_to_dict(r) for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["job_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def list_job_ids(self, *, statuses: list[str], with_in_progress: bool = False) -> list[str]:
        where = f"status IN ({_placeholders(len(statuses))})"
        if with_in_progress:
            where += " AND EXISTS (SELECT 1 FROM tasks t WHERE t.job_id = jobs.job_id AND t.status = 'in_progress')"
        rows = self._conn.execute(
            f"SELECT job_id FROM jobs WHERE {where} ORDER BY created_at;",
            tuple(statuses),
        ).fetchall()
        return [str(r["job_id"]) for r in rows]

    def count_jobs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Tasks
    def get_task(self, *, task_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE task_id = ? LIMIT 1;",
            (task_id,),
        ).fetchone()

    def count_tasks_by_status(self, *, job_id: str) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM tasks WHERE job_id = ? GROUP BY status ORDER BY status;",
            (job_id,),
        ).fetchall()
        counts = {s: 0 for s in TASK_STATUSES}
        counts.update({str(r["status"]): int(r["n"]) for r in rows})
        return counts

    def _count_open_tasks(self, job_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM tasks WHERE job_id = ? AND status IN ('pending', 'in_progress');",
            (job_id,),
        ).fetchone()
        return int(row["n"])

    def list_tasks_page(
        self,
        *,
        job_id: str,
        limit: int,
        after_seq: int | None = None,
        statuses: list[str] | None = None,
    ) -> dict[str, Any]:
        where = ["job_id = ?"]
        params: list[Any] = [job_id]

        if statuses:
            where.append(f"status IN ({_placeholders(len(statuses))})")
            params.extend(statuses)

        if after_seq is not None:
            where.append("seq > ?")
            params.append(int(after_seq))

        fetch_n = int(limit) + 1
        rows = self._conn.execute(
            f"""
            SELECT {_TASK_COLUMNS}
            FROM tasks
            WHERE {" AND ".join(where)}
            ORDER BY seq ASC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]
        items = [_task_row_to_dict(r) for r in rows]
        next_after = items[-1]["seq"] if has_more and items else None
        return {"items": items, "has_more": has_more, "next_after": next_after}

    # --- Queue primitives (concurrency-safe claims)
    def claim_tasks(self, *, job_id: str, batch_size: int) -> ClaimResult:
        """Atomically claim up to `batch_size` pending tasks and mark them in_progress.

        Safe under any number of concurrent callers on separate connections:
        the IMMEDIATE transaction serializes writers, and the update is
        conditional on `status = 'pending'`. The job is promoted to running on
        its first claim. Terminal jobs never hand out work.
        """
        if int(batch_size) < 1:
            raise ValueError("batch_size must be >= 1")

        with self.transaction(mode="IMMEDIATE"):
            job = self._conn.execute("SELECT status FROM jobs WHERE job_id = ? LIMIT 1;", (job_id,)).fetchone()
            if job is None or str(job["status"]) in TERMINAL_JOB_STATUSES:
                return ClaimResult(tasks=[], remaining=self._count_open_tasks(job_id))

            rows = self._conn.execute(
                """
                SELECT task_id
                FROM tasks
                WHERE job_id = ? AND status = 'pending'
                ORDER BY seq ASC
                LIMIT ?;
                """,
                (job_id, int(batch_size)),
            ).fetchall()
            task_ids = [str(r["task_id"]) for r in rows]

            claimed: list[sqlite3.Row] = []
            started = False
            if task_ids:
                ts = _utc_ts()
                self._conn.execute(
                    f"""
                    UPDATE tasks
                    SET status = 'in_progress', updated_at = ?, attempt_count = attempt_count + 1
                    WHERE task_id IN ({_placeholders(len(task_ids))}) AND status = 'pending';
                    """,
                    (ts, *task_ids),
                )
                promoted = self._conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'running', started_at = COALESCE(started_at, ?)
                    WHERE job_id = ? AND status = 'pending';
                    """,
                    (ts, job_id),
                )
                started = promoted.rowcount == 1
                claimed = self._conn.execute(
                    f"""
                    SELECT {_TASK_COLUMNS}
                    FROM tasks
                    WHERE task_id IN ({_placeholders(len(task_ids))})
                    ORDER BY seq ASC;
                    """,
                    tuple(task_ids),
                ).fetchall()

            return ClaimResult(tasks=list(claimed), remaining=self._count_open_tasks(job_id), started=started)

    def reap_stuck_tasks(
        self,
        *,
        job_id: str,
        timeout_s: float,
        max_attempts: int = 0,
        now_ts: float | None = None,
    ) -> ReapResult:
        """Reset in_progress tasks not touched for `timeout_s` back to pending.

        Tasks already claimed `max_attempts` times are finished as failed
        instead (and counted as processed), so a task that keeps killing its
        invocation cannot hold the job open forever. `max_attempts=0` disables
        the ceiling.
        """
        now = _utc_ts() if now_ts is None else float(now_ts)
        cutoff = now - float(timeout_s)

        with self.transaction(mode="IMMEDIATE"):
            abandoned = 0
            if int(max_attempts) > 0:
                cur = self._conn.execute(
                    """
                    UPDATE tasks
                    SET
                      status = 'done',
                      succeeded = 0,
                      error = 'abandoned after ' || attempt_count || ' attempts',
                      finished_at = ?,
                      updated_at = ?
                    WHERE job_id = ? AND status = 'in_progress' AND updated_at < ? AND attempt_count >= ?;
                    """,
                    (now, now, job_id, cutoff, int(max_attempts)),
                )
                abandoned = int(cur.rowcount)
                if abandoned:
                    self._conn.execute(
                        "UPDATE jobs SET processed = processed + ? WHERE job_id = ?;",
                        (abandoned, job_id),
                    )

            reset = self._conn.execute(
                """
                UPDATE tasks
                SET status = 'pending', updated_at = ?
                WHERE job_id = ? AND status = 'in_progress' AND updated_at < ?;
                """,
                (now, job_id, cutoff),
            )
            return ReapResult(reset=int(reset.rowcount), abandoned=abandoned)

    def complete_task(
        self,
        *,
        job_id: str,
        task_id: str,
        succeeded: bool,
        verdict: str | None = None,
        reason: str | None = None,
        error: str | None = None,
        result: dict[str, Any] | None = None,
        counters: dict[str, int] | None = None,
    ) -> bool:
        """Write a task's outcome and fold it into the job aggregates.

        Both happen in one transaction and only if the task is still
        in_progress, so a task re-executed after a reaper reset is counted once.
        Returns False when the update was skipped.
        """
        deltas = {str(k): int(v) for k, v in (counters or {}).items() if int(v) != 0}
        if any(v < 0 for v in deltas.values()):
            raise ValueError(f"Counter increments must be non-negative: {deltas!r}")

        with self.transaction(mode="IMMEDIATE"):
            ts = _utc_ts()
            updated = self._conn.execute(
                """
                UPDATE tasks
                SET
                  status = 'done',
                  succeeded = ?,
                  verdict = ?,
                  reason = ?,
                  error = ?,
                  result_json = ?,
                  finished_at = ?,
                  updated_at = ?
                WHERE task_id = ? AND job_id = ? AND status = 'in_progress';
                """,
                (
                    1 if succeeded else 0,
                    verdict,
                    reason,
                    error,
                    _json_dumps(result or {}),
                    ts,
                    ts,
                    task_id,
                    job_id,
                ),
            )
            if updated.rowcount != 1:
                return False

            self._conn.execute(
                "UPDATE jobs SET processed = processed + 1, succeeded = succeeded + ? WHERE job_id = ?;",
                (1 if succeeded else 0, job_id),
            )
            for name, delta in deltas.items():
                self._conn.execute(
                    """
                    INSERT INTO job_counters(job_id, name, value) VALUES(?, ?, ?)
                    ON CONFLICT(job_id, name) DO UPDATE SET value = value + excluded.value;
                    """,
                    (job_id, name, delta),
                )
            return True

    def touch_task(self, *, job_id: str, task_id: str) -> bool:
        """Refresh a claimed task's `updated_at` so the reaper sees it as alive."""
        cur = self._conn.execute(
            "UPDATE tasks SET updated_at = ? WHERE job_id = ? AND task_id = ? AND status = 'in_progress';",
            (_utc_ts(), job_id, task_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def cancel_claimed_tasks(self, *, job_id: str, task_ids: list[str]) -> int:
        """Mark claimed-but-unstarted tasks cancelled (worker saw the job cancelled)."""
        if not task_ids:
            return 0
        ts = _utc_ts()
        cur = self._conn.execute(
            f"""
            UPDATE tasks
            SET status = 'cancelled', updated_at = ?, finished_at = ?
            WHERE job_id = ? AND task_id IN ({_placeholders(len(task_ids))}) AND status = 'in_progress';
            """,
            (ts, ts, job_id, *task_ids),
        )
        self._conn.commit()
        return int(cur.rowcount)

    def cancel_stale_tasks(self, *, job_id: str, timeout_s: float, now_ts: float | None = None) -> int:
        """For a cancelled job: in_progress tasks whose worker went away end as cancelled."""
        now = _utc_ts() if now_ts is None else float(now_ts)
        cur = self._conn.execute(
            """
            UPDATE tasks
            SET status = 'cancelled', updated_at = ?, finished_at = ?
            WHERE job_id = ? AND status = 'in_progress' AND updated_at < ?;
            """,
            (now, now, job_id, now - float(timeout_s)),
        )
        self._conn.commit()
        return int(cur.rowcount)

    # --- Events (trace)
    def append_event(self, job_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO events(event_id, job_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, job_id, _utc_ts(), event_type, _json_dumps(payload)),
        )
        self._conn.commit()
        return event_id

    def get_latest_event(self, *, job_id: str, event_type: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT event_id, job_id, created_at, event_type, payload_json
            FROM events
            WHERE job_id = ? AND event_type = ?
            ORDER BY created_at DESC, event_id DESC
            LIMIT 1;
            """,
            (job_id, event_type),
        ).fetchone()

    def list_events(
        self,
        *,
        job_id: str,
        limit: int = 200,
        event_types: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        where = ["job_id = ?"]
        params: list[Any] = [job_id]
        if event_types:
            where.append(f"event_type IN ({_placeholders(len(event_types))})")
            params.extend(event_types)
        rows = self._conn.execute(
            f"""
            SELECT event_id, created_at, event_type, payload_json
            FROM events
            WHERE {" AND ".join(where)}
            ORDER BY created_at ASC, event_id ASC
            LIMIT ?;
            """,
            (*params, int(limit)),
        ).fetchall()
        return [
            {
                "event_id": r["event_id"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }
            for r in rows
        ]
