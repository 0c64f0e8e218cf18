#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from jobrunner.runtime.engine import cancel_job  # noqa: E402
from jobrunner.runtime.errors import JobNotFoundError  # noqa: E402
from jobrunner.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Cancel a job and every still-pending task (SQLite-backed).")
    p.add_argument("--job-id", required=True, help="Job id to cancel (e.g. job_<uuid>).")
    p.add_argument("--db-path", default="", help="SQLite path (default: env JOBRUNNER_SQLITE_PATH or data/jobs.db).")
    p.add_argument("--reason", default="user_cancel", help="Optional reason to record.")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    store = SQLiteStore(args.db_path or None)
    try:
        ack = cancel_job(store, str(args.job_id), reason=str(args.reason))
    except JobNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1
    finally:
        store.close()
    print(json.dumps(ack))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
