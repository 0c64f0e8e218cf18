"""Runtime orchestration (worker loop, continuations, watchdog, job kinds).

This layer is responsible for:
- snapshotting work items into task rows when a job starts
- running one worker-loop invocation: reap, claim, execute, record
- chaining invocations via continuations
- recovering stalled jobs (watchdog)

It should remain independent from the HTTP layer (`jobrunner/api`), so both CLI
and API can reuse the same execution logic.
"""
