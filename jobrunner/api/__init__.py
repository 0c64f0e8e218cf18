"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface that admin tooling can use to:
- start jobs and poll their progress
- drive one worker-loop invocation (the continuation target)
- read per-task outcomes and trace events
- cancel jobs and run the stalled-job watchdog

The API is intentionally thin: core behavior lives in `jobrunner/runtime` and `jobrunner/storage`.
"""
