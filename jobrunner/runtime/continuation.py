"""Ways to hand a job to the next worker-loop invocation without waiting for it.

- ThreadContinuation: detached daemon thread per hop (default for the API process)
- HttpContinuation: fire-and-forget POST to a deployed instance's process endpoint
- QueueContinuation: in-process FIFO drained explicitly (CLI foreground mode, tests)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable

import httpx

from jobrunner.config.load_config import AppConfig
from jobrunner.runtime.engine import invoke_job
from jobrunner.runtime.errors import JobError
from jobrunner.runtime.registry import JobRegistry


logger = logging.getLogger(__name__)


class QueueContinuation:
    def __init__(self) -> None:
        self._queue: deque[str] = deque()
        self._lock = threading.Lock()

    def trigger(self, job_id: str) -> None:
        with self._lock:
            self._queue.append(job_id)

    @property
    def pending(self) -> list[str]:
        with self._lock:
            return list(self._queue)

    def pop(self) -> str | None:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    def drain(self, run: Callable[[str], Any], *, max_invocations: int | None = None) -> int:
        """Run queued invocations one after another until the queue is empty.

        `run` may trigger further continuations; they are drained too.
        Returns the number of invocations executed.
        """
        n = 0
        while max_invocations is None or n < max_invocations:
            job_id = self.pop()
            if job_id is None:
                break
            run(job_id)
            n += 1
        return n


class ThreadContinuation:
    def __init__(
        self,
        *,
        registry: JobRegistry,
        config: AppConfig,
        db_path: str | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self._registry = registry
        self._config = config
        self._db_path = db_path
        self._delay_s = float(delay_s)

    def trigger(self, job_id: str) -> None:
        t = threading.Thread(
            target=self._run,
            args=(job_id,),
            name=f"jobrunner-{job_id[-8:]}",
            daemon=True,
        )
        t.start()

    def _run(self, job_id: str) -> None:
        if self._delay_s > 0:
            time.sleep(self._delay_s)
        try:
            invoke_job(
                job_id,
                registry=self._registry,
                config=self._config,
                db_path=self._db_path,
                continuation=self,
            )
        except JobError as e:
            logger.warning("continuation for job %s stopped: %s", job_id, e)
        except Exception:
            # The chain ends here; the watchdog re-kicks stalled jobs.
            logger.exception("continuation for job %s crashed", job_id)


class HttpContinuation:
    def __init__(
        self,
        *,
        base_url: str,
        timeout_s: float = 60.0,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = float(timeout_s)
        self._headers = dict(headers or {})
        self._transport = transport

    def trigger(self, job_id: str) -> None:
        t = threading.Thread(target=self._post, args=(job_id,), name=f"jobrunner-http-{job_id[-8:]}", daemon=True)
        t.start()

    def _post(self, job_id: str) -> None:
        try:
            with httpx.Client(
                base_url=self._base_url,
                timeout=self._timeout_s,
                headers=self._headers,
                transport=self._transport,
            ) as client:
                resp = client.post(f"/api/v1/jobs/{job_id}/process")
            if resp.status_code >= 400:
                logger.warning("continuation POST for job %s returned %d", job_id, resp.status_code)
        except httpx.HTTPError as e:
            logger.warning("continuation POST for job %s failed: %s", job_id, e)
