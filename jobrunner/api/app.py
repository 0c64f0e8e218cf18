from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from jobrunner.api.dependencies import env_bool, init_runtime
from jobrunner.api.errors import APIError, api_error_handler, unhandled_error_handler, validation_error_handler
from jobrunner.runtime import watchdog
from jobrunner.storage.sqlite_store import SQLiteStore

from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.watchdog import router as watchdog_router


logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("JOBRUNNER_CORS_ORIGINS", "").strip()
    if not raw:
        # Safe local defaults: allow typical dev ports.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Fail at startup on a bad config file, not on the first request.
        init_runtime(app.state)

        # Re-kick chains that died with a previous process.
        app.state.watchdog_jobs_checked = 0
        if env_bool("JOBRUNNER_WATCHDOG_ON_STARTUP", True):
            store = SQLiteStore()
            try:
                report = watchdog.sweep(store, config=app.state.app_config, continuation=app.state.continuation)
                app.state.watchdog_jobs_checked = len(report)
            finally:
                store.close()
            if report:
                logger.info("startup watchdog checked %d unfinished job(s)", len(report))
        yield

    app = FastAPI(title="jobrunner API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])
    app.include_router(watchdog_router, prefix="/api/v1", tags=["watchdog"])

    return app


app = create_app()
