# app/main.py
from __future__ import annotations
from contextlib import asynccontextmanager, suppress
from typing import Optional
import asyncio

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from adapters.storage.base import IngestError
from app.core.config import Settings, get_settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import RequestContextMiddleware
from app.core.resources import Resources, build_resources
from app.observability.state import Phase, ServiceStatus
from routes import api_router

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- START-UP ---
    res: Resources = app.state.resources
    status: ServiceStatus = app.state.status
    tasks = []

    # surveillance du CSV des tokens (rechargement à chaud)
    tasks.append(asyncio.create_task(res.owners.watch(res.settings.auth.poll_seconds)))

    # janitor : une passe au boot puis à intervalle fixe
    jcfg = res.settings.janitor
    if jcfg.enabled:
        tasks.append(asyncio.create_task(
            res.janitor.run(jcfg.interval_seconds, run_on_boot=jcfg.run_on_boot)
        ))
    app.state.background_tasks = tasks
    status.phase = Phase.RUNNING
    log.info("Server ready (%d owners loaded)", len(res.owners))

    try:
        yield  # l’application tourne ici
    finally:
        # --- SHUTDOWN ---
        status.phase = Phase.STOPPING
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        status.phase = Phase.STOPPED
        log.info("Server shut down gracefully")


async def ingest_error_handler(request: Request, exc: IngestError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        log.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def create_app(settings: Optional[Settings] = None, resources: Optional[Resources] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.app.log_level, reservation_logging=settings.ingest.reservation_logging)

    app = FastAPI(title=settings.app.name, lifespan=lifespan)
    app.state.resources = resources or build_resources(settings)
    app.state.status = ServiceStatus()

    app.add_exception_handler(IngestError, ingest_error_handler)
    app.add_middleware(RequestContextMiddleware)
    app.include_router(api_router)
    return app


def run() -> None:
    import uvicorn
    cfg = get_settings().app
    uvicorn.run("app.main:create_app", factory=True, host=cfg.host, port=cfg.port)

# uvicorn app.main:create_app --factory --port 3000
# uvicorn app.main:create_app --factory --port 3000 --log-level debug <- Lance avec logs verbeux
