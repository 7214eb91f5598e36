"""FastAPI server — wires registry, result store and scheduler together."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from monagent import __version__
from monagent.api.health_routes import health_router
from monagent.api.system_routes import system_router
from monagent.config import settings
from monagent.health.engine import execute
from monagent.health.scheduler import HealthScheduler
from monagent.health.store import ResultStore
from monagent.monitors.registry import ConfigError, Registry, RegistryHolder, load_file

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the scheduler on startup, drain it on shutdown."""
    scheduler = HealthScheduler(
        app.state.registry,
        app.state.result_store,
        executor=partial(execute, max_message_chars=settings.max_message_chars),
        max_concurrency=settings.max_concurrency,
        queue_size=settings.dispatch_queue_size,
        shutdown_grace=settings.shutdown_grace_seconds,
    )
    app.state.health_scheduler = scheduler
    await scheduler.start()

    hup_installed = _install_reload_signal(app)

    yield

    if hup_installed:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGHUP)
    await scheduler.stop()


def reload_monitors(app: FastAPI) -> bool:
    """Re-read the monitor file and swap it in. Keeps the current set on error."""
    path = app.state.config_path
    if path is None:
        logger.warning("Reload requested but no monitor file is configured")
        return False
    try:
        registry = load_file(path)
    except ConfigError as e:
        logger.error("Reload rejected, keeping current monitors: %s", e)
        return False
    app.state.health_scheduler.reload(registry)
    return True


def _install_reload_signal(app: FastAPI) -> bool:
    if not hasattr(signal, "SIGHUP"):
        return False
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGHUP, reload_monitors, app)
    except (NotImplementedError, RuntimeError, ValueError):
        # Not the main thread (e.g. under a test client)
        logger.debug("SIGHUP reload not available in this context")
        return False
    return True


async def _internal_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app(registry: Registry | None = None, config_path: Path | str | None = None) -> FastAPI:
    app = FastAPI(
        title="Monitoring Agent",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.registry = RegistryHolder(registry)
    app.state.result_store = ResultStore(history_size=settings.history_size)
    app.state.config_path = config_path

    app.add_exception_handler(Exception, _internal_error)
    app.include_router(health_router)
    app.include_router(system_router)

    return app
