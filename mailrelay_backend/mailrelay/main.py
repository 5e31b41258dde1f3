"""
MailRelay Backend
FastAPI application entry point

- Relay trigger surface (service-token guarded)
- Continuation scheduler with supervised background tasks
- Periodic watchdog
- Health endpoint with DB ping
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from mailrelay.api.routes import relay
from mailrelay.core.config import settings
from mailrelay.core.database import AsyncSessionLocal, create_all, engine
from mailrelay.jobs.registry import RelayRegistry, build_registry
from mailrelay.jobs.watchdog import PeriodicWatchdog
from mailrelay.services.scheduler import TaskSupervisor, build_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Wire the relay engine on startup; drain it on shutdown.

    Shutdown order: stop the watchdog, let in-flight relays finish (or
    cancel them after one invocation budget), close provider clients,
    dispose the engine.
    """
    supervisor: Optional[TaskSupervisor] = None
    owns_registry = getattr(app.state, "registry", None) is None

    if owns_registry:
        if settings.ENVIRONMENT != "production":
            await create_all()
            logger.info("Database tables ensured (non-production)")

        supervisor = TaskSupervisor("relay")
        scheduler = build_scheduler(settings, supervisor)
        registry = build_registry(settings, AsyncSessionLocal, scheduler)
        app.state.registry = registry
        app.state.supervisor = supervisor
        app.state.watchdog = PeriodicWatchdog(
            registry.job_store,
            registry.lock_manager,
            scheduler,
            registry.adapters,
            settings,
        )
        logger.info(f"Relay engine ready (continuation mode: {settings.CONTINUATION_MODE})")

    watchdog = getattr(app.state, "watchdog", None)
    if watchdog is not None:
        await watchdog.start()

    yield

    if watchdog is not None:
        await watchdog.stop()

    if owns_registry:
        cancelled = await supervisor.drain(timeout=settings.INVOCATION_TIME_BUDGET_SECONDS)
        if cancelled:
            logger.warning(f"Cancelled {cancelled} relay task(s) at shutdown; the watchdog will restart them")
        await app.state.registry.close()
        await engine.dispose()
        logger.info("Relay engine stopped")


def create_app(
    registry: Optional[RelayRegistry] = None,
    watchdog: Optional[PeriodicWatchdog] = None,
    service_token: Optional[str] = None,
) -> FastAPI:
    """Build the app. Passing a registry skips the lifespan wiring (tests)."""
    app = FastAPI(
        lifespan=lifespan,
        title="MailRelay API",
        description="Resumable batch-job engine for mailbox import, hydration, classification and competitor scraping.",
        version="1.0.0",
        openapi_tags=[
            {"name": "Health", "description": "Health check"},
            {"name": "Relay", "description": "Relay triggers, provider callbacks and watchdog"},
        ],
    )
    app.state.registry = registry
    app.state.watchdog = watchdog
    app.state.service_token = settings.SERVICE_TOKEN if service_token is None else service_token

    app.include_router(relay.router, tags=["Relay"])

    @app.get("/health", tags=["Health"])
    async def health_check():
        """DB ping plus engine state. Returns 503 if the database is unreachable."""
        health_status = {
            "status": "healthy",
            "database": "unknown",
            "stages": app.state.registry.kinds if app.state.registry else [],
            "watchdog": bool(app.state.watchdog and app.state.watchdog.running),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        supervisor = getattr(app.state, "supervisor", None)
        if supervisor is not None:
            health_status["pending_relays"] = supervisor.pending

        session_factory = AsyncSessionLocal
        if app.state.registry is not None and app.state.registry.job_store.session_factory is not None:
            session_factory = app.state.registry.job_store.session_factory
        try:
            async with session_factory() as db:
                await db.execute(text("SELECT 1"))
            health_status["database"] = "connected"
        except Exception as e:
            health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
            health_status["status"] = "unhealthy"
            return JSONResponse(status_code=503, content=health_status)

        return health_status

    return app


app = create_app()
