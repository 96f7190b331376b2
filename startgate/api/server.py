"""FastAPI server exposing a running orchestration to dashboards."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from startgate.api.routes import status_router
from startgate.config import settings
from startgate.health.probes import Probe
from startgate.orchestrator.engine import Orchestrator
from startgate.orchestrator.graph import DependencyGraph
from startgate.reporting.reporter import StatusReporter
from startgate.reporting.store import TransitionStore
from startgate.services.models import ServiceDescriptor
from startgate.services.registry import ServiceRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the graph and start the orchestration run in the background."""
    registry: ServiceRegistry = app.state.registry
    try:
        descriptors = registry.select(app.state.profile)
        graph = DependencyGraph(descriptors)
    except Exception:
        logger.exception("Service registry %s is invalid — refusing to start", registry.path)
        raise
    app.state.graph = graph

    store = TransitionStore(settings.transition_db_path) if settings.transition_db_path else None
    reporter = StatusReporter(store=store, queue_size=settings.subscriber_queue_size)
    app.state.reporter = reporter

    orchestrator = Orchestrator(
        graph,
        reporter=reporter,
        deadline_seconds=registry.effective_deadline(app.state.deadline_seconds),
        probe_factory=app.state.probe_factory,
    )
    app.state.orchestrator = orchestrator
    app.state.run_task = asyncio.create_task(orchestrator.run(), name="orchestrator")
    logger.info("Orchestration run %s started for %d services", orchestrator.run_id, len(graph))

    yield

    # Shutdown
    task = app.state.run_task
    if not task.done():
        task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    if store:
        store.close()


def create_app(
    registry: ServiceRegistry | None = None,
    profile: str | None = None,
    deadline_seconds: float | None = None,
    probe_factory: Callable[[ServiceDescriptor], Probe] | None = None,
) -> FastAPI:
    app = FastAPI(
        title="startgate - startup readiness",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.registry = registry or ServiceRegistry()
    app.state.profile = profile if profile is not None else settings.profile
    app.state.deadline_seconds = deadline_seconds
    app.state.probe_factory = probe_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.include_router(status_router, prefix="/api")
    return app


app = create_app()
