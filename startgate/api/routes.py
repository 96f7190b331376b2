"""API routes for the readiness snapshot and transition feed.

Endpoints:
  GET  /api/status        — current SystemSnapshot
  GET  /api/transitions   — transition log (optionally per service)
  GET  /api/graph         — services, edges and startup batches
  GET  /api/result        — terminal RunResult (202 while still running)
  GET  /api/stream        — SSE stream of live transitions
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

logger = logging.getLogger(__name__)

status_router = APIRouter()


@status_router.get("/status")
def get_status(request: Request) -> dict[str, Any]:
    """Point-in-time snapshot of every service."""
    reporter = request.app.state.reporter
    data = reporter.snapshot().to_dict()
    data["run_id"] = reporter.run_id
    data["finished"] = reporter.closed
    return data


@status_router.get("/transitions")
def list_transitions(
    request: Request, service_id: str | None = None, since: int = 0,
) -> dict[str, Any]:
    """Ordered transition log of the current run."""
    reporter = request.app.state.reporter
    events = reporter.events(service_id=service_id, since=since)
    return {"run_id": reporter.run_id, "transitions": [e.to_dict() for e in events]}


@status_router.get("/graph")
def get_graph(request: Request) -> dict[str, Any]:
    """Dependency graph with its topological startup batches."""
    return request.app.state.graph.to_dict()


@status_router.get("/result", response_model=None)
def get_result(request: Request) -> dict[str, Any] | JSONResponse:
    """Terminal outcome; 202 until the run has finished."""
    task = request.app.state.run_task
    if not task.done():
        return JSONResponse(status_code=202, content={"finished": False})
    if task.cancelled():
        return JSONResponse(status_code=409, content={"finished": False, "error": "run cancelled"})
    exc = task.exception()
    if exc is not None:
        return JSONResponse(
            status_code=500,
            content={"finished": True, "error": f"{type(exc).__name__}: {exc}"},
        )
    data = task.result().to_dict()
    data["finished"] = True
    return data


# ── SSE stream ───────────────────────────────────────────────────────────────


@status_router.get("/stream")
async def transition_stream(request: Request) -> StreamingResponse:
    """Server-Sent Events stream of live transitions."""
    reporter = request.app.state.reporter
    queue = reporter.subscribe()

    async def event_generator():
        try:
            # Send initial state
            yield f"event: init\ndata: {json.dumps(reporter.snapshot().to_dict())}\n\n"

            while True:
                if await request.is_disconnected():
                    break

                try:
                    transition = await asyncio.wait_for(queue.get(), timeout=30)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue

                if transition is None:
                    yield f"event: done\ndata: {json.dumps(reporter.snapshot().to_dict())}\n\n"
                    break
                yield f"event: transition\ndata: {json.dumps(transition.to_dict())}\n\n"
        finally:
            reporter.unsubscribe(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
