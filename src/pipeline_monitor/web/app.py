"""HTTP API for the pipeline monitor."""

import json
import logging
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from pipeline_monitor.config import Config, get_config
from pipeline_monitor.core.engine import Envelope, PipelineMonitor
from pipeline_monitor.web.stream import ChangeNotifier

logger = logging.getLogger(__name__)


def _monitor(request: Request) -> PipelineMonitor:
    return request.app.state.monitor


def _respond(envelope: Envelope) -> JSONResponse:
    return JSONResponse(envelope.to_dict(), status_code=envelope.status_code)


def _bad_request(message: str) -> JSONResponse:
    return _respond(Envelope(error=message, status_code=400))


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_status(request: Request):
    return _respond(await run_in_threadpool(_monitor(request).get_status))


async def api_stream(request: Request):
    monitor = _monitor(request)
    notifier = ChangeNotifier(
        monitor.config.dev_dir,
        lambda: monitor.get_status().to_dict(),
    )
    return StreamingResponse(
        notifier.frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def api_list_workers(request: Request):
    return _respond(await run_in_threadpool(_monitor(request).list_worker_counts))


async def api_scale_workers(request: Request):
    body = await _json_body(request)
    if body is None:
        return _bad_request("Request body must be a JSON object")
    envelope = await run_in_threadpool(
        _monitor(request).scale, body.get("workerType"), body.get("count")
    )
    return _respond(envelope)


async def api_list_tasks(request: Request):
    return _respond(await run_in_threadpool(_monitor(request).list_backlog))


async def api_add_task(request: Request):
    body = await _json_body(request)
    if body is None:
        return _bad_request("Request body must be a JSON object")
    envelope = await run_in_threadpool(
        _monitor(request).add_task,
        body.get("tag"),
        body.get("title"),
        body.get("description"),
        body.get("position", "top"),
        body.get("blockedBy"),
    )
    return _respond(envelope)


async def api_trigger(request: Request):
    body = await _json_body(request)
    if body is None:
        return _bad_request("Request body must be a JSON object")
    envelope = await run_in_threadpool(
        _monitor(request).trigger_script, body.get("script"), body.get("args")
    )
    return _respond(envelope)


async def api_events(request: Request):
    raw = request.query_params.get("limit", "100")
    if not raw.isdigit():
        return _bad_request("limit must be a positive integer")
    return _respond(await run_in_threadpool(_monitor(request).list_events, int(raw)))


async def api_logs(request: Request):
    params = request.query_params
    script = params.get("script")
    if not script:
        return _bad_request("script is required")
    envelope = await run_in_threadpool(
        _monitor(request).get_logs,
        script,
        params.get("lines", "200"),
        params.get("search"),
    )
    return _respond(envelope)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(config: Config | None = None) -> Starlette:
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        monitor = PipelineMonitor(config)
        app.state.monitor = monitor
        try:
            yield
        finally:
            monitor.close()

    routes = [
        Route("/api/pipeline/status", api_status),
        Route("/api/pipeline/stream", api_stream),
        Route("/api/pipeline/trigger", api_trigger, methods=["POST"]),
        Route("/api/pipeline/logs", api_logs),
        Route("/api/workers/scale", api_list_workers, methods=["GET"]),
        Route("/api/workers/scale", api_scale_workers, methods=["POST"]),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_add_task, methods=["POST"]),
        Route("/api/events", api_events),
    ]
    return Starlette(routes=routes, lifespan=lifespan)


def run_server(host: str = "127.0.0.1", port: int = 8787, config: Config | None = None):
    app = create_app(config)
    logger.info("Serving pipeline monitor on http://%s:%s", host, port)
    uvicorn.run(app, host=host, port=port)
