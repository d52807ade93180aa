from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from aiohttp import web

from .config import Config, load_config
from .fetcher import FetchClient
from .orchestrator import JobOrchestrator, RunSummary
from .session import RenderSessionManager, SessionState, get_session_manager, shutdown_session_manager
from .utils import (
    INVALID_FORMAT,
    ErrorKind,
    SessionStartupError,
    TargetValidationError,
    await_cancelled,
    utc_now_iso,
    validate_target,
)

logger = logging.getLogger(__name__)


@dataclass
class ServiceState:
    cfg: Config
    session: RenderSessionManager
    fetch_client: FetchClient
    orchestrator: JobOrchestrator
    batch_task: Optional[asyncio.Task] = None
    last_summary: Optional[RunSummary] = None
    last_batch_error: Optional[str] = None
    shared_session: bool = False

    @property
    def batch_active(self) -> bool:
        return self.orchestrator.is_running or (self.batch_task is not None and not self.batch_task.done())


STATE = web.AppKey("labelscan_state", ServiceState)


def _error(status: int, message: str, code: Optional[str] = None, **extra: Any) -> web.Response:
    body: Dict[str, Any] = {"error": message}
    if code:
        body["code"] = code
    body.update(extra)
    return web.json_response(body, status=status)


async def _json_body(request: web.Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
        return None


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return _error(404, "Not found", path=request.path)
    except web.HTTPMethodNotAllowed:
        return _error(405, "Method not allowed", path=request.path)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return _error(500, "Internal server error")


# ---------------------------
# Single-target analysis
# ---------------------------

async def analyze(request: web.Request) -> web.Response:
    st = request.app[STATE]
    body = await _json_body(request)
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object", INVALID_FORMAT)

    target = body.get("target", body.get("url"))
    try:
        validate_target(target, st.cfg.allowed_domains)
    except TargetValidationError as e:
        return _error(400, str(e), e.code)

    if st.session.state is SessionState.STARTING:
        return web.json_response(
            {"error": "Service is initializing, please try again in a few seconds", "status": "initializing"},
            status=503,
        )

    logger.info("Analyzing %s", target)
    try:
        outcome = await st.fetch_client.fetch(target)
    except SessionStartupError as e:
        return web.json_response(
            {"error": "Browser automation error - service temporarily unavailable",
             "status": "browser_error", "detail": str(e)},
            status=503,
        )

    if outcome.ok:
        return web.json_response(outcome.to_dict())

    if outcome.error_kind is ErrorKind.RATE_LIMITED:
        headers = {}
        if outcome.retry_after_s is not None:
            headers["Retry-After"] = str(int(outcome.retry_after_s))
        return web.json_response(outcome.to_dict(), status=429, headers=headers)
    if outcome.error_kind is ErrorKind.VALIDATION:
        return web.json_response(outcome.to_dict(), status=400)
    return web.json_response(outcome.to_dict(), status=422)


# ---------------------------
# Health / stats
# ---------------------------

async def health(request: web.Request) -> web.Response:
    st = request.app[STATE]
    session_health = st.session.health()
    status = session_health["status"]
    body = {
        "status": status,
        "timestamp": utc_now_iso(),
        "services": {"server": "running", "session": session_health},
        "activeContexts": session_health["activeContexts"],
        "requestCount": session_health["requestCount"],
    }
    return web.json_response(body, status=503 if status == "unhealthy" else 200)


async def stats(request: web.Request) -> web.Response:
    st = request.app[STATE]
    fetch_stats = st.fetch_client.stats()
    batch_stats = st.orchestrator.stats()
    return web.json_response({
        "timestamp": utc_now_iso(),
        "inFlight": fetch_stats["inFlight"],
        "queueDepth": batch_stats["queueDepth"],
        "requestCount": fetch_stats["requestCount"],
        "fetch": fetch_stats,
        "session": st.session.stats(),
        "batch": batch_stats,
    })


# ---------------------------
# Batch control
# ---------------------------

async def _run_batch(st: ServiceState, targets: List[Any]) -> None:
    try:
        st.last_summary = await st.orchestrator.run(targets)
        st.last_batch_error = None
    except SessionStartupError as e:
        logger.error("Batch aborted: %s", e)
        st.last_batch_error = str(e)


async def start_batch(request: web.Request) -> web.Response:
    st = request.app[STATE]
    body = await _json_body(request)
    targets = body.get("targets") if isinstance(body, dict) else None
    if not isinstance(targets, list) or not targets:
        return _error(400, "targets must be a non-empty list", INVALID_FORMAT)
    if len(targets) > st.cfg.max_batch_size:
        return _error(400, f"Maximum {st.cfg.max_batch_size} targets allowed per batch", "BATCH_TOO_LARGE")
    if st.batch_active:
        logger.warning("Batch start requested while a batch is active")
        return web.json_response({"status": "error", "message": "Analysis already in progress"}, status=409)

    st.batch_task = asyncio.create_task(_run_batch(st, targets), name="labelscan_batch")
    return web.json_response(
        {"status": "success", "message": "Analysis started", "accepted": len(targets)},
        status=202,
    )


async def batch_status(request: web.Request) -> web.Response:
    st = request.app[STATE]
    return web.json_response({
        "running": st.orchestrator.is_running,
        "paused": st.orchestrator.is_paused,
        "stats": st.orchestrator.stats(),
        "lastSummary": st.last_summary.to_dict() if st.last_summary else None,
        "lastError": st.last_batch_error,
        "jobs": [j.to_dict() for j in st.orchestrator.jobs()],
    })


async def pause_batch(request: web.Request) -> web.Response:
    st = request.app[STATE]
    if not st.orchestrator.is_running:
        return web.json_response({"status": "error", "message": "No analysis in progress"}, status=409)
    st.orchestrator.pause()
    return web.json_response({"status": "success", "message": "Analysis paused"})


async def resume_batch(request: web.Request) -> web.Response:
    st = request.app[STATE]
    if not st.orchestrator.is_running:
        return web.json_response({"status": "error", "message": "No analysis in progress"}, status=409)
    st.orchestrator.resume()
    return web.json_response({"status": "success", "message": "Analysis resumed"})


async def stop_batch(request: web.Request) -> web.Response:
    st = request.app[STATE]
    if not st.orchestrator.is_running:
        return web.json_response({"status": "error", "message": "No analysis in progress"}, status=409)
    st.orchestrator.stop()
    return web.json_response({"status": "success", "message": "Analysis stopped", "stats": st.orchestrator.stats()})


# ---------------------------
# App factory
# ---------------------------

async def _on_cleanup(app: web.Application) -> None:
    st = app[STATE]
    await st.orchestrator.shutdown(timeout=2.0)
    await await_cancelled(st.batch_task, timeout=2.0)
    await st.fetch_client.aclose()
    if st.shared_session:
        await shutdown_session_manager()
    else:
        await st.session.close(reason="shutdown")


def create_app(
    cfg: Optional[Config] = None,
    *,
    session: Optional[RenderSessionManager] = None,
    fetch_client: Optional[FetchClient] = None,
    orchestrator: Optional[JobOrchestrator] = None,
) -> web.Application:
    cfg = cfg or load_config()
    shared_session = session is None
    session = session or get_session_manager(cfg)
    fetch_client = fetch_client or FetchClient(cfg, session)
    orchestrator = orchestrator or JobOrchestrator(cfg, fetch_client)

    app = web.Application(middlewares=[error_middleware])
    app[STATE] = ServiceState(
        cfg=cfg,
        session=session,
        fetch_client=fetch_client,
        orchestrator=orchestrator,
        shared_session=shared_session,
    )
    app.add_routes([
        web.post("/analyze", analyze),
        web.get("/health", health),
        web.get("/stats", stats),
        web.post("/batch", start_batch),
        web.get("/batch", batch_status),
        web.post("/batch/pause", pause_batch),
        web.post("/batch/resume", resume_batch),
        web.post("/batch/stop", stop_batch),
    ])
    app.on_cleanup.append(_on_cleanup)
    return app


def run_server(cfg: Config, host: Optional[str] = None, port: Optional[int] = None) -> None:
    host = host or cfg.server_host
    port = port or cfg.server_port
    logger.info("Analyzer service listening on http://%s:%d", host, port)
    web.run_app(create_app(cfg), host=host, port=port, print=None)
