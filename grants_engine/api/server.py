"""
Control and status API (aiohttp).

Routes (prefix /api/scraping):
    POST  /trigger                 {"sourceId": ...} or {"triggerAll": true}
    GET   /status                  registry snapshot + scheduler state
    GET   /dashboard?timeRange=    24h | 7d | 30d
    GET   /jobs?sourceId=&status=&limit=
    GET   /jobs/{jobId}
    POST  /jobs/{jobId}/cancel
    GET   /sources
    PATCH /sources/{sourceId}      {"status": "PAUSED"}
    GET   /health

Errors are returned as {"error": {"code": "...", "message": "..."}}.
"""

import asyncio
import json
import signal
import sqlite3

import structlog
from aiohttp import web

from grants_engine.core.models import JobStatus, SourceStatus
from grants_engine.errors import BadRequestError, EngineError
from grants_engine.service import ScrapingService

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/scraping"
SERVICE_KEY = web.AppKey("service", ScrapingService)

STATUS_BY_CODE = {
    "bad_request": 400,
    "not_found": 404,
    "source_busy": 409,
    "source_inactive": 409,
    "invalid_transition": 409,
}

MAX_JOBS_LIMIT = 500


def error_response(status: int, code: str, message: str) -> web.Response:
    return web.json_response({"error": {"code": code, "message": message}}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render every failure as a structured JSON error."""
    try:
        return await handler(request)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        code = (e.reason or "error").upper().replace(" ", "_")
        return error_response(e.status, code, e.reason or "")
    except EngineError as e:
        status = STATUS_BY_CODE.get(e.code, 500)
        if status >= 500:
            logger.error("api_engine_error", path=request.path, error_type=e.code, error=e.message)
        return web.json_response({"error": e.to_dict()}, status=status)
    except Exception as e:
        logger.exception("api_unhandled_error", path=request.path, error=str(e))
        return error_response(500, "INTERNAL", "Internal server error")


def get_service(request: web.Request) -> ScrapingService:
    return request.app[SERVICE_KEY]


async def read_json(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BadRequestError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise BadRequestError("Request body must be a JSON object")
    return body


async def handle_trigger(request: web.Request) -> web.Response:
    """Trigger one source or all active sources."""
    service = get_service(request)
    body = await read_json(request)

    if body.get("triggerAll") is True:
        job_ids = await service.scheduler.trigger_all()
        return web.json_response({"jobIds": job_ids, "count": len(job_ids)}, status=202)

    source_id = body.get("sourceId")
    if not isinstance(source_id, str) or not source_id.strip():
        raise BadRequestError('Provide "sourceId" or "triggerAll": true')

    job_id = await service.scheduler.trigger_source(source_id.strip())
    return web.json_response({"jobId": job_id, "sourceId": source_id.strip()}, status=202)


async def handle_status(request: web.Request) -> web.Response:
    return web.json_response(get_service(request).status())


async def handle_dashboard(request: web.Request) -> web.Response:
    service = get_service(request)
    time_range = request.query.get("timeRange", "24h")
    dashboard = service.dashboard.get_dashboard(time_range)
    return web.json_response(dashboard.to_dict())


async def handle_list_jobs(request: web.Request) -> web.Response:
    service = get_service(request)

    status = None
    raw_status = request.query.get("status")
    if raw_status:
        try:
            status = JobStatus(raw_status.upper())
        except ValueError:
            raise BadRequestError(f"Invalid job status {raw_status!r}") from None

    try:
        limit = int(request.query.get("limit", "50"))
    except ValueError:
        raise BadRequestError("limit must be an integer") from None
    if not 1 <= limit <= MAX_JOBS_LIMIT:
        raise BadRequestError(f"limit must be between 1 and {MAX_JOBS_LIMIT}")

    jobs = service.scheduler.jobs.list(
        source_id=request.query.get("sourceId") or None,
        status=status,
        limit=limit,
    )
    return web.json_response({"jobs": [job.to_dict() for job in jobs], "count": len(jobs)})


async def handle_get_job(request: web.Request) -> web.Response:
    job = get_service(request).scheduler.jobs.get(request.match_info["job_id"])
    return web.json_response(job.to_dict())


async def handle_cancel_job(request: web.Request) -> web.Response:
    job = await get_service(request).scheduler.cancel(request.match_info["job_id"])
    return web.json_response(job.to_dict())


async def handle_list_sources(request: web.Request) -> web.Response:
    service = get_service(request)
    sources = service.registry.snapshot(service.scheduler.running_sources)
    return web.json_response({"sources": sources, "count": len(sources)})


async def handle_update_source(request: web.Request) -> web.Response:
    """Change a source's status (the only mutable field over the API).

    Pausing or disabling a source aborts its in-flight job.
    """
    service = get_service(request)
    body = await read_json(request)

    raw_status = body.get("status")
    try:
        status = SourceStatus(str(raw_status).upper())
    except ValueError:
        allowed = ", ".join(s.value for s in SourceStatus)
        raise BadRequestError(f"Invalid source status {raw_status!r} (allowed: {allowed})") from None

    source = await service.set_source_status(request.match_info["source_id"], status)
    return web.json_response(source.to_dict())


async def handle_health(request: web.Request) -> web.Response:
    """Liveness plus a catalog round trip."""
    service = get_service(request)
    try:
        with service.db.get_connection() as conn:
            conn.execute("SELECT 1").fetchone()
    except sqlite3.Error as e:
        logger.error("health_check_failed", error=str(e))
        return web.json_response({"status": "unhealthy", "database": "error"}, status=503)

    return web.json_response({
        "status": "ok",
        "database": "ok",
        "scheduler": service.scheduler.state()["loopRunning"],
    })


def create_app(service: ScrapingService) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        service: Running scraping service

    Returns:
        web.Application
    """
    app = web.Application(middlewares=[error_middleware])
    app[SERVICE_KEY] = service

    app.router.add_post(f"{API_PREFIX}/trigger", handle_trigger)
    app.router.add_get(f"{API_PREFIX}/status", handle_status)
    app.router.add_get(f"{API_PREFIX}/dashboard", handle_dashboard)
    app.router.add_get(f"{API_PREFIX}/jobs", handle_list_jobs)
    app.router.add_get(f"{API_PREFIX}/jobs/{{job_id}}", handle_get_job)
    app.router.add_post(f"{API_PREFIX}/jobs/{{job_id}}/cancel", handle_cancel_job)
    app.router.add_get(f"{API_PREFIX}/sources", handle_list_sources)
    app.router.add_patch(f"{API_PREFIX}/sources/{{source_id}}", handle_update_source)
    app.router.add_get(f"{API_PREFIX}/health", handle_health)

    return app


async def serve(service: ScrapingService, host: str, port: int) -> None:
    """
    Run the API and the scheduler loop until SIGINT/SIGTERM.

    Args:
        service: Started scraping service
        host: Bind address
        port: Bind port
    """
    app = create_app(service)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("api_listening", host=host, port=port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    scheduler_task = asyncio.create_task(service.scheduler.run_forever())
    try:
        await stop.wait()
    finally:
        logger.info("shutting_down")
        service.scheduler.stop()
        await scheduler_task
        await runner.cleanup()
