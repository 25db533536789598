# site_lens/server.py
"""
HTTP API (aiohttp.web).

Routes::

    POST /api/scan            synchronous scan, always 200 with a ScanReport
    POST /api/jobs            queue a scan, returns {jobId, status, pollUrl}
    GET  /api/jobs/{jobId}    poll a queued scan
    GET  /healthz             liveness probe

Only a body that is not a JSON object is rejected with 400; every scan
failure is reported inside the report itself.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from aiohttp import web
from pydantic import ValidationError

from site_lens import __version__
from site_lens.engine import Engine
from site_lens.errors import InvalidScanRequestError, sanitize_error_message
from site_lens.jobs.runner import JobRunner
from site_lens.jobs.store import JobStore

__all__ = ("create_app", "run_server", "ENGINE_KEY", "JOB_STORE_KEY", "JOB_RUNNER_KEY")

logger = logging.getLogger("SiteLens")

ENGINE_KEY = web.AppKey("engine", Engine)
JOB_STORE_KEY = web.AppKey("job_store", JobStore)
JOB_RUNNER_KEY = web.AppKey("job_runner", JobRunner)

INVALID_JSON = "Invalid JSON body."
JOB_NOT_FOUND = "Job not found or expired."


async def _read_payload(request: web.Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": INVALID_JSON}), content_type="application/json"
        ) from exc
    if not isinstance(payload, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Request body must be a JSON object."}), content_type="application/json"
        )
    return payload


def _bad_request(message: str) -> web.Response:
    return web.json_response({"error": message}, status=400)


async def handle_scan(request: web.Request) -> web.Response:
    payload = await _read_payload(request)
    engine = request.app[ENGINE_KEY]
    try:
        report = await engine.scan(payload)
    except InvalidScanRequestError as exc:
        return _bad_request(str(exc))
    return web.json_response(report.to_dict(), dumps=_dumps)


async def handle_submit_job(request: web.Request) -> web.Response:
    payload = await _read_payload(request)
    engine = request.app[ENGINE_KEY]
    try:
        scan_request = engine.build_request(payload)
    except (InvalidScanRequestError, ValidationError) as exc:
        return _bad_request(sanitize_error_message(exc))
    if scan_request.canonical_url is None:
        return _bad_request("startUrl must be a valid http/https URL.")

    job = await request.app[JOB_RUNNER_KEY].submit(payload)
    poll_url = str(request.app.router["job_status"].url_for(job_id=job.job_id))
    logger.info("Job %s queued for %s", job.job_id, scan_request.start_url)
    return web.json_response({"jobId": job.job_id, "status": job.status, "pollUrl": poll_url})


async def handle_job_status(request: web.Request) -> web.Response:
    job_id = request.match_info["job_id"].strip()
    try:
        job = await request.app[JOB_STORE_KEY].get(job_id)
    except Exception as exc:  # noqa: BLE001
        message = sanitize_error_message(exc) or "Unable to load job status."
        logger.error("Job %s status lookup failed: %s", job_id, message)
        return web.json_response(
            _status_body(job_id, "failed", 100, "Unable to load job status.", None, "status_lookup_failed", message)
        )
    if job is None:
        return web.json_response(
            _status_body(job_id, "failed", 100, JOB_NOT_FOUND, None, "job_not_found", JOB_NOT_FOUND)
        )
    return web.json_response(
        {
            "jobId": job.job_id,
            "status": job.status,
            "progress": job.progress,
            "result": job.result if job.status == "complete" else None,
            "error": job.error if job.status == "failed" else None,
        },
        dumps=_dumps,
    )


def _status_body(
    job_id: str,
    status: str,
    percent: int,
    message: str,
    result: Any,
    code: str,
    error: str,
) -> Dict[str, Any]:
    return {
        "jobId": job_id,
        "status": status,
        "progress": {"percent": percent, "message": message},
        "result": result,
        "error": {"code": code, "message": error},
    }


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "version": __version__})


def _dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False)


def create_app(
    engine: Engine,
    *,
    job_store: Optional[JobStore] = None,
    job_runner: Optional[JobRunner] = None,
) -> web.Application:
    """
    Собирает aiohttp-приложение. Если хранилище заданий не передано, оно
    открывается при старте (Redis или память, см. ``open_key_value_store``).
    """
    app = web.Application()
    app[ENGINE_KEY] = engine

    async def on_startup(app: web.Application) -> None:
        store = job_store or await JobStore.open(engine.config)
        app[JOB_STORE_KEY] = store
        app[JOB_RUNNER_KEY] = job_runner or JobRunner(engine.config, engine.coordinator, store)

    async def on_cleanup(app: web.Application) -> None:
        await app[JOB_RUNNER_KEY].close()
        if job_store is None:
            await app[JOB_STORE_KEY].close()
        await engine.close()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    app.router.add_post("/api/scan", handle_scan)
    app.router.add_post("/api/jobs", handle_submit_job)
    app.router.add_get("/api/jobs/{job_id}", handle_job_status, name="job_status")
    app.router.add_get("/healthz", handle_health)
    return app


def run_server(engine: Engine, host: str = "127.0.0.1", port: int = 8080) -> None:
    logger.info("SiteLens API listening on http://%s:%d", host, port)
    web.run_app(create_app(engine), host=host, port=port, print=None)
