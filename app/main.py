from __future__ import annotations

import atexit
import os
import time
from typing import Any, Optional

from flask import Flask, Response, jsonify, request, send_file

from app.fircrawl import config, db
from app.fircrawl.artifact_fetch import FetchOutcome, fetch_artifact
from app.fircrawl.errors import (
    ArtifactFetchError,
    InvalidTransition,
    JobNotFound,
    NotInitialized,
    RunnerBusy,
    SessionUnavailable,
    UpstreamUnresponsive,
    ValidationError,
)
from app.fircrawl.events import ProgressChannel
from app.fircrawl.export_excel import export_job_to_excel
from app.fircrawl.healthcheck import run_health_checks
from app.fircrawl.job_registry import CrawlJob, stop_processing_jobs
from app.fircrawl.job_runner import JobRunner
from app.fircrawl.logging_utils import _crawler_event
from app.fircrawl.playwright_portal import PlaywrightPortal
from app.fircrawl.record_state import FoundRecord
from app.fircrawl.search_params import SearchParams
from app.fircrawl.session import SessionManager, SessionState
from app.fircrawl.utils import build_artifact_path, build_file_tree, ensure_dirs, log_line

app = Flask(__name__)

# Initialise storage paths and SQLite schema on import so WSGI entrypoints
# also have the expected environment ready. No job can be running in a fresh
# process, so anything left in ``processing`` is made resumable.
ensure_dirs()
db.initialize_schema()
stop_processing_jobs("startup")

session_manager = SessionManager(PlaywrightPortal)
runner = JobRunner(session_manager)

if config.start_session_on_boot():
    session_manager.start_background()


def _shutdown() -> None:
    try:
        stop_processing_jobs("shutdown")
    except Exception as exc:  # noqa: BLE001
        log_line(f"Shutdown job reset failed: {exc}")
    session_manager.shutdown()


atexit.register(_shutdown)

INITIALIZING_MESSAGE = "System is initializing. Please wait..."


def _json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _error(message: str, status: int, **extra: Any):
    return jsonify({"success": False, "error": message, **extra}), status


def _job_active_error():
    """Refuse session work while a job owns the browser."""

    active = runner.active_job_id
    if active is None:
        return None
    return _error(f"Job {active} is running; stop it first", 409, activeJobId=active)


def _session_error():
    """Bring the session to Ready, or return the 503 response to send instead."""

    if session_manager.state is SessionState.INITIALIZING:
        return _error(INITIALIZING_MESSAGE, 503)
    try:
        state = session_manager.ensure_ready()
    except SessionUnavailable as exc:
        return _error(str(exc), 503)
    if state is not SessionState.READY:
        return _error(INITIALIZING_MESSAGE, 503)
    return None


def _parse_job_id(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _event_stream(channel: ProgressChannel) -> Response:
    response = Response(channel.stream(), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@app.get("/")
def index() -> Response:
    """Return a small index of the JSON API."""

    return jsonify(
        {
            "service": "fircrawl",
            "endpoints": sorted(
                str(rule) for rule in app.url_map.iter_rules() if rule.endpoint != "static"
            ),
        }
    )


@app.get("/api/status")
def api_status() -> Response:
    return jsonify(session_manager.status_snapshot())


@app.post("/api/send-otp")
def api_send_otp():
    mobile = str(_json_body().get("mobile") or "").strip()
    if not mobile:
        return _error("mobile is required", 400)

    blocked = _job_active_error() or _session_error()
    if blocked:
        return blocked

    try:
        session_manager.call_with_retries("send_otp", lambda cap: cap.send_otp(mobile))
    except (SessionUnavailable, NotInitialized) as exc:
        return _error(str(exc), 503)
    except UpstreamUnresponsive as exc:
        return _error(str(exc), 500)
    return jsonify({"success": True})


@app.post("/api/verify-otp")
def api_verify_otp():
    otp = str(_json_body().get("otp") or "").strip()
    if not otp:
        return _error("otp is required", 400)

    blocked = _job_active_error() or _session_error()
    if blocked:
        return blocked

    try:
        accepted = session_manager.call(lambda cap: cap.verify_otp(otp), label="verify_otp")
    except (SessionUnavailable, NotInitialized) as exc:
        return _error(str(exc), 503)
    except Exception as exc:  # noqa: BLE001
        return _error(str(exc), 500)

    if not accepted:
        return _error("OTP was not accepted", 401)
    session_manager.set_logged_in(True)
    _crawler_event("state", phase="session", kind="logged_in")
    return jsonify({"success": True})


@app.post("/api/resend-otp")
def api_resend_otp():
    blocked = _job_active_error() or _session_error()
    if blocked:
        return blocked

    try:
        session_manager.call(lambda cap: cap.resend_otp(), label="resend_otp")
    except (SessionUnavailable, NotInitialized) as exc:
        return _error(str(exc), 503)
    except Exception as exc:  # noqa: BLE001
        return _error(str(exc), 500)
    return jsonify({"success": True})


@app.get("/api/districts")
def api_districts():
    blocked = _job_active_error() or _session_error()
    if blocked:
        return blocked

    try:
        districts = session_manager.call_with_retries(
            "list_districts", lambda cap: cap.list_districts()
        )
    except (SessionUnavailable, NotInitialized) as exc:
        return _error(str(exc), 503)
    except UpstreamUnresponsive as exc:
        return _error(str(exc), 500)
    return jsonify([option.to_dict() for option in districts])


@app.post("/api/get-stations")
def api_get_stations():
    district = str(_json_body().get("districtValue") or "").strip()
    if not district:
        return _error("districtValue is required", 400)

    blocked = _job_active_error() or _session_error()
    if blocked:
        return blocked

    try:
        session_manager.call_with_retries(
            "select_district", lambda cap: cap.select_district(district)
        )
        stations = session_manager.call_with_retries(
            "list_stations", lambda cap: cap.list_stations()
        )
    except (SessionUnavailable, NotInitialized) as exc:
        return _error(str(exc), 503)
    except UpstreamUnresponsive as exc:
        return _error(str(exc), 500)
    return jsonify({"success": True, "stations": [option.to_dict() for option in stations]})


@app.post("/api/search-firs")
def api_search_firs():
    """Validate the search, create the job and stream its progress."""

    payload = _json_body()
    try:
        params = SearchParams.from_payload(payload)
    except ValidationError as exc:
        return _error(str(exc), 400, details=exc.details)

    name = str(payload.get("requestName") or "").strip() or f"Search_{int(time.time() * 1000)}"

    blocked = _job_active_error() or _session_error()
    if blocked:
        return blocked

    try:
        _, channel = runner.start(name, params)
    except RunnerBusy as exc:
        return _error(str(exc), 409, activeJobId=exc.active_job_id)
    return _event_stream(channel)


@app.post("/api/resume-request")
def api_resume_request():
    """Resume a job from its checkpoint using its stored search parameters."""

    job_id = _parse_job_id(_json_body().get("id"))
    if job_id is None:
        return _error("id is required", 400)

    try:
        CrawlJob.load(job_id)
    except JobNotFound as exc:
        return _error(str(exc), 404)

    blocked = _job_active_error() or _session_error()
    if blocked:
        return blocked

    try:
        _, channel = runner.resume(job_id)
    except RunnerBusy as exc:
        return _error(str(exc), 409, activeJobId=exc.active_job_id)
    except InvalidTransition as exc:
        return _error(str(exc), 409)
    except JobNotFound as exc:
        return _error(str(exc), 404)
    return _event_stream(channel)


@app.post("/api/stop-request")
def api_stop_request():
    job_id = _parse_job_id(_json_body().get("id"))
    if job_id is None:
        return _error("id is required", 400)

    try:
        job = CrawlJob.load(job_id)
        job.request_stop()
    except JobNotFound as exc:
        return _error(str(exc), 404)
    except InvalidTransition as exc:
        return _error(str(exc), 409)
    return jsonify({"success": True})


@app.get("/api/requests")
def api_requests() -> Response:
    return jsonify([job.to_projection() for job in CrawlJob.list_all()])


@app.get("/api/requests/<int:job_id>/records")
def api_request_records(job_id: int):
    if db.get_job(job_id) is None:
        return _error(f"Job {job_id} not found", 404)
    rows = [dict(row) for row in db.list_records(job_id)]
    return jsonify({"success": True, "jobId": job_id, "count": len(rows), "records": rows})


@app.get("/api/requests/<int:job_id>/export.xlsx")
def api_request_export(job_id: int):
    try:
        path = export_job_to_excel(job_id)
    except JobNotFound as exc:
        return _error(str(exc), 404)
    return send_file(path, as_attachment=True, download_name=os.path.basename(path))


@app.post("/api/download-fir")
def api_download_fir():
    """Fetch one record's PDF from the currently displayed result grid."""

    payload = _json_body()
    record_number = str(payload.get("recordNumber") or payload.get("firNo") or "").strip()
    district = str(payload.get("districtName") or payload.get("districtId") or "").strip()
    station = str(payload.get("stationName") or payload.get("psName") or "").strip()
    job_name = str(payload.get("requestName") or "").strip() or "Default"

    missing = [
        field
        for field, value in (
            ("recordNumber", record_number),
            ("districtName", district),
            ("stationName", station),
        )
        if not value
    ]
    if missing:
        return _error("missing fields", 400, details=missing)

    blocked = _job_active_error() or _session_error()
    if blocked:
        return blocked

    destination = build_artifact_path(config.DOWNLOAD_DIR, job_name, district, station, record_number)
    try:
        result = fetch_artifact(
            session_manager,
            FoundRecord(record_number=record_number),
            destination,
            should_stop=lambda: False,
        )
    except (SessionUnavailable, NotInitialized) as exc:
        return _error(str(exc), 503)
    except ArtifactFetchError as exc:
        return _error(str(exc), 500, errorCode=exc.error_code)

    if result.outcome is not FetchOutcome.DOWNLOADED:
        return _error("download was stopped", 500)
    return jsonify({"success": True, "path": str(result.path)})


@app.get("/api/files")
def api_files() -> Response:
    """Return the download directory as a tree of files and directories."""

    root = config.DOWNLOAD_DIR
    if not root.is_dir():
        return jsonify([])
    return jsonify({"name": root.name, "type": "directory", "children": build_file_tree(root)})


@app.get("/files/<path:filename>")
def download_file(filename: str) -> Response:
    """Serve a downloaded artifact if it exists within the download directory."""

    target = (config.DOWNLOAD_DIR / filename).resolve()
    root = config.DOWNLOAD_DIR.resolve()
    if not str(target).startswith(str(root) + os.sep):
        return Response("Invalid path", status=400)
    if not target.exists() or not target.is_file():
        return Response("File not found", status=404)
    return send_file(target, as_attachment=True, download_name=target.name)


@app.get("/api/health")
def api_health() -> Response:
    """Return a JSON health summary for configuration, filesystem, DB and session."""

    result = run_health_checks(entrypoint="ui", session=session_manager)
    status = 200 if result.ok else 503
    return jsonify({"ok": result.ok, "checks": result.checks}), status


if __name__ == "__main__":
    # Direct invocation is primarily for local development; directories and
    # schema are initialised above during module import.
    app.run(host="0.0.0.0", port=8080, threaded=True)
