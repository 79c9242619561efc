import importlib
import sys
from datetime import date
from pathlib import Path

import pytest

from app.fircrawl import config, db
from app.fircrawl.automation import Option
from app.fircrawl.job_registry import CrawlJob, JobStatus
from app.fircrawl.job_runner import JobRunner
from app.fircrawl.search_params import SearchParams
from app.fircrawl.session import SessionManager
from tests.fake_portal import FakePortal, record


def _configure_temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    db_path = data_dir / "fircrawl.db"

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "DOWNLOAD_DIR", data_dir / "download")
    monkeypatch.setattr(config, "LOG_DIR", data_dir / "logs")
    monkeypatch.setattr(config, "LOG_FILE", data_dir / "logs" / "latest.log")
    monkeypatch.setattr(config, "EXPORTS_DIR", data_dir / "exports")
    monkeypatch.setattr(config, "DB_PATH", db_path)
    monkeypatch.setattr(db, "DB_PATH", db_path)


def _reload_main_module():
    if "app.main" in sys.modules:
        del sys.modules["app.main"]
    return importlib.import_module("app.main")


def _fake_session(portal: FakePortal) -> SessionManager:
    return SessionManager(
        lambda: portal,
        step_retries=2,
        step_backoff_seconds=0,
        call_timeout_seconds=10,
        max_attempts=2,
        sleep=lambda seconds: None,
    )


def _install_fake_portal(main, monkeypatch: pytest.MonkeyPatch, portal: FakePortal, tmp_path: Path):
    session = _fake_session(portal)
    runner = JobRunner(
        session,
        download_root=config.DOWNLOAD_DIR,
        artifact_timeout_seconds=5,
        artifact_poll_seconds=0.01,
    )
    monkeypatch.setattr(main, "session_manager", session)
    monkeypatch.setattr(main, "runner", runner)
    return session, runner


def _parse_sse(body: str) -> list[tuple[str, str]]:
    frames = []
    for block in body.split("\n\n"):
        lines = [line for line in block.splitlines() if line and not line.startswith(":")]
        if not lines:
            continue
        name = lines[0].split(": ", 1)[1]
        data = lines[1].split(": ", 1)[1]
        frames.append((name, data))
    return frames


def _single_station_portal() -> FakePortal:
    return FakePortal(
        districts=[Option("Bhopal", "D1")],
        stations={"D1": [Option("Kotwali", "S1")]},
        results={
            (date(2024, 1, 1), "D1", "S1"): [record("FIR-1"), record("FIR-2", token=None)],
        },
    )


def test_status_reports_uninitialised_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    client = main.app.test_client()

    resp = client.get("/api/status")
    assert resp.status_code == 200
    assert resp.get_json() == {"ready": False, "isLoggedIn": False, "status": "uninitialized"}


def test_import_marks_orphaned_processing_jobs_stopped(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    params = SearchParams.from_payload({"districts": ["D1"], "fromDate": "2024-01-01", "toDate": "2024-01-01"})
    job = CrawlJob.create("orphan", params)

    _reload_main_module()

    assert CrawlJob.load(job.id).status is JobStatus.STOPPED


def test_requests_listing_survives_an_unreadable_job(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    params = SearchParams.from_payload({"districts": ["D1"], "fromDate": "2024-01-01", "toDate": "2024-01-01"})
    job = CrawlJob.create("readable", params)
    db.create_job("garbled", "[")
    main = _reload_main_module()
    client = main.app.test_client()

    resp = client.get("/api/requests")

    assert resp.status_code == 200
    assert [item["id"] for item in resp.get_json()] == [job.id]


def test_otp_login_flow(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    portal = _single_station_portal()
    session, _ = _install_fake_portal(main, monkeypatch, portal, tmp_path)
    client = main.app.test_client()

    assert client.post("/api/send-otp", json={}).status_code == 400

    resp = client.post("/api/send-otp", json={"mobile": "9999999999"})
    assert resp.status_code == 200
    assert ("send_otp", "9999999999") in portal.calls

    bad = client.post("/api/verify-otp", json={"otp": "000000"})
    assert bad.status_code == 401
    assert session.logged_in is False

    good = client.post("/api/verify-otp", json={"otp": "123456"})
    assert good.status_code == 200
    assert client.get("/api/status").get_json() == {"ready": True, "isLoggedIn": True, "status": "ready"}

    assert client.post("/api/resend-otp").status_code == 200
    assert ("resend_otp",) in portal.calls


def test_send_otp_returns_503_when_session_cannot_start(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    portal = _single_station_portal()
    portal.step_failures["open_portal"] = 10
    _install_fake_portal(main, monkeypatch, portal, tmp_path)
    client = main.app.test_client()

    resp = client.post("/api/send-otp", json={"mobile": "9999999999"})
    assert resp.status_code == 503
    assert resp.get_json()["success"] is False
    assert client.get("/api/status").get_json()["status"] == "degraded"


def test_districts_and_stations(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    portal = _single_station_portal()
    _install_fake_portal(main, monkeypatch, portal, tmp_path)
    client = main.app.test_client()

    assert client.get("/api/districts").get_json() == [{"label": "Bhopal", "value": "D1"}]

    assert client.post("/api/get-stations", json={}).status_code == 400
    resp = client.post("/api/get-stations", json={"districtValue": "D1"})
    assert resp.get_json() == {"success": True, "stations": [{"label": "Kotwali", "value": "S1"}]}


def test_search_firs_rejects_invalid_parameters(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    portal = _single_station_portal()
    _install_fake_portal(main, monkeypatch, portal, tmp_path)
    client = main.app.test_client()

    resp = client.post(
        "/api/search-firs",
        json={"districts": [], "fromDate": "2024-01-05", "toDate": "2024-01-01"},
    )
    assert resp.status_code == 400
    payload = resp.get_json()
    assert payload["success"] is False
    assert any("district" in detail for detail in payload["details"])
    assert db.list_jobs() == []
    assert portal.opened == 0


def test_search_firs_streams_job_events(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    portal = _single_station_portal()
    _install_fake_portal(main, monkeypatch, portal, tmp_path)
    client = main.app.test_client()

    resp = client.post(
        "/api/search-firs",
        json={
            "districts": ["D1"],
            "fromDate": "2024-01-01",
            "toDate": "2024-01-01",
            "requestName": "Weekly",
        },
    )
    assert resp.status_code == 200
    assert resp.mimetype == "text/event-stream"
    assert resp.headers["Cache-Control"] == "no-cache"

    frames = _parse_sse(resp.get_data(as_text=True))
    names = [name for name, _ in frames if name != "log"]
    assert names == ["fir_found", "fir_status", "fir_status", "fir_found", "fir_status", "complete"]
    assert frames[-1] == ("complete", '{"total":2,"downloaded":1}')

    jobs = client.get("/api/requests").get_json()
    assert len(jobs) == 1
    assert jobs[0]["name"] == "Weekly"
    assert jobs[0]["status"] == "completed"
    assert jobs[0]["foundTotal"] == 2
    assert jobs[0]["downloadedTotal"] == 1

    pdf = config.DOWNLOAD_DIR / "Weekly" / "D1" / "Kotwali" / "FIR_1.pdf"
    assert pdf.read_bytes() == portal.artifact_bytes

    records = client.get(f"/api/requests/{jobs[0]['id']}/records").get_json()
    assert records["count"] == 2
    assert {row["download_status"] for row in records["records"]} == {"downloaded", "pending"}


def test_search_firs_refused_while_a_job_is_running(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    portal = _single_station_portal()
    _, runner = _install_fake_portal(main, monkeypatch, portal, tmp_path)
    monkeypatch.setattr(runner, "_active_job_id", 42)
    client = main.app.test_client()

    resp = client.post(
        "/api/search-firs",
        json={"districts": ["D1"], "fromDate": "2024-01-01", "toDate": "2024-01-01"},
    )
    assert resp.status_code == 409
    assert resp.get_json()["activeJobId"] == 42
    assert db.list_jobs() == []


def test_stop_and_resume_requests(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    portal = _single_station_portal()
    _install_fake_portal(main, monkeypatch, portal, tmp_path)
    client = main.app.test_client()

    params = SearchParams.from_payload({"districts": ["D1"], "fromDate": "2024-01-01", "toDate": "2024-01-01"})
    job = CrawlJob.create("manual", params)

    assert client.post("/api/stop-request", json={"id": 999}).status_code == 404
    assert client.post("/api/stop-request", json={"id": "x"}).status_code == 400

    assert client.post("/api/stop-request", json={"id": job.id}).status_code == 200
    assert CrawlJob.load(job.id).status is JobStatus.STOPPED
    # Stopping twice is an invalid transition.
    assert client.post("/api/stop-request", json={"id": job.id}).status_code == 409

    assert client.post("/api/resume-request", json={"id": 999}).status_code == 404

    resp = client.post("/api/resume-request", json={"id": job.id})
    assert resp.status_code == 200
    frames = _parse_sse(resp.get_data(as_text=True))
    assert frames[-1][0] == "complete"
    assert CrawlJob.load(job.id).status is JobStatus.COMPLETED


def test_files_tree_and_download(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    client = main.app.test_client()

    target = config.DOWNLOAD_DIR / "Weekly" / "D1" / "Kotwali" / "FIR_1.pdf"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"pdf")
    (config.DOWNLOAD_DIR / ".fetch-abc").mkdir()

    tree = client.get("/api/files").get_json()
    assert tree["type"] == "directory"
    assert [child["name"] for child in tree["children"]] == ["Weekly"]
    station = tree["children"][0]["children"][0]["children"][0]
    assert station["children"] == [{"name": "FIR_1.pdf", "type": "file", "size": 3}]

    resp = client.get("/files/Weekly/D1/Kotwali/FIR_1.pdf")
    assert resp.status_code == 200
    assert resp.data == b"pdf"

    assert client.get("/files/Weekly/missing.pdf").status_code == 404
    assert client.get("/files/../fircrawl.db").status_code in (400, 404)


def test_files_tree_empty_without_download_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    monkeypatch.setattr(config, "DOWNLOAD_DIR", tmp_path / "nowhere")
    client = main.app.test_client()

    assert client.get("/api/files").get_json() == []


def test_download_fir_saves_into_job_layout(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    portal = _single_station_portal()
    _install_fake_portal(main, monkeypatch, portal, tmp_path)
    client = main.app.test_client()

    assert client.post("/api/download-fir", json={"firNo": "FIR-9"}).status_code == 400

    resp = client.post(
        "/api/download-fir",
        json={"firNo": "FIR/9", "requestName": "Adhoc", "districtName": "D1", "psName": "Kotwali"},
    )
    assert resp.status_code == 200
    path = Path(resp.get_json()["path"])
    assert path == config.DOWNLOAD_DIR / "Adhoc" / "D1" / "Kotwali" / "FIR_9.pdf"
    assert path.exists()
    assert portal.fetched == ["FIR/9"]


def test_export_endpoint_returns_workbook(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    client = main.app.test_client()

    params = SearchParams.from_payload({"districts": ["D1"], "fromDate": "2024-01-01", "toDate": "2024-01-01"})
    job = CrawlJob.create("export me", params)

    resp = client.get(f"/api/requests/{job.id}/export.xlsx")
    assert resp.status_code == 200
    assert resp.data[:2] == b"PK"

    assert client.get("/api/requests/999/export.xlsx").status_code == 404
    assert client.get("/api/requests/999/records").status_code == 404


def test_index_lists_endpoints(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    client = main.app.test_client()

    payload = client.get("/").get_json()
    assert "/api/search-firs" in payload["endpoints"]
    assert "/api/health" in payload["endpoints"]
