from __future__ import annotations

import sys
from datetime import date
from pathlib import Path
from typing import Any, List

import pytest

from app.fircrawl import db
from app.fircrawl.checkpoint import Checkpoint
from app.fircrawl.errors import InvalidTransition, JobNotFound
from app.fircrawl.job_registry import CrawlJob, JobStatus, stop_processing_jobs
from app.fircrawl.search_params import SearchParams
from tests.test_requests_api import _configure_temp_paths


def _params() -> SearchParams:
    return SearchParams.from_payload(
        {"districts": ["D1", "D2"], "fromDate": "2024-01-01", "toDate": "2024-01-03", "selectedStations": ["S1"]}
    )


def test_create_persists_processing_job(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()

    job = CrawlJob.create("Weekly", _params())

    assert job.status is JobStatus.PROCESSING
    assert job.found_total == 0
    assert job.downloaded_total == 0
    assert job.checkpoint is None
    assert CrawlJob.load(job.id).params == _params()


def test_load_unknown_job_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()

    with pytest.raises(JobNotFound):
        CrawlJob.load(404)


def test_stop_only_from_processing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    events: List[Any] = []
    monkeypatch.setattr(
        sys.modules["app.fircrawl.job_registry"],
        "_crawler_event",
        lambda label="", **fields: events.append((label, fields)),
    )

    job = CrawlJob.create("Weekly", _params())
    job.request_stop()
    assert CrawlJob.load(job.id).status is JobStatus.STOPPED
    assert any(
        evt[1].get("from_status") == "processing" and evt[1].get("to_status") == "stopped" for evt in events
    )

    with pytest.raises(InvalidTransition):
        job.request_stop()


def test_stop_is_visible_to_another_handle(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()

    running = CrawlJob.create("Weekly", _params())
    CrawlJob.load(running.id).request_stop()

    assert running.status is JobStatus.PROCESSING
    assert running.is_stopped() is True
    assert running.status is JobStatus.STOPPED


def test_completion_refused_after_stop(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()

    job = CrawlJob.create("Weekly", _params())
    CrawlJob.load(job.id).request_stop()

    assert job.mark_completed() is False
    assert CrawlJob.load(job.id).status is JobStatus.STOPPED


def test_reopen_for_resume(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()

    stopped = CrawlJob.create("stopped", _params())
    stopped.request_stop()
    stopped.reopen_for_resume(active=False)
    assert CrawlJob.load(stopped.id).status is JobStatus.PROCESSING

    completed = CrawlJob.create("completed", _params())
    assert completed.mark_completed() is True
    completed.reopen_for_resume(active=False)
    assert completed.status is JobStatus.PROCESSING

    orphaned = CrawlJob.create("orphaned", _params())
    orphaned.reopen_for_resume(active=False)
    assert orphaned.status is JobStatus.PROCESSING
    with pytest.raises(InvalidTransition):
        orphaned.reopen_for_resume(active=True)


def test_save_progress_and_projection(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()

    job = CrawlJob.create("Weekly", _params())
    job.found_total = 4
    job.downloaded_total = 3
    job.save_progress()
    assert CrawlJob.load(job.id).checkpoint is None

    cp = Checkpoint(date(2024, 1, 2), "D2", "S1")
    job.save_progress(cp)

    projection = CrawlJob.load(job.id).to_projection()
    assert projection["foundTotal"] == 4
    assert projection["downloadedTotal"] == 3
    assert projection["checkpoint"] == {"date": "2024-01-02", "districtId": "D2", "stationId": "S1"}
    assert projection["searchParams"]["districts"] == ["D1", "D2"]
    assert projection["status"] == "processing"


def test_list_all_newest_first(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()

    first = CrawlJob.create("first", _params())
    second = CrawlJob.create("second", _params())

    assert [job.id for job in CrawlJob.list_all()] == [second.id, first.id]


def test_stop_processing_jobs_only_touches_processing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()

    running = CrawlJob.create("running", _params())
    done = CrawlJob.create("done", _params())
    done.mark_completed()

    assert stop_processing_jobs("startup") == 1
    assert CrawlJob.load(running.id).status is JobStatus.STOPPED
    assert CrawlJob.load(done.id).status is JobStatus.COMPLETED
    assert stop_processing_jobs("startup") == 0


def test_list_all_skips_rows_with_unreadable_params(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    events: List[Any] = []
    monkeypatch.setattr(
        sys.modules["app.fircrawl.job_registry"],
        "_crawler_event",
        lambda label="", **fields: events.append((label, fields)),
    )

    good = CrawlJob.create("good", _params())
    broken_json = db.create_job("broken", "{not json")
    broken_dates = db.create_job("bad dates", '{"districts": ["D1"], "fromDate": "2024-02-01", "toDate": "2024-01-01"}')

    assert [job.id for job in CrawlJob.list_all()] == [good.id]
    skipped = {evt[1].get("job_id") for evt in events if evt[1].get("error") == "undecodable_row"}
    assert skipped == {broken_json, broken_dates}
