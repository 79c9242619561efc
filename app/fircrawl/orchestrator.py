"""Walks a job's (date x district x station) space against the portal.

Each station search is one work unit. Units run strictly one after another
through the session, records inside a unit likewise. The checkpoint moves
only after every record of a unit has been handled, so a stopped or failed
run resumes from the last fully finished unit; records already known for
the job are recognised by their number and neither recounted nor refetched.
"""
from __future__ import annotations

import sqlite3
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, TypeVar

from . import config
from .artifact_fetch import FetchOutcome, fetch_artifact
from .automation import Option
from .checkpoint import CheckpointTracker, WorkUnit, skips_date, skips_district, skips_station
from .date_utils import to_portal_date
from .error_codes import ErrorCode
from .errors import NotInitialized, SessionUnavailable, UpstreamUnresponsive
from .events import EventName, ProgressChannel
from .job_registry import CrawlJob
from .logging_utils import _crawler_event
from .record_state import FoundRecord, RecordState
from .session import SessionManager
from .utils import build_artifact_path

T = TypeVar("T")


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"


class _UnitResult(Enum):
    DONE = "done"
    NO_RESULTS = "no_results"
    # Finished, but a record could not be stored; the unit is searched again on resume.
    PARTIAL = "partial"
    PAUSED = "paused"


class JobOrchestrator:
    def __init__(
        self,
        session: SessionManager,
        channel: ProgressChannel,
        *,
        download_root: Optional[Path] = None,
        artifact_timeout_seconds: Optional[float] = None,
        artifact_poll_seconds: Optional[float] = None,
    ) -> None:
        self._session = session
        self._channel = channel
        self._download_root = Path(download_root or config.DOWNLOAD_DIR)
        self._artifact_timeout = artifact_timeout_seconds
        self._artifact_poll = artifact_poll_seconds

    # -- helpers ---------------------------------------------------------

    def _persist(self, label: str, fn: Callable[[], T]) -> Optional[T]:
        """Run a database write; failures are reported and the run carries on."""

        try:
            return fn()
        except sqlite3.Error as exc:
            _crawler_event("error", phase="persist", operation=label, error_code=ErrorCode.PERSISTENCE, error=str(exc))
            self._channel.log(f"Database write failed ({label}): {exc}", "error")
            return None

    def _stop_requested(self, job: CrawlJob) -> bool:
        try:
            return job.is_stopped()
        except sqlite3.Error as exc:
            _crawler_event("error", phase="persist", operation="read_status", job_id=job.id, error=str(exc))
            return False

    def _pause(self, job: CrawlJob) -> RunOutcome:
        self._persist("save_counts", job.save_progress)
        self._channel.log(f"Job {job.id} stopped by user.", "warning")
        self._channel.publish(EventName.PAUSED, jobId=job.id)
        return RunOutcome.PAUSED

    def _select_district(self, district_id: str) -> list[Option]:
        self._session.call_with_retries(
            "select_district", lambda cap: cap.select_district(district_id)
        )
        return self._session.call_with_retries("list_stations", lambda cap: cap.list_stations())

    # -- main loop ---------------------------------------------------------

    def run(self, job: CrawlJob, *, resume: bool = False) -> RunOutcome:
        params = job.params
        checkpoint = job.checkpoint if resume else None
        tracker = CheckpointTracker(params.districts, checkpoint)
        hold_checkpoint = False

        if resume:
            self._persist("reconcile_counts", job.reconcile_counts)
            where = f" from {checkpoint.to_dict()}" if checkpoint else ""
            self._channel.log(f"Resuming job {job.id}{where}", "info")
        else:
            self._channel.log(f"Started job {job.id}", "success")
        _crawler_event(
            "state",
            phase="orchestrator",
            kind="run_start",
            job_id=job.id,
            resume=resume,
            checkpoint=checkpoint.to_dict() if checkpoint else None,
            found_total=job.found_total,
            downloaded_total=job.downloaded_total,
        )

        try:
            for day in params.dates():
                day_label = to_portal_date(day)
                if skips_date(checkpoint, day):
                    self._channel.log(f"Jumping past date: {day_label}...")
                    continue

                self._channel.log(f"--- Processing date: {day_label} ---")
                for district_id in params.districts:
                    if skips_district(checkpoint, day, district_id, params.districts):
                        continue

                    self._channel.log(f"Selecting district: {district_id}...")
                    stations = self._select_district(district_id)
                    station_ids = [station.value for station in stations]

                    for station in stations:
                        if not params.wants_station(station.value):
                            continue
                        if skips_station(checkpoint, day, district_id, station.value, station_ids):
                            continue
                        if self._stop_requested(job):
                            return self._pause(job)

                        unit = WorkUnit(day, district_id, station.value, station.label)
                        result = self._process_unit(job, unit)
                        if result is _UnitResult.PAUSED:
                            return RunOutcome.PAUSED
                        if result is _UnitResult.PARTIAL:
                            # Later units must not carry the checkpoint past this one.
                            hold_checkpoint = True
                        if result is not _UnitResult.DONE or hold_checkpoint:
                            continue

                        if tracker.advance(unit, station_ids):
                            self._persist("save_checkpoint", lambda: job.save_progress(tracker.current))
            return self._finish(job)
        except (UpstreamUnresponsive, SessionUnavailable, NotInitialized) as exc:
            self._persist("save_counts", job.save_progress)
            _crawler_event("error", phase="orchestrator", job_id=job.id, error_code=exc.error_code, error=str(exc))
            self._channel.log(f"Job {job.id} aborted: {exc}", "error")
            self._channel.publish(EventName.ERROR, msg=str(exc))
            return RunOutcome.FAILED

    def _finish(self, job: CrawlJob) -> RunOutcome:
        self._persist("save_counts", job.save_progress)
        completed = self._persist("mark_completed", job.mark_completed)
        if completed is False:
            # Stopped after the last unit: completion is refused, report the pause.
            return self._pause(job)

        self._channel.log(
            f"Search completed. Total FIRs: {job.found_total}, Downloaded: {job.downloaded_total}",
            "success",
        )
        self._channel.publish(EventName.COMPLETE, total=job.found_total, downloaded=job.downloaded_total)
        return RunOutcome.COMPLETED

    def _process_unit(self, job: CrawlJob, unit: WorkUnit) -> _UnitResult:
        session = self._session
        self._channel.log(f"Scraping station: {unit.station_label}...")
        session.call_with_retries("select_station", lambda cap: cap.select_station(unit.station_id))
        session.call_with_retries("set_search_date", lambda cap: cap.set_search_date(unit.day))

        if not session.call_with_retries("trigger_search", lambda cap: cap.trigger_search()):
            self._channel.log(f"No results or search failed for {unit.station_label}", "info")
            return _UnitResult.NO_RESULTS

        records: list[FoundRecord] = session.call_with_retries(
            "extract_records", lambda cap: cap.extract_records()
        )
        self._channel.log(f"Found {len(records)} FIRs at {unit.station_label}.")

        unit_result = _UnitResult.DONE
        for record in records:
            if self._stop_requested(job):
                self._pause(job)
                return _UnitResult.PAUSED
            result = self._process_record(job, unit, record)
            if result is _UnitResult.PAUSED:
                return result
            if result is _UnitResult.PARTIAL:
                unit_result = result
        return unit_result

    def _discover(self, job: CrawlJob, unit: WorkUnit, record: FoundRecord) -> Optional[RecordState]:
        """Store ``record`` for the job; ``None`` when the row could not be written.

        Only a newly inserted row is counted, so the persisted count never
        exceeds the stored records.
        """

        try:
            state, created = RecordState.discover(
                job.id,
                record,
                district_id=unit.district_id,
                station_label=unit.station_label,
            )
        except sqlite3.Error as exc:
            _crawler_event(
                "error",
                phase="persist",
                operation="insert_record",
                job_id=job.id,
                record_number=record.record_number,
                error_code=ErrorCode.PERSISTENCE,
                error=str(exc),
            )
            self._channel.log(f"DB insert failed for {record.record_number}: {exc}", "error")
            return None

        if created:
            job.found_total += 1
            self._persist("save_counts", job.save_progress)
        return state

    def _process_record(self, job: CrawlJob, unit: WorkUnit, record: FoundRecord) -> _UnitResult:
        state = self._discover(job, unit, record)
        self._channel.publish(
            EventName.FIR_FOUND,
            jobId=job.id,
            **record.to_payload(district_id=unit.district_id, station_label=unit.station_label),
        )

        if state is None:
            self._channel.publish(
                EventName.FIR_STATUS,
                recordNumber=record.record_number,
                status="failed",
                error="Not saved",
            )
            return _UnitResult.PARTIAL

        if not record.has_artifact:
            self._channel.publish(EventName.FIR_STATUS, recordNumber=record.record_number, status="no_token")
            return _UnitResult.DONE

        if state.is_downloaded:
            self._channel.log(f"Skipping {record.record_number} (already downloaded)")
            return _UnitResult.DONE

        self._persist("mark_downloading", state.mark_downloading)
        self._channel.log(f"Downloading PDF for {record.record_number}. This can take 40-60 seconds...")
        self._channel.publish(EventName.FIR_STATUS, recordNumber=record.record_number, status="downloading")

        destination = build_artifact_path(
            self._download_root,
            job.name,
            unit.district_id,
            unit.station_label,
            record.record_number,
        )
        try:
            result = fetch_artifact(
                self._session,
                record,
                destination,
                should_stop=lambda: self._stop_requested(job),
                download_root=self._download_root,
                timeout_seconds=self._artifact_timeout,
                poll_seconds=self._artifact_poll,
            )
        except (SessionUnavailable, NotInitialized):
            raise
        except Exception as exc:  # noqa: BLE001
            code = getattr(exc, "error_code", ErrorCode.INTERNAL)
            self._persist(
                "mark_failed",
                lambda: state.mark_failed(error_code=code, error_message=str(exc)),
            )
            self._channel.log(f"Failed to download {record.record_number}: {exc}", "error")
            self._channel.publish(
                EventName.FIR_STATUS,
                recordNumber=record.record_number,
                status="failed",
                error=str(exc),
            )
            return _UnitResult.DONE

        if result.outcome is FetchOutcome.STOPPED:
            self._persist(
                "mark_failed",
                lambda: state.mark_failed(error_code=ErrorCode.STOPPED, error_message="Stopped"),
            )
            self._channel.log(f"Download aborted for {record.record_number} by user.", "warning")
            self._channel.publish(
                EventName.FIR_STATUS,
                recordNumber=record.record_number,
                status="failed",
                error="Stopped",
            )
            self._pause(job)
            return _UnitResult.PAUSED

        saved_path = str(result.path)
        job.downloaded_total += 1
        self._persist("mark_downloaded", lambda: state.mark_downloaded(saved_path))
        self._persist("save_counts", job.save_progress)
        self._channel.publish(
            EventName.FIR_STATUS,
            recordNumber=record.record_number,
            status="downloaded",
            path=saved_path,
            downloaded=job.downloaded_total,
            total=job.found_total,
        )
        self._channel.log(f"Successfully downloaded: {record.record_number}", "success")
        return _UnitResult.DONE


__all__ = ["JobOrchestrator", "RunOutcome"]
