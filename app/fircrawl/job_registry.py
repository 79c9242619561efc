from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from . import db
from .checkpoint import Checkpoint
from .errors import InvalidTransition, JobNotFound, ValidationError
from .logging_utils import _crawler_event
from .search_params import SearchParams


class JobStatus(str, Enum):
    PROCESSING = "processing"
    STOPPED = "stopped"
    COMPLETED = "completed"


def _safe_status(value: Any) -> JobStatus:
    try:
        return JobStatus(value)
    except Exception:
        return JobStatus.STOPPED


@dataclass
class CrawlJob:
    id: int
    name: str
    params: SearchParams
    status: JobStatus
    found_total: int = 0
    downloaded_total: int = 0
    checkpoint: Optional[Checkpoint] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def _from_row(cls, row: Any) -> "CrawlJob":
        return cls(
            id=int(row["id"]),
            name=str(row["name"]),
            params=SearchParams.from_json(row["search_params"]),
            status=_safe_status(row["status"]),
            found_total=int(row["found_total"] or 0),
            downloaded_total=int(row["downloaded_total"] or 0),
            checkpoint=Checkpoint.from_json(row["checkpoint"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def create(cls, name: str, params: SearchParams) -> "CrawlJob":
        """Persist a new ``processing`` job with zero counts and no checkpoint."""

        job_id = db.create_job(name, params.to_json())
        _crawler_event("state", phase="job", job_id=job_id, to_status=JobStatus.PROCESSING.value, name=name)
        return cls.load(job_id)

    @classmethod
    def load(cls, job_id: int) -> "CrawlJob":
        row = db.get_job(job_id)
        if row is None:
            raise JobNotFound(job_id)
        return cls._from_row(row)

    @classmethod
    def list_all(cls) -> list["CrawlJob"]:
        """Return every readable job, newest first; undecodable rows are skipped."""

        jobs: list[CrawlJob] = []
        for row in db.list_jobs():
            try:
                jobs.append(cls._from_row(row))
            except (ValueError, TypeError, ValidationError) as exc:
                _crawler_event("error", phase="job", job_id=row["id"], error="undecodable_row", message=str(exc))
        return jobs

    def refresh_status(self) -> JobStatus:
        """Re-read the committed status so a concurrent stop is observed."""

        value = db.get_job_status(self.id)
        if value is None:
            raise JobNotFound(self.id)
        self.status = _safe_status(value)
        return self.status

    def is_stopped(self) -> bool:
        return self.refresh_status() is JobStatus.STOPPED

    def _transition(self, target: JobStatus, allowed: set[JobStatus]) -> bool:
        previous = self.status
        changed = db.update_job_status(
            self.id, target.value, expected=[status.value for status in allowed]
        )
        if changed:
            self.status = target
            _crawler_event(
                "state",
                phase="job",
                job_id=self.id,
                from_status=previous.value,
                to_status=target.value,
            )
        else:
            self.refresh_status()
        return changed

    def request_stop(self) -> None:
        """Stop a ``processing`` job; any other state raises ``InvalidTransition``."""

        if not self._transition(JobStatus.STOPPED, {JobStatus.PROCESSING}):
            raise InvalidTransition(self.id, self.status.value, JobStatus.STOPPED.value)

    def reopen_for_resume(self, *, active: bool) -> None:
        """Move the job back to ``processing`` ahead of a resume.

        ``stopped`` and ``completed`` jobs reopen. A job still marked
        ``processing`` is accepted only when no invocation is running for it
        (its previous run ended with an error).
        """

        self.refresh_status()
        if self.status is JobStatus.PROCESSING:
            if active:
                raise InvalidTransition(self.id, self.status.value, JobStatus.PROCESSING.value)
            return
        if not self._transition(JobStatus.PROCESSING, {JobStatus.STOPPED, JobStatus.COMPLETED}):
            raise InvalidTransition(self.id, self.status.value, JobStatus.PROCESSING.value)

    def mark_completed(self) -> bool:
        """Finish the job; returns False when it is no longer ``processing``."""

        return self._transition(JobStatus.COMPLETED, {JobStatus.PROCESSING})

    def save_progress(self, checkpoint: Optional[Checkpoint] = None) -> None:
        """Persist counts, and the checkpoint when one is given."""

        db.update_job_progress(
            self.id,
            found_total=self.found_total,
            downloaded_total=self.downloaded_total,
            checkpoint=checkpoint.to_json() if checkpoint is not None else None,
        )
        if checkpoint is not None:
            self.checkpoint = checkpoint

    def reconcile_counts(self) -> bool:
        """Align the counters with the stored records; True when they changed.

        A failed progress write leaves the persisted counts behind the
        records table, which is the source of truth on resume.
        """

        counts = db.count_records_by_status(self.id)
        found = sum(counts.values())
        downloaded = counts.get("downloaded", 0)
        if (found, downloaded) == (self.found_total, self.downloaded_total):
            return False
        _crawler_event(
            "state",
            phase="job",
            kind="reconcile_counts",
            job_id=self.id,
            found_total=found,
            downloaded_total=downloaded,
            previous_found=self.found_total,
            previous_downloaded=self.downloaded_total,
        )
        self.found_total = found
        self.downloaded_total = downloaded
        self.save_progress()
        return True

    def to_projection(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "foundTotal": self.found_total,
            "downloadedTotal": self.downloaded_total,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "searchParams": self.params.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def stop_processing_jobs(reason: str) -> int:
    """Force every ``processing`` job to ``stopped`` so it stays resumable."""

    count = db.stop_processing_jobs()
    if count:
        _crawler_event("state", phase="job", kind="force_stop", reason=reason, jobs=count)
    return count


__all__ = ["CrawlJob", "JobStatus", "stop_processing_jobs"]
