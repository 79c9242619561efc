from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple

from . import db
from .error_codes import ErrorCode
from .logging_utils import _crawler_event


class DownloadStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


def _safe_status(value: Any) -> DownloadStatus:
    try:
        return DownloadStatus(value)
    except Exception:
        return DownloadStatus.PENDING


@dataclass(frozen=True)
class FoundRecord:
    """One row of the portal's search result grid."""

    record_number: str
    record_date: str = ""
    brief: str = ""
    status: str = ""
    artifact_token: Optional[str] = None

    @property
    def has_artifact(self) -> bool:
        return bool(self.artifact_token)

    def to_payload(self, *, district_id: str, station_label: str) -> dict[str, Any]:
        return {
            "recordNumber": self.record_number,
            "recordDate": self.record_date,
            "brief": self.brief,
            "status": self.status,
            "districtId": district_id,
            "stationLabel": station_label,
            "hasArtifact": self.has_artifact,
        }


@dataclass
class RecordState:
    """Download lifecycle of one persisted record.

    ``record_id`` is ``None`` when the row could not be written; transitions
    are then tracked in memory only.
    """

    job_id: int
    record_number: str
    status: DownloadStatus
    record_id: Optional[int] = None
    artifact_path: Optional[str] = None

    @classmethod
    def _from_row(cls, row: Any) -> "RecordState":
        return cls(
            job_id=int(row["job_id"]),
            record_number=str(row["record_number"]),
            status=_safe_status(row["download_status"]),
            record_id=int(row["id"]),
            artifact_path=row["artifact_path"],
        )

    @classmethod
    def discover(
        cls,
        job_id: int,
        record: FoundRecord,
        *,
        district_id: str,
        station_label: str,
    ) -> Tuple["RecordState", bool]:
        """Insert the record unless ``(job_id, record_number)`` is known.

        Returns ``(state, created)``; an existing record keeps its identity
        and download status.
        """

        row, created = db.insert_record_if_absent(
            job_id,
            record.record_number,
            record_date=record.record_date,
            district_id=district_id,
            station_label=station_label,
            brief=record.brief,
            record_status=record.status,
            artifact_token=record.artifact_token,
        )
        state = cls._from_row(row)
        _crawler_event(
            "state",
            phase="record",
            job_id=job_id,
            record_number=record.record_number,
            kind="discovered" if created else "rediscovered",
            download_status=state.status.value,
        )
        return state, created

    @property
    def is_downloaded(self) -> bool:
        return self.status is DownloadStatus.DOWNLOADED

    def _ensure_can_transition(self, target: DownloadStatus) -> bool:
        if self.status is DownloadStatus.DOWNLOADED and target is not DownloadStatus.DOWNLOADED:
            _crawler_event(
                "error",
                phase="record",
                job_id=self.job_id,
                record_number=self.record_number,
                current_status=self.status.value,
                attempted_status=target.value,
                error="invalid_transition_after_download",
            )
            return False
        return True

    def _mark(
        self,
        target: DownloadStatus,
        *,
        artifact_path: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        if not self._ensure_can_transition(target):
            return

        previous = self.status
        self.status = target
        if artifact_path is not None:
            self.artifact_path = artifact_path

        if self.record_id is not None:
            db.update_record_download(
                self.record_id,
                status=target.value,
                artifact_path=artifact_path,
                error_code=error_code,
                error_message=error_message,
            )

        payload = dict(
            job_id=self.job_id,
            record_number=self.record_number,
            from_status=previous.value,
            to_status=target.value,
        )
        if artifact_path is not None:
            payload["artifact_path"] = artifact_path
        if error_code is not None:
            payload["error_code"] = error_code
        if error_message is not None:
            payload["error_message"] = error_message
        _crawler_event("state", phase="record", **payload)

    def mark_downloading(self) -> None:
        self._mark(DownloadStatus.DOWNLOADING)

    def mark_downloaded(self, artifact_path: str) -> None:
        self._mark(DownloadStatus.DOWNLOADED, artifact_path=artifact_path)

    def mark_failed(self, *, error_code: Optional[str] = None, error_message: Optional[str] = None) -> None:
        """Record a failed fetch; ``error_code`` defaults to ``internal_error``."""

        self._mark(
            DownloadStatus.FAILED,
            error_code=error_code or ErrorCode.INTERNAL,
            error_message=error_message,
        )


__all__ = ["DownloadStatus", "FoundRecord", "RecordState"]
