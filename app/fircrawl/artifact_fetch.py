from __future__ import annotations

import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from . import config
from .error_codes import ErrorCode
from .errors import ArtifactFetchError, NotInitialized, SessionUnavailable
from .logging_utils import _crawler_event
from .record_state import FoundRecord
from .session import SessionManager

# Browser download placeholders that are still being written.
_PARTIAL_SUFFIXES = (".crdownload", ".part", ".tmp", ".download")


class FetchOutcome(str, Enum):
    DOWNLOADED = "downloaded"
    STOPPED = "stopped"


@dataclass(frozen=True)
class FetchResult:
    outcome: FetchOutcome
    path: Optional[Path] = None


def _completed_file(workspace: Path) -> Optional[Path]:
    """Return a finished, non-empty file in ``workspace`` if there is one."""

    try:
        entries = sorted(workspace.iterdir())
    except OSError:
        return None
    if any(entry.name.endswith(_PARTIAL_SUFFIXES) for entry in entries):
        return None
    for entry in entries:
        try:
            if entry.is_file() and entry.stat().st_size > 0:
                return entry
        except OSError:
            continue
    return None


def fetch_artifact(
    session: SessionManager,
    record: FoundRecord,
    destination: Path,
    *,
    should_stop: Callable[[], bool],
    download_root: Optional[Path] = None,
    timeout_seconds: Optional[float] = None,
    poll_seconds: Optional[float] = None,
) -> FetchResult:
    """Fetch one record's document into ``destination``.

    The portal writes into a private scratch directory under the download
    root. Once a completed file is present it is moved into place with
    ``os.replace``; the scratch directory is removed on every path out.
    A stop request is honoured before starting and at every poll.
    """

    if should_stop():
        return FetchResult(FetchOutcome.STOPPED)

    root = Path(download_root or config.DOWNLOAD_DIR)
    root.mkdir(parents=True, exist_ok=True)
    timeout = float(timeout_seconds or config.ARTIFACT_TIMEOUT_SECONDS)
    poll = float(poll_seconds or config.ARTIFACT_POLL_SECONDS)

    workspace = Path(tempfile.mkdtemp(prefix=".fetch-", dir=root))
    abort = threading.Event()

    def _capability_should_stop() -> bool:
        return abort.is_set() or should_stop()

    _crawler_event(
        "state",
        phase="artifact",
        kind="start",
        record_number=record.record_number,
        workspace=str(workspace),
    )
    try:
        try:
            future = session.submit(
                lambda cap: cap.fetch_artifact(record, workspace, _capability_should_stop)
            )
        except (SessionUnavailable, NotInitialized):
            raise
        except Exception as exc:  # noqa: BLE001
            raise ArtifactFetchError(str(exc), error_code=getattr(exc, "error_code", None)) from exc

        deadline = time.monotonic() + timeout
        stop_requested = False
        while True:
            if not stop_requested and should_stop():
                stop_requested = True
                abort.set()
                _crawler_event("state", phase="artifact", kind="stop_requested", record_number=record.record_number)

            if future.done():
                exc = future.exception()
                completed = _completed_file(workspace) if exc is None else None
                if completed is not None:
                    break
                if stop_requested or should_stop():
                    return FetchResult(FetchOutcome.STOPPED)
                if exc is not None:
                    raise ArtifactFetchError(
                        str(exc), error_code=getattr(exc, "error_code", None)
                    ) from exc
                raise ArtifactFetchError(
                    "portal finished without producing a file",
                    error_code=ErrorCode.EXPORT_UNAVAILABLE,
                )

            if time.monotonic() >= deadline:
                abort.set()
                if stop_requested:
                    return FetchResult(FetchOutcome.STOPPED)
                raise ArtifactFetchError(
                    f"no completed file within {int(timeout)}s",
                    error_code=ErrorCode.DOWNLOAD_TIMEOUT,
                )
            time.sleep(poll)

        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        os.replace(completed, destination)
        _crawler_event(
            "state",
            phase="artifact",
            kind="saved",
            record_number=record.record_number,
            path=str(destination),
            size=destination.stat().st_size,
        )
        return FetchResult(FetchOutcome.DOWNLOADED, destination)
    finally:
        shutil.rmtree(workspace, ignore_errors=True)


__all__ = ["FetchOutcome", "FetchResult", "fetch_artifact"]
