from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional, Tuple

from .errors import RunnerBusy
from .events import EventName, ProgressChannel
from .job_registry import CrawlJob
from .logging_utils import _crawler_event
from .orchestrator import JobOrchestrator, RunOutcome
from .search_params import SearchParams
from .session import SessionManager
from .utils import log_line


class JobRunner:
    """Runs one orchestrator invocation at a time on a worker thread.

    There is a single browser session per process, so a second job (or a
    second run of the same job) is refused with ``RunnerBusy`` while one is
    active.
    """

    def __init__(
        self,
        session: SessionManager,
        *,
        download_root: Optional[Path] = None,
        artifact_timeout_seconds: Optional[float] = None,
        artifact_poll_seconds: Optional[float] = None,
    ) -> None:
        self._session = session
        self._download_root = download_root
        self._artifact_timeout = artifact_timeout_seconds
        self._artifact_poll = artifact_poll_seconds
        self._lock = threading.Lock()
        self._busy = False
        self._active_job_id: Optional[int] = None
        self._thread: Optional[threading.Thread] = None
        self.last_outcome: Optional[RunOutcome] = None

    @property
    def active_job_id(self) -> Optional[int]:
        with self._lock:
            return self._active_job_id

    def _claim(self) -> None:
        with self._lock:
            if self._busy:
                raise RunnerBusy(self._active_job_id)
            self._busy = True

    def _release(self) -> None:
        with self._lock:
            self._busy = False
            self._active_job_id = None

    def start(self, name: str, params: SearchParams) -> Tuple[CrawlJob, ProgressChannel]:
        """Create a job and start crawling it; the job row exists before any automation."""

        self._claim()
        try:
            job = CrawlJob.create(name, params)
        except Exception:
            self._release()
            raise
        return job, self._launch(job, resume=False)

    def resume(self, job_id: int) -> Tuple[CrawlJob, ProgressChannel]:
        """Reopen a job and crawl it again from its stored checkpoint and parameters."""

        self._claim()
        try:
            job = CrawlJob.load(job_id)
            job.reopen_for_resume(active=False)
        except Exception:
            self._release()
            raise
        return job, self._launch(job, resume=True)

    def _launch(self, job: CrawlJob, *, resume: bool) -> ProgressChannel:
        channel = ProgressChannel(job.id)
        with self._lock:
            self._active_job_id = job.id

        def _run() -> None:
            try:
                orchestrator = JobOrchestrator(
                    self._session,
                    channel,
                    download_root=self._download_root,
                    artifact_timeout_seconds=self._artifact_timeout,
                    artifact_poll_seconds=self._artifact_poll,
                )
                self.last_outcome = orchestrator.run(job, resume=resume)
                _crawler_event(
                    "state",
                    phase="runner",
                    job_id=job.id,
                    outcome=self.last_outcome.value,
                    found_total=job.found_total,
                    downloaded_total=job.downloaded_total,
                )
            except Exception as exc:  # noqa: BLE001
                self.last_outcome = RunOutcome.FAILED
                log_line(f"Job thread for {job.id} failed: {exc!r}")
                if not channel.terminated:
                    channel.publish(EventName.ERROR, msg=str(exc))
            finally:
                channel.close()
                self._release()

        thread = threading.Thread(target=_run, name=f"fircrawl-job-{job.id}", daemon=True)
        self._thread = thread
        thread.start()
        return channel

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the current worker thread (used by the CLI and tests)."""

        thread = self._thread
        if thread is not None:
            thread.join(timeout)


__all__ = ["JobRunner"]
