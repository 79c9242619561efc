"""Exception types shared by the session, orchestration and HTTP layers."""
from __future__ import annotations

from typing import Optional, Sequence

from .error_codes import ErrorCode


class CrawlerError(Exception):
    """Base class for crawler failures."""

    error_code: str = ErrorCode.INTERNAL


class SessionUnavailable(CrawlerError):
    """The browser session could not reach Ready within its retry budget."""

    error_code = ErrorCode.SITE_UNAVAILABLE


class NotInitialized(CrawlerError):
    """The session handle was requested before any initialisation succeeded."""

    error_code = ErrorCode.SITE_UNAVAILABLE


class AutomationError(CrawlerError):
    """A portal automation call failed.

    Implementations of the automation capability translate driver errors into
    this type (or a subclass) so the retry policy can classify them by code.
    """

    def __init__(self, message: str, *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        if error_code:
            self.error_code = error_code


class SessionLost(AutomationError):
    """The page or browser behind the session handle is closed or detached."""

    error_code = ErrorCode.SESSION_LOST


class UpstreamUnresponsive(CrawlerError):
    """An automation call exhausted its timeout/retry budget mid-job."""

    error_code = ErrorCode.TIMEOUT


class ArtifactFetchError(CrawlerError):
    """A single record's artifact could not be fetched."""

    error_code = ErrorCode.DOWNLOAD_TIMEOUT

    def __init__(self, message: str, *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        if error_code:
            self.error_code = error_code


class ValidationError(CrawlerError):
    """Caller input was rejected before any session work started."""

    def __init__(self, message: str, details: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.details = list(details) or [message]


class JobNotFound(CrawlerError):
    def __init__(self, job_id: int) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(CrawlerError):
    """A job status change was requested from a state that does not allow it."""

    def __init__(self, job_id: int, current: str, target: str) -> None:
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class RunnerBusy(CrawlerError):
    """Another job invocation already owns the session."""

    def __init__(self, active_job_id: Optional[int]) -> None:
        super().__init__(f"Job {active_job_id} is already running")
        self.active_job_id = active_job_id


__all__ = [
    "CrawlerError",
    "SessionUnavailable",
    "NotInitialized",
    "AutomationError",
    "SessionLost",
    "UpstreamUnresponsive",
    "ArtifactFetchError",
    "ValidationError",
    "JobNotFound",
    "InvalidTransition",
    "RunnerBusy",
]
