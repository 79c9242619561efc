from __future__ import annotations

from typing import Optional

from .error_codes import ErrorCode
from .logging_utils import _crawler_event

RETRYABLE_ERROR_CODES = {
    ErrorCode.TIMEOUT,
    ErrorCode.SESSION_LOST,
    ErrorCode.SITE_UNAVAILABLE,
}

NON_RETRYABLE_ERROR_CODES = {
    # The portal markup no longer matches our selectors; retrying will not help.
    ErrorCode.SITE_STRUCTURE,
    ErrorCode.STOPPED,
    ErrorCode.PERSISTENCE,
}


def compute_backoff_seconds(attempt_index: int) -> float:
    """Return a capped exponential backoff for the given attempt (1-based)."""

    return float(min(2 ** max(0, attempt_index - 1), 30))


def decide_retry(
    attempt_index: int,
    max_attempts: int,
    error: BaseException | None = None,
    *,
    error_code: Optional[str] = None,
    operation: Optional[str] = None,
) -> bool:
    """Decide whether a failed automation attempt should be retried."""

    if attempt_index >= max_attempts:
        _crawler_event(
            "state",
            phase="retry_decision",
            kind="capped",
            operation=operation,
            attempt=attempt_index,
            max_attempts=max_attempts,
            error_code=error_code,
            will_retry=False,
        )
        return False

    code = (error_code or "").strip()
    if code in NON_RETRYABLE_ERROR_CODES:
        _crawler_event(
            "state",
            phase="retry_decision",
            kind="non_retryable",
            operation=operation,
            error_code=code,
            attempt=attempt_index,
            max_attempts=max_attempts,
            will_retry=False,
        )
        return False

    if code in RETRYABLE_ERROR_CODES:
        _crawler_event(
            "state",
            phase="retry_decision",
            kind="retryable",
            operation=operation,
            error_code=code,
            attempt=attempt_index,
            max_attempts=max_attempts,
            will_retry=True,
        )
        return True

    # Unknown context: be conservative and allow a single retry if available.
    fallback_retry = attempt_index < max_attempts - 1
    _crawler_event(
        "state",
        phase="retry_decision",
        kind="unknown" if code else "missing_error_code",
        operation=operation,
        error_code=code or None,
        attempt=attempt_index,
        max_attempts=max_attempts,
        will_retry=fallback_retry,
        error_repr=repr(error) if error is not None else None,
    )
    return fallback_retry


__all__ = [
    "decide_retry",
    "compute_backoff_seconds",
    "RETRYABLE_ERROR_CODES",
    "NON_RETRYABLE_ERROR_CODES",
]
