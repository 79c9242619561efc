from __future__ import annotations

from typing import Literal

from . import config
from .logging_utils import _crawler_event
from .utils import log_line

Entrypoint = Literal["ui", "cli", "tests"]


def _raise_config_error(message: str, *, entrypoint: Entrypoint, error: str) -> None:
    _crawler_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint})")
    raise ValueError(message)


def _clamp_to_one(field_name: str, value: int, *, entrypoint: Entrypoint) -> int:
    _crawler_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field_name,
        value=value,
        adjusted=1,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {field_name} < 1; clamping to 1.")
    return 1


def validate_runtime_config(entrypoint: Entrypoint) -> None:
    """Validate runtime configuration for the given entrypoint.

    Raises ``ValueError`` when a blocking misconfiguration is detected.
    Retry budgets below one are clamped and logged rather than rejected.
    """

    if config.SESSION_STEP_RETRIES < 1:
        config.SESSION_STEP_RETRIES = _clamp_to_one(
            "SESSION_STEP_RETRIES", config.SESSION_STEP_RETRIES, entrypoint=entrypoint
        )

    if config.AUTOMATION_MAX_ATTEMPTS < 1:
        config.AUTOMATION_MAX_ATTEMPTS = _clamp_to_one(
            "AUTOMATION_MAX_ATTEMPTS", config.AUTOMATION_MAX_ATTEMPTS, entrypoint=entrypoint
        )

    if config.MIN_FREE_MB < 0:
        _raise_config_error(
            "MIN_FREE_MB must be non-negative.",
            entrypoint=entrypoint,
            error="min_free_mb_invalid",
        )

    if config.SESSION_STEP_BACKOFF_SECONDS < 0 or config.ARTIFACT_POLL_SECONDS <= 0:
        _raise_config_error(
            "Backoff and poll intervals must be positive.",
            entrypoint=entrypoint,
            error="invalid_interval",
        )

    timeout_fields = [
        ("NAV_TIMEOUT_SECONDS", config.NAV_TIMEOUT_SECONDS),
        ("SELECTOR_TIMEOUT_SECONDS", config.SELECTOR_TIMEOUT_SECONDS),
        ("SEARCH_TIMEOUT_SECONDS", config.SEARCH_TIMEOUT_SECONDS),
        ("EXPORT_TIMEOUT_SECONDS", config.EXPORT_TIMEOUT_SECONDS),
        ("ARTIFACT_TIMEOUT_SECONDS", config.ARTIFACT_TIMEOUT_SECONDS),
        ("AUTOMATION_CALL_TIMEOUT_SECONDS", config.AUTOMATION_CALL_TIMEOUT_SECONDS),
    ]

    for field_name, value in timeout_fields:
        if value <= 0:
            _raise_config_error(
                f"{field_name} must be greater than zero.",
                entrypoint=entrypoint,
                error="invalid_timeout",
            )


__all__ = ["validate_runtime_config", "Entrypoint"]
