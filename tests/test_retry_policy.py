from __future__ import annotations

import pytest

from app.fircrawl import retry_policy
from app.fircrawl.error_codes import ErrorCode


@pytest.fixture
def event_recorder(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []

    def _record(label: str = "", **fields: object) -> None:
        events.append((label, fields))

    monkeypatch.setattr(retry_policy, "_crawler_event", _record)
    return events


@pytest.mark.parametrize(
    "attempt, expected, kind",
    [
        (1, True, "retryable"),
        (2, True, "retryable"),
        (3, False, "capped"),
        (5, False, "capped"),
    ],
)
def test_timeout_retry_limits(
    attempt: int, expected: bool, kind: str, event_recorder: list[tuple[str, dict]]
) -> None:
    result = retry_policy.decide_retry(attempt, 3, error_code=ErrorCode.TIMEOUT, operation="select_station")
    assert result is expected
    assert len(event_recorder) == 1
    label, fields = event_recorder[0]
    assert label == "state"
    assert fields["phase"] == "retry_decision"
    assert fields["operation"] == "select_station"
    assert fields["attempt"] == attempt
    assert fields["max_attempts"] == 3
    assert fields["will_retry"] is expected
    assert fields["kind"] == kind


@pytest.mark.parametrize("error_code", sorted(retry_policy.NON_RETRYABLE_ERROR_CODES))
def test_non_retryable_error_codes(error_code: str, event_recorder: list[tuple[str, dict]]) -> None:
    assert retry_policy.decide_retry(1, 3, error_code=error_code) is False
    _, fields = event_recorder[0]
    assert fields["kind"] == "non_retryable"
    assert fields["error_code"] == error_code


@pytest.mark.parametrize(
    "attempt, expected",
    [
        (1, True),
        (2, False),
    ],
)
def test_unknown_error_code_allows_one_retry(
    attempt: int, expected: bool, event_recorder: list[tuple[str, dict]]
) -> None:
    error = RuntimeError("weird")
    assert retry_policy.decide_retry(attempt, 3, error, error_code="mystery") is expected
    _, fields = event_recorder[0]
    assert fields["kind"] == "unknown"
    assert fields["error_repr"] == repr(error)


def test_missing_error_code_kind(event_recorder: list[tuple[str, dict]]) -> None:
    assert retry_policy.decide_retry(1, 3) is True
    assert event_recorder[0][1]["kind"] == "missing_error_code"


def test_single_attempt_budget_never_retries(event_recorder: list[tuple[str, dict]]) -> None:
    assert retry_policy.decide_retry(1, 1, error_code=ErrorCode.TIMEOUT) is False
    assert event_recorder[0][1]["kind"] == "capped"


def test_compute_backoff_is_capped_exponential() -> None:
    assert [retry_policy.compute_backoff_seconds(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
    assert retry_policy.compute_backoff_seconds(10) == 30.0
    assert retry_policy.compute_backoff_seconds(0) == 1.0
