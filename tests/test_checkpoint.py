from __future__ import annotations

from datetime import date

import pytest

from app.fircrawl import checkpoint as checkpoint_module
from app.fircrawl.checkpoint import (
    Checkpoint,
    CheckpointTracker,
    WorkUnit,
    skips_date,
    skips_district,
    skips_station,
)

DISTRICTS = ["D1", "D2", "D3"]
STATIONS = ["S1", "S2", "S3"]
CP = Checkpoint(day=date(2024, 1, 2), district_id="D2", station_id="S2")


def test_checkpoint_json_shape() -> None:
    assert CP.to_dict() == {"date": "2024-01-02", "districtId": "D2", "stationId": "S2"}
    assert Checkpoint.from_json(CP.to_json()) == CP


@pytest.mark.parametrize("raw", [None, "", "not json", '{"date": "2024-01-02"}', "[]"])
def test_undecodable_checkpoint_means_fresh_start(raw, monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[tuple[str, dict]] = []
    monkeypatch.setattr(checkpoint_module, "_crawler_event", lambda label="", **f: events.append((label, f)))

    assert Checkpoint.from_json(raw) is None
    if raw:
        assert events and events[0][1]["error"] == "undecodable"


def test_no_checkpoint_skips_nothing() -> None:
    assert skips_date(None, date(2024, 1, 1)) is False
    assert skips_district(None, date(2024, 1, 1), "D1", DISTRICTS) is False
    assert skips_station(None, date(2024, 1, 1), "D1", "S1", STATIONS) is False


def test_dates_before_checkpoint_are_skipped() -> None:
    assert skips_date(CP, date(2024, 1, 1)) is True
    assert skips_date(CP, date(2024, 1, 2)) is False
    assert skips_date(CP, date(2024, 1, 3)) is False


def test_districts_strictly_before_checkpoint_are_skipped() -> None:
    day = CP.day
    assert skips_district(CP, day, "D1", DISTRICTS) is True
    assert skips_district(CP, day, "D2", DISTRICTS) is False
    assert skips_district(CP, day, "D3", DISTRICTS) is False
    # Later dates run every district again.
    assert skips_district(CP, date(2024, 1, 3), "D1", DISTRICTS) is False


def test_district_missing_from_list_skips_nothing() -> None:
    assert skips_district(CP, CP.day, "D1", ["D1", "D3"]) is False


def test_station_skip_applies_only_on_checkpoint_date_and_district() -> None:
    assert skips_station(CP, CP.day, "D2", "S1", STATIONS) is True
    assert skips_station(CP, CP.day, "D2", "S2", STATIONS) is False
    assert skips_station(CP, CP.day, "D2", "S3", STATIONS) is False
    assert skips_station(CP, CP.day, "D3", "S1", STATIONS) is False
    assert skips_station(CP, date(2024, 1, 3), "D2", "S1", STATIONS) is False


def test_tracker_advances_forward_only(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[tuple[str, dict]] = []
    monkeypatch.setattr(checkpoint_module, "_crawler_event", lambda label="", **f: events.append((label, f)))
    tracker = CheckpointTracker(DISTRICTS, CP)

    behind = WorkUnit(CP.day, "D2", "S1")
    assert tracker.advance(behind, STATIONS) is False
    assert tracker.current == CP
    assert events[-1][1]["error"] == "regression_refused"

    same = WorkUnit(CP.day, "D2", "S2")
    assert tracker.advance(same, STATIONS) is True

    later = WorkUnit(CP.day, "D3", "S1", "Kotwali")
    assert tracker.advance(later, STATIONS) is True
    assert tracker.current == Checkpoint(CP.day, "D3", "S1")

    earlier_day = WorkUnit(date(2024, 1, 1), "D3", "S3")
    assert tracker.advance(earlier_day, STATIONS) is False
    assert tracker.current == Checkpoint(CP.day, "D3", "S1")


def test_tracker_without_checkpoint_accepts_first_unit() -> None:
    tracker = CheckpointTracker(DISTRICTS)
    unit = WorkUnit(date(2024, 1, 1), "D1", "S1")
    assert tracker.advance(unit, STATIONS) is True
    assert tracker.current == unit.checkpoint()
