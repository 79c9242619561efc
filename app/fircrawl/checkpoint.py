"""Work-unit ordering, the checkpoint skip rule and monotonic checkpoint advance.

A work unit is one ``(date, district, station)`` search. Units are ordered by
date, then by the district's position in the job's district list, then by the
station's position in the list the portal returned for that district. The
checkpoint names the last unit whose records were all processed.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional, Sequence

from .date_utils import parse_date
from .logging_utils import _crawler_event


@dataclass(frozen=True)
class Checkpoint:
    day: date
    district_id: str
    station_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "date": self.day.isoformat(),
            "districtId": self.district_id,
            "stationId": self.station_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["Checkpoint"]:
        """Decode a persisted checkpoint; ``None``/empty/garbled input yields ``None``."""

        if not raw:
            return None
        try:
            data: Any = json.loads(raw)
            return cls(
                day=parse_date(data["date"]),
                district_id=str(data["districtId"]),
                station_id=str(data["stationId"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            _crawler_event("error", phase="checkpoint", error="undecodable", raw=raw, message=str(exc))
            return None


@dataclass(frozen=True)
class WorkUnit:
    day: date
    district_id: str
    station_id: str
    station_label: str = ""

    def checkpoint(self) -> Checkpoint:
        return Checkpoint(day=self.day, district_id=self.district_id, station_id=self.station_id)


def _position(items: Sequence[str], value: str) -> Optional[int]:
    try:
        return list(items).index(value)
    except ValueError:
        return None


def skips_date(checkpoint: Optional[Checkpoint], day: date) -> bool:
    return checkpoint is not None and day < checkpoint.day


def skips_district(
    checkpoint: Optional[Checkpoint],
    day: date,
    district_id: str,
    districts: Sequence[str],
) -> bool:
    """Return True when ``(day, district)`` is strictly before the checkpoint's.

    When the checkpoint district is not in ``districts`` nothing is skipped
    at district granularity on the checkpoint date.
    """

    if checkpoint is None:
        return False
    if day != checkpoint.day:
        return day < checkpoint.day

    current = _position(districts, district_id)
    marker = _position(districts, checkpoint.district_id)
    if current is None or marker is None:
        return False
    return current < marker


def skips_station(
    checkpoint: Optional[Checkpoint],
    day: date,
    district_id: str,
    station_id: str,
    stations: Sequence[str],
) -> bool:
    """Return True when the station precedes the checkpoint station.

    Only applies on the checkpoint's own date and district. ``stations`` is
    the full portal order for the district, not the filtered selection.
    """

    if checkpoint is None:
        return False
    if day != checkpoint.day or district_id != checkpoint.district_id:
        return False

    current = _position(stations, station_id)
    marker = _position(stations, checkpoint.station_id)
    if current is None or marker is None:
        return False
    return current < marker


class CheckpointTracker:
    """Holds the job's current checkpoint and refuses to move it backwards."""

    def __init__(self, districts: Sequence[str], checkpoint: Optional[Checkpoint] = None) -> None:
        self._districts = list(districts)
        self.current = checkpoint

    def is_at_or_after(self, unit: WorkUnit, stations: Sequence[str]) -> bool:
        """Return True if ``unit`` does not precede the current checkpoint."""

        cp = self.current
        if cp is None:
            return True
        if unit.day != cp.day:
            return unit.day > cp.day

        unit_district = _position(self._districts, unit.district_id)
        cp_district = _position(self._districts, cp.district_id)
        if unit_district is None or cp_district is None:
            return True
        if unit_district != cp_district:
            return unit_district > cp_district

        unit_station = _position(stations, unit.station_id)
        cp_station = _position(stations, cp.station_id)
        if unit_station is None or cp_station is None:
            return True
        return unit_station >= cp_station

    def advance(self, unit: WorkUnit, stations: Sequence[str]) -> bool:
        """Move the checkpoint to ``unit``; return False (and keep it) on regression."""

        if not self.is_at_or_after(unit, stations):
            _crawler_event(
                "error",
                phase="checkpoint",
                error="regression_refused",
                current=self.current.to_dict() if self.current else None,
                attempted=unit.checkpoint().to_dict(),
            )
            return False
        self.current = unit.checkpoint()
        return True


__all__ = [
    "Checkpoint",
    "WorkUnit",
    "CheckpointTracker",
    "skips_date",
    "skips_district",
    "skips_station",
]
