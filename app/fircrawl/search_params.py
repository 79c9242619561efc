"""Validated, immutable search parameters for a crawl job."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterator, Mapping

from .date_utils import dates_in_range, parse_date
from .errors import ValidationError


@dataclass(frozen=True)
class SearchParams:
    districts: tuple[str, ...]
    from_date: date
    to_date: date
    selected_stations: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SearchParams":
        """Build parameters from a request body, raising ``ValidationError``.

        Accepts the wire names (``districts``, ``fromDate``, ``toDate``,
        ``selectedStations``). All problems are collected before raising.
        """

        errors: list[str] = []

        raw_districts = payload.get("districts")
        if isinstance(raw_districts, str):
            raw_districts = [raw_districts]
        districts: list[str] = []
        if isinstance(raw_districts, (list, tuple)):
            for item in raw_districts:
                value = str(item).strip() if item is not None else ""
                if value and value not in districts:
                    districts.append(value)
        if not districts:
            errors.append("at least one district must be selected")

        from_date = to_date = None
        try:
            from_date = parse_date(payload.get("fromDate"))
        except ValueError:
            errors.append("fromDate is missing or invalid")
        try:
            to_date = parse_date(payload.get("toDate"))
        except ValueError:
            errors.append("toDate is missing or invalid")
        if from_date and to_date and from_date > to_date:
            errors.append("fromDate must not be after toDate")

        raw_stations = payload.get("selectedStations") or []
        if isinstance(raw_stations, str):
            raw_stations = [raw_stations]
        if not isinstance(raw_stations, (list, tuple, set)):
            errors.append("selectedStations must be a list")
            raw_stations = []
        stations = frozenset(str(s).strip() for s in raw_stations if str(s).strip())

        if errors:
            raise ValidationError("; ".join(errors), errors)

        return cls(
            districts=tuple(districts),
            from_date=from_date,
            to_date=to_date,
            selected_stations=stations,
        )

    def dates(self) -> Iterator[date]:
        return dates_in_range(self.from_date, self.to_date)

    def wants_station(self, station_id: str) -> bool:
        return not self.selected_stations or station_id in self.selected_stations

    def to_dict(self) -> dict[str, Any]:
        return {
            "districts": list(self.districts),
            "fromDate": self.from_date.isoformat(),
            "toDate": self.to_date.isoformat(),
            "selectedStations": sorted(self.selected_stations),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "SearchParams":
        return cls.from_payload(json.loads(raw))


__all__ = ["SearchParams"]
