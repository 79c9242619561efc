from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterable, Iterator

_DATE_FORMATS: Iterable[str] = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
)

# The portal's search date textbox expects day/month/year.
PORTAL_DATE_FORMAT = "%d/%m/%Y"


def parse_date(value: object) -> date:
    """Parse ``value`` into a :class:`date`.

    Accepts ``date``/``datetime`` instances and ISO or day-first strings.
    Raises ``ValueError`` when the value cannot be parsed.
    """

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    candidate = str(value or "").strip()
    if not candidate:
        raise ValueError("empty date")

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"unrecognised date: {candidate!r}")


def dates_in_range(start: date, end: date) -> Iterator[date]:
    """Yield each day from ``start`` to ``end`` inclusive, ascending."""

    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def to_portal_date(value: date) -> str:
    return value.strftime(PORTAL_DATE_FORMAT)


__all__ = ["parse_date", "dates_in_range", "to_portal_date", "PORTAL_DATE_FORMAT"]
