"""HTML parsing for the portal's FIR search grid and dropdowns."""
from __future__ import annotations

import re
from typing import Optional

from bs4 import BeautifulSoup

from .automation import Option
from .record_state import FoundRecord

_PRINT_TOKEN = re.compile(r"FIRPrintView\.aspx\?num=([^'\"&]+)")
_WHITESPACE = re.compile(r"\s+")


def _clean(text: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def parse_select_options(select_html: str, *, drop_placeholders: bool = False) -> list[Option]:
    """Return the options of the first ``<select>`` in ``select_html``, in page order.

    Options without a value are always dropped; with ``drop_placeholders`` the
    ``0``/"Select" entries of a postback-populated dropdown are dropped too.
    """

    soup = BeautifulSoup(select_html or "", "html5lib")
    options: list[Option] = []
    for node in soup.find_all("option"):
        value = (node.get("value") or "").strip()
        label = _clean(node.get_text())
        if not value:
            continue
        if drop_placeholders and (value == "0" or label.lower() == "select"):
            continue
        options.append(Option(label=label, value=value))
    return options


def parse_print_token(onclick: Optional[str]) -> Optional[str]:
    match = _PRINT_TOKEN.search(onclick or "")
    return match.group(1) if match else None


def parse_result_grid(grid_html: str) -> list[FoundRecord]:
    """Parse the result grid into records.

    Header rows (``th``) and rows with fewer than two cells (pager, "No
    Record Found") are ignored. Column 1 holds the FIR number and the print
    link whose ``onclick`` carries the artifact token.
    """

    soup = BeautifulSoup(grid_html or "", "html5lib")
    records: list[FoundRecord] = []
    for row in soup.find_all("tr"):
        if row.find("th") is not None:
            continue
        cells = row.find_all("td", recursive=False)
        if len(cells) <= 1:
            continue

        number_cell = cells[1]
        record_number = _clean(number_cell.get_text())
        if not record_number:
            continue

        token = None
        link = number_cell.find("a")
        if link is not None:
            token = parse_print_token(link.get("onclick"))

        brief = ""
        if len(cells) > 3:
            span = cells[3].find("span")
            brief = _clean(span.get_text() if span is not None else cells[3].get_text())

        records.append(
            FoundRecord(
                record_number=record_number,
                record_date=_clean(cells[2].get_text()) if len(cells) > 2 else "",
                brief=brief,
                status=_clean(cells[4].get_text()) if len(cells) > 4 else "",
                artifact_token=token,
            )
        )
    return records


__all__ = ["parse_select_options", "parse_result_grid", "parse_print_token"]
