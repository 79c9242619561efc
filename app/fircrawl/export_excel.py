"""Excel export of a job's discovered records."""

from __future__ import annotations

import os
from typing import Optional

import pandas as pd

from . import config, db
from .errors import JobNotFound
from .utils import sanitize_filename_component

_COLUMNS = [
    "record_number",
    "record_date",
    "district_id",
    "station_label",
    "record_status",
    "brief",
    "download_status",
    "artifact_path",
    "error_code",
    "error_message",
    "created_at",
    "updated_at",
]


def export_job_to_excel(job_id: int, dest_path: Optional[str] = None) -> str:
    """Write an ``.xlsx`` workbook of ``job_id``'s records and return its path.

    Sheets: every record, one per download status that occurs, and summaries
    by status and by district/station.
    """

    job = db.get_job(job_id)
    if job is None:
        raise JobNotFound(job_id)

    rows = [dict(row) for row in db.list_records(job_id)]
    df = pd.DataFrame(rows, columns=_COLUMNS) if rows else pd.DataFrame(columns=_COLUMNS)

    def safe_pivot(frame, by):
        if frame.empty:
            return pd.DataFrame()
        return frame.groupby(by).size().reset_index(name="count").sort_values("count", ascending=False)

    summary_status = safe_pivot(df, ["download_status"])
    summary_station = safe_pivot(df, ["district_id", "station_label", "download_status"])

    job_sheet = pd.DataFrame(
        [
            {
                "id": job["id"],
                "name": job["name"],
                "status": job["status"],
                "found_total": job["found_total"],
                "downloaded_total": job["downloaded_total"],
                "checkpoint": job["checkpoint"],
                "search_params": job["search_params"],
                "created_at": job["created_at"],
                "updated_at": job["updated_at"],
            }
        ]
    )

    os.makedirs(config.EXPORTS_DIR, exist_ok=True)
    if not dest_path:
        name = sanitize_filename_component(str(job["name"])) or "job"
        dest_path = os.path.join(config.EXPORTS_DIR, f"job_{job_id}_{name}.xlsx")

    with pd.ExcelWriter(dest_path, engine="openpyxl") as writer:
        job_sheet.to_excel(writer, index=False, sheet_name="Job")
        df.to_excel(writer, index=False, sheet_name="All")
        for status in ("downloaded", "failed", "pending"):
            subset = df[df["download_status"] == status]
            if not subset.empty:
                subset.to_excel(writer, index=False, sheet_name=status.capitalize())
        if not summary_status.empty:
            summary_status.to_excel(writer, index=False, sheet_name="Summary_Status")
        if not summary_station.empty:
            summary_station.to_excel(writer, index=False, sheet_name="Summary_Station")

    return dest_path


__all__ = ["export_job_to_excel"]
