"""SQLite helpers for the FIR crawler.

This module defines the project database path, connection helper, schema
initialisation, and the queries used by the job registry and the record
store. Every helper opens its own connection and commits before returning so
a status written by one thread is visible to the next read from another.
"""
from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Iterable, Optional, Tuple

from . import config

DB_PATH: Path = config.DB_PATH


def get_connection() -> sqlite3.Connection:
    """Return a SQLite connection to the project database.

    The parent directory is created if missing and ``check_same_thread`` is
    disabled to allow use from the job worker threads.
    """

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def initialize_schema() -> None:
    """Create the tables if they do not yet exist. Safe to call repeatedly."""

    statements: Iterable[str] = (
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            name             TEXT NOT NULL,
            search_params    TEXT NOT NULL,
            status           TEXT NOT NULL,
            found_total      INTEGER NOT NULL DEFAULT 0,
            downloaded_total INTEGER NOT NULL DEFAULT 0,
            checkpoint       TEXT,
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_jobs_status
            ON jobs(status);
        """,
        """
        CREATE TABLE IF NOT EXISTS records (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id           INTEGER NOT NULL,
            record_number    TEXT NOT NULL,
            record_date      TEXT,
            district_id      TEXT,
            station_label    TEXT,
            brief            TEXT,
            record_status    TEXT,
            artifact_token   TEXT,
            download_status  TEXT NOT NULL DEFAULT 'pending',
            artifact_path    TEXT,
            error_code       TEXT,
            error_message    TEXT,
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL,
            UNIQUE(job_id, record_number),
            FOREIGN KEY(job_id) REFERENCES jobs(id)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_records_job_status
            ON records(job_id, download_status);
        """,
    )

    conn = get_connection()
    with conn:
        for statement in statements:
            conn.execute(statement)


def _utc_now() -> str:
    """Return a UTC timestamp formatted as ISO8601 without fractional seconds."""

    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def create_job(name: str, search_params: str) -> int:
    """Insert a ``processing`` job with zero counts and return its id."""

    now = _utc_now()
    conn = get_connection()
    with conn:
        cursor = conn.execute(
            """
            INSERT INTO jobs (
                name, search_params, status, found_total, downloaded_total,
                checkpoint, created_at, updated_at
            ) VALUES (?, ?, 'processing', 0, 0, NULL, ?, ?)
            """,
            (name, search_params, now, now),
        )
    return int(cursor.lastrowid)


def get_job(job_id: int) -> Optional[sqlite3.Row]:
    conn = get_connection()
    cursor = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
    return cursor.fetchone()


def get_job_status(job_id: int) -> Optional[str]:
    """Return the committed status of ``job_id`` (``None`` if unknown)."""

    conn = get_connection()
    cursor = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,))
    row = cursor.fetchone()
    return str(row["status"]) if row else None


def list_jobs() -> list[sqlite3.Row]:
    """Return every job, newest first."""

    conn = get_connection()
    cursor = conn.execute("SELECT * FROM jobs ORDER BY created_at DESC, id DESC")
    return list(cursor.fetchall())


def update_job_status(
    job_id: int,
    status: str,
    *,
    expected: Optional[Iterable[str]] = None,
) -> bool:
    """Set the job status, optionally only when it currently is one of ``expected``.

    Returns ``True`` when a row was updated. The conditional form makes the
    check-and-set a single statement so concurrent stop/complete requests
    cannot both succeed.
    """

    conn = get_connection()
    with conn:
        if expected is None:
            cursor = conn.execute(
                "UPDATE jobs SET status = ?, updated_at = ? WHERE id = ?",
                (status, _utc_now(), job_id),
            )
        else:
            allowed = list(expected)
            placeholders = ", ".join("?" for _ in allowed)
            cursor = conn.execute(
                f"""
                UPDATE jobs SET status = ?, updated_at = ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                (status, _utc_now(), job_id, *allowed),
            )
    return cursor.rowcount > 0


def update_job_progress(
    job_id: int,
    *,
    found_total: int,
    downloaded_total: int,
    checkpoint: Optional[str] = None,
) -> None:
    """Persist cumulative counts and, when given, the serialised checkpoint."""

    conn = get_connection()
    with conn:
        if checkpoint is None:
            conn.execute(
                """
                UPDATE jobs
                SET found_total = ?, downloaded_total = ?, updated_at = ?
                WHERE id = ?
                """,
                (found_total, downloaded_total, _utc_now(), job_id),
            )
        else:
            conn.execute(
                """
                UPDATE jobs
                SET found_total = ?, downloaded_total = ?, checkpoint = ?, updated_at = ?
                WHERE id = ?
                """,
                (found_total, downloaded_total, checkpoint, _utc_now(), job_id),
            )


def stop_processing_jobs() -> int:
    """Force every ``processing`` job to ``stopped``; return how many changed."""

    conn = get_connection()
    with conn:
        cursor = conn.execute(
            "UPDATE jobs SET status = 'stopped', updated_at = ? WHERE status = 'processing'",
            (_utc_now(),),
        )
    return int(cursor.rowcount)


def get_record(job_id: int, record_number: str) -> Optional[sqlite3.Row]:
    conn = get_connection()
    cursor = conn.execute(
        "SELECT * FROM records WHERE job_id = ? AND record_number = ? LIMIT 1",
        (job_id, record_number),
    )
    return cursor.fetchone()


def insert_record_if_absent(
    job_id: int,
    record_number: str,
    *,
    record_date: Optional[str],
    district_id: Optional[str],
    station_label: Optional[str],
    brief: Optional[str],
    record_status: Optional[str],
    artifact_token: Optional[str],
) -> Tuple[sqlite3.Row, bool]:
    """Insert a ``pending`` record unless ``(job_id, record_number)`` exists.

    Returns ``(row, created)``. ``created`` is ``False`` when the natural key
    was already present, in which case the stored row is returned unchanged.
    """

    now = _utc_now()
    conn = get_connection()
    with conn:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO records (
                job_id, record_number, record_date, district_id, station_label,
                brief, record_status, artifact_token, download_status,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
            """,
            (
                job_id,
                record_number,
                record_date,
                district_id,
                station_label,
                brief,
                record_status,
                artifact_token,
                now,
                now,
            ),
        )
        created = cursor.rowcount > 0
        row = conn.execute(
            "SELECT * FROM records WHERE job_id = ? AND record_number = ? LIMIT 1",
            (job_id, record_number),
        ).fetchone()
    return row, created


def update_record_download(
    record_id: int,
    *,
    status: str,
    artifact_path: Optional[str] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    conn = get_connection()
    with conn:
        conn.execute(
            """
            UPDATE records
            SET download_status = ?, artifact_path = COALESCE(?, artifact_path),
                error_code = ?, error_message = ?, updated_at = ?
            WHERE id = ?
            """,
            (status, artifact_path, error_code, error_message, _utc_now(), record_id),
        )


def list_records(job_id: int) -> list[sqlite3.Row]:
    """Return a job's records in discovery order."""

    conn = get_connection()
    cursor = conn.execute(
        "SELECT * FROM records WHERE job_id = ? ORDER BY id ASC",
        (job_id,),
    )
    return list(cursor.fetchall())


def count_records_by_status(job_id: int) -> dict[str, int]:
    conn = get_connection()
    cursor = conn.execute(
        """
        SELECT download_status, COUNT(*) AS count
        FROM records WHERE job_id = ?
        GROUP BY download_status
        """,
        (job_id,),
    )
    return {str(row["download_status"]): int(row["count"]) for row in cursor.fetchall()}


__all__ = [
    "DB_PATH",
    "get_connection",
    "initialize_schema",
    "create_job",
    "get_job",
    "get_job_status",
    "list_jobs",
    "update_job_status",
    "update_job_progress",
    "stop_processing_jobs",
    "get_record",
    "insert_record_if_absent",
    "update_record_download",
    "list_records",
    "count_records_by_status",
]
