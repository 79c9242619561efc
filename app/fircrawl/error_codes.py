from __future__ import annotations

"""Error code taxonomy for automation and record failures.

These codes are persisted in the records.error_code column and included in
structured logs so that a failed download can be explained after the fact.
"""


class ErrorCode:
    TIMEOUT = "automation_timeout"
    SESSION_LOST = "session_lost"
    SITE_STRUCTURE = "site_structure_changed"
    SITE_UNAVAILABLE = "site_unavailable"
    DOWNLOAD_TIMEOUT = "download_timeout"
    EXPORT_UNAVAILABLE = "export_unavailable"
    STOPPED = "stopped"
    PERSISTENCE = "persistence_error"
    INTERNAL = "internal_error"


__all__ = ["ErrorCode"]
