from __future__ import annotations

import logging
import re
import shutil
import sys
from pathlib import Path
from typing import Any

from . import config

LOGGER = logging.getLogger("fircrawl")
_LOGGER_INITIALISED = False
_CURRENT_LOG_FILE: Path = config.LOG_FILE


def _configure_logger(log_path: Path) -> None:
    """Configure the shared application logger to write to ``log_path``."""

    global _LOGGER_INITIALISED, _CURRENT_LOG_FILE

    log_path.parent.mkdir(parents=True, exist_ok=True)

    for handler in list(LOGGER.handlers):
        LOGGER.removeHandler(handler)
        try:
            handler.close()
        except Exception:  # noqa: BLE001
            continue

    formatter = logging.Formatter(
        fmt="[%(asctime)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)

    LOGGER.setLevel(logging.INFO)
    LOGGER.addHandler(stream_handler)
    LOGGER.addHandler(file_handler)
    LOGGER.propagate = False

    _CURRENT_LOG_FILE = log_path
    _LOGGER_INITIALISED = True


def _ensure_logger() -> None:
    """Initialise the logger lazily using the default log file."""

    if _LOGGER_INITIALISED:
        return

    _configure_logger(config.LOG_FILE)


def get_current_log_path() -> Path:
    """Return the path to the log file currently receiving log lines."""

    _ensure_logger()
    return _CURRENT_LOG_FILE


def ensure_dirs() -> None:
    """Ensure that the application's expected directory structure exists."""

    config.DATA_DIR.mkdir(parents=True, exist_ok=True)
    config.DOWNLOAD_DIR.mkdir(parents=True, exist_ok=True)
    config.LOG_DIR.mkdir(parents=True, exist_ok=True)


def log_line(message: str) -> None:
    """Write a timestamped log line to stdout and the active log file."""

    _ensure_logger()
    LOGGER.info(message)


def sanitize_record_number(record_number: str) -> str:
    """Return ``record_number`` with every non-alphanumeric character replaced by ``_``."""

    return re.sub(r"[^a-zA-Z0-9]", "_", record_number or "")


def sanitize_filename_component(component: str | None) -> str:
    """Sanitise a filename component by removing unsafe characters."""

    if not component:
        return ""

    cleaned = "".join(ch if ord(ch) >= 32 else " " for ch in component)
    cleaned = re.sub(r"[\\/:*?\"<>|]+", " ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = cleaned.strip(" .")

    return cleaned


def build_artifact_path(
    root: Path,
    job_name: str,
    district_id: str,
    station_label: str,
    record_number: str,
) -> Path:
    """Return ``<root>/<job>/<district>/<station>/<record>.pdf`` for an artifact.

    Directory components are sanitised so that a label containing a path
    separator cannot escape ``root``.
    """

    parts = [
        sanitize_filename_component(job_name) or "job",
        sanitize_filename_component(str(district_id)) or "district",
        sanitize_filename_component(station_label) or "station",
    ]
    filename = f"{sanitize_record_number(record_number) or 'record'}.pdf"
    return Path(root).joinpath(*parts, filename)


def build_file_tree(root: Path) -> list[dict[str, Any]]:
    """Return a nested listing of ``root`` as ``file``/``directory`` nodes.

    Dot-prefixed entries (in-flight fetch workspaces) are left out.
    """

    root = Path(root)
    if not root.is_dir():
        return []

    nodes: list[dict[str, Any]] = []
    for entry in sorted(root.iterdir(), key=lambda p: p.name):
        if entry.name.startswith("."):
            continue
        try:
            if entry.is_dir():
                nodes.append(
                    {
                        "name": entry.name,
                        "type": "directory",
                        "children": build_file_tree(entry),
                    }
                )
            elif entry.is_file():
                nodes.append(
                    {"name": entry.name, "type": "file", "size": entry.stat().st_size}
                )
        except OSError:
            continue
    return nodes


def disk_has_room(min_free_mb: int, path: Path) -> bool:
    """Return ``True`` when the filesystem holding ``path`` has ``min_free_mb`` free."""

    target = Path(path)
    while not target.exists() and target != target.parent:
        target = target.parent
    try:
        usage = shutil.disk_usage(target)
    except OSError:
        return False
    return usage.free >= int(min_free_mb) * 1024 * 1024


__all__ = [
    "ensure_dirs",
    "get_current_log_path",
    "log_line",
    "sanitize_record_number",
    "sanitize_filename_component",
    "build_artifact_path",
    "build_file_tree",
    "disk_has_room",
]
