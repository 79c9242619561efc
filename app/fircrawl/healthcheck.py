from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import requests

from . import config, db
from .config_validation import validate_runtime_config
from .logging_utils import _crawler_event
from .session import SessionManager, SessionState
from .utils import disk_has_room, ensure_dirs, log_line


@dataclass
class HealthResult:
    ok: bool
    checks: dict[str, dict[str, Any]]


def _probe_upstream(timeout: float = 10.0) -> dict[str, Any]:
    try:
        response = requests.get(
            config.PORTAL_BASE_URL,
            headers={"User-Agent": config.USER_AGENT},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        return {"ok": False, "url": config.PORTAL_BASE_URL, "error": str(exc)}
    return {
        "ok": response.status_code < 500,
        "url": config.PORTAL_BASE_URL,
        "http_status": response.status_code,
    }


def run_health_checks(
    entrypoint: str = "cli",
    *,
    session: Optional[SessionManager] = None,
) -> HealthResult:
    checks: dict[str, dict[str, Any]] = {}

    try:
        validate_runtime_config(entrypoint or "cli")
        checks["config"] = {"ok": True}
    except ValueError as exc:
        checks["config"] = {"ok": False, "error": str(exc)}

    ensure_dirs()
    fs_ok = disk_has_room(config.MIN_FREE_MB, config.DATA_DIR)
    checks["filesystem"] = {
        "ok": fs_ok,
        "data_dir": str(config.DATA_DIR),
        "min_free_mb": config.MIN_FREE_MB,
    }

    try:
        db.initialize_schema()
        conn = db.get_connection()
        conn.execute("SELECT COUNT(*) FROM jobs")
        checks["database"] = {"ok": True}
    except Exception as exc:  # noqa: BLE001
        checks["database"] = {"ok": False, "error": str(exc)}

    if session is not None:
        state = session.state
        checks["session"] = {
            "ok": state is not SessionState.DEGRADED,
            "state": state.value,
            "logged_in": session.logged_in,
            "last_error": session.last_error,
        }

    if config.probe_upstream_in_health():
        checks["upstream"] = _probe_upstream()

    overall_ok = all(check.get("ok", False) for check in checks.values())

    try:
        _crawler_event(
            "state" if overall_ok else "error",
            phase="health",
            context="healthcheck",
            ok=overall_ok,
            checks=checks,
        )
    except Exception:
        pass

    return HealthResult(ok=overall_ok, checks=checks)


if __name__ == "__main__":  # pragma: no cover
    result = run_health_checks(entrypoint="cli")
    for name, info in result.checks.items():
        status = "OK" if info.get("ok") else "FAIL"
        log_line(f"[HEALTH] {name}: {status} {info}")
    raise SystemExit(0 if result.ok else 1)
