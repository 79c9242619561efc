"""Configuration constants for the FIR crawler service."""
from __future__ import annotations

import os
from pathlib import Path

DATA_DIR: Path = Path(os.getenv("FIRCRAWL_DATA_DIR", "/app/data"))
DOWNLOAD_DIR: Path = DATA_DIR / "download"
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
EXPORTS_DIR: Path = DATA_DIR / "exports"
DB_PATH: Path = DATA_DIR / "fircrawl.db"

PORTAL_BASE_URL: str = os.getenv(
    "FIRCRAWL_PORTAL_URL", "https://citizen.mppolice.gov.in/"
)
# Page reached after a successful OTP verification.
PORTAL_SEARCH_PAGE: str = "FirSearch.aspx"

HEADLESS: bool = os.getenv("FIRCRAWL_HEADLESS", "true").strip().lower() not in {
    "0",
    "false",
}
USER_AGENT: str = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36"
)
VIEWPORT: dict[str, int] = {"width": 1366, "height": 768}

MIN_FREE_MB: int = int(os.getenv("MIN_FREE_MB", "400"))


def _parse_timeout_seconds(env_var: str, default: int, *, minimum: int = 1) -> int:
    """Parse a timeout value in seconds from the environment with bounds."""

    try:
        value = int(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


# Session bootstrap: each login-navigation step is retried with a fixed backoff.
SESSION_STEP_RETRIES: int = int(os.getenv("FIRCRAWL_SESSION_STEP_RETRIES", "3"))
SESSION_STEP_BACKOFF_SECONDS: float = float(
    os.getenv("FIRCRAWL_SESSION_STEP_BACKOFF_SECONDS", "5")
)

# Playwright timeouts (seconds)
NAV_TIMEOUT_SECONDS: int = _parse_timeout_seconds("FIRCRAWL_NAV_TIMEOUT_SECONDS", 90)
SELECTOR_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "FIRCRAWL_SELECTOR_TIMEOUT_SECONDS", 30
)
# Police-station dropdown repopulates via postback after a district change.
STATION_LIST_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "FIRCRAWL_STATION_LIST_TIMEOUT_SECONDS", 60
)
SEARCH_TIMEOUT_SECONDS: int = _parse_timeout_seconds("FIRCRAWL_SEARCH_TIMEOUT_SECONDS", 60)
# The report viewer popup can take a long time before its export control appears.
EXPORT_TIMEOUT_SECONDS: int = _parse_timeout_seconds("FIRCRAWL_EXPORT_TIMEOUT_SECONDS", 90)
OTP_TIMEOUT_SECONDS: int = _parse_timeout_seconds("FIRCRAWL_OTP_TIMEOUT_SECONDS", 30)

# Artifact fetch: bounded wait for a completed file in the scratch workspace.
ARTIFACT_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "FIRCRAWL_ARTIFACT_TIMEOUT_SECONDS", 120
)
ARTIFACT_POLL_SECONDS: float = float(os.getenv("FIRCRAWL_ARTIFACT_POLL_SECONDS", "0.5"))

# Orchestrator retry budget for a single automation call (select/search/extract).
AUTOMATION_MAX_ATTEMPTS: int = int(os.getenv("FIRCRAWL_AUTOMATION_MAX_ATTEMPTS", "3"))
# Hard ceiling for any single call executed on the session thread.
AUTOMATION_CALL_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "FIRCRAWL_AUTOMATION_CALL_TIMEOUT_SECONDS", 300
)

# Short sleeps (seconds) for postback pacing
POST_SELECT_SLEEP_SECONDS: float = float(
    os.getenv("FIRCRAWL_POST_SELECT_SLEEP_SECONDS", "1.0")
)
POST_SEARCH_SLEEP_SECONDS: float = float(
    os.getenv("FIRCRAWL_POST_SEARCH_SLEEP_SECONDS", "2.0")
)


def start_session_on_boot() -> bool:
    """Return True if the browser session should be initialised at app import."""

    return os.getenv("FIRCRAWL_START_SESSION_ON_BOOT", "1") == "1"


def probe_upstream_in_health() -> bool:
    """Return True if the health endpoint should also probe the portal over HTTP."""

    return os.getenv("FIRCRAWL_HEALTH_PROBE_UPSTREAM", "0") == "1"
