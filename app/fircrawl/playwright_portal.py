"""Playwright implementation of the portal automation capability.

Selectors and page flows of the state police citizen portal live here and
nowhere else. Every public method runs on the session thread.
"""
from __future__ import annotations

import re
import time
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from playwright.sync_api import Error as PWError
from playwright.sync_api import TimeoutError as PWTimeout
from playwright.sync_api import sync_playwright

from . import config
from .automation import AutomationCapability, BootstrapStep, Option
from .date_utils import to_portal_date
from .error_codes import ErrorCode
from .errors import AutomationError, SessionLost
from .grid_parser import parse_result_grid, parse_select_options
from .logging_utils import _crawler_event
from .record_state import FoundRecord
from .utils import log_line, sanitize_record_number

FIR_VIEW_LINK = 'a[data-target="#FirViewModel_New"]'
FIR_VIEW_MODAL = "#FirViewModel_New"
MOBILE_INPUT = "#ContentPlaceHolder1_txtMobileNo"
GENERATE_OTP_BUTTON = "#ContentPlaceHolder1_btnGenerateOTP"
OTP_INPUT = "#ContentPlaceHolder1_txtOtp"
SUBMIT_OTP_BUTTON = "#ContentPlaceHolder1_btnSubmitOTP"
RESEND_OTP_BUTTON = "#ContentPlaceHolder1_btnResend"
DISTRICT_SELECT = "#ContentPlaceHolder1_ddlDistrictFirSearch"
STATION_SELECT = "#ContentPlaceHolder1_ddlPoliceStationFirSearch"
SEARCH_DATE_INPUT = "#ContentPlaceHolder1_txtFirSearchDate"
RESULT_GRID = "#ContentPlaceHolder1_gdvFirSearch"
SEARCH_BUTTONS: Sequence[str] = (
    "#ContentPlaceHolder1_btnFirSearch",
    'input[type="submit"][value="Search"]',
    "#ContentPlaceHolder1_btnSearch",
)
EXPORT_BUTTON = 'a[id$="_ButtonLink"] img[src*="Export.gif"]'

_TARGET_CLOSED_MARKERS = (
    "Target closed",
    "Target crashed",
    "has been closed",
    "Execution context was destroyed",
    "detached",
)

_ACCEPT_TERMS_JS = """
() => {
    const buttons = [...document.querySelectorAll('#FirViewModel_New button, #FirViewModel_New a')];
    const yes = buttons.find(b => {
        const text = (b.innerText || '').trim().toLowerCase();
        return text === 'yes' || text === 'हाँ';
    });
    if (yes) { yes.click(); return true; }
    return false;
}
"""

_SET_DATE_JS = """
([selector, value]) => {
    const input = document.querySelector(selector);
    if (!input) return false;
    input.focus();
    input.value = value;
    input.dispatchEvent(new Event('input', { bubbles: true }));
    input.dispatchEvent(new Event('change', { bubbles: true }));
    input.blur();
    return true;
}
"""

_SEARCH_SETTLED_JS = """
(selector) => {
    const grid = document.querySelector(selector);
    const hasGrid = grid && grid.innerText.trim().length > 10;
    return Boolean(hasGrid || document.body.innerText.includes('No Record Found') || document.querySelector('.alert'));
}
"""

_STATIONS_LOADED_JS = """
([selector, before]) => {
    const ddl = document.querySelector(selector);
    return Boolean(ddl && ddl.options.length > 1 && (before === null || ddl.innerHTML !== before));
}
"""

_CLICK_RECORD_LINK_JS = """
([gridSelector, recordNumber]) => {
    const rows = [...document.querySelectorAll(gridSelector + ' tr')];
    const row = rows.find(r => r.cells[1] && r.cells[1].innerText.trim() === recordNumber);
    const link = row && row.querySelector('a');
    if (link) { link.click(); return true; }
    return false;
}
"""

_CLICK_EXPORT_JS = """
() => {
    const img = [...document.querySelectorAll('img')].find(i => i.src.includes('Export.gif'));
    if (img) { img.click(); return true; }
    return false;
}
"""


def _is_target_closed_error(exc: Exception) -> bool:
    """Return ``True`` if *exc* indicates the Playwright target is gone."""

    message = str(exc)
    return any(marker in message for marker in _TARGET_CLOSED_MARKERS)


def _ms(seconds: float) -> float:
    return float(seconds) * 1000.0


class PlaywrightPortal(AutomationCapability):
    def __init__(self, *, base_url: str = config.PORTAL_BASE_URL, headless: Optional[bool] = None) -> None:
        self._base_url = base_url
        self._headless = config.HEADLESS if headless is None else headless
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    # -- plumbing ----------------------------------------------------------

    @contextmanager
    def _translate(self, operation: str) -> Iterator[None]:
        """Convert Playwright errors into automation errors with a code."""

        try:
            yield
        except AutomationError:
            raise
        except PWTimeout as exc:
            _crawler_event("error", phase="portal", operation=operation, error_code=ErrorCode.TIMEOUT, error=str(exc))
            raise AutomationError(f"{operation} timed out: {exc}", error_code=ErrorCode.TIMEOUT) from exc
        except PWError as exc:
            if _is_target_closed_error(exc):
                _crawler_event("error", phase="portal", operation=operation, error_code=ErrorCode.SESSION_LOST, error=str(exc))
                raise SessionLost(f"{operation}: {exc}") from exc
            _crawler_event("error", phase="portal", operation=operation, error=str(exc))
            raise AutomationError(f"{operation} failed: {exc}") from exc

    def _require_page(self):
        page = self._page
        if page is None or page.is_closed():
            raise SessionLost("page is closed")
        return page

    # -- session lifecycle -----------------------------------------------------

    def open_session(self) -> None:
        log_line("[PORTAL] Launching headless browser")
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(
            headless=self._headless,
            args=[
                "--no-sandbox",
                "--disable-setuid-sandbox",
                "--disable-background-timer-throttling",
                "--disable-backgrounding-occluded-windows",
                "--disable-renderer-backgrounding",
            ],
        )
        self._context = self._browser.new_context(
            user_agent=config.USER_AGENT,
            viewport=config.VIEWPORT,
            accept_downloads=True,
        )
        self._page = self._context.new_page()
        self._page.on("dialog", self._accept_dialog)

    @staticmethod
    def _accept_dialog(dialog) -> None:
        log_line(f"[PORTAL] Alert: {dialog.message}")
        try:
            dialog.accept()
        except PWError:
            return

    def is_alive(self) -> bool:
        page = self._page
        browser = self._browser
        return bool(page is not None and not page.is_closed() and browser is not None and browser.is_connected())

    def close_session(self) -> None:
        for closer in (self._context, self._browser):
            if closer is None:
                continue
            try:
                closer.close()
            except Exception as exc:  # noqa: BLE001
                log_line(f"[PORTAL] Close failed: {exc}")
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception as exc:  # noqa: BLE001
                log_line(f"[PORTAL] Playwright stop failed: {exc}")
        self._page = self._context = self._browser = self._playwright = None

    def bootstrap_steps(self) -> Sequence[BootstrapStep]:
        return (
            BootstrapStep("open_portal", self._open_portal, config.NAV_TIMEOUT_SECONDS),
            BootstrapStep("switch_language", self._switch_to_english, config.SELECTOR_TIMEOUT_SECONDS, optional=True),
            BootstrapStep("open_fir_view", self._open_fir_view, config.SELECTOR_TIMEOUT_SECONDS * 2),
        )

    def _open_portal(self, timeout_seconds: float) -> None:
        page = self._require_page()
        with self._translate("open_portal"):
            page.goto(self._base_url, wait_until="domcontentloaded", timeout=_ms(timeout_seconds))

    def _switch_to_english(self, timeout_seconds: float) -> None:
        page = self._require_page()
        with self._translate("switch_language"):
            page.wait_for_function("() => typeof __doPostBack === 'function'", timeout=_ms(10))
            with page.expect_navigation(wait_until="domcontentloaded", timeout=_ms(timeout_seconds)):
                page.evaluate("() => __doPostBack('English', '')")
            page.wait_for_timeout(2000)

    def _open_fir_view(self, timeout_seconds: float) -> None:
        page = self._require_page()
        with self._translate("open_fir_view"):
            if page.query_selector(MOBILE_INPUT) is not None:
                return
            page.wait_for_selector(FIR_VIEW_LINK, timeout=_ms(timeout_seconds))
            page.eval_on_selector(FIR_VIEW_LINK, "el => el.click()")
            page.wait_for_selector(FIR_VIEW_MODAL, timeout=_ms(timeout_seconds))
            if not page.evaluate(_ACCEPT_TERMS_JS):
                raise AutomationError("FIR view confirmation button not found", error_code=ErrorCode.SITE_STRUCTURE)
            page.wait_for_selector(MOBILE_INPUT, timeout=_ms(timeout_seconds))

    # -- OTP login ---------------------------------------------------------

    def send_otp(self, mobile: str) -> None:
        page = self._require_page()
        with self._translate("send_otp"):
            page.wait_for_selector(MOBILE_INPUT, state="visible", timeout=_ms(config.OTP_TIMEOUT_SECONDS))
            page.fill(MOBILE_INPUT, mobile)
            page.wait_for_timeout(500)
            page.click(GENERATE_OTP_BUTTON, timeout=_ms(config.SELECTOR_TIMEOUT_SECONDS))

    def verify_otp(self, otp: str) -> bool:
        page = self._require_page()
        with self._translate("verify_otp"):
            page.fill(OTP_INPUT, otp)

            def _is_search_document(response) -> bool:
                return (
                    config.PORTAL_SEARCH_PAGE in response.url
                    and response.request.resource_type == "document"
                )

            try:
                with page.expect_response(_is_search_document, timeout=_ms(config.OTP_TIMEOUT_SECONDS)):
                    page.click(SUBMIT_OTP_BUTTON, timeout=_ms(config.SELECTOR_TIMEOUT_SECONDS))
            except PWTimeout:
                return False
            return True

    def resend_otp(self) -> None:
        page = self._require_page()
        with self._translate("resend_otp"):
            page.click(RESEND_OTP_BUTTON, timeout=_ms(config.SELECTOR_TIMEOUT_SECONDS))

    # -- search form ---------------------------------------------------------

    def _select_html(self, selector: str) -> str:
        page = self._require_page()
        node = page.query_selector(selector)
        if node is None:
            raise AutomationError(f"{selector} not found", error_code=ErrorCode.SITE_STRUCTURE)
        return node.evaluate("el => el.outerHTML")

    def list_districts(self) -> list[Option]:
        with self._translate("list_districts"):
            return parse_select_options(self._select_html(DISTRICT_SELECT))

    def select_district(self, district_id: str) -> None:
        page = self._require_page()
        with self._translate("select_district"):
            current = page.eval_on_selector(DISTRICT_SELECT, "el => el.value")
            if current == district_id:
                self._wait_for_stations(None)
                return
            before = page.eval_on_selector(STATION_SELECT, "el => el.innerHTML") if page.query_selector(STATION_SELECT) else None
            page.select_option(DISTRICT_SELECT, district_id)
            self._wait_for_stations(before)

    def _wait_for_stations(self, before: Optional[str]) -> None:
        page = self._require_page()
        try:
            page.wait_for_function(
                _STATIONS_LOADED_JS,
                arg=[STATION_SELECT, before],
                timeout=_ms(config.SELECTOR_TIMEOUT_SECONDS),
            )
        except PWTimeout:
            log_line("[PORTAL] Station list did not change after district select; continuing")
        page.wait_for_function(
            _STATIONS_LOADED_JS,
            arg=[STATION_SELECT, None],
            timeout=_ms(config.STATION_LIST_TIMEOUT_SECONDS),
        )

    def list_stations(self) -> list[Option]:
        with self._translate("list_stations"):
            return parse_select_options(self._select_html(STATION_SELECT), drop_placeholders=True)

    def select_station(self, station_id: str) -> None:
        page = self._require_page()
        with self._translate("select_station"):
            page.select_option(STATION_SELECT, station_id)
            time.sleep(config.POST_SELECT_SLEEP_SECONDS)

    def set_search_date(self, day: date) -> None:
        page = self._require_page()
        with self._translate("set_search_date"):
            if not page.evaluate(_SET_DATE_JS, [SEARCH_DATE_INPUT, to_portal_date(day)]):
                raise AutomationError("search date input not found", error_code=ErrorCode.SITE_STRUCTURE)

    def trigger_search(self) -> bool:
        page = self._require_page()
        with self._translate("trigger_search"):
            page.evaluate(
                "(selector) => { const g = document.querySelector(selector); if (g) g.innerHTML = ''; }",
                RESULT_GRID,
            )
            button = None
            for selector in SEARCH_BUTTONS:
                button = page.query_selector(selector)
                if button is not None:
                    break
            if button is None:
                return False
            button.click()
            page.wait_for_function(
                _SEARCH_SETTLED_JS,
                arg=RESULT_GRID,
                timeout=_ms(config.SEARCH_TIMEOUT_SECONDS),
            )
            time.sleep(config.POST_SEARCH_SLEEP_SECONDS)
            return True

    def extract_records(self) -> list[FoundRecord]:
        page = self._require_page()
        with self._translate("extract_records"):
            grid = page.query_selector(RESULT_GRID)
            if grid is None:
                return []
            return parse_result_grid(grid.evaluate("el => el.outerHTML"))

    # -- artifact ------------------------------------------------------------

    def fetch_artifact(
        self,
        record: FoundRecord,
        workspace: Path,
        should_stop: Callable[[], bool],
    ) -> None:
        page = self._require_page()
        popup = None
        with self._translate("fetch_artifact"):
            try:
                with page.expect_popup(timeout=_ms(config.SELECTOR_TIMEOUT_SECONDS)) as popup_info:
                    if not page.evaluate(_CLICK_RECORD_LINK_JS, [RESULT_GRID, record.record_number]):
                        raise AutomationError(
                            f"print link for {record.record_number} not found",
                            error_code=ErrorCode.SITE_STRUCTURE,
                        )
                popup = popup_info.value

                if not self._wait_for_export(popup, should_stop):
                    return

                download = None
                deadline = time.monotonic() + config.EXPORT_TIMEOUT_SECONDS
                while download is None:
                    if should_stop():
                        return
                    if time.monotonic() >= deadline:
                        raise AutomationError(
                            "PDF export never started",
                            error_code=ErrorCode.EXPORT_UNAVAILABLE,
                        )
                    popup.evaluate(_CLICK_EXPORT_JS)
                    popup.wait_for_timeout(1500)
                    pdf_link = popup.locator("a").filter(has_text=re.compile(r"^\s*PDF\s*$"))
                    if pdf_link.count() == 0 or not pdf_link.first.is_visible():
                        popup.wait_for_timeout(2000)
                        continue
                    with popup.expect_download(timeout=_ms(config.ARTIFACT_TIMEOUT_SECONDS)) as download_info:
                        pdf_link.first.click()
                    download = download_info.value

                filename = download.suggested_filename or f"{sanitize_record_number(record.record_number)}.pdf"
                download.save_as(str(Path(workspace) / filename))
            finally:
                if popup is not None:
                    try:
                        popup.close()
                    except PWError:
                        pass

    @staticmethod
    def _wait_for_export(popup, should_stop: Callable[[], bool]) -> bool:
        """Wait for the report viewer's export control, polling for a stop request."""

        deadline = time.monotonic() + config.EXPORT_TIMEOUT_SECONDS
        while True:
            if should_stop():
                return False
            try:
                popup.wait_for_selector(EXPORT_BUTTON, timeout=1000)
                return True
            except PWTimeout:
                if time.monotonic() >= deadline:
                    raise AutomationError(
                        "export button did not appear",
                        error_code=ErrorCode.EXPORT_UNAVAILABLE,
                    )


__all__ = ["PlaywrightPortal"]
