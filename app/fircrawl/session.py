"""Ownership and self-healing of the single portal browser session.

All automation runs on one dedicated worker thread. That serialises access
to the page (two navigations at once would corrupt its state) and keeps
Playwright's sync API on the thread that created it.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from . import config
from .automation import AutomationCapability, BootstrapStep
from .errors import NotInitialized, SessionLost, SessionUnavailable, UpstreamUnresponsive
from .logging_utils import _crawler_event
from .retry_policy import compute_backoff_seconds, decide_retry
from .utils import log_line

T = TypeVar("T")
AutomationCall = Callable[[AutomationCapability], T]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"


class SessionManager:
    def __init__(
        self,
        capability_factory: Callable[[], AutomationCapability],
        *,
        step_retries: Optional[int] = None,
        step_backoff_seconds: Optional[float] = None,
        call_timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._factory = capability_factory
        self._step_retries = max(1, step_retries or config.SESSION_STEP_RETRIES)
        self._step_backoff = (
            config.SESSION_STEP_BACKOFF_SECONDS
            if step_backoff_seconds is None
            else step_backoff_seconds
        )
        self._call_timeout = call_timeout_seconds or config.AUTOMATION_CALL_TIMEOUT_SECONDS
        self._max_attempts = max(1, max_attempts or config.AUTOMATION_MAX_ATTEMPTS)
        self._sleep = sleep

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fircrawl-session")
        self._cond = threading.Condition()
        self._state = SessionState.UNINITIALIZED
        self._capability: Optional[AutomationCapability] = None
        self._logged_in = False
        self.last_error: Optional[str] = None

    @property
    def state(self) -> SessionState:
        with self._cond:
            return self._state

    @property
    def logged_in(self) -> bool:
        return self._logged_in

    def set_logged_in(self, value: bool) -> None:
        self._logged_in = bool(value)

    def status_snapshot(self) -> dict[str, Any]:
        state = self.state
        return {
            "ready": state is SessionState.READY,
            "isLoggedIn": self._logged_in,
            "status": state.value,
        }

    # -- lifecycle -----------------------------------------------------

    def ensure_ready(self) -> SessionState:
        """Bring the session to Ready.

        Returns immediately when Ready and live. While another thread is
        initialising this is a no-op returning ``INITIALIZING``. Raises
        ``SessionUnavailable`` when the login-navigation sequence fails.
        """

        with self._cond:
            state = self._state
            if state is SessionState.INITIALIZING:
                return state
        if state is SessionState.READY:
            if self._probe_alive():
                return state
            self._degrade("session handle closed or detached")

        with self._cond:
            if self._state is SessionState.INITIALIZING:
                return self._state
            if self._state is SessionState.READY:
                return self._state
            self._state = SessionState.INITIALIZING
            self._cond.notify_all()

        _crawler_event("state", phase="session", to_state=SessionState.INITIALIZING.value)
        succeeded = False
        try:
            self._executor.submit(self._initialise).result()
            succeeded = True
        except Exception as exc:  # noqa: BLE001
            self.last_error = str(exc)
            log_line(f"[SESSION] Initialisation failed: {exc}")
        finally:
            with self._cond:
                self._state = SessionState.READY if succeeded else SessionState.DEGRADED
                self._cond.notify_all()
            _crawler_event(
                "state" if succeeded else "error",
                phase="session",
                to_state=SessionState.READY.value if succeeded else SessionState.DEGRADED.value,
                error=None if succeeded else self.last_error,
            )

        if not succeeded:
            raise SessionUnavailable(self.last_error or "session initialisation failed")
        return SessionState.READY

    def start_background(self) -> threading.Thread:
        """Run :meth:`ensure_ready` on a daemon thread (used at app start)."""

        def _run() -> None:
            try:
                self.ensure_ready()
            except SessionUnavailable as exc:
                log_line(f"[SESSION] Background initialisation failed: {exc}")

        thread = threading.Thread(target=_run, name="fircrawl-session-boot", daemon=True)
        thread.start()
        return thread

    def wait_until_settled(self, timeout: Optional[float] = None) -> SessionState:
        """Block while the session is initialising; return the resulting state."""

        with self._cond:
            self._cond.wait_for(lambda: self._state is not SessionState.INITIALIZING, timeout=timeout)
            return self._state

    def _initialise(self) -> None:
        previous = self._capability
        self._capability = None
        self._logged_in = False
        if previous is not None:
            try:
                previous.close_session()
            except Exception as exc:  # noqa: BLE001
                log_line(f"[SESSION] Closing stale session failed: {exc}")

        capability = self._factory()
        capability.open_session()
        try:
            for step in capability.bootstrap_steps():
                self._run_step(step)
        except Exception:
            try:
                capability.close_session()
            except Exception as exc:  # noqa: BLE001
                log_line(f"[SESSION] Closing failed session failed: {exc}")
            raise
        self._capability = capability

    def _run_step(self, step: BootstrapStep) -> None:
        for attempt in range(1, self._step_retries + 1):
            try:
                log_line(f"[SESSION] {step.name} (attempt {attempt}/{self._step_retries})")
                step.action(step.timeout_seconds)
                return
            except Exception as exc:  # noqa: BLE001
                _crawler_event(
                    "error",
                    phase="session",
                    step=step.name,
                    attempt=attempt,
                    max_attempts=self._step_retries,
                    optional=step.optional,
                    error=str(exc),
                )
                if attempt >= self._step_retries:
                    if step.optional:
                        log_line(f"[SESSION] Optional step {step.name} skipped: {exc}")
                        return
                    raise SessionUnavailable(
                        f"Source website not responding ({step.name}): {exc}"
                    ) from exc
                self._sleep(self._step_backoff)

    def _probe_alive(self) -> bool:
        capability = self._capability
        if capability is None:
            return False
        try:
            return bool(self._executor.submit(capability.is_alive).result(timeout=self._call_timeout))
        except Exception:  # noqa: BLE001
            return False

    def _degrade(self, reason: str) -> None:
        with self._cond:
            if self._state is not SessionState.READY:
                return
            self._state = SessionState.DEGRADED
            self._cond.notify_all()
        self.last_error = reason
        _crawler_event("error", phase="session", to_state=SessionState.DEGRADED.value, reason=reason)

    def acquire(self) -> AutomationCapability:
        """Return the live capability or raise ``NotInitialized``."""

        capability = self._capability
        if capability is None or self.state is SessionState.UNINITIALIZED:
            raise NotInitialized("Browser session has not been initialised")
        return capability

    def shutdown(self) -> None:
        capability = self._capability
        self._capability = None
        if capability is not None:
            try:
                self._executor.submit(capability.close_session).result(timeout=30)
            except Exception as exc:  # noqa: BLE001
                log_line(f"[SESSION] Browser close failed: {exc}")
        self._executor.shutdown(wait=False)
        with self._cond:
            self._state = SessionState.UNINITIALIZED
            self._cond.notify_all()
        self._logged_in = False
        _crawler_event("state", phase="session", to_state=SessionState.UNINITIALIZED.value, kind="shutdown")

    # -- automation calls -------------------------------------------------

    def _heal(self) -> None:
        """Make sure a live session exists before an automation call."""

        if self.state is SessionState.INITIALIZING:
            self.wait_until_settled(self._call_timeout)

        if self.state is SessionState.READY:
            if self._probe_alive():
                return
            self._degrade("session handle closed or detached")

        if self.ensure_ready() is not SessionState.READY:
            if self.wait_until_settled(self._call_timeout) is not SessionState.READY:
                raise SessionUnavailable(self.last_error or "session is not ready")

    def submit(self, fn: AutomationCall[T]) -> "Future[T]":
        """Queue ``fn(capability)`` on the session thread after healing the session."""

        self._heal()
        capability = self.acquire()
        return self._executor.submit(fn, capability)

    def call(self, fn: AutomationCall[T], *, label: str) -> T:
        """Run one automation call with a hard ceiling on its duration."""

        future = self.submit(fn)
        try:
            return future.result(timeout=self._call_timeout)
        except FutureTimeout as exc:
            self._degrade(f"{label} exceeded {self._call_timeout}s")
            raise UpstreamUnresponsive(f"{label} did not finish within {self._call_timeout}s") from exc
        except SessionLost as exc:
            self._degrade(f"{label}: {exc}")
            raise

    def call_with_retries(
        self,
        label: str,
        fn: AutomationCall[T],
        *,
        max_attempts: Optional[int] = None,
    ) -> T:
        """Run ``fn`` with the shared retry policy.

        ``SessionUnavailable`` propagates unchanged; anything else that
        exhausts the budget becomes ``UpstreamUnresponsive``.
        """

        limit = max(1, max_attempts or self._max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.call(fn, label=label)
            except (SessionUnavailable, NotInitialized):
                raise
            except Exception as exc:  # noqa: BLE001
                code = getattr(exc, "error_code", None)
                if not decide_retry(attempt, limit, exc, error_code=code, operation=label):
                    raise UpstreamUnresponsive(
                        f"{label} failed after {attempt} attempt(s): {exc}"
                    ) from exc
                log_line(f"[SESSION] {label} failed ({exc}); retrying")
                self._sleep(compute_backoff_seconds(attempt))


__all__ = ["SessionManager", "SessionState"]
