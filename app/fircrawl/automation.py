"""The portal automation capability used by the session and orchestrator.

Everything that knows about the portal's pages lives behind this interface.
Calls are made one at a time from the session thread; implementations may
block for a long time and should raise :class:`~.errors.AutomationError`
subclasses carrying an error code when something goes wrong.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Sequence

from .record_state import FoundRecord


@dataclass(frozen=True)
class Option:
    label: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"label": self.label, "value": self.value}


@dataclass(frozen=True)
class BootstrapStep:
    """One step of the login-navigation sequence, retried by the session."""

    name: str
    action: Callable[[float], None]
    timeout_seconds: float
    optional: bool = False


class AutomationCapability(ABC):
    @abstractmethod
    def open_session(self) -> None:
        """Launch the browser and open a fresh page."""

    @abstractmethod
    def is_alive(self) -> bool:
        """Return False once the page or browser is closed or detached."""

    @abstractmethod
    def close_session(self) -> None: ...

    @abstractmethod
    def bootstrap_steps(self) -> Sequence[BootstrapStep]:
        """Steps that bring a freshly opened page to the OTP login form."""

    @abstractmethod
    def send_otp(self, mobile: str) -> None: ...

    @abstractmethod
    def verify_otp(self, otp: str) -> bool:
        """Submit the OTP; True when the portal moved on to the search page."""

    @abstractmethod
    def resend_otp(self) -> None: ...

    @abstractmethod
    def list_districts(self) -> list[Option]: ...

    @abstractmethod
    def select_district(self, district_id: str) -> None:
        """Select a district; selecting the current one again must be a no-op."""

    @abstractmethod
    def list_stations(self) -> list[Option]:
        """Stations of the selected district in portal order."""

    @abstractmethod
    def select_station(self, station_id: str) -> None: ...

    @abstractmethod
    def set_search_date(self, day: date) -> None: ...

    @abstractmethod
    def trigger_search(self) -> bool:
        """Run the search; False when the search control could not be used."""

    @abstractmethod
    def extract_records(self) -> list[FoundRecord]: ...

    @abstractmethod
    def fetch_artifact(
        self,
        record: FoundRecord,
        workspace: Path,
        should_stop: Callable[[], bool],
    ) -> None:
        """Save ``record``'s document into ``workspace``.

        ``should_stop`` is polled while waiting on the portal; when it returns
        True the implementation returns early without producing a file.
        """


__all__ = ["AutomationCapability", "BootstrapStep", "Option"]
