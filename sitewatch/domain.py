from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass
from typing import Union


class Area(enum.Enum):
    """Borough or New York State area where appointments are given."""

    MANHATTAN = "Manhattan"
    QUEENS = "Queens"
    BROOKLYN = "Brooklyn"
    BRONX = "Bronx"
    STATEN_ISLAND = "Staten Island"
    UPSTATE = "Upstate"
    LONG_ISLAND = "Long Island"
    MULTIPLE = "Multiple locations"
    MID_HUDSON = "Mid-Hudson"

    @property
    def cli_name(self) -> str:
        # e.g. staten-island
        return self.name.lower().replace("_", "-")

    @classmethod
    def from_cli_name(cls, raw: str) -> "Area":
        key = raw.strip().lower()
        for area in cls:
            if area.cli_name == key:
                return area
        raise ValueError(f"Unknown area: {raw!r}")

    @classmethod
    def from_label(cls, raw: str) -> "Area":
        for area in cls:
            if area.value == raw:
                return area
        raise ValueError(f"Unknown area label: {raw!r}")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Site:
    """A single site as seen in one poll cycle.

    `identity` must be stable across cycles. Feeds without an explicit id use
    the display name, which then has to be unique within a snapshot.
    """

    identity: str
    name: str
    area: Area
    available: bool | None
    url: str
    updated_at: dt.datetime | None = None
    appointment_summary: tuple[str, ...] = ()
    appointment_count: int = 0
    address: str | None = None
    # Pre-built map link; the detector builds one when absent.
    map_url: str | None = None


@dataclass(frozen=True)
class BecameAvailable:
    site: Site
    lines: tuple[str, ...]


@dataclass(frozen=True)
class BecameUnavailable:
    site: Site
    summary_line: str


NotificationEvent = Union[BecameAvailable, BecameUnavailable]


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of delivering one event to every recipient."""

    event: NotificationEvent
    delivered: tuple[str, ...] = ()
    # (recipient, exception) pairs.
    failed: tuple[tuple[str, BaseException], ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failed_recipients(self) -> tuple[str, ...]:
        return tuple(recipient for recipient, _ in self.failed)

    def raise_for_failures(self) -> None:
        if self.failed:
            raise DispatchFailedError(self.failed_recipients)


class SiteWatchError(RuntimeError):
    pass


class ConfigError(SiteWatchError):
    pass


class FetchError(SiteWatchError):
    """The snapshot could not be retrieved (network, HTTP status)."""


class ParseError(SiteWatchError):
    """The snapshot was retrieved but does not match the expected shape."""


class EmptyMessageBody(SiteWatchError):
    def __init__(self) -> None:
        super().__init__("failed to compute maximum line length because message is empty")


class DeliveryError(SiteWatchError):
    def __init__(self, recipient: str, reason: str) -> None:
        super().__init__(f"Delivery to {recipient} failed: {reason}")
        self.recipient = recipient
        self.reason = reason


class DispatchFailedError(SiteWatchError):
    def __init__(self, recipients: tuple[str, ...]) -> None:
        super().__init__(f"Failed to deliver message to some recipients: {', '.join(recipients)}")
        self.recipients = recipients
