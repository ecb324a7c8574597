from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional, Protocol
from urllib.parse import quote

from sitewatch.domain import BecameAvailable, BecameUnavailable, NotificationEvent, Site

logger = logging.getLogger(__name__)

MAPS_SEARCH_URL = "https://www.google.com/maps/search/?api=1&query="

# https://url.spec.whatwg.org/#fragment-percent-encode-set
_FRAGMENT_SAFE = "".join(chr(c) for c in range(0x21, 0x7F) if chr(c) not in '"<>`')


class AvailabilityFilter(Protocol):
    def matches(self, display_name: str) -> bool: ...


class PatternFilter:
    """Matches sites whose display name contains the regex pattern."""

    def __init__(self, pattern: str | re.Pattern[str]) -> None:
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern

    def matches(self, display_name: str) -> bool:
        return self.pattern.search(display_name) is not None

    def __repr__(self) -> str:
        return f"PatternFilter({self.pattern.pattern!r})"


def maps_search_url(query: str) -> str:
    return MAPS_SEARCH_URL + quote(query, safe=_FRAGMENT_SAFE)


@dataclass
class DedupStore:
    """What the detector remembers between poll cycles.

    Owned by exactly one ChangeDetector; nothing else reads or writes it.
    """

    currently_available: set[str] = field(default_factory=set)
    last_seen_update: dict[str, dt.datetime] = field(default_factory=dict)


class ChangeDetector:
    def __init__(
        self,
        store: DedupStore | None = None,
        *,
        site_filter: Optional[AvailabilityFilter] = None,
        map_url: Callable[[str], str] = maps_search_url,
    ) -> None:
        self.store = store if store is not None else DedupStore()
        self.site_filter = site_filter
        self.map_url = map_url

    def _wanted(self, site: Site) -> bool:
        # The filter only gates emission; state is tracked for every site.
        return self.site_filter is None or self.site_filter.matches(site.name)

    def detect(self, snapshot: Iterable[Site]) -> Iterator[NotificationEvent]:
        """Yield one event per site with a reportable transition.

        The store is updated as the generator advances, so callers must
        exhaust it to keep the state in step with the snapshot.
        """
        for site in snapshot:
            event = self._observe(site)
            if event is not None:
                yield event

    def _observe(self, site: Site) -> NotificationEvent | None:
        store = self.store
        key = site.identity

        if site.available:
            newly_available = key not in store.currently_available

            updated_recently = False
            if site.updated_at is not None:
                previous = store.last_seen_update.get(key, site.updated_at)
                updated_recently = site.updated_at > previous
                store.last_seen_update[key] = site.updated_at

            store.currently_available.add(key)

            if not (newly_available or updated_recently) or not self._wanted(site):
                return None

            try:
                lines = self.available_lines(site)
            except Exception as e:
                # State is already recorded; only this site's message is lost.
                logger.error("Failed to build message for site=%s (%s: %s)", site.name, type(e).__name__, e)
                return None

            logger.debug("Site available: %s (new=%s updated=%s)", key, newly_available, updated_recently)
            return BecameAvailable(site=site, lines=tuple(lines))

        if key not in store.currently_available:
            return None

        store.currently_available.discard(key)
        if not self._wanted(site):
            return None

        return BecameUnavailable(site=site, summary_line=f"{site.area}: {site.name} appts no longer available")

    def available_lines(self, site: Site) -> list[str]:
        updated = str(site.updated_at) if site.updated_at is not None else "unknown"
        lines = [
            f"{site.area}: appointments available!",
            "",
            f"Site: {site.name}",
            "",
            f"Area: {site.area}",
            f"Sched: {site.url}",
            f"Map: {site.map_url or self.map_url(site.address or site.name)}",
            "",
        ]
        lines.extend(f"Times: {slot}" for slot in site.appointment_summary)
        lines.extend(
            [
                "",
                f"Appts Remaining: {site.appointment_count}",
                f"Last Updated: {updated}",
            ]
        )
        return lines
