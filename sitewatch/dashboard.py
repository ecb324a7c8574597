from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import replace
from typing import Any, Iterable, Sequence

import httpx

from sitewatch.detector import maps_search_url
from sitewatch.domain import Area, FetchError, ParseError, Site

logger = logging.getLogger(__name__)

DEFAULT_DATA_URL = "https://turbovax.global.ssl.fastly.net/dashboard"
IS_GD_URL = "https://is.gd/create.php"

APPOINTMENT_TIMES_SEPARATOR = ";"


class IsGdShortener:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client
        self._cache: dict[str, str] = {}

    async def shorten(self, url: str) -> str:
        if url in self._cache:
            return self._cache[url]
        r = await self.client.get(IS_GD_URL, params={"format": "simple", "url": url})
        r.raise_for_status()
        short = r.text.strip()
        self._cache[url] = short
        return short


def _parse_timestamp(raw: Any) -> dt.datetime | None:
    # Always timezone-aware in local time; naive values are taken as local.
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise ParseError(f"Invalid timestamp: {raw!r}")
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return dt.datetime.fromisoformat(value).astimezone()
    except ValueError as e:
        raise ParseError(f"Invalid timestamp: {raw!r}") from e


def _parse_summary(raw: Any) -> tuple[str, ...]:
    # Older feeds ship a single ';'-separated string, newer ones a list.
    if raw is None:
        return ()
    if isinstance(raw, str):
        return tuple(raw.split(APPOINTMENT_TIMES_SEPARATOR)) if raw else ()
    if isinstance(raw, list):
        return tuple(str(s) for s in raw)
    raise ParseError(f"Invalid appointment summary: {raw!r}")


def _parse_available(raw: Any) -> bool | None:
    if raw is None or isinstance(raw, bool):
        return raw
    raise ParseError(f"Invalid 'available' value: {raw!r}")


def _parse_location(location: Any, portals: dict[str, Any], wanted: frozenset[Area]) -> Site | None:
    if not location.get("active", False):
        return None

    area = Area.from_label(location["area"])
    if area not in wanted:
        return None

    portal_key = str(location["portal"])
    if portal_key not in portals:
        raise ParseError(f"Unknown portal {portal_key!r}")

    name = str(location["name"])
    appointments = location.get("appointments") or {}
    return Site(
        identity=str(location.get("id") or name),
        name=name,
        area=area,
        available=_parse_available(location.get("available")),
        url=str(portals[portal_key]["url"]),
        updated_at=_parse_timestamp(location.get("updated_at")),
        appointment_summary=_parse_summary(appointments.get("summary")),
        appointment_count=int(appointments.get("count") or 0),
        address=location.get("formatted_address") or None,
    )


def parse_dashboard(data: Any, *, areas: Iterable[Area] = ()) -> list[Site]:
    """Normalize a dashboard document into a snapshot.

    Only active locations in `areas` are kept; an empty selection keeps all.
    A malformed location is logged and skipped. Only a malformed document
    raises ParseError.
    """
    if not isinstance(data, dict):
        raise ParseError("Dashboard must be a JSON object")

    wanted = frozenset(areas) or frozenset(Area)

    try:
        portals = {str(p["key"]): p for p in data.get("portals", [])}
        locations = list(data["locations"])
    except (KeyError, TypeError) as e:
        raise ParseError(f"Malformed dashboard: {type(e).__name__}: {e}") from e

    sites: list[Site] = []
    for location in locations:
        try:
            site = _parse_location(location, portals, wanted)
        except (ParseError, KeyError, TypeError, ValueError, AttributeError) as e:
            name = location.get("name") if isinstance(location, dict) else None
            logger.warning("Skipping malformed location %r (%s: %s)", name, type(e).__name__, e)
            continue
        if site is not None:
            sites.append(site)

    return sites


def merge_snapshots(snapshots: Iterable[list[Site]]) -> list[Site]:
    # The first feed to mention an identity wins.
    seen: set[str] = set()
    merged: list[Site] = []
    for snapshot in snapshots:
        for site in snapshot:
            if site.identity in seen:
                continue
            seen.add(site.identity)
            merged.append(site)
    return merged


class DashboardSource:
    """Fetches one or more dashboard feeds and merges them into one snapshot.

    Feeds are fetched concurrently. A feed that fails is logged and left out
    of the snapshot, which is safe because an absent site is never reported
    as unavailable. Only when every feed fails does fetch() raise: FetchError
    if any feed failed to download, otherwise ParseError.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        data_urls: Sequence[str] = (DEFAULT_DATA_URL,),
        areas: Iterable[Area] = (),
        shortener: IsGdShortener | None = None,
    ) -> None:
        if not data_urls:
            raise ValueError("at least one data url is required")
        self.client = client
        self.data_urls = tuple(data_urls)
        self.areas = frozenset(areas)
        self.shortener = shortener

    async def fetch_feed(self, data_url: str) -> list[Site]:
        try:
            r = await self.client.get(data_url)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise FetchError(f"GET {data_url} failed ({type(e).__name__}: {e})") from e

        try:
            data = r.json()
        except ValueError as e:
            raise ParseError(f"failed to parse JSON appointment data from {data_url}") from e

        return parse_dashboard(data, areas=self.areas)

    async def fetch(self) -> list[Site]:
        results = await asyncio.gather(*(self.fetch_feed(url) for url in self.data_urls), return_exceptions=True)

        snapshots: list[list[Site]] = []
        errors: list[BaseException] = []
        for url, result in zip(self.data_urls, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                if not isinstance(result, (FetchError, ParseError)):
                    raise result
                logger.warning("Feed %s failed (%s: %s)", url, type(result).__name__, result)
                errors.append(result)
            else:
                snapshots.append(result)

        if not snapshots:
            raise next((e for e in errors if isinstance(e, FetchError)), errors[0])

        sites = merge_snapshots(snapshots)
        if self.shortener is not None:
            sites = [await self._shorten(site) if site.available else site for site in sites]
        return sites

    async def _shorten(self, site: Site) -> Site:
        try:
            url = await self.shortener.shorten(site.url)
            map_url = await self.shortener.shorten(maps_search_url(site.address or site.name))
        except httpx.HTTPError as e:
            logger.warning("Failed to shorten urls for site=%s (%s: %s)", site.name, type(e).__name__, e)
            return site
        return replace(site, url=url, map_url=map_url)
