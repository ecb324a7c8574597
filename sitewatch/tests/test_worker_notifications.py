from __future__ import annotations

import asyncio
import datetime as dt
import logging

import httpx
import pytest

from sitewatch.config import Settings, TwilioSettings
from sitewatch.detector import ChangeDetector, PatternFilter
from sitewatch.dispatcher import NotificationDispatcher
from sitewatch.domain import Area, BecameAvailable, BecameUnavailable, DeliveryError, FetchError, ParseError, Site
from sitewatch.notifiers import LogSink, TelegramSink, TwilioSmsSink
from sitewatch.worker import Watcher, build_sinks, build_watcher

T1 = dt.datetime(2021, 3, 1, 10, 0, tzinfo=dt.timezone.utc)


def _site(name: str = "Javits Center", *, available: bool = True) -> Site:
    return Site(
        identity=name,
        name=name,
        area=Area.MANHATTAN,
        available=available,
        url="https://example.org/schedule",
        updated_at=T1,
        appointment_summary=("Mar 2: 10:00AM",),
        appointment_count=3,
    )


class _FakeSource:
    def __init__(self, *snapshots) -> None:
        self.snapshots = list(snapshots)
        self.calls = 0

    async def fetch(self) -> list[Site]:
        self.calls += 1
        item = self.snapshots.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class _RecordingSink:
    def __init__(self, recipient: str, *, fail: bool = False) -> None:
        self.recipient = recipient
        self.fail = fail
        self.messages: list[str] = []

    async def send(self, message: str) -> None:
        self.messages.append(message)
        if self.fail:
            raise DeliveryError(self.recipient, "boom")


def _watcher(source, sinks, **kw) -> Watcher:
    return Watcher(source, ChangeDetector(**kw), NotificationDispatcher(sinks), fetch_retry_attempts=1)


def test_new_site_is_sent_to_every_recipient() -> None:
    sinks = [_RecordingSink("1"), _RecordingSink("2"), _RecordingSink("3")]
    watcher = _watcher(_FakeSource([_site()]), sinks)

    outcomes = asyncio.run(watcher.check_once())

    assert len(outcomes) == 1
    assert outcomes[0].ok
    assert isinstance(outcomes[0].event, BecameAvailable)
    for sink in sinks:
        assert sink.messages == ["\n".join(outcomes[0].event.lines)]


def test_partial_failure_is_reported_and_cycle_continues() -> None:
    sinks = [_RecordingSink("1"), _RecordingSink("2", fail=True), _RecordingSink("3")]
    watcher = _watcher(_FakeSource([_site("A"), _site("B")]), sinks)

    outcomes = asyncio.run(watcher.check_once())

    assert len(outcomes) == 2
    assert all(o.failed_recipients == ("2",) for o in outcomes)
    assert all(len(s.messages) == 2 for s in sinks)


def test_events_are_dispatched_in_detector_order() -> None:
    sink = _RecordingSink("1")
    watcher = _watcher(_FakeSource([_site("A")], [_site("A", available=False), _site("B")]), [sink])

    asyncio.run(watcher.check_once())
    outcomes = asyncio.run(watcher.check_once())

    assert [type(o.event) for o in outcomes] == [BecameUnavailable, BecameAvailable]
    assert sink.messages[1] == "Manhattan: A appts no longer available"


def test_filtered_sites_are_not_sent() -> None:
    sink = _RecordingSink("1")
    watcher = _watcher(_FakeSource([_site("Javits Center"), _site("Aqueduct")]), [sink], site_filter=PatternFilter("Aqueduct"))

    outcomes = asyncio.run(watcher.check_once())

    assert [o.event.site.name for o in outcomes] == ["Aqueduct"]
    assert watcher.detector.store.currently_available == {"Javits Center", "Aqueduct"}


def test_available_event_is_logged_boxed(caplog: pytest.LogCaptureFixture) -> None:
    watcher = _watcher(_FakeSource([_site()]), [])

    with caplog.at_level(logging.INFO, logger="sitewatch.worker"):
        asyncio.run(watcher.check_once())

    messages = [r.getMessage() for r in caplog.records]
    assert " BEGIN " in messages[0]
    assert " END " in messages[-1]
    assert "Site: Javits Center" in messages


class _ScriptedDetector:
    def __init__(self, events) -> None:
        self.events = events

    def detect(self, snapshot):
        yield from self.events


def test_event_with_empty_body_is_skipped(caplog: pytest.LogCaptureFixture) -> None:
    sink = _RecordingSink("1")
    empty = BecameAvailable(site=_site("Empty"), lines=())
    good = BecameAvailable(site=_site("Javits Center"), lines=("Site: Javits Center",))
    watcher = Watcher(_FakeSource([]), _ScriptedDetector([empty, good]), NotificationDispatcher([sink]))

    with caplog.at_level(logging.ERROR, logger="sitewatch.worker"):
        outcomes = asyncio.run(watcher.check_once())

    assert [o.event for o in outcomes] == [good]
    assert sink.messages == ["Site: Javits Center"]
    assert "Skipping event for site=Empty" in caplog.text


def test_long_message_is_compacted() -> None:
    sink = _RecordingSink("1")
    watcher = Watcher(
        _FakeSource([_site()]),
        ChangeDetector(),
        NotificationDispatcher([sink]),
        message_limit=40,
    )

    asyncio.run(watcher.check_once())

    (message,) = sink.messages
    assert len(message) == 40
    assert "\n" not in message


def test_fetch_error_is_retried() -> None:
    source = _FakeSource(FetchError("down"), [_site()])
    sink = _RecordingSink("1")
    watcher = Watcher(source, ChangeDetector(), NotificationDispatcher([sink]), fetch_retry_attempts=2)

    outcomes = asyncio.run(watcher.check_once())

    assert source.calls == 2
    assert len(outcomes) == 1


def test_parse_error_is_not_retried() -> None:
    source = _FakeSource(ParseError("bad"), [_site()])
    watcher = Watcher(source, ChangeDetector(), NotificationDispatcher([]), fetch_retry_attempts=3)

    with pytest.raises(ParseError):
        asyncio.run(watcher.check_once())
    assert source.calls == 1


def test_run_forever_survives_failed_cycle_and_stops() -> None:
    sink = _RecordingSink("1")
    source = _FakeSource(FetchError("down"), [_site()], [_site()])
    watcher = _watcher(source, [sink])

    async def _run() -> None:
        stop = asyncio.Event()
        original_fetch = source.fetch

        async def fetch() -> list[Site]:
            result = await original_fetch()
            if not source.snapshots:
                stop.set()
            return result

        source.fetch = fetch
        await asyncio.wait_for(watcher.run_forever(stop, interval_seconds=0.01), timeout=5)

    asyncio.run(_run())

    assert source.calls == 3
    assert len(sink.messages) == 1


def test_run_forever_returns_immediately_when_already_stopped() -> None:
    source = _FakeSource()
    watcher = _watcher(source, [])

    async def _run() -> None:
        stop = asyncio.Event()
        stop.set()
        await watcher.run_forever(stop, interval_seconds=60)

    asyncio.run(_run())
    assert source.calls == 0


def _settings(**kw) -> Settings:
    return Settings(**kw)


def test_build_sinks_from_settings() -> None:
    settings = _settings(
        telegram_bot_token="TEST_TOKEN",
        telegram_chat_ids=("1", "2"),
        twilio=TwilioSettings(account_sid="AC1", auth_token="t", sms_from="+1", sms_to=("+2", "+3")),
    )

    async def _run():
        async with httpx.AsyncClient() as client:
            return build_sinks(settings, client)

    sinks = asyncio.run(_run())

    assert [type(s) for s in sinks] == [TelegramSink, TelegramSink, TwilioSmsSink, TwilioSmsSink]
    assert [s.recipient for s in sinks] == ["telegram:1", "telegram:2", "sms:+2", "sms:+3"]


def test_build_watcher_without_recipients_logs_only() -> None:
    async def _run():
        async with httpx.AsyncClient() as client:
            return build_watcher(_settings(site_filter="Javits", max_concurrent_deliveries=2), client)

    watcher = asyncio.run(_run())

    assert [type(s) for s in watcher.dispatcher.sinks] == [LogSink]
    assert watcher.dispatcher.max_concurrency == 2
    assert watcher.detector.site_filter.matches("Javits Center")
