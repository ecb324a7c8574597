from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Protocol

import httpx
from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from sitewatch import formatter
from sitewatch.config import Settings
from sitewatch.dashboard import DashboardSource, IsGdShortener
from sitewatch.detector import ChangeDetector, PatternFilter
from sitewatch.dispatcher import NotificationDispatcher
from sitewatch.domain import BecameAvailable, DispatchOutcome, EmptyMessageBody, FetchError, NotificationEvent, Site
from sitewatch.notifiers import LogSink, NotificationSink, TelegramSink, TwilioSmsSink

logger = logging.getLogger(__name__)


class DataSource(Protocol):
    async def fetch(self) -> list[Site]: ...


def _short_exc(retry_state: RetryCallState) -> str | None:
    if retry_state.outcome is None or not retry_state.outcome.failed:
        return None
    exc = retry_state.outcome.exception()
    if exc is None:
        return None
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


def _log_after_attempt(retry_state: RetryCallState) -> None:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        reason = _short_exc(retry_state)
        logger.warning("Fetch attempt %s failed (%s)", retry_state.attempt_number, reason or "unknown error")


def _log_before_sleep(retry_state: RetryCallState) -> None:
    sleep_seconds = getattr(retry_state.next_action, "sleep", None)
    if sleep_seconds is None:
        logger.info("Retrying fetch, attempt %s", retry_state.attempt_number + 1)
        return
    logger.info("Retrying fetch in %.1fs, attempt %s", sleep_seconds, retry_state.attempt_number + 1)


def build_sinks(settings: Settings, client: httpx.AsyncClient) -> list[NotificationSink]:
    sinks: list[NotificationSink] = []

    if settings.telegram_bot_token:
        for chat_id in settings.telegram_chat_ids:
            sinks.append(TelegramSink(client, bot_token=settings.telegram_bot_token, chat_id=chat_id))

    if settings.twilio is not None:
        for sms_to in settings.twilio.sms_to:
            sinks.append(
                TwilioSmsSink(
                    client,
                    account_sid=settings.twilio.account_sid,
                    auth_token=settings.twilio.auth_token,
                    sms_from=settings.twilio.sms_from,
                    sms_to=sms_to,
                )
            )

    return sinks


class Watcher:
    """Runs the detector over each snapshot and dispatches what it finds."""

    def __init__(
        self,
        source: DataSource,
        detector: ChangeDetector,
        dispatcher: NotificationDispatcher,
        *,
        fetch_retry_attempts: int = 1,
        message_limit: int = formatter.DEFAULT_COMPACT_LIMIT,
    ) -> None:
        self.source = source
        self.detector = detector
        self.dispatcher = dispatcher
        self.fetch_retry_attempts = fetch_retry_attempts
        self.message_limit = message_limit

    async def fetch(self) -> list[Site]:
        decorated = retry(
            stop=stop_after_attempt(self.fetch_retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=4),
            retry=retry_if_exception_type(FetchError),
            after=_log_after_attempt,
            before_sleep=_log_before_sleep,
            reraise=True,
        )(self.source.fetch)

        return await decorated()

    def render(self, event: NotificationEvent) -> str:
        message = formatter.text(event)
        if len(message) > self.message_limit:
            return formatter.compact(event, limit=self.message_limit)
        return message

    def _log_event(self, event: NotificationEvent) -> None:
        if isinstance(event, BecameAvailable):
            for line in formatter.boxed(event.lines):
                logger.info(line)
        else:
            logger.warning(event.summary_line)

    async def process(self, snapshot: Iterable[Site]) -> list[DispatchOutcome]:
        outcomes: list[DispatchOutcome] = []
        for event in self.detector.detect(snapshot):
            try:
                self._log_event(event)
            except EmptyMessageBody as e:
                logger.error("Skipping event for site=%s (%s)", event.site.name, e)
                continue

            outcomes.append(await self.dispatcher.dispatch(event, self.render(event)))
        return outcomes

    async def check_once(self) -> list[DispatchOutcome]:
        snapshot = await self.fetch()
        logger.debug("Fetched %d sites", len(snapshot))
        return await self.process(snapshot)

    async def run_forever(self, stop: asyncio.Event, interval_seconds: float) -> None:
        logger.info("Watcher started. Interval=%ss", interval_seconds)
        while not stop.is_set():
            try:
                outcomes = await self.check_once()
            except Exception as e:
                logger.error("Check failed (%s: %s)", type(e).__name__, e)
            else:
                failed = sum(1 for o in outcomes if not o.ok)
                if failed:
                    logger.warning("%d of %d notifications had failed deliveries", failed, len(outcomes))

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Watcher stopped.")


def build_watcher(settings: Settings, client: httpx.AsyncClient) -> Watcher:
    source = DashboardSource(
        client,
        data_urls=settings.data_urls,
        areas=settings.areas,
        shortener=IsGdShortener(client) if settings.shorten_urls else None,
    )
    detector = ChangeDetector(site_filter=PatternFilter(settings.site_filter) if settings.site_filter else None)

    sinks = build_sinks(settings, client)
    if not sinks:
        logger.info("No recipients configured, notifications go to the log only")
        sinks = [LogSink(level=logging.DEBUG)]

    dispatcher = NotificationDispatcher(sinks, max_concurrency=settings.max_concurrent_deliveries)
    return Watcher(source, detector, dispatcher, fetch_retry_attempts=settings.fetch_retry_attempts)
