from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from sitewatch.domain import DispatchOutcome, NotificationEvent
from sitewatch.notifiers import NotificationSink

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Delivers one message to every sink at once.

    One attempt per sink and no retry. A failing sink never stops the others;
    failures are collected into the returned DispatchOutcome. Cancelling the
    caller cancels every in-flight delivery.
    """

    def __init__(self, sinks: Sequence[NotificationSink], *, max_concurrency: int | None = None) -> None:
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.sinks = tuple(sinks)
        self.max_concurrency = max_concurrency

    async def _deliver(self, sink: NotificationSink, message: str, semaphore: asyncio.Semaphore | None) -> None:
        if semaphore is None:
            await sink.send(message)
            return
        async with semaphore:
            await sink.send(message)

    async def dispatch(self, event: NotificationEvent, message: str) -> DispatchOutcome:
        if not self.sinks:
            return DispatchOutcome(event=event)

        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None
        results = await asyncio.gather(
            *(self._deliver(sink, message, semaphore) for sink in self.sinks),
            return_exceptions=True,
        )

        delivered: list[str] = []
        failed: list[tuple[str, BaseException]] = []
        for sink, result in zip(self.sinks, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                # Best-effort: don't stop sending to other recipients.
                logger.warning("Failed to deliver message to %s (%s: %s)", sink.recipient, type(result).__name__, result)
                failed.append((sink.recipient, result))
            else:
                delivered.append(sink.recipient)

        if failed:
            logger.warning("Delivered to %d of %d recipients", len(delivered), len(self.sinks))
        return DispatchOutcome(event=event, delivered=tuple(delivered), failed=tuple(failed))
