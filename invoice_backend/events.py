"""Contract event subscriptions and the sink they deliver into."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .models import InvoiceCreatedEvent, InvoiceTradedEvent

LOGGER = logging.getLogger("invoice-backend.events")

SUBSCRIBED = "subscribed"
DELIVERING = "delivering"
FAILED = "failed"


class DomainEventSink(Protocol):
    async def on_invoice_created(self, event: InvoiceCreatedEvent) -> None: ...

    async def on_invoice_traded(self, event: InvoiceTradedEvent) -> None: ...


class LogSource(Protocol):
    async def latest_block(self) -> int: ...

    async def fetch_events(self, event_name: str, from_block: int, to_block: int) -> List[Dict[str, Any]]: ...


class EventCursor(Protocol):
    def load_cursor(self, event_name: str) -> Optional[int]: ...

    def save_cursor(self, event_name: str, last_block: int) -> None: ...


LogHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class EventSubscription:
    """Polls one contract event and dispatches every log to a handler.

    A failing handler is logged and counted; the subscription keeps polling.
    With a ``cursor`` the processed block is persisted after every poll and
    polling resumes from the later of the stored block and ``start_block``.
    """

    def __init__(
        self,
        *,
        source: LogSource,
        event_name: str,
        handler: LogHandler,
        interval: float = 15.0,
        start_block: Optional[int] = None,
        cursor: Optional[EventCursor] = None,
    ) -> None:
        self.source = source
        self.event_name = event_name
        self.handler = handler
        self.interval = interval
        self.cursor = cursor
        self.state = SUBSCRIBED
        self.delivered = 0
        self.failures = 0
        self.last_error: Optional[str] = None
        stored = cursor.load_cursor(event_name) if cursor is not None else None
        configured = None if start_block is None else start_block - 1
        known = [block for block in (stored, configured) if block is not None]
        self._last_block: Optional[int] = max(known) if known else None
        if stored is not None:
            LOGGER.info("Event subscription %s resuming after block %s", event_name, self._last_block)
        self._task: Optional[asyncio.Task] = None

    @property
    def last_block(self) -> Optional[int]:
        return self._last_block

    async def poll_once(self) -> int:
        latest = await self.source.latest_block()
        if self._last_block is None:
            self._advance(latest)
            return 0
        if latest <= self._last_block:
            return 0
        logs = await self.source.fetch_events(self.event_name, self._last_block + 1, latest)
        for log in logs:
            await self._deliver(log)
        # Persisted after delivery; a crash before this point replays the batch.
        self._advance(latest)
        return len(logs)

    def _advance(self, block: int) -> None:
        self._last_block = block
        if self.cursor is not None:
            self.cursor.save_cursor(self.event_name, block)

    async def _deliver(self, log: Dict[str, Any]) -> None:
        self.state = DELIVERING
        try:
            await self.handler(log)
        except Exception as exc:
            self.failures += 1
            self.last_error = str(exc)
            self.state = FAILED
            LOGGER.exception("Event handler %s failed: %s", self.event_name, exc)
            return
        self.delivered += 1
        self.state = SUBSCRIBED

    async def run(self) -> None:  # pragma: no cover - background loop
        LOGGER.info("Event subscription %s started", self.event_name)
        try:
            while True:
                try:
                    await self.poll_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self.last_error = str(exc)
                    LOGGER.error("Event subscription %s error: %s", self.event_name, exc)
                await asyncio.sleep(self.interval)
        finally:
            LOGGER.info("Event subscription %s stopped", self.event_name)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run(), name=f"events-{self.event_name}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def snapshot(self) -> Dict[str, Any]:
        return {
            "event": self.event_name,
            "state": self.state,
            "lastBlock": self._last_block,
            "delivered": self.delivered,
            "failures": self.failures,
            "lastError": self.last_error,
        }


__all__ = [
    "DELIVERING",
    "DomainEventSink",
    "EventCursor",
    "EventSubscription",
    "FAILED",
    "LogSource",
    "SUBSCRIBED",
]
