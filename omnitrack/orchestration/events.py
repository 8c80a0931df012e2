from __future__ import annotations

import asyncio
import json
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from ..core.config import EventSettings
from ..core.logging import get_logger
from .enums import FailureReason, SessionState

logger = get_logger(name=__name__)


@dataclass(slots=True, frozen=True)
class SessionStateChanged:
    scenario_id: str
    old_state: SessionState
    new_state: SessionState
    reason: FailureReason | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event": "session.state_changed",
            "scenario_id": self.scenario_id,
            "old_state": self.old_state.value,
            "new_state": self.new_state.value,
            "occurred_at": self.occurred_at.isoformat(),
        }
        if self.reason is not None:
            payload["reason"] = self.reason.value
        return payload


Subscriber = Callable[[SessionStateChanged], Awaitable[None]]


class SessionEventBus:
    """Fan-out of session state changes to in-process subscribers and a webhook.

    Publishers call ``emit``, which only enqueues; a background task delivers
    events in order. Delivery failures are logged and never reach the
    publisher. A full queue drops the event with a warning.
    """

    def __init__(self, settings: EventSettings | None = None) -> None:
        self._settings = settings or EventSettings()
        self._subscribers: list[Subscriber] = []
        self._webhook_url = str(self._settings.webhook_url) if self._settings.webhook_url else None
        self._http_timeout = self._settings.timeout_seconds
        self._queue: asyncio.Queue[SessionStateChanged] | None = None
        self._worker: asyncio.Task[None] | None = None

    def subscribe(self, subscriber: Subscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def emit(self, event: SessionStateChanged) -> None:
        if not self._settings.enabled:
            return
        if not self._subscribers and not self._webhook_url:
            return
        queue = self._ensure_worker()
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "session_event_dropped",
                scenario_id=event.scenario_id,
                new_state=event.new_state.value,
                queue_size=self._settings.queue_size,
            )

    async def join(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._queue is not None:
            await self._queue.join()

    async def aclose(self) -> None:
        worker, queue = self._worker, self._queue
        self._worker = None
        self._queue = None
        if worker is None or queue is None:
            return
        if not worker.done():
            try:
                await asyncio.wait_for(queue.join(), timeout=self._http_timeout)
            except asyncio.TimeoutError:
                logger.warning("session_events_undelivered", pending=queue.qsize())
        worker.cancel()
        with suppress(asyncio.CancelledError):
            await worker

    async def publish(self, event: SessionStateChanged) -> None:
        """Deliver one event to every subscriber and the webhook, waiting for all of them."""
        if not self._settings.enabled:
            return

        tasks: list[Awaitable[None]] = [self._safe_invoke(subscriber, event) for subscriber in list(self._subscribers)]
        if self._webhook_url:
            tasks.append(self._post_webhook(event.to_payload()))
        if not tasks:
            return

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("session_event_delivery_failed", scenario_id=event.scenario_id, error=str(result))

    def _ensure_worker(self) -> asyncio.Queue[SessionStateChanged]:
        loop = asyncio.get_running_loop()
        worker = self._worker
        if self._queue is None or worker is None or worker.done() or worker.get_loop() is not loop:
            self._queue = asyncio.Queue(maxsize=self._settings.queue_size)
            self._worker = loop.create_task(self._drain(self._queue), name="omnitrack-session-events")
        return self._queue

    async def _drain(self, queue: asyncio.Queue[SessionStateChanged]) -> None:
        while True:
            event = await queue.get()
            try:
                await self.publish(event)
            except Exception as exc:
                logger.warning("session_event_delivery_failed", scenario_id=event.scenario_id, error=str(exc))
            finally:
                queue.task_done()

    async def _safe_invoke(self, subscriber: Subscriber, event: SessionStateChanged) -> None:
        try:
            await subscriber(event)
        except Exception as exc:
            logger.warning(
                "session_subscriber_failed",
                subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                scenario_id=event.scenario_id,
                error=str(exc),
            )

    async def _post_webhook(self, payload: dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout) as client:
                response = await client.post(
                    self._webhook_url,
                    content=json.dumps(payload),
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("session_webhook_failed", url=self._webhook_url, error=str(exc))


async def log_state_change(event: SessionStateChanged) -> None:
    payload = event.to_payload()
    payload.pop("event", None)
    logger.info("session_state_changed", **payload)
