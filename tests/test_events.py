from __future__ import annotations

import asyncio

import httpx
import pytest

from omnitrack.core.config import EventSettings
from omnitrack.orchestration.enums import FailureReason, SessionState
from omnitrack.orchestration.events import SessionEventBus, SessionStateChanged


def _event(new_state: SessionState = SessionState.FAILED) -> SessionStateChanged:
    return SessionStateChanged(
        scenario_id="s-1",
        old_state=SessionState.RUNNING,
        new_state=new_state,
        reason=FailureReason.TIMEOUT if new_state == SessionState.FAILED else None,
    )


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others() -> None:
    received: list[SessionStateChanged] = []

    async def broken(event: SessionStateChanged) -> None:
        raise RuntimeError("subscriber crashed")

    async def healthy(event: SessionStateChanged) -> None:
        received.append(event)

    bus = SessionEventBus()
    bus.subscribe(broken)
    bus.subscribe(healthy)

    await bus.publish(_event())

    assert len(received) == 1


@pytest.mark.asyncio
async def test_emit_returns_before_delivery_and_keeps_order() -> None:
    received: list[SessionState] = []
    gate = asyncio.Event()

    async def gated(event: SessionStateChanged) -> None:
        await gate.wait()
        received.append(event.new_state)

    bus = SessionEventBus()
    bus.subscribe(gated)

    bus.emit(_event(SessionState.RUNNING))
    bus.emit(_event(SessionState.FAILED))
    await asyncio.sleep(0)
    assert received == []

    gate.set()
    await bus.join()
    assert received == [SessionState.RUNNING, SessionState.FAILED]
    await bus.aclose()


@pytest.mark.asyncio
async def test_full_queue_drops_events() -> None:
    received: list[SessionStateChanged] = []

    async def subscriber(event: SessionStateChanged) -> None:
        received.append(event)

    bus = SessionEventBus(EventSettings(queue_size=1))
    bus.subscribe(subscriber)

    for _ in range(3):
        bus.emit(_event())
    await bus.aclose()

    assert len(received) == 1


@pytest.mark.asyncio
async def test_disabled_bus_skips_delivery() -> None:
    received: list[SessionStateChanged] = []

    async def subscriber(event: SessionStateChanged) -> None:
        received.append(event)

    bus = SessionEventBus(EventSettings(enabled=False))
    bus.subscribe(subscriber)

    await bus.publish(_event())

    assert received == []


@pytest.mark.asyncio
async def test_webhook_failure_is_logged_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    posted: list[dict] = []

    class _FailingClient:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def __aenter__(self) -> "_FailingClient":
            return self

        async def __aexit__(self, *exc_info) -> None:
            return None

        async def post(self, url, content, headers):  # noqa: ARG002
            posted.append({"url": url, "content": content})
            raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(httpx, "AsyncClient", _FailingClient)
    bus = SessionEventBus(EventSettings(webhook_url="https://hooks.example.com/omnitrack"))

    await bus.publish(_event())

    assert len(posted) == 1
    assert '"reason": "timeout"' in posted[0]["content"]


def test_payload_carries_transition() -> None:
    payload = _event().to_payload()

    assert payload["event"] == "session.state_changed"
    assert payload["old_state"] == "running"
    assert payload["new_state"] == "failed"
    assert payload["reason"] == "timeout"
