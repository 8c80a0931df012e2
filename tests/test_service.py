from __future__ import annotations

import asyncio

import pytest

from omnitrack.core.config import SessionSettings
from omnitrack.core.errors import AuditWriteError, ScenarioValidationError
from omnitrack.orchestration.enums import FailureReason
from omnitrack.orchestration.service import LookupStatus, ScenarioService
from omnitrack.schemas.agents import AgentKind
from tests.helpers.stubs import FlakyAuditStore, StubAgent, build_coordinator, stub_agents

PAYLOAD = {
    "disruption_type": "supplier_failure",
    "location": "Shenzhen",
    "severity": "medium",
    "duration_days": 14,
    "affected_node_ids": ["plant-1", "dc-2"],
    "preference_weights": {"cost": 0.4, "time": 0.2, "risk": 0.3, "sustainability": 0.1},
}


@pytest.mark.asyncio
async def test_concurrent_identical_submissions_share_one_session() -> None:
    strategy = StubAgent(AgentKind.STRATEGY, delay=0.01)
    service = ScenarioService(build_coordinator(stub_agents(strategy=strategy)))

    ids = await asyncio.gather(*(service.submit_scenario(dict(PAYLOAD)) for _ in range(5)))
    results = await asyncio.gather(*(service.wait_for_result(scenario_id) for scenario_id in ids))

    assert len(set(ids)) == 1
    assert len(strategy.calls) == 1
    assert all(result == results[0] for result in results)


@pytest.mark.asyncio
async def test_explicit_idempotency_key_separates_sessions() -> None:
    service = ScenarioService(build_coordinator(stub_agents()))

    first = await service.submit_scenario(PAYLOAD, idempotency_key="a")
    second = await service.submit_scenario(PAYLOAD, idempotency_key="b")
    repeat = await service.submit_scenario(PAYLOAD, idempotency_key="a")

    assert first != second
    assert repeat == first
    await service.close()


@pytest.mark.asyncio
async def test_invalid_request_is_rejected_without_a_session() -> None:
    service = ScenarioService(build_coordinator(stub_agents()))
    bad = dict(PAYLOAD, preference_weights={"cost": 0.9, "time": 0.9, "risk": 0.0, "sustainability": 0.0})

    with pytest.raises(ScenarioValidationError) as exc_info:
        await service.submit_scenario(bad)

    assert exc_info.value.errors
    assert service.active_sessions == 0


@pytest.mark.asyncio
async def test_lookup_reports_pending_then_completed() -> None:
    strategy = StubAgent(AgentKind.STRATEGY, delay=0.05)
    service = ScenarioService(build_coordinator(stub_agents(strategy=strategy)))

    scenario_id = await service.submit_scenario(PAYLOAD)
    pending = service.get_negotiation_result(scenario_id)
    await service.wait_for_result(scenario_id)
    completed = service.get_negotiation_result(scenario_id)

    assert pending.status == LookupStatus.PENDING
    assert completed.status == LookupStatus.COMPLETED
    assert completed.result is not None
    assert completed.result.scenario_id == scenario_id
    assert service.get_negotiation_result("unknown").status == LookupStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_audit_failure_surfaces_to_waiters() -> None:
    service = ScenarioService(build_coordinator(stub_agents(), audit_store=FlakyAuditStore(failures=10)))

    scenario_id = await service.submit_scenario(PAYLOAD)
    with pytest.raises(AuditWriteError):
        await service.wait_for_result(scenario_id)

    lookup = service.get_negotiation_result(scenario_id)
    assert lookup.status == LookupStatus.FAILED
    assert lookup.failure_reason == FailureReason.AUDIT_WRITE_FAILURE


@pytest.mark.asyncio
async def test_cancel_marks_session_failed() -> None:
    hanging = StubAgent(AgentKind.INFO, hang=True)
    service = ScenarioService(build_coordinator(stub_agents(info=hanging)))

    scenario_id = await service.submit_scenario(PAYLOAD)
    while not hanging.calls:
        await asyncio.sleep(0)

    assert await service.cancel(scenario_id)
    lookup = service.get_negotiation_result(scenario_id)
    assert lookup.status == LookupStatus.FAILED
    assert lookup.failure_reason == FailureReason.CANCELLED


@pytest.mark.asyncio
async def test_cancel_before_dispatch_fails_session_and_releases_key() -> None:
    now = [0.0]
    service = ScenarioService(
        build_coordinator(stub_agents()),
        settings=SessionSettings(retention_seconds=10),
        clock=lambda: now[0],
    )

    scenario_id = await service.submit_scenario(PAYLOAD)
    assert await service.cancel(scenario_id)

    lookup = service.get_negotiation_result(scenario_id)
    assert lookup.status == LookupStatus.FAILED
    assert lookup.failure_reason == FailureReason.CANCELLED
    assert service.active_sessions == 0

    now[0] = 11.0
    retry = await service.submit_scenario(PAYLOAD)
    assert retry != scenario_id
    result = await service.wait_for_result(retry)
    assert result.scenario_id == retry


@pytest.mark.asyncio
async def test_close_fails_sessions_that_never_started() -> None:
    service = ScenarioService(build_coordinator(stub_agents()))

    scenario_id = await service.submit_scenario(PAYLOAD)
    await service.close()

    lookup = service.get_negotiation_result(scenario_id)
    assert lookup.status == LookupStatus.FAILED
    assert lookup.failure_reason == FailureReason.CANCELLED


@pytest.mark.asyncio
async def test_finished_sessions_expire_after_retention() -> None:
    now = [0.0]
    service = ScenarioService(
        build_coordinator(stub_agents()),
        settings=SessionSettings(retention_seconds=10),
        clock=lambda: now[0],
    )

    first = await service.submit_scenario(PAYLOAD)
    await service.wait_for_result(first)
    now[0] = 11.0
    second = await service.submit_scenario(PAYLOAD)

    assert second != first
    assert service.get_negotiation_result(first).status == LookupStatus.NOT_FOUND
    await service.wait_for_result(second)
