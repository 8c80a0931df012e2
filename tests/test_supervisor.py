from __future__ import annotations

import random

import pytest

from omnitrack.core.config import SupervisorSettings
from omnitrack.core.errors import AgentInputError, AgentUnavailableError, TransientAgentError
from omnitrack.orchestration.supervisor import AgentSupervisor, RetryPolicy
from omnitrack.schemas.agents import AgentKind, ScenarioInput
from tests.helpers.stubs import RecordingSleep, StubAgent, info_result, make_request, scenario_result


def _input() -> ScenarioInput:
    return ScenarioInput(scenario_id="s-1", request=make_request())


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_jittered_backoff() -> None:
    sleep = RecordingSleep()
    supervisor = AgentSupervisor(SupervisorSettings(), sleep=sleep, rng=random.Random(7))
    agent = StubAgent(
        AgentKind.INFO,
        errors=[TransientAgentError("connection reset"), ConnectionError("refused")],
    )

    result = await supervisor.invoke(agent, _input())

    assert result.kind == "info"
    assert len(agent.calls) == 3
    assert len(sleep.delays) == 2
    assert 1.6 <= sleep.delays[0] <= 2.4
    assert 3.2 <= sleep.delays[1] <= 4.8


@pytest.mark.asyncio
async def test_retries_stop_after_three_attempts() -> None:
    sleep = RecordingSleep()
    supervisor = AgentSupervisor(SupervisorSettings(), sleep=sleep)
    agent = StubAgent(AgentKind.SCENARIO, errors=[TransientAgentError("flaky")] * 5)

    with pytest.raises(AgentUnavailableError) as exc_info:
        await supervisor.invoke(agent, _input())

    assert exc_info.value.reason == "retries_exhausted"
    assert exc_info.value.attempts == 3
    assert len(agent.calls) == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_input_errors_are_not_retried() -> None:
    sleep = RecordingSleep()
    supervisor = AgentSupervisor(SupervisorSettings(), sleep=sleep)
    agent = StubAgent(AgentKind.IMPACT, errors=[AgentInputError("missing snapshot")])

    with pytest.raises(AgentUnavailableError) as exc_info:
        await supervisor.invoke(agent, _input())

    assert exc_info.value.reason == "invalid_input"
    assert len(agent.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_agent_exceeding_timeout_is_unavailable() -> None:
    settings = SupervisorSettings(agent_timeout_seconds=0.05)
    supervisor = AgentSupervisor(settings, sleep=RecordingSleep())
    agent = StubAgent(AgentKind.STRATEGY, hang=True)

    with pytest.raises(AgentUnavailableError) as exc_info:
        await supervisor.invoke(agent, _input())

    assert exc_info.value.reason == "timeout"
    assert exc_info.value.agent_id == "strategy-agent"


@pytest.mark.asyncio
async def test_result_of_wrong_kind_is_invalid_output() -> None:
    supervisor = AgentSupervisor(SupervisorSettings(), sleep=RecordingSleep())
    agent = StubAgent(AgentKind.INFO, result=scenario_result("info-agent"))

    with pytest.raises(AgentUnavailableError) as exc_info:
        await supervisor.invoke(agent, _input())

    assert exc_info.value.reason == "invalid_output"
    assert len(agent.calls) == 1


@pytest.mark.asyncio
async def test_result_attributed_to_another_agent_is_rejected() -> None:
    supervisor = AgentSupervisor(SupervisorSettings(), sleep=RecordingSleep())
    agent = StubAgent(AgentKind.INFO, result=info_result("someone-else"))

    with pytest.raises(AgentUnavailableError) as exc_info:
        await supervisor.invoke(agent, _input())

    assert exc_info.value.reason == "invalid_output"


def test_per_kind_timeout_overrides() -> None:
    settings = SupervisorSettings(agent_timeout_seconds=60, agent_timeouts={"impact": 90})
    supervisor = AgentSupervisor(settings)

    assert supervisor.timeout_for(AgentKind.IMPACT) == 90
    assert supervisor.timeout_for(AgentKind.INFO) == 60
    policy = RetryPolicy.from_settings(settings, agent_kind="impact")
    assert policy.timeout_seconds == 90
    assert policy.max_attempts == 3
