from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from ..agents.base import BaseAgent
from ..core.config import SupervisorSettings
from ..core.errors import (
    AgentInputError,
    AgentUnavailableError,
    InvalidAgentOutputError,
    TransientAgentError,
)
from ..core.logging import get_logger
from ..core.metrics import increment_agent_unavailable, observe_agent_latency, record_agent_attempt
from ..schemas.agents import AGENT_RESULT_ADAPTER, AgentKind, AgentResult, ScenarioInput

logger = get_logger(name=__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientAgentError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TransportError,
)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TRANSIENT_ERRORS)


class wait_jittered_exponential(wait_base):
    """base * multiplier**(attempt - 1), scaled by a uniform factor in [1 - jitter, 1 + jitter]."""

    def __init__(
        self,
        *,
        base: float,
        multiplier: float = 2.0,
        jitter: float = 0.2,
        rng: random.Random | None = None,
    ) -> None:
        self.base = base
        self.multiplier = multiplier
        self.jitter = jitter
        self._rng = rng or random.Random()

    def __call__(self, retry_state: RetryCallState) -> float:
        exponent = max(0, retry_state.attempt_number - 1)
        delay = self.base * (self.multiplier**exponent)
        return max(0.0, delay * self._rng.uniform(1.0 - self.jitter, 1.0 + self.jitter))


@dataclass(slots=True)
class RetryPolicy:
    timeout_seconds: float
    max_attempts: int
    base_backoff_seconds: float
    backoff_multiplier: float
    jitter_ratio: float

    @classmethod
    def from_settings(cls, settings: SupervisorSettings, *, agent_kind: str) -> "RetryPolicy":
        return cls(
            timeout_seconds=settings.timeout_for(agent_kind),
            max_attempts=settings.max_attempts,
            base_backoff_seconds=settings.base_backoff_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            jitter_ratio=settings.jitter_ratio,
        )


class AgentSupervisor:
    """Runs one agent call under a timeout with bounded retries for transient failures.

    The timeout covers the whole supervised invocation, retries and backoff
    sleeps included, so a stage never outlives a single agent timeout.
    """

    def __init__(
        self,
        settings: SupervisorSettings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings or SupervisorSettings()
        self._sleep = sleep
        self._rng = rng

    def policy_for(self, agent: BaseAgent) -> RetryPolicy:
        return RetryPolicy.from_settings(self._settings, agent_kind=AgentKind(agent.kind).value)

    def timeout_for(self, kind: AgentKind) -> float:
        return self._settings.timeout_for(kind.value)

    async def invoke(self, agent: BaseAgent, scenario_input: ScenarioInput) -> AgentResult:
        policy = self.policy_for(agent)
        attempts = _AttemptCounter()
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(
                self._run_attempts(agent, scenario_input, policy, attempts),
                timeout=policy.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "agent_attempt",
                scenario_id=scenario_input.scenario_id,
                agent_id=agent.agent_id,
                attempt=attempts.value,
                outcome="timeout",
                timeout_seconds=policy.timeout_seconds,
            )
            record_agent_attempt(agent=agent.agent_id, outcome="timeout")
            raise self._unavailable(agent, scenario_input, "timeout", attempts.value, None) from exc
        except AgentUnavailableError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = _classify_terminal(exc)
            raise self._unavailable(agent, scenario_input, reason, attempts.value, str(exc)) from exc
        finally:
            observe_agent_latency(agent=agent.agent_id, latency=time.perf_counter() - started)

    async def _run_attempts(
        self,
        agent: BaseAgent,
        scenario_input: ScenarioInput,
        policy: RetryPolicy,
        attempts: "_AttemptCounter",
    ) -> AgentResult:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_jittered_exponential(
                base=policy.base_backoff_seconds,
                multiplier=policy.backoff_multiplier,
                jitter=policy.jitter_ratio,
                rng=self._rng,
            ),
            retry=retry_if_exception(is_transient),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts.value = attempt.retry_state.attempt_number
                    try:
                        result = self._validate(agent, await agent.analyze(scenario_input))
                    except Exception as exc:
                        transient = is_transient(exc)
                        logger.warning(
                            "agent_attempt",
                            scenario_id=scenario_input.scenario_id,
                            agent_id=agent.agent_id,
                            attempt=attempts.value,
                            outcome="transient_error" if transient else "error",
                            will_retry=transient and attempts.value < policy.max_attempts,
                            error=str(exc),
                        )
                        record_agent_attempt(agent=agent.agent_id, outcome="transient_error" if transient else "error")
                        raise
                    logger.info(
                        "agent_attempt",
                        scenario_id=scenario_input.scenario_id,
                        agent_id=agent.agent_id,
                        attempt=attempts.value,
                        outcome="success",
                    )
                    record_agent_attempt(agent=agent.agent_id, outcome="success")
                    return result
        except (TimeoutError, asyncio.TimeoutError) as exc:
            # raised by the agent itself, not by the supervisor deadline
            raise self._unavailable(agent, scenario_input, "retries_exhausted", attempts.value, str(exc)) from exc
        raise AgentUnavailableError(agent.agent_id, reason="retries_exhausted", attempts=attempts.value)

    @staticmethod
    def _validate(agent: BaseAgent, result: object) -> AgentResult:
        try:
            validated = AGENT_RESULT_ADAPTER.validate_python(result)
        except ValueError as exc:
            raise InvalidAgentOutputError(f"agent {agent.agent_id} returned an invalid result: {exc}") from exc
        if validated.kind != AgentKind(agent.kind).value:
            raise InvalidAgentOutputError(
                f"agent {agent.agent_id} of kind {AgentKind(agent.kind).value} returned a {validated.kind} result"
            )
        if validated.agent_id != agent.agent_id:
            raise InvalidAgentOutputError(
                f"agent {agent.agent_id} returned a result attributed to {validated.agent_id}"
            )
        return validated

    @staticmethod
    def _unavailable(
        agent: BaseAgent,
        scenario_input: ScenarioInput,
        reason: str,
        attempts: int,
        detail: str | None,
    ) -> AgentUnavailableError:
        logger.error(
            "agent_unavailable",
            scenario_id=scenario_input.scenario_id,
            agent_id=agent.agent_id,
            reason=reason,
            attempts=attempts,
            error=detail,
        )
        increment_agent_unavailable(agent=agent.agent_id, reason=reason)
        return AgentUnavailableError(agent.agent_id, reason=reason, attempts=attempts, detail=detail)


@dataclass(slots=True)
class _AttemptCounter:
    value: int = 0


def _classify_terminal(exc: BaseException) -> str:
    if is_transient(exc):
        return "retries_exhausted"
    if isinstance(exc, AgentInputError):
        return "invalid_input"
    if isinstance(exc, InvalidAgentOutputError):
        return "invalid_output"
    return "agent_error"
