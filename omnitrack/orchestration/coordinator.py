from __future__ import annotations

import asyncio
import time
from typing import Iterable, Mapping

from ..agents.base import BaseAgent, index_agents
from ..agents.state import StateSnapshotReader
from ..core.config import StateReaderSettings
from ..core.errors import AgentUnavailableError, AuditWriteError
from ..core.logging import get_logger
from ..core.metrics import mark_session_finished, mark_session_started
from ..schemas.agents import (
    STAGE_ONE,
    STAGE_TWO,
    AgentKind,
    AgentResult,
    InfoResult,
    MissingInput,
    ScenarioInput,
    ScenarioResult,
    StrategyResult,
)
from ..schemas.negotiation import NegotiationStatus
from ..schemas.results import AgentFailureRecord
from ..schemas.scenario import ScenarioRequest
from ..schemas.state import StateSnapshot
from .enums import FailureReason, SessionState
from .events import SessionEventBus, SessionStateChanged
from .negotiation import NegotiationEngine
from .recorder import ExplainabilityRecorder
from .session import NegotiationSession
from .supervisor import AgentSupervisor

logger = get_logger(name=__name__)


class ParallelExecutionCoordinator:
    """Drives one session from dispatch to a terminal state.

    Stage one runs the Info and Scenario agents concurrently against the
    state snapshot. Stage two (Impact and Strategy) is dispatched only after
    both stage-one invocations have returned or failed, and receives either
    their results or explicit missing-input markers. The coordinator is the
    only writer of the session.
    """

    def __init__(
        self,
        *,
        agents: Iterable[BaseAgent] | Mapping[AgentKind, BaseAgent],
        supervisor: AgentSupervisor,
        state_reader: StateSnapshotReader,
        negotiation_engine: NegotiationEngine,
        recorder: ExplainabilityRecorder,
        state_reader_settings: StateReaderSettings | None = None,
        events: SessionEventBus | None = None,
    ) -> None:
        self._agents = index_agents(agents)
        self._supervisor = supervisor
        self._state_reader = state_reader
        self._engine = negotiation_engine
        self._recorder = recorder
        self._state_reader_settings = state_reader_settings or StateReaderSettings()
        self._events = events

    @property
    def stage_budget_seconds(self) -> float:
        """Upper bound on both agent stages: twice the slowest per-agent timeout."""
        return 2 * max(self._supervisor.timeout_for(kind) for kind in STAGE_ONE + STAGE_TWO)

    async def run(self, request: ScenarioRequest, *, session: NegotiationSession | None = None) -> NegotiationSession:
        """Run the session to ``Completed`` or ``Failed``.

        Raises ``AuditWriteError`` after marking the session failed when the
        decision could not be audited, and re-raises cancellation after
        marking the session failed as cancelled.
        """
        session = session or NegotiationSession.open(request)
        started = time.perf_counter()
        mark_session_started()
        try:
            await self._drive(session)
        except asyncio.CancelledError:
            self._fail(session, FailureReason.CANCELLED, "run cancelled")
            raise
        except AuditWriteError as exc:
            self._fail(session, FailureReason.AUDIT_WRITE_FAILURE, str(exc))
            raise
        except Exception as exc:
            logger.exception("session_internal_error", scenario_id=session.scenario_id, error=str(exc))
            self._fail(session, FailureReason.INTERNAL_ERROR, str(exc))
            raise
        finally:
            outcome = session.state.value
            if session.state == SessionState.COMPLETED and session.outcome is not None:
                outcome = session.outcome.status.value
            elif session.failure_reason is not None:
                outcome = f"failed_{session.failure_reason.value}"
            mark_session_finished(outcome=outcome, latency=time.perf_counter() - started)
        return session

    async def aclose(self) -> None:
        """Flush pending state-change events and stop their delivery task."""
        if self._events is not None:
            await self._events.aclose()

    async def _drive(self, session: NegotiationSession) -> None:
        self._transition(session, SessionState.RUNNING)
        try:
            await asyncio.wait_for(self._run_stages(session), timeout=self.stage_budget_seconds)
        except asyncio.TimeoutError:
            self._fail(
                session,
                FailureReason.TIMEOUT,
                f"agent stages exceeded {self.stage_budget_seconds:g}s",
            )
            return

        self._transition(session, SessionState.AGGREGATING)
        strategy = session.results.get(AgentKind.STRATEGY)
        proposals = strategy.payload.candidates if isinstance(strategy, StrategyResult) else ()

        self._transition(session, SessionState.NEGOTIATING)
        outcome = await self._engine.negotiate(
            proposals,
            session.request.weights,
            scenario_id=session.scenario_id,
        )
        session.outcome = outcome
        session.round = outcome.rounds_run
        if outcome.status == NegotiationStatus.CONVERGED:
            self._transition(session, SessionState.CONVERGED)
        else:
            self._transition(session, SessionState.ESCALATED)

        # a durable audit entry commits the decision; cancellation waits for it
        annotation = asyncio.ensure_future(self._recorder.annotate(session.view()))
        try:
            session.result = await asyncio.shield(annotation)
        except asyncio.CancelledError:
            session.result = await annotation
            self._transition(session, SessionState.COMPLETED)
            logger.warning("session_cancelled_after_commit", scenario_id=session.scenario_id)
            raise
        self._transition(session, SessionState.COMPLETED)
        logger.info(
            "session_completed",
            scenario_id=session.scenario_id,
            outcome=outcome.status.value,
            partial=session.partial,
            proposals=len(session.result.proposals),
        )

    async def _run_stages(self, session: NegotiationSession) -> None:
        snapshot = await self._read_state(session)

        if snapshot is None:
            for kind in STAGE_ONE:
                self._record(session, kind, AgentUnavailableError(self._agent_id(kind), reason="state_unavailable"))
        else:
            stage_one_input = ScenarioInput(
                scenario_id=session.scenario_id,
                request=session.request,
                snapshot=snapshot,
            )
            outcomes = await asyncio.gather(*(self._invoke(kind, stage_one_input) for kind in STAGE_ONE))
            for kind, outcome in zip(STAGE_ONE, outcomes):
                self._record(session, kind, outcome)

        # stage two starts strictly after stage one settled
        stage_two_input = ScenarioInput(
            scenario_id=session.scenario_id,
            request=session.request,
            snapshot=snapshot,
            info=self._upstream(session, AgentKind.INFO),
            scenario=self._upstream(session, AgentKind.SCENARIO),
        )
        if stage_two_input.degraded:
            logger.warning(
                "session_degraded",
                scenario_id=session.scenario_id,
                missing=[kind.value for kind in session.failures],
            )
        outcomes = await asyncio.gather(*(self._invoke(kind, stage_two_input) for kind in STAGE_TWO))
        for kind, outcome in zip(STAGE_TWO, outcomes):
            self._record(session, kind, outcome)

    async def _read_state(self, session: NegotiationSession) -> StateSnapshot | None:
        try:
            snapshot = await asyncio.wait_for(
                self._state_reader.read_state(list(session.request.affected_node_ids)),
                timeout=self._state_reader_settings.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "state_read_failed",
                scenario_id=session.scenario_id,
                error="timeout",
                timeout_seconds=self._state_reader_settings.timeout_seconds,
            )
            return None
        except Exception as exc:
            logger.warning("state_read_failed", scenario_id=session.scenario_id, error=str(exc))
            return None
        session.snapshot = snapshot
        return snapshot

    async def _invoke(self, kind: AgentKind, scenario_input: ScenarioInput) -> AgentResult | AgentUnavailableError:
        agent = self._agents.get(kind)
        if agent is None:
            return AgentUnavailableError(self._agent_id(kind), reason="not_registered")
        try:
            return await self._supervisor.invoke(agent, scenario_input)
        except AgentUnavailableError as exc:
            return exc

    def _record(
        self,
        session: NegotiationSession,
        kind: AgentKind,
        outcome: AgentResult | AgentUnavailableError,
    ) -> None:
        if isinstance(outcome, AgentUnavailableError):
            session.record_failure(
                AgentFailureRecord(
                    kind=kind,
                    agent_id=outcome.agent_id,
                    reason=outcome.reason,
                    attempts=outcome.attempts,
                    detail=outcome.detail,
                )
            )
            return
        session.record_result(outcome)

    @staticmethod
    def _upstream(session: NegotiationSession, kind: AgentKind) -> InfoResult | ScenarioResult | MissingInput:
        result = session.results.get(kind)
        if result is not None:
            return result  # type: ignore[return-value]
        failure = session.failures.get(kind)
        return MissingInput(
            kind=kind,
            agent_id=failure.agent_id if failure else kind.value,
            reason=failure.reason if failure else "not_run",
        )

    def _agent_id(self, kind: AgentKind) -> str:
        agent = self._agents.get(kind)
        return agent.agent_id if agent is not None else f"{kind.value}-agent"

    def _transition(self, session: NegotiationSession, state: SessionState) -> None:
        event = session.transition(state)
        self._publish(event)

    def _fail(self, session: NegotiationSession, reason: FailureReason, error: str) -> None:
        if session.terminal:
            return
        event = session.fail(reason, error)
        logger.error(
            "session_failed",
            scenario_id=session.scenario_id,
            reason=reason.value,
            error=error,
            previous_state=event.old_state.value,
        )
        self._publish(event)

    def _publish(self, event: SessionStateChanged) -> None:
        if self._events is not None:
            self._events.emit(event)
