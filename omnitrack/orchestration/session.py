from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from ..core.errors import DuplicateAgentResultError, InvalidTransitionError
from ..schemas.agents import AgentKind, AgentResult
from ..schemas.negotiation import NegotiationOutcome
from ..schemas.results import AgentFailureRecord, NegotiationResult
from ..schemas.scenario import ScenarioRequest
from ..schemas.state import StateSnapshot
from .enums import ALLOWED_TRANSITIONS, FailureReason, SessionState
from .events import SessionStateChanged


def new_scenario_id() -> str:
    return str(uuid4())


class SessionView(BaseModel):
    """Immutable copy of a session handed to components outside the coordinator."""

    model_config = ConfigDict(frozen=True)

    scenario_id: str
    request: ScenarioRequest
    state: SessionState
    round: int
    results: dict[AgentKind, AgentResult]
    failures: dict[AgentKind, AgentFailureRecord]
    snapshot: StateSnapshot | None = None
    outcome: NegotiationOutcome | None = None

    @property
    def partial(self) -> bool:
        return bool(self.failures)


@dataclass(slots=True)
class NegotiationSession:
    """Lifecycle of one scenario run. Mutated only by the coordinator."""

    scenario_id: str
    request: ScenarioRequest
    idempotency_key: str | None = None
    state: SessionState = SessionState.PENDING
    round: int = 0
    results: dict[AgentKind, AgentResult] = field(default_factory=dict)
    failures: dict[AgentKind, AgentFailureRecord] = field(default_factory=dict)
    snapshot: StateSnapshot | None = None
    outcome: NegotiationOutcome | None = None
    result: NegotiationResult | None = None
    failure_reason: FailureReason | None = None
    error: str | None = None
    history: list[SessionStateChanged] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def open(
        cls,
        request: ScenarioRequest,
        *,
        scenario_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> "NegotiationSession":
        return cls(
            scenario_id=scenario_id or new_scenario_id(),
            request=request,
            idempotency_key=idempotency_key,
        )

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def transition(self, new_state: SessionState, *, reason: FailureReason | None = None) -> SessionStateChanged:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"session {self.scenario_id} cannot move from {self.state.value} to {new_state.value}"
            )
        event = SessionStateChanged(
            scenario_id=self.scenario_id,
            old_state=self.state,
            new_state=new_state,
            reason=reason,
        )
        self.state = new_state
        self.updated_at = event.occurred_at
        self.history.append(event)
        return event

    def fail(self, reason: FailureReason, error: str | None = None) -> SessionStateChanged:
        event = self.transition(SessionState.FAILED, reason=reason)
        self.failure_reason = reason
        self.error = error
        return event

    def record_result(self, result: AgentResult) -> None:
        kind = AgentKind(result.kind)
        if kind in self.results or kind in self.failures:
            raise DuplicateAgentResultError(f"session {self.scenario_id} already holds a {kind.value} result")
        self.results[kind] = result
        self.updated_at = datetime.now(timezone.utc)

    def record_failure(self, failure: AgentFailureRecord) -> None:
        if failure.kind in self.results or failure.kind in self.failures:
            raise DuplicateAgentResultError(f"session {self.scenario_id} already holds a {failure.kind.value} outcome")
        self.failures[failure.kind] = failure
        self.updated_at = datetime.now(timezone.utc)

    def view(self) -> SessionView:
        return SessionView(
            scenario_id=self.scenario_id,
            request=self.request,
            state=self.state,
            round=self.round,
            results=dict(self.results),
            failures=dict(self.failures),
            snapshot=self.snapshot,
            outcome=self.outcome,
        )
