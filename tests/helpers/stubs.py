from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Iterable, Sequence

from omnitrack.agents.state import InMemoryStateReader, StateSnapshotReader
from omnitrack.core.config import StateReaderSettings, SupervisorSettings
from omnitrack.orchestration.audit import AuditStore, InMemoryAuditStore
from omnitrack.orchestration.coordinator import ParallelExecutionCoordinator
from omnitrack.orchestration.events import SessionEventBus
from omnitrack.orchestration.negotiation import ConsensusNegotiationEngine
from omnitrack.orchestration.recorder import ExplainabilityRecorder
from omnitrack.orchestration.supervisor import AgentSupervisor
from omnitrack.schemas.agents import (
    AgentKind,
    ImpactEstimate,
    ImpactPayload,
    ImpactResult,
    InfoPayload,
    InfoResult,
    ScenarioInput,
    ScenarioPayload,
    ScenarioResult,
    StrategyPayload,
    StrategyResult,
    TimelineEvent,
)
from omnitrack.schemas.audit import AuditLogEntry
from omnitrack.schemas.negotiation import ObjectiveVector, Proposal
from omnitrack.schemas.scenario import ScenarioRequest
from omnitrack.schemas.state import NodeState, StateSnapshot

DEFAULT_NODE_IDS = ("plant-1", "dc-2")


def make_request(**overrides: Any) -> ScenarioRequest:
    payload: dict[str, Any] = {
        "disruption_type": "natural_disaster",
        "location": "Port of Rotterdam",
        "severity": "high",
        "duration_days": 7,
        "affected_node_ids": list(DEFAULT_NODE_IDS),
    }
    payload.update(overrides)
    return ScenarioRequest.model_validate(payload)


def make_proposal(proposal_id: str, vector: Sequence[float], *, sequence: int = 0, name: str | None = None) -> Proposal:
    return Proposal(
        proposal_id=proposal_id,
        name=name or f"Strategy {proposal_id}",
        objectives=ObjectiveVector.from_values(list(vector)),
        rationale=f"rationale for {proposal_id}",
        sequence=sequence,
    )


def make_proposals(vectors: Iterable[Sequence[float]], *, prefix: str = "p") -> list[Proposal]:
    return [make_proposal(f"{prefix}{index}", vector, sequence=index) for index, vector in enumerate(vectors, start=1)]


def info_result(agent_id: str = "info-agent", *, confidence: float = 0.9) -> InfoResult:
    return InfoResult(agent_id=agent_id, confidence=confidence, payload=InfoPayload(nodes_observed=2))


def scenario_result(
    agent_id: str = "scenario-agent",
    *,
    confidence: float = 0.8,
    classification: str = "high severity natural disaster",
) -> ScenarioResult:
    return ScenarioResult(
        agent_id=agent_id,
        confidence=confidence,
        payload=ScenarioPayload(
            classification=classification,
            timeline=(TimelineEvent(day=0, phase="onset", description="disruption begins"),),
        ),
    )


def impact_result(agent_id: str = "impact-agent", *, confidence: float = 0.7) -> ImpactResult:
    return ImpactResult(
        agent_id=agent_id,
        confidence=confidence,
        payload=ImpactPayload(
            cost=ImpactEstimate(expected=100_000, lower=80_000, upper=120_000),
            delivery_time_days=ImpactEstimate(expected=10, lower=8, upper=12),
            inventory_units=ImpactEstimate(expected=1_000, lower=800, upper=1_200),
            sustainability_kg_co2=ImpactEstimate(expected=5_000, lower=4_000, upper=6_000),
            confidence_level=0.9,
        ),
    )


def strategy_result(
    proposals: Sequence[Proposal] | None = None,
    agent_id: str = "strategy-agent",
    *,
    confidence: float = 0.8,
) -> StrategyResult:
    if proposals is None:
        proposals = make_proposals([(0.8, 0.2, 0.3, 0.9), (0.2, 0.9, 0.8, 0.3), (0.5, 0.5, 0.5, 0.5)])
    return StrategyResult(agent_id=agent_id, confidence=confidence, payload=StrategyPayload(candidates=tuple(proposals)))


_DEFAULT_RESULTS: dict[AgentKind, Callable[[str], Any]] = {
    AgentKind.INFO: info_result,
    AgentKind.SCENARIO: scenario_result,
    AgentKind.IMPACT: impact_result,
    AgentKind.STRATEGY: strategy_result,
}


class StubAgent:
    """Scripted agent: raises queued errors first, then returns its result."""

    def __init__(
        self,
        kind: AgentKind,
        *,
        agent_id: str | None = None,
        result: Any = None,
        errors: Iterable[BaseException] = (),
        delay: float = 0.0,
        hang: bool = False,
        journal: list[tuple[str, str]] | None = None,
    ) -> None:
        self.kind = kind
        self.agent_id = agent_id or f"{kind.value}-agent"
        self._result = result
        self._errors = list(errors)
        self._delay = delay
        self._hang = hang
        self.calls: list[ScenarioInput] = []
        self.journal = journal if journal is not None else []

    async def analyze(self, scenario_input: ScenarioInput) -> Any:
        self.calls.append(scenario_input)
        self.journal.append(("start", self.kind.value))
        try:
            if self._hang:
                await asyncio.Event().wait()
            if self._delay:
                await asyncio.sleep(self._delay)
            if self._errors:
                raise self._errors.pop(0)
            if self._result is not None:
                return self._result
            return _DEFAULT_RESULTS[self.kind](agent_id=self.agent_id)
        finally:
            self.journal.append(("end", self.kind.value))


def stub_agents(journal: list[tuple[str, str]] | None = None, **overrides: StubAgent) -> list[StubAgent]:
    journal = journal if journal is not None else []
    agents = []
    for kind in (AgentKind.INFO, AgentKind.SCENARIO, AgentKind.IMPACT, AgentKind.STRATEGY):
        agent = overrides.get(kind.value) or StubAgent(kind, journal=journal)
        agents.append(agent)
    return agents


def state_reader(node_ids: Iterable[str] = DEFAULT_NODE_IDS) -> InMemoryStateReader:
    return InMemoryStateReader(NodeState(node_id=node_id, capacity=100, inventory_level=50) for node_id in node_ids)


class FailingStateReader(StateSnapshotReader):
    def __init__(self, error: BaseException | None = None) -> None:
        self._error = error or ConnectionError("state store unreachable")

    async def read_state(self, node_ids: Sequence[str]) -> StateSnapshot:
        raise self._error


class SlowStateReader(StateSnapshotReader):
    def __init__(self, delay: float) -> None:
        self._delay = delay

    async def read_state(self, node_ids: Sequence[str]) -> StateSnapshot:
        await asyncio.sleep(self._delay)
        return StateSnapshot()


class FlakyAuditStore(InMemoryAuditStore):
    """In-memory audit store whose first ``failures`` appends raise."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.remaining_failures = failures
        self.attempts = 0

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        self.attempts += 1
        if self.remaining_failures > 0:
            self.remaining_failures -= 1
            raise OSError("audit volume unavailable")
        return await super().append(entry)


class GatedAuditStore(InMemoryAuditStore):
    """Persists each append, then holds the caller until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.stored = asyncio.Event()
        self.release = asyncio.Event()

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        sealed = await super().append(entry)
        self.stored.set()
        await self.release.wait()
        return sealed


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def build_coordinator(
    agents: Iterable[Any],
    *,
    audit_store: AuditStore | None = None,
    reader: StateSnapshotReader | None = None,
    supervisor_settings: SupervisorSettings | None = None,
    state_reader_settings: StateReaderSettings | None = None,
    events: SessionEventBus | None = None,
) -> ParallelExecutionCoordinator:
    """Coordinator wired with instant backoff sleeps and an in-memory audit store."""
    sleep = RecordingSleep()
    return ParallelExecutionCoordinator(
        agents=agents,
        supervisor=AgentSupervisor(supervisor_settings or SupervisorSettings(), sleep=sleep),
        state_reader=reader or state_reader(),
        negotiation_engine=ConsensusNegotiationEngine(),
        recorder=ExplainabilityRecorder(audit_store or InMemoryAuditStore(), sleep=sleep),
        state_reader_settings=state_reader_settings,
        events=events,
    )


class FakeAuditConnection:
    """Answers the handful of statements PostgresAuditStore issues."""

    def __init__(self, rows: list[dict[str, Any]], statements: list[str]) -> None:
        self._rows = rows
        self._statements = statements

    @asynccontextmanager
    async def transaction(self):
        yield self

    async def execute(self, query: str, *args: Any) -> str:
        self._statements.append(" ".join(query.split()))
        if query.lstrip().startswith("INSERT"):
            sequence, entry_id, scenario_id, _previous, entry_hash, _recorded_at, payload = args
            self._rows.append(
                {
                    "sequence": sequence,
                    "entry_id": entry_id,
                    "scenario_id": scenario_id,
                    "entry_hash": entry_hash,
                    "payload": payload,
                }
            )
        return "OK"

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        if "WHERE entry_id" in query:
            return next((row for row in self._rows if row["entry_id"] == args[0]), None)
        return max(self._rows, key=lambda row: row["sequence"]) if self._rows else None

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        rows = sorted(self._rows, key=lambda row: row["sequence"])
        if args:
            rows = [row for row in rows if row["scenario_id"] == args[0]]
        return rows


class FakeAuditPool:
    def __init__(self) -> None:
        self.rows: list[dict[str, Any]] = []
        self.statements: list[str] = []
        self.closed = False

    def __await__(self):
        async def _ready() -> "FakeAuditPool":
            return self

        return _ready().__await__()

    @asynccontextmanager
    async def acquire(self):
        yield FakeAuditConnection(self.rows, self.statements)

    async def close(self) -> None:
        self.closed = True
