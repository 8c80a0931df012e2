from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .agents import AgentKind
from .negotiation import ConflictRecord, NegotiationStatus, RoundSummary, ScoredProposal
from .scenario import PreferenceWeights

SYSTEM_AGENT_ID = "system"


class FieldAttribution(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    agent_id: str
    agent_kind: AgentKind | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    description: str = ""


class UncertaintyRange(BaseModel):
    """Best / expected / worst values; for impact metrics best is the lowest damage."""

    model_config = ConfigDict(frozen=True)

    metric: str
    best: float
    expected: float
    worst: float
    confidence_level: float | None = None


class DecisionNodeType(str, Enum):
    CLASSIFICATION = "classification"
    AGENT = "agent"
    PROPOSAL = "proposal"


class DecisionNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    node_type: DecisionNodeType
    label: str
    agent_id: str | None = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    status: Literal["ok", "unavailable"] = "ok"
    uncertainty: UncertaintyRange | None = None
    children: tuple["DecisionNode", ...] = ()

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()

    def leaves(self) -> list["DecisionNode"]:
        return [node for node in self.walk() if not node.children and node.node_type == DecisionNodeType.PROPOSAL]


DecisionNode.model_rebuild()


class TradeoffPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    proposal_id: str
    x: float
    y: float


class TradeoffView(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    x_objective: str
    y_objective: str
    points: tuple[TradeoffPoint, ...] = ()
    frontier: tuple[str, ...] = ()


class AgentFailureRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: AgentKind
    agent_id: str
    reason: str
    attempts: int = 0
    detail: str | None = None


class AuditReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry_id: str
    sequence: int
    entry_hash: str


class NegotiationResult(BaseModel):
    """Final, explained outcome returned for one scenario."""

    model_config = ConfigDict(frozen=True)

    scenario_id: str
    status: NegotiationStatus
    partial: bool = False
    proposals: tuple[ScoredProposal, ...] = ()
    conflict: ConflictRecord | None = None
    best_per_objective: dict[str, ScoredProposal] = Field(default_factory=dict)
    weights: PreferenceWeights
    rounds: tuple[RoundSummary, ...] = ()
    classification: str
    attributions: tuple[FieldAttribution, ...] = ()
    decision_tree: DecisionNode
    uncertainty: tuple[UncertaintyRange, ...] = ()
    tradeoffs: tuple[TradeoffView, ...] = ()
    summary: str = ""
    overall_confidence: float = Field(0.0, ge=0.0, le=1.0)
    completeness: float = Field(0.0, ge=0.0, le=1.0)
    missing_agents: tuple[AgentFailureRecord, ...] = ()
    audit: AuditReference | None = None
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def attribution_for(self, field: str) -> FieldAttribution | None:
        for attribution in self.attributions:
            if attribution.field == field:
                return attribution
        return None
