from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .scenario import PreferenceWeights


class Objective(str, Enum):
    COST = "cost"
    RISK = "risk"
    SUSTAINABILITY = "sustainability"
    TIME = "time"


OBJECTIVES: tuple[Objective, ...] = (
    Objective.COST,
    Objective.RISK,
    Objective.SUSTAINABILITY,
    Objective.TIME,
)


class ObjectiveVector(BaseModel):
    """Normalized benefit scores in [0, 1]; higher is better on every axis."""

    model_config = ConfigDict(frozen=True)

    cost: float = Field(ge=0.0, le=1.0)
    risk: float = Field(ge=0.0, le=1.0)
    sustainability: float = Field(ge=0.0, le=1.0)
    time: float = Field(ge=0.0, le=1.0)

    def value(self, objective: Objective) -> float:
        return float(getattr(self, objective.value))

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.cost, self.risk, self.sustainability, self.time)

    @classmethod
    def from_values(cls, values: tuple[float, ...] | list[float]) -> "ObjectiveVector":
        cost, risk, sustainability, time = values
        return cls(cost=cost, risk=risk, sustainability=sustainability, time=time)


class Proposal(BaseModel):
    """One candidate mitigation strategy emitted by a Strategy agent."""

    model_config = ConfigDict(frozen=True)

    proposal_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    objectives: ObjectiveVector
    rationale: str = ""
    estimated_cost: float | None = Field(default=None, ge=0.0)
    estimated_benefit: float | None = Field(default=None, ge=0.0)
    sequence: int = Field(0, ge=0, description="Creation order; earlier proposals win score ties.")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ScoredProposal(BaseModel):
    model_config = ConfigDict(frozen=True)

    proposal: Proposal
    score: float
    rank: int = Field(ge=1)
    merged_from: tuple[str, ...] = ()

    @property
    def proposal_id(self) -> str:
        return self.proposal.proposal_id


class ConflictDimension(BaseModel):
    model_config = ConfigDict(frozen=True)

    objective: Objective
    spread: float
    tolerance: float
    minimum: float
    maximum: float
    leader_proposal_id: str


class ConflictRecord(BaseModel):
    """Why negotiation could not settle on one ranked shortlist."""

    model_config = ConfigDict(frozen=True)

    reason: Literal["objective_spread", "negotiation_timeout"]
    dimensions: tuple[ConflictDimension, ...]
    competing: dict[str, ScoredProposal] = Field(default_factory=dict)
    surviving_proposals: int = 0
    rounds: int = 0
    message: str = ""


class NegotiationStatus(str, Enum):
    CONVERGED = "converged"
    ESCALATED = "escalated"


class RoundSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    round: int
    candidates_in: int
    merged: int
    pruned: int
    candidates_out: int


class NegotiationOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: NegotiationStatus
    weights: PreferenceWeights
    shortlist: tuple[ScoredProposal, ...] = ()
    conflict: ConflictRecord | None = None
    best_per_objective: dict[str, ScoredProposal] = Field(default_factory=dict)
    rounds: tuple[RoundSummary, ...] = ()

    @property
    def rounds_run(self) -> int:
        return len(self.rounds)

    @property
    def selected(self) -> tuple[ScoredProposal, ...]:
        if self.status == NegotiationStatus.CONVERGED:
            return self.shortlist
        seen: dict[str, ScoredProposal] = {}
        for candidate in self.best_per_objective.values():
            seen.setdefault(candidate.proposal_id, candidate)
        return tuple(sorted(seen.values(), key=lambda item: item.rank))
