from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from .negotiation import Proposal
from .scenario import ScenarioRequest, Severity
from .state import StateSnapshot


class AgentKind(str, Enum):
    INFO = "info"
    SCENARIO = "scenario"
    IMPACT = "impact"
    STRATEGY = "strategy"


STAGE_ONE: tuple[AgentKind, ...] = (AgentKind.INFO, AgentKind.SCENARIO)
STAGE_TWO: tuple[AgentKind, ...] = (AgentKind.IMPACT, AgentKind.STRATEGY)


class Anomaly(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    metric: str
    description: str
    severity: Severity = Severity.MEDIUM
    observed: float | None = None
    threshold: float | None = None


class InfoPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    anomalies: tuple[Anomaly, ...] = ()
    nodes_observed: int = Field(0, ge=0)


class TimelineEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    day: float = Field(ge=0.0)
    phase: str
    description: str


class ScenarioPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    classification: str = Field(min_length=1)
    timeline: tuple[TimelineEvent, ...] = ()


class ImpactEstimate(BaseModel):
    """Expected value with its confidence interval; lower means less damage."""

    model_config = ConfigDict(frozen=True)

    expected: float
    lower: float
    upper: float

    @model_validator(mode="after")
    def _check_bounds(self) -> "ImpactEstimate":
        if not self.lower <= self.expected <= self.upper:
            raise ValueError("impact interval must satisfy lower <= expected <= upper")
        return self

    @property
    def relative_spread(self) -> float | None:
        if self.expected == 0:
            return None
        return (self.upper - self.lower) / (2 * abs(self.expected))


class ImpactPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    cost: ImpactEstimate
    delivery_time_days: ImpactEstimate
    inventory_units: ImpactEstimate
    sustainability_kg_co2: ImpactEstimate
    confidence_level: float = Field(0.9, gt=0.0, lt=1.0)

    def metrics(self) -> dict[str, ImpactEstimate]:
        return {
            "cost": self.cost,
            "delivery_time_days": self.delivery_time_days,
            "inventory_units": self.inventory_units,
            "sustainability_kg_co2": self.sustainability_kg_co2,
        }


class StrategyPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidates: tuple[Proposal, ...] = ()


class _AgentResultBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_id: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class InfoResult(_AgentResultBase):
    kind: Literal["info"] = "info"
    payload: InfoPayload


class ScenarioResult(_AgentResultBase):
    kind: Literal["scenario"] = "scenario"
    payload: ScenarioPayload


class ImpactResult(_AgentResultBase):
    kind: Literal["impact"] = "impact"
    payload: ImpactPayload


class StrategyResult(_AgentResultBase):
    kind: Literal["strategy"] = "strategy"
    payload: StrategyPayload


AgentResult = Annotated[
    Union[InfoResult, ScenarioResult, ImpactResult, StrategyResult],
    Field(discriminator="kind"),
]

AGENT_RESULT_ADAPTER: TypeAdapter[AgentResult] = TypeAdapter(AgentResult)


class MissingInput(BaseModel):
    """Explicit marker handed downstream when an upstream agent failed terminally."""

    model_config = ConfigDict(frozen=True)

    missing: Literal[True] = True
    kind: AgentKind
    agent_id: str
    reason: str


class ScenarioInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    scenario_id: str
    request: ScenarioRequest
    snapshot: StateSnapshot | None = None
    info: InfoResult | MissingInput | None = None
    scenario: ScenarioResult | MissingInput | None = None

    @property
    def degraded(self) -> bool:
        return isinstance(self.info, MissingInput) or isinstance(self.scenario, MissingInput)

    @property
    def info_result(self) -> InfoResult | None:
        return self.info if isinstance(self.info, InfoResult) else None

    @property
    def scenario_result(self) -> ScenarioResult | None:
        return self.scenario if isinstance(self.scenario, ScenarioResult) else None
