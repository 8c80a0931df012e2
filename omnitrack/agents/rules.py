"""Rule-based reference agents.

These implement the agent adapter contract with deterministic heuristics so
the engine runs end to end without any model provider. Domain quality is
not the point; each agent can be swapped for a remote or model-backed one.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..core.errors import AgentInputError
from ..schemas.agents import (
    AgentKind,
    Anomaly,
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
from ..schemas.negotiation import ObjectiveVector, Proposal
from ..schemas.scenario import DisruptionType, Severity

SEVERITY_FACTORS = {Severity.LOW: 0.5, Severity.MEDIUM: 1.0, Severity.HIGH: 2.0}
EMISSION_FACTORS = {Severity.LOW: 0.5, Severity.MEDIUM: 1.0, Severity.HIGH: 1.5}
INTERVAL_SPREADS = {Severity.LOW: 0.15, Severity.MEDIUM: 0.25, Severity.HIGH: 0.35}

# (cost, time, inventory) multipliers per disruption type
IMPACT_FACTORS: dict[DisruptionType, tuple[float, float, float]] = {
    DisruptionType.NATURAL_DISASTER: (3.0, 2.5, 2.0),
    DisruptionType.SUPPLIER_FAILURE: (2.0, 1.5, 3.0),
    DisruptionType.TRANSPORTATION_DELAY: (1.5, 3.0, 1.5),
    DisruptionType.DEMAND_SPIKE: (1.0, 1.0, 4.0),
    DisruptionType.QUALITY_ISSUE: (2.5, 2.0, 2.5),
    DisruptionType.GEOPOLITICAL: (3.5, 3.0, 2.0),
    DisruptionType.CYBER_ATTACK: (4.0, 2.0, 1.5),
    DisruptionType.LABOR_SHORTAGE: (2.0, 2.5, 2.0),
}

BASE_COST_PER_NODE_DAY = 10_000.0
BASE_INVENTORY_PER_NODE = 1_000.0
BASE_EMISSIONS_PER_NODE_DAY = 500.0

UTILIZATION_LIMIT = 0.9
INVENTORY_FLOOR = 0.2


@dataclass(frozen=True, slots=True)
class StrategyTemplate:
    name: str
    description: str
    cost_multiplier: float
    risk_reduction: float
    sustainability_multiplier: float
    implementation_time: float

    def objectives(self, severity: Severity) -> ObjectiveVector:
        # severe disruptions erode how much risk any single mitigation removes
        erosion = {Severity.LOW: 1.0, Severity.MEDIUM: 0.95, Severity.HIGH: 0.85}[severity]
        return ObjectiveVector(
            cost=_clamp(1.0 - (self.cost_multiplier - 0.5) / 2.5),
            risk=_clamp(self.risk_reduction * erosion),
            sustainability=_clamp(1.0 - (self.sustainability_multiplier - 0.5) / 2.0),
            time=_clamp(1.0 - self.implementation_time),
        )


_COMMON_TEMPLATES = (
    StrategyTemplate("Increase Safety Stock", "Build inventory buffers to absorb the disruption", 1.8, 0.5, 1.0, 0.8),
    StrategyTemplate("Multi-Source Strategy", "Spread volume across several qualified suppliers", 1.4, 0.7, 1.1, 0.5),
    StrategyTemplate("Customer Communication", "Renegotiate delivery expectations with customers", 0.5, 0.4, 0.9, 0.1),
)

STRATEGY_TEMPLATES: dict[DisruptionType, tuple[StrategyTemplate, ...]] = {
    DisruptionType.NATURAL_DISASTER: (
        StrategyTemplate("Activate Backup Suppliers", "Switch to backup suppliers in unaffected regions", 1.3, 0.7, 1.1, 0.5),
        StrategyTemplate("Reroute Through Alternative Logistics", "Bypass affected areas with alternate routes", 1.5, 0.6, 1.3, 0.3),
        StrategyTemplate("Expedite Air Freight", "Fly critical components to minimize delays", 2.5, 0.3, 2.0, 0.2),
        StrategyTemplate("Negotiate Extended Lead Times", "Agree longer delivery timelines with customers", 0.5, 0.8, 0.9, 0.4),
    ),
    DisruptionType.SUPPLIER_FAILURE: (
        StrategyTemplate("Emergency Supplier Qualification", "Fast-track qualification of new suppliers", 1.4, 0.6, 1.0, 0.6),
        StrategyTemplate("In-Source Production", "Move production of affected parts in-house", 2.0, 0.4, 0.9, 0.9),
        StrategyTemplate("Supplier Recovery Support", "Fund and staff the failing supplier's recovery", 1.2, 0.6, 0.8, 0.7),
    ),
    DisruptionType.TRANSPORTATION_DELAY: (
        StrategyTemplate("Expedited Shipping", "Upgrade service level on delayed lanes", 1.6, 0.4, 1.4, 0.2),
        StrategyTemplate("Regional Distribution", "Serve demand from regional distribution centers", 1.3, 0.6, 0.8, 0.5),
        StrategyTemplate("Intermodal Transportation", "Combine rail and road to avoid congestion", 1.1, 0.5, 0.7, 0.4),
        StrategyTemplate("Carrier Diversification", "Split volume across additional carriers", 1.2, 0.7, 1.0, 0.3),
    ),
    DisruptionType.DEMAND_SPIKE: (
        StrategyTemplate("Overtime Production", "Add shifts to raise short-term output", 1.5, 0.5, 1.1, 0.3),
        StrategyTemplate("Contract Manufacturing", "Outsource overflow volume to contract manufacturers", 1.7, 0.4, 1.2, 0.6),
        StrategyTemplate("Demand Allocation", "Allocate constrained supply to priority customers", 0.7, 0.7, 0.8, 0.2),
    ),
}


def templates_for(disruption_type: DisruptionType) -> tuple[StrategyTemplate, ...]:
    return STRATEGY_TEMPLATES.get(disruption_type, ()) + _COMMON_TEMPLATES


class RuleBasedInfoAgent:
    kind = AgentKind.INFO

    def __init__(self, agent_id: str = "info-agent") -> None:
        self.agent_id = agent_id

    async def analyze(self, scenario_input: ScenarioInput) -> InfoResult:
        snapshot = scenario_input.snapshot
        if snapshot is None:
            raise AgentInputError("info agent requires a state snapshot")
        anomalies: list[Anomaly] = []
        for node in snapshot.nodes:
            if node.status != "operational":
                anomalies.append(
                    Anomaly(
                        node_id=node.node_id,
                        metric="status",
                        description=f"node reports status '{node.status}'",
                        severity=Severity.HIGH,
                    )
                )
            if node.utilization > UTILIZATION_LIMIT:
                anomalies.append(
                    Anomaly(
                        node_id=node.node_id,
                        metric="utilization",
                        description="utilization above safe operating limit",
                        observed=node.utilization,
                        threshold=UTILIZATION_LIMIT,
                    )
                )
            if node.capacity > 0 and node.inventory_level < node.capacity * INVENTORY_FLOOR:
                anomalies.append(
                    Anomaly(
                        node_id=node.node_id,
                        metric="inventory_level",
                        description="inventory below safety floor",
                        observed=node.inventory_level,
                        threshold=node.capacity * INVENTORY_FLOOR,
                    )
                )
        for node_id in snapshot.missing_node_ids:
            anomalies.append(
                Anomaly(
                    node_id=node_id,
                    metric="visibility",
                    description="no state reported for affected node",
                    severity=Severity.LOW,
                )
            )
        observed = len(snapshot.nodes)
        coverage = observed / max(1, observed + len(snapshot.missing_node_ids))
        return InfoResult(
            agent_id=self.agent_id,
            confidence=round(0.5 + 0.45 * coverage, 4),
            payload=InfoPayload(anomalies=tuple(anomalies), nodes_observed=observed),
        )


class RuleBasedScenarioAgent:
    kind = AgentKind.SCENARIO

    def __init__(self, agent_id: str = "scenario-agent") -> None:
        self.agent_id = agent_id

    async def analyze(self, scenario_input: ScenarioInput) -> ScenarioResult:
        request = scenario_input.request
        duration = request.duration_days
        label = request.disruption_type.value.replace("_", " ")
        recovery_tail = {Severity.LOW: 1.2, Severity.MEDIUM: 1.5, Severity.HIGH: 2.0}[request.severity]
        timeline = (
            TimelineEvent(day=0.0, phase="onset", description=f"{label} begins at {request.location}"),
            TimelineEvent(day=round(duration * 0.3, 2), phase="peak", description="maximum disruption to affected nodes"),
            TimelineEvent(day=round(duration, 2), phase="recovery", description="disruption source resolved"),
            TimelineEvent(
                day=round(duration * recovery_tail, 2),
                phase="normalized",
                description="throughput back to baseline",
            ),
        )
        confidence = 0.9 if scenario_input.snapshot is not None else 0.7
        return ScenarioResult(
            agent_id=self.agent_id,
            confidence=confidence,
            payload=ScenarioPayload(
                classification=f"{request.severity.value} severity {label}",
                timeline=timeline,
            ),
        )


class RuleBasedImpactAgent:
    kind = AgentKind.IMPACT

    def __init__(self, agent_id: str = "impact-agent") -> None:
        self.agent_id = agent_id

    async def analyze(self, scenario_input: ScenarioInput) -> ImpactResult:
        request = scenario_input.request
        nodes = len(request.affected_node_ids)
        severity = SEVERITY_FACTORS[request.severity]
        cost_factor, time_factor, inventory_factor = IMPACT_FACTORS[request.disruption_type]

        spread = INTERVAL_SPREADS[request.severity]
        info = scenario_input.info_result
        if info is not None:
            spread += min(0.1, 0.02 * len(info.payload.anomalies))
        if scenario_input.scenario_result is None:
            spread += 0.1
        spread = min(spread, 0.9)

        def estimate(expected: float) -> ImpactEstimate:
            expected = round(expected, 2)
            return ImpactEstimate(
                expected=expected,
                lower=round(expected * (1.0 - spread), 2),
                upper=round(expected * (1.0 + spread), 2),
            )

        payload = ImpactPayload(
            cost=estimate(BASE_COST_PER_NODE_DAY * nodes * request.duration_days * cost_factor * severity),
            delivery_time_days=estimate(request.duration_days * time_factor * severity * 0.5),
            inventory_units=estimate(BASE_INVENTORY_PER_NODE * nodes * inventory_factor * severity),
            sustainability_kg_co2=estimate(
                BASE_EMISSIONS_PER_NODE_DAY * nodes * request.duration_days * EMISSION_FACTORS[request.severity]
            ),
            confidence_level=0.9,
        )
        confidence = 0.85 - (0.2 if scenario_input.degraded else 0.0)
        return ImpactResult(agent_id=self.agent_id, confidence=confidence, payload=payload)


class RuleBasedStrategyAgent:
    kind = AgentKind.STRATEGY

    def __init__(self, agent_id: str = "strategy-agent") -> None:
        self.agent_id = agent_id

    async def analyze(self, scenario_input: ScenarioInput) -> StrategyResult:
        request = scenario_input.request
        candidates: list[Proposal] = []
        for sequence, template in enumerate(templates_for(request.disruption_type)):
            if scenario_input.info_result is not None:
                # anomalies observed in state make every mitigation slightly costlier
                penalty = 1.0 + 0.05 * len(scenario_input.info_result.payload.anomalies)
            else:
                penalty = 1.0
            baseline = BASE_COST_PER_NODE_DAY * len(request.affected_node_ids) * request.duration_days
            estimated_cost = round(baseline * template.cost_multiplier * 0.2 * penalty, 2)
            estimated_benefit = round(baseline * SEVERITY_FACTORS[request.severity] * template.risk_reduction, 2)
            candidates.append(
                Proposal(
                    proposal_id=f"{request.disruption_type.value}:{sequence}",
                    name=template.name,
                    objectives=template.objectives(request.severity),
                    rationale=template.description,
                    estimated_cost=estimated_cost,
                    estimated_benefit=estimated_benefit,
                    sequence=sequence,
                )
            )
        confidence = 0.8 if scenario_input.scenario_result is not None else 0.6
        return StrategyResult(
            agent_id=self.agent_id,
            confidence=confidence,
            payload=StrategyPayload(candidates=tuple(candidates)),
        )


def default_agents() -> list:
    return [RuleBasedInfoAgent(), RuleBasedScenarioAgent(), RuleBasedImpactAgent(), RuleBasedStrategyAgent()]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, round(value, 4)))
