from __future__ import annotations

import asyncio
from statistics import fmean
from typing import Awaitable, Callable, Sequence

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from ..core.config import AuditSettings, ExplainabilitySettings
from ..core.errors import AuditWriteError
from ..core.logging import get_logger
from ..core.metrics import record_audit_write
from ..schemas.agents import (
    AgentKind,
    AgentResult,
    ImpactResult,
    InfoResult,
    ScenarioResult,
    StrategyResult,
)
from ..schemas.audit import AuditLogEntry
from ..schemas.negotiation import NegotiationOutcome, NegotiationStatus, Objective, ScoredProposal
from ..schemas.results import (
    SYSTEM_AGENT_ID,
    AuditReference,
    DecisionNode,
    DecisionNodeType,
    FieldAttribution,
    NegotiationResult,
    TradeoffPoint,
    TradeoffView,
    UncertaintyRange,
)
from .audit import AuditStore
from .session import SessionView

logger = get_logger(name=__name__)

TRADEOFF_AXES: tuple[tuple[Objective, Objective], ...] = (
    (Objective.COST, Objective.RISK),
    (Objective.COST, Objective.SUSTAINABILITY),
    (Objective.RISK, Objective.SUSTAINABILITY),
    (Objective.COST, Objective.TIME),
)

_AGENT_ORDER = (AgentKind.INFO, AgentKind.SCENARIO, AgentKind.IMPACT, AgentKind.STRATEGY)


class ExplainabilityRecorder:
    """Turns a negotiated session into an attributed, audited ``NegotiationResult``."""

    def __init__(
        self,
        audit_store: AuditStore,
        *,
        settings: ExplainabilitySettings | None = None,
        audit_settings: AuditSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = audit_store
        self._settings = settings or ExplainabilitySettings()
        self._audit_settings = audit_settings or AuditSettings()
        self._sleep = sleep

    @property
    def audit_store(self) -> AuditStore:
        return self._store

    async def annotate(self, session: SessionView) -> NegotiationResult:
        """Explain the session outcome and durably record it; raises ``AuditWriteError``."""
        result = self.explain(session)
        entry = AuditLogEntry(
            scenario_id=session.scenario_id,
            outcome=result.status,
            selected_proposal_ids=tuple(item.proposal_id for item in self._selected(session.outcome)),
            escalation=result.conflict,
            weights=result.weights,
            partial=result.partial,
            rationale=result.summary,
        )
        sealed = await self._append(entry)
        return result.model_copy(
            update={
                "audit": AuditReference(
                    entry_id=sealed.entry_id,
                    sequence=sealed.sequence or 0,
                    entry_hash=sealed.entry_hash or "",
                )
            }
        )

    def explain(self, session: SessionView) -> NegotiationResult:
        outcome = session.outcome
        if outcome is None:
            raise ValueError(f"session {session.scenario_id} has no negotiation outcome to explain")

        classification = self._classification(session)
        proposals = outcome.shortlist if outcome.status == NegotiationStatus.CONVERGED else ()
        spread = self._relative_uncertainty(session)
        uncertainty = self._impact_ranges(session)
        tree = self._decision_tree(session, classification, spread)
        attributions = self._attributions(session, outcome, uncertainty)
        tradeoffs = self._tradeoffs(self._selected(outcome))
        summary = self._summary(session, classification)

        confidences = [result.confidence for result in session.results.values()]
        components = (
            bool(summary),
            bool(tree.children),
            bool(attributions),
            bool(uncertainty),
        )
        return NegotiationResult(
            scenario_id=session.scenario_id,
            status=outcome.status,
            partial=session.partial,
            proposals=proposals,
            conflict=outcome.conflict,
            best_per_objective=dict(outcome.best_per_objective),
            weights=outcome.weights,
            rounds=outcome.rounds,
            classification=classification,
            attributions=tuple(attributions),
            decision_tree=tree,
            uncertainty=tuple(uncertainty),
            tradeoffs=tuple(tradeoffs),
            summary=summary,
            overall_confidence=fmean(confidences) if confidences else 0.0,
            completeness=sum(components) / len(components),
            missing_agents=tuple(session.failures[kind] for kind in _AGENT_ORDER if kind in session.failures),
        )

    async def _append(self, entry: AuditLogEntry) -> AuditLogEntry:
        backend = self._store.backend
        base = self._audit_settings.base_backoff_seconds
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._audit_settings.max_attempts),
            wait=wait_random_exponential(multiplier=base, max=max(base * 8, base)),
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    try:
                        sealed = await self._store.append(entry)
                    except Exception as exc:
                        logger.warning(
                            "audit_append_failed",
                            scenario_id=entry.scenario_id,
                            entry_id=entry.entry_id,
                            attempt=attempt.retry_state.attempt_number,
                            backend=backend,
                            error=str(exc),
                        )
                        record_audit_write(backend=backend, outcome="error")
                        raise
        except Exception as exc:
            raise AuditWriteError(
                f"audit entry for scenario {entry.scenario_id} could not be written: {exc}",
                scenario_id=entry.scenario_id,
            ) from exc
        record_audit_write(backend=backend, outcome="success")
        logger.info(
            "audit_entry_written",
            scenario_id=sealed.scenario_id,
            entry_id=sealed.entry_id,
            sequence=sealed.sequence,
            outcome=sealed.outcome.value,
        )
        return sealed

    @staticmethod
    def _selected(outcome: NegotiationOutcome | None) -> tuple[ScoredProposal, ...]:
        return outcome.selected if outcome is not None else ()

    @staticmethod
    def _result(session: SessionView, kind: AgentKind) -> AgentResult | None:
        return session.results.get(kind)

    def _classification(self, session: SessionView) -> str:
        scenario = self._result(session, AgentKind.SCENARIO)
        if isinstance(scenario, ScenarioResult):
            return scenario.payload.classification
        request = session.request
        return f"{request.severity.value} {request.disruption_type.value.replace('_', ' ')}"

    def _relative_uncertainty(self, session: SessionView) -> float:
        impact = self._result(session, AgentKind.IMPACT)
        if not isinstance(impact, ImpactResult):
            return self._settings.default_relative_uncertainty
        spreads = [
            estimate.relative_spread
            for estimate in impact.payload.metrics().values()
            if estimate.relative_spread is not None
        ]
        if not spreads:
            return self._settings.default_relative_uncertainty
        return max(0.0, min(1.0, fmean(spreads)))

    def _impact_ranges(self, session: SessionView) -> list[UncertaintyRange]:
        impact = self._result(session, AgentKind.IMPACT)
        if not isinstance(impact, ImpactResult):
            return []
        level = impact.payload.confidence_level
        return [
            UncertaintyRange(
                metric=metric,
                best=estimate.lower,
                expected=estimate.expected,
                worst=estimate.upper,
                confidence_level=level,
            )
            for metric, estimate in impact.payload.metrics().items()
        ]

    def _decision_tree(self, session: SessionView, classification: str, spread: float) -> DecisionNode:
        scenario = self._result(session, AgentKind.SCENARIO)
        impact = self._result(session, AgentKind.IMPACT)
        level = impact.payload.confidence_level if isinstance(impact, ImpactResult) else None

        children: list[DecisionNode] = []
        for kind in _AGENT_ORDER:
            result = self._result(session, kind)
            failure = session.failures.get(kind)
            if result is None:
                children.append(
                    DecisionNode(
                        node_id=f"agent:{kind.value}",
                        node_type=DecisionNodeType.AGENT,
                        label=f"{kind.value} agent unavailable ({failure.reason if failure else 'not run'})",
                        agent_id=failure.agent_id if failure else None,
                        status="unavailable",
                    )
                )
                continue
            leaves: tuple[DecisionNode, ...] = ()
            if kind == AgentKind.STRATEGY:
                leaves = tuple(
                    self._proposal_leaf(item, result.agent_id, result.confidence, spread, level)
                    for item in self._selected(session.outcome)
                )
            children.append(
                DecisionNode(
                    node_id=f"agent:{kind.value}",
                    node_type=DecisionNodeType.AGENT,
                    label=_describe_contribution(result),
                    agent_id=result.agent_id,
                    confidence=result.confidence,
                    children=leaves,
                )
            )

        return DecisionNode(
            node_id="root",
            node_type=DecisionNodeType.CLASSIFICATION,
            label=classification,
            agent_id=scenario.agent_id if scenario is not None else SYSTEM_AGENT_ID,
            confidence=scenario.confidence if scenario is not None else 0.0,
            children=tuple(children),
        )

    @staticmethod
    def _proposal_leaf(
        item: ScoredProposal,
        agent_id: str,
        confidence: float,
        spread: float,
        level: float | None,
    ) -> DecisionNode:
        score = item.score
        return DecisionNode(
            node_id=f"proposal:{item.proposal_id}",
            node_type=DecisionNodeType.PROPOSAL,
            label=f"#{item.rank} {item.proposal.name} (score {score:.3f})",
            agent_id=agent_id,
            confidence=confidence,
            uncertainty=UncertaintyRange(
                metric="consensus_score",
                best=min(1.0, score * (1.0 + spread)),
                expected=score,
                worst=max(0.0, score * (1.0 - spread)),
                confidence_level=level,
            ),
        )

    def _attributions(
        self,
        session: SessionView,
        outcome: NegotiationOutcome,
        uncertainty: Sequence[UncertaintyRange],
    ) -> list[FieldAttribution]:
        attributions: list[FieldAttribution] = []

        def attribute(field: str, kind: AgentKind, description: str = "") -> None:
            result = self._result(session, kind)
            if result is None:
                attributions.append(
                    FieldAttribution(field=field, agent_id=SYSTEM_AGENT_ID, confidence=0.0, description=description)
                )
                return
            attributions.append(
                FieldAttribution(
                    field=field,
                    agent_id=result.agent_id,
                    agent_kind=kind,
                    confidence=result.confidence,
                    description=description,
                )
            )

        attribute("classification", AgentKind.SCENARIO, "scenario classification")
        if AgentKind.INFO in session.results:
            attribute("anomalies", AgentKind.INFO, "state anomalies observed")
        for item in uncertainty:
            attribute(f"uncertainty.{item.metric}", AgentKind.IMPACT, "impact confidence interval")
        if outcome.status == NegotiationStatus.CONVERGED:
            for index, item in enumerate(outcome.shortlist):
                detail = f"merged from {', '.join(item.merged_from)}" if item.merged_from else "strategy candidate"
                attribute(f"proposals[{index}]", AgentKind.STRATEGY, detail)
        else:
            attribute("conflict", AgentKind.STRATEGY, "spread across surviving strategy candidates")
            for objective in outcome.best_per_objective:
                attribute(f"best_per_objective.{objective}", AgentKind.STRATEGY, f"best {objective} candidate")
        if self._selected(outcome):
            attribute("tradeoffs", AgentKind.STRATEGY, "objective trade-offs of selected candidates")
        attributions.append(
            FieldAttribution(
                field="summary",
                agent_id=SYSTEM_AGENT_ID,
                confidence=1.0,
                description="rule-based rationale",
            )
        )
        return attributions

    @staticmethod
    def _tradeoffs(selected: Sequence[ScoredProposal]) -> list[TradeoffView]:
        if not selected:
            return []
        views: list[TradeoffView] = []
        for x_axis, y_axis in TRADEOFF_AXES:
            points = [
                TradeoffPoint(
                    proposal_id=item.proposal_id,
                    x=item.proposal.objectives.value(x_axis),
                    y=item.proposal.objectives.value(y_axis),
                )
                for item in selected
            ]
            frontier = [
                point.proposal_id
                for point in points
                if not any(
                    other is not point
                    and other.x >= point.x
                    and other.y >= point.y
                    and (other.x > point.x or other.y > point.y)
                    for other in points
                )
            ]
            views.append(
                TradeoffView(
                    name=f"{x_axis.value}_vs_{y_axis.value}",
                    x_objective=x_axis.value,
                    y_objective=y_axis.value,
                    points=tuple(points),
                    frontier=tuple(frontier),
                )
            )
        return views

    def _summary(self, session: SessionView, classification: str) -> str:
        outcome = session.outcome
        request = session.request
        parts = [
            f"{classification.capitalize()} at {request.location} affecting "
            f"{len(request.affected_node_ids)} node(s) for {request.duration_days:g} day(s)."
        ]
        if outcome is None:
            return parts[0]
        if outcome.status == NegotiationStatus.CONVERGED:
            if outcome.shortlist:
                top = outcome.shortlist[0]
                parts.append(f"Recommended strategy: {top.proposal.name} (consensus score {top.score:.2f}).")
                if len(outcome.shortlist) > 1:
                    alternatives = ", ".join(item.proposal.name for item in outcome.shortlist[1:])
                    parts.append(f"Alternatives: {alternatives}.")
            else:
                parts.append("No mitigation strategy was available to recommend.")
        elif outcome.conflict is not None:
            parts.append(f"Negotiation escalated for human review: {outcome.conflict.message}")
            for objective, item in outcome.conflict.competing.items():
                parts.append(f"Best on {objective}: {item.proposal.name}.")

        impact = self._result(session, AgentKind.IMPACT)
        if isinstance(impact, ImpactResult):
            cost = impact.payload.cost
            parts.append(
                f"Expected cost impact {cost.expected:,.0f} (range {cost.lower:,.0f} to {cost.upper:,.0f}, "
                f"{impact.payload.confidence_level:.0%} confidence)."
            )
        if session.failures:
            missing = ", ".join(kind.value for kind in _AGENT_ORDER if kind in session.failures)
            parts.append(f"Partial result: {missing} agent output unavailable.")
        return " ".join(parts)


def _describe_contribution(result: AgentResult) -> str:
    if isinstance(result, InfoResult):
        return f"{len(result.payload.anomalies)} anomaly(ies) across {result.payload.nodes_observed} node(s)"
    if isinstance(result, ScenarioResult):
        return f"timeline with {len(result.payload.timeline)} event(s)"
    if isinstance(result, ImpactResult):
        return f"expected cost impact {result.payload.cost.expected:,.0f}"
    if isinstance(result, StrategyResult):
        return f"{len(result.payload.candidates)} candidate strategy(ies)"
    return result.kind
