from __future__ import annotations

import pytest

from omnitrack.core.errors import AuditWriteError
from omnitrack.orchestration.audit import InMemoryAuditStore
from omnitrack.orchestration.enums import SessionState
from omnitrack.orchestration.negotiation import ConsensusNegotiationEngine
from omnitrack.orchestration.recorder import ExplainabilityRecorder
from omnitrack.orchestration.session import NegotiationSession, SessionView
from omnitrack.schemas.agents import AgentKind
from omnitrack.schemas.negotiation import NegotiationStatus
from omnitrack.schemas.results import SYSTEM_AGENT_ID, AgentFailureRecord, DecisionNodeType
from tests.helpers.stubs import (
    FlakyAuditStore,
    RecordingSleep,
    impact_result,
    info_result,
    make_proposals,
    make_request,
    scenario_result,
    strategy_result,
)


async def _negotiated_view(*, results=None, failures=(), proposals=None) -> SessionView:
    session = NegotiationSession.open(make_request())
    for result in results if results is not None else (info_result(), scenario_result(), impact_result()):
        session.record_result(result)
    for failure in failures:
        session.record_failure(failure)
    strategy = strategy_result(proposals)
    session.record_result(strategy)
    for state in (SessionState.RUNNING, SessionState.AGGREGATING, SessionState.NEGOTIATING):
        session.transition(state)
    session.outcome = await ConsensusNegotiationEngine().negotiate(
        strategy.payload.candidates, session.request.weights, scenario_id=session.scenario_id
    )
    session.transition(
        SessionState.CONVERGED if session.outcome.status == NegotiationStatus.CONVERGED else SessionState.ESCALATED
    )
    return session.view()


@pytest.mark.asyncio
async def test_decision_tree_links_classification_agents_and_proposals() -> None:
    view = await _negotiated_view()
    recorder = ExplainabilityRecorder(InMemoryAuditStore())

    result = recorder.explain(view)

    tree = result.decision_tree
    assert tree.node_type == DecisionNodeType.CLASSIFICATION
    assert tree.label == "high severity natural disaster"
    assert [child.node_id for child in tree.children] == [
        "agent:info",
        "agent:scenario",
        "agent:impact",
        "agent:strategy",
    ]
    leaves = tree.leaves()
    assert [leaf.node_id for leaf in leaves] == [f"proposal:{item.proposal_id}" for item in result.proposals]
    for leaf in leaves:
        assert leaf.uncertainty is not None
        assert leaf.uncertainty.worst <= leaf.uncertainty.expected <= leaf.uncertainty.best


@pytest.mark.asyncio
async def test_every_output_field_is_attributed() -> None:
    view = await _negotiated_view()
    result = ExplainabilityRecorder(InMemoryAuditStore()).explain(view)

    classification = result.attribution_for("classification")
    assert classification is not None
    assert classification.agent_id == "scenario-agent"
    assert classification.confidence == pytest.approx(0.8)
    for index in range(len(result.proposals)):
        attribution = result.attribution_for(f"proposals[{index}]")
        assert attribution is not None and attribution.agent_kind == AgentKind.STRATEGY
    assert result.attribution_for("uncertainty.cost").agent_id == "impact-agent"
    assert result.attribution_for("summary").agent_id == SYSTEM_AGENT_ID


@pytest.mark.asyncio
async def test_uncertainty_ranges_follow_impact_intervals() -> None:
    view = await _negotiated_view()
    result = ExplainabilityRecorder(InMemoryAuditStore()).explain(view)

    cost = next(item for item in result.uncertainty if item.metric == "cost")
    assert (cost.best, cost.expected, cost.worst) == (80_000, 100_000, 120_000)
    assert cost.confidence_level == pytest.approx(0.9)
    assert result.completeness == pytest.approx(1.0)
    assert result.overall_confidence == pytest.approx((0.9 + 0.8 + 0.7 + 0.8) / 4)


@pytest.mark.asyncio
async def test_missing_scenario_agent_is_flagged_in_tree_and_summary() -> None:
    failure = AgentFailureRecord(kind=AgentKind.SCENARIO, agent_id="scenario-agent", reason="timeout", attempts=1)
    view = await _negotiated_view(results=(info_result(), impact_result()), failures=(failure,))

    result = ExplainabilityRecorder(InMemoryAuditStore()).explain(view)

    assert result.partial
    assert result.classification == "high natural disaster"
    scenario_node = next(child for child in result.decision_tree.children if child.node_id == "agent:scenario")
    assert scenario_node.status == "unavailable"
    assert "timeout" in scenario_node.label
    assert result.attribution_for("classification").agent_id == SYSTEM_AGENT_ID
    assert "scenario agent output unavailable" in result.summary


@pytest.mark.asyncio
async def test_escalated_outcome_explains_competing_proposals() -> None:
    proposals = make_proposals(
        [
            (0.95, 0.1, 0.3, 0.4),
            (0.1, 0.95, 0.4, 0.3),
            (0.3, 0.4, 0.95, 0.1),
            (0.4, 0.3, 0.1, 0.95),
        ]
    )
    view = await _negotiated_view(proposals=proposals)

    result = ExplainabilityRecorder(InMemoryAuditStore()).explain(view)

    assert result.status == NegotiationStatus.ESCALATED
    assert result.proposals == ()
    assert result.conflict is not None
    assert result.attribution_for("conflict") is not None
    assert result.attribution_for("best_per_objective.cost") is not None
    assert "escalated" in result.summary
    assert len(result.decision_tree.leaves()) == 4


@pytest.mark.asyncio
async def test_tradeoff_views_mark_the_frontier() -> None:
    view = await _negotiated_view()
    result = ExplainabilityRecorder(InMemoryAuditStore()).explain(view)

    cost_vs_risk = next(view for view in result.tradeoffs if view.name == "cost_vs_risk")
    assert {point.proposal_id for point in cost_vs_risk.points} == {item.proposal_id for item in result.proposals}
    # (0.8, 0.2), (0.2, 0.9) and (0.5, 0.5) are mutually non-dominated on this plane
    assert set(cost_vs_risk.frontier) == {"p1", "p2", "p3"}


@pytest.mark.asyncio
async def test_annotate_writes_one_audit_entry() -> None:
    store = InMemoryAuditStore()
    view = await _negotiated_view()

    result = await ExplainabilityRecorder(store).annotate(view)

    entries = await store.list_entries()
    assert len(entries) == 1
    assert result.audit is not None
    assert result.audit.entry_id == entries[0].entry_id
    assert entries[0].outcome == NegotiationStatus.CONVERGED
    assert entries[0].rationale == result.summary


@pytest.mark.asyncio
async def test_annotate_raises_after_exhausting_audit_retries() -> None:
    store = FlakyAuditStore(failures=5)
    sleep = RecordingSleep()
    view = await _negotiated_view()

    with pytest.raises(AuditWriteError):
        await ExplainabilityRecorder(store, sleep=sleep).annotate(view)

    assert store.attempts == 3
    assert len(sleep.delays) == 2
