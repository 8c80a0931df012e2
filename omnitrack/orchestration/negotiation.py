from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from statistics import fmean

from ..core.config import NegotiationSettings
from ..core.errors import NegotiationTimeoutError
from ..core.logging import get_logger
from ..core.metrics import observe_negotiation
from ..schemas.negotiation import (
    OBJECTIVES,
    ConflictDimension,
    ConflictRecord,
    NegotiationOutcome,
    NegotiationStatus,
    Objective,
    ObjectiveVector,
    Proposal,
    RoundSummary,
    ScoredProposal,
)
from ..schemas.scenario import PreferenceWeights

logger = get_logger(name=__name__)

# scores closer than this are ties and fall back to creation order
SCORE_PRECISION = 9


def score_vector(vector: Sequence[float], weights: PreferenceWeights) -> float:
    cost, risk, sustainability, time = vector
    return weights.cost * cost + weights.risk * risk + weights.sustainability * sustainability + weights.time * time


def _creation_key(proposal: Proposal) -> tuple:
    return (proposal.sequence, proposal.created_at, proposal.proposal_id)


@dataclass(slots=True)
class _Candidate:
    members: tuple[Proposal, ...]
    vector: tuple[float, float, float, float]

    @classmethod
    def of(cls, proposal: Proposal) -> "_Candidate":
        return cls(members=(proposal,), vector=proposal.objectives.as_tuple())

    @property
    def lead(self) -> Proposal:
        return self.members[0]

    @property
    def signature(self) -> tuple[str, ...]:
        return tuple(member.proposal_id for member in self.members)

    def distance(self, other: "_Candidate") -> float:
        return max(abs(a - b) for a, b in zip(self.vector, other.vector))

    def dominates(self, other: "_Candidate") -> bool:
        pairs = list(zip(self.vector, other.vector))
        return all(mine >= theirs for mine, theirs in pairs) and any(mine > theirs for mine, theirs in pairs)

    def absorb(self, other: "_Candidate") -> "_Candidate":
        left, right = len(self.members), len(other.members)
        total = left + right
        vector = tuple((a * left + b * right) / total for a, b in zip(self.vector, other.vector))
        members = tuple(sorted(self.members + other.members, key=_creation_key))
        return _Candidate(members=members, vector=vector)  # type: ignore[arg-type]

    def to_proposal(self) -> Proposal:
        if len(self.members) == 1:
            return self.lead
        lead = self.lead
        costs = [member.estimated_cost for member in self.members if member.estimated_cost is not None]
        benefits = [member.estimated_benefit for member in self.members if member.estimated_benefit is not None]
        return Proposal(
            proposal_id="+".join(self.signature),
            name=lead.name,
            objectives=ObjectiveVector.from_values(self.vector),
            rationale=" | ".join(member.rationale for member in self.members if member.rationale),
            estimated_cost=fmean(costs) if costs else None,
            estimated_benefit=fmean(benefits) if benefits else None,
            sequence=lead.sequence,
            created_at=lead.created_at,
        )


@dataclass(slots=True)
class _NegotiationState:
    candidates: list[_Candidate]
    rounds: list[RoundSummary] = field(default_factory=list)

    def signature(self) -> frozenset[tuple[str, ...]]:
        return frozenset(candidate.signature for candidate in self.candidates)


def rank_proposals(proposals: Sequence[Proposal], weights: PreferenceWeights) -> list[ScoredProposal]:
    """Score and totally order proposals: descending score, then creation order."""
    return _rank([_Candidate.of(proposal) for proposal in proposals], weights)


def _rank(candidates: Sequence[_Candidate], weights: PreferenceWeights) -> list[ScoredProposal]:
    scored = [(score_vector(candidate.vector, weights), candidate) for candidate in candidates]
    scored.sort(key=lambda item: (-round(item[0], SCORE_PRECISION), _creation_key(item[1].lead)))
    return [
        ScoredProposal(
            proposal=candidate.to_proposal(),
            score=score,
            rank=index,
            merged_from=candidate.signature if len(candidate.members) > 1 else (),
        )
        for index, (score, candidate) in enumerate(scored, start=1)
    ]


class NegotiationEngine:
    async def negotiate(
        self,
        proposals: Sequence[Proposal],
        weights: PreferenceWeights,
        *,
        scenario_id: str | None = None,
    ) -> NegotiationOutcome:
        raise NotImplementedError


class ConsensusNegotiationEngine(NegotiationEngine):
    """Bounded-round merge and prune consensus over multi-objective proposals.

    Each round merges proposals whose objective vectors lie within the
    similarity tolerance and prunes Pareto-dominated ones. Rounds stop once a
    round changes nothing or the shortlist size is reached. A larger surviving
    set whose objective spread exceeds the conflict tolerance escalates.
    """

    def __init__(self, settings: NegotiationSettings | None = None) -> None:
        self._settings = settings or NegotiationSettings()

    @property
    def settings(self) -> NegotiationSettings:
        return self._settings

    async def negotiate(
        self,
        proposals: Sequence[Proposal],
        weights: PreferenceWeights,
        *,
        scenario_id: str | None = None,
    ) -> NegotiationOutcome:
        ordered = sorted(proposals, key=_creation_key)
        state = _NegotiationState(candidates=[_Candidate.of(proposal) for proposal in ordered])
        if not state.candidates:
            logger.warning("negotiation_no_proposals", scenario_id=scenario_id)
            outcome = NegotiationOutcome(status=NegotiationStatus.CONVERGED, weights=weights)
            observe_negotiation(status=outcome.status.value, rounds=0)
            return outcome

        try:
            await self._run_within_deadline(state, scenario_id=scenario_id)
        except NegotiationTimeoutError as exc:
            logger.warning(
                "negotiation_timeout",
                scenario_id=scenario_id,
                error=str(exc),
                rounds=len(state.rounds),
                surviving=len(state.candidates),
                deadline_seconds=self._settings.deadline_seconds,
            )
            outcome = self._escalate(state, weights, reason="negotiation_timeout")
        else:
            outcome = self._conclude(state, weights)

        escalation_reason = outcome.conflict.reason if outcome.conflict is not None else None
        observe_negotiation(status=outcome.status.value, rounds=outcome.rounds_run, escalation_reason=escalation_reason)
        if outcome.status == NegotiationStatus.ESCALATED:
            logger.warning(
                "negotiation_escalated",
                scenario_id=scenario_id,
                reason=escalation_reason,
                dimensions=[dimension.objective.value for dimension in outcome.conflict.dimensions],
                surviving=len(state.candidates),
            )
        return outcome

    async def _run_within_deadline(self, state: _NegotiationState, *, scenario_id: str | None) -> None:
        try:
            await asyncio.wait_for(
                self._run_rounds(state, scenario_id=scenario_id),
                timeout=self._settings.deadline_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise NegotiationTimeoutError(
                f"negotiation exceeded {self._settings.deadline_seconds:g}s after {len(state.rounds)} rounds"
            ) from exc

    async def _run_rounds(self, state: _NegotiationState, *, scenario_id: str | None) -> None:
        for round_number in range(1, self._settings.max_rounds + 1):
            before = state.signature()
            incoming = len(state.candidates)
            merged = self._merge(state.candidates)
            survivors = self._prune(merged)
            state.candidates = survivors
            summary = RoundSummary(
                round=round_number,
                candidates_in=incoming,
                merged=incoming - len(merged),
                pruned=len(merged) - len(survivors),
                candidates_out=len(survivors),
            )
            state.rounds.append(summary)
            logger.debug("negotiation_round", scenario_id=scenario_id, **summary.model_dump())
            if len(survivors) <= self._settings.shortlist_size or state.signature() == before:
                return
            await asyncio.sleep(0)

    def _merge(self, candidates: Sequence[_Candidate]) -> list[_Candidate]:
        clusters: list[_Candidate] = []
        for candidate in sorted(candidates, key=lambda item: _creation_key(item.lead)):
            for index, cluster in enumerate(clusters):
                if cluster.distance(candidate) <= self._settings.similarity_tolerance:
                    clusters[index] = cluster.absorb(candidate)
                    break
            else:
                clusters.append(candidate)
        return clusters

    @staticmethod
    def _prune(candidates: Sequence[_Candidate]) -> list[_Candidate]:
        return [
            candidate
            for candidate in candidates
            if not any(other is not candidate and other.dominates(candidate) for other in candidates)
        ]

    def _conclude(self, state: _NegotiationState, weights: PreferenceWeights) -> NegotiationOutcome:
        ranked = _rank(state.candidates, weights)
        limit = self._settings.shortlist_size
        if len(ranked) > limit and self._conflicting_dimensions(state.candidates, ranked, strict=True):
            return self._escalate(state, weights, reason="objective_spread", ranked=ranked)
        return NegotiationOutcome(
            status=NegotiationStatus.CONVERGED,
            weights=weights,
            shortlist=tuple(ranked[:limit]),
            rounds=tuple(state.rounds),
        )

    def _escalate(
        self,
        state: _NegotiationState,
        weights: PreferenceWeights,
        *,
        reason: str,
        ranked: list[ScoredProposal] | None = None,
    ) -> NegotiationOutcome:
        ranked = ranked if ranked is not None else _rank(state.candidates, weights)
        dimensions = self._conflicting_dimensions(state.candidates, ranked, strict=reason == "objective_spread")
        best = {objective.value: self._best_for(objective, ranked) for objective in OBJECTIVES} if ranked else {}
        competing = {dimension.objective.value: best[dimension.objective.value] for dimension in dimensions}
        names = ", ".join(dimension.objective.value for dimension in dimensions) or "none"
        if reason == "negotiation_timeout":
            message = (
                f"Negotiation exceeded its {self._settings.deadline_seconds:g}s budget with "
                f"{len(ranked)} proposals outstanding; widest objectives: {names}."
            )
        else:
            message = (
                f"{len(ranked)} non-dominated proposals remain after {len(state.rounds)} rounds; "
                f"objectives beyond tolerance {self._settings.conflict_tolerance:g}: {names}."
            )
        conflict = ConflictRecord(
            reason=reason,  # type: ignore[arg-type]
            dimensions=tuple(dimensions),
            competing=competing,
            surviving_proposals=len(ranked),
            rounds=len(state.rounds),
            message=message,
        )
        return NegotiationOutcome(
            status=NegotiationStatus.ESCALATED,
            weights=weights,
            conflict=conflict,
            best_per_objective=best,
            rounds=tuple(state.rounds),
        )

    def _conflicting_dimensions(
        self,
        candidates: Sequence[_Candidate],
        ranked: Sequence[ScoredProposal],
        *,
        strict: bool,
    ) -> list[ConflictDimension]:
        if not candidates:
            return []
        tolerance = self._settings.conflict_tolerance
        dimensions: list[ConflictDimension] = []
        for index, objective in enumerate(OBJECTIVES):
            values = [candidate.vector[index] for candidate in candidates]
            dimensions.append(
                ConflictDimension(
                    objective=objective,
                    spread=max(values) - min(values),
                    tolerance=tolerance,
                    minimum=min(values),
                    maximum=max(values),
                    leader_proposal_id=self._best_for(objective, ranked).proposal_id,
                )
            )
        exceeding = [dimension for dimension in dimensions if dimension.spread > tolerance]
        if exceeding or strict:
            return exceeding
        return [max(dimensions, key=lambda dimension: dimension.spread)]

    @staticmethod
    def _best_for(objective: Objective, ranked: Sequence[ScoredProposal]) -> ScoredProposal:
        # ranked is already in score / creation order, so max() keeps the earliest on ties
        return max(ranked, key=lambda item: item.proposal.objectives.value(objective))
