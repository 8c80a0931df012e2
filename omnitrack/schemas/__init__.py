from .agents import (
    AGENT_RESULT_ADAPTER,
    STAGE_ONE,
    STAGE_TWO,
    AgentKind,
    AgentResult,
    Anomaly,
    ImpactEstimate,
    ImpactPayload,
    ImpactResult,
    InfoPayload,
    InfoResult,
    MissingInput,
    ScenarioInput,
    ScenarioPayload,
    ScenarioResult,
    StrategyPayload,
    StrategyResult,
    TimelineEvent,
)
from .audit import GENESIS_HASH, AuditLogEntry, ChainVerification, verify_chain
from .negotiation import (
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
from .results import (
    SYSTEM_AGENT_ID,
    AgentFailureRecord,
    AuditReference,
    DecisionNode,
    DecisionNodeType,
    FieldAttribution,
    NegotiationResult,
    TradeoffPoint,
    TradeoffView,
    UncertaintyRange,
)
from .scenario import DisruptionType, PreferenceWeights, ScenarioRequest, Severity
from .state import NodeState, StateSnapshot

__all__ = [
    "AGENT_RESULT_ADAPTER",
    "STAGE_ONE",
    "STAGE_TWO",
    "AgentKind",
    "AgentResult",
    "Anomaly",
    "ImpactEstimate",
    "ImpactPayload",
    "ImpactResult",
    "InfoPayload",
    "InfoResult",
    "MissingInput",
    "ScenarioInput",
    "ScenarioPayload",
    "ScenarioResult",
    "StrategyPayload",
    "StrategyResult",
    "TimelineEvent",
    "GENESIS_HASH",
    "AuditLogEntry",
    "ChainVerification",
    "verify_chain",
    "OBJECTIVES",
    "ConflictDimension",
    "ConflictRecord",
    "NegotiationOutcome",
    "NegotiationStatus",
    "Objective",
    "ObjectiveVector",
    "Proposal",
    "RoundSummary",
    "ScoredProposal",
    "SYSTEM_AGENT_ID",
    "AgentFailureRecord",
    "AuditReference",
    "DecisionNode",
    "DecisionNodeType",
    "FieldAttribution",
    "NegotiationResult",
    "TradeoffPoint",
    "TradeoffView",
    "UncertaintyRange",
    "DisruptionType",
    "PreferenceWeights",
    "ScenarioRequest",
    "Severity",
    "NodeState",
    "StateSnapshot",
]
