from .audit import AuditStore, InMemoryAuditStore, JsonlAuditStore, PostgresAuditStore, build_audit_store
from .coordinator import ParallelExecutionCoordinator
from .enums import FailureReason, SessionState
from .events import SessionEventBus, SessionStateChanged, log_state_change
from .negotiation import ConsensusNegotiationEngine, NegotiationEngine, rank_proposals
from .recorder import ExplainabilityRecorder
from .service import LookupStatus, ResultLookup, ScenarioService
from .session import NegotiationSession, SessionView
from .supervisor import AgentSupervisor, RetryPolicy

__all__ = [
    "AgentSupervisor",
    "AuditStore",
    "ConsensusNegotiationEngine",
    "ExplainabilityRecorder",
    "FailureReason",
    "InMemoryAuditStore",
    "JsonlAuditStore",
    "LookupStatus",
    "NegotiationEngine",
    "NegotiationSession",
    "ParallelExecutionCoordinator",
    "PostgresAuditStore",
    "ResultLookup",
    "RetryPolicy",
    "ScenarioService",
    "SessionEventBus",
    "SessionState",
    "SessionStateChanged",
    "SessionView",
    "build_audit_store",
    "log_state_change",
    "rank_proposals",
]
