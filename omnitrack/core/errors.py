from __future__ import annotations

from typing import Any


class OmnitrackError(RuntimeError):
    """Base class for orchestration and negotiation failures."""


class ScenarioValidationError(OmnitrackError):
    """Raised when a scenario request is malformed; no session is created."""

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class AgentError(OmnitrackError):
    """Base class for failures raised by or about an analytical agent."""


class TransientAgentError(AgentError):
    """Raised by agents for network or transport class failures worth retrying."""


class AgentInputError(AgentError):
    """Raised when an agent rejects its input; never retried."""


class InvalidAgentOutputError(AgentError):
    """Raised when an agent returns a result that does not match its contract."""


class AgentUnavailableError(AgentError):
    """Terminal failure of one agent after timeout or retry exhaustion."""

    def __init__(self, agent_id: str, *, reason: str, attempts: int = 0, detail: str | None = None) -> None:
        message = f"agent {agent_id} unavailable: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.agent_id = agent_id
        self.reason = reason
        self.attempts = attempts
        self.detail = detail


class NegotiationTimeoutError(OmnitrackError):
    """Raised when consensus rounds overrun the negotiation budget."""


class AuditWriteError(OmnitrackError):
    """Raised when the audit entry for a decision cannot be made durable."""

    def __init__(self, message: str, *, scenario_id: str | None = None) -> None:
        super().__init__(message)
        self.scenario_id = scenario_id


class SessionFailedError(OmnitrackError):
    """Raised to callers awaiting a session that ended in the failed state."""

    def __init__(self, scenario_id: str, *, reason: str, detail: str | None = None) -> None:
        super().__init__(f"session {scenario_id} failed: {reason}" + (f" ({detail})" if detail else ""))
        self.scenario_id = scenario_id
        self.reason = reason
        self.detail = detail


class InvalidTransitionError(OmnitrackError):
    """Raised when a session is asked to move along an edge its state machine lacks."""


class DuplicateAgentResultError(OmnitrackError):
    """Raised when a second result for the same agent kind reaches a session."""
