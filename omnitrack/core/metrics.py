from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

AGENT_ATTEMPTS_TOTAL = Counter(
    "omnitrack_agent_attempts_total",
    "Supervised agent attempts grouped by outcome",
    labelnames=("agent", "outcome"),
)

AGENT_LATENCY_SECONDS = Histogram(
    "omnitrack_agent_latency_seconds",
    "Latency of supervised agent invocations including retries",
    labelnames=("agent",),
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

AGENT_UNAVAILABLE_TOTAL = Counter(
    "omnitrack_agent_unavailable_total",
    "Terminal agent failures grouped by reason",
    labelnames=("agent", "reason"),
)

SESSIONS_TOTAL = Counter(
    "omnitrack_sessions_total",
    "Negotiation sessions by terminal outcome",
    labelnames=("outcome",),
)

SESSIONS_ACTIVE = Gauge(
    "omnitrack_sessions_active",
    "Negotiation sessions currently in flight",
)

SESSION_LATENCY_SECONDS = Histogram(
    "omnitrack_session_latency_seconds",
    "End-to-end session runtime",
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

NEGOTIATION_ROUNDS = Histogram(
    "omnitrack_negotiation_rounds",
    "Consensus rounds executed per negotiation",
    labelnames=("status",),
    buckets=(0, 1, 2, 3, 4, 5, 8),
)

NEGOTIATION_ESCALATIONS_TOTAL = Counter(
    "omnitrack_negotiation_escalations_total",
    "Escalated negotiations grouped by reason",
    labelnames=("reason",),
)

AUDIT_WRITES_TOTAL = Counter(
    "omnitrack_audit_writes_total",
    "Audit log append attempts grouped by backend and outcome",
    labelnames=("backend", "outcome"),
)


def record_agent_attempt(*, agent: str, outcome: str) -> None:
    AGENT_ATTEMPTS_TOTAL.labels(agent=agent, outcome=outcome).inc()


def observe_agent_latency(*, agent: str, latency: float) -> None:
    AGENT_LATENCY_SECONDS.labels(agent=agent).observe(latency)


def increment_agent_unavailable(*, agent: str, reason: str) -> None:
    AGENT_UNAVAILABLE_TOTAL.labels(agent=agent, reason=reason).inc()


def mark_session_started() -> None:
    SESSIONS_ACTIVE.inc()


def mark_session_finished(*, outcome: str, latency: float) -> None:
    SESSIONS_ACTIVE.dec()
    SESSIONS_TOTAL.labels(outcome=outcome).inc()
    SESSION_LATENCY_SECONDS.observe(latency)


def observe_negotiation(*, status: str, rounds: int, escalation_reason: str | None = None) -> None:
    NEGOTIATION_ROUNDS.labels(status=status).observe(rounds)
    if escalation_reason is not None:
        NEGOTIATION_ESCALATIONS_TOTAL.labels(reason=escalation_reason).inc()


def record_audit_write(*, backend: str, outcome: str) -> None:
    AUDIT_WRITES_TOTAL.labels(backend=backend, outcome=outcome).inc()
