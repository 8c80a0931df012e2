from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from pydantic import BaseModel

from ..core.config import SessionSettings
from ..core.errors import AuditWriteError, SessionFailedError
from ..core.logging import get_logger
from ..schemas.results import NegotiationResult
from ..schemas.scenario import ScenarioRequest
from .coordinator import ParallelExecutionCoordinator
from .enums import FailureReason, SessionState
from .session import NegotiationSession

logger = get_logger(name=__name__)


class LookupStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"
    NOT_FOUND = "not_found"


class ResultLookup(BaseModel):
    scenario_id: str
    status: LookupStatus
    state: SessionState | None = None
    result: NegotiationResult | None = None
    failure_reason: FailureReason | None = None
    error: str | None = None


@dataclass(slots=True)
class _SessionRecord:
    session: NegotiationSession
    task: asyncio.Task[NegotiationSession]
    submitted_at: float
    finished_at: float | None = None
    duplicates: int = 0
    keys: set[str] = field(default_factory=set)


class ScenarioService:
    """Inbound surface: accepts scenarios and serves their negotiation results.

    Submissions sharing an idempotency key within the retention window are
    attached to the one session already running or finished for that key, so
    agents execute once per key.
    """

    def __init__(
        self,
        coordinator: ParallelExecutionCoordinator,
        *,
        settings: SessionSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._coordinator = coordinator
        self._settings = settings or SessionSettings()
        self._clock = clock
        self._sessions: dict[str, _SessionRecord] = {}
        self._by_key: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def submit_scenario(
        self,
        request: ScenarioRequest | Mapping[str, Any],
        *,
        idempotency_key: str | None = None,
    ) -> str:
        """Validate and accept a scenario; returns its ScenarioID.

        Raises ``ScenarioValidationError`` before any session exists when the
        request is malformed.
        """
        scenario = ScenarioRequest.parse(request)
        key = idempotency_key or scenario.fingerprint()
        async with self._lock:
            self._evict_expired()
            existing_id = self._by_key.get(key)
            if existing_id is not None:
                record = self._sessions[existing_id]
                record.duplicates += 1
                logger.info(
                    "scenario_duplicate_submission",
                    scenario_id=existing_id,
                    idempotency_key=key,
                    duplicates=record.duplicates,
                )
                return existing_id

            session = NegotiationSession.open(scenario, idempotency_key=key)
            task = asyncio.create_task(
                self._run(session),
                name=f"omnitrack-session-{session.scenario_id}",
            )
            self._sessions[session.scenario_id] = _SessionRecord(
                session=session,
                task=task,
                submitted_at=self._clock(),
                keys={key},
            )
            self._by_key[key] = session.scenario_id
        logger.info(
            "scenario_submitted",
            scenario_id=session.scenario_id,
            idempotency_key=key,
            disruption_type=scenario.disruption_type.value,
            severity=scenario.severity.value,
            nodes=len(scenario.affected_node_ids),
        )
        return session.scenario_id

    def get_negotiation_result(self, scenario_id: str) -> ResultLookup:
        record = self._sessions.get(scenario_id)
        if record is None or self._expired(record):
            return ResultLookup(scenario_id=scenario_id, status=LookupStatus.NOT_FOUND)
        session = record.session
        if session.state == SessionState.COMPLETED:
            return ResultLookup(
                scenario_id=scenario_id,
                status=LookupStatus.COMPLETED,
                state=session.state,
                result=session.result,
            )
        if session.state == SessionState.FAILED:
            return ResultLookup(
                scenario_id=scenario_id,
                status=LookupStatus.FAILED,
                state=session.state,
                failure_reason=session.failure_reason,
                error=session.error,
            )
        return ResultLookup(scenario_id=scenario_id, status=LookupStatus.PENDING, state=session.state)

    async def wait_for_result(self, scenario_id: str, *, timeout: float | None = None) -> NegotiationResult:
        """Await a session's result.

        Raises ``KeyError`` for unknown ids, ``AuditWriteError`` when the
        decision could not be audited and ``SessionFailedError`` for any
        other failure.
        """
        record = self._sessions.get(scenario_id)
        if record is None:
            raise KeyError(scenario_id)
        done, _ = await asyncio.wait({record.task}, timeout=timeout)
        if not done:
            raise asyncio.TimeoutError(f"scenario {scenario_id} still running")
        session = record.session
        if session.state == SessionState.COMPLETED and session.result is not None:
            return session.result
        reason = session.failure_reason or FailureReason.INTERNAL_ERROR
        if reason == FailureReason.AUDIT_WRITE_FAILURE:
            raise AuditWriteError(session.error or "audit write failed", scenario_id=scenario_id)
        raise SessionFailedError(scenario_id, reason=reason.value, detail=session.error)

    async def run_scenario(
        self,
        request: ScenarioRequest | Mapping[str, Any],
        *,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> NegotiationResult:
        scenario_id = await self.submit_scenario(request, idempotency_key=idempotency_key)
        return await self.wait_for_result(scenario_id, timeout=timeout)

    async def cancel(self, scenario_id: str) -> bool:
        record = self._sessions.get(scenario_id)
        if record is None or record.task.done():
            return False
        record.task.cancel()
        with suppress(asyncio.CancelledError):
            await record.task
        self._settle_cancelled(record)
        return True

    async def close(self) -> None:
        pending = [record for record in self._sessions.values() if not record.task.done()]
        for record in pending:
            record.task.cancel()
        if pending:
            await asyncio.gather(*(record.task for record in pending), return_exceptions=True)
        for record in pending:
            self._settle_cancelled(record)
        await self._coordinator.aclose()

    @property
    def active_sessions(self) -> int:
        return sum(1 for record in self._sessions.values() if not record.task.done())

    async def _run(self, session: NegotiationSession) -> NegotiationSession:
        try:
            return await self._coordinator.run(session.request, session=session)
        except AuditWriteError:
            # session is already marked failed; lookups report it
            return session
        except Exception:
            # logged by the coordinator and recorded on the session
            return session
        finally:
            record = self._sessions.get(session.scenario_id)
            if record is not None:
                record.finished_at = self._clock()

    def _settle_cancelled(self, record: _SessionRecord) -> None:
        # a task cancelled before its first step never enters _run
        session = record.session
        if not session.terminal:
            session.fail(FailureReason.CANCELLED, "cancelled before dispatch")
            logger.info("scenario_cancelled_before_dispatch", scenario_id=session.scenario_id)
        if record.finished_at is None:
            record.finished_at = self._clock()

    def _expired(self, record: _SessionRecord) -> bool:
        if record.finished_at is None:
            return False
        return self._clock() - record.finished_at > self._settings.retention_seconds

    def _evict_expired(self) -> None:
        expired = [scenario_id for scenario_id, record in self._sessions.items() if self._expired(record)]
        for scenario_id in expired:
            record = self._sessions.pop(scenario_id)
            for key in record.keys:
                if self._by_key.get(key) == scenario_id:
                    del self._by_key[key]
        if expired:
            logger.debug("scenario_sessions_evicted", count=len(expired))
