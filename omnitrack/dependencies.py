from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends

from .agents.rules import default_agents
from .agents.state import InMemoryStateReader
from .core.config import Settings, get_settings
from .orchestration.audit import AuditStore, build_audit_store
from .orchestration.coordinator import ParallelExecutionCoordinator
from .orchestration.events import SessionEventBus, log_state_change
from .orchestration.negotiation import ConsensusNegotiationEngine
from .orchestration.recorder import ExplainabilityRecorder
from .orchestration.service import ScenarioService
from .orchestration.supervisor import AgentSupervisor

_scenario_service_singleton: ScenarioService | None = None
_audit_store_singleton: AuditStore | None = None


def build_scenario_service(settings: Settings, *, audit_store: AuditStore | None = None) -> ScenarioService:
    audit_store = audit_store or build_audit_store(settings)
    events = SessionEventBus(settings.events)
    events.subscribe(log_state_change)
    coordinator = ParallelExecutionCoordinator(
        agents=default_agents(),
        supervisor=AgentSupervisor(settings.supervisor),
        state_reader=InMemoryStateReader(),
        negotiation_engine=ConsensusNegotiationEngine(settings.negotiation),
        recorder=ExplainabilityRecorder(
            audit_store,
            settings=settings.explainability,
            audit_settings=settings.audit,
        ),
        state_reader_settings=settings.state_reader,
        events=events,
    )
    return ScenarioService(coordinator, settings=settings.sessions)


def get_audit_store_singleton(settings: Settings) -> AuditStore:
    global _audit_store_singleton
    if _audit_store_singleton is None:
        _audit_store_singleton = build_audit_store(settings)
    return _audit_store_singleton


def get_scenario_service_singleton(settings: Settings) -> ScenarioService:
    global _scenario_service_singleton
    if _scenario_service_singleton is None:
        _scenario_service_singleton = build_scenario_service(
            settings,
            audit_store=get_audit_store_singleton(settings),
        )
    return _scenario_service_singleton


async def shutdown_singletons() -> None:
    global _scenario_service_singleton, _audit_store_singleton
    if _scenario_service_singleton is not None:
        await _scenario_service_singleton.close()
        _scenario_service_singleton = None
    if _audit_store_singleton is not None:
        await _audit_store_singleton.close()
        _audit_store_singleton = None


async def get_app_settings() -> AsyncIterator[Settings]:
    yield get_settings()


async def get_scenario_service(
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[ScenarioService]:
    yield get_scenario_service_singleton(settings)


async def get_audit_store(
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[AuditStore]:
    yield get_audit_store_singleton(settings)
