from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..core.errors import ScenarioValidationError
from ..core.logging import get_logger
from ..dependencies import get_audit_store, get_scenario_service
from ..orchestration.audit import AuditStore
from ..orchestration.service import LookupStatus, ScenarioService
from ..schemas.audit import ChainVerification

router = APIRouter()
logger = get_logger(name=__name__)


class ScenarioAccepted(BaseModel):
    scenario_id: str
    status: LookupStatus = LookupStatus.PENDING


@router.post(
    "/scenarios",
    response_model=ScenarioAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["scenarios"],
)
async def submit_scenario(
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    service: ScenarioService = Depends(get_scenario_service),
) -> ScenarioAccepted:
    try:
        payload: Any = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Request body must be JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Request body must be a JSON object")
    try:
        scenario_id = await service.submit_scenario(payload, idempotency_key=idempotency_key)
    except ScenarioValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors or str(exc)) from exc
    return ScenarioAccepted(scenario_id=scenario_id)


@router.get("/scenarios/{scenario_id}", tags=["scenarios"])
async def get_scenario_result(
    scenario_id: str,
    service: ScenarioService = Depends(get_scenario_service),
) -> JSONResponse:
    lookup = service.get_negotiation_result(scenario_id)
    if lookup.status == LookupStatus.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scenario not found")
    status_code = status.HTTP_202_ACCEPTED if lookup.status == LookupStatus.PENDING else status.HTTP_200_OK
    return JSONResponse(status_code=status_code, content=lookup.model_dump(mode="json"))


@router.get("/audit/verify", response_model=ChainVerification, tags=["audit"])
async def verify_audit_log(store: AuditStore = Depends(get_audit_store)) -> ChainVerification:
    verification = await store.verify()
    if not verification.valid:
        logger.error(
            "audit_chain_invalid",
            first_invalid_sequence=verification.first_invalid_sequence,
            error=verification.error,
        )
    return verification
