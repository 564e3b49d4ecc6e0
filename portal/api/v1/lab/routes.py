from fastapi import APIRouter, Depends, Query, status

from portal.api import deps
from portal.api.v1.lab.schemas import (
    FlaggedResultListResponse,
    LabResultResponse,
    RiskRecordResponse,
)
from portal.core.permissions import CurrentUser, ensure_can_generate_risk_flags
from portal.domain.lab.service import RiskFlagService

router = APIRouter(prefix="/lab", tags=["Lab"])


@router.get("/results/flagged", response_model=FlaggedResultListResponse, status_code=status.HTTP_200_OK)
async def list_flagged_results(
    min_score: int = Query(2, ge=1, le=3),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(deps.get_current_user),
    service: RiskFlagService = Depends(deps.get_risk_flag_service),
):
    """Assessed results for the staff dashboard, highest risk first"""
    return await service.list_flagged_results(current_user, min_score=min_score, limit=limit)


@router.get("/results/{result_id}", response_model=LabResultResponse, status_code=status.HTTP_200_OK)
async def get_result(
    result_id: str,
    current_user: CurrentUser = Depends(deps.get_current_user),
    service: RiskFlagService = Depends(deps.get_risk_flag_service),
):
    return await service.get_result(result_id, current_user)


@router.post("/results/{result_id}/risk-flags", response_model=RiskRecordResponse, status_code=status.HTTP_200_OK)
async def generate_risk_flags(
    result_id: str,
    force: bool = Query(False),
    current_user: CurrentUser = Depends(deps.get_current_user),
    service: RiskFlagService = Depends(deps.get_risk_flag_service),
):
    """Run the anonymised risk assessment for a result"""
    ensure_can_generate_risk_flags(current_user.role)
    return await service.request_risk_assessment(result_id, force=force)


@router.get("/results/{result_id}/risk-flags", response_model=RiskRecordResponse, status_code=status.HTTP_200_OK)
async def read_risk_flags(
    result_id: str,
    current_user: CurrentUser = Depends(deps.get_current_user),
    service: RiskFlagService = Depends(deps.get_risk_flag_service),
):
    return await service.read_risk_flags(result_id, current_user)
