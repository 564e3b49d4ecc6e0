from pydantic import BaseModel, ConfigDict
from typing import Any, List, Optional
from datetime import datetime


class RiskRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    result_id: str
    ai_risk_score: int
    ai_risk_level: Optional[str] = None
    ai_flags: List[str] = []
    ai_summary: Optional[str] = None
    ai_generated_at: Optional[datetime] = None


class FlaggedResultListResponse(BaseModel):
    items: List[RiskRecordResponse]
    total: int
    min_score: int


class LabResultResponse(BaseModel):
    id: str
    user_id: str
    parsed_data: Optional[Any] = None
    created_at: Optional[datetime] = None
    # Present for staff callers on assessed results only
    risk: Optional[RiskRecordResponse] = None
