from typing import Any, List, Optional, Tuple, Union
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.engine import RowMapping

from portal.core.exceptions import AccessDenied
from portal.core.permissions import UserRole, is_staff
from portal.domain.lab.models import LabResult, PUBLIC_RESULT_COLUMNS, RISK_RESULT_COLUMNS

Role = Union[UserRole, str, None]


def result_columns_for(role: Role) -> Tuple[Any, ...]:
    """Columns a caller with this role may project from lab_results"""
    if is_staff(role):
        return PUBLIC_RESULT_COLUMNS + RISK_RESULT_COLUMNS
    return PUBLIC_RESULT_COLUMNS


def risk_columns_for(role: Role) -> Tuple[Any, ...]:
    """Risk projection; refuses non-staff roles regardless of the caller's own checks"""
    if not is_staff(role):
        raise AccessDenied(details={"layer": "storage"})
    return (LabResult.id, LabResult.user_id) + RISK_RESULT_COLUMNS


class LabResultRepository:
    """Repository for lab result data access operations"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, result_data: dict) -> LabResult:
        result = LabResult(**result_data)
        self.db.add(result)
        await self.db.commit()
        await self.db.refresh(result)
        return result

    async def get(self, result_id: str) -> Optional[LabResult]:
        """Full row, for the assessment pipeline only"""
        result = await self.db.execute(select(LabResult).where(LabResult.id == result_id))
        return result.scalar_one_or_none()

    async def get_result_view(self, result_id: str, role: Role) -> Optional[RowMapping]:
        result = await self.db.execute(
            select(*result_columns_for(role)).where(LabResult.id == result_id)
        )
        return result.mappings().one_or_none()

    async def get_risk_record(self, result_id: str, role: Role) -> Optional[RowMapping]:
        result = await self.db.execute(
            select(*risk_columns_for(role)).where(LabResult.id == result_id)
        )
        return result.mappings().one_or_none()

    async def list_flagged(self, role: Role, min_score: int = 1, limit: int = 50) -> List[RowMapping]:
        query = (
            select(*risk_columns_for(role))
            .where(LabResult.ai_risk_score.is_not(None))
            .where(LabResult.ai_risk_score >= min_score)
            .order_by(LabResult.ai_risk_score.desc(), LabResult.ai_generated_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.mappings().all())

    def apply_risk_assessment(
        self,
        result: LabResult,
        risk_score: int,
        risk_level: str,
        flags: List[str],
        summary: Optional[str],
        generated_at: datetime
    ) -> None:
        """Stage the risk columns; the caller commits"""
        result.ai_risk_score = risk_score
        result.ai_risk_level = risk_level
        result.ai_flags = list(flags)
        result.ai_summary = summary
        result.ai_generated_at = generated_at
