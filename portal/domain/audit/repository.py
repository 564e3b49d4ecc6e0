from typing import List, Optional
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from portal.domain.audit.models import ResultAccessLog, AILog


class AuditRepository:
    """Append-only access to the review and AI call logs"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_result_view(
        self,
        result_id: str,
        viewed_by: str,
        viewed_at: Optional[datetime] = None
    ) -> ResultAccessLog:
        """Append one view row and commit it immediately"""
        entry = ResultAccessLog(
            result_id=result_id,
            viewed_by=viewed_by,
            viewed_at=viewed_at or datetime.now(timezone.utc)
        )
        self.db.add(entry)
        await self.db.commit()
        await self.db.refresh(entry)
        return entry

    def add_ai_log(self, result_id: str, model: str, response_snippet: Optional[str]) -> AILog:
        """Stage an AI call row; committed together with the caller's transaction"""
        entry = AILog(result_id=result_id, model=model, response_snippet=response_snippet)
        self.db.add(entry)
        return entry

    async def list_result_views(self, result_id: str) -> List[ResultAccessLog]:
        result = await self.db.execute(
            select(ResultAccessLog)
            .where(ResultAccessLog.result_id == result_id)
            .order_by(ResultAccessLog.viewed_at)
        )
        return list(result.scalars().all())

    async def count_result_views(self, result_id: str) -> int:
        result = await self.db.execute(
            select(func.count(ResultAccessLog.id)).where(ResultAccessLog.result_id == result_id)
        )
        return result.scalar_one()

    async def list_ai_logs(self, result_id: str) -> List[AILog]:
        result = await self.db.execute(
            select(AILog).where(AILog.result_id == result_id).order_by(AILog.created_at)
        )
        return list(result.scalars().all())
