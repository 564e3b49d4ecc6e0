from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, TypeVar
from datetime import datetime, timezone
import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal.api.v1.lab.schemas import (
    FlaggedResultListResponse,
    LabResultResponse,
    RiskRecordResponse,
)
from portal.core.exceptions import (
    AuthorizationError,
    InvalidModelResponse,
    NoAnalysableTests,
    NotFoundError,
    ScoringUnavailable,
)
from portal.core.permissions import (
    CurrentUser,
    PermissionChecker,
    ensure_can_read_risk_flags,
    is_staff,
)
from portal.domain.audit.repository import AuditRepository
from portal.domain.lab.anonymise import anonymise
from portal.domain.lab.repository import LabResultRepository
from portal.domain.lab.scoring import GeminiRiskScorer, RiskScorer, risk_score_for

logger = logging.getLogger(__name__)

# Upper bound for any model text kept in storage
SNIPPET_MAX_CHARS = 200

T = TypeVar("T")


def truncate_snippet(text: Optional[str], limit: int = SNIPPET_MAX_CHARS) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]


class InFlightAssessments:
    """At most one running assessment per result id within this process"""

    def __init__(self):
        self._tasks: Dict[str, Tuple["asyncio.Future[Any]", bool]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    async def run(self, key: str, factory: Callable[[], Awaitable[T]], force: bool = False) -> T:
        """
        Join the running task for ``key`` or start one.

        A forced caller only joins a forced task; otherwise it waits for the
        running one to settle and starts its own.
        """
        while True:
            entry = self._tasks.get(key)
            if entry is None or entry[0].done():
                task = asyncio.ensure_future(factory())
                self._tasks[key] = (task, force)
                task.add_done_callback(lambda done: self._discard(key, done))
                break

            task, forced = entry
            if forced or not force:
                logger.info("Joining in-flight risk assessment for result %s", key)
                break
            await asyncio.wait({task})

        # A cancelled caller must not cancel the shared assessment
        return await asyncio.shield(task)

    def _discard(self, key: str, task: "asyncio.Future[Any]") -> None:
        entry = self._tasks.get(key)
        if entry is not None and entry[0] is task:
            del self._tasks[key]


in_flight_assessments = InFlightAssessments()


def _risk_record(row: Any) -> RiskRecordResponse:
    if isinstance(row, Mapping):
        get = row.get
    else:
        def get(name: str) -> Any:
            return getattr(row, name, None)
    return RiskRecordResponse(
        result_id=get("id"),
        ai_risk_score=get("ai_risk_score"),
        ai_risk_level=get("ai_risk_level"),
        ai_flags=get("ai_flags") or [],
        ai_summary=get("ai_summary"),
        ai_generated_at=get("ai_generated_at"),
    )


class RiskFlagService:
    """Generates, stores and serves AI risk flags for lab results"""

    def __init__(
        self,
        db: AsyncSession,
        scorer: Optional[RiskScorer] = None,
        session_factory: Optional[async_sessionmaker] = None
    ):
        self.db = db
        self.repo = LabResultRepository(db)
        self.audit_repo = AuditRepository(db)
        self.scorer = scorer if scorer is not None else GeminiRiskScorer()
        # Shared assessments outlive the request that started them
        self.session_factory = session_factory

    async def request_risk_assessment(self, result_id: str, force: bool = False) -> RiskRecordResponse:
        """
        Score a result's anonymised tests and persist the outcome.

        An existing assessment is returned as is unless ``force`` is set.
        Scoring or validation failures leave the stored row untouched.
        """
        return await in_flight_assessments.run(
            result_id, lambda: self._assess(result_id, force), force=force
        )

    async def _assess(self, result_id: str, force: bool) -> RiskRecordResponse:
        if self.session_factory is None:
            return await self._assess_in(self.db, result_id, force)
        async with self.session_factory() as session:
            return await self._assess_in(session, result_id, force)

    async def _assess_in(self, db: AsyncSession, result_id: str, force: bool) -> RiskRecordResponse:
        repo = LabResultRepository(db)
        result = await repo.get(result_id)
        if result is None:
            raise NotFoundError("Result not found", details={"result_id": result_id})

        if result.ai_risk_score is not None and not force:
            logger.info("Risk flags already exist for result %s", result_id)
            return _risk_record(result)

        record = anonymise(result.parsed_data)
        if not record.tests:
            raise NoAnalysableTests(details={"result_id": result_id})

        logger.info(
            "Generating risk flags for result %s with %d tests", result_id, len(record.tests)
        )

        try:
            scoring = await self.scorer.score(record)
            risk_score = risk_score_for(scoring.assessment.risk_level)
        except (ScoringUnavailable, InvalidModelResponse) as exc:
            logger.error(
                "Risk scoring failed for result %s: %s", result_id, exc.error_code
            )
            raise

        assessment = scoring.assessment
        try:
            repo.apply_risk_assessment(
                result,
                risk_score=risk_score,
                risk_level=assessment.risk_level,
                flags=assessment.flagged_tests,
                summary=truncate_snippet(assessment.reasoning) or None,
                generated_at=datetime.now(timezone.utc),
            )
            AuditRepository(db).add_ai_log(
                result_id=result_id,
                model=scoring.model,
                response_snippet=truncate_snippet(scoring.raw_text),
            )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.error("Failed to save risk assessment for result %s", result_id)
            raise

        await db.refresh(result)
        logger.info(
            "Risk flags generated for result %s: %s (%d)",
            result_id,
            assessment.risk_level,
            risk_score,
        )
        return _risk_record(result)

    async def read_risk_flags(self, result_id: str, user: CurrentUser) -> RiskRecordResponse:
        """Staff-only read of a result's risk flags, audited once per call"""
        role = ensure_can_read_risk_flags(user.role)

        row = await self.repo.get_risk_record(result_id, role)
        if row is None:
            raise NotFoundError("Result not found", details={"result_id": result_id})
        if row.get("ai_risk_score") is None:
            raise NotFoundError(
                "No risk assessment for this result",
                details={"result_id": result_id}
            )

        await self.audit_repo.record_result_view(result_id, user.id)
        return _risk_record(row)

    async def list_flagged_results(
        self,
        user: CurrentUser,
        min_score: int = 2,
        limit: int = 50
    ) -> FlaggedResultListResponse:
        """Assessed results at or above ``min_score``, highest risk first"""
        role = ensure_can_read_risk_flags(user.role)
        rows = await self.repo.list_flagged(role, min_score=min_score, limit=limit)
        items = [_risk_record(row) for row in rows]
        return FlaggedResultListResponse(items=items, total=len(items), min_score=min_score)

    async def get_result(self, result_id: str, user: CurrentUser) -> LabResultResponse:
        """A result as the caller is allowed to see it"""
        row = await self.repo.get_result_view(result_id, user.role)
        if row is None:
            raise NotFoundError("Result not found", details={"result_id": result_id})

        if not PermissionChecker.can_access_result(user, row.get("user_id")):
            raise AuthorizationError("Insufficient permissions to access this result")

        risk = None
        if is_staff(user.role) and row.get("ai_risk_score") is not None:
            await self.audit_repo.record_result_view(result_id, user.id)
            risk = _risk_record(row)

        return LabResultResponse(
            id=row["id"],
            user_id=row["user_id"],
            parsed_data=row.get("parsed_data"),
            created_at=row.get("created_at"),
            risk=risk,
        )
