import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-length-for-hs256")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GEMINI_API_KEY", "")

import asyncio
import json
from typing import AsyncGenerator, Callable, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from portal.main import app
from portal.api import deps
from portal.core.permissions import CurrentUser, UserRole
from portal.core.security import create_access_token
from portal.domain.audit import models as audit_models  # noqa: F401
from portal.domain.lab import models as lab_models  # noqa: F401
from portal.domain.lab.anonymise import AnonymisedRecord
from portal.domain.lab.repository import LabResultRepository
from portal.domain.lab.scoring import ScoringResult, build_risk_prompt, parse_risk_assessment
from portal.domain.lab.service import RiskFlagService
from portal.infrastructure.database import Base, get_db


# Test database URL
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

DEFAULT_REPLY = json.dumps({
    "riskLevel": "medium",
    "flaggedTests": ["Cholesterol"],
    "reasoning": "Total cholesterol slightly above the reference range.",
})


class FakeScorer:
    """Stands in for the Gemini scorer; records every record it is given"""

    model_name = "fake-risk-model"

    def __init__(
        self,
        reply: str = DEFAULT_REPLY,
        error: Optional[Exception] = None,
        delay: float = 0.0
    ):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls = []
        self.prompts = []

    async def score(self, record: AnonymisedRecord) -> ScoringResult:
        self.prompts.append(build_risk_prompt(record))
        self.calls.append(record)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ScoringResult(
            assessment=parse_risk_assessment(self.reply),
            raw_text=self.reply,
            model=self.model_name,
        )


@pytest.fixture(scope="function")
async def db_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> async_sessionmaker:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


@pytest.fixture(scope="function")
def fake_scorer() -> FakeScorer:
    return FakeScorer()


@pytest.fixture(scope="function")
def risk_service(db_session: AsyncSession, fake_scorer: FakeScorer) -> RiskFlagService:
    return RiskFlagService(db_session, scorer=fake_scorer)


@pytest.fixture(scope="function")
def sample_parsed_data() -> dict:
    """Parsed lab upload as produced by the document parser, PII included."""
    return {
        "name": "John Doe",
        "dob": "1980-02-29",
        "nhs_number": "AB123456C",
        "address": "1 High Street, London",
        "phone": "07123456789",
        "email": "john.doe@example.com",
        "gp_name": "Dr. Smith",
        "clinic_name": "Test Clinic",
        "doctor_name": "Dr. Johnson",
        "tests": [
            {"name": "Cholesterol", "value": 5.2, "unit": "mmol/L", "reference": "< 5.0"},
            {"name": "UnknownTest", "value": 100},
            {"name": "TSH", "value": 2.1, "unit": "mIU/L", "reference": "0.4-4.0"},
        ],
        "sample_date": "2024-01-15",
    }


@pytest.fixture(scope="function")
def patient_user() -> CurrentUser:
    return CurrentUser(id="patient-1", role=UserRole.PATIENT)


@pytest.fixture(scope="function")
def other_patient_user() -> CurrentUser:
    return CurrentUser(id="patient-2", role=UserRole.PATIENT)


@pytest.fixture(scope="function")
def doctor_user() -> CurrentUser:
    return CurrentUser(id="doctor-1", role=UserRole.DOCTOR)


@pytest.fixture(scope="function")
def admin_user() -> CurrentUser:
    return CurrentUser(id="admin-1", role=UserRole.ADMIN)


@pytest.fixture(scope="function")
def create_result(db_session: AsyncSession, sample_parsed_data: dict) -> Callable:
    """Factory inserting a lab_results row owned by patient-1 by default."""
    repo = LabResultRepository(db_session)

    async def _create(**overrides):
        data = {"user_id": "patient-1", "parsed_data": sample_parsed_data}
        data.update(overrides)
        return await repo.create(data)

    return _create


def token_for(user: CurrentUser) -> str:
    return create_access_token(subject=user.id, data={"role": user.role.value})


@pytest.fixture(scope="function")
async def client(session_factory, fake_scorer: FakeScorer) -> AsyncGenerator[AsyncClient, None]:
    """Test client with database and scorer dependency overrides."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.get_risk_scorer] = lambda: fake_scorer
    app.dependency_overrides[deps.get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def auth_headers() -> Callable:
    def _headers(user: CurrentUser) -> dict:
        return {"Authorization": f"Bearer {token_for(user)}"}
    return _headers


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "audit: mark test as audit logging related"
    )
