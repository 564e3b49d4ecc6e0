from functools import lru_cache
from typing import AsyncGenerator
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal.core.exceptions import AuthenticationError
from portal.core.permissions import CurrentUser, parse_role
from portal.core.security import verify_token
from portal.domain.lab.scoring import GeminiRiskScorer, RiskScorer
from portal.domain.lab.service import RiskFlagService
from portal.infrastructure.database import AsyncSessionLocal, get_db

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Authentication required")

    payload = verify_token(credentials.credentials, "access")
    if not payload:
        raise AuthenticationError("Invalid or expired token")

    user_id = payload.get("sub")
    role = parse_role(payload.get("role"))
    if not user_id or role is None:
        raise AuthenticationError("Token is missing subject or role")

    return CurrentUser(id=str(user_id), role=role)


@lru_cache
def get_risk_scorer() -> RiskScorer:
    """One scorer per process; the Gemini SDK is configured globally"""
    return GeminiRiskScorer()


def get_session_factory() -> async_sessionmaker:
    return AsyncSessionLocal


async def get_risk_flag_service(
    db: AsyncSession = Depends(get_db),
    scorer: RiskScorer = Depends(get_risk_scorer),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AsyncGenerator[RiskFlagService, None]:
    yield RiskFlagService(db, scorer=scorer, session_factory=session_factory)
