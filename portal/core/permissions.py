from typing import Dict, FrozenSet, Optional, Union
import enum
import logging

from pydantic import BaseModel, ConfigDict

from portal.core.exceptions import AccessDenied

logger = logging.getLogger(__name__)


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    NURSE = "nurse"
    RECEPTIONIST = "receptionist"
    PATIENT = "patient"


class Permissions:
    """Permission constants for lab results and risk flags"""

    LAB_RESULTS_READ = "lab_results:read"
    LAB_RESULTS_READ_OWN = "lab_results:read:own"

    RISK_FLAGS_READ = "risk_flags:read"
    RISK_FLAGS_GENERATE = "risk_flags:generate"


ROLE_PERMISSIONS: Dict[UserRole, FrozenSet[str]] = {
    UserRole.ADMIN: frozenset({
        Permissions.LAB_RESULTS_READ,
        Permissions.RISK_FLAGS_READ,
        Permissions.RISK_FLAGS_GENERATE,
    }),
    UserRole.DOCTOR: frozenset({
        Permissions.LAB_RESULTS_READ,
        Permissions.RISK_FLAGS_READ,
        Permissions.RISK_FLAGS_GENERATE,
    }),
    UserRole.NURSE: frozenset({Permissions.LAB_RESULTS_READ}),
    UserRole.RECEPTIONIST: frozenset(),
    UserRole.PATIENT: frozenset({Permissions.LAB_RESULTS_READ_OWN}),
}

# Only these roles may ever see ai_flags / ai_risk_score
STAFF_ROLES: FrozenSet[UserRole] = frozenset({UserRole.DOCTOR, UserRole.ADMIN})


class CurrentUser(BaseModel):
    """Authenticated caller as resolved from the access token"""
    model_config = ConfigDict(frozen=True)

    id: str
    role: UserRole


def parse_role(role: Union[UserRole, str, None]) -> Optional[UserRole]:
    """Map a raw role claim onto a known role, None when unrecognised"""
    if isinstance(role, UserRole):
        return role
    if not isinstance(role, str):
        return None
    try:
        return UserRole(role.strip().lower())
    except ValueError:
        return None


def has_permission(role: Union[UserRole, str, None], permission: str) -> bool:
    parsed = parse_role(role)
    if parsed is None:
        return False
    return permission in ROLE_PERMISSIONS.get(parsed, frozenset())


def is_staff(role: Union[UserRole, str, None]) -> bool:
    return parse_role(role) in STAFF_ROLES


def ensure_can_read_risk_flags(role: Union[UserRole, str, None]) -> UserRole:
    """
    Single authorization gate for every read of risk flags or risk scores.

    Returns the parsed staff role, raises AccessDenied for anyone else.
    """
    parsed = parse_role(role)
    if parsed not in STAFF_ROLES or not has_permission(parsed, Permissions.RISK_FLAGS_READ):
        logger.warning("Risk flag read denied for role %r", role)
        raise AccessDenied(details={"role": parsed.value if parsed else None})
    return parsed


def ensure_can_generate_risk_flags(role: Union[UserRole, str, None]) -> UserRole:
    """Gate for triggering a new risk assessment"""
    parsed = parse_role(role)
    if parsed not in STAFF_ROLES or not has_permission(parsed, Permissions.RISK_FLAGS_GENERATE):
        logger.warning("Risk flag generation denied for role %r", role)
        raise AccessDenied(
            message="Insufficient permissions to generate risk flags",
            details={"role": parsed.value if parsed else None}
        )
    return parsed


class PermissionChecker:
    """Helper class for checking result-level access"""

    @staticmethod
    def can_access_result(user: CurrentUser, result_owner_id: Optional[str]) -> bool:
        """Staff-type roles read any result, patients only their own"""
        if has_permission(user.role, Permissions.LAB_RESULTS_READ):
            return True
        if has_permission(user.role, Permissions.LAB_RESULTS_READ_OWN):
            return result_owner_id is not None and str(result_owner_id) == str(user.id)
        return False
