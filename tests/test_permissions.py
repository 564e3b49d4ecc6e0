import pytest

from portal.core.exceptions import AccessDenied, AuthorizationError
from portal.core.permissions import (
    CurrentUser,
    PermissionChecker,
    STAFF_ROLES,
    UserRole,
    ensure_can_generate_risk_flags,
    ensure_can_read_risk_flags,
    is_staff,
    parse_role,
)
from portal.domain.lab.models import RISK_RESULT_COLUMNS
from portal.domain.lab.repository import result_columns_for, risk_columns_for

RISK_COLUMN_NAMES = {column.key for column in RISK_RESULT_COLUMNS}


@pytest.mark.unit
def test_staff_roles_are_doctor_and_admin_only():
    assert STAFF_ROLES == frozenset({UserRole.DOCTOR, UserRole.ADMIN})


@pytest.mark.unit
@pytest.mark.parametrize("role", [UserRole.DOCTOR, UserRole.ADMIN, "doctor", "Admin", " DOCTOR "])
def test_staff_may_read_risk_flags(role):
    assert ensure_can_read_risk_flags(role) in STAFF_ROLES
    assert ensure_can_generate_risk_flags(role) in STAFF_ROLES


@pytest.mark.unit
@pytest.mark.parametrize("role", [
    UserRole.PATIENT, UserRole.NURSE, UserRole.RECEPTIONIST,
    "patient", "superuser", "", None, 3,
])
def test_everyone_else_is_denied(role):
    with pytest.raises(AccessDenied) as exc_info:
        ensure_can_read_risk_flags(role)
    assert exc_info.value.status_code == 403
    assert isinstance(exc_info.value, AuthorizationError)

    with pytest.raises(AccessDenied):
        ensure_can_generate_risk_flags(role)


@pytest.mark.unit
def test_parse_role():
    assert parse_role("Doctor") is UserRole.DOCTOR
    assert parse_role(UserRole.NURSE) is UserRole.NURSE
    assert parse_role("clinician") is None
    assert parse_role(None) is None
    assert is_staff("admin") and not is_staff("patient")


@pytest.mark.unit
@pytest.mark.parametrize("role", [UserRole.PATIENT, UserRole.NURSE, "unknown", None])
def test_storage_projection_refuses_risk_columns_to_non_staff(role):
    with pytest.raises(AccessDenied):
        risk_columns_for(role)

    names = {column.key for column in result_columns_for(role)}
    assert names.isdisjoint(RISK_COLUMN_NAMES)


@pytest.mark.unit
@pytest.mark.parametrize("role", [UserRole.DOCTOR, UserRole.ADMIN])
def test_storage_projection_includes_risk_columns_for_staff(role):
    assert RISK_COLUMN_NAMES <= {column.key for column in result_columns_for(role)}
    assert RISK_COLUMN_NAMES <= {column.key for column in risk_columns_for(role)}


@pytest.mark.unit
def test_result_access_rules():
    patient = CurrentUser(id="patient-1", role=UserRole.PATIENT)
    nurse = CurrentUser(id="nurse-1", role=UserRole.NURSE)
    receptionist = CurrentUser(id="desk-1", role=UserRole.RECEPTIONIST)

    assert PermissionChecker.can_access_result(patient, "patient-1")
    assert not PermissionChecker.can_access_result(patient, "patient-2")
    assert not PermissionChecker.can_access_result(patient, None)
    assert PermissionChecker.can_access_result(nurse, "patient-2")
    assert not PermissionChecker.can_access_result(receptionist, "patient-1")
