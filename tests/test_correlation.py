"""
Tests for evidence correlation: dispatch, identity resolution and the
category handlers.

Runs against in-memory SQLite (see conftest.py).
"""

import uuid
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from employee_compliance.correlation_service import (
    CorrelationService,
    IdentityResolver,
    RecordValidationError,
    SyncResult,
    parse_datetime,
    parse_bool,
    parse_int,
)
from employee_compliance.evidence_types import EvidenceCategory
from employee_compliance.models import (
    CorrelatedEmployee,
    EmployeeBackgroundCheck,
    EmployeeTrainingRecord,
    EmployeeAssetAssignment,
    EmployeeAccessRecord,
    EmployeeSecurityScore,
    as_utc,
)
from employee_compliance.repositories import CorrelatedEmployeeRepository


@pytest.fixture
def service(session):
    return CorrelationService(session)


@pytest.fixture
def integration_id():
    return uuid.uuid4()


def count(session, model):
    return session.execute(select(func.count()).select_from(model)).scalar_one()


def employee_by_email(session, org_id, email):
    return session.execute(
        select(CorrelatedEmployee).where(
            CorrelatedEmployee.organization_id == org_id,
            CorrelatedEmployee.email == email
        ).execution_options(populate_existing=True)
    ).scalar_one()


# ============================================
# PARSING HELPERS
# ============================================

class TestParsing:

    def test_parse_datetime_zulu(self):
        assert parse_datetime("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)

    def test_parse_datetime_converts_offset_to_utc(self):
        parsed = parse_datetime("2024-03-01T12:00:00+02:00")
        assert parsed == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        assert parsed.tzinfo == timezone.utc

    def test_parse_datetime_date_only(self):
        assert parse_datetime("2021-06-15") == datetime(2021, 6, 15, tzinfo=timezone.utc)

    def test_parse_datetime_empty(self):
        assert parse_datetime(None) is None
        assert parse_datetime("") is None

    def test_parse_datetime_invalid(self):
        with pytest.raises(RecordValidationError):
            parse_datetime("next tuesday")

    def test_parse_bool(self):
        assert parse_bool(True) is True
        assert parse_bool("false") is False
        assert parse_bool("Yes") is True
        assert parse_bool(None) is None
        with pytest.raises(RecordValidationError):
            parse_bool("maybe")

    def test_parse_int_rejects_bool(self):
        assert parse_int("87") == 87
        with pytest.raises(RecordValidationError):
            parse_int(True)

    def test_sync_result_addition(self):
        total = SyncResult(2, 1) + SyncResult(3, 0)
        assert total.to_dict() == {"processed": 5, "errors": 1}


# ============================================
# DISPATCH
# ============================================

class TestDispatch:

    def test_unknown_evidence_type_is_a_noop(self, service, session, org_id, integration_id):
        result = service.process_evidence_sync(
            org_id, integration_id, "vulnerability_scan", [{"email": "a@example.com"}]
        )
        assert result == SyncResult(0, 0)
        assert count(session, CorrelatedEmployee) == 0

    def test_empty_batch(self, service, org_id, integration_id):
        result = service.process_evidence_sync(org_id, integration_id, "employee_roster", [])
        assert result.to_dict() == {"processed": 0, "errors": 0}

    def test_handler_for_every_category(self, service):
        for category in EvidenceCategory:
            assert service.handler_for(category).category is category

    def test_non_mapping_record_is_counted_as_error(self, service, session, org_id, integration_id):
        result = service.process_evidence_sync(
            org_id, integration_id, "employee_roster",
            ["alice@example.com", {"email": "bob@example.com"}]
        )
        assert result.processed == 1
        assert result.errors == 1
        assert count(session, CorrelatedEmployee) == 1


# ============================================
# IDENTITY RESOLUTION
# ============================================

class TestIdentityResolver:

    def test_resolve_is_idempotent_and_case_insensitive(self, session, org_id):
        resolver = IdentityResolver(session)
        first = resolver.resolve_employee(org_id, "Alice@Example.com")
        second = resolver.resolve_employee(org_id, "  alice@example.com ")
        assert first == second
        assert count(session, CorrelatedEmployee) == 1

    def test_placeholder_has_only_identity_fields(self, session, org_id):
        employee_id = IdentityResolver(session).resolve_employee(org_id, "new@example.com")
        employee = session.get(CorrelatedEmployee, employee_id)
        assert employee.email == "new@example.com"
        assert employee.first_name is None
        assert employee.employment_status is None
        assert employee.last_correlated_at is not None

    def test_same_email_in_two_organizations(self, session, org_id, other_org_id):
        resolver = IdentityResolver(session)
        assert resolver.resolve_employee(org_id, "a@example.com") != \
            resolver.resolve_employee(other_org_id, "a@example.com")

    def test_blank_email_rejected(self, session, org_id):
        with pytest.raises(RecordValidationError):
            IdentityResolver(session).resolve_employee(org_id, "   ")


# ============================================
# ROSTER
# ============================================

class TestRosterHandler:

    def test_creates_employee_with_attributes(self, service, session, org_id, integration_id):
        result = service.process_evidence_sync(org_id, integration_id, "employee_roster", [{
            "email": "Jane.Doe@Example.com",
            "employeeId": "E-100",
            "firstName": "Jane",
            "lastName": "Doe",
            "department": "Engineering",
            "jobTitle": "Engineer",
            "managerEmail": "Boss@Example.com",
            "hireDate": "2021-06-15",
        }])
        assert result.to_dict() == {"processed": 1, "errors": 0}

        employee = employee_by_email(session, org_id, "jane.doe@example.com")
        assert employee.external_id == "E-100"
        assert employee.first_name == "Jane"
        assert employee.department == "Engineering"
        assert employee.manager_email == "boss@example.com"
        assert as_utc(employee.hire_date) == datetime(2021, 6, 15, tzinfo=timezone.utc)
        assert employee.employment_status == "active"
        assert employee.source_integration_id == integration_id

    def test_resync_enriches_in_place(self, service, session, org_id, integration_id):
        service.process_evidence_sync(org_id, integration_id, "employee_roster", [
            {"email": "jane@example.com", "firstName": "Jane", "department": "Sales"}
        ])
        service.process_evidence_sync(org_id, integration_id, "employee_roster", [
            {"email": "JANE@example.com", "department": "Marketing", "employmentStatus": "on_leave"}
        ])

        assert count(session, CorrelatedEmployee) == 1
        employee = employee_by_email(session, org_id, "jane@example.com")
        assert employee.department == "Marketing"
        assert employee.first_name == "Jane"
        assert employee.employment_status == "on_leave"

    def test_null_status_keeps_stored_status(self, service, session, org_id, integration_id):
        service.process_evidence_sync(org_id, integration_id, "employee_roster", [
            {"email": "jane@example.com", "employmentStatus": "terminated"}
        ])
        service.process_evidence_sync(org_id, integration_id, "employee_roster", [
            {"email": "jane@example.com", "employmentStatus": None}
        ])
        assert employee_by_email(session, org_id, "jane@example.com").employment_status == "terminated"

    def test_roster_enriches_placeholder(self, service, session, org_id, integration_id):
        service.process_evidence_sync(org_id, integration_id, "background_check_results", [
            {"email": "late@example.com", "status": "clear"}
        ])
        placeholder = employee_by_email(session, org_id, "late@example.com")

        service.process_evidence_sync(org_id, integration_id, "employee_roster", [
            {"email": "late@example.com", "firstName": "Late", "lastName": "Joiner"}
        ])
        employee = employee_by_email(session, org_id, "late@example.com")
        assert employee.id == placeholder.id
        assert employee.full_name == "Late Joiner"

    def test_missing_email_counts_error_and_continues(self, service, session, org_id, integration_id):
        result = service.process_evidence_sync(org_id, integration_id, "employee_roster", [
            {"firstName": "Nobody"},
            {"email": ""},
            {"email": "ok@example.com"},
        ])
        assert result.to_dict() == {"processed": 1, "errors": 2}

    def test_snake_case_keys_accepted(self, service, session, org_id, integration_id):
        service.process_evidence_sync(org_id, integration_id, "org_chart", [
            {"email": "snake@example.com", "first_name": "Sam", "job_title": "Analyst"}
        ])
        employee = employee_by_email(session, org_id, "snake@example.com")
        assert employee.first_name == "Sam"
        assert employee.job_title == "Analyst"


# ============================================
# BACKGROUND CHECKS
# ============================================

class TestBackgroundCheckHandler:

    def test_upsert_by_external_id(self, service, session, org_id, integration_id):
        service.process_evidence_sync(org_id, integration_id, "background_check_results", [
            {"email": "a@example.com", "externalId": "chk-1", "status": "Pending", "checkType": "criminal"}
        ])
        service.process_evidence_sync(org_id, integration_id, "background_check_results", [
            {"email": "a@example.com", "externalId": "chk-1", "status": "clear",
             "completedAt": "2024-01-10T00:00:00Z"}
        ])

        checks = session.execute(select(EmployeeBackgroundCheck)).scalars().all()
        assert len(checks) == 1
        assert checks[0].status == "clear"
        assert as_utc(checks[0].completed_at) == datetime(2024, 1, 10, tzinfo=timezone.utc)
        assert checks[0].raw_data["externalId"] == "chk-1"

    def test_synthesized_external_id(self, service, session, org_id, integration_id):
        service.process_evidence_sync(org_id, integration_id, "screening_status", [
            {"email": "B@example.com", "status": "clear"},
            {"email": "b@example.com", "status": "clear", "checkType": "credit"},
        ])
        external_ids = sorted(session.execute(select(EmployeeBackgroundCheck.external_id)).scalars())
        assert external_ids == [
            f"{integration_id}_b@example.com_credit",
            f"{integration_id}_b@example.com_general",
        ]

    def test_missing_status_is_an_error(self, service, session, org_id, integration_id):
        result = service.process_evidence_sync(org_id, integration_id, "background_check_results", [
            {"email": "a@example.com"}
        ])
        assert result.errors == 1
        assert count(session, EmployeeBackgroundCheck) == 0

    def test_invalid_timestamp_rolls_back_only_that_record(self, service, session, org_id, integration_id):
        result = service.process_evidence_sync(org_id, integration_id, "background_check_results", [
            {"email": "bad@example.com", "status": "clear", "completedAt": "not a date"},
            {"email": "good@example.com", "status": "clear"},
        ])
        assert result.to_dict() == {"processed": 1, "errors": 1}
        assert count(session, EmployeeBackgroundCheck) == 1

    def test_store_failure_is_isolated(self, service, session, org_id, integration_id):
        handler = service.handler_for(EvidenceCategory.BACKGROUND_CHECK)
        original = handler.evidence.upsert_background_check
        calls = []

        def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return original(*args, **kwargs)

        with patch.object(handler.evidence, "upsert_background_check", side_effect=flaky):
            result = service.process_evidence_sync(org_id, integration_id, "background_check_results", [
                {"email": "first@example.com", "status": "clear"},
                {"email": "second@example.com", "status": "clear"},
            ])

        assert result.to_dict() == {"processed": 1, "errors": 1}
        assert count(session, EmployeeBackgroundCheck) == 1
        # The failed record's placeholder was rolled back with its savepoint
        assert CorrelatedEmployeeRepository(session).list_emails(org_id) == ["second@example.com"]


# ============================================
# TRAINING
# ============================================

class TestTrainingHandler:

    def test_appends_rows(self, service, session, org_id, integration_id):
        records = [
            {"email": "t@example.com", "courseId": "SEC-101", "courseName": "Security Basics",
             "status": "Completed", "isRequired": True, "score": "92.5",
             "completedAt": "2024-02-01T00:00:00Z"},
            {"email": "t@example.com", "courseName": "Ethics", "status": "assigned"},
        ]
        service.process_evidence_sync(org_id, integration_id, "training_completions", records)
        service.process_evidence_sync(org_id, integration_id, "training_completions", records[:1])

        rows = session.execute(
            select(EmployeeTrainingRecord).order_by(EmployeeTrainingRecord.course_name)
        ).scalars().all()
        assert len(rows) == 3
        ethics = rows[0]
        assert ethics.course_type == "optional"
        assert ethics.external_id is None
        security = rows[1]
        assert security.course_type == "required"
        assert security.status == "completed"
        assert security.score == 92.5
        assert security.external_id == "SEC-101"

    @pytest.mark.parametrize("record", [
        {"email": "t@example.com", "status": "assigned"},
        {"email": "t@example.com", "courseName": "Ethics"},
        {"courseName": "Ethics", "status": "assigned"},
    ])
    def test_required_fields(self, service, session, org_id, integration_id, record):
        result = service.process_evidence_sync(org_id, integration_id, "training_assignments", [record])
        assert result.errors == 1
        assert count(session, EmployeeTrainingRecord) == 0


# ============================================
# DEVICES
# ============================================

class TestDeviceHandler:

    def test_links_asset_by_serial_number(self, service, session, org_id, integration_id, make_asset):
        asset = make_asset(serial_number="C02XYZ")
        service.process_evidence_sync(org_id, integration_id, "device_inventory", [
            {"email": "d@example.com", "serialNumber": "C02XYZ", "deviceName": "Dana's Mac",
             "isCompliant": False}
        ])

        assignment = session.execute(select(EmployeeAssetAssignment)).scalar_one()
        assert assignment.asset_id == asset.id
        assert assignment.external_asset_id == f"{integration_id}_d@example.com_C02XYZ"
        assert assignment.device_type == "unknown"
        assert assignment.is_compliant is False

    def test_asset_in_other_org_is_not_linked(self, service, session, org_id, other_org_id, integration_id, make_asset):
        make_asset(serial_number="C02XYZ", organization_id=other_org_id)
        service.process_evidence_sync(org_id, integration_id, "device_assignments", [
            {"email": "d@example.com", "serialNumber": "C02XYZ"}
        ])
        assert session.execute(select(EmployeeAssetAssignment.asset_id)).scalar_one() is None

    def test_upsert_by_external_asset_id(self, service, session, org_id, integration_id):
        for compliant in (True, False):
            service.process_evidence_sync(org_id, integration_id, "device_compliance", [
                {"email": "d@example.com", "externalAssetId": "jamf-7", "deviceType": "laptop",
                 "isCompliant": compliant}
            ])
        assignment = session.execute(
            select(EmployeeAssetAssignment).execution_options(populate_existing=True)
        ).scalar_one()
        assert assignment.is_compliant is False
        assert assignment.device_type == "laptop"

    def test_requires_a_device_key(self, service, session, org_id, integration_id):
        result = service.process_evidence_sync(org_id, integration_id, "device_inventory", [
            {"email": "d@example.com", "deviceName": "Mystery"}
        ])
        assert result.errors == 1
        assert count(session, EmployeeAssetAssignment) == 0
        assert count(session, CorrelatedEmployee) == 0


# ============================================
# ACCESS
# ============================================

class TestAccessHandler:

    def test_latest_record_replaces_snapshot(self, service, session, org_id, integration_id):
        service.process_evidence_sync(org_id, integration_id, "user_access_list", [
            {"email": "x@example.com", "systems": ["github", {"name": "aws", "role": "admin"}],
             "mfaEnabled": True, "reviewStatus": "Approved"}
        ])
        service.process_evidence_sync(org_id, integration_id, "mfa_status", [
            {"email": "x@example.com", "mfaEnabled": False}
        ])

        record = session.execute(
            select(EmployeeAccessRecord).execution_options(populate_existing=True)
        ).scalar_one()
        assert record.mfa_enabled is False
        assert record.review_status is None
        assert record.systems_access == []

    def test_one_row_per_integration(self, service, session, org_id):
        for _ in range(2):
            service.process_evidence_sync(org_id, uuid.uuid4(), "user_access_list", [
                {"email": "x@example.com", "mfaEnabled": True}
            ])
        assert count(session, EmployeeAccessRecord) == 2

    def test_systems_normalized(self, service, session, org_id, integration_id):
        service.process_evidence_sync(org_id, integration_id, "app_assignments", [
            {"email": "x@example.com", "systems": ["github", {"name": "aws", "role": "admin"}],
             "reviewStatus": "ACTION_REQUIRED"}
        ])
        record = session.execute(select(EmployeeAccessRecord)).scalar_one()
        assert record.systems_access == [{"name": "github"}, {"name": "aws", "role": "admin"}]
        assert record.review_status == "action_required"

    def test_invalid_systems_rejected(self, service, session, org_id, integration_id):
        result = service.process_evidence_sync(org_id, integration_id, "user_access_list", [
            {"email": "x@example.com", "systems": "github"},
            {"email": "y@example.com", "systems": [42]},
        ])
        assert result.errors == 2


# ============================================
# SECURITY SCORES
# ============================================

class TestSecurityScoreHandler:

    def test_appends_history(self, service, session, org_id, integration_id):
        service.process_evidence_sync(org_id, integration_id, "security_awareness_score", [
            {"email": "s@example.com", "overallScore": 70, "riskLevel": "medium"},
            {"email": "s@example.com", "overallScore": "85", "phishingTestsSent": 4,
             "lastUpdated": "2024-05-01T00:00:00Z"},
        ])
        scores = sorted(session.execute(select(EmployeeSecurityScore.overall_score)).scalars())
        assert scores == [70, 85]

    @pytest.mark.parametrize("score", [-1, 101, "high", None])
    def test_invalid_overall_score(self, service, session, org_id, integration_id, score):
        result = service.process_evidence_sync(org_id, integration_id, "phishing_test_results", [
            {"email": "s@example.com", "overallScore": score}
        ])
        assert result.errors == 1
        assert count(session, EmployeeSecurityScore) == 0


def test_roster_emails_are_scoped_to_organization(service, session, org_id, other_org_id, integration_id):
    service.process_evidence_sync(org_id, integration_id, "employee_roster", [
        {"email": "zed@example.com"}, {"email": "amy@example.com"}
    ])
    service.process_evidence_sync(other_org_id, integration_id, "employee_roster", [
        {"email": "other@example.com"}
    ])
    assert CorrelatedEmployeeRepository(session).list_emails(org_id) == ["amy@example.com", "zed@example.com"]
