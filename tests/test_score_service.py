"""
Tests for compliance scoring.

The component rules are pure functions and are exercised with lightweight
stand-ins; the service tests run against in-memory SQLite.
"""

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import select, update

from config_manager import ScoringConfig
from employee_compliance.correlation_service import CorrelationService
from employee_compliance.models import CorrelatedEmployee, EmployeeTrainingRecord
from employee_compliance.repositories import EmployeeNotFoundError
from employee_compliance.score_service import (
    ComplianceScoreService,
    ComplianceIssue,
    IssueType,
    Severity,
    ScoreBreakdown,
    round_half_up,
    score_background_check,
    score_training,
    score_attestations,
    score_access_review,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def check(status="clear", expires_at=None):
    return SimpleNamespace(status=status, expires_at=expires_at)


def training(*statuses):
    return [SimpleNamespace(status=s) for s in statuses]


def attestations(*statuses):
    return [SimpleNamespace(status=s) for s in statuses]


def access(review_status=None, mfa_enabled=None, last_review_date=None):
    return SimpleNamespace(
        review_status=review_status, mfa_enabled=mfa_enabled, last_review_date=last_review_date
    )


def device(is_compliant, device_name=None, serial_number=None, external_asset_id="ext-1"):
    return SimpleNamespace(
        is_compliant=is_compliant,
        device_name=device_name,
        serial_number=serial_number,
        external_asset_id=external_asset_id,
    )


class TestRounding:

    @pytest.mark.parametrize("value,expected", [(0.5, 1), (1.5, 2), (2.5, 3), (84.4, 84), (84.5, 85), (0, 0)])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected


class TestBackgroundCheckRule:

    def test_no_check(self):
        issues = []
        assert score_background_check(None, NOW, issues) == 0
        assert issues[0].severity is Severity.HIGH
        assert issues[0].message == "No background check on file"

    def test_clear(self):
        issues = []
        assert score_background_check(check("clear"), NOW, issues) == 25
        assert issues == []

    @pytest.mark.parametrize("status", ["pending", "in_progress"])
    def test_in_progress(self, status):
        issues = []
        assert score_background_check(check(status), NOW, issues) == 15
        assert issues[0].severity is Severity.MEDIUM

    def test_flagged_is_critical(self):
        issues = []
        assert score_background_check(check("flagged"), NOW, issues) == 5
        assert issues[0].type is IssueType.BACKGROUND_CHECK
        assert issues[0].severity is Severity.CRITICAL

    def test_expired_overrides_status(self):
        issues = []
        expired = check("clear", expires_at=NOW - timedelta(days=1))
        assert score_background_check(expired, NOW, issues) == 5
        assert issues[0].message == "Background check expired"
        assert issues[0].details == {"expires_at": (NOW - timedelta(days=1)).isoformat()}

    def test_future_expiry_is_fine(self):
        issues = []
        assert score_background_check(check("clear", NOW + timedelta(days=1)), NOW, issues) == 25

    def test_unrecognized_status(self):
        issues = []
        assert score_background_check(check("consider"), NOW, issues) == 10
        assert issues == []


class TestTrainingRule:

    def test_no_records_benefit_of_doubt(self):
        issues = []
        assert score_training([], issues) == 25
        assert issues == []

    @pytest.mark.parametrize("statuses,expected", [
        (("completed",) * 4, 25),
        (("completed", "completed", "completed", "assigned"), 20),
        (("completed", "completed", "in_progress", "assigned"), 15),
        (("completed", "assigned", "assigned", "assigned"), 10),
        (("overdue", "completed", "completed", "completed", "completed"), 15),
        (("overdue", "completed", "completed"), 10),
        (("overdue", "overdue", "completed"), 5),
    ])
    def test_points(self, statuses, expected):
        assert score_training(training(*statuses), []) == expected

    def test_issues(self):
        issues = []
        score_training(training("overdue", "assigned", "in_progress", "completed"), issues)
        assert [(i.severity, i.message) for i in issues] == [
            (Severity.HIGH, "1 training(s) overdue"),
            (Severity.LOW, "2 training(s) in progress"),
        ]
        assert issues[0].details == {"overdue": 1, "total": 4}
        assert issues[1].details == {"in_progress": 2}


class TestAttestationRule:

    def test_no_attestations(self):
        assert score_attestations([], []) == 25

    def test_any_decline_zeroes_component(self):
        issues = []
        assert score_attestations(attestations("acknowledged", "acknowledged", "declined"), issues) == 0
        assert issues[0].severity is Severity.CRITICAL

    @pytest.mark.parametrize("statuses,expected", [
        (("acknowledged",) * 2, 25),
        (("acknowledged", "acknowledged", "acknowledged", "pending"), 20),
        (("acknowledged", "pending"), 15),
        (("pending", "pending", "acknowledged"), 10),
        (("expired", "acknowledged"), 15),
        (("expired", "expired", "acknowledged"), 5),
    ])
    def test_points(self, statuses, expected):
        assert score_attestations(attestations(*statuses), []) == expected

    def test_issue_order(self):
        issues = []
        score_attestations(attestations("declined", "expired", "pending"), issues)
        assert [i.severity for i in issues] == [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM]


class TestAccessReviewRule:

    def test_no_data_full_points(self):
        assert score_access_review(None, [], []) == 25

    def test_mfa_disabled(self):
        issues = []
        assert score_access_review(access(mfa_enabled=False), [], issues) == 20
        assert issues[0].to_dict() == {"type": "mfa", "severity": "high", "message": "MFA not enabled"}

    def test_unknown_mfa_is_not_penalized(self):
        assert score_access_review(access(mfa_enabled=None), [], []) == 25

    def test_deductions_are_additive(self):
        issues = []
        record = access(review_status="action_required", mfa_enabled=False)
        assert score_access_review(record, [device(False, device_name="Laptop")], issues) == 5
        assert [i.type for i in issues] == [IssueType.ACCESS_REVIEW, IssueType.MFA, IssueType.DEVICE]

    def test_pending_review(self):
        issues = []
        assert score_access_review(access(review_status="pending"), [], issues) == 20
        assert issues[0].severity is Severity.MEDIUM

    def test_non_compliant_device_names(self):
        issues = []
        devices = [
            device(False, device_name="Dana's Mac"),
            device(False, serial_number="SN-2"),
            device(False, external_asset_id="jamf-3"),
            device(True, device_name="Fine"),
            device(None, device_name="Unknown"),
        ]
        assert score_access_review(None, devices, issues) == 20
        assert issues[0].message == "3 device(s) non-compliant"
        assert issues[0].details == {"devices": ["Dana's Mac", "SN-2", "jamf-3"]}


class TestBreakdown:

    def test_total_and_dict(self):
        breakdown = ScoreBreakdown(25, 20, 15, 10, [
            ComplianceIssue(IssueType.TRAINING, Severity.LOW, "1 training(s) in progress", {"in_progress": 1})
        ])
        assert breakdown.total == 70
        assert breakdown.to_dict() == {
            "background_check": 25,
            "training": 20,
            "attestation": 15,
            "access_review": 10,
            "total": 70,
            "issues": [{
                "type": "training",
                "severity": "low",
                "message": "1 training(s) in progress",
                "details": {"in_progress": 1},
            }],
        }


# ============================================
# SERVICE
# ============================================

@pytest.fixture
def correlation(session):
    return CorrelationService(session)


@pytest.fixture
def scorer(session):
    return ComplianceScoreService(session)


def sync(correlation, org_id, evidence_type, *records, integration_id=None):
    return correlation.process_evidence_sync(
        org_id, integration_id or uuid.uuid4(), evidence_type, list(records)
    )


def employee_id_for(session, email):
    return session.execute(
        select(CorrelatedEmployee.id).where(CorrelatedEmployee.email == email)
    ).scalar_one()


class TestComplianceScoreService:

    def test_clear_check_without_mfa_scores_95(self, session, correlation, scorer, org_id):
        sync(correlation, org_id, "background_check_results", {"email": "a@example.com", "status": "clear"})
        sync(correlation, org_id, "mfa_status", {"email": "a@example.com", "mfaEnabled": False})

        breakdown = scorer.calculate_employee_score(employee_id_for(session, "a@example.com"))
        assert (breakdown.background_check, breakdown.training,
                breakdown.attestation, breakdown.access_review) == (25, 25, 25, 20)
        assert breakdown.total == 95
        assert [i.to_dict() for i in breakdown.issues] == [
            {"type": "mfa", "severity": "high", "message": "MFA not enabled"}
        ]

    def test_flagged_check(self, session, correlation, scorer, org_id):
        sync(correlation, org_id, "background_check_results", {"email": "f@example.com", "status": "flagged"})
        breakdown = scorer.calculate_employee_score(employee_id_for(session, "f@example.com"))
        assert breakdown.background_check == 5
        assert breakdown.issues[0].severity is Severity.CRITICAL
        assert breakdown.total == 80

    def test_running_check_supersedes_completed_one(self, session, correlation, scorer, org_id):
        sync(correlation, org_id, "background_check_results",
             {"email": "r@example.com", "externalId": "old", "status": "clear",
              "completedAt": "2023-01-01T00:00:00Z"},
             {"email": "r@example.com", "externalId": "new", "status": "in_progress",
              "initiatedAt": "2024-05-01T00:00:00Z"})
        breakdown = scorer.calculate_employee_score(employee_id_for(session, "r@example.com"))
        assert breakdown.background_check == 15

    def test_only_latest_row_per_course_counts(self, session, make_employee, scorer):
        employee = make_employee("c@example.com")
        integration_id = uuid.uuid4()
        session.add_all([
            EmployeeTrainingRecord(
                correlated_employee_id=employee.id, integration_id=integration_id,
                external_id="SEC-1", course_name="Security", course_type="required",
                status="overdue", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
            EmployeeTrainingRecord(
                correlated_employee_id=employee.id, integration_id=integration_id,
                external_id="SEC-1", course_name="Security", course_type="required",
                status="completed", created_at=datetime(2024, 2, 1, tzinfo=timezone.utc)),
            EmployeeTrainingRecord(
                correlated_employee_id=employee.id, integration_id=integration_id,
                course_name="Privacy", course_type="optional", status="waived"),
        ])
        session.flush()

        breakdown = scorer.calculate_employee_score(employee.id)
        assert breakdown.training == 25
        assert not [i for i in breakdown.issues if i.type is IssueType.TRAINING]

    def test_completion_without_course_id_supersedes_assignment(self, session, correlation, scorer, org_id):
        integration_id = uuid.uuid4()
        sync(correlation, org_id, "training_assignments",
             {"email": "d@example.com", "courseId": "SEC-1", "courseName": "Security 101", "status": "overdue"},
             integration_id=integration_id)
        session.execute(
            update(EmployeeTrainingRecord).values(created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        )
        sync(correlation, org_id, "training_completions",
             {"email": "d@example.com", "courseName": " security 101", "status": "completed"},
             integration_id=integration_id)

        breakdown = scorer.calculate_employee_score(employee_id_for(session, "d@example.com"))
        assert breakdown.training == 25
        assert not [i for i in breakdown.issues if i.type is IssueType.TRAINING]

    def test_unknown_employee(self, scorer):
        breakdown = scorer.calculate_employee_score(uuid.uuid4())
        assert breakdown.total == 0
        assert len(breakdown.issues) == 1
        assert breakdown.issues[0].severity is Severity.CRITICAL
        assert breakdown.issues[0].message == "Employee not found"

    def test_score_is_bounded(self, session, correlation, scorer, org_id):
        sync(correlation, org_id, "background_check_results", {"email": "w@example.com", "status": "flagged"})
        employee_id = employee_id_for(session, "w@example.com")
        breakdown = scorer.calculate_employee_score(employee_id)
        assert 0 <= breakdown.total <= 100
        for value in (breakdown.background_check, breakdown.training,
                      breakdown.attestation, breakdown.access_review):
            assert 0 <= value <= 25

    def test_custom_weights(self, session, correlation, org_id):
        sync(correlation, org_id, "background_check_results", {"email": "w@example.com", "status": "clear"})
        sync(correlation, org_id, "mfa_status", {"email": "w@example.com", "mfaEnabled": False})
        scoring = ScoringConfig(weights={
            "background_check": 40, "training": 20, "attestation": 20, "access_review": 20
        })
        breakdown = ComplianceScoreService(session, scoring).calculate_employee_score(
            employee_id_for(session, "w@example.com")
        )
        assert breakdown.background_check == 40
        assert breakdown.access_review == 16
        assert breakdown.total == 96

    def test_update_persists_score_and_issues(self, session, correlation, scorer, org_id):
        sync(correlation, org_id, "mfa_status", {"email": "p@example.com", "mfaEnabled": False})
        employee_id = employee_id_for(session, "p@example.com")

        breakdown = scorer.update_employee_score(employee_id)
        employee = session.get(CorrelatedEmployee, employee_id, populate_existing=True)
        assert employee.compliance_score == breakdown.total == 70
        assert [i["type"] for i in employee.compliance_issues] == ["background_check", "mfa"]

    def test_update_regenerates_issues(self, session, correlation, scorer, org_id):
        integration_id = uuid.uuid4()
        sync(correlation, org_id, "mfa_status", {"email": "p@example.com", "mfaEnabled": False},
             integration_id=integration_id)
        employee_id = employee_id_for(session, "p@example.com")
        scorer.update_employee_score(employee_id)

        sync(correlation, org_id, "mfa_status", {"email": "p@example.com", "mfaEnabled": True},
             integration_id=integration_id)
        sync(correlation, org_id, "background_check_results", {"email": "p@example.com", "status": "clear"})
        scorer.update_employee_score(employee_id)

        employee = session.get(CorrelatedEmployee, employee_id, populate_existing=True)
        assert employee.compliance_score == 100
        assert employee.compliance_issues == []

    def test_update_unknown_employee_raises(self, scorer):
        missing = uuid.uuid4()
        with pytest.raises(EmployeeNotFoundError) as exc_info:
            scorer.update_employee_score(missing)
        assert exc_info.value.employee_id == missing
