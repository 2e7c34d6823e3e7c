"""
Compliance scoring for correlated employees.

The score is the sum of four components (background check, training, policy
attestation, access review). Each component is first rated on a 0-25 point
scale and then scaled by its configured weight, so with the default weights
(25 each) a component contributes exactly its points and the total is 0-100.

Every calculation regenerates the issue list from scratch. Scores are a
derived cache: they are persisted by update_employee_score() and the
organization-wide batch job, and read back by the metrics aggregator.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config_manager import ScoringConfig, CorrelationConfig
from employee_compliance.models import (
    AccessReviewStatus,
    AttestationStatus,
    BackgroundCheckStatus,
    TrainingStatus,
    as_utc,
)
from employee_compliance.monitoring import (
    query_timer,
    recalculation_timer,
    record_score_update,
)
from employee_compliance.repositories import (
    CorrelatedEmployeeRepository,
    EmployeeEvidenceRepository,
    EmployeeNotFoundError,
    RepositoryError,
)

logger = logging.getLogger(__name__)

MAX_COMPONENT_POINTS = 25

SCORE_BUCKETS = (
    ("90-100", 90, 101),
    ("80-89", 80, 90),
    ("70-79", 70, 80),
    ("60-69", 60, 70),
    ("<60", None, 60),
)


class IssueType(str, Enum):
    BACKGROUND_CHECK = "background_check"
    TRAINING = "training"
    ATTESTATION = "attestation"
    ACCESS_REVIEW = "access_review"
    DEVICE = "device"
    MFA = "mfa"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class ComplianceIssue:
    """A single finding attached to an employee's score"""
    type: IssueType
    severity: Severity
    message: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.details is not None:
            data["details"] = self.details
        return data


@dataclass
class ScoreBreakdown:
    """Per-component score plus the regenerated issue list"""
    background_check: int = 0
    training: int = 0
    attestation: int = 0
    access_review: int = 0
    issues: List[ComplianceIssue] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.background_check + self.training + self.attestation + self.access_review

    def to_dict(self) -> Dict[str, Any]:
        return {
            "background_check": self.background_check,
            "training": self.training,
            "attestation": self.attestation,
            "access_review": self.access_review,
            "total": self.total,
            "issues": [issue.to_dict() for issue in self.issues],
        }


@dataclass
class OrganizationMetrics:
    total_employees: int
    average_score: int
    score_distribution: List[Dict[str, Any]]
    issue_breakdown: List[Dict[str, Any]]
    compliance_rate: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_employees": self.total_employees,
            "average_score": self.average_score,
            "score_distribution": self.score_distribution,
            "issue_breakdown": self.issue_breakdown,
            "compliance_rate": self.compliance_rate,
        }


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


# ============================================
# COMPONENT RULES
# ============================================

def score_background_check(check, now: datetime, issues: List[ComplianceIssue]) -> int:
    """Points for the latest background check (or None)."""
    if check is None:
        issues.append(ComplianceIssue(
            IssueType.BACKGROUND_CHECK, Severity.HIGH, "No background check on file"
        ))
        return 0

    expires_at = as_utc(check.expires_at)
    if expires_at is not None and expires_at < now:
        issues.append(ComplianceIssue(
            IssueType.BACKGROUND_CHECK, Severity.HIGH, "Background check expired",
            {"expires_at": expires_at.isoformat()}
        ))
        return 5

    status = (check.status or "").lower()
    if status == BackgroundCheckStatus.CLEAR:
        return 25
    if status in (BackgroundCheckStatus.PENDING, BackgroundCheckStatus.IN_PROGRESS):
        issues.append(ComplianceIssue(
            IssueType.BACKGROUND_CHECK, Severity.MEDIUM, "Background check in progress",
            {"status": status}
        ))
        return 15
    if status == BackgroundCheckStatus.FLAGGED:
        issues.append(ComplianceIssue(
            IssueType.BACKGROUND_CHECK, Severity.CRITICAL, "Background check flagged - review required",
            {"status": status}
        ))
        return 5
    return 10


def score_training(records: Sequence, issues: List[ComplianceIssue]) -> int:
    """Points for training; no records gets the benefit of the doubt."""
    total = len(records)
    if total == 0:
        return 25

    statuses = [(r.status or "").lower() for r in records]
    overdue = statuses.count(TrainingStatus.OVERDUE)
    completed = statuses.count(TrainingStatus.COMPLETED)
    in_progress = statuses.count(TrainingStatus.IN_PROGRESS) + statuses.count(TrainingStatus.ASSIGNED)

    if overdue > 0:
        issues.append(ComplianceIssue(
            IssueType.TRAINING, Severity.HIGH, f"{overdue} training(s) overdue",
            {"overdue": overdue, "total": total}
        ))
    if in_progress > 0:
        issues.append(ComplianceIssue(
            IssueType.TRAINING, Severity.LOW, f"{in_progress} training(s) in progress",
            {"in_progress": in_progress}
        ))

    overdue_rate = overdue / total
    if overdue_rate > 0.5:
        return 5
    if overdue_rate > 0.25:
        return 10
    if overdue_rate > 0:
        return 15

    completion_rate = completed / total
    if completion_rate >= 1:
        return 25
    if completion_rate >= 0.75:
        return 20
    if completion_rate >= 0.5:
        return 15
    return 10


def score_attestations(attestations: Sequence, issues: List[ComplianceIssue]) -> int:
    """Points for policy attestations; any decline zeroes the component."""
    total = len(attestations)
    if total == 0:
        return 25

    statuses = [(a.status or "").lower() for a in attestations]
    pending = statuses.count(AttestationStatus.PENDING)
    declined = statuses.count(AttestationStatus.DECLINED)
    expired = statuses.count(AttestationStatus.EXPIRED)
    acknowledged = statuses.count(AttestationStatus.ACKNOWLEDGED)

    if declined > 0:
        issues.append(ComplianceIssue(
            IssueType.ATTESTATION, Severity.CRITICAL, f"{declined} policy attestation(s) declined",
            {"declined": declined}
        ))
    if expired > 0:
        issues.append(ComplianceIssue(
            IssueType.ATTESTATION, Severity.HIGH, f"{expired} policy attestation(s) expired",
            {"expired": expired}
        ))
    if pending > 0:
        issues.append(ComplianceIssue(
            IssueType.ATTESTATION, Severity.MEDIUM, f"{pending} policy attestation(s) pending",
            {"pending": pending}
        ))

    if declined > 0:
        return 0

    expired_rate = expired / total
    if expired_rate > 0.5:
        return 5
    if expired_rate > 0:
        return 15

    acknowledged_rate = acknowledged / total
    if acknowledged_rate >= 1:
        return 25
    if acknowledged_rate >= 0.75:
        return 20
    if acknowledged_rate >= 0.5:
        return 15
    return 10


def score_access_review(access_record, devices: Sequence, issues: List[ComplianceIssue]) -> int:
    """Start at 25 and apply additive deductions, floored at zero."""
    score = MAX_COMPONENT_POINTS

    if access_record is not None:
        review_status = (access_record.review_status or "").lower()
        if review_status == AccessReviewStatus.ACTION_REQUIRED:
            issues.append(ComplianceIssue(
                IssueType.ACCESS_REVIEW, Severity.HIGH, "Access review requires action",
                {"last_review_date": _isoformat(access_record.last_review_date)}
            ))
            score -= 10
        elif review_status == AccessReviewStatus.PENDING:
            issues.append(ComplianceIssue(
                IssueType.ACCESS_REVIEW, Severity.MEDIUM, "Access review pending"
            ))
            score -= 5

        if access_record.mfa_enabled is False:
            issues.append(ComplianceIssue(IssueType.MFA, Severity.HIGH, "MFA not enabled"))
            score -= 5

    non_compliant = [d for d in devices if d.is_compliant is False]
    if non_compliant:
        issues.append(ComplianceIssue(
            IssueType.DEVICE, Severity.MEDIUM, f"{len(non_compliant)} device(s) non-compliant",
            {"devices": [d.device_name or d.serial_number or d.external_asset_id for d in non_compliant]}
        ))
        score -= 5

    return max(0, score)


# ============================================
# SERVICE
# ============================================

class ComplianceScoreService:
    """
    Calculates, persists and aggregates employee compliance scores.

    Usage:
        with db_provider.session_scope() as session:
            service = ComplianceScoreService(session, config.scoring, config.correlation)
            breakdown = service.calculate_employee_score(employee_id)
    """

    def __init__(
        self,
        session: Session,
        scoring: Optional[ScoringConfig] = None,
        correlation: Optional[CorrelationConfig] = None
    ):
        self.session = session
        self.scoring = scoring or ScoringConfig()
        self.correlation = correlation or CorrelationConfig()
        self._employees = CorrelatedEmployeeRepository(session)
        self._evidence = EmployeeEvidenceRepository(session)

    def _weighted(self, component: str, points: int) -> int:
        weight = self.scoring.weights.get(component, MAX_COMPONENT_POINTS)
        return round_half_up(points * weight / MAX_COMPONENT_POINTS)

    def calculate_employee_score(self, employee_id: UUID, now: Optional[datetime] = None) -> ScoreBreakdown:
        """
        Compute the score breakdown for one employee. Performs no writes.

        An unknown employee yields an all-zero breakdown with a single
        critical "Employee not found" issue.
        """
        now = now or datetime.now(timezone.utc)

        with query_timer("calculate_employee_score"):
            if self._employees.get_by_id(employee_id) is None:
                return ScoreBreakdown(issues=[ComplianceIssue(
                    IssueType.BACKGROUND_CHECK, Severity.CRITICAL, "Employee not found"
                )])

            issues: List[ComplianceIssue] = []
            background = score_background_check(
                self._evidence.latest_background_check(employee_id), now, issues
            )
            training = score_training(self._evidence.scored_training_records(employee_id), issues)
            attestation = score_attestations(self._evidence.attestations(employee_id), issues)
            access = score_access_review(
                self._evidence.latest_access_record(employee_id),
                self._evidence.asset_assignments(employee_id),
                issues
            )

        return ScoreBreakdown(
            background_check=self._weighted("background_check", background),
            training=self._weighted("training", training),
            attestation=self._weighted("attestation", attestation),
            access_review=self._weighted("access_review", access),
            issues=issues,
        )

    def update_employee_score(self, employee_id: UUID) -> ScoreBreakdown:
        """
        Recalculate and persist one employee's score and issues.

        Raises:
            EmployeeNotFoundError: If the employee does not exist
        """
        if self._employees.get_by_id(employee_id) is None:
            raise EmployeeNotFoundError(employee_id)
        breakdown = self.calculate_employee_score(employee_id)
        self._employees.update_score(
            employee_id,
            breakdown.total,
            [issue.to_dict() for issue in breakdown.issues]
        )
        logger.debug("Employee %s scored %d (%d issues)", employee_id, breakdown.total, len(breakdown.issues))
        return breakdown

    def recalculate_organization_scores(self, organization_id: UUID) -> int:
        """
        Recalculate every employee in the organization.

        Walks employees in id order one page at a time, passing the last
        processed id to the next page fetch. Each employee is updated in its
        own savepoint; a failure is logged and the run continues. Each page is
        committed before the next is fetched.

        Returns:
            Number of employees whose score was updated
        """
        page_size = self.correlation.recalculation_batch_size
        updated = 0
        failed = 0
        cursor: Optional[UUID] = None

        with recalculation_timer():
            while True:
                employee_ids = self._employees.list_ids_after(organization_id, cursor, page_size)
                if not employee_ids:
                    break

                for employee_id in employee_ids:
                    try:
                        with self.session.begin_nested():
                            self.update_employee_score(employee_id)
                        updated += 1
                        record_score_update(True)
                    except (RepositoryError, SQLAlchemyError):
                        failed += 1
                        record_score_update(False)
                        logger.exception("Failed to recalculate score for employee %s", employee_id)

                self.session.commit()
                cursor = employee_ids[-1]
                if len(employee_ids) < page_size:
                    break

        logger.info(
            "Updated compliance scores for %d employees in organization %s (%d failed)",
            updated, organization_id, failed
        )
        return updated

    def get_organization_metrics(self, organization_id: UUID) -> OrganizationMetrics:
        """Roll up persisted scores and issues over active employees."""
        with query_timer("get_organization_metrics"):
            rows = self._employees.list_active_scores(organization_id)

        scores = [score or 0 for score, _ in rows]
        total = len(scores)

        distribution = []
        for label, low, high in SCORE_BUCKETS:
            count = sum(1 for s in scores if (low is None or s >= low) and s < high)
            distribution.append({"range": label, "count": count})

        issue_counts: Dict[str, int] = {}
        for _, issues in rows:
            for issue in issues or []:
                issue_type = issue.get("type") if isinstance(issue, dict) else None
                if issue_type:
                    issue_counts[issue_type] = issue_counts.get(issue_type, 0) + 1

        if total == 0:
            average = 0
            compliance_rate = 0
        else:
            average = round_half_up(sum(scores) / total)
            compliant = sum(1 for s in scores if s >= self.scoring.compliant_threshold)
            compliance_rate = round_half_up(compliant / total * 100)

        return OrganizationMetrics(
            total_employees=total,
            average_score=average,
            score_distribution=distribution,
            issue_breakdown=[{"type": t, "count": c} for t, c in issue_counts.items()],
            compliance_rate=compliance_rate,
        )
