"""
Employee compliance queries for the presentation layer.

Provides filtered/paginated employee listings, the full correlated detail of
one employee, and the organization dashboard (metrics, department stats,
upcoming deadlines and recent changes).

Usage:
    with db_provider.session_scope() as session:
        service = EmployeeComplianceService(session, config)
        page = service.list_employees(EmployeeFilters(organization_id=org_id, search="smith"))
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select, func, and_, or_, exists, inspect
from sqlalchemy.orm import Session

from config_manager import ConfigManager, ScoringConfig, CorrelationConfig
from employee_compliance.models import (
    CorrelatedEmployee,
    EmployeeBackgroundCheck,
    EmployeeTrainingRecord,
    EmployeeAssetAssignment,
    EmployeeAccessRecord,
    EmployeeSecurityScore,
    EmployeeAttestation,
    Integration,
    Policy,
    Asset,
    AttestationStatus,
    BackgroundCheckStatus,
    EmploymentStatus,
    TrainingStatus,
    as_utc,
)
from employee_compliance.monitoring import timed_query
from employee_compliance.repositories import (
    CorrelatedEmployeeRepository,
    EmployeeNotFoundError,
)
from employee_compliance.score_service import ComplianceScoreService, round_half_up

logger = logging.getLogger(__name__)


SORTABLE_COLUMNS = {
    "email": CorrelatedEmployee.email,
    "first_name": CorrelatedEmployee.first_name,
    "last_name": CorrelatedEmployee.last_name,
    "department": CorrelatedEmployee.department,
    "job_title": CorrelatedEmployee.job_title,
    "employment_status": CorrelatedEmployee.employment_status,
    "hire_date": CorrelatedEmployee.hire_date,
    "compliance_score": CorrelatedEmployee.compliance_score,
    "last_correlated_at": CorrelatedEmployee.last_correlated_at,
    "created_at": CorrelatedEmployee.created_at,
}

# Label used for each evidence family in an employee's data sources
DATA_SOURCE_TYPES = (
    ("background_checks", "Background Check"),
    ("training_records", "LMS"),
    ("asset_assignments", "MDM"),
    ("access_records", "Identity"),
    ("security_scores", "Security Awareness"),
)


@dataclass
class EmployeeFilters:
    """Listing filters and pagination"""
    organization_id: UUID
    search: Optional[str] = None
    department: Optional[str] = None
    status: Optional[str] = None
    compliance_status: Optional[str] = None
    page: int = 1
    limit: Optional[int] = None
    sort_by: str = "last_name"
    sort_order: str = "asc"


def _serialize(obj, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    """Column values of an ORM object, with datetimes as aware UTC."""
    data = {}
    for attr in inspect(obj).mapper.column_attrs:
        if attr.key in exclude:
            continue
        value = getattr(obj, attr.key)
        if isinstance(value, datetime):
            value = as_utc(value)
        data[attr.key] = value
    return data


def _employee_ref(employee: CorrelatedEmployee) -> Dict[str, Any]:
    return {
        "email": employee.email,
        "first_name": employee.first_name,
        "last_name": employee.last_name,
    }


class EmployeeComplianceService:
    """Read-side queries over correlated employees."""

    def __init__(self, session: Session, config: Optional[ConfigManager] = None):
        self.session = session
        self.scoring: ScoringConfig = config.scoring if config else ScoringConfig()
        self.correlation: CorrelationConfig = config.correlation if config else CorrelationConfig()
        self._employees = CorrelatedEmployeeRepository(session)
        self._scores = ComplianceScoreService(session, self.scoring, self.correlation)

    # ============================================
    # LISTING
    # ============================================

    def _filter_conditions(self, filters: EmployeeFilters) -> List[Any]:
        conditions = [CorrelatedEmployee.organization_id == filters.organization_id]

        if filters.search:
            term = filters.search.strip().lower()
            conditions.append(or_(
                func.lower(CorrelatedEmployee.email).contains(term, autoescape=True),
                func.lower(CorrelatedEmployee.first_name).contains(term, autoescape=True),
                func.lower(CorrelatedEmployee.last_name).contains(term, autoescape=True),
            ))
        if filters.department:
            conditions.append(CorrelatedEmployee.department == filters.department)
        if filters.status:
            conditions.append(CorrelatedEmployee.employment_status == filters.status)

        score = CorrelatedEmployee.compliance_score
        if filters.compliance_status == "compliant":
            conditions.append(score >= self.scoring.compliant_threshold)
        elif filters.compliance_status == "at_risk":
            conditions.append(and_(
                score >= self.scoring.at_risk_threshold,
                score < self.scoring.compliant_threshold
            ))
        elif filters.compliance_status == "non_compliant":
            conditions.append(score < self.scoring.at_risk_threshold)
        elif filters.compliance_status is not None:
            raise ValueError(f"Unknown compliance status: {filters.compliance_status}")

        return conditions

    def _counts_by_employee(self, model, employee_ids: List[UUID], *conditions) -> Dict[UUID, int]:
        query = select(
            model.correlated_employee_id,
            func.count()
        ).where(
            model.correlated_employee_id.in_(employee_ids),
            *conditions
        ).group_by(model.correlated_employee_id)
        return {row[0]: row[1] for row in self.session.execute(query)}

    def _latest_background_status(self, employee_ids: List[UUID]) -> Dict[UUID, str]:
        query = select(
            EmployeeBackgroundCheck.correlated_employee_id,
            EmployeeBackgroundCheck.status
        ).where(
            EmployeeBackgroundCheck.correlated_employee_id.in_(employee_ids)
        ).order_by(
            EmployeeBackgroundCheck.completed_at.desc().nulls_first(),
            EmployeeBackgroundCheck.initiated_at.desc().nulls_last(),
            EmployeeBackgroundCheck.created_at.desc()
        )
        latest: Dict[UUID, str] = {}
        for employee_id, status in self.session.execute(query):
            latest.setdefault(employee_id, status)
        return latest

    @timed_query("list_employees")
    def list_employees(self, filters: EmployeeFilters) -> Dict[str, Any]:
        """
        List employees matching filters, one page at a time.

        Raises:
            ValueError: On an unknown sort field, sort order, compliance
                status or a page below 1
        """
        if filters.sort_by not in SORTABLE_COLUMNS:
            raise ValueError(f"Unsupported sort field: {filters.sort_by}")
        if filters.sort_order not in ("asc", "desc"):
            raise ValueError(f"Unsupported sort order: {filters.sort_order}")
        if filters.page < 1:
            raise ValueError("page must be at least 1")

        limit = filters.limit or self.correlation.default_page_size
        limit = max(1, min(limit, self.correlation.max_page_size))
        conditions = self._filter_conditions(filters)

        total = self.session.execute(
            select(func.count()).select_from(CorrelatedEmployee).where(*conditions)
        ).scalar_one()

        sort_column = SORTABLE_COLUMNS[filters.sort_by]
        ordering = sort_column.asc() if filters.sort_order == "asc" else sort_column.desc()
        query = select(CorrelatedEmployee).where(*conditions).order_by(
            ordering, CorrelatedEmployee.id
        ).offset((filters.page - 1) * limit).limit(limit)
        employees = list(self.session.execute(query).scalars().all())

        ids = [e.id for e in employees]
        data = []
        if ids:
            background_status = self._latest_background_status(ids)
            overdue = self._counts_by_employee(
                EmployeeTrainingRecord, ids,
                EmployeeTrainingRecord.status == TrainingStatus.OVERDUE.value
            )
            pending = self._counts_by_employee(
                EmployeeAttestation, ids,
                EmployeeAttestation.status == AttestationStatus.PENDING.value
            )
            background_count = self._counts_by_employee(EmployeeBackgroundCheck, ids)
            training_count = self._counts_by_employee(EmployeeTrainingRecord, ids)
            asset_count = self._counts_by_employee(EmployeeAssetAssignment, ids)
            access_count = self._counts_by_employee(EmployeeAccessRecord, ids)

            for employee in employees:
                data.append({
                    "id": employee.id,
                    "email": employee.email,
                    "first_name": employee.first_name,
                    "last_name": employee.last_name,
                    "full_name": employee.full_name,
                    "department": employee.department,
                    "job_title": employee.job_title,
                    "employment_status": employee.employment_status,
                    "compliance_score": employee.compliance_score,
                    "compliance_issues": employee.compliance_issues or [],
                    "background_check_status": background_status.get(employee.id),
                    "overdue_trainings": overdue.get(employee.id, 0),
                    "pending_attestations": pending.get(employee.id, 0),
                    "data_sources": {
                        "has_hris": employee.source_integration_id is not None,
                        "has_background_check": background_count.get(employee.id, 0) > 0,
                        "has_training": training_count.get(employee.id, 0) > 0,
                        "has_assets": asset_count.get(employee.id, 0) > 0,
                        "has_access": access_count.get(employee.id, 0) > 0,
                    },
                    "last_correlated_at": as_utc(employee.last_correlated_at),
                })

        return {
            "data": data,
            "pagination": {
                "page": filters.page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
        }

    # ============================================
    # DETAIL
    # ============================================

    def _integrations(self, integration_ids: Iterable[UUID]) -> Dict[UUID, Integration]:
        ids = {i for i in integration_ids if i is not None}
        if not ids:
            return {}
        query = select(Integration).where(Integration.id.in_(ids))
        return {i.id: i for i in self.session.execute(query).scalars()}

    @timed_query("get_employee_detail")
    def get_employee_detail(self, organization_id: UUID, employee_id: UUID) -> Dict[str, Any]:
        """
        Full correlated profile of one employee.

        Raises:
            EmployeeNotFoundError: If the employee does not exist in the organization
        """
        employee = self._employees.get_for_organization(organization_id, employee_id)
        if employee is None:
            raise EmployeeNotFoundError(employee_id)

        families = {
            "background_checks": self.session.execute(
                select(EmployeeBackgroundCheck).where(
                    EmployeeBackgroundCheck.correlated_employee_id == employee_id
                ).order_by(EmployeeBackgroundCheck.completed_at.desc().nulls_first())
            ).scalars().all(),
            "training_records": self.session.execute(
                select(EmployeeTrainingRecord).where(
                    EmployeeTrainingRecord.correlated_employee_id == employee_id
                ).order_by(
                    EmployeeTrainingRecord.status.asc(),
                    EmployeeTrainingRecord.due_date.asc().nulls_last()
                )
            ).scalars().all(),
            "asset_assignments": self.session.execute(
                select(EmployeeAssetAssignment).where(
                    EmployeeAssetAssignment.correlated_employee_id == employee_id
                ).order_by(EmployeeAssetAssignment.assigned_at.desc().nulls_last())
            ).scalars().all(),
            "access_records": self.session.execute(
                select(EmployeeAccessRecord).where(
                    EmployeeAccessRecord.correlated_employee_id == employee_id
                ).order_by(EmployeeAccessRecord.updated_at.desc())
            ).scalars().all(),
            "security_scores": self.session.execute(
                select(EmployeeSecurityScore).where(
                    EmployeeSecurityScore.correlated_employee_id == employee_id
                ).order_by(EmployeeSecurityScore.last_updated.desc()).limit(
                    self.correlation.security_score_history
                )
            ).scalars().all(),
        }
        attestation_rows = self.session.execute(
            select(EmployeeAttestation, Policy).join(
                Policy, Policy.id == EmployeeAttestation.policy_id
            ).where(
                EmployeeAttestation.correlated_employee_id == employee_id
            ).order_by(EmployeeAttestation.requested_at.desc())
        ).all()

        asset_ids = {a.asset_id for a in families["asset_assignments"] if a.asset_id}
        assets = {}
        if asset_ids:
            assets = {
                a.id: a for a in self.session.execute(
                    select(Asset).where(Asset.id.in_(asset_ids))
                ).scalars()
            }

        referenced = [employee.source_integration_id]
        for rows in families.values():
            referenced.extend(r.integration_id for r in rows)
        integrations = self._integrations(referenced)

        def integration_ref(integration_id):
            integration = integrations.get(integration_id)
            if integration is None:
                return None
            return {"id": integration.id, "name": integration.name, "type": integration.type}

        detail = _serialize(employee, exclude=("organization_id",))
        detail["full_name"] = employee.full_name
        detail["compliance_issues"] = employee.compliance_issues or []
        for key, rows in families.items():
            detail[key] = []
            for row in rows:
                item = _serialize(row)
                item["integration"] = integration_ref(row.integration_id)
                if key == "asset_assignments" and row.asset_id in assets:
                    asset = assets[row.asset_id]
                    item["asset"] = {"id": asset.id, "name": asset.name, "type": asset.asset_type}
                detail[key].append(item)
        detail["attestations"] = [
            {**_serialize(attestation), "policy": {
                "id": policy.id, "title": policy.title, "category": policy.category
            }}
            for attestation, policy in attestation_rows
        ]
        detail["data_sources"] = self._data_sources(employee, families, integrations)
        return detail

    def _data_sources(
        self,
        employee: CorrelatedEmployee,
        families: Dict[str, Any],
        integrations: Dict[UUID, Integration]
    ) -> List[Dict[str, Any]]:
        """Distinct integrations that contributed data, HRIS first."""
        sources = []
        seen = set()
        last_correlated = as_utc(employee.last_correlated_at)

        def add(integration_id, source_type, last_synced_at):
            if integration_id is None or integration_id in seen:
                return
            seen.add(integration_id)
            integration = integrations.get(integration_id)
            sources.append({
                "integration_id": integration_id,
                "integration": integration.name if integration else str(integration_id),
                "type": source_type,
                "last_synced_at": last_synced_at,
            })

        hris = integrations.get(employee.source_integration_id)
        add(
            employee.source_integration_id,
            "HRIS",
            (as_utc(hris.last_sync_at) if hris else None) or last_correlated
        )
        for key, source_type in DATA_SOURCE_TYPES:
            for row in families[key]:
                add(row.integration_id, source_type, last_correlated)
        return sources

    # ============================================
    # DASHBOARD
    # ============================================

    def get_departments(self, organization_id: UUID) -> List[str]:
        query = select(CorrelatedEmployee.department).where(
            CorrelatedEmployee.organization_id == organization_id,
            CorrelatedEmployee.department.is_not(None)
        ).distinct().order_by(CorrelatedEmployee.department)
        return [d for d in self.session.execute(query).scalars() if d]

    @timed_query("get_department_stats")
    def get_department_stats(self, organization_id: UUID) -> List[Dict[str, Any]]:
        """Active employee count and average score per department, largest first."""
        query = select(
            CorrelatedEmployee.department,
            func.count(),
            func.avg(CorrelatedEmployee.compliance_score)
        ).where(
            CorrelatedEmployee.organization_id == organization_id,
            CorrelatedEmployee.employment_status == EmploymentStatus.ACTIVE.value,
            CorrelatedEmployee.department.is_not(None)
        ).group_by(CorrelatedEmployee.department)

        stats = [
            {
                "department": department,
                "employee_count": count,
                "average_score": round_half_up(float(average or 0)),
            }
            for department, count, average in self.session.execute(query)
            if department
        ]
        stats.sort(key=lambda s: (-s["employee_count"], s["department"]))
        return stats

    @timed_query("get_upcoming_deadlines")
    def get_upcoming_deadlines(self, organization_id: UUID, now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Expiring background checks, overdue/due-soon trainings and pending attestations."""
        now = now or datetime.now(timezone.utc)
        window_end = now + timedelta(days=self.scoring.deadline_window_days)
        limit = self.correlation.deadline_list_limit

        checks = self.session.execute(
            select(EmployeeBackgroundCheck, CorrelatedEmployee).join(
                CorrelatedEmployee,
                CorrelatedEmployee.id == EmployeeBackgroundCheck.correlated_employee_id
            ).where(
                CorrelatedEmployee.organization_id == organization_id,
                EmployeeBackgroundCheck.expires_at >= now,
                EmployeeBackgroundCheck.expires_at <= window_end
            ).order_by(EmployeeBackgroundCheck.expires_at.asc()).limit(limit)
        ).all()

        trainings = self.session.execute(
            select(EmployeeTrainingRecord, CorrelatedEmployee).join(
                CorrelatedEmployee,
                CorrelatedEmployee.id == EmployeeTrainingRecord.correlated_employee_id
            ).where(
                CorrelatedEmployee.organization_id == organization_id,
                or_(
                    EmployeeTrainingRecord.status == TrainingStatus.OVERDUE.value,
                    and_(
                        EmployeeTrainingRecord.status.in_([
                            TrainingStatus.ASSIGNED.value, TrainingStatus.IN_PROGRESS.value
                        ]),
                        EmployeeTrainingRecord.due_date <= window_end
                    )
                )
            ).order_by(EmployeeTrainingRecord.due_date.asc().nulls_last()).limit(limit)
        ).all()

        attestations = self.session.execute(
            select(EmployeeAttestation, CorrelatedEmployee, Policy).join(
                CorrelatedEmployee,
                CorrelatedEmployee.id == EmployeeAttestation.correlated_employee_id
            ).join(
                Policy, Policy.id == EmployeeAttestation.policy_id
            ).where(
                CorrelatedEmployee.organization_id == organization_id,
                EmployeeAttestation.status == AttestationStatus.PENDING.value
            ).order_by(EmployeeAttestation.requested_at.asc()).limit(limit)
        ).all()

        def deadline(kind, employee, when, details):
            return {
                "type": kind,
                "employee_email": employee.email,
                "employee_name": employee.full_name,
                "deadline": as_utc(when),
                "details": details,
            }

        return {
            "expiring_background_checks": [
                deadline("background_check_expiring", employee, check.expires_at,
                         {"check_type": check.check_type})
                for check, employee in checks
            ],
            "overdue_trainings": [
                deadline(
                    "training_overdue" if training.status == TrainingStatus.OVERDUE.value else "training_due_soon",
                    employee, training.due_date, {"course_name": training.course_name}
                )
                for training, employee in trainings
            ],
            "pending_attestations": [
                deadline("attestation_pending", employee, attestation.requested_at,
                         {"policy_title": policy.title})
                for attestation, employee, policy in attestations
            ],
        }

    @timed_query("get_recent_changes")
    def get_recent_changes(self, organization_id: UUID, now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
        """New employees, completed trainings and cleared background checks."""
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=self.correlation.recent_change_days)
        limit = self.correlation.deadline_list_limit

        new_employees = self.session.execute(
            select(CorrelatedEmployee).where(
                CorrelatedEmployee.organization_id == organization_id,
                CorrelatedEmployee.created_at >= since
            ).order_by(CorrelatedEmployee.created_at.desc()).limit(limit)
        ).scalars().all()

        completed = self.session.execute(
            select(EmployeeTrainingRecord, CorrelatedEmployee).join(
                CorrelatedEmployee,
                CorrelatedEmployee.id == EmployeeTrainingRecord.correlated_employee_id
            ).where(
                CorrelatedEmployee.organization_id == organization_id,
                EmployeeTrainingRecord.status == TrainingStatus.COMPLETED.value,
                EmployeeTrainingRecord.completed_at >= since
            ).order_by(EmployeeTrainingRecord.completed_at.desc()).limit(limit)
        ).all()

        cleared = self.session.execute(
            select(EmployeeBackgroundCheck, CorrelatedEmployee).join(
                CorrelatedEmployee,
                CorrelatedEmployee.id == EmployeeBackgroundCheck.correlated_employee_id
            ).where(
                CorrelatedEmployee.organization_id == organization_id,
                EmployeeBackgroundCheck.status == BackgroundCheckStatus.CLEAR.value,
                EmployeeBackgroundCheck.completed_at >= since
            ).order_by(EmployeeBackgroundCheck.completed_at.desc()).limit(limit)
        ).all()

        return {
            "new_employees": [
                {**_employee_ref(e), "created_at": as_utc(e.created_at)} for e in new_employees
            ],
            "completed_trainings": [
                {**_employee_ref(e), "course_name": t.course_name, "completed_at": as_utc(t.completed_at)}
                for t, e in completed
            ],
            "cleared_background_checks": [
                {**_employee_ref(e), "check_type": c.check_type, "completed_at": as_utc(c.completed_at)}
                for c, e in cleared
            ],
        }

    def get_organization_metrics(self, organization_id: UUID) -> Dict[str, Any]:
        return self._scores.get_organization_metrics(organization_id).to_dict()

    def get_dashboard_metrics(self, organization_id: UUID) -> Dict[str, Any]:
        """Organization metrics plus department stats, deadlines and recent changes."""
        return {
            **self.get_organization_metrics(organization_id),
            "department_stats": self.get_department_stats(organization_id),
            "upcoming_deadlines": self.get_upcoming_deadlines(organization_id),
            "recent_changes": self.get_recent_changes(organization_id),
        }

    @timed_query("find_missing_data")
    def find_missing_data(self, organization_id: UUID) -> Dict[str, List[Dict[str, str]]]:
        """Active employees lacking evidence from each kind of system."""
        def has(model):
            return exists().where(model.correlated_employee_id == CorrelatedEmployee.id)

        query = select(
            CorrelatedEmployee,
            has(EmployeeBackgroundCheck),
            has(EmployeeTrainingRecord),
            has(EmployeeAssetAssignment),
            has(EmployeeAccessRecord),
        ).where(
            CorrelatedEmployee.organization_id == organization_id,
            CorrelatedEmployee.employment_status == EmploymentStatus.ACTIVE.value
        ).order_by(CorrelatedEmployee.email)

        missing = {
            "no_background_check": [],
            "no_training_data": [],
            "no_device_data": [],
            "no_access_data": [],
        }
        for employee, has_check, has_training, has_device, has_access in self.session.execute(query):
            entry = {
                "email": employee.email,
                "name": employee.full_name,
            }
            if not has_check:
                missing["no_background_check"].append(entry)
            if not has_training:
                missing["no_training_data"].append(entry)
            if not has_device:
                missing["no_device_data"].append(entry)
            if not has_access:
                missing["no_access_data"].append(entry)
        return missing

    # ============================================
    # MANUAL TRIGGERS
    # ============================================

    def recalculate_employee(self, organization_id: UUID, employee_id: UUID) -> None:
        """
        Recalculate one employee's score.

        Raises:
            EmployeeNotFoundError: If the employee does not exist in the organization
        """
        if self._employees.get_for_organization(organization_id, employee_id) is None:
            raise EmployeeNotFoundError(employee_id)
        breakdown = self._scores.update_employee_score(employee_id)
        logger.info("Recalculated employee %s: score=%d", employee_id, breakdown.total)

    def recalculate_organization(self, organization_id: UUID) -> int:
        return self._scores.recalculate_organization_scores(organization_id)

    def get_organization_employee_emails(self, organization_id: UUID) -> List[str]:
        return self._employees.list_emails(organization_id)
