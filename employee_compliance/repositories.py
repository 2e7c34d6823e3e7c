"""
Repository Pattern for Employee Compliance Data

Provides the data access layer used by the correlation and scoring services.
Upserts are issued as dialect-level INSERT ... ON CONFLICT statements so that
concurrent syncs touching the same natural key never create duplicates.
PostgreSQL and SQLite are supported.
"""

import logging
from typing import List, Optional, Dict, Any, Sequence
from uuid import UUID
from datetime import datetime, timezone

from sqlalchemy import select, update, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from employee_compliance.models import (
    CorrelatedEmployee,
    EmployeeBackgroundCheck,
    EmployeeTrainingRecord,
    EmployeeAssetAssignment,
    EmployeeAccessRecord,
    EmployeeSecurityScore,
    EmployeeAttestation,
    Asset,
    EmploymentStatus,
    TrainingStatus,
    normalize_email,
)
from employee_compliance.monitoring import timed_query

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""
    pass


class EmployeeNotFoundError(EntityNotFoundError):
    """Raised when a correlated employee does not exist."""

    def __init__(self, employee_id):
        super().__init__(f"Employee not found: {employee_id}")
        self.employee_id = employee_id


_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dialect_insert(session: Session, model):
    """Return an INSERT construct that supports ON CONFLICT for the bound dialect."""
    dialect = session.get_bind().dialect.name
    try:
        insert = _INSERT_BY_DIALECT[dialect]
    except KeyError:
        raise RepositoryError(f"Upserts are not supported on dialect '{dialect}'")
    return insert(model)


# ============================================
# EMPLOYEE REPOSITORY
# ============================================

class CorrelatedEmployeeRepository:
    """Repository for canonical employee identities."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, employee_id: UUID) -> Optional[CorrelatedEmployee]:
        query = select(CorrelatedEmployee).where(
            CorrelatedEmployee.id == employee_id
        ).execution_options(populate_existing=True)
        return self.session.execute(query).scalar_one_or_none()

    def get_for_organization(
        self,
        organization_id: UUID,
        employee_id: UUID
    ) -> Optional[CorrelatedEmployee]:
        """Get an employee only if it belongs to the organization."""
        query = select(CorrelatedEmployee).where(
            CorrelatedEmployee.id == employee_id,
            CorrelatedEmployee.organization_id == organization_id
        ).execution_options(populate_existing=True)
        return self.session.execute(query).scalar_one_or_none()

    def get_by_email(self, organization_id: UUID, email: str) -> Optional[CorrelatedEmployee]:
        query = select(CorrelatedEmployee).where(
            CorrelatedEmployee.organization_id == organization_id,
            CorrelatedEmployee.email == normalize_email(email)
        ).execution_options(populate_existing=True)
        return self.session.execute(query).scalar_one_or_none()

    def _id_for_email(self, organization_id: UUID, email: str) -> UUID:
        query = select(CorrelatedEmployee.id).where(
            CorrelatedEmployee.organization_id == organization_id,
            CorrelatedEmployee.email == email
        )
        return self.session.execute(query).scalar_one()

    def ensure_exists(self, organization_id: UUID, email: str) -> UUID:
        """
        Return the id of the employee with this email, creating a placeholder
        if none exists.

        The placeholder carries only the organization, email and correlation
        timestamp. Safe under concurrent callers: the insert is a no-op when
        another transaction created the row first.
        """
        email = normalize_email(email)
        stmt = dialect_insert(self.session, CorrelatedEmployee).values(
            organization_id=organization_id,
            email=email,
            last_correlated_at=_utcnow()
        ).on_conflict_do_nothing(index_elements=["organization_id", "email"])
        self.session.execute(stmt)
        return self._id_for_email(organization_id, email)

    def upsert_roster(
        self,
        organization_id: UUID,
        email: str,
        attributes: Dict[str, Any],
        integration_id: UUID
    ) -> UUID:
        """
        Create or enrich an employee from roster data.

        Only keys present in attributes are written on update. The source
        integration and correlation timestamp are always refreshed. A new
        employee defaults to active when no employment status is given.
        """
        email = normalize_email(email)
        now = _utcnow()
        refreshed = {
            **attributes,
            "source_integration_id": integration_id,
            "last_correlated_at": now,
        }

        insert_values = {
            "organization_id": organization_id,
            "email": email,
            "employment_status": EmploymentStatus.ACTIVE.value,
            **refreshed,
        }
        stmt = dialect_insert(self.session, CorrelatedEmployee).values(**insert_values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["organization_id", "email"],
            set_={**refreshed, "updated_at": now}
        )
        self.session.execute(stmt)
        return self._id_for_email(organization_id, email)

    def update_score(self, employee_id: UUID, score: int, issues: List[Dict[str, Any]]) -> None:
        """
        Persist a computed score and its regenerated issue list.

        Raises:
            EmployeeNotFoundError: If the employee does not exist
        """
        stmt = update(CorrelatedEmployee).where(
            CorrelatedEmployee.id == employee_id
        ).values(
            compliance_score=score,
            compliance_issues=issues,
            updated_at=_utcnow()
        ).execution_options(synchronize_session=False)
        result = self.session.execute(stmt)
        if result.rowcount == 0:
            raise EmployeeNotFoundError(employee_id)

    def list_ids_after(
        self,
        organization_id: UUID,
        after_id: Optional[UUID],
        limit: int
    ) -> List[UUID]:
        """Keyset page of employee ids in ascending id order."""
        query = select(CorrelatedEmployee.id).where(
            CorrelatedEmployee.organization_id == organization_id
        )
        if after_id is not None:
            query = query.where(CorrelatedEmployee.id > after_id)
        query = query.order_by(CorrelatedEmployee.id).limit(limit)
        return list(self.session.execute(query).scalars().all())

    def list_emails(self, organization_id: UUID) -> List[str]:
        query = select(CorrelatedEmployee.email).where(
            CorrelatedEmployee.organization_id == organization_id
        ).order_by(CorrelatedEmployee.email)
        return list(self.session.execute(query).scalars().all())

    def list_active_scores(self, organization_id: UUID) -> List[Any]:
        """(compliance_score, compliance_issues) rows for active employees."""
        query = select(
            CorrelatedEmployee.compliance_score,
            CorrelatedEmployee.compliance_issues
        ).where(
            CorrelatedEmployee.organization_id == organization_id,
            CorrelatedEmployee.employment_status == EmploymentStatus.ACTIVE.value
        )
        return list(self.session.execute(query).all())


# ============================================
# EVIDENCE REPOSITORY
# ============================================

class EmployeeEvidenceRepository:
    """Repository for per-category evidence owned by an employee."""

    def __init__(self, session: Session):
        self.session = session

    # ---------- writes ----------

    def upsert_background_check(
        self,
        employee_id: UUID,
        integration_id: UUID,
        external_id: str,
        values: Dict[str, Any]
    ) -> None:
        stmt = dialect_insert(self.session, EmployeeBackgroundCheck).values(
            correlated_employee_id=employee_id,
            integration_id=integration_id,
            external_id=external_id,
            **values
        ).on_conflict_do_update(
            index_elements=["correlated_employee_id", "integration_id", "external_id"],
            set_={**values, "updated_at": _utcnow()}
        )
        self.session.execute(stmt)

    def add_training_record(
        self,
        employee_id: UUID,
        integration_id: UUID,
        values: Dict[str, Any]
    ) -> EmployeeTrainingRecord:
        record = EmployeeTrainingRecord(
            correlated_employee_id=employee_id,
            integration_id=integration_id,
            **values
        )
        self.session.add(record)
        self.session.flush()
        return record

    def upsert_asset_assignment(
        self,
        employee_id: UUID,
        integration_id: UUID,
        external_asset_id: str,
        values: Dict[str, Any]
    ) -> None:
        stmt = dialect_insert(self.session, EmployeeAssetAssignment).values(
            correlated_employee_id=employee_id,
            integration_id=integration_id,
            external_asset_id=external_asset_id,
            **values
        ).on_conflict_do_update(
            index_elements=["correlated_employee_id", "integration_id", "external_asset_id"],
            set_={**values, "updated_at": _utcnow()}
        )
        self.session.execute(stmt)

    def upsert_access_record(
        self,
        employee_id: UUID,
        integration_id: UUID,
        values: Dict[str, Any]
    ) -> None:
        """Replace the (employee, integration) access snapshot with values."""
        stmt = dialect_insert(self.session, EmployeeAccessRecord).values(
            correlated_employee_id=employee_id,
            integration_id=integration_id,
            **values
        ).on_conflict_do_update(
            index_elements=["correlated_employee_id", "integration_id"],
            set_={**values, "updated_at": _utcnow()}
        )
        self.session.execute(stmt)

    def add_security_score(
        self,
        employee_id: UUID,
        integration_id: UUID,
        values: Dict[str, Any]
    ) -> EmployeeSecurityScore:
        score = EmployeeSecurityScore(
            correlated_employee_id=employee_id,
            integration_id=integration_id,
            **values
        )
        self.session.add(score)
        self.session.flush()
        return score

    def find_asset_id(
        self,
        organization_id: UUID,
        external_asset_id: Optional[str],
        serial_number: Optional[str]
    ) -> Optional[UUID]:
        """Look up an inventory asset by external id or serial number."""
        matchers = []
        if external_asset_id:
            matchers.append(Asset.external_id == external_asset_id)
        if serial_number:
            matchers.append(Asset.serial_number == serial_number)
        if not matchers:
            return None
        query = select(Asset.id).where(
            Asset.organization_id == organization_id,
            or_(*matchers)
        ).limit(1)
        return self.session.execute(query).scalar_one_or_none()

    # ---------- reads used by scoring ----------

    @timed_query("latest_background_check")
    def latest_background_check(self, employee_id: UUID) -> Optional[EmployeeBackgroundCheck]:
        """
        Most recent background check.

        Checks without a completion date (still running) sort first, then by
        completion, initiation and creation time, newest first.
        """
        query = select(EmployeeBackgroundCheck).where(
            EmployeeBackgroundCheck.correlated_employee_id == employee_id
        ).order_by(
            EmployeeBackgroundCheck.completed_at.desc().nulls_first(),
            EmployeeBackgroundCheck.initiated_at.desc().nulls_last(),
            EmployeeBackgroundCheck.created_at.desc()
        ).limit(1).execution_options(populate_existing=True)
        return self.session.execute(query).scalar_one_or_none()

    @timed_query("scored_training_records")
    def scored_training_records(self, employee_id: UUID) -> List[EmployeeTrainingRecord]:
        """
        Training records that count towards the score.

        Only the newest row per (integration, course name) is returned, since
        training evidence is append-only and a course may be reported many
        times, with or without its course id.
        """
        query = select(EmployeeTrainingRecord).where(
            EmployeeTrainingRecord.correlated_employee_id == employee_id,
            EmployeeTrainingRecord.status.in_([s.value for s in TrainingStatus])
        ).order_by(
            EmployeeTrainingRecord.created_at.desc(),
            EmployeeTrainingRecord.id
        )
        latest: Dict[tuple, EmployeeTrainingRecord] = {}
        for record in self.session.execute(query).scalars():
            key = (record.integration_id, (record.course_name or "").strip().lower())
            latest.setdefault(key, record)
        return list(latest.values())

    @timed_query("attestations")
    def attestations(self, employee_id: UUID) -> Sequence[EmployeeAttestation]:
        query = select(EmployeeAttestation).where(
            EmployeeAttestation.correlated_employee_id == employee_id
        )
        return self.session.execute(query).scalars().all()

    @timed_query("latest_access_record")
    def latest_access_record(self, employee_id: UUID) -> Optional[EmployeeAccessRecord]:
        query = select(EmployeeAccessRecord).where(
            EmployeeAccessRecord.correlated_employee_id == employee_id
        ).order_by(
            EmployeeAccessRecord.updated_at.desc()
        ).limit(1).execution_options(populate_existing=True)
        return self.session.execute(query).scalar_one_or_none()

    @timed_query("asset_assignments")
    def asset_assignments(self, employee_id: UUID) -> Sequence[EmployeeAssetAssignment]:
        query = select(EmployeeAssetAssignment).where(
            EmployeeAssetAssignment.correlated_employee_id == employee_id
        ).execution_options(populate_existing=True)
        return self.session.execute(query).scalars().all()
