"""
SQLAlchemy ORM Models for the Employee Compliance Engine

This module defines the schema used to correlate employee evidence coming from
external integrations (HRIS, background screening, LMS, MDM, identity
providers) into one canonical employee record per organization.

Tables:
1. correlated_employees - Canonical employee identity per (organization, email)
2. employee_background_checks - Screening results, one row per provider check
3. employee_training_records - Training assignments/completions (append-only)
4. employee_asset_assignments - Devices assigned to employees
5. employee_access_records - Access snapshot per (employee, integration)
6. employee_security_scores - Security awareness score history
7. employee_attestations - Policy acknowledgements

Read-only tables owned by other subsystems:
- integrations - Configured integration instances
- assets - Asset inventory
- policies - Policy catalogue
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Text,
    ForeignKey, Index, CheckConstraint, UniqueConstraint,
    JSON, Uuid
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class EmploymentStatus(str, PyEnum):
    """Employment status reported by the HRIS"""
    ACTIVE = "active"
    TERMINATED = "terminated"
    ON_LEAVE = "on_leave"
    PENDING = "pending"


class BackgroundCheckStatus(str, PyEnum):
    """Known background check statuses. Providers may send others."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    CLEAR = "clear"
    FLAGGED = "flagged"
    EXPIRED = "expired"


class TrainingStatus(str, PyEnum):
    """Known training statuses. Providers may send others (e.g. waived)."""
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class CourseType(str, PyEnum):
    REQUIRED = "required"
    OPTIONAL = "optional"


class AttestationStatus(str, PyEnum):
    """Status of a policy attestation"""
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    DECLINED = "declined"
    EXPIRED = "expired"


class AccessReviewStatus(str, PyEnum):
    """Status of an access review"""
    PENDING = "pending"
    APPROVED = "approved"
    ACTION_REQUIRED = "action_required"


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False
    )


# ============================================
# REFERENCED ENTITIES (owned elsewhere)
# ============================================

class Integration(Base, TimestampMixin):
    """
    A configured integration instance (e.g. one HRIS connection).

    Only read by this engine to label data sources.
    """
    __tablename__ = "integrations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Provider key, e.g. "bamboohr", "checkr", "knowbe4", "jamf", "okta"
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Integration(id={self.id}, name='{self.name}', type='{self.type}')>"


class Asset(Base, TimestampMixin):
    """Asset inventory record that device assignments may link to."""
    __tablename__ = "assets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    asset_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    serial_number: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<Asset(id={self.id}, name='{self.name}')>"


class Policy(Base, TimestampMixin):
    __tablename__ = "policies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<Policy(id={self.id}, title='{self.title}')>"


# ============================================
# CORE EMPLOYEE MODEL
# ============================================

class CorrelatedEmployee(Base, TimestampMixin):
    """
    Canonical employee identity within one organization.

    Identified by (organization_id, email). The email is always stored
    trimmed and lower-cased. Identity attributes are only written by roster
    evidence; other evidence may create a placeholder carrying just the email.
    """
    __tablename__ = "correlated_employees"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Cached from the HRIS that last synced this employee
    source_integration_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    department: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    job_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    manager_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    hire_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    employment_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    employment_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Output of the most recent score calculation
    compliance_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    compliance_issues: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    last_correlated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )

    background_checks: Mapped[List["EmployeeBackgroundCheck"]] = relationship(
        "EmployeeBackgroundCheck",
        back_populates="employee",
        cascade="all, delete-orphan",
        passive_deletes=True
    )
    training_records: Mapped[List["EmployeeTrainingRecord"]] = relationship(
        "EmployeeTrainingRecord",
        back_populates="employee",
        cascade="all, delete-orphan",
        passive_deletes=True
    )
    asset_assignments: Mapped[List["EmployeeAssetAssignment"]] = relationship(
        "EmployeeAssetAssignment",
        back_populates="employee",
        cascade="all, delete-orphan",
        passive_deletes=True
    )
    access_records: Mapped[List["EmployeeAccessRecord"]] = relationship(
        "EmployeeAccessRecord",
        back_populates="employee",
        cascade="all, delete-orphan",
        passive_deletes=True
    )
    security_scores: Mapped[List["EmployeeSecurityScore"]] = relationship(
        "EmployeeSecurityScore",
        back_populates="employee",
        cascade="all, delete-orphan",
        passive_deletes=True
    )
    attestations: Mapped[List["EmployeeAttestation"]] = relationship(
        "EmployeeAttestation",
        back_populates="employee",
        cascade="all, delete-orphan",
        passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint('organization_id', 'email', name='uq_correlated_employee_org_email'),
        CheckConstraint(
            'compliance_score IS NULL OR (compliance_score >= 0 AND compliance_score <= 100)',
            name='ck_correlated_employee_score_range'
        ),
        Index('ix_correlated_employee_org_status', 'organization_id', 'employment_status'),
    )

    @property
    def full_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.email

    def __repr__(self) -> str:
        return f"<CorrelatedEmployee(id={self.id}, email='{self.email}', score={self.compliance_score})>"


# ============================================
# CATEGORY SUB-RECORDS
# ============================================

class EmployeeBackgroundCheck(Base, TimestampMixin):
    """
    Background check result from a screening provider.

    One row per (employee, integration, external_id); re-syncs update in place.
    """
    __tablename__ = "employee_background_checks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    correlated_employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("correlated_employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    check_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    initiated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    # Raw provider payload, kept for audit/debug only
    raw_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    employee: Mapped["CorrelatedEmployee"] = relationship(
        "CorrelatedEmployee",
        back_populates="background_checks"
    )

    __table_args__ = (
        UniqueConstraint(
            'correlated_employee_id', 'integration_id', 'external_id',
            name='uq_background_check_employee_integration_external'
        ),
    )

    def __repr__(self) -> str:
        return f"<EmployeeBackgroundCheck(id={self.id}, status='{self.status}')>"


class EmployeeTrainingRecord(Base, TimestampMixin):
    """Training assignment or completion. Every sync appends a row."""
    __tablename__ = "employee_training_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    correlated_employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("correlated_employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    course_name: Mapped[str] = mapped_column(String(500), nullable=False)
    course_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    raw_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    employee: Mapped["CorrelatedEmployee"] = relationship(
        "CorrelatedEmployee",
        back_populates="training_records"
    )

    def __repr__(self) -> str:
        return f"<EmployeeTrainingRecord(id={self.id}, course='{self.course_name}', status='{self.status}')>"


class EmployeeAssetAssignment(Base, TimestampMixin):
    """Device assigned to an employee, as reported by an MDM."""
    __tablename__ = "employee_asset_assignments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    correlated_employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("correlated_employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    asset_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("assets.id", ondelete="SET NULL"),
        nullable=True
    )
    external_asset_id: Mapped[str] = mapped_column(String(255), nullable=False)

    device_type: Mapped[str] = mapped_column(String(50), nullable=False)
    device_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    serial_number: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    model: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    manufacturer: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    os_version: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_compliant: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True, index=True)
    last_check_in: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    raw_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    employee: Mapped["CorrelatedEmployee"] = relationship(
        "CorrelatedEmployee",
        back_populates="asset_assignments"
    )

    __table_args__ = (
        UniqueConstraint(
            'correlated_employee_id', 'integration_id', 'external_asset_id',
            name='uq_asset_assignment_employee_integration_asset'
        ),
    )

    def __repr__(self) -> str:
        return f"<EmployeeAssetAssignment(id={self.id}, asset='{self.external_asset_id}')>"


class EmployeeAccessRecord(Base, TimestampMixin):
    """
    Access snapshot from an identity provider.

    One row per (employee, integration); the latest sync replaces it.
    """
    __tablename__ = "employee_access_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    correlated_employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("correlated_employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # List of {"name", "accessLevel", "lastAccessed"}
    systems_access: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    last_review_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    review_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mfa_enabled: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    raw_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    employee: Mapped["CorrelatedEmployee"] = relationship(
        "CorrelatedEmployee",
        back_populates="access_records"
    )

    __table_args__ = (
        UniqueConstraint(
            'correlated_employee_id', 'integration_id',
            name='uq_access_record_employee_integration'
        ),
    )

    def __repr__(self) -> str:
        return f"<EmployeeAccessRecord(id={self.id}, review_status='{self.review_status}')>"


class EmployeeSecurityScore(Base):
    """Security awareness score. History is kept, newest by last_updated."""
    __tablename__ = "employee_security_scores"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    correlated_employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("correlated_employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    overall_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    training_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    phishing_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    phishing_tests_sent: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    phishing_tests_clicked: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    phishing_tests_reported: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    score_period: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    raw_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )

    employee: Mapped["CorrelatedEmployee"] = relationship(
        "CorrelatedEmployee",
        back_populates="security_scores"
    )

    __table_args__ = (
        CheckConstraint(
            'overall_score >= 0 AND overall_score <= 100',
            name='ck_security_score_range'
        ),
    )

    def __repr__(self) -> str:
        return f"<EmployeeSecurityScore(id={self.id}, overall={self.overall_score})>"


class EmployeeAttestation(Base, TimestampMixin):
    """Employee acknowledgement of a policy. Written by the policy subsystem."""
    __tablename__ = "employee_attestations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    correlated_employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("correlated_employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    policy_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("policies.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    employee: Mapped["CorrelatedEmployee"] = relationship(
        "CorrelatedEmployee",
        back_populates="attestations"
    )
    policy: Mapped["Policy"] = relationship("Policy")

    __table_args__ = (
        UniqueConstraint('correlated_employee_id', 'policy_id', name='uq_attestation_employee_policy'),
    )

    def __repr__(self) -> str:
        return f"<EmployeeAttestation(id={self.id}, status='{self.status}')>"


# ============================================
# HELPER FUNCTIONS
# ============================================

def normalize_email(email: Optional[str]) -> str:
    """
    Normalize an email for use as an identity key.

    Trims surrounding whitespace and lower-cases.

    Args:
        email: The email to normalize (can be None)

    Returns:
        Normalized email, or empty string if email is None/blank
    """
    if email is None:
        return ""
    return str(email).strip().lower()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
