"""
Pydantic request/response schemas for the Employee Compliance API

Mirrors the dictionaries produced by the employee_compliance services.
"""

from datetime import datetime
from typing import List, Optional, Dict, Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from employee_compliance.evidence_types import EvidenceType


class EvidenceSyncRequest(BaseModel):
    """Batch of evidence records delivered by one integration sync."""
    integration_id: UUID = Field(..., description="Integration that produced the records")
    evidence_type: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Evidence type tag (e.g. 'employee_roster', 'training_completions')"
    )
    # Non-object entries reach the correlator and count as record errors
    records: List[Any] = Field(
        default_factory=list,
        description="Records in the integration's camelCase shape"
    )

    @field_validator('evidence_type')
    @classmethod
    def normalize_evidence_type(cls, v: str) -> str:
        """Unknown tags are accepted and ignored by the correlator."""
        return v.strip()


class SyncResultResponse(BaseModel):
    processed: int = Field(..., ge=0, description="Records successfully correlated")
    errors: int = Field(..., ge=0, description="Records rejected or failed")


class RecalculationResponse(BaseModel):
    updated: int = Field(..., ge=0, description="Employees whose score was updated")


class ComplianceIssueResponse(BaseModel):
    type: str
    severity: str
    message: str
    details: Optional[Dict[str, Any]] = None


class DataSourceFlags(BaseModel):
    has_hris: bool = False
    has_background_check: bool = False
    has_training: bool = False
    has_assets: bool = False
    has_access: bool = False


class EmployeeSummary(BaseModel):
    """One row of the employee listing."""
    id: UUID
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: str
    department: Optional[str] = None
    job_title: Optional[str] = None
    employment_status: Optional[str] = None
    compliance_score: Optional[int] = None
    compliance_issues: List[ComplianceIssueResponse] = Field(default_factory=list)
    background_check_status: Optional[str] = None
    overdue_trainings: int = 0
    pending_attestations: int = 0
    data_sources: DataSourceFlags
    last_correlated_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)
    total: int = Field(..., ge=0)
    total_pages: int = Field(..., ge=0)


class EmployeePageResponse(BaseModel):
    data: List[EmployeeSummary] = Field(default_factory=list)
    pagination: Pagination


class ScoreBucket(BaseModel):
    range: str
    count: int = Field(..., ge=0)


class IssueCount(BaseModel):
    type: str
    count: int = Field(..., ge=0)


class OrganizationMetricsResponse(BaseModel):
    """Roll-up of persisted scores over active employees."""
    total_employees: int = Field(..., ge=0)
    average_score: int = Field(..., ge=0, le=100)
    score_distribution: List[ScoreBucket]
    issue_breakdown: List[IssueCount] = Field(default_factory=list)
    compliance_rate: int = Field(..., ge=0, le=100, description="Percent of employees at or above the compliant threshold")


class DepartmentStat(BaseModel):
    department: str
    employee_count: int = Field(..., ge=0)
    average_score: int = Field(..., ge=0, le=100)


class Deadline(BaseModel):
    type: str = Field(
        ...,
        description="background_check_expiring, training_overdue, training_due_soon or attestation_pending"
    )
    employee_email: str
    employee_name: str
    deadline: Optional[datetime] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class UpcomingDeadlines(BaseModel):
    expiring_background_checks: List[Deadline] = Field(default_factory=list)
    overdue_trainings: List[Deadline] = Field(default_factory=list)
    pending_attestations: List[Deadline] = Field(default_factory=list)


class RecentChanges(BaseModel):
    new_employees: List[Dict[str, Any]] = Field(default_factory=list)
    completed_trainings: List[Dict[str, Any]] = Field(default_factory=list)
    cleared_background_checks: List[Dict[str, Any]] = Field(default_factory=list)


class DashboardResponse(OrganizationMetricsResponse):
    department_stats: List[DepartmentStat] = Field(default_factory=list)
    upcoming_deadlines: UpcomingDeadlines
    recent_changes: RecentChanges


class MissingEmployee(BaseModel):
    email: str
    name: str


class MissingDataResponse(BaseModel):
    no_background_check: List[MissingEmployee] = Field(default_factory=list)
    no_training_data: List[MissingEmployee] = Field(default_factory=list)
    no_device_data: List[MissingEmployee] = Field(default_factory=list)
    no_access_data: List[MissingEmployee] = Field(default_factory=list)


class EvidenceTypesResponse(BaseModel):
    evidence_types: List[str] = Field(
        default_factory=lambda: [t.value for t in EvidenceType],
        description="Evidence type tags routed to employee correlation"
    )


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: bool = Field(..., description="Whether the database answered a ping")
    uptime_seconds: Optional[int] = Field(
        default=None,
        description="Server uptime in seconds"
    )
    error_message: Optional[str] = None
    query_stats: Dict[str, Any] = Field(
        default_factory=dict,
        description="Per-operation query timings collected since startup"
    )
    slow_queries: List[Dict[str, Any]] = Field(default_factory=list)


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
