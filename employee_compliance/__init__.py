"""
Employee Compliance Correlation Package

This package provides:
- SQLAlchemy ORM models for correlated employees and their evidence
- Evidence sync correlation (identity resolution by email)
- Compliance scoring and organization metrics
- Employee listing, detail and dashboard queries
- FastAPI Dependency Injection for database sessions
- Performance monitoring and query timing
"""

from employee_compliance.models import (
    Base,
    Integration,
    Asset,
    Policy,
    CorrelatedEmployee,
    EmployeeBackgroundCheck,
    EmployeeTrainingRecord,
    EmployeeAssetAssignment,
    EmployeeAccessRecord,
    EmployeeSecurityScore,
    EmployeeAttestation,
)
from employee_compliance.evidence_types import (
    EvidenceType,
    EvidenceCategory,
    parse_evidence_type,
    is_employee_evidence_type,
)
from employee_compliance.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    get_db,
    get_db_provider,
    init_db,
    close_db,
    create_test_provider,
)
from employee_compliance.repositories import (
    RepositoryError,
    EntityNotFoundError,
    EmployeeNotFoundError,
)
from employee_compliance.correlation_service import CorrelationService, SyncResult
from employee_compliance.score_service import (
    ComplianceScoreService,
    ScoreBreakdown,
    OrganizationMetrics,
)
from employee_compliance.employee_service import EmployeeComplianceService, EmployeeFilters
from employee_compliance.monitoring import (
    query_timer,
    timed_query,
    get_db_metrics,
    get_slow_query_report,
    reset_metrics,
    configure_monitoring,
)

__all__ = [
    # Models
    'Base',
    'Integration',
    'Asset',
    'Policy',
    'CorrelatedEmployee',
    'EmployeeBackgroundCheck',
    'EmployeeTrainingRecord',
    'EmployeeAssetAssignment',
    'EmployeeAccessRecord',
    'EmployeeSecurityScore',
    'EmployeeAttestation',
    # Evidence types
    'EvidenceType',
    'EvidenceCategory',
    'parse_evidence_type',
    'is_employee_evidence_type',
    # Database provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'get_db',
    'get_db_provider',
    'init_db',
    'close_db',
    'create_test_provider',
    # Errors
    'RepositoryError',
    'EntityNotFoundError',
    'EmployeeNotFoundError',
    # Services
    'CorrelationService',
    'SyncResult',
    'ComplianceScoreService',
    'ScoreBreakdown',
    'OrganizationMetrics',
    'EmployeeComplianceService',
    'EmployeeFilters',
    # Monitoring
    'query_timer',
    'timed_query',
    'get_db_metrics',
    'get_slow_query_report',
    'reset_metrics',
    'configure_monitoring',
]
