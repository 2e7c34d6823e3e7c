"""
FastAPI Employee Compliance API Server

Exposes evidence sync ingestion, compliance score recalculation and the
employee compliance views over HTTP.

Usage:
    uvicorn compliance_api.server:app --reload --port 8000
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Depends, Security, Query, Response
from fastapi.security import APIKeyHeader
from sqlalchemy.orm import Session

from compliance_api.models import (
    EvidenceSyncRequest,
    SyncResultResponse,
    RecalculationResponse,
    EmployeePageResponse,
    OrganizationMetricsResponse,
    DashboardResponse,
    DepartmentStat,
    MissingDataResponse,
    EvidenceTypesResponse,
    HealthResponse,
    ErrorResponse,
)
from compliance_api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from config_manager import get_config, ConfigManager, ConfigurationError, configure_logging
from employee_compliance.connection import (
    DatabaseSessionProvider,
    get_db,
    get_db_provider,
    init_db,
    close_db,
)
from employee_compliance.correlation_service import CorrelationService
from employee_compliance.employee_service import (
    EmployeeComplianceService,
    EmployeeFilters,
)
from employee_compliance.monitoring import (
    configure_monitoring,
    get_db_metrics,
    get_slow_query_report,
)

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

ORG_PREFIX = "/api/v1/organizations/{organization_id}"

# Global state
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing API key"},
    403: {"model": ErrorResponse, "description": "Invalid API key"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def get_employee_service(
    session: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
) -> EmployeeComplianceService:
    return EmployeeComplianceService(session, config)


app = FastAPI(
    title="Employee Compliance API",
    description="Correlates employee evidence from HR, screening, LMS, MDM and identity integrations into compliance scores",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration and connect to the compliance store."""
    global _config, _startup_time

    logger.info("Starting Employee Compliance API...")

    try:
        _config = get_config(CONFIG_PATH)
        configure_logging(_config.logging)
        configure_monitoring(
            slow_query_threshold_ms=_config.monitoring.slow_query_threshold_ms,
            warning_threshold_ms=_config.monitoring.warning_threshold_ms,
            enable_prometheus=_config.monitoring.enable_prometheus,
        )
        logger.info("Configuration loaded from %s", CONFIG_PATH)

        init_db()
        _startup_time = datetime.now(timezone.utc)
        logger.info("API ready")

    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        raise


@app.on_event("shutdown")
async def shutdown():
    logger.info("Shutting down Employee Compliance API...")
    close_db()


# ============================================
# EVIDENCE INGESTION
# ============================================

@app.post(
    f"{ORG_PREFIX}/evidence/sync",
    response_model=SyncResultResponse,
    responses={422: {"model": ErrorResponse, "description": "Validation error"}, **ERROR_RESPONSES},
    summary="Correlate an evidence sync",
    description="Route a batch of integration records into employee identities and evidence",
)
def sync_evidence(
    organization_id: UUID,
    request: EvidenceSyncRequest,
    session: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Unknown evidence types are accepted and report zero processed records."""
    result = CorrelationService(session).process_evidence_sync(
        organization_id,
        request.integration_id,
        request.evidence_type,
        request.records,
    )
    return SyncResultResponse(**result.to_dict())


@app.get(
    "/api/v1/evidence-types",
    response_model=EvidenceTypesResponse,
    summary="List employee evidence types",
)
def list_evidence_types():
    return EvidenceTypesResponse()


# ============================================
# EMPLOYEES
# ============================================

@app.get(
    f"{ORG_PREFIX}/employees",
    response_model=EmployeePageResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid filter"}, **ERROR_RESPONSES},
    summary="List employees",
)
def list_employees(
    organization_id: UUID,
    search: Optional[str] = Query(default=None, max_length=200),
    department: Optional[str] = None,
    status: Optional[str] = None,
    compliance_status: Optional[str] = Query(
        default=None, pattern="^(compliant|at_risk|non_compliant)$"
    ),
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    sort_by: str = "last_name",
    sort_order: str = Query(default="asc", pattern="^(asc|desc)$"),
    service: EmployeeComplianceService = Depends(get_employee_service),
    api_key: str = Depends(verify_api_key),
):
    return service.list_employees(EmployeeFilters(
        organization_id=organization_id,
        search=search,
        department=department,
        status=status,
        compliance_status=compliance_status,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    ))


@app.get(
    f"{ORG_PREFIX}/employees/{{employee_id}}",
    responses={404: {"model": ErrorResponse, "description": "Employee not found"}, **ERROR_RESPONSES},
    summary="Employee compliance detail",
)
def get_employee(
    organization_id: UUID,
    employee_id: UUID,
    service: EmployeeComplianceService = Depends(get_employee_service),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    return service.get_employee_detail(organization_id, employee_id)


@app.post(
    f"{ORG_PREFIX}/employees/{{employee_id}}/recalculate",
    status_code=204,
    responses={404: {"model": ErrorResponse, "description": "Employee not found"}, **ERROR_RESPONSES},
    summary="Recalculate one employee's score",
)
def recalculate_employee(
    organization_id: UUID,
    employee_id: UUID,
    service: EmployeeComplianceService = Depends(get_employee_service),
    api_key: str = Depends(verify_api_key),
):
    service.recalculate_employee(organization_id, employee_id)
    return Response(status_code=204)


@app.post(
    f"{ORG_PREFIX}/scores/recalculate",
    response_model=RecalculationResponse,
    responses=ERROR_RESPONSES,
    summary="Recalculate every employee's score",
)
def recalculate_scores(
    organization_id: UUID,
    service: EmployeeComplianceService = Depends(get_employee_service),
    api_key: str = Depends(verify_api_key),
):
    return RecalculationResponse(updated=service.recalculate_organization(organization_id))


# ============================================
# DASHBOARD
# ============================================

@app.get(
    f"{ORG_PREFIX}/metrics",
    response_model=OrganizationMetricsResponse,
    responses=ERROR_RESPONSES,
    summary="Organization compliance metrics",
)
def get_metrics(
    organization_id: UUID,
    service: EmployeeComplianceService = Depends(get_employee_service),
    api_key: str = Depends(verify_api_key),
):
    return service.get_organization_metrics(organization_id)


@app.get(
    f"{ORG_PREFIX}/dashboard",
    response_model=DashboardResponse,
    responses=ERROR_RESPONSES,
    summary="Compliance dashboard",
)
def get_dashboard(
    organization_id: UUID,
    service: EmployeeComplianceService = Depends(get_employee_service),
    api_key: str = Depends(verify_api_key),
):
    return service.get_dashboard_metrics(organization_id)


@app.get(
    f"{ORG_PREFIX}/departments",
    responses=ERROR_RESPONSES,
    summary="Departments with employees",
)
def get_departments(
    organization_id: UUID,
    include_stats: bool = False,
    service: EmployeeComplianceService = Depends(get_employee_service),
    api_key: str = Depends(verify_api_key),
):
    if include_stats:
        return [DepartmentStat(**s) for s in service.get_department_stats(organization_id)]
    return service.get_departments(organization_id)


@app.get(
    f"{ORG_PREFIX}/missing-data",
    response_model=MissingDataResponse,
    responses=ERROR_RESPONSES,
    summary="Active employees missing evidence",
)
def get_missing_data(
    organization_id: UUID,
    service: EmployeeComplianceService = Depends(get_employee_service),
    api_key: str = Depends(verify_api_key),
):
    return service.find_missing_data(organization_id)


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check service and database health",
)
def health_check(provider: DatabaseSessionProvider = Depends(get_db_provider)):
    """Always returns HTTP 200; database state is reported in the body."""
    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    database_ok = provider.health_check()
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        database=database_ok,
        uptime_seconds=uptime_seconds,
        error_message=None if database_ok else "Database unreachable",
        query_stats=get_db_metrics(),
        slow_queries=get_slow_query_report(),
    )


@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
