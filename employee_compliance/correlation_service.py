"""
Employee evidence correlation.

Integrations deliver batches of evidence records for one evidence type. The
CorrelationService routes each batch to the category handler registered for
the type; the handler resolves every record to a canonical employee (creating
a placeholder when needed) and writes the category sub-record.

Records are processed independently: each one runs inside its own SAVEPOINT,
so a bad or failing record is counted and skipped without aborting the batch
or the surrounding transaction.

Usage:
    with db_provider.session_scope() as session:
        result = CorrelationService(session).process_evidence_sync(
            organization_id, integration_id, "employee_roster", records
        )
        # result.processed, result.errors
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from employee_compliance.evidence_types import (
    EvidenceCategory,
    category_for,
    parse_evidence_type,
)
from employee_compliance.models import CourseType, normalize_email
from employee_compliance.monitoring import record_sync_result
from employee_compliance.repositories import (
    CorrelatedEmployeeRepository,
    EmployeeEvidenceRepository,
)

logger = logging.getLogger(__name__)


class RecordValidationError(ValueError):
    """An evidence record is missing a required key or carries a bad value."""
    pass


@dataclass
class SyncResult:
    """Outcome of one evidence batch"""
    processed: int = 0
    errors: int = 0

    def __add__(self, other: "SyncResult") -> "SyncResult":
        return SyncResult(self.processed + other.processed, self.errors + other.errors)

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "errors": self.errors}


# ============================================
# RECORD PARSING
# ============================================

_MISSING = object()


def _snake_case(key: str) -> str:
    return "".join("_" + c.lower() if c.isupper() else c for c in key)


def _lookup(record: Mapping[str, Any], key: str) -> Any:
    """Value for a camelCase key, falling back to its snake_case spelling."""
    if key in record:
        return record[key]
    return record.get(_snake_case(key), _MISSING)


def _present(record: Mapping[str, Any], key: str) -> bool:
    return _lookup(record, key) is not _MISSING


def _value(record: Mapping[str, Any], key: str, default: Any = None) -> Any:
    value = _lookup(record, key)
    return default if value is _MISSING else value


def _require(record: Mapping[str, Any], key: str) -> Any:
    value = _value(record, key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise RecordValidationError(f"missing required field '{key}'")
    return value


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Empty values map to None. Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise RecordValidationError(f"invalid timestamp '{value}'")
    else:
        raise RecordValidationError(f"invalid timestamp {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise RecordValidationError(f"invalid number {value!r}")
    if isinstance(value, int):
        return value
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        raise RecordValidationError(f"invalid number {value!r}")


def parse_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise RecordValidationError(f"invalid number {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RecordValidationError(f"invalid number {value!r}")


_TRUE_STRINGS = {"true", "yes", "1", "y"}
_FALSE_STRINGS = {"false", "no", "0", "n"}


def parse_bool(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise RecordValidationError(f"invalid boolean {value!r}")


def parse_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip()


def _optional_email(value: Any) -> Optional[str]:
    if value is None:
        return None
    return normalize_email(value) or None


# (column, record key, parser)
FieldSpec = Tuple[str, str, Callable[[Any], Any]]


def _collect(record: Mapping[str, Any], fields: Iterable[FieldSpec], only_present: bool = False) -> Dict[str, Any]:
    values = {}
    for column, key, parser in fields:
        if only_present and not _present(record, key):
            continue
        values[column] = parser(_value(record, key))
    return values


def _raw(record: Mapping[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of the record for the raw_data column."""
    def convert(value):
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, Mapping):
            return {str(k): convert(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [convert(v) for v in value]
        return value
    return convert(dict(record))


# ============================================
# IDENTITY RESOLVER
# ============================================

class IdentityResolver:
    """Maps (organization, email) to a canonical employee id."""

    def __init__(self, session: Session):
        self._employees = CorrelatedEmployeeRepository(session)

    def resolve_employee(self, organization_id: UUID, email: str) -> UUID:
        """
        Return the employee id for email, creating a placeholder employee
        when none exists. The email is trimmed and lower-cased first.
        """
        normalized = normalize_email(email)
        if not normalized:
            raise RecordValidationError("missing required field 'email'")
        return self._employees.ensure_exists(organization_id, normalized)


# ============================================
# CATEGORY HANDLERS
# ============================================

class CategoryHandler:
    """
    Base class for category handlers.

    Subclasses implement process_record() for a single record. handle() runs
    each record in its own savepoint and counts outcomes.
    """
    category: EvidenceCategory

    def __init__(self, session: Session, resolver: Optional[IdentityResolver] = None):
        self.session = session
        self.resolver = resolver or IdentityResolver(session)
        self.employees = CorrelatedEmployeeRepository(session)
        self.evidence = EmployeeEvidenceRepository(session)

    def handle(
        self,
        organization_id: UUID,
        integration_id: UUID,
        records: Iterable[Mapping[str, Any]]
    ) -> SyncResult:
        result = SyncResult()
        for index, record in enumerate(records):
            try:
                if not isinstance(record, Mapping):
                    raise RecordValidationError(f"record is not an object: {type(record).__name__}")
                with self.session.begin_nested():
                    self.process_record(organization_id, integration_id, record)
                result.processed += 1
            except ValueError as e:
                result.errors += 1
                logger.warning(
                    "Skipping %s record %d from integration %s: %s",
                    self.category.value, index, integration_id, e
                )
            except SQLAlchemyError as e:
                result.errors += 1
                logger.error(
                    "Failed to store %s record %d from integration %s: %s",
                    self.category.value, index, integration_id, e
                )
        return result

    def process_record(
        self,
        organization_id: UUID,
        integration_id: UUID,
        record: Mapping[str, Any]
    ) -> None:
        raise NotImplementedError


class RosterHandler(CategoryHandler):
    """Creates or enriches canonical employees from HRIS data."""
    category = EvidenceCategory.ROSTER

    FIELDS: Tuple[FieldSpec, ...] = (
        ("external_id", "employeeId", parse_str),
        ("first_name", "firstName", parse_str),
        ("last_name", "lastName", parse_str),
        ("department", "department", parse_str),
        ("job_title", "jobTitle", parse_str),
        ("manager_email", "managerEmail", _optional_email),
        ("hire_date", "hireDate", parse_datetime),
        ("employment_status", "employmentStatus", parse_str),
        ("employment_type", "employmentType", parse_str),
        ("location", "location", parse_str),
    )

    def process_record(self, organization_id, integration_id, record):
        email = normalize_email(_require(record, "email"))
        attributes = _collect(record, self.FIELDS, only_present=True)
        # An explicit null/empty status leaves the stored status alone
        if not attributes.get("employment_status"):
            attributes.pop("employment_status", None)
        self.employees.upsert_roster(organization_id, email, attributes, integration_id)


class BackgroundCheckHandler(CategoryHandler):
    """Upserts screening results keyed on the provider's check id."""
    category = EvidenceCategory.BACKGROUND_CHECK

    FIELDS: Tuple[FieldSpec, ...] = (
        ("check_type", "checkType", parse_str),
        ("initiated_at", "initiatedAt", parse_datetime),
        ("completed_at", "completedAt", parse_datetime),
        ("expires_at", "expiresAt", parse_datetime),
    )

    def process_record(self, organization_id, integration_id, record):
        email = normalize_email(_require(record, "email"))
        status = parse_str(_require(record, "status")).lower()
        values = _collect(record, self.FIELDS)
        external_id = parse_str(_value(record, "externalId")) or (
            f"{integration_id}_{email}_{values['check_type'] or 'general'}"
        )

        employee_id = self.resolver.resolve_employee(organization_id, email)
        self.evidence.upsert_background_check(
            employee_id,
            integration_id,
            external_id,
            {**values, "status": status, "raw_data": _raw(record)}
        )


class TrainingHandler(CategoryHandler):
    """Appends training assignments and completions."""
    category = EvidenceCategory.TRAINING

    FIELDS: Tuple[FieldSpec, ...] = (
        ("external_id", "courseId", parse_str),
        ("assigned_at", "assignedAt", parse_datetime),
        ("due_date", "dueDate", parse_datetime),
        ("completed_at", "completedAt", parse_datetime),
        ("score", "score", parse_float),
    )

    def process_record(self, organization_id, integration_id, record):
        email = normalize_email(_require(record, "email"))
        course_name = parse_str(_require(record, "courseName"))
        status = parse_str(_require(record, "status")).lower()
        values = _collect(record, self.FIELDS)
        is_required = parse_bool(_value(record, "isRequired"))

        employee_id = self.resolver.resolve_employee(organization_id, email)
        self.evidence.add_training_record(employee_id, integration_id, {
            **values,
            "course_name": course_name,
            "course_type": (CourseType.REQUIRED if is_required else CourseType.OPTIONAL).value,
            "status": status,
            "raw_data": _raw(record),
        })


class DeviceHandler(CategoryHandler):
    """Upserts device assignments and links them to the asset inventory."""
    category = EvidenceCategory.DEVICE

    FIELDS: Tuple[FieldSpec, ...] = (
        ("device_name", "deviceName", parse_str),
        ("serial_number", "serialNumber", parse_str),
        ("model", "model", parse_str),
        ("manufacturer", "manufacturer", parse_str),
        ("os_version", "osVersion", parse_str),
        ("is_compliant", "isCompliant", parse_bool),
        ("last_check_in", "lastCheckIn", parse_datetime),
        ("assigned_at", "assignedAt", parse_datetime),
    )

    def process_record(self, organization_id, integration_id, record):
        email = normalize_email(_require(record, "email"))
        values = _collect(record, self.FIELDS)
        serial_number = values["serial_number"] or None
        external_asset_id = parse_str(_value(record, "externalAssetId")) or None
        if external_asset_id is None:
            if serial_number is None:
                raise RecordValidationError("missing required field 'externalAssetId' or 'serialNumber'")
            external_asset_id = f"{integration_id}_{email}_{serial_number}"

        employee_id = self.resolver.resolve_employee(organization_id, email)
        values["device_type"] = parse_str(_value(record, "deviceType")) or "unknown"
        values["asset_id"] = self.evidence.find_asset_id(
            organization_id,
            parse_str(_value(record, "externalAssetId")),
            serial_number
        )
        values["raw_data"] = _raw(record)
        self.evidence.upsert_asset_assignment(employee_id, integration_id, external_asset_id, values)


class AccessHandler(CategoryHandler):
    """Replaces the employee's access snapshot for the integration."""
    category = EvidenceCategory.ACCESS

    FIELDS: Tuple[FieldSpec, ...] = (
        ("mfa_enabled", "mfaEnabled", parse_bool),
        ("last_review_date", "lastReviewDate", parse_datetime),
        ("review_status", "reviewStatus", parse_str),
        ("reviewed_by", "reviewedBy", parse_str),
    )

    def process_record(self, organization_id, integration_id, record):
        email = normalize_email(_require(record, "email"))
        values = _collect(record, self.FIELDS)
        if values["review_status"]:
            values["review_status"] = values["review_status"].lower()
        values["systems_access"] = self._systems(_value(record, "systems"))

        employee_id = self.resolver.resolve_employee(organization_id, email)
        values["raw_data"] = _raw(record)
        self.evidence.upsert_access_record(employee_id, integration_id, values)

    @staticmethod
    def _systems(value: Any) -> List[Dict[str, Any]]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            raise RecordValidationError("'systems' must be a list")
        systems = []
        for entry in value:
            if isinstance(entry, str):
                systems.append({"name": entry})
            elif isinstance(entry, Mapping) and entry.get("name"):
                systems.append(_raw(entry))
            else:
                raise RecordValidationError(f"invalid systems entry {entry!r}")
        return systems


class SecurityScoreHandler(CategoryHandler):
    """Appends security awareness scores to the employee's history."""
    category = EvidenceCategory.SECURITY_SCORE

    FIELDS: Tuple[FieldSpec, ...] = (
        ("risk_level", "riskLevel", parse_str),
        ("training_score", "trainingScore", parse_int),
        ("phishing_score", "phishingScore", parse_int),
        ("phishing_tests_sent", "phishingTestsSent", parse_int),
        ("phishing_tests_clicked", "phishingTestsClicked", parse_int),
        ("phishing_tests_reported", "phishingTestsReported", parse_int),
        ("score_period", "scorePeriod", parse_str),
    )

    def process_record(self, organization_id, integration_id, record):
        email = normalize_email(_require(record, "email"))
        overall_score = parse_int(_require(record, "overallScore"))
        if not 0 <= overall_score <= 100:
            raise RecordValidationError(f"overallScore out of range: {overall_score}")
        values = _collect(record, self.FIELDS)
        last_updated = parse_datetime(_value(record, "lastUpdated"))
        if last_updated is not None:
            values["last_updated"] = last_updated

        employee_id = self.resolver.resolve_employee(organization_id, email)
        self.evidence.add_security_score(employee_id, integration_id, {
            **values,
            "overall_score": overall_score,
            "raw_data": _raw(record),
        })


HANDLER_CLASSES = {
    handler.category: handler
    for handler in (
        RosterHandler,
        BackgroundCheckHandler,
        TrainingHandler,
        DeviceHandler,
        AccessHandler,
        SecurityScoreHandler,
    )
}


# ============================================
# DISPATCHER
# ============================================

class CorrelationService:
    """
    Entry point for evidence syncs.

    Routes a batch to exactly one category handler based on its evidence
    type. Unknown evidence types are ignored.
    """

    def __init__(self, session: Session):
        self.session = session
        self.resolver = IdentityResolver(session)
        self._handlers = {
            category: handler_cls(session, self.resolver)
            for category, handler_cls in HANDLER_CLASSES.items()
        }

    def handler_for(self, category: EvidenceCategory) -> CategoryHandler:
        return self._handlers[category]

    def process_evidence_sync(
        self,
        organization_id: UUID,
        integration_id: UUID,
        evidence_type: str,
        records: Iterable[Mapping[str, Any]]
    ) -> SyncResult:
        """
        Correlate a batch of evidence records.

        Args:
            organization_id: Tenant the records belong to
            integration_id: Integration that produced the records
            evidence_type: One of the EvidenceType values
            records: Evidence records as dictionaries

        Returns:
            SyncResult with processed and error counts. Never raises for
            bad records; unknown evidence types return zero counts.
        """
        parsed = parse_evidence_type(evidence_type)
        if parsed is None:
            logger.debug("Ignoring non-employee evidence type '%s'", evidence_type)
            return SyncResult()

        category = category_for(parsed)
        result = self.handler_for(category).handle(organization_id, integration_id, records or [])

        record_sync_result(parsed.value, result.processed, result.errors)
        logger.info(
            "Processed %s sync for organization %s: %d processed, %d errors",
            parsed.value, organization_id, result.processed, result.errors
        )
        return result
