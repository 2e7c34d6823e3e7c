"""
Evidence type registry.

Every evidence type an integration can deliver for employees maps to exactly
one handler category. Strings outside the registry are not employee evidence
and are ignored by the correlation dispatcher.
"""

from enum import Enum
from typing import Dict, Optional


class EvidenceType(str, Enum):
    """Employee evidence types delivered by integrations"""
    # HRIS
    EMPLOYEE_ROSTER = "employee_roster"
    ORG_CHART = "org_chart"
    EMPLOYMENT_STATUS = "employment_status"
    ONBOARDING_STATUS = "onboarding_status"
    OFFBOARDING_STATUS = "offboarding_status"
    # Background screening
    BACKGROUND_CHECK_RESULTS = "background_check_results"
    SCREENING_STATUS = "screening_status"
    # LMS / security awareness
    TRAINING_ASSIGNMENTS = "training_assignments"
    TRAINING_COMPLETIONS = "training_completions"
    PHISHING_TEST_RESULTS = "phishing_test_results"
    SECURITY_AWARENESS_SCORE = "security_awareness_score"
    USER_TRAINING_STATUS = "user_training_status"
    # MDM
    DEVICE_INVENTORY = "device_inventory"
    DEVICE_ASSIGNMENTS = "device_assignments"
    DEVICE_COMPLIANCE = "device_compliance"
    # Identity providers
    USER_ACCESS_LIST = "user_access_list"
    ACCESS_REVIEW_STATUS = "access_review_status"
    APP_ASSIGNMENTS = "app_assignments"
    MFA_STATUS = "mfa_status"


class EvidenceCategory(str, Enum):
    """Handler category an evidence type is routed to"""
    ROSTER = "roster"
    BACKGROUND_CHECK = "background_check"
    TRAINING = "training"
    DEVICE = "device"
    ACCESS = "access"
    SECURITY_SCORE = "security_score"


EVIDENCE_CATEGORY_BY_TYPE: Dict[EvidenceType, EvidenceCategory] = {
    EvidenceType.EMPLOYEE_ROSTER: EvidenceCategory.ROSTER,
    EvidenceType.ORG_CHART: EvidenceCategory.ROSTER,
    EvidenceType.EMPLOYMENT_STATUS: EvidenceCategory.ROSTER,
    EvidenceType.ONBOARDING_STATUS: EvidenceCategory.ROSTER,
    EvidenceType.OFFBOARDING_STATUS: EvidenceCategory.ROSTER,
    EvidenceType.BACKGROUND_CHECK_RESULTS: EvidenceCategory.BACKGROUND_CHECK,
    EvidenceType.SCREENING_STATUS: EvidenceCategory.BACKGROUND_CHECK,
    EvidenceType.TRAINING_ASSIGNMENTS: EvidenceCategory.TRAINING,
    EvidenceType.TRAINING_COMPLETIONS: EvidenceCategory.TRAINING,
    EvidenceType.USER_TRAINING_STATUS: EvidenceCategory.TRAINING,
    EvidenceType.DEVICE_INVENTORY: EvidenceCategory.DEVICE,
    EvidenceType.DEVICE_ASSIGNMENTS: EvidenceCategory.DEVICE,
    EvidenceType.DEVICE_COMPLIANCE: EvidenceCategory.DEVICE,
    EvidenceType.USER_ACCESS_LIST: EvidenceCategory.ACCESS,
    EvidenceType.ACCESS_REVIEW_STATUS: EvidenceCategory.ACCESS,
    EvidenceType.APP_ASSIGNMENTS: EvidenceCategory.ACCESS,
    EvidenceType.MFA_STATUS: EvidenceCategory.ACCESS,
    EvidenceType.SECURITY_AWARENESS_SCORE: EvidenceCategory.SECURITY_SCORE,
    EvidenceType.PHISHING_TEST_RESULTS: EvidenceCategory.SECURITY_SCORE,
}


def parse_evidence_type(value) -> Optional[EvidenceType]:
    """Return the EvidenceType for value, or None if it is not employee evidence."""
    if isinstance(value, EvidenceType):
        return value
    try:
        return EvidenceType(value)
    except ValueError:
        return None


def is_employee_evidence_type(value) -> bool:
    return parse_evidence_type(value) is not None


def category_for(evidence_type: EvidenceType) -> EvidenceCategory:
    return EVIDENCE_CATEGORY_BY_TYPE[evidence_type]
