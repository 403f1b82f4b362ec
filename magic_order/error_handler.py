"""
Error Handler - Error taxonomy and classification for the analysis pipeline.

Every failure that can end a run is raised as one of the exceptions below and,
before it reaches the UI, classified into a single human-readable message
plus the diagnostic payload needed for a details view.

Error sources:
1. Completion Client (Timeout, TransportError, ServiceError, MalformedResponse)
2. Response Validator (SchemaError - recovered once through the repair phase)
3. Catalog Store (StoreError - never retried, draft cards stay untouched)
"""

from enum import Enum
from typing import Optional, Dict, Any
from dataclasses import dataclass, field
import logging


logger = logging.getLogger(__name__)


# ============================================
# EXCEPTIONS
# ============================================

class AnalysisError(Exception):
    """Base class for pipeline errors. `details` is kept for diagnostics."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def attach(self, **extra: Any) -> "AnalysisError":
        """Add diagnostic fields (e.g. phase responses) without overwriting existing ones."""
        for key, value in extra.items():
            if value is not None and key not in self.details:
                self.details[key] = value
        return self


class Timeout(AnalysisError):
    """The completion call exceeded its wall-clock limit"""

    def __init__(self, message: str, timeout_ms: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.timeout_ms = timeout_ms
        if timeout_ms is not None:
            self.details.setdefault("timeout_ms", timeout_ms)


class TransportError(AnalysisError):
    """Non-success transport response (HTTP status + raw body) or connection failure"""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.status = status
        self.body = body
        if status is not None:
            self.details.setdefault("status", status)
        if body is not None:
            self.details.setdefault("raw_body", body)


class ServiceError(AnalysisError):
    """The completion service answered with an error payload"""

    def __init__(self, message: str, service_detail: Any = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.service_detail = service_detail
        if service_detail is not None:
            self.details.setdefault("service_detail", service_detail)


class MalformedResponse(AnalysisError):
    """The completion service answered without the expected text field"""


class SchemaError(AnalysisError):
    """Completion text is not valid JSON or does not match the expected schema"""

    def __init__(self, message: str, raw_text: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.raw_text = raw_text
        self.details.setdefault("raw_json_response", raw_text)


class StoreError(AnalysisError):
    """Catalog/order store read or write failed"""


class IncompleteDraftsError(AnalysisError):
    """Bulk save requested while some draft cards are still incomplete"""


class DraftNotFoundError(AnalysisError):
    """Card or item index does not exist in the current draft set"""


# ============================================
# CLASSIFICATION
# ============================================

class ErrorType(str, Enum):
    """Error types for taxonomy"""
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"
    SERVICE_ERROR = "service_error"
    MALFORMED_RESPONSE = "malformed_response"
    SCHEMA_ERROR = "schema_error"
    STORE_ERROR = "store_error"
    INCOMPLETE_DRAFTS = "incomplete_drafts"
    UNEXPECTED = "unexpected"


class ErrorSeverity(str, Enum):
    """Error severity levels"""
    LOW = "low"  # User can fix and continue
    MEDIUM = "medium"  # User must re-trigger the analysis
    HIGH = "high"  # Configuration or service problem


@dataclass
class ErrorClassification:
    """Classification result for an error"""
    error_type: ErrorType
    severity: ErrorSeverity
    user_message: str
    system_message: str
    action: str  # 'retry', 'edit', 'configure', 'block'
    can_recover: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type.value,
            "severity": self.severity.value,
            "user_message": self.user_message,
            "system_message": self.system_message,
            "action": self.action,
            "can_recover": self.can_recover,
            "details": self.details,
        }


# HTTP statuses with a dedicated explanation
TRANSPORT_STATUS_MESSAGES = {
    400: "The analysis service rejected the request. The message may be too long or malformed.",
    401: "The analysis service API key is invalid or expired.",
    403: "The analysis service API key is not allowed to use this model.",
    429: "The analysis service rate limit was exceeded. Please try again later.",
    500: "The analysis service had an internal error. Please try again later.",
    503: "The analysis service is temporarily unavailable. Please try again later.",
}


class ErrorClassifier:
    """Turns pipeline exceptions into UI-safe classifications"""

    @staticmethod
    def classify(error: BaseException) -> ErrorClassification:
        if isinstance(error, Timeout):
            return ErrorClassification(
                error_type=ErrorType.TIMEOUT,
                severity=ErrorSeverity.MEDIUM,
                user_message="The analysis took too long. Please try again.",
                system_message=f"Timeout: {error.message}",
                action="retry",
                can_recover=True,
                details=error.details,
            )

        if isinstance(error, TransportError):
            user_message = TRANSPORT_STATUS_MESSAGES.get(
                error.status or 0,
                "Could not reach the analysis service. Please check the connection and try again.",
            )
            return ErrorClassification(
                error_type=ErrorType.TRANSPORT_ERROR,
                severity=ErrorSeverity.HIGH if error.status in (401, 403) else ErrorSeverity.MEDIUM,
                user_message=user_message,
                system_message=f"Transport error ({error.status}): {error.message}",
                action="configure" if error.status in (401, 403) else "retry",
                can_recover=error.status not in (401, 403),
                details=error.details,
            )

        if isinstance(error, ServiceError):
            return ErrorClassification(
                error_type=ErrorType.SERVICE_ERROR,
                severity=ErrorSeverity.MEDIUM,
                user_message="The analysis service reported an error. Please try again.",
                system_message=f"Service error: {error.message}",
                action="retry",
                can_recover=True,
                details=error.details,
            )

        if isinstance(error, MalformedResponse):
            return ErrorClassification(
                error_type=ErrorType.MALFORMED_RESPONSE,
                severity=ErrorSeverity.MEDIUM,
                user_message="The analysis service returned an unexpected response. Please try again.",
                system_message=f"Malformed response: {error.message}",
                action="retry",
                can_recover=True,
                details=error.details,
            )

        if isinstance(error, SchemaError):
            return ErrorClassification(
                error_type=ErrorType.SCHEMA_ERROR,
                severity=ErrorSeverity.MEDIUM,
                user_message="The orders in this message could not be interpreted. Try rephrasing it and analyze again.",
                system_message=f"Schema error after repair: {error.message}",
                action="retry",
                can_recover=True,
                details=error.details,
            )

        if isinstance(error, StoreError):
            return ErrorClassification(
                error_type=ErrorType.STORE_ERROR,
                severity=ErrorSeverity.MEDIUM,
                user_message="The order could not be saved. Your drafts were kept, please try saving again.",
                system_message=f"Store error: {error.message}",
                action="retry",
                can_recover=True,
                details=error.details,
            )

        if isinstance(error, IncompleteDraftsError):
            return ErrorClassification(
                error_type=ErrorType.INCOMPLETE_DRAFTS,
                severity=ErrorSeverity.LOW,
                user_message="Some orders still have unidentified clients or products. Review them before saving all.",
                system_message=f"Incomplete drafts: {error.message}",
                action="edit",
                can_recover=True,
                details=error.details,
            )

        logger.error(f"[ERROR] Unclassified error: {type(error).__name__}: {error}")
        return ErrorClassification(
            error_type=ErrorType.UNEXPECTED,
            severity=ErrorSeverity.HIGH,
            user_message="Something went wrong while analyzing the message.",
            system_message=f"{type(error).__name__}: {error}",
            action="block",
            can_recover=False,
        )


# Only the repair phase recovers automatically; everything else needs the user
MAX_REPAIR_ATTEMPTS = 1
