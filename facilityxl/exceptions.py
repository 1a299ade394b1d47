"""
Custom exceptions for FacilityXL.

Provides a hierarchy of exceptions with error codes for consistent error handling.
Data-quality findings (conflicts, low confidence) are domain objects, not errors.
"""
from typing import Any, Dict, Optional


class FacilityXLError(Exception):
    """
    Base exception for all FacilityXL errors.

    Attributes:
        error_code: Unique error code (e.g., FXL-001)
        message: Human-readable error message
        details: Additional error context
    """
    error_code: str = "FXL-000"
    http_status: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# Document Errors (FXL-1XX)
class DocumentLoadError(FacilityXLError):
    """A document could not be read. The pipeline skips it and continues."""
    error_code = "FXL-100"
    http_status = 422

    def __init__(self, document_id: str, reason: str = "unreadable content", **kwargs):
        message = f"Failed to load document {document_id}: {reason}"
        super().__init__(message, details={"document_id": document_id, "reason": reason}, **kwargs)


class NoDocumentsError(FacilityXLError):
    """No documents were supplied for a session."""
    error_code = "FXL-101"
    http_status = 400

    def __init__(self, deal_id: str, **kwargs):
        message = f"No documents found for deal {deal_id}"
        super().__init__(message, details={"deal_id": deal_id}, **kwargs)


# Extraction Errors (FXL-2XX)
class RecordParseError(FacilityXLError):
    """A partial record from the document reader failed validation."""
    error_code = "FXL-200"
    http_status = 422

    def __init__(self, record_kind: str, reason: str, **kwargs):
        message = f"Invalid {record_kind} record: {reason}"
        super().__init__(message, details={"record_kind": record_kind, "reason": reason}, **kwargs)


# Session Errors (FXL-3XX)
class SessionNotFoundError(FacilityXLError):
    """Extraction session not found in the registry."""
    error_code = "FXL-301"
    http_status = 404

    def __init__(self, session_id: str, **kwargs):
        message = f"Extraction session {session_id} not found"
        super().__init__(message, details={"session_id": session_id}, **kwargs)


class ClarificationsPendingError(FacilityXLError):
    """Session cannot proceed while blocking clarifications remain."""
    error_code = "FXL-303"
    http_status = 409

    def __init__(self, clarification_count: int, **kwargs):
        message = f"Cannot proceed: {clarification_count} blocking clarifications pending"
        super().__init__(message, details={"clarification_count": clarification_count}, **kwargs)


# Persistence Errors (FXL-8XX)
class PersistenceError(FacilityXLError):
    """Writing the reconciled context failed."""
    error_code = "FXL-800"
    http_status = 500

    def __init__(self, message: str = "Persistence operation failed", **kwargs):
        super().__init__(message, **kwargs)


# Collaborator Errors (FXL-9XX)
class DocumentReaderError(FacilityXLError):
    """The external document reader failed."""
    error_code = "FXL-900"
    http_status = 502

    def __init__(self, operation: str, message: str = "Document reader error", **kwargs):
        full_message = f"Document reader {operation} failed: {message}"
        super().__init__(full_message, details={"operation": operation}, **kwargs)
