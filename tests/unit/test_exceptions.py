"""
Unit tests for the exception hierarchy.
"""
import pytest

from facilityxl.exceptions import (
    ClarificationsPendingError,
    DocumentLoadError,
    DocumentReaderError,
    FacilityXLError,
    NoDocumentsError,
    PersistenceError,
    RecordParseError,
    SessionNotFoundError,
)


class TestFacilityXLError:
    def test_defaults(self):
        """Test default error code, status and message."""
        error = FacilityXLError()
        assert error.error_code == "FXL-000"
        assert error.http_status == 500
        assert error.details == {}
        assert str(error) == "An unexpected error occurred"

    def test_custom_code(self):
        """Test to_dict with a custom error code."""
        error = FacilityXLError("boom", details={"a": 1}, error_code="FXL-999")
        assert error.to_dict() == {
            "error": True,
            "error_code": "FXL-999",
            "message": "boom",
            "details": {"a": 1},
        }


class TestSubclasses:
    @pytest.mark.parametrize("error,code,status", [
        (DocumentLoadError("doc-1"), "FXL-100", 422),
        (NoDocumentsError("deal-1"), "FXL-101", 400),
        (RecordParseError("census_period", "bad date"), "FXL-200", 422),
        (SessionNotFoundError("s-1"), "FXL-301", 404),
        (ClarificationsPendingError(2), "FXL-303", 409),
        (PersistenceError(), "FXL-800", 500),
        (DocumentReaderError("extract_data"), "FXL-900", 502),
    ])
    def test_codes(self, error, code, status):
        """Test error codes and HTTP statuses of subclasses."""
        assert isinstance(error, FacilityXLError)
        assert error.error_code == code
        assert error.http_status == status

    def test_messages_and_details(self):
        """Test subclass messages and details."""
        error = DocumentLoadError("doc-1", "password protected")
        assert error.message == "Failed to load document doc-1: password protected"
        assert error.details == {"document_id": "doc-1", "reason": "password protected"}

        error = DocumentReaderError("analyze_structure", "rate limited")
        assert error.message == "Document reader analyze_structure failed: rate limited"
        assert error.details == {"operation": "analyze_structure"}

        error = ClarificationsPendingError(3)
        assert "3 blocking clarifications" in error.message
