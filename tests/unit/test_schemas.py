"""
Unit tests for reader payload schemas.
"""
from datetime import date, datetime

import pytest
from pydantic import ValidationError

from facilityxl.extraction_engine.models import FacilityType, PeriodType
from facilityxl.extraction_engine.schemas import (
    DocumentStructure,
    ExtractionResponse,
    PartialFacilityInfo,
    PartialFinancialPeriod,
    SuggestedClarification,
    parse_reader_date,
)


class TestParseReaderDate:
    """Tests for reader date parsing."""

    @pytest.mark.parametrize("raw,expected", [
        ("2024-01-31", date(2024, 1, 31)),
        ("2024-01-31T00:00:00Z", date(2024, 1, 31)),
        ("01/31/2024", date(2024, 1, 31)),
        ("Jan 2024", date(2024, 1, 1)),
        ("January 2024", date(2024, 1, 1)),
        (datetime(2024, 3, 5, 12, 0), date(2024, 3, 5)),
        (date(2024, 3, 5), date(2024, 3, 5)),
    ])
    def test_accepted_formats(self, raw, expected):
        """Test accepted reader date formats."""
        assert parse_reader_date(raw) == expected

    def test_month_names_resolve_to_month_end(self):
        """Test month names as period ends."""
        assert parse_reader_date("Feb 2024", end_of_month=True) == date(2024, 2, 29)
        assert parse_reader_date("December 2023", end_of_month=True) == date(2023, 12, 31)

    @pytest.mark.parametrize("raw", [None, "", "garbage", "13/45/2024", "Smarch 2024", 20240101])
    def test_rejected_values(self, raw):
        """Test that unparseable dates give None."""
        assert parse_reader_date(raw) is None


class TestPartialFinancialPeriod:
    """Tests for partial P&L validation."""

    def test_camel_case_payload(self):
        """Test a camelCase reader payload."""
        partial = PartialFinancialPeriod.model_validate({
            "facilityName": "Sunrise",
            "periodStart": "Jan 2024",
            "periodEnd": "Jan 2024",
            "revenue": {"total": "$250,000", "byPayer": {"medicarePartA": "100K"}},
            "expenses": {"labor": {"agency": "(1,000)"}},
        })
        assert partial.period_start == date(2024, 1, 1)
        assert partial.period_end == date(2024, 1, 31)
        assert partial.revenue.total == 250000.0
        assert partial.revenue.by_payer.medicare_part_a == 100000.0
        assert partial.expenses.labor.agency == -1000.0

    def test_snake_case_payload(self):
        """Test a snake_case reader payload."""
        partial = PartialFinancialPeriod.model_validate({
            "facility_name": "Sunrise",
            "period_start": "2024-01-01",
            "period_end": "2024-03-31",
            "period_type": "Quarterly",
        })
        assert partial.facility_name == "Sunrise"
        assert partial.period_type == PeriodType.QUARTERLY

    def test_nulls_fall_back_to_defaults(self):
        """Test that null fields take defaults."""
        partial = PartialFinancialPeriod.model_validate({
            "periodStart": "2024-01-01",
            "periodEnd": "2024-01-31",
            "revenue": None,
            "confidence": None,
        })
        assert partial.revenue.total is None
        assert partial.confidence is None

    def test_unknown_period_type_is_dropped(self):
        """Test that an unknown period type is dropped."""
        partial = PartialFinancialPeriod.model_validate({
            "periodStart": "2024-01-01",
            "periodEnd": "2024-01-07",
            "periodType": "weekly",
        })
        assert partial.period_type is None

    def test_missing_start_fails(self):
        """Test that a missing start date fails validation."""
        with pytest.raises(ValidationError):
            PartialFinancialPeriod.model_validate({"periodEnd": "2024-01-31"})

    def test_end_before_start_fails(self):
        """Test that an end before the start fails validation."""
        with pytest.raises(ValidationError):
            PartialFinancialPeriod.model_validate({"periodStart": "2024-02-01", "periodEnd": "2024-01-01"})


class TestOtherPayloads:
    def test_facility_info(self):
        """Test parsing facility info."""
        info = PartialFacilityInfo.model_validate({
            "name": "Sunrise",
            "aliases": ["Sunrise SNF", "", None],
            "licensedBeds": "120",
            "facilityType": "snf",
            "address": {"state": "FL", "zipCode": "33101"},
        })
        assert info.aliases == ["Sunrise SNF"]
        assert info.licensed_beds == 120.0
        assert info.facility_type == FacilityType.SNF
        assert info.address.zip_code == "33101"

    @pytest.mark.parametrize("raw,expected", [(15, 10), ("0", 1), ("high", 5), (7, 7)])
    def test_suggested_clarification_priority(self, raw, expected):
        """Test suggested clarification priority coercion."""
        suggestion = SuggestedClarification.model_validate({"question": "?", "priority": raw})
        assert suggestion.priority == expected

    def test_structure_and_response(self):
        """Test document structure and extraction response models."""
        structure = DocumentStructure.model_validate({
            "documentId": "doc-1",
            "filename": "pl.xlsx",
            "sheets": [{"name": "P&L"}],
            "detectedFacilities": ["Sunrise"],
        })
        assert structure.sheets[0].name == "P&L"

        response = ExtractionResponse.model_validate({
            "financialPeriods": [{"periodStart": "bad"}],
            "tokensUsed": 300,
        })
        # Records are kept raw so each one is validated separately
        assert response.financial_periods == [{"periodStart": "bad"}]
        assert response.tokens_used == 300
