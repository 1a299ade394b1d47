"""
Pytest configuration and fixtures.
"""
from datetime import date
from typing import Any, Dict, List, Optional

import pytest

from facilityxl.config import Settings
from facilityxl.extraction_engine.context import ExtractionContextManager
from facilityxl.extraction_engine.models import (
    DataSource,
    NormalizedCensusPeriod,
    NormalizedFinancialPeriod,
    NormalizedPayerRate,
    PatientDays,
    PayerBreakdown,
    PayerRates,
    PeriodType,
    RevenueBreakdown,
)
from facilityxl.extraction_engine.ports import SourceDocument
from facilityxl.extraction_engine.population import InMemoryPersistenceWriter

TODAY = date(2024, 12, 31)
FACILITY = "Sunrise Care Center"


def fixed_clock() -> date:
    return TODAY


# =============================================================================
# Raw reader records (camelCase, as a reader would emit them)
# =============================================================================

def financial_record(
    facility: str = FACILITY,
    start: str = "2024-01-01",
    end: str = "2024-01-31",
    revenue: Any = 250000,
    expenses: Any = 200000,
    confidence: Any = 90,
    **extra: Any,
) -> Dict[str, Any]:
    record = {
        "facilityName": facility,
        "periodStart": start,
        "periodEnd": end,
        "revenue": {"total": revenue},
        "expenses": {"total": expenses},
        "confidence": confidence,
    }
    record.update(extra)
    return record


def census_record(
    facility: str = FACILITY,
    start: str = "2024-01-01",
    end: str = "2024-01-31",
    days: Optional[Dict[str, Any]] = None,
    confidence: Any = 85,
    **extra: Any,
) -> Dict[str, Any]:
    record = {
        "facilityName": facility,
        "periodStart": start,
        "periodEnd": end,
        "patientDays": days if days is not None else {"medicarePartA": 1000},
        "confidence": confidence,
    }
    record.update(extra)
    return record


def rate_record(
    facility: str = FACILITY,
    effective: str = "2024-01-01",
    rates: Optional[Dict[str, Any]] = None,
    confidence: Any = 80,
) -> Dict[str, Any]:
    return {
        "facilityName": facility,
        "effectiveDate": effective,
        "rates": rates if rates is not None else {"medicarePartA": 300},
        "confidence": confidence,
    }


# =============================================================================
# Normalized records
# =============================================================================

def make_source(document_id: str = "doc-1", filename: str = "pl.xlsx") -> DataSource:
    return DataSource(document_id=document_id, filename=filename)


def make_period(
    facility_id: str,
    revenue: float = 250000.0,
    start: date = date(2024, 1, 1),
    end: date = date(2024, 1, 31),
    confidence: float = 90.0,
    document_id: str = "doc-1",
    **kwargs: Any,
) -> NormalizedFinancialPeriod:
    return NormalizedFinancialPeriod(
        facility_id=facility_id,
        period_start=start,
        period_end=end,
        period_type=kwargs.pop("period_type", PeriodType.MONTHLY),
        revenue=RevenueBreakdown(total=revenue),
        sources=[make_source(document_id)],
        confidence=confidence,
        **kwargs,
    )


def make_census(
    facility_id: str,
    medicare_days: float = 1000.0,
    start: date = date(2024, 1, 1),
    end: date = date(2024, 1, 31),
    confidence: float = 85.0,
    occupancy: float = 0.0,
) -> NormalizedCensusPeriod:
    return NormalizedCensusPeriod(
        facility_id=facility_id,
        period_start=start,
        period_end=end,
        period_type=PeriodType.MONTHLY,
        days_in_period=(end - start).days + 1,
        patient_days=PatientDays(
            total=medicare_days,
            by_payer=PayerBreakdown(medicare_part_a=medicare_days),
        ),
        payer_mix=PayerBreakdown(medicare_part_a=1.0),
        skilled_mix=1.0,
        occupancy_rate=occupancy,
        sources=[make_source("doc-census", "census.xlsx")],
        confidence=confidence,
    )


def make_rate(
    facility_id: str,
    medicare: float = 300.0,
    effective: date = date(2024, 1, 1),
    confidence: float = 80.0,
) -> NormalizedPayerRate:
    return NormalizedPayerRate(
        facility_id=facility_id,
        effective_date=effective,
        rates=PayerRates(medicare_part_a=medicare),
        weighted_avg_ppd=medicare,
        sources=[make_source("doc-rates", "rates.xlsx")],
        confidence=confidence,
    )


# =============================================================================
# Collaborators
# =============================================================================

class FakeDocumentReader:
    """Scripted DocumentReader returning canned payloads per document id."""

    def __init__(
        self,
        responses: Optional[Dict[str, Dict[str, Any]]] = None,
        facilities: Optional[Dict[str, List[str]]] = None,
        failures: Optional[Dict[str, Exception]] = None,
        extract_failures: Optional[Dict[str, Exception]] = None,
    ):
        self.responses = responses or {}
        self.facilities = facilities or {}
        self.failures = failures or {}
        self.extract_failures = extract_failures or {}
        self.calls: List[tuple] = []
        self.summaries: List[Any] = []
        self.focus: List[Any] = []

    async def analyze_structure(self, document, context):
        self.calls.append(("analyze_structure", document.id))
        if document.id in self.failures:
            raise self.failures[document.id]
        return {
            "documentId": document.id,
            "filename": document.filename,
            "sheets": [{"name": "P&L", "sheetType": "income_statement"}],
            "detectedFacilities": self.facilities.get(document.id, []),
        }

    async def extract_data(self, document, structure, context, focus=None):
        self.calls.append(("extract_data", document.id))
        self.summaries.append(context)
        self.focus.append(focus)
        if document.id in self.extract_failures:
            raise self.extract_failures[document.id]
        return self.responses.get(document.id, {})


class FailingWriter:
    """PersistenceWriter whose store is unavailable."""

    async def write(self, context, deal_id):
        raise RuntimeError("connection refused")


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, log_json=False)


@pytest.fixture
def context() -> ExtractionContextManager:
    return ExtractionContextManager(session_id="session-1", deal_id="deal-1", clock=fixed_clock)


@pytest.fixture
def facility_id(context: ExtractionContextManager) -> str:
    profile, _ = context.find_or_create_facility(FACILITY)
    return profile.id


@pytest.fixture
def writer() -> InMemoryPersistenceWriter:
    return InMemoryPersistenceWriter()


@pytest.fixture
def documents() -> List[SourceDocument]:
    return [
        SourceDocument(id="doc-1", filename="pl_2024.xlsx", file_type="xlsx"),
        SourceDocument(id="doc-2", filename="census_2024.xlsx", file_type="xlsx"),
    ]
