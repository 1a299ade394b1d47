"""
Pydantic schemas for document reader input and output.

Reader payloads are untrusted: field names may arrive in camelCase or
snake_case, numbers as strings, dates in several notations. These models
are the only way reader output enters the engine.
"""
import calendar
import re
from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from facilityxl.extraction_engine.models import FacilityType, PeriodType
from facilityxl.extraction_engine.numbers import coerce_number


MONTH_NAMES = {
    name.lower(): index
    for index, name in enumerate(calendar.month_name)
    if name
}
MONTH_NAMES.update({
    name.lower(): index
    for index, name in enumerate(calendar.month_abbr)
    if name
})

US_DATE_PATTERN = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
MONTH_YEAR_PATTERN = re.compile(r"^([A-Za-z]+)\.?\s+(\d{4})$")


def parse_reader_date(value: Any, end_of_month: bool = False) -> Optional[date]:
    """
    Parse a date emitted by a document reader.

    Accepts date/datetime objects, ISO strings (2024-01-31, with or without
    a time part), US notation (01/31/2024) and month names (Jan 2024,
    January 2024). Month-only dates resolve to the first day of the month,
    or the last day when ``end_of_month`` is set.

    Returns:
        The parsed date, or None if the value is not a recognizable date.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass

    us_match = US_DATE_PATTERN.match(text)
    if us_match:
        month, day, year = (int(part) for part in us_match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return None

    month_match = MONTH_YEAR_PATTERN.match(text)
    if month_match:
        month = MONTH_NAMES.get(month_match.group(1).lower())
        if month is None:
            return None
        year = int(month_match.group(2))
        day = calendar.monthrange(year, month)[1] if end_of_month else 1
        return date(year, month, day)

    return None


def _start_date(value: Any) -> date:
    parsed = parse_reader_date(value)
    if parsed is None:
        raise ValueError(f"invalid date: {value!r}")
    return parsed


def _end_date(value: Any) -> date:
    parsed = parse_reader_date(value, end_of_month=True)
    if parsed is None:
        raise ValueError(f"invalid date: {value!r}")
    return parsed


def _lenient_enum(enum_cls):
    """Map unknown enum values to None instead of failing the record."""
    def validator(value: Any) -> Any:
        if value is None or isinstance(value, enum_cls):
            return value
        text = str(value).strip()
        for candidate in (text, text.lower(), text.upper()):
            try:
                return enum_cls(candidate)
            except ValueError:
                continue
        return None
    return validator


Number = Annotated[Optional[float], BeforeValidator(coerce_number)]
StartDate = Annotated[date, BeforeValidator(_start_date)]
EndDate = Annotated[date, BeforeValidator(_end_date)]
PeriodTypeHint = Annotated[Optional[PeriodType], BeforeValidator(_lenient_enum(PeriodType))]
FacilityTypeHint = Annotated[Optional[FacilityType], BeforeValidator(_lenient_enum(FacilityType))]


class ReaderModel(BaseModel):
    """Base for reader payloads: camelCase or snake_case keys, extras ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        # Explicit nulls fall back to field defaults
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


# =============================================================================
# Partial Financial Periods
# =============================================================================

class PartialPayerValues(ReaderModel):
    medicare_part_a: Number = None
    medicare_advantage: Number = None
    managed_care: Number = None
    medicaid: Number = None
    managed_medicaid: Number = None
    private: Number = None
    va: Number = None
    hospice: Number = None
    other: Number = None


class PartialRevenueByType(ReaderModel):
    room_and_board: Number = None
    ancillary: Number = None
    therapy: Number = None
    pharmacy: Number = None
    other: Number = None


class PartialRevenue(ReaderModel):
    total: Number = None
    by_payer: PartialPayerValues = Field(default_factory=PartialPayerValues)
    by_type: PartialRevenueByType = Field(default_factory=PartialRevenueByType)


class PartialLabor(ReaderModel):
    total: Number = None
    core: Number = None
    agency: Number = None
    benefits: Number = None


class PartialOperating(ReaderModel):
    dietary: Number = None
    housekeeping: Number = None
    utilities: Number = None
    maintenance: Number = None
    supplies: Number = None
    other: Number = None


class PartialFixed(ReaderModel):
    insurance: Number = None
    property_tax: Number = None
    management_fee: Number = None
    rent: Number = None
    other: Number = None


class PartialExpenses(ReaderModel):
    total: Number = None
    labor: PartialLabor = Field(default_factory=PartialLabor)
    operating: PartialOperating = Field(default_factory=PartialOperating)
    fixed: PartialFixed = Field(default_factory=PartialFixed)


class PeriodBounded(ReaderModel):
    """Shared start/end validation for period records."""

    facility_name: Optional[str] = None
    period_start: StartDate
    period_end: EndDate
    confidence: Number = None
    sheet_name: Optional[str] = None
    row_range: Optional[str] = None

    @model_validator(mode="after")
    def check_period_order(self):
        if self.period_end < self.period_start:
            raise ValueError("period_end precedes period_start")
        return self


class PartialFinancialPeriod(PeriodBounded):
    """A P&L as returned by the reader, before normalization."""

    period_type: PeriodTypeHint = None
    is_annualized: Optional[bool] = None
    revenue: PartialRevenue = Field(default_factory=PartialRevenue)
    expenses: PartialExpenses = Field(default_factory=PartialExpenses)


# =============================================================================
# Partial Census and Rates
# =============================================================================

class PartialPatientDays(PartialPayerValues):
    total: Number = None


class PartialCensusPeriod(PeriodBounded):
    """Census figures as returned by the reader."""

    patient_days: PartialPatientDays = Field(default_factory=PartialPatientDays)
    total_beds: Number = None
    average_daily_census: Number = None
    occupancy_rate: Number = None


class PartialPayerRates(ReaderModel):
    medicare_part_a: Number = None
    medicare_advantage: Number = None
    managed_care: Number = None
    medicaid: Number = None
    managed_medicaid: Number = None
    private: Number = None
    va: Number = None
    hospice: Number = None


class PartialPayerRate(ReaderModel):
    """A rate schedule as returned by the reader."""

    facility_name: Optional[str] = None
    effective_date: StartDate
    rates: PartialPayerRates = Field(default_factory=PartialPayerRates)
    confidence: Number = None
    sheet_name: Optional[str] = None


# =============================================================================
# Facility Info and Reader Questions
# =============================================================================

class PartialAddress(ReaderModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


class PartialFacilityInfo(ReaderModel):
    """Identity details for a facility the reader found."""

    name: Optional[str] = None
    aliases: List[str] = Field(default_factory=list)
    ccn: Optional[str] = None
    npi: Optional[str] = None
    address: Optional[PartialAddress] = None
    licensed_beds: Number = None
    certified_beds: Number = None
    facility_type: FacilityTypeHint = None

    @field_validator("aliases", mode="before")
    @classmethod
    def drop_blank_aliases(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [alias for alias in value if isinstance(alias, str) and alias.strip()]
        return value


class SuggestedClarification(ReaderModel):
    """A question the reader itself wants to ask the user."""

    question: str
    facility_name: Optional[str] = None
    field_path: str = "unknown"
    field_label: Optional[str] = None
    ai_value: Number = None
    ai_explanation: Optional[str] = None
    priority: int = 5

    @field_validator("priority", mode="before")
    @classmethod
    def clamp_priority(cls, value: Any) -> int:
        number = coerce_number(value)
        if number is None:
            return 5
        return max(1, min(10, int(number)))


# =============================================================================
# Reader Responses
# =============================================================================

class SheetStructure(ReaderModel):
    name: str
    index: int = 0
    sheet_type: str = "unknown"
    confidence: Number = None


class DetectedPeriod(ReaderModel):
    label: str
    period_type: PeriodTypeHint = None
    start: Optional[str] = None
    end: Optional[str] = None


class DocumentStructure(ReaderModel):
    """Layout analysis of one document."""

    document_id: str
    filename: str
    sheets: List[SheetStructure] = Field(default_factory=list)
    detected_facilities: List[str] = Field(default_factory=list)
    detected_periods: List[DetectedPeriod] = Field(default_factory=list)
    overall_quality: Number = None
    notes: List[str] = Field(default_factory=list)


class ExtractionResponse(ReaderModel):
    """
    Raw extraction output for one document.

    Records stay as plain mappings here so that each one is validated on
    its own; one malformed record never discards its siblings.
    """

    financial_periods: List[Dict[str, Any]] = Field(default_factory=list)
    census_periods: List[Dict[str, Any]] = Field(default_factory=list)
    payer_rates: List[Dict[str, Any]] = Field(default_factory=list)
    facility_info: List[Dict[str, Any]] = Field(default_factory=list)
    observations: List[str] = Field(default_factory=list)
    suggested_clarifications: List[Dict[str, Any]] = Field(default_factory=list)
    confidence: Number = None
    tokens_used: int = 0
