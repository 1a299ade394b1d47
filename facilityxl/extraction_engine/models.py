"""
Data model for the FacilityXL extraction engine.

Implements the session-level structures used during reconciliation:
- DataSource provenance attached to every extracted value
- Normalized financial, census and payer-rate records
- FacilityFinancialProfile with TTM metrics and quality scores
- Cross-reference entries and calculated revenue reconciliations
- DataConflict and PipelineClarification state machines
- ProcessingStats and the context summary handed to document readers
"""

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


UNKNOWN_FACILITY = "Unknown Facility"


class PeriodType(str, Enum):
    """Granularity of a reporting period."""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"
    TTM = "ttm"


class FacilityType(str, Enum):
    """Facility classes."""
    SNF = "SNF"    # Skilled nursing
    ALF = "ALF"    # Assisted living
    ILF = "ILF"    # Independent living
    CCRC = "CCRC"  # Continuing care retirement community
    MIXED = "mixed"


class ConflictType(str, Enum):
    CROSS_DOCUMENT = "cross_document"
    CROSS_PERIOD = "cross_period"
    REVENUE_RECONCILIATION = "revenue_reconciliation"
    INTERNAL_CONSISTENCY = "internal_consistency"
    BENCHMARK_DEVIATION = "benchmark_deviation"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConflictStatus(str, Enum):
    """detected -> auto_resolved | pending_clarification | user_resolved"""
    DETECTED = "detected"
    AUTO_RESOLVED = "auto_resolved"
    PENDING_CLARIFICATION = "pending_clarification"
    USER_RESOLVED = "user_resolved"


class ResolutionMethod(str, Enum):
    """How a conflict value was settled."""
    AUTO_HIGHEST_CONFIDENCE = "auto_highest_confidence"
    AUTO_AVERAGE = "auto_average"
    AUTO_WEIGHTED_AVERAGE = "auto_weighted_average"
    AUTO_MOST_RECENT = "auto_most_recent"
    AUTO_BENCHMARK_ALIGNED = "auto_benchmark_aligned"
    AUTO_CALCULATED = "auto_calculated"
    USER_INPUT = "user_input"


class ResolutionStrategy(str, Enum):
    """Caller-selectable strategies for batch resolution."""
    HIGHEST_CONFIDENCE = "highest_confidence"
    AVERAGE = "average"
    WEIGHTED_AVERAGE = "weighted_average"
    MOST_RECENT = "most_recent"
    BENCHMARK_ALIGNED = "benchmark_aligned"


class ClarificationType(str, Enum):
    LOW_CONFIDENCE = "low_confidence"
    OUT_OF_RANGE = "out_of_range"
    CONFLICT = "conflict"
    MISSING_CRITICAL = "missing_critical"
    REVENUE_MISMATCH = "revenue_mismatch"
    VALIDATION_ERROR = "validation_error"


class ClarificationStatus(str, Enum):
    """pending -> resolved | skipped | auto_resolved"""
    PENDING = "pending"
    RESOLVED = "resolved"
    SKIPPED = "skipped"
    AUTO_RESOLVED = "auto_resolved"


class PipelineStatus(str, Enum):
    INITIALIZING = "initializing"
    PROCESSING = "processing"
    AWAITING_CLARIFICATIONS = "awaiting_clarifications"
    COMPLETED = "completed"
    FAILED = "failed"


class PassType(str, Enum):
    STRUCTURE = "structure"
    EXTRACTION = "extraction"
    VALIDATION = "validation"
    POPULATION = "population"


# Payer categories carried by rate schedules (revenue and days add "other")
PAYER_CATEGORIES = (
    "medicare_part_a",
    "medicare_advantage",
    "managed_care",
    "medicaid",
    "managed_medicaid",
    "private",
    "va",
    "hospice",
)

SKILLED_PAYERS = ("medicare_part_a", "medicare_advantage", "managed_care")


# =============================================================================
# Thresholds
# =============================================================================

@dataclass(frozen=True)
class ValidationThresholds:
    """Reconciliation thresholds, expressed as fractions unless noted."""
    cross_document_variance: float = 0.05
    cross_document_high: float = 0.15
    cross_document_medium: float = 0.10
    revenue_reconciliation_variance: float = 0.10
    revenue_reconciliation_high: float = 0.20
    resurface_tolerance: float = 0.05
    resurface_high: float = 0.15
    revenue_period_change: float = 0.20
    expense_period_change: float = 0.25
    period_change_high: float = 0.50
    internal_consistency_variance: float = 0.05
    internal_consistency_high: float = 0.15
    auto_resolve_variance: float = 0.03
    low_confidence: float = 70.0  # 0-100 scale
    max_agency_share: float = 0.25
    min_occupancy: float = 0.50
    max_occupancy: float = 1.00
    min_payer_coverage: float = 0.50
    critical_fields: FrozenSet[str] = frozenset(
        {"revenue.total", "expenses.total", "metrics.noi", "metrics.ebitdar"}
    )


DEFAULT_THRESHOLDS = ValidationThresholds()


# =============================================================================
# Provenance
# =============================================================================

@dataclass
class DataSource:
    """Where an extracted value came from."""
    document_id: str
    filename: str
    sheet_name: Optional[str] = None
    row_range: Optional[str] = None
    extracted_at: datetime = field(default_factory=utcnow)


# =============================================================================
# Financial Periods
# =============================================================================

@dataclass
class PayerBreakdown:
    """Per-payer values: revenue dollars, patient days or mix fractions."""
    medicare_part_a: float = 0.0
    medicare_advantage: float = 0.0
    managed_care: float = 0.0
    medicaid: float = 0.0
    managed_medicaid: float = 0.0
    private: float = 0.0
    va: float = 0.0
    hospice: float = 0.0
    other: float = 0.0

    def total(self) -> float:
        return sum(getattr(self, f.name) for f in fields(self))

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class RevenueByType:
    room_and_board: float = 0.0
    ancillary: float = 0.0
    therapy: float = 0.0
    pharmacy: float = 0.0
    other: float = 0.0

    def total(self) -> float:
        return sum(getattr(self, f.name) for f in fields(self))


@dataclass
class RevenueBreakdown:
    total: float = 0.0
    by_payer: PayerBreakdown = field(default_factory=PayerBreakdown)
    by_type: RevenueByType = field(default_factory=RevenueByType)


@dataclass
class LaborExpenses:
    total: float = 0.0
    core: float = 0.0
    agency: float = 0.0
    benefits: float = 0.0

    def component_total(self) -> float:
        return self.core + self.agency + self.benefits


@dataclass
class OperatingExpenses:
    dietary: float = 0.0
    housekeeping: float = 0.0
    utilities: float = 0.0
    maintenance: float = 0.0
    supplies: float = 0.0
    other: float = 0.0

    def total(self) -> float:
        return sum(getattr(self, f.name) for f in fields(self))


@dataclass
class FixedExpenses:
    insurance: float = 0.0
    property_tax: float = 0.0
    management_fee: float = 0.0
    rent: float = 0.0
    other: float = 0.0

    def total(self) -> float:
        return sum(getattr(self, f.name) for f in fields(self))


@dataclass
class ExpenseBreakdown:
    total: float = 0.0
    labor: LaborExpenses = field(default_factory=LaborExpenses)
    operating: OperatingExpenses = field(default_factory=OperatingExpenses)
    fixed: FixedExpenses = field(default_factory=FixedExpenses)

    def component_total(self) -> float:
        return self.labor.total + self.operating.total() + self.fixed.total()


@dataclass
class FinancialMetrics:
    ebitdar: float = 0.0
    ebitda: float = 0.0
    noi: float = 0.0
    net_income: float = 0.0
    ebitdar_margin: float = 0.0
    noi_margin: float = 0.0
    labor_percentage: float = 0.0
    agency_percentage: float = 0.0


def make_period_key(start: date, end: date) -> str:
    """Key for a period, e.g. 2024-01-01_2024-01-31."""
    return f"{start.isoformat()}_{end.isoformat()}"


@dataclass
class NormalizedFinancialPeriod:
    """A fully-typed P&L for one facility and period."""
    facility_id: str
    period_start: date
    period_end: date
    period_type: PeriodType
    revenue: RevenueBreakdown = field(default_factory=RevenueBreakdown)
    expenses: ExpenseBreakdown = field(default_factory=ExpenseBreakdown)
    metrics: FinancialMetrics = field(default_factory=FinancialMetrics)
    sources: List[DataSource] = field(default_factory=list)
    confidence: float = 50.0
    is_annualized: bool = False
    annualization_factor: Optional[float] = None
    id: str = field(default_factory=new_id)

    @property
    def period_key(self) -> str:
        return make_period_key(self.period_start, self.period_end)

    @property
    def days_covered(self) -> int:
        return (self.period_end - self.period_start).days + 1


# =============================================================================
# Census and Rates
# =============================================================================

@dataclass
class PatientDays:
    total: float = 0.0
    by_payer: PayerBreakdown = field(default_factory=PayerBreakdown)


@dataclass
class NormalizedCensusPeriod:
    """Patient days, payer mix and occupancy for one facility and period."""
    facility_id: str
    period_start: date
    period_end: date
    period_type: PeriodType
    days_in_period: int
    patient_days: PatientDays = field(default_factory=PatientDays)
    payer_mix: PayerBreakdown = field(default_factory=PayerBreakdown)
    skilled_mix: float = 0.0
    total_beds: Optional[int] = None
    average_daily_census: float = 0.0
    occupancy_rate: float = 0.0
    sources: List[DataSource] = field(default_factory=list)
    confidence: float = 50.0
    id: str = field(default_factory=new_id)

    @property
    def period_key(self) -> str:
        return make_period_key(self.period_start, self.period_end)


@dataclass
class PayerRates:
    """Per-patient-day rates by payer; None when not reported."""
    medicare_part_a: Optional[float] = None
    medicare_advantage: Optional[float] = None
    managed_care: Optional[float] = None
    medicaid: Optional[float] = None
    managed_medicaid: Optional[float] = None
    private: Optional[float] = None
    va: Optional[float] = None
    hospice: Optional[float] = None

    def present(self) -> Dict[str, float]:
        """Rates that are set and positive."""
        return {
            payer: getattr(self, payer)
            for payer in PAYER_CATEGORIES
            if getattr(self, payer) is not None and getattr(self, payer) > 0
        }


@dataclass
class NormalizedPayerRate:
    """A payer rate schedule effective from a date."""
    facility_id: str
    effective_date: date
    rates: PayerRates = field(default_factory=PayerRates)
    weighted_avg_ppd: Optional[float] = None
    blended_skilled_ppd: Optional[float] = None
    sources: List[DataSource] = field(default_factory=list)
    confidence: float = 50.0
    id: str = field(default_factory=new_id)

    @property
    def date_key(self) -> str:
        return self.effective_date.isoformat()


# =============================================================================
# Facility Profile
# =============================================================================

@dataclass
class FacilityAddress:
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


@dataclass
class FacilityFinancialProfile:
    """Everything known about one facility within a session."""
    id: str
    name: str
    aliases: List[str] = field(default_factory=list)
    ccn: Optional[str] = None
    npi: Optional[str] = None
    address: FacilityAddress = field(default_factory=FacilityAddress)
    licensed_beds: Optional[int] = None
    certified_beds: Optional[int] = None
    facility_type: FacilityType = FacilityType.SNF

    # Ascending by period start; rates most-recent-first
    financial_periods: List[NormalizedFinancialPeriod] = field(default_factory=list)
    census_periods: List[NormalizedCensusPeriod] = field(default_factory=list)
    payer_rates: List[NormalizedPayerRate] = field(default_factory=list)

    # Derived
    ttm_revenue: Optional[float] = None
    ttm_expenses: Optional[float] = None
    ttm_ebitdar: Optional[float] = None
    ttm_noi: Optional[float] = None
    avg_occupancy: Optional[float] = None
    avg_payer_mix: Optional[PayerBreakdown] = None
    data_completeness: float = 0.0
    data_confidence: float = 0.0
    last_updated: datetime = field(default_factory=utcnow)


# =============================================================================
# Cross-Reference Index
# =============================================================================

@dataclass
class CrossReferenceEntry:
    """One observed value for a (facility, period, field) key."""
    value: float
    source: DataSource
    confidence: float


@dataclass
class CalculatedRevenueEntry:
    """Census x rates revenue compared with reported revenue."""
    facility_id: str
    period_key: str
    calculated_total: float
    reported_total: float
    variance: float
    variance_percent: float
    breakdown: Dict[str, Dict[str, float]] = field(default_factory=dict)
    census_confidence: float = 0.0
    rates_confidence: float = 0.0
    reported_source: Optional[DataSource] = None
    reported_confidence: float = 0.0
    calculated_at: datetime = field(default_factory=utcnow)


# =============================================================================
# Conflicts
# =============================================================================

@dataclass
class ConflictValue:
    value: float
    source: DataSource
    confidence: float


@dataclass
class ConflictResolution:
    value: float
    method: ResolutionMethod
    resolved_by: str = "system"
    resolved_at: datetime = field(default_factory=utcnow)
    note: Optional[str] = None
    confidence: Optional[float] = None


@dataclass
class DataConflict:
    """Disagreement between observations of the same figure."""
    type: ConflictType
    severity: Severity
    field_path: str
    values: List[ConflictValue] = field(default_factory=list)
    variance_percent: float = 0.0
    variance_absolute: float = 0.0
    facility_id: Optional[str] = None
    period_key: Optional[str] = None
    status: ConflictStatus = ConflictStatus.DETECTED
    resolution: Optional[ConflictResolution] = None
    detected_at: datetime = field(default_factory=utcnow)
    id: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = new_id()

    @property
    def is_unresolved(self) -> bool:
        return self.status in (ConflictStatus.DETECTED, ConflictStatus.PENDING_CLARIFICATION)


# =============================================================================
# Clarifications
# =============================================================================

@dataclass
class Benchmark:
    min: float
    max: float
    median: float


@dataclass
class SuggestedValue:
    value: float
    label: str
    confidence: float


@dataclass
class PipelineClarification:
    """A question for the user about a value the engine could not settle."""
    type: ClarificationType
    priority: int
    field_path: str
    field_label: str
    question: str
    facility_id: Optional[str] = None
    facility_name: Optional[str] = None
    period_key: Optional[str] = None
    document_id: Optional[str] = None
    conflict_id: Optional[str] = None
    ai_value: Optional[float] = None
    ai_explanation: Optional[str] = None
    ai_confidence: Optional[float] = None
    suggested_values: List[SuggestedValue] = field(default_factory=list)
    benchmark: Optional[Benchmark] = None
    status: ClarificationStatus = ClarificationStatus.PENDING
    resolved_value: Optional[Any] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = new_id()
        self.priority = max(1, min(10, int(self.priority)))


# =============================================================================
# Session Bookkeeping
# =============================================================================

@dataclass
class ProcessingStats:
    documents_processed: int = 0
    sheets_analyzed: int = 0
    data_points_extracted: int = 0
    reader_calls: int = 0
    reader_tokens_used: int = 0
    parse_failures: int = 0
    total_processing_time_ms: float = 0.0


@dataclass
class ContextSummary:
    """Digest of prior findings handed to the document reader."""
    facilities: List[Dict[str, Any]] = field(default_factory=list)
    periods: List[Dict[str, str]] = field(default_factory=list)
    recent_metrics: List[Dict[str, Any]] = field(default_factory=list)
    pending_questions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
