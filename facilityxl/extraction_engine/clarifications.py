"""
Clarification generator.

Turns unresolved conflicts and standalone anomalies into prioritized
questions for the user.
"""

from typing import List, Optional

import structlog

from facilityxl.extraction_engine.conflict_resolver import (
    generate_suggested_values,
    highest_confidence,
)
from facilityxl.extraction_engine.models import (
    DEFAULT_THRESHOLDS,
    Benchmark,
    ClarificationType,
    ConflictType,
    DataConflict,
    NormalizedCensusPeriod,
    NormalizedFinancialPeriod,
    PipelineClarification,
    Severity,
    SuggestedValue,
    ValidationThresholds,
)
from facilityxl.extraction_engine.schemas import SuggestedClarification

logger = structlog.get_logger(__name__)


FIELD_LABELS = {
    "revenue.total": "Total Revenue",
    "revenue.byPayer": "Revenue by Payer",
    "expenses.total": "Total Expenses",
    "expenses.labor.total": "Total Labor Expense",
    "expenses.labor.agency": "Agency Labor",
    "metrics.noi": "Net Operating Income",
    "metrics.ebitdar": "EBITDAR",
    "metrics.ebitda": "EBITDA",
    "patientDays.total": "Total Patient Days",
    "rates.weightedAvg": "Weighted Average Rate",
    "census.occupancy": "Occupancy Rate",
    "financial.overall": "Financial Data",
}

SEVERITY_PRIORITY = {
    Severity.CRITICAL: 10,
    Severity.HIGH: 8,
    Severity.MEDIUM: 6,
}
DEFAULT_PRIORITY = 5
CRITICAL_FIELD_BONUS = 2

AGENCY_BENCHMARK = Benchmark(min=0.0, max=0.15, median=0.08)
OCCUPANCY_BENCHMARK = Benchmark(min=0.70, max=0.95, median=0.82)


def format_field_label(field_path: str) -> str:
    """Human label for a field path, e.g. expenses.total -> Total Expenses."""
    if field_path in FIELD_LABELS:
        return FIELD_LABELS[field_path]
    leaf = field_path.split(".")[-1]
    words = []
    for char in leaf:
        if char.isupper() and words:
            words.append(" ")
        words.append(char)
    return "".join(words).replace("_", " ").title()


def format_period(period_key: Optional[str]) -> str:
    if not period_key:
        return "an unspecified period"
    if "_to_" in period_key:
        previous_end, current_start = period_key.split("_to_", 1)
        return f"{previous_end} to {current_start}"
    return period_key.replace("_", " to ")


class ClarificationGenerator:
    """Builds PipelineClarifications from conflicts and anomalies."""

    def __init__(self, thresholds: ValidationThresholds = DEFAULT_THRESHOLDS):
        self.thresholds = thresholds

    def priority_for(self, severity: Severity, field_path: str) -> int:
        """Base priority from severity, +2 for critical fields, capped at 10."""
        priority = SEVERITY_PRIORITY.get(severity, DEFAULT_PRIORITY)
        if field_path in self.thresholds.critical_fields:
            priority += CRITICAL_FIELD_BONUS
        return min(10, priority)

    # =========================================================================
    # Conflicts
    # =========================================================================

    def from_conflict(
        self,
        conflict: DataConflict,
        facility_name: Optional[str] = None,
        benchmark: Optional[Benchmark] = None,
    ) -> PipelineClarification:
        label = format_field_label(conflict.field_path)
        period = format_period(conflict.period_key)
        ai_value = highest_confidence(conflict.values)[0] if conflict.values else None

        return PipelineClarification(
            type=self._clarification_type(conflict.type),
            priority=self.priority_for(conflict.severity, conflict.field_path),
            field_path=conflict.field_path,
            field_label=label,
            question=f"Which {label} is correct for {facility_name or 'this facility'} ({period})?",
            facility_id=conflict.facility_id,
            facility_name=facility_name,
            period_key=conflict.period_key,
            conflict_id=conflict.id,
            ai_value=ai_value,
            ai_explanation=self._explain(conflict, label, period),
            suggested_values=generate_suggested_values(conflict, benchmark),
            benchmark=benchmark,
        )

    @staticmethod
    def _clarification_type(conflict_type: ConflictType) -> ClarificationType:
        if conflict_type == ConflictType.REVENUE_RECONCILIATION:
            return ClarificationType.REVENUE_MISMATCH
        if conflict_type == ConflictType.BENCHMARK_DEVIATION:
            return ClarificationType.OUT_OF_RANGE
        return ClarificationType.CONFLICT

    @staticmethod
    def _explain(conflict: DataConflict, label: str, period: str) -> str:
        variance = f"{conflict.variance_percent:.1%}"
        if conflict.type == ConflictType.CROSS_DOCUMENT:
            return (
                f"{len(conflict.values)} sources report different {label} values "
                f"for {period} (variance {variance})."
            )
        if conflict.type == ConflictType.CROSS_PERIOD:
            return f"{label} changed by {variance} between consecutive periods ({period})."
        if conflict.type == ConflictType.REVENUE_RECONCILIATION:
            return (
                f"Reported revenue for {period} differs from census days x payer rates "
                f"by {variance} (${conflict.variance_absolute:,.0f})."
            )
        if conflict.type == ConflictType.INTERNAL_CONSISTENCY:
            return f"{label} for {period} does not match the sum of its components (off by {variance})."
        return f"{label} for {period} is outside the expected range."

    # =========================================================================
    # Anomalies
    # =========================================================================

    def anomalies_for_period(
        self,
        period: NormalizedFinancialPeriod,
        facility_name: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> List[PipelineClarification]:
        """Low confidence, high agency share and thin payer breakdown."""
        clarifications = []
        facility = facility_name or "this facility"
        common = dict(
            facility_id=period.facility_id,
            facility_name=facility_name,
            period_key=period.period_key,
            document_id=document_id,
        )

        if period.confidence < self.thresholds.low_confidence:
            clarifications.append(PipelineClarification(
                type=ClarificationType.LOW_CONFIDENCE,
                priority=7,
                field_path="financial.overall",
                field_label=format_field_label("financial.overall"),
                question=f"Please verify the financial data for {facility} ({format_period(period.period_key)}).",
                ai_value=period.revenue.total,
                ai_confidence=period.confidence,
                ai_explanation=f"Extraction confidence is {period.confidence:.0f}%.",
                suggested_values=[
                    SuggestedValue(value=period.revenue.total, label="Extracted revenue", confidence=period.confidence)
                ],
                **common,
            ))

        labor = period.expenses.labor
        if labor.total > 0:
            agency_share = labor.agency / labor.total
            if agency_share > self.thresholds.max_agency_share:
                clarifications.append(PipelineClarification(
                    type=ClarificationType.OUT_OF_RANGE,
                    priority=6,
                    field_path="expenses.labor.agency",
                    field_label=format_field_label("expenses.labor.agency"),
                    question=f"Agency labor is {agency_share:.0%} of labor cost for {facility}. Is this correct?",
                    ai_value=round(agency_share, 4),
                    ai_explanation="Agency labor above 25% of total labor is unusual.",
                    benchmark=AGENCY_BENCHMARK,
                    suggested_values=[
                        SuggestedValue(value=round(agency_share, 4), label="Extracted share", confidence=period.confidence),
                        SuggestedValue(value=AGENCY_BENCHMARK.median, label="Industry benchmark median", confidence=50.0),
                    ],
                    **common,
                ))

        revenue = period.revenue
        if revenue.total > 0:
            coverage = revenue.by_payer.total() / revenue.total
            if coverage < self.thresholds.min_payer_coverage:
                clarifications.append(PipelineClarification(
                    type=ClarificationType.MISSING_CRITICAL,
                    priority=5,
                    field_path="revenue.byPayer",
                    field_label=format_field_label("revenue.byPayer"),
                    question=f"Payer revenue accounts for only {coverage:.0%} of total revenue for {facility}. Can you provide the payer breakdown?",
                    ai_value=round(coverage, 4),
                    ai_confidence=40.0,
                    **common,
                ))

        return clarifications

    def anomalies_for_census(
        self,
        census: NormalizedCensusPeriod,
        facility_name: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> List[PipelineClarification]:
        """Occupancy outside the plausible band."""
        occupancy = census.occupancy_rate
        if not occupancy or self.thresholds.min_occupancy <= occupancy <= self.thresholds.max_occupancy:
            return []

        return [PipelineClarification(
            type=ClarificationType.OUT_OF_RANGE,
            priority=7,
            field_path="census.occupancy",
            field_label=format_field_label("census.occupancy"),
            question=f"Occupancy of {occupancy:.0%} for {facility_name or 'this facility'} looks unusual. Is it correct?",
            facility_id=census.facility_id,
            facility_name=facility_name,
            period_key=census.period_key,
            document_id=document_id,
            ai_value=occupancy,
            ai_confidence=census.confidence,
            ai_explanation="Occupancy is expected between 50% and 100%.",
            benchmark=OCCUPANCY_BENCHMARK,
            suggested_values=[
                SuggestedValue(value=occupancy, label="Extracted occupancy", confidence=census.confidence),
                SuggestedValue(value=OCCUPANCY_BENCHMARK.median, label="Industry benchmark median", confidence=50.0),
            ],
        )]

    def from_suggestion(
        self,
        suggestion: SuggestedClarification,
        facility_id: Optional[str] = None,
        facility_name: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> PipelineClarification:
        """A question raised by the document reader itself."""
        return PipelineClarification(
            type=ClarificationType.VALIDATION_ERROR,
            priority=suggestion.priority,
            field_path=suggestion.field_path,
            field_label=suggestion.field_label or format_field_label(suggestion.field_path),
            question=suggestion.question,
            facility_id=facility_id,
            facility_name=facility_name,
            document_id=document_id,
            ai_value=suggestion.ai_value,
            ai_explanation=suggestion.ai_explanation,
        )


def get_clarification_generator(
    thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
) -> ClarificationGenerator:
    """Get clarification generator instance."""
    return ClarificationGenerator(thresholds)
