"""
Conflict detection and revenue reconciliation.

Measures disagreement between observations of the same figure and
compares reported revenue with revenue implied by census days and payer
rates.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import structlog

from facilityxl.extraction_engine.models import (
    DEFAULT_THRESHOLDS,
    PAYER_CATEGORIES,
    CalculatedRevenueEntry,
    ConflictType,
    ConflictValue,
    CrossReferenceEntry,
    DataConflict,
    DataSource,
    NormalizedCensusPeriod,
    NormalizedFinancialPeriod,
    NormalizedPayerRate,
    Severity,
    ValidationThresholds,
)

logger = structlog.get_logger(__name__)

CALCULATED_DOCUMENT_ID = "calculated"
CENSUS_RATES_LABEL = "Calculated (Census × Rates)"


def calculated_source(label: str) -> DataSource:
    """Provenance for a value the engine computed rather than read."""
    return DataSource(document_id=CALCULATED_DOCUMENT_ID, filename=label)


def is_calculated(value: ConflictValue) -> bool:
    return value.source.document_id == CALCULATED_DOCUMENT_ID


@dataclass
class VarianceStats:
    average: float
    max_difference: float
    variance_percent: float


def measure_variance(values: Sequence[float]) -> VarianceStats:
    """
    Spread of a set of values around their mean.

    variance_percent = max(|v - mean|) / |mean|, or 0 when the mean is 0.
    Independent of value order and scale; never negative.
    """
    if not values:
        return VarianceStats(0.0, 0.0, 0.0)
    average = sum(values) / len(values)
    max_difference = max(abs(value - average) for value in values)
    variance_percent = max_difference / abs(average) if average else 0.0
    return VarianceStats(average, max_difference, variance_percent)


def grade(variance_percent: float, high: float, medium: Optional[float] = None) -> Severity:
    """Severity for a variance given high and optional medium cut-offs."""
    if variance_percent > high:
        return Severity.HIGH
    if medium is None:
        return Severity.MEDIUM
    if variance_percent > medium:
        return Severity.MEDIUM
    return Severity.LOW


class ConflictDetector:
    """Turns variance between observations into DataConflicts."""

    def __init__(self, thresholds: ValidationThresholds = DEFAULT_THRESHOLDS):
        self.thresholds = thresholds

    def check_values(
        self,
        values: List[ConflictValue],
        field_path: str,
        facility_id: Optional[str] = None,
        period_key: Optional[str] = None,
    ) -> Optional[DataConflict]:
        """Raise a cross_document conflict when values spread more than 5%."""
        if len(values) < 2:
            return None

        stats = measure_variance([v.value for v in values])
        if stats.variance_percent <= self.thresholds.cross_document_variance:
            return None

        return DataConflict(
            type=ConflictType.CROSS_DOCUMENT,
            severity=grade(
                stats.variance_percent,
                self.thresholds.cross_document_high,
                self.thresholds.cross_document_medium,
            ),
            field_path=field_path,
            values=list(values),
            variance_percent=round(stats.variance_percent, 4),
            variance_absolute=round(stats.max_difference, 2),
            facility_id=facility_id,
            period_key=period_key,
        )

    def check_for_conflict(
        self,
        entries: List[CrossReferenceEntry],
        field_path: str,
        facility_id: str,
        period_key: str,
    ) -> Optional[DataConflict]:
        """Variance test over the observations of one cross-reference key."""
        values = [
            ConflictValue(value=e.value, source=e.source, confidence=e.confidence)
            for e in entries
        ]
        return self.check_values(values, field_path, facility_id, period_key)

    # =========================================================================
    # Revenue Reconciliation
    # =========================================================================

    def reconcile_revenue(
        self,
        reported: NormalizedFinancialPeriod,
        census: NormalizedCensusPeriod,
        rate: NormalizedPayerRate,
    ) -> CalculatedRevenueEntry:
        """
        Compare reported revenue with census days x payer rates.

        Uses one rate schedule for the whole period even when rates changed
        mid-period.
        """
        breakdown: Dict[str, Dict[str, float]] = {}
        calculated_total = 0.0
        for payer in PAYER_CATEGORIES:
            days = getattr(census.patient_days.by_payer, payer)
            payer_rate = getattr(rate.rates, payer)
            if not days or not payer_rate:
                continue
            revenue = round(days * payer_rate, 2)
            breakdown[payer] = {"days": days, "rate": payer_rate, "revenue": revenue}
            calculated_total += revenue

        reported_total = reported.revenue.total
        variance = round(reported_total - calculated_total, 2)
        variance_percent = round(variance / reported_total, 4) if reported_total else 0.0

        return CalculatedRevenueEntry(
            facility_id=reported.facility_id,
            period_key=reported.period_key,
            calculated_total=round(calculated_total, 2),
            reported_total=reported_total,
            variance=variance,
            variance_percent=variance_percent,
            breakdown=breakdown,
            census_confidence=census.confidence,
            rates_confidence=rate.confidence,
            reported_source=reported.sources[0] if reported.sources else None,
            reported_confidence=reported.confidence,
        )

    def revenue_conflict(
        self,
        entry: CalculatedRevenueEntry,
        tolerance: Optional[float] = None,
        high: Optional[float] = None,
    ) -> Optional[DataConflict]:
        """
        Raise a revenue_reconciliation conflict for a calculated entry.

        Defaults: flag above 10% variance, high at 20% or more.
        """
        tolerance = self.thresholds.revenue_reconciliation_variance if tolerance is None else tolerance
        high = self.thresholds.revenue_reconciliation_high if high is None else high

        magnitude = abs(entry.variance_percent)
        if magnitude <= tolerance or not entry.calculated_total:
            return None

        reported_source = entry.reported_source or DataSource(
            document_id="unknown", filename="Reported"
        )
        return DataConflict(
            type=ConflictType.REVENUE_RECONCILIATION,
            severity=Severity.HIGH if magnitude >= high else Severity.MEDIUM,
            field_path="revenue.total",
            values=[
                ConflictValue(
                    value=entry.reported_total,
                    source=reported_source,
                    confidence=entry.reported_confidence,
                ),
                ConflictValue(
                    value=entry.calculated_total,
                    source=calculated_source(CENSUS_RATES_LABEL),
                    confidence=min(entry.census_confidence, entry.rates_confidence),
                ),
            ],
            variance_percent=magnitude,
            variance_absolute=abs(entry.variance),
            facility_id=entry.facility_id,
            period_key=entry.period_key,
        )


def get_conflict_detector(
    thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
) -> ConflictDetector:
    """Get conflict detector instance."""
    return ConflictDetector(thresholds)
