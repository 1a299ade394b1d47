"""
Validation pass for the FacilityXL extraction engine.

Runs once per session after every document has been ingested:
1. Cross-document consistency
2. Period-over-period swings
3. Revenue reconciliation resurfacing
4. Internal consistency of totals
5. Auto-resolution sweep, then escalation of what is left
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import structlog

from facilityxl.extraction_engine.clarifications import ClarificationGenerator
from facilityxl.extraction_engine.conflict_resolver import ConflictResolver
from facilityxl.extraction_engine.conflicts import ConflictDetector, calculated_source, grade
from facilityxl.extraction_engine.context import ExtractionContextManager
from facilityxl.extraction_engine.models import (
    DEFAULT_THRESHOLDS,
    ConflictStatus,
    ConflictType,
    ConflictValue,
    DataConflict,
    DataSource,
    NormalizedFinancialPeriod,
    PipelineClarification,
    Severity,
    ValidationThresholds,
)

logger = structlog.get_logger(__name__)


@dataclass
class ValidationResult:
    """Outcome of one validation pass."""
    conflicts: List[DataConflict] = field(default_factory=list)
    clarifications: List[PipelineClarification] = field(default_factory=list)
    auto_resolved: int = 0
    is_valid: bool = True
    validation_score: float = 100.0
    checks: Dict[str, int] = field(default_factory=dict)


def _first_source(period: NormalizedFinancialPeriod) -> DataSource:
    if period.sources:
        return period.sources[0]
    return DataSource(document_id="unknown", filename="unknown")


class ValidationPass:
    """
    Holistic reconciliation sweep over a session's context.

    The four checks only produce conflicts; extraction data is never
    modified. The sweep then settles or escalates every open conflict.
    """

    SEVERITY_DEDUCTIONS = {
        Severity.CRITICAL: 20,
        Severity.HIGH: 10,
        Severity.MEDIUM: 5,
        Severity.LOW: 2,
    }
    CLARIFICATION_DEDUCTION = 3

    CROSS_DOCUMENT_FIELDS = (
        ("revenue.total", lambda p: p.revenue.total),
        ("expenses.total", lambda p: p.expenses.total),
        ("metrics.noi", lambda p: p.metrics.noi),
    )
    # Confidence of engine-computed component sums
    EXPENSE_SUM_CONFIDENCE = 85.0
    LABOR_SUM_CONFIDENCE = 80.0

    def __init__(
        self,
        thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
        detector: Optional[ConflictDetector] = None,
        resolver: Optional[ConflictResolver] = None,
        generator: Optional[ClarificationGenerator] = None,
    ):
        self.thresholds = thresholds
        self.detector = detector or ConflictDetector(thresholds)
        self.resolver = resolver or ConflictResolver(thresholds)
        self.generator = generator or ClarificationGenerator(thresholds)

    def run(self, context: ExtractionContextManager) -> ValidationResult:
        """Run every check, merge findings into the context and score it."""
        logger.info("Validation pass started", periods=len(context.financial_periods))
        result = ValidationResult()

        checks = (
            ("cross_document", self.check_cross_document),
            ("period_over_period", self.check_period_over_period),
            ("revenue_reconciliation", self.check_revenue_reconciliation),
            ("internal_consistency", self.check_internal_consistency),
        )
        for name, check in checks:
            found = check(context)
            result.checks[name] = len(found)
            for conflict in found:
                context.add_conflict(conflict)
            result.conflicts.extend(found)

        # Auto-resolution sweep over everything still detected
        for conflict in [c for c in context.conflicts if c.status == ConflictStatus.DETECTED]:
            resolution = self.resolver.auto_resolve(conflict)
            if resolution is None:
                continue
            context.resolve_conflict(
                conflict.id,
                resolution.value,
                resolution.method,
                note=resolution.note,
                confidence=resolution.confidence,
            )
            result.auto_resolved += 1

        for conflict in [c for c in context.conflicts if c.status == ConflictStatus.DETECTED]:
            clarification = self.generator.from_conflict(
                conflict, facility_name=context.facility_name(conflict.facility_id)
            )
            context.add_clarification(clarification)
            result.clarifications.append(clarification)

        unresolved = context.get_unresolved_conflicts()
        result.is_valid = not any(
            c.severity in (Severity.HIGH, Severity.CRITICAL) for c in unresolved
        )
        result.validation_score = self.score(unresolved, len(context.pending_clarifications))

        logger.info(
            "Validation pass complete",
            conflicts=len(result.conflicts),
            auto_resolved=result.auto_resolved,
            clarifications=len(result.clarifications),
            is_valid=result.is_valid,
            score=result.validation_score,
        )
        return result

    def score(self, unresolved: List[DataConflict], pending_clarifications: int) -> float:
        """100 minus severity deductions and 3 per pending clarification, floored at 0."""
        deductions = sum(self.SEVERITY_DEDUCTIONS.get(c.severity, 0) for c in unresolved)
        deductions += self.CLARIFICATION_DEDUCTION * pending_clarifications
        return float(max(0, 100 - deductions))

    # =========================================================================
    # Checks
    # =========================================================================

    def check_cross_document(self, context: ExtractionContextManager) -> List[DataConflict]:
        """Same facility and period reported with different figures."""
        groups: Dict[Tuple[str, str], List[NormalizedFinancialPeriod]] = defaultdict(list)
        for period in context.financial_periods:
            groups[(period.facility_id, period.period_key)].append(period)

        conflicts = []
        for (facility_id, period_key), periods in groups.items():
            if len(periods) < 2:
                continue
            for field_path, getter in self.CROSS_DOCUMENT_FIELDS:
                if context.find_conflict(ConflictType.CROSS_DOCUMENT, facility_id, period_key, field_path):
                    continue
                values = [
                    ConflictValue(value=getter(p), source=_first_source(p), confidence=p.confidence)
                    for p in periods
                    if getter(p) > 0
                ]
                conflict = self.detector.check_values(values, field_path, facility_id, period_key)
                if conflict:
                    # Validation reports these no lower than medium
                    conflict.severity = grade(conflict.variance_percent, self.thresholds.cross_document_high)
                    conflicts.append(conflict)
        return conflicts

    def check_period_over_period(self, context: ExtractionContextManager) -> List[DataConflict]:
        """Chronologically adjacent periods of a facility with large swings."""
        conflicts = []
        for profile in context.get_facility_profiles():
            periods = sorted(profile.financial_periods, key=lambda p: p.period_start)
            for previous, current in zip(periods, periods[1:]):
                conflicts.extend(self._period_swings(context, profile.id, previous, current))
        return conflicts

    def _period_swings(
        self,
        context: ExtractionContextManager,
        facility_id: str,
        previous: NormalizedFinancialPeriod,
        current: NormalizedFinancialPeriod,
    ) -> List[DataConflict]:
        period_key = f"{previous.period_end.isoformat()}_to_{current.period_start.isoformat()}"
        checks = (
            ("revenue.total", previous.revenue.total, current.revenue.total, self.thresholds.revenue_period_change),
            ("expenses.total", previous.expenses.total, current.expenses.total, self.thresholds.expense_period_change),
        )
        conflicts = []
        for field_path, before, after, limit in checks:
            if before <= 0:
                continue
            change = abs(after - before) / before
            if change <= limit:
                continue
            if context.find_conflict(ConflictType.CROSS_PERIOD, facility_id, period_key, field_path):
                continue
            conflicts.append(DataConflict(
                type=ConflictType.CROSS_PERIOD,
                severity=grade(change, self.thresholds.period_change_high),
                field_path=field_path,
                values=[
                    ConflictValue(value=before, source=_first_source(previous), confidence=previous.confidence),
                    ConflictValue(value=after, source=_first_source(current), confidence=current.confidence),
                ],
                variance_percent=round(change, 4),
                variance_absolute=round(abs(after - before), 2),
                facility_id=facility_id,
                period_key=period_key,
            ))
        return conflicts

    def check_revenue_reconciliation(self, context: ExtractionContextManager) -> List[DataConflict]:
        """Calculated revenue entries beyond tolerance with no conflict yet."""
        conflicts = []
        for entry in context.calculated_revenue.values():
            if context.find_conflict(ConflictType.REVENUE_RECONCILIATION, entry.facility_id, entry.period_key):
                continue
            conflict = self.detector.revenue_conflict(
                entry,
                tolerance=self.thresholds.resurface_tolerance,
                high=self.thresholds.resurface_high,
            )
            if conflict:
                conflicts.append(conflict)
        return conflicts

    def check_internal_consistency(self, context: ExtractionContextManager) -> List[DataConflict]:
        """Totals that disagree with their own components."""
        conflicts = []
        for profile in context.get_facility_profiles():
            for period in profile.financial_periods:
                expenses = period.expenses
                conflict = self._component_check(
                    context,
                    period,
                    field_path="expenses.total",
                    total=expenses.total,
                    components=expenses.component_total(),
                    calculated_confidence=self.EXPENSE_SUM_CONFIDENCE,
                    severity_high=self.thresholds.internal_consistency_high,
                )
                if conflict:
                    conflicts.append(conflict)

                conflict = self._component_check(
                    context,
                    period,
                    field_path="expenses.labor.total",
                    total=expenses.labor.total,
                    components=expenses.labor.component_total(),
                    calculated_confidence=self.LABOR_SUM_CONFIDENCE,
                    severity_high=None,
                )
                if conflict:
                    conflicts.append(conflict)
        return conflicts

    def _component_check(
        self,
        context: ExtractionContextManager,
        period: NormalizedFinancialPeriod,
        field_path: str,
        total: float,
        components: float,
        calculated_confidence: float,
        severity_high: Optional[float],
    ) -> Optional[DataConflict]:
        if total <= 0 or components <= 0:
            return None
        difference = abs(total - components) / total
        if difference <= self.thresholds.internal_consistency_variance:
            return None
        if context.find_conflict(
            ConflictType.INTERNAL_CONSISTENCY, period.facility_id, period.period_key, field_path
        ):
            return None

        severity = (
            Severity.LOW if severity_high is None else grade(difference, severity_high)
        )
        return DataConflict(
            type=ConflictType.INTERNAL_CONSISTENCY,
            severity=severity,
            field_path=field_path,
            values=[
                ConflictValue(value=total, source=_first_source(period), confidence=period.confidence),
                ConflictValue(
                    value=round(components, 2),
                    source=calculated_source("Calculated (sum of components)"),
                    confidence=calculated_confidence,
                ),
            ],
            variance_percent=round(difference, 4),
            variance_absolute=round(abs(total - components), 2),
            facility_id=period.facility_id,
            period_key=period.period_key,
        )


def get_validation_pass(
    thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
) -> ValidationPass:
    """Get validation pass instance."""
    return ValidationPass(thresholds)
