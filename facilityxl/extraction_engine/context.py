"""
Extraction context manager.

Session-level aggregate root. Owns every facility profile, the flat
per-session record lists, the cross-reference index, conflicts,
clarifications and the overall confidence score. Ingestion is where
immediate conflict detection and revenue reconciliation happen.
"""

from dataclasses import replace
from datetime import date
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from facilityxl.extraction_engine.conflict_resolver import (
    ConflictResolver,
    ResolutionPolicy,
)
from facilityxl.extraction_engine.conflicts import ConflictDetector
from facilityxl.extraction_engine.cross_reference import (
    EXPENSES_TOTAL,
    PATIENT_DAYS_TOTAL,
    RATES_WEIGHTED_AVG,
    REVENUE_TOTAL,
    CrossReferenceIndex,
)
from facilityxl.extraction_engine.facility_profile import (
    FacilityProfileBuilder,
    merge_facility_profiles,
)
from facilityxl.extraction_engine.facility_resolver import (
    FacilityResolver,
    canonical_input,
)
from facilityxl.extraction_engine.models import (
    DEFAULT_THRESHOLDS,
    CalculatedRevenueEntry,
    ClarificationStatus,
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    ContextSummary,
    CrossReferenceEntry,
    DataConflict,
    DataSource,
    FacilityFinancialProfile,
    NormalizedCensusPeriod,
    NormalizedFinancialPeriod,
    NormalizedPayerRate,
    PipelineClarification,
    ProcessingStats,
    ResolutionMethod,
    ValidationThresholds,
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)


class ExtractionContextManager:
    """
    Accumulated state of one extraction session.

    All mutation goes through this class. Facility profile builders are
    held in an id-keyed arena and only reachable through it.
    """

    UNRESOLVED_CONFLICT_PENALTY = 2
    PENDING_CLARIFICATION_PENALTY = 1
    SUMMARY_PERIOD_LIMIT = 24
    SUMMARY_METRICS_LIMIT = 12
    SUMMARY_QUESTION_PRIORITY = 7

    def __init__(
        self,
        session_id: Optional[str] = None,
        deal_id: Optional[str] = None,
        thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
        clock: Optional[Callable[[], date]] = None,
    ):
        self.session_id = session_id or new_id()
        self.deal_id = deal_id
        self.thresholds = thresholds
        self.created_at = utcnow()
        self._clock = clock

        self.resolver = FacilityResolver()
        self.detector = ConflictDetector(thresholds)
        self.conflict_resolver = ConflictResolver(thresholds)
        self._builders: Dict[str, FacilityProfileBuilder] = {}

        self.financial_periods: List[NormalizedFinancialPeriod] = []
        self.census_periods: List[NormalizedCensusPeriod] = []
        self.payer_rates: List[NormalizedPayerRate] = []

        self.cross_references = CrossReferenceIndex()
        self.calculated_revenue: Dict[Tuple[str, str], CalculatedRevenueEntry] = {}

        self.conflicts: List[DataConflict] = []
        self.pending_clarifications: List[PipelineClarification] = []
        self.resolved_clarifications: List[PipelineClarification] = []

        self.stats = ProcessingStats()
        self.overall_confidence: float = 0.0

    # =========================================================================
    # Facilities
    # =========================================================================

    def find_or_create_facility(self, name: Optional[str]) -> Tuple[FacilityFinancialProfile, bool]:
        """
        Resolve a facility reference, creating a profile for unknown names.

        Returns:
            Tuple of (profile, is_new).
        """
        raw = canonical_input(name)
        facility_id = self.resolver.resolve(raw)
        if facility_id is not None:
            builder = self._builders[facility_id]
            if builder.add_alias(raw):
                logger.debug("Facility alias recorded", facility_id=facility_id, alias=raw)
            return builder.profile, False

        facility_id = new_id()
        builder = FacilityProfileBuilder(facility_id, raw, clock=self._clock)
        self._builders[facility_id] = builder
        self.resolver.register(facility_id, [raw])
        logger.info("Facility created", facility_id=facility_id, name=raw)
        return builder.profile, True

    def resolve_facility_id(self, name: Optional[str]) -> str:
        return self.find_or_create_facility(name)[0].id

    def get_facility_builder(self, facility_id: str) -> Optional[FacilityProfileBuilder]:
        return self._builders.get(facility_id)

    def register_alias(self, facility_id: str, alias: str) -> bool:
        """
        Bind an alternate name to a facility.

        False for unknown ids and for names another facility already owns.
        """
        builder = self._builders.get(facility_id)
        if builder is None:
            return False
        if not self.resolver.register(facility_id, [alias]):
            return False
        return builder.add_alias(alias)

    def merge_facilities(self, primary_id: str, secondary_id: str) -> Optional[FacilityFinancialProfile]:
        """
        Fold a duplicate facility into another.

        Session records, cross-references, conflicts and clarifications
        that pointed at the secondary are repointed to the primary.
        """
        primary = self._builders.get(primary_id)
        secondary = self._builders.get(secondary_id)
        if primary is None or secondary is None or primary_id == secondary_id:
            return None

        merged = merge_facility_profiles(primary.profile, secondary.profile, clock=self._clock)
        self._builders[primary_id] = merged
        del self._builders[secondary_id]
        self.resolver.reassign(secondary_id, primary_id)
        self.cross_references.reassign(secondary_id, primary_id)

        def repoint(records):
            return [
                replace(r, facility_id=primary_id) if r.facility_id == secondary_id else r
                for r in records
            ]

        self.financial_periods = repoint(self.financial_periods)
        self.census_periods = repoint(self.census_periods)
        self.payer_rates = repoint(self.payer_rates)
        for item in [*self.conflicts, *self.pending_clarifications, *self.resolved_clarifications]:
            if item.facility_id == secondary_id:
                item.facility_id = primary_id
        for (facility_id, period_key), entry in list(self.calculated_revenue.items()):
            if facility_id == secondary_id:
                del self.calculated_revenue[(facility_id, period_key)]
                entry.facility_id = primary_id
                self.calculated_revenue.setdefault((primary_id, period_key), entry)

        logger.info("Facilities merged", primary_id=primary_id, secondary_id=secondary_id)
        return merged.profile

    def get_facility_profiles(self) -> List[FacilityFinancialProfile]:
        return [builder.profile for builder in self._builders.values()]

    def facility_name(self, facility_id: Optional[str]) -> Optional[str]:
        builder = self._builders.get(facility_id) if facility_id else None
        return builder.profile.name if builder else None

    def _builder_for(self, facility_id: str) -> FacilityProfileBuilder:
        builder = self._builders.get(facility_id)
        if builder is None:
            # Record for a facility created outside find_or_create_facility
            builder = FacilityProfileBuilder(facility_id, facility_id, clock=self._clock)
            self._builders[facility_id] = builder
        return builder

    # =========================================================================
    # Ingestion
    # =========================================================================

    def add_financial_period(self, period: NormalizedFinancialPeriod) -> List[DataConflict]:
        """
        Ingest a financial period.

        Returns:
            Conflicts raised or updated by this ingestion.
        """
        self.financial_periods.append(period)
        self._builder_for(period.facility_id).add_financial_period(period)

        raised = []
        for field_path, value in ((REVENUE_TOTAL, period.revenue.total), (EXPENSES_TOTAL, period.expenses.total)):
            conflict = self._cross_reference(period.facility_id, period.period_key, field_path, value, period)
            if conflict:
                raised.append(conflict)

        revenue_conflict = self.check_revenue_reconciliation(period.facility_id, period.period_key)
        if revenue_conflict:
            raised.append(revenue_conflict)

        self.recalculate_confidence()
        return raised

    def add_census_period(self, census: NormalizedCensusPeriod) -> List[DataConflict]:
        """Ingest a census period; may trigger revenue reconciliation."""
        self.census_periods.append(census)
        self._builder_for(census.facility_id).add_census_period(census)

        raised = []
        conflict = self._cross_reference(
            census.facility_id, census.period_key, PATIENT_DAYS_TOTAL, census.patient_days.total, census
        )
        if conflict:
            raised.append(conflict)

        revenue_conflict = self.check_revenue_reconciliation(census.facility_id, census.period_key)
        if revenue_conflict:
            raised.append(revenue_conflict)

        self.recalculate_confidence()
        return raised

    def add_payer_rate(self, rate: NormalizedPayerRate) -> List[DataConflict]:
        """Ingest a payer rate schedule; reconciles the census periods it prices."""
        self.payer_rates.append(rate)
        self._builder_for(rate.facility_id).add_payer_rate(rate)

        raised = []
        if rate.weighted_avg_ppd is not None:
            conflict = self._cross_reference(
                rate.facility_id, rate.date_key, RATES_WEIGHTED_AVG, rate.weighted_avg_ppd, rate
            )
            if conflict:
                raised.append(conflict)

        # Periods this schedule now prices
        builder = self._builders[rate.facility_id]
        for census in builder.profile.census_periods:
            effective = builder.rate_effective_on(census.period_end)
            if effective is None or effective.date_key != rate.date_key:
                continue
            revenue_conflict = self.check_revenue_reconciliation(rate.facility_id, census.period_key)
            if revenue_conflict:
                raised.append(revenue_conflict)

        self.recalculate_confidence()
        return raised

    def _cross_reference(self, facility_id, key, field_path, value, record) -> Optional[DataConflict]:
        # Zero means not reported
        if not value:
            return None
        source = record.sources[0] if record.sources else DataSource(document_id="unknown", filename="unknown")
        entries = self.cross_references.add(
            facility_id,
            key,
            field_path,
            CrossReferenceEntry(value=value, source=source, confidence=record.confidence),
        )
        if len(entries) < 2:
            return None
        conflict = self.detector.check_for_conflict(entries, field_path, facility_id, key)
        if conflict is None:
            return None
        return self._upsert_conflict(conflict)

    def _upsert_conflict(self, conflict: DataConflict) -> DataConflict:
        """Add a conflict, or refresh the open one for the same figure."""
        existing = self.find_conflict(
            conflict.type, conflict.facility_id, conflict.period_key, conflict.field_path, open_only=True
        )
        if existing is None:
            self.add_conflict(conflict)
            return conflict
        existing.values = conflict.values
        existing.variance_percent = conflict.variance_percent
        existing.variance_absolute = conflict.variance_absolute
        existing.severity = conflict.severity
        return existing

    # =========================================================================
    # Revenue Reconciliation
    # =========================================================================

    def check_revenue_reconciliation(self, facility_id: str, period_key: str) -> Optional[DataConflict]:
        """
        Reconcile reported revenue against census x rates for one period.

        Needs a stored financial period, a census period for the same key and
        a rate schedule effective by the period end. The calculated entry is
        kept whatever its variance; a conflict is raised only above tolerance.
        """
        builder = self._builders.get(facility_id)
        if builder is None:
            return None
        reported = builder.get_financial_period(period_key)
        census = builder.get_census_period(period_key)
        if reported is None or census is None or reported.revenue.total <= 0:
            return None
        rate = builder.rate_effective_on(census.period_end)
        if rate is None:
            logger.debug("No rate schedule for reconciliation", facility_id=facility_id, period_key=period_key)
            return None

        entry = self.detector.reconcile_revenue(reported, census, rate)
        self.calculated_revenue[(facility_id, period_key)] = entry
        logger.debug(
            "Revenue reconciled",
            facility_id=facility_id,
            period_key=period_key,
            calculated=entry.calculated_total,
            reported=entry.reported_total,
            variance_percent=entry.variance_percent,
        )

        conflict = self.detector.revenue_conflict(entry)
        if conflict is None:
            return None
        return self._upsert_conflict(conflict)

    # =========================================================================
    # Conflicts
    # =========================================================================

    def add_conflict(self, conflict: DataConflict) -> bool:
        if any(c.id == conflict.id for c in self.conflicts):
            return False
        self.conflicts.append(conflict)
        logger.info(
            "Conflict detected",
            conflict_id=conflict.id,
            type=conflict.type.value,
            severity=conflict.severity.value,
            field_path=conflict.field_path,
            period_key=conflict.period_key,
            variance_percent=conflict.variance_percent,
        )
        self.recalculate_confidence()
        return True

    def get_conflict(self, conflict_id: str) -> Optional[DataConflict]:
        return next((c for c in self.conflicts if c.id == conflict_id), None)

    def find_conflict(
        self,
        conflict_type: ConflictType,
        facility_id: Optional[str],
        period_key: Optional[str],
        field_path: Optional[str] = None,
        open_only: bool = False,
    ) -> Optional[DataConflict]:
        """First conflict recorded for a figure, optionally only open ones."""
        for conflict in self.conflicts:
            if (
                conflict.type == conflict_type
                and conflict.facility_id == facility_id
                and conflict.period_key == period_key
                and (field_path is None or conflict.field_path == field_path)
                and (not open_only or conflict.is_unresolved)
            ):
                return conflict
        return None

    def resolve_conflict(
        self,
        conflict_id: str,
        value: float,
        method: ResolutionMethod,
        resolved_by: str = "system",
        note: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> bool:
        """Settle an open conflict; False for unknown or already settled ids."""
        conflict = self.get_conflict(conflict_id)
        if conflict is None or not conflict.is_unresolved:
            return False
        conflict.resolution = ConflictResolution(
            value=value,
            method=method,
            resolved_by=resolved_by,
            note=note,
            confidence=confidence,
        )
        conflict.status = (
            ConflictStatus.USER_RESOLVED
            if method == ResolutionMethod.USER_INPUT
            else ConflictStatus.AUTO_RESOLVED
        )
        logger.info("Conflict resolved", conflict_id=conflict_id, method=method.value, value=value)
        self.recalculate_confidence()
        return True

    def escalate_conflict(self, conflict_id: str) -> bool:
        """Mark a detected conflict as waiting on a clarification."""
        conflict = self.get_conflict(conflict_id)
        if conflict is None or conflict.status != ConflictStatus.DETECTED:
            return False
        conflict.status = ConflictStatus.PENDING_CLARIFICATION
        return True

    def resolve_conflicts_batch(self, policy: Optional[ResolutionPolicy] = None) -> int:
        """
        Apply a batch policy to every open conflict.

        Qualifying conflicts are settled; the rest move to
        pending_clarification. Returns the number settled.
        """
        batch = self.conflict_resolver.resolve_conflicts_batch(self.get_unresolved_conflicts(), policy)
        for conflict, resolution in batch.resolved:
            self.resolve_conflict(
                conflict.id,
                resolution.value,
                resolution.method,
                note=resolution.note,
                confidence=resolution.confidence,
            )
        for conflict in batch.escalated:
            self.escalate_conflict(conflict.id)
        return len(batch.resolved)

    def get_detected_conflicts(self) -> List[DataConflict]:
        return list(self.conflicts)

    def get_unresolved_conflicts(self) -> List[DataConflict]:
        return [c for c in self.conflicts if c.is_unresolved]

    # =========================================================================
    # Clarifications
    # =========================================================================

    def add_clarification(self, clarification: PipelineClarification) -> bool:
        known = {c.id for c in self.pending_clarifications} | {c.id for c in self.resolved_clarifications}
        if clarification.id in known:
            return False
        self.pending_clarifications.append(clarification)
        if clarification.conflict_id:
            self.escalate_conflict(clarification.conflict_id)
        logger.info(
            "Clarification added",
            clarification_id=clarification.id,
            type=clarification.type.value,
            priority=clarification.priority,
            field_path=clarification.field_path,
        )
        self.recalculate_confidence()
        return True

    def resolve_clarification(
        self,
        clarification_id: str,
        value,
        resolved_by: str,
        note: Optional[str] = None,
    ) -> bool:
        """
        Answer a pending clarification.

        A numeric answer to a clarification raised from a conflict also
        resolves that conflict as user input. Unknown ids are ignored.
        """
        clarification = self._take_pending(clarification_id)
        if clarification is None:
            return False

        clarification.status = ClarificationStatus.RESOLVED
        clarification.resolved_value = value
        clarification.resolved_by = resolved_by
        clarification.resolved_at = utcnow()
        clarification.resolution_note = note
        self.resolved_clarifications.append(clarification)

        if clarification.conflict_id and isinstance(value, (int, float)) and not isinstance(value, bool):
            self.resolve_conflict(
                clarification.conflict_id,
                float(value),
                ResolutionMethod.USER_INPUT,
                resolved_by=resolved_by,
                note=note,
            )

        logger.info("Clarification resolved", clarification_id=clarification_id, resolved_by=resolved_by)
        self.recalculate_confidence()
        return True

    def skip_clarification(self, clarification_id: str) -> bool:
        clarification = self._take_pending(clarification_id)
        if clarification is None:
            return False
        clarification.status = ClarificationStatus.SKIPPED
        clarification.resolved_at = utcnow()
        self.resolved_clarifications.append(clarification)
        logger.info("Clarification skipped", clarification_id=clarification_id)
        self.recalculate_confidence()
        return True

    def _take_pending(self, clarification_id: str) -> Optional[PipelineClarification]:
        for index, clarification in enumerate(self.pending_clarifications):
            if clarification.id == clarification_id:
                return self.pending_clarifications.pop(index)
        return None

    def get_pending_clarifications(self) -> List[PipelineClarification]:
        return list(self.pending_clarifications)

    def get_blocking_clarifications(self, min_priority: int = 8) -> List[PipelineClarification]:
        return [c for c in self.pending_clarifications if c.priority >= min_priority]

    def has_blocking_clarifications(self, min_priority: int = 8) -> bool:
        return bool(self.get_blocking_clarifications(min_priority))

    # =========================================================================
    # Confidence and Summary
    # =========================================================================

    def recalculate_confidence(self) -> float:
        """
        mean(stored confidences) - 2 x unresolved conflicts - 1 x pending
        clarifications, clamped to [0, 100]. Zero when nothing is stored.
        """
        confidences = [
            *(p.confidence for p in self.financial_periods),
            *(c.confidence for c in self.census_periods),
            *(r.confidence for r in self.payer_rates),
        ]
        if not confidences:
            self.overall_confidence = 0.0
            return self.overall_confidence

        base = sum(confidences) / len(confidences)
        penalty = (
            self.UNRESOLVED_CONFLICT_PENALTY * len(self.get_unresolved_conflicts())
            + self.PENDING_CLARIFICATION_PENALTY * len(self.pending_clarifications)
        )
        self.overall_confidence = round(max(0.0, min(100.0, base - penalty)), 2)
        return self.overall_confidence

    def get_overall_confidence(self) -> float:
        return self.overall_confidence

    def get_context_summary(self) -> ContextSummary:
        """Digest of prior findings for the next document read."""
        facilities = [
            {"id": p.id, "name": p.name, "aliases": list(p.aliases)}
            for p in self.get_facility_profiles()
        ]
        periods = [
            {
                "facility": self.facility_name(p.facility_id) or p.facility_id,
                "start": p.period_start.isoformat(),
                "end": p.period_end.isoformat(),
                "type": p.period_type.value,
            }
            for p in self.financial_periods[-self.SUMMARY_PERIOD_LIMIT:]
        ]
        recent_metrics = [
            {
                "facility": self.facility_name(p.facility_id) or p.facility_id,
                "period": f"{p.period_start.isoformat()} to {p.period_end.isoformat()}",
                "revenue": p.revenue.total,
                "expenses": p.expenses.total,
                "noi": p.metrics.noi,
            }
            for p in self.financial_periods[-self.SUMMARY_METRICS_LIMIT:]
        ]
        pending_questions = [
            c.ai_explanation or f"Clarify {c.field_label}"
            for c in self.pending_clarifications
            if c.priority >= self.SUMMARY_QUESTION_PRIORITY
        ]
        return ContextSummary(
            facilities=facilities,
            periods=periods,
            recent_metrics=recent_metrics,
            pending_questions=pending_questions,
        )
