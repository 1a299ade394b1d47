"""
Unit tests for conflict detection, revenue reconciliation and resolution.
"""
from datetime import datetime, timedelta, timezone

import pytest

from facilityxl.extraction_engine.conflict_resolver import (
    ConflictResolver,
    ResolutionPolicy,
    average,
    benchmark_aligned,
    generate_suggested_values,
    highest_confidence,
    most_recent,
    weighted_average,
)
from facilityxl.extraction_engine.conflicts import (
    ConflictDetector,
    calculated_source,
    grade,
    measure_variance,
)
from facilityxl.extraction_engine.models import (
    Benchmark,
    CalculatedRevenueEntry,
    ConflictStatus,
    ConflictType,
    ConflictValue,
    DataConflict,
    DataSource,
    ResolutionMethod,
    ResolutionStrategy,
    Severity,
)
from conftest import make_census, make_period, make_rate


def value(amount: float, confidence: float, document_id: str = "doc-1", extracted_at=None) -> ConflictValue:
    source = DataSource(document_id=document_id, filename=f"{document_id}.xlsx")
    if extracted_at is not None:
        source.extracted_at = extracted_at
    return ConflictValue(value=amount, source=source, confidence=confidence)


def conflict(
    values,
    variance: float = 0.02,
    conflict_type: ConflictType = ConflictType.CROSS_DOCUMENT,
    severity: Severity = Severity.LOW,
) -> DataConflict:
    return DataConflict(
        type=conflict_type,
        severity=severity,
        field_path="revenue.total",
        values=values,
        variance_percent=variance,
        facility_id="f-1",
        period_key="2024-01-01_2024-01-31",
    )


class TestVariance:
    """Tests for variance measurement."""

    def test_symmetric_and_scale_free(self):
        """Test that variance ignores value order and scale."""
        forward = measure_variance([100.0, 130.0, 90.0])
        backward = measure_variance([90.0, 130.0, 100.0])
        scaled = measure_variance([100000.0, 130000.0, 90000.0])
        assert forward.variance_percent == pytest.approx(backward.variance_percent)
        assert forward.variance_percent == pytest.approx(scaled.variance_percent)
        assert forward.variance_percent >= 0

    def test_degenerate_inputs(self):
        """Test variance of empty and zero-mean inputs."""
        assert measure_variance([]).variance_percent == 0.0
        assert measure_variance([5.0, -5.0]).variance_percent == 0.0

    def test_grade(self):
        """Test severity grading at the cut-offs."""
        assert grade(0.2, 0.15, 0.10) == Severity.HIGH
        assert grade(0.12, 0.15, 0.10) == Severity.MEDIUM
        assert grade(0.07, 0.15, 0.10) == Severity.LOW
        assert grade(0.07, 0.15) == Severity.MEDIUM


class TestConflictDetector:
    """Tests for cross-document detection."""

    @pytest.fixture
    def detector(self) -> ConflictDetector:
        return ConflictDetector()

    def test_within_tolerance(self, detector):
        """Test that values within tolerance raise no conflict."""
        assert detector.check_values([value(100, 90), value(104, 80, "doc-2")], "revenue.total") is None

    @pytest.mark.parametrize("other,severity", [
        (120, Severity.LOW),
        (125, Severity.MEDIUM),
        (150, Severity.HIGH),
    ])
    def test_severity(self, detector, other, severity):
        """Test cross-document conflict severity by spread."""
        found = detector.check_values([value(100, 90), value(other, 80, "doc-2")], "revenue.total", "f-1", "k")
        assert found.type == ConflictType.CROSS_DOCUMENT
        assert found.severity == severity
        assert found.status == ConflictStatus.DETECTED
        assert len(found.values) == 2

    def test_single_value(self, detector):
        """Test that a single value never conflicts."""
        assert detector.check_values([value(100, 90)], "revenue.total") is None


class TestRevenueReconciliation:
    """Tests for census x rates reconciliation."""

    @pytest.fixture
    def detector(self) -> ConflictDetector:
        return ConflictDetector()

    def test_reference_example(self, detector):
        """Test reconciling 250,000 reported against 300,000 calculated."""
        entry = detector.reconcile_revenue(make_period("f-1", revenue=250000.0), make_census("f-1"), make_rate("f-1"))
        assert entry.calculated_total == 300000.0
        assert entry.reported_total == 250000.0
        assert entry.variance == -50000.0
        assert entry.variance_percent == -0.2
        assert entry.breakdown["medicare_part_a"] == {"days": 1000.0, "rate": 300.0, "revenue": 300000.0}

        found = detector.revenue_conflict(entry)
        assert found.type == ConflictType.REVENUE_RECONCILIATION
        assert found.severity == Severity.HIGH
        assert found.variance_percent == 0.2
        assert found.variance_absolute == 50000.0
        reported, calculated = found.values
        assert reported.value == 250000.0 and reported.confidence == 90.0
        assert calculated.value == 300000.0 and calculated.confidence == 80.0
        assert calculated.source.document_id == "calculated"

    @pytest.mark.parametrize("reported,severity", [
        (280000.0, None),
        (265000.0, Severity.MEDIUM),
        (400000.0, Severity.HIGH),
    ])
    def test_tolerance(self, detector, reported, severity):
        """Test reconciliation tolerance and severity bands."""
        entry = detector.reconcile_revenue(make_period("f-1", revenue=reported), make_census("f-1"), make_rate("f-1"))
        found = detector.revenue_conflict(entry)
        if severity is None:
            assert found is None
        else:
            assert found.severity == severity

    @pytest.mark.parametrize("variance_percent,severity", [
        (-0.15, Severity.HIGH),
        (0.1499, Severity.MEDIUM),
    ])
    def test_resurfacing_cutoff_inclusive(self, detector, variance_percent, severity):
        """Test that a variance of exactly the resurfacing cut-off is high."""
        entry = CalculatedRevenueEntry(
            facility_id="f-1",
            period_key="k",
            calculated_total=300000.0,
            reported_total=300000.0 * (1 + variance_percent),
            variance=300000.0 * variance_percent,
            variance_percent=variance_percent,
        )
        found = detector.revenue_conflict(entry, tolerance=0.05, high=0.15)
        assert found.severity == severity

    def test_no_calculated_revenue(self, detector):
        """Test that an entry without calculated revenue raises nothing."""
        entry = CalculatedRevenueEntry(
            facility_id="f-1",
            period_key="k",
            calculated_total=0.0,
            reported_total=100.0,
            variance=100.0,
            variance_percent=1.0,
        )
        assert detector.revenue_conflict(entry) is None


class TestStrategies:
    """Tests for resolution strategies."""

    def test_highest_confidence(self):
        """Test picking the highest-confidence value."""
        assert highest_confidence([value(100, 70), value(110, 95)]) == (110, 95)

    def test_average(self):
        """Test averaging values and confidences."""
        assert average([value(100, 80), value(200, 60)]) == (150.0, 56.0)

    def test_weighted_average(self):
        """Test confidence-weighted averaging."""
        assert weighted_average([value(100, 90), value(200, 10)]) == (110.0, 45.0)

    def test_most_recent(self):
        """Test picking the most recently extracted value."""
        now = datetime.now(timezone.utc)
        older = value(100, 90, extracted_at=now - timedelta(days=1))
        newer = value(120, 60, extracted_at=now)
        assert most_recent([older, newer]) == (120, 60)

    def test_benchmark_aligned(self):
        """Test picking the value inside the benchmark range."""
        benchmark = Benchmark(min=0.70, max=0.95, median=0.82)
        assert benchmark_aligned([value(0.75, 60), value(0.84, 50)], benchmark) == (0.84, 50)
        assert benchmark_aligned([value(0.40, 80), value(0.99, 50)], benchmark) == (0.99, 35.0)
        assert benchmark_aligned([value(0.40, 80)], None) == (0.40, 80)


class TestConflictResolver:
    """Tests for auto and batch resolution."""

    @pytest.fixture
    def resolver(self) -> ConflictResolver:
        return ConflictResolver()

    def test_auto_resolve_low_variance(self, resolver):
        """Test auto-resolving a narrow, confident conflict."""
        found = conflict([value(100, 95), value(102, 80, "doc-2")], variance=0.01)
        resolution = resolver.auto_resolve(found)
        assert resolution.value == 100
        assert resolution.method == ResolutionMethod.AUTO_HIGHEST_CONFIDENCE
        assert resolution.note == "Auto-resolved: used highest confidence value (95%)"
        # Pure: the conflict itself is untouched
        assert found.status == ConflictStatus.DETECTED

    @pytest.mark.parametrize("variance,conflict_type", [
        (0.04, ConflictType.CROSS_DOCUMENT),
        (0.01, ConflictType.REVENUE_RECONCILIATION),
        (0.01, ConflictType.CROSS_PERIOD),
    ])
    def test_not_auto_resolvable(self, resolver, variance, conflict_type):
        """Test conflicts that must go to a person."""
        found = conflict([value(100, 95), value(102, 80)], variance=variance, conflict_type=conflict_type)
        assert resolver.auto_resolve(found) is None

    def test_internal_consistency_uses_calculated(self, resolver):
        """Test that internal consistency conflicts take the calculated sum."""
        computed = ConflictValue(value=80000.0, source=calculated_source("Calculated (sum of components)"), confidence=85.0)
        found = conflict([value(100000.0, 90), computed], variance=0.2, conflict_type=ConflictType.INTERNAL_CONSISTENCY)
        resolution = resolver.resolve_conflict(found)
        assert resolution.value == 80000.0
        assert resolution.method == ResolutionMethod.AUTO_CALCULATED

    def test_strategy(self, resolver):
        """Test resolving with an explicit strategy."""
        found = conflict([value(100, 80), value(200, 60)])
        resolution = resolver.resolve_conflict(found, ResolutionStrategy.AVERAGE)
        assert resolution.value == 150.0
        assert resolution.method == ResolutionMethod.AUTO_AVERAGE

    def test_no_values(self, resolver):
        """Test resolving a conflict with no values."""
        with pytest.raises(ValueError):
            resolver.resolve_conflict(conflict([]))

    def test_batch(self, resolver):
        """Test splitting a batch into resolved and escalated conflicts."""
        qualifying = conflict([value(100, 90), value(102, 70)], variance=0.02)
        too_wide = conflict([value(100, 90), value(120, 70)], variance=0.09)
        unsure = conflict([value(100, 60), value(102, 70)], variance=0.02)
        swing = conflict([value(100, 90), value(102, 90)], variance=0.02, conflict_type=ConflictType.CROSS_PERIOD)
        critical = conflict([value(100, 90), value(102, 90)], variance=0.02, severity=Severity.CRITICAL)
        settled = conflict([value(100, 90)], variance=0.0)
        settled.status = ConflictStatus.AUTO_RESOLVED

        batch = resolver.resolve_conflicts_batch(
            [qualifying, too_wide, unsure, swing, critical, settled], ResolutionPolicy()
        )
        assert [c.id for c, _ in batch.resolved] == [qualifying.id]
        assert batch.resolved[0][1].value == 100
        assert {c.id for c in batch.escalated} == {too_wide.id, unsure.id, swing.id, critical.id}


class TestSuggestedValues:
    def test_sorted_with_average_and_benchmark(self):
        """Test suggested values ordering with average and benchmark entries."""
        found = conflict([value(100, 40), value(200, 90, "doc-2")])
        suggestions = generate_suggested_values(found, Benchmark(min=0, max=300, median=150))
        assert [s.confidence for s in suggestions] == [90, 60.0, 50.0, 40]
        assert suggestions[0].label == "doc-2.xlsx"
        assert suggestions[1].value == 150.0
        assert suggestions[2].label == "Industry benchmark median"
