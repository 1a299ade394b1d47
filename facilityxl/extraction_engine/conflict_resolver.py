"""
Conflict resolution strategies.

Each strategy is a pure function over a conflict's observations that
picks (or computes) a value and a confidence for it. The resolver decides
which conflicts may be settled without asking the user.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from facilityxl.extraction_engine.conflicts import is_calculated
from facilityxl.extraction_engine.models import (
    DEFAULT_THRESHOLDS,
    Benchmark,
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    ConflictValue,
    DataConflict,
    ResolutionMethod,
    ResolutionStrategy,
    Severity,
    SuggestedValue,
    ValidationThresholds,
)

logger = structlog.get_logger(__name__)

Choice = Tuple[float, float]  # (value, confidence)


# =============================================================================
# Strategies
# =============================================================================

def highest_confidence(values: List[ConflictValue]) -> Choice:
    best = max(values, key=lambda v: v.confidence)
    return best.value, best.confidence


def average(values: List[ConflictValue]) -> Choice:
    mean = sum(v.value for v in values) / len(values)
    mean_confidence = sum(v.confidence for v in values) / len(values)
    return round(mean, 2), round(mean_confidence * 0.8, 1)


def weighted_average(values: List[ConflictValue]) -> Choice:
    total_weight = sum(v.confidence for v in values)
    if not total_weight:
        return average(values)
    mean = sum(v.value * v.confidence for v in values) / total_weight
    return round(mean, 2), round(total_weight / len(values) * 0.9, 1)


def most_recent(values: List[ConflictValue]) -> Choice:
    latest = max(values, key=lambda v: v.source.extracted_at)
    return latest.value, latest.confidence


def benchmark_aligned(values: List[ConflictValue], benchmark: Optional[Benchmark]) -> Choice:
    """
    Value nearest the benchmark median among values inside the range.

    When none fall inside, the value closest to the range is used with
    its confidence reduced.
    """
    if benchmark is None:
        return highest_confidence(values)

    in_range = [v for v in values if benchmark.min <= v.value <= benchmark.max]
    if in_range:
        best = min(in_range, key=lambda v: abs(v.value - benchmark.median))
        return best.value, best.confidence

    def distance(v: ConflictValue) -> float:
        return benchmark.min - v.value if v.value < benchmark.min else v.value - benchmark.max

    closest = min(values, key=distance)
    return closest.value, round(closest.confidence * 0.7, 1)


def calculated_value(values: List[ConflictValue]) -> Choice:
    """The engine-computed observation, e.g. a component sum."""
    computed = [v for v in values if is_calculated(v)]
    if computed:
        return computed[0].value, computed[0].confidence
    return highest_confidence(values)


STRATEGY_METHODS: Dict[ResolutionStrategy, ResolutionMethod] = {
    ResolutionStrategy.HIGHEST_CONFIDENCE: ResolutionMethod.AUTO_HIGHEST_CONFIDENCE,
    ResolutionStrategy.AVERAGE: ResolutionMethod.AUTO_AVERAGE,
    ResolutionStrategy.WEIGHTED_AVERAGE: ResolutionMethod.AUTO_WEIGHTED_AVERAGE,
    ResolutionStrategy.MOST_RECENT: ResolutionMethod.AUTO_MOST_RECENT,
    ResolutionStrategy.BENCHMARK_ALIGNED: ResolutionMethod.AUTO_BENCHMARK_ALIGNED,
}


# =============================================================================
# Resolver
# =============================================================================

@dataclass
class ResolutionPolicy:
    """Caller policy for batch resolution."""
    variance_threshold: float = 0.03
    min_confidence: float = 85.0
    strategy: ResolutionStrategy = ResolutionStrategy.HIGHEST_CONFIDENCE
    benchmark: Optional[Benchmark] = None


@dataclass
class BatchResolution:
    resolved: List[Tuple[DataConflict, ConflictResolution]] = field(default_factory=list)
    escalated: List[DataConflict] = field(default_factory=list)


class ConflictResolver:
    """Picks resolutions for conflicts; never mutates them."""

    AUTO_RESOLVABLE_TYPES = (ConflictType.CROSS_DOCUMENT, ConflictType.INTERNAL_CONSISTENCY)

    def __init__(self, thresholds: ValidationThresholds = DEFAULT_THRESHOLDS):
        self.thresholds = thresholds

    def can_auto_resolve(self, conflict: DataConflict) -> bool:
        return (
            conflict.status == ConflictStatus.DETECTED
            and bool(conflict.values)
            and conflict.type in self.AUTO_RESOLVABLE_TYPES
            and conflict.variance_percent <= self.thresholds.auto_resolve_variance
        )

    def auto_resolve(self, conflict: DataConflict) -> Optional[ConflictResolution]:
        """Highest-confidence resolution for low-variance conflicts, else None."""
        if not self.can_auto_resolve(conflict):
            return None
        value, confidence = highest_confidence(conflict.values)
        return ConflictResolution(
            value=value,
            method=ResolutionMethod.AUTO_HIGHEST_CONFIDENCE,
            note=f"Auto-resolved: used highest confidence value ({confidence:.0f}%)",
            confidence=confidence,
        )

    def resolve_conflict(
        self,
        conflict: DataConflict,
        strategy: Optional[ResolutionStrategy] = None,
        benchmark: Optional[Benchmark] = None,
    ) -> ConflictResolution:
        """
        Resolve a conflict with a strategy.

        Without a strategy, internal-consistency conflicts take the
        calculated component sum and everything else the highest-confidence
        observation.
        """
        if not conflict.values:
            raise ValueError(f"Conflict {conflict.id} has no values to resolve")

        if strategy is None and conflict.type == ConflictType.INTERNAL_CONSISTENCY:
            value, confidence = calculated_value(conflict.values)
            method = ResolutionMethod.AUTO_CALCULATED
            note = "Resolved to calculated component sum"
        else:
            strategy = strategy or ResolutionStrategy.HIGHEST_CONFIDENCE
            value, confidence = self._strategy(strategy, benchmark)(conflict.values)
            method = STRATEGY_METHODS[strategy]
            note = f"Resolved by {strategy.value.replace('_', ' ')}"

        return ConflictResolution(value=value, method=method, note=note, confidence=confidence)

    def resolve_conflicts_batch(
        self,
        conflicts: List[DataConflict],
        policy: Optional[ResolutionPolicy] = None,
    ) -> BatchResolution:
        """
        Split conflicts into those the policy settles and those needing a user.

        A conflict qualifies when its variance is within the policy threshold,
        some observation meets the minimum confidence, it is not critical and
        it is not a cross-period change. Already-resolved conflicts are skipped.
        """
        policy = policy or ResolutionPolicy()
        result = BatchResolution()

        for conflict in conflicts:
            if not conflict.is_unresolved:
                continue
            qualifies = (
                bool(conflict.values)
                and conflict.variance_percent <= policy.variance_threshold
                and any(v.confidence >= policy.min_confidence for v in conflict.values)
                and conflict.severity != Severity.CRITICAL
                and conflict.type != ConflictType.CROSS_PERIOD
            )
            if qualifies:
                resolution = self.resolve_conflict(conflict, policy.strategy, policy.benchmark)
                result.resolved.append((conflict, resolution))
            else:
                result.escalated.append(conflict)

        logger.info(
            "Batch resolution complete",
            strategy=policy.strategy.value,
            resolved=len(result.resolved),
            escalated=len(result.escalated),
        )
        return result

    @staticmethod
    def _strategy(
        strategy: ResolutionStrategy,
        benchmark: Optional[Benchmark],
    ) -> Callable[[List[ConflictValue]], Choice]:
        if strategy == ResolutionStrategy.BENCHMARK_ALIGNED:
            return lambda values: benchmark_aligned(values, benchmark)
        return {
            ResolutionStrategy.HIGHEST_CONFIDENCE: highest_confidence,
            ResolutionStrategy.AVERAGE: average,
            ResolutionStrategy.WEIGHTED_AVERAGE: weighted_average,
            ResolutionStrategy.MOST_RECENT: most_recent,
        }[strategy]


def generate_suggested_values(
    conflict: DataConflict,
    benchmark: Optional[Benchmark] = None,
) -> List[SuggestedValue]:
    """Every observation, their average and the benchmark median, best first."""
    suggestions = []
    for value in conflict.values:
        label = value.source.filename
        if value.source.sheet_name:
            label = f"{label} ({value.source.sheet_name})"
        suggestions.append(SuggestedValue(value=value.value, label=label, confidence=value.confidence))

    if conflict.values:
        mean = sum(v.value for v in conflict.values) / len(conflict.values)
        suggestions.append(SuggestedValue(value=round(mean, 2), label="Average of sources", confidence=60.0))

    if benchmark is not None:
        suggestions.append(SuggestedValue(value=benchmark.median, label="Industry benchmark median", confidence=50.0))

    return sorted(suggestions, key=lambda s: s.confidence, reverse=True)


def get_conflict_resolver(
    thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
) -> ConflictResolver:
    """Get conflict resolver instance."""
    return ConflictResolver(thresholds)
