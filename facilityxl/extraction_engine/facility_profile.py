"""
Facility profile builder.

Owns one facility's accumulated periods and rates and keeps the derived
figures (TTM aggregates, occupancy and payer-mix averages, completeness
and confidence scores) current after every mutation.
"""

from dataclasses import replace
from datetime import date, timedelta
from typing import Callable, List, Optional, TypeVar

import structlog

from facilityxl.extraction_engine.models import (
    FacilityAddress,
    FacilityFinancialProfile,
    FacilityType,
    NormalizedCensusPeriod,
    NormalizedFinancialPeriod,
    NormalizedPayerRate,
    PayerBreakdown,
    utcnow,
)

logger = structlog.get_logger(__name__)

RecordT = TypeVar("RecordT")

DAYS_PER_MONTH = 365 / 12


def _months(days: float) -> float:
    return days / DAYS_PER_MONTH


class FacilityProfileBuilder:
    """
    Accumulates records for one facility.

    At most one record is kept per period key (or effective date for
    rates). A later record with equal or higher confidence replaces the
    stored one; a lower-confidence record is dropped.
    """

    # Completeness rubric (points)
    BASIC_FIELD_POINTS = 5
    FINANCIAL_POINTS_PER_MONTH = 2.5
    FINANCIAL_MAX_POINTS = 30
    CENSUS_POINTS_PER_MONTH = 2
    CENSUS_MAX_POINTS = 25
    RATE_POINTS_PER_PAYER = 2
    RATE_MAX_POINTS = 15
    TTM_POINTS_PER_AGGREGATE = 2.5

    def __init__(
        self,
        facility_id: str,
        name: str,
        clock: Optional[Callable[[], date]] = None,
    ):
        self._profile = FacilityFinancialProfile(id=facility_id, name=name)
        self._clock = clock or date.today

    @property
    def profile(self) -> FacilityFinancialProfile:
        return self._profile

    @property
    def facility_id(self) -> str:
        return self._profile.id

    # =========================================================================
    # Identity
    # =========================================================================

    def add_alias(self, alias: str) -> bool:
        """Record an alternate spelling; returns True if it was new."""
        alias = alias.strip()
        if not alias or alias == self._profile.name or alias in self._profile.aliases:
            return False
        self._profile.aliases.append(alias)
        return True

    def names(self) -> List[str]:
        return [self._profile.name, *self._profile.aliases]

    def set_ccn(self, ccn: str) -> "FacilityProfileBuilder":
        self._profile.ccn = ccn
        return self._touch()

    def set_npi(self, npi: str) -> "FacilityProfileBuilder":
        self._profile.npi = npi
        return self._touch()

    def set_address(self, address: FacilityAddress) -> "FacilityProfileBuilder":
        self._profile.address = address
        return self._touch()

    def set_beds(
        self,
        licensed: Optional[int] = None,
        certified: Optional[int] = None,
    ) -> "FacilityProfileBuilder":
        if licensed:
            self._profile.licensed_beds = int(licensed)
        if certified:
            self._profile.certified_beds = int(certified)
        return self._touch()

    def set_facility_type(self, facility_type: FacilityType) -> "FacilityProfileBuilder":
        self._profile.facility_type = facility_type
        return self._touch()

    # =========================================================================
    # Records
    # =========================================================================

    def add_financial_period(self, period: NormalizedFinancialPeriod) -> "FacilityProfileBuilder":
        periods = self._profile.financial_periods
        if self._upsert(periods, period, lambda p: p.period_key):
            periods.sort(key=lambda p: p.period_start)
        return self._touch()

    def add_census_period(self, census: NormalizedCensusPeriod) -> "FacilityProfileBuilder":
        periods = self._profile.census_periods
        if self._upsert(periods, census, lambda c: c.period_key):
            periods.sort(key=lambda c: c.period_start)
        return self._touch()

    def add_payer_rate(self, rate: NormalizedPayerRate) -> "FacilityProfileBuilder":
        rates = self._profile.payer_rates
        if self._upsert(rates, rate, lambda r: r.date_key):
            rates.sort(key=lambda r: r.effective_date, reverse=True)
        return self._touch()

    def get_financial_period(self, period_key: str) -> Optional[NormalizedFinancialPeriod]:
        return next(
            (p for p in self._profile.financial_periods if p.period_key == period_key),
            None,
        )

    def get_census_period(self, period_key: str) -> Optional[NormalizedCensusPeriod]:
        return next(
            (c for c in self._profile.census_periods if c.period_key == period_key),
            None,
        )

    def rate_effective_on(self, as_of: date) -> Optional[NormalizedPayerRate]:
        """Most recent rate schedule effective on or before a date."""
        # payer_rates is most-recent-first
        return next(
            (r for r in self._profile.payer_rates if r.effective_date <= as_of),
            None,
        )

    def _upsert(self, records: List[RecordT], record: RecordT, key: Callable) -> bool:
        record_key = key(record)
        for index, existing in enumerate(records):
            if key(existing) != record_key:
                continue
            if record.confidence >= existing.confidence:
                records[index] = record
                return True
            logger.debug(
                "Dropped lower-confidence record",
                facility_id=self.facility_id,
                key=record_key,
                confidence=record.confidence,
                stored_confidence=existing.confidence,
            )
            return False
        records.append(record)
        return True

    # =========================================================================
    # Derived Figures
    # =========================================================================

    def refresh(self) -> "FacilityProfileBuilder":
        """Recompute every derived figure."""
        return self._touch()

    def _touch(self) -> "FacilityProfileBuilder":
        self._calculate_ttm()
        self._calculate_averages()
        self._profile.data_completeness = self._calculate_completeness()
        self._profile.data_confidence = self._calculate_confidence()
        self._profile.last_updated = utcnow()
        return self

    def _ttm_window(self) -> List[NormalizedFinancialPeriod]:
        """Non-overlapping periods ending within the last year, newest first."""
        periods = self._profile.financial_periods
        today = self._clock()
        year_ago = today - timedelta(days=365)

        candidates = [p for p in periods if year_ago <= p.period_end <= today]
        if not candidates:
            candidates = periods[-12:]
        candidates = sorted(candidates, key=lambda p: p.period_end, reverse=True)

        window: List[NormalizedFinancialPeriod] = []
        covered_days = 0
        for period in candidates:
            if covered_days >= 365:
                break
            overlaps = any(
                period.period_start <= chosen.period_end and chosen.period_start <= period.period_end
                for chosen in window
            )
            if overlaps:
                continue
            window.append(period)
            covered_days += period.days_covered
        return window

    def _calculate_ttm(self) -> None:
        profile = self._profile
        window = self._ttm_window()
        if not window:
            profile.ttm_revenue = profile.ttm_expenses = None
            profile.ttm_ebitdar = profile.ttm_noi = None
            return

        months_covered = _months(sum(p.days_covered for p in window))
        factor = 12 / months_covered if months_covered < 12 else 1.0

        def total(values) -> float:
            return round(sum(values) * factor, 2)

        profile.ttm_revenue = total(p.revenue.total for p in window)
        profile.ttm_expenses = total(p.expenses.total for p in window)
        profile.ttm_ebitdar = total(p.metrics.ebitdar for p in window)
        profile.ttm_noi = total(p.metrics.noi for p in window)

    def _calculate_averages(self) -> None:
        profile = self._profile
        occupancies = [c.occupancy_rate for c in profile.census_periods if c.occupancy_rate]
        profile.avg_occupancy = (
            round(sum(occupancies) / len(occupancies), 4) if occupancies else None
        )

        mixes = [c.payer_mix for c in profile.census_periods if c.patient_days.total > 0]
        if not mixes:
            profile.avg_payer_mix = None
            return
        averaged = {
            payer: round(sum(mix.as_dict()[payer] for mix in mixes) / len(mixes), 4)
            for payer in PayerBreakdown().as_dict()
        }
        profile.avg_payer_mix = PayerBreakdown(**averaged)

    def _calculate_completeness(self) -> float:
        profile = self._profile
        score = 0.0

        basics = [profile.name, profile.ccn, profile.licensed_beds, profile.address.state]
        score += self.BASIC_FIELD_POINTS * sum(1 for value in basics if value)

        financial_months = _months(sum(p.days_covered for p in profile.financial_periods))
        score += min(self.FINANCIAL_MAX_POINTS, financial_months * self.FINANCIAL_POINTS_PER_MONTH)

        census_months = _months(sum(c.days_in_period for c in profile.census_periods))
        score += min(self.CENSUS_MAX_POINTS, census_months * self.CENSUS_POINTS_PER_MONTH)

        if profile.payer_rates:
            populated = len(profile.payer_rates[0].rates.present())
            score += min(self.RATE_MAX_POINTS, populated * self.RATE_POINTS_PER_PAYER)

        aggregates = [profile.ttm_revenue, profile.ttm_expenses, profile.ttm_ebitdar, profile.avg_occupancy]
        score += self.TTM_POINTS_PER_AGGREGATE * sum(1 for value in aggregates if value is not None)

        return min(100.0, round(score, 1))

    def _calculate_confidence(self) -> float:
        profile = self._profile
        confidences = [
            *(p.confidence for p in profile.financial_periods),
            *(c.confidence for c in profile.census_periods),
            *(r.confidence for r in profile.payer_rates),
        ]
        if not confidences:
            return 0.0
        return round(sum(confidences) / len(confidences), 1)


def merge_facility_profiles(
    primary: FacilityFinancialProfile,
    secondary: FacilityFinancialProfile,
    clock: Optional[Callable[[], date]] = None,
) -> FacilityProfileBuilder:
    """
    Merge two profiles of the same facility into a new builder.

    The primary keeps its id and name. Aliases are unioned, identity fields
    fall back to the secondary, and every period and rate of both is
    re-ingested so the confidence replacement rule picks the survivors.
    """
    builder = FacilityProfileBuilder(primary.id, primary.name, clock=clock)
    for alias in [*primary.aliases, secondary.name, *secondary.aliases]:
        builder.add_alias(alias)

    merged = builder.profile
    merged.ccn = primary.ccn or secondary.ccn
    merged.npi = primary.npi or secondary.npi
    merged.licensed_beds = primary.licensed_beds or secondary.licensed_beds
    merged.certified_beds = primary.certified_beds or secondary.certified_beds
    merged.address = primary.address if primary.address.state else secondary.address
    merged.facility_type = primary.facility_type

    for period in [*primary.financial_periods, *secondary.financial_periods]:
        builder.add_financial_period(replace(period, facility_id=primary.id))
    for census in [*primary.census_periods, *secondary.census_periods]:
        builder.add_census_period(replace(census, facility_id=primary.id))
    for rate in [*primary.payer_rates, *secondary.payer_rates]:
        builder.add_payer_rate(replace(rate, facility_id=primary.id))

    builder.refresh()
    logger.info(
        "Merged facility profiles",
        primary_id=primary.id,
        secondary_id=secondary.id,
        aliases=len(merged.aliases),
    )
    return builder
