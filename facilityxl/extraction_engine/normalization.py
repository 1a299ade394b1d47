"""
Normalization layer for the FacilityXL extraction engine.

Turns validated partial records into fully-typed normalized records:
sanitizes numbers, repairs totals from their components, recomputes
derived metrics and infers period granularity. Optional annualization.
"""

import copy
from dataclasses import fields, replace
from datetime import date
from typing import Any, Optional

import structlog

from facilityxl.extraction_engine.models import (
    PAYER_CATEGORIES,
    SKILLED_PAYERS,
    DataSource,
    ExpenseBreakdown,
    FinancialMetrics,
    FixedExpenses,
    LaborExpenses,
    NormalizedCensusPeriod,
    NormalizedFinancialPeriod,
    NormalizedPayerRate,
    OperatingExpenses,
    PatientDays,
    PayerBreakdown,
    PayerRates,
    PeriodType,
    RevenueBreakdown,
    RevenueByType,
)
from facilityxl.extraction_engine.schemas import (
    PartialCensusPeriod,
    PartialFinancialPeriod,
    PartialPayerRate,
)

logger = structlog.get_logger(__name__)


def sanitize(value: Any) -> float:
    """Coerce to a number rounded to 2 decimals; null and NaN become 0."""
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return round(number, 2)


def sanitize_rate(value: Any) -> Optional[float]:
    """Rates must be positive; anything else is treated as not reported."""
    number = sanitize(value)
    return number if number > 0 else None


def infer_period_type(start: date, end: date) -> PeriodType:
    """Infer period granularity from its day span (inclusive)."""
    days = (end - start).days + 1
    if days <= 35:
        return PeriodType.MONTHLY
    if days <= 100:
        return PeriodType.QUARTERLY
    if 360 <= days <= 370:
        return PeriodType.ANNUAL
    if days > 360:
        return PeriodType.TTM
    return PeriodType.MONTHLY


def _sanitize_into(target_cls, partial) -> Any:
    """Build a flat float dataclass from the same-named fields of a partial."""
    return target_cls(**{
        f.name: sanitize(getattr(partial, f.name, None))
        for f in fields(target_cls)
    })


def _scale(obj: Any, factor: float, skip: tuple = ()) -> None:
    for f in fields(obj):
        if f.name in skip:
            continue
        value = getattr(obj, f.name)
        if isinstance(value, float):
            setattr(obj, f.name, round(value * factor, 2))


class NormalizationLayer:
    """
    Normalization layer for extracted records.

    Handles:
    - Numeric sanitization (null/NaN -> 0, 2 decimals)
    - Total repair from component sums
    - Derived metrics (EBITDAR, EBITDA, NOI, margins)
    - Census payer mix, ADC and occupancy
    - Rate averages
    - Annualization
    """

    # Totals further than this from their components are repaired
    REPAIR_TOLERANCE = 0.10
    # Annualization factors inside this band leave values unchanged
    ANNUALIZATION_BAND = (0.95, 1.05)

    def repair_total(
        self,
        provided: float,
        component_sum: float,
        symmetric: bool = True,
    ) -> float:
        """
        Replace a provided total with its component sum when it looks wrong.

        A zero total is always replaced. Otherwise the total is replaced when
        it differs from the components by more than REPAIR_TOLERANCE. With
        ``symmetric`` off, only totals smaller than their components are
        replaced, since a larger total may come from an incomplete breakdown.
        """
        if component_sum <= 0:
            return provided
        if provided == 0:
            return round(component_sum, 2)

        difference = component_sum - provided
        if symmetric:
            difference = abs(difference)
        if difference / abs(provided) > self.REPAIR_TOLERANCE:
            return round(component_sum, 2)
        return provided

    # =========================================================================
    # Financial Periods
    # =========================================================================

    def normalize_financial_period(
        self,
        partial: PartialFinancialPeriod,
        facility_id: str,
        source: DataSource,
        confidence: float,
    ) -> NormalizedFinancialPeriod:
        """Normalize a partial P&L into a NormalizedFinancialPeriod."""
        by_payer = _sanitize_into(PayerBreakdown, partial.revenue.by_payer)
        by_type = _sanitize_into(RevenueByType, partial.revenue.by_type)
        revenue_total = self.repair_total(
            sanitize(partial.revenue.total),
            max(by_payer.total(), by_type.total()),
            symmetric=False,
        )
        revenue = RevenueBreakdown(total=revenue_total, by_payer=by_payer, by_type=by_type)

        labor = _sanitize_into(LaborExpenses, partial.expenses.labor)
        labor.total = self.repair_total(labor.total, labor.component_total())
        expenses = ExpenseBreakdown(
            labor=labor,
            operating=_sanitize_into(OperatingExpenses, partial.expenses.operating),
            fixed=_sanitize_into(FixedExpenses, partial.expenses.fixed),
        )
        expenses.total = self.repair_total(
            sanitize(partial.expenses.total),
            expenses.component_total(),
            symmetric=False,
        )

        period_type = partial.period_type or infer_period_type(
            partial.period_start, partial.period_end
        )
        is_annualized = (
            partial.is_annualized
            if partial.is_annualized is not None
            else period_type in (PeriodType.ANNUAL, PeriodType.TTM)
        )

        return NormalizedFinancialPeriod(
            facility_id=facility_id,
            period_start=partial.period_start,
            period_end=partial.period_end,
            period_type=period_type,
            revenue=revenue,
            expenses=expenses,
            metrics=self.calculate_metrics(revenue, expenses),
            sources=[source],
            confidence=confidence,
            is_annualized=is_annualized,
        )

    def calculate_metrics(
        self,
        revenue: RevenueBreakdown,
        expenses: ExpenseBreakdown,
    ) -> FinancialMetrics:
        """Derive EBITDAR, EBITDA, NOI and margins."""
        rent = expenses.fixed.rent
        ebitdar = round(revenue.total - (expenses.total - rent), 2)
        ebitda = round(ebitdar - rent, 2)
        # No D&A or interest decomposition at this layer
        noi = ebitda

        def ratio(numerator: float, denominator: float) -> float:
            return round(numerator / denominator, 4) if denominator else 0.0

        return FinancialMetrics(
            ebitdar=ebitdar,
            ebitda=ebitda,
            noi=noi,
            net_income=noi,
            ebitdar_margin=ratio(ebitdar, revenue.total),
            noi_margin=ratio(noi, revenue.total),
            labor_percentage=ratio(expenses.labor.total, revenue.total),
            agency_percentage=ratio(expenses.labor.agency, expenses.labor.total),
        )

    def annualize(
        self,
        period: NormalizedFinancialPeriod,
        force: bool = False,
    ) -> NormalizedFinancialPeriod:
        """
        Scale a period's additive fields to a 365-day basis.

        Margins and percentages are ratios and stay unchanged. Returns a new
        record; the input is never mutated.
        """
        if period.is_annualized and not force:
            return period

        factor = 365 / period.days_covered
        low, high = self.ANNUALIZATION_BAND
        if low <= factor <= high:
            return replace(period, is_annualized=True, annualization_factor=1.0)

        scaled = copy.deepcopy(period)
        scaled.revenue.total = round(scaled.revenue.total * factor, 2)
        _scale(scaled.revenue.by_payer, factor)
        _scale(scaled.revenue.by_type, factor)
        scaled.expenses.total = round(scaled.expenses.total * factor, 2)
        _scale(scaled.expenses.labor, factor)
        _scale(scaled.expenses.operating, factor)
        _scale(scaled.expenses.fixed, factor)
        _scale(
            scaled.metrics,
            factor,
            skip=("ebitdar_margin", "noi_margin", "labor_percentage", "agency_percentage"),
        )
        scaled.is_annualized = True
        scaled.annualization_factor = round(factor, 4)

        logger.debug(
            "Annualized period",
            facility_id=period.facility_id,
            period_key=period.period_key,
            factor=scaled.annualization_factor,
        )
        return scaled

    # =========================================================================
    # Census
    # =========================================================================

    def normalize_census_period(
        self,
        partial: PartialCensusPeriod,
        facility_id: str,
        source: DataSource,
        confidence: float,
    ) -> NormalizedCensusPeriod:
        """Normalize partial census data: days, payer mix, ADC, occupancy."""
        days_by_payer = _sanitize_into(PayerBreakdown, partial.patient_days)
        total_days = self.repair_total(
            sanitize(partial.patient_days.total), days_by_payer.total()
        )

        divisor = total_days or 1
        payer_mix = PayerBreakdown(**{
            payer: round(days / divisor, 4)
            for payer, days in days_by_payer.as_dict().items()
        })
        skilled_mix = round(sum(getattr(payer_mix, payer) for payer in SKILLED_PAYERS), 4)

        days_in_period = (partial.period_end - partial.period_start).days + 1
        beds = sanitize(partial.total_beds)
        total_beds = int(beds) if beds > 0 else None

        if total_days > 0:
            adc = round(total_days / days_in_period, 2)
        else:
            adc = sanitize(partial.average_daily_census)

        if total_beds:
            occupancy = round(adc / total_beds, 4)
        else:
            occupancy = round(float(partial.occupancy_rate or 0.0), 4)

        return NormalizedCensusPeriod(
            facility_id=facility_id,
            period_start=partial.period_start,
            period_end=partial.period_end,
            period_type=infer_period_type(partial.period_start, partial.period_end),
            days_in_period=days_in_period,
            patient_days=PatientDays(total=total_days, by_payer=days_by_payer),
            payer_mix=payer_mix,
            skilled_mix=skilled_mix,
            total_beds=total_beds,
            average_daily_census=adc,
            occupancy_rate=occupancy,
            sources=[source],
            confidence=confidence,
        )

    # =========================================================================
    # Payer Rates
    # =========================================================================

    def normalize_payer_rate(
        self,
        partial: PartialPayerRate,
        facility_id: str,
        source: DataSource,
        confidence: float,
    ) -> NormalizedPayerRate:
        """Normalize a rate schedule and compute its average PPDs."""
        rates = PayerRates(**{
            payer: sanitize_rate(getattr(partial.rates, payer))
            for payer in PAYER_CATEGORIES
        })
        present = rates.present()
        skilled = [present[payer] for payer in SKILLED_PAYERS if payer in present]

        return NormalizedPayerRate(
            facility_id=facility_id,
            effective_date=partial.effective_date,
            rates=rates,
            weighted_avg_ppd=round(sum(present.values()) / len(present), 2) if present else None,
            blended_skilled_ppd=round(sum(skilled) / len(skilled), 2) if skilled else None,
            sources=[source],
            confidence=confidence,
        )


def get_normalization_layer() -> NormalizationLayer:
    """Get normalization layer instance."""
    return NormalizationLayer()
