"""
Unit tests for facility identity resolution and profile building.
"""
import calendar
from datetime import date

import pytest

from facilityxl.extraction_engine.facility_profile import (
    FacilityProfileBuilder,
    merge_facility_profiles,
)
from facilityxl.extraction_engine.facility_resolver import (
    FacilityResolver,
    canonical_input,
    normalize_facility_name,
)
from facilityxl.extraction_engine.models import FacilityAddress
from conftest import fixed_clock, make_census, make_period, make_rate


def month_periods(facility_id: str, year: int, months, revenue: float = 100000.0):
    periods = []
    for month in months:
        last_day = calendar.monthrange(year, month)[1]
        periods.append(
            make_period(facility_id, revenue=revenue, start=date(year, month, 1), end=date(year, month, last_day))
        )
    return periods


class TestFacilityResolver:
    """Tests for name normalization and resolution."""

    @pytest.mark.parametrize("raw,expected", [
        ("ABC Center", "abc center"),
        ("A.B.C. Center", "abc center"),
        ("  abc   CENTER ", "abc center"),
        ("St. Mary's Rehab", "st marys rehab"),
    ])
    def test_normalize(self, raw, expected):
        """Test facility name normalization."""
        assert normalize_facility_name(raw) == expected

    def test_canonical_input(self):
        """Test canonical input for empty and padded names."""
        assert canonical_input(None) == "Unknown Facility"
        assert canonical_input("   ") == "Unknown Facility"
        assert canonical_input(" Sunrise ") == "Sunrise"

    @pytest.mark.parametrize("raw", ["...", "--", " - . "])
    def test_punctuation_only_names(self, raw):
        """Test that names without letters or digits map to the unknown facility."""
        assert canonical_input(raw) == "Unknown Facility"
        assert FacilityResolver().register("f-1", [raw]) == []

    def test_resolve_variants(self):
        """Test resolving name variants to one id."""
        resolver = FacilityResolver()
        resolver.register("f-1", ["ABC Center"])
        assert resolver.resolve("A.B.C. Center") == "f-1"
        assert resolver.resolve("abc center") == "f-1"
        assert resolver.resolve("XYZ Center") is None

    def test_first_binding_wins(self):
        """Test that a name keeps its first facility."""
        resolver = FacilityResolver()
        assert resolver.register("f-1", ["Sunrise"]) == ["Sunrise"]
        assert resolver.register("f-2", ["SUNRISE", "Sunset"]) == ["Sunset"]
        assert resolver.resolve("sunrise") == "f-1"
        assert len(resolver) == 2

    def test_reassign(self):
        """Test moving names from one facility to another."""
        resolver = FacilityResolver()
        resolver.register("f-1", ["Sunrise"])
        resolver.register("f-2", ["Sunrise SNF", "Sunrise Nursing"])
        assert resolver.reassign("f-2", "f-1") == 2
        assert resolver.resolve("Sunrise Nursing") == "f-1"
        assert len(resolver) == 1


class TestProfileRecords:
    """Tests for record upserts on a profile."""

    @pytest.fixture
    def builder(self) -> FacilityProfileBuilder:
        return FacilityProfileBuilder("f-1", "Sunrise", clock=fixed_clock)

    def test_higher_or_equal_confidence_replaces(self, builder):
        """Test that only equal or higher confidence replaces a period."""
        first = make_period("f-1", revenue=100.0, confidence=80.0)
        lower = make_period("f-1", revenue=200.0, confidence=70.0)
        equal = make_period("f-1", revenue=300.0, confidence=80.0)

        builder.add_financial_period(first)
        builder.add_financial_period(lower)
        assert [p.id for p in builder.profile.financial_periods] == [first.id]

        builder.add_financial_period(equal)
        assert [p.id for p in builder.profile.financial_periods] == [equal.id]

    def test_periods_sorted_ascending(self, builder):
        """Test that periods stay sorted by start date."""
        march = make_period("f-1", start=date(2024, 3, 1), end=date(2024, 3, 31))
        january = make_period("f-1", start=date(2024, 1, 1), end=date(2024, 1, 31))
        builder.add_financial_period(march)
        builder.add_financial_period(january)
        assert [p.period_start.month for p in builder.profile.financial_periods] == [1, 3]

    def test_rates_most_recent_first(self, builder):
        """Test rate ordering and effective-date lookup."""
        builder.add_payer_rate(make_rate("f-1", medicare=500.0, effective=date(2023, 10, 1)))
        builder.add_payer_rate(make_rate("f-1", medicare=550.0, effective=date(2024, 10, 1)))
        rates = builder.profile.payer_rates
        assert [r.effective_date.year for r in rates] == [2024, 2023]

        assert builder.rate_effective_on(date(2024, 1, 31)).rates.medicare_part_a == 500.0
        assert builder.rate_effective_on(date(2024, 12, 31)).rates.medicare_part_a == 550.0
        assert builder.rate_effective_on(date(2023, 1, 31)) is None

    def test_lookups(self, builder):
        """Test period lookups by key."""
        period = make_period("f-1")
        census = make_census("f-1")
        builder.add_financial_period(period)
        builder.add_census_period(census)
        assert builder.get_financial_period(period.period_key) is period
        assert builder.get_census_period(census.period_key) is census
        assert builder.get_census_period("2020-01-01_2020-01-31") is None

    def test_aliases(self, builder):
        """Test alias bookkeeping."""
        assert builder.add_alias("Sunrise SNF")
        assert not builder.add_alias("Sunrise SNF")
        assert not builder.add_alias("Sunrise")
        assert builder.names() == ["Sunrise", "Sunrise SNF"]


class TestDerivedFigures:
    """Tests for TTM, averages and quality scores."""

    def test_full_year_ttm(self):
        """Test TTM over twelve months."""
        builder = FacilityProfileBuilder("f-1", "Sunrise", clock=fixed_clock)
        for period in month_periods("f-1", 2024, range(1, 13)):
            builder.add_financial_period(period)
        profile = builder.profile
        assert profile.ttm_revenue == 1200000.0
        assert profile.ttm_expenses == 0.0

    def test_partial_year_ttm_annualized(self):
        """Test that partial-year TTM is annualized."""
        builder = FacilityProfileBuilder("f-1", "Sunrise", clock=fixed_clock)
        for period in month_periods("f-1", 2024, range(7, 13)):
            builder.add_financial_period(period)
        months_covered = 184 / (365 / 12)
        expected = 600000.0 * 12 / months_covered
        assert builder.profile.ttm_revenue == pytest.approx(expected, abs=0.01)

    def test_ttm_falls_back_to_latest_periods(self):
        """Test TTM from the latest periods when none are recent."""
        builder = FacilityProfileBuilder("f-1", "Sunrise", clock=fixed_clock)
        for period in month_periods("f-1", 2021, range(1, 13)):
            builder.add_financial_period(period)
        assert builder.profile.ttm_revenue == 1200000.0

    def test_no_periods_no_ttm(self):
        """Test that TTM stays unset without periods."""
        builder = FacilityProfileBuilder("f-1", "Sunrise", clock=fixed_clock)
        assert builder.refresh().profile.ttm_revenue is None

    def test_completeness(self):
        """Test data completeness scoring."""
        builder = FacilityProfileBuilder("f-1", "Sunrise", clock=fixed_clock)
        for period in month_periods("f-1", 2024, range(1, 13)):
            builder.add_financial_period(period)
        # name 5 + financial 30 + three TTM aggregates 7.5
        assert builder.profile.data_completeness == 42.5

        builder.set_ccn("105678").set_beds(licensed=120)
        builder.set_address(FacilityAddress(state="FL"))
        builder.add_payer_rate(make_rate("f-1"))
        # + ccn, beds, state 15 + one rate 2
        assert builder.profile.data_completeness == 59.5

    def test_averages_and_confidence(self):
        """Test census averages and data confidence."""
        builder = FacilityProfileBuilder("f-1", "Sunrise", clock=fixed_clock)
        builder.add_census_period(make_census("f-1", occupancy=0.8, confidence=90.0))
        builder.add_census_period(
            make_census("f-1", occupancy=0.9, start=date(2024, 2, 1), end=date(2024, 2, 29), confidence=70.0)
        )
        profile = builder.profile
        assert profile.avg_occupancy == 0.85
        assert profile.avg_payer_mix.medicare_part_a == 1.0
        assert profile.data_confidence == 80.0


class TestMergeProfiles:
    def test_merge(self):
        """Test merging two facility profiles."""
        primary = FacilityProfileBuilder("f-1", "Sunrise", clock=fixed_clock)
        primary.add_financial_period(make_period("f-1", revenue=100.0, confidence=60.0))
        secondary = FacilityProfileBuilder("f-2", "Sunrise SNF", clock=fixed_clock)
        secondary.set_ccn("105678")
        secondary.add_alias("Sunrise Skilled")
        secondary.add_financial_period(make_period("f-2", revenue=200.0, confidence=90.0))

        merged = merge_facility_profiles(primary.profile, secondary.profile, clock=fixed_clock).profile
        assert merged.id == "f-1"
        assert merged.name == "Sunrise"
        assert merged.aliases == ["Sunrise SNF", "Sunrise Skilled"]
        assert merged.ccn == "105678"
        assert len(merged.financial_periods) == 1
        assert merged.financial_periods[0].revenue.total == 200.0
        assert merged.financial_periods[0].facility_id == "f-1"
