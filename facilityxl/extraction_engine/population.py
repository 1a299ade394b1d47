"""
In-memory persistence writer.

Writes a reconciled session context into process-local stores. Used by
tests and by callers that post-process results without a database.
Facilities from earlier sessions are matched by CCN or by any normalized
name or alias; stored records are only replaced by equal or higher
confidence ones.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

import structlog

from facilityxl.exceptions import PersistenceError
from facilityxl.extraction_engine.context import ExtractionContextManager
from facilityxl.extraction_engine.facility_resolver import normalize_facility_name
from facilityxl.extraction_engine.models import (
    FacilityAddress,
    FacilityFinancialProfile,
    FacilityType,
    NormalizedCensusPeriod,
    NormalizedFinancialPeriod,
    NormalizedPayerRate,
    PipelineClarification,
    new_id,
)
from facilityxl.extraction_engine.ports import PopulationResult

logger = structlog.get_logger(__name__)


@dataclass
class StoredFacility:
    id: str
    deal_id: str
    name: str
    aliases: List[str] = field(default_factory=list)
    ccn: Optional[str] = None
    npi: Optional[str] = None
    address: FacilityAddress = field(default_factory=FacilityAddress)
    licensed_beds: Optional[int] = None
    certified_beds: Optional[int] = None
    facility_type: FacilityType = FacilityType.SNF

    def names(self) -> List[str]:
        return [self.name, *self.aliases]


class InMemoryPersistenceWriter:
    """PersistenceWriter backed by dictionaries."""

    def __init__(self):
        self.facilities: Dict[str, StoredFacility] = {}
        self.financial_periods: Dict[Tuple[str, str], NormalizedFinancialPeriod] = {}
        self.census_periods: Dict[Tuple[str, str], NormalizedCensusPeriod] = {}
        self.payer_rates: Dict[Tuple[str, str], NormalizedPayerRate] = {}
        self.clarifications: Dict[str, PipelineClarification] = {}
        self.writes = 0

    async def write(self, context: ExtractionContextManager, deal_id: str) -> PopulationResult:
        """Write every facility, record and pending clarification of a context."""
        result = PopulationResult()
        try:
            id_map: Dict[str, str] = {}
            for profile in context.get_facility_profiles():
                stored = self._match(deal_id, profile)
                if stored is None:
                    stored = self._create_facility(deal_id, profile)
                    result.facilities_created += 1
                else:
                    self._update_facility(stored, profile)
                    result.facilities_updated += 1
                id_map[profile.id] = stored.id
                self._write_records(stored.id, profile, result)

            for clarification in context.get_pending_clarifications():
                stored_clarification = replace(
                    clarification,
                    facility_id=id_map.get(clarification.facility_id, clarification.facility_id),
                )
                self.clarifications[clarification.id] = stored_clarification
                result.clarifications_written += 1
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"In-memory write failed: {e}", details={"deal_id": deal_id}) from e

        self.writes += 1
        logger.info("Context written", deal_id=deal_id, **result.to_dict())
        return result

    def get_facility_by_name(self, deal_id: str, name: str) -> Optional[StoredFacility]:
        key = normalize_facility_name(name)
        for facility in self.facilities.values():
            if facility.deal_id == deal_id and key in {normalize_facility_name(n) for n in facility.names()}:
                return facility
        return None

    def _match(self, deal_id: str, profile: FacilityFinancialProfile) -> Optional[StoredFacility]:
        candidates = [f for f in self.facilities.values() if f.deal_id == deal_id]
        if profile.ccn:
            for facility in candidates:
                if facility.ccn and facility.ccn == profile.ccn:
                    return facility
        keys = {normalize_facility_name(n) for n in [profile.name, *profile.aliases]}
        for facility in candidates:
            if keys & {normalize_facility_name(n) for n in facility.names()}:
                return facility
        return None

    def _create_facility(self, deal_id: str, profile: FacilityFinancialProfile) -> StoredFacility:
        stored = StoredFacility(
            id=new_id(),
            deal_id=deal_id,
            name=profile.name,
            aliases=list(profile.aliases),
            ccn=profile.ccn,
            npi=profile.npi,
            address=profile.address,
            licensed_beds=profile.licensed_beds,
            certified_beds=profile.certified_beds,
            facility_type=profile.facility_type,
        )
        self.facilities[stored.id] = stored
        return stored

    @staticmethod
    def _update_facility(stored: StoredFacility, profile: FacilityFinancialProfile) -> None:
        known = {normalize_facility_name(n) for n in stored.names()}
        for name in [profile.name, *profile.aliases]:
            if normalize_facility_name(name) not in known:
                stored.aliases.append(name)
                known.add(normalize_facility_name(name))
        stored.ccn = stored.ccn or profile.ccn
        stored.npi = stored.npi or profile.npi
        stored.licensed_beds = profile.licensed_beds or stored.licensed_beds
        stored.certified_beds = profile.certified_beds or stored.certified_beds

    def _write_records(self, facility_id: str, profile: FacilityFinancialProfile, result: PopulationResult) -> None:
        for period in profile.financial_periods:
            if self._upsert(self.financial_periods, (facility_id, period.period_key), replace(period, facility_id=facility_id)):
                result.financial_periods_written += 1
            else:
                result.warnings.append(
                    f"Kept stored financial period {period.period_key} for {profile.name}: higher confidence"
                )
        for census in profile.census_periods:
            if self._upsert(self.census_periods, (facility_id, census.period_key), replace(census, facility_id=facility_id)):
                result.census_periods_written += 1
            else:
                result.warnings.append(
                    f"Kept stored census period {census.period_key} for {profile.name}: higher confidence"
                )
        for rate in profile.payer_rates:
            if self._upsert(self.payer_rates, (facility_id, rate.date_key), replace(rate, facility_id=facility_id)):
                result.payer_rates_written += 1
            else:
                result.warnings.append(
                    f"Kept stored payer rates {rate.date_key} for {profile.name}: higher confidence"
                )

    @staticmethod
    def _upsert(store: Dict, key: Tuple[str, str], record) -> bool:
        existing = store.get(key)
        if existing is not None and record.confidence < existing.confidence:
            return False
        store[key] = record
        return True
