"""
Cross-reference index.

Append-only multimap from (facility id, period key, field path) to every
value observed for it, across all documents of a session.
"""

from typing import Dict, Iterator, List, Tuple

from facilityxl.extraction_engine.models import CrossReferenceEntry

IndexKey = Tuple[str, str, str]

# Field paths recorded at ingestion
REVENUE_TOTAL = "revenue.total"
EXPENSES_TOTAL = "expenses.total"
PATIENT_DAYS_TOTAL = "patientDays.total"
RATES_WEIGHTED_AVG = "rates.weightedAvg"


class CrossReferenceIndex:
    """Observed values keyed by facility, period and field."""

    def __init__(self):
        self._entries: Dict[IndexKey, List[CrossReferenceEntry]] = {}

    def add(
        self,
        facility_id: str,
        period_key: str,
        field_path: str,
        entry: CrossReferenceEntry,
    ) -> List[CrossReferenceEntry]:
        """Append an observation; returns all observations for the key."""
        entries = self._entries.setdefault((facility_id, period_key, field_path), [])
        entries.append(entry)
        return list(entries)

    def get(self, facility_id: str, period_key: str, field_path: str) -> List[CrossReferenceEntry]:
        return list(self._entries.get((facility_id, period_key, field_path), []))

    def keys(self) -> Iterator[IndexKey]:
        return iter(list(self._entries))

    def reassign(self, from_id: str, to_id: str) -> None:
        """Move every observation of one facility onto another."""
        for key in [k for k in self._entries if k[0] == from_id]:
            entries = self._entries.pop(key)
            self._entries.setdefault((to_id, key[1], key[2]), []).extend(entries)

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())
