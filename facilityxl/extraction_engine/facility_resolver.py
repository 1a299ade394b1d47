"""
Facility identity resolution.

Maps facility names and aliases to stable facility ids. Names are
compared after normalization, so case, punctuation and spacing never
produce a second profile for the same facility.
"""

import re
from typing import Dict, Iterable, List, Optional

import structlog

from facilityxl.extraction_engine.models import UNKNOWN_FACILITY

logger = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s]")


def normalize_facility_name(name: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    text = _PUNCTUATION.sub("", name.lower())
    return _WHITESPACE.sub(" ", text).strip()


def canonical_input(name: Optional[str]) -> str:
    """The raw name to use for a reference, never empty after normalization."""
    text = (name or "").strip()
    if not normalize_facility_name(text):
        return UNKNOWN_FACILITY
    return text


class FacilityResolver:
    """Index from normalized names and aliases to facility ids."""

    def __init__(self):
        self._index: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(set(self._index.values()))

    def resolve(self, name_or_alias: Optional[str]) -> Optional[str]:
        """Return the facility id registered for a name, or None."""
        key = normalize_facility_name(canonical_input(name_or_alias))
        return self._index.get(key)

    def register(self, facility_id: str, names: Iterable[str]) -> List[str]:
        """
        Register names for a facility.

        Names already bound to another facility keep their first binding.

        Returns:
            The names newly bound to this facility.
        """
        added = []
        for name in names:
            key = normalize_facility_name(name or "")
            if not key:
                continue
            owner = self._index.setdefault(key, facility_id)
            if owner != facility_id:
                logger.warning(
                    "Facility name already bound",
                    name=name,
                    facility_id=facility_id,
                    bound_to=owner,
                )
                continue
            added.append(name)
        return added

    def reassign(self, from_id: str, to_id: str) -> int:
        """Point every name of one facility at another; returns the count moved."""
        moved = 0
        for key, owner in self._index.items():
            if owner == from_id:
                self._index[key] = to_id
                moved += 1
        return moved
