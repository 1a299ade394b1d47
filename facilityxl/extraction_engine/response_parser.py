"""
Response parser for document reader output.

Each raw record is validated on its own and either becomes a normalized
record or a ParseFailure describing why it was rejected.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Type, TypeVar, Union

import structlog
from pydantic import BaseModel, ValidationError

from facilityxl.exceptions import RecordParseError
from facilityxl.extraction_engine.models import (
    DataSource,
    NormalizedCensusPeriod,
    NormalizedFinancialPeriod,
    NormalizedPayerRate,
)
from facilityxl.extraction_engine.normalization import NormalizationLayer
from facilityxl.extraction_engine.schemas import (
    PartialCensusPeriod,
    PartialFacilityInfo,
    PartialFinancialPeriod,
    PartialPayerRate,
    SuggestedClarification,
)

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_CONFIDENCE = 50.0


@dataclass
class ParseFailure:
    """A reader record that could not be turned into a trusted value."""
    record_kind: str
    reason: str
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_error(self) -> RecordParseError:
        return RecordParseError(self.record_kind, self.reason)


def _describe(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg", ""))
    return "; ".join(problems)


def normalize_confidence(value: Optional[float]) -> float:
    """Missing or zero confidence defaults to 50; result is clamped to [0, 100]."""
    if not value:
        return DEFAULT_CONFIDENCE
    return max(0.0, min(100.0, float(value)))


class ResponseParser:
    """Validating constructors for reader records."""

    def __init__(self, normalizer: Optional[NormalizationLayer] = None):
        self.normalizer = normalizer or NormalizationLayer()

    def validate(
        self,
        model: Type[ModelT],
        raw: Any,
        record_kind: str,
    ) -> Union[ModelT, ParseFailure]:
        """Validate a raw mapping against a schema."""
        if not isinstance(raw, dict):
            return self._fail(record_kind, "record is not an object", {"value": raw})
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            return self._fail(record_kind, _describe(e), raw)

    def parse_financial_period(
        self,
        raw: Any,
        document_id: str,
        filename: str,
        resolve_facility: Callable[[str], str],
    ) -> Union[NormalizedFinancialPeriod, ParseFailure]:
        partial = self.validate(PartialFinancialPeriod, raw, "financial_period")
        if isinstance(partial, ParseFailure):
            return partial
        return self.normalizer.normalize_financial_period(
            partial,
            facility_id=resolve_facility(partial.facility_name or ""),
            source=self._source(document_id, filename, partial.sheet_name, partial.row_range),
            confidence=normalize_confidence(partial.confidence),
        )

    def parse_census_period(
        self,
        raw: Any,
        document_id: str,
        filename: str,
        resolve_facility: Callable[[str], str],
    ) -> Union[NormalizedCensusPeriod, ParseFailure]:
        partial = self.validate(PartialCensusPeriod, raw, "census_period")
        if isinstance(partial, ParseFailure):
            return partial
        return self.normalizer.normalize_census_period(
            partial,
            facility_id=resolve_facility(partial.facility_name or ""),
            source=self._source(document_id, filename, partial.sheet_name, partial.row_range),
            confidence=normalize_confidence(partial.confidence),
        )

    def parse_payer_rate(
        self,
        raw: Any,
        document_id: str,
        filename: str,
        resolve_facility: Callable[[str], str],
    ) -> Union[NormalizedPayerRate, ParseFailure]:
        partial = self.validate(PartialPayerRate, raw, "payer_rate")
        if isinstance(partial, ParseFailure):
            return partial
        return self.normalizer.normalize_payer_rate(
            partial,
            facility_id=resolve_facility(partial.facility_name or ""),
            source=self._source(document_id, filename, partial.sheet_name, None),
            confidence=normalize_confidence(partial.confidence),
        )

    def parse_facility_info(self, raw: Any) -> Union[PartialFacilityInfo, ParseFailure]:
        return self.validate(PartialFacilityInfo, raw, "facility_info")

    def parse_suggested_clarification(
        self, raw: Any
    ) -> Union[SuggestedClarification, ParseFailure]:
        return self.validate(SuggestedClarification, raw, "suggested_clarification")

    @staticmethod
    def _source(
        document_id: str,
        filename: str,
        sheet_name: Optional[str],
        row_range: Optional[str],
    ) -> DataSource:
        return DataSource(
            document_id=document_id,
            filename=filename,
            sheet_name=sheet_name,
            row_range=row_range,
        )

    @staticmethod
    def _fail(record_kind: str, reason: str, raw: Dict[str, Any]) -> ParseFailure:
        logger.warning("Rejected reader record", record_kind=record_kind, reason=reason)
        return ParseFailure(record_kind=record_kind, reason=reason, raw=raw)
