"""
Extraction pass for the FacilityXL extraction engine.

Applies one document's reader output to the session context: facility
details first, then every financial, census and rate record, then the
anomaly and reader-suggested clarifications.
"""

from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from facilityxl.extraction_engine.clarifications import ClarificationGenerator
from facilityxl.extraction_engine.context import ExtractionContextManager
from facilityxl.extraction_engine.events import EventChannel, EventType
from facilityxl.extraction_engine.models import (
    DataConflict,
    FacilityAddress,
    PipelineClarification,
)
from facilityxl.extraction_engine.normalization import NormalizationLayer
from facilityxl.extraction_engine.ports import SourceDocument
from facilityxl.extraction_engine.response_parser import ParseFailure, ResponseParser
from facilityxl.extraction_engine.schemas import (
    DocumentStructure,
    ExtractionResponse,
    PartialFacilityInfo,
)

logger = structlog.get_logger(__name__)


@dataclass
class DocumentExtractionResult:
    """What one document contributed to the session."""
    document_id: str
    financial_periods: int = 0
    census_periods: int = 0
    payer_rates: int = 0
    facility_ids: List[str] = field(default_factory=list)
    conflicts: List[DataConflict] = field(default_factory=list)
    clarifications: List[PipelineClarification] = field(default_factory=list)
    failures: List[ParseFailure] = field(default_factory=list)
    observations: List[str] = field(default_factory=list)

    @property
    def records(self) -> int:
        return self.financial_periods + self.census_periods + self.payer_rates


class ExtractionPass:
    """Turns reader output into context mutations for one document."""

    def __init__(
        self,
        parser: Optional[ResponseParser] = None,
        generator: Optional[ClarificationGenerator] = None,
        annualize: bool = False,
    ):
        self.normalizer = parser.normalizer if parser else NormalizationLayer()
        self.parser = parser or ResponseParser(self.normalizer)
        self.generator = generator or ClarificationGenerator()
        self.annualize = annualize

    def register_structure(
        self,
        context: ExtractionContextManager,
        structure: DocumentStructure,
        events: Optional[EventChannel] = None,
    ) -> List[str]:
        """Create profiles for facilities the structure analysis found."""
        facility_ids = []
        for name in structure.detected_facilities:
            profile, is_new = context.find_or_create_facility(name)
            facility_ids.append(profile.id)
            if events:
                events.publish(
                    EventType.FACILITY_DETECTED,
                    facility_id=profile.id,
                    name=profile.name,
                    is_new=is_new,
                    document_id=structure.document_id,
                )
        context.stats.sheets_analyzed += len(structure.sheets)
        return facility_ids

    def apply(
        self,
        context: ExtractionContextManager,
        document: SourceDocument,
        response: ExtractionResponse,
        events: Optional[EventChannel] = None,
    ) -> DocumentExtractionResult:
        """Ingest every record of an extraction response."""
        result = DocumentExtractionResult(document_id=document.id, observations=list(response.observations))
        log = logger.bind(document_id=document.id, filename=document.filename)

        for raw in response.facility_info:
            info = self.parser.parse_facility_info(raw)
            if isinstance(info, ParseFailure):
                self._record_failure(context, result, info)
                continue
            result.facility_ids.append(self.apply_facility_info(context, info))

        for raw in response.financial_periods:
            period = self.parser.parse_financial_period(
                raw, document.id, document.filename, context.resolve_facility_id
            )
            if isinstance(period, ParseFailure):
                self._record_failure(context, result, period)
                continue
            if self.annualize:
                period = self.normalizer.annualize(period)
            self._track_conflicts(result, context.add_financial_period(period), events)
            result.financial_periods += 1
            facility_name = context.facility_name(period.facility_id)
            self._raise_clarifications(
                context,
                result,
                self.generator.anomalies_for_period(period, facility_name, document.id),
                events,
            )
            if events:
                events.publish(
                    EventType.PERIOD_EXTRACTED,
                    facility_id=period.facility_id,
                    facility_name=facility_name,
                    period_start=period.period_start.isoformat(),
                    period_end=period.period_end.isoformat(),
                    period_type=period.period_type.value,
                    revenue=period.revenue.total,
                    confidence=period.confidence,
                )

        for raw in response.census_periods:
            census = self.parser.parse_census_period(
                raw, document.id, document.filename, context.resolve_facility_id
            )
            if isinstance(census, ParseFailure):
                self._record_failure(context, result, census)
                continue
            self._track_conflicts(result, context.add_census_period(census), events)
            result.census_periods += 1
            self._raise_clarifications(
                context,
                result,
                self.generator.anomalies_for_census(census, context.facility_name(census.facility_id), document.id),
                events,
            )

        for raw in response.payer_rates:
            rate = self.parser.parse_payer_rate(
                raw, document.id, document.filename, context.resolve_facility_id
            )
            if isinstance(rate, ParseFailure):
                self._record_failure(context, result, rate)
                continue
            self._track_conflicts(result, context.add_payer_rate(rate), events)
            result.payer_rates += 1

        for raw in response.suggested_clarifications:
            suggestion = self.parser.parse_suggested_clarification(raw)
            if isinstance(suggestion, ParseFailure):
                self._record_failure(context, result, suggestion)
                continue
            facility_id = (
                context.resolver.resolve(suggestion.facility_name)
                if suggestion.facility_name
                else None
            )
            clarification = self.generator.from_suggestion(
                suggestion,
                facility_id=facility_id,
                facility_name=context.facility_name(facility_id),
                document_id=document.id,
            )
            self._raise_clarifications(context, result, [clarification], events)

        context.stats.documents_processed += 1
        context.stats.data_points_extracted += result.records
        context.stats.reader_tokens_used += response.tokens_used

        log.info(
            "Document extracted",
            financial_periods=result.financial_periods,
            census_periods=result.census_periods,
            payer_rates=result.payer_rates,
            conflicts=len(result.conflicts),
            clarifications=len(result.clarifications),
            parse_failures=len(result.failures),
        )
        return result

    def apply_facility_info(self, context: ExtractionContextManager, info: PartialFacilityInfo) -> str:
        """Merge reader-supplied identity details into a profile."""
        profile, _ = context.find_or_create_facility(info.name)
        for alias in info.aliases:
            context.register_alias(profile.id, alias)

        builder = context.get_facility_builder(profile.id)
        if info.ccn:
            builder.set_ccn(info.ccn)
        if info.npi:
            builder.set_npi(info.npi)
        if info.address is not None:
            builder.set_address(FacilityAddress(**info.address.model_dump()))
        if info.licensed_beds or info.certified_beds:
            builder.set_beds(
                licensed=int(info.licensed_beds) if info.licensed_beds else None,
                certified=int(info.certified_beds) if info.certified_beds else None,
            )
        if info.facility_type is not None:
            builder.set_facility_type(info.facility_type)
        return profile.id

    @staticmethod
    def _record_failure(
        context: ExtractionContextManager,
        result: DocumentExtractionResult,
        failure: ParseFailure,
    ) -> None:
        context.stats.parse_failures += 1
        result.failures.append(failure)

    @staticmethod
    def _track_conflicts(
        result: DocumentExtractionResult,
        conflicts: List[DataConflict],
        events: Optional[EventChannel],
    ) -> None:
        for conflict in conflicts:
            if all(existing.id != conflict.id for existing in result.conflicts):
                result.conflicts.append(conflict)
            if events:
                events.publish(
                    EventType.CONFLICT_DETECTED,
                    conflict_id=conflict.id,
                    type=conflict.type.value,
                    severity=conflict.severity.value,
                    field_path=conflict.field_path,
                    period_key=conflict.period_key,
                    variance_percent=conflict.variance_percent,
                )

    @staticmethod
    def _raise_clarifications(
        context: ExtractionContextManager,
        result: DocumentExtractionResult,
        clarifications: List[PipelineClarification],
        events: Optional[EventChannel],
    ) -> None:
        for clarification in clarifications:
            if not context.add_clarification(clarification):
                continue
            result.clarifications.append(clarification)
            if events:
                events.publish(
                    EventType.CLARIFICATION_NEEDED,
                    clarification_id=clarification.id,
                    type=clarification.type.value,
                    priority=clarification.priority,
                    question=clarification.question,
                )
