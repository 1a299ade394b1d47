"""
Orchestrator for the FacilityXL extraction engine.

Coordinates one extraction session:
Pass 1: Structure (per document, via the document reader)
Pass 2: Extraction (per document, sequential; each read sees prior context)
Pass 3: Validation (once, over the whole context)
Pass 4: Population (persistence writer; blocked by priority >= 8 clarifications)
"""

import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, List, Optional

import structlog

from facilityxl.config import Settings, get_settings
from facilityxl.exceptions import (
    ClarificationsPendingError,
    DocumentLoadError,
    DocumentReaderError,
    FacilityXLError,
    NoDocumentsError,
    PersistenceError,
)
from facilityxl.extraction_engine.clarifications import ClarificationGenerator
from facilityxl.extraction_engine.context import ExtractionContextManager
from facilityxl.extraction_engine.events import EventChannel, EventType
from facilityxl.extraction_engine.extraction_pass import (
    DocumentExtractionResult,
    ExtractionPass,
)
from facilityxl.extraction_engine.models import (
    DEFAULT_THRESHOLDS,
    PassType,
    PipelineStatus,
    ValidationThresholds,
    new_id,
    utcnow,
)
from facilityxl.extraction_engine.ports import (
    DocumentReader,
    PersistenceWriter,
    PopulationResult,
    SourceDocument,
)
from facilityxl.extraction_engine.response_parser import ResponseParser
from facilityxl.extraction_engine.schemas import DocumentStructure, ExtractionResponse
from facilityxl.extraction_engine.validation import ValidationPass, ValidationResult
from facilityxl.log_config import session_id_var

logger = structlog.get_logger(__name__)


@dataclass
class EngineOptions:
    """Configuration options for a pipeline run."""
    # Scale sub-annual periods to a 365-day basis before ingestion
    annualize: Optional[bool] = None  # None -> settings.annualize_periods
    # Hint passed to the reader, e.g. ["financials", "census"]
    extraction_focus: Optional[List[str]] = None
    skip_validation: bool = False
    # Pending clarifications at or above this priority block population
    blocking_priority: Optional[int] = None  # None -> settings.blocking_priority


@dataclass
class ClarificationAnswer:
    """A user's answer to a clarification, as fed back into a session."""
    clarification_id: str
    value: Any = None
    resolved_by: str = "user"
    note: Optional[str] = None
    skip: bool = False


@dataclass
class PipelineSession:
    """Lifecycle record of one extraction session."""
    id: str
    deal_id: str
    documents: List[SourceDocument] = field(default_factory=list)
    status: PipelineStatus = PipelineStatus.INITIALIZING
    current_pass: Optional[PassType] = None
    current_document_id: Optional[str] = None
    document_index: int = 0
    document_results: List[DocumentExtractionResult] = field(default_factory=list)
    skipped_documents: List[str] = field(default_factory=list)
    validation: Optional[ValidationResult] = None
    population: Optional[PopulationResult] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    failed_pass: Optional[PassType] = None
    failed_document_id: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (PipelineStatus.COMPLETED, PipelineStatus.FAILED)


class ExtractionPipeline:
    """
    One extraction session: a context, its event channel and its lifecycle.

    Documents are processed strictly in order; the only suspension points
    are calls to the document reader and the persistence writer.
    """

    def __init__(
        self,
        deal_id: str,
        documents: List[SourceDocument],
        reader: DocumentReader,
        writer: PersistenceWriter,
        options: Optional[EngineOptions] = None,
        settings: Optional[Settings] = None,
        thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
        session_id: Optional[str] = None,
        clock=None,
    ):
        self.settings = settings or get_settings()
        self.options = options or EngineOptions()
        self.reader = reader
        self.writer = writer

        session_id = session_id or new_id()
        self.session = PipelineSession(id=session_id, deal_id=deal_id, documents=list(documents))
        self.context = ExtractionContextManager(
            session_id=session_id, deal_id=deal_id, thresholds=thresholds, clock=clock
        )
        self.events = EventChannel(
            session_id,
            maxsize=self.settings.event_queue_size,
            history_size=self.settings.event_history_size,
        )

        annualize = self.options.annualize
        if annualize is None:
            annualize = self.settings.annualize_periods
        self.blocking_priority = self.options.blocking_priority or self.settings.blocking_priority

        self.extraction_pass = ExtractionPass(
            parser=ResponseParser(),
            generator=ClarificationGenerator(thresholds),
            annualize=annualize,
        )
        self.validation_pass = ValidationPass(thresholds)

    @property
    def session_id(self) -> str:
        return self.session.id

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def execute(self) -> PipelineSession:
        """
        Run every pass over the session's documents.

        Returns the session in completed, awaiting_clarifications or failed
        state. Failures are captured on the session rather than raised.
        """
        token = session_id_var.set(self.session.id)
        started = time.perf_counter()
        session = self.session

        logger.info(
            "Starting extraction session",
            deal_id=session.deal_id,
            documents=[d.filename for d in session.documents],
        )

        try:
            self._set_status(PipelineStatus.PROCESSING)
            self.events.publish(
                EventType.SESSION_STARTED,
                deal_id=session.deal_id,
                document_count=len(session.documents),
            )
            if not session.documents:
                raise NoDocumentsError(session.deal_id)

            for index, document in enumerate(session.documents):
                session.document_index = index
                session.current_document_id = document.id
                await self._process_document(document, index)
            session.current_document_id = None

            if not self.options.skip_validation:
                self._run_validation()

            if self._park_if_blocked():
                return session

            await self._run_population()
            self._complete()

        except Exception as e:
            self._fail(e)

        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self.context.stats.total_processing_time_ms += round(elapsed_ms, 2)
            session_id_var.reset(token)

        return session

    async def continue_after_clarifications(
        self,
        answers: Optional[List[ClarificationAnswer]] = None,
        strict: bool = False,
    ) -> PipelineSession:
        """
        Apply answers and resume a session parked on clarifications.

        Population runs only once no pending clarification is at or above
        the blocking priority. With ``strict`` a still-blocked session raises
        ClarificationsPendingError instead of returning unchanged.
        """
        token = session_id_var.set(self.session.id)
        try:
            for answer in answers or []:
                if answer.skip:
                    self.skip_clarification(answer.clarification_id)
                else:
                    self.resolve_clarification(
                        answer.clarification_id, answer.value, answer.resolved_by, answer.note
                    )

            if self.session.status != PipelineStatus.AWAITING_CLARIFICATIONS:
                logger.warning("Session is not awaiting clarifications", status=self.session.status.value)
                return self.session

            blocking = self.context.get_blocking_clarifications(self.blocking_priority)
            if blocking:
                logger.info("Session still blocked", blocking=len(blocking))
                if strict:
                    raise ClarificationsPendingError(len(blocking))
                return self.session

            try:
                self._set_status(PipelineStatus.PROCESSING)
                await self._run_population()
                self._complete()
            except Exception as e:
                self._fail(e)
            return self.session
        finally:
            session_id_var.reset(token)

    def resolve_clarification(
        self,
        clarification_id: str,
        value: Any,
        resolved_by: str = "user",
        note: Optional[str] = None,
    ) -> bool:
        resolved = self.context.resolve_clarification(clarification_id, value, resolved_by, note)
        if resolved:
            self.events.publish(
                EventType.CLARIFICATION_RESOLVED,
                clarification_id=clarification_id,
                resolved_by=resolved_by,
                skipped=False,
            )
            self._touch()
        return resolved

    def skip_clarification(self, clarification_id: str) -> bool:
        skipped = self.context.skip_clarification(clarification_id)
        if skipped:
            self.events.publish(
                EventType.CLARIFICATION_RESOLVED,
                clarification_id=clarification_id,
                skipped=True,
            )
            self._touch()
        return skipped

    # =========================================================================
    # Passes
    # =========================================================================

    async def _process_document(self, document: SourceDocument, index: int) -> None:
        log = logger.bind(document_id=document.id, filename=document.filename)
        self.events.publish(
            EventType.DOCUMENT_STARTED,
            document_id=document.id,
            filename=document.filename,
            index=index,
            total=len(self.session.documents),
        )

        try:
            self._enter_pass(PassType.STRUCTURE, document_id=document.id)
            structure = await self._call_reader(
                "analyze_structure",
                self.reader.analyze_structure(document, self.context.get_context_summary()),
            )
            structure = DocumentStructure.model_validate(structure)
            self.extraction_pass.register_structure(self.context, structure, self.events)
            self._leave_pass(PassType.STRUCTURE, document_id=document.id, sheets=len(structure.sheets))

            self._enter_pass(PassType.EXTRACTION, document_id=document.id)
            response = await self._call_reader(
                "extract_data",
                self.reader.extract_data(
                    document,
                    structure,
                    self.context.get_context_summary(),
                    self.options.extraction_focus,
                ),
            )
            response = ExtractionResponse.model_validate(response)
        except DocumentLoadError as e:
            log.warning("Document skipped", error=e.message)
            self.session.skipped_documents.append(document.id)
            self.events.publish(
                EventType.ERROR,
                document_id=document.id,
                error_code=e.error_code,
                message=e.message,
                recoverable=True,
            )
            return

        result = self.extraction_pass.apply(self.context, document, response, self.events)
        self.session.document_results.append(result)
        self._leave_pass(PassType.EXTRACTION, document_id=document.id, records=result.records)
        self.events.publish(
            EventType.DOCUMENT_COMPLETED,
            document_id=document.id,
            records=result.records,
            conflicts=len(result.conflicts),
            clarifications=len(result.clarifications),
            parse_failures=len(result.failures),
        )

    async def _call_reader(self, operation: str, call: Awaitable) -> Any:
        self.context.stats.reader_calls += 1
        try:
            return await call
        except FacilityXLError:
            raise
        except Exception as e:
            raise DocumentReaderError(operation, str(e)) from e

    def _run_validation(self) -> None:
        self._enter_pass(PassType.VALIDATION)
        self.events.publish(EventType.VALIDATION_STARTED, periods=len(self.context.financial_periods))

        result = self.validation_pass.run(self.context)
        self.session.validation = result

        for conflict in result.conflicts:
            self.events.publish(
                EventType.CONFLICT_DETECTED,
                conflict_id=conflict.id,
                type=conflict.type.value,
                severity=conflict.severity.value,
                field_path=conflict.field_path,
                period_key=conflict.period_key,
                variance_percent=conflict.variance_percent,
            )
        for clarification in result.clarifications:
            self.events.publish(
                EventType.CLARIFICATION_NEEDED,
                clarification_id=clarification.id,
                type=clarification.type.value,
                priority=clarification.priority,
                question=clarification.question,
            )

        self.events.publish(
            EventType.VALIDATION_COMPLETED,
            is_valid=result.is_valid,
            validation_score=result.validation_score,
            conflicts=len(result.conflicts),
            auto_resolved=result.auto_resolved,
            clarifications=len(result.clarifications),
        )
        self._leave_pass(PassType.VALIDATION)

    def _park_if_blocked(self) -> bool:
        blocking = self.context.get_blocking_clarifications(self.blocking_priority)
        if not blocking:
            return False
        self._set_status(PipelineStatus.AWAITING_CLARIFICATIONS)
        logger.info(
            "Session awaiting clarifications",
            blocking=len(blocking),
            pending=len(self.context.pending_clarifications),
        )
        self.events.publish(
            EventType.PASS_PROGRESS,
            status=PipelineStatus.AWAITING_CLARIFICATIONS.value,
            blocking_clarifications=len(blocking),
        )
        return True

    async def _run_population(self) -> None:
        self._enter_pass(PassType.POPULATION)
        self.events.publish(EventType.POPULATION_STARTED, facilities=len(self.context.get_facility_profiles()))
        try:
            result = await self.writer.write(self.context, self.session.deal_id)
        except FacilityXLError:
            raise
        except Exception as e:
            raise PersistenceError(f"Persistence writer failed: {e}") from e
        if result.errors:
            raise PersistenceError(
                f"Persistence writer reported {len(result.errors)} errors",
                details={"errors": list(result.errors)},
            )

        self.session.population = result
        for warning in result.warnings:
            logger.warning("Population warning", warning=warning)
        self.events.publish(EventType.POPULATION_COMPLETED, **result.to_dict())
        self._leave_pass(PassType.POPULATION)

    # =========================================================================
    # State
    # =========================================================================

    def _complete(self) -> None:
        self._set_status(PipelineStatus.COMPLETED)
        self.session.current_pass = None
        self.session.completed_at = utcnow()
        self.events.publish(
            EventType.SESSION_COMPLETED,
            facilities=len(self.context.get_facility_profiles()),
            financial_periods=len(self.context.financial_periods),
            overall_confidence=self.context.get_overall_confidence(),
        )
        self.events.close()
        logger.info(
            "Extraction session complete",
            overall_confidence=self.context.get_overall_confidence(),
            conflicts=len(self.context.conflicts),
            skipped_documents=len(self.session.skipped_documents),
        )

    def _fail(self, error: Exception) -> None:
        session = self.session
        session.error = getattr(error, "message", None) or str(error)
        session.error_code = getattr(error, "error_code", None)
        session.failed_pass = session.current_pass
        session.failed_document_id = session.current_document_id
        session.completed_at = utcnow()
        self._set_status(PipelineStatus.FAILED)

        logger.error(
            "Extraction session failed",
            error=session.error,
            failed_pass=session.failed_pass.value if session.failed_pass else None,
            failed_document_id=session.failed_document_id,
            traceback=traceback.format_exc(),
        )
        self.events.publish(
            EventType.SESSION_FAILED,
            error=session.error,
            error_code=session.error_code,
            failed_pass=session.failed_pass.value if session.failed_pass else None,
            failed_document_id=session.failed_document_id,
        )
        self.events.close()

    def _enter_pass(self, pass_type: PassType, **data: Any) -> None:
        self.session.current_pass = pass_type
        self._touch()
        self.events.publish(EventType.PASS_STARTED, pass_type=pass_type.value, **data)

    def _leave_pass(self, pass_type: PassType, **data: Any) -> None:
        self.events.publish(EventType.PASS_COMPLETED, pass_type=pass_type.value, **data)

    def _set_status(self, status: PipelineStatus) -> None:
        self.session.status = status
        self._touch()

    def _touch(self) -> None:
        self.session.updated_at = utcnow()


async def run_engine(
    deal_id: str,
    documents: List[SourceDocument],
    reader: DocumentReader,
    writer: PersistenceWriter,
    options: Optional[EngineOptions] = None,
) -> ExtractionPipeline:
    """
    Run a full extraction session for a deal.

    Returns the pipeline so callers can read the context, answer
    clarifications and resume if the session parked.
    """
    pipeline = ExtractionPipeline(deal_id, documents, reader, writer, options=options)
    await pipeline.execute()
    return pipeline
