"""
Session registry.

Holds running and parked extraction pipelines by session id so that
clarification answers and event subscribers can find them later.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from facilityxl.config import Settings, get_settings
from facilityxl.exceptions import SessionNotFoundError
from facilityxl.extraction_engine.models import DEFAULT_THRESHOLDS, ValidationThresholds, utcnow
from facilityxl.extraction_engine.orchestrator import (
    ClarificationAnswer,
    EngineOptions,
    ExtractionPipeline,
    PipelineSession,
)
from facilityxl.extraction_engine.ports import DocumentReader, PersistenceWriter, SourceDocument

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """
    In-process map of session id to pipeline.

    Parked sessions are never timed out automatically; callers evict
    finished or idle sessions explicitly.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._pipelines: Dict[str, ExtractionPipeline] = {}

    def __len__(self) -> int:
        return len(self._pipelines)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._pipelines

    def create(
        self,
        deal_id: str,
        documents: List[SourceDocument],
        reader: DocumentReader,
        writer: PersistenceWriter,
        options: Optional[EngineOptions] = None,
        thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
    ) -> ExtractionPipeline:
        pipeline = ExtractionPipeline(
            deal_id,
            documents,
            reader,
            writer,
            options=options,
            settings=self.settings,
            thresholds=thresholds,
        )
        self._pipelines[pipeline.session_id] = pipeline
        logger.info("Session registered", session_id=pipeline.session_id, deal_id=deal_id)
        return pipeline

    def get(self, session_id: str) -> Optional[ExtractionPipeline]:
        return self._pipelines.get(session_id)

    def require(self, session_id: str) -> ExtractionPipeline:
        pipeline = self._pipelines.get(session_id)
        if pipeline is None:
            raise SessionNotFoundError(session_id)
        return pipeline

    def sessions_for_deal(self, deal_id: str) -> List[PipelineSession]:
        return [p.session for p in self._pipelines.values() if p.session.deal_id == deal_id]

    async def run(self, session_id: str) -> PipelineSession:
        return await self.require(session_id).execute()

    def resolve_clarification(
        self,
        session_id: str,
        clarification_id: str,
        value: Any,
        resolved_by: str = "user",
        note: Optional[str] = None,
    ) -> bool:
        """Answer a clarification; False for unknown sessions or ids."""
        pipeline = self._pipelines.get(session_id)
        if pipeline is None:
            return False
        return pipeline.resolve_clarification(clarification_id, value, resolved_by, note)

    def skip_clarification(self, session_id: str, clarification_id: str) -> bool:
        pipeline = self._pipelines.get(session_id)
        if pipeline is None:
            return False
        return pipeline.skip_clarification(clarification_id)

    async def resume(
        self,
        session_id: str,
        answers: Optional[List[ClarificationAnswer]] = None,
        strict: bool = False,
    ) -> PipelineSession:
        return await self.require(session_id).continue_after_clarifications(answers, strict=strict)

    # =========================================================================
    # Eviction
    # =========================================================================

    def evict(self, session_id: str) -> bool:
        pipeline = self._pipelines.pop(session_id, None)
        if pipeline is None:
            return False
        pipeline.events.close()
        logger.info("Session evicted", session_id=session_id, status=pipeline.session.status.value)
        return True

    def evict_finished(self, now: Optional[datetime] = None, retention_seconds: Optional[int] = None) -> List[str]:
        """Drop completed or failed sessions older than the retention window."""
        now = now or utcnow()
        retention = timedelta(
            seconds=self.settings.session_retention_seconds if retention_seconds is None else retention_seconds
        )
        expired = [
            session_id
            for session_id, pipeline in self._pipelines.items()
            if pipeline.session.is_finished
            and pipeline.session.completed_at is not None
            and now - pipeline.session.completed_at >= retention
        ]
        for session_id in expired:
            self.evict(session_id)
        return expired

    def evict_idle(self, max_idle_seconds: int, now: Optional[datetime] = None) -> List[str]:
        """Drop any session, parked ones included, untouched for too long."""
        now = now or utcnow()
        limit = timedelta(seconds=max_idle_seconds)
        idle = [
            session_id
            for session_id, pipeline in self._pipelines.items()
            if now - pipeline.session.updated_at >= limit
        ]
        for session_id in idle:
            self.evict(session_id)
        return idle
