"""
Pipeline progress events.

Each session publishes typed events into its own bounded channel.
Transports (SSE, websockets, polling) consume the channel; the pipeline
never reads events back.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

import structlog

from facilityxl.extraction_engine.models import utcnow

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    SESSION_STARTED = "session_started"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    DOCUMENT_STARTED = "document_started"
    DOCUMENT_COMPLETED = "document_completed"
    PASS_STARTED = "pass_started"
    PASS_PROGRESS = "pass_progress"
    PASS_COMPLETED = "pass_completed"
    FACILITY_DETECTED = "facility_detected"
    PERIOD_EXTRACTED = "period_extracted"
    CONFLICT_DETECTED = "conflict_detected"
    CLARIFICATION_NEEDED = "clarification_needed"
    CLARIFICATION_RESOLVED = "clarification_resolved"
    VALIDATION_STARTED = "validation_started"
    VALIDATION_COMPLETED = "validation_completed"
    POPULATION_STARTED = "population_started"
    POPULATION_COMPLETED = "population_completed"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


@dataclass
class PipelineEvent:
    type: EventType
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


class EventChannel:
    """
    Bounded queue of events for one session.

    Publishing never blocks: when the queue is full the oldest queued event
    is discarded. A capped history is kept for late subscribers.
    """

    def __init__(self, session_id: str, maxsize: int = 256, history_size: int = 100):
        self.session_id = session_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._history: Deque[PipelineEvent] = deque(maxlen=history_size)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event_type: EventType, **data: Any) -> Optional[PipelineEvent]:
        if self._closed:
            return None
        event = PipelineEvent(type=event_type, session_id=self.session_id, data=data)
        self._history.append(event)
        self._put(event)
        return event

    def _put(self, item: Optional[PipelineEvent]) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1
                logger.debug("Dropped oldest event", session_id=self.session_id, dropped=self.dropped)

    def close(self) -> None:
        """End the stream; consumers stop after draining queued events."""
        if self._closed:
            return
        self._closed = True
        self._put(None)

    def history(self) -> List[PipelineEvent]:
        return list(self._history)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Optional[PipelineEvent]:
        """Next event, or None once the channel is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    async def stream(self) -> AsyncIterator[PipelineEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event
