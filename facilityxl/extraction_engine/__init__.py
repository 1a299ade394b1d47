"""
FacilityXL Extraction Engine - multi-document facility reconciliation.

Accumulates partial records read from a deal's documents into one
reconciled view per facility.

Key Principles:
1. Every value keeps its source document and a 0-100 confidence
2. Higher or equal confidence replaces, lower confidence is ignored
3. Reported revenue is checked against census x rates
4. Disagreements become conflicts; what cannot be settled becomes a question
5. High-priority questions block persistence until answered
"""

from facilityxl.extraction_engine.context import ExtractionContextManager
from facilityxl.extraction_engine.models import (
    ConflictType,
    DataConflict,
    FacilityFinancialProfile,
    PipelineClarification,
    PipelineStatus,
    Severity,
)
from facilityxl.extraction_engine.orchestrator import (
    ClarificationAnswer,
    EngineOptions,
    ExtractionPipeline,
    run_engine,
)
from facilityxl.extraction_engine.ports import (
    DocumentReader,
    PersistenceWriter,
    PopulationResult,
    SourceDocument,
)
from facilityxl.extraction_engine.sessions import SessionRegistry

__all__ = [
    "run_engine",
    "EngineOptions",
    "ExtractionPipeline",
    "ClarificationAnswer",
    "ExtractionContextManager",
    "SessionRegistry",
    "SourceDocument",
    "DocumentReader",
    "PersistenceWriter",
    "PopulationResult",
    "ConflictType",
    "DataConflict",
    "FacilityFinancialProfile",
    "PipelineClarification",
    "PipelineStatus",
    "Severity",
]
