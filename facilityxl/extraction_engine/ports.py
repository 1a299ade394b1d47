"""
Interfaces of the engine's external collaborators.

The document reader (a model-backed or heuristic extractor) and the
persistence writer live outside the engine and are reached only through
these protocols.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, runtime_checkable

from facilityxl.extraction_engine.models import ContextSummary
from facilityxl.extraction_engine.schemas import DocumentStructure, ExtractionResponse

if TYPE_CHECKING:
    from facilityxl.extraction_engine.context import ExtractionContextManager


@dataclass
class SourceDocument:
    """A document queued for extraction; content is opaque to the engine."""
    id: str
    filename: str
    file_type: Optional[str] = None
    content: Any = None


@dataclass
class PopulationResult:
    """Per-category write counts from a persistence writer."""
    facilities_created: int = 0
    facilities_updated: int = 0
    financial_periods_written: int = 0
    census_periods_written: int = 0
    payer_rates_written: int = 0
    clarifications_written: int = 0
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facilities_created": self.facilities_created,
            "facilities_updated": self.facilities_updated,
            "financial_periods_written": self.financial_periods_written,
            "census_periods_written": self.census_periods_written,
            "payer_rates_written": self.payer_rates_written,
            "clarifications_written": self.clarifications_written,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


@runtime_checkable
class DocumentReader(Protocol):
    """
    Turns raw documents into partial records.

    Implementations raise DocumentLoadError for unreadable documents; any
    other exception is treated as a collaborator failure.
    """

    async def analyze_structure(
        self,
        document: SourceDocument,
        context: ContextSummary,
    ) -> DocumentStructure:
        ...

    async def extract_data(
        self,
        document: SourceDocument,
        structure: DocumentStructure,
        context: ContextSummary,
        focus: Optional[List[str]] = None,
    ) -> ExtractionResponse:
        ...


@runtime_checkable
class PersistenceWriter(Protocol):
    """Writes a reconciled context to durable storage."""

    async def write(
        self,
        context: "ExtractionContextManager",
        deal_id: str,
    ) -> PopulationResult:
        ...
