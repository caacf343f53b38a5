"""Fact memory: models, engines and the extraction pipeline.

MemoryManager lives in ``cortex.memory.manager`` (re-exported from
``cortex``) because it depends on the storage package, which itself
imports the models defined here.
"""

from .cache import QueryCache
from .consolidation import ConsolidationEngine, ConsolidationReport
from .decay import DecayEngine
from .extractor import FactExtractor
from .models import (
    ConversationExchange,
    ExtractionResult,
    Fact,
    FactFilter,
    HydratedContext,
    MemoryStage,
    Operation,
    OpKind,
    ResolutionKind,
    ResolutionRecord,
    Session,
)
from .pipeline import ExtractionPipeline
from .resolver import ConflictResolver, Resolution

__all__ = [
    "ConflictResolver",
    "ConsolidationEngine",
    "ConsolidationReport",
    "ConversationExchange",
    "DecayEngine",
    "ExtractionPipeline",
    "ExtractionResult",
    "Fact",
    "FactExtractor",
    "FactFilter",
    "HydratedContext",
    "MemoryStage",
    "OpKind",
    "Operation",
    "QueryCache",
    "Resolution",
    "ResolutionKind",
    "ResolutionRecord",
    "Session",
]
