"""CutIntake domain models - re-exports all public model classes.

The models are organized across four submodules by concern:
    - inputs.py    - raw caller input and the normalized token stream
    - parts.py     - PartDraft, caller options and parse summaries
    - provider.py  - per-family provider responses, ProviderResult, CacheEntry
    - session.py   - progress sessions and the per-file stage machine
"""

from __future__ import annotations

from src.models.inputs import InputKind, NormalizedInput, RawInput
from src.models.parts import (
    ConfidenceLevel,
    DimOrderHint,
    EdgeBanding,
    GrainPolicy,
    ParseBatch,
    ParseOptions,
    ParseOutcome,
    ParseStats,
    PartDraft,
    Provenance,
    RowError,
    SourceMethod,
    Units,
)
from src.models.provider import (
    AnthropicResponse,
    CacheEntry,
    FailureKind,
    OpenAIResponse,
    ProviderResponse,
    ProviderResult,
)
from src.models.session import FileProgress, FileStage, ParseSession, SessionStatus

__all__ = [
    # inputs
    "InputKind",
    "NormalizedInput",
    "RawInput",
    # parts
    "ConfidenceLevel",
    "DimOrderHint",
    "EdgeBanding",
    "GrainPolicy",
    "ParseBatch",
    "ParseOptions",
    "ParseOutcome",
    "ParseStats",
    "PartDraft",
    "Provenance",
    "RowError",
    "SourceMethod",
    "Units",
    # provider
    "AnthropicResponse",
    "CacheEntry",
    "FailureKind",
    "OpenAIResponse",
    "ProviderResponse",
    "ProviderResult",
    # session
    "FileProgress",
    "FileStage",
    "ParseSession",
    "SessionStatus",
]
