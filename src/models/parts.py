"""Part record models for the CutIntake pipeline.

Defines the canonical :class:`PartDraft` every parser emits, the caller
options that steer parsing, and the summary objects returned by
``IntakePipeline.parse``.

All value models are frozen.  Stages that need to change a part (the
confidence review, for instance) build a new instance with
``model_copy(update={...})``.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def new_part_id() -> str:
    """Return a short, unique part identifier such as ``P-1a2b3c4d``."""
    return f"P-{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class GrainPolicy(str, Enum):  # noqa: UP042
    """Whether the board grain constrains how a part may be laid out."""

    NONE = "none"
    ALONG_LENGTH = "along_length"


class SourceMethod(str, Enum):  # noqa: UP042
    """Which stage produced a part record."""

    DETERMINISTIC = "deterministic"  # delimited rows / spreadsheets
    TEXT = "text"                    # free-text line parser
    VOICE = "voice"                  # dictated transcript
    AI = "ai"                        # extraction provider


class ConfidenceLevel(str, Enum):  # noqa: UP042
    """Caller-selected review strictness."""

    STRICT = "strict"
    BALANCED = "balanced"
    PERMISSIVE = "permissive"


class Units(str, Enum):  # noqa: UP042
    MM = "mm"
    CM = "cm"
    INCH = "inch"


class DimOrderHint(str, Enum):  # noqa: UP042
    """How the first two dimensions of an input are ordered."""

    LXW = "LxW"
    WXL = "WxL"
    INFER = "infer"


# ---------------------------------------------------------------------------
# Part sub-records
# ---------------------------------------------------------------------------
class EdgeBanding(BaseModel):
    """Explicit per-edge apply flags.

    ``L1``/``L2`` are the two long edges, ``W1``/``W2`` the two short ones.
    """

    model_config = ConfigDict(frozen=True)

    L1: bool = False
    L2: bool = False
    W1: bool = False
    W2: bool = False
    edge_material: str | None = None

    def applied_edges(self) -> list[str]:
        """Return the edge codes with banding applied, in L1, L2, W1, W2 order."""
        return [code for code in ("L1", "L2", "W1", "W2") if getattr(self, code)]

    def to_ops(self) -> dict[str, dict[str, bool]]:
        """Render as ``{"L1": {"apply": True}, ...}`` for downstream consumers."""
        return {code: {"apply": True} for code in self.applied_edges()}


class Provenance(BaseModel):
    """Where a part came from and how much the pipeline trusts it."""

    model_config = ConfigDict(frozen=True)

    method: SourceMethod
    source_ref: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    human_verified: bool = False
    # Per-field signals (``length``, ``width``, ``quantity`` ...) used by
    # the ConfidenceScorer.  Missing fields fall back to ``confidence``.
    field_confidence: dict[str, float] = Field(default_factory=dict)
    provider_name: str | None = None


class PartDraft(BaseModel):
    """A candidate manufacturing part awaiting acceptance or review."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_part_id)
    label: str | None = None
    quantity: int = Field(ge=1)
    length_mm: float = Field(gt=0)
    width_mm: float = Field(gt=0)
    thickness_mm: float = Field(gt=0)
    material_ref: str
    grain_policy: GrainPolicy = GrainPolicy.NONE
    allow_rotation: bool = True
    edge_banding: EdgeBanding | None = None
    grooving: dict[str, Any] | None = None
    drilling: dict[str, Any] | None = None
    cnc_ops: dict[str, Any] | None = None
    notes: str | None = None
    warnings: list[str] = Field(default_factory=list)
    provenance: Provenance


# ---------------------------------------------------------------------------
# Caller options
# ---------------------------------------------------------------------------
class ParseOptions(BaseModel):
    """Options recognised by ``IntakePipeline.parse``."""

    model_config = ConfigDict(frozen=True)

    default_material_id: str = "default"
    default_thickness_mm: float = Field(default=18.0, gt=0)
    dim_order_hint: DimOrderHint = DimOrderHint.INFER
    units: Units = Units.MM
    use_ai: bool = True
    confidence_level: ConfidenceLevel = ConfidenceLevel.BALANCED
    track_progress: bool = True


# ---------------------------------------------------------------------------
# Parse output
# ---------------------------------------------------------------------------
class RowError(BaseModel):
    """Why one input row or line did not become a part."""

    model_config = ConfigDict(frozen=True)

    source_ref: str
    message: str
    raw: str | None = None


class ParseBatch(BaseModel):
    """What a deterministic parser produced from one normalized input."""

    model_config = ConfigDict(frozen=True)

    method: SourceMethod
    parts: list[PartDraft] = Field(default_factory=list)
    row_errors: list[RowError] = Field(default_factory=list)
    total_rows: int = 0
    skipped: int = 0
    # Quality of the header -> field mapping (1.0 when no mapping applies).
    mapping_confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    headers: list[str] | None = None

    @property
    def success_rate(self) -> float:
        attempted = self.total_rows - self.skipped
        if attempted <= 0:
            return 0.0
        return len(self.parts) / attempted


class ParseStats(BaseModel):
    """Summary numbers for one parse call."""

    model_config = ConfigDict(frozen=True)

    method: SourceMethod | None = None
    provider_used: str | None = None
    total_rows: int = 0
    parsed: int = 0
    skipped: int = 0
    failed: int = 0
    flagged_for_review: int = 0
    average_confidence: float = 0.0
    processing_time_ms: float = 0.0
    cache_hit: bool = False
    degraded: bool = False


class ParseOutcome(BaseModel):
    """Return value of ``IntakePipeline.parse``."""

    model_config = ConfigDict(frozen=True)

    parts: list[PartDraft] = Field(default_factory=list)
    stats: ParseStats = Field(default_factory=ParseStats)
    row_errors: list[RowError] = Field(default_factory=list)
    session_id: str | None = None
