"""Pydantic request/response schemas for the CutIntake API.

Defines the public contract for the REST endpoints: text and file
parsing, progress polling, cancellation, metrics and health.

# ─── HOW SCHEMAS WORK ─────────────────────────────────────────────────
#
# FastAPI validates request bodies against these models (invalid input
# gets a 422 with details), serializes responses through them, and
# builds the OpenAPI docs at /docs from them.
#
# Convention: request schemas end with "Request", response schemas end
# with "Response".  Domain models (PartDraft, FileProgress ...) are
# reused directly where the API exposes them unchanged.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.models.parts import (
    ConfidenceLevel,
    DimOrderHint,
    ParseOptions,
    ParseStats,
    PartDraft,
    RowError,
    Units,
)
from src.models.session import FileProgress, SessionStatus


class ParseOptionsInput(BaseModel):
    """Caller options; every field is optional and falls back to server defaults."""

    default_material_id: str | None = None
    default_thickness_mm: float | None = Field(default=None, gt=0)
    dim_order_hint: DimOrderHint = DimOrderHint.INFER
    units: Units = Units.MM
    use_ai: bool = True
    confidence_level: ConfidenceLevel = ConfidenceLevel.BALANCED
    track_progress: bool = True

    def to_options(self, default_material_id: str, default_thickness_mm: float) -> ParseOptions:
        return ParseOptions(
            default_material_id=self.default_material_id or default_material_id,
            default_thickness_mm=self.default_thickness_mm or default_thickness_mm,
            dim_order_hint=self.dim_order_hint,
            units=self.units,
            use_ai=self.use_ai,
            confidence_level=self.confidence_level,
            track_progress=self.track_progress,
        )


class ParseTextRequest(BaseModel):
    """Pasted cut list text or a dictation transcript."""

    text: str = Field(..., min_length=1, max_length=200_000)
    voice: bool = Field(default=False, description="Treat the text as a spoken transcript")
    options: ParseOptionsInput = Field(default_factory=ParseOptionsInput)
    organization_id: str | None = None
    user_id: str | None = None


class ParseUrlRequest(BaseModel):
    """An input held in object storage, referenced by a signed URL."""

    url: str = Field(..., min_length=8)
    filename: str | None = None
    options: ParseOptionsInput = Field(default_factory=ParseOptionsInput)
    organization_id: str | None = None
    user_id: str | None = None


class ParseResponse(BaseModel):
    """Parsed parts plus per-row errors and stats."""

    session_id: str | None = None
    parts: list[PartDraft]
    stats: ParseStats
    row_errors: list[RowError] = Field(default_factory=list)


class ParseAcceptedResponse(BaseModel):
    """Returned when a job was queued to run in the background."""

    session_id: str
    status: SessionStatus = SessionStatus.PENDING


class SessionProgressResponse(BaseModel):
    """Polling view of a parse session."""

    session_id: str
    status: SessionStatus
    overall_percent: float
    eta_seconds: float | None = None
    cancellation_requested: bool = False
    files: list[FileProgress]
    updated_at: datetime


class CancelResponse(BaseModel):
    session_id: str
    accepted: bool


class MetricsResponse(BaseModel):
    """Cache statistics and job performance counters."""

    cache_stats: dict[str, Any]
    performance_metrics: dict[str, Any]


class HealthResponse(BaseModel):
    """Application health check response."""

    status: str
    version: str
    providers: dict[str, Any]


class ErrorResponse(BaseModel):
    """Standard error response body."""

    error: str
    detail: str | None = None
