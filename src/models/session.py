"""Progress session models.

A :class:`ParseSession` tracks one multi-file parse job.  It holds one
:class:`FileProgress` per input file, each advancing through the stage
machine below::

    QUEUED → UPLOADING → DETECTING → PARSING → (OCR)? → VALIDATING → COMPLETE
                                                                   ↘ FAILED
                                     (any non-terminal stage)      ↘ CANCELLED

Stages only move forward.  FAILED and CANCELLED may be entered from any
non-terminal stage; once a file is terminal it never changes again.  The
ProgressSessionStore enforces these rules; the models only describe them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


class FileStage(str, Enum):  # noqa: UP042
    """Per-file processing stage."""

    QUEUED = "queued"
    UPLOADING = "uploading"
    DETECTING = "detecting"
    PARSING = "parsing"
    OCR = "ocr"
    VALIDATING = "validating"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def ordinal(self) -> int:
        return _STAGE_ORDER[self]

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STAGES

    @property
    def base_percent(self) -> float:
        """Percent a file is shown at when it first enters this stage."""
        return _STAGE_BASE_PERCENT[self]


_STAGE_ORDER: dict[FileStage, int] = {
    FileStage.QUEUED: 0,
    FileStage.UPLOADING: 1,
    FileStage.DETECTING: 2,
    FileStage.PARSING: 3,
    FileStage.OCR: 4,
    FileStage.VALIDATING: 5,
    FileStage.COMPLETE: 6,
    FileStage.FAILED: 6,
    FileStage.CANCELLED: 6,
}

_TERMINAL_STAGES = frozenset({FileStage.COMPLETE, FileStage.FAILED, FileStage.CANCELLED})

_STAGE_BASE_PERCENT: dict[FileStage, float] = {
    FileStage.QUEUED: 0.0,
    FileStage.UPLOADING: 5.0,
    FileStage.DETECTING: 20.0,
    FileStage.PARSING: 40.0,
    FileStage.OCR: 60.0,
    FileStage.VALIDATING: 90.0,
    FileStage.COMPLETE: 100.0,
    FileStage.FAILED: 0.0,
    FileStage.CANCELLED: 0.0,
}


class SessionStatus(str, Enum):  # noqa: UP042
    PENDING = "pending"
    PROCESSING = "processing"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.CANCELLED, SessionStatus.COMPLETED, SessionStatus.FAILED)


class FileProgress(BaseModel):
    """Progress snapshot for one input file."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    name: str
    size_bytes: int | None = None
    stage: FileStage = FileStage.QUEUED
    percent: float = Field(default=0.0, ge=0.0, le=100.0)
    message: str = ""
    result_summary: dict[str, Any] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ParseSession(BaseModel):
    """Ephemeral, process-wide state of one parse job."""

    model_config = ConfigDict(frozen=True)

    id: str
    status: SessionStatus = SessionStatus.PENDING
    files: list[FileProgress] = Field(default_factory=list)
    organization_id: str | None = None
    user_id: str | None = None
    cancellation_requested: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    overall_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    eta_seconds: float | None = None
