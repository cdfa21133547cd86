"""Extraction provider models.

Each provider SDK answers in its own shape.  The providers wrap that shape
in a family-tagged :data:`ProviderResponse` (one model per SDK family,
discriminated on ``kind``), and the gateway boundary
(:mod:`src.services.response_normalizer`) turns it into the canonical
:class:`ProviderResult` that the rest of the pipeline consumes.  Nothing
downstream of the gateway ever sees a raw SDK object.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from src.models.parts import PartDraft


class FailureKind(str, Enum):  # noqa: UP042
    """Why a provider call did not succeed; drives the orchestrator's reaction."""

    NONE = "none"
    TRANSIENT = "transient"          # retry once, then escalate
    REJECTION = "rejection"          # escalate immediately
    UNCONFIGURED = "unconfigured"    # never called


# ---------------------------------------------------------------------------
# Raw responses, one per provider family
# ---------------------------------------------------------------------------
class AnthropicResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["anthropic"] = "anthropic"
    text_blocks: list[str] = Field(default_factory=list)
    stop_reason: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None

    @property
    def text(self) -> str:
        return "\n".join(self.text_blocks)

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "max_tokens"


class OpenAIResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["openai"] = "openai"
    content: str | None = None
    finish_reason: str | None = None
    total_tokens: int | None = None

    @property
    def text(self) -> str:
        return self.content or ""

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


ProviderResponse = Annotated[
    Union[AnthropicResponse, OpenAIResponse],  # noqa: UP007
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Canonical result
# ---------------------------------------------------------------------------
class ProviderResult(BaseModel):
    """Normalized output of one extraction call."""

    model_config = ConfigDict(frozen=True)

    parts: list[PartDraft] = Field(default_factory=list)
    raw_response_text: str = ""
    success: bool = False
    errors: list[str] = Field(default_factory=list)
    processing_time_ms: float = 0.0
    provider_name: str | None = None
    total_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    failure_kind: FailureKind = FailureKind.NONE
    truncated: bool = False

    @classmethod
    def failed(
        cls,
        provider_name: str,
        error: str,
        failure_kind: FailureKind,
        processing_time_ms: float = 0.0,
        raw_response_text: str = "",
    ) -> ProviderResult:
        """Build an unsuccessful result carrying a single error message."""
        return cls(
            success=False,
            errors=[error],
            provider_name=provider_name,
            failure_kind=failure_kind,
            processing_time_ms=processing_time_ms,
            raw_response_text=raw_response_text,
        )


class CacheEntry(BaseModel):
    """One memoized provider result.  ``hit_count`` is updated in place."""

    fingerprint: str
    result: ProviderResult
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(tz=timezone.utc)  # noqa: UP017
    )
    hit_count: int = 0
    # Time the original call took; credited to the stats on every hit.
    saved_time_ms: float = 0.0
