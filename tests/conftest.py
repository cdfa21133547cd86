"""Shared pytest fixtures for the CutIntake test suite."""

from __future__ import annotations

import asyncio
import io
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from PIL import Image

from src.config.settings import Settings
from src.interfaces.extraction_provider import IExtractionProvider
from src.models.parts import ParseOptions, PartDraft, Provenance, SourceMethod
from src.models.provider import FailureKind, ProviderResult

# ---------------------------------------------------------------------------
# Fake extraction provider
# ---------------------------------------------------------------------------


class FakeExtractionProvider(IExtractionProvider):
    """Scripted provider: each call pops the next scripted result.

    A script entry may be a :class:`ProviderResult`, an exception to raise,
    or an async callable returning a result.  The last entry repeats once
    the script is exhausted.
    """

    def __init__(
        self,
        name: str,
        script: list[Any] | None = None,
        configured: bool = True,
        documents: bool = True,
        delay: float = 0.0,
    ) -> None:
        self._name = name
        self._script = list(script or [])
        self._configured = configured
        self._documents = documents
        self._delay = delay
        self.calls: list[tuple[str, Any]] = []

    async def _next(self, operation: str, payload: Any) -> ProviderResult:
        self.calls.append((operation, payload))
        if self._delay:
            await asyncio.sleep(self._delay)
        entry = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            return await entry()
        return entry

    async def parse_text(self, text: str, options: ParseOptions) -> ProviderResult:
        return await self._next("text", text)

    async def parse_image(self, image_bytes: bytes, options: ParseOptions) -> ProviderResult:
        return await self._next("image", image_bytes)

    async def parse_document(
        self,
        document_bytes: bytes,
        extracted_text: str | None,
        options: ParseOptions,
        page_images: list[bytes] | None = None,
    ) -> ProviderResult:
        return await self._next("document", extracted_text)

    def is_configured(self) -> bool:
        return self._configured

    def get_provider_name(self) -> str:
        return self._name

    def supports_documents(self) -> bool:
        return self._documents


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _part(**overrides: Any) -> PartDraft:
    provenance = overrides.pop(
        "provenance",
        Provenance(
            method=overrides.pop("method", SourceMethod.AI),
            confidence=overrides.pop("confidence", 0.9),
            field_confidence=overrides.pop("field_confidence", {}),
            provider_name=overrides.pop("provider_name", None),
        ),
    )
    values: dict[str, Any] = {
        "quantity": 1,
        "length_mm": 600.0,
        "width_mm": 400.0,
        "thickness_mm": 18.0,
        "material_ref": "default",
        "provenance": provenance,
    }
    values.update(overrides)
    return PartDraft(**values)


@pytest.fixture
def make_part() -> Callable[..., PartDraft]:
    """Return a PartDraft factory with sensible defaults."""
    return _part


@pytest.fixture
def make_result() -> Callable[..., ProviderResult]:
    """Return a factory for successful or failed ProviderResults."""

    def _result(
        provider: str = "anthropic",
        parts: int = 1,
        confidence: float = 0.9,
        failure: FailureKind | None = None,
        error: str = "boom",
    ) -> ProviderResult:
        if failure is not None:
            return ProviderResult.failed(provider, error, failure)
        drafts = [
            _part(length_mm=600.0 + i, confidence=confidence, provider_name=provider) for i in range(parts)
        ]
        return ProviderResult(
            parts=drafts,
            success=bool(drafts),
            provider_name=provider,
            total_confidence=confidence if drafts else 0.0,
            processing_time_ms=120.0,
            errors=[] if drafts else ["No parts found in response"],
            failure_kind=FailureKind.NONE if drafts else FailureKind.REJECTION,
        )

    return _result


@pytest.fixture
def fake_provider() -> type[FakeExtractionProvider]:
    """Return the scripted fake provider class."""
    return FakeExtractionProvider


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    """Build Settings that ignore the developer's .env file."""

    def _settings(**overrides: Any) -> Settings:
        values: dict[str, Any] = {"anthropic_api_key": "", "openai_api_key": "", "openai_base_url": ""}
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _settings


@pytest.fixture
def options() -> ParseOptions:
    return ParseOptions()


# ---------------------------------------------------------------------------
# Binary fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def png_bytes() -> bytes:
    """A small valid PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (64, 48), color=(255, 255, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def xlsx_bytes() -> bytes:
    """A workbook with a header row and three parts."""
    from openpyxl import Workbook

    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Part", "Length", "Width", "Qty", "Material"])
    sheet.append(["Side", 720, 560, 2, "White"])
    sheet.append(["Shelf", 560, 300, 4, "White"])
    sheet.append(["Back", 720, 500, 1, "MDF"])
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
