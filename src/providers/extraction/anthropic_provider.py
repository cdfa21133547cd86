"""Anthropic extraction provider adapter.

Wraps the ``anthropic`` async client to implement :class:`IExtractionProvider`
via the Claude Messages API.

Key differences from the OpenAI adapter:
    - System prompt is a separate parameter, not a message in the list
    - Images use the "image" content type with a base64 source
    - Text-less PDFs can be sent whole as a "document" block
    - Response content is a list of blocks; text blocks are joined
"""

from __future__ import annotations

import base64
import time

import anthropic
import structlog

from src.config.settings import Settings
from src.interfaces.extraction_provider import IExtractionProvider
from src.models.parts import ParseOptions
from src.models.provider import AnthropicResponse, FailureKind, ProviderResult
from src.providers.extraction.prompts import (
    EXTRACTION_SYSTEM_PROMPT,
    build_image_prompt,
    build_text_prompt,
)
from src.services.response_normalizer import normalize_provider_response
from src.utils.errors import ProviderRejectionError, ProviderTransientError

logger = structlog.get_logger(logger_name=__name__)

_TRANSIENT_ERRORS = (
    anthropic.APIConnectionError,  # includes APITimeoutError
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)


def _detect_media_type(image_bytes: bytes) -> str:
    """Detect the MIME type of an image from its magic bytes."""
    if image_bytes[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    if image_bytes[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "image/jpeg"


def _image_block(image_bytes: bytes) -> dict:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": _detect_media_type(image_bytes),
            "data": base64.b64encode(image_bytes).decode("utf-8"),
        },
    }


class AnthropicExtractionProvider(IExtractionProvider):
    """Extraction provider backed by the Anthropic Claude API.

    The SDK's own retries are disabled (``max_retries=0``); retry and
    escalation belong to the orchestrator.
    """

    def __init__(
        self,
        settings: Settings,
        material_aliases: dict[str, list[str]] | None = None,
    ) -> None:
        self._api_key = settings.anthropic_api_key
        self._model = settings.anthropic_model
        self._max_tokens = settings.extraction_max_tokens
        self._material_aliases = material_aliases
        self._client = (
            anthropic.AsyncAnthropic(
                api_key=self._api_key,
                timeout=settings.provider_timeout_seconds,
                max_retries=0,
            )
            if self._api_key
            else None
        )

    # ------------------------------------------------------------------
    # IExtractionProvider implementation
    # ------------------------------------------------------------------

    async def parse_text(self, text: str, options: ParseOptions) -> ProviderResult:
        content = [{"type": "text", "text": build_text_prompt(text, options)}]
        return await self._extract(content, options, operation="text")

    async def parse_image(self, image_bytes: bytes, options: ParseOptions) -> ProviderResult:
        """Image block goes before the text prompt in the content array."""
        content = [_image_block(image_bytes), {"type": "text", "text": build_image_prompt(options)}]
        return await self._extract(content, options, operation="image")

    async def parse_document(
        self,
        document_bytes: bytes,
        extracted_text: str | None,
        options: ParseOptions,
        page_images: list[bytes] | None = None,
    ) -> ProviderResult:
        """Text layer first; otherwise rendered pages, otherwise the raw PDF."""
        if extracted_text and extracted_text.strip():
            return await self.parse_text(extracted_text, options)

        if page_images:
            content: list[dict] = [_image_block(page) for page in page_images]
        else:
            content = [
                {
                    "type": "document",
                    "source": {
                        "type": "base64",
                        "media_type": "application/pdf",
                        "data": base64.b64encode(document_bytes).decode("utf-8"),
                    },
                }
            ]
        content.append({"type": "text", "text": build_image_prompt(options, pages=len(page_images or []) or None)})
        return await self._extract(content, options, operation="document")

    def is_configured(self) -> bool:
        """Return ``True`` if an Anthropic API key is configured."""
        return bool(self._api_key)

    def get_provider_name(self) -> str:
        return "anthropic"

    def supports_documents(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _extract(self, content: list[dict], options: ParseOptions, operation: str) -> ProviderResult:
        """Call the API and normalize; every failure becomes a failed result."""
        name = self.get_provider_name()
        if not self.is_configured():
            return ProviderResult.failed(name, "Anthropic API key not configured", FailureKind.UNCONFIGURED)

        started = time.monotonic()
        try:
            response = await self._create(content)
        except ProviderTransientError as exc:
            return ProviderResult.failed(
                name, exc.message, FailureKind.TRANSIENT, (time.monotonic() - started) * 1000
            )
        except ProviderRejectionError as exc:
            return ProviderResult.failed(
                name, exc.message, FailureKind.REJECTION, (time.monotonic() - started) * 1000
            )

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            "anthropic_extraction",
            model=self._model,
            operation=operation,
            stop_reason=response.stop_reason,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            duration_ms=round(elapsed_ms, 1),
        )
        try:
            return normalize_provider_response(response, name, options, elapsed_ms, self._material_aliases)
        except Exception as exc:
            logger.warning("anthropic_response_unusable", operation=operation, error=str(exc))
            return ProviderResult.failed(
                name, f"Unusable response: {exc}", FailureKind.REJECTION, elapsed_ms, raw_response_text=response.text
            )

    async def _create(self, content: list[dict]) -> AnthropicResponse:
        """Issue the Messages API call and wrap SDK errors.

        Raises
        ------
        ProviderTransientError
            Connection problems, timeouts, rate limits and 5xx responses.
        ProviderRejectionError
            Any other API error (bad request, auth, content policy).
        """
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=EXTRACTION_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": content}],
                temperature=0.0,
            )
        except _TRANSIENT_ERRORS as exc:
            raise ProviderTransientError(
                message=f"Anthropic API unavailable: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        except anthropic.APIStatusError as exc:
            if exc.status_code >= 500:
                raise ProviderTransientError(
                    message=f"Anthropic API error {exc.status_code}: {exc}",
                    provider_name=self.get_provider_name(),
                ) from exc
            raise ProviderRejectionError(
                message=f"Anthropic rejected the request ({exc.status_code}): {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        except anthropic.APIError as exc:
            raise ProviderRejectionError(
                message=f"Anthropic API error: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        return AnthropicResponse(
            text_blocks=[block.text for block in response.content if block.type == "text"],
            stop_reason=response.stop_reason,
            input_tokens=response.usage.input_tokens if response.usage else None,
            output_tokens=response.usage.output_tokens if response.usage else None,
        )
