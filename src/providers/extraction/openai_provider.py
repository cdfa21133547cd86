"""OpenAI-compatible extraction provider adapter.

Wraps the ``openai`` async client to implement :class:`IExtractionProvider`.
When a custom ``openai_base_url`` is configured (TogetherAI, Fireworks,
Groq ...), the client points at that URL instead of the default OpenAI
endpoint, and vision is only assumed when ``openai_vision_model`` is set.
"""

from __future__ import annotations

import base64
import time

import openai
import structlog

from src.config.settings import Settings
from src.interfaces.extraction_provider import IExtractionProvider
from src.models.parts import ParseOptions
from src.models.provider import FailureKind, OpenAIResponse, ProviderResult
from src.providers.extraction.prompts import (
    EXTRACTION_SYSTEM_PROMPT,
    build_image_prompt,
    build_text_prompt,
)
from src.services.response_normalizer import normalize_provider_response
from src.utils.errors import ProviderRejectionError, ProviderTransientError

logger = structlog.get_logger(logger_name=__name__)

# Scanned PDFs: pages sent per vision request.
MAX_DOCUMENT_PAGES = 4

_TRANSIENT_ERRORS = (
    openai.APIConnectionError,  # includes APITimeoutError
    openai.RateLimitError,
    openai.InternalServerError,
)


def _detect_media_type(image_bytes: bytes) -> str:
    """Detect the MIME type of an image from its magic bytes.

    PNG starts with: 89 50 4E 47 0D 0A 1A 0A
    WEBP starts with: RIFF....WEBP
    GIF starts with: GIF87a / GIF89a
    JPEG starts with: FF D8
    """
    if image_bytes[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    if image_bytes[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "image/jpeg"


def _image_part(image_bytes: bytes) -> dict:
    b64 = base64.b64encode(image_bytes).decode("utf-8")
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{_detect_media_type(image_bytes)};base64,{b64}"},
    }


class OpenAIExtractionProvider(IExtractionProvider):
    """Extraction provider backed by an OpenAI-compatible chat API.

    Uses ``gpt-4o-mini`` for text and ``gpt-4o`` for images by default;
    both can be overridden for compatible endpoints.
    """

    def __init__(
        self,
        settings: Settings,
        material_aliases: dict[str, list[str]] | None = None,
    ) -> None:
        self._api_key = settings.openai_api_key
        self._max_tokens = settings.extraction_max_tokens
        self._material_aliases = material_aliases
        self._text_model = settings.openai_text_model or "gpt-4o-mini"
        self._vision_model = settings.openai_vision_model or "gpt-4o"
        self._has_vision = bool(settings.openai_vision_model) or not settings.openai_base_url
        self._provider_label = "openai-compatible" if settings.openai_base_url else "openai"

        client_kwargs: dict = {
            "api_key": self._api_key,
            "timeout": openai.Timeout(settings.provider_timeout_seconds, connect=5.0),
            "max_retries": 0,
        }
        if settings.openai_base_url:
            client_kwargs["base_url"] = settings.openai_base_url
        self._client = openai.AsyncOpenAI(**client_kwargs) if self._api_key else None

    # ------------------------------------------------------------------
    # IExtractionProvider implementation
    # ------------------------------------------------------------------

    async def parse_text(self, text: str, options: ParseOptions) -> ProviderResult:
        messages = [
            {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
            {"role": "user", "content": build_text_prompt(text, options)},
        ]
        return await self._extract(messages, self._text_model, options, operation="text")

    async def parse_image(self, image_bytes: bytes, options: ParseOptions) -> ProviderResult:
        return await self._extract_images([image_bytes], options, operation="image")

    async def parse_document(
        self,
        document_bytes: bytes,
        extracted_text: str | None,
        options: ParseOptions,
        page_images: list[bytes] | None = None,
    ) -> ProviderResult:
        """Text layer first; otherwise up to four rendered pages via vision."""
        if extracted_text and extracted_text.strip():
            return await self.parse_text(extracted_text, options)
        if not page_images:
            return ProviderResult.failed(
                self.get_provider_name(),
                "Scanned PDF has no rendered pages to send",
                FailureKind.REJECTION,
            )
        if len(page_images) > MAX_DOCUMENT_PAGES:
            logger.warning(
                "openai_document_pages_capped",
                pages=len(page_images),
                sent=MAX_DOCUMENT_PAGES,
            )
        return await self._extract_images(page_images[:MAX_DOCUMENT_PAGES], options, operation="document")

    def is_configured(self) -> bool:
        """Return ``True`` if an API key is configured (doesn't verify it works)."""
        return bool(self._api_key)

    def get_provider_name(self) -> str:
        """Return 'openai' or 'openai-compatible' depending on configuration."""
        return self._provider_label

    def supports_documents(self) -> bool:
        return self._has_vision

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _extract_images(self, images: list[bytes], options: ParseOptions, operation: str) -> ProviderResult:
        if not self._has_vision:
            return ProviderResult.failed(
                self.get_provider_name(),
                "Vision not supported by this provider configuration",
                FailureKind.REJECTION,
            )
        pages = len(images) if len(images) > 1 else None
        content: list[dict] = [{"type": "text", "text": build_image_prompt(options, pages=pages)}]
        content.extend(_image_part(image) for image in images)
        messages = [
            {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ]
        return await self._extract(messages, self._vision_model, options, operation=operation)

    async def _extract(
        self,
        messages: list[dict],
        model: str,
        options: ParseOptions,
        operation: str,
    ) -> ProviderResult:
        """Call the API and normalize; every failure becomes a failed result."""
        name = self.get_provider_name()
        if not self.is_configured():
            return ProviderResult.failed(name, "OpenAI API key not configured", FailureKind.UNCONFIGURED)

        started = time.monotonic()
        try:
            response = await self._create(messages, model)
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
            "openai_extraction",
            model=model,
            provider=self._provider_label,
            operation=operation,
            finish_reason=response.finish_reason,
            tokens=response.total_tokens,
            duration_ms=round(elapsed_ms, 1),
        )
        try:
            return normalize_provider_response(response, name, options, elapsed_ms, self._material_aliases)
        except Exception as exc:
            logger.warning("openai_response_unusable", operation=operation, error=str(exc))
            return ProviderResult.failed(
                name, f"Unusable response: {exc}", FailureKind.REJECTION, elapsed_ms, raw_response_text=response.text
            )

    async def _create(self, messages: list[dict], model: str) -> OpenAIResponse:
        """Issue the chat completion and wrap SDK errors.

        Raises
        ------
        ProviderTransientError
            Connection problems, timeouts, rate limits and 5xx responses.
        ProviderRejectionError
            Any other API error.
        """
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=0.0,
                max_tokens=self._max_tokens,
            )
        except _TRANSIENT_ERRORS as exc:
            raise ProviderTransientError(
                message=f"{self._provider_label} unavailable: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        except openai.APIStatusError as exc:
            if exc.status_code >= 500:
                raise ProviderTransientError(
                    message=f"{self._provider_label} API error {exc.status_code}: {exc}",
                    provider_name=self.get_provider_name(),
                ) from exc
            raise ProviderRejectionError(
                message=f"{self._provider_label} rejected the request ({exc.status_code}): {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        except openai.APIError as exc:
            raise ProviderRejectionError(
                message=f"{self._provider_label} API error: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        if not response.choices:
            raise ProviderRejectionError(
                message=f"{self._provider_label} returned no choices",
                provider_name=self.get_provider_name(),
            )
        choice = response.choices[0]
        return OpenAIResponse(
            content=choice.message.content,
            finish_reason=choice.finish_reason,
            total_tokens=response.usage.total_tokens if response.usage else None,
        )
