"""Abstract base class for AI extraction providers.

Defines the contract every extraction backend implements: turn pasted
text, a photo of a cut list, or a PDF into part records.  Implementations
wrap the Anthropic Messages API or an OpenAI-compatible chat API.  The
orchestrator only ever holds :class:`IExtractionProvider` references, so
tests substitute fakes without touching an SDK.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.models.parts import ParseOptions
from src.models.provider import ProviderResult


# Concrete implementations: AnthropicExtractionProvider, OpenAIExtractionProvider
# Located in: src/providers/extraction/
class IExtractionProvider(ABC):
    """Contract for AI part-extraction services.

    The three ``parse_*`` methods never raise for provider-side failures.
    Network errors, rate limits, refusals and unparseable bodies all come
    back as ``ProviderResult(success=False, errors=[...])`` with a
    ``failure_kind`` the orchestrator uses to decide between retry and
    escalation.
    """

    @abstractmethod
    async def parse_text(self, text: str, options: ParseOptions) -> ProviderResult:
        """Extract parts from free text or tabular text.

        Parameters
        ----------
        text:
            The cut list as text (already normalized).
        options:
            Caller options; units and defaults are passed to the model.
        """

    @abstractmethod
    async def parse_image(self, image_bytes: bytes, options: ParseOptions) -> ProviderResult:
        """Extract parts from a photo or scan of a cut list.

        Parameters
        ----------
        image_bytes:
            PNG, JPEG, WEBP or GIF bytes.
        options:
            Caller options.
        """

    @abstractmethod
    async def parse_document(
        self,
        document_bytes: bytes,
        extracted_text: str | None,
        options: ParseOptions,
        page_images: list[bytes] | None = None,
    ) -> ProviderResult:
        """Extract parts from a PDF.

        Uses *extracted_text* when the PDF has a text layer; otherwise
        sends the rendered *page_images* through the vision path.
        """

    @abstractmethod
    def is_configured(self) -> bool:
        """Return ``True`` if credentials are set.

        Unconfigured providers are skipped by the orchestrator without any
        network call.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return the identifier used in logs, stats and progress messages."""

    @abstractmethod
    def supports_documents(self) -> bool:
        """Return ``True`` if the provider can read scanned pages."""
