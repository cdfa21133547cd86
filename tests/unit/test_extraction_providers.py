"""Unit tests for the extraction provider adapters (Anthropic, OpenAI)."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import openai
import pytest

from src.models.parts import ParseOptions, SourceMethod
from src.models.provider import FailureKind
from src.providers.extraction.anthropic_provider import AnthropicExtractionProvider
from src.providers.extraction.openai_provider import MAX_DOCUMENT_PAGES, OpenAIExtractionProvider

_PARTS_JSON = '[{"row": 1, "label": "Side", "length": 720, "width": 560, "quantity": 2, "confidence": 0.9}]'
_REQUEST = httpx.Request("POST", "https://api.example.test/v1")


def _anthropic_message(text: str, stop_reason: str = "end_turn") -> SimpleNamespace:
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=120, output_tokens=40),
    )


def _openai_completion(text: str | None, finish_reason: str = "stop") -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text), finish_reason=finish_reason)],
        usage=SimpleNamespace(total_tokens=160),
    )


# ======================================================================
# Anthropic
# ======================================================================


class TestAnthropicExtractionProvider:
    @pytest.fixture()
    def client(self) -> MagicMock:
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=_anthropic_message(_PARTS_JSON))
        return client

    @pytest.fixture()
    def provider(self, settings_factory, client: MagicMock) -> AnthropicExtractionProvider:
        with patch(
            "src.providers.extraction.anthropic_provider.anthropic.AsyncAnthropic",
            return_value=client,
        ):
            return AnthropicExtractionProvider(settings_factory(anthropic_api_key="test-key"))

    def test_unconfigured_provider_builds_no_client(self, settings_factory) -> None:
        with patch("src.providers.extraction.anthropic_provider.anthropic.AsyncAnthropic") as factory:
            provider = AnthropicExtractionProvider(settings_factory())
        factory.assert_not_called()
        assert provider.is_configured() is False
        assert provider.get_provider_name() == "anthropic"
        assert provider.supports_documents() is True

    @pytest.mark.asyncio
    async def test_unconfigured_call_fails_without_network(self, settings_factory, options: ParseOptions) -> None:
        provider = AnthropicExtractionProvider(settings_factory())
        result = await provider.parse_text("Side 720x560", options)
        assert result.success is False
        assert result.failure_kind == FailureKind.UNCONFIGURED

    @pytest.mark.asyncio
    async def test_parse_text(self, provider, client: MagicMock, options: ParseOptions) -> None:
        result = await provider.parse_text("Side 720x560 qty 2", options)

        assert result.success is True
        assert result.provider_name == "anthropic"
        part = result.parts[0]
        assert (part.length_mm, part.width_mm, part.quantity) == (720.0, 560.0, 2)
        assert part.provenance.method == SourceMethod.AI
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["temperature"] == 0.0
        assert "Side 720x560 qty 2" in kwargs["messages"][0]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_parse_image_sends_image_block_first(
        self, provider, client: MagicMock, options: ParseOptions, png_bytes: bytes
    ) -> None:
        await provider.parse_image(png_bytes, options)
        content = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[0]["source"]["media_type"] == "image/png"
        assert content[-1]["type"] == "text"

    @pytest.mark.asyncio
    async def test_document_with_text_layer_uses_text(
        self, provider, client: MagicMock, options: ParseOptions
    ) -> None:
        await provider.parse_document(b"%PDF-", "Side 720x560", options)
        content = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert [block["type"] for block in content] == ["text"]

    @pytest.mark.asyncio
    async def test_scanned_document_without_pages_sends_pdf(
        self, provider, client: MagicMock, options: ParseOptions
    ) -> None:
        await provider.parse_document(b"%PDF-1.7", None, options)
        content = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert content[0]["type"] == "document"
        assert content[0]["source"]["media_type"] == "application/pdf"

    @pytest.mark.asyncio
    async def test_truncated_response_flagged(self, provider, client: MagicMock, options: ParseOptions) -> None:
        client.messages.create.return_value = _anthropic_message(
            '[{"l": 720, "w": 560, "q": 2}, {"l": 300, "w"', stop_reason="max_tokens"
        )
        result = await provider.parse_text("list", options)
        assert result.truncated is True
        assert result.success is True
        assert len(result.parts) == 1

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, provider, client: MagicMock, options: ParseOptions) -> None:
        client.messages.create.side_effect = anthropic.APIConnectionError(request=_REQUEST)
        result = await provider.parse_text("list", options)
        assert result.failure_kind == FailureKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, provider, client: MagicMock, options: ParseOptions) -> None:
        client.messages.create.side_effect = anthropic.RateLimitError(
            "slow down", response=httpx.Response(429, request=_REQUEST), body=None
        )
        result = await provider.parse_text("list", options)
        assert result.failure_kind == FailureKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_bad_request_is_rejection(self, provider, client: MagicMock, options: ParseOptions) -> None:
        client.messages.create.side_effect = anthropic.BadRequestError(
            "bad", response=httpx.Response(400, request=_REQUEST), body=None
        )
        result = await provider.parse_text("list", options)
        assert result.failure_kind == FailureKind.REJECTION

    @pytest.mark.asyncio
    async def test_prose_only_response_is_rejection(
        self, provider, client: MagicMock, options: ParseOptions
    ) -> None:
        client.messages.create.return_value = _anthropic_message("I could not find a cut list.")
        result = await provider.parse_text("list", options)
        assert result.success is False
        assert result.failure_kind == FailureKind.REJECTION

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            '[{"l": 600, "w": 400, "q": NaN}]',
            '[{"l": 600, "w": 400, "t": NaN}]',
            '[{"l": Infinity, "w": 400}]',
        ],
    )
    async def test_non_finite_values_are_rejection(
        self, provider, client: MagicMock, options: ParseOptions, body: str
    ) -> None:
        client.messages.create.return_value = _anthropic_message(body)
        result = await provider.parse_text("list", options)
        assert result.success is False
        assert result.failure_kind == FailureKind.REJECTION
        assert "not a finite number" in result.errors[0]

    @pytest.mark.asyncio
    async def test_scalar_field_confidence_ignored(
        self, provider, client: MagicMock, options: ParseOptions
    ) -> None:
        client.messages.create.return_value = _anthropic_message(
            '[{"l": 600, "w": 400, "q": 2, "fieldConfidence": 0.9}]'
        )
        result = await provider.parse_text("list", options)
        assert result.success is True
        assert result.parts[0].provenance.field_confidence == {}

    @pytest.mark.asyncio
    async def test_normalizer_crash_becomes_rejection(
        self, provider, client: MagicMock, options: ParseOptions
    ) -> None:
        with patch(
            "src.providers.extraction.anthropic_provider.normalize_provider_response",
            side_effect=RuntimeError("unexpected shape"),
        ):
            result = await provider.parse_text("list", options)
        assert result.success is False
        assert result.failure_kind == FailureKind.REJECTION
        assert result.errors == ["Unusable response: unexpected shape"]


# ======================================================================
# OpenAI
# ======================================================================


class TestOpenAIExtractionProvider:
    @pytest.fixture()
    def client(self) -> MagicMock:
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=_openai_completion(_PARTS_JSON))
        return client

    def _provider(self, settings_factory, client: MagicMock, **overrides) -> OpenAIExtractionProvider:
        values = {"openai_api_key": "sk-test"}
        values.update(overrides)
        with patch("src.providers.extraction.openai_provider.openai.AsyncOpenAI", return_value=client):
            return OpenAIExtractionProvider(settings_factory(**values))

    def test_unconfigured_provider_builds_no_client(self, settings_factory) -> None:
        with patch("src.providers.extraction.openai_provider.openai.AsyncOpenAI") as factory:
            provider = OpenAIExtractionProvider(settings_factory())
        factory.assert_not_called()
        assert provider.is_configured() is False

    def test_compatible_endpoint_naming_and_vision(self, settings_factory, client: MagicMock) -> None:
        provider = self._provider(settings_factory, client, openai_base_url="https://api.together.xyz/v1")
        assert provider.get_provider_name() == "openai-compatible"
        assert provider.supports_documents() is False

        vision = self._provider(
            settings_factory,
            client,
            openai_base_url="https://api.together.xyz/v1",
            openai_vision_model="llama-vision",
        )
        assert vision.supports_documents() is True

    @pytest.mark.asyncio
    async def test_parse_text(self, settings_factory, client: MagicMock, options: ParseOptions) -> None:
        provider = self._provider(settings_factory, client)
        result = await provider.parse_text("Side 720x560 qty 2", options)

        assert result.success is True
        assert result.provider_name == "openai"
        assert client.chat.completions.create.call_args.kwargs["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_parse_image_uses_vision_model(
        self, settings_factory, client: MagicMock, options: ParseOptions, png_bytes: bytes
    ) -> None:
        provider = self._provider(settings_factory, client)
        await provider.parse_image(png_bytes, options)
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        user_content = kwargs["messages"][1]["content"]
        assert user_content[1]["image_url"]["url"].startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_scanned_document_pages_capped(
        self, settings_factory, client: MagicMock, options: ParseOptions, png_bytes: bytes
    ) -> None:
        provider = self._provider(settings_factory, client)
        await provider.parse_document(b"%PDF-", None, options, page_images=[png_bytes] * 6)
        user_content = client.chat.completions.create.call_args.kwargs["messages"][1]["content"]
        assert sum(1 for block in user_content if block["type"] == "image_url") == MAX_DOCUMENT_PAGES

    @pytest.mark.asyncio
    async def test_scanned_document_without_pages(
        self, settings_factory, client: MagicMock, options: ParseOptions
    ) -> None:
        provider = self._provider(settings_factory, client)
        result = await provider.parse_document(b"%PDF-", None, options)
        assert result.failure_kind == FailureKind.REJECTION
        client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_length_finish_reason_is_truncation(
        self, settings_factory, client: MagicMock, options: ParseOptions
    ) -> None:
        client.chat.completions.create.return_value = _openai_completion(_PARTS_JSON, finish_reason="length")
        provider = self._provider(settings_factory, client)
        result = await provider.parse_text("list", options)
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_no_choices_is_rejection(self, settings_factory, client: MagicMock, options: ParseOptions) -> None:
        client.chat.completions.create.return_value = SimpleNamespace(choices=[], usage=None)
        provider = self._provider(settings_factory, client)
        result = await provider.parse_text("list", options)
        assert result.failure_kind == FailureKind.REJECTION

    @pytest.mark.asyncio
    async def test_errors_classified(self, settings_factory, client: MagicMock, options: ParseOptions) -> None:
        provider = self._provider(settings_factory, client)

        client.chat.completions.create.side_effect = openai.APIConnectionError(request=_REQUEST)
        assert (await provider.parse_text("list", options)).failure_kind == FailureKind.TRANSIENT

        client.chat.completions.create.side_effect = openai.BadRequestError(
            "bad", response=httpx.Response(400, request=_REQUEST), body=None
        )
        assert (await provider.parse_text("list", options)).failure_kind == FailureKind.REJECTION

    @pytest.mark.asyncio
    async def test_non_finite_quantity_is_rejection(
        self, settings_factory, client: MagicMock, options: ParseOptions
    ) -> None:
        client.chat.completions.create.return_value = _openai_completion('[{"l": 600, "w": 400, "q": NaN}]')
        provider = self._provider(settings_factory, client)
        result = await provider.parse_text("list", options)
        assert result.success is False
        assert result.failure_kind == FailureKind.REJECTION
        assert result.errors == ["Part 1: quantity is not a finite number"]
