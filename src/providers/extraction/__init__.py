"""Extraction provider adapters.

Two concrete implementations of IExtractionProvider
(src/interfaces/extraction_provider.py):
    - AnthropicExtractionProvider - Claude Messages API (text, images, PDFs)
    - OpenAIExtractionProvider    - chat.completions (also OpenAI-compatible APIs)

main.py builds both and hands them to the ResilientOrchestrator in
``provider_priority`` order.  Providers without an API key stay in the
list but report is_configured() == False and are skipped.
"""

from src.providers.extraction.anthropic_provider import AnthropicExtractionProvider
from src.providers.extraction.openai_provider import OpenAIExtractionProvider

__all__ = ["AnthropicExtractionProvider", "OpenAIExtractionProvider"]
