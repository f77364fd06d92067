from app.services.llm.base import LLMProvider, LLMProviderError, LLMResponse, MalformedResponse
from app.services.llm.ollama_provider import OllamaProvider
from app.services.llm.openai_provider import OpenAIProvider
from app.services.llm.anthropic_provider import AnthropicProvider

__all__ = [
    "LLMProvider",
    "LLMProviderError",
    "LLMResponse",
    "MalformedResponse",
    "OllamaProvider",
    "OpenAIProvider",
    "AnthropicProvider",
]
