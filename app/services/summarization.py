import json
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from app.services.llm import (
    AnthropicProvider,
    LLMProvider,
    LLMProviderError,
    MalformedResponse,
    OllamaProvider,
    OpenAIProvider,
)
from app.services.usage import TokenUsage

_DEFAULT_MODEL = "openai:gpt-4o-mini"


@dataclass
class NoteSections:
    introduction: list[str] = field(default_factory=list)
    key_concepts: list[str] = field(default_factory=list)
    explanations: list[str] = field(default_factory=list)
    definitions: list[str] = field(default_factory=list)
    summary: list[str] = field(default_factory=list)
    exam_questions: list[str] = field(default_factory=list)

    # wire key -> attribute, in document order
    SECTIONS = (
        ("introduction", "introduction"),
        ("keyConcepts", "key_concepts"),
        ("explanations", "explanations"),
        ("definitions", "definitions"),
        ("summary", "summary"),
        ("examQuestions", "exam_questions"),
    )

    @classmethod
    def from_dict(cls, data: dict) -> "NoteSections":
        values = {}
        for wire_key, attr in cls.SECTIONS:
            raw = data.get(wire_key, data.get(attr))
            values[attr] = _as_bullets(raw)
        return cls(**values)

    @classmethod
    def fallback(cls, reason: str) -> "NoteSections":
        return cls(introduction=[f"Transcript saved but AI notes generation failed: {reason}"])

    def to_dict(self) -> dict:
        return {wire_key: list(getattr(self, attr)) for wire_key, attr in self.SECTIONS}


def _as_bullets(raw) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [line.strip().lstrip("-•* ").strip() for line in raw.splitlines() if line.strip()]
    if isinstance(raw, list):
        return [str(item).strip() for item in raw if str(item).strip()]
    return [str(raw)]


@dataclass
class SummaryResult:
    refined_transcript: str
    notes: NoteSections
    token_usage: Optional[TokenUsage] = None


class SummarizationService:
    """Class-notes generation using the configured model.

    Reads model selection from config.json on every call:
    - models.selected_model: format "provider:model_id" (e.g., "openai:gpt-4o-mini")
    - providers.<provider>: contains api_key and base_url for each provider
    If nothing is selected, OPENAI_API_KEY from the environment enables the
    default model.
    """

    def __init__(self, config_path: str) -> None:
        self._config_path = config_path
        self._logger = logging.getLogger("relay.summarization")

    def _read_config(self) -> dict:
        """Read config from file, returning empty dict if not found."""
        if not os.path.exists(self._config_path):
            return {}
        with open(self._config_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _get_selected_model(self) -> tuple[str, str]:
        config = self._read_config()
        selected = config.get("models", {}).get("selected_model", "") or _DEFAULT_MODEL

        # Format is "provider:model_id" (e.g., "openai:gpt-4o")
        if ":" not in selected:
            raise LLMProviderError(
                f"Invalid model format '{selected}'. Expected 'provider:model_id'."
            )

        provider, model_id = selected.split(":", 1)
        return provider.lower(), model_id

    def _get_provider_config(self, provider_name: str) -> dict:
        """Get provider configuration (api_key, base_url) from config."""
        config = self._read_config()
        providers = config.get("providers", {})
        return providers.get(provider_name, {})

    def _get_provider(self) -> LLMProvider:
        provider_name, model_id = self._get_selected_model()
        provider_config = self._get_provider_config(provider_name)
        api_key = provider_config.get("api_key", "")
        base_url = provider_config.get("base_url", "")

        if provider_name == "ollama":
            return OllamaProvider(base_url=base_url or "http://127.0.0.1:11434", model=model_id)

        if provider_name == "openai":
            api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
            if not api_key:
                raise LLMProviderError("OpenAI API key not configured")
            return OpenAIProvider(api_key=api_key, model=model_id, base_url=base_url or None)

        if provider_name == "anthropic":
            api_key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
            if not api_key:
                raise LLMProviderError("Anthropic API key not configured")
            return AnthropicProvider(api_key=api_key, model=model_id)

        if provider_name == "lmstudio":
            return OpenAIProvider(
                api_key="lmstudio",
                model=model_id,
                base_url=base_url or "http://127.0.0.1:1234",
            )

        raise LLMProviderError(f"Unknown provider: {provider_name}")

    def selected_provider_name(self) -> Optional[str]:
        try:
            return self._get_selected_model()[0]
        except (LLMProviderError, OSError, json.JSONDecodeError):
            return None

    def summarize(
        self,
        transcript: str,
        label: str,
        identity: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> SummaryResult:
        """Refine the transcript and produce the six note sections.

        Raises LLMProviderError (MalformedResponse carries token usage) on any
        failure; the caller substitutes fallback notes.
        """
        if not transcript.strip():
            raise LLMProviderError("Transcript is empty")
        provider = self._get_provider()
        self._logger.info(
            "Class notes using provider=%s model=%s session=%s chars=%d",
            provider.__class__.__name__,
            provider.model,
            session_id,
            len(transcript),
        )

        parsed, usage = provider.generate_class_notes(
            transcript,
            label,
            user=f"user_{identity}" if identity else None,
        )
        notes_raw = parsed.get("notes")
        if not isinstance(notes_raw, dict):
            raise MalformedResponse("Response is missing the notes object", usage)

        refined = parsed.get("refinedTranscript")
        if not isinstance(refined, str) or not refined.strip():
            refined = transcript

        return SummaryResult(
            refined_transcript=refined,
            notes=NoteSections.from_dict(notes_raw),
            token_usage=usage,
        )
