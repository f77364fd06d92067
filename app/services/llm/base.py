from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from app.services.usage import TokenUsage


class LLMProviderError(RuntimeError):
    pass


class MalformedResponse(LLMProviderError):
    """The model answered but not with the JSON we asked for.

    Carries the token usage so the call is still billed.
    """

    def __init__(self, message: str, usage: Optional[TokenUsage] = None) -> None:
        super().__init__(message)
        self.usage = usage


@dataclass(frozen=True)
class LLMResponse:
    text: str
    usage: Optional[TokenUsage] = None


class LLMProvider(ABC):
    @property
    @abstractmethod
    def model(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def generate_class_notes(
        self, transcript: str, class_title: str, user: Optional[str] = None
    ) -> tuple[dict, Optional[TokenUsage]]:
        """Return the parsed notes JSON and the token usage of the call."""
        raise NotImplementedError

    @abstractmethod
    def prompt(self, prompt: str) -> LLMResponse:
        """Send a raw prompt and return the response text."""
        raise NotImplementedError


class BaseLLMProvider(LLMProvider):
    """Base implementation with shared prompts, JSON parsing, and response handling.

    Subclasses only need to implement _call_api() for their specific API client.
    """

    # Shared prompts - single source of truth
    PROMPTS = {
        "class_notes_system": (
            "You are an academic note generator. Be accurate, concise, and structured. "
            "If speaker labels are inconsistent, fix them based on context. "
            'Prefer labeling the main lecturer as "Professor".'
        ),
        "class_notes": (
            "Refine speaker labels handling overlaps by context. "
            "Transcript (may contain overlaps):\n\n{transcript}\n\n"
            'Then generate structured notes for the class "{class_title}" with these sections:\n'
            "- Introduction (bullet points)\n"
            "- Key Concepts (bullet points)\n"
            "- Explanations (bullet points)\n"
            "- Definitions (bullet points)\n"
            "- Summary (bullet points)\n"
            "- Potential Exam Questions (bullet points)\n"
            "Return JSON with keys: refinedTranscript, "
            "notes{{introduction,keyConcepts,explanations,definitions,summary,examQuestions}}"
        ),
    }

    def __init__(self, model: str, logger_name: str = "relay.llm") -> None:
        self._model = model
        self._logger = logging.getLogger(logger_name)

    @property
    def model(self) -> str:
        return self._model

    @abstractmethod
    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: int = 120,
        system_prompt: str | None = None,
        json_mode: bool = False,
        user: str | None = None,
    ) -> LLMResponse:
        """Make an API call and return the response text plus token usage.

        Args:
            prompt: The user prompt to send
            temperature: Sampling temperature (0.0-1.0)
            timeout: Request timeout in seconds
            system_prompt: Optional system prompt
            json_mode: Request JSON-formatted response if supported
            user: Opaque end-user tag for provider abuse monitoring
        """
        raise NotImplementedError

    @staticmethod
    def _strip_markdown_code_blocks(text: str) -> str:
        """Remove markdown code block wrappers from text."""
        text = text.strip()
        if not text.startswith("```"):
            return text

        lines = text.split("\n")
        json_lines = []
        in_block = False
        for line in lines:
            if line.startswith("```"):
                in_block = not in_block
                continue
            json_lines.append(line)
        return "\n".join(json_lines).strip()

    def generate_class_notes(
        self, transcript: str, class_title: str, user: Optional[str] = None
    ) -> tuple[dict, Optional[TokenUsage]]:
        prompt = self.PROMPTS["class_notes"].format(transcript=transcript, class_title=class_title)
        response = self._call_api(
            prompt,
            temperature=0.2,
            timeout=180,
            system_prompt=self.PROMPTS["class_notes_system"],
            json_mode=True,
            user=user,
        )

        text = self._strip_markdown_code_blocks(response.text)
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            self._logger.warning("Non-JSON class notes response: %s", text[:500])
            raise MalformedResponse("Notes generation failed to parse JSON.", response.usage) from exc
        if not isinstance(parsed, dict):
            raise MalformedResponse(
                f"Expected JSON object, got {type(parsed).__name__}", response.usage
            )
        return parsed, response.usage

    def prompt(self, prompt_text: str) -> LLMResponse:
        """Send a raw prompt and return the response text."""
        return self._call_api(prompt_text, temperature=0.3, timeout=60)
