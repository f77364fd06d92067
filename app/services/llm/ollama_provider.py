from __future__ import annotations

import logging

import requests

from app.services.llm.base import BaseLLMProvider, LLMProviderError, LLMResponse
from app.services.usage import TokenUsage

_logger = logging.getLogger("relay.llm.ollama")


def is_ollama_reachable(base_url: str = "http://127.0.0.1:11434") -> bool:
    try:
        resp = requests.get(f"{base_url.rstrip('/')}/api/tags", timeout=3)
    except requests.RequestException:
        return False
    return resp.status_code == 200


class OllamaProvider(BaseLLMProvider):
    """Local models served by Ollama; token counts are reported but cost nothing."""

    def __init__(self, base_url: str, model: str) -> None:
        super().__init__(model, logger_name="relay.llm.ollama")
        self._base_url = base_url.rstrip("/")

    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: int = 120,
        system_prompt: str | None = None,
        json_mode: bool = False,
        user: str | None = None,
    ) -> LLMResponse:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        request_body = {
            "model": self._model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": temperature},
        }
        if json_mode:
            request_body["format"] = "json"

        try:
            response = requests.post(
                f"{self._base_url}/api/chat",
                json=request_body,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise LLMProviderError(f"Failed to reach Ollama at {self._base_url}") from exc

        if response.status_code != 200:
            raise LLMProviderError(f"Ollama error: {response.status_code}")

        data = response.json()
        content = data.get("message", {}).get("content", "")
        if not content:
            raise LLMProviderError("Ollama response missing content")

        return LLMResponse(
            text=str(content).strip(),
            usage=TokenUsage(
                model=self._model,
                input_tokens=int(data.get("prompt_eval_count", 0) or 0),
                output_tokens=int(data.get("eval_count", 0) or 0),
            ),
        )
