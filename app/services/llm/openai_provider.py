from __future__ import annotations

import requests

from app.services.llm.base import BaseLLMProvider, LLMProviderError, LLMResponse
from app.services.usage import TokenUsage

DEFAULT_BASE_URL = "https://api.openai.com"


def _error_detail(response: requests.Response) -> str:
    try:
        return str(response.json().get("error", {}).get("message", ""))[:200]
    except ValueError:
        return response.text[:200]


class OpenAIProvider(BaseLLMProvider):
    """Chat Completions client; also works for OpenAI-compatible servers via ``base_url``."""

    def __init__(self, api_key: str, model: str, base_url: str | None = DEFAULT_BASE_URL) -> None:
        super().__init__(model, logger_name="relay.llm.openai")
        self._api_key = api_key
        self._endpoint = f"{(base_url or DEFAULT_BASE_URL).rstrip('/')}/v1/chat/completions"

    def _usage(self, data: dict) -> TokenUsage:
        usage = data.get("usage") or {}
        return TokenUsage(
            model=self._model,
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            request_id=str(data.get("id", "unknown")),
        )

    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: int = 120,
        system_prompt: str | None = None,
        json_mode: bool = False,
        user: str | None = None,
    ) -> LLMResponse:
        body = {
            "model": self._model,
            "temperature": temperature,
            "messages": [
                {"role": "system", "content": system_prompt or "You are a helpful assistant."},
                {"role": "user", "content": prompt},
            ],
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        # end-user id for abuse monitoring on the provider side
        if user:
            body["user"] = user

        try:
            response = requests.post(
                self._endpoint,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json=body,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise LLMProviderError("Failed to reach OpenAI") from exc

        if response.status_code != 200:
            detail = _error_detail(response)
            raise LLMProviderError(f"OpenAI error: {response.status_code}" + (f" {detail}" if detail else ""))

        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise LLMProviderError("OpenAI response missing choices")
        content = (choices[0].get("message") or {}).get("content") or ""
        return LLMResponse(text=str(content).strip(), usage=self._usage(data))
