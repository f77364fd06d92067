from __future__ import annotations

import requests

from app.services.llm.base import BaseLLMProvider, LLMProviderError, LLMResponse
from app.services.usage import TokenUsage


class AnthropicProvider(BaseLLMProvider):
    def __init__(self, api_key: str, model: str, max_tokens: int = 4096) -> None:
        super().__init__(model, logger_name="relay.llm.anthropic")
        self._api_key = api_key
        self._max_tokens = max_tokens

    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: int = 120,
        system_prompt: str | None = None,
        json_mode: bool = False,
        user: str | None = None,
    ) -> LLMResponse:
        request_body = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            request_body["system"] = system_prompt
        if json_mode:
            # no native JSON mode; steer with a prefilled assistant turn
            request_body["messages"].append({"role": "assistant", "content": "{"})
        if user:
            request_body["metadata"] = {"user_id": user}

        try:
            response = requests.post(
                "https://api.anthropic.com/v1/messages",
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": "2023-06-01",
                    "content-type": "application/json",
                },
                json=request_body,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise LLMProviderError("Failed to reach Anthropic") from exc

        if response.status_code != 200:
            raise LLMProviderError(f"Anthropic error: {response.status_code}")

        data = response.json()
        content_blocks = data.get("content", [])
        if not content_blocks:
            raise LLMProviderError("Anthropic response missing content")
        text = content_blocks[0].get("text", "")
        if json_mode:
            text = "{" + text

        usage = data.get("usage") or {}
        return LLMResponse(
            text=text.strip(),
            usage=TokenUsage(
                model=self._model,
                input_tokens=int(usage.get("input_tokens", 0) or 0),
                output_tokens=int(usage.get("output_tokens", 0) or 0),
                request_id=str(data.get("id", "unknown")),
            ),
        )
