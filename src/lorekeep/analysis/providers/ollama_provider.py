"""Local Ollama LLM provider over its HTTP API."""

import logging
import time
from typing import Any, Optional

import httpx

from lorekeep.analysis.providers.base import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)


class OllamaProvider(LLMProvider):
    """Runs prompts against a local Ollama server.

    Content never leaves the machine, so this provider needs no consent.
    """

    is_cloud = False

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2",
        timeout: float = 120.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._model = model
        self.client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        logger.info(f"Initialized Ollama provider with model: {model} at {base_url}")

    @property
    def provider_name(self) -> str:
        return "ollama"

    @property
    def model_name(self) -> str:
        return self._model

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 800,
        temperature: float = 0.2,
        json_output: bool = True,
    ) -> LLMResponse:
        start_time = time.time()

        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if json_output:
            payload["format"] = "json"

        response = self.client.post("/api/chat", json=payload)
        response.raise_for_status()
        data = response.json()
        duration_ms = (time.time() - start_time) * 1000

        prompt_tokens = data.get("prompt_eval_count") or 0
        completion_tokens = data.get("eval_count") or 0
        return LLMResponse(
            content=(data.get("message") or {}).get("content", ""),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            finish_reason=data.get("done_reason") or "stop",
            model=data.get("model", self._model),
            duration_ms=duration_ms,
            raw_response=data,
        )

    def close(self) -> None:
        self.client.close()
