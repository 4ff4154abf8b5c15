"""OpenAI LLM provider implementation."""

import logging
import time
from typing import Any

from openai import OpenAI

from lorekeep.analysis.providers.base import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)


# Pricing per 1M tokens
OPENAI_PRICING = {
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    "default": {"input": 0.15, "output": 0.60},
}


class OpenAIProvider(LLMProvider):
    """OpenAI LLM provider using the OpenAI Python SDK.

    Uses JSON mode via the response_format parameter for structured output.
    """

    is_cloud = True

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = 30.0):
        if not api_key:
            raise ValueError("OpenAI API key is required")

        self.client = OpenAI(api_key=api_key, timeout=timeout)
        self._model = model
        logger.info(f"Initialized OpenAI provider with model: {model}")

    @property
    def provider_name(self) -> str:
        return "openai"

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

        request_params: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_output:
            request_params["response_format"] = {"type": "json_object"}

        response = self.client.chat.completions.create(**request_params)
        duration_ms = (time.time() - start_time) * 1000

        content = response.choices[0].message.content or ""
        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0

        return LLMResponse(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=usage.total_tokens if usage else 0,
            finish_reason=response.choices[0].finish_reason or "unknown",
            model=response.model,
            duration_ms=duration_ms,
            raw_response=response,
        )

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        pricing = OPENAI_PRICING.get(self._model, OPENAI_PRICING["default"])
        return (
            prompt_tokens * pricing["input"] + completion_tokens * pricing["output"]
        ) / 1_000_000
