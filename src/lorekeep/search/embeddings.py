"""
Embedding providers for semantic search.

Each provider has a tag ("ollama:nomic-embed-text"). Stored vectors carry
the tag of the provider that made them, and only vectors with a matching
tag are compared against a query embedding.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import httpx
from openai import OpenAI

from lorekeep.exceptions import ConsentRequiredError

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Turns text into vectors."""

    is_cloud: bool = True

    @property
    @abstractmethod
    def provider_name(self) -> str: ...

    @property
    @abstractmethod
    def model_name(self) -> str: ...

    @property
    def tag(self) -> str:
        return f"{self.provider_name}:{self.model_name}"

    @abstractmethod
    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed a batch of texts, one vector per text in order."""
        ...

    def embed_one(self, text: str) -> list[float]:
        return self.embed([text])[0]


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Local embeddings from an Ollama server."""

    is_cloud = False

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._model = model
        self.client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    @property
    def provider_name(self) -> str:
        return "ollama"

    @property
    def model_name(self) -> str:
        return self._model

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        response = self.client.post("/api/embed", json={"model": self._model, "input": list(texts)})
        response.raise_for_status()
        embeddings = response.json().get("embeddings") or []
        if len(embeddings) != len(texts):
            raise ValueError(
                f"Ollama returned {len(embeddings)} embedding(s) for {len(texts)} text(s)"
            )
        return [[float(v) for v in vector] for vector in embeddings]

    def close(self) -> None:
        self.client.close()


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings from the OpenAI API. Text leaves the machine."""

    is_cloud = True

    def __init__(self, api_key: str, model: str = "text-embedding-3-small", timeout: float = 30.0):
        if not api_key:
            raise ValueError("OpenAI API key is required")
        self.client = OpenAI(api_key=api_key, timeout=timeout)
        self._model = model

    @property
    def provider_name(self) -> str:
        return "openai"

    @property
    def model_name(self) -> str:
        return self._model

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        response = self.client.embeddings.create(model=self._model, input=list(texts))
        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]


def create_embedding_provider(
    provider_type: str,
    allow_cloud: bool = False,
    api_key: str = "",
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: float = 30.0,
) -> Optional[EmbeddingProvider]:
    """
    Build the configured embedding provider.

    Returns:
        The provider, or None when provider_type is "none"

    Raises:
        ConsentRequiredError: If openai is requested without cloud consent
        ValueError: If provider_type is unknown
    """
    if provider_type in ("", "none"):
        return None
    if provider_type == "ollama":
        return OllamaEmbeddingProvider(
            base_url=base_url or "http://localhost:11434",
            model=model or "nomic-embed-text",
            timeout=timeout,
        )
    if provider_type == "openai":
        if not allow_cloud:
            raise ConsentRequiredError(
                "openai embeddings send conversation content off this machine; "
                "set ALLOW_CLOUD_ANALYSIS=true to enable them"
            )
        return OpenAIEmbeddingProvider(
            api_key=api_key, model=model or "text-embedding-3-small", timeout=timeout
        )
    raise ValueError(
        f"Unknown embedding provider: {provider_type}. Supported providers: none, ollama, openai"
    )
