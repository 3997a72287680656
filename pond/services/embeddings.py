"""
Embedding providers.

Embeddings are computed outside the store; ``EmbeddingService`` is the seam
the memory service uses, and ``OllamaEmbeddingService`` talks to a local
Ollama server over HTTP.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

import pond.config as config
from pond.errors import EmbeddingProviderError, ValidationIssue
from pond.models import Embedding
from pond.services.ollama import OllamaHttpService
from pond.validators import validate_required_text

logger = config.logger.getChild("embeddings")


@dataclass(frozen=True)
class EmbeddingModelSpec:
    dimensions: int
    description: str
    context_length: int
    requires_prefix: bool = False
    recommended: bool = False


EMBEDDING_MODELS: dict[str, EmbeddingModelSpec] = {
    "nomic-embed-text": EmbeddingModelSpec(
        dimensions=768,
        description="High-performing open embedding model with large token context",
        context_length=8192,
        requires_prefix=True,
        recommended=True,
    ),
    "mxbai-embed-large": EmbeddingModelSpec(
        dimensions=1024,
        description="Large embedding model from mixedbread.ai",
        context_length=512,
    ),
    "all-minilm": EmbeddingModelSpec(
        dimensions=384,
        description="Lightweight sentence embedding model",
        context_length=256,
    ),
    "bge-large": EmbeddingModelSpec(
        dimensions=1024,
        description="Large embedding model from BAAI",
        context_length=512,
    ),
    "snowflake-arctic-embed": EmbeddingModelSpec(
        dimensions=768,
        description="Embedding model from Snowflake",
        context_length=2048,
    ),
}

DOCUMENT_PREFIX = "search_document: "


def get_model_spec(model: str) -> EmbeddingModelSpec:
    spec = EMBEDDING_MODELS.get(model)
    if spec is None:
        raise ValidationIssue(
            f"Unknown embedding model: {model}",
            field="model",
            error_type="invalid_value",
        )
    return spec


@dataclass(frozen=True)
class EmbeddingConfig:
    model: str
    dimensions: Optional[int] = None


class EmbeddingService(ABC):
    """Turns text into an ``Embedding``."""

    @abstractmethod
    def generate_embedding(self, text: str, model: Optional[str] = None) -> Embedding:
        ...

    @abstractmethod
    def default_config(self) -> EmbeddingConfig:
        ...

    @abstractmethod
    def is_healthy(self) -> bool:
        ...


class OllamaEmbeddingService(OllamaHttpService, EmbeddingService):
    provider_error = EmbeddingProviderError
    provider_name = "embedding provider"

    def __init__(
        self,
        base_url: Optional[str] = None,
        default_model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        jitter_seconds: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.default_model = default_model or config.OLLAMA_EMBEDDING_MODEL
        get_model_spec(self.default_model)
        super().__init__(
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            backoff_seconds=backoff_seconds,
            jitter_seconds=jitter_seconds,
            client=client,
            sleep=sleep,
        )

    def default_config(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            model=self.default_model,
            dimensions=get_model_spec(self.default_model).dimensions,
        )

    def generate_embedding(self, text: str, model: Optional[str] = None) -> Embedding:
        validate_required_text(text, "text", config.MAX_CONTENT_LENGTH)
        model_name = model or self.default_model
        spec = get_model_spec(model_name)
        prompt = f"{DOCUMENT_PREFIX}{text}" if spec.requires_prefix else text

        logger.debug(f"Requesting embedding (model={model_name}, chars={len(prompt)})")
        response = self._post_with_retry("/api/embeddings", {"model": model_name, "prompt": prompt})

        try:
            vector = response.json()["embedding"]
        except (ValueError, KeyError, TypeError) as exc:
            raise EmbeddingProviderError("Invalid embedding response from Ollama") from exc
        if not isinstance(vector, list):
            raise EmbeddingProviderError("Invalid embedding response from Ollama")
        if len(vector) != spec.dimensions:
            logger.warning(
                f"Model {model_name} returned {len(vector)} dimensions, expected {spec.dimensions}"
            )
        return Embedding(vector=tuple(vector), model=model_name)
