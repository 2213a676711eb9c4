"""Embedding providers for candidate vectors.

The worker only depends on the ``EmbeddingProvider`` protocol; the default
implementation wraps sentence-transformers with batching and retry logic.
The vendor behind the protocol is swappable.
"""
from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from talentpool.config import settings

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Raised when embedding computation fails."""
    pass


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that turns texts into fixed-size vectors."""

    model_name: str
    dim: int

    async def embed(self, texts: list[str]) -> list[list[float]]:
        ...


@lru_cache(maxsize=4)
def _load_model(model_name: str, device: str) -> SentenceTransformer:
    """Load and cache the sentence transformer model.

    Raises:
        EmbeddingError: If the library is missing or model loading fails
    """
    try:
        from sentence_transformers import SentenceTransformer
    except ImportError as e:
        raise EmbeddingError(f"sentence-transformers is not installed: {e}") from e

    try:
        logger.info(f"Loading embedding model: {model_name} on device: {device}")
        model = SentenceTransformer(model_name, device=device)
        logger.info(f"Model loaded successfully. Embedding dim: {model.get_sentence_embedding_dimension()}")
        return model
    except Exception as e:
        logger.error(f"Failed to load embedding model: {e}")
        raise EmbeddingError(f"Model loading failed: {e}") from e


class SentenceTransformerProvider:
    """Default provider backed by a local sentence-transformers model."""

    def __init__(
        self,
        model_name: str | None = None,
        *,
        dim: int | None = None,
        device: str | None = None,
        batch_size: int | None = None,
        normalize: bool | None = None,
    ) -> None:
        self.model_name = model_name or settings.embeddings.model_name
        self.dim = dim or settings.embeddings.dim
        self.device = device or settings.embeddings.device
        self.batch_size = batch_size or settings.embeddings.batch_size
        self.normalize = settings.embeddings.normalize_embeddings if normalize is None else normalize

    @retry(
        stop=stop_after_attempt(settings.embeddings.retry_attempts),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type((ValueError, EmbeddingError)),
        reraise=True,
    )
    def _encode(self, texts: list[str]) -> np.ndarray:
        model = _load_model(self.model_name, self.device)
        return model.encode(
            texts,
            batch_size=self.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=self.normalize,
        )

    def embed_sync(self, texts: list[str]) -> list[list[float]]:
        """Compute embeddings for a batch of texts with retry logic.

        Args:
            texts: Non-empty strings to embed

        Returns:
            One vector per input text, in order

        Raises:
            EmbeddingError: If embedding computation fails after retries
            ValueError: If texts contains empty or non-string items
        """
        if not texts:
            return []
        if not all(isinstance(t, str) and t.strip() for t in texts):
            raise ValueError("All items in texts must be non-empty strings")

        logger.debug(f"Encoding {len(texts)} texts")
        try:
            vectors = np.asarray(self._encode(list(texts)), dtype=np.float32)
        except (ValueError, EmbeddingError):
            raise
        except Exception as e:
            logger.error(f"Embedding computation failed: {e}")
            raise EmbeddingError(f"Failed to compute embeddings: {e}") from e

        if vectors.ndim != 2 or vectors.shape[1] != self.dim:
            raise EmbeddingError(
                f"Model {self.model_name} returned shape {vectors.shape}, expected (*, {self.dim})"
            )
        return vectors.tolist()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        # Encoding is CPU bound; keep the event loop free for the other jobs in the batch
        return await asyncio.to_thread(self.embed_sync, texts)

    def info(self) -> dict[str, str | int]:
        """Get information about the configured model."""
        return {
            "model_name": self.model_name,
            "dimension": self.dim,
            "device": self.device,
        }


@lru_cache(maxsize=1)
def get_default_provider() -> SentenceTransformerProvider:
    return SentenceTransformerProvider()
