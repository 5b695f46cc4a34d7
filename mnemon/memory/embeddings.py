"""Embedding generation and vector helpers for the memory system."""

import asyncio
import importlib.util
import logging
from typing import List, Optional, Sequence

import numpy as np

from mnemon.config import DEFAULT_EMBEDDING_MODEL

logger = logging.getLogger(__name__)

# Lazy-loaded model
_embedding_model = None
_model_name: Optional[str] = None


def get_embedding(text: str, model_name: str = DEFAULT_EMBEDDING_MODEL) -> List[float]:
    """Generate embedding for text using fastembed.

    Args:
        text: Text to embed
        model_name: Model name (e.g., BAAI/bge-small-en-v1.5)

    Returns:
        List of floats (embedding vector)
    """
    global _embedding_model, _model_name

    # Lazy load model, reload if model name changed
    if _embedding_model is None or _model_name != model_name:
        try:
            from fastembed import TextEmbedding
        except ImportError as e:
            raise ImportError("fastembed is required for memory embeddings. Install with: pip install fastembed") from e

        _embedding_model = TextEmbedding(model_name=model_name)
        _model_name = model_name

    return list(_embedding_model.embed([text]))[0].tolist()


def serialize_embedding(embedding: Sequence[float]) -> bytes:
    """Pack a vector as float32 bytes for BLOB storage."""
    return np.asarray(embedding, dtype=np.float32).tobytes()


def deserialize_embedding(blob: Optional[bytes]) -> Optional[List[float]]:
    if not blob:
        return None
    return np.frombuffer(bytes(blob), dtype=np.float32).tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0 on length mismatch or zero magnitude."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    magnitude = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if magnitude == 0:
        return 0.0
    return float(np.dot(va, vb) / magnitude)


class EmbeddingProvider:
    """Text to vector, treated by every caller as best-effort."""

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL, enabled: bool = True):
        self.model_name = model_name
        self.enabled = enabled

    def available(self) -> bool:
        return self.enabled and importlib.util.find_spec("fastembed") is not None

    async def embed(self, text: str) -> List[float]:
        """Embed text off the event loop. May raise; callers degrade gracefully."""
        return await asyncio.to_thread(get_embedding, text, self.model_name)


async def try_embed(provider: Optional[EmbeddingProvider], text: str) -> Optional[List[float]]:
    """Embed text if a provider is available, returning None on any failure."""
    if provider is None or not provider.available():
        return None
    try:
        return await provider.embed(text)
    except Exception as e:
        logger.warning("Failed to generate embedding: %s", e)
        return None
