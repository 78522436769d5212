#!/usr/bin/env python3
# capability_router/lib/embeddings.py
"""Intent embedding providers."""

import abc
import asyncio
import logging
import threading
from collections import deque
from typing import Dict, List, Optional

import numpy as np

try:
    from sentence_transformers import SentenceTransformer
    HAVE_SENTENCE_TRANSFORMERS = True
except ImportError:
    HAVE_SENTENCE_TRANSFORMERS = False

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"


class EmbeddingProvider(abc.ABC):
    """Source of intent embeddings. Calls may do I/O and are always awaited."""

    @abc.abstractmethod
    async def get_embedding(self, text: str) -> List[float]:
        """Embed a piece of text."""


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Embeddings from a local sentence-transformers model with a FIFO cache."""

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL, cache_size: int = 1000):
        """Initialize the provider.

        Args:
            model_name: sentence-transformers model to load
            cache_size: Maximum number of cached embeddings

        Raises:
            ConfigurationError: If sentence-transformers is not installed or the model fails to load
        """
        if not HAVE_SENTENCE_TRANSFORMERS:
            raise ConfigurationError(
                "sentence-transformers is not installed; install capability_router[embeddings]"
            )
        try:
            self.model = SentenceTransformer(model_name)
        except Exception as e:
            raise ConfigurationError(f"Failed to load embedding model {model_name}: {e}") from e

        self.model_name = model_name
        self._cache: Dict[str, List[float]] = {}
        self._cache_keys = deque(maxlen=cache_size)
        self._lock = threading.Lock()

    def _cached(self, text: str) -> Optional[List[float]]:
        with self._lock:
            return self._cache.get(text)

    def _store(self, text: str, embedding: List[float]) -> None:
        with self._lock:
            if text in self._cache:
                return
            if len(self._cache_keys) >= self._cache_keys.maxlen:
                oldest_key = self._cache_keys.popleft()
                self._cache.pop(oldest_key, None)
            self._cache[text] = embedding
            self._cache_keys.append(text)

    def _encode(self, text: str) -> List[float]:
        embedding = self.model.encode(text, show_progress_bar=False)
        return np.asarray(embedding, dtype=np.float64).tolist()

    async def get_embedding(self, text: str) -> List[float]:
        cached = self._cached(text)
        if cached is not None:
            return cached
        embedding = await asyncio.to_thread(self._encode, text)
        self._store(text, embedding)
        logger.debug(f"Embedded intent with {self.model_name} ({len(embedding)} dims)")
        return embedding
