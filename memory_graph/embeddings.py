"""OpenRouter embedding client.

Uses raw ``requests`` (NOT the OpenAI SDK) to call the OpenRouter
``/embeddings`` endpoint.  Features:

* Async-friendly (uses ``asyncio.to_thread`` around blocking requests)
* Batch support (several texts per call)
* Retry with exponential back-off and a bounded request timeout
* Two cache levels: in-memory LRU, then the storage ``embedding_cache`` table
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, List, Optional

import numpy as np
import requests

from .config import load_config

if TYPE_CHECKING:
    from .storage import MemoryStorage

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Raised when the embedding API returns an error."""


class OpenRouterEmbeddings:
    """Lightweight async wrapper around the OpenRouter embeddings endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        cache_size: Optional[int] = None,
    ) -> None:
        cfg = load_config()
        self.api_key: str = api_key or cfg.openrouter_api_key
        self.model: str = model or cfg.embedding_model
        self.dimensions: int = dimensions or cfg.embedding_dimensions
        self.base_url: str = (base_url or cfg.openrouter_base_url).rstrip("/")
        self.timeout: float = timeout if timeout is not None else cfg.embed_timeout_seconds
        self.max_retries: int = max_retries if max_retries is not None else cfg.embed_max_retries

        self._url = f"{self.base_url}/embeddings"
        self._headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        self._cache_size = cache_size if cache_size is not None else cfg.embed_cache_size
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._storage: Optional[MemoryStorage] = None

    def set_storage(self, storage: MemoryStorage) -> None:
        """Set the storage reference for persistent caching."""
        self._storage = storage

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _cache_key(self, text: str) -> str:
        return hashlib.md5(f"{self.model}:{text}".encode("utf-8")).hexdigest()

    def _cache_get(self, text: str) -> Optional[List[float]]:
        key = self._cache_key(text)
        vec = self._cache.get(key)
        if vec is not None:
            self._cache.move_to_end(key)
            return vec

        if self._storage is not None:
            blob = self._storage.get_cached_embedding(key)
            if blob:
                vec = np.frombuffer(blob, dtype=np.float32).tolist()
                self._cache_put(text, vec, persist=False)
                return vec
        return None

    def _cache_put(self, text: str, vector: List[float], persist: bool = True) -> None:
        key = self._cache_key(text)
        self._cache[key] = vector
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        if persist and self._storage is not None:
            self._storage.cache_embedding(key, np.asarray(vector, dtype=np.float32).tobytes())

    # ------------------------------------------------------------------
    # Low-level HTTP call with retries
    # ------------------------------------------------------------------

    def _call_api(self, texts: List[str]) -> List[List[float]]:
        """Blocking HTTP POST to OpenRouter with exponential back-off."""
        payload = {
            "model": self.model,
            "input": texts,
        }

        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                resp = requests.post(
                    self._url,
                    headers=self._headers,
                    json=payload,
                    timeout=self.timeout,
                )
                if resp.status_code == 200:
                    data = resp.json()
                    # OpenAI-compatible response: data.data[i].embedding
                    try:
                        items = sorted(data["data"], key=lambda d: d["index"])
                        vectors = [item["embedding"] for item in items]
                    except (KeyError, IndexError, TypeError) as exc:
                        raise EmbeddingError(f"Malformed embedding payload: {exc!r}") from exc
                    if len(vectors) != len(texts):
                        raise EmbeddingError(
                            f"Expected {len(texts)} embeddings, got {len(vectors)}"
                        )
                    return vectors

                if resp.status_code in (429, 500, 502, 503, 504):
                    wait = 2 ** attempt
                    logger.warning(
                        "OpenRouter %s (attempt %d/%d), retrying in %ds",
                        resp.status_code, attempt + 1, self.max_retries, wait,
                    )
                    last_exc = EmbeddingError(f"HTTP {resp.status_code}: {resp.text[:200]}")
                    time.sleep(wait)
                    continue

                raise EmbeddingError(f"HTTP {resp.status_code}: {resp.text[:500]}")

            except requests.RequestException as exc:
                wait = 2 ** attempt
                logger.warning(
                    "Embedding request error (attempt %d/%d): %s, retrying in %ds",
                    attempt + 1, self.max_retries, exc, wait,
                )
                last_exc = exc
                time.sleep(wait)

        raise EmbeddingError(f"Failed after {self.max_retries} retries: {last_exc}")

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> List[float]:
        """Embed a single text string. Returns a vector (list of floats)."""
        cached = self._cache_get(text)
        if cached is not None:
            return cached
        if not self.api_key:
            raise EmbeddingError("No OpenRouter API key configured")

        vectors = await asyncio.to_thread(self._call_api, [text])
        vec = vectors[0]
        self._cache_put(text, vec)
        return vec

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed multiple texts in one API call. Returns list of vectors."""
        results: List[Optional[List[float]]] = [None] * len(texts)
        uncached_indices: List[int] = []

        for i, text in enumerate(texts):
            cached = self._cache_get(text)
            if cached is not None:
                results[i] = cached
            else:
                uncached_indices.append(i)

        if uncached_indices:
            if not self.api_key:
                raise EmbeddingError("No OpenRouter API key configured")
            vectors = await asyncio.to_thread(
                self._call_api, [texts[i] for i in uncached_indices]
            )
            for idx, vec in zip(uncached_indices, vectors):
                results[idx] = vec
                self._cache_put(texts[idx], vec)

        return results  # type: ignore[return-value]
