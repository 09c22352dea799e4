"""Thread-safe in-memory LRU cache for embedding vectors.

Design decisions
────────────────
• **OrderedDict** for O(1) LRU eviction and promotion.
• **Keys are content digests** (``<model>:<sha256(text)>``) so identical
  passages embedded by the same model share one entry and a change of
  embedding model never returns a stale vector.
• **Size tracking** assumes 8 bytes per vector component, which is the
  footprint of a double-precision float.
• **threading.Lock** for thread safety (the FastAPI server runs reply
  cycles on a thread pool).
• Purely ephemeral - data is lost on process restart.

Usage
─────
>>> cache = EmbeddingCache(max_bytes=10 * 1024 * 1024)
>>> key = cache.key_for("text-embedding-3-small", "opening hours")
>>> cache.put(key, [0.1, 0.2, 0.3])
>>> cache.get(key)
[0.1, 0.2, 0.3]
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections import OrderedDict

logger = logging.getLogger(__name__)

# Default ceiling: 10 MB (~850 vectors of 1536 dimensions)
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
BYTES_PER_COMPONENT = 8


class EmbeddingCache:
    """Least-Recently-Used vector cache bounded by total estimated byte size."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self._max_bytes = max_bytes
        self._current_bytes = 0
        # key → (vector, estimated_size_bytes)
        self._store: OrderedDict[str, tuple[list[float], int]] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key_for(model: str, text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"{model}:{digest}"

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str) -> list[float] | None:
        """Return the cached vector (promoting it to MRU) or ``None``."""
        with self._lock:
            if key not in self._store:
                return None
            self._store.move_to_end(key)
            vector, _ = self._store[key]
            return vector

    def put(self, key: str, vector: list[float]) -> None:
        """Insert or overwrite *key*.  Evicts LRU entries if needed."""
        size = len(vector) * BYTES_PER_COMPONENT

        if size > self._max_bytes:
            logger.debug(
                "Embedding cache: skipping key %s (size %d > max %d)",
                key, size, self._max_bytes,
            )
            return

        with self._lock:
            if key in self._store:
                _, old_size = self._store.pop(key)
                self._current_bytes -= old_size

            while self._current_bytes + size > self._max_bytes and self._store:
                evicted_key, (_, evicted_size) = self._store.popitem(last=False)
                self._current_bytes -= evicted_size
                logger.debug("Embedding cache: evicted %s (%d bytes)", evicted_key, evicted_size)

            self._store[key] = (list(vector), size)
            self._current_bytes += size
