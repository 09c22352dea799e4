"""Tests for the in-memory embedding cache."""

from __future__ import annotations

from konsul.services.cache import DEFAULT_MAX_BYTES, EmbeddingCache

# ── Core operations ──────────────────────────────────────────────────


class TestEmbeddingCacheBasics:
    def test_put_and_get(self):
        cache = EmbeddingCache()
        cache.put("m:k1", [0.1, 0.2])
        assert cache.get("m:k1") == [0.1, 0.2]

    def test_get_returns_none_for_missing_key(self):
        assert EmbeddingCache().get("m:nope") is None

    def test_put_overwrites_existing_key(self):
        cache = EmbeddingCache()
        cache.put("m:k1", [1.0])
        cache.put("m:k1", [2.0, 3.0])
        assert cache.get("m:k1") == [2.0, 3.0]
        assert len(cache._store) == 1
        assert cache._current_bytes == 16


# ── Keys ─────────────────────────────────────────────────────────────


class TestKeys:
    def test_same_text_same_model_same_key(self):
        assert EmbeddingCache.key_for("small", "hours") == EmbeddingCache.key_for("small", "hours")

    def test_model_is_part_of_the_key(self):
        assert EmbeddingCache.key_for("small", "hours") != EmbeddingCache.key_for("large", "hours")

    def test_vectors_of_another_model_are_not_returned(self):
        cache = EmbeddingCache()
        cache.put(EmbeddingCache.key_for("small", "hours"), [1.0])

        assert cache.get(EmbeddingCache.key_for("large", "hours")) is None
        assert cache.get(EmbeddingCache.key_for("small", "hours")) == [1.0]


# ── LRU eviction ────────────────────────────────────────────────────


class TestLRUEviction:
    def test_evicts_lru_when_over_limit(self):
        # Two 2-component vectors (16 bytes each) fit in 32 bytes.
        cache = EmbeddingCache(max_bytes=32)
        cache.put("m:first", [1.0, 1.0])
        cache.put("m:second", [2.0, 2.0])
        cache.put("m:third", [3.0, 3.0])
        assert cache.get("m:first") is None
        assert cache.get("m:third") == [3.0, 3.0]

    def test_access_promotes_to_mru(self):
        cache = EmbeddingCache(max_bytes=32)
        cache.put("m:a", [1.0, 1.0])
        cache.put("m:b", [2.0, 2.0])
        cache.get("m:a")
        cache.put("m:c", [3.0, 3.0])
        assert cache.get("m:a") == [1.0, 1.0]
        assert cache.get("m:b") is None

    def test_skips_vector_larger_than_max(self):
        cache = EmbeddingCache(max_bytes=16)
        cache.put("m:huge", [0.0] * 100)
        assert cache.get("m:huge") is None
        assert cache._store == {}


class TestDefaultLimit:
    def test_default_max_is_10mb(self):
        assert EmbeddingCache()._max_bytes == DEFAULT_MAX_BYTES == 10 * 1024 * 1024
