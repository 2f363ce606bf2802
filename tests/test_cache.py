"""
Tests for the model-list TTL cache.
Run with: pytest tests/test_cache.py
"""

import threading

from chatrelay.backends.cache import ModelListCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_put_and_get():
    cache = ModelListCache(ttl=60)
    cache.put("http://a:11434", [{"name": "llama3"}])
    assert cache.get("http://a:11434") == [{"name": "llama3"}]
    assert cache.get("http://b:11434") is None


def test_entry_expires_after_ttl():
    """Values are served until the TTL runs out, then dropped."""
    clock = FakeClock()
    cache = ModelListCache(ttl=300, clock=clock)
    cache.put("k", ["v"])

    clock.now += 299
    assert cache.get("k") == ["v"]

    clock.now += 1
    assert cache.get("k") is None
    assert len(cache) == 0


def test_per_entry_ttl_override():
    clock = FakeClock()
    cache = ModelListCache(ttl=300, clock=clock)
    cache.put("short", 1, ttl=5)
    cache.put("long", 2)

    clock.now += 10
    assert cache.get("short") is None
    assert cache.get("long") == 2


def test_invalidate_one_key():
    cache = ModelListCache()
    cache.put("a", 1)
    cache.put("b", 2)
    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2


def test_invalidate_all():
    cache = ModelListCache()
    cache.put("a", 1)
    cache.put("b", 2)
    cache.invalidate()
    assert len(cache) == 0


def test_invalidate_missing_key_is_noop():
    cache = ModelListCache()
    cache.invalidate("never-set")
    assert len(cache) == 0


def test_concurrent_access():
    """Many threads reading and writing never corrupt the map."""
    cache = ModelListCache(ttl=60)
    errors = []

    def worker(n):
        try:
            for i in range(200):
                key = f"k{(n + i) % 10}"
                cache.put(key, i)
                cache.get(key)
                if i % 50 == 0:
                    cache.invalidate(key)
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(cache) <= 10
