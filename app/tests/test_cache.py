from chatbridge.cache import TranslationCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_cache_round_trip_and_direction_matters():
    cache = TranslationCache(10, 60)
    cache.put("こんにちは", "ja", "vi", "Xin chào")

    assert cache.get("こんにちは", "ja", "vi") == "Xin chào"
    assert cache.get("こんにちは", "ja", "en") is None
    assert cache.get("こんにちは", "vi", "ja") is None


def test_cache_key_uses_first_200_chars():
    cache = TranslationCache(10, 60)
    prefix = "a" * 200
    cache.put(prefix + "first tail", "en", "ja", "translated")

    assert TranslationCache.make_key(prefix + "xyz", "en", "ja") == f"en:ja:{prefix}"
    assert cache.get(prefix + "other tail", "en", "ja") == "translated"


def test_cache_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TranslationCache(10, 60, clock=clock)
    cache.put("hello", "en", "ja", "こんにちは")

    clock.now += 59
    assert cache.get("hello", "en", "ja") == "こんにちは"

    clock.now += 2
    assert cache.get("hello", "en", "ja") is None
    assert len(cache) == 0


def test_cache_evicts_oldest_inserted_entry_at_capacity():
    cache = TranslationCache(2, 60)
    cache.put("one", "en", "ja", "1")
    cache.put("two", "en", "ja", "2")
    # Reading does not refresh position.
    assert cache.get("one", "en", "ja") == "1"
    cache.put("three", "en", "ja", "3")

    assert cache.get("one", "en", "ja") is None
    assert cache.get("two", "en", "ja") == "2"
    assert cache.get("three", "en", "ja") == "3"
    assert len(cache) == 2


def test_cache_overwrite_does_not_evict():
    cache = TranslationCache(2, 60)
    cache.put("one", "en", "ja", "1")
    cache.put("two", "en", "ja", "2")
    cache.put("two", "en", "ja", "2b")

    assert len(cache) == 2
    assert cache.get("one", "en", "ja") == "1"
    assert cache.get("two", "en", "ja") == "2b"
