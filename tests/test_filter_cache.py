import logging
import struct
from concurrent.futures import ThreadPoolExecutor

import pytest

from tiered_bloom.config import FilterConfig
from tiered_bloom.errors import CorruptEncoding, ReadOnlyFilter
from tiered_bloom.filter_cache import FilterCache
from tiered_bloom.tiered_filter import TieredFilter
from tiered_bloom.wire_codec import WireCodec

SMALL = FilterConfig(expected_insertions=1000)


def encoded(*items, n=100, p=0.01, prefilter=True):
    bf = TieredFilter(n, p, prefilter=prefilter)
    for item in items:
        bf.put(item)
    return WireCodec().encode(bf)


class TestFilterCache:
    def test_hit_returns_shared_instance(self):
        cache = FilterCache(config=SMALL)
        data = encoded(b"robin")
        first = cache.get_or_load(data)
        second = cache.get_or_load(data)
        assert first is second
        assert first.might_contain(b"robin")
        assert (cache.hits, cache.misses) == (1, 1)
        assert len(cache) == 1

    def test_cached_filters_are_read_only(self):
        cache = FilterCache(config=SMALL)
        bf = cache.get_or_load(encoded(b"robin"))
        assert bf.frozen
        with pytest.raises(ReadOnlyFilter):
            bf.put(b"verlangen")

    def test_least_recently_used_is_evicted(self):
        cache = FilterCache(capacity=2, config=SMALL)
        a, b, c = encoded(b"a"), encoded(b"b"), encoded(b"c")
        cache.get_or_load(a)
        cache.get_or_load(b)
        cache.get_or_load(a)
        cache.get_or_load(c)
        assert len(cache) == 2
        assert cache.evictions == 1

        misses = cache.misses
        cache.get_or_load(a)
        assert cache.misses == misses
        cache.get_or_load(b)
        assert cache.misses == misses + 1

    def test_evicted_filter_stays_usable(self):
        cache = FilterCache(capacity=1, config=SMALL)
        held = cache.get_or_load(encoded(b"robin"))
        cache.get_or_load(encoded(b"verlangen"))
        assert cache.evictions == 1
        assert held.might_contain(b"robin")

    @pytest.mark.parametrize("empty", [None, b"", ""])
    def test_empty_input_yields_sentinel(self, empty):
        cache = FilterCache(config=SMALL)
        sentinel = cache.get_or_load(empty)
        assert sentinel is cache.empty_filter()
        assert sentinel.frozen
        assert sentinel.expected_insertions == 1000
        assert not sentinel.might_contain(b"robin")
        assert len(cache) == 0

    def test_sentinel_never_collides_with_empty_encoded_filter(self):
        cache = FilterCache(config=SMALL)
        real = cache.get_or_load(WireCodec().encode(TieredFilter(1000, 0.01)))
        assert real is not cache.get_or_load(None)
        assert len(cache) == 1

    def test_same_hash_different_parameters(self):
        cache = FilterCache(config=SMALL)
        data = encoded(b"robin", prefilter=False)
        patched = bytearray(data)
        # a nearby rate that sizes to the same bit array and hash count
        struct.pack_into(">d", patched, 40, 0.0100000001)
        first = cache.get_or_load(data)
        second = cache.get_or_load(bytes(patched))
        assert first is not second
        assert first.false_positive_rate == 0.01
        assert second.false_positive_rate == 0.0100000001
        assert len(cache) == 2

    def test_text_input(self):
        cache = FilterCache(config=SMALL)
        bf = TieredFilter(100, 0.01)
        bf.put(b"robin")
        text = WireCodec().encode_text(bf)
        assert cache.get_or_load(text, text=True).might_contain(b"robin")
        assert cache.get_or_load(text, text=True) is cache.get_or_load(WireCodec().encode(bf))

    def test_corrupt_input_is_not_cached(self):
        cache = FilterCache(config=SMALL)
        with pytest.raises(CorruptEncoding):
            cache.get_or_load(encoded(b"robin")[:-3])
        assert len(cache) == 0

    def test_concurrent_loads_share_one_instance(self):
        cache = FilterCache(capacity=4, config=SMALL)
        blobs = [encoded(f"item-{i}".encode()) for i in range(3)]

        def load(i):
            return i % 3, cache.get_or_load(blobs[i % 3])

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(load, range(300)))

        for index in range(3):
            instances = {id(bf) for i, bf in results if i == index}
            assert len(instances) == 1
        assert len(cache) == 3
        assert cache.hits + cache.misses == 300

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            FilterCache(capacity=0)

    def test_clear_forces_a_fresh_decode(self):
        cache = FilterCache(config=SMALL)
        data = encoded(b"robin")
        first = cache.get_or_load(data)
        cache.clear()
        assert len(cache) == 0
        assert cache.get_or_load(data) is not first
        assert cache.misses == 2

    def test_hits_and_misses_are_logged(self, caplog):
        cache = FilterCache(config=SMALL)
        data = encoded(b"robin")
        with caplog.at_level(logging.DEBUG, logger="tiered_bloom.filter_cache"):
            cache.get_or_load(data)
            cache.get_or_load(data)
        messages = [r.getMessage() for r in caplog.records if r.name == "tiered_bloom.filter_cache"]
        assert any("miss" in m for m in messages)
        assert any("hit" in m for m in messages)
