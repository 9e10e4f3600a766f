"""Content-addressed cache of decoded filters.

A query that tests every row against the same encoded filter would
otherwise decompress and rebuild the bit arrays once per row. The cache
keys decoded filters by the fixed header fields (integrity hash plus
parameters), which can be read without decoding, and keeps the most
recently used ones.

Thread safety: a single lock guards the LRU order and counters. Decoding
runs outside the lock, so a slow decode never blocks lookups of other
filters; if two threads decode the same filter concurrently, the first
insert wins and both get that instance. Cached filters are frozen and
shared without copying; evicting one only drops the cache's reference,
so a thread still holding it is unaffected.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict

from tiered_bloom.config import FilterConfig
from tiered_bloom.tiered_filter import TieredFilter
from tiered_bloom.wire_codec import WireCodec, read_header, unwrap_text

logger = logging.getLogger(__name__)


class FilterCache:
    """Bounded LRU mapping encoded filters to shared decoded instances.

    Args:
        codec: Codec used to decode misses
        capacity: Maximum number of decoded filters kept
        config: Defaults for the empty-filter sentinel
    """

    def __init__(self, codec: WireCodec | None = None, capacity: int = 40,
                 config: FilterConfig | None = None) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._codec = codec or WireCodec()
        self._capacity = capacity
        self._config = config or FilterConfig()
        self._entries: OrderedDict[tuple, TieredFilter] = OrderedDict()
        self._lock = threading.Lock()
        self._empty: TieredFilter | None = None
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def empty_filter(self) -> TieredFilter:
        """Frozen empty filter with the configured defaults, built once."""
        with self._lock:
            if self._empty is None:
                cfg = self._config
                self._empty = TieredFilter(cfg.expected_insertions, cfg.false_positive_rate,
                                           prefilter=cfg.prefilter_enabled,
                                           hash_family=cfg.hash_family).freeze()
            return self._empty

    def get_or_load(self, data: bytes | str | None, text: bool = False) -> TieredFilter:
        """Return the shared decoded filter for data, decoding on a miss.

        None or empty input yields the empty-filter sentinel, which is never
        stored under a hash key.

        Raises:
            CorruptEncoding: If data cannot be decoded
        """
        if not data:
            return self.empty_filter()
        if text:
            data = unwrap_text(data)
        key = read_header(data).cache_key

        with self._lock:
            bf = self._entries.get(key)
            if bf is not None:
                self._entries.move_to_end(key)
                self.hits += 1
                logger.debug(f"Filter cache hit for {key[0].hex()[:16]}")
                return bf
            self.misses += 1

        logger.debug(f"Filter cache miss for {key[0].hex()[:16]}, decoding {len(data)} bytes")
        bf = self._codec.decode(data).freeze()

        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                self._entries.move_to_end(key)
                return existing
            self._entries[key] = bf
            while len(self._entries) > self._capacity:
                evicted_key, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.info(f"Evicted filter {evicted_key[0].hex()[:16]} from cache")
        return bf

    def clear(self):
        with self._lock:
            self._entries.clear()
