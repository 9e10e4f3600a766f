"""Scalar functions exposed to the host query engine.

BloomFilterFunctions is the registration root the host plugin builds once:
it owns the decoded-filter cache, the codec and the transport, and every
scalar function the engine calls goes through it. Filter arguments arrive
either as a handle (a TieredFilter built in-process) or as the encoded bytes
the aggregation produced; encoded ones are decoded through the cache.

Errors are never turned into a NULL or a False: a corrupt filter value
fails the query.
"""

from __future__ import annotations

import logging
from typing import Union

import pyarrow as pa

from tiered_bloom.config import FilterConfig
from tiered_bloom.filter_cache import FilterCache
from tiered_bloom.tiered_filter import TieredFilter
from tiered_bloom.wire_codec import WireCodec
from tiered_bloom_sql.transport import HttpTransport, Transport

logger = logging.getLogger(__name__)

FilterHandle = TieredFilter
FilterValue = Union[TieredFilter, bytes, None]


def _to_bytes(value: bytes | str) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


class BloomFilterFunctions:
    """Host-facing bloom filter operations sharing one decode cache.

    Attributes:
        config (FilterConfig): Defaults for create and the empty sentinel.
        codec (WireCodec): Encoder/decoder for filter values.
        cache (FilterCache): Decoded filters keyed by their header.
        transport (Transport): Byte fetch/put used by load and persist.

    Example:
        >>> fns = BloomFilterFunctions(FilterConfig(expected_insertions=1000))
        >>> bf = fns.create()
        >>> fns.insert(bf, "robin")
        >>> encoded = fns.to_bytes(bf)
        >>> fns.might_contain(encoded, "robin")
        True

    """
    def __init__(self, config: FilterConfig | None = None, cache: FilterCache | None = None,
                 codec: WireCodec | None = None, transport: Transport | None = None):
        self.config = config or FilterConfig()
        self.codec = codec or WireCodec(self.config.compression_level)
        self.cache = cache or FilterCache(self.codec, self.config.cache_capacity, self.config)
        self.transport = transport or HttpTransport(timeout=self.config.http_timeout_seconds)

    def resolve(self, value: FilterValue) -> TieredFilter:
        """Handle for a filter argument, decoding encoded bytes through the cache."""
        if isinstance(value, TieredFilter):
            return value
        return self.cache.get_or_load(value)

    def create(self, expected_insertions: int | None = None,
               false_positive_rate: float | None = None) -> FilterHandle:
        cfg = self.config
        return TieredFilter(
            expected_insertions if expected_insertions is not None else cfg.expected_insertions,
            false_positive_rate if false_positive_rate is not None else cfg.false_positive_rate,
            prefilter=cfg.prefilter_enabled,
            hash_family=cfg.hash_family,
        )

    def insert(self, handle: FilterHandle, value: bytes | str | None):
        if value is None:
            return
        handle.put(_to_bytes(value))

    def union(self, left: FilterValue, right: FilterValue) -> FilterHandle:
        """New filter holding both inputs' members; the inputs are not modified."""
        return self.resolve(left).copy().union(self.resolve(right))

    def might_contain(self, bf: FilterValue, value: bytes | str | None) -> bool:
        """bloom_filter_contains: NULL values are never members."""
        handle = self.resolve(bf)
        if value is None:
            return False
        return handle.might_contain(_to_bytes(value))

    def contains_array(self, bf: FilterValue, values: pa.Array | pa.ChunkedArray) -> pa.BooleanArray:
        """Vectorized bloom_filter_contains over a string or binary column."""
        handle = self.resolve(bf)
        out = [
            handle.might_contain(_to_bytes(v)) if v is not None else False
            for v in values.to_pylist()
        ]
        return pa.array(out, type=pa.bool_())

    def to_bytes(self, bf: FilterValue) -> bytes:
        return self.codec.encode(self.resolve(bf))

    def to_text(self, bf: FilterValue) -> str:
        """to_string: base64 of the encoded filter."""
        return self.codec.encode_text(self.resolve(bf))

    def from_bytes(self, data: bytes) -> FilterHandle:
        """Writable filter decoded from bytes (not shared with the cache)."""
        return self.codec.decode(data)

    def from_text(self, text: str | bytes) -> FilterHandle:
        return self.codec.decode(text, text=True)

    def expected_insertions(self, bf: FilterValue) -> int:
        return self.resolve(bf).expected_insertions

    def false_positive_rate(self, bf: FilterValue) -> float:
        return self.resolve(bf).false_positive_rate

    def estimated_memory_bytes(self, bf: FilterValue) -> int:
        return self.resolve(bf).estimated_size_bytes()

    def persist(self, bf: FilterValue, url: str | None) -> bool:
        """bloom_filter_persist: PUT the base64 filter to url. A NULL url is a no-op."""
        if url is None:
            return True
        handle = self.resolve(bf)
        ok = self.transport.put(url, self.codec.encode_text(handle).encode("ascii"))
        logger.info(f"Persisted {handle!r} to {url}")
        return ok

    def load(self, url: str) -> FilterHandle:
        """Fetch and decode a filter persisted as base64 at url."""
        handle = self.codec.decode(self.transport.fetch(url), text=True)
        logger.info(f"Loaded {handle!r} from {url}")
        return handle
