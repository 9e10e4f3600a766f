"""Configuration for tiered bloom filters.

Defines the tunable defaults the host engine injects into filter
construction, caching and transport.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_EXPECTED_INSERTIONS = 10_000_000
DEFAULT_FALSE_POSITIVE_RATE = 0.01


@dataclass
class FilterConfig:
    """Configuration parameters for filter construction and lookup.

    Attributes:
        expected_insertions: Default number of elements a new filter is sized for
        false_positive_rate: Default target false positive rate (0 < rate < 1)
        prefilter_enabled: Whether new filters carry the single-hash pre-filter
        hash_family: Registered name of the hash family for new filters
        cache_capacity: Maximum number of decoded filters kept by the cache
        compression_level: gzip level used when encoding filter payloads
        http_timeout_seconds: Timeout for URL load/persist requests
    """

    expected_insertions: int = DEFAULT_EXPECTED_INSERTIONS
    false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE
    prefilter_enabled: bool = True
    hash_family: str = "murmur3"
    cache_capacity: int = 40
    compression_level: int = 6  # deflate default
    http_timeout_seconds: float = 10.0
