"""Exception hierarchy for tiered bloom filters.

Every error raised by the filter, its codec and its host glue derives from
BloomFilterError so callers can catch the whole family in one place.
"""

from __future__ import annotations


class BloomFilterError(Exception):
    """Base exception for all bloom filter errors."""
    pass


class InvalidParameter(BloomFilterError, ValueError):
    """Raised when expected insertions or false positive rate are out of range."""
    pass


class IncompatibleFilter(BloomFilterError):
    """Raised when two filters of different shape are unioned."""
    pass


class CorruptEncoding(BloomFilterError):
    """Raised when serialized filter bytes are truncated or undecodable."""
    pass


class ReadOnlyFilter(BloomFilterError):
    """Raised when a frozen (cache-shared) filter is mutated."""
    pass


class TransportFailure(BloomFilterError):
    """Raised when fetching or persisting a filter by URL fails.

    Attributes:
        url: The URL that was being fetched or written
        status_code: HTTP status, when the remote end answered at all
    """

    def __init__(self, message: str, url: str, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
