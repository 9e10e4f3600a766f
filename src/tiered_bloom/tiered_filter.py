"""Two-tier bloom filter.

A small single-hash pre-filter sits in front of the accurate main filter.
Both tiers see every insert and every union, so the pre-filter holds a
superset of the main filter's members and a pre-filter miss is a definite
miss. Lookups on absent values, the common case for a membership test in a
join or a WHERE clause, pay for one hash probe instead of k.
"""

from __future__ import annotations

from tiered_bloom.bit_hash_set import BitHashSet
from tiered_bloom.config import DEFAULT_EXPECTED_INSERTIONS, DEFAULT_FALSE_POSITIVE_RATE
from tiered_bloom.errors import IncompatibleFilter, ReadOnlyFilter
from tiered_bloom.hash_family import HashFamily

PREFILTER_INSERTIONS_RATIO = 0.1
PREFILTER_MIN_INSERTIONS = 10
PREFILTER_FPP_MULTIPLIER = 10.0
PREFILTER_MAX_FPP = 0.5


def prefilter_parameters(expected_insertions: int, false_positive_rate: float) -> tuple[int, float]:
    """Pre-filter sizing: 10% of n (at least 10) at 10x p (at most 0.5)."""
    n = max(PREFILTER_MIN_INSERTIONS, int(expected_insertions * PREFILTER_INSERTIONS_RATIO))
    p = min(PREFILTER_MAX_FPP, false_positive_rate * PREFILTER_FPP_MULTIPLIER)
    return n, p


class TieredFilter:
    """Bloom filter with an optional single-hash pre-filter.

    Attributes:
        main (BitHashSet): The accurate filter sized for (n, p).
        prefilter (BitHashSet | None): Loose k=1 filter, present when enabled.
        prefilter_negatives (int): Lookups answered by the pre-filter alone. Not
            counted once the filter is frozen and shared between threads.

    Example:
        >>> bf = TieredFilter(1000, 0.01)
        >>> bf.put(b"a")
        >>> bf.might_contain(b"a")
        True
        >>> bf.might_contain(b"not-in-the-list")
        False

    """
    def __init__(self, expected_insertions: int = DEFAULT_EXPECTED_INSERTIONS,
                 false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE,
                 prefilter: bool = True, hash_family: HashFamily | str = "murmur3"):
        main = BitHashSet(expected_insertions, false_positive_rate, hash_family=hash_family)
        pre = None
        if prefilter:
            pre_n, pre_p = prefilter_parameters(expected_insertions, false_positive_rate)
            pre = BitHashSet(pre_n, pre_p, num_hashes=1, hash_family=main.hash_family)
        self._init_tiers(main, pre)

    def _init_tiers(self, main: BitHashSet, prefilter: BitHashSet | None):
        self.main = main
        self.prefilter = prefilter
        self.prefilter_negatives = 0
        self._frozen = False

    @classmethod
    def from_tiers(cls, main: BitHashSet, prefilter: BitHashSet | None = None) -> TieredFilter:
        """Assemble a filter from already-built tiers (used when decoding)."""
        bf = cls.__new__(cls)
        bf._init_tiers(main, prefilter)
        return bf

    @property
    def expected_insertions(self) -> int:
        return self.main.expected_insertions

    @property
    def false_positive_rate(self) -> float:
        return self.main.false_positive_rate

    @property
    def has_prefilter(self) -> bool:
        return self.prefilter is not None

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> TieredFilter:
        """Mark the filter read-only so it can be shared between threads."""
        self._frozen = True
        return self

    def _check_writable(self):
        if self._frozen:
            raise ReadOnlyFilter("Filter is shared read-only; mutate a copy() instead")

    def put(self, data: bytes):
        """Insert data into every tier. Empty values are ignored."""
        self._check_writable()
        self.main.insert(data)
        if self.prefilter is not None:
            self.prefilter.insert(data)

    def might_contain(self, data: bytes) -> bool:
        if self.prefilter is not None and not self.prefilter.might_contain(data):
            if not self._frozen:
                self.prefilter_negatives += 1
            return False
        return self.main.might_contain(data)

    def is_compatible(self, other: TieredFilter) -> bool:
        if self.expected_insertions != other.expected_insertions:
            return False
        if self.false_positive_rate != other.false_positive_rate:
            return False
        if not self.main.is_compatible(other.main):
            return False
        if self.prefilter is None or other.prefilter is None:
            return self.prefilter is None and other.prefilter is None
        return self.prefilter.is_compatible(other.prefilter)

    def union(self, other: TieredFilter) -> TieredFilter:
        """OR other into this filter, tier by tier. Returns self."""
        self._check_writable()
        # Check every tier before touching any, so a failed union leaves both sides intact
        if not self.is_compatible(other):
            raise IncompatibleFilter(
                f"Cannot union {self!r} with {other!r}: parameters or tier sizes differ"
            )
        self.main.union(other.main)
        if self.prefilter is not None:
            self.prefilter.union(other.prefilter)
        return self

    def estimated_size_bytes(self) -> int:
        """Main filter size in bytes, a pure function of (n, p)."""
        return self.main.estimated_size_bytes()

    def copy(self) -> TieredFilter:
        """Writable deep copy; the copy starts with a zero pre-filter counter."""
        pre = self.prefilter.copy() if self.prefilter is not None else None
        return TieredFilter.from_tiers(self.main.copy(), pre)

    def __eq__(self, other) -> bool:
        if not isinstance(other, TieredFilter):
            return NotImplemented
        return (self.expected_insertions == other.expected_insertions
                and self.false_positive_rate == other.false_positive_rate
                and self.main == other.main
                and self.prefilter == other.prefilter)

    def __repr__(self) -> str:
        return (f"TieredFilter(n={self.expected_insertions}, p={self.false_positive_rate}, "
                f"prefilter={self.has_prefilter}, family={self.main.hash_family.name})")
