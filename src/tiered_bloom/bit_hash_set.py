import math

import numpy as np

from tiered_bloom.errors import IncompatibleFilter, InvalidParameter
from tiered_bloom.hash_family import HashFamily, get_hash_family

# ln(1 / 2^ln2), the denominator of the optimal bit count formula
BF_MEM_CONSTANT = math.log(1.0 / (2.0 ** math.log(2.0)))

# Expected insertions travel as a signed 32-bit field on the wire
MAX_EXPECTED_INSERTIONS = 2**31 - 1


def validate_parameters(expected_insertions: int, false_positive_rate: float):
    """Reject parameters no filter can be built for."""
    if not isinstance(expected_insertions, int) or isinstance(expected_insertions, bool):
        raise InvalidParameter(f"expected_insertions must be an integer, got {expected_insertions!r}")
    if not 1 <= expected_insertions <= MAX_EXPECTED_INSERTIONS:
        raise InvalidParameter(
            f"expected_insertions must be in [1, {MAX_EXPECTED_INSERTIONS}], got {expected_insertions}"
        )
    if not 0.0 < false_positive_rate < 1.0:
        raise InvalidParameter(f"false_positive_rate must be in (0, 1), got {false_positive_rate}")


def optimal_num_bits(expected_insertions: int, false_positive_rate: float) -> int:
    """m = ceil(n * ln(p) / ln(1 / 2^ln2))"""
    return math.ceil((expected_insertions * math.log(false_positive_rate)) / BF_MEM_CONSTANT)


def optimal_num_hashes(expected_insertions: int, num_bits: int) -> int:
    """k = round((m / n) * ln2), at least 1"""
    return max(1, math.floor(num_bits / expected_insertions * math.log(2) + 0.5))


def estimated_size_bytes(expected_insertions: int, false_positive_rate: float) -> int:
    """Bit array size in bytes, rounded half up, for a filter sized for (n, p)."""
    validate_parameters(expected_insertions, false_positive_rate)
    return (optimal_num_bits(expected_insertions, false_positive_rate) + 4) // 8


class BitHashSet:
    """A bit array probed by k derived hash positions.

    Bits are kept in a ``bytearray`` laid out as little-endian 64-bit words
    (bit i lives in byte i >> 3), with a NumPy view over the same memory for
    whole-array operations such as union and population count. Single-value
    inserts and lookups touch the bytearray directly.

    Attributes:
        expected_insertions (int): Number of elements the filter is sized for.
        false_positive_rate (float): Target false positive rate at that size.
        num_bits (int): Size m of the bit array, from the optimal sizing formula.
        num_hashes (int): Number of positions k probed per value.
        hash_family (HashFamily): Strategy that turns a value into positions.

    Example:
        >>> bits = BitHashSet(100, 0.01)
        >>> bits.insert(b"robin")
        >>> bits.might_contain(b"robin")
        True
        >>> bits.might_contain(b"verlangen")
        False

    """
    def __init__(self, expected_insertions: int, false_positive_rate: float,
                 num_hashes: int | None = None, hash_family: HashFamily | str = "murmur3"):
        self._init_shape(expected_insertions, false_positive_rate, num_hashes, hash_family)
        self._set_bits(bytearray(self.num_words * 8))

    def _init_shape(self, expected_insertions: int, false_positive_rate: float,
                    num_hashes: int | None, hash_family: HashFamily | str):
        validate_parameters(expected_insertions, false_positive_rate)
        self.expected_insertions = expected_insertions
        self.false_positive_rate = float(false_positive_rate)
        self.num_bits = optimal_num_bits(expected_insertions, false_positive_rate)
        if num_hashes is None:
            num_hashes = optimal_num_hashes(expected_insertions, self.num_bits)
        if not 1 <= num_hashes <= 255:
            raise InvalidParameter(f"num_hashes must be in [1, 255], got {num_hashes}")
        self.num_hashes = num_hashes
        if isinstance(hash_family, str):
            hash_family = get_hash_family(hash_family)
        self.hash_family = hash_family

    def _set_bits(self, bits: bytearray):
        self._bits = bits
        self._view = np.frombuffer(self._bits, dtype=np.uint8)

    @classmethod
    def from_words(cls, expected_insertions: int, false_positive_rate: float, num_hashes: int,
                   hash_family: HashFamily, words: bytes) -> "BitHashSet":
        """Rebuild a set from big-endian 64-bit words.

        The length of words is checked against the (n, p) sizing before any
        bit array is allocated.
        """
        bits = cls.__new__(cls)
        bits._init_shape(expected_insertions, false_positive_rate, num_hashes, hash_family)
        if len(words) != bits.num_words * 8:
            raise ValueError(f"Expected {bits.num_words} words, got {len(words) / 8:g}")
        be_words = np.frombuffer(words, dtype=">u8")
        bits._set_bits(bytearray(be_words.astype("<u8").tobytes()))
        return bits

    @property
    def num_words(self) -> int:
        return (self.num_bits + 63) // 64

    def to_words(self) -> bytes:
        """Bit array as big-endian 64-bit words."""
        return np.frombuffer(self._bits, dtype="<u8").astype(">u8").tobytes()

    def insert(self, data: bytes):
        """Set the k positions for data. Empty values are ignored."""
        if not data:
            return
        bits = self._bits
        for pos in self.hash_family.derive_positions(data, self.num_hashes, self.num_bits):
            bits[pos >> 3] |= 1 << (pos & 7)

    def might_contain(self, data: bytes) -> bool:
        """True if every position for data is set; False means definitely absent."""
        if not data:
            return False
        bits = self._bits
        for pos in self.hash_family.derive_positions(data, self.num_hashes, self.num_bits):
            if not bits[pos >> 3] & (1 << (pos & 7)):
                return False
        return True

    def is_compatible(self, other: "BitHashSet") -> bool:
        return (self.num_bits == other.num_bits
                and self.num_hashes == other.num_hashes
                and self.hash_family.family_id == other.hash_family.family_id)

    def union(self, other: "BitHashSet"):
        """OR other's bits into this set in place."""
        if not self.is_compatible(other):
            raise IncompatibleFilter(
                f"Cannot union filters of shape (m={self.num_bits}, k={self.num_hashes}, "
                f"{self.hash_family.name}) and (m={other.num_bits}, k={other.num_hashes}, "
                f"{other.hash_family.name})"
            )
        np.bitwise_or(self._view, other._view, out=self._view)

    def bit_count(self) -> int:
        """Number of set bits."""
        return int(np.bitwise_count(self._view).sum())

    def estimated_size_bytes(self) -> int:
        return (self.num_bits + 4) // 8

    def copy(self) -> "BitHashSet":
        clone = BitHashSet.__new__(BitHashSet)
        clone.expected_insertions = self.expected_insertions
        clone.false_positive_rate = self.false_positive_rate
        clone.num_bits = self.num_bits
        clone.num_hashes = self.num_hashes
        clone.hash_family = self.hash_family
        clone._set_bits(bytearray(self._bits))
        return clone

    def __eq__(self, other) -> bool:
        if not isinstance(other, BitHashSet):
            return NotImplemented
        return self.is_compatible(other) and self._bits == other._bits

    def __repr__(self) -> str:
        return (f"BitHashSet(m={self.num_bits}, k={self.num_hashes}, "
                f"family={self.hash_family.name}, set_bits={self.bit_count()})")
