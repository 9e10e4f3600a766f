"""Hash families that map a byte value to k bit positions.

Both families derive two 64-bit halves from a single 128-bit digest and
expand them with Kirsch-Mitzenmacher double hashing, so a filter pays one
digest per value regardless of k.

References:
    Kirsch & Mitzenmacher, "Less hashing, same performance", 2006.
"""

from __future__ import annotations

import hashlib
from typing import Protocol

import mmh3

from tiered_bloom.errors import InvalidParameter

_MASK_64 = 0xFFFF_FFFF_FFFF_FFFF
_MAX_LONG = 0x7FFF_FFFF_FFFF_FFFF


class HashFamily(Protocol):
    """Derives deterministic bit positions in [0, m) for a value."""

    family_id: int
    name: str

    def derive_positions(self, data: bytes, k: int, m: int) -> list[int]:
        """Return k bit positions for data."""
        ...


def _double_hash(h1: int, h2: int, k: int, m: int) -> list[int]:
    # 64-bit wraparound, sign bit masked off
    combined = h1
    positions = []
    for _ in range(k):
        positions.append((combined & _MAX_LONG) % m)
        combined = (combined + h2) & _MASK_64
    return positions


class Murmur3HashFamily:
    """MurmurHash3 x64 128-bit, split into two 64-bit halves.

    Follows the position scheme of Guava's MURMUR128_MITZ_64 strategy.
    """

    family_id = 1
    name = "murmur3"

    def derive_positions(self, data: bytes, k: int, m: int) -> list[int]:
        h1, h2 = mmh3.hash64(data, seed=0, x64arch=True, signed=False)
        return _double_hash(h1, h2, k, m)


class Blake2bHashFamily:
    """16-byte BLAKE2b digest, split into two little-endian 64-bit halves."""

    family_id = 2
    name = "blake2b"

    def derive_positions(self, data: bytes, k: int, m: int) -> list[int]:
        digest = hashlib.blake2b(data, digest_size=16).digest()
        h1 = int.from_bytes(digest[:8], "little")
        h2 = int.from_bytes(digest[8:], "little")
        return _double_hash(h1, h2, k, m)


_FAMILIES: dict[str, HashFamily] = {
    Murmur3HashFamily.name: Murmur3HashFamily(),
    Blake2bHashFamily.name: Blake2bHashFamily(),
}
_FAMILIES_BY_ID: dict[int, HashFamily] = {f.family_id: f for f in _FAMILIES.values()}


def get_hash_family(name: str) -> HashFamily:
    """Look up a registered hash family by name."""
    try:
        return _FAMILIES[name]
    except KeyError:
        raise InvalidParameter(f"Unknown hash family: {name!r}") from None


def hash_family_for_id(family_id: int) -> HashFamily | None:
    """Look up a registered hash family by its wire id."""
    return _FAMILIES_BY_ID.get(family_id)
