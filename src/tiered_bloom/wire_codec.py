"""Binary wire format for tiered bloom filters.

Layout (big-endian), single-tier:

    [32B sha256][4B payload_len][4B expected_insertions][8B fpp][payload]

Two-tier inserts [4B prefilter_payload_len] after payload_len and appends
the pre-filter payload after the main one. The variant is recognised from
the lengths alone: a blob is single-tier iff it is exactly 48 + payload_len
bytes long and two-tier iff it is exactly 52 + payload_len +
prefilter_payload_len bytes long; the two equations cannot both hold.

Each payload is the gzip of a raw bit-array encoding:

    [1B hash family id][1B k][4B word count W][W x 8B big-endian words]

The sha256 covers the uncompressed raw encoding of the main filter only.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import hashlib
import logging
import struct
import zlib
from dataclasses import dataclass

from tiered_bloom.bit_hash_set import BitHashSet, optimal_num_bits, optimal_num_hashes, validate_parameters
from tiered_bloom.errors import CorruptEncoding, InvalidParameter
from tiered_bloom.hash_family import hash_family_for_id
from tiered_bloom.tiered_filter import TieredFilter, prefilter_parameters

logger = logging.getLogger(__name__)

HASH_SIZE = 32
_SINGLE_HEADER = struct.Struct(">32siid")
_TIERED_HEADER = struct.Struct(">32siiid")
_RAW_HEADER = struct.Struct(">BBi")


@dataclass(frozen=True)
class WireHeader:
    """Fixed-width fields at the front of an encoded filter."""
    integrity_hash: bytes
    payload_length: int
    prefilter_payload_length: int | None
    expected_insertions: int
    false_positive_rate: float

    @property
    def two_tier(self) -> bool:
        return self.prefilter_payload_length is not None

    @property
    def size(self) -> int:
        return _TIERED_HEADER.size if self.two_tier else _SINGLE_HEADER.size

    @property
    def cache_key(self) -> tuple[bytes, int, float, bool]:
        return (self.integrity_hash, self.expected_insertions, self.false_positive_rate, self.two_tier)


def read_hash(data: bytes) -> bytes:
    """The 32-byte integrity hash, without decoding anything else."""
    if len(data) < HASH_SIZE:
        raise CorruptEncoding(f"Encoded filter is {len(data)} bytes, shorter than its {HASH_SIZE}-byte hash")
    return bytes(data[:HASH_SIZE])


def read_header(data: bytes) -> WireHeader:
    """Parse and length-check the header of an encoded filter."""
    if len(data) < _SINGLE_HEADER.size:
        raise CorruptEncoding(f"Encoded filter is {len(data)} bytes, shorter than its header")
    digest, payload_len, n, fpp = _SINGLE_HEADER.unpack_from(data)
    if payload_len < 0:
        raise CorruptEncoding(f"Negative payload length {payload_len}")
    if len(data) == _SINGLE_HEADER.size + payload_len:
        return WireHeader(digest, payload_len, None, n, fpp)

    if len(data) < _TIERED_HEADER.size:
        raise CorruptEncoding(f"Declared payload of {payload_len} bytes exceeds the {len(data)} available")
    digest, payload_len, pre_len, n, fpp = _TIERED_HEADER.unpack_from(data)
    if pre_len < 0:
        raise CorruptEncoding(f"Negative pre-filter payload length {pre_len}")
    declared = _TIERED_HEADER.size + payload_len + pre_len
    if declared > len(data):
        raise CorruptEncoding(f"Declared payloads of {declared} bytes exceed the {len(data)} available")
    if declared < len(data):
        raise CorruptEncoding(f"{len(data) - declared} trailing bytes after encoded filter")
    return WireHeader(digest, payload_len, pre_len, n, fpp)


def unwrap_text(text: str | bytes) -> bytes:
    """Strip the base64 wrapping used on text-only channels."""
    try:
        if isinstance(text, str):
            text = text.encode("ascii")
        return base64.b64decode(bytes(text).strip(), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise CorruptEncoding(f"Encoded filter is not valid base64: {exc}") from exc


class WireCodec:
    """Encodes TieredFilter instances to bytes and back.

    Encoding is deterministic: gzip is written without a timestamp, so the
    same filter content always produces the same bytes.

    Attributes:
        compression_level (int): gzip level, 1 (fast) to 9 (small).

    Example:
        >>> codec = WireCodec()
        >>> bf = TieredFilter(100, 0.01)
        >>> bf.put(b"robin")
        >>> codec.decode(codec.encode(bf)).might_contain(b"robin")
        True

    """
    def __init__(self, compression_level: int = 6):
        self.compression_level = compression_level

    def _encode_tier(self, bits: BitHashSet) -> bytes:
        raw = _RAW_HEADER.pack(bits.hash_family.family_id, bits.num_hashes, bits.num_words)
        return raw + bits.to_words()

    def _compress(self, raw: bytes) -> bytes:
        return gzip.compress(raw, compresslevel=self.compression_level, mtime=0)

    def encode(self, bf: TieredFilter) -> bytes:
        """Serialize bf to the binary wire format."""
        raw_main = self._encode_tier(bf.main)
        digest = hashlib.sha256(raw_main).digest()
        payload = self._compress(raw_main)
        if bf.prefilter is None:
            header = _SINGLE_HEADER.pack(digest, len(payload), bf.expected_insertions, bf.false_positive_rate)
            out = header + payload
        else:
            pre_payload = self._compress(self._encode_tier(bf.prefilter))
            header = _TIERED_HEADER.pack(digest, len(payload), len(pre_payload),
                                         bf.expected_insertions, bf.false_positive_rate)
            out = header + payload + pre_payload
        logger.debug(f"Encoded {bf!r}: {len(raw_main)} raw bytes, {len(out)} on the wire")
        return out

    def encode_text(self, bf: TieredFilter) -> str:
        """Serialize bf and wrap it in base64."""
        return base64.b64encode(self.encode(bf)).decode("ascii")

    def decode(self, data: bytes | str, text: bool = False) -> TieredFilter:
        """Rebuild a filter from its wire form.

        Args:
            data: Encoded filter, raw or base64-wrapped
            text: True when data is base64-wrapped

        Raises:
            CorruptEncoding: On truncation, bad lengths, undecompressable
                payloads, or a payload that disagrees with its header
        """
        if text:
            data = unwrap_text(data)
        elif isinstance(data, str):
            raise CorruptEncoding("Raw filter encoding must be bytes; pass text=True for base64")
        header = read_header(data)
        n, fpp = header.expected_insertions, header.false_positive_rate
        try:
            validate_parameters(n, fpp)
        except InvalidParameter as exc:
            raise CorruptEncoding(f"Header carries invalid parameters: {exc}") from exc

        start = header.size
        end = start + header.payload_length
        raw_main = self._decompress(data[start:end])
        if hashlib.sha256(raw_main).digest() != header.integrity_hash:
            raise CorruptEncoding("Integrity hash does not match main filter payload")
        main = self._decode_tier(raw_main, n, fpp, None)

        prefilter = None
        if header.two_tier:
            raw_pre = self._decompress(data[end:end + header.prefilter_payload_length])
            pre_n, pre_fpp = prefilter_parameters(n, fpp)
            prefilter = self._decode_tier(raw_pre, pre_n, pre_fpp, 1)
            if prefilter.hash_family.family_id != main.hash_family.family_id:
                raise CorruptEncoding("Pre-filter and main filter use different hash families")

        bf = TieredFilter.from_tiers(main, prefilter)
        logger.debug(f"Decoded {bf!r} from {len(data)} bytes")
        return bf

    def _decompress(self, payload: bytes) -> bytes:
        try:
            return gzip.decompress(payload)
        except (OSError, EOFError, zlib.error) as exc:
            raise CorruptEncoding(f"Cannot decompress filter payload: {exc}") from exc

    def _decode_tier(self, raw: bytes, n: int, fpp: float, num_hashes: int | None) -> BitHashSet:
        if len(raw) < _RAW_HEADER.size:
            raise CorruptEncoding(f"Bit array encoding is {len(raw)} bytes, shorter than its header")
        family_id, k, num_words = _RAW_HEADER.unpack_from(raw)
        family = hash_family_for_id(family_id)
        if family is None:
            raise CorruptEncoding(f"Unknown hash family id {family_id}")
        words = raw[_RAW_HEADER.size:]
        if num_words < 0 or len(words) != num_words * 8:
            raise CorruptEncoding(f"Declared {num_words} words but found {len(words)} bytes")
        num_bits = optimal_num_bits(n, fpp)
        expected_words = (num_bits + 63) // 64
        if num_words != expected_words:
            raise CorruptEncoding(f"Bit array has {num_words} words, expected {expected_words} for n={n}, p={fpp}")
        if num_hashes is None:
            num_hashes = optimal_num_hashes(n, num_bits)
        if k != num_hashes:
            raise CorruptEncoding(f"Bit array uses {k} hash functions, expected {num_hashes} for n={n}, p={fpp}")
        try:
            return BitHashSet.from_words(n, fpp, k, family, words)
        except ValueError as exc:
            raise CorruptEncoding(f"Bit array does not match n={n}, p={fpp}: {exc}") from exc
