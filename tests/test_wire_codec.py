import base64
import gzip
import hashlib
import struct
import tracemalloc

import pytest
from hypothesis import given, settings, strategies as st

from tiered_bloom.bit_hash_set import optimal_num_bits, optimal_num_hashes
from tiered_bloom.errors import CorruptEncoding
from tiered_bloom.tiered_filter import TieredFilter
from tiered_bloom.wire_codec import WireCodec, read_hash, read_header


def build(items, n=100, p=0.01, **kwargs):
    bf = TieredFilter(n, p, **kwargs)
    for item in items:
        bf.put(item)
    return bf


def one_word_blob(n, p):
    """Well-formed single-tier blob whose payload holds one word whatever (n, p) declare."""
    k = optimal_num_hashes(n, optimal_num_bits(n, p))
    raw = struct.pack(">BBi", 1, k, 1) + b"\x00" * 8
    payload = gzip.compress(raw, mtime=0)
    return struct.pack(">32siid", hashlib.sha256(raw).digest(), len(payload), n, p) + payload


class TestWireCodec:
    @settings(max_examples=30, deadline=None)
    @given(st.lists(st.binary(min_size=1), max_size=100),
           st.lists(st.binary(min_size=1), max_size=50),
           st.booleans(),
           st.sampled_from(["murmur3", "blake2b"]))
    def test_decoded_filter_answers_like_source(self, items, probes, prefilter, family):
        codec = WireCodec()
        bf = build(items, prefilter=prefilter, hash_family=family)
        decoded = codec.decode(codec.encode(bf))
        assert decoded == bf
        assert decoded.expected_insertions == 100
        assert decoded.false_positive_rate == 0.01
        assert decoded.has_prefilter == prefilter
        assert decoded.main.hash_family.name == family
        for x in items + probes:
            assert decoded.might_contain(x) == bf.might_contain(x)

    def test_single_tier_layout(self):
        bf = build([b"robin"], prefilter=False)
        data = WireCodec().encode(bf)
        digest, payload_len, n, p = struct.unpack_from(">32siid", data)
        assert len(data) == 48 + payload_len
        assert (n, p) == (100, 0.01)
        raw = gzip.decompress(data[48:])
        assert digest == hashlib.sha256(raw).digest()
        family_id, k, words = struct.unpack_from(">BBi", raw)
        assert (family_id, k, words) == (1, 7, 15)
        assert len(raw) == 6 + 8 * words

    def test_two_tier_layout(self):
        bf = build([b"robin"])
        data = WireCodec().encode(bf)
        digest, payload_len, pre_len, n, p = struct.unpack_from(">32siiid", data)
        assert len(data) == 52 + payload_len + pre_len
        assert (n, p) == (100, 0.01)
        raw_main = gzip.decompress(data[52:52 + payload_len])
        raw_pre = gzip.decompress(data[52 + payload_len:])
        assert digest == hashlib.sha256(raw_main).digest()
        assert struct.unpack_from(">BBi", raw_pre)[1] == 1

        header = read_header(data)
        assert header.two_tier
        assert header.integrity_hash == digest
        assert header.prefilter_payload_length == pre_len

    def test_encoding_is_deterministic(self):
        codec = WireCodec()
        a = codec.encode(build([b"robin", b"verlangen"]))
        b = codec.encode(build([b"verlangen", b"robin"]))
        assert a == b
        assert read_hash(a) == read_hash(a) == read_hash(b)

    def test_hash_depends_only_on_main_bits(self):
        codec = WireCodec()
        with_pre = codec.encode(build([b"robin"], prefilter=True))
        without_pre = codec.encode(build([b"robin"], prefilter=False))
        assert with_pre != without_pre
        assert read_hash(with_pre) == read_hash(without_pre)
        assert read_hash(codec.encode(build([b"robin"]))) != read_hash(codec.encode(build([b"verlangen"])))

    def test_empty_default_filters_share_hash(self):
        codec = WireCodec()
        assert read_hash(codec.encode(TieredFilter())) == read_hash(codec.encode(TieredFilter()))

    def test_text_round_trip(self):
        codec = WireCodec()
        bf = build([b"robin"])
        text = codec.encode_text(bf)
        assert base64.b64decode(text) == codec.encode(bf)
        assert codec.decode(text, text=True) == bf
        assert codec.decode(text.encode("ascii") + b"\n", text=True) == bf

    @pytest.mark.parametrize("mangle", [
        lambda d: b"",
        lambda d: d[:20],
        lambda d: d[:47],
        lambda d: d[:-1],
        lambda d: d + b"\x00",
    ])
    def test_truncated_or_padded_input(self, mangle):
        data = WireCodec().encode(build([b"robin"]))
        with pytest.raises(CorruptEncoding):
            WireCodec().decode(mangle(data))

    @pytest.mark.parametrize("prefilter", [True, False])
    def test_corrupt_payload_is_reported(self, prefilter):
        data = bytearray(WireCodec().encode(build([b"robin"], prefilter=prefilter)))
        offset = 52 if prefilter else 48
        for i in range(offset + 10, offset + 20):
            data[i] ^= 0xFF
        with pytest.raises(CorruptEncoding):
            WireCodec().decode(bytes(data))

    def test_header_parameters_must_match_payload(self):
        data = bytearray(WireCodec().encode(build([b"robin"], prefilter=False)))
        struct.pack_into(">i", data, 36, 1000)
        with pytest.raises(CorruptEncoding):
            WireCodec().decode(bytes(data))

    def test_invalid_header_parameters(self):
        data = bytearray(WireCodec().encode(build([b"robin"], prefilter=False)))
        struct.pack_into(">d", data, 40, 2.0)
        with pytest.raises(CorruptEncoding):
            WireCodec().decode(bytes(data))

    def test_integrity_hash_mismatch(self):
        data = bytearray(WireCodec().encode(build([b"robin"])))
        data[0] ^= 0xFF
        with pytest.raises(CorruptEncoding):
            WireCodec().decode(bytes(data))

    def test_bad_text_input(self):
        codec = WireCodec()
        with pytest.raises(CorruptEncoding):
            codec.decode("not base64!!", text=True)
        with pytest.raises(CorruptEncoding):
            codec.decode(codec.encode_text(build([b"robin"])))

    def test_read_hash_short_input(self):
        with pytest.raises(CorruptEncoding):
            read_hash(b"\x00" * 31)

    @pytest.mark.parametrize("n, p", [
        (200_000_000, 0.01),
        (2**31 - 1, 2.0 ** -200),
    ])
    def test_oversized_declaration_fails_before_allocating(self, n, p):
        data = one_word_blob(n, p)
        assert len(data) < 100
        tracemalloc.start()
        try:
            with pytest.raises(CorruptEncoding):
                WireCodec().decode(data)
            _, peak = tracemalloc.get_traced_memory()
        finally:
            tracemalloc.stop()
        assert peak < 1_000_000

    @settings(max_examples=300)
    @given(st.binary(max_size=200))
    def test_arbitrary_bytes(self, data):
        try:
            bf = WireCodec().decode(data)
        except CorruptEncoding:
            return
        assert isinstance(bf, TieredFilter)

    @settings(max_examples=300, deadline=None)
    @given(st.data(), st.integers(1, 255))
    def test_single_byte_mutations(self, data, mask):
        encoded = bytearray(WireCodec().encode(build([b"robin", b"verlangen"])))
        # bias towards the length and parameter fields of the header
        index = data.draw(st.one_of(st.integers(32, 51), st.integers(0, len(encoded) - 1)))
        encoded[index] ^= mask
        try:
            bf = WireCodec().decode(bytes(encoded))
        except CorruptEncoding:
            return
        assert isinstance(bf, TieredFilter)

# --------------------------
# Running Tests
# --------------------------
#if __name__ == "__main__":
#    pytest.main([
#        "-v",
#        "--hypothesis-show-statistics",
#        "--cov=tiered_bloom",
#        "--cov-report=html:coverage"
#    ])
# --------------------------
