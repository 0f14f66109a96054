"""
Strict encoding and content-id tests.

Identifiers are hashes over the strict encoding, so these tests pin the wire
rules: little-endian integers, length prefixes, canonical collection order and
overflow reporting.
"""

import hashlib

import pytest

from bpro.core import canonical_json_bytes, normalize_hex32, tagged_hash
from bpro.rgb.encoding import (
    EncodingLimits,
    StrictEncoder,
    encode_genesis,
    encode_seal,
    encode_transition,
)
from bpro.rgb.errors import EncodingOverflow
from bpro.rgb.schema import rgb20_schema
from bpro.rgb.types import (
    AMOUNT_MAX,
    Assignment,
    Genesis,
    Outpoint,
    Right,
    SealDefinition,
    SealMethod,
    Transition,
    TransitionKind,
)

from conftest import seal_at, txid


def _genesis(**overrides):
    fields = dict(
        schema_id=rgb20_schema().schema_id,
        ticker="TKN",
        name="Token",
        precision=8,
        issue_limit=1000,
        assignments=(Assignment(seal_at(1), 1000),),
        created_at=1700000000,
    )
    fields.update(overrides)
    return Genesis(**fields)


# =============================================================================
# PRIMITIVES
# =============================================================================

class TestStrictEncoder:
    """Tests for the byte-level writer."""

    def test_integers_are_little_endian(self):
        enc = StrictEncoder()
        enc.u8(1).u16(0x0102).u32(0x01020304).u64(1)
        assert enc.getvalue() == (
            b"\x01" + b"\x02\x01" + b"\x04\x03\x02\x01" + b"\x01" + b"\x00" * 7
        )

    def test_integer_out_of_range_overflows(self):
        with pytest.raises(EncodingOverflow) as exc:
            StrictEncoder().u8(256, "precision")
        assert exc.value.field == "precision"
        assert exc.value.limit == 0xFF

    def test_bool_is_not_an_integer(self):
        with pytest.raises(TypeError):
            StrictEncoder().u8(True)

    def test_string_prefix_counts_utf8_bytes(self):
        enc = StrictEncoder()
        enc.str8("é", "name")
        assert enc.getvalue() == b"\x02" + "é".encode("utf-8")

    def test_string_beyond_declared_limit_overflows(self):
        with pytest.raises(EncodingOverflow) as exc:
            StrictEncoder().str8("ABCDEFGHI", "ticker", limit=8)
        assert exc.value.size == 9
        assert exc.value.limit == 8

    def test_u8_prefix_caps_declared_limit(self):
        with pytest.raises(EncodingOverflow) as exc:
            StrictEncoder().str8("x" * 300, "name", limit=1000)
        assert exc.value.limit == 0xFF


class TestTaggedHash:

    def test_tags_separate_domains(self):
        assert tagged_hash("seal", b"abc") != tagged_hash("genesis", b"abc")
        assert tagged_hash("seal", b"abc") == tagged_hash("seal", b"abc")

    def test_canonical_json_rejects_floats(self):
        with pytest.raises(ValueError):
            canonical_json_bytes({"amount": 1.5})

    def test_canonical_json_sorts_keys(self):
        assert canonical_json_bytes({"b": 1, "a": 2}) == b'{"a":2,"b":1}'

    def test_normalize_hex32(self):
        assert normalize_hex32(" " + "AB" * 32 + " ") == "ab" * 32
        with pytest.raises(ValueError):
            normalize_hex32("abc")


# =============================================================================
# SEALS AND IDS
# =============================================================================

class TestSealEncoding:

    def test_bound_seal_layout(self):
        seal = SealDefinition(vout=2, txid=txid(5), method=SealMethod.OPRET, blinding=7)
        raw = encode_seal(seal)
        assert len(raw) == 1 + 1 + 32 + 4 + 8
        assert raw[0] == 0          # opret
        assert raw[1] == 1          # bound
        assert raw[2:34] == bytes.fromhex(txid(5))
        assert raw[34:38] == b"\x02\x00\x00\x00"

    def test_deferred_seal_is_unbound(self):
        seal = SealDefinition.deferred(1, blinding=9)
        raw = encode_seal(seal)
        assert raw[1] == 0
        assert raw[2:34] == b"\x00" * 32
        assert seal.is_deferred
        assert seal.outpoint is None

    def test_blinding_distinguishes_same_outpoint(self):
        op = Outpoint(txid(1), 0)
        a = SealDefinition.at(op, blinding=1)
        b = SealDefinition.at(op, blinding=2)
        assert a.seal_id != b.seal_id
        assert len(a.seal_id) == 64

    def test_seal_id_is_stable(self):
        seal = SealDefinition(vout=0, txid=txid(1), blinding=42)
        assert seal.seal_id == SealDefinition.from_dict(seal.to_dict()).seal_id

    def test_outpoint_parse(self):
        op = Outpoint.parse(f"{txid(3)}:4")
        assert op == Outpoint(txid(3), 4)
        assert str(op) == f"{txid(3)}:4"
        with pytest.raises(ValueError):
            Outpoint.parse("nocolon")
        with pytest.raises(ValueError):
            Outpoint(txid(3), -1)


class TestContentIds:

    def test_contract_id_is_deterministic(self):
        assert _genesis().contract_id == _genesis().contract_id

    def test_contract_id_depends_on_nonce(self):
        assert _genesis(nonce=1).contract_id != _genesis(nonce=2).contract_id

    def test_assignment_order_does_not_change_contract_id(self):
        a, b = Assignment(seal_at(1), 400), Assignment(seal_at(2), 600)
        assert _genesis(assignments=(a, b)).contract_id == _genesis(assignments=(b, a)).contract_id

    def test_input_order_does_not_change_transition_id(self):
        cid = _genesis().contract_id
        s1, s2 = seal_at(1).seal_id, seal_at(2).seal_id
        out = (Assignment(seal_at(3), 10),)
        t1 = Transition(cid, TransitionKind.TRANSFER, (s1, s2), out)
        t2 = Transition(cid, TransitionKind.TRANSFER, (s2, s1), out)
        assert t1.transition_id == t2.transition_id

    def test_metadata_is_committed(self):
        cid = _genesis().contract_id
        inputs = (seal_at(1).seal_id,)
        t1 = Transition(cid, TransitionKind.BURN, inputs, metadata={"burned": 5})
        t2 = Transition(cid, TransitionKind.BURN, inputs, metadata={"burned": 6})
        assert t1.transition_id != t2.transition_id

    def test_right_is_committed(self):
        seal = seal_at(1)
        g1 = _genesis(assignments=(Assignment(seal, 10, Right.ASSET),))
        g2 = _genesis(assignments=(Assignment(seal, 10, Right.INFLATION),))
        assert g1.contract_id != g2.contract_id


class TestEncodingLimits:

    def test_schema_limits_bound_genesis_fields(self):
        genesis = _genesis(ticker="T" * 9)
        with pytest.raises(EncodingOverflow) as exc:
            encode_genesis(genesis, EncodingLimits(max_ticker_len=8))
        assert exc.value.field == "genesis.ticker"

    def test_input_count_limit(self):
        cid = _genesis().contract_id
        t = Transition(cid, TransitionKind.TRANSFER, (seal_at(1).seal_id, seal_at(2).seal_id))
        with pytest.raises(EncodingOverflow):
            encode_transition(t, EncodingLimits(max_inputs=1))

    def test_amount_beyond_u64_rejected(self):
        with pytest.raises(ValueError):
            Assignment(seal_at(1), AMOUNT_MAX + 1)
        with pytest.raises(TypeError):
            Assignment(seal_at(1), True)

    def test_metadata_values_restricted(self):
        with pytest.raises(TypeError):
            Transition(_genesis().contract_id, TransitionKind.BURN, (seal_at(1).seal_id,),
                       metadata={"burned": 1.5})


# =============================================================================
# KNOWN-ANSWER VECTORS
# =============================================================================

def _reference_tagged(tag, msg):
    """Tagged hash written out from its definition, independent of bpro.core."""
    h = hashlib.sha256(b"urn:bpro:rgb:" + tag.encode("ascii")).digest()
    return hashlib.sha256(h + h + msg).digest()


# tapret, bound to #1:0, blinding 1001
SEAL_A = SealDefinition(vout=0, txid=txid(1), method=SealMethod.TAPRET, blinding=1001)
SEAL_A_BYTES = bytes.fromhex(
    "01" "01"
    "0000000000000000000000000000000000000000000000000000000000000001"
    "00000000"
    "e903000000000000"
)

# opret, deferred to witness output 1, blinding 7
SEAL_B = SealDefinition.deferred(1, method=SealMethod.OPRET, blinding=7)
SEAL_B_BYTES = bytes.fromhex(
    "00" "00"
    "0000000000000000000000000000000000000000000000000000000000000000"
    "01000000"
    "0700000000000000"
)


class TestKnownAnswers:
    """Byte layouts an independent implementation must reproduce exactly."""

    def test_tagged_hash_definition(self):
        assert tagged_hash("seal", b"") == _reference_tagged("seal", b"")
        assert tagged_hash("bundle-leaf", b"abc") == _reference_tagged("bundle-leaf", b"abc")

    def test_seal_vectors(self):
        assert encode_seal(SEAL_A) == SEAL_A_BYTES
        assert encode_seal(SEAL_B) == SEAL_B_BYTES
        assert SEAL_A.seal_id == _reference_tagged("seal", SEAL_A_BYTES).hex()
        assert SEAL_B.seal_id == _reference_tagged("seal", SEAL_B_BYTES).hex()

    def test_genesis_vector(self):
        genesis = Genesis(
            schema_id="11" * 32,
            ticker="TKN",
            name="Token",
            precision=8,
            issue_limit=1000,
            created_at=1700000000,
            assignments=(Assignment(SEAL_A, 1000),),
        )
        expected = (
            bytes.fromhex("11" * 32)
            + bytes.fromhex("03" "544b4e")                 # ticker
            + bytes.fromhex("05" "546f6b656e")             # name
            + bytes.fromhex("0000")                        # description
            + bytes.fromhex("08")                          # precision
            + bytes.fromhex("00")                          # issuer
            + bytes.fromhex("00f1536500000000")            # created_at
            + bytes.fromhex("e803000000000000")            # issue_limit
            + bytes.fromhex("0000000000000000")            # nonce
            + bytes.fromhex("0100")                        # one assignment
            + bytes.fromhex("00")
            + _reference_tagged("seal", SEAL_A_BYTES)
            + bytes.fromhex("e803000000000000")
        )
        assert encode_genesis(genesis) == expected
        assert genesis.contract_id == _reference_tagged("genesis", expected).hex()

    def test_transition_vector(self):
        transition = Transition(
            contract_id="22" * 32,
            kind=TransitionKind.TRANSFER,
            inputs=(SEAL_A.seal_id,),
            # inflation sorts after asset whatever the seal ids
            assignments=(Assignment(SEAL_A, 5, Right.INFLATION), Assignment(SEAL_B, 400)),
            metadata={"n": 7, "memo": "hi"},
        )
        seal_a = _reference_tagged("seal", SEAL_A_BYTES)
        seal_b = _reference_tagged("seal", SEAL_B_BYTES)
        expected = (
            bytes.fromhex("22" * 32)
            + bytes.fromhex("00")                          # transfer
            + bytes.fromhex("0100") + seal_a               # inputs
            + bytes.fromhex("0200")
            + bytes.fromhex("00") + seal_b + bytes.fromhex("9001000000000000")
            + bytes.fromhex("01") + seal_a + bytes.fromhex("0500000000000000")
            + bytes.fromhex("02")                          # metadata entries
            + bytes.fromhex("04" "6d656d6f" "01" "0200" "6869")
            + bytes.fromhex("01" "6e" "00" "0700000000000000")
        )
        assert encode_transition(transition) == expected
        assert transition.transition_id == _reference_tagged("transition", expected).hex()
