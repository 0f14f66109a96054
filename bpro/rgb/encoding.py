"""Strict binary encoding for contract objects.

Identifiers and commitments are computed over this encoding, so every byte is
fixed by the rules below and must be reproduced exactly by any independent
validator:

- integers are little-endian (u8, u16, u32, u64); out-of-range values fail
- strings are UTF-8 with a u8 (short) or u16 (long) length prefix
- 32-byte identifiers are written as raw bytes decoded from hex
- collections carry a length prefix and are written in canonical order:
  inputs by seal id bytes, assignments by (right code, seal id bytes),
  metadata by key
- seals are committed in concealed form (their seal id), never as outpoints

Identifiers:
- seal_id       = tagged_hash("seal", encode(seal))
- contract_id   = tagged_hash("genesis", encode(genesis))
- transition_id = tagged_hash("transition", encode(transition))

Any length prefix exceeding either the wire width or the schema's declared
maximum raises ``EncodingOverflow``.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterable, List, Tuple

from bpro.core import tagged_hash
from bpro.rgb.errors import EncodingOverflow
from bpro.rgb.types import (
    AMOUNT_MAX,
    Assignment,
    Genesis,
    SealDefinition,
    Transition,
)

U8_MAX = 0xFF
U16_MAX = 0xFFFF
U32_MAX = 0xFFFFFFFF

_META_INT = 0
_META_STR = 1


@dataclass(frozen=True)
class EncodingLimits:
    """Maximum sizes for length-prefixed fields."""
    max_ticker_len: int = U8_MAX
    max_name_len: int = U8_MAX
    max_description_len: int = U16_MAX
    max_issuer_len: int = U8_MAX
    max_inputs: int = U16_MAX
    max_assignments: int = U16_MAX
    max_metadata_entries: int = U8_MAX
    max_metadata_value_len: int = U16_MAX


PROTOCOL_LIMITS = EncodingLimits()


class StrictEncoder:
    """Append-only byte writer enforcing the strict encoding rules."""

    def __init__(self, limits: EncodingLimits = PROTOCOL_LIMITS):
        self.limits = limits
        self._buf = bytearray()

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def _int(self, fmt: str, value: int, maximum: int, field: str) -> "StrictEncoder":
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"{field} must be an integer")
        if not 0 <= value <= maximum:
            raise EncodingOverflow(field, value, maximum)
        self._buf += struct.pack(fmt, value)
        return self

    def u8(self, value: int, field: str = "u8") -> "StrictEncoder":
        return self._int("<B", value, U8_MAX, field)

    def u16(self, value: int, field: str = "u16") -> "StrictEncoder":
        return self._int("<H", value, U16_MAX, field)

    def u32(self, value: int, field: str = "u32") -> "StrictEncoder":
        return self._int("<I", value, U32_MAX, field)

    def u64(self, value: int, field: str = "u64") -> "StrictEncoder":
        return self._int("<Q", value, AMOUNT_MAX, field)

    def raw(self, data: bytes) -> "StrictEncoder":
        self._buf += data
        return self

    def hash32(self, hex_id: str) -> "StrictEncoder":
        raw = bytes.fromhex(hex_id)
        if len(raw) != 32:
            raise ValueError(f"expected 32-byte identifier, got {len(raw)} bytes")
        self._buf += raw
        return self

    def _prefix(self, count: int, width: int, limit: int, field: str) -> None:
        maximum = min(limit, U8_MAX if width == 1 else U16_MAX)
        if count > maximum:
            raise EncodingOverflow(field, count, maximum)
        if width == 1:
            self.u8(count, field)
        else:
            self.u16(count, field)

    def str8(self, value: str, field: str, limit: int = U8_MAX) -> "StrictEncoder":
        raw = value.encode("utf-8")
        self._prefix(len(raw), 1, limit, field)
        self._buf += raw
        return self

    def str16(self, value: str, field: str, limit: int = U16_MAX) -> "StrictEncoder":
        raw = value.encode("utf-8")
        self._prefix(len(raw), 2, limit, field)
        self._buf += raw
        return self

    def count16(self, count: int, field: str, limit: int = U16_MAX) -> "StrictEncoder":
        self._prefix(count, 2, limit, field)
        return self

    def count8(self, count: int, field: str, limit: int = U8_MAX) -> "StrictEncoder":
        self._prefix(count, 1, limit, field)
        return self


# =============================================================================
# OBJECT ENCODERS
# =============================================================================

def encode_seal(seal: SealDefinition) -> bytes:
    enc = StrictEncoder()
    enc.u8(seal.method.code, "seal.method")
    if seal.txid is None:
        enc.u8(0, "seal.bound")
        enc.raw(b"\x00" * 32)
    else:
        enc.u8(1, "seal.bound")
        enc.hash32(seal.txid)
    enc.u32(seal.vout, "seal.vout")
    enc.u64(seal.blinding, "seal.blinding")
    return enc.getvalue()


def seal_id(seal: SealDefinition) -> str:
    return tagged_hash("seal", encode_seal(seal)).hex()


def canonical_inputs(inputs: Iterable[str]) -> List[str]:
    return sorted(inputs, key=bytes.fromhex)


def canonical_assignments(assignments: Iterable[Assignment]) -> List[Assignment]:
    return sorted(assignments, key=lambda a: (a.right.code, bytes.fromhex(a.seal_id)))


def _write_assignments(enc: StrictEncoder, assignments: Tuple[Assignment, ...], field: str) -> None:
    enc.count16(len(assignments), field, enc.limits.max_assignments)
    for a in canonical_assignments(assignments):
        enc.u8(a.right.code, f"{field}.right")
        enc.hash32(a.seal_id)
        enc.u64(a.amount, f"{field}.amount")


def encode_genesis(genesis: Genesis, limits: EncodingLimits = PROTOCOL_LIMITS) -> bytes:
    enc = StrictEncoder(limits)
    enc.hash32(genesis.schema_id)
    enc.str8(genesis.ticker, "genesis.ticker", limits.max_ticker_len)
    enc.str8(genesis.name, "genesis.name", limits.max_name_len)
    enc.str16(genesis.description, "genesis.description", limits.max_description_len)
    enc.u8(genesis.precision, "genesis.precision")
    enc.str8(genesis.issuer, "genesis.issuer", limits.max_issuer_len)
    enc.u64(genesis.created_at, "genesis.created_at")
    enc.u64(genesis.issue_limit, "genesis.issue_limit")
    enc.u64(genesis.nonce, "genesis.nonce")
    _write_assignments(enc, genesis.assignments, "genesis.assignments")
    return enc.getvalue()


def contract_id(genesis: Genesis) -> str:
    return tagged_hash("genesis", encode_genesis(genesis)).hex()


def encode_transition(transition: Transition, limits: EncodingLimits = PROTOCOL_LIMITS) -> bytes:
    enc = StrictEncoder(limits)
    enc.hash32(transition.contract_id)
    enc.u8(transition.kind.code, "transition.kind")

    enc.count16(len(transition.inputs), "transition.inputs", limits.max_inputs)
    for seal in canonical_inputs(transition.inputs):
        enc.hash32(seal)

    _write_assignments(enc, transition.assignments, "transition.assignments")

    enc.count8(len(transition.metadata), "transition.metadata", limits.max_metadata_entries)
    for key, value in transition.metadata:
        enc.str8(key, "transition.metadata.key")
        if isinstance(value, int):
            enc.u8(_META_INT, "transition.metadata.tag")
            enc.u64(value, f"transition.metadata.{key}")
        else:
            enc.u8(_META_STR, "transition.metadata.tag")
            enc.str16(value, f"transition.metadata.{key}", limits.max_metadata_value_len)
    return enc.getvalue()


def transition_id(transition: Transition) -> str:
    return tagged_hash("transition", encode_transition(transition)).hex()
