"""Bech32m rendering of contract ids (``rgb1...``) and genesis data.

Reference: BIP-173 / BIP-350. Only the bech32m constant is used; contract ids
are always 32 bytes, so no segwit version byte is prepended.
A genesis is rendered the same way over its strict encoding (``genesis1...``);
the 90 character limit of BIP-173 does not apply to either form.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32M_CONST = 0x2BC830A3
CONTRACT_HRP = "rgb"
GENESIS_HRP = "genesis"


def _polymod(values: Iterable[int]) -> int:
    generator = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= generator[i] if ((top >> i) & 1) else 0
    return chk


def _hrp_expand(hrp: str) -> List[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def _create_checksum(hrp: str, data: List[int]) -> List[int]:
    values = _hrp_expand(hrp) + data
    polymod = _polymod(values + [0] * 6) ^ BECH32M_CONST
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def convertbits(data: Iterable[int], frombits: int, tobits: int, pad: bool = True) -> Optional[List[int]]:
    """General power-of-2 base conversion."""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1
    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)
    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None
    return ret


def bech32m_encode(hrp: str, data: bytes) -> str:
    five = convertbits(data, 8, 5)
    combined = five + _create_checksum(hrp, five)
    return hrp + "1" + "".join(CHARSET[d] for d in combined)


def bech32m_decode(bech: str) -> Tuple[str, bytes]:
    """Return (hrp, payload) or raise ValueError."""
    if any(ord(x) < 33 or ord(x) > 126 for x in bech):
        raise ValueError("invalid character in bech32 string")
    if bech.lower() != bech and bech.upper() != bech:
        raise ValueError("mixed case bech32 string")
    bech = bech.lower()
    pos = bech.rfind("1")
    if pos < 1 or pos + 7 > len(bech):
        raise ValueError("missing or misplaced bech32 separator")
    hrp = bech[:pos]
    if not all(x in CHARSET for x in bech[pos + 1:]):
        raise ValueError("invalid bech32 data character")
    data = [CHARSET.find(x) for x in bech[pos + 1:]]
    if _polymod(_hrp_expand(hrp) + data) != BECH32M_CONST:
        raise ValueError("bech32m checksum mismatch")
    decoded = convertbits(data[:-6], 5, 8, False)
    if decoded is None:
        raise ValueError("invalid bech32 padding")
    return hrp, bytes(decoded)


def contract_id_to_bech32(contract_id: str) -> str:
    raw = bytes.fromhex(contract_id)
    if len(raw) != 32:
        raise ValueError("contract id must be 32 bytes")
    return bech32m_encode(CONTRACT_HRP, raw)


def contract_id_from_bech32(s: str) -> str:
    hrp, raw = bech32m_decode(s)
    if hrp != CONTRACT_HRP:
        raise ValueError(f"expected '{CONTRACT_HRP}' prefix, got '{hrp}'")
    if len(raw) != 32:
        raise ValueError("contract id must be 32 bytes")
    return raw.hex()


def genesis_to_bech32(encoded: bytes) -> str:
    """Render a strict-encoded genesis for sharing out of band."""
    return bech32m_encode(GENESIS_HRP, encoded)


def genesis_from_bech32(s: str) -> bytes:
    hrp, raw = bech32m_decode(s)
    if hrp != GENESIS_HRP:
        raise ValueError(f"expected '{GENESIS_HRP}' prefix, got '{hrp}'")
    return raw
