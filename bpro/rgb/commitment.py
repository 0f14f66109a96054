"""
Commitment Builder.

A transition bundle (one or more transitions anchored by the same witness
transaction) is committed to a single 32-byte digest:

- leaf  = tagged_hash("bundle-leaf", contract_id || transition_id)
- leaves are sorted by bytes and de-duplicated, so insertion order is irrelevant
- node  = SHA256(0x01 || left || right); an unpaired leaf is promoted unchanged
- digest = root; a one-leaf bundle commits to the leaf itself

Embedding into the witness transaction:

- opret:  OP_RETURN OP_PUSHBYTES_32 <digest>
- tapret: 29 x OP_RESERVED, OP_RETURN, OP_PUSHBYTES_33 <digest || nonce>
  (a 64-byte tapscript leaf; the nonce lets wallets avoid leaf collisions)

Every transition is strict-encoded against the schema limits while building,
so an oversized field surfaces here as ``EncodingOverflow``.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from bpro.core import tagged_hash
from bpro.observability import Layer, get_logger, timed_operation
from bpro.rgb.encoding import PROTOCOL_LIMITS, U16_MAX, EncodingLimits, encode_transition
from bpro.rgb.errors import EncodingOverflow
from bpro.rgb.types import SealMethod, Transition

logger = get_logger("builder", Layer.COMMITMENT)

OP_RESERVED = 0x50
OP_RETURN = 0x6A
OP_PUSHBYTES_32 = 0x20
OP_PUSHBYTES_33 = 0x21

TAPRET_RESERVED_COUNT = 29
OPRET_SCRIPT_LEN = 34
TAPRET_SCRIPT_LEN = 64


def leaf_hash(contract_id: str, transition_id: str) -> bytes:
    return tagged_hash("bundle-leaf", bytes.fromhex(contract_id) + bytes.fromhex(transition_id))


def node_hash(left: bytes, right: bytes) -> bytes:
    return hashlib.sha256(b"\x01" + left + right).digest()


def merkle_root(leaves: Sequence[bytes]) -> bytes:
    """Root over ``leaves`` in the given order; odd leaves are promoted."""
    if not leaves:
        raise ValueError("cannot build a merkle root over zero leaves")
    level = list(leaves)
    while len(level) > 1:
        nxt = [node_hash(level[i], level[i + 1]) for i in range(0, len(level) - 1, 2)]
        if len(level) % 2:
            nxt.append(level[-1])
        level = nxt
    return level[0]


@dataclass(frozen=True)
class TransitionBundle:
    """Transitions anchored together in one witness transaction."""
    transitions: Tuple[Transition, ...]

    def __post_init__(self):
        object.__setattr__(self, "transitions", tuple(self.transitions))
        if not self.transitions:
            raise ValueError("a bundle needs at least one transition")

    @classmethod
    def of(cls, *transitions: Transition) -> "TransitionBundle":
        return cls(tuple(transitions))

    def leaves(self) -> List[bytes]:
        unique = {leaf_hash(t.contract_id, t.transition_id) for t in self.transitions}
        return sorted(unique)

    def to_dict(self) -> Dict[str, Any]:
        return {"transitions": [t.to_dict() for t in self.transitions]}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TransitionBundle":
        return cls(tuple(Transition.from_dict(t) for t in d["transitions"]))


@dataclass(frozen=True)
class Commitment:
    digest: bytes
    leaf_count: int = 1

    def __post_init__(self):
        if len(self.digest) != 32:
            raise ValueError(f"commitment digest must be 32 bytes, got {len(self.digest)}")

    def hex(self) -> str:
        return self.digest.hex()

    def opret_script(self) -> bytes:
        return bytes([OP_RETURN, OP_PUSHBYTES_32]) + self.digest

    def tapret_script(self, nonce: int = 0) -> bytes:
        if not 0 <= nonce <= 0xFF:
            raise EncodingOverflow("tapret.nonce", nonce, 0xFF)
        return (
            bytes([OP_RESERVED] * TAPRET_RESERVED_COUNT)
            + bytes([OP_RETURN, OP_PUSHBYTES_33])
            + self.digest
            + bytes([nonce])
        )

    def script(self, method: Union[SealMethod, str], nonce: int = 0) -> bytes:
        method = SealMethod(method) if isinstance(method, str) else method
        if method is SealMethod.OPRET:
            return self.opret_script()
        return self.tapret_script(nonce)

    @classmethod
    def from_script(cls, script: bytes) -> "Commitment":
        """Extract the digest from an opret or tapret script."""
        if len(script) == OPRET_SCRIPT_LEN and script[:2] == bytes([OP_RETURN, OP_PUSHBYTES_32]):
            return cls(script[2:])
        prefix = bytes([OP_RESERVED] * TAPRET_RESERVED_COUNT + [OP_RETURN, OP_PUSHBYTES_33])
        if len(script) == TAPRET_SCRIPT_LEN and script.startswith(prefix):
            return cls(script[len(prefix):len(prefix) + 32])
        raise ValueError("script is neither an opret nor a tapret commitment")

    def to_dict(self) -> Dict[str, Any]:
        return {"digest": self.hex(), "leaf_count": self.leaf_count}


class CommitmentBuilder:
    """Builds reproducible bundle commitments. Holds no state between calls."""

    def __init__(
        self,
        limits: EncodingLimits = PROTOCOL_LIMITS,
        default_method: Optional[SealMethod] = None,
    ):
        if default_method is None:
            from bpro.config import get_config
            default_method = SealMethod(get_config().commitment.default_method.get())
        self.limits = limits
        self.default_method = default_method

    @timed_operation(logger, "commit")
    def commit(self, bundle: Union[TransitionBundle, Transition, Iterable[Transition]]) -> Commitment:
        if isinstance(bundle, Transition):
            bundle = TransitionBundle.of(bundle)
        elif not isinstance(bundle, TransitionBundle):
            bundle = TransitionBundle(tuple(bundle))

        if len(bundle.transitions) > U16_MAX:
            raise EncodingOverflow("bundle.transitions", len(bundle.transitions), U16_MAX)
        for t in bundle.transitions:
            encode_transition(t, self.limits)

        leaves = bundle.leaves()
        return Commitment(digest=merkle_root(leaves), leaf_count=len(leaves))

    def script(self, commitment: Commitment, method: Optional[SealMethod] = None, nonce: int = 0) -> bytes:
        return commitment.script(method or self.default_method, nonce)

    def verify(self, commitment: Commitment, bundle: TransitionBundle) -> bool:
        """True when ``bundle`` reproduces ``commitment`` byte-for-byte."""
        return self.commit(bundle).digest == commitment.digest
