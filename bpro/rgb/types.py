"""
Contract data model.

Outpoints, single-use seal definitions, owned-state assignments, genesis and
state transitions. All types are immutable; identifiers are derived from the
strict encoding in ``bpro.rgb.encoding`` and never stored alongside the data
they commit to.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from bpro.core import normalize_hex32

AMOUNT_MAX = 2 ** 64 - 1
VOUT_MAX = 2 ** 32 - 1

MetadataValue = Union[int, str]


# =============================================================================
# ENUMS
# =============================================================================

class SealMethod(Enum):
    """How the closing witness transaction embeds the commitment."""
    OPRET = "opret"
    TAPRET = "tapret"

    @property
    def code(self) -> int:
        return {SealMethod.OPRET: 0, SealMethod.TAPRET: 1}[self]


class Right(Enum):
    """Kind of owned state carried by an assignment."""
    ASSET = "asset"            # token amount
    INFLATION = "inflation"    # remaining secondary issuance allowance

    @property
    def code(self) -> int:
        return {Right.ASSET: 0, Right.INFLATION: 1}[self]


class TransitionKind(Enum):
    TRANSFER = "transfer"
    ISSUE = "issue"
    BURN = "burn"

    @property
    def code(self) -> int:
        return {
            TransitionKind.TRANSFER: 0,
            TransitionKind.ISSUE: 1,
            TransitionKind.BURN: 2,
        }[self]


# =============================================================================
# OUTPOINTS AND SEALS
# =============================================================================

@dataclass(frozen=True)
class Outpoint:
    """A Bitcoin transaction output reference (txid:vout)."""
    txid: str
    vout: int

    def __post_init__(self):
        object.__setattr__(self, "txid", normalize_hex32(self.txid, "txid"))
        if not isinstance(self.vout, int) or not 0 <= self.vout <= VOUT_MAX:
            raise ValueError(f"vout must be a u32: {self.vout!r}")

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def parse(cls, s: str) -> "Outpoint":
        txid, sep, vout = str(s).strip().rpartition(":")
        if not sep:
            raise ValueError(f"outpoint must be txid:vout: {s!r}")
        return cls(txid=txid, vout=int(vout))


def new_blinding() -> int:
    """Random 64-bit blinding factor for a fresh seal definition."""
    return secrets.randbits(64)


@dataclass(frozen=True)
class SealDefinition:
    """
    A single-use seal: "the output that will be spent next".

    A seal either names a concrete outpoint or is *deferred* (``txid`` is None),
    in which case it refers to output ``vout`` of the witness transaction that
    anchors the transition opening it. The blinding factor keeps seal ids of
    identical outpoints distinct.
    """
    vout: int
    txid: Optional[str] = None
    method: SealMethod = SealMethod.TAPRET
    blinding: int = 0

    def __post_init__(self):
        if self.txid is not None:
            object.__setattr__(self, "txid", normalize_hex32(self.txid, "txid"))
        if not isinstance(self.vout, int) or not 0 <= self.vout <= VOUT_MAX:
            raise ValueError(f"vout must be a u32: {self.vout!r}")
        if not isinstance(self.blinding, int) or not 0 <= self.blinding <= AMOUNT_MAX:
            raise ValueError(f"blinding must be a u64: {self.blinding!r}")

    @classmethod
    def at(
        cls,
        outpoint: Outpoint,
        method: SealMethod = SealMethod.TAPRET,
        blinding: Optional[int] = None,
    ) -> "SealDefinition":
        return cls(
            vout=outpoint.vout,
            txid=outpoint.txid,
            method=method,
            blinding=new_blinding() if blinding is None else blinding,
        )

    @classmethod
    def deferred(
        cls,
        vout: int,
        method: SealMethod = SealMethod.TAPRET,
        blinding: Optional[int] = None,
    ) -> "SealDefinition":
        return cls(
            vout=vout,
            txid=None,
            method=method,
            blinding=new_blinding() if blinding is None else blinding,
        )

    @property
    def is_deferred(self) -> bool:
        return self.txid is None

    @property
    def outpoint(self) -> Optional[Outpoint]:
        if self.txid is None:
            return None
        return Outpoint(self.txid, self.vout)

    @cached_property
    def seal_id(self) -> str:
        from bpro.rgb.encoding import seal_id
        return seal_id(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "txid": self.txid,
            "vout": self.vout,
            "blinding": self.blinding,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SealDefinition":
        return cls(
            vout=int(d["vout"]),
            txid=d.get("txid") or None,
            method=SealMethod(d.get("method", SealMethod.TAPRET.value)),
            blinding=int(d.get("blinding", 0)),
        )


# =============================================================================
# OWNED STATE
# =============================================================================

@dataclass(frozen=True)
class Assignment:
    """Owned state: ``amount`` of ``right`` assigned to ``seal``."""
    seal: SealDefinition
    amount: int
    right: Right = Right.ASSET

    def __post_init__(self):
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise TypeError(f"amount must be an integer: {self.amount!r}")
        if not 0 <= self.amount <= AMOUNT_MAX:
            raise ValueError(f"amount must be a u64: {self.amount}")

    @property
    def seal_id(self) -> str:
        return self.seal.seal_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seal": self.seal.to_dict(),
            "amount": self.amount,
            "right": self.right.value,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Assignment":
        return cls(
            seal=SealDefinition.from_dict(d["seal"]),
            amount=int(d["amount"]),
            right=Right(d.get("right", Right.ASSET.value)),
        )


def sum_right(assignments: Iterable[Assignment], right: Right) -> int:
    """Unbounded sum of amounts for one right; overflow is checked by callers."""
    return sum(a.amount for a in assignments if a.right == right)


def _freeze_metadata(metadata: Any) -> Tuple[Tuple[str, MetadataValue], ...]:
    if isinstance(metadata, Mapping):
        items = metadata.items()
    else:
        items = metadata or ()
    out = []
    for k, v in items:
        if isinstance(v, bool) or not isinstance(v, (int, str)):
            raise TypeError(f"metadata value for {k!r} must be int or str")
        out.append((str(k), v))
    return tuple(sorted(out))


# =============================================================================
# GENESIS
# =============================================================================

@dataclass(frozen=True)
class Genesis:
    """
    Root node of a contract graph.

    Carries asset metadata, the issue limit and the initial owned state:
    asset allocations plus inflation rights which authorize secondary
    issuance up to the limit. The contract id is derived from this content.
    """
    schema_id: str
    ticker: str
    name: str
    precision: int
    issue_limit: int
    assignments: Tuple[Assignment, ...]
    description: str = ""
    issuer: str = ""
    created_at: int = 0
    nonce: int = 0

    def __post_init__(self):
        object.__setattr__(self, "schema_id", normalize_hex32(self.schema_id, "schema_id"))
        object.__setattr__(self, "assignments", tuple(self.assignments))

    @cached_property
    def contract_id(self) -> str:
        from bpro.rgb.encoding import contract_id
        return contract_id(self)

    @property
    def node_id(self) -> str:
        return self.contract_id

    @property
    def issued(self) -> int:
        return sum_right(self.assignments, Right.ASSET)

    @property
    def inflation(self) -> int:
        return sum_right(self.assignments, Right.INFLATION)

    def payload(self) -> Dict[str, Any]:
        """State payload validated against the schema's declared state type."""
        return {
            "type": "genesis",
            "ticker": self.ticker,
            "name": self.name,
            "description": self.description,
            "precision": self.precision,
            "issue_limit": self.issue_limit,
            "assignments": [
                {"seal": a.seal_id, "amount": a.amount, "right": a.right.value}
                for a in self.assignments
            ],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_id": self.schema_id,
            "ticker": self.ticker,
            "name": self.name,
            "description": self.description,
            "precision": self.precision,
            "issue_limit": self.issue_limit,
            "issuer": self.issuer,
            "created_at": self.created_at,
            "nonce": self.nonce,
            "assignments": [a.to_dict() for a in self.assignments],
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Genesis":
        return cls(
            schema_id=d["schema_id"],
            ticker=d["ticker"],
            name=d["name"],
            description=d.get("description", ""),
            precision=int(d["precision"]),
            issue_limit=int(d["issue_limit"]),
            issuer=d.get("issuer", ""),
            created_at=int(d.get("created_at", 0)),
            nonce=int(d.get("nonce", 0)),
            assignments=tuple(Assignment.from_dict(a) for a in d.get("assignments", [])),
        )


# =============================================================================
# TRANSITION
# =============================================================================

@dataclass(frozen=True)
class Transition:
    """
    A state change node: closes ``inputs`` and opens the seals of ``assignments``.

    ``metadata`` accepts a mapping and is stored as sorted key/value pairs.
    Burn transitions declare the destroyed amount under ``burned``.
    """
    contract_id: str
    kind: TransitionKind
    inputs: Tuple[str, ...]
    assignments: Tuple[Assignment, ...] = ()
    metadata: Tuple[Tuple[str, MetadataValue], ...] = field(default=())

    def __post_init__(self):
        object.__setattr__(self, "contract_id", normalize_hex32(self.contract_id, "contract_id"))
        object.__setattr__(
            self, "inputs", tuple(normalize_hex32(i, "input seal") for i in self.inputs)
        )
        object.__setattr__(self, "assignments", tuple(self.assignments))
        object.__setattr__(self, "metadata", _freeze_metadata(self.metadata))

    @cached_property
    def transition_id(self) -> str:
        from bpro.rgb.encoding import transition_id
        return transition_id(self)

    @property
    def node_id(self) -> str:
        return self.transition_id

    @property
    def meta(self) -> Dict[str, MetadataValue]:
        return dict(self.metadata)

    @property
    def output_seals(self) -> List[str]:
        return [a.seal_id for a in self.assignments]

    def payload(self) -> Dict[str, Any]:
        """State payload validated against the schema's declared state type."""
        return {
            "type": self.kind.value,
            "inputs": list(self.inputs),
            "assignments": [
                {"seal": a.seal_id, "amount": a.amount, "right": a.right.value}
                for a in self.assignments
            ],
            "metadata": self.meta,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "kind": self.kind.value,
            "inputs": list(self.inputs),
            "assignments": [a.to_dict() for a in self.assignments],
            "metadata": self.meta,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Transition":
        return cls(
            contract_id=d["contract_id"],
            kind=TransitionKind(d["kind"]),
            inputs=tuple(d.get("inputs", [])),
            assignments=tuple(Assignment.from_dict(a) for a in d.get("assignments", [])),
            metadata=d.get("metadata") or {},
        )


# =============================================================================
# WALLET SNAPSHOT / REPLAYED STATE
# =============================================================================

@dataclass(frozen=True)
class OwnedUtxo:
    """A wallet-owned output as reported by the wallet collaborator."""
    outpoint: Outpoint
    value: int = 0
    script_pubkey: str = ""
    height: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outpoint": str(self.outpoint),
            "value": self.value,
            "script_pubkey": self.script_pubkey,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "OwnedUtxo":
        return cls(
            outpoint=Outpoint.parse(d["outpoint"]),
            value=int(d.get("value", 0)),
            script_pubkey=str(d.get("script_pubkey", "")),
            height=int(d.get("height", 0)),
        )


@dataclass(frozen=True)
class Allocation:
    """Owned state of one seal as recovered by replaying the graph."""
    seal_id: str
    amount: int
    right: Right
    defined_by: str
