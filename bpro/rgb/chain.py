"""
Chain collaborator interface.

The engine never talks to a Bitcoin node. A notifier tracks witness
transactions and calls back ``on_confirmed(outpoint, depth)`` for every outpoint
a confirmed witness spends and ``on_reorg(outpoint)`` when that witness leaves
the best chain. ``MockChain`` simulates this in memory for tests and the CLI.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from bpro.core import normalize_hex32
from bpro.observability import Layer, get_logger
from bpro.rgb.types import Outpoint

logger = get_logger("mock", Layer.CHAIN)


# =============================================================================
# INTERFACES
# =============================================================================

class ChainListener(Protocol):
    """Receiver of confirmation-depth callbacks (the engine or a registry)."""

    def on_confirmed(self, outpoint: Outpoint, depth: int) -> Any:
        ...

    def on_reorg(self, outpoint: Outpoint) -> Any:
        ...


class ChainNotifier(Protocol):
    """
    Protocol for chain/indexer collaborators.

    Implementations decide confirmation depth and reorg policy; they only
    report what the chain shows.
    """

    def subscribe(self, listener: ChainListener) -> None:
        ...

    def broadcast(self, spends: Iterable[Outpoint], txid: Optional[str] = None) -> str:
        """Submit a witness transaction spending ``spends``; returns its txid."""
        ...

    def depth(self, txid: str) -> int:
        """Confirmations of ``txid`` (0 when unconfirmed or unknown)."""
        ...


# =============================================================================
# MOCK CHAIN
# =============================================================================

@dataclass
class WitnessTx:
    txid: str
    spends: Tuple[Outpoint, ...]
    height: Optional[int] = None
    commitment: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "spends": [str(o) for o in self.spends],
            "height": self.height,
            "commitment": self.commitment,
        }


@dataclass
class MockChain:
    """
    Mock chain for testing.

    Simulates mempool, block production and shallow reorgs without network
    calls. Every ``mine`` re-reports the depth of all confirmed witnesses.
    """
    tip: int = 100
    _txs: Dict[str, WitnessTx] = field(default_factory=dict)
    _listeners: List[ChainListener] = field(default_factory=list)

    def subscribe(self, listener: ChainListener) -> None:
        self._listeners.append(listener)

    def broadcast(
        self,
        spends: Iterable[Outpoint],
        txid: Optional[str] = None,
        commitment: str = "",
    ) -> str:
        txid = normalize_hex32(txid, "txid") if txid else secrets.token_hex(32)
        if txid not in self._txs:
            self._txs[txid] = WitnessTx(txid, tuple(spends), None, commitment)
            logger.debug("Witness broadcast", txid=txid)
        return txid

    def drop(self, txid: str) -> None:
        """Evict an unconfirmed witness from the mempool."""
        tx = self._txs.get(txid)
        if tx is not None and tx.height is None:
            del self._txs[txid]
            logger.debug("Witness dropped", txid=txid)

    def depth(self, txid: str) -> int:
        tx = self._txs.get(txid)
        if tx is None or tx.height is None:
            return 0
        return self.tip - tx.height + 1

    def mempool(self) -> List[str]:
        return sorted(t.txid for t in self._txs.values() if t.height is None)

    def mine(self, blocks: int = 1) -> int:
        """Produce ``blocks`` blocks; pending witnesses land in the first one."""
        for i in range(blocks):
            self.tip += 1
            if i == 0:
                for tx in self._txs.values():
                    if tx.height is None:
                        tx.height = self.tip
        self._notify_depths()
        return self.tip

    def reorg(self, blocks: int = 1) -> List[str]:
        """Disconnect the top ``blocks`` blocks; their witnesses return to the mempool."""
        floor = self.tip - blocks
        reverted = sorted(
            (t for t in self._txs.values() if t.height is not None and t.height > floor),
            key=lambda t: t.txid,
        )
        self.tip = floor
        for tx in reverted:
            tx.height = None
            logger.info("Witness reorganized out", txid=tx.txid)
            for outpoint in tx.spends:
                for listener in self._listeners:
                    listener.on_reorg(outpoint)
        return [t.txid for t in reverted]

    def _notify_depths(self) -> None:
        for tx in sorted(self._txs.values(), key=lambda t: t.txid):
            if tx.height is None:
                continue
            depth = self.depth(tx.txid)
            for outpoint in tx.spends:
                for listener in self._listeners:
                    listener.on_confirmed(outpoint, depth)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tip": self.tip,
            "txs": [self._txs[k].to_dict() for k in sorted(self._txs)],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MockChain":
        chain = cls(tip=int(d.get("tip", 100)))
        for t in d.get("txs", []):
            chain._txs[t["txid"]] = WitnessTx(
                txid=t["txid"],
                spends=tuple(Outpoint.parse(o) for o in t.get("spends", [])),
                height=t.get("height"),
                commitment=t.get("commitment", ""),
            )
        return chain
