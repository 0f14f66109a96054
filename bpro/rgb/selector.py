"""
UTXO / Seal Selector.

Chooses which owned, open asset seals fund a transfer. Preference order:

1. an exact match (no change), fewest inputs first
2. otherwise the fewest inputs whose sum covers the target
3. ties broken oldest-first: graph append sequence of the defining node, then
   seal id

Candidate sets up to ``selector.exact_search_limit`` are searched exhaustively;
larger sets fall back to a largest-first greedy cover. Selection is read-only
and reproducible for the same graph, registry and wallet snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import combinations
from typing import Iterable, List, Optional, Sequence, Tuple

from bpro.observability import Layer, get_logger
from bpro.rgb.errors import InsufficientFunds
from bpro.rgb.graph import ContractGraphStore
from bpro.rgb.seals import SealRegistry, SealStatus
from bpro.rgb.types import Outpoint, OwnedUtxo, Right

logger = get_logger("selector", Layer.SELECTION)


@dataclass(frozen=True)
class Candidate:
    seal_id: str
    amount: int
    outpoint: Outpoint
    sequence: int

    @property
    def age_key(self) -> Tuple[int, str]:
        return (self.sequence, self.seal_id)


@dataclass(frozen=True)
class Selection:
    seals: Tuple[str, ...]
    total: int
    target: int

    @property
    def exact(self) -> bool:
        return self.total == self.target

    @property
    def change(self) -> int:
        return self.total - self.target


class SealSelector:

    def __init__(
        self,
        registry: SealRegistry,
        graph: ContractGraphStore,
        exact_search_limit: Optional[int] = None,
    ):
        if exact_search_limit is None:
            from bpro.config import get_config
            exact_search_limit = get_config().selector.exact_search_limit.get()
        self._registry = registry
        self._graph = graph
        self.exact_search_limit = exact_search_limit

    def candidates(self, contract_id: str, wallet: Iterable[OwnedUtxo]) -> List[Candidate]:
        """Open, unspent asset seals bound to wallet outpoints, oldest first."""
        owned = {u.outpoint for u in wallet}
        out = []
        for alloc in self._graph.unspent(contract_id):
            if alloc.right is not Right.ASSET or alloc.amount == 0:
                continue
            if alloc.seal_id not in self._registry:
                continue
            record = self._registry.get(alloc.seal_id)
            if record.status is not SealStatus.OPEN or record.outpoint not in owned:
                continue
            out.append(Candidate(
                seal_id=alloc.seal_id,
                amount=alloc.amount,
                outpoint=record.outpoint,
                sequence=self._graph.sequence(alloc.defined_by),
            ))
        out.sort(key=lambda c: c.age_key)
        return out

    def select(self, contract_id: str, target: int, wallet: Iterable[OwnedUtxo]) -> Selection:
        if target <= 0:
            raise ValueError(f"target must be positive: {target}")
        cands = self.candidates(contract_id, wallet)
        available = sum(c.amount for c in cands)
        if available < target:
            logger.info(
                "Insufficient funds",
                contract_id=contract_id, target=target, available=available,
            )
            raise InsufficientFunds(target, available)

        if len(cands) <= self.exact_search_limit:
            chosen = self._exhaustive(cands, target)
        else:
            chosen = self._greedy(cands, target)

        selection = Selection(
            seals=tuple(c.seal_id for c in chosen),
            total=sum(c.amount for c in chosen),
            target=target,
        )
        logger.debug(
            "Seals selected",
            contract_id=contract_id, inputs=len(selection.seals),
            exact=selection.exact, change=selection.change,
        )
        return selection

    @staticmethod
    def _exhaustive(cands: Sequence[Candidate], target: int) -> List[Candidate]:
        # combinations() yields index tuples in lexicographic order, which over
        # an oldest-first list is the oldest-first tie-break.
        amounts = [c.amount for c in cands]
        largest = sorted(amounts, reverse=True)
        cover: Optional[Tuple[int, ...]] = None
        for k in range(1, len(cands) + 1):
            if sum(largest[:k]) < target:
                continue
            for combo in combinations(range(len(cands)), k):
                total = sum(amounts[i] for i in combo)
                if total == target:
                    return [cands[i] for i in combo]
                if cover is None and total > target:
                    cover = combo
        return [cands[i] for i in cover]

    @staticmethod
    def _greedy(cands: Sequence[Candidate], target: int) -> List[Candidate]:
        ranked = sorted(cands, key=lambda c: (-c.amount, c.age_key))
        chosen: List[Candidate] = []
        total = 0
        for c in ranked:
            if total >= target:
                break
            chosen.append(c)
            total += c.amount
        chosen.sort(key=lambda c: c.age_key)
        return chosen
