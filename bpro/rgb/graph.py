"""
Contract Graph Store.

Holds one append-only DAG per contract: the genesis plus every accepted
transition, each content-addressed by its id. Nodes are never deleted. A
transition whose witness was dropped is *marked* abandoned, which releases its
inputs in the spent index and removes its outputs from the live state.

Acyclicity holds by construction: a transition may only spend seals opened by
nodes already in the graph, so every input refers to a strictly earlier node.

Mutation is serialized per contract; lookups read immutable node objects.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Deque, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Union

from bpro.observability import Layer, get_logger
from bpro.rgb.errors import (
    DuplicateContract,
    GraphError,
    SnapshotCorrupted,
    UnknownAncestor,
    UnknownContract,
    NotValidated,
    ValidationError,
)
from bpro.rgb.schema import Schema
from bpro.rgb.types import Allocation, Assignment, Genesis, Transition
from bpro.rgb.validator import (
    Verdict,
    VerdictCache,
    check_fungible_sum,
    conservation_check,
    validate_genesis,
)

logger = get_logger("store", Layer.GRAPH)

SNAPSHOT_VERSION = 1

Node = Union[Genesis, Transition]


class ContractGraph:
    """State of a single contract. Mutated only by ``ContractGraphStore``."""

    def __init__(self, genesis: Genesis):
        self.genesis = genesis
        self.contract_id = genesis.contract_id
        self.lock = threading.RLock()
        self.transitions: Dict[str, Transition] = {}
        self.order: List[str] = [self.contract_id]
        self.sequence: Dict[str, int] = {self.contract_id: 0}
        self.defining: Dict[str, str] = {}
        self.assignments: Dict[str, Assignment] = {}
        self.spender: Dict[str, str] = {}
        self.abandoned: Set[str] = set()
        self._open(self.contract_id, genesis.assignments)

    def _open(self, node_id: str, assignments) -> None:
        for a in assignments:
            self.defining[a.seal_id] = node_id
            self.assignments[a.seal_id] = a

    def node(self, node_id: str) -> Node:
        if node_id == self.contract_id:
            return self.genesis
        try:
            return self.transitions[node_id]
        except KeyError:
            raise GraphError(f"node {node_id} is not in contract {self.contract_id}") from None

    def is_live(self, node_id: str) -> bool:
        return node_id in self.sequence and node_id not in self.abandoned


class ContractGraphStore:
    """
    Caller-owned store of contract graphs.

    Args:
        verdicts: cache consulted by ``append_transition``; share it with the
            ``TransitionValidator`` that admits transitions into this store.
    """

    def __init__(self, verdicts: Optional[VerdictCache] = None):
        self.verdicts = verdicts if verdicts is not None else VerdictCache()
        self._graphs: Dict[str, ContractGraph] = {}
        self._node_contract: Dict[str, str] = {}
        self._seal_contract: Dict[str, str] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, genesis: Genesis) -> str:
        """Add a new contract rooted at ``genesis``."""
        cid = genesis.contract_id
        with self._lock:
            if cid in self._graphs:
                raise DuplicateContract(cid)
            graph = ContractGraph(genesis)
            self._graphs[cid] = graph
            self._node_contract[cid] = cid
            for seal in graph.defining:
                self._seal_contract[seal] = cid
        logger.info("Contract added", contract_id=cid, ticker=genesis.ticker)
        return cid

    def append_transition(self, contract_id: str, transition: Transition) -> str:
        """Append a validated transition; atomic and serialized per contract."""
        graph = self._graph(contract_id)
        if transition.contract_id != contract_id:
            raise GraphError(
                f"transition belongs to contract {transition.contract_id}, not {contract_id}"
            )
        tid = transition.transition_id
        with graph.lock:
            if tid in graph.transitions:
                if tid in graph.abandoned:
                    raise GraphError(f"transition {tid} was abandoned")
                return tid
            if not self.verdicts.accepted(tid):
                raise NotValidated(tid)
            self._insert(graph, transition, abandoned=False)
        logger.debug("Transition appended", contract_id=contract_id, transition_id=tid)
        return tid

    def _insert(self, graph: ContractGraph, transition: Transition, abandoned: bool) -> None:
        """Check ancestry and record ``transition``. Caller holds ``graph.lock``."""
        tid = transition.transition_id
        for seal in transition.inputs:
            parent = graph.defining.get(seal)
            if parent is None:
                raise UnknownAncestor(seal, "seal is not opened in this contract")
            if parent in graph.abandoned and not abandoned:
                raise UnknownAncestor(seal, f"opened by abandoned transition {parent}")
            spender = graph.spender.get(seal)
            if spender is not None and not abandoned:
                raise UnknownAncestor(seal, f"already spent by {spender}")
        for seal in transition.output_seals:
            if seal in graph.defining:
                raise GraphError(f"output seal {seal} is already opened by {graph.defining[seal]}")

        graph.transitions[tid] = transition
        graph.sequence[tid] = len(graph.order)
        graph.order.append(tid)
        graph._open(tid, transition.assignments)
        if abandoned:
            graph.abandoned.add(tid)
        else:
            for seal in transition.inputs:
                graph.spender[seal] = tid
        with self._lock:
            self._node_contract[tid] = graph.contract_id
            for seal in transition.output_seals:
                self._seal_contract[seal] = graph.contract_id

    def abandon(self, transition_id: str) -> Transition:
        """Mark a transition abandoned, releasing the seals it spent."""
        transition = self.transition(transition_id)
        graph = self._graph(transition.contract_id)
        with graph.lock:
            if transition_id in graph.abandoned:
                return transition
            for seal in transition.output_seals:
                child = graph.spender.get(seal)
                if child is not None:
                    raise GraphError(
                        f"cannot abandon {transition_id}: output {seal} is spent by {child}"
                    )
            graph.abandoned.add(transition_id)
            for seal in transition.inputs:
                if graph.spender.get(seal) == transition_id:
                    del graph.spender[seal]
        logger.info("Transition abandoned", contract_id=graph.contract_id, transition_id=transition_id)
        return transition

    def remove(self, contract_id: str) -> Genesis:
        """Drop a whole contract graph together with its cached verdicts."""
        with self._lock:
            graph = self._graphs.pop(contract_id, None)
        if graph is None:
            raise UnknownContract(contract_id)
        with graph.lock:
            node_ids = list(graph.order)
            seals = list(graph.defining)
        with self._lock:
            for node_id in node_ids:
                self._node_contract.pop(node_id, None)
            for seal in seals:
                self._seal_contract.pop(seal, None)
        self.verdicts.discard(node_ids[1:])
        logger.info("Contract removed", contract_id=contract_id, transitions=len(node_ids) - 1)
        return graph.genesis

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _graph(self, contract_id: str) -> ContractGraph:
        graph = self._graphs.get(contract_id)
        if graph is None:
            raise UnknownContract(contract_id)
        return graph

    def contracts(self) -> List[str]:
        with self._lock:
            return sorted(self._graphs)

    def __contains__(self, contract_id: object) -> bool:
        return contract_id in self._graphs

    def genesis(self, contract_id: str) -> Genesis:
        return self._graph(contract_id).genesis

    def node(self, contract_id: str, node_id: str) -> Node:
        return self._graph(contract_id).node(node_id)

    def contract_of(self, node_id: str) -> str:
        cid = self._node_contract.get(node_id)
        if cid is None:
            raise GraphError(f"unknown transition {node_id}")
        return cid

    def transition(self, transition_id: str) -> Transition:
        node = self.node(self.contract_of(transition_id), transition_id)
        if not isinstance(node, Transition):
            raise GraphError(f"{transition_id} is a genesis, not a transition")
        return node

    def transitions(self, contract_id: str, include_abandoned: bool = False) -> List[Transition]:
        """Transitions in append order."""
        graph = self._graph(contract_id)
        with graph.lock:
            return [
                graph.transitions[tid]
                for tid in graph.order[1:]
                if include_abandoned or tid not in graph.abandoned
            ]

    def is_abandoned(self, node_id: str) -> bool:
        cid = self._node_contract.get(node_id)
        return cid is not None and node_id in self._graphs[cid].abandoned

    def sequence(self, node_id: str) -> int:
        """Append position of a node within its contract (genesis is 0)."""
        return self._graph(self.contract_of(node_id)).sequence[node_id]

    def defining_node(self, seal_id: str) -> Optional[str]:
        cid = self._seal_contract.get(seal_id)
        if cid is None:
            return None
        return self._graphs[cid].defining.get(seal_id)

    def assignment(self, seal_id: str) -> Optional[Assignment]:
        cid = self._seal_contract.get(seal_id)
        if cid is None:
            return None
        return self._graphs[cid].assignments.get(seal_id)

    def spender(self, seal_id: str) -> Optional[str]:
        """Live transition spending ``seal_id``, if any."""
        cid = self._seal_contract.get(seal_id)
        if cid is None:
            return None
        return self._graphs[cid].spender.get(seal_id)

    def unspent(self, contract_id: str) -> List[Allocation]:
        """Owned state opened by live nodes and not spent by any live node."""
        graph = self._graph(contract_id)
        with graph.lock:
            out = []
            for node_id in graph.order:
                if node_id in graph.abandoned:
                    continue
                node = graph.node(node_id)
                for a in node.assignments:
                    if a.seal_id not in graph.spender:
                        out.append(Allocation(a.seal_id, a.amount, a.right, node_id))
            return out

    def ancestors(self, transition_id: str) -> Iterator[Transition]:
        """Ancestor transitions of ``transition_id``, nearest first, each once.

        A fresh generator is returned on every call; genesis terminates the walk
        and is not yielded.
        """
        cid = self.contract_of(transition_id)
        graph = self._graph(cid)
        start = graph.node(transition_id)

        seen: Set[str] = set()
        queue: Deque[str] = deque()

        def enqueue_parents(node: Node) -> None:
            if isinstance(node, Genesis):
                return
            for seal in node.inputs:
                parent = graph.defining.get(seal)
                if parent is not None and parent != cid and parent not in seen:
                    seen.add(parent)
                    queue.append(parent)

        enqueue_parents(start)
        while queue:
            node = graph.transitions[queue.popleft()]
            yield node
            enqueue_parents(node)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        contracts = []
        for cid in self.contracts():
            graph = self._graphs[cid]
            with graph.lock:
                contracts.append({
                    "contract_id": cid,
                    "genesis": graph.genesis.to_dict(),
                    "transitions": [
                        {
                            "transition_id": tid,
                            "transition": graph.transitions[tid].to_dict(),
                            "abandoned": tid in graph.abandoned,
                        }
                        for tid in graph.order[1:]
                    ],
                })
        return {"version": SNAPSHOT_VERSION, "contracts": contracts}

    @classmethod
    def restore(
        cls,
        snapshot: Mapping[str, Any],
        verdicts: Optional[VerdictCache] = None,
        schemas: Optional[Iterable[Schema]] = None,
    ) -> "ContractGraphStore":
        """Rebuild a store, re-deriving and checking every content id.

        Each genesis is re-checked against its schema and each transition is
        replayed in append order through the schema's conservation rule before
        its accepted verdict is re-recorded in ``verdicts``. Without
        ``schemas`` the fungible sum rule applies and genesis payloads are not
        re-checked.
        """
        if snapshot.get("version") != SNAPSHOT_VERSION:
            raise SnapshotCorrupted(f"unsupported graph snapshot version {snapshot.get('version')!r}")
        by_id = {s.schema_id: s for s in schemas} if schemas is not None else None
        store = cls(verdicts)
        try:
            for entry in snapshot.get("contracts", []):
                genesis = Genesis.from_dict(entry["genesis"])
                if genesis.contract_id != entry["contract_id"]:
                    raise SnapshotCorrupted(
                        f"genesis hashes to {genesis.contract_id}, snapshot says {entry['contract_id']}"
                    )
                rule = check_fungible_sum
                if by_id is not None:
                    schema = by_id.get(genesis.schema_id)
                    if schema is None:
                        raise SnapshotCorrupted(
                            f"contract {genesis.contract_id} references a schema missing from the snapshot"
                        )
                    validate_genesis(genesis, schema)
                    rule = conservation_check(schema)
                store.append(genesis)
                graph = store._graphs[genesis.contract_id]
                for item in entry.get("transitions", []):
                    transition = Transition.from_dict(item["transition"])
                    if transition.transition_id != item["transition_id"]:
                        raise SnapshotCorrupted(
                            f"transition hashes to {transition.transition_id}, "
                            f"snapshot says {item['transition_id']}"
                        )
                    with graph.lock:
                        if not transition.inputs:
                            raise SnapshotCorrupted(f"transition {transition.transition_id} closes no seals")
                        store._insert(graph, transition, abandoned=bool(item.get("abandoned")))
                        rule(transition, [graph.assignments[seal] for seal in transition.inputs])
                    store.verdicts.record(Verdict.accept(transition.transition_id))
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotCorrupted(f"malformed graph snapshot: {e}") from e
        except SnapshotCorrupted:
            raise
        except (GraphError, ValidationError) as e:
            raise SnapshotCorrupted(f"inconsistent graph snapshot: {e.message}") from e
        return store

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ContractGraphStore):
            return NotImplemented
        return self.snapshot() == other.snapshot()

    __hash__ = None  # type: ignore[assignment]
