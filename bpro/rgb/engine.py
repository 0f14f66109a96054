"""
Asset Engine.

The one asset-level API for callers (CLI, GUI, persistence). Every mutating
operation composes, in order:

    Selector -> Validator -> [reserve seals + graph append] -> Commitment

Selection and validation are read-only. The bracketed step runs under the
contract's mutation lock and is the only place state changes: input seals are
reserved all-or-none, the transition is appended, and only then are its output
seals defined. If the append fails the reservations are released, so a failed
call leaves no partial mutation. The first failure surfaces unmodified; nothing
is retried here. ``InsufficientFunds`` is the only error a caller may retry
after an external change (new funds in the wallet snapshot).

The engine is an explicit, caller-owned handle. There is no process-wide
registry; construct one per store and ``close()`` it when done.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from bpro.bech32 import contract_id_to_bech32, genesis_to_bech32
from bpro.observability import AuditLogger, Layer, get_logger, timed_operation
from bpro.rgb.commitment import Commitment, CommitmentBuilder
from bpro.rgb.encoding import encode_genesis
from bpro.rgb.errors import (
    DuplicateContract,
    RgbError,
    SchemaMismatch,
    SealFinalized,
    SnapshotCorrupted,
)
from bpro.rgb.graph import ContractGraphStore
from bpro.rgb.schema import Schema, SchemaLibrary, rgb20_schema
from bpro.rgb.seals import SealRegistry, SealStatus
from bpro.rgb.selector import SealSelector
from bpro.rgb.types import (
    Allocation,
    Assignment,
    Genesis,
    Outpoint,
    OwnedUtxo,
    Right,
    SealDefinition,
    SealMethod,
    Transition,
    TransitionKind,
    sum_right,
)
from bpro.rgb.validator import TransitionValidator, VerdictCache, validate_genesis

logger = get_logger("engine", Layer.ENGINE)

SNAPSHOT_VERSION = 1

AllocationSpec = Union[Assignment, Tuple[SealDefinition, int]]


class EngineClosed(RuntimeError):
    pass


@dataclass(frozen=True)
class AssetInfo:
    contract_id: str
    ticker: str
    name: str
    description: str
    precision: int
    issuer: str
    created_at: int
    issue_limit: int
    schema_id: str
    genesis_bech32: str = ""

    @property
    def bech32(self) -> str:
        return contract_id_to_bech32(self.contract_id)

    @classmethod
    def from_genesis(cls, genesis: Genesis) -> "AssetInfo":
        return cls(
            contract_id=genesis.contract_id,
            ticker=genesis.ticker,
            name=genesis.name,
            description=genesis.description,
            precision=genesis.precision,
            issuer=genesis.issuer,
            created_at=genesis.created_at,
            issue_limit=genesis.issue_limit,
            schema_id=genesis.schema_id,
            genesis_bech32=genesis_to_bech32(encode_genesis(genesis)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "bech32": self.bech32,
            "ticker": self.ticker,
            "name": self.name,
            "description": self.description,
            "precision": self.precision,
            "issuer": self.issuer,
            "created_at": self.created_at,
            "issue_limit": self.issue_limit,
            "schema_id": self.schema_id,
            "genesis_bech32": self.genesis_bech32,
        }


@dataclass(frozen=True)
class SupplyReport:
    """Supply accounting over live (non-abandoned) nodes."""
    contract_id: str
    issued: int
    burned: int
    circulating: int
    issue_limit: int
    inflation_remaining: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "issued": self.issued,
            "burned": self.burned,
            "circulating": self.circulating,
            "issue_limit": self.issue_limit,
            "inflation_remaining": self.inflation_remaining,
        }


def _as_assignments(items: Iterable[AllocationSpec], right: Right) -> List[Assignment]:
    out = []
    for item in items:
        if isinstance(item, Assignment):
            out.append(item)
        else:
            seal, amount = item
            out.append(Assignment(seal, amount, right))
    return out


def _check_consistency(graph: ContractGraphStore, registry: SealRegistry) -> None:
    """Cross-check a restored registry against the restored graph.

    Every seal opened by a live node must be registered to that node, and every
    closure the registry records must be the graph's live spender. A live spend
    may stand against an open seal: a reorg reopens the seal but keeps the spend.
    """
    for cid in graph.contracts():
        nodes = [graph.genesis(cid), *graph.transitions(cid)]
        for node in nodes:
            node_id = cid if isinstance(node, Genesis) else node.transition_id
            for seal in (a.seal_id for a in node.assignments):
                if seal not in registry:
                    raise SnapshotCorrupted(f"seal {seal} opened by {node_id} is not registered")
                record = registry.get(seal)
                if record.contract_id != cid or record.defined_by != node_id:
                    raise SnapshotCorrupted(
                        f"seal {seal} is registered to {record.defined_by}, graph says {node_id}"
                    )
    for record in registry.records():
        if record.closed_by is None:
            continue
        spender = graph.spender(record.seal_id)
        if spender != record.closed_by:
            raise SnapshotCorrupted(
                f"seal {record.seal_id} is closed by {record.closed_by}, graph spender is {spender}"
            )


class AssetEngine:
    """
    Façade over the seal registry, contract graph store, validator, selector
    and commitment builder.

    Args:
        registry: existing seal registry (a new one is created if omitted)
        graph: existing graph store; its verdict cache is shared with the
            validator
        schemas: schema library; the built-in RGB20 schema is always present
        audit_enabled: record hash-chained audit events (defaults to config)
    """

    def __init__(
        self,
        registry: Optional[SealRegistry] = None,
        graph: Optional[ContractGraphStore] = None,
        schemas: Optional[SchemaLibrary] = None,
        audit_enabled: Optional[bool] = None,
    ):
        from bpro.config import get_config
        config = get_config()

        self.graph = graph if graph is not None else ContractGraphStore(VerdictCache())
        self.registry = registry if registry is not None else SealRegistry()
        self.schemas = schemas if schemas is not None else SchemaLibrary()
        self.schemas.add(rgb20_schema())
        self.validator = TransitionValidator(self.registry, self.graph, self.graph.verdicts)
        self.selector = SealSelector(self.registry, self.graph)

        self._change_vout = config.engine.default_change_vout.get()
        self._method = SealMethod(config.commitment.default_method.get())
        if audit_enabled is None:
            audit_enabled = config.observability.audit_enabled.get()
        self.audit = AuditLogger(
            logger,
            enabled=audit_enabled,
            retention=config.observability.audit_retention.get(),
        )

        self._proofs: Dict[str, Any] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._closed = True
        logger.debug("Engine closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "AssetEngine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise EngineClosed("asset engine is closed")

    def _contract_lock(self, contract_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(contract_id)
            if lock is None:
                lock = self._locks[contract_id] = threading.RLock()
            return lock

    @contextmanager
    def _audited(self, action: str, contract_id: str, **details: Any) -> Iterator[Dict[str, Any]]:
        extra: Dict[str, Any] = {}
        try:
            yield extra
        except RgbError as e:
            self.audit.log(action, contract_id, "failure", error=e.code, **details)
            raise
        cid = extra.pop("contract_id", contract_id)
        self.audit.log(action, cid, "success", **details, **extra)

    def _schema_for(self, contract_id: str) -> Schema:
        return self.schemas.get(self.graph.genesis(contract_id).schema_id)

    def default_change_seal(self) -> SealDefinition:
        """Deferred seal on the configured witness output with fresh blinding."""
        return SealDefinition.deferred(self._change_vout, method=self._method)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    @timed_operation(logger, "issue")
    def issue(
        self,
        schema: Union[Schema, str, None],
        initial_allocations: Iterable[AllocationSpec],
        *,
        ticker: str,
        name: str,
        precision: int = 8,
        description: str = "",
        issue_limit: Optional[int] = None,
        inflation: Iterable[AllocationSpec] = (),
        issuer: str = "",
        created_at: int = 0,
        nonce: int = 0,
        signing_key: Any = None,
        verification_method: Optional[str] = None,
        proof: Any = None,
    ) -> str:
        """Create a contract. Returns its contract id.

        ``inflation`` allocations grant secondary-issuance rights; the issue
        limit defaults to the sum of initial and inflation amounts.
        """
        self._ensure_open()
        if isinstance(schema, Schema):
            self.schemas.add(schema)
        elif schema is None:
            schema = rgb20_schema()
        else:
            schema = self.schemas.get(schema)

        assignments = _as_assignments(initial_allocations, Right.ASSET)
        assignments += _as_assignments(inflation, Right.INFLATION)
        if issue_limit is None:
            issue_limit = sum_right(assignments, Right.ASSET) + sum_right(assignments, Right.INFLATION)

        genesis = Genesis(
            schema_id=schema.schema_id,
            ticker=ticker,
            name=name,
            description=description,
            precision=precision,
            issue_limit=issue_limit,
            issuer=issuer,
            created_at=created_at,
            nonce=nonce,
            assignments=tuple(assignments),
        )

        with self._audited("issue", "", ticker=ticker) as audit:
            if signing_key is not None:
                from bpro.issuer import sign_genesis
                proof = sign_genesis(genesis, signing_key, verification_method)
            validate_genesis(genesis, schema, proof)
            if genesis.contract_id in self.graph:
                raise DuplicateContract(genesis.contract_id)
            for a in genesis.assignments:
                if a.seal_id in self.registry:
                    raise SchemaMismatch(f"genesis seal {a.seal_id} is already defined")

            cid = genesis.contract_id
            with self._contract_lock(cid):
                self.graph.append(genesis)
                for a in genesis.assignments:
                    self.registry.define(a.seal, contract_id=cid, defined_by=cid)
            if proof is not None:
                self._proofs[cid] = proof
            audit["contract_id"] = cid

        logger.info("Asset issued", contract_id=cid, ticker=ticker, issued=genesis.issued)
        return cid

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _execute(self, schema: Schema, transition: Transition) -> Tuple[Transition, Commitment]:
        """Validate, then reserve + append atomically, then commit."""
        cid = transition.contract_id
        tid = transition.transition_id

        self.validator.validate(transition, schema)

        with self._contract_lock(cid):
            self.registry.close_all(transition.inputs, tid)
            try:
                self.graph.append_transition(cid, transition)
            except RgbError:
                for seal in transition.inputs:
                    self.registry.release(seal, tid)
                raise
            for a in transition.assignments:
                self.registry.define(a.seal, contract_id=cid, defined_by=tid)

        commitment = CommitmentBuilder(schema.limits, self._method).commit(transition)
        logger.info(
            "Transition committed",
            contract_id=cid, transition_id=tid,
            kind=transition.kind.value, commitment=commitment.hex(),
        )
        return transition, commitment

    def _input_sum(self, seal_ids: Sequence[str], right: Right) -> int:
        total = 0
        for seal in seal_ids:
            a = self.graph.assignment(seal)
            if a is not None and a.right is right:
                total += a.amount
        return total

    @timed_operation(logger, "transfer")
    def transfer(
        self,
        contract_id: str,
        target_allocations: Iterable[AllocationSpec],
        *,
        wallet: Optional[Iterable[OwnedUtxo]] = None,
        inputs: Optional[Sequence[str]] = None,
        change_seal: Optional[SealDefinition] = None,
    ) -> Tuple[Transition, Commitment]:
        """Move asset to ``target_allocations``.

        Inputs come from the selector over ``wallet`` unless given explicitly
        (coin control). Any excess over the targets goes to ``change_seal``.
        """
        self._ensure_open()
        with self._audited("transfer", contract_id) as audit:
            schema = self._schema_for(contract_id)
            targets = _as_assignments(target_allocations, Right.ASSET)
            amount = sum_right(targets, Right.ASSET)

            if inputs is None:
                if wallet is None:
                    raise ValueError("transfer needs a wallet snapshot or explicit inputs")
                selection = self.selector.select(contract_id, amount, list(wallet))
                input_ids = list(selection.seals)
                change = selection.change
            else:
                input_ids = list(inputs)
                change = max(self._input_sum(input_ids, Right.ASSET) - amount, 0)

            outputs = list(targets)
            if change > 0:
                outputs.append(Assignment(change_seal or self.default_change_seal(), change))

            transition = Transition(
                contract_id=contract_id,
                kind=TransitionKind.TRANSFER,
                inputs=tuple(input_ids),
                assignments=tuple(outputs),
            )
            result = self._execute(schema, transition)
            audit["transition_id"] = transition.transition_id
        return result

    @timed_operation(logger, "burn")
    def burn(
        self,
        contract_id: str,
        seal_ids: Sequence[str],
        *,
        amount: Optional[int] = None,
        change_seal: Optional[SealDefinition] = None,
        reason: str = "",
    ) -> Tuple[Transition, Commitment]:
        """Destroy asset held by ``seal_ids`` (all of it unless ``amount`` is given).

        Inflation rights on the closed seals are carried to a fresh seal.
        """
        self._ensure_open()
        with self._audited("burn", contract_id) as audit:
            schema = self._schema_for(contract_id)
            held = self._input_sum(seal_ids, Right.ASSET)
            burned = held if amount is None else amount

            outputs = []
            if held > burned:
                outputs.append(Assignment(change_seal or self.default_change_seal(), held - burned))
            inflation = self._input_sum(seal_ids, Right.INFLATION)
            if inflation:
                outputs.append(Assignment(self.default_change_seal(), inflation, Right.INFLATION))

            metadata: Dict[str, Union[int, str]] = {"burned": burned}
            if reason:
                metadata["reason"] = reason
            transition = Transition(
                contract_id=contract_id,
                kind=TransitionKind.BURN,
                inputs=tuple(seal_ids),
                assignments=tuple(outputs),
                metadata=metadata,
            )
            result = self._execute(schema, transition)
            audit["transition_id"] = transition.transition_id
        return result

    @timed_operation(logger, "issue_secondary")
    def issue_secondary(
        self,
        contract_id: str,
        inflation_seal_ids: Sequence[str],
        allocations: Iterable[AllocationSpec],
        *,
        inflation_change_seal: Optional[SealDefinition] = None,
    ) -> Tuple[Transition, Commitment]:
        """Spend inflation rights to issue new asset; unused allowance is carried over."""
        self._ensure_open()
        with self._audited("issue_secondary", contract_id) as audit:
            schema = self._schema_for(contract_id)
            outputs = _as_assignments(allocations, Right.ASSET)
            allowance = self._input_sum(inflation_seal_ids, Right.INFLATION)
            remainder = allowance - sum_right(outputs, Right.ASSET)
            if remainder > 0:
                outputs.append(Assignment(
                    inflation_change_seal or self.default_change_seal(),
                    remainder,
                    Right.INFLATION,
                ))

            transition = Transition(
                contract_id=contract_id,
                kind=TransitionKind.ISSUE,
                inputs=tuple(inflation_seal_ids),
                assignments=tuple(outputs),
            )
            result = self._execute(schema, transition)
            audit["transition_id"] = transition.transition_id
        return result

    # ------------------------------------------------------------------
    # Witness lifecycle
    # ------------------------------------------------------------------

    def anchor(self, transition_id: str, witness_txid: str) -> List[str]:
        """Bind the deferred output seals of a transition to its witness txid."""
        self._ensure_open()
        transition = self.graph.transition(transition_id)
        bound = []
        with self._contract_lock(transition.contract_id):
            for a in transition.assignments:
                if a.seal.is_deferred:
                    self.registry.bind(a.seal_id, witness_txid)
                    bound.append(a.seal_id)
        self.audit.log("anchor", transition.contract_id, "success",
                       transition_id=transition_id, witness=witness_txid)
        return bound

    def abandon(self, transition_id: str) -> Transition:
        """Roll back a proposal whose witness was dropped. Impossible once confirmed."""
        self._ensure_open()
        transition = self.graph.transition(transition_id)
        cid = transition.contract_id
        with self._audited("abandon", cid, transition_id=transition_id):
            with self._contract_lock(cid):
                for seal in transition.inputs:
                    record = self.registry.get(seal)
                    if record.status is SealStatus.CONFIRMED and record.closed_by == transition_id:
                        raise SealFinalized(seal)
                self.graph.abandon(transition_id)
                for seal in transition.inputs:
                    record = self.registry.get(seal)
                    if record.status is SealStatus.PROPOSED_CLOSED and record.closed_by == transition_id:
                        self.registry.abandon(seal)
        return transition

    def remove(self, contract_id: str) -> Genesis:
        """Stop tracking a contract: its graph, seal records and issuer proof."""
        self._ensure_open()
        with self._audited("remove", contract_id):
            with self._contract_lock(contract_id):
                genesis = self.graph.remove(contract_id)
                self.registry.forget(contract_id)
                self.validator.replay.forget(contract_id)
                self._proofs.pop(contract_id, None)
        logger.info("Asset removed", contract_id=contract_id, ticker=genesis.ticker)
        return genesis

    def on_confirmed(self, outpoint: Outpoint, depth: int) -> List[str]:
        """Confirm closures on ``outpoint``.

        A seal reopened by a reorg whose live spender was re-mined is proposed
        again for that spender first.
        """
        if depth >= self.registry.min_confirmations:
            for record in self.registry.at_outpoint(outpoint):
                if record.status is not SealStatus.OPEN:
                    continue
                spender = self.graph.spender(record.seal_id)
                if spender is not None:
                    with self._contract_lock(self.graph.contract_of(spender)):
                        self.registry.close(record.seal_id, spender)
                    logger.info("Re-mined spend re-proposed", seal_id=record.seal_id, transition_id=spender)
        return self.registry.on_confirmed(outpoint, depth)

    def on_reorg(self, outpoint: Outpoint) -> List[Any]:
        return self.registry.on_reorg(outpoint)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def assets(self) -> List[AssetInfo]:
        return [AssetInfo.from_genesis(self.graph.genesis(cid)) for cid in self.graph.contracts()]

    def asset(self, contract_id: str) -> AssetInfo:
        return AssetInfo.from_genesis(self.graph.genesis(contract_id))

    def allocations(self, contract_id: str) -> List[Allocation]:
        return self.graph.unspent(contract_id)

    def proof(self, contract_id: str) -> Any:
        return self._proofs.get(contract_id)

    def supply(self, contract_id: str) -> SupplyReport:
        genesis = self.graph.genesis(contract_id)
        issued = genesis.issued
        burned = 0
        for t in self.graph.transitions(contract_id):
            if t.kind is TransitionKind.ISSUE:
                issued += sum_right(t.assignments, Right.ASSET) - self._input_sum(t.inputs, Right.ASSET)
            elif t.kind is TransitionKind.BURN:
                burned += int(t.meta.get("burned", 0))
        unspent = self.graph.unspent(contract_id)
        return SupplyReport(
            contract_id=contract_id,
            issued=issued,
            burned=burned,
            circulating=sum(a.amount for a in unspent if a.right is Right.ASSET),
            issue_limit=genesis.issue_limit,
            inflation_remaining=sum(a.amount for a in unspent if a.right is Right.INFLATION),
        )

    def balance(self, contract_id: str, wallet: Iterable[OwnedUtxo]) -> int:
        """Asset spendable from ``wallet``: open seals on owned outpoints."""
        return sum(c.amount for c in self.selector.candidates(contract_id, wallet))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "schemas": [s.to_dict() for s in sorted(self.schemas, key=lambda s: s.schema_id)],
            "graph": self.graph.snapshot(),
            "seals": self.registry.snapshot(),
            "proofs": {cid: p.to_dict() for cid, p in sorted(self._proofs.items())},
        }

    @classmethod
    def restore(cls, snapshot: Mapping[str, Any], audit_enabled: Optional[bool] = None) -> "AssetEngine":
        if snapshot.get("version") != SNAPSHOT_VERSION:
            raise SnapshotCorrupted(f"unsupported engine snapshot version {snapshot.get('version')!r}")
        from bpro.issuer import IssuerProof

        schemas = SchemaLibrary([Schema.from_dict(d) for d in snapshot.get("schemas", [])])
        schemas.add(rgb20_schema())
        graph = ContractGraphStore.restore(
            snapshot.get("graph") or {"version": 1}, VerdictCache(), schemas=list(schemas)
        )
        registry = SealRegistry.restore(snapshot.get("seals") or {"version": 1})
        _check_consistency(graph, registry)
        engine = cls(registry=registry, graph=graph, schemas=schemas, audit_enabled=audit_enabled)
        for cid, p in (snapshot.get("proofs") or {}).items():
            engine._proofs[cid] = IssuerProof.from_dict(p)
        return engine
