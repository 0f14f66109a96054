"""
Transition Validator.

Decides whether a proposed transition is admissible against its contract's
schema and the current contract graph, using only local data:

1. Resolve every input seal through the Seal Registry (``DanglingInput``).
2. Replay owned state along each input chain from genesis through a memoized
   ``(contract_id, node_id)`` index.
3. Apply the schema's conservation rule (``ConservationViolation``).
4. Check encoding conformance against the schema (``SchemaMismatch``).
5. Record the verdict by transition id in the shared ``VerdictCache``; the
   graph store refuses transitions without an accepted verdict.

The validator performs no I/O and reads no clock: identical genesis, graph and
transition always produce the identical verdict.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from bpro.observability import Layer, get_logger
from bpro.rgb.encoding import encode_genesis, encode_transition
from bpro.rgb.errors import (
    ConservationViolation,
    DanglingInput,
    InvariantViolation,
    RgbError,
    SchemaMismatch,
    ValidationError,
)
from bpro.rgb.schema import RuleKind, Schema, conservation_rule
from bpro.rgb.seals import SealRegistry, SealStatus
from bpro.rgb.types import AMOUNT_MAX, Assignment, Genesis, Right, Transition, TransitionKind

if TYPE_CHECKING:
    from bpro.issuer import IssuerProof
    from bpro.rgb.graph import ContractGraphStore

logger = get_logger("validator", Layer.VALIDATION)


# =============================================================================
# VERDICTS
# =============================================================================

@dataclass(frozen=True)
class Verdict:
    transition_id: str
    accepted: bool
    code: str = ""
    message: str = ""
    error: Optional[RgbError] = field(default=None, compare=False, repr=False)

    @classmethod
    def accept(cls, transition_id: str) -> "Verdict":
        return cls(transition_id=transition_id, accepted=True)

    @classmethod
    def reject(cls, transition_id: str, error: RgbError) -> "Verdict":
        return cls(
            transition_id=transition_id,
            accepted=False,
            code=error.code,
            message=error.message,
            error=error,
        )


class VerdictCache:
    """Verdicts keyed by transition id, shared by validator and graph store."""

    def __init__(self) -> None:
        self._verdicts: Dict[str, Verdict] = {}
        self._lock = threading.Lock()

    def get(self, transition_id: str) -> Optional[Verdict]:
        with self._lock:
            return self._verdicts.get(transition_id)

    def record(self, verdict: Verdict) -> Verdict:
        """Store ``verdict`` unless one exists; returns the stored verdict."""
        with self._lock:
            return self._verdicts.setdefault(verdict.transition_id, verdict)

    def discard(self, transition_ids: Iterable[str]) -> None:
        with self._lock:
            for tid in transition_ids:
                self._verdicts.pop(tid, None)

    def accepted(self, transition_id: str) -> bool:
        verdict = self.get(transition_id)
        return verdict is not None and verdict.accepted

    def __contains__(self, transition_id: object) -> bool:
        with self._lock:
            return transition_id in self._verdicts

    def __len__(self) -> int:
        with self._lock:
            return len(self._verdicts)


# =============================================================================
# REPLAY INDEX
# =============================================================================

@dataclass(frozen=True)
class NodeState:
    """Owned state opened by one replayed node."""
    node_id: str
    depth: int
    outputs: Mapping[str, Assignment]


class ReplayIndex:
    """Memoized replay of nodes from genesis, keyed by (contract_id, node_id).

    Nodes are immutable once appended, so memo entries never go stale.
    Traversal is iterative; a node is replayed only after all its parents.
    """

    def __init__(self, graph: "ContractGraphStore"):
        self._graph = graph
        self._memo: Dict[Tuple[str, str], NodeState] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._memo)

    def forget(self, contract_id: str) -> None:
        with self._lock:
            for key in [k for k in self._memo if k[0] == contract_id]:
                del self._memo[key]

    def _lookup(self, key: Tuple[str, str]) -> Optional[NodeState]:
        with self._lock:
            return self._memo.get(key)

    def state(self, contract_id: str, node_id: str) -> NodeState:
        key = (contract_id, node_id)
        hit = self._lookup(key)
        if hit is not None:
            return hit

        stack: List[str] = [node_id]
        on_stack: Set[str] = {node_id}
        while stack:
            nid = stack[-1]
            if self._lookup((contract_id, nid)) is not None:
                stack.pop()
                on_stack.discard(nid)
                continue

            node = self._graph.node(contract_id, nid)
            if self._graph.is_abandoned(nid):
                raise InvariantViolation(f"live node depends on abandoned node {nid}")

            if isinstance(node, Genesis):
                state = NodeState(nid, 0, _outputs(node.assignments))
            else:
                parents = self._parents(contract_id, node)
                pending = [p for p in parents if self._lookup((contract_id, p)) is None]
                if pending:
                    for p in pending:
                        if p in on_stack:
                            raise InvariantViolation(f"cycle through node {p}")
                        stack.append(p)
                        on_stack.add(p)
                    continue
                depth = 0
                for seal, parent in zip(node.inputs, parents):
                    parent_state = self._lookup((contract_id, parent))
                    if seal not in parent_state.outputs:
                        raise InvariantViolation(f"node {parent} does not open seal {seal}")
                    depth = max(depth, parent_state.depth + 1)
                state = NodeState(nid, depth, _outputs(node.assignments))

            with self._lock:
                self._memo.setdefault((contract_id, nid), state)
            stack.pop()
            on_stack.discard(nid)

        return self._memo[key]

    def _parents(self, contract_id: str, transition: Transition) -> List[str]:
        parents = []
        for seal in transition.inputs:
            parent = self._graph.defining_node(seal)
            if parent is None:
                raise InvariantViolation(f"appended node spends unknown seal {seal}")
            parents.append(parent)
        return parents


def _outputs(assignments: Iterable[Assignment]) -> Mapping[str, Assignment]:
    return MappingProxyType({a.seal_id: a for a in assignments})


# =============================================================================
# CONSERVATION
# =============================================================================

def _checked_sum(assignments: Iterable[Assignment], right: Right, side: str) -> int:
    total = sum(a.amount for a in assignments if a.right is right)
    if total > AMOUNT_MAX:
        raise ConservationViolation(f"{side} {right.value} sum {total} overflows u64")
    return total


def check_fungible_sum(transition: Transition, inputs: List[Assignment]) -> None:
    """Per-right balance of a fungible transition."""
    outputs = list(transition.assignments)
    asset_in = _checked_sum(inputs, Right.ASSET, "input")
    asset_out = _checked_sum(outputs, Right.ASSET, "output")
    infl_in = _checked_sum(inputs, Right.INFLATION, "input")
    infl_out = _checked_sum(outputs, Right.INFLATION, "output")

    if transition.kind is TransitionKind.TRANSFER:
        if asset_in != asset_out:
            raise ConservationViolation(
                f"transfer moves {asset_in} in but assigns {asset_out}",
                inputs=asset_in, outputs=asset_out,
            )
        if infl_in != infl_out:
            raise ConservationViolation(
                f"transfer of inflation rights: {infl_in} in, {infl_out} out",
                inputs=infl_in, outputs=infl_out,
            )

    elif transition.kind is TransitionKind.ISSUE:
        if infl_in == 0:
            raise ConservationViolation("secondary issuance must close an inflation right")
        if asset_out < asset_in:
            raise ConservationViolation(
                f"secondary issuance destroys asset: {asset_in} in, {asset_out} out"
            )
        if asset_out - asset_in != infl_in - infl_out:
            raise ConservationViolation(
                f"issued {asset_out - asset_in} but consumed {infl_in - infl_out} inflation allowance",
                issued=asset_out - asset_in, consumed=infl_in - infl_out,
            )

    elif transition.kind is TransitionKind.BURN:
        burned = transition.meta.get("burned")
        if isinstance(burned, bool) or not isinstance(burned, int):
            raise SchemaMismatch("burn transition must declare an integer 'burned' amount")
        if asset_in != asset_out + burned:
            raise ConservationViolation(
                f"burn of {burned} from {asset_in} leaves {asset_out}",
                inputs=asset_in, outputs=asset_out, burned=burned,
            )
        if infl_in != infl_out:
            raise ConservationViolation("burn must carry inflation rights unchanged")


_RULES = {
    RuleKind.FUNGIBLE_SUM: check_fungible_sum,
}


def conservation_check(schema: Schema):
    """Balance check enforcing the conservation rule of ``schema``."""
    return _RULES[conservation_rule(schema)]


# =============================================================================
# VALIDATOR
# =============================================================================

def validate_genesis(genesis: Genesis, schema: Schema, proof: Optional["IssuerProof"] = None) -> None:
    """Check a genesis against its schema and, if given, the issuer proof."""
    if genesis.schema_id != schema.schema_id:
        raise SchemaMismatch(f"genesis references schema {genesis.schema_id}, not {schema.schema_id}")
    errors = schema.payload_errors(genesis.payload())
    if errors:
        raise SchemaMismatch("genesis payload: " + "; ".join(errors[:5]))
    if genesis.precision > schema.max_precision:
        raise SchemaMismatch(f"precision {genesis.precision} exceeds {schema.max_precision}")
    seals = [a.seal_id for a in genesis.assignments]
    if len(set(seals)) != len(seals):
        raise SchemaMismatch("genesis assigns the same seal twice")

    encode_genesis(genesis, schema.limits)

    issued = _checked_sum(genesis.assignments, Right.ASSET, "genesis")
    inflation = _checked_sum(genesis.assignments, Right.INFLATION, "genesis")
    if issued + inflation > genesis.issue_limit:
        raise ConservationViolation(
            f"issued {issued} plus inflation {inflation} exceeds issue limit {genesis.issue_limit}"
        )

    if proof is not None:
        from bpro.issuer import verify_genesis_proof
        verify_genesis_proof(genesis, proof)


class TransitionValidator:
    """Pure admissibility check over a registry and graph store."""

    def __init__(
        self,
        registry: SealRegistry,
        graph: "ContractGraphStore",
        verdicts: Optional[VerdictCache] = None,
    ):
        self._registry = registry
        self._graph = graph
        self.verdicts = verdicts if verdicts is not None else graph.verdicts
        self.replay = ReplayIndex(graph)

    def validate_genesis(self, genesis: Genesis, schema: Schema, proof: Optional["IssuerProof"] = None) -> None:
        validate_genesis(genesis, schema, proof)

    def validate(self, transition: Transition, schema: Schema) -> Verdict:
        """Return the accepted verdict or raise the rejection."""
        tid = transition.transition_id
        # the caller's schema is not part of the transition content
        self._check_schema(transition, schema)
        cached = self.verdicts.get(tid)
        if cached is not None:
            if cached.accepted:
                return cached
            raise cached.error

        try:
            self._check(transition, schema)
        except DanglingInput:
            # depends on registry state that may still change
            logger.info("Transition rejected", transition_id=tid, reason="dangling_input")
            raise
        except ValidationError as e:
            self.verdicts.record(Verdict.reject(tid, e))
            logger.info("Transition rejected", transition_id=tid, reason=e.code)
            raise

        verdict = self.verdicts.record(Verdict.accept(tid))
        logger.debug("Transition accepted", transition_id=tid, contract_id=transition.contract_id)
        return verdict

    def _check_schema(self, transition: Transition, schema: Schema) -> None:
        genesis = self._graph.genesis(transition.contract_id)
        if genesis.schema_id != schema.schema_id:
            raise SchemaMismatch(
                f"contract uses schema {genesis.schema_id}, not {schema.schema_id}"
            )

    def _check(self, transition: Transition, schema: Schema) -> None:
        defining = self._resolve_inputs(transition)
        inputs = self._replay_inputs(transition, defining)
        conservation_check(schema)(transition, inputs)
        self._check_encoding(transition, schema)

    def _resolve_inputs(self, transition: Transition) -> List[Tuple[str, str]]:
        if not transition.inputs:
            raise DanglingInput("(none)", "transition closes no seals")
        if len(set(transition.inputs)) != len(transition.inputs):
            raise SchemaMismatch("transition lists an input seal twice")

        tid = transition.transition_id
        resolved = []
        for seal in transition.inputs:
            if seal not in self._registry:
                raise DanglingInput(seal, "seal is not defined")
            record = self._registry.get(seal)
            if record.contract_id != transition.contract_id:
                raise DanglingInput(seal, f"seal belongs to contract {record.contract_id}")
            if self._graph.defining_node(seal) != record.defined_by:
                raise DanglingInput(seal, "seal is not opened in the contract graph")
            if self._graph.is_abandoned(record.defined_by):
                raise DanglingInput(seal, f"opened by abandoned transition {record.defined_by}")
            if record.status is SealStatus.CONFIRMED and record.closed_by != tid:
                raise DanglingInput(seal, f"already confirmed-closed by {record.closed_by}")
            resolved.append((seal, record.defined_by))
        return resolved

    def _replay_inputs(self, transition: Transition, defining: List[Tuple[str, str]]) -> List[Assignment]:
        inputs = []
        for seal, node_id in defining:
            state = self.replay.state(transition.contract_id, node_id)
            assignment = state.outputs.get(seal)
            if assignment is None:
                raise DanglingInput(seal, f"node {node_id} carries no state for this seal")
            inputs.append(assignment)
        return inputs

    def _check_encoding(self, transition: Transition, schema: Schema) -> None:
        if transition.kind not in schema.transition_kinds:
            raise SchemaMismatch(f"schema {schema.name} does not admit {transition.kind.value}")
        errors = schema.payload_errors(transition.payload())
        if errors:
            raise SchemaMismatch("transition payload: " + "; ".join(errors[:5]))

        outputs = transition.output_seals
        if len(set(outputs)) != len(outputs):
            raise SchemaMismatch("transition assigns the same seal twice")
        tid = transition.transition_id
        for seal in outputs:
            if seal in self._registry and self._registry.get(seal).defined_by != tid:
                raise SchemaMismatch(f"output seal {seal} is already defined")

        encode_transition(transition, schema.limits)
