"""
Asset contract state engine.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │  engine.py      AssetEngine façade: issue / transfer / burn / reissue   │
    │                                                                          │
    │  selector.py    Deterministic seal selection over a wallet snapshot     │
    │  validator.py   Pure admissibility check, replay index, verdict cache   │
    │  commitment.py  Bundle commitment, opret / tapret embedding             │
    │                                                                          │
    │  graph.py       Append-only contract DAG per contract id                │
    │  seals.py       Seal arena with compare-and-swap status transitions     │
    │                                                                          │
    │  schema.py      Tagged schema variants + JSON Schema payload checks     │
    │  encoding.py    Strict binary encoding and content ids                  │
    │  types.py       Outpoints, seals, assignments, genesis, transitions     │
    │  errors.py      Error taxonomy                                          │
    │  chain.py       Chain notifier protocol and in-memory mock chain        │
    └─────────────────────────────────────────────────────────────────────────┘
"""


def __getattr__(name):
    """Lazy import engine modules on first access."""

    if name in ("AssetEngine", "AssetInfo", "SupplyReport", "EngineClosed"):
        from bpro.rgb import engine
        return getattr(engine, name)

    if name in ("SealRegistry", "SealRecord", "SealStatus"):
        from bpro.rgb import seals
        return getattr(seals, name)

    if name in ("ContractGraphStore",):
        from bpro.rgb import graph
        return getattr(graph, name)

    if name in ("TransitionValidator", "VerdictCache", "Verdict", "validate_genesis"):
        from bpro.rgb import validator
        return getattr(validator, name)

    if name in ("CommitmentBuilder", "Commitment", "TransitionBundle"):
        from bpro.rgb import commitment
        return getattr(commitment, name)

    if name in ("SealSelector", "Selection"):
        from bpro.rgb import selector
        return getattr(selector, name)

    if name in ("Schema", "SchemaKind", "RuleKind", "SchemaLibrary", "rgb20_schema",
                "load_schema", "validate_payload", "conservation_rule"):
        from bpro.rgb import schema
        return getattr(schema, name)

    if name in ("Outpoint", "SealDefinition", "SealMethod", "Assignment", "Right",
                "Genesis", "Transition", "TransitionKind", "OwnedUtxo", "Allocation"):
        from bpro.rgb import types
        return getattr(types, name)

    if name in ("MockChain", "ChainNotifier"):
        from bpro.rgb import chain
        return getattr(chain, name)

    raise AttributeError(f"module 'bpro.rgb' has no attribute '{name}'")


__all__ = [
    # Engine
    "AssetEngine",
    "AssetInfo",
    "SupplyReport",
    "EngineClosed",
    # Components
    "SealRegistry",
    "SealRecord",
    "SealStatus",
    "ContractGraphStore",
    "TransitionValidator",
    "VerdictCache",
    "Verdict",
    "validate_genesis",
    "CommitmentBuilder",
    "Commitment",
    "TransitionBundle",
    "SealSelector",
    "Selection",
    # Schema
    "Schema",
    "SchemaKind",
    "RuleKind",
    "SchemaLibrary",
    "rgb20_schema",
    "load_schema",
    "validate_payload",
    "conservation_rule",
    # Data model
    "Outpoint",
    "SealDefinition",
    "SealMethod",
    "Assignment",
    "Right",
    "Genesis",
    "Transition",
    "TransitionKind",
    "OwnedUtxo",
    "Allocation",
    # Chain
    "MockChain",
    "ChainNotifier",
]
