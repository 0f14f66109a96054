"""Contract schemas.

A schema is a closed, tagged variant (``SchemaKind``) plus declarative data:
the transition kinds it admits, JSON Schemas for genesis and transition state
payloads, and the maximum sizes of length-prefixed fields. Behaviour is reached
only through two capabilities:

- ``validate_payload(schema, payload) -> bool``
- ``conservation_rule(schema) -> RuleKind``

New asset kinds are added as new ``SchemaKind`` members with an entry in
``_CONSERVATION_RULES``, not by subclassing.

Schemas are content-addressed: ``schema_id = sha256(JCS(schema.to_dict()))``.
Payload validation uses JSON Schema draft 2020-12 with a shared-definitions
registry so that schema files can ``$ref`` common types (hex ids, amounts).
"""

from __future__ import annotations

import pathlib
import threading
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property, lru_cache
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from bpro.core import canonical_json_bytes, load_document, sha256_bytes
from bpro.rgb.encoding import EncodingLimits
from bpro.rgb.errors import SchemaMismatch
from bpro.rgb.types import AMOUNT_MAX, TransitionKind

DEFS_URI = "https://schemas.bitcoin-pro.dev/rgb/defs.schema.json"


class SchemaKind(Enum):
    """Closed set of supported contract schema variants."""
    RGB20 = "rgb20"   # fungible asset


class RuleKind(Enum):
    """State conservation semantics a schema imposes on transitions."""
    FUNGIBLE_SUM = "fungible_sum"


_CONSERVATION_RULES: Dict[SchemaKind, RuleKind] = {
    SchemaKind.RGB20: RuleKind.FUNGIBLE_SUM,
}


# =============================================================================
# SHARED DEFINITIONS
# =============================================================================

SHARED_DEFS: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$id": DEFS_URI,
    "$defs": {
        "hex32": {"type": "string", "pattern": "^[a-f0-9]{64}$"},
        "amount": {"type": "integer", "minimum": 0, "maximum": AMOUNT_MAX},
        "right": {"enum": ["asset", "inflation"]},
        "assignment": {
            "type": "object",
            "required": ["seal", "amount", "right"],
            "properties": {
                "seal": {"$ref": "#/$defs/hex32"},
                "amount": {"$ref": "#/$defs/amount"},
                "right": {"$ref": "#/$defs/right"},
            },
            "additionalProperties": False,
        },
    },
}


@lru_cache(maxsize=1)
def _defs_registry() -> Registry:
    """Registry resolving ``$ref`` into the shared definitions."""
    resource = Resource.from_contents(SHARED_DEFS, default_specification=DRAFT202012)
    return Registry().with_resources([(DEFS_URI, resource)])


def _ref(name: str) -> Dict[str, str]:
    return {"$ref": f"{DEFS_URI}#/$defs/{name}"}


# =============================================================================
# SCHEMA
# =============================================================================

@dataclass(frozen=True, eq=False)
class Schema:
    """An immutable, content-addressed contract schema."""
    kind: SchemaKind
    name: str
    version: str
    transition_kinds: FrozenSet[TransitionKind]
    genesis_schema: Mapping[str, Any]
    state_schema: Mapping[str, Any]
    limits: EncodingLimits = field(default_factory=EncodingLimits)
    max_precision: int = 18

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Schema):
            return NotImplemented
        return self.schema_id == other.schema_id

    def __hash__(self) -> int:
        return hash(self.schema_id)

    @cached_property
    def schema_id(self) -> str:
        return sha256_bytes(canonical_json_bytes(self.to_dict()))

    @cached_property
    def _validators(self) -> Dict[str, Draft202012Validator]:
        registry = _defs_registry()
        return {
            "genesis": Draft202012Validator(dict(self.genesis_schema), registry=registry),
            "transition": Draft202012Validator(dict(self.state_schema), registry=registry),
        }

    def payload_errors(self, payload: Any) -> List[str]:
        """Return JSON Schema errors for a genesis or transition payload."""
        which = "genesis" if isinstance(payload, dict) and payload.get("type") == "genesis" else "transition"
        validator = self._validators[which]
        return [
            f"{error.json_path}: {error.message}"
            for error in sorted(validator.iter_errors(payload), key=lambda e: e.json_path)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "name": self.name,
            "version": self.version,
            "transition_kinds": sorted(k.value for k in self.transition_kinds),
            "genesis_schema": self.genesis_schema,
            "state_schema": self.state_schema,
            "limits": {
                "max_ticker_len": self.limits.max_ticker_len,
                "max_name_len": self.limits.max_name_len,
                "max_description_len": self.limits.max_description_len,
                "max_issuer_len": self.limits.max_issuer_len,
                "max_inputs": self.limits.max_inputs,
                "max_assignments": self.limits.max_assignments,
                "max_metadata_entries": self.limits.max_metadata_entries,
                "max_metadata_value_len": self.limits.max_metadata_value_len,
            },
            "max_precision": self.max_precision,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Schema":
        try:
            kind = SchemaKind(d["kind"])
        except (KeyError, ValueError) as e:
            raise SchemaMismatch(f"unsupported schema kind: {d.get('kind')!r}") from e
        limits = d.get("limits") or {}
        return cls(
            kind=kind,
            name=str(d.get("name") or kind.value),
            version=str(d.get("version") or "1"),
            transition_kinds=frozenset(TransitionKind(k) for k in d.get("transition_kinds", [])),
            genesis_schema=d["genesis_schema"],
            state_schema=d["state_schema"],
            limits=EncodingLimits(**{k: int(v) for k, v in limits.items()}),
            max_precision=int(d.get("max_precision", 18)),
        )


# =============================================================================
# CAPABILITIES
# =============================================================================

def validate_payload(schema: Schema, payload: Any) -> bool:
    """True when ``payload`` decodes under the schema's declared state type."""
    return not schema.payload_errors(payload)


def conservation_rule(schema: Schema) -> RuleKind:
    try:
        return _CONSERVATION_RULES[schema.kind]
    except KeyError as e:
        raise SchemaMismatch(f"no conservation rule for schema kind {schema.kind.value}") from e


# =============================================================================
# BUILT-IN SCHEMAS
# =============================================================================

def rgb20_schema() -> Schema:
    """The built-in fungible asset schema."""
    limits = EncodingLimits(
        max_ticker_len=8,
        max_name_len=64,
        max_description_len=4096,
        max_issuer_len=128,
        max_inputs=1024,
        max_assignments=1024,
        max_metadata_entries=8,
        max_metadata_value_len=256,
    )
    genesis_schema = {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "required": ["type", "ticker", "name", "precision", "issue_limit", "assignments"],
        "properties": {
            "type": {"const": "genesis"},
            "ticker": {"type": "string", "pattern": "^[A-Z0-9]{1,8}$"},
            "name": {"type": "string", "minLength": 1, "maxLength": 64},
            "description": {"type": "string", "maxLength": 4096},
            "precision": {"type": "integer", "minimum": 0, "maximum": 18},
            "issue_limit": _ref("amount"),
            "assignments": {"type": "array", "minItems": 1, "items": _ref("assignment")},
        },
    }
    state_schema = {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "required": ["type", "inputs", "assignments", "metadata"],
        "properties": {
            "type": {"enum": ["transfer", "issue", "burn"]},
            "inputs": {"type": "array", "minItems": 1, "uniqueItems": True, "items": _ref("hex32")},
            "assignments": {"type": "array", "items": _ref("assignment")},
            "metadata": {
                "type": "object",
                "properties": {
                    "burned": _ref("amount"),
                    "reason": {"type": "string", "maxLength": 256},
                },
                "additionalProperties": False,
            },
        },
        "allOf": [
            {
                "if": {"properties": {"type": {"const": "burn"}}},
                "then": {"properties": {"metadata": {"required": ["burned"]}}},
            },
            {
                "if": {"properties": {"type": {"const": "transfer"}}},
                "then": {"properties": {"assignments": {"minItems": 1}}},
            },
        ],
    }
    return Schema(
        kind=SchemaKind.RGB20,
        name="RGB20",
        version="1",
        transition_kinds=frozenset(TransitionKind),
        genesis_schema=genesis_schema,
        state_schema=state_schema,
        limits=limits,
        max_precision=18,
    )


def load_schema(path: pathlib.Path) -> Schema:
    """Load a schema definition from a YAML or JSON file."""
    data = load_document(path)
    if not isinstance(data, dict):
        raise SchemaMismatch(f"schema file must contain a mapping: {path}")
    return Schema.from_dict(data)


class SchemaLibrary:
    """Content-addressed set of schemas known to an engine."""

    def __init__(self, schemas: Optional[List[Schema]] = None):
        self._schemas: Dict[str, Schema] = {}
        self._lock = threading.Lock()
        for s in schemas or []:
            self.add(s)

    def add(self, schema: Schema) -> str:
        with self._lock:
            self._schemas.setdefault(schema.schema_id, schema)
        return schema.schema_id

    def get(self, schema_id: str) -> Schema:
        schema = self._schemas.get(schema_id)
        if schema is None:
            raise SchemaMismatch(f"unknown schema {schema_id}")
        return schema

    def __contains__(self, schema_id: object) -> bool:
        return schema_id in self._schemas

    def __iter__(self) -> Iterator[Schema]:
        return iter(list(self._schemas.values()))

    def __len__(self) -> int:
        return len(self._schemas)
