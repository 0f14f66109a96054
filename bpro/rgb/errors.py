"""
Error taxonomy for the asset contract state engine.

Every component raises one of the families below and never recovers locally:

    SealError        UnknownSeal, AlreadyClosed, SealFinalized
    GraphError       DuplicateContract, UnknownContract, UnknownAncestor,
                     NotValidated, SnapshotCorrupted
    ValidationError  DanglingInput, ConservationViolation, SchemaMismatch,
                     IssuerProofInvalid
    BuildError       EncodingOverflow
    SelectionError   InsufficientFunds

Validation and encoding failures are deterministic: retrying the same call
repeats the same failure. Only errors flagged ``retryable`` (insufficient funds)
may succeed after an external state change such as new wallet funds.

``InvariantViolation`` is not part of the taxonomy. It signals a broken internal
invariant (for example a confirmed seal observed as open) and must abort the
operation instead of being handled.
"""

from __future__ import annotations

from typing import Any, Optional


class RgbError(Exception):
    """Base class for recoverable engine errors."""

    code = "rgb_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": {k: str(v) for k, v in self.details.items()},
        }


# =============================================================================
# SEAL ERRORS
# =============================================================================

class SealError(RgbError):
    code = "seal_error"


class UnknownSeal(SealError):
    code = "unknown_seal"

    def __init__(self, seal_id: str):
        super().__init__(f"seal {seal_id} was never defined", seal_id=seal_id)
        self.seal_id = seal_id


class AlreadyClosed(SealError):
    code = "already_closed"

    def __init__(self, seal_id: str, closed_by: Optional[str] = None):
        msg = f"seal {seal_id} is not open"
        if closed_by:
            msg += f" (closed by {closed_by})"
        super().__init__(msg, seal_id=seal_id, closed_by=closed_by or "")
        self.seal_id = seal_id
        self.closed_by = closed_by


class SealFinalized(SealError):
    code = "seal_finalized"

    def __init__(self, seal_id: str):
        super().__init__(f"seal {seal_id} is confirmed-closed and cannot be reopened", seal_id=seal_id)
        self.seal_id = seal_id


# =============================================================================
# GRAPH ERRORS
# =============================================================================

class GraphError(RgbError):
    code = "graph_error"


class DuplicateContract(GraphError):
    code = "duplicate_contract"

    def __init__(self, contract_id: str):
        super().__init__(f"contract {contract_id} already exists", contract_id=contract_id)
        self.contract_id = contract_id


class UnknownContract(GraphError):
    code = "unknown_contract"

    def __init__(self, contract_id: str):
        super().__init__(f"contract {contract_id} is not known", contract_id=contract_id)
        self.contract_id = contract_id


class UnknownAncestor(GraphError):
    code = "unknown_ancestor"

    def __init__(self, seal_id: str, reason: str):
        super().__init__(f"input seal {seal_id}: {reason}", seal_id=seal_id)
        self.seal_id = seal_id


class NotValidated(GraphError):
    code = "not_validated"

    def __init__(self, transition_id: str):
        super().__init__(
            f"transition {transition_id} was not accepted by the validator",
            transition_id=transition_id,
        )
        self.transition_id = transition_id


class SnapshotCorrupted(GraphError):
    code = "snapshot_corrupted"


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class ValidationError(RgbError):
    code = "validation_error"


class DanglingInput(ValidationError):
    code = "dangling_input"

    def __init__(self, seal_id: str, reason: str):
        super().__init__(f"input seal {seal_id}: {reason}", seal_id=seal_id)
        self.seal_id = seal_id


class ConservationViolation(ValidationError):
    code = "conservation_violation"


class SchemaMismatch(ValidationError):
    code = "schema_mismatch"


class IssuerProofInvalid(ValidationError):
    code = "issuer_proof_invalid"


# =============================================================================
# BUILD / SELECTION ERRORS
# =============================================================================

class BuildError(RgbError):
    code = "build_error"


class EncodingOverflow(BuildError):
    code = "encoding_overflow"

    def __init__(self, field: str, size: int, limit: int):
        super().__init__(
            f"{field}: encoded size {size} exceeds maximum {limit}",
            field=field, size=size, limit=limit,
        )
        self.field = field
        self.size = size
        self.limit = limit


class SelectionError(RgbError):
    code = "selection_error"


class InsufficientFunds(SelectionError):
    code = "insufficient_funds"
    retryable = True

    def __init__(self, target: int, available: int):
        super().__init__(
            f"cannot cover {target}: only {available} available in owned open seals",
            target=target, available=available,
        )
        self.target = target
        self.available = available


# =============================================================================
# FATAL
# =============================================================================

class InvariantViolation(Exception):
    """Internal state machine invariant violated."""
    pass
