"""
Seal Registry.

An arena of seal records indexed by seal id. Records are immutable; every status
change swaps in a new record under the seal's own lock after checking the
expected version (compare-and-swap), so two in-flight transitions racing for the
same seal see exactly one success.

State machine:

    OPEN ──close──▶ PROPOSED_CLOSED(tid) ──confirm──▶ CONFIRMED(tid)
      ▲                    │
      └──abandon/reorg─────┘

CONFIRMED is terminal. A PROPOSED_CLOSED seal is unavailable for new
reservations until it is confirmed or explicitly abandoned.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set

from bpro.observability import Layer, get_logger
from bpro.rgb.errors import (
    AlreadyClosed,
    InvariantViolation,
    SealError,
    SealFinalized,
    SnapshotCorrupted,
    UnknownSeal,
)
from bpro.rgb.types import Outpoint, SealDefinition

logger = get_logger("registry", Layer.SEALS)

SNAPSHOT_VERSION = 1


class SealStatus(Enum):
    OPEN = "open"
    PROPOSED_CLOSED = "proposed_closed"
    CONFIRMED = "confirmed"

    @property
    def is_closed(self) -> bool:
        return self is not SealStatus.OPEN


VALID_TRANSITIONS: Dict[SealStatus, Set[SealStatus]] = {
    SealStatus.OPEN: {SealStatus.PROPOSED_CLOSED},
    SealStatus.PROPOSED_CLOSED: {SealStatus.CONFIRMED, SealStatus.OPEN},
    SealStatus.CONFIRMED: set(),
}


def check_transition(current: SealStatus, target: SealStatus) -> None:
    if target not in VALID_TRANSITIONS[current]:
        raise InvariantViolation(
            f"Invalid seal transition: {current.value} -> {target.value}. "
            f"Valid targets: {sorted(s.value for s in VALID_TRANSITIONS[current])}"
        )


@dataclass(frozen=True)
class SealRecord:
    """One arena slot. ``outpoint`` is None for a deferred seal not yet bound."""
    seal_id: str
    definition: SealDefinition
    contract_id: str
    defined_by: str
    status: SealStatus = SealStatus.OPEN
    closed_by: Optional[str] = None
    outpoint: Optional[Outpoint] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seal_id": self.seal_id,
            "definition": self.definition.to_dict(),
            "contract_id": self.contract_id,
            "defined_by": self.defined_by,
            "status": self.status.value,
            "closed_by": self.closed_by,
            "outpoint": str(self.outpoint) if self.outpoint else None,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SealRecord":
        return cls(
            seal_id=d["seal_id"],
            definition=SealDefinition.from_dict(d["definition"]),
            contract_id=d["contract_id"],
            defined_by=d["defined_by"],
            status=SealStatus(d["status"]),
            closed_by=d.get("closed_by"),
            outpoint=Outpoint.parse(d["outpoint"]) if d.get("outpoint") else None,
            version=int(d.get("version", 0)),
        )


class SealRegistry:
    """
    Tracks seal definitions and their closing status.

    Args:
        min_confirmations: witness depth at which ``on_confirmed`` finalizes a
            proposed closure. Defaults to ``seals.min_confirmations``.
    """

    def __init__(self, min_confirmations: Optional[int] = None):
        if min_confirmations is None:
            from bpro.config import get_config
            min_confirmations = get_config().seals.min_confirmations.get()
        if min_confirmations < 1:
            raise ValueError("min_confirmations must be >= 1")
        self.min_confirmations = min_confirmations
        self._records: Dict[str, SealRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._by_outpoint: Dict[Outpoint, Set[str]] = {}
        self._arena_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Arena primitives
    # ------------------------------------------------------------------

    def _lock_for(self, seal_id: str) -> threading.Lock:
        lock = self._locks.get(seal_id)
        if lock is None:
            raise UnknownSeal(seal_id)
        return lock

    def _swap(self, expected: SealRecord, new: SealRecord) -> bool:
        """Replace ``expected`` with ``new`` if nobody changed it meanwhile.

        Caller must hold the seal lock.
        """
        current = self._records[expected.seal_id]
        if current.version != expected.version:
            return False
        self._records[expected.seal_id] = replace(new, version=expected.version + 1)
        return True

    def _index(self, record: SealRecord) -> None:
        if record.outpoint is not None:
            with self._arena_lock:
                self._by_outpoint.setdefault(record.outpoint, set()).add(record.seal_id)

    # ------------------------------------------------------------------
    # Definition and lookup
    # ------------------------------------------------------------------

    def define(self, definition: SealDefinition, *, contract_id: str, defined_by: str) -> str:
        """Register a seal opened by ``defined_by``; idempotent for identical input."""
        sid = definition.seal_id
        with self._arena_lock:
            existing = self._records.get(sid)
            if existing is not None:
                if existing.contract_id != contract_id or existing.defined_by != defined_by:
                    raise InvariantViolation(
                        f"seal {sid} already defined by {existing.defined_by} "
                        f"in contract {existing.contract_id}"
                    )
                return sid
            record = SealRecord(
                seal_id=sid,
                definition=definition,
                contract_id=contract_id,
                defined_by=defined_by,
                outpoint=definition.outpoint,
            )
            self._records[sid] = record
            self._locks[sid] = threading.Lock()
            self._index(record)
        logger.debug("Seal defined", seal_id=sid, contract_id=contract_id, defined_by=defined_by)
        return sid

    def get(self, seal_id: str) -> SealRecord:
        record = self._records.get(seal_id)
        if record is None:
            raise UnknownSeal(seal_id)
        return record

    def status(self, seal_id: str) -> SealStatus:
        return self.get(seal_id).status

    def closed_by(self, seal_id: str) -> Optional[str]:
        return self.get(seal_id).closed_by

    def __contains__(self, seal_id: object) -> bool:
        return seal_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def records(self, contract_id: Optional[str] = None) -> Iterator[SealRecord]:
        for sid in sorted(self._records):
            record = self._records[sid]
            if contract_id is None or record.contract_id == contract_id:
                yield record

    def at_outpoint(self, outpoint: Outpoint) -> List[SealRecord]:
        with self._arena_lock:
            ids = sorted(self._by_outpoint.get(outpoint, ()))
        return [self._records[sid] for sid in ids]

    def forget(self, contract_id: str) -> List[str]:
        """Drop every record of ``contract_id``; returns the removed seal ids."""
        with self._arena_lock:
            removed = [sid for sid, r in self._records.items() if r.contract_id == contract_id]
            for sid in removed:
                record = self._records.pop(sid)
                self._locks.pop(sid, None)
                if record.outpoint is not None:
                    ids = self._by_outpoint.get(record.outpoint)
                    if ids is not None:
                        ids.discard(sid)
                        if not ids:
                            del self._by_outpoint[record.outpoint]
        logger.info("Contract seals forgotten", contract_id=contract_id, count=len(removed))
        return sorted(removed)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def close(self, seal_id: str, transition_id: str) -> SealRecord:
        """Reserve an open seal for ``transition_id`` (OPEN -> PROPOSED_CLOSED)."""
        lock = self._lock_for(seal_id)
        with lock:
            record = self._records[seal_id]
            if record.status is not SealStatus.OPEN:
                raise AlreadyClosed(seal_id, record.closed_by)
            check_transition(record.status, SealStatus.PROPOSED_CLOSED)
            new = replace(record, status=SealStatus.PROPOSED_CLOSED, closed_by=transition_id)
            if not self._swap(record, new):
                raise AlreadyClosed(seal_id, self._records[seal_id].closed_by)
            result = self._records[seal_id]
        logger.debug("Seal reserved", seal_id=seal_id, transition_id=transition_id)
        return result

    def close_all(self, seal_ids: Iterable[str], transition_id: str) -> List[SealRecord]:
        """Reserve every seal or none of them."""
        ordered = sorted(set(seal_ids))
        for sid in ordered:
            self._lock_for(sid)
        closed: List[str] = []
        try:
            for sid in ordered:
                self.close(sid, transition_id)
                closed.append(sid)
        except SealError:
            for sid in reversed(closed):
                self.release(sid, transition_id)
            raise
        return [self._records[sid] for sid in ordered]

    def release(self, seal_id: str, transition_id: str) -> None:
        """Drop a reservation held by ``transition_id``; no-op if held by another."""
        lock = self._lock_for(seal_id)
        with lock:
            record = self._records[seal_id]
            if record.status is SealStatus.PROPOSED_CLOSED and record.closed_by == transition_id:
                self._swap(record, replace(record, status=SealStatus.OPEN, closed_by=None))

    def confirm(self, seal_id: str) -> SealRecord:
        """Finalize a proposed closure (PROPOSED_CLOSED -> CONFIRMED)."""
        lock = self._lock_for(seal_id)
        with lock:
            record = self._records[seal_id]
            if record.status is SealStatus.CONFIRMED:
                return record
            if record.status is SealStatus.OPEN:
                raise SealError(f"seal {seal_id} is open; nothing to confirm", seal_id=seal_id)
            check_transition(record.status, SealStatus.CONFIRMED)
            self._swap(record, replace(record, status=SealStatus.CONFIRMED))
            result = self._records[seal_id]
        logger.info("Seal closure confirmed", seal_id=seal_id, transition_id=result.closed_by)
        return result

    def abandon(self, seal_id: str) -> SealRecord:
        """Return a proposed closure to OPEN. Impossible once confirmed.

        Returns the record as it was before the rollback.
        """
        lock = self._lock_for(seal_id)
        with lock:
            record = self._records[seal_id]
            if record.status is SealStatus.CONFIRMED:
                raise SealFinalized(seal_id)
            if record.status is SealStatus.OPEN:
                raise InvariantViolation(f"seal {seal_id} is open; no proposal to abandon")
            check_transition(record.status, SealStatus.OPEN)
            self._swap(record, replace(record, status=SealStatus.OPEN, closed_by=None))
        logger.info("Seal proposal abandoned", seal_id=seal_id, transition_id=record.closed_by)
        return record

    def bind(self, seal_id: str, txid: str) -> SealRecord:
        """Bind a deferred seal to the witness transaction that created its output."""
        lock = self._lock_for(seal_id)
        with lock:
            record = self._records[seal_id]
            if not record.definition.is_deferred:
                raise SealError(f"seal {seal_id} is not deferred", seal_id=seal_id)
            outpoint = Outpoint(txid, record.definition.vout)
            if record.outpoint is not None:
                if record.outpoint != outpoint:
                    raise SealError(
                        f"seal {seal_id} already bound to {record.outpoint}",
                        seal_id=seal_id,
                    )
                return record
            self._swap(record, replace(record, outpoint=outpoint))
            result = self._records[seal_id]
        self._index(result)
        logger.debug("Deferred seal bound", seal_id=seal_id, outpoint=str(outpoint))
        return result

    # ------------------------------------------------------------------
    # Chain callbacks
    # ------------------------------------------------------------------

    def on_confirmed(self, outpoint: Outpoint, depth: int) -> List[str]:
        """Confirm proposed closures of seals on ``outpoint`` once deep enough."""
        if depth < self.min_confirmations:
            logger.debug(
                "Witness below confirmation depth",
                outpoint=str(outpoint), depth=depth, required=self.min_confirmations,
            )
            return []
        confirmed: List[str] = []
        for record in self.at_outpoint(outpoint):
            if record.status is SealStatus.PROPOSED_CLOSED:
                self.confirm(record.seal_id)
                confirmed.append(record.seal_id)
            elif record.status is SealStatus.OPEN:
                logger.warning(
                    "Spend confirmed for a seal with no proposed closure",
                    seal_id=record.seal_id, outpoint=str(outpoint),
                )
        return confirmed

    def on_reorg(self, outpoint: Outpoint) -> List[SealRecord]:
        """Reopen proposed closures on ``outpoint``; returns the prior records."""
        records = self.at_outpoint(outpoint)
        for record in records:
            if record.status is SealStatus.CONFIRMED:
                logger.critical(
                    "Reorg reached a confirmed seal closure",
                    error_code="invariant_violation",
                    seal_id=record.seal_id, outpoint=str(outpoint),
                )
                raise InvariantViolation(
                    f"reorg of confirmed seal {record.seal_id} at {outpoint}"
                )
        reopened: List[SealRecord] = []
        for record in records:
            if record.status is SealStatus.PROPOSED_CLOSED:
                reopened.append(self.abandon(record.seal_id))
        return reopened

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        with self._arena_lock:
            records = [self._records[sid].to_dict() for sid in sorted(self._records)]
        return {
            "version": SNAPSHOT_VERSION,
            "min_confirmations": self.min_confirmations,
            "seals": records,
        }

    @classmethod
    def restore(cls, snapshot: Mapping[str, Any]) -> "SealRegistry":
        if snapshot.get("version") != SNAPSHOT_VERSION:
            raise SnapshotCorrupted(f"unsupported seal snapshot version {snapshot.get('version')!r}")
        registry = cls(min_confirmations=int(snapshot.get("min_confirmations", 1)))
        for d in snapshot.get("seals", []):
            try:
                record = SealRecord.from_dict(d)
            except (KeyError, TypeError, ValueError) as e:
                raise SnapshotCorrupted(f"malformed seal record: {e}") from e
            if record.definition.seal_id != record.seal_id:
                raise SnapshotCorrupted(f"seal {record.seal_id} does not match its definition")
            registry._records[record.seal_id] = record
            registry._locks[record.seal_id] = threading.Lock()
            registry._index(record)
        return registry

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SealRegistry):
            return NotImplemented
        return self.snapshot() == other.snapshot()

    __hash__ = None  # type: ignore[assignment]
