"""
bitcoin-pro Observability

Structured logging and a tamper-evident audit trail for the asset engine.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Engine Components                     │
    │  logger.info("msg", contract_id=x)   audit.log(...)     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                      BproLogger                          │
    │  correlation IDs, layer tagging, structured context      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │            StructuredHandler (JSON lines, stderr)        │
    └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Deque, Dict, List, Optional, TypeVar

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class Layer(Enum):
    """Engine component emitting a log event."""
    SEALS = "seals"
    GRAPH = "graph"
    VALIDATION = "validation"
    COMMITMENT = "commitment"
    SELECTION = "selection"
    ENGINE = "engine"
    CHAIN = "chain"
    CLI = "cli"


@dataclass
class LogEvent:
    """A structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_json(self) -> str:
        data = {k: v for k, v in asdict(self).items() if v not in (None, "", {})}
        return json.dumps(data, default=str, sort_keys=True)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def _configured_level() -> int:
    from bpro.config import get_config
    return getattr(logging, get_config().observability.log_level.get().upper(), logging.INFO)


def _structured_enabled() -> bool:
    from bpro.config import get_config
    return bool(get_config().observability.structured.get())


class BproLogger:
    """
    Structured logger for engine components.

    Automatically includes correlation IDs and layer information in all
    log events.
    """

    def __init__(self, name: str, layer: Layer, level: Optional[int] = None):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"bpro.{layer.value}.{name}")
        self._logger.setLevel(level if level is not None else _configured_level())

        if _structured_enabled() and not any(
            isinstance(h, StructuredHandler) for h in self._logger.handlers
        ):
            self._logger.addHandler(StructuredHandler())
            self._logger.propagate = False

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def critical(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.CRITICAL, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.DEBUG if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one on first use."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: Layer) -> BproLogger:
    """Get a logger for an engine component."""
    return BproLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: BproLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


# Audit trail for engine mutations
@dataclass
class AuditEvent:
    """Audit event for a state-changing engine call."""
    event_id: str
    timestamp: str
    action: str
    contract_id: str
    outcome: str  # success, failure
    correlation_id: str = ""
    prev_hash: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Tamper-evident audit log with hash chaining.

    Each event commits to the hash of its predecessor. Only the newest
    ``retention`` events are kept; ``anchor`` is the hash the oldest retained
    event links to, and ``verify_chain`` recomputes the chain from there.
    """

    GENESIS_HASH = "0" * 64

    def __init__(self, logger: BproLogger, enabled: bool = True, retention: int = 10000):
        if retention < 1:
            raise ValueError(f"audit retention must be positive: {retention}")
        self._logger = logger
        self._enabled = enabled
        self._last_hash: str = self.GENESIS_HASH
        self._anchor: str = self.GENESIS_HASH
        self._events: Deque[AuditEvent] = deque(maxlen=retention)
        self._hashes: Deque[str] = deque(maxlen=retention)
        self._lock = threading.Lock()

    @staticmethod
    def compute_hash(event: AuditEvent) -> str:
        data = json.dumps(event.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    @property
    def head(self) -> str:
        return self._last_hash

    @property
    def anchor(self) -> str:
        return self._anchor

    def log(
        self,
        action: str,
        contract_id: str,
        outcome: str,
        **details: Any,
    ) -> Optional[AuditEvent]:
        """Append an audit event."""
        if not self._enabled:
            return None

        with self._lock:
            event = AuditEvent(
                event_id=uuid.uuid4().hex,
                timestamp=datetime.now(timezone.utc).isoformat(),
                action=action,
                contract_id=contract_id,
                outcome=outcome,
                correlation_id=get_correlation_id(),
                prev_hash=self._last_hash,
                details={k: str(v) for k, v in details.items()},
            )
            event_hash = self.compute_hash(event)
            if len(self._hashes) == self._hashes.maxlen:
                self._anchor = self._hashes[0]
            self._last_hash = event_hash
            self._events.append(event)
            self._hashes.append(event_hash)

        self._logger.info(
            f"AUDIT: {action} on {contract_id or '-'} {outcome}",
            operation="audit",
            event_hash=event_hash,
            **event.to_dict(),
        )
        return event

    def verify_chain(self) -> bool:
        with self._lock:
            prev = self._anchor
            for event, recorded in zip(self._events, self._hashes):
                if event.prev_hash != prev or self.compute_hash(event) != recorded:
                    return False
                prev = recorded
            return True
