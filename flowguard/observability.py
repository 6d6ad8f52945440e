"""
Structured logging and the supervisor's audit trail.

Components log through FlowGuardLogger, which tags each record with its
layer and keyword context; StructuredHandler renders the records as JSON
lines or plain text.

Every operation the engine runs gets a correlation id, carried through
``contextvars`` so builder, session and supervisor log lines for one
request can be joined.
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
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, TypeVar

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

AUDIT_GENESIS = "genesis"


class FlowGuardLayer(Enum):
    """Engine components, for log categorization."""
    BUILDER = "builder"
    SESSIONS = "sessions"
    SUPERVISOR = "supervisor"
    ENGINE = "engine"
    STORE = "store"
    CLI = "cli"


@dataclass
class LogEvent:
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

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_text(self) -> str:
        parts = [self.timestamp, self.level.upper(), self.logger, self.message]
        if self.correlation_id:
            parts.append(f"[{self.correlation_id}]")
        if self.context:
            parts.append(" ".join(f"{k}={v}" for k, v in sorted(self.context.items())))
        return " ".join(parts)


class StructuredHandler(logging.Handler):
    """Logging handler that writes one JSON object (or text line) per record."""

    def __init__(self, stream: Any = None, fmt: str = "json"):
        super().__init__()
        self.stream = stream or sys.stderr
        self.fmt = fmt

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

            line = event.to_json() if self.fmt == "json" else event.to_text()
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class FlowGuardLogger:
    """Logger for one component; keyword arguments become the event's ``context``."""

    def __init__(self, name: str, layer: FlowGuardLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"flowguard.{layer.value}.{name}")

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

    def error(self, message: str, error_code: str = "", exc_info: bool = False, **context: Any) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(self, name: str, duration_ms: float, success: bool = True, **context: Any) -> None:
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(level, f"Operation {name} {status}", operation=name, duration_ms=duration_ms, **context)


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> None:
    """Install a single StructuredHandler on the ``flowguard`` logger tree."""
    root = logging.getLogger("flowguard")
    for handler in list(root.handlers):
        if isinstance(handler, StructuredHandler):
            root.removeHandler(handler)
    root.addHandler(StructuredHandler(stream, fmt))
    root.setLevel(getattr(logging, level.upper()))


# =============================================================================
# CORRELATION IDS
# =============================================================================

def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str:
    """Current correlation id, created on first use in a context."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: FlowGuardLayer) -> FlowGuardLogger:
    return FlowGuardLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: FlowGuardLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Log how long each call takes, and whether it raised."""
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


# =============================================================================
# AUDIT TRAIL
# =============================================================================

@dataclass
class AuditEvent:
    """One entry in the supervisor's audit trail."""
    event_id: str
    timestamp: str
    actor: str
    action: str
    entity_kind: str
    entity_id: str
    outcome: str  # entity status after the action
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = AUDIT_GENESIS
    event_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def digest(self) -> str:
        body = self.to_dict()
        body.pop("event_hash")
        data = json.dumps(body, sort_keys=True, default=str)
        return hashlib.sha256(data.encode()).hexdigest()


class AuditLogger:
    """
    Tamper-evident audit trail.

    Each event's hash covers its content and the previous event's hash,
    so editing or dropping an entry breaks ``verify_chain``.
    """

    def __init__(self, logger: FlowGuardLogger):
        self._logger = logger
        self._events: List[AuditEvent] = []
        self._last_hash: str = AUDIT_GENESIS
        self._lock = threading.Lock()

    def log(
        self,
        actor: str,
        action: str,
        entity_kind: str,
        entity_id: str,
        outcome: str,
        **details: Any,
    ) -> AuditEvent:
        with self._lock:
            event = AuditEvent(
                event_id=uuid.uuid4().hex,
                timestamp=datetime.now(timezone.utc).isoformat(),
                actor=actor,
                action=action,
                entity_kind=entity_kind,
                entity_id=entity_id,
                outcome=outcome,
                correlation_id=get_correlation_id(),
                details=details,
                previous_hash=self._last_hash,
            )
            event.event_hash = event.digest()
            self._last_hash = event.event_hash
            self._events.append(event)

        self._logger.info(
            f"AUDIT: {action} on {entity_kind}/{entity_id}",
            operation="audit",
            outcome=outcome,
            actor=actor,
            event_hash=event.event_hash,
        )
        return event

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def events_for(self, entity_id: str) -> List[AuditEvent]:
        return [e for e in self.events if e.entity_id == entity_id]

    def verify_chain(self) -> bool:
        previous = AUDIT_GENESIS
        for event in self.events:
            if event.previous_hash != previous or event.digest() != event.event_hash:
                return False
            previous = event.event_hash
        return True
