"""Connection Registry — per-target connection records and breakers.

WHY
───
The orchestrator, the step executor and the connection monitor all read
and write the same per-target state: is the target connected, when was it
last active, is its breaker open.  The registry is the single owner of
that state.  Each target gets its own lock and its own
:class:`~stepwise.execution.circuit_breaker.CircuitBreaker`, so work on one
target never contends with work on another.

ARCHITECTURE
────────────
::

    ConnectionRegistry
      ├── .register(definition)      ─ record + fresh breaker (DuplicateTargetError)
      ├── .record(target_id)         ─ snapshot of the TargetRecord
      ├── .breaker(target_id)        ─ the target's CircuitBreaker
      ├── .record_success(target_id) ─ breaker success + activity refresh
      ├── .record_failure(target_id) ─ breaker failure + last_error
      ├── .mark_connected / mark_disconnected / mark_error / touch
      └── .health_summary()          ─ breaker + status counts

    _TargetEntry (one per target)
      ├── definition   (immutable)
      ├── record       (mutable, guarded by entry.lock)
      ├── breaker      (own lock)
      └── lock

Records are never deleted while the registry lives; a failed target is
marked ``error`` or ``disconnected`` instead.

Example::

    registry = ConnectionRegistry()
    registry.register(TargetDefinition("revit", protocol=TargetProtocol.STDIO,
                                       capabilities=("elements", "parameters")))
    if registry.breaker("revit").allow():
        ...
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from stepwise.core.errors import DuplicateTargetError, UnknownTargetError, ValidationError
from stepwise.core.logging import get_logger
from stepwise.core.settings import get_settings
from stepwise.core.timestamps import Clock, utc_now
from stepwise.execution.circuit_breaker import CircuitBreaker, CircuitState

logger = get_logger(__name__)


class TargetProtocol(str, Enum):
    """Transport used to reach a target."""

    STDIO = "stdio"
    HTTP = "http"
    WEBSOCKET = "websocket"


class TargetStatus(str, Enum):
    """Connection status of a target."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True, eq=False)
class TargetDefinition:
    """Static description of a target, supplied at registration."""

    target_id: str
    name: str = ""
    protocol: TargetProtocol = TargetProtocol.STDIO
    capabilities: tuple[str, ...] = ()
    endpoint: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.target_id:
            raise ValidationError("target_id must not be empty", field="target_id")
        object.__setattr__(self, "protocol", TargetProtocol(self.protocol))
        object.__setattr__(self, "capabilities", tuple(self.capabilities))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))
        if not self.name:
            object.__setattr__(self, "name", self.target_id)


@dataclass(frozen=True)
class TargetRecord:
    """Connection record for a target. Snapshots are immutable copies."""

    target_id: str
    protocol: TargetProtocol
    status: TargetStatus
    last_activity: datetime
    connected_at: datetime | None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "protocol": self.protocol.value,
            "status": self.status.value,
            "last_activity": self.last_activity.isoformat(),
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "last_error": self.last_error,
        }


@dataclass
class _TargetEntry:
    definition: TargetDefinition
    record: TargetRecord
    breaker: CircuitBreaker
    lock: threading.RLock = field(default_factory=threading.RLock)


class ConnectionRegistry:
    """Owns every registered target's record, lock and breaker.

    Args:
        failure_threshold: Breaker threshold for new targets (default from settings)
        open_duration: Breaker open window in seconds (default from settings)
        clock: Time source shared with the breakers
    """

    def __init__(
        self,
        failure_threshold: int | None = None,
        open_duration: float | None = None,
        clock: Clock = utc_now,
    ) -> None:
        settings = get_settings()
        self._failure_threshold = (
            failure_threshold if failure_threshold is not None else settings.breaker_failure_threshold
        )
        self._open_duration = (
            open_duration if open_duration is not None else settings.breaker_open_duration_seconds
        )
        self._clock = clock
        # Guards the id -> entry mapping only; per-target state uses entry.lock
        self._lock = threading.RLock()
        self._entries: dict[str, _TargetEntry] = {}

    @property
    def clock(self) -> Clock:
        return self._clock

    # ── Registration ─────────────────────────────────────────────

    def register(self, definition: TargetDefinition) -> TargetRecord:
        """Register a target with a fresh breaker; it starts ``connected``.

        Raises:
            DuplicateTargetError: the id is already registered
        """
        now = self._clock()
        with self._lock:
            if definition.target_id in self._entries:
                raise DuplicateTargetError(definition.target_id)
            record = TargetRecord(
                target_id=definition.target_id,
                protocol=definition.protocol,
                status=TargetStatus.CONNECTED,
                last_activity=now,
                connected_at=now,
            )
            breaker = CircuitBreaker(
                name=definition.target_id,
                failure_threshold=self._failure_threshold,
                open_duration=self._open_duration,
                clock=self._clock,
            )
            self._entries[definition.target_id] = _TargetEntry(
                definition=definition, record=record, breaker=breaker
            )

        logger.info(
            "target.registered",
            target=definition.target_id,
            protocol=definition.protocol.value,
            capabilities=list(definition.capabilities),
        )
        return record

    def is_registered(self, target_id: str) -> bool:
        with self._lock:
            return target_id in self._entries

    def missing(self, target_ids: Sequence[str]) -> list[str]:
        """Ids from ``target_ids`` that are not registered, in input order."""
        with self._lock:
            return [t for t in target_ids if t not in self._entries]

    def target_ids(self) -> list[str]:
        """Registered ids in registration order."""
        with self._lock:
            return list(self._entries)

    def _entry(self, target_id: str) -> _TargetEntry:
        with self._lock:
            entry = self._entries.get(target_id)
        if entry is None:
            raise UnknownTargetError([target_id])
        return entry

    # ── Accessors ────────────────────────────────────────────────

    def definition(self, target_id: str) -> TargetDefinition:
        return self._entry(target_id).definition

    def definitions(self) -> list[TargetDefinition]:
        """All definitions in registration order."""
        with self._lock:
            return [e.definition for e in self._entries.values()]

    def record(self, target_id: str) -> TargetRecord:
        entry = self._entry(target_id)
        with entry.lock:
            return entry.record

    def records(self) -> list[TargetRecord]:
        with self._lock:
            entries = list(self._entries.values())
        records = []
        for entry in entries:
            with entry.lock:
                records.append(entry.record)
        return records

    def breaker(self, target_id: str) -> CircuitBreaker:
        return self._entry(target_id).breaker

    # ── Mutations ────────────────────────────────────────────────

    def _update(self, target_id: str, **changes: Any) -> TargetRecord:
        entry = self._entry(target_id)
        with entry.lock:
            entry.record = replace(entry.record, **changes)
            return entry.record

    def touch(self, target_id: str) -> TargetRecord:
        """Refresh ``last_activity``."""
        return self._update(target_id, last_activity=self._clock())

    def mark_connected(self, target_id: str) -> TargetRecord:
        now = self._clock()
        record = self._update(
            target_id,
            status=TargetStatus.CONNECTED,
            connected_at=now,
            last_activity=now,
            last_error=None,
        )
        logger.info("target.connected", target=target_id)
        return record

    def mark_disconnected(self, target_id: str) -> TargetRecord:
        record = self._update(target_id, status=TargetStatus.DISCONNECTED)
        logger.warning("target.disconnected", target=target_id)
        return record

    def mark_error(self, target_id: str, error: str | None = None) -> TargetRecord:
        changes: dict[str, Any] = {"status": TargetStatus.ERROR}
        if error is not None:
            changes["last_error"] = error
        record = self._update(target_id, **changes)
        logger.error("target.error", target=target_id, error=error)
        return record

    def record_success(self, target_id: str) -> TargetRecord:
        """A call to the target succeeded."""
        entry = self._entry(target_id)
        with entry.lock:
            entry.breaker.on_success()
            entry.record = replace(entry.record, last_activity=self._clock())
            return entry.record

    def record_failure(self, target_id: str, error: BaseException | str) -> TargetRecord:
        """A call to the target failed; counts toward its breaker."""
        entry = self._entry(target_id)
        with entry.lock:
            entry.breaker.on_failure(error if isinstance(error, BaseException) else None)
            entry.record = replace(entry.record, last_error=str(error))
            return entry.record

    # ── Reporting ────────────────────────────────────────────────

    def active_connections(self) -> list[TargetRecord]:
        return [r for r in self.records() if r.status == TargetStatus.CONNECTED]

    def health_summary(self) -> dict[str, Any]:
        """Breaker and connection counts for health endpoints and logs."""
        with self._lock:
            entries = list(self._entries.values())
        states = Counter(e.breaker.state.value for e in entries)
        statuses = Counter(self.record(e.definition.target_id).status.value for e in entries)
        return {
            "targets": len(entries),
            "circuit_breakers": len(entries),
            "open_circuits": states.get(CircuitState.OPEN.value, 0),
            "breaker_states": dict(states),
            "target_statuses": dict(statuses),
        }


__all__ = [
    "ConnectionRegistry",
    "TargetDefinition",
    "TargetProtocol",
    "TargetRecord",
    "TargetStatus",
]
