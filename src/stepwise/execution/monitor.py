"""Connection Monitor — staleness checks, reconnection and failover proposals.

WHY
───
Targets drop off silently: a desktop agent crashes, an extraction service
restarts.  The monitor runs on its own cadence against the same
:class:`~stepwise.execution.connections.ConnectionRegistry` the
orchestrator uses, notices targets that have gone quiet, tries to bring
them back, and when that fails disables them (breaker forced open) and
proposes fallback targets with overlapping capabilities.

ARCHITECTURE
────────────
::

    ConnectionMonitor(registry, connector)
      ├── .tick()                       ─ one inspection pass → MonitorReport
      │     for each target:
      │       idle > stale_threshold ?  ── yes ─▶ handle_disconnection()
      │                                 ── no  ─▶ registry.touch()
      ├── .handle_disconnection(id)     ─ mark disconnected, reconnect w/ backoff
      │       success    ─▶ mark connected
      │       exhausted  ─▶ mark error, force breaker open, find_fallback()
      ├── .find_fallback(id)            ─ ranked FallbackCandidate list
      └── .start() / .stop()            ─ background thread every `interval`

Reconnection waits ``base_delay * 2 ** (attempt - 1)`` before each attempt.
All waits go through the monitor's stop event, so ``stop()`` aborts them.

The monitor only *proposes* fallback candidates; choosing one is up to the
``on_fallback`` callback.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from stepwise.core.logging import get_logger
from stepwise.core.settings import get_settings
from stepwise.execution.collaborators import TargetConnector
from stepwise.execution.connections import ConnectionRegistry, TargetStatus

logger = get_logger(__name__)

FallbackCallback = Callable[[str, list["FallbackCandidate"]], None]


@dataclass(frozen=True)
class FallbackCandidate:
    """A target that could stand in for a failed one."""

    target_id: str
    shared_capabilities: tuple[str, ...]

    @property
    def overlap(self) -> int:
        return len(self.shared_capabilities)


@dataclass
class MonitorReport:
    """What one ``tick()`` did."""

    checked: list[str] = field(default_factory=list)
    refreshed: list[str] = field(default_factory=list)
    reconnected: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    fallbacks: dict[str, list[FallbackCandidate]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": list(self.checked),
            "refreshed": list(self.refreshed),
            "reconnected": list(self.reconnected),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "fallbacks": {
                k: [c.target_id for c in v] for k, v in self.fallbacks.items()
            },
        }


class ConnectionMonitor:
    """Periodically inspects registered targets.

    Args:
        registry: Shared connection registry
        connector: Re-establishes connections
        stale_threshold: Seconds of inactivity before a target is stale
        reconnect_attempts: Reconnection ceiling per disconnection
        reconnect_base_delay: Wait before the first reconnection attempt (doubles)
        interval: Seconds between ticks when started in the background
        on_fallback: Receives ``(target_id, candidates)`` when reconnection fails
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        connector: TargetConnector,
        stale_threshold: float | None = None,
        reconnect_attempts: int | None = None,
        reconnect_base_delay: float | None = None,
        interval: float | None = None,
        on_fallback: FallbackCallback | None = None,
    ) -> None:
        settings = get_settings()
        self._registry = registry
        self._connector = connector
        self.stale_threshold = (
            stale_threshold if stale_threshold is not None else settings.monitor_stale_threshold_seconds
        )
        self.reconnect_attempts = (
            reconnect_attempts if reconnect_attempts is not None else settings.monitor_reconnect_attempts
        )
        self.reconnect_base_delay = (
            reconnect_base_delay
            if reconnect_base_delay is not None
            else settings.monitor_reconnect_base_delay_seconds
        )
        self.interval = interval if interval is not None else settings.monitor_interval_seconds
        self._on_fallback = on_fallback

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._reconnecting: set[str] = set()
        self._reconnecting_lock = threading.Lock()
        self.last_fallbacks: dict[str, list[FallbackCandidate]] = {}

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ── Inspection ───────────────────────────────────────────────

    def tick(self) -> MonitorReport:
        """Inspect every registered target once."""
        report = MonitorReport()
        now = self._registry.clock()

        for target_id in self._registry.target_ids():
            if self._stop.is_set():
                break
            report.checked.append(target_id)
            record = self._registry.record(target_id)
            idle = (now - record.last_activity).total_seconds()

            if idle > self.stale_threshold:
                logger.warning(
                    "monitor.stale_target",
                    target=target_id,
                    idle_seconds=round(idle, 3),
                    status=record.status.value,
                )
                if self._is_reconnecting(target_id):
                    report.skipped.append(target_id)
                    continue
                if self.handle_disconnection(target_id):
                    report.reconnected.append(target_id)
                else:
                    report.failed.append(target_id)
                    report.fallbacks[target_id] = self.last_fallbacks.get(target_id, [])
            else:
                self._registry.touch(target_id)
                report.refreshed.append(target_id)

        logger.debug("monitor.tick", **report.to_dict())
        return report

    def _is_reconnecting(self, target_id: str) -> bool:
        with self._reconnecting_lock:
            return target_id in self._reconnecting

    def handle_disconnection(self, target_id: str) -> bool:
        """Try to bring a target back.

        Returns:
            True if reconnected; False if the ceiling was reached, the
            monitor was stopped, or another thread is already reconnecting it.
        """
        with self._reconnecting_lock:
            if target_id in self._reconnecting:
                return False
            self._reconnecting.add(target_id)

        try:
            return self._reconnect(target_id)
        finally:
            with self._reconnecting_lock:
                self._reconnecting.discard(target_id)

    def _reconnect(self, target_id: str) -> bool:
        self._registry.mark_disconnected(target_id)
        definition = self._registry.definition(target_id)
        delay = self.reconnect_base_delay
        last_error: Exception | None = None

        for attempt in range(1, self.reconnect_attempts + 1):
            if self._stop.wait(delay):
                logger.info("monitor.reconnect_aborted", target=target_id, attempt=attempt)
                return False
            try:
                self._connector.connect(definition)
            except Exception as e:
                last_error = e
                logger.warning(
                    "monitor.reconnect_failed",
                    target=target_id,
                    attempt=attempt,
                    max_attempts=self.reconnect_attempts,
                    error=str(e),
                )
                delay *= 2
                continue

            self._registry.mark_connected(target_id)
            logger.info("monitor.reconnected", target=target_id, attempt=attempt)
            return True

        message = f"Reconnection failed after {self.reconnect_attempts} attempts"
        if last_error is not None:
            message = f"{message}: {last_error}"
        self._registry.mark_error(target_id, message)
        self._registry.breaker(target_id).force_open()

        candidates = self.find_fallback(target_id)
        self.last_fallbacks[target_id] = candidates
        if self._on_fallback is not None:
            try:
                self._on_fallback(target_id, candidates)
            except Exception:
                logger.exception("monitor.fallback_callback_failed", target=target_id)
        return False

    def find_fallback(self, target_id: str) -> list[FallbackCandidate]:
        """Other targets sharing at least one capability with ``target_id``.

        Ranked by overlap size (descending), ties by registration order.
        Targets currently in ``error`` are not proposed.
        """
        wanted = set(self._registry.definition(target_id).capabilities)
        candidates: list[FallbackCandidate] = []

        for definition in self._registry.definitions():
            if definition.target_id == target_id:
                continue
            if self._registry.record(definition.target_id).status == TargetStatus.ERROR:
                continue
            shared = tuple(c for c in definition.capabilities if c in wanted)
            if shared:
                candidates.append(FallbackCandidate(definition.target_id, shared))

        # sort is stable, so registration order breaks ties
        candidates.sort(key=lambda c: c.overlap, reverse=True)

        if candidates:
            logger.info(
                "monitor.fallback_candidates",
                target=target_id,
                candidates=[c.target_id for c in candidates],
            )
        else:
            logger.warning("monitor.no_fallback", target=target_id)
        return candidates

    # ── Background loop ──────────────────────────────────────────

    def start(self) -> None:
        """Run ``tick()`` every ``interval`` seconds on a daemon thread."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="stepwise-connection-monitor", daemon=True
        )
        self._thread.start()
        logger.info("monitor.started", interval=self.interval)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the loop and abort pending waits."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("monitor.stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("monitor.tick_failed")
            if self._stop.wait(self.interval):
                break


__all__ = [
    "ConnectionMonitor",
    "FallbackCandidate",
    "MonitorReport",
]
