"""In-process progress broadcaster: per-scan listeners plus global metrics listeners."""
from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

from app.config import get_settings
from app.services.scan_state import ScanState, ScanStatus

logger = logging.getLogger(__name__)

Listener = Callable[[ScanState], None]
MetricsListener = Callable[["LiveMetrics"], None]


@dataclass(frozen=True)
class LiveMetrics:
    timestamp: str
    active_scans: int
    queued_scans: int
    completed_scans: int
    failed_scans: int
    pages_crawled: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "activeScans": self.active_scans,
            "queuedScans": self.queued_scans,
            "completedScans": self.completed_scans,
            "failedScans": self.failed_scans,
            "pagesCrawled": self.pages_crawled,
        }


class ProgressBroadcaster:
    """Synchronous fan-out of scan state.

    Listeners for a scan are called in registration order on the publishing
    thread. A listener that raises is logged and skipped; the others still
    receive the update. Terminal states stay readable for the retention window;
    a timer evicts them afterwards and ``evict_expired`` sweeps any leftovers.
    """

    def __init__(
        self,
        retention_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.retention_seconds = float(retention_seconds)
        self._clock = clock
        self._lock = threading.RLock()
        self._tokens = itertools.count(1)
        self._states: Dict[str, ScanState] = {}
        self._listeners: Dict[str, Dict[int, Listener]] = {}
        self._metrics_listeners: Dict[int, MetricsListener] = {}
        self._expires_at: Dict[str, float] = {}
        self._timers: Dict[str, threading.Timer] = {}

    # -- per-scan -----------------------------------------------------

    def subscribe(self, scan_id: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            token = next(self._tokens)
            self._listeners.setdefault(scan_id, {})[token] = listener
            current = self._states.get(scan_id)
        if current is not None:
            self._deliver(scan_id, token, listener, current)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(scan_id)
                if listeners is None:
                    return
                listeners.pop(token, None)
                if not listeners:
                    self._listeners.pop(scan_id, None)

        return unsubscribe

    def publish(self, scan_id: str, state: ScanState) -> bool:
        """Store and fan out ``state``; returns False when the scan already reached a terminal state."""
        with self._lock:
            current = self._states.get(scan_id)
            if current is not None and current.status.terminal:
                logger.debug("Discarding %s update for finished scan %s", state.status.value, scan_id)
                return False
            self._states[scan_id] = state
            if state.status.terminal:
                self._arm_eviction(scan_id, self.retention_seconds)
            listeners = list(self._listeners.get(scan_id, {}).items())
        for token, listener in listeners:
            self._deliver(scan_id, token, listener, state)
        return True

    def _deliver(self, scan_id: str, token: int, listener: Listener, state: ScanState) -> None:
        try:
            listener(state)
        except Exception:
            logger.exception("Progress listener %s failed for scan %s", token, scan_id)

    def get(self, scan_id: str) -> Optional[ScanState]:
        with self._lock:
            return self._states.get(scan_id)

    def active_scans(self) -> List[ScanState]:
        with self._lock:
            return [state for state in self._states.values() if not state.status.terminal]

    def schedule_eviction(self, scan_id: str, delay_seconds: Optional[float] = None) -> None:
        delay = self.retention_seconds if delay_seconds is None else float(delay_seconds)
        with self._lock:
            if scan_id in self._states:
                self._arm_eviction(scan_id, delay)

    def _arm_eviction(self, scan_id: str, delay: float) -> None:
        deadline = self._clock() + delay
        self._expires_at[scan_id] = deadline
        previous = self._timers.pop(scan_id, None)
        if previous is not None:
            previous.cancel()
        timer = threading.Timer(max(0.0, delay), self._expire, args=(scan_id, deadline))
        timer.daemon = True
        self._timers[scan_id] = timer
        timer.start()

    def _expire(self, scan_id: str, deadline: float) -> None:
        with self._lock:
            # A later schedule_eviction call owns the scan now
            if self._expires_at.get(scan_id) != deadline:
                return
            self._timers.pop(scan_id, None)
            self.evict(scan_id)
        logger.debug("Evicted finished scan %s from live progress", scan_id)

    def evict(self, scan_id: str) -> None:
        with self._lock:
            self._states.pop(scan_id, None)
            self._listeners.pop(scan_id, None)
            self._expires_at.pop(scan_id, None)
            timer = self._timers.pop(scan_id, None)
        if timer is not None:
            timer.cancel()

    def evict_expired(self) -> List[str]:
        now = self._clock()
        with self._lock:
            expired = [scan_id for scan_id, deadline in self._expires_at.items() if deadline <= now]
            for scan_id in expired:
                self.evict(scan_id)
        if expired:
            logger.debug("Evicted %d finished scans from live progress", len(expired))
        return expired

    # -- metrics ------------------------------------------------------

    def live_metrics(self) -> LiveMetrics:
        with self._lock:
            states = list(self._states.values())
        return LiveMetrics(
            timestamp=datetime.now(timezone.utc).isoformat(),
            active_scans=sum(1 for state in states if not state.status.terminal),
            queued_scans=sum(1 for state in states if state.status == ScanStatus.queued),
            completed_scans=sum(1 for state in states if state.status == ScanStatus.completed),
            failed_scans=sum(1 for state in states if state.status == ScanStatus.failed),
            pages_crawled=sum(state.pages_crawled for state in states),
        )

    def subscribe_metrics(self, listener: MetricsListener) -> Callable[[], None]:
        with self._lock:
            token = next(self._tokens)
            self._metrics_listeners[token] = listener
        self._deliver_metrics(token, listener, self.live_metrics())

        def unsubscribe() -> None:
            with self._lock:
                self._metrics_listeners.pop(token, None)

        return unsubscribe

    def broadcast_metrics(self) -> Optional[LiveMetrics]:
        with self._lock:
            listeners = list(self._metrics_listeners.items())
        if not listeners:
            return None
        metrics = self.live_metrics()
        for token, listener in listeners:
            self._deliver_metrics(token, listener, metrics)
        return metrics

    def _deliver_metrics(self, token: int, listener: MetricsListener, metrics: LiveMetrics) -> None:
        try:
            listener(metrics)
        except Exception:
            logger.exception("Metrics listener %s failed", token)


@lru_cache
def get_broadcaster() -> ProgressBroadcaster:
    """Process-wide broadcaster shared by the worker's scans."""
    return ProgressBroadcaster(retention_seconds=get_settings().progress_retention_seconds)
