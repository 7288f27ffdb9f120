"""Idle connection reaper - periodic cleanup of pooled connections."""

from __future__ import annotations

import threading
import time
import weakref
from enum import Enum
from typing import Protocol

import structlog

from discovery_http.config import DEFAULT_CLEANUP_INTERVAL_MS
from discovery_http.errors import CleanupError
from discovery_http.metrics import (
    CLEANER_FAILURES,
    CLEANER_TIMER,
    InMemoryMetrics,
    MetricsSink,
)

logger = structlog.get_logger()

DEFAULT_CLEANUP_INTERVAL_S = DEFAULT_CLEANUP_INTERVAL_MS / 1000


class IdleConnectionTarget(Protocol):
    """Anything exposing idle cleanup (the connection pool)."""

    def close_idle_connections(self, idle_seconds: float) -> None: ...


class ReaperState(str, Enum):
    """Reaper lifecycle state."""

    CREATED = "created"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    STOPPED = "stopped"


class IdleConnectionReaper:
    """Background worker closing pooled connections idle beyond a threshold.

    Responsibilities:
    - Run ``close_idle_connections`` on a fixed delay from one daemon thread
    - Time every run and count failed runs through the metrics sink
    - Keep the schedule alive when a run fails

    The reaper only holds a weak reference to the pool; it never keeps a
    destroyed client's pool alive.

    Usage:
        reaper = IdleConnectionReaper(pool, idle_timeout=30, name="registry")
        reaper.start()
        ...
        reaper.stop()
    """

    def __init__(
        self,
        pool: IdleConnectionTarget,
        idle_timeout: float,
        *,
        interval: float = DEFAULT_CLEANUP_INTERVAL_S,
        metrics: MetricsSink | None = None,
        name: str = "default",
    ) -> None:
        """Initialize the reaper.

        Args:
            pool: Pool to sweep (weakly referenced)
            idle_timeout: Seconds a connection may stay idle
            interval: Seconds between the end of one run and the next
            metrics: Sink for the run timer and failure counter
            name: Client name, used for the thread name and logs
        """
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")

        self._pool_ref = weakref.ref(pool)
        self._idle_timeout = idle_timeout
        self._interval = interval
        self._metrics: MetricsSink = metrics if metrics is not None else InMemoryMetrics()
        self._name = name
        self._log = logger.bind(component="connection_cleaner", client=name)

        self._state = ReaperState.CREATED
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        self._run_count = 0
        self._failure_count = 0

    @property
    def state(self) -> ReaperState:
        return self._state

    @property
    def is_running(self) -> bool:
        """Whether future runs are scheduled."""
        return self._state in (ReaperState.SCHEDULED, ReaperState.RUNNING)

    @property
    def idle_timeout(self) -> float:
        return self._idle_timeout

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def metrics(self) -> MetricsSink:
        return self._metrics

    @property
    def run_count(self) -> int:
        return self._run_count

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def start(self) -> None:
        """Schedule the first run one interval from now."""
        with self._state_lock:
            if self._state is not ReaperState.CREATED:
                self._log.warning("reaper.start.ignored", state=self._state.value)
                return
            self._thread = threading.Thread(
                target=self._background_loop,
                name=f"discovery-http-conn-cleaner-{self._name}",
                daemon=True,
            )
            self._state = ReaperState.SCHEDULED
            self._thread.start()

        self._log.info(
            "reaper.started",
            interval_seconds=self._interval,
            idle_timeout_seconds=self._idle_timeout,
        )

    def stop(self, wait: bool = False, timeout: float | None = None) -> None:
        """Cancel future runs.

        A run in progress is neither interrupted nor, unless ``wait`` is set,
        waited for. Calling stop() more than once is a no-op.
        """
        with self._state_lock:
            if self._state is ReaperState.STOPPED:
                return
            self._state = ReaperState.STOPPED
            self._stop_event.set()
            thread = self._thread

        self._log.info("reaper.stopped")

        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def run_once(self) -> bool:
        """Execute one cleanup pass.

        Errors are logged and counted, never raised.

        Returns:
            True if the pass completed, False if it failed
        """
        started = time.perf_counter()
        with self._state_lock:
            self._run_count += 1
        try:
            pool = self._pool_ref()
            if pool is None:
                raise CleanupError("Connection pool has been released")
            pool.close_idle_connections(self._idle_timeout)
            return True
        except Exception as e:
            error = e if isinstance(e, CleanupError) else CleanupError(str(e))
            with self._state_lock:
                self._failure_count += 1
            self._metrics.increment(CLEANER_FAILURES)
            self._log.exception("reaper.run.failed", error=error.message)
            return False
        finally:
            self._metrics.record_time(CLEANER_TIMER, time.perf_counter() - started)

    def _background_loop(self) -> None:
        """Fixed-delay loop; exits once stop() sets the event."""
        while not self._stop_event.wait(self._interval):
            with self._state_lock:
                if self._state is ReaperState.STOPPED:
                    break
                self._state = ReaperState.RUNNING

            self.run_once()

            with self._state_lock:
                if self._state is ReaperState.RUNNING:
                    self._state = ReaperState.SCHEDULED
