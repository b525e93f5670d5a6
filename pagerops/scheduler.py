from __future__ import annotations

import logging
import random
import threading
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

from pagerops.config import BACKOFF_CEILING, JITTER_RATIO, RESOLVED_RETENTION_HOURS
from pagerops.entities import Settings
from pagerops.errors import AuthError, PartialFetchError, RateLimitError
from pagerops.reconciler import ReconcileResult, Reconciler, RemoteBatch
from pagerops.timestamps import utcnow

logger = logging.getLogger("pagerops.scheduler")


class SchedulerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    BACKOFF = "backoff"


class SyncStatus(BaseModel):
    state: SchedulerState
    last_success_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    next_attempt_in: Optional[float] = None  # seconds until backoff ends
    paused: bool = False


def backoff_delay(failures: int, base: float, ceiling: float) -> float:
    if failures <= 0:
        return 0.0
    return min(ceiling, base * 2 ** (failures - 1))


class RefreshScheduler:
    """Polls the provider and feeds each batch to the reconciler.

    States: IDLE -> FETCHING -> IDLE on success, or -> BACKOFF on failure,
    returning to IDLE once the backoff deadline has passed. At most one fetch
    is in flight; the fetch itself runs without any store lock.
    """

    def __init__(
        self,
        fetch: Callable[[], RemoteBatch],
        reconciler: Reconciler,
        settings: Callable[[], Settings],
        *,
        on_result: Optional[Callable[[ReconcileResult], None]] = None,
        backoff_ceiling: float = BACKOFF_CEILING,
        jitter_ratio: float = JITTER_RATIO,
        retention: timedelta = timedelta(hours=RESOLVED_RETENTION_HOURS),
        clock: Callable[[], float] = time.monotonic,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._fetch = fetch
        self.reconciler = reconciler
        self._settings = settings
        self.on_result = on_result
        self.backoff_ceiling = backoff_ceiling
        self.jitter_ratio = jitter_ratio
        self.retention = retention
        self._clock = clock
        self._uniform = uniform

        self._cond = threading.Condition()
        self._state = SchedulerState.IDLE
        self._failures = 0
        self._deadline: Optional[float] = None
        self._paused = False
        self._started_cycles = 0
        self._finished_cycles = 0
        self._last_success_at: Optional[datetime] = None
        self._last_attempt_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> SchedulerState:
        with self._cond:
            return self._state

    def status(self) -> SyncStatus:
        with self._cond:
            return self._status_locked()

    def _status_locked(self) -> SyncStatus:
        remaining = None
        if self._state is SchedulerState.BACKOFF and self._deadline is not None:
            remaining = max(0.0, self._deadline - self._clock())
        return SyncStatus(
            state=self._state,
            last_success_at=self._last_success_at,
            last_attempt_at=self._last_attempt_at,
            last_error=self._last_error,
            consecutive_failures=self._failures,
            next_attempt_in=remaining,
            paused=self._paused,
        )

    def next_interval(self) -> float:
        base = self._settings().refresh_interval
        spread = base * self.jitter_ratio
        return max(0.0, base + self._uniform(-spread, spread))

    # ----------------------------
    # Triggers
    # ----------------------------

    def tick(self) -> bool:
        """Timer entry point; returns True when a fetch was performed."""

        with self._cond:
            if not self._claim_locked():
                return False
        self._run_cycle()
        return True

    def refresh_now(self, timeout: Optional[float] = None) -> SyncStatus:
        """Manual refresh.

        Joins an in-flight fetch instead of starting a second one, and does
        nothing while a backoff deadline is still ahead.
        """

        with self._cond:
            if self._state is SchedulerState.FETCHING:
                cycle = self._started_cycles
                self._cond.wait_for(lambda: self._finished_cycles >= cycle, timeout)
                return self._status_locked()
            if not self._claim_locked():
                logger.info("manual refresh ignored while in %s", self._state.value)
                return self._status_locked()
        self._run_cycle()
        return self.status()

    def resume(self) -> None:
        """Leave BACKOFF immediately; used after the api key changed."""

        with self._cond:
            self._paused = False
            self._failures = 0
            self._deadline = None
            if self._state is SchedulerState.BACKOFF:
                self._state = SchedulerState.IDLE
        logger.info("refresh scheduler resumed")

    def _claim_locked(self) -> bool:
        if self._stop_event.is_set():
            return False
        if self._state is SchedulerState.FETCHING:
            return False
        if self._state is SchedulerState.BACKOFF:
            if self._paused or (self._deadline is not None and self._clock() < self._deadline):
                return False
            self._state = SchedulerState.IDLE
        self._state = SchedulerState.FETCHING
        self._started_cycles += 1
        self._last_attempt_at = utcnow()
        return True

    # ----------------------------
    # Cycle
    # ----------------------------

    def _run_cycle(self) -> None:
        error: Optional[Exception] = None
        batch: Optional[RemoteBatch] = None
        result: Optional[ReconcileResult] = None

        try:
            batch = self._fetch()
        except PartialFetchError as e:
            logger.warning("partial fetch, merging what arrived: %s", e)
            error, batch = e, e.batch
        except AuthError as e:
            logger.error("provider rejected credentials: %s", e)
            error = e
        except Exception as e:
            logger.warning("fetch failed: %s", e)
            error = e

        discarded = self._stop_event.is_set()
        if discarded:
            logger.info("scheduler stopping; discarding fetched batch")
            batch = None

        if batch is not None:
            try:
                result = self._merge(batch)
            except Exception as e:
                logger.exception("merging fetched batch failed")
                error = error or e

        with self._cond:
            if discarded:
                # nothing was merged, so the sync bookkeeping stays as it was
                self._state = SchedulerState.IDLE
            elif error is None:
                self._on_success_locked()
            else:
                self._on_failure_locked(error)
            self._finished_cycles = self._started_cycles
            self._cond.notify_all()

        if result is not None and self.on_result is not None:
            try:
                self.on_result(result)
            except Exception:
                logger.exception("refresh result callback failed")

    def _merge(self, batch: RemoteBatch) -> ReconcileResult:
        store = self.reconciler.store
        with store.batch():
            result = self.reconciler.apply(batch)
            store.prune_resolved(utcnow() - self.retention)
        return result

    def _on_success_locked(self) -> None:
        self._state = SchedulerState.IDLE
        self._failures = 0
        self._deadline = None
        self._last_error = None
        self._last_success_at = utcnow()

    def _on_failure_locked(self, error: Exception) -> None:
        self._state = SchedulerState.BACKOFF
        self._last_error = f"{type(error).__name__}: {error}"
        if isinstance(error, AuthError):
            # no retries until the api key changes
            self._paused = True
            self._deadline = None
            return
        self._failures += 1
        delay = backoff_delay(self._failures, self._settings().refresh_interval, self.backoff_ceiling)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = max(delay, error.retry_after)
        self._deadline = self._clock() + delay
        logger.info("backing off %.1fs after %s consecutive failures", delay, self._failures)

    # ----------------------------
    # Background loop
    # ----------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="pagerops-refresh", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        self.tick()
        # the interval is re-read every cycle so settings changes apply live
        while not self._stop_event.wait(self.next_interval()):
            self.tick()
