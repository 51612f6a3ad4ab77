"""Concurrency-bounded triage job queue with a typed lifecycle event stream."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from issue_triage.analysis.failure_classifier import FailureClass, classify_failure
from issue_triage.storage import utc_now

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3


@dataclass(frozen=True, slots=True)
class JobQueued:
    key: int


@dataclass(frozen=True, slots=True)
class JobStarted:
    key: int
    capability: str


@dataclass(frozen=True, slots=True)
class JobSucceeded:
    key: int
    duration_ms: int


@dataclass(frozen=True, slots=True)
class JobFailed:
    key: int
    duration_ms: int
    error: str
    failure_class: FailureClass = FailureClass.NON_RETRYABLE


@dataclass(frozen=True, slots=True)
class QueueDrained:
    """No pending and no running jobs remain."""


QueueEvent = JobQueued | JobStarted | JobSucceeded | JobFailed | QueueDrained
JobHandler = Callable[[int, str], object]
Subscriber = Callable[[QueueEvent], None]


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_LIVE_STATES = frozenset({JobState.QUEUED, JobState.RUNNING})


@dataclass(slots=True)
class QueueJob:
    """In-memory job bookkeeping; dropped once its terminal event is emitted."""

    key: int
    state: JobState
    enqueued_at: datetime
    started_at: datetime | None = None


class TriageQueue:
    """Run ``handler(key, capability)`` for admitted keys, at most ``concurrency`` at once.

    Each admitted key emits ``JobQueued``, ``JobStarted`` and exactly one of
    ``JobSucceeded``/``JobFailed``. ``QueueDrained`` fires once each time the
    queue goes from having work to having none. Bookkeeping and event delivery
    share one re-entrant lock, so subscribers may call back into the queue.
    """

    def __init__(
        self,
        handler: JobHandler,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        capability: str = "claude",
        known_capabilities: Collection[str] | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._handler = handler
        self._concurrency = concurrency
        self._known_capabilities = (
            frozenset(known_capabilities) if known_capabilities is not None else None
        )
        self._capability = self._check_capability(capability)
        self._lock = threading.RLock()
        self._pending: deque[int] = deque()
        self._jobs: dict[int, QueueJob] = {}
        self._subscribers: list[Subscriber] = []
        self._outstanding = False
        self._idle = threading.Event()
        self._idle.set()

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def capability(self) -> str:
        with self._lock:
            return self._capability

    def set_capability(self, name: str) -> None:
        """Use ``name`` for jobs that have not started yet."""

        with self._lock:
            self._capability = self._check_capability(name)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for every event; returns an unsubscribe function."""

        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def enqueue(self, keys: Collection[int]) -> list[int]:
        """Admit keys that are neither pending nor running. Returns the admitted keys."""

        admitted: list[int] = []
        with self._lock:
            for key in keys:
                existing = self._jobs.get(key)
                if existing is not None and existing.state in _LIVE_STATES:
                    continue
                self._jobs[key] = QueueJob(key=key, state=JobState.QUEUED, enqueued_at=utc_now())
                self._pending.append(key)
                self._outstanding = True
                self._idle.clear()
                admitted.append(key)
                self._emit(JobQueued(key=key))
            self._pump()
        return admitted

    def active_keys(self) -> set[int]:
        with self._lock:
            return {key for key, job in self._jobs.items() if job.state is JobState.RUNNING}

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def jobs(self) -> list[QueueJob]:
        """Snapshot of queued and running jobs in admission order."""

        with self._lock:
            return [
                QueueJob(
                    key=job.key,
                    state=job.state,
                    enqueued_at=job.enqueued_at,
                    started_at=job.started_at,
                )
                for job in self._jobs.values()
            ]

    def stop(self) -> None:
        """Drop pending keys. Running jobs finish and still report their outcome."""

        with self._lock:
            while self._pending:
                self._jobs.pop(self._pending.popleft(), None)
            self._maybe_drain()

    def wait_for_drain(self, timeout: float | None = None) -> bool:
        """Block until the queue is idle. Returns ``False`` on timeout."""

        return self._idle.wait(timeout)

    def _check_capability(self, name: str) -> str:
        if self._known_capabilities is not None and name not in self._known_capabilities:
            known = ", ".join(sorted(self._known_capabilities))
            raise ValueError(f"Unknown capability {name!r}; expected one of: {known}")
        return name

    def _running_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.state is JobState.RUNNING)

    def _pump(self) -> None:
        while self._pending and self._running_count() < self._concurrency:
            key = self._pending.popleft()
            job = self._jobs[key]
            job.state = JobState.RUNNING
            job.started_at = utc_now()
            capability = self._capability
            self._emit(JobStarted(key=key, capability=capability))
            threading.Thread(
                target=self._run_job,
                args=(key, capability),
                daemon=True,
                name=f"triage-{key}",
            ).start()
        self._maybe_drain()

    def _maybe_drain(self) -> None:
        if self._outstanding and not self._pending and not self._jobs:
            self._outstanding = False
            self._emit(QueueDrained())
            if not self._outstanding:
                self._idle.set()

    def _run_job(self, key: int, capability: str) -> None:
        started = time.monotonic()
        try:
            self._handler(key, capability)
        except Exception as exc:  # noqa: BLE001
            duration_ms = int((time.monotonic() - started) * 1000)
            failure_class = getattr(exc, "failure_class", None)
            if not isinstance(failure_class, FailureClass):
                failure_class = classify_failure(str(exc)).failure_class
            logger.warning("Triage job for issue #%d failed: %s", key, exc)
            event: QueueEvent = JobFailed(
                key=key,
                duration_ms=duration_ms,
                error=str(exc) or type(exc).__name__,
                failure_class=failure_class,
            )
            state = JobState.FAILED
        else:
            duration_ms = int((time.monotonic() - started) * 1000)
            event = JobSucceeded(key=key, duration_ms=duration_ms)
            state = JobState.SUCCEEDED

        with self._lock:
            job = self._jobs.get(key)
            if job is not None:
                job.state = state
            self._emit(event)
            # A subscriber may have re-admitted the key while handling the event.
            if job is not None and self._jobs.get(key) is job:
                del self._jobs[key]
            self._pump()

    def _emit(self, event: QueueEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Queue subscriber failed on %s", type(event).__name__)
