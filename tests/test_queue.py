from __future__ import annotations

import threading

import allure
import pytest

from issue_triage.analysis.failure_classifier import FailureClass
from issue_triage.triage.queue import (
    JobFailed,
    JobQueued,
    JobStarted,
    JobSucceeded,
    QueueDrained,
    QueueEvent,
    TriageQueue,
)

pytestmark = [
    allure.epic("Triage Queue"),
    allure.feature("Scheduling & Lifecycle Events"),
]

WAIT_SECONDS = 10


class GatedHandler:
    """Job handler that blocks each key until the test releases it."""

    def __init__(self) -> None:
        self.gates: dict[int, threading.Event] = {}
        self.started: dict[int, threading.Event] = {}
        self.capabilities: dict[int, str] = {}
        self.failures: dict[int, Exception] = {}
        self._lock = threading.Lock()
        self._running = 0
        self.max_running = 0

    def _gate(self, key: int) -> threading.Event:
        with self._lock:
            return self.gates.setdefault(key, threading.Event())

    def _started(self, key: int) -> threading.Event:
        with self._lock:
            return self.started.setdefault(key, threading.Event())

    def release(self, key: int) -> None:
        self._gate(key).set()

    def wait_started(self, key: int) -> bool:
        return self._started(key).wait(WAIT_SECONDS)

    def __call__(self, key: int, capability: str) -> None:
        with self._lock:
            self._running += 1
            self.max_running = max(self.max_running, self._running)
            self.capabilities[key] = capability
        self._started(key).set()
        try:
            assert self._gate(key).wait(WAIT_SECONDS)
            if key in self.failures:
                raise self.failures[key]
        finally:
            with self._lock:
                self._running -= 1


class EventLog:
    def __init__(self) -> None:
        self.events: list[QueueEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: QueueEvent) -> None:
        with self._lock:
            self.events.append(event)

    def snapshot(self) -> list[QueueEvent]:
        with self._lock:
            return list(self.events)

    def drains(self) -> int:
        return sum(1 for event in self.snapshot() if isinstance(event, QueueDrained))


def _queue(handler: GatedHandler, concurrency: int = 2) -> tuple[TriageQueue, EventLog]:
    queue = TriageQueue(handler, concurrency=concurrency, known_capabilities=("claude", "codex"))
    log = EventLog()
    queue.subscribe(log)
    return queue, log


def test_four_keys_with_concurrency_two_event_order() -> None:
    handler = GatedHandler()
    queue, log = _queue(handler)

    queue.enqueue([1, 2, 3, 4])

    assert log.snapshot() == [
        JobQueued(1),
        JobQueued(2),
        JobQueued(3),
        JobQueued(4),
        JobStarted(1, "claude"),
        JobStarted(2, "claude"),
    ]
    assert queue.active_keys() == {1, 2}
    assert queue.pending_count() == 2

    handler.release(2)
    assert handler.wait_started(3)
    handler.release(1)
    assert handler.wait_started(4)
    handler.release(3)
    handler.release(4)
    assert queue.wait_for_drain(WAIT_SECONDS)

    events = log.snapshot()
    assert events[-1] == QueueDrained()
    assert log.drains() == 1
    assert handler.max_running == 2
    assert events.index(JobStarted(3, "claude")) > next(
        i for i, e in enumerate(events) if isinstance(e, JobSucceeded) and e.key == 2
    )
    for key in (1, 2, 3, 4):
        per_key = [type(e) for e in events if getattr(e, "key", None) == key]
        assert per_key == [JobQueued, JobStarted, JobSucceeded]


def test_duplicate_enqueue_is_ignored() -> None:
    handler = GatedHandler()
    queue, log = _queue(handler, concurrency=1)
    queue.enqueue([1, 2])

    admitted = queue.enqueue([1, 2, 2])

    assert admitted == []
    assert [(job.key, job.state.value) for job in queue.jobs()] == [(1, "running"), (2, "queued")]
    assert [e for e in log.snapshot() if isinstance(e, JobQueued)] == [JobQueued(1), JobQueued(2)]
    assert queue.active_keys() == {1}
    assert queue.pending_count() == 1

    handler.release(1)
    handler.release(2)
    assert queue.wait_for_drain(WAIT_SECONDS)


def test_failure_is_reported_and_does_not_block_others() -> None:
    handler = GatedHandler()
    handler.failures[1] = RuntimeError("Bad credentials")
    queue, log = _queue(handler)

    queue.enqueue([1, 2, 3])
    for key in (1, 2, 3):
        handler.release(key)
    assert queue.wait_for_drain(WAIT_SECONDS)

    events = log.snapshot()
    failed = [e for e in events if isinstance(e, JobFailed)]
    assert len(failed) == 1
    assert failed[0].key == 1
    assert failed[0].error == "Bad credentials"
    assert failed[0].failure_class is FailureClass.ACCESS_OR_AUTH
    assert {e.key for e in events if isinstance(e, JobSucceeded)} == {2, 3}
    assert log.drains() == 1


def test_failure_class_attribute_is_preserved() -> None:
    class ClassifiedError(RuntimeError):
        failure_class = FailureClass.TIMEOUT

    handler = GatedHandler()
    handler.failures[5] = ClassifiedError("took too long")
    queue, log = _queue(handler)

    queue.enqueue([5])
    handler.release(5)
    assert queue.wait_for_drain(WAIT_SECONDS)

    failed = [e for e in log.snapshot() if isinstance(e, JobFailed)]
    assert failed[0].failure_class is FailureClass.TIMEOUT
    assert failed[0].duration_ms >= 0


def test_drain_fires_once_per_idle_transition() -> None:
    handler = GatedHandler()
    queue, log = _queue(handler)

    queue.enqueue([1])
    handler.release(1)
    assert queue.wait_for_drain(WAIT_SECONDS)
    assert log.drains() == 1

    queue.enqueue([2, 3])
    handler.release(2)
    handler.release(3)
    assert queue.wait_for_drain(WAIT_SECONDS)
    assert log.drains() == 2

    queue.enqueue([])
    queue.stop()
    assert log.drains() == 2


def test_drain_never_precedes_terminal_events() -> None:
    handler = GatedHandler()
    queue, log = _queue(handler, concurrency=3)

    queue.enqueue([1, 2, 3])
    for key in (3, 1, 2):
        handler.release(key)
    assert queue.wait_for_drain(WAIT_SECONDS)

    events = log.snapshot()
    drain_index = events.index(QueueDrained())
    terminal = [i for i, e in enumerate(events) if isinstance(e, (JobSucceeded, JobFailed))]
    assert len(terminal) == 3
    assert max(terminal) < drain_index


def test_stop_clears_pending_and_lets_active_finish() -> None:
    handler = GatedHandler()
    queue, log = _queue(handler, concurrency=1)
    queue.enqueue([1, 2, 3])

    queue.stop()
    assert queue.pending_count() == 0
    assert queue.active_keys() == {1}
    assert log.drains() == 0

    handler.release(1)
    assert queue.wait_for_drain(WAIT_SECONDS)
    started = [e.key for e in log.snapshot() if isinstance(e, JobStarted)]
    assert started == [1]
    assert log.drains() == 1


def test_set_capability_applies_to_jobs_not_started() -> None:
    handler = GatedHandler()
    queue, log = _queue(handler, concurrency=1)

    queue.enqueue([1, 2])
    queue.set_capability("codex")
    assert queue.capability == "codex"
    handler.release(1)
    handler.release(2)
    assert queue.wait_for_drain(WAIT_SECONDS)

    assert handler.capabilities == {1: "claude", 2: "codex"}
    with pytest.raises(ValueError, match="Unknown capability"):
        queue.set_capability("gemini")


def test_subscriber_may_reenqueue_failed_key() -> None:
    handler = GatedHandler()
    handler.failures[1] = RuntimeError("temporarily unavailable")
    queue = TriageQueue(handler, concurrency=1)
    log = EventLog()
    retried: list[int] = []

    def _retry_once(event: QueueEvent) -> None:
        if isinstance(event, JobFailed) and not retried:
            retried.append(event.key)
            handler.failures.pop(event.key)
            queue.enqueue([event.key])

    queue.subscribe(log)
    queue.subscribe(_retry_once)
    queue.enqueue([1])
    handler.release(1)
    assert queue.wait_for_drain(WAIT_SECONDS)

    per_key = [type(e) for e in log.snapshot() if getattr(e, "key", None) == 1]
    assert per_key == [JobQueued, JobStarted, JobFailed, JobQueued, JobStarted, JobSucceeded]
    assert log.drains() == 1


def test_subscriber_errors_are_contained() -> None:
    handler = GatedHandler()
    queue, log = _queue(handler)

    def _broken(event: QueueEvent) -> None:
        raise RuntimeError("observer bug")

    queue.subscribe(_broken)
    queue.enqueue([1])
    handler.release(1)

    assert queue.wait_for_drain(WAIT_SECONDS)
    assert log.drains() == 1


def test_unsubscribe_stops_delivery() -> None:
    handler = GatedHandler()
    queue = TriageQueue(handler)
    log = EventLog()
    unsubscribe = queue.subscribe(log)

    unsubscribe()
    queue.enqueue([1])
    handler.release(1)

    assert queue.wait_for_drain(WAIT_SECONDS)
    assert log.snapshot() == []


def test_concurrency_must_be_positive() -> None:
    with pytest.raises(ValueError, match="concurrency"):
        TriageQueue(GatedHandler(), concurrency=0)
