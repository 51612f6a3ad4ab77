"""Batch reconciliation of remote tracker state into the metadata store."""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass, replace
from pathlib import Path

from issue_triage.review.artifacts import artifact_filename
from issue_triage.review.models import RemoteSnapshot
from issue_triage.review.store import CloseOutcome, MetadataStore
from issue_triage.tracker.client import GitHubClient, TrackerError

logger = logging.getLogger(__name__)

BACKFILL_BATCH_SIZE = 20

_GUARDS: weakref.WeakKeyDictionary[MetadataStore, threading.Lock] = weakref.WeakKeyDictionary()
_GUARDS_LOCK = threading.Lock()


class SyncInProgressError(RuntimeError):
    """Another sync pass is already running against the same store."""


@dataclass(slots=True)
class SyncResult:
    """Counters from one closed-issue sync pass."""

    total_closed_seen: int = 0
    updated: int = 0
    already_consistent: int = 0
    error: str | None = None

    @property
    def complete(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class BackfillResult:
    requested: int = 0
    fetched: int = 0
    failed: int = 0


def _guard_for(store: MetadataStore) -> threading.Lock:
    with _GUARDS_LOCK:
        guard = _GUARDS.get(store)
        if guard is None:
            guard = threading.Lock()
            _GUARDS[store] = guard
        return guard


class SyncReconciler:
    """Fold closed issues from the tracker into local review records.

    Only issues that have a local artifact are considered. An unread record is
    promoted to read and marked closed; a read record is only marked closed.
    """

    def __init__(self, *, client: GitHubClient, store: MetadataStore, triage_dir: Path) -> None:
        self.client = client
        self.store = store
        self.triage_dir = triage_dir

    def run(self) -> SyncResult:
        guard = _guard_for(self.store)
        if not guard.acquire(blocking=False):
            raise SyncInProgressError("A sync pass is already running for this project")
        try:
            return self._run()
        finally:
            guard.release()

    def _run(self) -> SyncResult:
        self.store.reconcile_from_artifacts()
        result = SyncResult()
        seen: list[RemoteSnapshot] = []
        try:
            for issue in self.client.iter_issues(state="closed"):
                if not (self.triage_dir / artifact_filename(issue.number)).exists():
                    continue
                result.total_closed_seen += 1
                # Closed state is applied by acknowledge_remote_close only.
                seen.append(replace(RemoteSnapshot.from_issue(issue), closed=None))
                outcome = self.store.acknowledge_remote_close(issue.number)
                if outcome in (CloseOutcome.PROMOTED, CloseOutcome.MARKED_CLOSED):
                    result.updated += 1
                elif outcome is CloseOutcome.ALREADY_CONSISTENT:
                    result.already_consistent += 1
        except TrackerError as exc:
            logger.warning(
                "Sync pass interrupted after %d closed issues: %s",
                result.total_closed_seen,
                exc,
            )
            result.error = str(exc)
            self.store.reconcile_from_remote(seen)
            return result

        self.store.reconcile_from_remote(seen)

        logger.info(
            "Sync pass finished: closed=%d updated=%d consistent=%d",
            result.total_closed_seen,
            result.updated,
            result.already_consistent,
        )
        return result


def sync_closed_issues(
    *,
    client: GitHubClient,
    store: MetadataStore,
    triage_dir: Path,
) -> SyncResult:
    return SyncReconciler(client=client, store=store, triage_dir=triage_dir).run()


def backfill_remote_metadata(
    *,
    client: GitHubClient,
    store: MetadataStore,
    limit: int | None = None,
) -> BackfillResult:
    """Fetch title and dates for records that have never seen the tracker."""

    numbers = store.numbers_missing_metadata()
    if limit is not None:
        numbers = numbers[:limit]
    result = BackfillResult(requested=len(numbers))
    pending: list[RemoteSnapshot] = []
    for number in numbers:
        try:
            issue = client.get_issue(number)
        except TrackerError as exc:
            logger.warning("Could not fetch metadata for issue #%d: %s", number, exc)
            result.failed += 1
            continue
        pending.append(RemoteSnapshot.from_issue(issue))
        result.fetched += 1
        if len(pending) >= BACKFILL_BATCH_SIZE:
            store.reconcile_from_remote(pending)
            pending = []
    if pending:
        store.reconcile_from_remote(pending)
    return result
