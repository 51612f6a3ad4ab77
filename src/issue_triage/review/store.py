"""JSON-backed metadata store reconciling artifacts, remote state and review actions."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from issue_triage.review.artifacts import (
    ParsedArtifact,
    TriageField,
    artifact_filename,
    iter_artifact_paths,
    read_artifact,
)
from issue_triage.review.models import (
    InboxStats,
    ItemRecord,
    RecordFilter,
    RecordSort,
    RemoteSnapshot,
    ReviewState,
    SortKey,
)
from issue_triage.storage import load_json, utc_now, write_json

logger = logging.getLogger(__name__)


class ItemNotFoundError(KeyError):
    """No record exists for the requested issue number."""

    def __init__(self, number: int) -> None:
        super().__init__(number)
        self.number = number

    def __str__(self) -> str:
        return f"Issue #{self.number} is not tracked"


class CloseOutcome(str, Enum):
    """Result of folding one remotely closed issue into its record."""

    PROMOTED = "promoted"
    MARKED_CLOSED = "marked_closed"
    ALREADY_CONSISTENT = "already_consistent"
    UNTRACKED = "untracked"


class MetadataStore:
    """Single source of truth for :class:`ItemRecord` values of one project.

    Three reconciliation paths (artifact scan, remote snapshot, user action)
    read-modify-write the same map entry under one lock, and every mutation
    rewrites the whole JSON document before returning.
    """

    def __init__(
        self,
        *,
        metadata_path: Path,
        artifacts_dir: Path,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.metadata_path = metadata_path
        self.artifacts_dir = artifacts_dir
        self._clock = clock
        self._lock = threading.RLock()
        self._records: dict[int, ItemRecord] = {}
        self._load()

    # -- persistence -------------------------------------------------------------

    def _load(self) -> None:
        if not self.metadata_path.exists():
            return
        try:
            payload = load_json(self.metadata_path)
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Ignoring corrupt metadata file %s: %s", self.metadata_path, exc)
            return
        issues = payload.get("issues")
        if not isinstance(issues, dict):
            logger.warning("Metadata file %s has no issues map", self.metadata_path)
            return
        for key, raw in issues.items():
            try:
                number = int(key)
            except (TypeError, ValueError):
                logger.warning("Skipping metadata entry with non-numeric key %r", key)
                continue
            if isinstance(raw, dict):
                self._records[number] = ItemRecord.from_dict(number, raw)

    def reload(self) -> None:
        """Drop in-memory state and re-read the metadata file."""

        with self._lock:
            self._records = {}
            self._load()

    def _persist(self) -> None:
        write_json(
            self.metadata_path,
            {"issues": {str(number): record.to_dict() for number, record in self._records.items()}},
        )

    # -- reconciliation ----------------------------------------------------------

    def reconcile_from_artifacts(self) -> int:
        """Scan the artifact directory and upsert parsed fields.

        Returns the number of records created or changed; an unchanged scan
        writes nothing.
        """

        with self._lock:
            changed = 0
            for number, path in iter_artifact_paths(self.artifacts_dir):
                try:
                    modified_at = datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)
                except OSError as exc:
                    logger.warning("Cannot stat artifact %s: %s", path, exc)
                    continue
                current = self._records.get(number)
                updated = replace(current) if current else ItemRecord(number=number)
                if updated.generated_at is None or modified_at > updated.generated_at:
                    updated.generated_at = modified_at
                _apply_artifact_fields(updated, read_artifact(path))
                if updated != current:
                    self._records[number] = updated
                    changed += 1
            if changed:
                self._persist()
                logger.debug("Artifact scan updated %d records", changed)
            return changed

    def reconcile_from_remote(self, snapshots: Iterable[RemoteSnapshot]) -> int:
        """Fold remote title/dates/closed state in; create bare records for new issues."""

        with self._lock:
            changed = 0
            for snapshot in snapshots:
                current = self._records.get(snapshot.number)
                updated = replace(current) if current else ItemRecord(number=snapshot.number)
                if snapshot.title:
                    updated.title = snapshot.title
                if snapshot.created_at is not None:
                    updated.created_at = snapshot.created_at
                if snapshot.updated_at is not None:
                    updated.updated_at = snapshot.updated_at
                if snapshot.closed is not None:
                    updated.closed_remotely = snapshot.closed
                if updated != current:
                    self._records[snapshot.number] = updated
                    changed += 1
            if changed:
                self._persist()
            return changed

    def record_analysis(
        self,
        number: int,
        *,
        model_tag: str | None,
        generated_at: datetime | None = None,
    ) -> ItemRecord:
        """Register a freshly written artifact for ``number``."""

        with self._lock:
            current = self._records.get(number)
            updated = replace(current) if current else ItemRecord(number=number)
            updated.generated_at = generated_at or self._clock()
            updated.model_tag = model_tag
            path = self.artifacts_dir / artifact_filename(number)
            if path.exists():
                _apply_artifact_fields(updated, read_artifact(path))
            self._records[number] = updated
            self._persist()
            return replace(updated)

    def acknowledge_remote_close(self, number: int) -> CloseOutcome:
        """Apply "closed on the tracker" to one record.

        An unread record is promoted to read and marked closed in one step;
        a read record is only marked closed.
        """

        with self._lock:
            current = self._records.get(number)
            if current is None:
                return CloseOutcome.UNTRACKED
            if current.review_state is ReviewState.UNREAD:
                self._records[number] = replace(
                    current,
                    review_state=ReviewState.READ,
                    reviewed_at=self._clock(),
                    closed_remotely=True,
                )
                self._persist()
                return CloseOutcome.PROMOTED
            if not current.closed_remotely:
                self._records[number] = replace(current, closed_remotely=True)
                self._persist()
                return CloseOutcome.MARKED_CLOSED
            return CloseOutcome.ALREADY_CONSISTENT

    # -- user actions ------------------------------------------------------------

    def set_review_state(self, number: int, state: ReviewState) -> ItemRecord:
        with self._lock:
            current = self._require(number)
            if state is ReviewState.READ:
                updated = replace(current, review_state=state, reviewed_at=self._clock())
            else:
                updated = replace(current, review_state=state, reviewed_at=None)
            self._records[number] = updated
            self._persist()
            return replace(updated)

    def mark_all_read(self) -> int:
        with self._lock:
            now = self._clock()
            changed = 0
            for number, record in list(self._records.items()):
                if record.review_state is ReviewState.READ:
                    continue
                self._records[number] = replace(
                    record,
                    review_state=ReviewState.READ,
                    reviewed_at=now,
                )
                changed += 1
            if changed:
                self._persist()
            return changed

    def set_closed_remotely(self, number: int, closed: bool) -> ItemRecord:
        with self._lock:
            updated = replace(self._require(number), closed_remotely=closed)
            self._records[number] = updated
            self._persist()
            return replace(updated)

    def add_note(self, number: int, note: str) -> ItemRecord:
        with self._lock:
            updated = replace(self._require(number), notes=note)
            self._records[number] = updated
            self._persist()
            return replace(updated)

    def add_tags(self, number: int, tags: Iterable[str]) -> ItemRecord:
        with self._lock:
            current = self._require(number)
            merged = set(current.tags)
            merged.update(tag.strip() for tag in tags if tag.strip())
            updated = replace(current, tags=tuple(sorted(merged)))
            self._records[number] = updated
            self._persist()
            return replace(updated)

    # -- queries -----------------------------------------------------------------

    def get(self, number: int) -> ItemRecord | None:
        with self._lock:
            record = self._records.get(number)
            return replace(record) if record else None

    def query(
        self,
        record_filter: RecordFilter | None = None,
        sort: RecordSort | None = None,
    ) -> list[ItemRecord]:
        """Return matching records as copies, sorted; records missing the sort value go last."""

        record_filter = record_filter or RecordFilter()
        sort = sort or RecordSort()
        with self._lock:
            matched = [replace(r) for r in self._records.values() if record_filter.matches(r)]

        if sort.key is SortKey.NUMBER:
            return sorted(matched, key=lambda r: r.number, reverse=sort.descending)

        value_of = _SORT_VALUES[sort.key]
        with_value = [r for r in matched if value_of(r) is not None]
        without_value = [r for r in matched if value_of(r) is None]
        with_value.sort(key=lambda r: (value_of(r), r.number), reverse=sort.descending)
        without_value.sort(key=lambda r: r.number, reverse=True)
        return with_value + without_value

    def next_unread(self) -> ItemRecord | None:
        """Highest-numbered unread record that has an analysis."""

        unread = self.query(RecordFilter(review_state=ReviewState.UNREAD))
        return next((record for record in unread if record.is_analyzed), None)

    def stats(self) -> InboxStats:
        with self._lock:
            records = list(self._records.values())
        read = sum(1 for r in records if r.review_state is ReviewState.READ)
        return InboxStats(total=len(records), read=read, unread=len(records) - read)

    def numbers_missing_metadata(self) -> list[int]:
        """Issue numbers whose remote title has not been fetched yet."""

        with self._lock:
            return sorted(n for n, r in self._records.items() if r.title is None)

    def _require(self, number: int) -> ItemRecord:
        record = self._records.get(number)
        if record is None:
            raise ItemNotFoundError(number)
        return record


_SORT_VALUES: dict[SortKey, Callable[[ItemRecord], datetime | None]] = {
    SortKey.GENERATED: lambda r: r.generated_at,
    SortKey.CREATED: lambda r: r.created_at,
    SortKey.UPDATED: lambda r: r.updated_at,
}


def _apply_artifact_fields(record: ItemRecord, parsed: ParsedArtifact) -> None:
    """Copy present fields only; absent or malformed fields leave the record as is."""

    if parsed.is_present(TriageField.SHOULD_CLOSE):
        record.recommendation = parsed.recommendation
    if parsed.is_present(TriageField.LABELS) and parsed.labels is not None:
        record.labels = parsed.labels
    if parsed.is_present(TriageField.CONFIDENCE):
        record.confidence = parsed.confidence
