from __future__ import annotations

import json
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from issue_triage.review.models import (
    Confidence,
    Recommendation,
    RecommendationFilter,
    RecordFilter,
    RecordSort,
    RemoteSnapshot,
    ReviewState,
    SortKey,
)
from issue_triage.review.store import CloseOutcome, ItemNotFoundError, MetadataStore

pytestmark = [
    allure.epic("Review Inbox"),
    allure.feature("Metadata Store"),
]

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _store(root: Path) -> MetadataStore:
    return MetadataStore(
        metadata_path=root / ".triage-metadata.json",
        artifacts_dir=root / "triage",
        clock=lambda: FIXED_NOW,
    )


def test_artifact_with_all_fields_reconciles(tmp_path: Path, write_artifact) -> None:
    write_artifact(tmp_path / "triage", 42, should_close="Yes", labels="bug, p1", confidence="High")
    store = _store(tmp_path)

    assert store.reconcile_from_artifacts() == 1

    record = store.get(42)
    assert record is not None
    assert record.recommendation is Recommendation.CLOSE
    assert record.labels == frozenset({"bug", "p1"})
    assert record.confidence is Confidence.HIGH
    assert record.review_state is ReviewState.UNREAD
    assert record.generated_at is not None
    assert record.closed_remotely is False


def test_artifact_missing_confidence_leaves_it_absent(tmp_path: Path, write_artifact) -> None:
    write_artifact(tmp_path / "triage", 7, confidence=None)
    store = _store(tmp_path)

    store.reconcile_from_artifacts()

    record = store.get(7)
    assert record is not None
    assert record.confidence is None
    assert record.recommendation is Recommendation.CLOSE
    assert record.labels == frozenset({"bug"})


def test_reconcile_is_idempotent_byte_for_byte(tmp_path: Path, write_artifact) -> None:
    write_artifact(tmp_path / "triage", 1)
    write_artifact(tmp_path / "triage", 2, should_close="No", labels="docs")
    store = _store(tmp_path)
    store.reconcile_from_artifacts()
    first = store.metadata_path.read_bytes()

    assert store.reconcile_from_artifacts() == 0
    assert _store(tmp_path).reconcile_from_artifacts() == 0
    assert store.metadata_path.read_bytes() == first


def test_newer_artifact_bumps_generated_at_and_reparses(tmp_path: Path, write_artifact) -> None:
    path = write_artifact(tmp_path / "triage", 5, should_close="No")
    old = datetime(2024, 1, 1, tzinfo=UTC).timestamp()
    os.utime(path, (old, old))
    store = _store(tmp_path)
    store.reconcile_from_artifacts()
    first = store.get(5)

    write_artifact(tmp_path / "triage", 5, should_close="Yes")
    new = datetime(2024, 2, 1, tzinfo=UTC).timestamp()
    os.utime(path, (new, new))
    store.reconcile_from_artifacts()
    second = store.get(5)

    assert first is not None and second is not None
    assert first.generated_at == datetime(2024, 1, 1, tzinfo=UTC)
    assert second.generated_at == datetime(2024, 2, 1, tzinfo=UTC)
    assert second.recommendation is Recommendation.CLOSE


def test_malformed_field_keeps_previous_value(tmp_path: Path, write_artifact) -> None:
    write_artifact(tmp_path / "triage", 9, confidence="Low")
    store = _store(tmp_path)
    store.reconcile_from_artifacts()

    write_artifact(tmp_path / "triage", 9, confidence="unsure")
    store.reconcile_from_artifacts()

    record = store.get(9)
    assert record is not None
    assert record.confidence is Confidence.LOW


def test_artifact_scan_never_touches_closed_remotely(tmp_path: Path, write_artifact) -> None:
    store = _store(tmp_path)
    store.reconcile_from_remote([RemoteSnapshot(number=3, title="Crash", closed=True)])
    write_artifact(tmp_path / "triage", 3)

    store.reconcile_from_artifacts()

    record = store.get(3)
    assert record is not None
    assert record.closed_remotely is True
    assert record.title == "Crash"


def test_remote_pass_without_title_keeps_existing_title(tmp_path: Path) -> None:
    store = _store(tmp_path)
    created = datetime(2024, 1, 2, tzinfo=UTC)
    store.reconcile_from_remote(
        [RemoteSnapshot(number=11, title="X", created_at=created, closed=False)],
    )

    store.reconcile_from_remote([RemoteSnapshot(number=11, title=None, closed=None)])

    record = store.get(11)
    assert record is not None
    assert record.title == "X"
    assert record.created_at == created
    assert record.closed_remotely is False


def test_remote_pass_creates_unanalyzed_records(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert store.reconcile_from_remote([RemoteSnapshot(number=100, title="New")]) == 1

    record = store.get(100)
    assert record is not None
    assert record.generated_at is None
    assert not record.is_analyzed
    assert json.loads(store.metadata_path.read_text("utf-8"))["issues"]["100"]["generated_at"] == ""


def test_set_review_state_round_trip(tmp_path: Path, write_artifact) -> None:
    write_artifact(tmp_path / "triage", 4)
    store = _store(tmp_path)
    store.reconcile_from_artifacts()

    read = store.set_review_state(4, ReviewState.READ)
    assert read.reviewed_at == FIXED_NOW
    assert [r.number for r in store.query(RecordFilter(review_state=ReviewState.READ))] == [4]

    unread = store.set_review_state(4, ReviewState.UNREAD)
    assert unread.reviewed_at is None
    assert store.query(RecordFilter(review_state=ReviewState.READ)) == []


def test_set_review_state_unknown_key_raises(tmp_path: Path) -> None:
    with pytest.raises(ItemNotFoundError):
        _store(tmp_path).set_review_state(404, ReviewState.READ)


def test_notes_and_tags_are_user_owned(tmp_path: Path, write_artifact) -> None:
    write_artifact(tmp_path / "triage", 8)
    store = _store(tmp_path)
    store.reconcile_from_artifacts()

    store.add_note(8, "first")
    store.add_note(8, "second")
    store.add_tags(8, ["ux", "later"])
    store.add_tags(8, ["ux", " "])
    write_artifact(tmp_path / "triage", 8, should_close="No")
    store.reconcile_from_artifacts()

    record = store.get(8)
    assert record is not None
    assert record.notes == "second"
    assert record.tags == ("later", "ux")


def test_acknowledge_remote_close_outcomes(tmp_path: Path, write_artifact) -> None:
    write_artifact(tmp_path / "triage", 1)
    write_artifact(tmp_path / "triage", 2)
    store = _store(tmp_path)
    store.reconcile_from_artifacts()
    store.set_review_state(2, ReviewState.READ)

    assert store.acknowledge_remote_close(1) is CloseOutcome.PROMOTED
    assert store.acknowledge_remote_close(2) is CloseOutcome.MARKED_CLOSED
    assert store.acknowledge_remote_close(2) is CloseOutcome.ALREADY_CONSISTENT
    assert store.acknowledge_remote_close(99) is CloseOutcome.UNTRACKED

    promoted = store.get(1)
    assert promoted is not None
    assert promoted.review_state is ReviewState.READ
    assert promoted.reviewed_at == FIXED_NOW
    assert promoted.closed_remotely is True


def test_query_filters_and_sorting(tmp_path: Path) -> None:
    store = _store(tmp_path)
    base = datetime(2024, 1, 1, tzinfo=UTC)
    store.reconcile_from_remote(
        [
            RemoteSnapshot(number=1, title="Login bug", created_at=base),
            RemoteSnapshot(number=2, title="Docs typo", created_at=base + timedelta(days=2)),
            RemoteSnapshot(number=3, title="No dates"),
        ],
    )
    store.record_analysis(1, model_tag="claude")
    store.record_analysis(2, model_tag="codex")

    by_created = store.query(sort=RecordSort(key=SortKey.CREATED, descending=False))
    assert [r.number for r in by_created] == [1, 2, 3]
    by_created_desc = store.query(sort=RecordSort(key=SortKey.CREATED, descending=True))
    assert [r.number for r in by_created_desc] == [2, 1, 3]

    assert [r.number for r in store.query(RecordFilter(text="login"))] == [1]
    assert [r.number for r in store.query(RecordFilter(text="3"))] == [3]
    assert [r.number for r in store.query(RecordFilter(model_tag="codex"))] == [2]
    unknown = store.query(RecordFilter(recommendation=RecommendationFilter.UNKNOWN))
    assert [r.number for r in unknown] == [3, 2, 1]


def test_query_returns_copies(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.reconcile_from_remote([RemoteSnapshot(number=1, title="Original")])

    store.query()[0].title = "Changed"

    record = store.get(1)
    assert record is not None
    assert record.title == "Original"


def test_stats_next_unread_and_mark_all(tmp_path: Path, write_artifact) -> None:
    for number in (1, 2, 3):
        write_artifact(tmp_path / "triage", number)
    store = _store(tmp_path)
    store.reconcile_from_artifacts()
    store.set_review_state(3, ReviewState.READ)

    stats = store.stats()
    assert (stats.total, stats.read, stats.unread) == (3, 1, 2)
    next_record = store.next_unread()
    assert next_record is not None and next_record.number == 2

    assert store.mark_all_read() == 2
    assert store.next_unread() is None
    assert store.stats().unread == 0


def test_not_keep_filter(tmp_path: Path, write_artifact) -> None:
    write_artifact(tmp_path / "triage", 1, should_close="Yes")
    write_artifact(tmp_path / "triage", 2, should_close="No")
    write_artifact(tmp_path / "triage", 3, should_close=None)
    store = _store(tmp_path)
    store.reconcile_from_artifacts()

    not_keep = store.query(RecordFilter(recommendation=RecommendationFilter.NOT_KEEP))

    assert [r.number for r in not_keep] == [3, 1]


def test_corrupt_metadata_starts_empty(tmp_path: Path, write_artifact) -> None:
    (tmp_path / ".triage-metadata.json").write_text("{not json", "utf-8")
    write_artifact(tmp_path / "triage", 6)

    store = _store(tmp_path)
    assert store.stats().total == 0

    store.reconcile_from_artifacts()
    assert store.get(6) is not None
    assert json.loads(store.metadata_path.read_text("utf-8"))["issues"]["6"]["number"] == 6


def test_legacy_layout_is_loaded(tmp_path: Path) -> None:
    legacy = {
        "issues": {
            "12": {
                "issueNumber": 12,
                "triageDate": "2024-01-05T10:00:00.000Z",
                "reviewStatus": "read",
                "reviewDate": "2024-01-06T10:00:00.000Z",
                "shouldClose": True,
                "labels": ["bug"],
                "title": "Legacy",
                "closedOnGitHub": True,
                "adapter": "codex",
            },
            "13": {"triageDate": "", "reviewStatus": "unread", "reviewDate": "2024-01-06"},
        },
    }
    (tmp_path / ".triage-metadata.json").write_text(json.dumps(legacy), "utf-8")

    store = _store(tmp_path)

    record = store.get(12)
    assert record is not None
    assert record.review_state is ReviewState.READ
    assert record.recommendation is Recommendation.CLOSE
    assert record.closed_remotely is True
    assert record.model_tag == "codex"
    assert record.generated_at == datetime(2024, 1, 5, 10, 0, tzinfo=UTC)
    orphan = store.get(13)
    assert orphan is not None
    assert orphan.generated_at is None
    assert orphan.reviewed_at is None


def test_legacy_read_record_without_review_date_gets_one(tmp_path: Path) -> None:
    legacy = {
        "issues": {
            "7": {"issueNumber": 7, "triageDate": "2024-01-01T00:00:00Z", "reviewStatus": "read"},
            "8": {"issueNumber": 8, "reviewStatus": "read"},
        },
    }
    (tmp_path / ".triage-metadata.json").write_text(json.dumps(legacy), "utf-8")

    store = _store(tmp_path)

    record = store.get(7)
    assert record is not None
    assert record.review_state is ReviewState.READ
    assert record.reviewed_at == datetime(2024, 1, 1, tzinfo=UTC)
    undated = store.get(8)
    assert undated is not None
    assert undated.review_state is ReviewState.READ
    assert undated.reviewed_at is not None


def test_persisted_document_shape(tmp_path: Path, write_artifact) -> None:
    write_artifact(tmp_path / "triage", 21, labels="p1, bug")
    store = _store(tmp_path)
    store.reconcile_from_artifacts()
    store.set_review_state(21, ReviewState.READ)

    payload = json.loads(store.metadata_path.read_text("utf-8"))
    entry = payload["issues"]["21"]

    assert entry["labels"] == ["bug", "p1"]
    assert entry["review_state"] == "read"
    assert entry["recommendation"] == "close"
    assert entry["reviewed_at"] == FIXED_NOW.isoformat()


def test_reload_picks_up_changes_from_another_instance(tmp_path: Path, write_artifact) -> None:
    write_artifact(tmp_path / "triage", 30)
    reader = _store(tmp_path)
    writer = _store(tmp_path)
    writer.reconcile_from_artifacts()
    assert reader.get(30) is None

    reader.reload()

    assert reader.get(30) is not None
