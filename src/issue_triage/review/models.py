"""Domain models for per-issue review records."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from issue_triage.storage import parse_optional_iso, to_iso, utc_now
from issue_triage.tracker.client import RemoteIssue


class ReviewState(str, Enum):
    """User review state of one triaged issue."""

    UNREAD = "unread"
    READ = "read"


class Recommendation(str, Enum):
    """Close/keep recommendation parsed from an artifact. Absent means unknown."""

    CLOSE = "close"
    KEEP = "keep"


class Confidence(str, Enum):
    """Analysis confidence label."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(slots=True)
class ItemRecord:
    """Reconciled review record for one issue number."""

    number: int
    generated_at: datetime | None = None
    review_state: ReviewState = ReviewState.UNREAD
    reviewed_at: datetime | None = None
    recommendation: Recommendation | None = None
    confidence: Confidence | None = None
    labels: frozenset[str] = frozenset()
    title: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_remotely: bool = False
    model_tag: str | None = None
    notes: str | None = None
    tags: tuple[str, ...] = ()

    @property
    def is_analyzed(self) -> bool:
        return self.generated_at is not None

    @property
    def is_read(self) -> bool:
        return self.review_state is ReviewState.READ

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "number": self.number,
            "generated_at": to_iso(self.generated_at),
            "review_state": self.review_state.value,
            "closed_remotely": self.closed_remotely,
            "labels": sorted(self.labels),
        }
        optional: dict[str, Any] = {
            "reviewed_at": to_iso(self.reviewed_at) if self.reviewed_at else None,
            "recommendation": self.recommendation.value if self.recommendation else None,
            "confidence": self.confidence.value if self.confidence else None,
            "title": self.title,
            "created_at": to_iso(self.created_at) if self.created_at else None,
            "updated_at": to_iso(self.updated_at) if self.updated_at else None,
            "model_tag": self.model_tag,
            "notes": self.notes,
            "tags": list(self.tags) if self.tags else None,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @classmethod
    def from_dict(cls, number: int, payload: Mapping[str, Any]) -> ItemRecord:
        """Build a record from persisted JSON, tolerating the legacy camelCase layout."""

        def _get(*keys: str) -> Any:
            for key in keys:
                if key in payload:
                    return payload[key]
            return None

        review_state = _enum_or_none(ReviewState, _get("review_state", "reviewStatus"))
        reviewed_at = parse_optional_iso(_get("reviewed_at", "reviewDate"))
        generated_at = parse_optional_iso(_get("generated_at", "triageDate"))
        updated_at = parse_optional_iso(_get("updated_at", "updatedAt"))
        if review_state is not ReviewState.READ:
            review_state = ReviewState.UNREAD
            reviewed_at = None
        elif reviewed_at is None:
            # A read record always carries a review time.
            reviewed_at = generated_at or updated_at or utc_now()

        recommendation = _enum_or_none(Recommendation, _get("recommendation"))
        if recommendation is None:
            should_close = _get("shouldClose")
            if isinstance(should_close, bool):
                recommendation = Recommendation.CLOSE if should_close else Recommendation.KEEP

        labels = _get("labels")
        if not isinstance(labels, list):
            labels = []
        tags = _get("tags")
        title = _get("title")
        model_tag = _get("model_tag", "adapter")
        notes = _get("notes")
        return cls(
            number=number,
            generated_at=generated_at,
            review_state=review_state,
            reviewed_at=reviewed_at,
            recommendation=recommendation,
            confidence=_enum_or_none(Confidence, _get("confidence")),
            labels=frozenset(str(label) for label in labels),
            title=title if isinstance(title, str) and title else None,
            created_at=parse_optional_iso(_get("created_at", "createdAt")),
            updated_at=updated_at,
            closed_remotely=bool(_get("closed_remotely", "closedOnGitHub")),
            model_tag=model_tag if isinstance(model_tag, str) and model_tag else None,
            notes=notes if isinstance(notes, str) else None,
            tags=tuple(str(tag) for tag in tags) if isinstance(tags, list) else (),
        )


class RecommendationFilter(str, Enum):
    """Recommendation predicate values accepted by queries."""

    CLOSE = "close"
    KEEP = "keep"
    UNKNOWN = "unknown"
    NOT_KEEP = "not-keep"


class SortKey(str, Enum):
    """Record sort keys."""

    NUMBER = "number"
    GENERATED = "generated"
    CREATED = "created"
    UPDATED = "updated"


@dataclass(slots=True)
class RecordFilter:
    """Query predicates, combined with logical AND. ``None`` disables a predicate."""

    review_state: ReviewState | None = None
    recommendation: RecommendationFilter | None = None
    closed_remotely: bool | None = None
    text: str | None = None
    model_tag: str | None = None

    def matches(self, record: ItemRecord) -> bool:  # noqa: PLR0911
        if self.review_state is not None and record.review_state is not self.review_state:
            return False
        if self.recommendation is not None and not _matches_recommendation(
            record.recommendation,
            self.recommendation,
        ):
            return False
        if self.closed_remotely is not None and record.closed_remotely != self.closed_remotely:
            return False
        if self.model_tag is not None and record.model_tag != self.model_tag:
            return False
        if self.text and self.text.strip():
            needle = self.text.strip().lower()
            haystacks = [str(record.number), (record.title or "").lower()]
            haystacks.extend(label.lower() for label in record.labels)
            if not any(needle in haystack for haystack in haystacks):
                return False
        return True


@dataclass(slots=True)
class RecordSort:
    """Sort key and direction; defaults to newest issue number first."""

    key: SortKey = SortKey.NUMBER
    descending: bool = True


@dataclass(slots=True)
class InboxStats:
    """Aggregate review counters."""

    total: int = 0
    read: int = 0
    unread: int = 0


@dataclass(slots=True)
class RemoteSnapshot:
    """Remote tracker view of one issue, as folded into the store."""

    number: int
    title: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed: bool | None = None

    @classmethod
    def from_issue(cls, issue: RemoteIssue) -> RemoteSnapshot:
        return cls(
            number=issue.number,
            title=issue.title or None,
            created_at=issue.created_at,
            updated_at=issue.updated_at,
            closed=issue.is_closed,
        )


def _matches_recommendation(
    value: Recommendation | None,
    wanted: RecommendationFilter,
) -> bool:
    if wanted is RecommendationFilter.CLOSE:
        return value is Recommendation.CLOSE
    if wanted is RecommendationFilter.KEEP:
        return value is Recommendation.KEEP
    if wanted is RecommendationFilter.UNKNOWN:
        return value is None
    return value is not Recommendation.KEEP


def _enum_or_none(enum_cls: type[Enum], value: Any) -> Any:
    if not isinstance(value, str):
        return None
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        return None
