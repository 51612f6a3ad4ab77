"""Deterministic failure classification for triage job failures."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureClass(str, Enum):
    """Normalized failure classes reported on failed job events."""

    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    MODEL_NOT_AVAILABLE = "model_not_available"
    NON_RETRYABLE = "non_retryable"


_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "insufficient",
    "billing",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "bad credentials",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
    "timed out",
)

_RULES: tuple[tuple[FailureClass, tuple[str, ...]], ...] = (
    (FailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
    (FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
    (FailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
    (FailureClass.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
    (FailureClass.TRANSIENT, _GENERIC_TRANSIENT_PATTERNS),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in {
            FailureClass.TIMEOUT,
            FailureClass.TRANSIENT,
            FailureClass.RATE_LIMITED,
        }


def classify_failure(
    detail: str,
    *,
    timed_out: bool = False,
    transient_hint: bool = False,
) -> FailureClassification:
    """Classify a failure detail string into a retry class."""

    if timed_out:
        return FailureClassification(failure_class=FailureClass.TIMEOUT, matched_pattern=None)

    haystack = detail.lower()
    for failure_class, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(failure_class=failure_class, matched_pattern=pattern)

    if transient_hint:
        return FailureClassification(failure_class=FailureClass.TRANSIENT, matched_pattern=None)
    return FailureClassification(failure_class=FailureClass.NON_RETRYABLE, matched_pattern=None)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
