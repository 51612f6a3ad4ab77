"""Triage artifact naming and line-oriented parsing.

An artifact is the agent's final answer, expected to contain a block like::

    === TRIAGE ANALYSIS START ===
    SHOULD_CLOSE: Yes|No
    LABELS: bug, p1
    CONFIDENCE: High|Medium|Low

    ANALYSIS:
    <free text>

    SUGGESTED_RESPONSE:
    <free text, optional>
    === TRIAGE ANALYSIS END ===

Parsing never raises. Each field ends up ``absent`` (no marker line),
``malformed`` (marker present but value unrecognized) or ``present``; only
present fields carry a value.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from issue_triage.review.models import Confidence, Recommendation

ARTIFACT_START = "=== TRIAGE ANALYSIS START ==="
ARTIFACT_END = "=== TRIAGE ANALYSIS END ==="

_ARTIFACT_NAME_RE = re.compile(r"^issue-(\d+)-triage\.md$")
_MARKER_RE = re.compile(
    r"^\s*[*_`#>\s]*(SHOULD_CLOSE|LABELS|CONFIDENCE|ANALYSIS|SUGGESTED_RESPONSE)[*_`\s]*:(.*)$",
    re.IGNORECASE,
)
_SHOULD_CLOSE_RE = re.compile(r"^[*_`\s]*(yes|no)\b(?!\s*/)", re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r"^[*_`\s]*(high|medium|low)\b(?!\s*/)", re.IGNORECASE)


class TriageField(str, Enum):
    """Recognized field markers."""

    SHOULD_CLOSE = "SHOULD_CLOSE"
    LABELS = "LABELS"
    CONFIDENCE = "CONFIDENCE"
    ANALYSIS = "ANALYSIS"
    SUGGESTED_RESPONSE = "SUGGESTED_RESPONSE"


_FREE_TEXT_FIELDS = frozenset({TriageField.ANALYSIS, TriageField.SUGGESTED_RESPONSE})


class FieldStatus(str, Enum):
    ABSENT = "absent"
    MALFORMED = "malformed"
    PRESENT = "present"


@dataclass(slots=True)
class ParsedArtifact:
    """Fields extracted from one artifact body."""

    recommendation: Recommendation | None = None
    labels: frozenset[str] | None = None
    confidence: Confidence | None = None
    analysis: str | None = None
    suggested_response: str | None = None
    status: dict[TriageField, FieldStatus] = field(
        default_factory=lambda: dict.fromkeys(TriageField, FieldStatus.ABSENT),
    )

    def is_present(self, triage_field: TriageField) -> bool:
        return self.status[triage_field] is FieldStatus.PRESENT


def artifact_filename(number: int) -> str:
    return f"issue-{number}-triage.md"


def debug_filename(number: int) -> str:
    return f"issue-{number}-triage-debug.json"


def number_from_filename(name: str) -> int | None:
    """Extract the issue number from an artifact filename, if it is one."""

    match = _ARTIFACT_NAME_RE.match(name)
    return int(match.group(1)) if match else None


def iter_artifact_paths(directory: Path) -> list[tuple[int, Path]]:
    """List ``(number, path)`` for every artifact file in ``directory``."""

    if not directory.is_dir():
        return []
    found: list[tuple[int, Path]] = []
    for path in directory.iterdir():
        number = number_from_filename(path.name)
        if number is not None and path.is_file():
            found.append((number, path))
    return sorted(found)


def extract_block(text: str) -> str:
    """Return the last sentinel-delimited block, or the whole text without sentinels."""

    start = text.rfind(ARTIFACT_START)
    if start == -1:
        return text
    body = text[start + len(ARTIFACT_START) :]
    end = body.find(ARTIFACT_END)
    return body if end == -1 else body[:end]


def parse_artifact(text: str) -> ParsedArtifact:
    """Parse recommendation, labels, confidence and free-text sections."""

    parsed = ParsedArtifact()
    current: TriageField | None = None
    sections: dict[TriageField, list[str]] = {}

    for line in extract_block(text).splitlines():
        match = _MARKER_RE.match(line)
        marker = TriageField(match.group(1).upper()) if match is not None else None
        in_text = current in _FREE_TEXT_FIELDS
        # First occurrence wins. Inside free text only SUGGESTED_RESPONSE opens a new field.
        if (
            match is not None
            and marker not in sections
            and (not in_text or marker is TriageField.SUGGESTED_RESPONSE)
        ):
            current = marker
            sections[marker] = [match.group(2)]
            continue
        if in_text:
            sections[current].append(line)

    if TriageField.SHOULD_CLOSE in sections:
        _parse_should_close(parsed, sections[TriageField.SHOULD_CLOSE][0])
    if TriageField.LABELS in sections:
        _parse_labels(parsed, sections[TriageField.LABELS][0])
    if TriageField.CONFIDENCE in sections:
        _parse_confidence(parsed, sections[TriageField.CONFIDENCE][0])
    for marker in (TriageField.ANALYSIS, TriageField.SUGGESTED_RESPONSE):
        if marker not in sections:
            continue
        body = "\n".join(sections[marker]).strip()
        if not body:
            parsed.status[marker] = FieldStatus.MALFORMED
            continue
        parsed.status[marker] = FieldStatus.PRESENT
        if marker is TriageField.ANALYSIS:
            parsed.analysis = body
        else:
            parsed.suggested_response = body
    return parsed


def read_artifact(path: Path) -> ParsedArtifact:
    """Read and parse an artifact file; unreadable files parse as empty."""

    try:
        text = path.read_text("utf-8", errors="replace")
    except OSError:
        return ParsedArtifact()
    return parse_artifact(text)


def _parse_should_close(parsed: ParsedArtifact, value: str) -> None:
    match = _SHOULD_CLOSE_RE.match(value)
    if match is None:
        parsed.status[TriageField.SHOULD_CLOSE] = FieldStatus.MALFORMED
        return
    parsed.status[TriageField.SHOULD_CLOSE] = FieldStatus.PRESENT
    is_close = match.group(1).lower() == "yes"
    parsed.recommendation = Recommendation.CLOSE if is_close else Recommendation.KEEP


def _parse_labels(parsed: ParsedArtifact, value: str) -> None:
    labels = frozenset(
        cleaned
        for part in value.split(",")
        if (cleaned := part.strip().strip("*_`[]\"'").strip())
    )
    if not labels:
        parsed.status[TriageField.LABELS] = FieldStatus.MALFORMED
        return
    parsed.status[TriageField.LABELS] = FieldStatus.PRESENT
    parsed.labels = labels


def _parse_confidence(parsed: ParsedArtifact, value: str) -> None:
    match = _CONFIDENCE_RE.match(value)
    if match is None:
        parsed.status[TriageField.CONFIDENCE] = FieldStatus.MALFORMED
        return
    parsed.status[TriageField.CONFIDENCE] = FieldStatus.PRESENT
    parsed.confidence = Confidence(match.group(1).lower())
