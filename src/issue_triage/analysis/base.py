"""Analysis capability interface for triage jobs."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

RESULT_KIND = "result"
PROGRESS_KIND = "progress"
SUCCESS_SUBTYPE = "success"


@dataclass(slots=True)
class AnalysisOptions:
    """Budget and location for one analysis call."""

    working_directory: Path
    timeout_seconds: int
    max_steps: int


@dataclass(slots=True)
class AgentMessage:
    """One message streamed by an analysis capability.

    Only the final message is inspected by the triage core: a ``result``
    message with subtype ``success`` and a string ``result`` is a success;
    anything else is a failure.
    """

    kind: str
    subtype: str | None = None
    result: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return (
            self.kind == RESULT_KIND
            and self.subtype == SUCCESS_SUBTYPE
            and isinstance(self.result, str)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "subtype": self.subtype,
            "result": self.result,
            "details": self.details,
        }


class AnalysisCapability(Protocol):
    """Protocol implemented by analysis runners."""

    name: str

    def invoke(self, prompt: str, options: AnalysisOptions) -> Iterator[AgentMessage]:
        """Run the analysis, yielding progress and exactly one terminal message."""


class AnalysisError(RuntimeError):
    """Capability could not be started or misconfigured."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
