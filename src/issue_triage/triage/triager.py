"""Single-issue triage job and the non-interactive batch runner built on the queue."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from issue_triage.analysis.base import (
    AgentMessage,
    AnalysisCapability,
    AnalysisError,
    AnalysisOptions,
)
from issue_triage.analysis.failure_classifier import FailureClass, classify_failure
from issue_triage.project import ProjectConfigError, ProjectPaths
from issue_triage.review.artifacts import artifact_filename, debug_filename
from issue_triage.review.models import RemoteSnapshot
from issue_triage.review.store import MetadataStore
from issue_triage.storage import write_json
from issue_triage.tracker.client import GitHubClient, RemoteIssue, TrackerError
from issue_triage.triage.prompts import build_triage_prompt
from issue_triage.triage.queue import (
    JobFailed,
    JobSucceeded,
    QueueEvent,
    TriageQueue,
)

logger = logging.getLogger(__name__)


class TriageError(RuntimeError):
    """A triage job failed; ``failure_class`` is carried onto the failed event."""

    def __init__(self, message: str, *, failure_class: FailureClass) -> None:
        super().__init__(message)
        self.failure_class = failure_class


@dataclass(slots=True)
class TriageOutcome:
    number: int
    skipped: bool = False
    artifact_path: Path | None = None
    model_tag: str | None = None


@dataclass(slots=True)
class BatchSummary:
    """Counters for one batch run."""

    selected: list[int] = field(default_factory=list)
    skipped: int = 0
    succeeded: int = 0
    failed: dict[int, str] = field(default_factory=dict)
    timed_out: bool = False


class IssueTriager:
    """Fetch an issue, run an analysis capability and fold the result into the store."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: GitHubClient,
        store: MetadataStore,
        capabilities: Mapping[str, AnalysisCapability],
        paths: ProjectPaths,
        repo_slug: str,
        code_path: Path,
        timeout_seconds: int,
        max_steps: int,
        write_debug: bool = True,
    ) -> None:
        self.client = client
        self.store = store
        self.capabilities = capabilities
        self.paths = paths
        self.repo_slug = repo_slug
        self.code_path = code_path
        self.timeout_seconds = timeout_seconds
        self.max_steps = max_steps
        self.write_debug = write_debug

    def artifact_path(self, number: int) -> Path:
        return self.paths.triage / artifact_filename(number)

    def is_triaged(self, number: int) -> bool:
        return self.artifact_path(number).exists()

    def triage_issue(self, number: int, *, capability: str, force: bool = False) -> TriageOutcome:
        if not force and self.is_triaged(number):
            return TriageOutcome(
                number=number,
                skipped=True,
                artifact_path=self.artifact_path(number),
            )

        runner = self.capabilities.get(capability)
        if runner is None:
            raise ProjectConfigError(f"Unknown analysis capability: {capability!r}")

        try:
            issue = self.client.get_issue(number)
        except TrackerError as exc:
            failure = classify_failure(str(exc), transient_hint=exc.transient)
            raise TriageError(
                f"Could not fetch issue #{number}: {exc}",
                failure_class=failure.failure_class,
            ) from exc

        messages = self._run_capability(number, runner, build_triage_prompt(issue, self.repo_slug))
        final = messages[-1] if messages else None
        if final is None or not final.is_success:
            detail = _failure_detail(number, runner.name, final)
            timed_out = bool(final and final.details.get("timed_out"))
            raise TriageError(
                detail,
                failure_class=classify_failure(detail, timed_out=timed_out).failure_class,
            )

        path = self.artifact_path(number)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(final.result or "", "utf-8")
        self.store.reconcile_from_remote([RemoteSnapshot.from_issue(issue)])
        self.store.record_analysis(number, model_tag=runner.name)
        logger.info("Triaged issue #%d with %s", number, runner.name)
        return TriageOutcome(number=number, artifact_path=path, model_tag=runner.name)

    def _run_capability(
        self,
        number: int,
        runner: AnalysisCapability,
        prompt: str,
    ) -> list[AgentMessage]:
        options = AnalysisOptions(
            working_directory=self.code_path,
            timeout_seconds=self.timeout_seconds,
            max_steps=self.max_steps,
        )
        messages: list[AgentMessage] = []
        try:
            for message in runner.invoke(prompt, options):
                messages.append(message)
        except AnalysisError as exc:
            failure = classify_failure(str(exc), transient_hint=exc.transient)
            raise TriageError(
                f"{runner.name} could not analyze issue #{number}: {exc}",
                failure_class=failure.failure_class,
            ) from exc
        finally:
            self._write_transcript(number, runner.name, messages)
        return messages

    def _write_transcript(
        self,
        number: int,
        capability: str,
        messages: Sequence[AgentMessage],
    ) -> None:
        if not self.write_debug:
            return
        try:
            write_json(
                self.paths.debug / debug_filename(number),
                {
                    "issue": number,
                    "capability": capability,
                    "messages": [message.to_dict() for message in messages],
                },
            )
        except OSError as exc:
            logger.warning("Could not write debug transcript for issue #%d: %s", number, exc)

    def select_issues(  # noqa: PLR0913
        self,
        *,
        state: str = "open",
        labels: Sequence[str] | None = None,
        sort: str | None = None,
        direction: str | None = None,
        limit: int | None = None,
        force: bool = False,
    ) -> tuple[list[RemoteIssue], int]:
        """Collect candidate issues; returns ``(selected, skipped_already_triaged)``."""

        selected: list[RemoteIssue] = []
        skipped = 0
        for issue in self.client.iter_issues(
            state=state,
            labels=labels,
            sort=sort,
            direction=direction,
        ):
            if limit is not None and len(selected) + skipped >= limit:
                break
            if not force and self.is_triaged(issue.number):
                skipped += 1
                continue
            selected.append(issue)
            if limit is not None and len(selected) >= limit:
                break
        return selected, skipped

    def triage_many(  # noqa: PLR0913
        self,
        *,
        capability: str,
        concurrency: int,
        state: str = "open",
        labels: Sequence[str] | None = None,
        sort: str | None = None,
        direction: str | None = None,
        limit: int | None = None,
        force: bool = False,
        on_event: Callable[[QueueEvent], None] | None = None,
        timeout: float | None = None,
    ) -> BatchSummary:
        """Run a batch of issues through a :class:`TriageQueue` and wait for it to drain."""

        issues, skipped = self.select_issues(
            state=state,
            labels=labels,
            sort=sort,
            direction=direction,
            limit=limit,
            force=force,
        )
        summary = BatchSummary(selected=[issue.number for issue in issues], skipped=skipped)
        if not issues:
            return summary
        self.store.reconcile_from_remote(RemoteSnapshot.from_issue(issue) for issue in issues)

        queue = TriageQueue(
            lambda number, name: self.triage_issue(number, capability=name, force=True),
            concurrency=concurrency,
            capability=capability,
            known_capabilities=self.capabilities.keys(),
        )
        summary_lock = threading.Lock()

        def _record(event: QueueEvent) -> None:
            with summary_lock:
                if isinstance(event, JobSucceeded):
                    summary.succeeded += 1
                elif isinstance(event, JobFailed):
                    summary.failed[event.key] = event.error

        queue.subscribe(_record)
        if on_event is not None:
            queue.subscribe(on_event)
        queue.enqueue(summary.selected)
        if not queue.wait_for_drain(timeout):
            queue.stop()
            summary.timed_out = True
        return summary


def _failure_detail(number: int, capability: str, final: AgentMessage | None) -> str:
    if final is None:
        return f"No response from {capability} for issue #{number}"
    if final.details.get("timed_out"):
        return (
            f"{capability} timed out after {final.details.get('timeout_seconds')}s "
            f"on issue #{number}"
        )
    stderr = str(final.details.get("stderr") or "").strip()
    exit_code = final.details.get("exit_code")
    detail = f"{capability} failed on issue #{number} ({final.subtype or final.kind}"
    if exit_code is not None:
        detail += f", exit code {exit_code}"
    detail += ")"
    return f"{detail}: {stderr}" if stderr else detail
