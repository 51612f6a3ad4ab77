"""Controllers for issue-triage CLI commands."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import httpx

from issue_triage.analysis.routing import build_capabilities, normalize_agent
from issue_triage.config import Settings
from issue_triage.project import (
    ProjectConfig,
    ProjectConfigError,
    ProjectConfigStore,
    ProjectContext,
)
from issue_triage.review.artifacts import artifact_filename
from issue_triage.review.formatting import format_compact_date, format_relative_time
from issue_triage.review.models import (
    ItemRecord,
    RecommendationFilter,
    RecordFilter,
    RecordSort,
    RemoteSnapshot,
    ReviewState,
    SortKey,
)
from issue_triage.review.store import MetadataStore
from issue_triage.review.sync import backfill_remote_metadata, sync_closed_issues
from issue_triage.tracker.client import GitHubClient
from issue_triage.triage.queue import (
    JobFailed,
    JobQueued,
    JobStarted,
    JobSucceeded,
    QueueDrained,
    QueueEvent,
)
from issue_triage.triage.triager import BatchSummary, IssueTriager

logger = logging.getLogger(__name__)

_SENTINEL = object()
_TITLE_WIDTH = 60
LEGACY_RESULTS_DIRNAME = "results"


@dataclass(slots=True)
class ProjectOptions:
    """Project selection flags shared by every project-scoped command."""

    owner: str | None = None
    repo: str | None = None
    token: str | None = None
    code_path: str | None = None


@dataclass(slots=True)
class TriageCommand:
    """CLI inputs for the triage command."""

    project: ProjectOptions
    issue: int | None = None
    agent: str | None = None
    state: str = "open"
    labels: tuple[str, ...] = ()
    limit: int | None = None
    sort: str | None = None
    direction: str | None = None
    concurrency: int | None = None
    force: bool = False


@dataclass(slots=True)
class InboxCommand:
    """CLI inputs for the inbox listing."""

    project: ProjectOptions
    review_state: str = "unread"
    recommendation: str | None = None
    closed: bool | None = None
    text: str | None = None
    model_tag: str | None = None
    sort: str = "number"
    ascending: bool = False
    limit: int | None = None
    include_all: bool = False


@dataclass(slots=True)
class ReviewCommand:
    """CLI inputs for reading analyses and marking them reviewed."""

    project: ProjectOptions
    issue: int | None = None
    all_issues: bool = False


@dataclass(slots=True)
class MarkCommand:
    """CLI inputs for review state changes."""

    project: ProjectOptions
    numbers: tuple[int, ...]
    state: str
    all_issues: bool = False


@dataclass(slots=True)
class NoteCommand:
    project: ProjectOptions
    number: int
    note: str


@dataclass(slots=True)
class TagCommand:
    project: ProjectOptions
    number: int
    tags: tuple[str, ...]


@dataclass(slots=True)
class BackfillCommand:
    project: ProjectOptions
    limit: int | None = None


@dataclass(slots=True)
class ProjectAddCommand:
    """CLI inputs for registering a project."""

    owner: str
    repo: str
    token: str | None = None
    code_path: str | None = None
    data_dir: str | None = None
    activate: bool = False


class TriageCliController:
    """Coordinates triage, review and sync command execution."""

    def __init__(
        self,
        *,
        transport: httpx.BaseTransport | None = None,
        environ: Mapping[str, str] | None = None,
        legacy_results_dir: Path | None = None,
    ) -> None:
        self._transport = transport
        self._environ = environ
        self._legacy_results_dir = legacy_results_dir

    # -- triage ------------------------------------------------------------------

    def triage(self, command: TriageCommand) -> Iterator[str]:
        """Triage one issue, or a batch through the job queue, yielding progress lines."""

        settings = _settings()
        context = self._context(settings, command.project)
        agent = normalize_agent(command.agent or settings.agents.default_agent)
        capabilities = build_capabilities(settings.agents)

        with self._client(settings, context) as client:
            triager = IssueTriager(
                client=client,
                store=_store(context),
                capabilities=capabilities,
                paths=context.paths,
                repo_slug=context.repo_slug,
                code_path=context.code_path,
                timeout_seconds=settings.queue.timeout_seconds,
                max_steps=settings.queue.max_steps,
            )
            if command.issue is not None:
                yield f"Triaging issue #{command.issue} with {agent}..."
                outcome = triager.triage_issue(command.issue, capability=agent, force=command.force)
                if outcome.skipped:
                    yield f"Issue #{command.issue} already triaged (use --force to re-run)."
                else:
                    yield f"Analysis written to {outcome.artifact_path}"
                return

            yield from self._triage_batch(triager, command, agent, settings)

    def _triage_batch(
        self,
        triager: IssueTriager,
        command: TriageCommand,
        agent: str,
        settings: Settings,
    ) -> Iterator[str]:
        progress_q: queue.Queue[str | object] = queue.Queue()
        result_holder: list[BatchSummary] = []
        error_holder: list[Exception] = []

        def _run() -> None:
            try:
                result_holder.append(
                    triager.triage_many(
                        capability=agent,
                        concurrency=command.concurrency or settings.queue.concurrency,
                        state=command.state,
                        labels=command.labels or None,
                        sort=command.sort,
                        direction=command.direction,
                        limit=command.limit,
                        force=command.force,
                        on_event=lambda event: progress_q.put(format_queue_event(event)),
                    ),
                )
            except Exception as exc:  # noqa: BLE001
                error_holder.append(exc)
            finally:
                progress_q.put(_SENTINEL)

        worker_thread = threading.Thread(target=_run, daemon=True, name="triage-batch")
        worker_thread.start()
        while True:
            item = progress_q.get()
            if item is _SENTINEL:
                break
            yield str(item)
        worker_thread.join(timeout=10)

        if error_holder:
            raise error_holder[0]
        summary = result_holder[0]
        if not summary.selected:
            yield "No issues to triage."
        yield (
            "Batch finished: "
            f"selected={len(summary.selected)} succeeded={summary.succeeded} "
            f"failed={len(summary.failed)} skipped={summary.skipped}"
        )
        for number, error in sorted(summary.failed.items()):
            yield f"  #{number}: {error}"

    # -- review ------------------------------------------------------------------

    def inbox(self, command: InboxCommand) -> list[str]:
        settings = _settings()
        context = self._context(settings, command.project)
        store = _store(context)
        lines: list[str] = []
        if command.include_all:
            lines.append(self._fold_all_remote_issues(settings, context, store))
        store.reconcile_from_artifacts()
        review_state = None if command.review_state == "all" else ReviewState(command.review_state)
        records = store.query(
            RecordFilter(
                review_state=review_state,
                recommendation=(
                    RecommendationFilter(command.recommendation) if command.recommendation else None
                ),
                closed_remotely=command.closed,
                text=command.text,
                model_tag=command.model_tag,
            ),
            RecordSort(key=SortKey(command.sort), descending=not command.ascending),
        )
        if command.limit is not None:
            records = records[: command.limit]
        stats = store.stats()
        lines.append(
            f"{context.repo_slug}: {len(records)} shown, "
            f"total={stats.total} unread={stats.unread} read={stats.read}",
        )
        lines.extend(format_record_line(record) for record in records)
        return lines

    def review(self, command: ReviewCommand) -> list[str]:
        """Print analyses and mark them read: one issue, the next unread, or all unread."""

        context = self._context(_settings(), command.project)
        store = _store(context)
        store.reconcile_from_artifacts()
        if command.issue is not None:
            return _review_record(store, context, command.issue)

        lines: list[str] = []
        while (record := store.next_unread()) is not None:
            lines.extend(_review_record(store, context, record.number))
            if not command.all_issues:
                break
        if not lines:
            return ["No unread issues to review."]
        remaining = sum(
            1
            for record in store.query(RecordFilter(review_state=ReviewState.UNREAD))
            if record.is_analyzed
        )
        if remaining:
            lines.append(f"{remaining} more unread issues. Use --all to review them all.")
        return lines

    def mark(self, command: MarkCommand) -> list[str]:
        state = ReviewState(command.state)
        store = _store(self._context(_settings(), command.project))
        store.reconcile_from_artifacts()
        if command.all_issues:
            if state is not ReviewState.READ:
                raise ProjectConfigError("--all is only supported when marking as read.")
            return [f"Marked {store.mark_all_read()} issues as read."]
        if not command.numbers:
            raise ProjectConfigError("Pass at least one issue number or --all.")
        return [
            f"#{store.set_review_state(number, state).number} marked {state.value}"
            for number in command.numbers
        ]

    def note(self, command: NoteCommand) -> list[str]:
        store = _store(self._context(_settings(), command.project))
        store.reconcile_from_artifacts()
        store.add_note(command.number, command.note)
        return [f"Note saved for #{command.number}"]

    def tag(self, command: TagCommand) -> list[str]:
        store = _store(self._context(_settings(), command.project))
        store.reconcile_from_artifacts()
        record = store.add_tags(command.number, command.tags)
        return [f"#{record.number} tags: {', '.join(record.tags) or '-'}"]

    def stats(self, project: ProjectOptions) -> list[str]:
        context = self._context(_settings(), project)
        store = _store(context)
        store.reconcile_from_artifacts()
        stats = store.stats()
        close_count = len(store.query(RecordFilter(recommendation=RecommendationFilter.CLOSE)))
        return [
            f"Project: {context.repo_slug}",
            f"Total: {stats.total}",
            f"Unread: {stats.unread}",
            f"Read: {stats.read}",
            f"Recommended to close: {close_count}",
        ]

    # -- remote ------------------------------------------------------------------

    def sync(self, project: ProjectOptions) -> list[str]:
        settings = _settings()
        context = self._context(settings, project)
        with self._client(settings, context) as client:
            result = sync_closed_issues(
                client=client,
                store=_store(context),
                triage_dir=context.paths.triage,
            )
        lines = [
            "Sync completed: "
            f"closed_with_analysis={result.total_closed_seen} "
            f"updated={result.updated} already_consistent={result.already_consistent}",
        ]
        if result.error:
            lines.append(f"Sync stopped early: {result.error}")
        return lines

    def backfill(self, command: BackfillCommand) -> list[str]:
        settings = _settings()
        context = self._context(settings, command.project)
        store = _store(context)
        store.reconcile_from_artifacts()
        with self._client(settings, context) as client:
            result = backfill_remote_metadata(client=client, store=store, limit=command.limit)
        return [
            "Backfill completed: "
            f"requested={result.requested} fetched={result.fetched} failed={result.failed}",
        ]

    def _fold_all_remote_issues(
        self,
        settings: Settings,
        context: ProjectContext,
        store: MetadataStore,
    ) -> str:
        with self._client(settings, context) as client:
            issues = list(client.iter_issues(state="all"))
        store.reconcile_from_remote(RemoteSnapshot.from_issue(issue) for issue in issues)
        triaged = sum(
            1
            for issue in issues
            if (context.paths.triage / artifact_filename(issue.number)).exists()
        )
        untriaged = len(issues) - triaged
        return f"Synced {len(issues)} issues ({triaged} triaged, {untriaged} untriaged)"

    def test_connection(self, project: ProjectOptions) -> list[str]:
        settings = _settings()
        context = self._context(settings, project)
        with self._client(settings, context) as client:
            repository = client.get_repository()
        return [
            f"Connected to {repository.get('full_name', context.repo_slug)}",
            f"Open issues: {repository.get('open_issues_count', 'unknown')}",
            f"Data directory: {context.paths.root}",
        ]

    # -- project registry --------------------------------------------------------

    def project_add(self, command: ProjectAddCommand) -> list[str]:
        config_store = ProjectConfigStore(_settings().config_path)
        config = ProjectConfig(
            owner=command.owner,
            repo=command.repo,
            token=command.token,
            code_path=str(Path(command.code_path).expanduser().resolve())
            if command.code_path
            else None,
            data_dir=command.data_dir,
        )
        config_store.upsert(config)
        if command.activate:
            config_store.set_active_project(config.project_id)
        lines = [f"Project saved: {config.project_id}"]
        if config_store.active_project == config.project_id:
            lines.append(f"Active project: {config.project_id}")
        return lines

    def project_list(self) -> list[str]:
        config_store = ProjectConfigStore(_settings().config_path)
        projects = config_store.list_projects()
        if not projects:
            return ["No projects configured."]
        return [
            f"{'*' if config.project_id == config_store.active_project else ' '} "
            f"{config.project_id}  code_path={config.code_path or '-'}"
            for config in projects
        ]

    def project_use(self, project_id: str) -> list[str]:
        config_store = ProjectConfigStore(_settings().config_path)
        config_store.set_active_project(project_id)
        return [f"Active project: {project_id}"]

    # -- helpers -----------------------------------------------------------------

    def _context(self, settings: Settings, options: ProjectOptions) -> ProjectContext:
        context = ProjectContext.resolve(
            config_store=ProjectConfigStore(settings.config_path),
            data_root=settings.data_root,
            owner=options.owner,
            repo=options.repo,
            token=options.token,
            code_path=options.code_path,
            environ=self._environ,
        )
        context.ensure_dirs()
        legacy_dir = self._legacy_results_dir or Path.cwd() / LEGACY_RESULTS_DIRNAME
        if context.migrate_legacy_if_needed(legacy_dir):
            logger.info("Legacy results in %s now live under %s", legacy_dir, context.paths.root)
        return context

    @contextmanager
    def _client(self, settings: Settings, context: ProjectContext) -> Iterator[GitHubClient]:
        client = GitHubClient(
            owner=context.owner,
            repo=context.repo,
            token=context.token,
            api_url=settings.github.api_url,
            timeout_seconds=settings.github.request_timeout_seconds,
            max_retries=settings.github.max_retries,
            transport=self._transport,
        )
        try:
            yield client
        finally:
            client.close()


def format_queue_event(event: QueueEvent) -> str:
    """Render one queue lifecycle event as a progress line."""

    match event:
        case JobQueued(key=key):
            return f"queued   #{key}"
        case JobStarted(key=key, capability=capability):
            return f"started  #{key} ({capability})"
        case JobSucceeded(key=key, duration_ms=duration_ms):
            return f"done     #{key} [{duration_ms / 1000:.1f}s]"
        case JobFailed(key=key, duration_ms=duration_ms, error=error, failure_class=failure_class):
            return f"failed   #{key} [{duration_ms / 1000:.1f}s] {failure_class.value}: {error}"
        case QueueDrained():
            return "queue drained"
    raise TypeError(f"Unsupported queue event: {event!r}")


def format_record_line(record: ItemRecord) -> str:
    """One inbox row: number, state, recommendation, confidence, age and title."""

    recommendation = record.recommendation.value if record.recommendation else "?"
    confidence = record.confidence.value if record.confidence else "-"
    marker = " closed" if record.closed_remotely else ""
    title = (record.title or "(title not fetched)")[:_TITLE_WIDTH]
    labels = f" [{', '.join(sorted(record.labels))}]" if record.labels else ""
    return (
        f"#{record.number:<6} {record.review_state.value:<6} {recommendation:<5} "
        f"{confidence:<6} {format_relative_time(record.generated_at):>8} "
        f"{format_compact_date(record.created_at):>8}  {title}{labels}{marker}"
    )


def _review_record(store: MetadataStore, context: ProjectContext, number: int) -> list[str]:
    record = store.set_review_state(number, ReviewState.READ)
    path = context.paths.triage / artifact_filename(number)
    try:
        analysis = path.read_text("utf-8").strip()
    except OSError:
        analysis = "(analysis file not found)"
    return [
        f"=== #{number} {record.title or '(title not fetched)'} ===",
        analysis,
        f"#{number} marked read",
    ]


def _settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


def _store(context: ProjectContext) -> MetadataStore:
    return MetadataStore(
        metadata_path=context.paths.metadata_file,
        artifacts_dir=context.paths.triage,
    )
