"""CLI entrypoint for issue-triage."""

import logging
from collections.abc import Callable, Iterable
from typing import Any

import rich_click as click

from issue_triage import __version__
from issue_triage.analysis.routing import SUPPORTED_AGENTS
from issue_triage.controllers import (
    BackfillCommand,
    InboxCommand,
    MarkCommand,
    NoteCommand,
    ProjectAddCommand,
    ProjectOptions,
    ReviewCommand,
    TagCommand,
    TriageCliController,
    TriageCommand,
)
from issue_triage.review.store import ItemNotFoundError
from issue_triage.review.sync import SyncInProgressError
from issue_triage.tracker.client import TrackerError
from issue_triage.triage.triager import TriageError

click.rich_click.USE_MARKDOWN = True
TRIAGE_CONTROLLER = TriageCliController()

_REPORTED_ERRORS = (
    ValueError,
    ItemNotFoundError,
    SyncInProgressError,
    TrackerError,
    TriageError,
)


class TriageGroup(click.RichGroup):
    """Report expected domain errors as CLI errors instead of tracebacks."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except _REPORTED_ERRORS as error:
            raise click.ClickException(str(error)) from error


def project_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Attach the project selection flags shared by project-scoped commands."""

    func = click.option(
        "--code-path",
        default=None,
        help="Local checkout the agent inspects. Defaults to the project config or cwd.",
    )(func)
    func = click.option(
        "--token",
        default=None,
        help="GitHub token, or env:VAR. Falls back to the project config and GITHUB_TOKEN.",
    )(func)
    func = click.option("--repo", default=None, help="Repository name.")(func)
    return click.option("--owner", default=None, help="Repository owner.")(func)


def _project(
    owner: str | None,
    repo: str | None,
    token: str | None,
    code_path: str | None,
) -> ProjectOptions:
    return ProjectOptions(owner=owner, repo=repo, token=token, code_path=code_path)


@click.group(cls=TriageGroup)
@click.version_option(version=__version__, prog_name="issue-triage")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def issue_triage(log_level: str) -> None:
    """Triage GitHub issues with a coding agent and review the results."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@issue_triage.command("triage")
@project_options
@click.option("--issue", type=click.IntRange(min=1), default=None, help="Triage a single issue.")
@click.option(
    "--agent",
    type=click.Choice(SUPPORTED_AGENTS, case_sensitive=False),
    default=None,
    help="Analysis agent. Defaults to ISSUE_TRIAGE_DEFAULT_AGENT.",
)
@click.option(
    "--state",
    type=click.Choice(["open", "closed", "all"]),
    default="open",
    show_default=True,
    help="Issue state for batch selection.",
)
@click.option("--label", "labels", multiple=True, help="Only issues with this label. Repeatable.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max issues per batch.")
@click.option("--sort", type=click.Choice(["created", "updated", "comments"]), default=None)
@click.option("--direction", type=click.Choice(["asc", "desc"]), default=None)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Parallel analyses. Defaults to ISSUE_TRIAGE_CONCURRENCY.",
)
@click.option("--force", is_flag=True, default=False, help="Re-run already triaged issues.")
def triage(  # noqa: PLR0913
    owner: str | None,
    repo: str | None,
    token: str | None,
    code_path: str | None,
    issue: int | None,
    agent: str | None,
    state: str,
    labels: tuple[str, ...],
    limit: int | None,
    sort: str | None,
    direction: str | None,
    concurrency: int | None,
    force: bool,
) -> None:
    """Run an agent analysis for one issue, or for a batch through the job queue."""

    _emit_lines(
        TRIAGE_CONTROLLER.triage(
            TriageCommand(
                project=_project(owner, repo, token, code_path),
                issue=issue,
                agent=agent.lower() if agent else None,
                state=state,
                labels=labels,
                limit=limit,
                sort=sort,
                direction=direction,
                concurrency=concurrency,
                force=force,
            ),
        ),
    )


@issue_triage.command("inbox")
@project_options
@click.option(
    "--status",
    "review_state",
    type=click.Choice(["unread", "read", "all"]),
    default="unread",
    show_default=True,
)
@click.option(
    "--recommendation",
    type=click.Choice(["close", "keep", "unknown", "not-keep"]),
    default=None,
    help="Filter by close/keep recommendation.",
)
@click.option(
    "--closed/--open",
    "closed",
    default=None,
    help="Filter by state on GitHub.",
)
@click.option("--search", "text", default=None, help="Match number, title or labels.")
@click.option("--model", "model_tag", default=None, help="Only records produced by this agent.")
@click.option(
    "--sort",
    type=click.Choice(["number", "generated", "created", "updated"]),
    default="number",
    show_default=True,
)
@click.option("--asc", "ascending", is_flag=True, default=False, help="Ascending order.")
@click.option("--limit", type=click.IntRange(min=1), default=None)
@click.option(
    "--include-all",
    is_flag=True,
    default=False,
    help="Pull every GitHub issue into the inbox, not just triaged ones.",
)
def inbox(  # noqa: PLR0913
    owner: str | None,
    repo: str | None,
    token: str | None,
    code_path: str | None,
    review_state: str,
    recommendation: str | None,
    closed: bool | None,
    text: str | None,
    model_tag: str | None,
    sort: str,
    ascending: bool,
    limit: int | None,
    include_all: bool,
) -> None:
    """List triaged issues with their review state and recommendation."""

    _emit_lines(
        TRIAGE_CONTROLLER.inbox(
            InboxCommand(
                project=_project(owner, repo, token, code_path),
                review_state=review_state,
                recommendation=recommendation,
                closed=closed,
                text=text,
                model_tag=model_tag,
                sort=sort,
                ascending=ascending,
                limit=limit,
                include_all=include_all,
            ),
        ),
    )


@issue_triage.command("review")
@project_options
@click.option("--issue", type=click.IntRange(min=1), default=None, help="Review this issue.")
@click.option("--all", "all_issues", is_flag=True, default=False, help="Review every unread issue.")
def review(  # noqa: PLR0913
    owner: str | None,
    repo: str | None,
    token: str | None,
    code_path: str | None,
    issue: int | None,
    all_issues: bool,
) -> None:
    """Print analyses and mark them read: one issue, the next unread, or all unread."""

    _emit_lines(
        TRIAGE_CONTROLLER.review(
            ReviewCommand(
                project=_project(owner, repo, token, code_path),
                issue=issue,
                all_issues=all_issues,
            ),
        ),
    )


@issue_triage.command("mark")
@project_options
@click.argument("numbers", nargs=-1, type=int)
@click.option(
    "--as",
    "state",
    type=click.Choice(["read", "unread"]),
    default="read",
    show_default=True,
)
@click.option("--all", "all_issues", is_flag=True, default=False, help="Mark every issue read.")
def mark(  # noqa: PLR0913
    owner: str | None,
    repo: str | None,
    token: str | None,
    code_path: str | None,
    numbers: tuple[int, ...],
    state: str,
    all_issues: bool,
) -> None:
    """Mark issues as read or unread."""

    _emit_lines(
        TRIAGE_CONTROLLER.mark(
            MarkCommand(
                project=_project(owner, repo, token, code_path),
                numbers=numbers,
                state=state,
                all_issues=all_issues,
            ),
        ),
    )


@issue_triage.command("note")
@project_options
@click.argument("number", type=int)
@click.argument("text")
def note(  # noqa: PLR0913
    owner: str | None,
    repo: str | None,
    token: str | None,
    code_path: str | None,
    number: int,
    text: str,
) -> None:
    """Attach a note to an issue, replacing the previous one."""

    _emit_lines(
        TRIAGE_CONTROLLER.note(
            NoteCommand(project=_project(owner, repo, token, code_path), number=number, note=text),
        ),
    )


@issue_triage.command("tag")
@project_options
@click.argument("number", type=int)
@click.argument("tags", nargs=-1, required=True)
def tag(  # noqa: PLR0913
    owner: str | None,
    repo: str | None,
    token: str | None,
    code_path: str | None,
    number: int,
    tags: tuple[str, ...],
) -> None:
    """Add user tags to an issue."""

    _emit_lines(
        TRIAGE_CONTROLLER.tag(
            TagCommand(project=_project(owner, repo, token, code_path), number=number, tags=tags),
        ),
    )


@issue_triage.command("stats")
@project_options
def stats(owner: str | None, repo: str | None, token: str | None, code_path: str | None) -> None:
    """Show review counters."""

    _emit_lines(TRIAGE_CONTROLLER.stats(_project(owner, repo, token, code_path)))


@issue_triage.command("sync")
@project_options
def sync(owner: str | None, repo: str | None, token: str | None, code_path: str | None) -> None:
    """Mark triaged issues that were closed on GitHub."""

    _emit_lines(TRIAGE_CONTROLLER.sync(_project(owner, repo, token, code_path)))


@issue_triage.command("backfill")
@project_options
@click.option("--limit", type=click.IntRange(min=1), default=None)
def backfill(
    owner: str | None,
    repo: str | None,
    token: str | None,
    code_path: str | None,
    limit: int | None,
) -> None:
    """Fetch titles and dates for records that are missing them."""

    _emit_lines(
        TRIAGE_CONTROLLER.backfill(
            BackfillCommand(project=_project(owner, repo, token, code_path), limit=limit),
        ),
    )


@issue_triage.command("test")
@project_options
def test_connection(
    owner: str | None,
    repo: str | None,
    token: str | None,
    code_path: str | None,
) -> None:
    """Check the GitHub token and repository access."""

    _emit_lines(TRIAGE_CONTROLLER.test_connection(_project(owner, repo, token, code_path)))


@issue_triage.group()
def project() -> None:
    """Project registry commands."""


@project.command("add")
@click.option("--owner", required=True)
@click.option("--repo", required=True)
@click.option("--token", default=None, help="Token literal or env:VAR reference.")
@click.option("--code-path", default=None, help="Local checkout of the repository.")
@click.option("--data-dir", default=None, help="Override the per-project data directory.")
@click.option("--use", "activate", is_flag=True, default=False, help="Make it the active project.")
def project_add(  # noqa: PLR0913
    owner: str,
    repo: str,
    token: str | None,
    code_path: str | None,
    data_dir: str | None,
    activate: bool,
) -> None:
    """Register or update a project."""

    _emit_lines(
        TRIAGE_CONTROLLER.project_add(
            ProjectAddCommand(
                owner=owner,
                repo=repo,
                token=token,
                code_path=code_path,
                data_dir=data_dir,
                activate=activate,
            ),
        ),
    )


@project.command("list")
def project_list() -> None:
    """List registered projects; the active one is starred."""

    _emit_lines(TRIAGE_CONTROLLER.project_list())


@project.command("use")
@click.argument("project_id")
def project_use(project_id: str) -> None:
    """Switch the active project (OWNER/REPO)."""

    _emit_lines(TRIAGE_CONTROLLER.project_use(project_id))


def _emit_lines(lines: Iterable[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    issue_triage()
