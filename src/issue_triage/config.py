"""Runtime configuration for the triage queue, agents and tracker client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_CLAUDE_COMMAND_TEMPLATE = (
    "claude -p --max-turns {max_steps} --permission-mode dontAsk "
    '--allowed-tools "Read,Grep,Glob,Bash(ls:*),Bash(cat:*),Bash(git log:*)" '
    "-- {prompt}"
)
DEFAULT_CODEX_COMMAND_TEMPLATE = "codex exec --sandbox read-only --skip-git-repo-check {prompt}"


@dataclass(slots=True)
class QueueSettings:
    """Triage queue settings."""

    concurrency: int = 3
    timeout_seconds: int = 3_600
    max_steps: int = 100_000


@dataclass(slots=True)
class AgentSettings:
    """External analysis agent settings."""

    default_agent: str = "claude"
    claude_command_template: str = DEFAULT_CLAUDE_COMMAND_TEMPLATE
    codex_command_template: str = DEFAULT_CODEX_COMMAND_TEMPLATE


@dataclass(slots=True)
class GitHubSettings:
    """Remote tracker (GitHub REST API) settings."""

    api_url: str = "https://api.github.com"
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    data_root: Path = field(default_factory=lambda: Path.home() / ".issue-triage" / "data")
    config_path: Path = field(default_factory=lambda: Path.home() / ".issue-triage-config.json")
    queue: QueueSettings = field(default_factory=QueueSettings)
    agents: AgentSettings = field(default_factory=AgentSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        home = Path.home()
        return cls(
            data_root=Path(
                os.getenv("ISSUE_TRIAGE_DATA_ROOT", str(home / ".issue-triage" / "data")),
            ).expanduser(),
            config_path=Path(
                os.getenv("ISSUE_TRIAGE_CONFIG_PATH", str(home / ".issue-triage-config.json")),
            ).expanduser(),
            queue=QueueSettings(
                concurrency=int(os.getenv("ISSUE_TRIAGE_CONCURRENCY", "3")),
                timeout_seconds=int(os.getenv("ISSUE_TRIAGE_TIMEOUT_SECONDS", "3600")),
                max_steps=int(os.getenv("ISSUE_TRIAGE_MAX_STEPS", "100000")),
            ),
            agents=AgentSettings(
                default_agent=os.getenv("ISSUE_TRIAGE_DEFAULT_AGENT", "claude").strip().lower(),
                claude_command_template=os.getenv(
                    "ISSUE_TRIAGE_CLAUDE_COMMAND_TEMPLATE",
                    DEFAULT_CLAUDE_COMMAND_TEMPLATE,
                ),
                codex_command_template=os.getenv(
                    "ISSUE_TRIAGE_CODEX_COMMAND_TEMPLATE",
                    DEFAULT_CODEX_COMMAND_TEMPLATE,
                ),
            ),
            github=GitHubSettings(
                api_url=os.getenv("ISSUE_TRIAGE_GITHUB_API_URL", "https://api.github.com"),
                request_timeout_seconds=float(
                    os.getenv("ISSUE_TRIAGE_HTTP_TIMEOUT_SECONDS", "30.0"),
                ),
                max_retries=int(os.getenv("ISSUE_TRIAGE_HTTP_MAX_RETRIES", "3")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.queue.concurrency <= 0:
            raise ValueError("ISSUE_TRIAGE_CONCURRENCY must be a positive integer.")
        if self.queue.timeout_seconds <= 0:
            raise ValueError("ISSUE_TRIAGE_TIMEOUT_SECONDS must be > 0.")
        if self.queue.max_steps <= 0:
            raise ValueError("ISSUE_TRIAGE_MAX_STEPS must be > 0.")
        if self.github.max_retries < 0:
            raise ValueError("ISSUE_TRIAGE_HTTP_MAX_RETRIES must be >= 0.")
        if not self.github.api_url.startswith(("http://", "https://")):
            raise ValueError(
                "Invalid ISSUE_TRIAGE_GITHUB_API_URL: "
                f"{self.github.api_url!r}. Expected an absolute http(s) URL.",
            )
