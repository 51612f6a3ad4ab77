"""Shared test fixtures."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from issue_triage.config import Settings
from issue_triage.tracker.client import GitHubClient

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m issue_triage.analysis.echo_agent --prompt-file {{prompt_file}}"
)
OWNER = "octo"
REPO = "widgets"


def make_issue(number: int, *, state: str = "open", title: str | None = None, **extra: Any):
    payload = {
        "number": number,
        "title": title or f"Issue {number}",
        "state": state,
        "body": f"Body of issue {number}",
        "user": {"login": "reporter"},
        "labels": [{"name": "needs-triage"}],
        "html_url": f"https://github.com/{OWNER}/{REPO}/issues/{number}",
        "created_at": "2024-03-01T10:00:00Z",
        "updated_at": "2024-03-02T10:00:00Z",
        "closed_at": "2024-03-03T10:00:00Z" if state == "closed" else None,
    }
    payload.update(extra)
    return payload


@dataclass
class FakeGitHub:
    """In-memory GitHub issues API served through ``httpx.MockTransport``."""

    issues: dict[int, dict[str, Any]] = field(default_factory=dict)
    failures: dict[tuple[str, int], int] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)
    comments: dict[int, list[dict[str, Any]]] = field(default_factory=dict)

    owner: str = OWNER
    repo: str = REPO

    def add_issue(self, number: int, *, state: str = "open", **extra: Any) -> dict[str, Any]:
        payload = make_issue(number, state=state, **extra)
        self.issues[number] = payload
        return payload

    def fail_page(self, state: str, page: int, status: int) -> None:
        self.failures[(state, page)] = status

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def client(self) -> GitHubClient:
        return GitHubClient(owner=OWNER, repo=REPO, token="t0ken", transport=self.transport)

    def _handle(self, request: httpx.Request) -> httpx.Response:  # noqa: PLR0911
        self.requests.append(request)
        url = urlparse(str(request.url))
        query = {key: values[0] for key, values in parse_qs(url.query).items()}
        prefix = f"/repos/{OWNER}/{REPO}"
        if not url.path.startswith(prefix):
            return httpx.Response(404, json={"message": "Not Found"})
        path = url.path[len(prefix) :]

        if path == "" and request.method == "GET":
            return httpx.Response(
                200,
                json={"full_name": f"{OWNER}/{REPO}", "open_issues_count": len(self.issues)},
            )
        if path == "/issues" and request.method == "GET":
            return self._list(query)
        parts = path.strip("/").split("/")
        if len(parts) >= 2 and parts[0] == "issues":
            number = int(parts[1])
            if number not in self.issues:
                return httpx.Response(404, json={"message": "Not Found"})
            if len(parts) == 2 and request.method == "GET":
                return httpx.Response(200, json=self.issues[number])
            if len(parts) == 2 and request.method == "PATCH":
                body = json.loads(request.content)
                issue = self.issues[number]
                if "state" in body:
                    issue["state"] = body["state"]
                if "labels" in body:
                    issue["labels"] = [{"name": name} for name in body["labels"]]
                return httpx.Response(200, json=issue)
            if parts[2:] == ["comments"] and request.method == "GET":
                return httpx.Response(200, json=self.comments.get(number, []))
            if parts[2:] == ["comments"] and request.method == "POST":
                body = json.loads(request.content)
                comment = {
                    "id": len(self.comments.get(number, [])) + 1,
                    "user": {"login": "maintainer"},
                    "body": body["body"],
                    "created_at": "2024-03-05T00:00:00Z",
                }
                self.comments.setdefault(number, []).append(comment)
                return httpx.Response(201, json=comment)
        return httpx.Response(404, json={"message": "Not Found"})

    def _list(self, query: dict[str, str]) -> httpx.Response:
        state = query.get("state", "open")
        page = int(query.get("page", "1"))
        per_page = int(query.get("per_page", "30"))
        status = self.failures.get((state, page))
        if status is not None:
            return httpx.Response(status, json={"message": "Server Error"})
        matching = [
            issue
            for _, issue in sorted(self.issues.items(), reverse=True)
            if state == "all" or issue["state"] == state
        ]
        start = (page - 1) * per_page
        return httpx.Response(200, json=matching[start : start + per_page])


@pytest.fixture()
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture()
def write_artifact():
    """Write ``issue-<n>-triage.md`` into a directory with a standard triage block."""

    def _write(
        directory: Path,
        number: int,
        *,
        should_close: str | None = "Yes",
        labels: str | None = "bug",
        confidence: str | None = "High",
        analysis: str = "Looks like a duplicate.",
    ) -> Path:
        lines = ["=== TRIAGE ANALYSIS START ==="]
        if should_close is not None:
            lines.append(f"SHOULD_CLOSE: {should_close}")
        if labels is not None:
            lines.append(f"LABELS: {labels}")
        if confidence is not None:
            lines.append(f"CONFIDENCE: {confidence}")
        lines.extend(["", "ANALYSIS:", analysis, "=== TRIAGE ANALYSIS END ==="])
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"issue-{number}-triage.md"
        path.write_text("\n".join(lines) + "\n", "utf-8")
        return path

    return _write


@pytest.fixture()
def triage_env(tmp_path: Path, monkeypatch) -> Path:
    """Point settings at a temporary home and provide a token."""

    monkeypatch.setenv("ISSUE_TRIAGE_DATA_ROOT", str(tmp_path / "data"))
    monkeypatch.setenv("ISSUE_TRIAGE_CONFIG_PATH", str(tmp_path / "config.json"))
    monkeypatch.setenv("GITHUB_TOKEN", "env-t0ken")
    monkeypatch.delenv("ISSUE_TRIAGE_DEFAULT_AGENT", raising=False)
    return tmp_path


@pytest.fixture()
def echo_agent(monkeypatch):
    """Monkeypatch Settings.from_env so both agents run the echo agent."""

    original_from_env = Settings.from_env

    def _patched_from_env():
        settings = original_from_env()
        agents = replace(
            settings.agents,
            claude_command_template=ECHO_AGENT_COMMAND_TEMPLATE,
            codex_command_template=ECHO_AGENT_COMMAND_TEMPLATE,
        )
        return replace(settings, agents=agents)

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))
