"""GitHub issues REST client with retries and timeout."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from issue_triage.storage import parse_optional_iso

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
PAGE_SIZE = 100
USER_AGENT = "issue-triage/1.0"

_TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class TrackerError(RuntimeError):
    """Remote tracker error with retryability hint."""

    def __init__(self, message: str, *, transient: bool, status_code: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


@dataclass(slots=True)
class RemoteIssue:
    """Issue fields the triage core consumes."""

    number: int
    title: str
    state: str
    body: str = ""
    author: str | None = None
    labels: list[str] = field(default_factory=list)
    html_url: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_at: datetime | None = None
    is_pull_request: bool = False

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> RemoteIssue:
        user = payload.get("user") or {}
        return cls(
            number=int(payload["number"]),
            title=str(payload.get("title") or ""),
            state=str(payload.get("state") or "open"),
            body=str(payload.get("body") or ""),
            author=user.get("login") if isinstance(user, dict) else None,
            labels=[
                str(label["name"]) if isinstance(label, dict) else str(label)
                for label in payload.get("labels") or []
            ],
            html_url=str(payload.get("html_url") or ""),
            created_at=parse_optional_iso(payload.get("created_at")),
            updated_at=parse_optional_iso(payload.get("updated_at")),
            closed_at=parse_optional_iso(payload.get("closed_at")),
            is_pull_request="pull_request" in payload,
        )


@dataclass(slots=True)
class RemoteComment:
    """One issue comment."""

    comment_id: int
    author: str | None
    body: str
    created_at: datetime | None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> RemoteComment:
        user = payload.get("user") or {}
        return cls(
            comment_id=int(payload.get("id") or 0),
            author=user.get("login") if isinstance(user, dict) else None,
            body=str(payload.get("body") or ""),
            created_at=parse_optional_iso(payload.get("created_at")),
        )


class GitHubClient:
    """Typed wrapper over the GitHub issues API for one repository."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        owner: str,
        repo: str,
        token: str,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {token}",
            "User-Agent": USER_AGENT,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    def get_repository(self) -> dict[str, Any]:
        return self._request("GET", self._repo_path)

    def list_issues(  # noqa: PLR0913
        self,
        *,
        state: str = "open",
        labels: Sequence[str] | None = None,
        page: int = 1,
        per_page: int = 30,
        sort: str | None = None,
        direction: str | None = None,
        since: datetime | None = None,
    ) -> list[RemoteIssue]:
        """Fetch one page of issues. Pull requests are included and flagged."""

        params: dict[str, str | int] = {"state": state, "page": page, "per_page": per_page}
        if labels:
            params["labels"] = ",".join(labels)
        if sort:
            params["sort"] = sort
        if direction:
            params["direction"] = direction
        if since is not None:
            params["since"] = since.isoformat()
        payload = self._request("GET", f"{self._repo_path}/issues", params=params)
        if not isinstance(payload, list):
            raise TrackerError("Unexpected issues listing payload", transient=False)
        return [RemoteIssue.from_api(item) for item in payload]

    def iter_issues(
        self,
        *,
        state: str = "open",
        labels: Sequence[str] | None = None,
        sort: str | None = None,
        direction: str | None = None,
        include_pull_requests: bool = False,
    ) -> Iterator[RemoteIssue]:
        """Yield issues page by page until a short page is returned."""

        page = 1
        while True:
            batch = self.list_issues(
                state=state,
                labels=labels,
                page=page,
                per_page=PAGE_SIZE,
                sort=sort,
                direction=direction,
            )
            for issue in batch:
                if issue.is_pull_request and not include_pull_requests:
                    continue
                yield issue
            if len(batch) < PAGE_SIZE:
                return
            page += 1

    def get_issue(self, number: int) -> RemoteIssue:
        return RemoteIssue.from_api(self._request("GET", f"{self._repo_path}/issues/{number}"))

    def list_comments(self, number: int) -> list[RemoteComment]:
        """Fetch all comments for an issue in creation order."""

        comments: list[RemoteComment] = []
        page = 1
        while True:
            payload = self._request(
                "GET",
                f"{self._repo_path}/issues/{number}/comments",
                params={"page": page, "per_page": PAGE_SIZE},
            )
            comments.extend(RemoteComment.from_api(item) for item in payload)
            if len(payload) < PAGE_SIZE:
                return comments
            page += 1

    def update_issue(
        self,
        number: int,
        *,
        state: str | None = None,
        labels: Sequence[str] | None = None,
    ) -> RemoteIssue:
        body: dict[str, object] = {}
        if state is not None:
            body["state"] = state
        if labels is not None:
            body["labels"] = list(labels)
        payload = self._request("PATCH", f"{self._repo_path}/issues/{number}", json=body)
        return RemoteIssue.from_api(payload)

    def create_comment(self, number: int, body: str) -> RemoteComment:
        payload = self._request(
            "POST",
            f"{self._repo_path}/issues/{number}/comments",
            json={"body": body},
        )
        return RemoteComment.from_api(payload)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling %s %s", method, path)
            raise TrackerError(f"Timeout calling {method} {path}", transient=True) from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s %s: %s", method, path, exc)
            raise TrackerError(
                f"HTTP error calling {method} {path}: {exc}",
                transient=True,
            ) from exc

        if response.is_success:
            try:
                return response.json()
            except ValueError as exc:
                logger.warning("Non-JSON response from %s %s", method, path)
                raise TrackerError(
                    f"GitHub API {method} {path} returned a non-JSON body",
                    transient=True,
                    status_code=response.status_code,
                ) from exc

        status = response.status_code
        transient = status in _TRANSIENT_STATUS_CODES or _is_rate_limited(response)
        message = _error_message(response)
        logger.warning("GitHub API %s %s failed: HTTP %d %s", method, path, status, message)
        raise TrackerError(
            f"GitHub API {method} {path} failed with HTTP {status}: {message}",
            transient=transient,
            status_code=status,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _is_rate_limited(response: httpx.Response) -> bool:
    return response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text[:200]
