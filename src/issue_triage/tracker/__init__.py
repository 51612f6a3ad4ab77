"""Remote issue tracker client."""

from issue_triage.tracker.client import GitHubClient, RemoteComment, RemoteIssue, TrackerError

__all__ = [
    "GitHubClient",
    "RemoteComment",
    "RemoteIssue",
    "TrackerError",
]
