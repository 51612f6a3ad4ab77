"""Prompt assembly for one triage analysis."""

from __future__ import annotations

from issue_triage.review.artifacts import ARTIFACT_END, ARTIFACT_START
from issue_triage.tracker.client import RemoteIssue

BODY_CHAR_LIMIT = 1000

_ANSWER_FORMAT = f"""{ARTIFACT_START}
SHOULD_CLOSE: Yes or No
LABELS: label1, label2
CONFIDENCE: High, Medium or Low

ANALYSIS:
<reasoning grounded in the code you inspected>

SUGGESTED_RESPONSE:
<optional reply to post on the issue>
{ARTIFACT_END}"""


def truncate_body(body: str, limit: int = BODY_CHAR_LIMIT) -> str:
    if not body.strip():
        return "No description provided"
    return f"{body[:limit]}..." if len(body) > limit else body


def build_triage_prompt(issue: RemoteIssue, repo_slug: str) -> str:
    labels = ", ".join(issue.labels) if issue.labels else "none"
    return "\n".join(
        [
            f"Triage GitHub issue #{issue.number} for {repo_slug}.",
            "",
            f"Title: {issue.title}",
            f"Author: {issue.author or 'unknown'}",
            f"Current labels: {labels}",
            f"Body: {truncate_body(issue.body)}",
            "",
            "Search the repository in the working directory for relevant context,",
            "then decide whether the issue should be closed and which labels apply.",
            "",
            "Your final message must contain exactly one block in this format:",
            "",
            _ANSWER_FORMAT,
        ],
    )
