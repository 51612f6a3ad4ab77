"""Analysis capabilities that produce triage artifacts."""

from issue_triage.analysis.base import (
    AgentMessage,
    AnalysisCapability,
    AnalysisError,
    AnalysisOptions,
)
from issue_triage.analysis.cli_backend import CliAgentCapability

__all__ = [
    "AgentMessage",
    "AnalysisCapability",
    "AnalysisError",
    "AnalysisOptions",
    "CliAgentCapability",
]
