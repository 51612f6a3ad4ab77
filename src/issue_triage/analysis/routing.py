"""Capability resolution from agent settings."""

from __future__ import annotations

from issue_triage.analysis.cli_backend import CliAgentCapability
from issue_triage.config import AgentSettings

SUPPORTED_AGENTS = ("claude", "codex")


def normalize_agent(value: str) -> str:
    """Normalize and validate a capability name."""

    agent = value.strip().lower()
    if agent not in SUPPORTED_AGENTS:
        raise ValueError(
            f"Unsupported agent {value!r}; expected one of: {', '.join(SUPPORTED_AGENTS)}",
        )
    return agent


def build_capabilities(settings: AgentSettings) -> dict[str, CliAgentCapability]:
    """Build one CLI capability per supported agent."""

    normalize_agent(settings.default_agent)
    templates = {
        "claude": settings.claude_command_template,
        "codex": settings.codex_command_template,
    }
    for agent, template in templates.items():
        if not template.strip():
            raise ValueError(f"Empty command template for agent={agent!r}")
    return {
        agent: CliAgentCapability(name=agent, command_template=template)
        for agent, template in templates.items()
    }
