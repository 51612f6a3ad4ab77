"""Per-project context: repository identity, credentials and data paths."""

from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from issue_triage.storage import load_json, write_json

logger = logging.getLogger(__name__)

ENV_TOKEN_PREFIX = "env:"
_LEGACY_ARTIFACT_RE = re.compile(r"^issue-\d+-triage\.md$")
_LEGACY_DEBUG_RE = re.compile(r"^issue-\d+-triage-debug\.json$")


class ProjectConfigError(ValueError):
    """Missing or invalid project configuration."""


@dataclass(slots=True)
class ProjectConfig:
    """One registered project in the per-user config file."""

    owner: str
    repo: str
    token: str | None = None
    code_path: str | None = None
    data_dir: str | None = None

    @property
    def project_id(self) -> str:
        return f"{self.owner}/{self.repo}"

    def to_dict(self) -> dict[str, str]:
        payload = {"owner": self.owner, "repo": self.repo}
        for key in ("token", "code_path", "data_dir"):
            value = getattr(self, key)
            if value:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> ProjectConfig:
        def _opt(key: str) -> str | None:
            value = payload.get(key)
            return value if isinstance(value, str) and value else None

        return cls(
            owner=str(payload.get("owner", "")),
            repo=str(payload.get("repo", "")),
            token=_opt("token"),
            code_path=_opt("code_path"),
            data_dir=_opt("data_dir"),
        )


class ProjectConfigStore:
    """Registry of projects persisted as a JSON file in the user's home."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._projects: dict[str, ProjectConfig] = {}
        self._active: str | None = None
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            payload = load_json(self.path)
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Ignoring unreadable project config %s: %s", self.path, exc)
            return
        projects = payload.get("projects")
        if isinstance(projects, dict):
            for project_id, raw in projects.items():
                if isinstance(raw, dict):
                    self._projects[project_id] = ProjectConfig.from_dict(raw)
        active = payload.get("active_project")
        self._active = active if isinstance(active, str) and active else None

    def save(self) -> None:
        payload: dict[str, object] = {
            "projects": {pid: cfg.to_dict() for pid, cfg in sorted(self._projects.items())},
        }
        if self._active:
            payload["active_project"] = self._active
        write_json(self.path, payload)

    @property
    def active_project(self) -> str | None:
        return self._active

    def set_active_project(self, project_id: str) -> None:
        if project_id not in self._projects:
            raise ProjectConfigError(f"Unknown project {project_id!r}. Add it first.")
        self._active = project_id
        self.save()

    def get(self, project_id: str) -> ProjectConfig | None:
        return self._projects.get(project_id)

    def upsert(self, config: ProjectConfig) -> None:
        if not config.owner or not config.repo:
            raise ProjectConfigError("Project owner and repo are required.")
        self._projects[config.project_id] = config
        if self._active is None:
            self._active = config.project_id
        self.save()

    def list_projects(self) -> list[ProjectConfig]:
        return [self._projects[pid] for pid in sorted(self._projects)]


def resolve_token(
    token: str | None,
    environ: Mapping[str, str] | None = None,
) -> str | None:
    """Resolve a literal token or an ``env:VAR`` reference."""

    if not token:
        return None
    env = os.environ if environ is None else environ
    if token.startswith(ENV_TOKEN_PREFIX):
        return env.get(token[len(ENV_TOKEN_PREFIX) :]) or None
    return token


@dataclass(slots=True, frozen=True)
class ProjectPaths:
    """On-disk layout for one project's artifacts and metadata."""

    root: Path
    triage: Path
    debug: Path
    metadata_file: Path

    @classmethod
    def for_root(cls, root: Path) -> ProjectPaths:
        return cls(
            root=root,
            triage=root / "triage",
            debug=root / "debug",
            metadata_file=root / ".triage-metadata.json",
        )


@dataclass(slots=True, frozen=True)
class ProjectContext:
    """Resolved project identity, credentials and paths.

    Built once at process start by :meth:`resolve` and handed to the queue,
    triager and reconciler instead of each of them reading global config.
    """

    owner: str
    repo: str
    token: str
    code_path: Path
    paths: ProjectPaths

    @property
    def repo_slug(self) -> str:
        return f"{self.owner}/{self.repo}"

    @classmethod
    def resolve(  # noqa: PLR0913
        cls,
        *,
        config_store: ProjectConfigStore,
        data_root: Path,
        owner: str | None = None,
        repo: str | None = None,
        token: str | None = None,
        code_path: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> ProjectContext:
        """Merge explicit options, the active registered project and environment."""

        env = os.environ if environ is None else environ
        if not (owner and repo and token and code_path):
            project_id = config_store.active_project
            if owner and repo:
                project_id = f"{owner}/{repo}"
            registered = config_store.get(project_id) if project_id else None
            if registered is not None:
                owner = owner or registered.owner
                repo = repo or registered.repo
                token = token or registered.token
                code_path = code_path or registered.code_path

        if not owner or not repo:
            raise ProjectConfigError(
                "No project selected. Pass --owner/--repo or run: "
                "issue-triage project add --owner OWNER --repo REPO",
            )

        registered = config_store.get(f"{owner}/{repo}")
        root = (
            Path(registered.data_dir).expanduser()
            if registered is not None and registered.data_dir
            else data_root / owner / repo
        )

        resolved_token = resolve_token(token, env) or resolve_token(env.get("GITHUB_TOKEN"), env)
        if not resolved_token:
            raise ProjectConfigError(
                "GitHub token not found. Set a token in the project config, "
                "pass --token or set GITHUB_TOKEN.",
            )

        return cls(
            owner=owner,
            repo=repo,
            token=resolved_token,
            code_path=Path(code_path or Path.cwd()).expanduser().resolve(),
            paths=ProjectPaths.for_root(root),
        )

    def ensure_dirs(self) -> None:
        for directory in (self.paths.root, self.paths.triage, self.paths.debug):
            directory.mkdir(parents=True, exist_ok=True)

    def migrate_legacy_if_needed(self, legacy_dir: Path) -> bool:
        """Move a pre-project ``results/`` layout into this project's paths.

        Only runs when the destination holds no metadata and no artifacts.
        """

        if not legacy_dir.is_dir():
            return False
        destination_empty = not self.paths.metadata_file.exists() and (
            not self.paths.triage.exists() or not any(self.paths.triage.iterdir())
        )
        if not destination_empty:
            return False

        self.ensure_dirs()
        legacy_metadata = legacy_dir / ".triage-metadata.json"
        if legacy_metadata.exists():
            shutil.move(str(legacy_metadata), str(self.paths.metadata_file))

        moved_artifacts = moved_debug = 0
        for entry in sorted(legacy_dir.iterdir()):
            if _LEGACY_ARTIFACT_RE.match(entry.name):
                shutil.move(str(entry), str(self.paths.triage / entry.name))
                moved_artifacts += 1
            elif _LEGACY_DEBUG_RE.match(entry.name):
                shutil.move(str(entry), str(self.paths.debug / entry.name))
                moved_debug += 1
        logger.info(
            "Migrated legacy results from %s: artifacts=%d debug=%d",
            legacy_dir,
            moved_artifacts,
            moved_debug,
        )
        return True
