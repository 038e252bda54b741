"""Project discovery and deterministic resource naming.

Every engine resource name is a pure function of the project identity, the
session and the role or path it serves. Nothing here talks to the engine.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from iso_env.config import DESCRIPTOR_DIR
from iso_env.errors import ConfigurationError
from iso_env.types import DEFAULT_SESSION, Project

logger = logging.getLogger(__name__)


def sanitize_path(path: str) -> str:
    """Turn a container path into a name fragment: "/a/b/" -> "a-b"."""
    return path.strip("/").replace("/", "-")


def find_project_root(start: Path) -> Path:
    """Walk upward from start to the nearest directory holding the descriptor dir.

    Raises:
        ConfigurationError: If no ancestor holds a descriptor directory.
    """
    current = start.resolve()
    while True:
        if (current / DESCRIPTOR_DIR).is_dir():
            return current
        if current.parent == current:
            break
        current = current.parent

    raise ConfigurationError(
        f"No {DESCRIPTOR_DIR}/ directory found in {start} or any parent directory. "
        f"Create {DESCRIPTOR_DIR}/Dockerfile in your project root."
    )


def _git(root: Path, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", "-C", str(root), "rev-parse", *args],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        logger.debug(f"git unavailable: {e}")
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def detect_git_worktree(root: Path) -> tuple[str, str]:
    """Return (base_name, worktree_name) for a project root.

    In a linked git worktree the base name is the directory holding the shared
    .git directory; everywhere else both names are the root's directory name.
    """
    worktree_name = root.name
    base_name = worktree_name

    common_dir = _git(root, "--git-common-dir")
    git_dir = _git(root, "--git-dir")
    if common_dir is None or git_dir is None:
        return base_name, worktree_name

    common_path = Path(os.path.normpath(root / common_dir))
    git_path = Path(os.path.normpath(root / git_dir))
    if common_path != git_path and common_path.name == ".git":
        base_name = common_path.parent.name
        logger.debug(f"Detected git worktree {worktree_name} of {base_name}")

    return base_name, worktree_name


def resolve_project(cwd: Path) -> Project:
    """Find the project enclosing cwd and compute its naming scopes."""
    root = find_project_root(cwd)
    base_name, worktree_name = detect_git_worktree(root)
    return Project(root=root, base_name=base_name, worktree_name=worktree_name)


@dataclass(frozen=True)
class ResourceNames:
    """Names of every resource a (project, session) pair owns.

    The default session uses the short forms without a session segment.
    """

    base: str
    worktree: str
    session: str = DEFAULT_SESSION

    @classmethod
    def for_project(cls, project: Project, session: str = DEFAULT_SESSION) -> ResourceNames:
        return cls(base=project.base_name, worktree=project.worktree_name, session=session)

    @property
    def scope(self) -> str:
        if self.session == DEFAULT_SESSION:
            return self.worktree
        return f"{self.worktree}-{self.session}"

    @property
    def image(self) -> str:
        return f"{self.worktree}-shell"

    @property
    def shell_container(self) -> str:
        return f"{self.scope}-shell"

    @property
    def session_network(self) -> str:
        return f"{self.scope}-network"

    def session_volume(self, path: str) -> str:
        return f"{self.scope}-{sanitize_path(path)}"

    def cache_volume(self, path: str) -> str:
        return f"{self.base}-cache-{sanitize_path(path)}"

    def service_container(self, service: str) -> str:
        return f"{self.scope}_{service}"

    def fresh_service_container(self, service: str, run_id: str) -> str:
        return f"{self.service_container(service)}-fresh-{run_id}"

    def peer_container(self, peer: str) -> str:
        return f"{self.worktree}-iso-peer-{peer}"

    def peers_network(self, override: str | None = None) -> str:
        return override or f"{self.worktree}-iso-peers"

    def session_prefix(self) -> str:
        """Prefix shared by every session-scoped volume and network."""
        return f"{self.scope}-"

    def ephemeral_prefixes(self) -> tuple[str, ...]:
        return (f"{self.worktree}-eph-", f"{self.worktree}-ephemeral-")
