"""Workspace provisioning for target repositories.

Each project gets one directory under the workspace root holding a single git
checkout.  Callers serialise all work on a project directory through
:meth:`WorkspaceManager.lock`, which is re-entrant so an orchestrator can hold
it across a whole batch while helpers acquire it again.
"""

from __future__ import annotations

import logging
import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator

from aip.utils.slug import slugify
from .vcs import DEFAULT_GIT_TIMEOUT, GitError, GitRepository

LOGGER = logging.getLogger(__name__)


class WorkspaceError(RuntimeError):
    """Raised when a workspace cannot be cloned or refreshed."""


class WorkspaceManager:
    """Materialises and refreshes per-project git working directories."""

    def __init__(
        self,
        root: Path | str,
        *,
        default_branch: str = "main",
        remote: str = "origin",
        git_timeout: float = DEFAULT_GIT_TIMEOUT,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.default_branch = default_branch
        self.remote = remote
        self.git_timeout = git_timeout
        self._locks: Dict[Path, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def workspace_path(self, project_name: str) -> Path:
        return self.root / slugify(project_name, fallback="project")

    @contextmanager
    def lock(self, project_name: str) -> Iterator[Path]:
        """Hold the mutex guarding ``project_name``'s directory."""
        path = self.workspace_path(project_name)
        with self._locks_guard:
            mutex = self._locks.setdefault(path, threading.RLock())
        with mutex:
            yield path

    def repository(self, project_name: str) -> GitRepository:
        try:
            return GitRepository(self.workspace_path(project_name), timeout=self.git_timeout)
        except GitError as error:
            raise WorkspaceError(str(error)) from error

    def base_branch(self, repo: GitRepository) -> str:
        """Return the branch new work starts from."""
        if repo.branch_exists(self.default_branch):
            return self.default_branch
        probe = repo.git("symbolic-ref", "--short", f"refs/remotes/{self.remote}/HEAD", check=False)
        remote_head = probe.stdout.strip()
        if probe.returncode == 0 and remote_head.startswith(f"{self.remote}/"):
            return remote_head.split("/", 1)[1]
        current = repo.current_branch()
        if current is None:
            raise WorkspaceError(f"Unable to determine base branch for {repo.root}")
        return current

    def ensure_workspace(self, repo_url: str, project_name: str) -> Path:
        """Clone ``repo_url`` or refresh the existing checkout; return its path."""
        with self.lock(project_name) as path:
            if (path / ".git").exists():
                self._refresh(path)
                return path
            if path.exists() and any(path.iterdir()):
                raise WorkspaceError(f"Workspace directory exists but is not a git checkout: {path}")
            LOGGER.info("Cloning %s into %s", repo_url, path)
            try:
                GitRepository.clone(repo_url, path, timeout=self.git_timeout)
            except GitError as error:
                raise WorkspaceError(f"Failed to initialize workspace: {error}") from error
            return path

    def _refresh(self, path: Path) -> None:
        LOGGER.info("Workspace %s exists; pulling latest changes", path)
        try:
            repo = GitRepository(path, timeout=self.git_timeout)
            branch = self.base_branch(repo)
            repo.discard_changes()
            repo.checkout(branch)
            repo.pull(self.remote, branch)
        except GitError as error:
            raise WorkspaceError(f"Failed to refresh workspace: {error}") from error

    def return_to_base(self, project_name: str) -> str:
        """Drop leftovers from a previous item and check out the base branch."""
        with self.lock(project_name):
            repo = self.repository(project_name)
            try:
                repo.discard_changes()
                branch = self.base_branch(repo)
                repo.checkout(branch)
            except GitError as error:
                raise WorkspaceError(f"Failed to reset workspace: {error}") from error
            return branch

    def cleanup(self, project_name: str) -> bool:
        """Remove the project's workspace directory; return whether it existed."""
        with self.lock(project_name) as path:
            if not path.exists():
                return False
            shutil.rmtree(path)
            LOGGER.info("Removed workspace %s", path)
            return True


__all__ = ["WorkspaceError", "WorkspaceManager"]
