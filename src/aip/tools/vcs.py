"""Minimal git helpers
The helpers below provide just enough structure to clone and refresh a
workspace, juggle implementation branches, list pending changes, and record
commits.  Every command runs with an argument list and an explicit ``cwd``.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Sequence, Set

import os
import shutil
import subprocess

DEFAULT_GIT_TIMEOUT = 120.0


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""

    def __init__(self, message: str, *, stderr: str = "", returncode: int | None = None) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


@dataclass(slots=True)
class DiffStats:
    """Line counts reported by ``git diff --numstat``."""

    files: int = 0
    added: int = 0
    removed: int = 0


def _git_env(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    env = os.environ.copy()
    # Never block on an interactive credential prompt.
    env["GIT_TERMINAL_PROMPT"] = "0"
    if extra:
        env.update(extra)
    return env


def _run(
    args: Sequence[str],
    *,
    cwd: Path,
    check: bool = True,
    timeout: float | None = DEFAULT_GIT_TIMEOUT,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
            timeout=timeout,
            env=_git_env(env),
        )
    except subprocess.TimeoutExpired as error:
        raise GitError(f"git {' '.join(args)} timed out after {timeout}s") from error
    except FileNotFoundError as error:
        raise GitError("git executable not found") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(
            f"git {' '.join(args)} failed: {message}",
            stderr=result.stderr,
            returncode=result.returncode,
        )
    return result


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str, *, timeout: float | None = DEFAULT_GIT_TIMEOUT) -> None:
        self.root = Path(root).resolve()
        self.timeout = timeout
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def clone(
        cls,
        url: str,
        destination: Path | str,
        *,
        timeout: float | None = DEFAULT_GIT_TIMEOUT,
    ) -> "GitRepository":
        """Clone ``url`` into ``destination`` and return the wrapped repository."""

        target = Path(destination).resolve()
        target.parent.mkdir(parents=True, exist_ok=True)
        _run(["clone", "--", url, str(target)], cwd=target.parent, timeout=timeout)
        return cls(target, timeout=timeout)

    @classmethod
    def initialise(cls, root: Path | str) -> "GitRepository":
        """Initialise a new git repository at ``root`` with an initial commit."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        git_dir = path / ".git"
        if git_dir.exists():
            shutil.rmtree(git_dir)

        _run(["init"], cwd=path)

        def _ensure_config(key: str, value: str) -> None:
            probe = _run(["config", "--get", key], cwd=path, check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                _run(["config", key, value], cwd=path)

        _ensure_config("user.email", "bot@example.com")
        _ensure_config("user.name", "AI Implementation Bot")

        _run(["add", "."], cwd=path)
        _run(["commit", "--allow-empty", "-m", "Initial commit"], cwd=path)

        return cls(path)

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return _run(args, cwd=self.root, check=check, timeout=timeout or self.timeout)

    def git(self, *args: str, check: bool = True, timeout: float | None = None) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check, timeout=timeout)

    def ensure_identity(self, name: str, email: str) -> None:
        """Configure a commit identity when the repository has none."""

        for key, value in (("user.name", name), ("user.email", email)):
            probe = self._run_git(["config", "--get", key], check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                self._run_git(["config", key, value])

    def exclude(self, pattern: str) -> None:
        """Add ``pattern`` to ``.git/info/exclude`` if it is not listed yet."""

        exclude_path = self.root / ".git" / "info" / "exclude"
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude_path.read_text(encoding="utf-8") if exclude_path.exists() else ""
        if pattern in existing.splitlines():
            return
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with exclude_path.open("a", encoding="utf-8") as handle:
            handle.write(f"{prefix}{pattern}\n")

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def branch_exists(self, branch: str) -> bool:
        result = self._run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
        return result.returncode == 0

    def create_branch(self, branch: str) -> None:
        """Create ``branch`` from the current ``HEAD`` and check it out."""

        self._run_git(["checkout", "-b", branch])

    def checkout(self, branch: str) -> None:
        self._run_git(["checkout", branch])

    def pull(self, remote: str, branch: str) -> None:
        self._run_git(["pull", "--ff-only", remote, branch])

    def recent_commits(self, ref: str, limit: int = 5) -> List[str]:
        result = self._run_git(["log", ref, "--oneline", f"-{limit}"])
        return [line for line in result.stdout.splitlines() if line.strip()]

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain", "--untracked-files=all"], check=True)
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path.strip().strip('"'))))
        return entries

    def status_entries(self) -> List[tuple[str, Path]]:
        """Return raw porcelain status entries as ``(status, path)`` pairs."""

        return self._status_entries()

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        paths: Set[Path] = set()
        for status, path in self._status_entries():
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def has_changes(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when there are working tree changes."""

        return bool(self.working_tree_changes(include_untracked=include_untracked))

    def discard_changes(self) -> None:
        """Drop tracked modifications and untracked files (ignored files are kept)."""

        self._run_git(["reset", "--hard", "--quiet"])
        self._run_git(["clean", "-fd", "--quiet"])

    # ----------------------------------------------------------- diff helpers
    def head(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def diff_stats(self, base: str, target: str = "HEAD") -> DiffStats:
        """Summarise ``git diff --numstat base target`` (binary files count as changed)."""

        result = self._run_git(["diff", "--numstat", base, target])
        stats = DiffStats()
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 3:
                continue
            stats.files += 1
            if parts[0].isdigit():
                stats.added += int(parts[0])
            if parts[1].isdigit():
                stats.removed += int(parts[1])
        return stats

    # -------------------------------------------------------------- remotes
    def push(
        self,
        remote: str,
        branch: str,
        *,
        set_upstream: bool = False,
        timeout: float | None = None,
    ) -> None:
        """Push ``branch`` to ``remote`` applying requested flags."""

        args: List[str] = ["push"]
        if set_upstream:
            args.append("-u")
        args.extend([remote, branch])
        self._run_git(args, check=True, timeout=timeout)

    def commit_all(self, message: str, *, allow_empty: bool = False) -> str | None:
        """Add all changes to the index and create a commit.

        Returns the new commit SHA when a commit was created.  Returns ``None`` when
        there were no changes to commit (and ``allow_empty`` is ``False``).
        """

        self._run_git(["add", "--all"], check=True)

        commit_args: List[str] = ["commit", "-m", message]
        if allow_empty:
            commit_args.append("--allow-empty")

        commit = self._run_git(commit_args, check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}", stderr=commit.stderr, returncode=commit.returncode)

        return self.head()


__all__ = ["DEFAULT_GIT_TIMEOUT", "DiffStats", "GitError", "GitRepository"]
