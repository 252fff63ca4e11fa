"""Commit, push and pull-request helpers.

Push and pull-request failures are reported through result objects instead of
exceptions so an implementation that already committed locally is never
rolled back by a publishing problem.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from aip.memory.schema import ImplementationRequest
from .vcs import DEFAULT_GIT_TIMEOUT, DiffStats, GitError, GitRepository

LOGGER = logging.getLogger(__name__)

GENERATOR_NAME = "AI Implementation Pipeline"
PERMISSION_DENIED = "permission denied"

_PERMISSION_MARKERS = ("permission", "access_denied", "access denied", "403")
_PR_NUMBER = re.compile(r"/pull/(\d+)")


def is_permission_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _PERMISSION_MARKERS)


def build_commit_message(
    request: ImplementationRequest,
    branch: str,
    *,
    generator: str = GENERATOR_NAME,
) -> str:
    return (
        f"AI Implementation: {request.title}\n\n"
        f"{request.description}\n\n"
        f"Category: {request.category}\n"
        f"Priority: {request.priority}\n"
        f"Generated by: {generator}\n"
        f"Branch: {branch}"
    )


def build_fallback_commit_message(request: ImplementationRequest, branch: str) -> str:
    return (
        f"Fallback Implementation: {request.title}\n\n"
        f"{request.description}\n\n"
        "Scaffold created because automated implementation produced no changes.\n"
        "Manual completion is required.\n\n"
        f"Category: {request.category}\n"
        f"Generated by: {GENERATOR_NAME} (fallback)\n"
        f"Branch: {branch}"
    )


def build_pull_request_body(request: ImplementationRequest, branch: str, *, validation: Dict[str, Any] | None = None) -> str:
    lines = [
        "## Automated Code Implementation",
        "",
        f"**Description**: {request.description}",
        "",
        f"**Category**: {request.category}",
        f"**Priority**: {request.priority}",
        "",
        f"**Generated by**: {GENERATOR_NAME}",
        f"**Branch**: {branch}",
    ]
    steps = (validation or {}).get("steps") or []
    if steps:
        lines.extend(["", "### Validation"])
        for step in steps:
            lines.append(f"- {step.get('name')}: {step.get('status')}")
    lines.extend(["", "This PR was generated automatically and needs human review."])
    return "\n".join(lines)


@dataclass(slots=True)
class PushResult:
    success: bool
    branch: str
    error: str | None = None
    permission_denied: bool = False
    local_branch: str | None = None


@dataclass(slots=True)
class PullRequestResult:
    success: bool
    branch_name: str
    url: str | None = None
    number: int | None = None
    error: str | None = None
    message: str | None = None
    local_branch: str | None = None
    pushed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "branch_name": self.branch_name,
            "url": self.url,
            "number": self.number,
            "error": self.error,
            "message": self.message,
            "local_branch": self.local_branch,
            "pushed": self.pushed,
        }


class CodeHostError(RuntimeError):
    """Raised when the code host rejects or cannot create a pull request."""


class CodeHost(Protocol):
    def create_pr(self, title: str, body: str, base: str, head: str, *, cwd: Path) -> Dict[str, Any]:
        ...


class GhCodeHost:
    """Creates pull requests with the GitHub CLI."""

    def __init__(self, executable: str = "gh", *, timeout: float = 60.0) -> None:
        self.executable = executable
        self.timeout = timeout

    def create_pr(self, title: str, body: str, base: str, head: str, *, cwd: Path) -> Dict[str, Any]:
        command = [
            self.executable,
            "pr",
            "create",
            "--title",
            title,
            "--body",
            body,
            "--base",
            base,
            "--head",
            head,
        ]
        try:
            process = subprocess.run(
                command,
                cwd=cwd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as error:
            raise CodeHostError(f"{self.executable} not available") from error
        except subprocess.TimeoutExpired as error:
            raise CodeHostError(f"{self.executable} timed out after {self.timeout}s") from error
        except OSError as error:
            raise CodeHostError(f"{self.executable} could not be started: {error}") from error
        if process.returncode != 0:
            raise CodeHostError(process.stderr.strip() or process.stdout.strip() or "pull request creation failed")
        url = process.stdout.strip().splitlines()[-1] if process.stdout.strip() else ""
        match = _PR_NUMBER.search(url)
        return {"url": url or None, "number": int(match.group(1)) if match else None}


class GitOperator:
    """Commits implementation work and publishes it to the remote."""

    def __init__(
        self,
        *,
        remote: str = "origin",
        base_branch: str = "main",
        code_host: Optional[CodeHost] = None,
        push_timeout: float = DEFAULT_GIT_TIMEOUT,
        author_name: str | None = None,
        author_email: str | None = None,
    ) -> None:
        self.remote = remote
        self.base_branch = base_branch
        self.code_host = code_host if code_host is not None else GhCodeHost()
        self.push_timeout = push_timeout
        self.author_name = author_name
        self.author_email = author_email

    def _repo(self, workspace: Path | str) -> GitRepository:
        repo = GitRepository(workspace)
        if self.author_name and self.author_email:
            repo.ensure_identity(self.author_name, self.author_email)
        return repo

    def commit(self, workspace: Path | str, message: str) -> str | None:
        """Stage everything and commit; return the new SHA or ``None`` when clean."""
        sha = self._repo(workspace).commit_all(message)
        if sha:
            LOGGER.info("Committed %s", sha[:12])
        return sha

    def push(self, workspace: Path | str, branch: str) -> PushResult:
        repo = self._repo(workspace)
        try:
            repo.push(self.remote, branch, set_upstream=True, timeout=self.push_timeout)
        except GitError as error:
            detail = f"{error} {error.stderr}"
            if is_permission_error(detail):
                LOGGER.warning("Push of %s rejected for lack of permission: %s", branch, error)
                return PushResult(
                    success=False,
                    branch=branch,
                    error=PERMISSION_DENIED,
                    permission_denied=True,
                    local_branch=branch,
                )
            LOGGER.warning("Push of %s failed: %s", branch, error)
            return PushResult(success=False, branch=branch, error=str(error), local_branch=branch)
        LOGGER.info("Branch %s pushed to %s", branch, self.remote)
        return PushResult(success=True, branch=branch)

    def create_pull_request(
        self,
        workspace: Path | str,
        branch: str,
        request: ImplementationRequest,
        *,
        base: str | None = None,
        validation: Dict[str, Any] | None = None,
    ) -> PullRequestResult:
        """Push ``branch`` and open a pull request for it."""

        pushed = self.push(workspace, branch)
        if not pushed.success:
            if pushed.permission_denied:
                return PullRequestResult(
                    success=False,
                    branch_name=branch,
                    error=PERMISSION_DENIED,
                    message="Implementation completed locally but cannot push due to repository permissions",
                    local_branch=branch,
                )
            return PullRequestResult(
                success=False,
                branch_name=branch,
                error=pushed.error,
                message="Implementation completed but PR creation failed",
                local_branch=branch,
            )

        title = f"[AI Implementation] {request.title}"
        body = build_pull_request_body(request, branch, validation=validation)
        try:
            created = self.code_host.create_pr(title, body, base or self.base_branch, branch, cwd=Path(workspace))
        except CodeHostError as error:
            LOGGER.warning("Pull request creation skipped: %s", error)
            return PullRequestResult(
                success=False,
                branch_name=branch,
                error=str(error),
                message="Branch pushed but PR creation failed",
                pushed=True,
            )
        LOGGER.info("Pull request created: %s", created.get("url"))
        return PullRequestResult(
            success=True,
            branch_name=branch,
            url=created.get("url"),
            number=created.get("number"),
            pushed=True,
        )

    def branch_status(self, workspace: Path | str, branch: str, *, limit: int = 5) -> Dict[str, Any]:
        repo = GitRepository(workspace)
        if not repo.branch_exists(branch):
            return {"branch": branch, "status": "not_found", "commits": []}
        return {
            "branch": branch,
            "status": "exists",
            "commits": repo.recent_commits(branch, limit),
        }

    def diff_stats(self, workspace: Path | str, target: str = "HEAD") -> DiffStats:
        """Line counts for the commit at ``target`` relative to its parent."""
        repo = GitRepository(workspace)
        parent = repo.git("rev-parse", "--verify", f"{target}~1", check=False)
        if parent.returncode != 0:
            return DiffStats()
        return repo.diff_stats(parent.stdout.strip(), target)

    def changed_paths(self, workspace: Path | str) -> List[str]:
        return [path.as_posix() for path in GitRepository(workspace).working_tree_changes()]


__all__ = [
    "CodeHost",
    "CodeHostError",
    "GENERATOR_NAME",
    "GhCodeHost",
    "GitOperator",
    "PERMISSION_DENIED",
    "PullRequestResult",
    "PushResult",
    "build_commit_message",
    "build_fallback_commit_message",
    "build_pull_request_body",
    "is_permission_error",
]
