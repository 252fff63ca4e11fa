from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from aip.memory.schema import ImplementationRequest, ProjectContext  # noqa: E402
from aip.models.agent_client import AgentClient  # noqa: E402


def run_git(cwd: Path, *args: str) -> str:
    process = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return process.stdout.strip()


@dataclass(slots=True)
class RemoteRepo:
    """A bare ``origin`` seeded with one commit on ``main``."""

    origin: Path
    seed: Path

    @property
    def url(self) -> str:
        return str(self.origin)

    def branches(self) -> List[str]:
        output = run_git(self.origin, "for-each-ref", "--format=%(refname:short)", "refs/heads")
        return [line for line in output.splitlines() if line]

    def subject(self, ref: str) -> str:
        return run_git(self.origin, "log", "-1", "--format=%s", ref)

    def message(self, ref: str) -> str:
        return run_git(self.origin, "log", "-1", "--format=%B", ref)


@pytest.fixture()
def remote_repo(tmp_path: Path) -> RemoteRepo:
    seed = tmp_path / "seed"
    seed.mkdir()
    run_git(seed, "init")
    run_git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(seed, "config", "user.email", "seed@example.com")
    run_git(seed, "config", "user.name", "Seed Author")
    (seed / "README.md").write_text("# Demo\n\nSample project.\n", encoding="utf-8")
    (seed / "app.js").write_text("module.exports = () => 'demo';\n", encoding="utf-8")
    run_git(seed, "add", "--all")
    run_git(seed, "commit", "-m", "Initial commit")

    origin = tmp_path / "origin.git"
    run_git(tmp_path, "clone", "--bare", str(seed), str(origin))
    return RemoteRepo(origin=origin, seed=seed)


class ScriptedAgent(AgentClient):
    """In-process agent that writes files and/or returns canned output."""

    def __init__(self, output: str = "", *, files: dict[str, str] | None = None, error: Exception | None = None) -> None:
        super().__init__()
        self.output = output
        self.files = dict(files or {})
        self.error = error
        self.prompts: List[str] = []
        self.cwds: List[Path] = []

    def _raw_invoke(self, prompt: str, cwd: Path, timeout: float) -> str:
        self.prompts.append(prompt)
        self.cwds.append(cwd)
        for name, content in self.files.items():
            target = cwd / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        if self.error is not None:
            raise self.error
        return self.output


@pytest.fixture()
def sample_request() -> ImplementationRequest:
    return ImplementationRequest(
        id="rec-1",
        title="Add input validation",
        description="Validate user input before processing.",
        category="Security",
        difficulty="Intermediate",
        priority="High",
    )


@pytest.fixture()
def sample_context(remote_repo: RemoteRepo) -> ProjectContext:
    return ProjectContext(
        repo_url=remote_repo.url,
        project_name="Demo Project",
        tech_stack=["JavaScript", "Node.js"],
    )


@pytest.fixture()
def scripted_agent() -> type[ScriptedAgent]:
    return ScriptedAgent
