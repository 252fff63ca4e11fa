"""Client wrappers for the external code-generation agent."""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from aip.memory.schema import ImplementationRequest, ProjectContext
from aip.prompts import AGENT_IGNORE_TEMPLATE, build_prompt, render_agent_context
from aip.tools.vcs import GitRepository
from aip.utils.slug import slugify

__all__ = [
    "AgentClient",
    "AgentError",
    "AgentInvoker",
    "AgentRun",
    "AgentTimeout",
    "AgentUnavailable",
    "CLIAgentClient",
    "DEFAULT_MAX_OUTPUT_BYTES",
    "branch_name_for",
    "branch_segment",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 20 * 1024 * 1024
DEFAULT_AGENT_TIMEOUT = 120.0
CONTEXT_FILENAME = "AGENT.md"
IGNORE_FILENAME = ".agentignore"


class AgentError(RuntimeError):
    """Raised when the agent process fails."""

    def __init__(self, message: str, *, stderr: str = "", returncode: int | None = None) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class AgentTimeout(AgentError):
    """Raised when the agent exceeds its time budget."""

    def __init__(self, message: str, *, partial_output: str = "", timeout: float | None = None) -> None:
        super().__init__(message)
        self.partial_output = partial_output
        self.timeout = timeout


class AgentUnavailable(AgentError):
    """Raised when the agent executable cannot be located."""


def _decode(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return payload.decode("utf-8", errors="replace")


class AgentClient:
    """Base class for agent integrations.

    Subclasses implement :meth:`_raw_invoke`; the base class bounds the size of
    the returned text.
    """

    def __init__(self, *, max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> None:
        if max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be positive")
        self.max_output_bytes = max_output_bytes

    def invoke(self, prompt: str, cwd: Path, timeout: float) -> str:
        """Run the agent for ``prompt`` inside ``cwd`` and return its text output."""
        output = self._raw_invoke(prompt, Path(cwd), timeout)
        return self._bound(output)

    def _bound(self, output: str) -> str:
        encoded = output.encode("utf-8")
        if len(encoded) <= self.max_output_bytes:
            return output
        LOGGER.warning(
            "Agent output truncated from %d to %d bytes", len(encoded), self.max_output_bytes
        )
        return encoded[: self.max_output_bytes].decode("utf-8", errors="ignore")

    def _raw_invoke(self, prompt: str, cwd: Path, timeout: float) -> str:  # pragma: no cover - abstract
        raise NotImplementedError


class CLIAgentClient(AgentClient):
    """Runs a command-line agent such as ``gemini -p <prompt>``."""

    def __init__(
        self,
        command: Sequence[str] | str = ("gemini",),
        *,
        prompt_flag: str | None = "-p",
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        env: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(max_output_bytes=max_output_bytes)
        parts = shlex.split(command) if isinstance(command, str) else list(command)
        if not parts:
            raise ValueError("Agent command must not be empty")
        self.command = parts
        self.prompt_flag = prompt_flag
        self._env = dict(env) if env else None

    def build_command(self, prompt: str) -> list[str]:
        args = list(self.command)
        if self.prompt_flag:
            args.append(self.prompt_flag)
        args.append(prompt)
        return args

    def _raw_invoke(self, prompt: str, cwd: Path, timeout: float) -> str:
        env = os.environ.copy()
        if self._env:
            env.update(self._env)
        try:
            process = subprocess.run(
                self.build_command(prompt),
                cwd=cwd,
                capture_output=True,
                check=False,
                timeout=timeout,
                env=env,
            )
        except FileNotFoundError as error:
            raise AgentUnavailable(f"Agent executable not found: {self.command[0]}") from error
        except subprocess.TimeoutExpired as error:
            raise AgentTimeout(
                f"Agent timed out after {timeout}s",
                partial_output=self._bound(_decode(error.stdout)),
                timeout=timeout,
            ) from error

        stdout = _decode(process.stdout)
        stderr = _decode(process.stderr)
        if process.returncode != 0:
            detail = stderr.strip() or stdout.strip() or "no output"
            raise AgentError(
                f"Agent exited with status {process.returncode}: {detail[:500]}",
                stderr=stderr,
                returncode=process.returncode,
            )
        return stdout


@dataclass(slots=True)
class AgentRun:
    """Text produced by one agent invocation."""

    output: str
    timed_out: bool = False
    duration_ms: int = 0

    def summary(self, limit: int = 500) -> str:
        if len(self.output) <= limit:
            return self.output
        return self.output[:limit] + "..."


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


_DOT_RUNS = re.compile(r"\.{2,}")


def branch_segment(value: str) -> str:
    """Slug ``value`` into a component that git accepts inside a ref name."""
    segment = _DOT_RUNS.sub(".", slugify(value, fallback="item"))
    while segment.endswith(".lock"):
        segment = segment[: -len(".lock")]
    segment = segment.strip(".-")
    return segment or "item"


def branch_name_for(implementation_id: str, timestamp_ms: int, *, prefix: str = "ai-implementation") -> str:
    return f"{prefix}-{branch_segment(implementation_id)}-{timestamp_ms}"


class AgentInvoker:
    """Prepares a workspace for the agent and runs it under a time budget."""

    def __init__(
        self,
        client: AgentClient,
        *,
        timeout: float = DEFAULT_AGENT_TIMEOUT,
        context_dir: str = ".agent",
        clock_ms: Optional[Callable[[], int]] = None,
    ) -> None:
        self.client = client
        self.timeout = timeout
        self.context_dir = context_dir.strip("/") or ".agent"
        self._clock_ms = clock_ms or _now_ms

    @property
    def context_file(self) -> str:
        return f"{self.context_dir}/{CONTEXT_FILENAME}"

    def create_branch(self, repo: GitRepository, implementation_id: str, *, prefix: str = "ai-implementation") -> str:
        """Create and check out a fresh branch for one attempt."""
        timestamp = self._clock_ms()
        branch = branch_name_for(implementation_id, timestamp, prefix=prefix)
        while repo.branch_exists(branch):
            timestamp += 1
            branch = branch_name_for(implementation_id, timestamp, prefix=prefix)
        repo.create_branch(branch)
        LOGGER.info("Checked out branch %s", branch)
        return branch

    def configure(self, workspace: Path, context: ProjectContext) -> Path:
        """Write the agent context and ignore files into ``workspace``."""
        root = Path(workspace)
        target = root / self.context_dir
        target.mkdir(parents=True, exist_ok=True)
        context_path = target / CONTEXT_FILENAME
        context_path.write_text(render_agent_context(context), encoding="utf-8")
        (target / IGNORE_FILENAME).write_text(AGENT_IGNORE_TEMPLATE, encoding="utf-8")
        GitRepository(root).exclude(f"/{self.context_dir}/")
        LOGGER.debug("Agent context written to %s", context_path)
        return context_path

    def build_prompt(self, request: ImplementationRequest) -> str:
        return build_prompt(request, context_file=self.context_file)

    def invoke(self, workspace: Path, prompt: str, timeout: float | None = None) -> AgentRun:
        """Run the agent in ``workspace``.

        A timeout after the agent already modified the working tree is treated
        as a partial success; a timeout without side effects is re-raised.
        """

        budget = timeout if timeout is not None else self.timeout
        started = self._clock_ms()
        try:
            output = self.client.invoke(prompt, Path(workspace), budget)
        except AgentTimeout as error:
            repo = GitRepository(workspace)
            if not repo.has_changes():
                raise
            LOGGER.warning(
                "Agent timed out after %ss but left %d modified path(s); continuing with partial changes",
                budget,
                len(repo.working_tree_changes()),
            )
            return AgentRun(
                output=error.partial_output,
                timed_out=True,
                duration_ms=self._clock_ms() - started,
            )
        return AgentRun(output=output, duration_ms=self._clock_ms() - started)
