"""Typed pipeline settings resolved from ``config.yaml`` and the environment."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, List, Mapping, Optional

from aip.models.agent_client import DEFAULT_AGENT_TIMEOUT, DEFAULT_MAX_OUTPUT_BYTES
from aip.tools.deploy import DEFAULT_CACHE_TTL, VERCEL_API_URL
from aip.tools.validation import DEFAULT_LINT_TIMEOUT, DEFAULT_LONG_TEST_TIMEOUT, DEFAULT_TEST_TIMEOUT
from aip.tools.vcs import DEFAULT_GIT_TIMEOUT

DEFAULT_WORKSPACE_ROOT = "/tmp/aip-workspace"


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    return value if isinstance(value, Mapping) else {}


def _positive_float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)) and value > 0:
        return float(value)
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _text(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _command(value: Any, default: List[str]) -> List[str]:
    if isinstance(value, str) and value.strip():
        return shlex.split(value)
    if isinstance(value, (list, tuple)) and value:
        return [str(part) for part in value]
    return list(default)


@dataclass(slots=True)
class WorkspaceSettings:
    root: Path = Path(DEFAULT_WORKSPACE_ROOT)
    default_branch: str = "main"
    remote: str = "origin"


@dataclass(slots=True)
class AgentSettings:
    command: List[str] = field(default_factory=lambda: ["gemini"])
    prompt_flag: Optional[str] = "-p"
    timeout: float = DEFAULT_AGENT_TIMEOUT
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    context_dir: str = ".agent"


@dataclass(slots=True)
class ValidationSettings:
    enabled: bool = True
    lint_timeout: float = DEFAULT_LINT_TIMEOUT
    test_timeout: float = DEFAULT_TEST_TIMEOUT
    long_test_timeout: float = DEFAULT_LONG_TEST_TIMEOUT


@dataclass(slots=True)
class GitSettings:
    pr_tool: Optional[str] = "gh"
    push_timeout: float = DEFAULT_GIT_TIMEOUT
    author_name: str = "AI Implementation Bot"
    author_email: str = "bot@example.com"


@dataclass(slots=True)
class DeploymentSettings:
    enabled: bool = False
    provider: str = "vercel"
    ttl_seconds: float = DEFAULT_CACHE_TTL
    persisted_max_age_seconds: Optional[float] = None
    api_url: str = VERCEL_API_URL
    token: Optional[str] = None

    @property
    def persisted_max_age(self) -> timedelta | None:
        if self.persisted_max_age_seconds is None:
            return None
        return timedelta(seconds=self.persisted_max_age_seconds)


@dataclass(slots=True)
class PipelineSettings:
    """Resolved configuration for one pipeline process."""

    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    git: GitSettings = field(default_factory=GitSettings)
    deployment: DeploymentSettings = field(default_factory=DeploymentSettings)
    db_path: Path = Path("data/aip.sqlite")

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any] | None = None,
        *,
        env: Mapping[str, str] | None = None,
        base_dir: Path | None = None,
    ) -> "PipelineSettings":
        """Build settings from a parsed config mapping, applying ``AIP_*`` overrides."""

        config = config or {}
        environ = os.environ if env is None else env

        workspace_cfg = _section(config, "workspace")
        workspace_root = environ.get("AIP_WORKSPACE") or _text(workspace_cfg.get("root"), DEFAULT_WORKSPACE_ROOT)
        workspace = WorkspaceSettings(
            root=Path(workspace_root).expanduser(),
            default_branch=_text(workspace_cfg.get("default_branch"), "main"),
            remote=_text(workspace_cfg.get("remote"), "origin"),
        )

        agent_cfg = _section(config, "agent")
        command = _command(agent_cfg.get("command"), ["gemini"])
        if environ.get("AIP_AGENT_CMD"):
            command = shlex.split(environ["AIP_AGENT_CMD"])
        timeout = _positive_float(agent_cfg.get("timeout"), DEFAULT_AGENT_TIMEOUT)
        if environ.get("AIP_AGENT_TIMEOUT"):
            timeout = _positive_float(environ["AIP_AGENT_TIMEOUT"], timeout)
        prompt_flag = agent_cfg.get("prompt_flag", "-p")
        agent = AgentSettings(
            command=command,
            prompt_flag=str(prompt_flag) if prompt_flag else None,
            timeout=timeout,
            max_output_bytes=int(_positive_float(agent_cfg.get("max_output_bytes"), DEFAULT_MAX_OUTPUT_BYTES)),
            context_dir=_text(agent_cfg.get("context_dir"), ".agent"),
        )

        validation_cfg = _section(config, "validation")
        validation = ValidationSettings(
            enabled=bool(validation_cfg.get("enabled", True)),
            lint_timeout=_positive_float(validation_cfg.get("lint_timeout"), DEFAULT_LINT_TIMEOUT),
            test_timeout=_positive_float(validation_cfg.get("test_timeout"), DEFAULT_TEST_TIMEOUT),
            long_test_timeout=_positive_float(validation_cfg.get("long_test_timeout"), DEFAULT_LONG_TEST_TIMEOUT),
        )

        git_cfg = _section(config, "git")
        pr_tool = git_cfg.get("pr_tool", "gh")
        git = GitSettings(
            pr_tool=str(pr_tool) if pr_tool else None,
            push_timeout=_positive_float(git_cfg.get("push_timeout"), DEFAULT_GIT_TIMEOUT),
            author_name=_text(git_cfg.get("author_name"), "AI Implementation Bot"),
            author_email=_text(git_cfg.get("author_email"), "bot@example.com"),
        )

        deployment_cfg = _section(config, "deployment")
        max_age: Optional[float] = None
        if deployment_cfg.get("persisted_max_age_seconds") is not None:
            max_age = _positive_float(deployment_cfg["persisted_max_age_seconds"], 0.0) or None
        deployment = DeploymentSettings(
            enabled=bool(deployment_cfg.get("enabled", False)),
            provider=_text(deployment_cfg.get("provider"), "vercel"),
            ttl_seconds=_positive_float(deployment_cfg.get("ttl_seconds"), DEFAULT_CACHE_TTL),
            persisted_max_age_seconds=max_age,
            api_url=_text(deployment_cfg.get("api_url"), VERCEL_API_URL),
            token=environ.get("VERCEL_TOKEN") or None,
        )

        paths_cfg = _section(config, "paths")
        db_path = Path(_text(paths_cfg.get("db_path"), "data/aip.sqlite"))
        if base_dir is not None and not db_path.is_absolute():
            db_path = base_dir / db_path

        return cls(
            workspace=workspace,
            agent=agent,
            validation=validation,
            git=git,
            deployment=deployment,
            db_path=db_path,
        )


__all__ = [
    "AgentSettings",
    "DEFAULT_WORKSPACE_ROOT",
    "DeploymentSettings",
    "GitSettings",
    "PipelineSettings",
    "ValidationSettings",
    "WorkspaceSettings",
]
