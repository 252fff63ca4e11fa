from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import pytest

from aip.models.agent_client import (
    AgentError,
    AgentRun,
    AgentTimeout,
    AgentUnavailable,
    CLIAgentClient,
    branch_name_for,
    branch_segment,
)


def _python_agent(script: str, **kwargs) -> CLIAgentClient:
    return CLIAgentClient([sys.executable, "-c", script], prompt_flag=None, **kwargs)


def test_build_command_appends_flag_and_prompt() -> None:
    client = CLIAgentClient("gemini --yolo")

    assert client.build_command("do it") == ["gemini", "--yolo", "-p", "do it"]


def test_empty_command_is_rejected() -> None:
    with pytest.raises(ValueError):
        CLIAgentClient([])


def test_invoke_returns_stdout(tmp_path: Path) -> None:
    client = _python_agent("import os, sys; print(sys.argv[1] + ' @ ' + os.path.basename(os.getcwd()))")

    output = client.invoke("hello", tmp_path, timeout=30)

    assert output.strip() == f"hello @ {tmp_path.name}"


def test_nonzero_exit_raises_agent_error(tmp_path: Path) -> None:
    client = _python_agent("import sys; sys.stderr.write('bad credentials'); sys.exit(3)")

    with pytest.raises(AgentError) as info:
        client.invoke("x", tmp_path, timeout=30)

    assert info.value.returncode == 3
    assert "bad credentials" in info.value.stderr
    assert not isinstance(info.value, AgentTimeout)


def test_timeout_carries_partial_output(tmp_path: Path) -> None:
    client = _python_agent("import time; print('partial', flush=True); time.sleep(30)")

    with pytest.raises(AgentTimeout) as info:
        client.invoke("x", tmp_path, timeout=1)

    assert info.value.timeout == 1
    assert "partial" in info.value.partial_output


def test_missing_executable_raises_unavailable(tmp_path: Path) -> None:
    client = CLIAgentClient(["definitely-not-an-agent-binary"])

    with pytest.raises(AgentUnavailable):
        client.invoke("x", tmp_path, timeout=5)


def test_output_is_bounded(tmp_path: Path) -> None:
    client = _python_agent("print('x' * 100)", max_output_bytes=10)

    assert client.invoke("x", tmp_path, timeout=30) == "x" * 10


def test_max_output_must_be_positive() -> None:
    with pytest.raises(ValueError):
        CLIAgentClient(max_output_bytes=0)


def test_run_summary_truncates() -> None:
    run = AgentRun(output="a" * 600)

    assert run.summary() == "a" * 500 + "..."
    assert AgentRun(output="short").summary() == "short"


def test_branch_name_for_sanitises_identifier() -> None:
    assert branch_name_for("rec-1", 1700000000000) == "ai-implementation-rec-1-1700000000000"
    assert branch_name_for("fix auth flow", 5, prefix="fallback-implementation") == "fallback-implementation-fix-auth-flow-5"


@pytest.mark.parametrize(
    ("identifier", "segment"),
    [
        ("v1..2", "v1.2"),
        ("release.lock", "release"),
        ("...", "item"),
        (".hidden.", "hidden"),
        ("fix auth flow", "fix-auth-flow"),
    ],
)
def test_branch_segment_produces_valid_ref_components(identifier: str, segment: str) -> None:
    assert branch_segment(identifier) == segment

    branch = branch_name_for(identifier, 1700000000000)
    check = subprocess.run(["git", "check-ref-format", "--branch", branch], capture_output=True, text=True, check=False)
    assert check.returncode == 0, check.stderr
