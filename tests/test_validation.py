from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Sequence

import pytest

from aip.tools.validation import (
    CommandOutcome,
    ProjectType,
    ValidationDispatcher,
    detect_project_type,
    validation_plan,
)


class RecordingRunner:
    """Returns canned outcomes keyed by the command's first two words."""

    def __init__(self, outcomes: dict[str, CommandOutcome | Exception]) -> None:
        self.outcomes = outcomes
        self.calls: List[tuple[List[str], float]] = []

    def __call__(self, command: Sequence[str], cwd: Path, timeout: float) -> CommandOutcome:
        self.calls.append((list(command), timeout))
        if "-m" in command:
            key = "-m " + command[list(command).index("-m") + 1]
        else:
            key = " ".join(command[:2])
        outcome = self.outcomes.get(key, CommandOutcome(0, "ok"))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _available(*names: str):
    return lambda executable: f"/usr/bin/{executable}" if executable in names else None


@pytest.mark.parametrize(
    ("marker", "kind", "manager"),
    [
        ("package.json", "nodejs", "npm"),
        ("pyproject.toml", "python", "pip"),
        ("requirements.txt", "python", "pip"),
        ("pom.xml", "java", "maven"),
        ("build.gradle", "java", "gradle"),
        ("Cargo.toml", "rust", "cargo"),
        ("go.mod", "go", "go"),
        ("README.md", "unknown", "unknown"),
    ],
)
def test_detect_project_type(tmp_path: Path, marker: str, kind: str, manager: str) -> None:
    (tmp_path / marker).write_text("", encoding="utf-8")

    detected = detect_project_type(tmp_path)

    assert detected.kind == kind
    assert detected.package_manager == manager


def test_node_project_runs_lint_then_tests(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text("{}", encoding="utf-8")
    runner = RecordingRunner({"npm test": CommandOutcome(1, "", "1 failing")})
    dispatcher = ValidationDispatcher(runner=runner, which=_available("npm"), lint_timeout=5, test_timeout=9)

    report = dispatcher.run_validation(tmp_path)

    assert [call[0] for call in runner.calls] == [["npm", "run", "lint"], ["npm", "test"]]
    assert [call[1] for call in runner.calls] == [5, 9]
    assert report.status_of("linting") == "passed"
    assert report.status_of("tests") == "failed"
    assert report.passed is False
    payload = report.to_dict()
    assert payload["project_type"] == "nodejs"
    assert payload["linting"] == "passed"
    assert payload["tests"] == "failed"


def test_missing_executable_skips_step(tmp_path: Path) -> None:
    (tmp_path / "go.mod").write_text("module demo\n", encoding="utf-8")
    runner = RecordingRunner({})
    dispatcher = ValidationDispatcher(runner=runner, which=_available())

    report = dispatcher.run_validation(tmp_path)

    assert runner.calls == []
    assert [step.status for step in report.steps] == ["skipped", "skipped"]
    assert report.passed is True


def test_unrunnable_executable_skips_step(tmp_path: Path) -> None:
    (tmp_path / "build.gradle").write_text("", encoding="utf-8")
    (tmp_path / "gradlew").write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    (tmp_path / "gradlew").chmod(0o644)
    dispatcher = ValidationDispatcher()

    report = dispatcher.run_validation(tmp_path)

    assert [step.status for step in report.steps] == ["skipped", "skipped"]
    assert "Could not run ./gradlew" in (report.steps[0].note or "")
    assert report.passed is True


def test_timeout_marks_step_failed(tmp_path: Path) -> None:
    (tmp_path / "Cargo.toml").write_text("", encoding="utf-8")
    runner = RecordingRunner({"cargo test": subprocess.TimeoutExpired(["cargo", "test"], 1)})
    dispatcher = ValidationDispatcher(runner=runner, which=_available("cargo"))

    report = dispatcher.run_validation(tmp_path)

    assert report.status_of("linting") == "passed"
    tests_step = report.steps[1]
    assert tests_step.status == "failed"
    assert "Timed out" in (tests_step.note or "")


def test_python_falls_back_when_module_missing(tmp_path: Path) -> None:
    runner = RecordingRunner(
        {
            "-m flake8": CommandOutcome(1, "", "No module named flake8"),
            "-m pylint": CommandOutcome(0, "rated 10/10"),
            "-m pytest": CommandOutcome(1, "", "No module named pytest"),
            "-m unittest": CommandOutcome(1, "", "FAILED (failures=1)"),
        }
    )
    dispatcher = ValidationDispatcher(runner=runner, which=_available())
    project = ProjectType("python", "pip")

    report = dispatcher.run_validation(tmp_path, project)

    modules = [call[0][2] for call in runner.calls]
    assert modules == ["flake8", "pylint", "pytest", "unittest"]
    assert report.status_of("linting") == "passed"
    assert report.status_of("tests") == "failed"


def test_unknown_project_records_note(tmp_path: Path) -> None:
    dispatcher = ValidationDispatcher(runner=RecordingRunner({}), which=_available())

    report = dispatcher.run_validation(tmp_path)

    assert report.steps == []
    assert report.note is not None
    assert report.to_dict()["note"] == report.note


def test_jvm_and_rust_tests_use_long_timeout() -> None:
    steps = validation_plan(ProjectType("java", "maven"), test_timeout=120, long_test_timeout=180)

    assert [step.timeout for step in steps] == [120, 180]
    assert steps[1].alternatives == [["mvn", "test"]]
