"""Toolchain detection and non-blocking lint/test validation.

Validation never aborts the pipeline: each step records ``passed``,
``failed`` or ``skipped`` and the caller decides what to do with the report.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence

LOGGER = logging.getLogger(__name__)

StepStatus = Literal["passed", "failed", "skipped"]
ProjectKind = Literal["nodejs", "python", "java", "rust", "go", "unknown"]

DEFAULT_LINT_TIMEOUT = 60.0
DEFAULT_TEST_TIMEOUT = 120.0
DEFAULT_LONG_TEST_TIMEOUT = 180.0
_OUTPUT_TAIL = 2000


@dataclass(slots=True, frozen=True)
class ProjectType:
    """Detected toolchain for a workspace."""

    kind: ProjectKind
    package_manager: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.kind, "package_manager": self.package_manager}


UNKNOWN_PROJECT = ProjectType("unknown", "unknown")


def detect_project_type(workspace: Path | str) -> ProjectType:
    """Classify ``workspace`` by the marker files at its root."""
    root = Path(workspace)
    try:
        names = {entry.name for entry in root.iterdir()}
    except OSError as error:
        LOGGER.warning("Failed to detect project type for %s: %s", root, error)
        return UNKNOWN_PROJECT
    if "package.json" in names:
        return ProjectType("nodejs", "npm")
    if names & {"requirements.txt", "setup.py", "pyproject.toml"}:
        return ProjectType("python", "pip")
    if "pom.xml" in names:
        return ProjectType("java", "maven")
    if names & {"build.gradle", "build.gradle.kts"}:
        return ProjectType("java", "gradle")
    if "Cargo.toml" in names:
        return ProjectType("rust", "cargo")
    if "go.mod" in names:
        return ProjectType("go", "go")
    return UNKNOWN_PROJECT


@dataclass(slots=True)
class CommandOutcome:
    """Raw result of running one validation command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""


Runner = Callable[[Sequence[str], Path, float], CommandOutcome]
Which = Callable[[str], Optional[str]]


def subprocess_runner(command: Sequence[str], cwd: Path, timeout: float) -> CommandOutcome:
    """Default runner; raises ``subprocess.TimeoutExpired`` and ``OSError``."""
    process = subprocess.run(  # noqa: S603  # commands come from the fixed toolchain table
        list(command),
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
        timeout=timeout,
    )
    return CommandOutcome(process.returncode, process.stdout or "", process.stderr or "")


@dataclass(slots=True)
class ValidationStep:
    """A named validation stage with ordered command alternatives.

    Later alternatives only run when an earlier one is unavailable (missing
    executable or missing Python module).
    """

    name: str
    alternatives: Sequence[Sequence[str]]
    timeout: float


@dataclass(slots=True)
class StepResult:
    name: str
    status: StepStatus
    command: List[str] = field(default_factory=list)
    exit_code: int | None = None
    duration_ms: int = 0
    output: str = ""
    note: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "command": " ".join(self.command),
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "output": self.output,
            "note": self.note,
        }


@dataclass(slots=True)
class ValidationReport:
    project_type: ProjectType
    steps: List[StepResult] = field(default_factory=list)
    note: str | None = None

    def status_of(self, name: str) -> StepStatus | None:
        for step in self.steps:
            if step.name == name:
                return step.status
        return None

    @property
    def passed(self) -> bool:
        return all(step.status != "failed" for step in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "project_type": self.project_type.kind,
            "package_manager": self.project_type.package_manager,
            "steps": [step.to_dict() for step in self.steps],
        }
        for step in self.steps:
            payload[step.name] = step.status
        if self.note:
            payload["note"] = self.note
        return payload


def validation_plan(
    project: ProjectType,
    *,
    lint_timeout: float = DEFAULT_LINT_TIMEOUT,
    test_timeout: float = DEFAULT_TEST_TIMEOUT,
    long_test_timeout: float = DEFAULT_LONG_TEST_TIMEOUT,
    python: str | None = None,
) -> List[ValidationStep]:
    """Return the lint and test steps for ``project`` (empty for unknown projects)."""

    interpreter = python or sys.executable or "python"
    if project.kind == "nodejs":
        return [
            ValidationStep("linting", [["npm", "run", "lint"]], lint_timeout),
            ValidationStep("tests", [["npm", "test"]], test_timeout),
        ]
    if project.kind == "python":
        return [
            ValidationStep(
                "linting",
                [[interpreter, "-m", "flake8", "."], [interpreter, "-m", "pylint", "."]],
                lint_timeout,
            ),
            ValidationStep(
                "tests",
                [[interpreter, "-m", "pytest"], [interpreter, "-m", "unittest", "discover"]],
                test_timeout,
            ),
        ]
    if project.kind == "java":
        if project.package_manager == "gradle":
            return [
                ValidationStep("linting", [["./gradlew", "compileJava"]], test_timeout),
                ValidationStep("tests", [["./gradlew", "test"]], long_test_timeout),
            ]
        return [
            ValidationStep("linting", [["mvn", "compile"]], test_timeout),
            ValidationStep("tests", [["mvn", "test"]], long_test_timeout),
        ]
    if project.kind == "rust":
        return [
            ValidationStep("linting", [["cargo", "check"]], test_timeout),
            ValidationStep("tests", [["cargo", "test"]], long_test_timeout),
        ]
    if project.kind == "go":
        return [
            ValidationStep("linting", [["go", "vet", "./..."]], lint_timeout),
            ValidationStep("tests", [["go", "test", "./..."]], test_timeout),
        ]
    return []


def _tail(text: str) -> str:
    text = text.strip()
    if len(text) <= _OUTPUT_TAIL:
        return text
    return "..." + text[-_OUTPUT_TAIL:]


def _module_missing(outcome: CommandOutcome) -> bool:
    return outcome.exit_code != 0 and "No module named" in (outcome.stderr + outcome.stdout)


class ValidationDispatcher:
    """Runs the lint and test steps appropriate for a workspace."""

    def __init__(
        self,
        *,
        lint_timeout: float = DEFAULT_LINT_TIMEOUT,
        test_timeout: float = DEFAULT_TEST_TIMEOUT,
        long_test_timeout: float = DEFAULT_LONG_TEST_TIMEOUT,
        runner: Runner | None = None,
        which: Which | None = None,
    ) -> None:
        self.lint_timeout = lint_timeout
        self.test_timeout = test_timeout
        self.long_test_timeout = long_test_timeout
        self._runner = runner or subprocess_runner
        self._which = which or shutil.which

    def detect_project_type(self, workspace: Path | str) -> ProjectType:
        return detect_project_type(workspace)

    def run_validation(self, workspace: Path | str, project: ProjectType | None = None) -> ValidationReport:
        root = Path(workspace)
        project = project or detect_project_type(root)
        report = ValidationReport(project_type=project)
        steps = validation_plan(
            project,
            lint_timeout=self.lint_timeout,
            test_timeout=self.test_timeout,
            long_test_timeout=self.long_test_timeout,
        )
        if not steps:
            report.note = "Unknown project type; validation skipped"
            LOGGER.info("No validation toolchain detected for %s", root)
            return report
        for step in steps:
            result = self._run_step(step, root)
            LOGGER.info("Validation %s: %s", step.name, result.status)
            report.steps.append(result)
        return report

    def _available(self, command: Sequence[str], cwd: Path) -> bool:
        executable = command[0]
        if executable.startswith("./"):
            return (cwd / executable).is_file()
        if Path(executable).is_absolute():
            return Path(executable).exists()
        return self._which(executable) is not None

    def _run_step(self, step: ValidationStep, cwd: Path) -> StepResult:
        last_note = "No runnable command available"
        for command in step.alternatives:
            if not self._available(command, cwd):
                last_note = f"Executable not available: {command[0]}"
                continue
            started = time.monotonic()
            try:
                outcome = self._runner(command, cwd, step.timeout)
            except subprocess.TimeoutExpired:
                return StepResult(
                    name=step.name,
                    status="failed",
                    command=list(command),
                    duration_ms=int((time.monotonic() - started) * 1000),
                    note=f"Timed out after {step.timeout:g}s",
                )
            except FileNotFoundError:
                last_note = f"Executable not available: {command[0]}"
                continue
            except OSError as error:
                return StepResult(
                    name=step.name,
                    status="skipped",
                    command=list(command),
                    duration_ms=int((time.monotonic() - started) * 1000),
                    note=f"Could not run {command[0]}: {error}",
                )
            if _module_missing(outcome):
                last_note = _tail(outcome.stderr) or f"Module unavailable for {' '.join(command)}"
                continue
            return StepResult(
                name=step.name,
                status="passed" if outcome.exit_code == 0 else "failed",
                command=list(command),
                exit_code=outcome.exit_code,
                duration_ms=int((time.monotonic() - started) * 1000),
                output=_tail(outcome.stdout + ("\n" + outcome.stderr if outcome.stderr else "")),
            )
        return StepResult(name=step.name, status="skipped", note=last_note)


__all__ = [
    "CommandOutcome",
    "ProjectType",
    "StepResult",
    "UNKNOWN_PROJECT",
    "ValidationDispatcher",
    "ValidationReport",
    "ValidationStep",
    "detect_project_type",
    "subprocess_runner",
    "validation_plan",
]
