from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import pytest

from aip.memory.schema import ImplementationStatus, LogLevel
from aip.memory.store import ImplementationStore
from aip.models.agent_client import AgentClient, AgentError, AgentInvoker, AgentTimeout
from aip.orchestrator import BatchOutcome, ImplementationOrchestrator, repository_identifier
from aip.tools.deploy import DeploymentCache
from aip.tools.publish import CodeHostError, GitOperator
from aip.tools.validation import CommandOutcome, ValidationDispatcher
from aip.tools.vcs import GitError, GitRepository
from aip.tools.workspace import WorkspaceManager

VALIDATE_JS = "### src/validate.js\n```javascript\nfunction validate(value) {\n  return value != null;\n}\nmodule.exports = validate;\n```\n"


class RecordingHost:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []

    def create_pr(self, title: str, body: str, base: str, head: str, *, cwd: Path) -> Dict[str, Any]:
        self.calls.append({"title": title, "head": head, "base": base})
        if self.fail:
            raise CodeHostError("gh not available")
        number = len(self.calls)
        return {"url": f"https://github.com/acme/demo/pull/{number}", "number": number}


class CrashingHost:
    def create_pr(self, title: str, body: str, base: str, head: str, *, cwd: Path) -> Dict[str, Any]:
        raise PermissionError(13, "Permission denied", "gh")


class FallbackCommitFails(GitOperator):
    """Commits normally except for fallback scaffolds."""

    def commit(self, workspace: Path | str, message: str) -> str | None:
        if message.startswith("Fallback Implementation"):
            raise GitError("Unable to create index.lock")
        return super().commit(workspace, message)


class ExplodingValidator:
    def run_validation(self, workspace: Path | str) -> Any:
        raise RuntimeError("validator crashed")


class SequencedAgent(AgentClient):
    """Runs one scripted step per invocation."""

    def __init__(self, steps: List[Callable[[Path], str]]) -> None:
        super().__init__()
        self.steps = list(steps)
        self.prompts: List[str] = []

    def _raw_invoke(self, prompt: str, cwd: Path, timeout: float) -> str:
        self.prompts.append(prompt)
        step = self.steps.pop(0)
        return step(cwd)


class CountingDeployer:
    def __init__(self) -> None:
        self.calls: List[tuple[str, str]] = []

    def trigger(self, repo_identifier: str, ref: str) -> Dict[str, Any]:
        self.calls.append((repo_identifier, ref))
        return {"url": f"https://{len(self.calls)}.preview.example", "deployment_id": "dpl", "status": "queued"}


def _respond(text: str) -> Callable[[Path], str]:
    return lambda cwd: text


def _raise(error: Exception, files: Optional[Dict[str, str]] = None) -> Callable[[Path], str]:
    def step(cwd: Path) -> str:
        for name, content in (files or {}).items():
            (cwd / name).write_text(content, encoding="utf-8")
        raise error

    return step


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[ImplementationStore]:
    with ImplementationStore(tmp_path / "aip.sqlite") as instance:
        yield instance


def _orchestrator(
    tmp_path: Path,
    store: ImplementationStore,
    agent: AgentClient,
    *,
    host: RecordingHost | None = None,
    validator: ValidationDispatcher | None = None,
    deployments: DeploymentCache | None = None,
    git: GitOperator | None = None,
) -> ImplementationOrchestrator:
    return ImplementationOrchestrator(
        store=store,
        workspaces=WorkspaceManager(tmp_path / "ws"),
        agent=AgentInvoker(agent, timeout=5),
        git=git
        or GitOperator(
            code_host=host or RecordingHost(),
            author_name="AI Implementation Bot",
            author_email="bot@example.com",
        ),
        validator=validator,
        deployments=deployments,
    )


def _request(identifier: str = "rec-1", **overrides: Any) -> Dict[str, Any]:
    payload = {
        "id": identifier,
        "title": f"Add input validation {identifier}",
        "description": "Validate user input before processing.",
        "category": "Security",
        "priority": "High",
    }
    payload.update(overrides)
    return payload


def test_single_item_success_commits_and_opens_pull_request(
    tmp_path, store, remote_repo, sample_context, caplog
) -> None:
    caplog.set_level(logging.INFO, logger="aip.orchestrator")
    host = RecordingHost()
    agent = SequencedAgent([_respond("Done.\n\n" + VALIDATE_JS)])
    orchestrator = _orchestrator(tmp_path, store, agent, host=host)

    outcome = orchestrator.implement(_request(), sample_context)

    assert outcome.success is True
    assert outcome.status == "completed"
    assert outcome.fallback is False
    assert re.fullmatch(r"ai-implementation-rec-1-\d+", outcome.branch_name or "")
    assert outcome.modified_files == ["src/validate.js"]
    assert outcome.pull_request is not None and outcome.pull_request["success"] is True
    assert host.calls[0]["head"] == outcome.branch_name
    assert outcome.branch_name in remote_repo.branches()
    assert remote_repo.subject(outcome.branch_name).startswith("AI Implementation: Add input validation")

    record = store.get(outcome.record_id)
    assert record is not None
    assert record.status == ImplementationStatus.COMPLETED
    assert record.progress == 100
    assert record.duration_ms is not None
    assert record.code_generation.commit_hash == outcome.commit_hash
    assert record.code_generation.parsed_changes == 1
    assert record.metrics.lines_added == 4
    assert record.pull_request.number == 1
    assert record.logs[-1].level == LogLevel.SUCCESS
    assert ".agent/AGENT.md" in agent.prompts[0]
    assert any("[rec-1] Implementation completed" in message for message in caplog.messages)


def test_direct_edits_without_parsable_output_are_committed(tmp_path, store, remote_repo, sample_context) -> None:
    def edit(cwd: Path) -> str:
        (cwd / "app.js").write_text("module.exports = () => 'validated';\n", encoding="utf-8")
        return "I updated app.js in place."

    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([edit]))

    outcome = orchestrator.implement(_request(), sample_context, create_pr=False)

    assert outcome.success is True
    assert outcome.modified_files == ["app.js"]
    assert outcome.pull_request is None
    record = store.get(outcome.record_id)
    assert record is not None and record.code_generation.parsed_changes == 0
    assert record.metrics.lines_removed == 1


def test_empty_agent_output_uses_fallback_scaffold(tmp_path, store, remote_repo, sample_context) -> None:
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([_respond("I could not do it.")]))

    outcome = orchestrator.implement(_request(), sample_context)

    assert outcome.success is True
    assert outcome.fallback is True
    assert outcome.branch_name is not None and outcome.branch_name.startswith("ai-implementation-rec-1-")
    assert outcome.modified_files[0].startswith("IMPLEMENTATION_SECURITY_")
    assert outcome.modified_files[1] == "security-template.js"
    assert outcome.validation_results == {"note": "Fallback implementation - manual review required"}
    assert remote_repo.subject(outcome.branch_name).startswith("Fallback Implementation:")


def test_agent_error_falls_back_and_keeps_primary_error(tmp_path, store, remote_repo, sample_context) -> None:
    failing = _raise(AgentError("Agent exited with status 2: boom"), files={"half.js": "partial"})
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([failing]))

    outcome = orchestrator.implement(_request(), sample_context, create_pr=False)

    assert outcome.success is True
    assert outcome.fallback is True
    assert "half.js" not in outcome.modified_files
    record = store.get(outcome.record_id)
    assert record is not None
    assert "boom" in (record.code_generation.error or "")
    assert any(entry.level == LogLevel.ERROR for entry in record.logs)


def test_timeout_with_changes_is_partial_success(tmp_path, store, remote_repo, sample_context) -> None:
    step = _raise(AgentTimeout("Agent timed out after 5s", timeout=5), files={"partial.js": "const x = 1;\n"})
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([step]))

    outcome = orchestrator.implement(_request(), sample_context, create_pr=False)

    assert outcome.success is True
    assert outcome.partial is True
    assert outcome.modified_files == ["partial.js"]


def test_timeout_without_changes_fails_item(tmp_path, store, remote_repo, sample_context) -> None:
    step = _raise(AgentTimeout("Agent timed out after 5s", timeout=5))
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([step]))

    outcome = orchestrator.implement(_request(), sample_context)

    assert outcome.success is False
    assert outcome.status == "failed"
    record = store.get(outcome.record_id)
    assert record is not None
    assert record.error is not None and "timed out" in record.error.message
    assert record.error.stack
    assert record.completed_at is not None


def test_validation_failure_does_not_block_completion(tmp_path, store, remote_repo, sample_context) -> None:
    output = "### package.json\n```json\n{\"name\": \"demo\"}\n```\n\n" + VALIDATE_JS

    def runner(command, cwd, timeout):
        if list(command) == ["npm", "test"]:
            return CommandOutcome(1, "", "1 failing")
        return CommandOutcome(0, "clean")

    validator = ValidationDispatcher(runner=runner, which=lambda name: f"/usr/bin/{name}")
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([_respond(output)]), validator=validator)

    outcome = orchestrator.implement(_request(), sample_context, create_pr=False)

    assert outcome.success is True
    assert outcome.validation_results["project_type"] == "nodejs"
    assert outcome.validation_results["linting"] == "passed"
    assert outcome.validation_results["tests"] == "failed"


def test_pull_request_failure_still_completes(tmp_path, store, remote_repo, sample_context) -> None:
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([_respond(VALIDATE_JS)]), host=RecordingHost(fail=True))

    outcome = orchestrator.implement(_request(), sample_context)

    assert outcome.success is True
    assert outcome.pull_request is not None
    assert outcome.pull_request["success"] is False
    assert outcome.pull_request["pushed"] is True
    assert outcome.pull_request["message"] == "Branch pushed but PR creation failed"


def test_deployment_runs_only_when_requested_and_pushed(tmp_path, store, remote_repo, sample_context) -> None:
    deployer = CountingDeployer()
    deployments = DeploymentCache(store=store, deployer=deployer)
    agent = SequencedAgent([_respond(VALIDATE_JS), _respond(VALIDATE_JS)])
    orchestrator = _orchestrator(tmp_path, store, agent, deployments=deployments)

    skipped = orchestrator.implement(_request("rec-a"), sample_context)
    deployed = orchestrator.implement(_request("rec-b"), sample_context, deploy=True)

    assert skipped.deployment is None
    assert len(deployer.calls) == 1
    assert deployer.calls[0][1] == deployed.branch_name
    assert deployed.deployment is not None and deployed.deployment["url"] == "https://1.preview.example"
    record = store.get(deployed.record_id)
    assert record is not None and record.deployment.success is True


def test_invalid_request_creates_no_record(tmp_path, store, remote_repo, sample_context) -> None:
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([]))

    outcome = orchestrator.implement({"id": "bad", "title": "  ", "description": "x"}, sample_context)

    assert outcome.success is False
    assert outcome.record_id is None
    assert outcome.implementation_id == "bad"
    assert store.list_history()[1] == 0


def test_unreachable_repository_fails_item(tmp_path, store) -> None:
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([]))
    context = {"repoUrl": str(tmp_path / "missing.git"), "projectName": "Ghost"}

    outcome = orchestrator.implement(_request(), context)

    assert outcome.success is False
    assert outcome.status == "failed"
    assert "Failed to initialize workspace" in (outcome.error or "")


def test_batch_runs_sequentially_and_isolates_failures(tmp_path, store, remote_repo, sample_context) -> None:
    seen_branches: List[Optional[str]] = []

    def first(cwd: Path) -> str:
        seen_branches.append(GitRepository(cwd).current_branch())
        (cwd / "leftover.tmp").write_text("junk", encoding="utf-8")
        return VALIDATE_JS

    def third(cwd: Path) -> str:
        seen_branches.append(GitRepository(cwd).current_branch())
        assert not (cwd / "src" / "validate.js").exists()
        assert not (cwd / "leftover.tmp").exists()
        return "### docs/guide.md\n```markdown\n# Guide\n```\n"

    agent = SequencedAgent([first, _raise(AgentTimeout("Agent timed out", timeout=5)), third])
    orchestrator = _orchestrator(tmp_path, store, agent)
    requests = [_request("one"), _request("two"), {"id": "bad"}, _request("three", category="Documentation")]

    batch = orchestrator.run_batch(requests, sample_context, batch_id="batch-1")

    assert isinstance(batch, BatchOutcome)
    assert [outcome.implementation_id for outcome in batch.outcomes] == ["one", "two", "bad", "three"]
    assert [outcome.success for outcome in batch.outcomes] == [True, False, False, True]
    assert batch.total == 4
    assert batch.successful == 2
    assert batch.failed == 2
    assert batch.success_rate == 50
    assert all(branch and branch.startswith("ai-implementation-") for branch in seen_branches)

    records = store.find_by_batch("batch-1")
    assert [record.batch_order for record in records] == [1, 2, 3]
    assert [record.status for record in records] == [
        ImplementationStatus.COMPLETED,
        ImplementationStatus.FAILED,
        ImplementationStatus.COMPLETED,
    ]
    workspace = GitRepository(tmp_path / "ws" / "Demo-Project")
    assert workspace.current_branch() == "main"
    assert workspace.has_changes() is False


def test_batch_skips_items_cancelled_while_pending(tmp_path, store, remote_repo, sample_context) -> None:
    holder: Dict[str, ImplementationOrchestrator] = {}

    def first(cwd: Path) -> str:
        pending = [record for record in store.find_by_batch("batch-2") if record.batch_order == 2]
        holder["orchestrator"].cancel(pending[0].id)
        return VALIDATE_JS

    agent = SequencedAgent([first, _respond(VALIDATE_JS)])
    orchestrator = _orchestrator(tmp_path, store, agent)
    holder["orchestrator"] = orchestrator

    batch = orchestrator.run_batch(
        [_request("one"), _request("two"), _request("three")], sample_context, create_pr=False, batch_id="batch-2"
    )

    assert [outcome.status for outcome in batch.outcomes] == ["completed", "cancelled", "completed"]
    assert batch.cancelled == 1
    assert batch.failed == 0
    assert batch.to_dict()["summary"]["success_rate"] == 67
    assert agent.steps == []


def test_batch_workspace_failure_fails_every_item(tmp_path, store) -> None:
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([]))
    context = {"repoUrl": str(tmp_path / "missing.git"), "projectName": "Ghost"}

    batch = orchestrator.run_batch([_request("one"), _request("two")], context)

    assert [outcome.status for outcome in batch.outcomes] == ["failed", "failed"]
    assert batch.success_rate == 0


def test_cancel_and_queries(tmp_path, store, remote_repo, sample_context) -> None:
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([_respond(VALIDATE_JS)]))
    done = orchestrator.implement(_request("rec-1"), sample_context, create_pr=False)

    assert [record.implementation_id for record in orchestrator.status(sample_context.repo_url)] == ["rec-1"]
    assert orchestrator.status(sample_context.repo_url, "other") == []
    records, total = orchestrator.history(repo_url=sample_context.repo_url)
    assert total == 1 and records[0].id == done.record_id

    with pytest.raises(ValueError):
        orchestrator.cancel(done.record_id)


def test_repository_identifier() -> None:
    assert repository_identifier("https://github.com/acme/demo.git") == "acme/demo"
    assert repository_identifier("git@github.com:acme/demo.git") == "acme/demo"
    assert repository_identifier("/srv/git/demo.git") == "/srv/git/demo.git"


def test_unrunnable_validation_tool_keeps_agent_changes(tmp_path, store, remote_repo, sample_context) -> None:
    def gradle_project(cwd: Path) -> str:
        (cwd / "gradlew").write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
        (cwd / "gradlew").chmod(0o644)
        return (
            "### build.gradle\n```groovy\nplugins { id 'java' }\n```\n\n"
            "### src/Feature.java\n```java\npublic class Feature {}\n```\n"
        )

    orchestrator = _orchestrator(
        tmp_path, store, SequencedAgent([gradle_project]), validator=ValidationDispatcher()
    )

    outcome = orchestrator.implement(_request(), sample_context, create_pr=False)

    assert outcome.success is True
    assert outcome.fallback is False
    assert "src/Feature.java" in outcome.modified_files
    assert outcome.validation_results["project_type"] == "java"
    assert outcome.validation_results["linting"] == "skipped"


def test_validator_crash_is_recorded_without_fallback(tmp_path, store, remote_repo, sample_context) -> None:
    orchestrator = _orchestrator(
        tmp_path, store, SequencedAgent([_respond(VALIDATE_JS)]), validator=ExplodingValidator()
    )

    outcome = orchestrator.implement(_request(), sample_context, create_pr=False)

    assert outcome.success is True
    assert outcome.fallback is False
    assert outcome.modified_files == ["src/validate.js"]
    assert outcome.validation_results == {"error": "validator crashed"}
    record = store.get(outcome.record_id)
    assert record is not None
    assert any("Validation could not run" in entry.message for entry in record.logs)


def test_batch_survives_pull_request_tool_crash(tmp_path, store, remote_repo, sample_context) -> None:
    agent = SequencedAgent([_respond(VALIDATE_JS), _respond("### docs/guide.md\n```markdown\n# Guide\n```\n")])
    orchestrator = _orchestrator(tmp_path, store, agent, host=CrashingHost())

    batch = orchestrator.run_batch([_request("one"), _request("two")], sample_context, batch_id="batch-pr")

    assert [outcome.status for outcome in batch.outcomes] == ["completed", "completed"]
    for outcome in batch.outcomes:
        assert outcome.pull_request is not None
        assert outcome.pull_request["success"] is False
        assert "Permission denied" in outcome.pull_request["error"]
    records = store.find_by_batch("batch-pr")
    assert all(record.completed_at is not None and record.progress == 100 for record in records)


def test_batch_isolates_item_whose_fallback_also_fails(tmp_path, store, remote_repo, sample_context) -> None:
    agent = SequencedAgent(
        [
            _respond(VALIDATE_JS),
            _raise(AgentError("Agent exited with status 1: boom")),
            _respond("### docs/guide.md\n```markdown\n# Guide\n```\n"),
        ]
    )
    git = FallbackCommitFails(
        code_host=RecordingHost(), author_name="AI Implementation Bot", author_email="bot@example.com"
    )
    orchestrator = _orchestrator(tmp_path, store, agent, git=git)

    batch = orchestrator.run_batch(
        [_request("one"), _request("two"), _request("three")], sample_context, create_pr=False, batch_id="batch-3"
    )

    assert [outcome.status for outcome in batch.outcomes] == ["completed", "failed", "completed"]
    assert batch.failed == 1
    records = store.find_by_batch("batch-3")
    failed = records[1]
    assert failed.status == ImplementationStatus.FAILED
    assert failed.error is not None
    assert failed.error.message.startswith("Both primary and fallback implementation failed.")
    assert "boom" in failed.error.message
    assert "Unable to create index.lock" in failed.error.message
    assert failed.error.stack
    assert failed.completed_at is not None
    assert records[2].code_generation.modified_files == ["docs/guide.md"]


def test_deploy_request_without_deployer_is_logged(tmp_path, store, remote_repo, sample_context) -> None:
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([_respond(VALIDATE_JS)]))

    outcome = orchestrator.implement(_request(), sample_context, deploy=True)

    assert outcome.success is True
    record = store.get(outcome.record_id)
    assert record is not None
    assert any(
        entry.level == LogLevel.WARN and entry.message == "Deployment requested but no deployer is configured"
        for entry in record.logs
    )


def test_identifier_with_dot_runs_gets_valid_branch(tmp_path, store, remote_repo, sample_context) -> None:
    orchestrator = _orchestrator(tmp_path, store, SequencedAgent([_respond(VALIDATE_JS)]))

    outcome = orchestrator.implement(_request("v1..2"), sample_context, create_pr=False)

    assert outcome.success is True
    assert re.fullmatch(r"ai-implementation-v1\.2-\d+", outcome.branch_name or "")
