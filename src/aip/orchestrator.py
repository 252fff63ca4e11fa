"""State machine driving single-item and batch implementation runs."""

from __future__ import annotations

import logging
import re
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from pydantic import ValidationError

from .memory.schema import (
    CodeGeneration,
    ImplementationRecord,
    ImplementationRequest,
    ImplementationStatus,
    InvalidTransitionError,
    LogLevel,
    ProjectContext,
    PullRequestInfo,
    utc_now,
)
from .memory.store import ImplementationStore
from .models.agent_client import AgentInvoker, AgentTimeout, CLIAgentClient
from .settings import PipelineSettings
from .tools.changes import ChangeApplier, FallbackError, merge_modified, write_fallback_scaffold
from .tools.deploy import DeploymentCache, Deployer, VercelDeployer
from .tools.output_parser import parse_agent_output
from .tools.publish import (
    CodeHost,
    GhCodeHost,
    GitOperator,
    PullRequestResult,
    build_commit_message,
    build_fallback_commit_message,
)
from .tools.validation import ValidationDispatcher, detect_project_type
from .tools.vcs import GitError, GitRepository
from .tools.workspace import WorkspaceError, WorkspaceManager

LOGGER = logging.getLogger(__name__)

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

PROGRESS_PROVISIONING = 10
PROGRESS_WORKSPACE_READY = 20
PROGRESS_AGENT_CONFIGURED = 40
PROGRESS_CODE_GENERATED = 80
PROGRESS_DONE = 100

_GITHUB_REPO = re.compile(r"github\.com[:/](?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$")


def repository_identifier(repo_url: str) -> str:
    """Return ``owner/name`` for GitHub URLs, otherwise the URL unchanged."""
    match = _GITHUB_REPO.search(repo_url.strip())
    if match is None:
        return repo_url
    return f"{match.group('owner')}/{match.group('name')}"


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return str(error)
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid value')}" if location else str(first.get("msg"))


@dataclass(slots=True)
class ImplementationOutcome:
    """Caller-facing result for one implementation item."""

    success: bool
    record_id: str | None = None
    implementation_id: str | None = None
    status: str | None = None
    branch_name: str | None = None
    commit_hash: str | None = None
    modified_files: List[str] = field(default_factory=list)
    fallback: bool = False
    partial: bool = False
    pull_request: Dict[str, Any] | None = None
    deployment: Dict[str, Any] | None = None
    validation_results: Dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def invalid(cls, message: str, implementation_id: str | None = None) -> "ImplementationOutcome":
        return cls(success=False, implementation_id=implementation_id, error=message)

    @classmethod
    def from_record(cls, record: ImplementationRecord) -> "ImplementationOutcome":
        generation = record.code_generation
        pull_request = None
        if record.pull_request.branch_name is not None or record.pull_request.error is not None:
            pull_request = record.pull_request.model_dump(mode="json")
        deployment = None
        if record.deployment.branch_name is not None or record.deployment.error is not None:
            deployment = record.deployment.model_dump(mode="json")
        error = record.error.message if record.error else generation.error
        return cls(
            success=record.status == ImplementationStatus.COMPLETED,
            record_id=record.id,
            implementation_id=record.implementation_id,
            status=record.status.value,
            branch_name=generation.branch_name,
            commit_hash=generation.commit_hash,
            modified_files=list(generation.modified_files),
            fallback=generation.fallback,
            partial=generation.partial,
            pull_request=pull_request,
            deployment=deployment,
            validation_results=dict(generation.validation_results),
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "record_id": self.record_id,
            "implementation_id": self.implementation_id,
            "status": self.status,
            "branch_name": self.branch_name,
            "commit_hash": self.commit_hash,
            "modified_files": list(self.modified_files),
            "fallback": self.fallback,
            "partial": self.partial,
            "validation_results": self.validation_results,
        }
        if self.pull_request is not None:
            payload["pull_request"] = self.pull_request
        if self.deployment is not None:
            payload["deployment"] = self.deployment
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class BatchOutcome:
    batch_id: str
    outcomes: List[ImplementationOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def successful(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def cancelled(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == ImplementationStatus.CANCELLED.value)

    @property
    def failed(self) -> int:
        return self.total - self.successful - self.cancelled

    @property
    def success_rate(self) -> int:
        if not self.outcomes:
            return 0
        return int(self.successful * 100 / self.total + 0.5)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "results": [outcome.to_dict() for outcome in self.outcomes],
            "summary": {
                "total": self.total,
                "successful": self.successful,
                "failed": self.failed,
                "cancelled": self.cancelled,
                "success_rate": self.success_rate,
            },
        }


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class ImplementationOrchestrator:
    """Drives implementation records from ``pending`` to a terminal state.

    All work against one project directory happens while holding the
    workspace lock; batch items run strictly one after another.
    """

    def __init__(
        self,
        *,
        store: ImplementationStore,
        workspaces: WorkspaceManager,
        agent: AgentInvoker,
        git: GitOperator,
        validator: ValidationDispatcher | None = None,
        deployments: DeploymentCache | None = None,
        clock_ms: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.workspaces = workspaces
        self.agent = agent
        self.git = git
        self.validator = validator
        self.deployments = deployments
        self._clock_ms = clock_ms or _now_ms

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        *,
        store: ImplementationStore | None = None,
        agent_client: CLIAgentClient | None = None,
        code_host: CodeHost | None = None,
        deployer: Deployer | None = None,
        project_name: str | None = None,
    ) -> "ImplementationOrchestrator":
        """Wire the default collaborators described by ``settings``."""

        store = store or ImplementationStore(settings.db_path)
        client = agent_client or CLIAgentClient(
            settings.agent.command,
            prompt_flag=settings.agent.prompt_flag,
            max_output_bytes=settings.agent.max_output_bytes,
        )
        if code_host is None and settings.git.pr_tool:
            code_host = GhCodeHost(settings.git.pr_tool)
        validator = None
        if settings.validation.enabled:
            validator = ValidationDispatcher(
                lint_timeout=settings.validation.lint_timeout,
                test_timeout=settings.validation.test_timeout,
                long_test_timeout=settings.validation.long_test_timeout,
            )
        deployments = None
        if settings.deployment.enabled:
            if deployer is None and settings.deployment.token and project_name:
                deployer = VercelDeployer(
                    project_name=project_name,
                    token=settings.deployment.token,
                    api_url=settings.deployment.api_url,
                )
            deployments = DeploymentCache(
                store=store,
                deployer=deployer,
                ttl=settings.deployment.ttl_seconds,
                persisted_max_age=settings.deployment.persisted_max_age,
            )
        return cls(
            store=store,
            workspaces=WorkspaceManager(
                settings.workspace.root,
                default_branch=settings.workspace.default_branch,
                remote=settings.workspace.remote,
            ),
            agent=AgentInvoker(client, timeout=settings.agent.timeout, context_dir=settings.agent.context_dir),
            git=GitOperator(
                remote=settings.workspace.remote,
                base_branch=settings.workspace.default_branch,
                code_host=code_host or GhCodeHost(),
                push_timeout=settings.git.push_timeout,
                author_name=settings.git.author_name,
                author_email=settings.git.author_email,
            ),
            validator=validator,
            deployments=deployments,
        )

    # ------------------------------------------------------------ public API
    def implement(
        self,
        request: ImplementationRequest | Mapping[str, Any],
        context: ProjectContext | Mapping[str, Any],
        *,
        create_pr: bool = True,
        deploy: bool = False,
    ) -> ImplementationOutcome:
        """Run one implementation item end to end."""

        parsed, error = self._coerce(request, context)
        if parsed is None:
            implementation_id = request.get("id") if isinstance(request, Mapping) else None
            return ImplementationOutcome.invalid(error or "Invalid request", implementation_id)
        item, project = parsed

        record = self.store.create(ImplementationRecord.from_request(item, project))
        self._log(record, LogLevel.INFO, f"Implementation request received: {item.title}")

        with self.workspaces.lock(project.project_name):
            claimed = self._claim(record)
            if claimed is None:
                return ImplementationOutcome.from_record(self._reload(record))
            record = claimed
            try:
                path = self.workspaces.ensure_workspace(project.repo_url, project.project_name)
                self._advance(record, PROGRESS_WORKSPACE_READY, "Workspace ready", {"path": str(path)})
                self.agent.configure(path, project)
                self._advance(record, PROGRESS_AGENT_CONFIGURED, "Agent configured")
            except Exception as error:
                self._fail(record, error)
                return ImplementationOutcome.from_record(record)
            self._run_item(record, item, project, path, create_pr=create_pr, deploy=deploy)
        return ImplementationOutcome.from_record(record)

    def run_batch(
        self,
        requests: Sequence[ImplementationRequest | Mapping[str, Any]],
        context: ProjectContext | Mapping[str, Any],
        *,
        create_pr: bool = True,
        deploy: bool = False,
        batch_id: str | None = None,
    ) -> BatchOutcome:
        """Process ``requests`` sequentially in one shared workspace."""

        batch = BatchOutcome(batch_id=batch_id or uuid4().hex)
        try:
            project = self._coerce_context(context)
        except ValidationError as error:
            batch.outcomes.extend(ImplementationOutcome.invalid(_first_error(error)) for _ in requests)
            return batch

        slots: List[Tuple[ImplementationRecord, ImplementationRequest] | ImplementationOutcome] = []
        order = 0
        for raw in requests:
            try:
                item = self._coerce_request(raw)
            except ValidationError as error:
                implementation_id = raw.get("id") if isinstance(raw, Mapping) else None
                slots.append(ImplementationOutcome.invalid(_first_error(error), implementation_id))
                continue
            order += 1
            record = ImplementationRecord.from_request(item, project, batch_id=batch.batch_id, batch_order=order)
            self.store.create(record)
            self._log(record, LogLevel.INFO, f"Queued in batch {batch.batch_id} at position {order}")
            slots.append((record, item))

        LOGGER.info("Batch %s: %d item(s) queued for %s", batch.batch_id, order, project.project_name)
        with self.workspaces.lock(project.project_name):
            path: Path | None = None
            setup_error: Exception | None = None
            if order:
                try:
                    path = self.workspaces.ensure_workspace(project.repo_url, project.project_name)
                    self.agent.configure(path, project)
                except Exception as error:
                    setup_error = error

            for slot in slots:
                if isinstance(slot, ImplementationOutcome):
                    batch.outcomes.append(slot)
                    continue
                record, item = slot
                claimed = self._claim(record)
                if claimed is None:
                    batch.outcomes.append(ImplementationOutcome.from_record(self._reload(record)))
                    continue
                record = claimed
                if setup_error is not None or path is None:
                    self._fail(record, setup_error or WorkspaceError("Workspace unavailable"))
                    batch.outcomes.append(ImplementationOutcome.from_record(record))
                    continue
                try:
                    base = self.workspaces.return_to_base(project.project_name)
                    self._advance(record, PROGRESS_WORKSPACE_READY, "Workspace ready", {"base_branch": base})
                    self._advance(record, PROGRESS_AGENT_CONFIGURED, "Agent configured")
                except Exception as error:
                    self._fail(record, error)
                else:
                    self._run_item(record, item, project, path, create_pr=create_pr, deploy=deploy)
                batch.outcomes.append(ImplementationOutcome.from_record(record))

            if path is not None:
                try:
                    self.workspaces.return_to_base(project.project_name)
                except WorkspaceError as error:
                    LOGGER.warning("Unable to reset workspace after batch %s: %s", batch.batch_id, error)

        LOGGER.info(
            "Batch %s finished: %d/%d successful, %d failed, %d cancelled",
            batch.batch_id,
            batch.successful,
            batch.total,
            batch.failed,
            batch.cancelled,
        )
        return batch

    def cancel(self, record_id: str) -> ImplementationRecord:
        """Cancel a record that has not started yet."""
        record = self.store.update_status(record_id, ImplementationStatus.CANCELLED)
        self.store.append_log(record_id, LogLevel.WARN, "Implementation cancelled")
        LOGGER.warning("[%s] Implementation cancelled", record.implementation_id)
        return self.store.get(record_id) or record

    def status(self, repo_url: str, implementation_id: str | None = None) -> List[ImplementationRecord]:
        records = self.store.find_by_repository(repo_url)
        if implementation_id is None:
            return records
        return [record for record in records if record.implementation_id == implementation_id]

    def history(
        self,
        *,
        repo_url: str | None = None,
        status: ImplementationStatus | None = None,
        category: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[ImplementationRecord], int]:
        return self.store.list_history(
            repo_url=repo_url, status=status, category=category, limit=limit, offset=offset
        )

    def batch(self, batch_id: str) -> List[ImplementationRecord]:
        return self.store.find_by_batch(batch_id)

    # ------------------------------------------------------------ item flow
    def _run_item(
        self,
        record: ImplementationRecord,
        request: ImplementationRequest,
        context: ProjectContext,
        workspace: Path,
        *,
        create_pr: bool,
        deploy: bool,
    ) -> None:
        try:
            generation = self._generate(record, request, workspace)
        except Exception as error:
            self._fail(record, error)
            return

        record.code_generation = generation
        record.metrics.files_processed = len(generation.modified_files)
        self._advance(
            record,
            PROGRESS_CODE_GENERATED,
            "Fallback scaffold committed" if generation.fallback else "Code generated",
            {"branch": generation.branch_name, "files": len(generation.modified_files)},
        )

        pushed = False
        if create_pr and generation.branch_name:
            try:
                result = self.git.create_pull_request(
                    workspace,
                    generation.branch_name,
                    request,
                    validation=generation.validation_results,
                )
            except Exception as error:
                result = PullRequestResult(
                    success=False,
                    branch_name=generation.branch_name,
                    error=str(error),
                    message="Implementation completed but PR creation failed",
                    local_branch=generation.branch_name,
                )
            pushed = result.pushed
            record.pull_request = PullRequestInfo(
                success=result.success,
                url=result.url,
                number=result.number,
                state="open" if result.success else None,
                error=result.error,
                message=result.message,
                branch_name=result.branch_name,
                local_branch=result.local_branch,
                pushed=result.pushed,
                created_at=utc_now() if result.success else None,
            )
            if result.success:
                self._log(record, LogLevel.SUCCESS, f"Pull request created: {result.url}")
            else:
                self._log(record, LogLevel.WARN, result.message or "Pull request not created", {"error": result.error})

        if deploy:
            if self.deployments is None or self.deployments.deployer is None:
                self._log(record, LogLevel.WARN, "Deployment requested but no deployer is configured")
            elif not pushed:
                self._log(record, LogLevel.WARN, "Deployment skipped because the branch was not pushed")
            else:
                self._deploy(record, context, generation.branch_name or "")

        record.transition(ImplementationStatus.COMPLETED, PROGRESS_DONE)
        self._log(
            record,
            LogLevel.SUCCESS,
            "Implementation completed",
            {"duration": record.duration_formatted, "fallback": generation.fallback},
        )

    def _generate(self, record: ImplementationRecord, request: ImplementationRequest, workspace: Path) -> CodeGeneration:
        branch: str | None = None
        try:
            repo = GitRepository(workspace)
            branch = self.agent.create_branch(repo, request.id)
            record.code_generation.branch_name = branch
            self._log(record, LogLevel.INFO, f"Created branch {branch}")

            run = self.agent.invoke(workspace, self.agent.build_prompt(request))
            if run.timed_out:
                self._log(record, LogLevel.WARN, "Agent timed out; continuing with partial changes")

            parsed = parse_agent_output(run.output, workspace_root=workspace)
            applied = ChangeApplier(workspace).apply(parsed)
            if applied.rejected:
                self._log(record, LogLevel.WARN, "Rejected unsafe paths from agent output", {"paths": applied.rejected})
            detected = self.git.changed_paths(workspace)
            if not applied.written and not detected:
                self._log(record, LogLevel.WARN, "Agent produced no changes; using fallback scaffold")
                return self._fallback(record, request, workspace, branch, reason="Agent produced no changes")

            validation = self._validate(record, workspace)

            commit = self.git.commit(workspace, build_commit_message(request, branch))
            stats = self.git.diff_stats(workspace)
            record.metrics.lines_added = stats.added
            record.metrics.lines_removed = stats.removed
            return CodeGeneration(
                success=True,
                branch_name=branch,
                commit_hash=commit,
                modified_files=merge_modified(detected, applied.written),
                partial=run.timed_out,
                parsed_changes=len(applied.written),
                validation_results=validation,
                agent_output=run.summary(),
                generated_at=utc_now(),
            )
        except (WorkspaceError, AgentTimeout):
            raise
        except Exception as error:
            self._log(record, LogLevel.ERROR, f"Primary generation failed: {error}")
            return self._fallback(record, request, workspace, branch, reason=str(error))

    def _validate(self, record: ImplementationRecord, workspace: Path) -> Dict[str, Any]:
        if self.validator is None:
            return {}
        try:
            report = self.validator.run_validation(workspace)
        except Exception as error:
            self._log(record, LogLevel.WARN, f"Validation could not run: {error}")
            return {"error": str(error)}
        for step in report.steps:
            level = LogLevel.WARN if step.status == "failed" else LogLevel.INFO
            self._log(record, level, f"Validation {step.name}: {step.status}")
        if report.note:
            self._log(record, LogLevel.INFO, report.note)
        return report.to_dict()

    def _fallback(
        self,
        record: ImplementationRecord,
        request: ImplementationRequest,
        workspace: Path,
        branch: str | None,
        *,
        reason: str,
    ) -> CodeGeneration:
        try:
            repo = GitRepository(workspace)
            repo.discard_changes()
            if branch is None or repo.current_branch() != branch:
                branch = self.agent.create_branch(repo, request.id, prefix="fallback-implementation")
            language = "python" if detect_project_type(workspace).kind == "python" else "javascript"
            files = write_fallback_scaffold(workspace, request, timestamp_ms=self._clock_ms(), language=language)
            commit = self.git.commit(workspace, build_fallback_commit_message(request, branch))
            if commit is None:
                raise FallbackError("Fallback scaffold produced nothing to commit")
        except FallbackError as error:
            raise FallbackError(
                f"Both primary and fallback implementation failed. Primary: {reason}, Fallback: {error}"
            ) from error
        except (GitError, OSError) as error:
            raise FallbackError(
                f"Both primary and fallback implementation failed. Primary: {reason}, Fallback: {error}"
            ) from error

        record.code_generation.branch_name = branch
        self._log(record, LogLevel.WARN, "Fallback scaffold created", {"files": files, "branch": branch})
        return CodeGeneration(
            success=True,
            branch_name=branch,
            commit_hash=commit,
            modified_files=files,
            error=reason,
            fallback=True,
            validation_results={"note": "Fallback implementation - manual review required"},
            generated_at=utc_now(),
        )

    def _deploy(self, record: ImplementationRecord, context: ProjectContext, branch: str) -> None:
        assert self.deployments is not None
        try:
            result = self.deployments.deploy(
                context.repo_url,
                branch,
                context.project_name,
                repo_identifier=repository_identifier(context.repo_url),
            )
        except Exception as error:
            self._log(record, LogLevel.WARN, f"Deployment failed: {error}")
            record.deployment.branch_name = branch
            record.deployment.status = "error"
            record.deployment.error = str(error)
            return
        record.deployment = result
        if result.success:
            label = "Reused cached deployment" if result.cached else "Deployment triggered"
            self._log(record, LogLevel.SUCCESS, f"{label}: {result.url}")
        else:
            self._log(record, LogLevel.WARN, f"Deployment failed: {result.error}")

    # ------------------------------------------------------------ bookkeeping
    def _claim(self, record: ImplementationRecord) -> ImplementationRecord | None:
        """Move a pending record to ``processing``; ``None`` when it was cancelled."""
        try:
            claimed = self.store.update_status(record.id, ImplementationStatus.PROCESSING, PROGRESS_PROVISIONING)
        except InvalidTransitionError:
            LOGGER.info("[%s] Skipping record %s (no longer pending)", record.implementation_id, record.id)
            return None
        self._log(claimed, LogLevel.INFO, "Provisioning workspace")
        return claimed

    def _reload(self, record: ImplementationRecord) -> ImplementationRecord:
        return self.store.get(record.id) or record

    def _advance(
        self,
        record: ImplementationRecord,
        progress: int,
        message: str,
        details: Dict[str, Any] | None = None,
    ) -> None:
        record.transition(ImplementationStatus.PROCESSING, progress)
        self._log(record, LogLevel.INFO, message, details)

    def _fail(self, record: ImplementationRecord, error: BaseException) -> None:
        message = str(error) or error.__class__.__name__
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        record.record_failure(message, stack=stack)
        record.code_generation.success = False
        record.code_generation.error = message
        record.transition(ImplementationStatus.FAILED)
        self._log(record, LogLevel.ERROR, f"Implementation failed: {message}")

    def _log(
        self,
        record: ImplementationRecord,
        level: LogLevel,
        message: str,
        details: Dict[str, Any] | None = None,
    ) -> None:
        record.add_log(level, message, details)
        LOGGER.log(_LOG_LEVELS[level], "[%s] %s", record.implementation_id, message)
        self.store.save(record)

    # ------------------------------------------------------------ validation
    @staticmethod
    def _coerce_request(value: ImplementationRequest | Mapping[str, Any]) -> ImplementationRequest:
        if isinstance(value, ImplementationRequest):
            return value
        return ImplementationRequest.model_validate(dict(value))

    @staticmethod
    def _coerce_context(value: ProjectContext | Mapping[str, Any]) -> ProjectContext:
        if isinstance(value, ProjectContext):
            return value
        return ProjectContext.model_validate(dict(value))

    def _coerce(
        self,
        request: ImplementationRequest | Mapping[str, Any],
        context: ProjectContext | Mapping[str, Any],
    ) -> Tuple[Tuple[ImplementationRequest, ProjectContext] | None, str | None]:
        try:
            return (self._coerce_request(request), self._coerce_context(context)), None
        except ValidationError as error:
            return None, _first_error(error)
        except (TypeError, ValueError) as error:
            return None, str(error)


__all__ = [
    "BatchOutcome",
    "ImplementationOrchestrator",
    "ImplementationOutcome",
    "repository_identifier",
]
