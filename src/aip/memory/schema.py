"""Typed records tracked by the implementation store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp truncated to milliseconds."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


class InvalidTransitionError(ValueError):
    """Raised when a record is asked to move to a status it cannot reach."""


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class InputModel(BaseModel):
    """Base model for caller-supplied payloads (camelCase keys accepted)."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)


class ImplementationStatus(str, Enum):
    """Lifecycle states for an implementation attempt."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ImplementationStatus.COMPLETED, ImplementationStatus.FAILED, ImplementationStatus.CANCELLED}
)

_ALLOWED_TRANSITIONS: Dict[ImplementationStatus, frozenset[ImplementationStatus]] = {
    ImplementationStatus.PENDING: frozenset(
        {ImplementationStatus.PROCESSING, ImplementationStatus.CANCELLED}
    ),
    ImplementationStatus.PROCESSING: frozenset(
        {
            ImplementationStatus.PROCESSING,
            ImplementationStatus.COMPLETED,
            ImplementationStatus.FAILED,
        }
    ),
    ImplementationStatus.COMPLETED: frozenset(),
    ImplementationStatus.FAILED: frozenset(),
    ImplementationStatus.CANCELLED: frozenset(),
}


class LogLevel(str, Enum):
    """Severity of an audit-trail entry."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


def _require_text(value: Any) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValueError("must be a non-empty string")
    return text


class ImplementationRequest(InputModel):
    """A single improvement recommendation to implement."""

    id: str
    title: str
    description: str
    category: str = "Quality"
    difficulty: str = "Intermediate"
    priority: str = "Medium"
    estimated_time: str = Field(default="1-2 hours", alias="estimatedTime")
    tech_stack: List[str] = Field(default_factory=list, alias="techStack")

    @field_validator("id", "title", "description", mode="before")
    @classmethod
    def _non_blank(cls, value: Any) -> str:
        return _require_text(value)


class ProjectContext(InputModel):
    """Repository-level context shared by every item of a run."""

    repo_url: str = Field(alias="repoUrl")
    project_name: str = Field(alias="projectName")
    tech_stack: List[str] = Field(default_factory=list, alias="techStack")
    difficulty: str = "Intermediate"
    category: str = "Quality"
    analysis_data: Optional[Dict[str, Any]] = Field(default=None, alias="analysisData")

    @field_validator("repo_url", "project_name", mode="before")
    @classmethod
    def _non_blank(cls, value: Any) -> str:
        return _require_text(value)


class CodeGeneration(RecordModel):
    """Outcome of the code-generation stage."""

    success: bool = False
    branch_name: Optional[str] = None
    commit_hash: Optional[str] = None
    modified_files: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    fallback: bool = False
    partial: bool = False
    parsed_changes: int = 0
    validation_results: Dict[str, Any] = Field(default_factory=dict)
    agent_output: Optional[str] = None
    generated_at: Optional[datetime] = None


class PullRequestInfo(RecordModel):
    """Outcome of the push / pull-request stage."""

    success: bool = False
    url: Optional[str] = None
    number: Optional[int] = None
    state: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    branch_name: Optional[str] = None
    local_branch: Optional[str] = None
    pushed: bool = False
    created_at: Optional[datetime] = None


class DeploymentInfo(RecordModel):
    """Outcome of the deployment stage."""

    success: bool = False
    url: Optional[str] = None
    deployment_id: Optional[str] = None
    branch_name: Optional[str] = None
    status: str = "pending"
    error: Optional[str] = None
    cached: bool = False
    deployed_at: Optional[datetime] = None
    build_time_ms: Optional[int] = None


class LogEntry(RecordModel):
    """Chronological audit-trail entry."""

    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel = LogLevel.INFO
    message: str
    details: Optional[Dict[str, Any]] = None


class Metrics(RecordModel):
    """Change metrics for a generated commit."""

    files_processed: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    test_coverage: float = 0.0


class ErrorInfo(RecordModel):
    """Structured failure payload attached to failed records."""

    message: str
    stack: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utc_now)


class ImplementationRecord(RecordModel):
    """Persisted state of a single implementation attempt."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    implementation_id: str
    title: str
    description: str
    category: str = "Quality"
    difficulty: str = "Intermediate"
    priority: str = "Medium"
    estimated_time: str = "1-2 hours"
    project_name: str
    repo_url: str
    tech_stack: List[str] = Field(default_factory=list)
    status: ImplementationStatus = ImplementationStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    code_generation: CodeGeneration = Field(default_factory=CodeGeneration)
    pull_request: PullRequestInfo = Field(default_factory=PullRequestInfo)
    deployment: DeploymentInfo = Field(default_factory=DeploymentInfo)
    logs: List[LogEntry] = Field(default_factory=list)
    metrics: Metrics = Field(default_factory=Metrics)
    error: Optional[ErrorInfo] = None
    analysis_data: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    batch_id: Optional[str] = None
    batch_order: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_request(
        cls,
        request: ImplementationRequest,
        context: ProjectContext,
        *,
        batch_id: str | None = None,
        batch_order: int | None = None,
    ) -> "ImplementationRecord":
        return cls(
            implementation_id=request.id,
            title=request.title,
            description=request.description,
            category=request.category,
            difficulty=request.difficulty,
            priority=request.priority,
            estimated_time=request.estimated_time,
            project_name=context.project_name,
            repo_url=context.repo_url,
            tech_stack=list(request.tech_stack or context.tech_stack),
            analysis_data=context.analysis_data,
            batch_id=batch_id,
            batch_order=batch_order,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_successful(self) -> bool:
        return self.status == ImplementationStatus.COMPLETED and self.code_generation.success

    @property
    def duration_formatted(self) -> str | None:
        if self.duration_ms is None:
            return None
        seconds = self.duration_ms // 1000
        minutes = seconds // 60
        hours = minutes // 60
        if hours > 0:
            return f"{hours}h {minutes % 60}m {seconds % 60}s"
        if minutes > 0:
            return f"{minutes}m {seconds % 60}s"
        return f"{seconds}s"

    def transition(
        self,
        status: ImplementationStatus,
        progress: int | None = None,
        *,
        now: datetime | None = None,
    ) -> None:
        """Move the record to ``status`` enforcing the lifecycle rules.

        Transitions are monotonic: ``pending`` is never revisited, terminal
        states are final, and ``progress`` never decreases.  Entering
        ``processing`` stamps ``started_at`` once; entering a terminal state
        stamps ``completed_at`` and ``duration_ms`` exactly once.
        """

        status = ImplementationStatus(status)
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot move implementation {self.id} from {self.status.value} to {status.value}"
            )
        if progress is not None:
            if not 0 <= progress <= 100:
                raise InvalidTransitionError(f"Progress out of range: {progress}")
            if progress < self.progress:
                raise InvalidTransitionError(
                    f"Progress may not decrease ({self.progress} -> {progress})"
                )

        timestamp = now or utc_now()
        self.status = status
        if progress is not None:
            self.progress = progress
        if status == ImplementationStatus.PROCESSING and self.started_at is None:
            self.started_at = timestamp
        elif status in TERMINAL_STATUSES and self.completed_at is None:
            self.completed_at = timestamp
            if self.started_at is not None:
                self.duration_ms = (self.completed_at - self.started_at) // timedelta(milliseconds=1)
        self.updated_at = timestamp

    def add_log(
        self,
        level: LogLevel | str,
        message: str,
        details: Dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> LogEntry:
        timestamp = now or utc_now()
        if self.logs and timestamp < self.logs[-1].timestamp:
            timestamp = self.logs[-1].timestamp
        entry = LogEntry(timestamp=timestamp, level=LogLevel(level), message=message, details=details)
        self.logs.append(entry)
        self.updated_at = timestamp
        return entry

    def record_failure(self, message: str, *, stack: str | None = None) -> None:
        self.error = ErrorInfo(message=message, stack=stack)


__all__ = [
    "CodeGeneration",
    "DeploymentInfo",
    "ErrorInfo",
    "ImplementationRecord",
    "ImplementationRequest",
    "ImplementationStatus",
    "InvalidTransitionError",
    "LogEntry",
    "LogLevel",
    "Metrics",
    "ProjectContext",
    "PullRequestInfo",
    "TERMINAL_STATUSES",
    "utc_now",
]
