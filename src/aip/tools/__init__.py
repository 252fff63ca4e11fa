"""Tool integrations used by the implementation pipeline."""

from .changes import AppliedChanges, ChangeApplier, ChangeApplyError, FallbackError, write_fallback_scaffold
from .deploy import DeploymentCache, DeploymentError, InMemoryTTLCache, VercelDeployer
from .output_parser import ParsedFileChange, is_valid_filename, parse_agent_output
from .publish import GhCodeHost, GitOperator, PullRequestResult, PushResult
from .validation import ProjectType, ValidationDispatcher, ValidationReport, detect_project_type
from .vcs import GitError, GitRepository
from .workspace import WorkspaceError, WorkspaceManager

__all__ = [
    "AppliedChanges",
    "ChangeApplier",
    "ChangeApplyError",
    "DeploymentCache",
    "DeploymentError",
    "FallbackError",
    "GhCodeHost",
    "GitError",
    "GitOperator",
    "GitRepository",
    "InMemoryTTLCache",
    "ParsedFileChange",
    "ProjectType",
    "PullRequestResult",
    "PushResult",
    "ValidationDispatcher",
    "ValidationReport",
    "VercelDeployer",
    "WorkspaceError",
    "WorkspaceManager",
    "detect_project_type",
    "is_valid_filename",
    "parse_agent_output",
    "write_fallback_scaffold",
]
