"""CLI commands for running and inspecting AI implementation pipelines."""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer
import yaml
from pydantic import ValidationError

from .memory.schema import ImplementationRecord, ImplementationRequest, ImplementationStatus, ProjectContext
from .memory.store import ImplementationStore
from .orchestrator import BatchOutcome, ImplementationOrchestrator, ImplementationOutcome
from .planning import generate_plan
from .settings import DEFAULT_WORKSPACE_ROOT, PipelineSettings
from .utils.slug import slugify

APP_HELP = "AI implementation pipeline CLI entry point."
DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "workspace": {
        "root": DEFAULT_WORKSPACE_ROOT,
        "default_branch": "main",
        "remote": "origin",
    },
    "agent": {
        "command": ["gemini"],
        "prompt_flag": "-p",
        "timeout": 120,
        "max_output_bytes": 20 * 1024 * 1024,
        "context_dir": ".agent",
    },
    "validation": {
        "enabled": True,
        "lint_timeout": 60,
        "test_timeout": 120,
        "long_test_timeout": 180,
    },
    "git": {
        "pr_tool": "gh",
        "push_timeout": 120,
        "author_name": "AI Implementation Bot",
        "author_email": "bot@example.com",
    },
    "deployment": {
        "enabled": False,
        "provider": "vercel",
        "ttl_seconds": 300,
        "persisted_max_age_seconds": None,
        "api_url": "https://api.vercel.com/v13/deployments",
    },
    "paths": {
        "db_path": "data/aip.sqlite",
        "config": DEFAULT_CONFIG_NAME,
    },
}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(help=APP_HELP)


def _copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        typer.echo(f"Config file not found: {config_path}. Run `aip init` first.")
        raise typer.Exit(code=1)

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    return data


def _load_settings(config: str) -> PipelineSettings:
    config_path = Path(config)
    config_data = load_config(config_path)
    return PipelineSettings.from_config(config_data, base_dir=config_path.resolve().parent)


def _load_payload(path: Path) -> Dict[str, Any]:
    """Read a batch/plan file (``.json`` or YAML) into a mapping."""
    if not path.exists():
        typer.echo(f"Input file not found: {path}")
        raise typer.Exit(code=1)
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as error:
        typer.echo(f"Failed to parse {path}: {error}")
        raise typer.Exit(code=1) from error
    if not isinstance(data, dict):
        typer.echo(f"{path} must contain a mapping with 'context' and 'implementations'.")
        raise typer.Exit(code=1)
    return data


def _parse_payload(data: Dict[str, Any]) -> Tuple[ProjectContext, List[Dict[str, Any]]]:
    context_data = data.get("context") or data.get("projectContext")
    items = data.get("implementations")
    if not isinstance(context_data, dict):
        typer.echo("Missing 'context' mapping (repoUrl, projectName, ...).")
        raise typer.Exit(code=1)
    if not isinstance(items, list) or not items:
        typer.echo("'implementations' must be a non-empty list.")
        raise typer.Exit(code=1)
    try:
        context = ProjectContext.model_validate(context_data)
    except ValidationError as error:
        typer.echo(f"Invalid project context: {error}")
        raise typer.Exit(code=1) from error
    return context, [item for item in items if isinstance(item, dict)]


def _render_outcome(outcome: ImplementationOutcome) -> None:
    label = outcome.implementation_id or "?"
    if not outcome.success:
        typer.echo(f"[{label}] {outcome.status or 'invalid'}: {outcome.error or 'unknown error'}")
        return
    mode = " (fallback scaffold)" if outcome.fallback else ""
    typer.echo(f"[{label}] completed{mode} on {outcome.branch_name}")
    if outcome.commit_hash:
        typer.echo(f"  commit: {outcome.commit_hash[:12]}")
    if outcome.modified_files:
        typer.echo(f"  files: {', '.join(outcome.modified_files)}")
    if outcome.pull_request:
        pr = outcome.pull_request
        typer.echo(f"  pull request: {pr.get('url') or pr.get('message') or pr.get('error')}")
    if outcome.deployment:
        deployment = outcome.deployment
        typer.echo(f"  deployment: {deployment.get('url') or deployment.get('status')}")


def _render_batch(batch: BatchOutcome) -> None:
    typer.echo(f"Batch {batch.batch_id}")
    for outcome in batch.outcomes:
        _render_outcome(outcome)
    typer.echo(
        f"Summary: {batch.successful}/{batch.total} successful | failed {batch.failed} | "
        f"cancelled {batch.cancelled} | success rate {batch.success_rate}%"
    )


def _render_record(record: ImplementationRecord) -> None:
    branch = record.code_generation.branch_name or "-"
    duration = record.duration_formatted or "-"
    typer.echo(
        f"- {record.implementation_id} [{record.status.value} {record.progress}%] "
        f"{record.title} | branch {branch} | {duration} | id {record.id}"
    )


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Python logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """Configure logging before any command runs."""
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}", param_hint="--log-level")
    logging.basicConfig(level=level, format=LOG_FORMAT)


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
    workspace: Optional[str] = typer.Option(
        None,
        "--workspace",
        "-w",
        help="Directory under which repositories are cloned.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing configuration file.",
    ),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)

    config_data = _copy_config_template()
    config_data["paths"]["config"] = config_path.name
    if workspace:
        config_data["workspace"]["root"] = workspace
    _write_config(config_path, config_data)
    typer.echo(f"Wrote configuration to {config_path}")


@app.command()
def implement(
    repo_url: str = typer.Option(..., "--repo-url", "-r", help="Repository to clone and modify."),
    project: str = typer.Option(..., "--project", "-p", help="Project name (workspace directory)."),
    title: str = typer.Option(..., "--title", "-t", help="Recommendation title."),
    description: str = typer.Option(..., "--description", "-d", help="Recommendation description."),
    implementation_id: Optional[str] = typer.Option(None, "--id", help="Recommendation identifier."),
    category: str = typer.Option("Quality", "--category", help="Recommendation category."),
    difficulty: str = typer.Option("Intermediate", "--difficulty", help="Beginner, Intermediate or Advanced."),
    priority: str = typer.Option("Medium", "--priority", help="Low, Medium or High."),
    tech: List[str] = typer.Option(None, "--tech", help="Technology in the stack (repeatable)."),
    create_pr: bool = typer.Option(True, "--pr/--no-pr", help="Push the branch and open a pull request."),
    deploy: bool = typer.Option(False, "--deploy/--no-deploy", help="Trigger a preview deployment."),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
) -> None:
    """Implement a single recommendation."""
    settings = _load_settings(config)
    request = {
        "id": implementation_id or slugify(title, fallback="cli"),
        "title": title,
        "description": description,
        "category": category,
        "difficulty": difficulty,
        "priority": priority,
        "techStack": list(tech or []),
    }
    context = {"repoUrl": repo_url, "projectName": project, "techStack": list(tech or [])}

    with ImplementationStore(settings.db_path) as store:
        orchestrator = ImplementationOrchestrator.from_settings(settings, store=store, project_name=project)
        outcome = orchestrator.implement(request, context, create_pr=create_pr, deploy=deploy)

    if as_json:
        _echo_json(outcome.to_dict())
    else:
        _render_outcome(outcome)
    if not outcome.success:
        raise typer.Exit(code=1)


@app.command()
def batch(
    input_file: Path = typer.Argument(..., help="YAML or JSON file with 'context' and 'implementations'."),
    create_pr: bool = typer.Option(True, "--pr/--no-pr", help="Push branches and open pull requests."),
    deploy: bool = typer.Option(False, "--deploy/--no-deploy", help="Trigger preview deployments."),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
) -> None:
    """Implement several recommendations sequentially in one workspace."""
    settings = _load_settings(config)
    context, items = _parse_payload(_load_payload(input_file))

    with ImplementationStore(settings.db_path) as store:
        orchestrator = ImplementationOrchestrator.from_settings(
            settings, store=store, project_name=context.project_name
        )
        result = orchestrator.run_batch(items, context, create_pr=create_pr, deploy=deploy)

    if as_json:
        _echo_json(result.to_dict())
    else:
        _render_batch(result)
    if result.total and result.successful == 0:
        raise typer.Exit(code=1)


@app.command()
def plan(
    input_file: Path = typer.Argument(..., help="YAML or JSON file with 'context' and 'implementations'."),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON."),
) -> None:
    """Estimate effort and risk without touching any repository."""
    context, items = _parse_payload(_load_payload(input_file))
    try:
        requests = [ImplementationRequest.model_validate(item) for item in items]
    except ValidationError as error:
        typer.echo(f"Invalid implementation request: {error}")
        raise typer.Exit(code=1) from error
    implementation_plan = generate_plan(context, requests)

    if as_json:
        _echo_json(implementation_plan.to_dict())
        return

    typer.echo(f"Plan for {context.project_name} ({len(implementation_plan.items)} item(s))")
    for item in implementation_plan.items:
        typer.echo(
            f"{item.order}. {item.request.title} [{item.request.category}/{item.request.difficulty}] "
            f"~{item.minutes} min | risk {item.risk} | confidence {item.confidence}%"
        )
    typer.echo(
        f"Total: {implementation_plan.total_minutes} min | average risk {implementation_plan.average_risk} | "
        f"batch size {implementation_plan.recommended_batch_size()}"
    )
    for note in implementation_plan.recommendations():
        typer.echo(f"- {note}")


@app.command()
def status(
    repo_url: str = typer.Option(..., "--repo-url", "-r", help="Repository to report on."),
    implementation_id: Optional[str] = typer.Option(None, "--id", help="Only show this recommendation."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
) -> None:
    """Show implementation records for a repository."""
    settings = _load_settings(config)
    with ImplementationStore(settings.db_path) as store:
        records = store.find_by_repository(repo_url)
    if implementation_id is not None:
        records = [record for record in records if record.implementation_id == implementation_id]

    if not records:
        typer.echo("No implementations recorded.")
        return
    for record in records:
        _render_record(record)


@app.command()
def cancel(
    record_id: str = typer.Argument(..., help="Identifier of a pending implementation record."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
) -> None:
    """Cancel an implementation that has not started yet."""
    settings = _load_settings(config)
    with ImplementationStore(settings.db_path) as store:
        orchestrator = ImplementationOrchestrator.from_settings(settings, store=store)
        try:
            record = orchestrator.cancel(record_id)
        except KeyError as error:
            typer.echo(f"Unknown implementation record: {record_id}")
            raise typer.Exit(code=1) from error
        except ValueError as error:
            typer.echo(str(error))
            raise typer.Exit(code=1) from error
    typer.echo(f"Cancelled {record.implementation_id} ({record.id})")


@app.command()
def history(
    repo_url: Optional[str] = typer.Option(None, "--repo-url", "-r", help="Filter by repository."),
    status_filter: Optional[str] = typer.Option(None, "--status", help="Filter by status."),
    category: Optional[str] = typer.Option(None, "--category", help="Filter by category."),
    limit: int = typer.Option(20, "--limit", min=1, help="Page size."),
    offset: int = typer.Option(0, "--offset", min=0, help="Records to skip."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
) -> None:
    """Page through past implementation attempts."""
    settings = _load_settings(config)
    status_value: ImplementationStatus | None = None
    if status_filter:
        try:
            status_value = ImplementationStatus(status_filter.lower())
        except ValueError as error:
            raise typer.BadParameter(f"Unknown status: {status_filter}", param_hint="--status") from error

    with ImplementationStore(settings.db_path) as store:
        records, total = store.list_history(
            repo_url=repo_url, status=status_value, category=category, limit=limit, offset=offset
        )
    typer.echo(f"Showing {len(records)} of {total} implementation(s)")
    for record in records:
        _render_record(record)


@app.command()
def stats(
    repo_url: Optional[str] = typer.Option(None, "--repo-url", "-r", help="Filter by repository."),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Filter by project."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
) -> None:
    """Report aggregate outcome statistics."""
    settings = _load_settings(config)
    with ImplementationStore(settings.db_path) as store:
        totals = store.statistics(repo_url=repo_url, project_name=project)
        categories = store.category_statistics(repo_url=repo_url, project_name=project)

    typer.echo(
        f"Total {totals['total']} | completed {totals['completed']} | failed {totals['failed']} | "
        f"processing {totals['processing']} | pending {totals['pending']} | cancelled {totals['cancelled']}"
    )
    average = totals.get("average_duration_ms")
    if average:
        typer.echo(f"Average duration: {int(average)} ms")
    typer.echo(
        f"Files processed {totals['total_files_processed']} | "
        f"+{totals['total_lines_added']} / -{totals['total_lines_removed']} lines"
    )
    for entry in categories:
        typer.echo(f"- {entry['category']}: {entry['completed']}/{entry['count']} completed")


@app.command()
def deployments(
    repo_url: str = typer.Option(..., "--repo-url", "-r", help="Repository to report on."),
    limit: int = typer.Option(10, "--limit", min=1, help="Maximum deployments to list."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
) -> None:
    """List successful deployments recorded for a repository."""
    settings = _load_settings(config)
    with ImplementationStore(settings.db_path) as store:
        records = store.repository_deployments(repo_url, limit)

    if not records:
        typer.echo("No deployments recorded.")
        return
    for record in records:
        deployment = record.deployment
        typer.echo(
            f"- {record.implementation_id} {deployment.branch_name} -> {deployment.url} "
            f"[{deployment.status}]{' (cached)' if deployment.cached else ''}"
        )


if __name__ == "__main__":
    app()
