from __future__ import annotations

import json
import sys
import textwrap
from pathlib import Path

import yaml
from typer.testing import CliRunner

from aip.cli import app

PLAN_INPUT = textwrap.dedent(
    """
    context:
      repoUrl: https://github.com/acme/demo
      projectName: Demo
      techStack: [React, Node.js]
    implementations:
      - id: sec-1
        title: Harden login
        description: Rate limit the login endpoint.
        category: Security
        difficulty: Advanced
        priority: High
      - id: docs-1
        title: Document setup
        description: Explain local setup.
        category: Documentation
        difficulty: Beginner
    """
).strip()

AGENT_SCRIPT = "print('### src/hello.js\\n```js\\nmodule.exports = () => \"hello\";\\n```')"


def _write_config(tmp_path: Path, **sections) -> Path:
    config = {
        "workspace": {"root": str(tmp_path / "ws")},
        "agent": {"command": [sys.executable, "-c", AGENT_SCRIPT], "prompt_flag": None, "timeout": 60},
        "validation": {"enabled": False},
        "git": {"pr_tool": None},
        "paths": {"db_path": "data/aip.sqlite"},
    }
    config.update(sections)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return config_path


def test_init_writes_default_config(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / "pipeline.yaml"
    runner = CliRunner()

    result = runner.invoke(
        app,
        ["init", "--config", str(config_path), "--workspace", str(tmp_path / "ws")],
        catch_exceptions=False,
    )

    assert result.exit_code == 0, result.output
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert list(data) == ["workspace", "agent", "validation", "git", "deployment", "paths"]
    assert data["workspace"]["root"] == str(tmp_path / "ws")
    assert data["paths"]["config"] == "pipeline.yaml"


def test_init_refuses_to_overwrite_without_force(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("custom: true\n", encoding="utf-8")
    runner = CliRunner()

    refused = runner.invoke(app, ["init", "--config", str(config_path)])
    assert refused.exit_code == 1
    assert "custom: true" in config_path.read_text(encoding="utf-8")

    forced = runner.invoke(app, ["init", "--config", str(config_path), "--force"])
    assert forced.exit_code == 0, forced.output
    assert "workspace" in yaml.safe_load(config_path.read_text(encoding="utf-8"))


def test_plan_prints_estimates(tmp_path: Path) -> None:
    input_path = tmp_path / "plan.yaml"
    input_path.write_text(PLAN_INPUT, encoding="utf-8")

    result = CliRunner().invoke(app, ["plan", str(input_path)], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    assert "Plan for Demo (2 item(s))" in result.output
    assert "1. Harden login [Security/Advanced] ~180 min | risk 4.5 | confidence 70%" in result.output
    assert "- Prioritize security implementations and test thoroughly" in result.output


def test_plan_json_output(tmp_path: Path) -> None:
    input_path = tmp_path / "plan.json"
    input_path.write_text(json.dumps(yaml.safe_load(PLAN_INPUT)), encoding="utf-8")

    result = CliRunner().invoke(app, ["plan", str(input_path), "--json"], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["summary"]["estimated_total_minutes"] == 180 + 24
    assert payload["summary"]["suggested_order"][0]["id"] == "sec-1"


def test_plan_rejects_missing_context(tmp_path: Path) -> None:
    input_path = tmp_path / "plan.yaml"
    input_path.write_text("implementations: []\n", encoding="utf-8")

    result = CliRunner().invoke(app, ["plan", str(input_path)])

    assert result.exit_code == 1
    assert "Missing 'context' mapping" in result.output


def test_commands_require_existing_config(tmp_path: Path) -> None:
    result = CliRunner().invoke(app, ["history", "--config", str(tmp_path / "missing.yaml")])

    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_queries_on_empty_store(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    runner = CliRunner()

    history = runner.invoke(app, ["history", "--config", str(config_path)], catch_exceptions=False)
    stats = runner.invoke(app, ["stats", "--config", str(config_path)], catch_exceptions=False)
    status = runner.invoke(
        app, ["status", "--repo-url", "https://github.com/acme/demo", "--config", str(config_path)]
    )

    assert history.exit_code == 0, history.output
    assert "Showing 0 of 0 implementation(s)" in history.output
    assert "Total 0 | completed 0" in stats.output
    assert "No implementations recorded." in status.output
    assert (tmp_path / "data" / "aip.sqlite").exists()


def test_history_rejects_unknown_status(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)

    result = CliRunner().invoke(app, ["history", "--status", "exploded", "--config", str(config_path)])

    assert result.exit_code != 0


def test_implement_runs_agent_and_records_result(tmp_path: Path, remote_repo) -> None:
    config_path = _write_config(tmp_path)
    runner = CliRunner()

    result = runner.invoke(
        app,
        [
            "--log-level",
            "ERROR",
            "implement",
            "--repo-url",
            remote_repo.url,
            "--project",
            "Demo",
            "--title",
            "Add hello helper",
            "--description",
            "Export a hello function.",
            "--id",
            "hello-1",
            "--no-pr",
            "--json",
            "--config",
            str(config_path),
        ],
        catch_exceptions=False,
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["success"] is True
    assert payload["branch_name"].startswith("ai-implementation-hello-1-")
    assert payload["modified_files"] == ["src/hello.js"]
    workspace_file = tmp_path / "ws" / "Demo" / "src" / "hello.js"
    assert workspace_file.read_text(encoding="utf-8").startswith("module.exports")

    status = runner.invoke(
        app, ["status", "--repo-url", remote_repo.url, "--config", str(config_path)], catch_exceptions=False
    )
    assert "hello-1 [completed 100%] Add hello helper" in status.output

    cancel = runner.invoke(app, ["cancel", payload["record_id"], "--config", str(config_path)])
    assert cancel.exit_code == 1
