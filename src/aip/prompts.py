"""Prompt templates and helpers shared by the implementation pipeline."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from aip.memory.schema import ImplementationRequest, ProjectContext

FENCE = "```"

OUTPUT_FORMAT_INSTRUCTION = (
    "You cannot edit files directly. For every file you create or modify, emit the complete file "
    "content using exactly one of the two formats below so the pipeline can parse and write it."
)

AGENT_IGNORE_TEMPLATE = """# Files the agent should not read or rewrite
*.sql
*.db
*.sqlite
*.log
*.tmp
*.temp
node_modules/
.git/
.env
.env.*
dist/
build/
coverage/
*.min.js
*.bundle.js
package-lock.json
yarn.lock
*.d.ts
"""

_LANGUAGE_RULES: tuple[tuple[tuple[str, ...], str, tuple[str, ...]], ...] = (
    (
        ("Python",),
        "Python Implementation Rules",
        (
            "Use .py file extensions",
            "Follow PEP 8 style guidelines",
            "Use type hints for function parameters and returns",
            "Handle exceptions with try/except blocks around fallible calls",
            "Prefer context managers and comprehensions where they read naturally",
            "Write docstrings for public functions and classes",
            "Use pytest or unittest for testing",
            "Use flake8 or pylint for linting",
        ),
    ),
    (
        ("JavaScript", "TypeScript", "Node.js"),
        "JavaScript/TypeScript Implementation Rules",
        (
            "Use .js or .ts file extensions",
            "Follow ES2015+ module conventions used by the project (import/export or require)",
            "Handle errors with try/catch around asynchronous calls",
            "Use async/await for asynchronous operations",
            "Use Jest or Mocha for testing",
            "Use ESLint for linting",
        ),
    ),
    (
        ("Java",),
        "Java Implementation Rules",
        (
            "Use .java file extensions",
            "Follow Java naming conventions (PascalCase classes, camelCase methods)",
            "Keep the existing package structure",
            "Use Maven or Gradle for dependency management",
            "Use JUnit for testing",
        ),
    ),
    (
        ("Rust",),
        "Rust Implementation Rules",
        (
            "Use .rs file extensions",
            "Follow Rust naming conventions (snake_case functions, PascalCase types)",
            "Return Result<T, E> or Option<T> instead of panicking",
            "Use cargo test for testing and clippy for linting",
        ),
    ),
    (
        ("Go",),
        "Go Implementation Rules",
        (
            "Use .go file extensions",
            "Return errors as values and check them at every call site",
            "Use go mod for dependency management",
            "Use go test for testing and go vet for static analysis",
        ),
    ),
)

_STACK_RULES: tuple[tuple[tuple[str, ...], str, tuple[str, ...]], ...] = (
    (
        ("React", "Next.js"),
        "React/Next.js Rules",
        (
            "Use functional components with hooks",
            "Add error boundaries around risky subtrees",
            "Validate component props",
        ),
    ),
    (
        ("Node.js", "Express"),
        "Node.js/Express Rules",
        (
            "Use middleware for error handling",
            "Follow RESTful API conventions",
            "Read configuration from environment variables",
            "Validate and sanitise request payloads",
        ),
    ),
    (
        ("Python",),
        "Python Framework Rules",
        (
            "Follow the conventions of the framework in use (Django, Flask, FastAPI)",
            "Use the framework's testing utilities",
        ),
    ),
)


def _render_rule_blocks(
    tech_stack: Sequence[str],
    table: Sequence[tuple[tuple[str, ...], str, tuple[str, ...]]],
    fallback: str,
) -> str:
    stack = set(tech_stack)
    blocks: list[str] = []
    for triggers, heading, rules in table:
        if not stack.intersection(triggers):
            continue
        body = "\n".join(f"- {rule}" for rule in rules)
        blocks.append(f"#### {heading}\n{body}")
    if not blocks:
        return f"- {fallback}"
    return "\n\n".join(blocks)


def render_language_rules(tech_stack: Sequence[str]) -> str:
    """Return the language-specific rule blocks for ``tech_stack``."""
    return _render_rule_blocks(
        tech_stack,
        _LANGUAGE_RULES,
        "Follow general best practices for the detected programming language",
    )


def render_stack_rules(tech_stack: Sequence[str]) -> str:
    """Return framework rule blocks for ``tech_stack``."""
    return _render_rule_blocks(
        tech_stack,
        _STACK_RULES,
        "Follow general best practices for the technologies used",
    )


def _bullet_list(values: Any, empty: str) -> str:
    if not isinstance(values, (list, tuple)) or not values:
        return empty
    return "\n".join(f"- {value}" for value in values)


def render_analysis_context(analysis: Mapping[str, Any] | None) -> str:
    """Format quality-analysis scores and findings for the agent context file."""
    if not analysis:
        return "No analysis data available"
    scores = (
        ("Overall Score", "overallScore"),
        ("Code Quality", "codeQuality"),
        ("Security", "security"),
        ("Performance", "performance"),
        ("Maintainability", "maintainability"),
    )
    lines = ["### Current Project Analysis"]
    for label, key in scores:
        value = analysis.get(key)
        if value is not None:
            lines.append(f"- **{label}**: {value}/100")
    lines.append("")
    lines.append("### Key Recommendations")
    lines.append(_bullet_list(analysis.get("recommendations"), "No specific recommendations available"))
    lines.append("")
    lines.append("### Areas for Improvement")
    lines.append(_bullet_list(analysis.get("improvements"), "No specific improvements identified"))
    lines.append("")
    lines.append("### Project Strengths")
    lines.append(_bullet_list(analysis.get("strengths"), "No specific strengths identified"))
    return "\n".join(lines)


def render_agent_context(context: ProjectContext) -> str:
    """Render the project context file the agent reads before generating code."""
    stack = ", ".join(context.tech_stack) or "Unknown"
    return f"""# {context.project_name} - Implementation Agent Context

## Project Context
- **Name**: {context.project_name}
- **Repository**: {context.repo_url}
- **Category**: {context.category}
- **Difficulty**: {context.difficulty}
- **Tech Stack**: {stack}

## Project Type Detection
Before changing any code, identify the project language from its marker files:
- `package.json` -> Node.js/JavaScript
- `requirements.txt`, `setup.py`, `pyproject.toml` -> Python
- `pom.xml` -> Java (Maven)
- `build.gradle` -> Java (Gradle)
- `Cargo.toml` -> Rust
- `go.mod` -> Go

## General Guidelines
- Follow the existing code style and patterns in the project
- Keep backward compatibility unless the task is an explicit refactor
- Validate inputs and handle errors at the boundaries
- Never hardcode credentials or other secrets

## Language-Specific Rules
{render_language_rules(context.tech_stack)}

## Technology-Specific Rules
{render_stack_rules(context.tech_stack)}

## Analysis Context
{render_analysis_context(context.analysis_data)}

## Automation Rules
- Non-interactive mode is always enabled
- Do not run shell commands, tests or linters; the pipeline validates the result
"""


def build_prompt(request: ImplementationRequest, *, context_file: str = ".agent/AGENT.md") -> str:
    """Return the implementation prompt for ``request``.

    The prompt restricts the agent to the two output conventions the parser
    understands: a markdown heading naming the file, or an explicit
    "Here is the updated content for <file>:" declaration, each followed by a
    fenced block holding the complete file.
    """

    return f"""Implement the following improvement in this repository.

TASK: {request.title}
DESCRIPTION: {request.description}
CATEGORY: {request.category}
PRIORITY: {request.priority}
DIFFICULTY: {request.difficulty}

{OUTPUT_FORMAT_INSTRUCTION}

FORMAT 1 - markdown heading with the file path:
### path/to/file.ext

{FENCE}language
<complete file content>
{FENCE}

FORMAT 2 - explicit declaration:
Here is the updated content for path/to/file.ext:

{FENCE}language
<complete file content>
{FENCE}

REQUIREMENTS:
- Always include the complete file content, never a partial snippet or a diff
- Use paths relative to the repository root with the correct file extension
- Put each file in its own fenced block tagged with its language
- Make minimal, focused changes; create new files only when necessary
- Follow security best practices for {request.category} work

CONSTRAINTS:
- Do not run external commands, tests or linters
- Use the project context defined in {context_file}
"""


__all__ = [
    "AGENT_IGNORE_TEMPLATE",
    "OUTPUT_FORMAT_INSTRUCTION",
    "build_prompt",
    "render_agent_context",
    "render_analysis_context",
    "render_language_rules",
    "render_stack_rules",
]
