"""Extract file edits from free-text agent responses.

The agent is instructed to emit every file as a fenced block introduced by a
directive line.  Two directive kinds are recognised:

* **header** - a markdown heading naming the file (``### src/app.py``,
  optionally back-quoted or single-quoted) or a line holding only a quoted
  filename;
* **declaration** - ``Here is the updated content for <file>:`` and the
  ``Updated content for`` / ``Create|Update|Modify <file>:`` variants.

Header matches take precedence over declaration matches, and a filename is
only accepted once (first match wins).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Literal, Optional, Sequence

DirectiveKind = Literal["header", "declaration"]

_NAME = r"[`']?(?P<name>[^`'\s]+\.[A-Za-z0-9]{1,10})[`']?"

_HEADER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"^\s*#{{1,6}}\s+{_NAME}\s*:?\s*$"),
    re.compile(r"^\s*[`'](?P<name>[^`'\s]+\.[A-Za-z0-9]{1,10})[`']\s*:?\s*$"),
)

_DECLARATION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"^\s*Here is the updated content for\s+{_NAME}\s*:?\s*$", re.IGNORECASE),
    re.compile(rf"^\s*Updated?\s+(?:content\s+)?for\s+{_NAME}\s*:\s*$", re.IGNORECASE),
    re.compile(rf"^\s*(?:Create|Update|Modify)\s+{_NAME}\s*:\s*$", re.IGNORECASE),
)

_FENCE_OPEN = re.compile(r"^\s*```\s*(?P<tag>[\w+#.-]*)\s*$")
_FENCE_CLOSE = re.compile(r"^\s*```\s*$")

_INVALID_FILENAME_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\s"),
    re.compile(r"^(import|from|export|const|let|var|function|class|def)\s"),
    re.compile(r'[<>:"|?*]'),
    re.compile(r"^\d+\."),
    re.compile(r"^-\s"),
)

_LANGUAGE_BY_EXTENSION = {
    "js": "javascript",
    "ts": "typescript",
    "py": "python",
    "html": "html",
    "css": "css",
    "json": "json",
    "md": "markdown",
    "yml": "yaml",
    "yaml": "yaml",
}


@dataclass(slots=True, frozen=True)
class ParsedFileChange:
    """A complete file body extracted from agent output."""

    filename: str
    content: str
    language: str
    source: DirectiveKind

    def to_dict(self) -> dict[str, str]:
        return {
            "filename": self.filename,
            "content": self.content,
            "language": self.language,
            "source": self.source,
        }


@dataclass(slots=True)
class _FencedBlock:
    tag: str
    content: str
    directive: Optional[str]


def is_valid_filename(candidate: object) -> bool:
    """Return ``True`` when ``candidate`` looks like a file path rather than prose or code."""
    if not isinstance(candidate, str) or not candidate:
        return False
    if "." not in candidate:
        return False
    if len(candidate) < 3 or len(candidate) > 100:
        return False
    return not any(pattern.search(candidate) for pattern in _INVALID_FILENAME_PATTERNS)


def language_for(filename: str, fence_tag: str = "") -> str:
    """Infer a language label from ``filename``, falling back to the fence tag."""
    suffix = PurePosixPath(filename).suffix.lstrip(".").lower()
    if suffix in _LANGUAGE_BY_EXTENSION:
        return _LANGUAGE_BY_EXTENSION[suffix]
    if fence_tag:
        return fence_tag.lower()
    return suffix


def _fenced_blocks(lines: Sequence[str]) -> List[_FencedBlock]:
    blocks: List[_FencedBlock] = []
    index = 0
    while index < len(lines):
        opening = _FENCE_OPEN.match(lines[index])
        if opening is None:
            index += 1
            continue
        directive: Optional[str] = None
        for back in range(index - 1, -1, -1):
            if lines[back].strip():
                directive = lines[back]
                break
        body: List[str] = []
        cursor = index + 1
        while cursor < len(lines) and not _FENCE_CLOSE.match(lines[cursor]):
            body.append(lines[cursor])
            cursor += 1
        if cursor >= len(lines):
            # Unterminated fence; nothing after it can be trusted.
            break
        blocks.append(_FencedBlock(tag=opening.group("tag"), content="\n".join(body), directive=directive))
        index = cursor + 1
    return blocks


def _classify(directive: Optional[str]) -> tuple[Optional[DirectiveKind], Optional[str]]:
    if directive is None:
        return None, None
    for pattern in _HEADER_PATTERNS:
        match = pattern.match(directive)
        if match:
            return "header", match.group("name")
    for pattern in _DECLARATION_PATTERNS:
        match = pattern.match(directive)
        if match:
            return "declaration", match.group("name")
    return None, None


def _normalise_filename(name: str, workspace_root: Optional[str]) -> str:
    cleaned = name.strip().replace("\\", "/")
    if workspace_root:
        prefix = workspace_root.rstrip("/") + "/"
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned.lstrip("/")


def parse_agent_output(
    output: str,
    *,
    workspace_root: Path | str | None = None,
) -> List[ParsedFileChange]:
    """Return the ordered file changes found in ``output``."""

    if not output or not output.strip():
        return []
    root = Path(workspace_root).as_posix() if workspace_root is not None else None
    lines = output.replace("\r\n", "\n").split("\n")

    candidates: dict[DirectiveKind, List[ParsedFileChange]] = {"header": [], "declaration": []}
    for block in _fenced_blocks(lines):
        kind, raw_name = _classify(block.directive)
        if kind is None or raw_name is None:
            continue
        if not is_valid_filename(raw_name):
            continue
        content = block.content.strip("\n").rstrip()
        if not content.strip():
            continue
        filename = _normalise_filename(raw_name, root)
        if not filename:
            continue
        candidates[kind].append(
            ParsedFileChange(
                filename=filename,
                content=content,
                language=language_for(filename, block.tag),
                source=kind,
            )
        )

    seen: set[str] = set()
    changes: List[ParsedFileChange] = []
    for change in (*candidates["header"], *candidates["declaration"]):
        if change.filename in seen:
            continue
        seen.add(change.filename)
        changes.append(change)
    return changes


__all__ = ["ParsedFileChange", "is_valid_filename", "language_for", "parse_agent_output"]
