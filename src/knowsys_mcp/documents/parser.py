"""Parser for YAML front matter documents.

A document is an optional ``---`` delimited YAML header followed by a free-form
Markdown body. ``serialize`` is the inverse of ``parse``.
"""

import re
from dataclasses import dataclass, field
from typing import Any

import yaml

from knowsys_mcp.errors import MalformedDocument

# Header fields that must hold a list when present
LIST_FIELDS = ("topics", "phases", "files", "progress")

FRONTMATTER_PATTERN = re.compile(
    r"\A---[ \t]*\n(.*?)^---[ \t]*(?:\n|\Z)", re.DOTALL | re.MULTILINE
)
HEADING_PATTERN = re.compile(r"^#\s+(.+?)\s*$", re.MULTILINE)


@dataclass
class ParsedDocument:
    """Front matter mapping plus the remaining body text."""

    metadata: dict[str, Any] = field(default_factory=dict)
    body: str = ""


def has_frontmatter(content: str) -> bool:
    """Check whether content opens a front matter block."""
    first_line = content.split("\n", 1)[0]
    return first_line.rstrip(" \t\r") == "---"


def parse(content: str, file_path: str | None = None) -> ParsedDocument:
    """
    Split YAML front matter from a Markdown document.

    Args:
        content: The full document text
        file_path: Optional path, only used in error messages

    Returns:
        ParsedDocument with the header mapping (empty if there is no header)
        and the body as it follows the closing delimiter. Windows line
        endings are read as plain newlines.

    Raises:
        MalformedDocument: If the header is unterminated, is not a YAML mapping,
            or a list field holds something other than a list.
    """
    where = file_path or "<document>"
    content = content.replace("\r\n", "\n")
    if not has_frontmatter(content):
        return ParsedDocument(metadata={}, body=content)

    match = FRONTMATTER_PATTERN.match(content)
    if match is None:
        raise MalformedDocument(
            f"front matter in {where} is opened but never closed",
            operation="parse",
            hint="add a closing '---' line after the header",
        )

    try:
        raw = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        raise MalformedDocument(
            f"invalid YAML front matter in {where}: {e}",
            operation="parse",
        ) from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise MalformedDocument(
            f"front matter in {where} must be a mapping, got {type(raw).__name__}",
            operation="parse",
        )

    for key in LIST_FIELDS:
        if key in raw and raw[key] is not None and not isinstance(raw[key], list):
            raise MalformedDocument(
                f"field '{key}' in {where} must be a list, got {raw[key]!r}",
                operation="parse",
                hint=f"write it as '{key}: [a, b]'",
            )

    return ParsedDocument(metadata=raw, body=content[match.end() :])


def serialize(metadata: dict[str, Any], body: str) -> str:
    """Render a header mapping and body back into document text."""
    if metadata:
        header = yaml.safe_dump(
            metadata,
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )
    else:
        header = ""
    return f"---\n{header}---\n{body}"


def first_heading(body: str) -> str | None:
    """Return the text of the first level-1 heading, if any."""
    match = HEADING_PATTERN.search(body)
    return match.group(1) if match else None
