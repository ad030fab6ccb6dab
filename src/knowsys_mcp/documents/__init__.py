"""
Document module for knowsys-mcp.

Markdown files with YAML front matter are the source of truth; everything else
in the system is derived from them.
"""

from knowsys_mcp.documents.models import (
    LearnedNote,
    Plan,
    PlanPointer,
    PlanStatus,
    ProgressEntry,
    Session,
    SessionStatus,
)
from knowsys_mcp.documents.parser import ParsedDocument, parse, serialize
from knowsys_mcp.documents.walker import FileInfo, walk_workspace

__all__ = [
    "FileInfo",
    "LearnedNote",
    "ParsedDocument",
    "Plan",
    "PlanPointer",
    "PlanStatus",
    "ProgressEntry",
    "Session",
    "SessionStatus",
    "parse",
    "serialize",
    "walk_workspace",
]
