"""
knowsys-mcp - plans, sessions and learned notes as Markdown, with a queryable index.

Stack:
- Python + FastMCP (MCP tools over the core operations)
- Markdown + YAML front matter (source of truth)
- JSON derived index or SQLite FTS5 (disposable, rebuilt from the documents)
"""

__version__ = "0.1.0"
