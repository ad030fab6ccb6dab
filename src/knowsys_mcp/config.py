"""Configuration module for knowsys-mcp.

Loads configuration from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from knowsys_mcp.documents.walker import DATABASE_FILE, knowledge_dir

ADAPTERS = ("json", "sqlite")


@dataclass
class Config:
    """Application configuration."""

    root: Path
    adapter: str
    db_path: Path
    port: int
    read_only: bool

    @classmethod
    def from_env(
        cls,
        root_override: Path | None = None,
        read_only_override: bool | None = None,
    ) -> "Config":
        """Load configuration from environment variables.

        Args:
            root_override: If provided, overrides the KNOWSYS_ROOT env var.
            read_only_override: If provided, overrides the KNOWSYS_READ_ONLY env var.

        Raises:
            ValueError: If a variable holds an invalid value
        """
        if root_override is not None:
            root = root_override.expanduser()
        else:
            root = Path(os.getenv("KNOWSYS_ROOT", os.getcwd())).expanduser()

        adapter = os.getenv("KNOWSYS_ADAPTER", "json").strip().lower()
        if adapter not in ADAPTERS:
            raise ValueError(
                f"Invalid KNOWSYS_ADAPTER value '{adapter}': must be one of {', '.join(ADAPTERS)}"
            )

        default_db = str(knowledge_dir(root) / DATABASE_FILE)
        db_path = Path(os.getenv("KNOWSYS_DB", default_db)).expanduser()

        port_str = os.getenv("KNOWSYS_PORT", "8080")
        try:
            port = int(port_str)
            if not 1 <= port <= 65535:
                raise ValueError(f"Port must be between 1 and 65535, got {port}")
        except ValueError as e:
            raise ValueError(f"Invalid KNOWSYS_PORT value '{port_str}': {e}") from e

        # CLI flag takes precedence over env var
        if read_only_override is not None:
            read_only = read_only_override
        else:
            read_only = os.getenv("KNOWSYS_READ_ONLY", "").lower() in ("1", "true", "yes")

        return cls(
            root=root,
            adapter=adapter,
            db_path=db_path,
            port=port,
            read_only=read_only,
        )

