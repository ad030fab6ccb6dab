"""Error taxonomy for knowsys-mcp.

Every error carries the failing operation and, where possible, a hint for the
fix. ``str(error)`` renders them together so the CLI and the MCP tools can
surface it as-is.
"""


class KnowsysError(Exception):
    """Base class for all knowsys errors."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        hint: str | None = None,
    ):
        self.message = message
        self.operation = operation
        self.hint = hint
        super().__init__(self._render())

    def _render(self) -> str:
        text = self.message
        if self.operation:
            text = f"{self.operation}: {text}"
        if self.hint:
            text = f"{text} ({self.hint})"
        return text


# Validation: bad input shape, always raised before any I/O


class ValidationFailed(KnowsysError, ValueError):
    """Input failed validation."""


class EmptyQuery(ValidationFailed):
    """Search query was empty or contained no searchable words."""


class InvalidScope(ValidationFailed):
    """Search scope is outside the supported set."""


class InvalidStatus(ValidationFailed):
    """Status value is not part of the document kind's enum."""


class ReadOnlyMode(ValidationFailed):
    """A write was attempted while the server runs read-only."""


# Lookups


class NotFound(KnowsysError, LookupError):
    """A referenced document or directory does not exist."""


class RootNotFound(NotFound):
    """Workspace root lacks the knowledge directory layout."""


class PlanNotFound(NotFound):
    """No plan document exists for the given id."""


class SessionNotFound(NotFound):
    """No session document exists for the given path or date."""


class PatternNotFound(NotFound):
    """An insertion anchor was not found in a document body."""


# Conflicts with current state


class Conflict(KnowsysError):
    """The operation conflicts with the current state of a document."""


class DuplicateSession(Conflict):
    """A session already exists for the requested date."""


class DuplicatePlan(Conflict):
    """A plan with the same id already exists."""


class InvalidStatusTransition(Conflict):
    """The plan status machine does not allow the requested move."""


# Storage and documents


class MalformedDocument(KnowsysError, ValueError):
    """A document on disk could not be parsed."""


class SchemaVersionMismatch(KnowsysError):
    """The embedded database was written by a newer schema."""


class DanglingPointer(KnowsysError):
    """A plan pointer references a plan that does not exist.

    Reported in sync output rather than raised.
    """


class UnsupportedOperation(KnowsysError, NotImplementedError):
    """The active storage adapter does not implement an operation."""
