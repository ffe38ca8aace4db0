"""Exception types raised by mssql_sync.

All errors inherit from SyncError. Validation and timeout errors also inherit
from the matching builtin so that callers catching ValueError or TimeoutError
keep working.
"""


class SyncError(Exception):
    """Base exception for all mssql_sync errors."""


class NotFoundError(SyncError):
    """An object or its parent database does not exist."""


class AlreadyExistsError(SyncError):
    """The declared object collides with one that already exists.

    Attributes:
        kind (str): Object kind, e.g. ``'USER'``.
        qualified_name (str): Fully qualified name of the existing object.
    """

    def __init__(self, kind: str, qualified_name: str):
        super().__init__(f'{kind} {qualified_name} already exists')
        self.kind = kind
        self.qualified_name = qualified_name


class ValidationError(SyncError, ValueError):
    """Malformed synthesis input.

    Raised for bad identifiers, ambiguous identity binding on users and
    malformed script verification targets. Always raised before any SQL is sent.
    """


class ExecutionError(SyncError):
    """The server rejected a synthesized statement or a catalog query.

    The underlying driver error is chained as ``__cause__``.

    Attributes:
        kind (str): Object kind, e.g. ``'ROLE'``.
        qualified_name (str): Fully qualified name of the object.
        operation (str): The operation attempted: ``read``, ``create``, ``update`` or ``delete``.
        statement (str | None): The failing statement with secrets redacted; None when a
            catalog query failed.
    """

    def __init__(self, kind: str, qualified_name: str, operation: str, statement: str | None = None):
        message = f'unable to {operation} {kind} {qualified_name}'
        if statement is not None:
            message = f'{message}: {statement}'
        super().__init__(message)
        self.kind = kind
        self.qualified_name = qualified_name
        self.operation = operation
        self.statement = statement


class AmbiguousStateError(SyncError, RuntimeError):
    """Current state cannot be resolved safely, e.g. a required lookup returned no rows."""


class DeadlineExceededError(SyncError, TimeoutError):
    """The caller's deadline passed before the next catalog read or statement."""
