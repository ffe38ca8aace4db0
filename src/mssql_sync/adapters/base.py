"""Abstract base class for database sessions.

Defines the narrow interface the reconciliation engine consumes from the
connection collaborator: execute a statement, scan one row, scan all rows.
"""

import time
from abc import ABC
from abc import abstractmethod
from collections.abc import Iterator
from collections.abc import Mapping
from contextlib import contextmanager
from typing import Any

from mssql_sync.errors import DeadlineExceededError


class DatabaseSession(ABC):
    """Abstract base class for session operations.

    Each session must implement methods for:
    - Executing statements that return nothing
    - Scanning a single row, distinguishing "no rows" from errors
    - Scanning all rows

    Every method takes a `target`: the database the call runs in, or None for
    the session's current database. Switching target is explicit per call.
    """

    def __init__(self):
        self.deadline: float | None = None

    @contextmanager
    def deadline_after(self, seconds: float | None) -> Iterator[None]:
        """Bound every call made inside the block by a deadline.

        A timed out reconciliation leaves whatever the already executed
        statements did; callers should refresh to learn the resulting state.

        Args:
            seconds: Time budget from now, or None for no deadline.
        """
        previous = self.deadline
        self.deadline = None if seconds is None else time.monotonic() + seconds
        try:
            yield
        finally:
            self.deadline = previous

    def check_deadline(self, sql: str):
        """Raise DeadlineExceededError if the deadline has passed."""
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise DeadlineExceededError(f'Deadline exceeded before running: {sql.strip()[:80]}')

    @abstractmethod
    def execute(self, target: str | None, sql: str, params: Mapping[str, Any] | None = None) -> None:
        """Execute a statement.

        Args:
            target: Database to run in, or None for the current database
            sql: Statement text; named parameters use the ``:name`` form
            params: Values of the named parameters
        """

    @abstractmethod
    def query_row(self, target: str | None, sql: str, params: Mapping[str, Any] | None = None) -> Mapping | None:
        """Run a query and return its first row.

        Returns:
            The first row as a mapping of column name to value, or None if the
            query returned no rows
        """

    @abstractmethod
    def query_all(self, target: str | None, sql: str, params: Mapping[str, Any] | None = None) -> list[Mapping]:
        """Run a query and return all rows as mappings."""
