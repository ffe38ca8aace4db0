"""SQL Server session over a SQLAlchemy connection.

Implements the DatabaseSession interface for the ``mssql`` SQLAlchemy dialect
(``mssql+pyodbc`` or ``mssql+pymssql``).
"""

import logging
from collections.abc import Mapping
from typing import Any

import sqlalchemy as sa

from mssql_sync.adapters.base import DatabaseSession
from mssql_sync.quoting import quote

logger = logging.getLogger(__name__)


class MssqlSession(DatabaseSession):
    """SQLAlchemy-backed implementation of DatabaseSession.

    The connection is switched to autocommit: every statement is its own unit
    of work and nothing is rolled back across a batch. Databases are switched
    with ``USE``, which the hosted edition does not allow; on that edition open
    one connection per database and always pass that database (or None) as the
    target.
    """

    def __init__(self, conn):
        """Initialize the session.

        Args:
            conn: A SQLAlchemy connection with no transaction in progress
        """
        super().__init__()
        self.conn = conn.execution_options(isolation_level='AUTOCOMMIT')
        self._database: str | None = None

    def _use(self, target: str | None):
        """Switch the connection to `target` if it is not already there."""
        if target is None:
            return
        if self._database is None:
            self._database = self.conn.exec_driver_sql('SELECT DB_NAME()').scalar()
        if target == self._database:
            return
        logger.debug('Switching to database %s', target)
        self.conn.exec_driver_sql(f'USE {quote(target)}')
        self._database = target

    def _result(self, target: str | None, sql: str, params: Mapping[str, Any] | None):
        self.check_deadline(sql)
        self._use(target)
        return self.conn.execute(sa.text(sql), dict(params or {}))

    def execute(self, target: str | None, sql: str, params: Mapping[str, Any] | None = None) -> None:
        """Execute a statement.

        Statements without parameters are passed to the driver verbatim, so
        colons inside quoted identifiers are never mistaken for bind parameters.
        """
        self.check_deadline(sql)
        self._use(target)
        if params:
            self.conn.execute(sa.text(sql), dict(params))
        else:
            self.conn.exec_driver_sql(sql)

    def query_row(self, target: str | None, sql: str, params: Mapping[str, Any] | None = None) -> Mapping | None:
        """Return the first row, or None if there are no rows."""
        row = self._result(target, sql, params).mappings().first()
        return dict(row) if row is not None else None

    def query_all(self, target: str | None, sql: str, params: Mapping[str, Any] | None = None) -> list[Mapping]:
        """Return all rows."""
        return [dict(row) for row in self._result(target, sql, params).mappings().all()]
