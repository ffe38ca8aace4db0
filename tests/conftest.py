import pytest
import sqlalchemy as sa

from mssql_sync.adapters.base import DatabaseSession
from mssql_sync.dialect import Capabilities

TEST_DATABASE_NAME = 'app'

HOSTED_CAPABILITIES = Capabilities(
    is_hosted_edition=True,
    supports_default_language=False,
    supports_cross_database_qualified_names=False,
)


class FakeSession(DatabaseSession):
    """Records every call and answers queries with canned rows.

    `responses` maps a fragment of SQL text to a list of rows, or to a callable
    taking the query parameters and returning a list of rows. The first fragment
    found in a query wins. Queries matching nothing return no rows.
    """

    def __init__(self, responses=None, databases=(TEST_DATABASE_NAME,), fail_on=None):
        super().__init__()
        self.responses = dict(responses or {})
        self.databases = set(databases)
        self.fail_on = fail_on
        self.queries = []
        self.executed = []

    @property
    def statements(self):
        return [sql for _, sql in self.executed]

    def _rows(self, sql, params):
        if 'FROM [sys].[databases] WHERE name = :database' in sql:
            return [{'present': 1}] if params['database'] in self.databases else []
        for fragment, rows in self.responses.items():
            if fragment in sql:
                return rows(params) if callable(rows) else rows
        return []

    def execute(self, target, sql, params=None):
        self.check_deadline(sql)
        self.executed.append((target, sql))
        if self.fail_on is not None and self.fail_on in sql:
            raise sa.exc.ProgrammingError(sql, params, Exception('The server rejected the statement'))

    def query_row(self, target, sql, params=None):
        self.check_deadline(sql)
        self.queries.append((target, sql, dict(params or {})))
        rows = self._rows(sql, dict(params or {}))
        return rows[0] if rows else None

    def query_all(self, target, sql, params=None):
        self.check_deadline(sql)
        self.queries.append((target, sql, dict(params or {})))
        return list(self._rows(sql, dict(params or {})))


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def capabilities():
    return Capabilities()


@pytest.fixture
def hosted_capabilities():
    return HOSTED_CAPABILITIES


@pytest.fixture
def test_sqlite_engine():
    engine = sa.create_engine('sqlite:///:memory:')
    yield engine
    engine.dispose()
