"""Read-only catalog queries that materialize current state.

Each ``read_*`` function returns None when the object does not exist. Driver
errors (connectivity, permissions) propagate unchanged.
"""

import logging

from mssql_sync.adapters.base import DatabaseSession
from mssql_sync.dialect import Capabilities
from mssql_sync.dialect import resolve
from mssql_sync.errors import AmbiguousStateError
from mssql_sync.models import UNMANAGED_PERMISSIONS
from mssql_sync.models import AuthenticationType
from mssql_sync.models import Credential
from mssql_sync.models import DatabasePermissions
from mssql_sync.models import ExternalDatasource
from mssql_sync.models import Login
from mssql_sync.models import LoginKind
from mssql_sync.models import MasterKey
from mssql_sync.models import Role
from mssql_sync.models import Schema
from mssql_sync.models import User
from mssql_sync.quoting import quote
from mssql_sync.quoting import split_quoted_list

logger = logging.getLogger(__name__)

MASTER_DATABASE = 'master'
MASTER_KEY_NAME = '##MS_DatabaseMasterKey##'

# Federated SIDs end with this marker; the leading '0x' plus 32 hex digits hold
# the directory object GUID that the matching server principal's SID carries.
FEDERATED_SID_SUFFIX = 'AADE'
FEDERATED_SID_PREFIX_LENGTH = 34


def _bind_safe(fragment: str) -> str:
    """Escape colons in an interpolated fragment so they are not read as bind parameters."""
    return fragment.replace(':', '\\:')


def _view(capabilities: Capabilities, database: str, view: str) -> str:
    """Name of a catalog view, qualified with `database` where the dialect allows it."""
    if capabilities.supports_cross_database_qualified_names:
        return f'{_bind_safe(quote(database))}.[sys].[{view}]'
    return f'[sys].[{view}]'


def _aggregate_names(capabilities: Capabilities, name_column: str, source: str) -> str:
    """Correlated subquery aggregating QUOTENAME'd names into one comma-separated string."""
    if capabilities.supports_string_agg:
        return f"(SELECT STRING_AGG(CAST(QUOTENAME({name_column}) AS nvarchar(max)), ',') {source})"
    return (
        f"STUFF((SELECT ',' + QUOTENAME({name_column}) {source} FOR XML PATH(''), TYPE)"
        ".value('.', 'nvarchar(max)'), 1, 1, '')"
    )


def read_capabilities(session: DatabaseSession, database: str | None = None) -> Capabilities:
    """Read the version banner and compatibility level and resolve capabilities."""
    row = session.query_row(
        database,
        'SELECT @@VERSION AS version, '
        '(SELECT compatibility_level FROM [sys].[databases] WHERE name = DB_NAME()) AS compatibility_level',
    )
    if row is None:
        raise AmbiguousStateError('Server returned no version information')
    return resolve(row['version'], row['compatibility_level'])


def database_exists(session: DatabaseSession, database: str) -> bool:
    """Check if a database exists on the server."""
    row = session.query_row(
        None,
        'SELECT 1 AS present FROM [sys].[databases] WHERE name = :database',
        {'database': database},
    )
    return row is not None


def current_identity(session: DatabaseSession, database: str) -> str:
    """Name of the database principal the session runs as."""
    row = session.query_row(database, 'SELECT USER_NAME() AS name')
    if row is None or not row['name']:
        raise AmbiguousStateError(f'Unable to determine the current user in database {quote(database)}')
    return row['name']


def read_login(session: DatabaseSession, capabilities: Capabilities, login_name: str) -> Login | None:
    """Read a server-level login."""
    row = session.query_row(
        MASTER_DATABASE,
        """
        SELECT
          principal_id,
          name,
          type,
          sid,
          COALESCE(default_database_name, '') AS default_database,
          COALESCE(default_language_name, '') AS default_language
        FROM [sys].[server_principals]
        WHERE name = :name AND type IN ('S', 'U', 'G', 'E', 'X')
        """,
        {'name': login_name},
    )
    if row is None:
        logger.debug('Login %s not found', login_name)
        return None
    return Login(
        name=row['name'],
        kind=LoginKind(row['type'].strip()),
        default_database=row['default_database'],
        default_language=row['default_language'],
        principal_id=row['principal_id'],
        sid=row['sid'],
    )


def _master_scope(
    session: DatabaseSession,
    capabilities: Capabilities,
    master_session: DatabaseSession | None,
    purpose: str,
) -> tuple[DatabaseSession, str | None]:
    """Session and target database for a lookup in ``master``.

    The hosted edition cannot switch databases on a connection, so lookups in
    ``master`` go through a separate session connected to it.
    """
    if not capabilities.is_hosted_edition:
        return session, MASTER_DATABASE
    if master_session is None:
        raise AmbiguousStateError(f'{purpose} requires a session connected to {quote(MASTER_DATABASE)}')
    return master_session, None


def read_user(
    session: DatabaseSession,
    capabilities: Capabilities,
    database: str,
    username: str,
    master_session: DatabaseSession | None = None,
) -> User | None:
    """Read a database user with its direct role memberships and login.

    The login is resolved with a join against ``master.sys.sql_logins`` where
    cross-database names are allowed. When that join cannot resolve it, a
    second lookup is made by SID: in ``sys.sql_logins`` for instance users and
    in ``sys.server_principals`` for federated users. On the hosted edition
    that lookup runs on `master_session`.

    Raises:
        AmbiguousStateError: If a required second lookup returns no rows, or
            needs `master_session` on the hosted edition and none was given.
    """
    principals = _view(capabilities, database, 'database_principals')
    role_members = _view(capabilities, database, 'database_role_members')
    roles = _aggregate_names(
        capabilities,
        'r.name',
        f'FROM {role_members} m INNER JOIN {principals} r ON r.principal_id = m.role_principal_id '
        'WHERE m.member_principal_id = p.principal_id',
    )
    if capabilities.supports_cross_database_qualified_names:
        login_column = "COALESCE(sl.name, '')"
        login_join = 'LEFT JOIN [master].[sys].[sql_logins] sl ON sl.sid = p.sid'
    else:
        login_column = "''"
        login_join = ''

    row = session.query_row(
        database,
        f"""
        SELECT
          p.principal_id,
          p.name,
          p.type,
          p.authentication_type_desc,
          COALESCE(p.default_schema_name, '') AS default_schema,
          COALESCE(p.default_language_name, '') AS default_language,
          p.sid,
          CONVERT(VARCHAR(85), p.sid, 1) AS sid_str,
          {login_column} AS login_name,
          {roles} AS roles
        FROM {principals} p
        {login_join}
        WHERE p.name = :name AND p.type NOT IN ('R', 'A')
        """,
        {'name': username},
    )
    if row is None:
        logger.debug('User %s not found in database %s', username, database)
        return None

    authentication_type = AuthenticationType(row['authentication_type_desc'])
    sid_str = row['sid_str'] or ''
    login_name = row['login_name']

    if authentication_type is AuthenticationType.INSTANCE and not login_name:
        logger.debug('Resolving login of user %s by SID', username)
        lookup_session, target = _master_scope(
            session,
            capabilities,
            master_session,
            f'Resolving the login of user {quote(database)}.{quote(username)}',
        )
        login = lookup_session.query_row(
            target,
            'SELECT name FROM [sys].[sql_logins] WHERE sid = :sid',
            {'sid': row['sid']},
        )
        if login is None:
            raise AmbiguousStateError(f'No login found for user {quote(database)}.{quote(username)} with SID {sid_str}')
        login_name = login['name']

    if authentication_type is AuthenticationType.EXTERNAL and sid_str.endswith(FEDERATED_SID_SUFFIX):
        logger.debug('Resolving external principal of user %s by SID prefix', username)
        lookup_session, target = _master_scope(
            session,
            capabilities,
            master_session,
            f'Resolving the external principal of user {quote(database)}.{quote(username)}',
        )
        login = lookup_session.query_row(
            target,
            """
            SELECT name FROM [sys].[server_principals]
            WHERE type NOT IN ('G', 'R') AND CONVERT(VARCHAR(64), sid, 1) = :sid_prefix
            """,
            {'sid_prefix': sid_str[:FEDERATED_SID_PREFIX_LENGTH]},
        )
        if login is None:
            raise AmbiguousStateError(
                f'No external principal found for user {quote(database)}.{quote(username)} with SID {sid_str}',
            )
        login_name = login['name']

    return User(
        name=row['name'],
        login_name=login_name,
        type=row['type'].strip(),
        default_schema=row['default_schema'],
        default_language=row['default_language'],
        roles=frozenset(split_quoted_list(row['roles'])),
        principal_id=row['principal_id'],
        sid=row['sid'],
        sid_str=sid_str,
        authentication_type=authentication_type,
    )


def read_role(session: DatabaseSession, capabilities: Capabilities, database: str, role_name: str) -> Role | None:
    """Read a database role with its owner and direct members."""
    principals = _view(capabilities, database, 'database_principals')
    role_members = _view(capabilities, database, 'database_role_members')
    members = _aggregate_names(
        capabilities,
        'u.name',
        f'FROM {role_members} m INNER JOIN {principals} u ON u.principal_id = m.member_principal_id '
        'WHERE m.role_principal_id = r.principal_id',
    )
    row = session.query_row(
        database,
        f"""
        SELECT
          r.principal_id,
          r.name,
          r.owning_principal_id AS owner_id,
          COALESCE(o.name, '') AS owner_name,
          {members} AS members
        FROM {principals} r
        LEFT JOIN {principals} o ON o.principal_id = r.owning_principal_id
        WHERE r.name = :name AND r.type = 'R'
        """,
        {'name': role_name},
    )
    if row is None:
        return None
    return Role(
        name=row['name'],
        owner_name=row['owner_name'],
        members=frozenset(split_quoted_list(row['members'])),
        principal_id=row['principal_id'],
        owner_id=row['owner_id'],
    )


def read_schema(session: DatabaseSession, capabilities: Capabilities, database: str, schema_name: str) -> Schema | None:
    """Read a schema and its owner."""
    schemas = _view(capabilities, database, 'schemas')
    principals = _view(capabilities, database, 'database_principals')
    row = session.query_row(
        database,
        f"""
        SELECT s.schema_id, s.name, s.principal_id AS owner_id, COALESCE(p.name, '') AS owner_name
        FROM {schemas} s
        LEFT JOIN {principals} p ON p.principal_id = s.principal_id
        WHERE s.name = :name
        """,
        {'name': schema_name},
    )
    if row is None:
        return None
    return Schema(name=row['name'], owner_name=row['owner_name'], schema_id=row['schema_id'], owner_id=row['owner_id'])


def role_names(session: DatabaseSession, capabilities: Capabilities, database: str) -> list[str]:
    """Names of every database role except ``public``, in name order."""
    rows = session.query_all(
        database,
        f"""
        SELECT name FROM {_view(capabilities, database, 'database_principals')}
        WHERE type = 'R' AND name != 'public'
        ORDER BY name
        """,
    )
    return [row['name'] for row in rows]


def owned_roles(session: DatabaseSession, capabilities: Capabilities, database: str, principal_name: str) -> list[str]:
    """Names of the roles owned by a principal, in name order."""
    principals = _view(capabilities, database, 'database_principals')
    rows = session.query_all(
        database,
        f"""
        SELECT o.name
        FROM {principals} p
        INNER JOIN {principals} o ON o.owning_principal_id = p.principal_id
        WHERE p.name = :name AND o.type = 'R'
        ORDER BY o.name
        """,
        {'name': principal_name},
    )
    return [row['name'] for row in rows]


def owned_schemas(
    session: DatabaseSession,
    capabilities: Capabilities,
    database: str,
    principal_name: str,
) -> list[str]:
    """Names of the schemas owned by a principal, in name order."""
    schemas = _view(capabilities, database, 'schemas')
    principals = _view(capabilities, database, 'database_principals')
    rows = session.query_all(
        database,
        f"""
        SELECT s.name
        FROM {schemas} s
        INNER JOIN {principals} p ON p.principal_id = s.principal_id
        WHERE p.name = :name
        ORDER BY s.name
        """,
        {'name': principal_name},
    )
    return [row['name'] for row in rows]


def read_master_key(session: DatabaseSession, capabilities: Capabilities, database: str) -> MasterKey | None:
    """Read the database master key metadata."""
    row = session.query_row(
        database,
        f"""
        SELECT
          name AS key_name,
          principal_id,
          symmetric_key_id,
          key_length,
          key_algorithm,
          algorithm_desc,
          CONVERT(VARCHAR(36), key_guid) AS key_guid
        FROM {_view(capabilities, database, 'symmetric_keys')}
        WHERE name = :name
        """,
        {'name': MASTER_KEY_NAME},
    )
    if row is None:
        return None
    return MasterKey(
        key_name=row['key_name'],
        principal_id=row['principal_id'],
        symmetric_key_id=row['symmetric_key_id'],
        key_length=row['key_length'],
        key_algorithm=row['key_algorithm'],
        algorithm_desc=row['algorithm_desc'],
        key_guid=row['key_guid'],
    )


def read_credential(
    session: DatabaseSession,
    capabilities: Capabilities,
    database: str,
    credential_name: str,
) -> Credential | None:
    """Read a database scoped credential. The secret is never readable."""
    row = session.query_row(
        database,
        f"""
        SELECT credential_id, name, credential_identity AS identity_name
        FROM {_view(capabilities, database, 'database_scoped_credentials')}
        WHERE name = :name
        """,
        {'name': credential_name},
    )
    if row is None:
        return None
    return Credential(name=row['name'], identity_name=row['identity_name'], credential_id=row['credential_id'])


def read_external_datasource(
    session: DatabaseSession,
    capabilities: Capabilities,
    database: str,
    datasource_name: str,
) -> ExternalDatasource | None:
    """Read an external data source and the credential it uses."""
    row = session.query_row(
        database,
        f"""
        SELECT
          ds.data_source_id,
          ds.name,
          ds.location,
          ds.type_desc,
          COALESCE(ds.database_name, '') AS remote_database_name,
          COALESCE(c.name, '') AS credential_name
        FROM {_view(capabilities, database, 'external_data_sources')} ds
        LEFT JOIN {_view(capabilities, database, 'database_scoped_credentials')} c
          ON c.credential_id = ds.credential_id
        WHERE ds.name = :name
        """,
        {'name': datasource_name},
    )
    if row is None:
        return None
    return ExternalDatasource(
        name=row['name'],
        location=row['location'],
        type=row['type_desc'],
        remote_database_name=row['remote_database_name'],
        credential_name=row['credential_name'],
        data_source_id=row['data_source_id'],
    )


def read_permissions(
    session: DatabaseSession,
    capabilities: Capabilities,
    database: str,
    principal_name: str,
) -> DatabasePermissions | None:
    """Read the database-level permissions granted to a principal.

    Returns None when the principal itself does not exist. CONNECT is not
    reported.
    """
    principal = session.query_row(
        database,
        f"SELECT principal_id FROM {_view(capabilities, database, 'database_principals')} WHERE name = :name",
        {'name': principal_name},
    )
    if principal is None:
        return None
    rows = session.query_all(
        database,
        f"""
        SELECT permission_name
        FROM {_view(capabilities, database, 'database_permissions')}
        WHERE grantee_principal_id = :principal_id AND class = 0 AND state IN ('G', 'W')
        """,
        {'principal_id': principal['principal_id']},
    )
    return DatabasePermissions(
        principal_name=principal_name,
        permissions=frozenset(row['permission_name'] for row in rows) - UNMANAGED_PERMISSIONS,
        principal_id=principal['principal_id'],
    )


def object_exists(session: DatabaseSession, database: str, query: tuple[str, dict]) -> bool:
    """Run an existence query built by `synthesis.object_exists_query`."""
    sql, params = query
    return session.query_row(database, sql, params) is not None
