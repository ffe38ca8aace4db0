"""Statement synthesis: desired state + current state -> ordered T-SQL statements.

Nothing here talks to the server. Every function returns a list of statements
that, executed in order, turns `current` into `desired`. Every identifier and
literal is passed through `mssql_sync.quoting`.
"""

import re
import uuid
from collections.abc import Callable
from collections.abc import Iterable

from mssql_sync.dialect import Capabilities
from mssql_sync.errors import ValidationError
from mssql_sync.models import DEFAULT_OWNER
from mssql_sync.models import PUBLIC_ROLE
from mssql_sync.models import UNMANAGED_PERMISSIONS
from mssql_sync.models import AuthenticationType
from mssql_sync.models import Credential
from mssql_sync.models import DatabasePermissions
from mssql_sync.models import ExternalDatasource
from mssql_sync.models import Login
from mssql_sync.models import LoginKind
from mssql_sync.models import MasterKey
from mssql_sync.models import Operation
from mssql_sync.models import Role
from mssql_sync.models import Schema
from mssql_sync.models import User
from mssql_sync.models import VerifyTarget
from mssql_sync.models import is_default_owner
from mssql_sync.quoting import keyword
from mssql_sync.quoting import quote
from mssql_sync.quoting import quote_literal
from mssql_sync.quoting import unquote

EXTERNAL_USER_TYPES = frozenset({'E', 'X'})
EXTERNAL_DATASOURCE_TYPES = frozenset({'RDBMS', 'SHARD_MAP_MANAGER', 'BLOB_STORAGE', 'HADOOP'})

VERIFY_KIND_ALIASES = {
    'TABLE': 'TABLE',
    'VIEW': 'VIEW',
    'PROCEDURE': 'PROCEDURE',
    'PROC': 'PROCEDURE',
    'FUNCTION': 'FUNCTION',
    'FUNC': 'FUNCTION',
    'SCHEMA': 'SCHEMA',
    'TRIGGER': 'TRIGGER',
    'TRG': 'TRIGGER',
}

_PERMISSION_NAME = re.compile(r'[A-Z]+(?: [A-Z]+)*')
_SECRET_CLAUSE = re.compile(r"\b(PASSWORD|SECRET)(\s*=\s*)N?'(?:[^']|'')*'", re.IGNORECASE)
_BATCH_SEPARATOR = re.compile(r'^[ \t]*GO[ \t]*(?:--[^\n]*)?$', re.IGNORECASE | re.MULTILINE)


def _nliteral(value: str) -> str:
    """Unicode string literal."""
    return 'N' + quote_literal(value)


def redact(statement: str) -> str:
    """Mask password and secret literals so a statement can be logged."""
    return _SECRET_CLAUSE.sub(r"\1\2'***'", statement)


# ===== Role membership =====


def _by_role_key(roles: Iterable[str]) -> dict[str, str]:
    """Role names keyed case-insensitively, as the default collation compares them. ``public`` is left out."""
    return {role.casefold(): role for role in roles if role.casefold() != PUBLIC_ROLE}


def diff_memberships(desired: Iterable[str], current: Iterable[str]) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Compute the membership changes that turn `current` into `desired`.

    Names are compared case-insensitively. ``public`` is ignored on both sides:
    every principal is implicitly a member.

    Returns:
        tuple: ``(to_remove, to_add)``, each sorted by name. Removals carry the
            current spelling, additions the desired one.
    """
    desired_by_key = _by_role_key(desired)
    current_by_key = _by_role_key(current)
    to_remove = sorted(current_by_key[key] for key in current_by_key.keys() - desired_by_key.keys())
    to_add = sorted(desired_by_key[key] for key in desired_by_key.keys() - current_by_key.keys())
    return tuple(to_remove), tuple(to_add)


def resolve_roles(member_name: str, desired_roles: Iterable[str], existing_roles: Iterable[str]) -> frozenset[str]:
    """Map desired role names onto the spelling of the roles that exist.

    Raises:
        ValidationError: If a desired role does not exist.
    """
    existing_by_key = _by_role_key(existing_roles)
    desired_by_key = _by_role_key(desired_roles)
    missing = sorted(role for key, role in desired_by_key.items() if key not in existing_by_key)
    if missing:
        raise ValidationError(
            f'Cannot add {quote(member_name)} to missing roles: ' + ', '.join(quote(role) for role in missing),
        )
    return frozenset(existing_by_key[key] for key in desired_by_key)


def membership_statements(
    member_name: str,
    desired_roles: Iterable[str],
    current_roles: Iterable[str],
    existing_roles: Iterable[str] | None = None,
) -> list[str]:
    """One DROP MEMBER per role to leave, then one ADD MEMBER per role to join.

    Removals go first so the member never briefly holds both the old and the
    new set of privileges. When `existing_roles` is given, every desired role
    must be one of them and is spelled as the catalog spells it.
    """
    if existing_roles is not None:
        desired_roles = resolve_roles(member_name, desired_roles, existing_roles)
    to_remove, to_add = diff_memberships(desired_roles, current_roles)
    member = quote(member_name)
    return [f'ALTER ROLE {quote(role)} DROP MEMBER {member}' for role in to_remove] + [
        f'ALTER ROLE {quote(role)} ADD MEMBER {member}' for role in to_add
    ]


# ===== Logins =====


def _object_id_literal(object_id: str) -> str:
    try:
        return str(uuid.UUID(object_id))
    except (ValueError, AttributeError, TypeError):
        raise ValidationError(f'Object id {object_id!r} is not a GUID') from None


def create_login(desired: Login, capabilities: Capabilities) -> list[str]:
    """Statements creating a login of any kind."""
    name = quote(desired.name)
    if desired.kind is not LoginKind.SQL and desired.password:
        raise ValidationError(f'Login {name} of kind {desired.kind.name} cannot have a password')

    options = []
    if not capabilities.is_hosted_edition:
        options.append(f'DEFAULT_DATABASE = {quote(desired.default_database)}')
        if desired.default_language:
            options.append(f'DEFAULT_LANGUAGE = {quote(desired.default_language)}')

    if desired.kind is LoginKind.SQL:
        if not desired.password:
            raise ValidationError(f'SQL login {name} requires a password')
        return [f'CREATE LOGIN {name} WITH ' + ', '.join([f'PASSWORD = {_nliteral(desired.password)}', *options])]

    if desired.kind in (LoginKind.WINDOWS, LoginKind.WINDOWS_GROUP):
        if capabilities.is_hosted_edition:
            raise ValidationError(f'Windows login {name} is not supported on the hosted edition')
        return [f'CREATE LOGIN {name} FROM WINDOWS WITH ' + ', '.join(options)]

    statement = f'CREATE LOGIN {name} FROM EXTERNAL PROVIDER'
    if desired.object_id:
        if not capabilities.is_hosted_edition:
            raise ValidationError(f'Login {name}: object_id is only supported on the hosted edition')
        return [f'{statement} WITH OBJECT_ID = {quote_literal(_object_id_literal(desired.object_id))}']
    if options:
        statement += ' WITH ' + ', '.join(options)
    return [statement]


def update_login(desired: Login, current: Login, capabilities: Capabilities) -> list[str]:
    """Statements aligning password, default database and default language."""
    name = quote(desired.name)
    if desired.kind is not current.kind:
        raise ValidationError(
            f'Login {name} cannot change kind from {current.kind.name} to {desired.kind.name}; recreate it',
        )
    options = []
    if desired.password:
        if desired.kind is not LoginKind.SQL:
            raise ValidationError(f'Login {name} of kind {desired.kind.name} cannot have a password')
        options.append(f'PASSWORD = {_nliteral(desired.password)}')
    if not capabilities.is_hosted_edition:
        if desired.default_database != current.default_database:
            options.append(f'DEFAULT_DATABASE = {quote(desired.default_database)}')
        if desired.default_language and desired.default_language != current.default_language:
            options.append(f'DEFAULT_LANGUAGE = {quote(desired.default_language)}')
    if not options:
        return []
    return [f'ALTER LOGIN {name} WITH ' + ', '.join(options)]


def delete_login(current: Login) -> list[str]:
    return [f'DROP LOGIN {quote(current.name)}']


# ===== Users =====


def identity_binding(user: User) -> str | None:
    """Which identity-binding input a desired user carries.

    Returns:
        str | None: ``'login_name'``, ``'password'``, ``'object_id'``, or None
            for a user created from the external provider by name.

    Raises:
        ValidationError: If more than one is supplied.
    """
    supplied = [
        binding
        for binding, value in (
            ('login_name', user.login_name),
            ('password', user.password),
            ('object_id', user.object_id),
        )
        if value
    ]
    if len(supplied) > 1:
        raise ValidationError(
            f'User {quote(user.name)} must bind to at most one of login_name, password and object_id, '
            f'got: {", ".join(supplied)}',
        )
    return supplied[0] if supplied else None


def _default_language_clause(language: str) -> str:
    return 'DEFAULT_LANGUAGE = ' + (quote(language) if language else 'NONE')


def create_user(
    desired: User,
    capabilities: Capabilities,
    existing_roles: Iterable[str] | None = None,
) -> list[str]:
    """Statements creating a user and adding it to its roles.

    The path is chosen by the identity binding: ``FOR LOGIN`` for a login name,
    a contained user for a password, otherwise an external (federated) user.
    """
    binding = identity_binding(desired)
    name = quote(desired.name)
    default_schema = f'DEFAULT_SCHEMA = {quote(desired.default_schema)}'

    if binding == 'login_name':
        statement = f'CREATE USER {name} FOR LOGIN {quote(desired.login_name)} WITH {default_schema}'
    elif binding == 'password':
        statement = f'CREATE USER {name} WITH PASSWORD = {_nliteral(desired.password)}, {default_schema}'
        if capabilities.supports_default_language:
            statement += ', ' + _default_language_clause(desired.default_language)
    elif binding == 'object_id':
        if not capabilities.is_hosted_edition:
            raise ValidationError(f'User {name}: object_id is only supported on the hosted edition')
        sid = '0x' + uuid.UUID(_object_id_literal(desired.object_id)).bytes_le.hex().upper()
        user_type = keyword(desired.type or 'E', EXTERNAL_USER_TYPES)
        statement = f'CREATE USER {name} WITH {default_schema}, SID = {sid}, TYPE = {user_type}'
    else:
        statement = f'CREATE USER {name} FROM EXTERNAL PROVIDER WITH {default_schema}'
        if capabilities.supports_default_language:
            statement += ', ' + _default_language_clause(desired.default_language)

    return [statement, *membership_statements(desired.name, desired.roles, (), existing_roles)]


def update_user(
    desired: User,
    current: User,
    capabilities: Capabilities,
    existing_roles: Iterable[str] | None = None,
) -> list[str]:
    """Statements aligning default schema, password, default language and roles.

    ``ALTER USER`` is only emitted when one of its options actually changes.
    """
    identity_binding(desired)
    name = quote(desired.name)
    options = []
    if desired.default_schema != current.default_schema:
        options.append(f'DEFAULT_SCHEMA = {quote(desired.default_schema)}')
    if desired.password:
        options.append(f'PASSWORD = {_nliteral(desired.password)}')
    if (
        capabilities.supports_default_language
        and current.authentication_type is not AuthenticationType.INSTANCE
        and desired.default_language != current.default_language
    ):
        options.append(_default_language_clause(desired.default_language))

    statements = [f'ALTER USER {name} WITH ' + ', '.join(options)] if options else []
    return statements + membership_statements(desired.name, desired.roles, current.roles, existing_roles)


def delete_user(
    current: User,
    owned_roles: Iterable[str],
    owned_schemas: Iterable[str],
    current_identity: str,
) -> list[str]:
    """Hand every owned role and schema to `current_identity`, then drop the user.

    SQL Server refuses to drop a principal that still owns objects.
    """
    new_owner = quote(current_identity)
    return [
        *(f'ALTER AUTHORIZATION ON ROLE::{quote(role)} TO {new_owner}' for role in owned_roles),
        *(f'ALTER AUTHORIZATION ON SCHEMA::{quote(schema)} TO {new_owner}' for schema in owned_schemas),
        f'DROP USER {quote(current.name)}',
    ]


# ===== Roles and schemas =====


def _owner_changed(desired_owner: str, current_owner: str) -> bool:
    if is_default_owner(desired_owner):
        return not is_default_owner(current_owner)
    return desired_owner != current_owner


def _owner(owner_name: str) -> str:
    return quote(DEFAULT_OWNER if is_default_owner(owner_name) else owner_name)


def create_role(desired: Role) -> list[str]:
    statement = f'CREATE ROLE {quote(desired.name)}'
    if not is_default_owner(desired.owner_name):
        statement += f' AUTHORIZATION {quote(desired.owner_name)}'
    return [statement]


def update_role(desired: Role, current: Role) -> list[str]:
    if not _owner_changed(desired.owner_name, current.owner_name):
        return []
    return [f'ALTER AUTHORIZATION ON ROLE::{quote(desired.name)} TO {_owner(desired.owner_name)}']


def delete_role(current: Role) -> list[str]:
    """Drop every member, then the role. A role with members cannot be dropped."""
    role = quote(current.name)
    return [f'ALTER ROLE {role} DROP MEMBER {quote(member)}' for member in sorted(current.members)] + [
        f'DROP ROLE {role}',
    ]


def create_schema(desired: Schema) -> list[str]:
    statement = f'CREATE SCHEMA {quote(desired.name)}'
    if not is_default_owner(desired.owner_name):
        statement += f' AUTHORIZATION {quote(desired.owner_name)}'
    return [statement]


def update_schema(desired: Schema, current: Schema) -> list[str]:
    if not _owner_changed(desired.owner_name, current.owner_name):
        return []
    return [f'ALTER AUTHORIZATION ON SCHEMA::{quote(desired.name)} TO {_owner(desired.owner_name)}']


def delete_schema(current: Schema) -> list[str]:
    return [f'DROP SCHEMA {quote(current.name)}']


# ===== Master keys, credentials and external data sources =====


def create_master_key(desired: MasterKey) -> list[str]:
    if not desired.password:
        raise ValidationError('A database master key requires a password')
    return [f'CREATE MASTER KEY ENCRYPTION BY PASSWORD = {_nliteral(desired.password)}']


def update_master_key(desired: MasterKey, current: MasterKey) -> list[str]:
    """Regenerate the key under the desired password.

    The current password cannot be read back, so a supplied password always
    regenerates the key.
    """
    if not desired.password:
        return []
    return [f'ALTER MASTER KEY REGENERATE WITH ENCRYPTION BY PASSWORD = {_nliteral(desired.password)}']


def delete_master_key(current: MasterKey) -> list[str]:
    return ['DROP MASTER KEY']


def create_credential(desired: Credential) -> list[str]:
    if not desired.identity_name:
        raise ValidationError(f'Credential {quote(desired.name)} requires an identity')
    options = [f'IDENTITY = {_nliteral(desired.identity_name)}']
    if desired.secret:
        options.append(f'SECRET = {_nliteral(desired.secret)}')
    return [f'CREATE DATABASE SCOPED CREDENTIAL {quote(desired.name)} WITH ' + ', '.join(options)]


def update_credential(desired: Credential, current: Credential) -> list[str]:
    if desired.identity_name == current.identity_name and not desired.secret:
        return []
    if not desired.identity_name:
        raise ValidationError(f'Credential {quote(desired.name)} requires an identity')
    options = [f'IDENTITY = {_nliteral(desired.identity_name)}']
    if desired.secret:
        options.append(f'SECRET = {_nliteral(desired.secret)}')
    return [f'ALTER DATABASE SCOPED CREDENTIAL {quote(desired.name)} WITH ' + ', '.join(options)]


def delete_credential(current: Credential) -> list[str]:
    return [f'DROP DATABASE SCOPED CREDENTIAL {quote(current.name)}']


def create_external_datasource(desired: ExternalDatasource) -> list[str]:
    name = quote(desired.name)
    if not desired.location:
        raise ValidationError(f'External data source {name} requires a location')
    options = [
        f'TYPE = {keyword(desired.type, EXTERNAL_DATASOURCE_TYPES)}',
        f'LOCATION = {_nliteral(desired.location)}',
    ]
    if desired.remote_database_name:
        options.append(f'DATABASE_NAME = {_nliteral(desired.remote_database_name)}')
    if desired.credential_name:
        options.append(f'CREDENTIAL = {quote(desired.credential_name)}')
    return [f'CREATE EXTERNAL DATA SOURCE {name} WITH (' + ', '.join(options) + ')']


def update_external_datasource(desired: ExternalDatasource, current: ExternalDatasource) -> list[str]:
    """Statements aligning location and credential.

    Type and remote database name cannot be altered in place.
    """
    name = quote(desired.name)
    if keyword(desired.type, EXTERNAL_DATASOURCE_TYPES) != current.type.upper():
        raise ValidationError(f'External data source {name} cannot change type; recreate it')
    if desired.remote_database_name != current.remote_database_name:
        raise ValidationError(f'External data source {name} cannot change database name; recreate it')
    options = []
    if desired.location != current.location:
        options.append(f'LOCATION = {_nliteral(desired.location)}')
    if desired.credential_name != current.credential_name:
        if not desired.credential_name:
            raise ValidationError(f'External data source {name} cannot drop its credential; recreate it')
        options.append(f'CREDENTIAL = {quote(desired.credential_name)}')
    if not options:
        return []
    return [f'ALTER EXTERNAL DATA SOURCE {name} SET ' + ', '.join(options)]


def delete_external_datasource(current: ExternalDatasource) -> list[str]:
    return [f'DROP EXTERNAL DATA SOURCE {quote(current.name)}']


# ===== Permissions =====


def _permission(name: str) -> str:
    normalized = ' '.join(name.split()).upper() if isinstance(name, str) else ''
    if not _PERMISSION_NAME.fullmatch(normalized):
        raise ValidationError(f'Invalid permission name {name!r}')
    return normalized


def permission_statements(desired: DatabasePermissions, current: DatabasePermissions | None) -> list[str]:
    """REVOKE what is no longer wanted, then GRANT what is missing."""
    principal = quote(desired.principal_name)
    wanted = {_permission(p) for p in desired.permissions} - UNMANAGED_PERMISSIONS
    held = ({_permission(p) for p in current.permissions} if current else set()) - UNMANAGED_PERMISSIONS
    return [f'REVOKE {permission} FROM {principal} CASCADE' for permission in sorted(held - wanted)] + [
        f'GRANT {permission} TO {principal}' for permission in sorted(wanted - held)
    ]


def revoke_permissions(current: DatabasePermissions) -> list[str]:
    return permission_statements(DatabasePermissions(current.principal_name), current)


# ===== Scripts =====


def split_batches(script: str) -> list[str]:
    """Split a script on ``GO`` separator lines, dropping empty batches."""
    return [batch.strip() for batch in _BATCH_SEPARATOR.split(script) if batch.strip()]


def _name_part(part: str, verify_object: str) -> str:
    if not part:
        raise ValidationError(f'Empty name part in verify object {verify_object!r}')
    return unquote(part) if part.startswith('[') else part


def parse_verify_target(verify_object: str) -> VerifyTarget:
    """Parse ``'KIND [schema.]name'``.

    Raises:
        ValidationError: If there are not exactly two tokens, the kind is
            unsupported, or the name has more than two parts.
    """
    parts = verify_object.split() if isinstance(verify_object, str) else []
    if len(parts) != 2:
        raise ValidationError(f"Verify object must be in format 'TYPE NAME', got: {verify_object!r}")
    kind = VERIFY_KIND_ALIASES.get(parts[0].upper())
    if kind is None:
        raise ValidationError(
            f'Unsupported object type: {parts[0]}. '
            'Supported types are: TABLE, VIEW, PROCEDURE/PROC, FUNCTION/FUNC, SCHEMA, TRIGGER/TRG',
        )
    name_parts = parts[1].split('.')
    if len(name_parts) > 2:
        raise ValidationError(f'Object name {parts[1]!r} has more than two parts')
    if len(name_parts) == 2:
        if kind == 'SCHEMA':
            raise ValidationError(f'Schema name {parts[1]!r} cannot be qualified')
        return VerifyTarget(
            kind,
            _name_part(name_parts[1], verify_object),
            _name_part(name_parts[0], verify_object),
        )
    return VerifyTarget(kind, _name_part(name_parts[0], verify_object))


_VERIFY_SOURCES = {
    'TABLE': ('[sys].[tables]', None),
    'VIEW': ('[sys].[views]', None),
    'PROCEDURE': ('[sys].[procedures]', None),
    'FUNCTION': ('[sys].[objects]', "o.type IN ('FN', 'IF', 'TF')"),
    'TRIGGER': ('[sys].[objects]', "o.type = 'TR'"),
}


def object_exists_query(target: VerifyTarget) -> tuple[str, dict]:
    """Build the catalog query that returns a row when `target` exists.

    Names are passed as parameters, never interpolated.

    Returns:
        tuple: ``(sql, params)``.
    """
    params = {'name': target.name}
    if target.kind == 'SCHEMA':
        return 'SELECT 1 AS present FROM [sys].[schemas] s WHERE s.name = :name', params
    if target.kind == 'TRIGGER' and target.schema_name is None:
        # Also finds database-level DDL triggers, which belong to no schema
        return 'SELECT 1 AS present FROM [sys].[triggers] t WHERE t.name = :name', params

    source, type_condition = _VERIFY_SOURCES[target.kind]
    sql = f'SELECT 1 AS present FROM {source} o'
    conditions = ['o.name = :name']
    if type_condition:
        conditions.append(type_condition)
    if target.schema_name is not None:
        sql += ' INNER JOIN [sys].[schemas] s ON s.schema_id = o.schema_id'
        conditions.append('s.name = :schema_name')
        params['schema_name'] = target.schema_name
    return sql + ' WHERE ' + ' AND '.join(conditions), params


# ===== Dispatch =====

_SYNTHESIZERS: dict[tuple[type, Operation], Callable[..., list[str]]] = {
    (Login, Operation.CREATE): lambda desired, current, caps, **_: create_login(desired, caps),
    (Login, Operation.UPDATE): lambda desired, current, caps, **_: update_login(desired, current, caps),
    (Login, Operation.DELETE): lambda desired, current, caps, **_: delete_login(current),
    (User, Operation.CREATE): lambda desired, current, caps, **context: create_user(
        desired,
        caps,
        context.get('existing_roles'),
    ),
    (User, Operation.UPDATE): lambda desired, current, caps, **context: update_user(
        desired,
        current,
        caps,
        context.get('existing_roles'),
    ),
    (User, Operation.DELETE): lambda desired, current, caps, **context: delete_user(
        current,
        context.get('owned_roles', ()),
        context.get('owned_schemas', ()),
        context['current_identity'],
    ),
    (Role, Operation.CREATE): lambda desired, current, caps, **_: create_role(desired),
    (Role, Operation.UPDATE): lambda desired, current, caps, **_: update_role(desired, current),
    (Role, Operation.DELETE): lambda desired, current, caps, **_: delete_role(current),
    (Schema, Operation.CREATE): lambda desired, current, caps, **_: create_schema(desired),
    (Schema, Operation.UPDATE): lambda desired, current, caps, **_: update_schema(desired, current),
    (Schema, Operation.DELETE): lambda desired, current, caps, **_: delete_schema(current),
    (MasterKey, Operation.CREATE): lambda desired, current, caps, **_: create_master_key(desired),
    (MasterKey, Operation.UPDATE): lambda desired, current, caps, **_: update_master_key(desired, current),
    (MasterKey, Operation.DELETE): lambda desired, current, caps, **_: delete_master_key(current),
    (Credential, Operation.CREATE): lambda desired, current, caps, **_: create_credential(desired),
    (Credential, Operation.UPDATE): lambda desired, current, caps, **_: update_credential(desired, current),
    (Credential, Operation.DELETE): lambda desired, current, caps, **_: delete_credential(current),
    (ExternalDatasource, Operation.CREATE): lambda desired, current, caps, **_: create_external_datasource(desired),
    (ExternalDatasource, Operation.UPDATE): lambda desired, current, caps, **_: update_external_datasource(
        desired,
        current,
    ),
    (ExternalDatasource, Operation.DELETE): lambda desired, current, caps, **_: delete_external_datasource(current),
    (DatabasePermissions, Operation.CREATE): lambda desired, current, caps, **_: permission_statements(desired, None),
    (DatabasePermissions, Operation.UPDATE): lambda desired, current, caps, **_: permission_statements(
        desired,
        current,
    ),
    (DatabasePermissions, Operation.DELETE): lambda desired, current, caps, **_: revoke_permissions(current),
}


def synthesize(operation: Operation, desired, current, capabilities: Capabilities, **context) -> list[str]:
    """Produce the ordered statements that move `current` to `desired`.

    Args:
        operation (Operation): CREATE (current is None), UPDATE, or DELETE
            (desired is None).
        desired: The declared entity, or None for DELETE.
        current: The entity read from the catalog, or None for CREATE.
        capabilities (Capabilities): Resolved server capabilities.
        **context: Extra inputs of specific operations. Deleting a user needs
            ``owned_roles``, ``owned_schemas`` and ``current_identity``.
            Creating or updating a user takes ``existing_roles`` to check its
            roles against.

    Returns:
        list[str]: Statements to execute in order; empty when nothing changes.

    Raises:
        ValidationError: On malformed input or an unsupported entity type.
    """
    entity = current if operation is Operation.DELETE else desired
    if entity is None:
        raise ValidationError(f'Nothing to {operation.value}: entity is None')
    if operation is Operation.UPDATE and current is None:
        raise ValidationError(f'Cannot update {type(desired).__name__} without its current state')
    handler = _SYNTHESIZERS.get((type(entity), operation))
    if handler is None:
        raise ValidationError(f'Unsupported entity type {type(entity).__name__} for {operation.value}')
    return handler(desired, current, capabilities, **context)
