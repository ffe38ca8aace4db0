"""SQL Server principal and object models.

All entities are frozen dataclasses: value-like snapshots built either from
catalog rows or from caller-declared desired state. They are never cached
between reconciliation calls.
"""

from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any

DEFAULT_SCHEMA = 'dbo'
DEFAULT_OWNER = 'dbo'
PUBLIC_ROLE = 'public'
# Implicitly granted to every user; never read or revoked
UNMANAGED_PERMISSIONS = frozenset({'CONNECT'})


def is_default_owner(owner_name: str | None) -> bool:
    """Whether an owner name means "the default owner" (empty or ``dbo``)."""
    return not owner_name or owner_name == DEFAULT_OWNER


class LoginKind(Enum):
    """Server-level authentication kinds, keyed by ``sys.server_principals.type``."""

    SQL = 'S'
    """SQL-password login."""
    WINDOWS = 'U'
    """Windows user login."""
    WINDOWS_GROUP = 'G'
    """Windows group login."""
    EXTERNAL_USER = 'E'
    """Federated (Entra ID) user or application login."""
    EXTERNAL_GROUP = 'X'
    """Federated (Entra ID) group login."""


class AuthenticationType(Enum):
    """Database user authentication, keyed by ``sys.database_principals.authentication_type_desc``."""

    NONE = 'NONE'
    INSTANCE = 'INSTANCE'
    DATABASE = 'DATABASE'
    WINDOWS = 'WINDOWS'
    EXTERNAL = 'EXTERNAL'


class Operation(Enum):
    """The statement-producing operations of the synthesizer."""

    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'


class ResultStatus(Enum):
    """Outcome of one reconciliation call."""

    PRESENT = 1
    """The object exists; the result carries its fresh state."""
    GONE = 2
    """The object or its parent database is absent; the caller should forget it."""
    DELETED = 3
    """The object existed and was dropped."""
    ALREADY_ABSENT = 4
    """A delete found nothing to drop."""
    PRESERVED = 5
    """A delete was skipped on purpose, leaving the object for manual cleanup."""


@dataclass(frozen=True)
class Result:
    """Result of a reconciliation call.

    Attributes:
        status (ResultStatus): What happened.
        entity (Any): The fresh entity when status is PRESENT, otherwise None.
    """

    status: ResultStatus
    entity: Any = None


@dataclass(frozen=True)
class Login:
    """A server-level login.

    Attributes:
        name (str): Login name.
        kind (LoginKind): Authentication kind.
        default_database (str): Default database, ``master`` unless stated.
        default_language (str): Default language, or '' for the server default.
        password (str | None): Desired password for SQL logins. Never read back.
        object_id (str | None): Directory object id for federated logins on the
            hosted edition. Never read back.
        principal_id (int | None): Server-reported principal id.
        sid (bytes | None): Server-reported security identifier.
    """

    name: str
    kind: LoginKind = LoginKind.SQL
    default_database: str = 'master'
    default_language: str = ''
    password: str | None = field(default=None, repr=False)
    object_id: str | None = None
    principal_id: int | None = None
    sid: bytes | None = None


@dataclass(frozen=True)
class User:
    """A database user.

    At most one of `login_name`, `password` and `object_id` binds the user to an
    identity. With none of them the user is created from the external provider.

    Attributes:
        name (str): User name.
        login_name (str): Server login the user maps to, or ''.
        password (str | None): Password of a contained user. Never read back.
        object_id (str | None): Directory object id of a federated user.
        type (str): Principal type, ``'E'`` or ``'X'`` for federated users.
        default_schema (str): Default schema.
        default_language (str): Default language, or '' for none.
        roles (frozenset[str]): Database roles the user is a direct member of.
        principal_id (int | None): Server-reported principal id.
        sid (bytes | None): Server-reported security identifier.
        sid_str (str): The SID in ``0x…`` hex form.
        authentication_type (AuthenticationType | None): Server-reported authentication type.
    """

    name: str
    login_name: str = ''
    password: str | None = field(default=None, repr=False)
    object_id: str | None = None
    type: str = ''
    default_schema: str = DEFAULT_SCHEMA
    default_language: str = ''
    roles: frozenset[str] = frozenset()
    principal_id: int | None = None
    sid: bytes | None = None
    sid_str: str = ''
    authentication_type: AuthenticationType | None = None


@dataclass(frozen=True)
class Role:
    """A database role.

    Attributes:
        name (str): Role name.
        owner_name (str): Owning principal; '' or ``dbo`` for the default owner.
        members (frozenset[str]): Direct members of the role.
        principal_id (int | None): Server-reported principal id.
        owner_id (int | None): Server-reported principal id of the owner.
    """

    name: str
    owner_name: str = DEFAULT_OWNER
    members: frozenset[str] = frozenset()
    principal_id: int | None = None
    owner_id: int | None = None


@dataclass(frozen=True)
class Schema:
    """A database schema. Every schema has exactly one owner.

    Attributes:
        name (str): Schema name.
        owner_name (str): Owning principal; '' or ``dbo`` for the default owner.
        schema_id (int | None): Server-reported schema id.
        owner_id (int | None): Server-reported principal id of the owner.
    """

    name: str
    owner_name: str = DEFAULT_OWNER
    schema_id: int | None = None
    owner_id: int | None = None


@dataclass(frozen=True)
class MasterKey:
    """The database master key. There is at most one per database.

    Attributes:
        password (str | None): Desired encryption password. Never read back.
        key_name (str): Server-reported key name.
        principal_id (int | None): Server-reported owner principal id.
        symmetric_key_id (int | None): Server-reported key id.
        key_length (int | None): Server-reported key length in bits.
        key_algorithm (str): Server-reported algorithm code.
        algorithm_desc (str): Server-reported algorithm description.
        key_guid (str): Server-reported key guid.
    """

    password: str | None = field(default=None, repr=False)
    key_name: str = ''
    principal_id: int | None = None
    symmetric_key_id: int | None = None
    key_length: int | None = None
    key_algorithm: str = ''
    algorithm_desc: str = ''
    key_guid: str = ''


@dataclass(frozen=True)
class Credential:
    """A database scoped credential.

    Attributes:
        name (str): Credential name.
        identity_name (str): Identity used to authenticate outside the server.
        secret (str | None): Desired secret. Never read back.
        credential_id (int | None): Server-reported id.
    """

    name: str
    identity_name: str = ''
    secret: str | None = field(default=None, repr=False)
    credential_id: int | None = None


@dataclass(frozen=True)
class ExternalDatasource:
    """An external data source.

    Attributes:
        name (str): Data source name.
        location (str): Location, e.g. a server host name.
        type (str): Data source type keyword, e.g. ``RDBMS``.
        remote_database_name (str): Database on the remote server, or ''.
        credential_name (str): Database scoped credential used, or ''.
        data_source_id (int | None): Server-reported id.
    """

    name: str
    location: str = ''
    type: str = 'RDBMS'
    remote_database_name: str = ''
    credential_name: str = ''
    data_source_id: int | None = None


@dataclass(frozen=True)
class DatabasePermissions:
    """Database-level permissions granted to one principal.

    Attributes:
        principal_name (str): Grantee user or role.
        permissions (frozenset[str]): Permission names, e.g. ``{'SELECT', 'EXECUTE'}``.
        principal_id (int | None): Server-reported principal id of the grantee.
    """

    principal_name: str
    permissions: frozenset[str] = frozenset()
    principal_id: int | None = None


@dataclass(frozen=True)
class VerifyTarget:
    """An object whose existence confirms that a script ran.

    Attributes:
        kind (str): Canonical object kind, e.g. ``'TABLE'``.
        name (str): Object name.
        schema_name (str | None): Schema, when the target name was qualified.
    """

    kind: str
    name: str
    schema_name: str | None = None


@dataclass(frozen=True)
class SqlScript:
    """An arbitrary script plus an optional existence check.

    Attributes:
        script (str): T-SQL text; ``GO`` lines separate batches.
        verify_object (str): ``'KIND [schema.]name'``, or '' for no check.
    """

    script: str = field(repr=False)
    verify_object: str = ''


@dataclass(frozen=True)
class ScriptExecutionResult:
    """Outcome of running a script. Not persisted.

    Attributes:
        batches (int): Number of batches executed.
        verify_target (VerifyTarget | None): The post-condition checked, if any.
        verified (bool): Whether the post-condition held (True when there was none).
    """

    batches: int
    verify_target: VerifyTarget | None = None
    verified: bool = True
