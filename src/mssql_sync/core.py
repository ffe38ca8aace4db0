"""Core orchestration: reconcile SQL Server principals and objects.

Every reconciliation runs the same cycle: check the parent database exists,
read current state from the catalog, synthesize statements, execute them one
by one and read the result back. Nothing is cached between calls.
"""

import functools
import logging
from abc import ABC
from abc import abstractmethod
from collections.abc import Iterable
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from mssql_sync import catalog
from mssql_sync.adapters.base import DatabaseSession
from mssql_sync.adapters.mssql import MssqlSession
from mssql_sync.dialect import Capabilities
from mssql_sync.errors import AlreadyExistsError
from mssql_sync.errors import AmbiguousStateError
from mssql_sync.errors import ExecutionError
from mssql_sync.errors import NotFoundError
from mssql_sync.models import Credential
from mssql_sync.models import DatabasePermissions
from mssql_sync.models import ExternalDatasource
from mssql_sync.models import Login
from mssql_sync.models import MasterKey
from mssql_sync.models import Operation
from mssql_sync.models import Result
from mssql_sync.models import ResultStatus
from mssql_sync.models import Role
from mssql_sync.models import Schema
from mssql_sync.models import ScriptExecutionResult
from mssql_sync.models import SqlScript
from mssql_sync.models import User
from mssql_sync.quoting import quote
from mssql_sync.synthesis import object_exists_query
from mssql_sync.synthesis import parse_verify_target
from mssql_sync.synthesis import redact
from mssql_sync.synthesis import split_batches
from mssql_sync.synthesis import synthesize

log = logging.getLogger(__name__)


def get_session(conn) -> DatabaseSession:
    """Factory function to get the session for a connection's dialect."""
    dialect = conn.engine.dialect.name

    sessions: dict[str, type[DatabaseSession]] = {
        'mssql': MssqlSession,
    }

    session_class = sessions.get(dialect)
    if not session_class:
        raise ValueError(f'Unsupported database dialect: {dialect}')

    return session_class(conn)


def _gone_on_missing_parent(method):
    """Report a NotFoundError for the parent database as a GONE result."""

    @functools.wraps(method)
    def wrapper(self, database, *args, **kwargs):
        try:
            return method(self, database, *args, **kwargs)
        except NotFoundError as exc:
            log.info('%s', exc)
            return Result(ResultStatus.GONE)

    return wrapper


class BaseReconciler:
    """Shared plumbing: capabilities, parent checks and statement execution."""

    kind = 'OBJECT'

    def __init__(
        self,
        session: DatabaseSession,
        capabilities: Capabilities | None = None,
        master_session: DatabaseSession | None = None,
    ):
        """Initialize the reconciler.

        Args:
            session: Session every catalog read and statement goes through
            capabilities: Pre-resolved capabilities; read from the server on
                first use when None
            master_session: Session connected to ``master``, used on the hosted
                edition for lookups that cannot switch databases
        """
        self.session = session
        self._capabilities = capabilities
        self.master_session = master_session

    @property
    def capabilities(self) -> Capabilities:
        if self._capabilities is None:
            self._capabilities = catalog.read_capabilities(self.session)
            log.debug('Resolved capabilities %s', self._capabilities)
        return self._capabilities

    def parent_database(self, database: str) -> str:
        """The database the object lives in."""
        return database

    def qualified_name(self, database: str, name: str) -> str:
        return f'{quote(self.parent_database(database))}.{quote(name)}'

    def exists(self, database: str) -> bool:
        """Whether the parent database exists."""
        return catalog.database_exists(self.session, self.parent_database(database))

    def require_parent(self, database: str):
        """Raise NotFoundError if the parent database does not exist."""
        if not self.exists(database):
            raise NotFoundError(f'Database {quote(self.parent_database(database))} does not exist')

    @contextmanager
    def _driver_errors(self, database: str, name: str, operation: str):
        """Wrap driver errors raised by catalog reads with object context."""
        try:
            yield
        except SQLAlchemyError as exc:
            raise ExecutionError(self.kind, self.qualified_name(database, name), operation) from exc

    def _execute(self, database: str, name: str, operation: Operation, statements: Iterable[str]):
        """Execute statements in order, wrapping driver errors with object context.

        Statements run in autocommit mode: a failure leaves the earlier ones applied.
        """
        target = self.parent_database(database)
        for statement in statements:
            log.debug('Executing: %s', redact(statement))
            try:
                self.session.execute(target, statement)
            except SQLAlchemyError as exc:
                raise ExecutionError(
                    self.kind,
                    self.qualified_name(database, name),
                    operation.value,
                    redact(statement),
                ) from exc


class Reconciler(BaseReconciler, ABC):
    """Reconciliation of one object kind.

    Subclasses set `kind` and implement `read`. The exposed contract is
    `exists`, `get`, `create`, `update` and `delete`, plus the full
    reconciliation steps `ensure_created`, `refresh` and `ensure_updated`.
    Driver errors from catalog reads surface as ExecutionError.
    """

    @abstractmethod
    def read(self, database: str, name: str):
        """Read the current state of the named object, or None if it does not exist."""

    def key_of(self, entity) -> str:
        """The identity key of an entity."""
        return entity.name

    def synthesis_context(self, database: str, desired) -> dict:
        """Extra synthesis inputs needed to create or update `desired`."""
        return {}

    def delete_context(self, database: str, current) -> dict:
        """Extra synthesis inputs needed to delete `current`."""
        return {}

    def get(self, database: str, name: str):
        with self._driver_errors(database, name, 'read'):
            return self.read(database, name)

    def create(self, database: str, desired):
        """Create the object and return its state as read back from the catalog.

        Raises:
            ValidationError: If `desired` is malformed; nothing is executed.
            ExecutionError: If the server rejects a statement.
            AmbiguousStateError: If the object cannot be read back.
        """
        name = self.key_of(desired)
        with self._driver_errors(database, name, Operation.CREATE.value):
            statements = synthesize(
                Operation.CREATE,
                desired,
                None,
                self.capabilities,
                **self.synthesis_context(database, desired),
            )
            log.info('Creating %s %s', self.kind, self.qualified_name(database, name))
            self._execute(database, name, Operation.CREATE, statements)
            created = self.read(database, name)
        if created is None:
            raise AmbiguousStateError(f'{self.kind} {self.qualified_name(database, name)} not found after create')
        return created

    def update(self, database: str, current, desired):
        """Apply the difference between `current` and `desired`.

        Returns:
            The state read back, or None if the object has disappeared.
        """
        name = self.key_of(desired)
        with self._driver_errors(database, name, Operation.UPDATE.value):
            statements = synthesize(
                Operation.UPDATE,
                desired,
                current,
                self.capabilities,
                **self.synthesis_context(database, desired),
            )
            if statements:
                log.info('Updating %s %s', self.kind, self.qualified_name(database, name))
                self._execute(database, name, Operation.UPDATE, statements)
            else:
                log.debug('%s %s is up to date', self.kind, self.qualified_name(database, name))
            return self.read(database, name)

    @_gone_on_missing_parent
    def ensure_created(self, database: str, desired) -> Result:
        """Create the object if its name is free.

        Returns:
            Result: PRESENT with the created entity, or GONE if the parent
                database does not exist.

        Raises:
            AlreadyExistsError: If an object with the same name exists.
        """
        name = self.key_of(desired)
        with self._driver_errors(database, name, Operation.CREATE.value):
            self.require_parent(database)
            if self.read(database, name) is not None:
                raise AlreadyExistsError(self.kind, self.qualified_name(database, name))
        return Result(ResultStatus.PRESENT, self.create(database, desired))

    @_gone_on_missing_parent
    def refresh(self, database: str, name: str) -> Result:
        """Read the object: PRESENT with fresh state, or GONE."""
        with self._driver_errors(database, name, 'read'):
            self.require_parent(database)
            current = self.read(database, name)
        if current is None:
            log.debug('%s %s is gone', self.kind, self.qualified_name(database, name))
            return Result(ResultStatus.GONE)
        return Result(ResultStatus.PRESENT, current)

    @_gone_on_missing_parent
    def ensure_updated(self, database: str, desired) -> Result:
        """Bring an existing object in line with `desired`: PRESENT, or GONE."""
        with self._driver_errors(database, self.key_of(desired), Operation.UPDATE.value):
            self.require_parent(database)
            current = self.read(database, self.key_of(desired))
        if current is None:
            return Result(ResultStatus.GONE)
        updated = self.update(database, current, desired)
        if updated is None:
            return Result(ResultStatus.GONE)
        return Result(ResultStatus.PRESENT, updated)

    @_gone_on_missing_parent
    def delete(self, database: str, name: str, preserve_on_removal: bool = False) -> Result:
        """Drop the object.

        Args:
            database: Parent database
            name: Object name
            preserve_on_removal: Leave the object in place for manual cleanup

        Returns:
            Result: PRESERVED, GONE (parent database missing), ALREADY_ABSENT or DELETED.
        """
        if preserve_on_removal:
            log.info('Preserving %s %s', self.kind, self.qualified_name(database, name))
            return Result(ResultStatus.PRESERVED)
        with self._driver_errors(database, name, Operation.DELETE.value):
            self.require_parent(database)
            current = self.read(database, name)
            if current is None:
                log.debug('%s %s is already absent', self.kind, self.qualified_name(database, name))
                return Result(ResultStatus.ALREADY_ABSENT)
            statements = synthesize(
                Operation.DELETE,
                None,
                current,
                self.capabilities,
                **self.delete_context(database, current),
            )
            log.info('Dropping %s %s', self.kind, self.qualified_name(database, name))
            self._execute(database, name, Operation.DELETE, statements)
        return Result(ResultStatus.DELETED)


class LoginReconciler(Reconciler):
    """Server logins. They live in ``master`` whatever database is passed."""

    kind = 'LOGIN'

    def parent_database(self, database: str) -> str:
        return catalog.MASTER_DATABASE

    def qualified_name(self, database: str, name: str) -> str:
        return quote(name)

    def read(self, database: str, name: str) -> Login | None:
        return catalog.read_login(self.session, self.capabilities, name)


class UserReconciler(Reconciler):
    kind = 'USER'

    def read(self, database: str, name: str) -> User | None:
        return catalog.read_user(self.session, self.capabilities, database, name, self.master_session)

    def synthesis_context(self, database: str, desired: User) -> dict:
        return {'existing_roles': catalog.role_names(self.session, self.capabilities, database)}

    def delete_context(self, database: str, current: User) -> dict:
        owned_roles = catalog.owned_roles(self.session, self.capabilities, database, current.name)
        owned_schemas = catalog.owned_schemas(self.session, self.capabilities, database, current.name)
        if owned_roles or owned_schemas:
            log.info(
                'Reassigning roles %s and schemas %s owned by USER %s',
                owned_roles,
                owned_schemas,
                self.qualified_name(database, current.name),
            )
        return {
            'owned_roles': owned_roles,
            'owned_schemas': owned_schemas,
            'current_identity': catalog.current_identity(self.session, database),
        }


class RoleReconciler(Reconciler):
    kind = 'ROLE'

    def read(self, database: str, name: str) -> Role | None:
        return catalog.read_role(self.session, self.capabilities, database, name)


class SchemaReconciler(Reconciler):
    kind = 'SCHEMA'

    def read(self, database: str, name: str) -> Schema | None:
        return catalog.read_schema(self.session, self.capabilities, database, name)


class MasterKeyReconciler(Reconciler):
    """The database master key. Its name is always ``##MS_DatabaseMasterKey##``."""

    kind = 'MASTER KEY'

    def key_of(self, entity: MasterKey) -> str:
        return catalog.MASTER_KEY_NAME

    def read(self, database: str, name: str = catalog.MASTER_KEY_NAME) -> MasterKey | None:
        return catalog.read_master_key(self.session, self.capabilities, database)


class CredentialReconciler(Reconciler):
    kind = 'DATABASE SCOPED CREDENTIAL'

    def read(self, database: str, name: str) -> Credential | None:
        return catalog.read_credential(self.session, self.capabilities, database, name)


class ExternalDatasourceReconciler(Reconciler):
    kind = 'EXTERNAL DATA SOURCE'

    def read(self, database: str, name: str) -> ExternalDatasource | None:
        return catalog.read_external_datasource(self.session, self.capabilities, database, name)


class PermissionsReconciler(Reconciler):
    """Database-level permissions of one principal, keyed by the principal name.

    The permission set "exists" as soon as the principal does, so ensure_created
    on a principal that already holds permissions raises AlreadyExistsError.
    """

    kind = 'DATABASE PERMISSIONS'

    def key_of(self, entity: DatabasePermissions) -> str:
        return entity.principal_name

    def read(self, database: str, name: str) -> DatabasePermissions | None:
        return catalog.read_permissions(self.session, self.capabilities, database, name)

    @_gone_on_missing_parent
    def ensure_created(self, database: str, desired: DatabasePermissions) -> Result:
        name = self.key_of(desired)
        with self._driver_errors(database, name, Operation.CREATE.value):
            self.require_parent(database)
            current = self.read(database, name)
        if current is None:
            raise AmbiguousStateError(
                f'Cannot grant permissions to missing principal {self.qualified_name(database, name)}',
            )
        if current.permissions:
            raise AlreadyExistsError(self.kind, self.qualified_name(database, name))
        return Result(ResultStatus.PRESENT, self.update(database, current, desired))


class ScriptReconciler(BaseReconciler):
    """Run arbitrary scripts, with an optional existence check as post-condition.

    A script is identified by its verification target. Deleting a script never
    undoes it: delete always reports PRESERVED.
    """

    kind = 'SCRIPT'

    def _verify(self, database: str, script: SqlScript) -> ScriptExecutionResult:
        if not script.verify_object:
            return ScriptExecutionResult(batches=0)
        target = parse_verify_target(script.verify_object)
        verified = catalog.object_exists(self.session, database, object_exists_query(target))
        return ScriptExecutionResult(batches=0, verify_target=target, verified=verified)

    def get(self, database: str, script: SqlScript) -> ScriptExecutionResult | None:
        """Check the post-condition, or None if it does not hold."""
        result = self._verify(database, script)
        return result if result.verified else None

    def run(self, database: str, script: SqlScript, operation: Operation = Operation.CREATE) -> ScriptExecutionResult:
        """Execute every batch of the script, then check its post-condition.

        Raises:
            ValidationError: If the verification target is malformed; nothing is executed.
            ExecutionError: If a batch fails; earlier batches stay applied.
            AmbiguousStateError: If the script ran but the object does not exist.
        """
        target = parse_verify_target(script.verify_object) if script.verify_object else None
        batches = split_batches(script.script)
        log.info('Running SCRIPT in %s (%d batches)', quote(database), len(batches))
        self._execute(database, script.verify_object, operation, batches)
        if target is None:
            return ScriptExecutionResult(batches=len(batches))
        with self._driver_errors(database, script.verify_object, operation.value):
            verified = catalog.object_exists(self.session, database, object_exists_query(target))
        if not verified:
            raise AmbiguousStateError(
                f'Script executed but {target.kind} {script.verify_object} was not found in {quote(database)}',
            )
        return ScriptExecutionResult(batches=len(batches), verify_target=target, verified=True)

    @_gone_on_missing_parent
    def ensure_created(self, database: str, script: SqlScript) -> Result:
        with self._driver_errors(database, script.verify_object, Operation.CREATE.value):
            self.require_parent(database)
            existing = self.get(database, script) if script.verify_object else None
        if existing is not None:
            raise AlreadyExistsError(self.kind, f'{quote(database)} {script.verify_object}')
        return Result(ResultStatus.PRESENT, self.run(database, script))

    @_gone_on_missing_parent
    def refresh(self, database: str, script: SqlScript) -> Result:
        with self._driver_errors(database, script.verify_object, 'read'):
            self.require_parent(database)
            result = self.get(database, script)
        if result is None:
            return Result(ResultStatus.GONE)
        return Result(ResultStatus.PRESENT, result)

    @_gone_on_missing_parent
    def ensure_updated(self, database: str, script: SqlScript) -> Result:
        """Run the script again."""
        with self._driver_errors(database, script.verify_object, Operation.UPDATE.value):
            self.require_parent(database)
        return Result(ResultStatus.PRESENT, self.run(database, script, Operation.UPDATE))

    def delete(self, database: str, script: SqlScript) -> Result:
        log.info('Leaving the effects of SCRIPT %s in place', script.verify_object or '(unverified)')
        return Result(ResultStatus.PRESERVED)

    def qualified_name(self, database: str, name: str) -> str:
        return f'{quote(database)} {name}' if name else quote(database)


@dataclass(frozen=True)
class Reconcilers:
    """One reconciler per object kind, sharing a session and its capabilities."""

    logins: LoginReconciler
    users: UserReconciler
    roles: RoleReconciler
    schemas: SchemaReconciler
    master_keys: MasterKeyReconciler
    credentials: CredentialReconciler
    external_datasources: ExternalDatasourceReconciler
    permissions: PermissionsReconciler
    scripts: ScriptReconciler


def get_reconcilers(conn, capabilities: Capabilities | None = None, master_conn=None) -> Reconcilers:
    """Build every reconciler over one session.

    Capabilities are read from the server once here unless passed in.

    Args:
        conn: A SQLAlchemy connection with an engine of dialect ``mssql``
        capabilities: Pre-resolved capabilities, e.g. for tests
        master_conn: A second connection to ``master``. On the hosted edition it
            resolves the logins of users, which needs a lookup in ``master``

    Raises:
        ValueError: If the connection's dialect is not supported.
    """
    session = get_session(conn)
    master_session = get_session(master_conn) if master_conn is not None else None
    if capabilities is None:
        capabilities = catalog.read_capabilities(session)
    return Reconcilers(
        logins=LoginReconciler(session, capabilities),
        users=UserReconciler(session, capabilities, master_session),
        roles=RoleReconciler(session, capabilities),
        schemas=SchemaReconciler(session, capabilities),
        master_keys=MasterKeyReconciler(session, capabilities),
        credentials=CredentialReconciler(session, capabilities),
        external_datasources=ExternalDatasourceReconciler(session, capabilities),
        permissions=PermissionsReconciler(session, capabilities),
        scripts=ScriptReconciler(session, capabilities),
    )
