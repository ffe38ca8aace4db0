import re

import pytest
import sqlalchemy as sa

from mssql_sync.core import LoginReconciler
from mssql_sync.core import MasterKeyReconciler
from mssql_sync.core import PermissionsReconciler
from mssql_sync.core import Reconciler
from mssql_sync.core import RoleReconciler
from mssql_sync.core import SchemaReconciler
from mssql_sync.core import ScriptReconciler
from mssql_sync.core import UserReconciler
from mssql_sync.core import get_reconcilers
from mssql_sync.core import get_session
from mssql_sync.errors import AlreadyExistsError
from mssql_sync.errors import AmbiguousStateError
from mssql_sync.errors import DeadlineExceededError
from mssql_sync.errors import ExecutionError
from mssql_sync.errors import ValidationError
from mssql_sync.models import DatabasePermissions
from mssql_sync.models import Login
from mssql_sync.models import MasterKey
from mssql_sync.models import ResultStatus
from mssql_sync.models import Role
from mssql_sync.models import Schema
from mssql_sync.models import SqlScript
from mssql_sync.models import User

SCHEMA_QUERY = 's.principal_id AS owner_id'
ROLE_QUERY = 'r.owning_principal_id AS owner_id'
USER_QUERY = 'p.authentication_type_desc'
ROLE_NAMES_QUERY = "WHERE type = 'R' AND name != 'public'"
EXISTING_ROLES = [{'name': 'admins'}, {'name': 'readers'}, {'name': 'writers'}]


def _schema_row(name='sales', owner_name='dbo'):
    return {'schema_id': 7, 'name': name, 'owner_id': 1, 'owner_name': owner_name}


def _user_row(roles=''):
    return {
        'principal_id': 5,
        'name': 'alice',
        'type': 'S',
        'authentication_type_desc': 'INSTANCE',
        'default_schema': 'dbo',
        'default_language': '',
        'sid': b'\x01',
        'sid_str': '0x01',
        'login_name': 'alice',
        'roles': roles,
    }


def test_get_session_raises(test_sqlite_engine) -> None:
    with pytest.raises(ValueError, match='Unsupported database dialect: sqlite'):
        get_session(test_sqlite_engine)


def test_get_reconcilers_raises(test_sqlite_engine) -> None:
    with test_sqlite_engine.connect() as conn:
        with pytest.raises(ValueError, match='Unsupported database dialect: sqlite'):
            get_reconcilers(conn)


def test_ensure_created_creates_and_reads_back(fake_session, capabilities) -> None:
    session = fake_session({SCHEMA_QUERY: lambda params: [_schema_row()] if session.executed else []})

    result = SchemaReconciler(session, capabilities).ensure_created('app', Schema('sales'))

    assert result.status is ResultStatus.PRESENT
    assert result.entity == Schema('sales', 'dbo', schema_id=7, owner_id=1)
    assert session.executed == [('app', 'CREATE SCHEMA [sales]')]


def test_ensure_created_twice_raises_already_exists(fake_session, capabilities) -> None:
    session = fake_session({SCHEMA_QUERY: lambda params: [_schema_row()] if session.executed else []})
    reconciler = SchemaReconciler(session, capabilities)
    reconciler.ensure_created('app', Schema('sales'))

    with pytest.raises(AlreadyExistsError, match=re.escape('SCHEMA [app].[sales] already exists')):
        reconciler.ensure_created('app', Schema('sales'))

    assert session.statements == ['CREATE SCHEMA [sales]']


def test_create_without_read_back_is_ambiguous(fake_session, capabilities) -> None:
    session = fake_session()

    with pytest.raises(AmbiguousStateError, match=re.escape('ROLE [app].[readers] not found after create')):
        RoleReconciler(session, capabilities).ensure_created('app', Role('readers'))


def test_validation_errors_are_raised_before_any_statement(fake_session, capabilities) -> None:
    session = fake_session()

    with pytest.raises(ValidationError):
        UserReconciler(session, capabilities).ensure_created('app', User('alice', login_name='a', password='b'))

    assert session.executed == []


@pytest.mark.parametrize(
    'call',
    [
        lambda reconciler: reconciler.refresh('missing', 'sales'),
        lambda reconciler: reconciler.ensure_updated('missing', Schema('sales', 'alice')),
        lambda reconciler: reconciler.delete('missing', 'sales'),
        lambda reconciler: reconciler.ensure_created('missing', Schema('sales')),
    ],
)
def test_missing_parent_database_is_gone(fake_session, capabilities, call) -> None:
    session = fake_session({SCHEMA_QUERY: [_schema_row()]})

    result = call(SchemaReconciler(session, capabilities))

    assert result.status is ResultStatus.GONE
    assert result.entity is None
    assert session.executed == []


def test_refresh(fake_session, capabilities) -> None:
    session = fake_session({SCHEMA_QUERY: lambda params: [_schema_row()] if params['name'] == 'sales' else []})
    reconciler = SchemaReconciler(session, capabilities)

    present = reconciler.refresh('app', 'sales')
    gone = reconciler.refresh('app', 'other')

    assert present.status is ResultStatus.PRESENT
    assert present.entity.name == 'sales'
    assert gone.status is ResultStatus.GONE


def test_ensure_updated_changes_owner(fake_session, capabilities) -> None:
    def schema_rows(params):
        return [_schema_row(owner_name='alice' if session.executed else 'bob')]

    session = fake_session({SCHEMA_QUERY: schema_rows})

    result = SchemaReconciler(session, capabilities).ensure_updated('app', Schema('sales', 'alice'))

    assert result.status is ResultStatus.PRESENT
    assert result.entity.owner_name == 'alice'
    assert session.statements == ['ALTER AUTHORIZATION ON SCHEMA::[sales] TO [alice]']


def test_ensure_updated_without_changes_executes_nothing(fake_session, capabilities) -> None:
    session = fake_session({SCHEMA_QUERY: [_schema_row(owner_name='alice')]})

    result = SchemaReconciler(session, capabilities).ensure_updated('app', Schema('sales', 'alice'))

    assert result.status is ResultStatus.PRESENT
    assert session.executed == []


def test_ensure_updated_missing_object_is_gone(fake_session, capabilities) -> None:
    result = SchemaReconciler(fake_session(), capabilities).ensure_updated('app', Schema('sales'))

    assert result.status is ResultStatus.GONE


def test_ensure_updated_user_roles(fake_session, capabilities) -> None:
    session = fake_session({USER_QUERY: [_user_row(roles='[readers],[admins]')], ROLE_NAMES_QUERY: EXISTING_ROLES})
    desired = User('alice', login_name='alice', roles=frozenset({'readers', 'writers'}))

    UserReconciler(session, capabilities).ensure_updated('app', desired)

    assert session.executed == [
        ('app', 'ALTER ROLE [admins] DROP MEMBER [alice]'),
        ('app', 'ALTER ROLE [writers] ADD MEMBER [alice]'),
    ]


def test_delete_user_transfers_ownership_then_drops(fake_session, capabilities) -> None:
    session = fake_session(
        {
            USER_QUERY: [_user_row()],
            'o.owning_principal_id = p.principal_id': [{'name': 'auditors'}, {'name': 'readers'}],
            'SELECT s.name': [{'name': 'sales'}, {'name': 'staging'}],
            'USER_NAME()': [{'name': 'deployer'}],
        },
    )

    result = UserReconciler(session, capabilities).delete('app', 'alice')

    assert result.status is ResultStatus.DELETED
    assert session.statements == [
        'ALTER AUTHORIZATION ON ROLE::[auditors] TO [deployer]',
        'ALTER AUTHORIZATION ON ROLE::[readers] TO [deployer]',
        'ALTER AUTHORIZATION ON SCHEMA::[sales] TO [deployer]',
        'ALTER AUTHORIZATION ON SCHEMA::[staging] TO [deployer]',
        'DROP USER [alice]',
    ]


def test_delete_already_absent(fake_session, capabilities) -> None:
    session = fake_session()

    result = RoleReconciler(session, capabilities).delete('app', 'readers')

    assert result.status is ResultStatus.ALREADY_ABSENT
    assert session.executed == []


def test_delete_preserved_runs_no_sql(fake_session, capabilities) -> None:
    session = fake_session({ROLE_QUERY: [{'principal_id': 9, 'name': 'readers', 'owner_id': 1, 'owner_name': 'dbo'}]})

    result = RoleReconciler(session, capabilities).delete('app', 'readers', preserve_on_removal=True)

    assert result.status is ResultStatus.PRESERVED
    assert session.queries == []
    assert session.executed == []


def test_delete_role_drops_members_first(fake_session, capabilities) -> None:
    session = fake_session(
        {ROLE_QUERY: [{'principal_id': 9, 'name': 'readers', 'owner_id': 1, 'owner_name': 'dbo', 'members': '[bob]'}]},
    )

    result = RoleReconciler(session, capabilities).delete('app', 'readers')

    assert result.status is ResultStatus.DELETED
    assert session.statements == ['ALTER ROLE [readers] DROP MEMBER [bob]', 'DROP ROLE [readers]']


def test_execution_error_carries_context_and_redacts_secrets(fake_session, capabilities) -> None:
    session = fake_session(databases=('master',), fail_on='CREATE LOGIN')

    with pytest.raises(ExecutionError) as exc_info:
        LoginReconciler(session, capabilities).ensure_created('master', Login('app', password='hunter2'))

    error = exc_info.value
    assert str(error) == (
        "unable to create LOGIN [app]: CREATE LOGIN [app] WITH PASSWORD = '***', DEFAULT_DATABASE = [master]"
    )
    assert error.kind == 'LOGIN'
    assert error.operation == 'create'
    assert 'hunter2' not in str(error)
    assert isinstance(error.__cause__, sa.exc.ProgrammingError)


def test_execution_error_stops_the_batch(fake_session, capabilities) -> None:
    session = fake_session(
        {USER_QUERY: [_user_row(roles='[admins]')], ROLE_NAMES_QUERY: EXISTING_ROLES},
        fail_on='DROP MEMBER',
    )
    desired = User('alice', login_name='alice', roles=frozenset({'writers'}))

    with pytest.raises(ExecutionError, match=re.escape('unable to update USER [app].[alice]')):
        UserReconciler(session, capabilities).ensure_updated('app', desired)

    assert session.statements == ['ALTER ROLE [admins] DROP MEMBER [alice]']


def test_logins_live_in_master(fake_session, capabilities) -> None:
    session = fake_session(databases=('master',))

    result = LoginReconciler(session, capabilities).delete('app', 'app_login')

    assert result.status is ResultStatus.ALREADY_ABSENT
    assert [target for target, _, _ in session.queries] == [None, 'master']


def test_capabilities_are_read_once(fake_session) -> None:
    session = fake_session({'@@VERSION': [{'version': 'Microsoft SQL Server 2019', 'compatibility_level': 150}]})
    reconciler = SchemaReconciler(session)

    reconciler.refresh('app', 'sales')
    reconciler.refresh('app', 'sales')

    assert sum('@@VERSION' in sql for _, sql, _ in session.queries) == 1


def test_deadline_exceeded(fake_session, capabilities) -> None:
    session = fake_session()
    reconciler = SchemaReconciler(session, capabilities)

    with session.deadline_after(0):
        with pytest.raises(DeadlineExceededError, match='Deadline exceeded before running'):
            reconciler.refresh('app', 'sales')

    assert session.deadline is None


def test_master_key(fake_session, capabilities) -> None:
    key_row = {
        'key_name': '##MS_DatabaseMasterKey##',
        'principal_id': 1,
        'symmetric_key_id': 101,
        'key_length': 256,
        'key_algorithm': 'A3',
        'algorithm_desc': 'AES_256',
        'key_guid': 'E2F5B1A0-0000-0000-0000-000000000000',
    }
    session = fake_session({'symmetric_keys': lambda params: [key_row] if session.executed else []})

    result = MasterKeyReconciler(session, capabilities).ensure_created('app', MasterKey(password='k3y'))

    assert result.entity.algorithm_desc == 'AES_256'
    assert session.statements == ["CREATE MASTER KEY ENCRYPTION BY PASSWORD = N'k3y'"]


def test_permissions_ensure_created_grants(fake_session, capabilities) -> None:
    session = fake_session(
        {
            'SELECT principal_id FROM': [{'principal_id': 5}],
            'permission_name': lambda params: [{'permission_name': 'SELECT'}] if session.executed else [],
        },
    )

    result = PermissionsReconciler(session, capabilities).ensure_created(
        'app',
        DatabasePermissions('alice', frozenset({'SELECT'})),
    )

    assert result.entity.permissions == frozenset({'SELECT'})
    assert session.statements == ['GRANT SELECT TO [alice]']


def test_permissions_ensure_created_for_missing_principal(fake_session, capabilities) -> None:
    with pytest.raises(AmbiguousStateError, match=re.escape('missing principal [app].[alice]')):
        PermissionsReconciler(fake_session(), capabilities).ensure_created(
            'app',
            DatabasePermissions('alice', frozenset({'SELECT'})),
        )


def test_script_runs_batches_and_verifies(fake_session, capabilities) -> None:
    session = fake_session({'[sys].[tables]': lambda params: [{'present': 1}] if session.executed else []})
    script = SqlScript('CREATE TABLE dbo.Users (id int)\nGO\nINSERT INTO dbo.Users VALUES (1)', 'TABLE dbo.Users')

    result = ScriptReconciler(session, capabilities).ensure_created('app', script)

    assert result.status is ResultStatus.PRESENT
    assert result.entity.batches == 2
    assert result.entity.verified
    assert session.statements == ['CREATE TABLE dbo.Users (id int)', 'INSERT INTO dbo.Users VALUES (1)']


def test_script_that_does_not_create_its_object_is_ambiguous(fake_session, capabilities) -> None:
    session = fake_session()

    with pytest.raises(AmbiguousStateError, match=re.escape('Script executed but TABLE dbo.Users was not found')):
        ScriptReconciler(session, capabilities).ensure_created('app', SqlScript('SELECT 1', 'TABLE dbo.Users'))


def test_script_with_malformed_target_runs_nothing(fake_session, capabilities) -> None:
    session = fake_session()

    with pytest.raises(ValidationError, match='Unsupported object type: INDEX'):
        ScriptReconciler(session, capabilities).ensure_created('app', SqlScript('SELECT 1', 'INDEX ix_users'))

    assert session.executed == []


def test_script_refresh_and_delete(fake_session, capabilities) -> None:
    session = fake_session()
    reconciler = ScriptReconciler(session, capabilities)
    script = SqlScript('CREATE VIEW v AS SELECT 1 AS one', 'VIEW dbo.v')

    assert reconciler.refresh('app', script).status is ResultStatus.GONE
    assert reconciler.delete('app', script).status is ResultStatus.PRESERVED
    assert session.executed == []


def test_ensure_updated_user_roles_match_case_insensitively(fake_session, capabilities) -> None:
    session = fake_session(
        {USER_QUERY: [_user_row(roles='[readers]')], ROLE_NAMES_QUERY: [{'name': 'readers'}]},
    )
    desired = User('alice', login_name='alice', roles=frozenset({'Readers'}))

    result = UserReconciler(session, capabilities).ensure_updated('app', desired)

    assert result.status is ResultStatus.PRESENT
    assert session.executed == []


def test_ensure_updated_user_adds_role_with_catalog_spelling(fake_session, capabilities) -> None:
    session = fake_session({USER_QUERY: [_user_row()], ROLE_NAMES_QUERY: [{'name': 'Readers'}]})
    desired = User('alice', login_name='alice', roles=frozenset({'READERS'}))

    UserReconciler(session, capabilities).ensure_updated('app', desired)

    assert session.statements == ['ALTER ROLE [Readers] ADD MEMBER [alice]']


def test_ensure_updated_user_with_missing_role_runs_nothing(fake_session, capabilities) -> None:
    session = fake_session({USER_QUERY: [_user_row(roles='[admins]')], ROLE_NAMES_QUERY: EXISTING_ROLES})
    desired = User('alice', login_name='alice', roles=frozenset({'readers', 'auditors'}))

    with pytest.raises(ValidationError, match=re.escape('Cannot add [alice] to missing roles: [auditors]')):
        UserReconciler(session, capabilities).ensure_updated('app', desired)

    assert session.executed == []


def test_refresh_hosted_instance_user_reads_login_from_master_session(fake_session, hosted_capabilities) -> None:
    session = fake_session({USER_QUERY: [{**_user_row(), 'login_name': ''}]})
    master_session = fake_session({'FROM [sys].[sql_logins] WHERE sid = :sid': [{'name': 'alice'}]})

    result = UserReconciler(session, hosted_capabilities, master_session).refresh('app', 'alice')

    assert result.status is ResultStatus.PRESENT
    assert result.entity.login_name == 'alice'
    assert all(target in (None, 'app') for target, _, _ in session.queries)
    assert [target for target, _, _ in master_session.queries] == [None]


def _failing_query(params):
    raise sa.exc.OperationalError('SELECT', params, Exception('Login timeout expired'))


@pytest.mark.parametrize(
    ('call', 'operation'),
    [
        (lambda reconciler: reconciler.refresh('app', 'sales'), 'read'),
        (lambda reconciler: reconciler.get('app', 'sales'), 'read'),
        (lambda reconciler: reconciler.ensure_created('app', Schema('sales')), 'create'),
        (lambda reconciler: reconciler.ensure_updated('app', Schema('sales')), 'update'),
        (lambda reconciler: reconciler.delete('app', 'sales'), 'delete'),
    ],
)
def test_catalog_read_errors_carry_context(fake_session, capabilities, call, operation) -> None:
    session = fake_session({SCHEMA_QUERY: _failing_query})

    with pytest.raises(ExecutionError) as exc_info:
        call(SchemaReconciler(session, capabilities))

    error = exc_info.value
    assert str(error) == f'unable to {operation} SCHEMA [app].[sales]'
    assert error.qualified_name == '[app].[sales]'
    assert error.operation == operation
    assert error.statement is None
    assert isinstance(error.__cause__, sa.exc.OperationalError)
    assert session.executed == []


def test_parent_check_errors_carry_context(fake_session, capabilities, monkeypatch) -> None:
    session = fake_session()
    monkeypatch.setattr(session, 'query_row', lambda target, sql, params=None: _failing_query(params))

    with pytest.raises(ExecutionError, match=re.escape('unable to read ROLE [app].[readers]')):
        RoleReconciler(session, capabilities).refresh('app', 'readers')


def test_script_verify_errors_carry_context(fake_session, capabilities) -> None:
    session = fake_session({'SELECT 1 AS present': _failing_query})

    with pytest.raises(ExecutionError, match=re.escape('unable to read SCRIPT [app] TABLE [dbo].[t]')):
        ScriptReconciler(session, capabilities).refresh('app', SqlScript('SELECT 1', 'TABLE [dbo].[t]'))


def test_reconciler_is_abstract(fake_session, capabilities) -> None:
    with pytest.raises(TypeError):
        Reconciler(fake_session(), capabilities)
