"""MSSQL Sync package."""

from mssql_sync.core import CredentialReconciler
from mssql_sync.core import ExternalDatasourceReconciler
from mssql_sync.core import LoginReconciler
from mssql_sync.core import MasterKeyReconciler
from mssql_sync.core import PermissionsReconciler
from mssql_sync.core import Reconcilers
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
from mssql_sync.errors import NotFoundError
from mssql_sync.errors import SyncError
from mssql_sync.errors import ValidationError
from mssql_sync.models import Credential
from mssql_sync.models import DatabasePermissions
from mssql_sync.models import ExternalDatasource
from mssql_sync.models import Login
from mssql_sync.models import LoginKind
from mssql_sync.models import MasterKey
from mssql_sync.models import Result
from mssql_sync.models import ResultStatus
from mssql_sync.models import Role
from mssql_sync.models import Schema
from mssql_sync.models import SqlScript
from mssql_sync.models import User
