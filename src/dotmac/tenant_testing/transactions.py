"""
Rollback-only test transactions.

``DatabaseTransaction`` wraps a test in one transaction on one database.
``DualDatabaseTransactionCoordinator`` extends it to the central database plus
the active tenant's database. Transactions are strictly nested: central is
opened first and rolled back last.
"""

from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field

import structlog
from sqlalchemy.engine import Connection, Engine, Transaction
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dotmac.tenant_testing.context import TenantContextSwitcher
from dotmac.tenant_testing.databases import DatabaseManager
from dotmac.tenant_testing.exceptions import OrderingViolation
from dotmac.tenant_testing.models import Tenant
from dotmac.tenant_testing.provisioner import TestingTenantProvisioner
from dotmac.tenant_testing.registry import TenantRegistry
from dotmac.tenant_testing.state import WorkerState

logger = structlog.get_logger(__name__)

CENTRAL = "central"
TENANT = "tenant"


@dataclass
class TransactionScope:
    """One open connection and its outer transaction."""

    label: str
    connection: Connection
    transaction: Transaction
    sessions: list[Session] = field(default_factory=list)

    def session(self) -> Session:
        """Session joined to the scope; its commits become savepoint releases."""
        session = Session(bind=self.connection, join_transaction_mode="create_savepoint")
        self.sessions.append(session)
        return session

    def rollback(self) -> None:
        try:
            for session in self.sessions:
                session.close()
            if self.transaction.is_active:
                self.transaction.rollback()
        finally:
            self.sessions.clear()
            self.connection.close()


class TransactionStack:
    """LIFO of open transaction scopes for the current test."""

    def __init__(self) -> None:
        self._scopes: list[TransactionScope] = []

    def push(self, scope: TransactionScope) -> None:
        self._scopes.append(scope)

    def pop(self, label: str) -> TransactionScope:
        if not self._scopes:
            raise OrderingViolation(f"No open transaction to close for {label!r}")
        top = self._scopes[-1]
        if top.label != label:
            raise OrderingViolation(
                f"Closing {label!r} transaction while {top.label!r} is still open; "
                f"open scopes: {self.labels}"
            )
        return self._scopes.pop()

    def get(self, label: str) -> TransactionScope | None:
        for scope in self._scopes:
            if scope.label == label:
                return scope
        return None

    @property
    def labels(self) -> list[str]:
        return [scope.label for scope in self._scopes]

    def __len__(self) -> int:
        return len(self._scopes)


class DatabaseTransaction:
    """Wrap a test in a rollback-only transaction on a single database."""

    def __init__(self, engine: Engine, stack: TransactionStack | None = None, label: str = CENTRAL):
        self.engine = engine
        self.stack = stack or TransactionStack()
        self.label = label

    def _open(self, label: str, engine: Engine) -> TransactionScope:
        connection = engine.connect()
        try:
            transaction = connection.begin()
        except BaseException:
            connection.close()
            raise
        scope = TransactionScope(label=label, connection=connection, transaction=transaction)
        self.stack.push(scope)
        logger.debug("tenancy.transaction.begin", scope=label)
        return scope

    def _close(self, label: str) -> None:
        scope = self.stack.pop(label)
        scope.rollback()
        logger.debug("tenancy.transaction.rollback", scope=label)

    def begin(self) -> Connection:
        return self._open(self.label, self.engine).connection

    def rollback(self) -> None:
        self._close(self.label)

    @property
    def connection(self) -> Connection:
        scope = self.stack.get(self.label)
        if scope is None:
            raise OrderingViolation(f"No open {self.label!r} transaction")
        return scope.connection

    def session(self) -> Session:
        scope = self.stack.get(self.label)
        if scope is None:
            raise OrderingViolation(f"No open {self.label!r} transaction")
        return scope.session()

    @contextmanager
    def scope(self) -> Iterator[Connection]:
        connection = self.begin()
        try:
            yield connection
        finally:
            self.rollback()


class DualDatabaseTransactionCoordinator(DatabaseTransaction):
    """Central plus tenant transactions around each tenanted test."""

    def __init__(
        self,
        central_engine: Engine,
        databases: DatabaseManager,
        registry: TenantRegistry,
        provisioner: TestingTenantProvisioner,
        switcher: TenantContextSwitcher,
        state: WorkerState,
        stack: TransactionStack | None = None,
    ):
        super().__init__(central_engine, stack=stack, label=CENTRAL)
        self.databases = databases
        self.registry = registry
        self.provisioner = provisioner
        self.switcher = switcher
        self.state = state
        self._bindings: ExitStack | None = None
        self._tenant: Tenant | None = None

    def _restore_missing_record(self) -> None:
        # Narrower than the provisioner's database check: the row can vanish
        # while the physical database survives.
        cached = self.state.testing_tenant
        if cached is not None and self.registry.find(cached.id) is None:
            logger.warning("tenancy.testing_tenant.record_missing", tenant_id=cached.id)
            self.registry.create_quietly(cached.attributes())

    def begin(self) -> Tenant:  # type: ignore[override]
        """Provision, then open central and tenant transactions in that order."""
        self._restore_missing_record()
        tenant = self.provisioner.ensure()

        try:
            central = super().begin()
            self._bindings = ExitStack()
            self._bindings.enter_context(self.registry.bound(central))

            self.switcher.activate(tenant)
            self._begin_tenant(tenant)
        except BaseException:
            self._abort()
            raise

        self._tenant = tenant
        return tenant

    def _begin_tenant(self, tenant: Tenant) -> None:
        if self.stack.labels != [CENTRAL]:
            raise OrderingViolation(
                f"Tenant transaction must nest directly inside central; open scopes: "
                f"{self.stack.labels}"
            )
        scope = self._open(TENANT, self.databases.engine_for(tenant.database))
        self.switcher.bind_connection(scope.connection)

    def _rollback_tenant(self) -> None:
        try:
            self._close(TENANT)
        except SQLAlchemyError as exc:
            tenant = self._tenant
            if tenant is not None and not self.registry.database_exists(tenant):
                # The test dropped the tenant database; nothing left to roll back.
                logger.warning(
                    "tenancy.transaction.tenant_database_gone",
                    tenant_id=tenant.id,
                    error=str(exc),
                )
                return
            raise

    def rollback(self) -> None:
        """Roll back tenant then central; central always runs."""
        try:
            self._rollback_tenant()
        finally:
            try:
                if self._bindings is not None:
                    self._bindings.close()
                    self._bindings = None
            finally:
                self._close(CENTRAL)
                self._tenant = None

    def _abort(self) -> None:
        for label in reversed(self.stack.labels):
            try:
                self._close(label)
            except SQLAlchemyError as exc:
                logger.warning("tenancy.transaction.abort_failed", scope=label, error=str(exc))
        if self._bindings is not None:
            self._bindings.close()
            self._bindings = None
        self.switcher.deactivate()

    @property
    def tenant_connection(self) -> Connection:
        scope = self.stack.get(TENANT)
        if scope is None:
            raise OrderingViolation("No open tenant transaction")
        return scope.connection

    def tenant_session(self) -> Session:
        scope = self.stack.get(TENANT)
        if scope is None:
            raise OrderingViolation("No open tenant transaction")
        return scope.session()

    @contextmanager
    def scope(self) -> Iterator[Tenant]:  # type: ignore[override]
        tenant = self.begin()
        try:
            yield tenant
        finally:
            self.rollback()
