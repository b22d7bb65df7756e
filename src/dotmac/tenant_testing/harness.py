"""
Per-worker tenancy harness.

Builds every tenancy component for one worker process from settings and runs
each test inside the matching transaction scope.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from dotmac.tenant_testing.classifier import TestClassifier, TestKind
from dotmac.tenant_testing.context import TenantContextSwitcher
from dotmac.tenant_testing.databases import DatabaseManager, create_test_engine, manager_for_url
from dotmac.tenant_testing.exceptions import NoActiveTenantError
from dotmac.tenant_testing.migrations import CommandMigrator, NullMigrator, TenantMigrator
from dotmac.tenant_testing.models import Tenant
from dotmac.tenant_testing.provisioner import TestingTenantProvisioner
from dotmac.tenant_testing.reaper import StrayTenantReaper
from dotmac.tenant_testing.registry import SqlTenantRegistry, TenantRegistry
from dotmac.tenant_testing.settings import TenancyTestSettings
from dotmac.tenant_testing.state import WorkerState
from dotmac.tenant_testing.transactions import (
    DatabaseTransaction,
    DualDatabaseTransactionCoordinator,
    TransactionStack,
)
from dotmac.tenant_testing.worker import WorkerNamespace

logger = structlog.get_logger(__name__)


@dataclass
class TestRun:
    """What a running test can reach."""

    __test__ = False

    kind: TestKind
    central_session: Session
    tenant: Tenant | None = None
    tenant_session: Session | None = None


class TenancyHarness:
    """Everything one worker needs to run tenanted and central tests."""

    def __init__(
        self,
        settings: TenancyTestSettings,
        *,
        namespace: WorkerNamespace | None = None,
        central_engine: Engine | None = None,
        databases: DatabaseManager | None = None,
        registry: TenantRegistry | None = None,
        migrator: TenantMigrator | None = None,
    ):
        self.settings = settings
        self.namespace = namespace or WorkerNamespace(token=settings.worker_token)
        self.state = WorkerState()

        suffix = self.namespace.suffix()
        self.central_engine = central_engine or create_test_engine(
            settings.central_url(suffix), echo=settings.echo
        )
        self.databases = databases or manager_for_url(
            settings.tenant_database_url, echo=settings.echo
        )
        if migrator is None:
            migrator = (
                CommandMigrator(settings.migrate_command)
                if settings.migrate_command
                else NullMigrator()
            )
        self.registry = registry or SqlTenantRegistry(
            self.central_engine,
            self.databases,
            migrator=migrator,
            database_prefix=settings.database_prefix,
            suffix=suffix,
            create_databases=settings.create_databases,
        )
        self.registry.add_created_listener(self.state.record_created)

        self.switcher = TenantContextSwitcher(header_name=settings.header_name)
        self.provisioner = TestingTenantProvisioner(
            self.registry,
            self.state,
            self.namespace,
            default_attributes=settings.default_tenant.as_attributes(),
        )
        self.reaper = StrayTenantReaper(self.registry, self.state)
        self.stack = TransactionStack()
        self.central = DatabaseTransaction(self.central_engine, stack=self.stack)
        self.coordinator = DualDatabaseTransactionCoordinator(
            self.central_engine,
            self.databases,
            self.registry,
            self.provisioner,
            self.switcher,
            self.state,
            stack=self.stack,
        )
        self.classifier = TestClassifier(
            tenanted_dirs=settings.tenanted_dirs,
            central_dirs=settings.central_dirs,
            unclassified=settings.unclassified,
        )

    # ==========================================
    # Worker lifecycle
    # ==========================================

    def setup(self) -> None:
        """Prepare the central schema for this worker."""
        if isinstance(self.registry, SqlTenantRegistry):
            self.registry.migrate_central()
        logger.info(
            "tenancy.harness.ready",
            suffix=self.namespace.suffix(),
            central=self.central_engine.url.render_as_string(hide_password=True),
        )

    def teardown(self) -> None:
        """Final sweep at the end of the worker run."""
        self.switcher.deactivate()
        self.reaper.reap()

        testing_tenant = self.state.testing_tenant
        if self.settings.drop_databases_on_exit and testing_tenant is not None:
            if self.registry.database_exists(testing_tenant):
                self.registry.delete_database(testing_tenant)
                logger.info(
                    "tenancy.harness.testing_database_dropped", tenant_id=testing_tenant.id
                )

        self.databases.dispose()
        self.central_engine.dispose()

    # ==========================================
    # Per test
    # ==========================================

    @contextmanager
    def run_test(self, kind: TestKind) -> Iterator[TestRun]:
        """Run one test body inside rollback-only transactions for ``kind``."""
        if kind == TestKind.TENANTED:
            with self._tenanted() as run:
                yield run
        else:
            with self._central() as run:
                yield run

    @contextmanager
    def _central(self) -> Iterator[TestRun]:
        connection = self.central.begin()
        try:
            with self.registry.bound(connection):
                yield TestRun(kind=TestKind.CENTRAL, central_session=self.central.session())
        finally:
            try:
                self.central.rollback()
            finally:
                self.reaper.reap()

    @contextmanager
    def _tenanted(self) -> Iterator[TestRun]:
        tenant = self.coordinator.begin()
        try:
            yield TestRun(
                kind=TestKind.TENANTED,
                central_session=self.coordinator.session(),
                tenant=tenant,
                tenant_session=self.coordinator.tenant_session(),
            )
        finally:
            try:
                self.coordinator.rollback()
            finally:
                try:
                    self.reaper.reap()
                finally:
                    self.switcher.deactivate()

    # ==========================================
    # Helpers for test code
    # ==========================================

    def create_tenant(self, tenant_id: str | None = None, **attributes: Any) -> Tenant:
        """Create an extra tenant; it is reaped after the test."""
        if tenant_id and "id" not in attributes:
            attributes["id"] = tenant_id
        self.registry.configure_suffix(self.namespace.suffix())
        return self.registry.create(attributes)

    def current_tenant(self) -> Tenant:
        tenant = self.switcher.current()
        if tenant is None:
            raise NoActiveTenantError()
        return tenant

    def testing_tenant(self) -> Tenant:
        """Fetch or create the worker's testing tenant outside any test transaction."""
        return self.provisioner.ensure()
