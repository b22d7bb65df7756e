"""
Tenant registry: tenant rows in the central database plus their physical databases.

``TenantRegistry`` is the contract the harness consumes. ``SqlTenantRegistry``
implements it over SQLAlchemy for hosts whose tenants live in a ``tenants``
table; hosts with their own tenant model can supply any object satisfying the
protocol.
"""

import subprocess
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import Any, Protocol
from uuid import uuid4

import structlog
from sqlalchemy import delete, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dotmac.tenant_testing.databases import DatabaseManager
from dotmac.tenant_testing.exceptions import ProvisioningError
from dotmac.tenant_testing.migrations import NullMigrator, TenantMigrator
from dotmac.tenant_testing.models import CentralBase, Tenant, TenantModel
from dotmac.tenant_testing.worker import SERIAL_SUFFIX

logger = structlog.get_logger(__name__)

CreatedListener = Callable[[Tenant], None]


class TenantRegistry(Protocol):
    """Tenant operations supplied by the host application."""

    def find_any(self) -> Tenant | None: ...  # pragma: no cover - protocol definition
    def find(self, tenant_id: str) -> Tenant | None: ...  # pragma: no cover
    def all_except(self, tenant_id: str | None) -> list[Tenant]: ...  # pragma: no cover
    def create(self, attributes: dict[str, Any] | None = None) -> Tenant: ...  # pragma: no cover
    def create_quietly(self, attributes: dict[str, Any]) -> Tenant: ...  # pragma: no cover
    def create_database(self, tenant: Tenant) -> None: ...  # pragma: no cover
    def database_exists(self, tenant: Tenant) -> bool: ...  # pragma: no cover
    def delete_database(self, tenant: Tenant) -> None: ...  # pragma: no cover
    def delete(self, tenant: Tenant) -> None: ...  # pragma: no cover
    def configure_suffix(self, suffix: str) -> None: ...  # pragma: no cover
    def add_created_listener(self, listener: CreatedListener) -> None: ...  # pragma: no cover

    def bound(self, connection: Connection) -> AbstractContextManager[None]: ...  # pragma: no cover


_PROVISIONING_ERRORS = (
    SQLAlchemyError,
    OSError,
    subprocess.CalledProcessError,
    subprocess.TimeoutExpired,
)


class SqlTenantRegistry:
    """SQLAlchemy backed tenant registry."""

    def __init__(
        self,
        central_engine: Engine,
        databases: DatabaseManager,
        migrator: TenantMigrator | None = None,
        database_prefix: str = "tenant_",
        suffix: str = SERIAL_SUFFIX,
        create_databases: bool = True,
    ):
        self.central_engine = central_engine
        self.databases = databases
        self.migrator = migrator or NullMigrator()
        self.database_prefix = database_prefix
        self.suffix = suffix
        self.create_databases = create_databases
        self._listeners: list[CreatedListener] = []
        self._bind: Connection | None = None

    # ==========================================
    # Configuration
    # ==========================================

    def configure_suffix(self, suffix: str) -> None:
        self.suffix = suffix

    def add_created_listener(self, listener: CreatedListener) -> None:
        self._listeners.append(listener)

    def database_name(self, tenant_id: str) -> str:
        return f"{self.database_prefix}{tenant_id}{self.suffix}"

    def migrate_central(self) -> None:
        """Create the central tables if needed."""
        CentralBase.metadata.create_all(bind=self.central_engine)

    @contextmanager
    def bound(self, connection: Connection) -> Iterator[None]:
        """Route row operations through ``connection`` (savepoint per operation)."""
        previous = self._bind
        self._bind = connection
        try:
            yield
        finally:
            self._bind = previous

    @contextmanager
    def _session(self) -> Iterator[Session]:
        bind = self._bind if self._bind is not None else self.central_engine
        with Session(
            bind=bind, join_transaction_mode="create_savepoint", expire_on_commit=False
        ) as session:
            yield session
            session.commit()

    # ==========================================
    # Queries
    # ==========================================

    def find_any(self) -> Tenant | None:
        with self._session() as session:
            model = session.scalars(
                select(TenantModel).order_by(TenantModel.created_at, TenantModel.id).limit(1)
            ).first()
            return Tenant.from_model(model) if model else None

    def find(self, tenant_id: str) -> Tenant | None:
        with self._session() as session:
            model = session.get(TenantModel, tenant_id)
            return Tenant.from_model(model) if model else None

    def all_except(self, tenant_id: str | None) -> list[Tenant]:
        query = select(TenantModel).order_by(TenantModel.id)
        if tenant_id is not None:
            query = query.where(TenantModel.id != tenant_id)
        with self._session() as session:
            return [Tenant.from_model(model) for model in session.scalars(query)]

    # ==========================================
    # Creation
    # ==========================================

    def _build(self, attributes: dict[str, Any]) -> Tenant:
        attributes = dict(attributes)
        tenant_id = attributes.pop("id", None) or uuid4().hex[:12]
        database = attributes.pop("database", None) or self.database_name(tenant_id)
        name = attributes.pop("name", None) or tenant_id
        domain = attributes.pop("domain", None)
        data = dict(attributes.pop("data", None) or {})
        data.update(attributes)
        return Tenant(id=str(tenant_id), name=name, database=database, domain=domain, data=data)

    def _insert(self, tenant: Tenant) -> None:
        with self._session() as session:
            session.add(
                TenantModel(
                    id=tenant.id,
                    name=tenant.name,
                    domain=tenant.domain,
                    database=tenant.database,
                    data=tenant.data,
                )
            )

    def create(self, attributes: dict[str, Any] | None = None) -> Tenant:
        """Create a tenant row, notify listeners and provision its database."""
        tenant = self._build(attributes or {})
        self._insert(tenant)
        logger.info("tenancy.tenant.created", tenant_id=tenant.id, database=tenant.database)

        for listener in self._listeners:
            listener(tenant)

        if self.create_databases:
            self.create_database(tenant)
        return tenant

    def create_quietly(self, attributes: dict[str, Any]) -> Tenant:
        """Insert the tenant row only: no listeners, no database provisioning."""
        tenant = self._build(attributes)
        self._insert(tenant)
        logger.info("tenancy.tenant.created_quietly", tenant_id=tenant.id)
        return tenant

    def create_database(self, tenant: Tenant) -> None:
        """Create (or recreate) and migrate the tenant's physical database."""
        try:
            if self.databases.database_exists(tenant.database):
                logger.warning(
                    "tenancy.database.replacing_leftover",
                    tenant_id=tenant.id,
                    database=tenant.database,
                )
                self.databases.drop_database(tenant.database)
            self.databases.create_database(tenant.database)
            self.migrator.migrate(tenant, self.databases.engine_for(tenant.database))
        except _PROVISIONING_ERRORS as exc:
            raise ProvisioningError(
                f"could not create database {tenant.database!r} for tenant {tenant.id!r}: {exc}",
                tenant_id=tenant.id,
            ) from exc
        logger.info("tenancy.database.provisioned", tenant_id=tenant.id, database=tenant.database)

    # ==========================================
    # Physical databases & deletion
    # ==========================================

    def database_exists(self, tenant: Tenant) -> bool:
        return self.databases.database_exists(tenant.database)

    def delete_database(self, tenant: Tenant) -> None:
        self.databases.drop_database(tenant.database)

    def delete(self, tenant: Tenant) -> None:
        """Delete the tenant row and drop its physical database."""
        with self._session() as session:
            session.execute(delete(TenantModel).where(TenantModel.id == tenant.id))
        if self.databases.database_exists(tenant.database):
            self.delete_database(tenant)
        logger.info("tenancy.tenant.deleted", tenant_id=tenant.id)
