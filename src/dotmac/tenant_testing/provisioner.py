"""
Worker-scoped testing tenant provisioning.

The testing tenant is created lazily on first need and reused by every test of
the worker. A test may legitimately destroy it (e.g. when exercising a
"delete tenant" action); that is detected at the start of the next test and
repaired instead of failing the run.
"""

from enum import Enum
from typing import Any

import structlog

from dotmac.tenant_testing.exceptions import StaleTenantDetected
from dotmac.tenant_testing.models import Tenant
from dotmac.tenant_testing.registry import TenantRegistry
from dotmac.tenant_testing.state import WorkerState
from dotmac.tenant_testing.worker import WorkerNamespace

logger = structlog.get_logger(__name__)


class ProvisionerStatus(str, Enum):
    ABSENT = "absent"
    CACHED = "cached"
    STALE = "stale"


class TestingTenantProvisioner:
    """Owns the cached testing tenant of one worker."""

    __test__ = False

    def __init__(
        self,
        registry: TenantRegistry,
        state: WorkerState,
        namespace: WorkerNamespace,
        default_attributes: dict[str, Any] | None = None,
    ):
        self.registry = registry
        self.state = state
        self.namespace = namespace
        self.default_attributes = dict(default_attributes or {})
        self._stale: Tenant | None = None

    @property
    def status(self) -> ProvisionerStatus:
        if self.state.testing_tenant is not None:
            return ProvisionerStatus.CACHED
        if self._stale is not None:
            return ProvisionerStatus.STALE
        return ProvisionerStatus.ABSENT

    def check_stale(self) -> None:
        """Raise ``StaleTenantDetected`` if the cached tenant's database is gone."""
        cached = self.state.testing_tenant
        if cached is not None and not self.registry.database_exists(cached):
            raise StaleTenantDetected(cached.id, cached.database)

    def _mark_stale(self, exc: StaleTenantDetected) -> None:
        logger.warning(
            "tenancy.testing_tenant.stale", tenant_id=exc.tenant_id, database=exc.database
        )
        self._stale = self.state.testing_tenant
        self.state.testing_tenant = None

    def ensure(self) -> Tenant:
        """Return a testing tenant whose physical database exists.

        Raises:
            ProvisioningError: the database backend could not provision it
        """
        try:
            self.check_stale()
        except StaleTenantDetected as exc:
            self._mark_stale(exc)

        tenant = self._cached_record()
        if tenant is None and self._stale is not None:
            tenant = self._restore_stale_record(self._stale)
        if tenant is None:
            tenant = self.registry.find_any()

        if tenant is None:
            self.registry.configure_suffix(self.namespace.suffix())
            tenant = self.registry.create(self.default_attributes)
            logger.info(
                "tenancy.testing_tenant.created", tenant_id=tenant.id, database=tenant.database
            )
        elif not self.registry.database_exists(tenant):
            self.registry.configure_suffix(self.namespace.suffix())
            self.registry.create_database(tenant)
            logger.info(
                "tenancy.testing_tenant.reprovisioned",
                tenant_id=tenant.id,
                database=tenant.database,
            )

        self._stale = None
        self.state.testing_tenant = tenant.snapshot()
        return tenant

    def _cached_record(self) -> Tenant | None:
        cached = self.state.testing_tenant
        if cached is None:
            return None
        return self.registry.find(cached.id)

    def _restore_stale_record(self, stale: Tenant) -> Tenant:
        # The stale tenant's row may be gone too; put it back so the id is reused.
        tenant = self.registry.find(stale.id)
        if tenant is None:
            tenant = self.registry.create_quietly(stale.attributes())
            logger.info("tenancy.testing_tenant.record_restored", tenant_id=stale.id)
        return tenant
