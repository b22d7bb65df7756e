"""
Stray tenant cleanup.

Any tenant other than the testing tenant is stray once its test has finished.
"""

import structlog

from dotmac.tenant_testing.exceptions import ReapFailure
from dotmac.tenant_testing.models import Tenant
from dotmac.tenant_testing.registry import TenantRegistry
from dotmac.tenant_testing.state import WorkerState

logger = structlog.get_logger(__name__)


class StrayTenantReaper:
    """Delete every tenant except the worker's testing tenant."""

    def __init__(self, registry: TenantRegistry, state: WorkerState):
        self.registry = registry
        self.state = state
        self.failures: list[ReapFailure] = []

    def candidates(self) -> list[Tenant]:
        """Stray tenants: remaining rows plus rolled-back cohort members.

        Rows created inside a test's central transaction disappear on rollback
        while their physical databases stay behind, so the creation cohort is
        swept as well.
        """
        keep = self.state.testing_tenant_id
        strays: dict[str, Tenant] = {}
        for tenant in self.registry.all_except(keep):
            strays[tenant.id] = tenant
        for tenant in self.state.created_tenants:
            if tenant.id != keep:
                strays.setdefault(tenant.id, tenant)
        return list(strays.values())

    def reap(self) -> list[str]:
        """Delete stray tenants; returns the ids that were removed.

        A no-op unless a tenant was created since the last sweep. Individual
        deletion failures are logged and collected, never raised.
        """
        if not self.state.tenants_created:
            return []

        reaped: list[str] = []
        try:
            for tenant in self.candidates():
                try:
                    self.registry.delete(tenant)
                except Exception as exc:
                    failure = ReapFailure(tenant.id, exc)
                    self.failures.append(failure)
                    logger.warning(
                        "tenancy.reaper.delete_failed", tenant_id=tenant.id, error=str(exc)
                    )
                else:
                    reaped.append(tenant.id)
        finally:
            self.state.clear_created()

        if reaped:
            logger.info("tenancy.reaper.swept", tenant_ids=reaped)
        return reaped
