"""Process-local state shared by the provisioner, reaper and coordinator of one worker."""

from dataclasses import dataclass, field

from dotmac.tenant_testing.models import Tenant


@dataclass
class WorkerState:
    """Per-worker tenancy state.

    Constructed once per worker process and injected into every component;
    only the provisioner replaces ``testing_tenant``.
    """

    testing_tenant: Tenant | None = None
    tenants_created: bool = False
    created_tenants: list[Tenant] = field(default_factory=list)

    def record_created(self, tenant: Tenant) -> None:
        """Created-listener target: raise the flag and remember the cohort member."""
        self.tenants_created = True
        self.created_tenants.append(tenant.snapshot())

    def clear_created(self) -> None:
        self.tenants_created = False
        self.created_tenants.clear()

    @property
    def testing_tenant_id(self) -> str | None:
        return self.testing_tenant.id if self.testing_tenant else None
