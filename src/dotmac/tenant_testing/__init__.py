"""
DotMac Tenant Testing - test database lifecycle for database-per-tenant services.

Provides:
- One reusable testing tenant (and physical database) per parallel test worker
- Rollback-only transactions spanning the central and the tenant database
- Detection and repair of a testing tenant destroyed by the code under test
- Cleanup of stray tenants created during a test
- A pytest plugin classifying tests as tenanted or central by directory
"""

from dotmac.tenant_testing.classifier import TestClassifier, TestKind
from dotmac.tenant_testing.client import attach_tenant_header
from dotmac.tenant_testing.context import TenantContextSwitcher, get_current_tenant
from dotmac.tenant_testing.exceptions import (
    ClassificationError,
    NoActiveTenantError,
    OrderingViolation,
    ProvisioningError,
    ReapFailure,
    StaleTenantDetected,
    TenancyTestingError,
)
from dotmac.tenant_testing.harness import TenancyHarness
from dotmac.tenant_testing.migrations import CommandMigrator, MetadataMigrator, NullMigrator
from dotmac.tenant_testing.models import Tenant
from dotmac.tenant_testing.provisioner import TestingTenantProvisioner
from dotmac.tenant_testing.reaper import StrayTenantReaper
from dotmac.tenant_testing.registry import SqlTenantRegistry, TenantRegistry
from dotmac.tenant_testing.settings import TenancyTestSettings
from dotmac.tenant_testing.state import WorkerState
from dotmac.tenant_testing.transactions import (
    DatabaseTransaction,
    DualDatabaseTransactionCoordinator,
)
from dotmac.tenant_testing.worker import WorkerNamespace

__version__ = "1.0.0"

__all__ = [
    "ClassificationError",
    "CommandMigrator",
    "DatabaseTransaction",
    "DualDatabaseTransactionCoordinator",
    "MetadataMigrator",
    "NoActiveTenantError",
    "NullMigrator",
    "OrderingViolation",
    "ProvisioningError",
    "ReapFailure",
    "SqlTenantRegistry",
    "StaleTenantDetected",
    "StrayTenantReaper",
    "Tenant",
    "TenancyHarness",
    "TenancyTestSettings",
    "TenancyTestingError",
    "TenantContextSwitcher",
    "TenantRegistry",
    "TestClassifier",
    "TestKind",
    "TestingTenantProvisioner",
    "WorkerNamespace",
    "WorkerState",
    "attach_tenant_header",
    "get_current_tenant",
]
