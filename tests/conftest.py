"""
Global pytest configuration and fixtures for DotMac tenant testing tests.

Every fixture works against throwaway SQLite files under ``tmp_path`` so the
suite needs no running database server.
"""

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table

from dotmac.tenant_testing.harness import TenancyHarness
from dotmac.tenant_testing.migrations import MetadataMigrator
from dotmac.tenant_testing.settings import TenancyTestSettings

pytest_plugins = ["pytester"]

# Tenant-scoped schema used by the tests
tenant_metadata = MetaData()

orders = Table(
    "orders",
    tenant_metadata,
    Column("id", Integer, primary_key=True),
    Column("reference", String(50), nullable=False),
)


def sqlite_templates(directory) -> dict[str, str]:
    """Central/tenant URL templates rooted at ``directory``."""
    root = directory.as_posix()
    return {
        "central_database_url": f"sqlite:///{root}/central{{suffix}}.sqlite",
        "tenant_database_url": f"sqlite:///{root}/{{database}}.sqlite",
    }


@pytest.fixture
def tenancy_settings(tmp_path) -> TenancyTestSettings:
    """Settings for worker ``3`` with an ``acme`` testing tenant."""
    return TenancyTestSettings(
        **sqlite_templates(tmp_path),
        worker_token="3",
        default_tenant={"id": "acme", "name": "Acme"},
        unclassified="central",
    )


@pytest.fixture
def harness(tenancy_settings):
    """Harness whose tenant databases get the ``orders`` table."""
    harness = TenancyHarness(tenancy_settings, migrator=MetadataMigrator(tenant_metadata))
    harness.setup()
    yield harness
    harness.teardown()


@pytest.fixture
def orders_table() -> Table:
    """The tenant ``orders`` table created in every migrated tenant database."""
    return orders
