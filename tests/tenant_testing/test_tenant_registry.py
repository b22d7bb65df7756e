"""Tests for the SQLAlchemy tenant registry."""

import subprocess
from unittest.mock import MagicMock

import pytest
from sqlalchemy import inspect

from dotmac.tenant_testing.databases import SQLiteDatabaseManager, create_test_engine
from dotmac.tenant_testing.exceptions import ProvisioningError
from dotmac.tenant_testing.migrations import CommandMigrator, MetadataMigrator
from dotmac.tenant_testing.registry import SqlTenantRegistry


@pytest.fixture
def databases(tmp_path):
    manager = SQLiteDatabaseManager(f"sqlite:///{tmp_path.as_posix()}/{{database}}.sqlite")
    yield manager
    manager.dispose()


@pytest.fixture
def central_engine(tmp_path):
    engine = create_test_engine(f"sqlite:///{tmp_path.as_posix()}/central_test_3.sqlite")
    yield engine
    engine.dispose()


@pytest.fixture
def registry(central_engine, databases, orders_table):
    registry = SqlTenantRegistry(
        central_engine,
        databases,
        migrator=MetadataMigrator(orders_table.metadata),
        suffix="_test_3",
    )
    registry.migrate_central()
    return registry


@pytest.mark.integration
class TestCreate:
    """Test tenant creation."""

    def test_create_provisions_database(self, registry, databases, tmp_path):
        """Test a created tenant has a row and a migrated database."""
        tenant = registry.create({"id": "acme", "name": "Acme", "domain": "acme.localhost"})

        assert tenant.database == "tenant_acme_test_3"
        assert (tmp_path / "tenant_acme_test_3.sqlite").exists()
        assert "orders" in inspect(databases.engine_for(tenant.database)).get_table_names()
        assert registry.find("acme") == tenant

    def test_generated_id(self, registry):
        """Test tenants without an id get a generated one."""
        tenant = registry.create({"name": "Anonymous"})

        assert tenant.id
        assert tenant.database == f"tenant_{tenant.id}_test_3"

    def test_extra_attributes_land_in_data(self, registry):
        """Test unknown attributes are stored as tenant data."""
        tenant = registry.create({"id": "acme", "plan": "enterprise"})
        assert registry.find("acme").data == {"plan": "enterprise"}
        assert tenant.data == {"plan": "enterprise"}

    def test_create_notifies_listeners(self, registry):
        """Test created listeners see every new tenant."""
        listener = MagicMock()
        registry.add_created_listener(listener)

        tenant = registry.create({"id": "acme"})

        listener.assert_called_once_with(tenant)

    def test_create_quietly(self, registry, databases):
        """Test quiet creation inserts the row only."""
        listener = MagicMock()
        registry.add_created_listener(listener)

        tenant = registry.create_quietly({"id": "acme", "name": "Acme"})

        listener.assert_not_called()
        assert registry.find("acme") == tenant
        assert databases.database_exists(tenant.database) is False

    def test_create_without_databases(self, central_engine, databases):
        """Test database provisioning can be switched off."""
        registry = SqlTenantRegistry(central_engine, databases, create_databases=False)
        registry.migrate_central()

        tenant = registry.create({"id": "acme"})

        assert registry.database_exists(tenant) is False

    def test_configure_suffix(self, registry):
        """Test the suffix applies to tenants created afterwards."""
        registry.configure_suffix("_test_8")
        assert registry.create({"id": "acme"}).database == "tenant_acme_test_8"

    def test_create_database_replaces_leftover(self, registry, databases):
        """Test a leftover database with the same name is replaced."""
        tenant = registry.create_quietly({"id": "acme"})
        databases.create_database(tenant.database)

        registry.create_database(tenant)

        assert "orders" in inspect(databases.engine_for(tenant.database)).get_table_names()


@pytest.mark.integration
class TestProvisioningErrors:
    """Test provisioning failures."""

    def test_migration_failure(self, central_engine, databases):
        """Test a failing migration surfaces as a provisioning error."""
        run = MagicMock(side_effect=subprocess.CalledProcessError(1, ["migrate"]))
        registry = SqlTenantRegistry(
            central_engine, databases, migrator=CommandMigrator("migrate", subprocess_run=run)
        )
        registry.migrate_central()

        with pytest.raises(ProvisioningError) as exc_info:
            registry.create({"id": "acme"})

        assert exc_info.value.tenant_id == "acme"
        assert isinstance(exc_info.value.__cause__, subprocess.CalledProcessError)

    def test_unreachable_location(self, central_engine, tmp_path):
        """Test an unusable database location surfaces as a provisioning error."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        databases = SQLiteDatabaseManager(f"sqlite:///{blocker.as_posix()}/{{database}}.sqlite")
        registry = SqlTenantRegistry(central_engine, databases)
        registry.migrate_central()

        with pytest.raises(ProvisioningError, match="tenant_acme_test"):
            registry.create({"id": "acme"})


@pytest.mark.integration
class TestQueries:
    """Test registry lookups."""

    def test_find_missing(self, registry):
        """Test unknown ids return None."""
        assert registry.find("ghost") is None

    def test_find_any(self, registry):
        """Test any existing tenant is returned."""
        assert registry.find_any() is None

        tenant = registry.create_quietly({"id": "acme"})

        assert registry.find_any() == tenant

    def test_all_except(self, registry):
        """Test every tenant but the excluded one is listed."""
        for tenant_id in ("acme", "beta", "gamma"):
            registry.create_quietly({"id": tenant_id})

        assert [t.id for t in registry.all_except("acme")] == ["beta", "gamma"]
        assert [t.id for t in registry.all_except(None)] == ["acme", "beta", "gamma"]


@pytest.mark.integration
class TestDelete:
    """Test tenant deletion."""

    def test_delete_removes_row_and_database(self, registry, databases):
        """Test deletion drops both the row and the database."""
        tenant = registry.create({"id": "beta"})

        registry.delete(tenant)

        assert registry.find("beta") is None
        assert databases.database_exists(tenant.database) is False

    def test_delete_without_row(self, registry, databases):
        """Test the database is dropped even if the row is already gone."""
        tenant = registry.create({"id": "beta"})
        registry.delete(tenant)
        databases.create_database(tenant.database)

        registry.delete(tenant)

        assert databases.database_exists(tenant.database) is False

    def test_delete_database_keeps_row(self, registry):
        """Test dropping only the database."""
        tenant = registry.create({"id": "acme"})

        registry.delete_database(tenant)

        assert registry.find("acme") is not None
        assert registry.database_exists(tenant) is False


@pytest.mark.integration
class TestBound:
    """Test routing row operations through a caller's transaction."""

    def test_rows_follow_outer_transaction(self, registry, central_engine):
        """Test rows written while bound vanish with the outer rollback."""
        connection = central_engine.connect()
        transaction = connection.begin()
        with registry.bound(connection):
            registry.create_quietly({"id": "beta"})
            assert registry.find("beta") is not None

        transaction.rollback()
        connection.close()

        assert registry.find("beta") is None

    def test_binding_is_restored(self, registry, central_engine):
        """Test the previous binding is restored on exit."""
        connection = central_engine.connect()
        try:
            with registry.bound(connection):
                pass
            assert registry._bind is None
        finally:
            connection.close()
