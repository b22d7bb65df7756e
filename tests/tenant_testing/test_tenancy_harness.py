"""Tests for the per-worker tenancy harness lifecycle."""

import pytest
from sqlalchemy import func, select

from dotmac.tenant_testing.classifier import TestKind
from dotmac.tenant_testing.exceptions import NoActiveTenantError
from dotmac.tenant_testing.harness import TenancyHarness
from dotmac.tenant_testing.migrations import MetadataMigrator
from dotmac.tenant_testing.models import TenantModel


def count_orders(session, orders_table) -> int:
    return session.scalar(select(func.count()).select_from(orders_table))


@pytest.mark.integration
class TestTenantReuse:
    """Test the testing tenant is shared by the worker's tests."""

    def test_same_tenant_for_every_test(self, harness, tmp_path):
        """Test three tenanted tests see one tenant and one database."""
        seen = []
        for _ in range(3):
            with harness.run_test(TestKind.TENANTED) as run:
                seen.append(run.tenant.id)

        assert seen == ["acme", "acme", "acme"]
        assert sorted(p.name for p in tmp_path.glob("tenant_*.sqlite")) == [
            "tenant_acme_test_3.sqlite"
        ]

    def test_context_released_after_test(self, harness):
        """Test no tenant is active once the test finished."""
        with harness.run_test(TestKind.TENANTED) as run:
            assert harness.current_tenant() == run.tenant

        assert harness.switcher.current() is None
        with pytest.raises(NoActiveTenantError):
            harness.current_tenant()

    def test_failing_test_still_cleaned_up(self, harness, orders_table):
        """Test an exception in the test body still rolls back and deactivates."""
        with pytest.raises(AssertionError):
            with harness.run_test(TestKind.TENANTED) as run:
                run.tenant_session.execute(orders_table.insert().values(reference="A-1"))
                raise AssertionError("test failed")

        assert harness.switcher.current() is None
        assert len(harness.stack) == 0
        with harness.run_test(TestKind.TENANTED) as run:
            assert count_orders(run.tenant_session, orders_table) == 0


@pytest.mark.integration
class TestRecovery:
    """Test recovery when a test destroys the testing tenant."""

    def test_deleted_inside_test(self, harness, orders_table):
        """Test a tenant deleted by the test body is usable by the next test."""
        with harness.run_test(TestKind.TENANTED) as run:
            harness.registry.delete(run.tenant)
            assert harness.registry.database_exists(run.tenant) is False

        with harness.run_test(TestKind.TENANTED) as run:
            assert run.tenant.id == "acme"
            assert harness.registry.database_exists(run.tenant)
            assert count_orders(run.tenant_session, orders_table) == 0

    def test_deleted_outside_any_transaction(self, harness, orders_table):
        """Test a committed deletion yields the same id and a fresh database."""
        tenant = harness.testing_tenant()
        with harness.databases.engine_for(tenant.database).begin() as conn:
            conn.execute(orders_table.insert().values(reference="left-over"))

        harness.registry.delete(tenant)
        assert harness.registry.find("acme") is None

        with harness.run_test(TestKind.TENANTED) as run:
            assert run.tenant.id == "acme"
            assert run.tenant.database == "tenant_acme_test_3"
            assert run.central_session.get(TenantModel, "acme") is not None
            assert count_orders(run.tenant_session, orders_table) == 0

    def test_database_dropped_row_kept(self, harness):
        """Test only the physical database being gone is repaired too."""
        tenant = harness.testing_tenant()
        harness.registry.delete_database(tenant)

        with harness.run_test(TestKind.TENANTED) as run:
            assert run.tenant.id == tenant.id
            assert harness.registry.database_exists(run.tenant)


@pytest.mark.integration
class TestStrayTenants:
    """Test tenants created by tests are removed afterwards."""

    def test_stray_from_tenanted_test(self, harness, tmp_path):
        """Test a tenant created in a tenanted test leaves nothing behind."""
        with harness.run_test(TestKind.TENANTED) as run:
            beta = harness.create_tenant("beta", name="Beta")
            assert run.central_session.get(TenantModel, "beta") is not None
            assert (tmp_path / "tenant_beta_test_3.sqlite").exists()

        assert harness.registry.find("beta") is None
        assert harness.registry.database_exists(beta) is False
        assert harness.registry.find("acme") is not None
        assert harness.state.tenants_created is False

    def test_stray_from_central_test(self, harness):
        """Test a tenant created in a central test is removed too."""
        with harness.run_test(TestKind.CENTRAL):
            beta = harness.create_tenant("beta")

        assert harness.registry.find("beta") is None
        assert harness.registry.database_exists(beta) is False

    def test_testing_tenant_survives(self, harness):
        """Test the sweep never removes the testing tenant."""
        with harness.run_test(TestKind.TENANTED):
            harness.create_tenant("beta")

        with harness.run_test(TestKind.TENANTED) as run:
            assert run.tenant.id == "acme"
        assert harness.registry.database_exists(harness.testing_tenant())


@pytest.mark.integration
class TestCentralTests:
    """Test central-only tests."""

    def test_no_tenant_context(self, harness):
        """Test central tests run without a tenant."""
        with harness.run_test(TestKind.CENTRAL) as run:
            assert run.tenant is None
            assert run.tenant_session is None
            assert harness.switcher.headers() == {}
            with pytest.raises(NoActiveTenantError):
                harness.switcher.connection()

    def test_central_rows_rolled_back(self, harness):
        """Test central writes do not leak."""
        with harness.run_test(TestKind.CENTRAL) as run:
            run.central_session.add(TenantModel(id="scratch", name="Scratch", database="x"))
            run.central_session.commit()

        assert harness.registry.find("scratch") is None


@pytest.mark.integration
class TestWorkerLifecycle:
    """Test worker setup, teardown and isolation."""

    def test_teardown_keeps_database_by_default(self, tenancy_settings, tmp_path):
        harness = TenancyHarness(tenancy_settings)
        harness.setup()
        harness.testing_tenant()

        harness.teardown()

        assert (tmp_path / "tenant_acme_test_3.sqlite").exists()

    def test_teardown_drops_database(self, tenancy_settings, tmp_path):
        """Test the testing database can be dropped at the end of the run."""
        settings = tenancy_settings.model_copy(update={"drop_databases_on_exit": True})
        harness = TenancyHarness(settings)
        harness.setup()
        harness.testing_tenant()

        harness.teardown()

        assert not (tmp_path / "tenant_acme_test_3.sqlite").exists()

    def test_workers_are_isolated(self, tenancy_settings, tmp_path, orders_table):
        """Test two workers use separate central and tenant databases."""
        harnesses = []
        for token in ("1", "2"):
            settings = tenancy_settings.model_copy(update={"worker_token": token})
            worker = TenancyHarness(settings, migrator=MetadataMigrator(orders_table.metadata))
            worker.setup()
            harnesses.append(worker)

        try:
            first, second = (worker.testing_tenant() for worker in harnesses)
            assert first.database == "tenant_acme_test_1"
            assert second.database == "tenant_acme_test_2"

            with harnesses[0].run_test(TestKind.TENANTED) as run:
                run.tenant_session.execute(orders_table.insert().values(reference="W1"))
                with harnesses[1].databases.engine_for(second.database).connect() as conn:
                    assert conn.scalar(select(func.count()).select_from(orders_table)) == 0
        finally:
            for worker in harnesses:
                worker.teardown()

        assert (tmp_path / "central_test_1.sqlite").exists()
        assert (tmp_path / "central_test_2.sqlite").exists()
