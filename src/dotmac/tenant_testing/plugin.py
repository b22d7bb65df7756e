"""
pytest plugin wiring the tenancy harness into a test session.

Enable it from the suite's root ``conftest.py``::

    pytest_plugins = ["dotmac.tenant_testing.plugin"]

Tests under a ``tenanted`` directory (or marked ``@pytest.mark.tenanted``) run
inside the worker's testing tenant with central and tenant transactions
rolled back afterwards; every other test runs inside a central transaction.
"""

from collections.abc import Iterator
from typing import Any

import pytest
import structlog

from dotmac.tenant_testing.classifier import TestKind
from dotmac.tenant_testing.client import attach_tenant_header
from dotmac.tenant_testing.exceptions import ClassificationError, ProvisioningError
from dotmac.tenant_testing.harness import TenancyHarness, TestRun
from dotmac.tenant_testing.logging import setup_logging
from dotmac.tenant_testing.models import Tenant
from dotmac.tenant_testing.settings import TenancyTestSettings

logger = structlog.get_logger(__name__)

KIND_KEY = pytest.StashKey[TestKind]()
HARNESS_KEY = pytest.StashKey[TenancyHarness]()


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("tenancy", "tenant test databases")
    group.addoption(
        "--tenancy-worker-token",
        dest="tenancy_worker_token",
        default=None,
        help="Override the parallel worker token used in database names.",
    )
    group.addoption(
        "--tenancy-drop-databases",
        dest="tenancy_drop_databases",
        action="store_true",
        default=False,
        help="Drop the testing tenant database when the run finishes.",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "tenanted: run inside the testing tenant's context")
    config.addinivalue_line("markers", "central: run against the central database only")


def _build_settings(config: pytest.Config) -> TenancyTestSettings:
    overrides: dict[str, Any] = {}
    token = config.getoption("tenancy_worker_token")
    if token:
        overrides["worker_token"] = token
    if config.getoption("tenancy_drop_databases"):
        overrides["drop_databases_on_exit"] = True
    return TenancyTestSettings(**overrides)


def _harness(config: pytest.Config) -> TenancyHarness:
    harness = config.stash.get(HARNESS_KEY, None)
    if harness is None:
        settings = _build_settings(config)
        setup_logging(settings)
        harness = TenancyHarness(settings)
        config.stash[HARNESS_KEY] = harness
    return harness


def pytest_collection_modifyitems(
    session: pytest.Session, config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Classify every collected test once, by explicit marker or by directory."""
    classifier = _harness(config).classifier
    by_path: dict[str, TestKind] = {}

    for item in items:
        if item.get_closest_marker("tenanted"):
            kind = TestKind.TENANTED
        elif item.get_closest_marker("central"):
            kind = TestKind.CENTRAL
        else:
            path = str(item.path)
            if path not in by_path:
                try:
                    by_path[path] = classifier.classify(item.path)
                except ClassificationError as exc:
                    raise pytest.UsageError(str(exc)) from exc
            kind = by_path[path]
        item.stash[KIND_KEY] = kind


def pytest_unconfigure(config: pytest.Config) -> None:
    harness = config.stash.get(HARNESS_KEY, None)
    if harness is not None:
        harness.teardown()
        del config.stash[HARNESS_KEY]


# ============================================================
# Fixtures
# ============================================================


@pytest.fixture(scope="session")
def tenancy_harness(pytestconfig: pytest.Config) -> TenancyHarness:
    """The worker's harness, with its central schema ready."""
    harness = _harness(pytestconfig)
    harness.setup()
    return harness


@pytest.fixture(autouse=True)
def _tenancy_test_run(
    request: pytest.FixtureRequest, tenancy_harness: TenancyHarness
) -> Iterator[TestRun]:
    kind = request.node.stash.get(KIND_KEY, TestKind.CENTRAL)
    try:
        with tenancy_harness.run_test(kind) as run:
            yield run
    except ProvisioningError as exc:
        logger.error("tenancy.provisioning.fatal", error=str(exc), tenant_id=exc.tenant_id)
        pytest.exit(f"could not provision testing tenant: {exc}", returncode=3)


@pytest.fixture
def tenancy_run(_tenancy_test_run: TestRun) -> TestRun:
    return _tenancy_test_run


@pytest.fixture
def central_session(_tenancy_test_run: TestRun):
    """Session on the central database inside the test transaction."""
    return _tenancy_test_run.central_session


@pytest.fixture
def tenant(_tenancy_test_run: TestRun) -> Tenant:
    """The active testing tenant (tenanted tests only)."""
    if _tenancy_test_run.tenant is None:
        pytest.fail("The 'tenant' fixture is only available to tenanted tests")
    return _tenancy_test_run.tenant


@pytest.fixture
def tenant_session(_tenancy_test_run: TestRun):
    """Session on the tenant database inside the test transaction."""
    if _tenancy_test_run.tenant_session is None:
        pytest.fail("The 'tenant_session' fixture is only available to tenanted tests")
    return _tenancy_test_run.tenant_session


@pytest.fixture
def create_tenant(tenancy_harness: TenancyHarness, _tenancy_test_run: TestRun):
    """Factory creating extra tenants that are reaped after the test."""
    return tenancy_harness.create_tenant


@pytest.fixture
def tenant_headers(tenancy_harness: TenancyHarness, _tenancy_test_run: TestRun) -> dict[str, str]:
    """Headers identifying the active tenant, empty for central tests."""
    return tenancy_harness.switcher.headers()


@pytest.fixture
def with_tenant_header(tenancy_harness: TenancyHarness):
    """Install tenant header injection on an httpx based client (e.g. FastAPI's TestClient)."""

    def attach(client):
        return attach_tenant_header(client, tenancy_harness.switcher)

    return attach
