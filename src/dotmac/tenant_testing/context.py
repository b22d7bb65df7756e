"""
Tenant execution context for tests.

While a tenant is active, tenant-scoped queries route to the tenant's
connection and outbound test requests carry the tenant header.
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar

import structlog
from sqlalchemy.engine import Connection

from dotmac.tenant_testing.exceptions import NoActiveTenantError
from dotmac.tenant_testing.models import Tenant

logger = structlog.get_logger(__name__)

_active_tenant: ContextVar[Tenant | None] = ContextVar("tenant_testing_active", default=None)

TenantCallback = Callable[[Tenant], None]


def get_current_tenant() -> Tenant | None:
    """Tenant active in the current execution context, if any."""
    return _active_tenant.get()


class TenantContextSwitcher:
    """Activate and deactivate the tenant context around a test."""

    def __init__(self, header_name: str = "X-Tenant"):
        self.header_name = header_name
        self._connection: Connection | None = None
        self._on_activate: list[TenantCallback] = []
        self._on_deactivate: list[TenantCallback] = []

    def on_activate(self, callback: TenantCallback) -> None:
        self._on_activate.append(callback)

    def on_deactivate(self, callback: TenantCallback) -> None:
        self._on_deactivate.append(callback)

    def current(self) -> Tenant | None:
        return _active_tenant.get()

    def is_active(self, tenant: Tenant | None = None) -> bool:
        current = self.current()
        if tenant is None:
            return current is not None
        return current is not None and current.id == tenant.id

    def activate(self, tenant: Tenant) -> None:
        """Make ``tenant`` the active tenant. Re-activating it is a no-op."""
        if self.is_active(tenant):
            return
        if self.is_active():
            self.deactivate()

        _active_tenant.set(tenant)
        for callback in self._on_activate:
            callback(tenant)
        logger.debug("tenancy.context.activated", tenant_id=tenant.id)

    def deactivate(self) -> None:
        """Return to the central context."""
        tenant = self.current()
        if tenant is None:
            return
        try:
            for callback in reversed(self._on_deactivate):
                callback(tenant)
        finally:
            self._connection = None
            _active_tenant.set(None)
            logger.debug("tenancy.context.deactivated", tenant_id=tenant.id)

    @contextmanager
    def scope(self, tenant: Tenant) -> Iterator[Tenant]:
        """Activate ``tenant`` for the block; always released on exit."""
        if self.is_active(tenant):
            yield tenant
            return

        self.activate(tenant)
        try:
            yield tenant
        finally:
            self.deactivate()

    # ==========================================
    # Routing
    # ==========================================

    def bind_connection(self, connection: Connection) -> None:
        if not self.is_active():
            raise NoActiveTenantError("Cannot bind a tenant connection without an active tenant.")
        self._connection = connection

    def connection(self) -> Connection:
        """Connection tenant-scoped queries must use."""
        if self._connection is None:
            raise NoActiveTenantError()
        return self._connection

    def headers(self) -> dict[str, str]:
        tenant = self.current()
        if tenant is None:
            return {}
        return {self.header_name: tenant.tenant_key}
