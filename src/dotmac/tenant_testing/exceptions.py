"""Tenant test harness exceptions."""


class TenancyTestingError(Exception):
    """Base exception for tenant test database management."""

    pass


class ProvisioningError(TenancyTestingError):
    """Raised when the testing tenant or its database cannot be provisioned.

    Always fatal for the worker: the cause is almost always infrastructure.
    """

    def __init__(self, message: str, tenant_id: str | None = None) -> None:
        super().__init__(message)
        self.tenant_id = tenant_id


class StaleTenantDetected(TenancyTestingError):
    """Raised when the cached testing tenant lost its physical database."""

    def __init__(self, tenant_id: str, database: str) -> None:
        super().__init__(f"Testing tenant {tenant_id!r} lost its database {database!r}")
        self.tenant_id = tenant_id
        self.database = database


class ReapFailure(TenancyTestingError):
    """Deleting a stray tenant failed. Recorded and logged, never raised to a test."""

    def __init__(self, tenant_id: str, cause: BaseException) -> None:
        super().__init__(f"Could not delete stray tenant {tenant_id!r}: {cause}")
        self.tenant_id = tenant_id
        self.cause = cause


class OrderingViolation(TenancyTestingError):
    """Central/tenant transactions were not closed in strict reverse order."""

    pass


class NoActiveTenantError(TenancyTestingError, RuntimeError):
    """No tenant is currently initialized."""

    def __init__(self, message: str = "No tenant is currently initialized.") -> None:
        super().__init__(message)


class ClassificationError(TenancyTestingError):
    """A test file matches neither the tenanted nor the central convention."""

    pass
