"""Configuration for tenant test database management using pydantic-settings.

All values can be overridden through environment variables prefixed with
``TENANCY_TESTING_``. Nested settings use a double underscore, e.g.
``TENANCY_TESTING_DEFAULT_TENANT__NAME=acme``.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class UnclassifiedPolicy(str, Enum):
    """What to do with a test file outside every tenancy directory."""

    CENTRAL = "central"
    WARN = "warn"
    ERROR = "error"


class LogFormat(str, Enum):
    """Log renderer."""

    CONSOLE = "console"
    JSON = "json"


class TenancyTestSettings(BaseSettings):
    """Settings for the tenant test harness.

    ``central_database_url`` may contain ``{suffix}`` which is replaced by the
    worker suffix so every parallel worker gets its own central database.
    ``tenant_database_url`` must contain ``{database}``, the physical tenant
    database name.
    """

    model_config = SettingsConfigDict(
        env_prefix="TENANCY_TESTING_",
        env_file=".env.testing",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Databases
    # ============================================================

    central_database_url: str = Field(
        "sqlite:///./.tenancy/central{suffix}.sqlite",
        description="Central (control-plane) database URL template",
    )
    tenant_database_url: str = Field(
        "sqlite:///./.tenancy/{database}.sqlite",
        description="Tenant database URL template",
    )
    database_prefix: str = Field("tenant_", description="Prefix for tenant database names")
    create_databases: bool = Field(
        True, description="Create and migrate a physical database when a tenant is created"
    )
    drop_databases_on_exit: bool = Field(
        False, description="Drop the testing tenant's database when the worker finishes"
    )
    migrate_command: str | None = Field(
        None,
        description="Shell command run once per provisioned tenant database. "
        "Placeholders: {url}, {database}, {tenant_id}",
    )
    echo: bool = Field(False, description="Echo SQL statements")

    # ============================================================
    # Workers
    # ============================================================

    worker_token: str | None = Field(
        None, description="Explicit parallel worker token (overrides environment detection)"
    )

    # ============================================================
    # Testing tenant
    # ============================================================

    class DefaultTenantSettings(BaseModel):
        """Attributes of the testing tenant when it is first created."""

        id: str | None = Field(None, description="Tenant id, generated when empty")
        name: str = Field("Testing Tenant", description="Tenant display name")
        domain: str = Field("testing.localhost", description="Tenant domain")

        def as_attributes(self) -> dict[str, Any]:
            attributes = {"name": self.name, "domain": self.domain}
            if self.id:
                attributes["id"] = self.id
            return attributes

    default_tenant: DefaultTenantSettings = DefaultTenantSettings()  # type: ignore[call-arg]

    # ============================================================
    # Test classification & HTTP
    # ============================================================

    tenanted_dirs: list[str] = Field(
        default_factory=lambda: ["tenanted"],
        description="Directory names whose tests run inside the tenant context",
    )
    central_dirs: list[str] = Field(
        default_factory=lambda: ["central"],
        description="Directory names whose tests run against the central database only",
    )
    unclassified: UnclassifiedPolicy = Field(
        UnclassifiedPolicy.WARN, description="Policy for tests outside known directories"
    )
    header_name: str = Field("X-Tenant", description="Tenant identifying request header")

    # ============================================================
    # Logging
    # ============================================================

    log_format: LogFormat = Field(LogFormat.CONSOLE, description="Log output format")
    log_level: str = Field("WARNING", description="Log level for tenancy loggers")

    @field_validator("tenant_database_url")
    @classmethod
    def validate_tenant_url(cls, v: str) -> str:
        """The tenant URL must be a template over the database name."""
        if "{database}" not in v:
            raise ValueError("tenant_database_url must contain a {database} placeholder")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    def central_url(self, suffix: str) -> str:
        """Central database URL for a worker suffix."""
        return self.central_database_url.format(suffix=suffix)

    def tenant_url(self, database: str) -> str:
        """Tenant database URL for a physical database name."""
        return self.tenant_database_url.format(database=database)


def get_settings(**overrides: Any) -> TenancyTestSettings:
    """Build settings from the environment, applying explicit overrides."""
    return TenancyTestSettings(**overrides)
