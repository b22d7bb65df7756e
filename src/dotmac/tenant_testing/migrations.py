"""
Tenant database migrators.

Migration execution itself is external; a migrator only knows how to invoke it
once for a freshly provisioned tenant database.
"""

import shlex
import subprocess
from collections.abc import Callable, Iterable
from typing import Any, Protocol

import structlog
from sqlalchemy import MetaData
from sqlalchemy.engine import Engine

from dotmac.tenant_testing.models import Tenant

logger = structlog.get_logger(__name__)


class TenantMigrator(Protocol):
    def migrate(self, tenant: Tenant, engine: Engine) -> None: ...  # pragma: no cover


class NullMigrator:
    """Leave the tenant database empty."""

    def migrate(self, tenant: Tenant, engine: Engine) -> None:  # noqa: ARG002
        return None


class MetadataMigrator:
    """Create every table of one or more SQLAlchemy metadata collections."""

    def __init__(self, metadata: MetaData | Iterable[MetaData]):
        self.metadata = [metadata] if isinstance(metadata, MetaData) else list(metadata)

    def migrate(self, tenant: Tenant, engine: Engine) -> None:
        for metadata in self.metadata:
            metadata.create_all(bind=engine)
        logger.debug(
            "tenancy.migrations.metadata_applied",
            tenant_id=tenant.id,
            tables=sum(len(m.tables) for m in self.metadata),
        )


class CommandMigrator:
    """Run an external migration command against the tenant database.

    The command is formatted with ``{url}``, ``{database}`` and ``{tenant_id}``,
    e.g. ``alembic -x db_url={url} upgrade head``.
    """

    def __init__(
        self,
        command: str,
        subprocess_run: Callable[..., Any] = subprocess.run,
        timeout: float | None = 300,
    ):
        self.command = command
        self.subprocess_run = subprocess_run
        self.timeout = timeout

    def build_args(self, tenant: Tenant, engine: Engine) -> list[str]:
        rendered = self.command.format(
            url=engine.url.render_as_string(hide_password=False),
            database=tenant.database,
            tenant_id=tenant.id,
        )
        return shlex.split(rendered)

    def migrate(self, tenant: Tenant, engine: Engine) -> None:
        args = self.build_args(tenant, engine)
        logger.info("tenancy.migrations.command", tenant_id=tenant.id, command=args[0])
        self.subprocess_run(args, check=True, capture_output=True, text=True, timeout=self.timeout)
