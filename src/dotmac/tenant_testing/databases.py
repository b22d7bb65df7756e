"""
Physical tenant database management.

Each manager knows how to create, detect and drop one physical database per
tenant on a given backend, and caches one engine per database.
"""

from pathlib import Path
from typing import Protocol

import structlog
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url

logger = structlog.get_logger(__name__)


# ==========================================
# Engines
# ==========================================


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT works with pysqlite."""

    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_test_engine(url: str, echo: bool = False, **kwargs) -> Engine:
    """Create a synchronous engine suitable for rollback-only test transactions."""
    engine = create_engine(url, echo=echo, **kwargs)
    if engine.dialect.name == "sqlite":
        path = engine.url.database
        if path and path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        _enable_sqlite_savepoints(engine)
    return engine


# ==========================================
# Managers
# ==========================================


class DatabaseManager(Protocol):
    """Backend specific physical database operations."""

    def url_for(self, database: str) -> str: ...  # pragma: no cover - protocol definition
    def engine_for(self, database: str) -> Engine: ...  # pragma: no cover
    def database_exists(self, database: str) -> bool: ...  # pragma: no cover
    def create_database(self, database: str) -> None: ...  # pragma: no cover
    def drop_database(self, database: str) -> None: ...  # pragma: no cover
    def dispose(self) -> None: ...  # pragma: no cover


class _EngineCacheMixin:
    url_template: str
    echo: bool

    def _init_engines(self) -> None:
        self._engines: dict[str, Engine] = {}

    def url_for(self, database: str) -> str:
        return self.url_template.format(database=database)

    def engine_for(self, database: str) -> Engine:
        """Get or create the cached engine for a tenant database."""
        engine = self._engines.get(database)
        if engine is None:
            engine = create_test_engine(self.url_for(database), echo=self.echo)
            self._engines[database] = engine
        return engine

    def _dispose_engine(self, database: str) -> None:
        engine = self._engines.pop(database, None)
        if engine is not None:
            engine.dispose()

    def dispose(self) -> None:
        for database in list(self._engines):
            self._dispose_engine(database)


class SQLiteDatabaseManager(_EngineCacheMixin):
    """One SQLite file per tenant database."""

    _SIDE_FILES = ("-journal", "-wal", "-shm")

    def __init__(self, url_template: str, echo: bool = False):
        self.url_template = url_template
        self.echo = echo
        self._init_engines()

    def path_for(self, database: str) -> Path:
        path = make_url(self.url_for(database)).database
        if not path or path == ":memory:":
            raise ValueError("SQLite tenant databases must be file based")
        return Path(path)

    def database_exists(self, database: str) -> bool:
        return self.path_for(database).exists()

    def create_database(self, database: str) -> None:
        path = self.path_for(database)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self.engine_for(database).connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.debug("tenancy.database.created", database=database, path=str(path))

    def drop_database(self, database: str) -> None:
        self._dispose_engine(database)
        path = self.path_for(database)
        path.unlink(missing_ok=True)
        for side in self._SIDE_FILES:
            Path(f"{path}{side}").unlink(missing_ok=True)
        logger.debug("tenancy.database.dropped", database=database, path=str(path))


class PostgreSQLDatabaseManager(_EngineCacheMixin):
    """``CREATE DATABASE`` / ``DROP DATABASE`` through the maintenance database."""

    def __init__(
        self, url_template: str, echo: bool = False, maintenance_database: str = "postgres"
    ):
        self.url_template = url_template
        self.echo = echo
        self.maintenance_database = maintenance_database
        self._maintenance_engine: Engine | None = None
        self._init_engines()

    def _maintenance(self) -> Engine:
        if self._maintenance_engine is None:
            url = make_url(self.url_for(self.maintenance_database))
            self._maintenance_engine = create_engine(
                url, echo=self.echo, isolation_level="AUTOCOMMIT"
            )
        return self._maintenance_engine

    def _quote(self, database: str) -> str:
        return self._maintenance().dialect.identifier_preparer.quote(database)

    def database_exists(self, database: str) -> bool:
        with self._maintenance().connect() as conn:
            result = conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": database}
            )
            return result.scalar() is not None

    def create_database(self, database: str) -> None:
        with self._maintenance().connect() as conn:
            conn.execute(text(f"CREATE DATABASE {self._quote(database)}"))
        logger.debug("tenancy.database.created", database=database)

    def drop_database(self, database: str) -> None:
        self._dispose_engine(database)
        with self._maintenance().connect() as conn:
            conn.execute(text(f"DROP DATABASE IF EXISTS {self._quote(database)} WITH (FORCE)"))
        logger.debug("tenancy.database.dropped", database=database)

    def dispose(self) -> None:
        super().dispose()
        if self._maintenance_engine is not None:
            self._maintenance_engine.dispose()
            self._maintenance_engine = None


def manager_for_url(url_template: str, echo: bool = False) -> DatabaseManager:
    """Pick a database manager from the tenant URL template's dialect."""
    backend = make_url(url_template.format(database="tenant")).get_backend_name()
    if backend == "sqlite":
        return SQLiteDatabaseManager(url_template, echo=echo)
    if backend == "postgresql":
        return PostgreSQLDatabaseManager(url_template, echo=echo)
    raise ValueError(f"Unsupported tenant database backend: {backend}")


__all__ = [
    "DatabaseManager",
    "PostgreSQLDatabaseManager",
    "SQLiteDatabaseManager",
    "create_test_engine",
    "manager_for_url",
]
