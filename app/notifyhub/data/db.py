from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Set

from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from notifyhub.config import DatabaseConfig

from .tables import metadata


MigrationFn = Callable[[Connection], None]


@dataclass(frozen=True)
class Migration:
    version: str
    upgrade: MigrationFn


_MIGRATIONS: List[Migration] = []
_ENGINE: Optional[AsyncEngine] = None
_SESSION_FACTORY: Optional[async_sessionmaker] = None


def register_migration(version: str, upgrade: MigrationFn) -> None:
    """Register a migration step; versions must be unique."""
    if any(m.version == version for m in _MIGRATIONS):
        raise ValueError(f"Migration '{version}' already registered")
    _MIGRATIONS.append(Migration(version, upgrade))
    _MIGRATIONS.sort(key=lambda m: m.version)


def _get_database_file(config: DatabaseConfig) -> Path:
    database_dir = Path(config.path)
    database_dir.mkdir(parents=True, exist_ok=True)
    return database_dir / config.name


def _sqlite_connect_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[override]
    """Apply pragmas that keep SQLite sturdy and fast."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def _database_url(config: DatabaseConfig) -> str:
    if config.url:
        return config.url
    engine_name = (config.engine or "sqlite").lower()
    if engine_name != "sqlite":
        raise ValueError(
            f"Unsupported database engine '{config.engine}'; provide an explicit async 'url' instead"
        )
    return f"sqlite+aiosqlite:///{_get_database_file(config)}"


def _prepare_engine(config: DatabaseConfig, *, echo: bool = False) -> AsyncEngine:
    engine = create_async_engine(_database_url(config), echo=echo)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _sqlite_connect_pragmas)
    return engine


def _ensure_schema_table(connection: Connection) -> None:
    connection.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _applied_versions(connection: Connection) -> Set[str]:
    result = connection.execute(text("SELECT version FROM schema_migrations"))
    return {row[0] for row in result}


def _record_version(connection: Connection, version: str) -> None:
    connection.execute(
        text("INSERT INTO schema_migrations(version) VALUES (:version)"),
        {"version": version},
    )


def _apply_migrations(connection: Connection) -> None:
    _ensure_schema_table(connection)
    applied = _applied_versions(connection)
    for migration in list(_MIGRATIONS):
        if migration.version in applied:
            continue
        migration.upgrade(connection)
        _record_version(connection, migration.version)


async def run_migrations(engine: AsyncEngine) -> None:
    """Apply any outstanding migrations."""
    if not _MIGRATIONS:
        return
    async with engine.begin() as connection:
        await connection.run_sync(_apply_migrations)


async def init_engine(config: DatabaseConfig, *, echo: bool = False) -> AsyncEngine:
    """Create (or return) the configured async SQLAlchemy engine."""
    global _ENGINE, _SESSION_FACTORY

    if _ENGINE is not None:
        return _ENGINE

    engine = _prepare_engine(config, echo=echo)
    await run_migrations(engine)

    _SESSION_FACTORY = async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )
    _ENGINE = engine
    return engine


def get_session() -> AsyncSession:
    if _SESSION_FACTORY is None:
        raise RuntimeError("Session factory is not initialized")
    return _SESSION_FACTORY()


async def initialize_database(config: DatabaseConfig, *, echo: bool = False) -> AsyncEngine:
    """
    Public entry point: ensure engine exists, run migrations,
    and return a ready-to-use engine instance.
    """
    return await init_engine(config, echo=echo)


async def dispose_engine() -> None:
    global _ENGINE, _SESSION_FACTORY
    if _ENGINE is not None:
        await _ENGINE.dispose()
    _ENGINE = None
    _SESSION_FACTORY = None


def _initial_schema(connection: Connection) -> None:
    metadata.create_all(connection)


# Register migrations at import time.
register_migration("0001_initial", _initial_schema)
