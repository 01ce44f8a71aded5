"""SQL migration runner with checksum tracking in ``schema_migrations``."""
from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Awaitable, Callable, Iterable

import asyncpg  # type: ignore[import-untyped]
import structlog
from aiohttp import web

from webhook_service.core.exceptions import StoreUnavailableError

logger = structlog.get_logger(__name__)

DEFAULT_MIGRATION_PATHS = (
    Path(__file__).resolve().parents[3] / "migrations",
    Path.cwd() / "migrations",
)


def _find_migrations_dir(possible_paths: Iterable[Path]) -> Path | None:
    for path in possible_paths:
        if path.is_dir():
            return path
    return None


def load_migrations(migrations_dir: Path) -> dict[str, tuple[str, str]]:
    """Map version (file stem) -> (sql, sha256 checksum), ordered by file name."""
    migrations: dict[str, tuple[str, str]] = {}
    for path in sorted(migrations_dir.glob("*.sql")):
        if path.stem in migrations:
            raise ValueError(f"Duplicate migration version detected: {path.stem}")
        sql = path.read_text(encoding="utf-8")
        migrations[path.stem] = (sql, hashlib.sha256(sql.encode("utf-8")).hexdigest())
    return migrations


async def apply_migrations(conn: asyncpg.Connection, migrations: dict[str, tuple[str, str]]) -> list[str]:
    """Apply pending migrations, each in its own transaction. Returns applied versions."""
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version text PRIMARY KEY,
            checksum text NOT NULL,
            applied_at timestamptz NOT NULL DEFAULT now()
        )
        """
    )
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    applied = {row["version"]: row["checksum"] for row in rows}

    done: list[str] = []
    for version, (sql, checksum) in migrations.items():
        if version in applied:
            if applied[version] != checksum:
                raise RuntimeError(
                    f"Checksum mismatch for {version}: {applied[version]} (db) != {checksum} (file)"
                )
            continue
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                version,
                checksum,
            )
        logger.info("migration applied", version=version)
        done.append(version)
    return done


def create_migration_runner(
    database_url: str,
    possible_paths: Iterable[Path] = DEFAULT_MIGRATION_PATHS,
    *,
    max_retries: int = 5,
    retry_delay: float = 2.0,
) -> Callable[[web.Application], Awaitable[None]]:
    """Create an aiohttp startup hook applying ``migrations/*.sql``."""
    paths = list(possible_paths)

    async def apply_migrations_on_startup(_app: web.Application) -> None:
        migrations_dir = _find_migrations_dir(paths)
        if migrations_dir is None:
            logger.warning("migrations directory not found", tried=[str(p) for p in paths])
            return
        migrations = load_migrations(migrations_dir)
        if not migrations:
            logger.warning("no migrations found", directory=str(migrations_dir))
            return

        conn = None
        for attempt in range(1, max_retries + 1):
            try:
                conn = await asyncpg.connect(database_url)
                break
            except (OSError, asyncpg.exceptions.PostgresError) as exc:
                logger.warning(
                    "database connection failed",
                    attempt=attempt,
                    max_retries=max_retries,
                    error=str(exc),
                )
                if attempt < max_retries:
                    await asyncio.sleep(retry_delay)
        if conn is None:
            raise StoreUnavailableError("could not connect to database to apply migrations")

        try:
            applied = await apply_migrations(conn, migrations)
        finally:
            await conn.close()
        logger.info("migrations up to date", applied=applied, total=len(migrations))

    return apply_migrations_on_startup
