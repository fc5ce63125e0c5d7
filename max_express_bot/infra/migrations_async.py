# max_express_bot/infra/migrations_async.py
"""
SQL migrations (asyncpg).

The application does NOT run migrations itself: they are applied by
``python -m max_express_bot.infra.migrate`` (a separate container/job), and
the bot only checks at startup that the schema is at the expected version.
"""
from __future__ import annotations
from pathlib import Path

from max_express_bot.config import settings
from max_express_bot.infra.db_async import db_conn
from max_express_bot.infra.logging_config import get_logger

logger = get_logger(__name__)

# Serializes concurrent migration runs (two replicas starting at once)
_MIGRATION_LOCK_KEY = 0x4D4947  # "MIG"


def _sql_dir() -> Path:
    """Migrations live next to this file: max_express_bot/infra/sql"""
    return Path(__file__).resolve().parent / "sql"


def list_migrations() -> list[Path]:
    """Migration files in apply order (001_init.sql, 002_..., ...)"""
    return sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply pending migrations inside one transaction.

    Returns:
        dict with keys ``ok``, ``applied`` (filenames applied in this run)
        and ``count``.
    """
    files = list_migrations()

    async with db_conn(autocommit=False) as conn:
        await conn.execute("SELECT pg_advisory_xact_lock($1)", _MIGRATION_LOCK_KEY)
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row['version'] for row in rows}

        applied_now = []
        for p in files:
            version = p.name
            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration: {version}")
            await conn.execute(p.read_text(encoding="utf-8"))
            await conn.execute(
                "INSERT INTO schema_migrations(version) VALUES ($1)",
                version
            )
            applied_now.append(version)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}


async def validate_schema_version() -> dict:
    """
    Check that the latest applied migration is ``settings.expected_schema_version``.

    Raises:
        RuntimeError: schema missing or at a different version
    """
    hint = "Run migrations first: python -m max_express_bot.infra.migrate"

    async with db_conn() as conn:
        table_exists = await conn.fetchval("SELECT to_regclass('public.schema_migrations') IS NOT NULL")
        if not table_exists:
            raise RuntimeError(f"Database has not been initialized. {hint}")

        current_version = await conn.fetchval(
            "SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )

    if current_version is None:
        raise RuntimeError(f"No migrations have been applied. {hint}")

    if current_version != settings.expected_schema_version:
        raise RuntimeError(
            f"Schema version mismatch! Expected: {settings.expected_schema_version}, "
            f"Found: {current_version}. {hint}"
        )

    logger.info(f"Schema version validated: {current_version}")
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": settings.expected_schema_version,
    }
