#!/usr/bin/env python3
# max_express_bot/infra/migrate.py
"""
Standalone migration runner.

    python -m max_express_bot.infra.migrate

Run it before starting the bot (CI/CD step, init container, or a one-off
"migrate" service in docker-compose). The bot validates the schema version
at startup but never migrates on its own.
"""
import asyncio
import sys

from max_express_bot.config import settings
from max_express_bot.infra.db_async import init_pool, close_pool
from max_express_bot.infra.logging_config import setup_logging, get_logger
from max_express_bot.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    logger.info(f"Migrating {settings.postgres_host}:{settings.postgres_port}/{settings.postgres_db} "
                f"(env={settings.app_env})")

    try:
        await init_pool()
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for migration in result["applied"]:
            logger.info(f"  applied {migration}")
    else:
        logger.info("No new migrations to apply")

    return 0 if result["ok"] else 1


def run() -> None:
    """Console entry point"""
    setup_logging(level=settings.log_level, use_json=settings.is_production)
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
