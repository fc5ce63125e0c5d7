# max_express_bot/infra/pg_client_repo_async.py
from __future__ import annotations
from typing import Optional

from max_express_bot.core.engine.ports import AsyncClientRepository, Client, StoreUnavailableError
from max_express_bot.infra.db_resilience_async import protected_db_conn
from max_express_bot.infra.metrics import AppMetrics
from max_express_bot.infra.logging_config import get_logger, mask_user_id

logger = get_logger(__name__)

CLIENT_CODE_PREFIX = "MX"
CLIENT_CODE_OFFSET = 200

# pg_advisory_xact_lock key serializing client code assignment
_CLIENT_CODE_LOCK_KEY = 0x4D58  # "MX"


def make_client_code(registered_before: int) -> str:
    """Client codes are MX200, MX201, ... in registration order"""
    return f"{CLIENT_CODE_PREFIX}{CLIENT_CODE_OFFSET + registered_before}"


def _row_to_client(row) -> Client:
    return Client(
        telegram_id=row["telegram_id"],
        client_code=row["client_code"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        phone_number=row["phone_number"],
    )


class AsyncPostgresClientRepository(AsyncClientRepository):
    """Registered clients (``users`` table)"""

    async def register(
        self,
        telegram_id: int,
        first_name: str,
        last_name: str,
        phone_number: str,
    ) -> Client:
        try:
            async with protected_db_conn(autocommit=False) as conn:
                await conn.execute("SELECT pg_advisory_xact_lock($1)", _CLIENT_CODE_LOCK_KEY)

                existing = await conn.fetchrow(
                    "SELECT * FROM users WHERE telegram_id=$1", telegram_id
                )
                if existing:
                    logger.info(f"Client already registered: user={mask_user_id(telegram_id)}")
                    return _row_to_client(existing)

                count = await conn.fetchval("SELECT COUNT(*) FROM users")
                row = await conn.fetchrow(
                    """
                    INSERT INTO users(first_name, last_name, phone_number, telegram_id, client_code)
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING *
                    """,
                    first_name, last_name, phone_number, telegram_id, make_client_code(count),
                )
                return _row_to_client(row)
        except Exception as exc:
            logger.error(f"Failed to register client: user={mask_user_id(telegram_id)}", exc_info=True)
            AppMetrics.database_error("client_register")
            raise StoreUnavailableError("client_register", exc) from exc

    async def get_by_telegram_id(self, telegram_id: int) -> Optional[Client]:
        try:
            async with protected_db_conn() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM users WHERE telegram_id=$1", telegram_id
                )
        except Exception as exc:
            logger.error(f"Failed to get client: user={mask_user_id(telegram_id)}", exc_info=True)
            AppMetrics.database_error("client_get")
            raise StoreUnavailableError("client_get", exc) from exc

        return _row_to_client(row) if row else None
