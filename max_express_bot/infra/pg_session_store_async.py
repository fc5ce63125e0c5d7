# max_express_bot/infra/pg_session_store_async.py
from __future__ import annotations
import json

from max_express_bot.core.engine.domain import Session, UserId, state_from_dict, state_to_dict
from max_express_bot.core.engine.ports import AsyncSessionStore, StoreUnavailableError
from max_express_bot.infra.db_resilience_async import protected_db_conn
from max_express_bot.infra.metrics import AppMetrics
from max_express_bot.infra.logging_config import get_logger, mask_user_id

logger = get_logger(__name__)


class AsyncPostgresSessionStore(AsyncSessionStore):
    """
    Session store backed by the ``sessions`` table (asyncpg).

    One row per user: ``state_json`` holds the serialized conversation state,
    ``state_kind`` duplicates its tag for ad-hoc queries.
    """

    async def load(self, user_id: UserId) -> Session:
        try:
            async with protected_db_conn() as conn:
                row = await conn.fetchrow(
                    "SELECT state_json::text AS state_json, updated_at FROM sessions WHERE user_id=$1",
                    user_id,
                )
        except Exception as exc:
            logger.error(f"Failed to load session: user={mask_user_id(user_id)}", exc_info=True)
            AppMetrics.database_error("session_load")
            raise StoreUnavailableError("load", exc) from exc

        if not row:
            return Session.fresh(user_id)

        try:
            state = state_from_dict(json.loads(row["state_json"]))
        except ValueError:
            # json.JSONDecodeError is a ValueError as well
            logger.warning(
                f"Unreadable session state, starting fresh: user={mask_user_id(user_id)}",
                exc_info=True,
            )
            return Session.fresh(user_id)

        return Session(user_id=user_id, state=state, updated_at=row["updated_at"])

    async def save(self, session: Session) -> None:
        payload = state_to_dict(session.state)
        try:
            async with protected_db_conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO sessions(user_id, state_json, state_kind)
                    VALUES ($1, $2::jsonb, $3)
                    ON CONFLICT (user_id)
                    DO UPDATE SET
                      state_json = EXCLUDED.state_json,
                      state_kind = EXCLUDED.state_kind,
                      updated_at = now()
                    """,
                    session.user_id, json.dumps(payload, ensure_ascii=False), session.state.kind,
                )
        except Exception as exc:
            logger.error(f"Failed to save session: user={mask_user_id(session.user_id)}", exc_info=True)
            AppMetrics.database_error("session_save")
            raise StoreUnavailableError("save", exc) from exc

    async def delete(self, user_id: UserId) -> None:
        try:
            async with protected_db_conn() as conn:
                await conn.execute("DELETE FROM sessions WHERE user_id=$1", user_id)
        except Exception as exc:
            logger.error(f"Failed to delete session: user={mask_user_id(user_id)}", exc_info=True)
            AppMetrics.database_error("session_delete")
            raise StoreUnavailableError("delete", exc) from exc
