# max_express_bot/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from max_express_bot.infra.db_async import get_pool
from max_express_bot.infra.db_resilience_async import get_circuit_breaker
from max_express_bot.infra.logging_config import get_logger

logger = get_logger(__name__)

REQUIRED_TABLES = ("sessions", "users", "schema_migrations")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


async def check_database() -> Dict[str, Any]:
    """Connectivity, required tables and response time of the database"""
    start = time.monotonic()

    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
            if result != 1:
                return {
                    "status": HealthStatus.UNHEALTHY,
                    "details": "Unexpected query result",
                }

            missing = [
                table for table in REQUIRED_TABLES
                if await conn.fetchval("SELECT to_regclass($1)", table) is None
            ]
            if missing:
                return {
                    "status": HealthStatus.UNHEALTHY,
                    "details": f"Missing tables: {', '.join(missing)}",
                }

            active = await conn.fetchval(
                "SELECT COUNT(*) FROM sessions WHERE updated_at > now() - interval '1 hour'"
            )
    except Exception as exc:
        logger.error("Database health check failed", exc_info=True)
        return {
            "status": HealthStatus.UNHEALTHY,
            "details": "Database connection failed",
            "error": str(exc)[:200],
        }

    duration = time.monotonic() - start
    status = HealthStatus.DEGRADED if duration > 1.0 else HealthStatus.HEALTHY
    return {
        "status": status,
        "response_time": round(duration, 4),
        "active_sessions_1h": active,
        "circuit_breaker": get_circuit_breaker().state,
    }


def check_dispatcher(dispatcher) -> Dict[str, Any]:
    """Whether the dispatcher still accepts updates"""
    if dispatcher is None:
        return {"status": HealthStatus.UNHEALTHY, "details": "Dispatcher not started"}
    if dispatcher.closing:
        return {"status": HealthStatus.UNHEALTHY, "details": "Shutting down"}
    return {"status": HealthStatus.HEALTHY, "inflight": dispatcher.inflight}


async def run_checks(dispatcher) -> Dict[str, Any]:
    """
    Aggregate health report.

    Returns:
        {"status": "healthy" | "degraded" | "unhealthy", "checks": {...}, "timestamp": float}
    """
    checks = {
        "database": await check_database(),
        "dispatcher": check_dispatcher(dispatcher),
    }

    statuses = {c["status"] for c in checks.values()}
    if HealthStatus.UNHEALTHY in statuses:
        overall = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        overall = HealthStatus.DEGRADED
    else:
        overall = HealthStatus.HEALTHY

    return {
        "status": overall.value,
        "checks": checks,
        "timestamp": time.time(),
    }
