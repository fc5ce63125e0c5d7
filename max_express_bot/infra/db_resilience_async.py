# max_express_bot/infra/db_resilience_async.py
"""
Async database resilience utilities.
Retry logic and circuit breaker for asyncpg.
"""
from __future__ import annotations
import time
import asyncio
from contextlib import asynccontextmanager, AsyncExitStack

import asyncpg
from max_express_bot.infra import db_async
from max_express_bot.infra.logging_config import get_logger

logger = get_logger(__name__)


class CircuitOpenError(Exception):
    """Raised when the circuit breaker rejects a call without trying the database"""


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock
    """
    if isinstance(exc, (asyncpg.PostgresConnectionError, asyncpg.InterfaceError)):
        return True

    if isinstance(exc, asyncpg.TooManyConnectionsError):
        return True

    if isinstance(exc, asyncpg.DeadlockDetectedError):
        return True

    if isinstance(exc, (ConnectionError, asyncio.TimeoutError, OSError)):
        return True

    error_message = str(exc).lower()
    transient_patterns = [
        "connection",
        "timeout",
        "closed",
        "network",
        "deadlock",
        "too many connections",
        "server closed",
        "connection reset",
    ]
    return any(pattern in error_message for pattern in transient_patterns)


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Database connection with retry on transient errors while acquiring.

    Only connection acquisition is retried; once the connection has been
    handed to the caller, errors raised inside the block propagate as-is.
    """
    max_retries = 3
    delay = 0.1

    async with AsyncExitStack() as stack:
        for attempt in range(max_retries + 1):
            try:
                conn = await stack.enter_async_context(db_async.db_conn(autocommit=autocommit))
                break
            except Exception as exc:
                if not is_transient_error(exc):
                    raise

                if attempt >= max_retries:
                    logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                    raise

                logger.warning(
                    f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2.0, 5.0)

        yield conn


class CircuitBreaker:
    """
    Simple circuit breaker for database connections.

    States:
    - CLOSED: Normal operation
    - OPEN: Too many failures, reject requests
    - HALF_OPEN: Testing if service recovered
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 30.0,
        name: str = "default"
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.name = name

        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    def is_available(self) -> bool:
        """Check if circuit breaker allows requests"""
        if self.state == "CLOSED":
            return True

        if self.state == "OPEN":
            if time.monotonic() - self.last_failure_time >= self.timeout:
                logger.info(f"Circuit breaker '{self.name}' entering HALF_OPEN state")
                self.state = "HALF_OPEN"
                return True
            return False

        return True

    def record_success(self):
        """Record successful operation"""
        if self.state == "HALF_OPEN":
            logger.info(f"Circuit breaker '{self.name}' closing (recovered)")
            self.state = "CLOSED"
        self.failure_count = 0

    def record_failure(self):
        """Record failed operation"""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

        if self.state == "HALF_OPEN" or self.failure_count >= self.failure_threshold:
            if self.state != "OPEN":
                logger.error(
                    f"Circuit breaker '{self.name}' opening "
                    f"(failures: {self.failure_count}/{self.failure_threshold})"
                )
                self.state = "OPEN"


_circuit_breaker = CircuitBreaker(
    failure_threshold=5,
    timeout=30.0,
    name="database"
)


def get_circuit_breaker() -> CircuitBreaker:
    return _circuit_breaker


@asynccontextmanager
async def protected_db_conn(autocommit: bool = True):
    """
    Database connection with circuit breaker protection.

    Rejects calls immediately with CircuitOpenError while the database is
    considered down, so one outage does not stall every user on retries.
    Only transient failures count against the breaker.
    """
    if not _circuit_breaker.is_available():
        raise CircuitOpenError("Circuit breaker is OPEN (database unavailable)")

    try:
        async with safe_db_conn(autocommit=autocommit) as conn:
            yield conn
    except Exception as exc:
        if is_transient_error(exc):
            _circuit_breaker.record_failure()
        raise
    else:
        _circuit_breaker.record_success()
