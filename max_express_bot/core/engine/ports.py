# max_express_bot/core/engine/ports.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Protocol, Optional
from max_express_bot.core.engine.domain import Reply, Session, UserId


# ============================================================================
# ERRORS
# ============================================================================

class StoreUnavailableError(Exception):
    """The backing database could not be reached (transient; retried on the next event)."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause.__class__.__name__}: {cause}" if cause else ""
        super().__init__(f"Session store unavailable during {operation}{detail}")


class ReplyDeliveryError(Exception):
    """A reply could not be delivered to the messaging platform (not retried by the dispatcher)."""


class TrackingUnavailableError(Exception):
    """The parcel tracking API could not be reached or returned garbage."""


# ============================================================================
# DATA
# ============================================================================

@dataclass(frozen=True)
class ReplyTarget:
    """Where a reply goes: the user's chat, plus the callback to acknowledge (if any)."""
    user_id: UserId
    chat_id: int
    callback_query_id: Optional[str] = None


@dataclass(frozen=True)
class Client:
    """Registered client of the forwarding service"""
    telegram_id: int
    client_code: str
    first_name: str
    last_name: str
    phone_number: str


@dataclass(frozen=True)
class ParcelStatus:
    track_code: str
    ready: bool
    status_code: str
    message: str = ""


# ============================================================================
# ASYNC PROTOCOLS
# ============================================================================

class AsyncSessionStore(Protocol):
    async def load(self, user_id: UserId) -> Session:
        """Get-or-create: a fresh Idle session if none is stored. Raises StoreUnavailableError."""
        ...

    async def save(self, session: Session) -> None:
        """Upsert by user_id (last writer wins). Raises StoreUnavailableError."""
        ...

    async def delete(self, user_id: UserId) -> None:
        ...


class ReplySink(Protocol):
    async def deliver(self, target: ReplyTarget, reply: Reply) -> None:
        """Send the reply. Raises ReplyDeliveryError."""
        ...


class AsyncClientRepository(Protocol):
    async def register(
        self,
        telegram_id: int,
        first_name: str,
        last_name: str,
        phone_number: str,
    ) -> Client:
        """Create the client (or return the existing one for this telegram_id)."""
        ...

    async def get_by_telegram_id(self, telegram_id: int) -> Optional[Client]: ...


class ParcelTrackingClient(Protocol):
    async def check(self, track_code: str) -> ParcelStatus:
        """Raises TrackingUnavailableError."""
        ...
