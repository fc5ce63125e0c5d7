# tests/conftest.py
"""Pytest configuration and fixtures"""
import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from max_express_bot.core.engine.domain import (  # noqa: E402
    MarketplaceCatalog,
    MarketplaceKind,
    Reply,
    Session,
)
from max_express_bot.core.engine.ports import (  # noqa: E402
    Client,
    ParcelStatus,
    ReplyDeliveryError,
    StoreUnavailableError,
    TrackingUnavailableError,
)
from max_express_bot.core.engine.state_machine import ConversationMachine  # noqa: E402
from max_express_bot.infra.metrics import get_metrics_collector  # noqa: E402

HELP_TEXTS = {
    MarketplaceKind.ALIBABA_1688: "1688 help",
    MarketplaceKind.PINDUODUO: "Pinduoduo help",
    MarketplaceKind.POIZON: "Poizon help",
    MarketplaceKind.TAOBAO: "Taobao help",
}


# ---------------------------------------------------------------------------
# In-memory port implementations
# ---------------------------------------------------------------------------

class MockSessionStore:
    """Async in-memory AsyncSessionStore"""

    def __init__(self, delay: float = 0.0):
        self.sessions: dict[int, Session] = {}
        self.delay = delay
        self.fail_load = False
        self.fail_save = False
        self.fail_delete = False
        self.loads = 0
        self.saves = 0

    async def load(self, user_id: int) -> Session:
        self.loads += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_load:
            raise StoreUnavailableError("load")
        stored = self.sessions.get(user_id)
        if stored is None:
            return Session.fresh(user_id)
        return Session(user_id=stored.user_id, state=stored.state)

    async def save(self, session: Session) -> None:
        self.saves += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_save:
            raise StoreUnavailableError("save")
        self.sessions[session.user_id] = Session(user_id=session.user_id, state=session.state)

    async def delete(self, user_id: int) -> None:
        if self.fail_delete:
            raise StoreUnavailableError("delete")
        self.sessions.pop(user_id, None)


class RecordingSink:
    """ReplySink that records (target, reply) pairs"""

    def __init__(self, fail: bool = False):
        self.delivered = []
        self.fail = fail

    async def deliver(self, target, reply: Reply) -> None:
        if self.fail:
            raise ReplyDeliveryError("chat not found")
        self.delivered.append((target, reply))

    def texts_for(self, user_id: int) -> list[str]:
        return [reply.text for target, reply in self.delivered if target.user_id == user_id]


class MockClientRepository:
    """In-memory AsyncClientRepository assigning MX<200 + n> codes"""

    def __init__(self):
        self.clients: dict[int, Client] = {}
        self.fail = False

    async def register(self, telegram_id, first_name, last_name, phone_number) -> Client:
        if self.fail:
            raise StoreUnavailableError("register")
        if telegram_id not in self.clients:
            self.clients[telegram_id] = Client(
                telegram_id=telegram_id,
                client_code=f"MX{200 + len(self.clients)}",
                first_name=first_name,
                last_name=last_name,
                phone_number=phone_number,
            )
        return self.clients[telegram_id]

    async def get_by_telegram_id(self, telegram_id):
        if self.fail:
            raise StoreUnavailableError("get_by_telegram_id")
        return self.clients.get(telegram_id)


class MockParcelTracker:
    def __init__(self, ready_codes=(), fail: bool = False):
        self.ready_codes = set(ready_codes)
        self.fail = fail
        self.checked = []

    async def check(self, track_code: str) -> ParcelStatus:
        self.checked.append(track_code)
        if self.fail:
            raise TrackingUnavailableError("timeout")
        ready = track_code in self.ready_codes
        return ParcelStatus(track_code=track_code, ready=ready, status_code="0000" if ready else "1001")


# ---------------------------------------------------------------------------
# Telegram update builders
# ---------------------------------------------------------------------------

def make_message_update(user_id: int, text: str | None, update_id: int = 1, **extra) -> dict:
    message = {
        "message_id": update_id,
        "from": {"id": user_id, "is_bot": False, "first_name": "Test"},
        "chat": {"id": user_id, "type": "private"},
        "date": 1700000000,
    }
    if text is not None:
        message["text"] = text
    message.update(extra)
    return {"update_id": update_id, "message": message}


def make_callback_update(user_id: int, data: str | None, update_id: int = 1) -> dict:
    callback = {
        "id": f"cb{update_id}",
        "from": {"id": user_id, "is_bot": False, "first_name": "Test"},
        "message": {"message_id": 99, "chat": {"id": user_id, "type": "private"}},
        "chat_instance": "1",
    }
    if data is not None:
        callback["data"] = data
    return {"update_id": update_id, "callback_query": callback}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def catalog():
    return MarketplaceCatalog(HELP_TEXTS, placeholder="coming soon")


@pytest.fixture
def machine(catalog):
    return ConversationMachine(catalog)


@pytest.fixture
def user_id():
    """Default Telegram user id for tests"""
    return 123456789


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield
