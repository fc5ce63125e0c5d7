# max_express_bot/core/engine/__init__.py
"""
Core engine -- provider-agnostic conversation logic.

This package contains the domain model, abstract protocols (ports), the
pure conversation state machine and the dispatcher that serializes
load/transition/save per user.

Canonical imports:
    from max_express_bot.core.engine import Dispatcher, ConversationMachine
    from max_express_bot.core.engine.domain import Session, Command, Text
    from max_express_bot.core.engine.ports import AsyncSessionStore
"""
from max_express_bot.core.engine.domain import (  # noqa: F401
    MarketplaceKind,
    MarketplaceCatalog,
    ConversationState,
    Idle,
    AwaitingMarketplaceChoice,
    AwaitingQuery,
    Completed,
    Session,
    Command,
    Text,
    CallbackAction,
    Event,
    DropReason,
    InboundUpdate,
    Reply,
)
from max_express_bot.core.engine.ports import (  # noqa: F401
    AsyncSessionStore,
    ReplySink,
    StoreUnavailableError,
    ReplyDeliveryError,
)
from max_express_bot.core.engine.state_machine import ConversationMachine  # noqa: F401
from max_express_bot.core.engine.keyed_locks import KeyedLockPool  # noqa: F401
from max_express_bot.core.engine.dispatcher import Dispatcher  # noqa: F401
