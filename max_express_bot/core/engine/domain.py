# max_express_bot/core/engine/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union


UserId = int


# ============================================================================
# MARKETPLACES
# ============================================================================

class MarketplaceKind(str, Enum):
    """Marketplaces the bot can help with. Values are stable wire identifiers."""
    ALIBABA_1688 = "1688"
    PINDUODUO = "pinduoduo"
    POIZON = "poizon"
    TAOBAO = "taobao"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @classmethod
    def parse(cls, value: str | None) -> Optional["MarketplaceKind"]:
        """Resolve a wire value (case-insensitive); None if unknown"""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


_DISPLAY_NAMES = {
    MarketplaceKind.ALIBABA_1688: "1688",
    MarketplaceKind.PINDUODUO: "Pinduoduo",
    MarketplaceKind.POIZON: "Poizon",
    MarketplaceKind.TAOBAO: "Taobao",
}

MARKETPLACE_CALLBACK_PREFIX = "mp:"


def marketplace_callback(kind: MarketplaceKind) -> str:
    """Callback payload attached to a marketplace menu button"""
    return f"{MARKETPLACE_CALLBACK_PREFIX}{kind.value}"


def parse_marketplace_callback(payload: str) -> Optional[MarketplaceKind]:
    if not payload.startswith(MARKETPLACE_CALLBACK_PREFIX):
        return None
    return MarketplaceKind.parse(payload[len(MARKETPLACE_CALLBACK_PREFIX):])


class MarketplaceCatalog:
    """
    Read-only marketplace -> help text mapping.

    Built once at startup from configuration and shared by reference.
    Missing or blank texts fall back to ``placeholder``.
    """

    def __init__(self, help_texts: Mapping[MarketplaceKind, str], placeholder: str = ""):
        texts = {}
        for kind in MarketplaceKind:
            text = (help_texts.get(kind) or "").strip()
            texts[kind] = text or placeholder
        self._texts = MappingProxyType(texts)

    @classmethod
    def from_settings(cls, settings, placeholder: str = "") -> "MarketplaceCatalog":
        raw = settings.help_texts
        return cls(
            {kind: raw.get(kind.value, "") for kind in MarketplaceKind},
            placeholder=placeholder,
        )

    def help_text(self, kind: MarketplaceKind) -> str:
        return self._texts[kind]

    def kinds(self) -> tuple[MarketplaceKind, ...]:
        return tuple(self._texts)


# ============================================================================
# CONVERSATION STATE
# ============================================================================

@dataclass(frozen=True)
class Idle:
    kind = "idle"


@dataclass(frozen=True)
class AwaitingMarketplaceChoice:
    kind = "awaiting_marketplace_choice"


@dataclass(frozen=True)
class AwaitingQuery:
    marketplace: MarketplaceKind
    kind = "awaiting_query"


@dataclass(frozen=True)
class Completed:
    marketplace: MarketplaceKind
    query: str
    kind = "completed"


@dataclass(frozen=True)
class AwaitingFirstName:
    kind = "awaiting_first_name"


@dataclass(frozen=True)
class AwaitingLastName:
    first_name: str
    kind = "awaiting_last_name"


@dataclass(frozen=True)
class AwaitingPhoneNumber:
    first_name: str
    last_name: str
    kind = "awaiting_phone_number"


ConversationState = Union[
    Idle,
    AwaitingMarketplaceChoice,
    AwaitingQuery,
    Completed,
    AwaitingFirstName,
    AwaitingLastName,
    AwaitingPhoneNumber,
]

_STATE_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (
        Idle,
        AwaitingMarketplaceChoice,
        AwaitingQuery,
        Completed,
        AwaitingFirstName,
        AwaitingLastName,
        AwaitingPhoneNumber,
    )
}


def state_to_dict(state: ConversationState) -> dict[str, Any]:
    """Serialize a state to a JSON-ready dict tagged with ``kind``"""
    payload: dict[str, Any] = {"kind": state.kind}
    for name, value in vars(state).items():
        payload[name] = value.value if isinstance(value, MarketplaceKind) else value
    return payload


def state_from_dict(payload: Mapping[str, Any]) -> ConversationState:
    """
    Restore a state serialized by ``state_to_dict``.

    Raises:
        ValueError: not an object, unknown kind, unknown marketplace or
            missing fields
    """
    if not isinstance(payload, Mapping):
        raise ValueError(f"Conversation state must be an object, got {type(payload).__name__}")

    kind = payload.get("kind")
    cls = _STATE_TYPES.get(kind) if isinstance(kind, str) else None
    if cls is None:
        raise ValueError(f"Unknown conversation state kind: {kind!r}")

    fields = {k: v for k, v in payload.items() if k != "kind"}
    if "marketplace" in fields:
        raw = fields["marketplace"]
        marketplace = MarketplaceKind.parse(raw) if isinstance(raw, str) else None
        if marketplace is None:
            raise ValueError(f"Unknown marketplace in state: {fields['marketplace']!r}")
        fields["marketplace"] = marketplace

    try:
        return cls(**fields)
    except TypeError as exc:
        raise ValueError(f"Malformed {kind} state: {exc}") from exc


# ============================================================================
# SESSION
# ============================================================================

@dataclass
class Session:
    """Per-user conversation session, owned by the session store."""
    user_id: UserId
    state: ConversationState = field(default_factory=Idle)

    # Populated from DB on load (None for a session that was never saved)
    updated_at: Optional[datetime] = field(default=None, compare=False)

    @classmethod
    def fresh(cls, user_id: UserId) -> "Session":
        return cls(user_id=user_id, state=Idle())


# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True)
class Command:
    """Bot command, e.g. ``/track AB123`` -> Command("track", ("AB123",))"""
    name: str
    args: tuple[str, ...] = ()

    @property
    def kind(self) -> str:
        return "command"


@dataclass(frozen=True)
class Text:
    body: str

    @property
    def kind(self) -> str:
        return "text"


@dataclass(frozen=True)
class CallbackAction:
    """Inline keyboard button press"""
    payload: str

    @property
    def kind(self) -> str:
        return "callback"


Event = Union[Command, Text, CallbackAction]


class DropReason(str, Enum):
    """Why an inbound update produced no event"""
    UNSUPPORTED = "unsupported"  # media, edits, channel posts, empty text
    MALFORMED = "malformed"  # no sender / chat identity


@dataclass(frozen=True)
class InboundUpdate:
    """Normalized inbound update: one event plus the routing data needed to answer it."""
    update_id: int
    user_id: UserId
    chat_id: int
    event: Event
    callback_query_id: Optional[str] = None


# ============================================================================
# REPLIES AND EFFECTS
# ============================================================================

@dataclass(frozen=True)
class Choice:
    """Inline keyboard button"""
    label: str
    payload: str


@dataclass(frozen=True)
class RegisterClient:
    first_name: str
    last_name: str
    phone_number: str


@dataclass(frozen=True)
class LookupClientCode:
    pass


@dataclass(frozen=True)
class TrackParcel:
    track_code: str


Effect = Union[RegisterClient, LookupClientCode, TrackParcel]


@dataclass(frozen=True)
class Reply:
    """
    Outbound answer for one event.

    ``text`` is sent first (with ``choices`` as an inline menu, one button
    per row), then every entry of ``notes`` as a separate message.
    ``effects`` are resolved by the dispatcher after the session is saved;
    their results are appended to ``notes``.
    """
    text: str
    choices: tuple[Choice, ...] = ()
    notes: tuple[str, ...] = ()
    effects: tuple[Effect, ...] = ()
    discard_session: bool = False

    def with_notes(self, *notes: str) -> "Reply":
        return Reply(
            text=self.text,
            choices=self.choices,
            notes=self.notes + tuple(n for n in notes if n),
            effects=self.effects,
            discard_session=self.discard_session,
        )
