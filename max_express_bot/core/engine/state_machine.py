# max_express_bot/core/engine/state_machine.py
"""
Conversation state machine for the marketplace help bot.

``ConversationMachine.transition(state, event)`` is a pure function of its
arguments: it never touches the database or the network. Work that needs
I/O (client registration, client-code lookup, parcel tracking) is returned
as ``Reply.effects`` for the dispatcher to resolve after the new state has
been saved.

Flows:
    /start    Idle|Completed -> AwaitingMarketplaceChoice -> AwaitingQuery{m} -> Completed{m, q}
    /register Idle|Completed -> AwaitingFirstName -> AwaitingLastName -> AwaitingPhoneNumber -> Idle

``Completed`` is a resting point: it stays put until the user sends /start
(or /register) again. /cancel, /reset and /help work from every state.
"""
from __future__ import annotations

import re
from typing import Callable, Tuple

from max_express_bot.core.engine.domain import (
    AwaitingFirstName,
    AwaitingLastName,
    AwaitingMarketplaceChoice,
    AwaitingPhoneNumber,
    AwaitingQuery,
    CallbackAction,
    Choice,
    Command,
    Completed,
    ConversationState,
    Event,
    Idle,
    LookupClientCode,
    MarketplaceCatalog,
    MarketplaceKind,
    RegisterClient,
    Reply,
    Text,
    TrackParcel,
    marketplace_callback,
    parse_marketplace_callback,
)
from max_express_bot.core.engine.texts import get_text

Transition = Tuple[ConversationState, Reply]

# Digits only after stripping separators; optional leading "+"
_PHONE_RE = re.compile(r"^\+?\d{9,15}$")
_PHONE_SEPARATORS = re.compile(r"[\s\-()]")

MAX_NAME_LENGTH = 64


def normalize_phone(raw: str) -> str | None:
    """Return the phone number without separators, or None if it does not look like one"""
    candidate = _PHONE_SEPARATORS.sub("", raw.strip())
    if not _PHONE_RE.match(candidate):
        return None
    return candidate


def _clean_name(raw: str) -> str | None:
    name = " ".join(raw.split())
    if not name or len(name) > MAX_NAME_LENGTH or name.startswith("/"):
        return None
    return name


class ConversationMachine:
    """Finite-state engine deciding the next state and reply for one event."""

    def __init__(self, catalog: MarketplaceCatalog, language: str = "ru"):
        self.catalog = catalog
        self.language = language

        self._handlers: dict[type, Callable[[ConversationState, Event], Transition]] = {
            Idle: self._on_idle,
            AwaitingMarketplaceChoice: self._on_awaiting_choice,
            AwaitingQuery: self._on_awaiting_query,
            Completed: self._on_completed,
            AwaitingFirstName: self._on_awaiting_first_name,
            AwaitingLastName: self._on_awaiting_last_name,
            AwaitingPhoneNumber: self._on_awaiting_phone,
        }

    def _t(self, key: str, **fmt) -> str:
        return get_text(key, self.language, **fmt)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def transition(self, state: ConversationState, event: Event) -> Transition:
        """
        Compute the next state and the reply for ``event``.

        Every (state, event) pair is handled; pairs without a dedicated rule
        leave the state unchanged and answer with a state-specific hint.
        """
        if isinstance(event, Command):
            global_result = self._on_global_command(state, event)
            if global_result is not None:
                return global_result

        handler = self._handlers.get(type(state))
        if handler is None:
            raise TypeError(f"Unsupported conversation state: {state!r}")
        return handler(state, event)

    def _on_global_command(self, state: ConversationState, cmd: Command) -> Transition | None:
        """Commands accepted in every state"""
        if cmd.name == "cancel":
            return Idle(), Reply(self._t("cancelled"))

        if cmd.name == "reset":
            return Idle(), Reply(self._t("reset_done"), discard_session=True)

        if cmd.name == "help":
            return state, Reply(self._t("help"))

        if cmd.name == "code":
            return state, Reply(self._t("client_code_lookup"), effects=(LookupClientCode(),))

        if cmd.name == "track":
            if not cmd.args:
                return state, Reply(self._t("track_usage"))
            code = cmd.args[0].strip()
            return state, Reply(self._t("track_lookup", code=code), effects=(TrackParcel(code),))

        return None

    # ------------------------------------------------------------------
    # Replies reused by several states
    # ------------------------------------------------------------------

    def menu_reply(self, *, invalid: bool = False) -> Reply:
        kinds = self.catalog.kinds()
        listing = "\n".join(f"• {kind.display_name}" for kind in kinds)
        text = self._t("menu", marketplaces=listing)
        if invalid:
            text = f"{self._t('menu_invalid')}\n\n{text}"
        choices = tuple(Choice(kind.display_name, marketplace_callback(kind)) for kind in kinds)
        return Reply(text, choices=choices)

    def _start_flow(self) -> Transition:
        return AwaitingMarketplaceChoice(), self.menu_reply()

    def _start_registration(self) -> Transition:
        return AwaitingFirstName(), Reply(self._t("q_first_name"))

    # ------------------------------------------------------------------
    # Per-state handlers
    # ------------------------------------------------------------------

    def _on_idle(self, state: Idle, event: Event) -> Transition:
        if isinstance(event, Command):
            if event.name == "start":
                return self._start_flow()
            if event.name == "register":
                return self._start_registration()
        return state, Reply(self._t("hint_idle"))

    def _on_awaiting_choice(self, state: AwaitingMarketplaceChoice, event: Event) -> Transition:
        if isinstance(event, CallbackAction):
            kind = parse_marketplace_callback(event.payload)
            if kind is not None:
                return AwaitingQuery(kind), self._marketplace_selected(kind)
        return state, self.menu_reply(invalid=True)

    def _marketplace_selected(self, kind: MarketplaceKind) -> Reply:
        return Reply(
            self.catalog.help_text(kind),
            notes=(self._t("q_query", marketplace=kind.display_name),),
        )

    def _on_awaiting_query(self, state: AwaitingQuery, event: Event) -> Transition:
        if isinstance(event, Text):
            query = event.body.strip()
            if query:
                return (
                    Completed(state.marketplace, query),
                    Reply(self._t("query_received", marketplace=state.marketplace.display_name, query=query)),
                )
        return state, Reply(self._t("q_query_again", marketplace=state.marketplace.display_name))

    def _on_completed(self, state: Completed, event: Event) -> Transition:
        if isinstance(event, Command):
            if event.name == "start":
                return self._start_flow()
            if event.name == "register":
                return self._start_registration()
        return state, Reply(self._t("hint_completed", marketplace=state.marketplace.display_name))

    def _on_awaiting_first_name(self, state: AwaitingFirstName, event: Event) -> Transition:
        name = _clean_name(event.body) if isinstance(event, Text) else None
        if name is None:
            return state, Reply(self._t("err_first_name"))
        return AwaitingLastName(first_name=name), Reply(self._t("q_last_name"))

    def _on_awaiting_last_name(self, state: AwaitingLastName, event: Event) -> Transition:
        name = _clean_name(event.body) if isinstance(event, Text) else None
        if name is None:
            return state, Reply(self._t("err_last_name"))
        return (
            AwaitingPhoneNumber(first_name=state.first_name, last_name=name),
            Reply(self._t("q_phone")),
        )

    def _on_awaiting_phone(self, state: AwaitingPhoneNumber, event: Event) -> Transition:
        phone = normalize_phone(event.body) if isinstance(event, Text) else None
        if phone is None:
            return state, Reply(self._t("err_phone"))
        effect = RegisterClient(
            first_name=state.first_name,
            last_name=state.last_name,
            phone_number=phone,
        )
        return Idle(), Reply(self._t("registering"), effects=(effect,))
