# tests/test_dispatcher.py
"""Tests for the update dispatcher"""
import asyncio

import pytest

from max_express_bot.core.engine.dispatcher import Dispatcher
from max_express_bot.core.engine.domain import (
    AwaitingMarketplaceChoice,
    AwaitingPhoneNumber,
    AwaitingQuery,
    Completed,
    Idle,
    MarketplaceKind,
    Session,
)
from max_express_bot.core.engine.texts import get_text
from max_express_bot.infra.metrics import get_metrics_collector
from max_express_bot.transport.adapters import TelegramUpdateNormalizer

from conftest import (
    MockClientRepository,
    MockParcelTracker,
    MockSessionStore,
    RecordingSink,
    make_callback_update,
    make_message_update,
)


def make_dispatcher(machine, store=None, sink=None, clients=None, tracker=None) -> Dispatcher:
    return Dispatcher(
        normalizer=TelegramUpdateNormalizer(),
        machine=machine,
        sessions=store or MockSessionStore(),
        sink=sink or RecordingSink(),
        clients=clients,
        tracker=tracker,
    )


class TestDispatcher:
    def setup_method(self):
        self.store = MockSessionStore()
        self.sink = RecordingSink()

    @pytest.mark.asyncio
    async def test_start_then_poizon(self, machine, user_id):
        dispatcher = make_dispatcher(machine, self.store, self.sink)

        await dispatcher.handle(make_message_update(user_id, "/start", update_id=1))
        assert self.store.sessions[user_id].state == AwaitingMarketplaceChoice()

        await dispatcher.handle(make_callback_update(user_id, "mp:poizon", update_id=2))
        assert self.store.sessions[user_id].state == AwaitingQuery(MarketplaceKind.POIZON)

        target, reply = self.sink.delivered[-1]
        assert reply.text == "Poizon help"
        assert target.callback_query_id == "cb2"

    @pytest.mark.asyncio
    async def test_query_completes(self, machine, user_id):
        self.store.sessions[user_id] = Session(user_id, AwaitingQuery(MarketplaceKind.TAOBAO))
        dispatcher = make_dispatcher(machine, self.store, self.sink)

        await dispatcher.handle(make_message_update(user_id, "winter jacket"))

        assert self.store.sessions[user_id].state == Completed(MarketplaceKind.TAOBAO, "winter jacket")

    @pytest.mark.asyncio
    async def test_load_without_row_does_not_create_one(self, user_id):
        store = MockSessionStore()
        first = await store.load(user_id)
        second = await store.load(user_id)

        assert first == second == Session.fresh(user_id)
        assert store.sessions == {}

    @pytest.mark.asyncio
    async def test_dropped_update_gets_no_reply(self, machine, user_id):
        dispatcher = make_dispatcher(machine, self.store, self.sink)

        await dispatcher.handle(make_message_update(user_id, None, sticker={"file_id": "x"}))

        assert self.sink.delivered == []
        assert self.store.loads == 0
        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["updates_dropped_total{reason=unsupported}"] == 1

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, machine):
        dispatcher = make_dispatcher(machine, self.store, self.sink)

        await dispatcher.handle(make_message_update(111, "/start", update_id=1))
        await dispatcher.handle(make_message_update(222, "hello", update_id=2))

        assert self.store.sessions[111].state == AwaitingMarketplaceChoice()
        assert self.store.sessions[222].state == Idle()

    @pytest.mark.asyncio
    async def test_same_user_updates_are_serialized(self, machine, user_id):
        store = MockSessionStore(delay=0.01)
        dispatcher = make_dispatcher(machine, store, self.sink)

        tasks = [
            dispatcher.submit(make_message_update(user_id, "/start", update_id=1)),
            dispatcher.submit(make_callback_update(user_id, "mp:1688", update_id=2)),
            dispatcher.submit(make_message_update(user_id, "phone case", update_id=3)),
        ]
        await asyncio.gather(*tasks)

        # Every transition saw the state saved by the previous one
        assert store.sessions[user_id].state == Completed(MarketplaceKind.ALIBABA_1688, "phone case")

    @pytest.mark.asyncio
    async def test_load_failure_falls_back_to_idle(self, machine, user_id):
        self.store.sessions[user_id] = Session(user_id, AwaitingQuery(MarketplaceKind.POIZON))
        self.store.fail_load = True
        dispatcher = make_dispatcher(machine, self.store, self.sink)

        await dispatcher.handle(make_message_update(user_id, "/start"))

        # Processed from a fresh Idle session: /start opens the menu
        assert self.store.sessions[user_id].state == AwaitingMarketplaceChoice()
        assert len(self.sink.delivered[0][1].choices) == 4

    @pytest.mark.asyncio
    async def test_failed_save_restarts_from_idle(self, machine, user_id):
        self.store.sessions[user_id] = Session(user_id, AwaitingMarketplaceChoice())
        dispatcher = make_dispatcher(machine, self.store, self.sink)

        # Selection reply is sent even though the save fails
        self.store.fail_save = True
        await dispatcher.handle(make_callback_update(user_id, "mp:poizon", update_id=1))
        assert self.sink.delivered[-1][1].text == "Poizon help"
        assert self.store.sessions[user_id].state == AwaitingMarketplaceChoice()

        # Store is back: the next event starts from Idle, not from the stale row
        self.store.fail_save = False
        await dispatcher.handle(make_message_update(user_id, "nike", update_id=2))
        assert self.sink.delivered[-1][1].text == get_text("hint_idle")
        assert self.store.sessions[user_id].state == Idle()

        # And the user is back in sync afterwards
        await dispatcher.handle(make_message_update(user_id, "/start", update_id=3))
        assert self.store.sessions[user_id].state == AwaitingMarketplaceChoice()

    @pytest.mark.asyncio
    async def test_reset_deletes_session(self, machine, user_id):
        self.store.sessions[user_id] = Session(user_id, Completed(MarketplaceKind.POIZON, "x"))
        dispatcher = make_dispatcher(machine, self.store, self.sink)

        await dispatcher.handle(make_message_update(user_id, "/reset"))

        assert user_id not in self.store.sessions
        assert self.sink.delivered[0][1].text == get_text("reset_done")

    @pytest.mark.asyncio
    async def test_delivery_failure_is_not_fatal(self, machine, user_id):
        sink = RecordingSink(fail=True)
        dispatcher = make_dispatcher(machine, self.store, sink)

        await dispatcher.handle(make_message_update(user_id, "/start"))

        assert self.store.sessions[user_id].state == AwaitingMarketplaceChoice()
        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["replies_total{status=failed}"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, machine, user_id):
        class BrokenStore(MockSessionStore):
            async def load(self, user_id):
                raise KeyError("bug")

        dispatcher = make_dispatcher(machine, BrokenStore(), self.sink)

        await dispatcher.handle(make_message_update(user_id, "/start"))

        assert self.sink.delivered == []
        assert dispatcher.inflight == 0


class TestEffects:
    @pytest.mark.asyncio
    async def test_registration_assigns_client_code(self, machine, user_id):
        store = MockSessionStore()
        sink = RecordingSink()
        clients = MockClientRepository()
        dispatcher = make_dispatcher(machine, store, sink, clients=clients)

        for i, text in enumerate(["/register", "Ivan", "Petrov", "996555123456"], start=1):
            await dispatcher.handle(make_message_update(user_id, text, update_id=i))

        reply = sink.delivered[-1][1]
        assert reply.text == get_text("registering")
        assert reply.notes == (get_text("registered", code="MX200"),)
        assert clients.clients[user_id].phone_number == "996555123456"
        assert store.sessions[user_id].state == Idle()

        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["client_registrations_total{status=ok}"] == 1

    @pytest.mark.asyncio
    async def test_registration_failure_is_not_reported_as_success(self, machine, user_id):
        store = MockSessionStore()
        store.sessions[user_id] = Session(user_id, AwaitingPhoneNumber("Ivan", "Petrov"))
        clients = MockClientRepository()
        clients.fail = True
        sink = RecordingSink()
        dispatcher = make_dispatcher(machine, store, sink, clients=clients)

        await dispatcher.handle(make_message_update(user_id, "996555123456"))

        reply = sink.delivered[0][1]
        assert reply.text == get_text("registering")
        assert reply.notes == (get_text("registration_failed"),)
        assert all("MX" not in message for message in (reply.text, *reply.notes))
        assert clients.clients == {}

        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["client_registrations_total{status=failed}"] == 1

    @pytest.mark.asyncio
    async def test_registration_without_client_backend(self, machine, user_id):
        store = MockSessionStore()
        store.sessions[user_id] = Session(user_id, AwaitingPhoneNumber("Ivan", "Petrov"))
        sink = RecordingSink()
        dispatcher = make_dispatcher(machine, store, sink)

        await dispatcher.handle(make_message_update(user_id, "996555123456"))

        assert sink.delivered[0][1].notes == (get_text("registration_failed"),)

    @pytest.mark.asyncio
    async def test_code_lookup(self, machine, user_id):
        clients = MockClientRepository()
        await clients.register(user_id, "Ivan", "Petrov", "996555123456")
        sink = RecordingSink()
        dispatcher = make_dispatcher(machine, sink=sink, clients=clients)

        await dispatcher.handle(make_message_update(user_id, "/code"))

        assert sink.delivered[0][1].notes == (get_text("client_code", code="MX200"),)

    @pytest.mark.asyncio
    async def test_code_lookup_unregistered(self, machine, user_id):
        sink = RecordingSink()
        dispatcher = make_dispatcher(machine, sink=sink, clients=MockClientRepository())

        await dispatcher.handle(make_message_update(user_id, "/code"))

        assert sink.delivered[0][1].notes == (get_text("client_not_registered"),)

    @pytest.mark.asyncio
    async def test_code_lookup_failure_reports_unavailable(self, machine, user_id):
        clients = MockClientRepository()
        clients.fail = True
        sink = RecordingSink()
        dispatcher = make_dispatcher(machine, sink=sink, clients=clients)

        await dispatcher.handle(make_message_update(user_id, "/code"))

        assert sink.delivered[0][1].notes == (get_text("service_unavailable"),)

    @pytest.mark.asyncio
    async def test_tracking(self, machine, user_id):
        tracker = MockParcelTracker(ready_codes={"YT1"})
        sink = RecordingSink()
        dispatcher = make_dispatcher(machine, sink=sink, tracker=tracker)

        await dispatcher.handle(make_message_update(user_id, "/track YT1", update_id=1))
        await dispatcher.handle(make_message_update(user_id, "/track YT2", update_id=2))

        assert tracker.checked == ["YT1", "YT2"]
        assert sink.delivered[0][1].notes == (get_text("track_ready", code="YT1"),)
        assert sink.delivered[1][1].notes == (get_text("track_pending", code="YT2"),)

    @pytest.mark.asyncio
    async def test_tracking_unavailable(self, machine, user_id):
        sink = RecordingSink()
        dispatcher = make_dispatcher(machine, sink=sink, tracker=MockParcelTracker(fail=True))

        await dispatcher.handle(make_message_update(user_id, "/track YT1"))

        assert sink.delivered[0][1].notes == (get_text("service_unavailable"),)

    @pytest.mark.asyncio
    async def test_effect_without_backend(self, machine, user_id):
        sink = RecordingSink()
        dispatcher = make_dispatcher(machine, sink=sink)

        await dispatcher.handle(make_message_update(user_id, "/track YT1"))

        assert sink.delivered[0][1].notes == (get_text("service_unavailable"),)


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_waits_for_inflight(self, machine, user_id):
        store = MockSessionStore(delay=0.05)
        sink = RecordingSink()
        dispatcher = make_dispatcher(machine, store, sink)

        dispatcher.submit(make_message_update(user_id, "/start"))
        assert dispatcher.inflight == 1

        drained = await dispatcher.shutdown(timeout=2)

        assert drained
        assert dispatcher.inflight == 0
        assert len(sink.delivered) == 1

    @pytest.mark.asyncio
    async def test_rejects_after_shutdown(self, machine, user_id):
        sink = RecordingSink()
        dispatcher = make_dispatcher(machine, sink=sink)
        await dispatcher.shutdown(timeout=1)

        assert dispatcher.closing
        assert dispatcher.submit(make_message_update(user_id, "/start")) is None
        await dispatcher.handle(make_message_update(user_id, "/start"))
        assert sink.delivered == []

    @pytest.mark.asyncio
    async def test_shutdown_timeout(self, machine, user_id):
        dispatcher = make_dispatcher(machine, MockSessionStore(delay=0.5))
        task = dispatcher.submit(make_message_update(user_id, "/start"))

        assert await dispatcher.shutdown(timeout=0.01) is False
        await task
