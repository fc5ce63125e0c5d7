# max_express_bot/core/engine/dispatcher.py
"""
Update dispatcher: the orchestration loop between transport, session store
and state machine.

Workflow per update:
    normalize -> (drop?) -> lock(user) -> load -> transition -> save -> unlock
    -> resolve effects -> deliver reply

Updates for different users run concurrently; updates for the same user are
serialized by ``KeyedLockPool`` in arrival order, so every transition sees
the state left by the previous one.
"""
from __future__ import annotations

import asyncio
from typing import Any, Protocol

from max_express_bot.core.engine.domain import (
    DropReason,
    Effect,
    InboundUpdate,
    LookupClientCode,
    RegisterClient,
    Reply,
    Session,
    TrackParcel,
    UserId,
)
from max_express_bot.core.engine.keyed_locks import KeyedLockPool
from max_express_bot.core.engine.ports import (
    AsyncClientRepository,
    AsyncSessionStore,
    ParcelTrackingClient,
    ReplyDeliveryError,
    ReplySink,
    ReplyTarget,
    StoreUnavailableError,
    TrackingUnavailableError,
)
from max_express_bot.core.engine.state_machine import ConversationMachine
from max_express_bot.core.engine.texts import get_text
from max_express_bot.infra.logging_config import get_logger, LogContext
from max_express_bot.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)


class UpdateNormalizer(Protocol):
    def normalize(self, update: dict) -> InboundUpdate | DropReason: ...


def _log_task_exception(task: asyncio.Task) -> None:
    """Callback: log unhandled exceptions from fire-and-forget tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            f"Background task {task.get_name()!r} failed: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )


class Dispatcher:
    """
    Routes normalized updates to the conversation state machine.

    No per-update failure is fatal: store outages degrade to a fresh Idle
    session, delivery failures are logged, anything unexpected is logged
    with a traceback and the update is dropped.
    """

    def __init__(
        self,
        *,
        normalizer: UpdateNormalizer,
        machine: ConversationMachine,
        sessions: AsyncSessionStore,
        sink: ReplySink,
        clients: AsyncClientRepository | None = None,
        tracker: ParcelTrackingClient | None = None,
    ) -> None:
        self.normalizer = normalizer
        self.machine = machine
        self.sessions = sessions
        self.sink = sink
        self.clients = clients
        self.tracker = tracker

        self._locks = KeyedLockPool()
        # Users whose last save failed: their stored row is stale and must not be resumed
        self._unsynced: set[UserId] = set()

        self._closing = False
        self._inflight = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def inflight(self) -> int:
        return self._inflight

    async def handle(self, raw_update: dict) -> None:
        """Process one raw update to completion (including the reply)."""
        if not self._begin(raw_update):
            return
        await self._guarded(raw_update)

    def submit(self, raw_update: dict) -> asyncio.Task | None:
        """
        Schedule ``raw_update`` for background processing.

        Returns the task, or None when the dispatcher is shutting down.
        Tasks are started in submission order, which keeps per-user
        ordering intact.
        """
        if not self._begin(raw_update):
            return None
        task = asyncio.create_task(
            self._guarded(raw_update),
            name=f"update_{raw_update.get('update_id', '?')}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_log_task_exception)
        return task

    async def shutdown(self, timeout: float | None = None) -> bool:
        """
        Stop accepting updates and wait for in-flight ones to finish.

        Returns True if everything drained within ``timeout``.
        """
        self._closing = True
        if self._inflight:
            logger.info(f"Dispatcher draining {self._inflight} in-flight update(s)")
        try:
            await asyncio.wait_for(self._drained.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Dispatcher shutdown timed out with {self._inflight} update(s) still running"
            )
            return False
        logger.info("Dispatcher drained")
        return True

    # ------------------------------------------------------------------
    # Lifecycle bookkeeping
    # ------------------------------------------------------------------

    def _begin(self, raw_update: dict) -> bool:
        if self._closing:
            logger.warning(
                f"Dispatcher is shutting down, rejecting update_id={raw_update.get('update_id')}"
            )
            inc_counter("updates_rejected_total", reason="shutdown")
            return False
        self._inflight += 1
        self._drained.clear()
        return True

    def _end(self) -> None:
        self._inflight -= 1
        if self._inflight == 0:
            self._drained.set()

    async def _guarded(self, raw_update: dict) -> None:
        try:
            await self._process(raw_update)
        except Exception as exc:
            logger.error(
                f"Update processing failed: update_id={raw_update.get('update_id')}, "
                f"{exc.__class__.__name__}",
                exc_info=True,
            )
            inc_counter("updates_failed_total")
        finally:
            self._end()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _process(self, raw_update: dict) -> None:
        result = self.normalizer.normalize(raw_update)
        if isinstance(result, DropReason):
            AppMetrics.update_dropped(result.value)
            return

        update = result
        log_ctx = LogContext(
            logger,
            user_id=update.user_id,
            chat_id=update.chat_id,
            update_id=update.update_id,
        )
        AppMetrics.update_received(update.event.kind)

        with AppMetrics.track_processing_time(update.event.kind):
            async with self._locks.hold(update.user_id):
                reply = await self._apply(update, log_ctx)

            if reply.effects:
                reply = await self._resolve_effects(update, reply, log_ctx)

        await self._deliver(update, reply, log_ctx)

    async def _apply(self, update: InboundUpdate, log_ctx: LogContext) -> Reply:
        """Load -> transition -> save. Must run under the user's lock."""
        session = await self._load(update.user_id, log_ctx)
        previous = session.state

        next_state, reply = self.machine.transition(previous, update.event)
        AppMetrics.transition(previous.kind, next_state.kind)
        log_ctx.info(f"Transition {previous.kind} -> {next_state.kind} on {update.event.kind}")

        if reply.discard_session:
            await self._discard(update.user_id, log_ctx)
        else:
            await self._save(Session(user_id=update.user_id, state=next_state), log_ctx)
        return reply

    async def _load(self, user_id: UserId, log_ctx: LogContext) -> Session:
        if user_id in self._unsynced:
            log_ctx.warning("Previous save failed, restarting from a fresh session")
            return Session.fresh(user_id)

        try:
            return await self.sessions.load(user_id)
        except StoreUnavailableError as exc:
            log_ctx.warning(f"Session load failed, using a fresh session: {exc}")
            AppMetrics.store_unavailable("load")
            return Session.fresh(user_id)

    async def _save(self, session: Session, log_ctx: LogContext) -> None:
        try:
            await self.sessions.save(session)
        except StoreUnavailableError as exc:
            # Recoverable: the reply still goes out, the next event starts over
            self._unsynced.add(session.user_id)
            log_ctx.error(f"Session save failed (recoverable): {exc}")
            AppMetrics.store_unavailable("save")
            return
        self._unsynced.discard(session.user_id)

    async def _discard(self, user_id: UserId, log_ctx: LogContext) -> None:
        try:
            await self.sessions.delete(user_id)
        except StoreUnavailableError as exc:
            self._unsynced.add(user_id)
            log_ctx.error(f"Session delete failed (recoverable): {exc}")
            AppMetrics.store_unavailable("delete")
            return
        self._unsynced.discard(user_id)
        log_ctx.info("Session discarded on user request")

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    def _t(self, key: str, **fmt: Any) -> str:
        return get_text(key, self.machine.language, **fmt)

    async def _resolve_effects(self, update: InboundUpdate, reply: Reply, log_ctx: LogContext) -> Reply:
        notes = []
        for effect in reply.effects:
            notes.append(await self._run_effect(update, effect, log_ctx))
        return reply.with_notes(*notes)

    async def _run_effect(self, update: InboundUpdate, effect: Effect, log_ctx: LogContext) -> str:
        if isinstance(effect, RegisterClient):
            if self.clients is None:
                return self._t("registration_failed")
            try:
                client = await self.clients.register(
                    update.user_id,
                    effect.first_name,
                    effect.last_name,
                    effect.phone_number,
                )
            except StoreUnavailableError as exc:
                log_ctx.error(f"Client registration failed: {exc}")
                AppMetrics.client_registration("failed")
                return self._t("registration_failed")
            AppMetrics.client_registration("ok")
            log_ctx.info(f"Client registered: code={client.client_code}")
            return self._t("registered", code=client.client_code)

        if isinstance(effect, LookupClientCode):
            if self.clients is None:
                return self._t("service_unavailable")
            try:
                client = await self.clients.get_by_telegram_id(update.user_id)
            except StoreUnavailableError as exc:
                log_ctx.error(f"Client lookup failed: {exc}")
                return self._t("service_unavailable")
            if client is None:
                return self._t("client_not_registered")
            return self._t("client_code", code=client.client_code)

        if isinstance(effect, TrackParcel):
            if self.tracker is None:
                return self._t("service_unavailable")
            try:
                status = await self.tracker.check(effect.track_code)
            except TrackingUnavailableError as exc:
                log_ctx.warning(f"Parcel tracking failed: {exc}")
                return self._t("service_unavailable")
            key = "track_ready" if status.ready else "track_pending"
            return self._t(key, code=status.track_code)

        raise TypeError(f"Unsupported effect: {effect!r}")

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, update: InboundUpdate, reply: Reply, log_ctx: LogContext) -> None:
        target = ReplyTarget(
            user_id=update.user_id,
            chat_id=update.chat_id,
            callback_query_id=update.callback_query_id,
        )
        try:
            await self.sink.deliver(target, reply)
        except ReplyDeliveryError as exc:
            log_ctx.error(f"Reply delivery failed: {exc}")
            AppMetrics.reply_delivered("failed")
            return
        AppMetrics.reply_delivered("sent")
