"""
Reconciliation Engine: merges the change feed and local optimistic writes
into one ordered, de-duplicated view of the open conversation, and keeps
the Conversation Ledger consistent for every conversation, open or not.

Invariants the engine maintains:
  - the open list never holds two entries with the same id
  - a server-confirmed message takes the place of its temp-id counterpart,
    in the same position (confirmation never re-sorts the list)
  - a fetch that resolves after the user switched conversation is dropped
  - each message id affects the ledger at most once, however many times
    the feed delivers it

All state lives on the instance.  Realtime callbacks are funnelled through
a ChangeQueue, so change events are applied strictly one at a time.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable

from medexchange.messaging.alerts import AlertRegistry
from medexchange.messaging.broadcast import LedgerListener
from medexchange.messaging.ledger import ConversationLedger
from medexchange.messaging.message_store import (
    FetchError,
    MarkReadError,
    MessageStoreClient,
    SendError,
)
from medexchange.messaging.models import (
    ChangeEvent,
    ChangeType,
    ConversationState,
    DeliveryStatus,
    HospitalIdentity,
    Message,
    MessageKind,
    MessagePreview,
)
from medexchange.messaging.queue import ChangeQueue
from medexchange.messaging.realtime import RealtimeSubscription, SubscriptionDropped

logger = logging.getLogger("messaging.reconciler")

# Remembered message ids for duplicate-delivery suppression
MAX_REMEMBERED_IDS = 1000


class ReconciliationEngine:
    """
    Conversation state for one hospital session.

    Usage:
        engine = ReconciliationEngine(identity=me, store_client=client, ledger=ledger)
        await engine.start()                    # realtime subscription + queue
        await engine.open_conversation("HOSP-B")
        await engine.send_text("Do you have spare insulin?")
        ...
        await engine.stop()
    """

    def __init__(
        self,
        *,
        identity: HospitalIdentity | None,
        store_client: MessageStoreClient,
        ledger: ConversationLedger,
        alerts: AlertRegistry | None = None,
    ) -> None:
        self._identity = identity
        self._store = store_client
        self._ledger = ledger
        self._alerts = alerts or AlertRegistry()
        self._queue = ChangeQueue(processor=self.apply_change)

        self._counterparty_id: str | None = None
        self._state = ConversationState.EMPTY
        self._messages: list[Message] = []
        # Bumped on every open/close; an async result tagged with an older
        # generation belongs to a conversation that is no longer open
        self._open_generation = 0
        self._sending = False
        self._focused = True

        self._subscription: RealtimeSubscription | None = None
        self._degraded = False
        self.last_error: Exception | None = None

        self._seen_inserts: OrderedDict[str, bool] = OrderedDict()
        self._seen_reads: OrderedDict[str, bool] = OrderedDict()
        # When each unread bucket was last cleared locally; read updates for
        # messages created before that were already counted by the clear
        self._cleared_at: dict[str, datetime] = {}

    # ── Observable state ──

    @property
    def identity(self) -> HospitalIdentity | None:
        return self._identity

    @property
    def hospital_id(self) -> str | None:
        return self._identity.id if self._identity else None

    @property
    def counterparty_id(self) -> str | None:
        return self._counterparty_id

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def ledger(self) -> ConversationLedger:
        return self._ledger

    @property
    def queue(self) -> ChangeQueue:
        return self._queue

    @property
    def sending(self) -> bool:
        return self._sending

    @property
    def focused(self) -> bool:
        return self._focused

    @property
    def degraded(self) -> bool:
        """True while the realtime channel is down (manual refresh only)."""
        return self._degraded

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def order(self) -> list[str]:
        return self._ledger.get_order()

    @property
    def unread(self) -> dict[str, int]:
        return self._ledger.get_unread()

    @property
    def total_unread(self) -> int:
        return self._ledger.total_unread()

    def preview(self, counterparty_id: str) -> MessagePreview | None:
        return self._ledger.get_last_message(counterparty_id)

    def listen(self, listener: LedgerListener) -> Callable[[], None]:
        """Subscribe to ledger notifications.  Returns the unsubscribe callable."""
        return self._ledger.broadcaster.listen(listener)

    def snapshot(self) -> dict[str, Any]:
        return {
            "hospital_id": self.hospital_id,
            "counterparty_id": self._counterparty_id,
            "state": self._state.value,
            "sending": self._sending,
            "focused": self._focused,
            "degraded": self._degraded,
            "last_error": str(self.last_error) if self.last_error else None,
            "messages": [m.model_dump(mode="json") for m in self._messages],
        }

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the change queue and open the realtime channel."""
        await self._queue.start()
        await self._subscribe()

    async def stop(self) -> None:
        await self._store.unsubscribe()
        self._subscription = None
        await self._queue.stop()

    async def _subscribe(self) -> None:
        self._subscription = await self._store.subscribe(
            self._on_insert_event,
            self._on_read_event,
            self._on_dropped,
        )
        self._degraded = self._subscription is None
        if self._subscription is not None:
            logger.info("Realtime active for hospital %s", self.hospital_id)

    async def resubscribe(self) -> None:
        if self._identity is None:
            logger.warning("Cannot resubscribe without a hospital identity")
            return
        await self._store.unsubscribe()
        await self._subscribe()

    async def confirm_identity(self, identity: HospitalIdentity | None) -> None:
        """
        Called by the auth layer whenever it (re)confirms who is signed in.
        A dropped channel is reopened here.
        """
        if identity is None:
            return
        if self._identity is not None and identity.id != self._identity.id:
            raise ValueError(
                f"Hospital identity is fixed for the session "
                f"({self._identity.id}), got {identity.id}"
            )
        if self._identity is None:
            self._ledger.rebind(identity.id)
        self._store.bind_identity(identity)
        self._identity = identity
        if self._degraded or not self.subscribed:
            logger.info("Identity %s confirmed, reopening realtime channel", identity.id)
            await self.resubscribe()

    def _on_dropped(self, exc: SubscriptionDropped) -> None:
        self._degraded = True
        logger.warning(
            "Realtime degraded for hospital %s: %s. Updates need a manual refresh "
            "until the identity is confirmed again.",
            self.hospital_id, exc.reason,
        )

    async def _on_insert_event(self, message: Message) -> None:
        await self._queue.enqueue(ChangeEvent(change_type=ChangeType.INSERT, message=message))

    async def _on_read_event(self, message: Message) -> None:
        await self._queue.enqueue(ChangeEvent(change_type=ChangeType.UPDATE, message=message))

    async def apply_change(self, event: ChangeEvent) -> None:
        if event.is_insert:
            await self.handle_insert(event.message)
        elif event.is_read_transition:
            await self.handle_read_update(event.message)

    # ── Opening conversations ──

    def _is_current(self, generation: int, counterparty_id: str) -> bool:
        return generation == self._open_generation and counterparty_id == self._counterparty_id

    async def open_conversation(self, counterparty_id: str) -> list[Message]:
        """
        Switch to ``counterparty_id`` and load its history.

        Opening another conversation discards the previous list; an empty id
        changes nothing.  Raises FetchError if the history cannot be loaded
        (state becomes FAILED, ``reload()`` retries).
        """
        if not counterparty_id or self._identity is None:
            return self.messages

        self._open_generation += 1
        generation = self._open_generation
        self._counterparty_id = counterparty_id
        self._messages = []
        self._state = ConversationState.LOADING
        self.last_error = None
        logger.debug("Opening conversation %s -> %s", self.hospital_id, counterparty_id)

        try:
            fetched = await self._store.fetch_conversation(counterparty_id)
        except FetchError as exc:
            if self._is_current(generation, counterparty_id):
                self._state = ConversationState.FAILED
                self.last_error = exc
            raise

        if not self._is_current(generation, counterparty_id):
            logger.debug("Discarding stale history for %s", counterparty_id)
            return self.messages

        self._messages = self._merge_fetched(fetched)
        self._state = ConversationState.LOADED
        if self._focused and self._has_unread(counterparty_id):
            await self.mark_read(counterparty_id)
        return self.messages

    async def reload(self) -> list[Message]:
        """Re-fetch the open conversation, keeping the current list on failure."""
        counterparty_id = self._counterparty_id
        if not counterparty_id:
            return []
        generation = self._open_generation
        try:
            fetched = await self._store.fetch_conversation(counterparty_id)
        except FetchError as exc:
            if self._is_current(generation, counterparty_id):
                self.last_error = exc
            raise
        if not self._is_current(generation, counterparty_id):
            return self.messages
        self._messages = self._merge_fetched(fetched)
        self._state = ConversationState.LOADED
        self.last_error = None
        return self.messages

    def close_conversation(self) -> None:
        self._open_generation += 1
        self._counterparty_id = None
        self._messages = []
        self._state = ConversationState.EMPTY

    def _merge_fetched(self, fetched: list[Message]) -> list[Message]:
        """
        Server history plus whatever the feed or the user added while the
        fetch was in flight.  Optimistic entries stay at the tail.
        """
        merged = list(fetched)
        known = {m.id for m in merged}
        pending: list[Message] = []
        for local in self._messages:
            if local.id in known:
                continue
            if local.is_optimistic:
                pending.append(local)
            else:
                self._insert_sorted(merged, local)
        return merged + pending

    @staticmethod
    def _insert_sorted(messages: list[Message], message: Message) -> None:
        """Insert by created_at, after any entry with an equal timestamp."""
        index = len(messages)
        while index > 0 and messages[index - 1].created_at > message.created_at:
            index -= 1
        messages.insert(index, message)

    # ── Realtime inserts ──

    def _remember(self, seen: OrderedDict[str, bool], message_id: str) -> bool:
        """Record ``message_id``.  False if it was already recorded."""
        if message_id in seen:
            return False
        seen[message_id] = True
        if len(seen) > MAX_REMEMBERED_IDS:
            seen.popitem(last=False)
        return True

    def _index_of(self, message_id: str) -> int | None:
        for i, m in enumerate(self._messages):
            if m.id == message_id:
                return i
        return None

    def _pending_match(self, confirmed: Message) -> int | None:
        """Oldest pending optimistic entry carrying the same payload."""
        for i, m in enumerate(self._messages):
            if (
                m.is_optimistic
                and m.delivery_status == DeliveryStatus.PENDING
                and m.same_payload(confirmed)
            ):
                return i
        return None

    def _insert_into_open_list(self, message: Message) -> bool:
        if self._index_of(message.id) is not None:
            return False
        if message.sender_hospital_id == self.hospital_id:
            match = self._pending_match(message)
            if match is not None:
                # The echo of our own send beat the insert acknowledgement
                self._messages[match] = message
                return True
        self._insert_sorted(self._messages, message)
        return True

    async def handle_insert(self, message: Message) -> None:
        me = self.hospital_id
        if me is None:
            return
        counterparty = message.counterparty_of(me)
        if counterparty is None:
            # Unfiltered feed: someone else's conversation
            return

        is_mine = message.sender_hospital_id == me
        is_incoming = message.recipient_hospital_id == me and not is_mine
        is_open = (
            counterparty == self._counterparty_id
            and self._state != ConversationState.EMPTY
        )

        if is_open:
            self._insert_into_open_list(message)

        if not self._remember(self._seen_inserts, message.id):
            logger.debug("Duplicate delivery of %s, ledger untouched", message.id)
            return

        if is_incoming:
            self._ledger.bump_to_front(counterparty)
            if is_open and self._focused:
                self._ledger.set_last_message(counterparty, message.preview_text(), message.created_at)
                await self.mark_read(counterparty)
                return
            if message.read_at is None:
                count = self._ledger.increment(counterparty)
                self._ledger.set_last_message(counterparty, message.preview_text(), message.created_at)
                await self._alerts.alert_all(message, counterparty, count)
            else:
                self._ledger.set_last_message(counterparty, message.preview_text(), message.created_at)
        elif is_mine:
            self._ledger.bump_to_front(counterparty)
            self._ledger.set_last_message(counterparty, message.preview_text(), message.created_at)

    # ── Read-state updates ──

    async def handle_read_update(self, message: Message) -> None:
        me = self.hospital_id
        if me is None or message.read_at is None:
            return
        counterparty = message.counterparty_of(me)
        if counterparty is None:
            return

        if counterparty == self._counterparty_id:
            index = self._index_of(message.id)
            if index is not None and self._messages[index].read_at is None:
                self._messages[index] = self._messages[index].model_copy(
                    update={"read_at": message.read_at},
                )

        if message.recipient_hospital_id != me or not self._remember(self._seen_reads, message.id):
            return
        cleared_at = self._cleared_at.get(counterparty)
        if cleared_at is not None and message.created_at <= cleared_at:
            # Echo of a mark-read that already zeroed the bucket
            return
        # Read elsewhere (another device)
        self._ledger.decrement(counterparty)

    # ── Sending ──

    async def send_text(self, text: str, kind: MessageKind = MessageKind.TEXT) -> Message | None:
        """
        Send ``text`` to the open conversation.

        Returns the confirmed Message, or None if the send was rejected
        (empty text, no conversation open, another send in flight).  On a
        backend failure the optimistic entry is flagged FAILED and SendError
        is raised with the text and temp id attached.
        """
        content = (text or "").strip()
        me = self.hospital_id
        counterparty = self._counterparty_id
        if not content or not counterparty or me is None:
            return None
        if self._sending:
            logger.debug("Send rejected: another send is in flight")
            return None

        generation = self._open_generation
        optimistic = Message.optimistic(
            me, counterparty, content,
            kind=kind,
            sender_name=self._identity.name or None,
        )
        self._messages.append(optimistic)
        self._sending = True
        try:
            confirmed = await self._store.send(
                sender_hospital_id=me,
                recipient_hospital_id=counterparty,
                content=content,
                kind=kind,
            )
        except SendError as exc:
            if generation == self._open_generation:
                self._set_status(optimistic.id, DeliveryStatus.FAILED)
            exc.text = content
            exc.temp_id = optimistic.id
            logger.error("Send to %s failed, kept as %s: %s", counterparty, optimistic.id, exc)
            raise
        finally:
            self._sending = False

        self._remember(self._seen_inserts, confirmed.id)
        if generation == self._open_generation:
            self._apply_confirmation(optimistic.id, confirmed)
        self._ledger.bump_to_front(counterparty)
        self._ledger.set_last_message(counterparty, confirmed.preview_text(), confirmed.created_at)
        return confirmed

    def _apply_confirmation(self, temp_id: str, confirmed: Message) -> None:
        temp_index = self._index_of(temp_id)
        confirmed_index = self._index_of(confirmed.id)

        if temp_index is not None and confirmed_index is None:
            self._messages[temp_index] = confirmed
        elif temp_index is not None:
            # Already present from a refetch: drop the placeholder
            del self._messages[temp_index]
        elif confirmed_index is not None:
            # The echo already took the placeholder's slot
            self._messages[confirmed_index] = confirmed
        else:
            match = self._pending_match(confirmed)
            if match is not None:
                self._messages[match] = confirmed
            else:
                self._insert_sorted(self._messages, confirmed)

    def _set_status(self, temp_id: str, status: DeliveryStatus) -> None:
        index = self._index_of(temp_id)
        if index is not None:
            self._messages[index] = self._messages[index].model_copy(
                update={"delivery_status": status},
            )

    def _pop_failed(self, temp_id: str) -> Message | None:
        index = self._index_of(temp_id)
        if index is None or self._messages[index].delivery_status != DeliveryStatus.FAILED:
            return None
        return self._messages.pop(index)

    async def retry_failed(self, temp_id: str) -> Message | None:
        """
        Resend a FAILED optimistic message.  Never called automatically.

        The failed entry stays in the list when the resend cannot start
        (another send in flight, conversation closed).
        """
        index = self._index_of(temp_id)
        if index is None or self._messages[index].delivery_status != DeliveryStatus.FAILED:
            return None
        if self._sending or not self._counterparty_id or self._identity is None:
            logger.debug("Retry of %s not attempted: send in flight or nothing open", temp_id)
            return None
        failed = self._pop_failed(temp_id)
        return await self.send_text(failed.content, failed.kind)

    def discard_failed(self, temp_id: str) -> str | None:
        """Remove a FAILED optimistic message and return its text."""
        failed = self._pop_failed(temp_id)
        return failed.content if failed else None

    # ── Read marking ──

    def _has_unread(self, counterparty_id: str) -> bool:
        if self._ledger.get_unread_count(counterparty_id) > 0:
            return True
        me = self.hospital_id
        return any(
            m.recipient_hospital_id == me and m.read_at is None and not m.is_optimistic
            for m in self._messages
        )

    async def mark_read(self, counterparty_id: str) -> int:
        """
        Clear the unread bucket now, then mark the rows read on the backend.

        A backend failure is logged and the local clear stays in place.
        """
        if not counterparty_id or self._identity is None:
            return 0
        self._ledger.clear(counterparty_id)
        self._cleared_at[counterparty_id] = datetime.now(timezone.utc)
        try:
            return await self._store.mark_read(counterparty_id)
        except MarkReadError as exc:
            logger.warning(
                "MarkReadError for %s, unread cleared locally only: %s",
                counterparty_id, exc,
            )
            return 0

    async def mark_current_read(self) -> int:
        if not self._counterparty_id:
            return 0
        return await self.mark_read(self._counterparty_id)

    # ── Corrective reconciliation ──

    async def set_focus(self, focused: bool) -> None:
        """
        Track whether the conversation view is in front of the user.
        Regaining focus recounts unread from the backend and marks the open
        conversation read.
        """
        regained = focused and not self._focused
        self._focused = focused
        if not regained:
            return
        await self.refresh_unread()
        if (
            self._counterparty_id
            and self._state == ConversationState.LOADED
            and self._has_unread(self._counterparty_id)
        ):
            await self.mark_read(self._counterparty_id)

    async def refresh_unread(self) -> dict[str, int] | None:
        """Replace the unread bucket with a full backend recount."""
        try:
            counts = await self._store.fetch_unread_counts()
        except FetchError as exc:
            logger.warning("Unread recount failed, keeping ledger counts: %s", exc)
            return None
        self._ledger.replace_unread(counts)
        self._cleared_at.clear()
        return counts

    async def rebuild_ledger(self) -> None:
        """Recompute order, unread and previews from the messages relation."""
        messages = await self._store.fetch_all_for_hospital()
        self._ledger.rebuild_from_messages(messages)
        self._cleared_at.clear()
