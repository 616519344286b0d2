"""
Realtime change feed for the messages relation.

Speaks the Phoenix channel protocol used by the hosted backend's realtime
service over a websocket:

  1. connect to  wss://{host}/realtime/v1/websocket?apikey=...&vsn=1.0.0
  2. phx_join    topic "realtime:messages-realtime-{hospital_id}" with a
                 postgres_changes config (INSERT + UPDATE on the table)
  3. heartbeat   on topic "phoenix" every few seconds
  4. receive     "postgres_changes" frames carrying the new/old record

The feed gives per-row commit order only.  Consumers must not assume that
arrival order matches created_at order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode, urlsplit

from pydantic import ValidationError

from medexchange.messaging.models import ChangeEvent, ChangeType, Message

logger = logging.getLogger("messaging.realtime")

MessageCallback = Callable[[Message], Awaitable[None]]
DroppedCallback = Callable[["SubscriptionDropped"], None]

PHOENIX_TOPIC = "phoenix"
PROTOCOL_VERSION = "1.0.0"


class SubscriptionDropped(Exception):
    """The realtime channel closed without being cancelled."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def parse_change_frame(frame: dict[str, Any]) -> ChangeEvent | None:
    """
    Turn one decoded websocket frame into a ChangeEvent.

    Returns None for frames that are not row changes (replies, presence,
    system messages) or for change types other than INSERT/UPDATE.
    """
    if frame.get("event") != "postgres_changes":
        return None
    payload = frame.get("payload") or {}
    data = payload.get("data") or payload
    change = (data.get("type") or data.get("eventType") or "").upper()
    if change not in (ChangeType.INSERT.value, ChangeType.UPDATE.value):
        return None

    record = data.get("record") or data.get("new")
    if not record:
        return None
    old_record = data.get("old_record") or data.get("old") or {}

    message = Message.from_row(record)
    previous_read_at = old_record.get("read_at")
    return ChangeEvent(
        change_type=ChangeType(change),
        message=message,
        previous_read_at=previous_read_at,
    )


def _default_connect(*args, **kwargs):
    from websockets.asyncio.client import connect
    return connect(*args, **kwargs)


class RealtimeChannel:
    """
    Connection settings for one hospital's change feed.

    ``subscribe()`` opens a socket and returns a RealtimeSubscription that
    owns it.  The channel itself holds no socket.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        hospital_id: str,
        *,
        table: str = "messages",
        schema: str = "public",
        filter_by_recipient: bool = False,
        heartbeat_seconds: int = 25,
        access_token: str | None = None,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._hospital_id = hospital_id
        self._table = table
        self._schema = schema
        self._filter_by_recipient = filter_by_recipient
        self.heartbeat_seconds = heartbeat_seconds
        self._access_token = access_token or api_key
        self._connect = connect or _default_connect

    @property
    def topic(self) -> str:
        return f"realtime:messages-realtime-{self._hospital_id}"

    @property
    def socket_url(self) -> str:
        parts = urlsplit(self._base_url)
        scheme = "wss" if parts.scheme in ("https", "wss") else "ws"
        query = urlencode({"apikey": self._api_key, "vsn": PROTOCOL_VERSION})
        return f"{scheme}://{parts.netloc}{parts.path}/realtime/v1/websocket?{query}"

    def change_config(self) -> list[dict[str, str]]:
        configs = []
        for event in (ChangeType.INSERT.value, ChangeType.UPDATE.value):
            entry = {"event": event, "schema": self._schema, "table": self._table}
            if self._filter_by_recipient:
                entry["filter"] = f"recipient_hospital_id=eq.{self._hospital_id}"
            configs.append(entry)
        return configs

    def join_frame(self, ref: str) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": ""},
                    "postgres_changes": self.change_config(),
                },
                "access_token": self._access_token,
            },
            "ref": ref,
            "join_ref": ref,
        }

    async def subscribe(
        self,
        on_insert: MessageCallback,
        on_read_state_change: MessageCallback,
        on_dropped: DroppedCallback | None = None,
    ) -> RealtimeSubscription:
        subscription = RealtimeSubscription(
            self, on_insert, on_read_state_change, on_dropped,
        )
        subscription.start()
        return subscription

    def open_socket(self):
        return self._connect(self.socket_url, open_timeout=30)


class RealtimeSubscription:
    """
    A live channel.  Cancelling it closes the socket; no callback fires
    after ``cancel()`` returns.
    """

    JOIN_REF = "1"

    def __init__(
        self,
        channel: RealtimeChannel,
        on_insert: MessageCallback,
        on_read_state_change: MessageCallback,
        on_dropped: DroppedCallback | None = None,
    ) -> None:
        self._channel = channel
        self._on_insert = on_insert
        self._on_read_state_change = on_read_state_change
        self._on_dropped = on_dropped
        self._task: asyncio.Task | None = None
        self._cancelled = False
        self._active = False
        self._ref = 1
        self.joined = asyncio.Event()

    @property
    def active(self) -> bool:
        return self._active and not self._cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        self._active = True
        self._task = asyncio.create_task(self._run())

    async def cancel(self) -> None:
        self._cancelled = True
        self._active = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Realtime subscription %s cancelled", self._channel.topic)

    # ── Internal ──

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def _run(self) -> None:
        try:
            async with self._channel.open_socket() as ws:
                await ws.send(json.dumps(self._channel.join_frame(self.JOIN_REF)))
                heartbeat = asyncio.create_task(self._heartbeat_loop(ws))
                try:
                    async for raw in ws:
                        if self._cancelled:
                            return
                        await self._handle_raw(raw)
                finally:
                    heartbeat.cancel()
            self._mark_dropped("connection closed by server")
        except asyncio.CancelledError:
            raise
        except SubscriptionDropped as exc:
            self._mark_dropped(exc.reason)
        except Exception as exc:
            self._mark_dropped(f"{type(exc).__name__}: {exc}")

    async def _heartbeat_loop(self, ws) -> None:
        while not self._cancelled:
            await asyncio.sleep(self._channel.heartbeat_seconds)
            await ws.send(json.dumps({
                "topic": PHOENIX_TOPIC,
                "event": "heartbeat",
                "payload": {},
                "ref": self._next_ref(),
            }))

    async def _handle_raw(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-JSON realtime frame: %.80s", raw)
            return

        event = frame.get("event")
        topic = frame.get("topic")

        if event == "phx_reply" and frame.get("ref") == self.JOIN_REF:
            status = (frame.get("payload") or {}).get("status")
            if status != "ok":
                raise SubscriptionDropped(f"join rejected: {frame.get('payload')}")
            self.joined.set()
            logger.info("Joined realtime channel %s", self._channel.topic)
            return

        if topic == self._channel.topic and event in ("phx_error", "phx_close"):
            raise SubscriptionDropped(event)

        try:
            change = parse_change_frame(frame)
        except ValidationError as exc:
            logger.warning("Skipping malformed change frame: %s", exc)
            return
        if change is None:
            return

        try:
            if change.is_insert:
                await self._on_insert(change.message)
            elif change.is_read_transition:
                await self._on_read_state_change(change.message)
        except Exception as exc:
            logger.error(
                "Realtime callback failed for %s %s: %s",
                change.change_type.value, change.message.id, exc,
                exc_info=True,
            )

    def _mark_dropped(self, reason: str) -> None:
        was_active = self._active
        self._active = False
        if self._cancelled or not was_active:
            return
        logger.warning(
            "SubscriptionDropped on %s: %s (falling back to manual refresh)",
            self._channel.topic, reason,
        )
        if self._on_dropped is not None:
            try:
                self._on_dropped(SubscriptionDropped(reason))
            except Exception as exc:
                logger.error("on_dropped handler failed: %s", exc)
