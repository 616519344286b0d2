"""
Message Store Client: queries, mutations and the change-feed subscription
for the messages relation, scoped to the current hospital.

REST calls go to the backend's PostgREST endpoint:

    GET   /rest/v1/messages?or=(...)&order=created_at.asc,id.asc
    POST  /rest/v1/messages                  (Prefer: return=representation)
    PATCH /rest/v1/messages?sender_hospital_id=eq.X&recipient_hospital_id=eq.Y&read_at=is.null

Nothing here retries.  Failures surface as FetchError / SendError /
MarkReadError and the caller decides what to do.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import aiohttp

from medexchange.messaging.models import HospitalIdentity, Message, MessageKind
from medexchange.messaging.realtime import (
    DroppedCallback,
    MessageCallback,
    RealtimeChannel,
    RealtimeSubscription,
)

logger = logging.getLogger("messaging.store")

MESSAGE_COLUMNS = (
    "id,sender_hospital_id,recipient_hospital_id,content,kind,created_at,read_at,"
    "sender_hospital:sender_hospital_id(name)"
)


class MessagingError(Exception):
    pass


class FetchError(MessagingError):
    """Conversation history (or unread recount) could not be loaded."""


class SendError(MessagingError):
    """A message insert failed.  ``text`` is kept so the caller can retry."""

    def __init__(self, message: str, *, text: str = "", temp_id: str | None = None) -> None:
        super().__init__(message)
        self.text = text
        self.temp_id = temp_id


class MarkReadError(MessagingError):
    """Setting read_at on a conversation failed."""


class MessageStoreClient:
    """
    Backend access for one hospital identity.

    Usage:
        client = MessageStoreClient(url, key, identity)
        history = await client.fetch_conversation("HOSP-B")
        sub = await client.subscribe(on_insert, on_read)
        ...
        await client.close()
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        identity: HospitalIdentity | None,
        *,
        table: str = "messages",
        timeout_seconds: float = 15,
        client_info: str = "medication-exchange-app",
        filter_by_recipient: bool = False,
        heartbeat_seconds: int = 25,
        realtime_channel: RealtimeChannel | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._identity = identity
        self._table = table
        self._timeout = timeout_seconds
        self._client_info = client_info
        self._filter_by_recipient = filter_by_recipient
        self._heartbeat_seconds = heartbeat_seconds
        self._realtime_channel = realtime_channel
        self._session = session
        self._owns_session = session is None
        self._subscription: RealtimeSubscription | None = None

    # ── Identity ──

    @property
    def identity(self) -> HospitalIdentity | None:
        return self._identity

    @property
    def hospital_id(self) -> str | None:
        return self._identity.id if self._identity else None

    def bind_identity(self, identity: HospitalIdentity) -> None:
        """
        Attach the identity the auth layer confirmed.  Queries and the change
        feed are scoped to it from now on.  Switching hospitals is refused.
        """
        if self._identity is not None and self._identity.id != identity.id:
            raise ValueError(
                f"Client is bound to {self._identity.id}, got {identity.id}"
            )
        self._identity = identity

    @property
    def subscription(self) -> RealtimeSubscription | None:
        return self._subscription

    # ── HTTP plumbing ──

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/rest/v1/{self._table}"

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "X-Client-Info": self._client_info,
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> tuple[int, Any]:
        """Issue one REST call.  Returns (status, decoded JSON or text)."""
        session = self._get_session()
        async with session.request(
            method,
            self.endpoint,
            params=params,
            json=json_body,
            headers=self._headers(prefer),
        ) as response:
            if response.content_type == "application/json":
                body = await response.json()
            else:
                body = await response.text()
            return response.status, body

    # ── Queries ──

    def _pair_filter(self, counterparty_id: str) -> str:
        me = self.hospital_id
        return (
            f"(and(sender_hospital_id.eq.{me},recipient_hospital_id.eq.{counterparty_id}),"
            f"and(sender_hospital_id.eq.{counterparty_id},recipient_hospital_id.eq.{me}))"
        )

    async def fetch_conversation(self, counterparty_id: str) -> list[Message]:
        """All messages between self and ``counterparty_id``, oldest first."""
        if not counterparty_id or not self.hospital_id:
            return []
        params = {
            "select": MESSAGE_COLUMNS,
            "or": self._pair_filter(counterparty_id),
            "order": "created_at.asc,id.asc",
        }
        rows = await self._fetch_rows(params, f"conversation with {counterparty_id}")
        return [Message.from_row(r) for r in rows]

    async def fetch_all_for_hospital(self) -> list[Message]:
        """Every message self sent or received, oldest first (ledger rebuild)."""
        me = self.hospital_id
        if not me:
            return []
        params = {
            "select": MESSAGE_COLUMNS,
            "or": f"(sender_hospital_id.eq.{me},recipient_hospital_id.eq.{me})",
            "order": "created_at.asc,id.asc",
        }
        rows = await self._fetch_rows(params, "all conversations")
        return [Message.from_row(r) for r in rows]

    async def fetch_unread_counts(self) -> dict[str, int]:
        """Count unread messages addressed to self, grouped by sender."""
        me = self.hospital_id
        if not me:
            return {}
        params = {
            "select": "id,sender_hospital_id",
            "recipient_hospital_id": f"eq.{me}",
            "read_at": "is.null",
        }
        rows = await self._fetch_rows(params, "unread counts")
        counts: dict[str, int] = {}
        for row in rows:
            sender = row.get("sender_hospital_id")
            if sender:
                counts[sender] = counts.get(sender, 0) + 1
        return counts

    async def _fetch_rows(self, params: dict[str, str], what: str) -> list[dict[str, Any]]:
        try:
            status, body = await self._request("GET", params=params)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Fetching %s failed: %s", what, exc)
            raise FetchError(f"Could not fetch {what}: {exc}") from exc
        if status >= 400:
            logger.error("Fetching %s failed with HTTP %d: %s", what, status, body)
            raise FetchError(f"Could not fetch {what}: HTTP {status}")
        if not isinstance(body, list):
            raise FetchError(f"Unexpected response for {what}: {body!r}")
        return body

    # ── Mutations ──

    async def send(
        self,
        *,
        sender_hospital_id: str,
        recipient_hospital_id: str,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
    ) -> Message:
        """Insert one row and return the server-confirmed Message."""
        row = {
            "sender_hospital_id": sender_hospital_id,
            "recipient_hospital_id": recipient_hospital_id,
            "content": content,
            "kind": kind.value,
        }
        try:
            status, body = await self._request(
                "POST",
                params={"select": MESSAGE_COLUMNS},
                json_body=row,
                prefer="return=representation",
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Sending message to %s failed: %s", recipient_hospital_id, exc)
            raise SendError(f"Could not send message: {exc}", text=content) from exc
        if status >= 400 or not isinstance(body, list) or not body:
            logger.error("Sending message to %s failed with HTTP %d: %s",
                         recipient_hospital_id, status, body)
            raise SendError(f"Could not send message: HTTP {status}", text=content)
        return Message.from_row(body[0])

    async def mark_read(self, counterparty_id: str) -> int:
        """
        Set read_at on every unread message from ``counterparty_id`` to self.

        Returns the number of rows updated.  Nothing pending is a no-op.
        """
        me = self.hospital_id
        if not counterparty_id or not me:
            return 0
        now = datetime.now(timezone.utc).isoformat()
        params = {
            "sender_hospital_id": f"eq.{counterparty_id}",
            "recipient_hospital_id": f"eq.{me}",
            "read_at": "is.null",
            "select": "id",
        }
        try:
            status, body = await self._request(
                "PATCH",
                params=params,
                json_body={"read_at": now},
                prefer="return=representation",
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise MarkReadError(f"Could not mark {counterparty_id} as read: {exc}") from exc
        if status >= 400:
            raise MarkReadError(f"Could not mark {counterparty_id} as read: HTTP {status}")
        return len(body) if isinstance(body, list) else 0

    # ── Change feed ──

    def _build_channel(self) -> RealtimeChannel:
        return RealtimeChannel(
            self._base_url,
            self._api_key,
            self.hospital_id or "",
            table=self._table,
            filter_by_recipient=self._filter_by_recipient,
            heartbeat_seconds=self._heartbeat_seconds,
        )

    async def subscribe(
        self,
        on_insert: MessageCallback,
        on_read_state_change: MessageCallback,
        on_dropped: DroppedCallback | None = None,
    ) -> RealtimeSubscription | None:
        """
        Open the realtime channel for the current identity.

        At most one live channel exists per identity: calling again while a
        channel is active returns the existing handle.
        """
        if not self.hospital_id:
            logger.info("No hospital identity resolved; realtime subscription skipped")
            return None
        if self._subscription is not None and self._subscription.active:
            return self._subscription
        channel = self._realtime_channel or self._build_channel()
        self._subscription = await channel.subscribe(
            on_insert, on_read_state_change, on_dropped,
        )
        logger.info("Subscribed to %s", channel.topic)
        return self._subscription

    async def unsubscribe(self) -> None:
        if self._subscription is not None:
            await self._subscription.cancel()
            self._subscription = None

    async def close(self) -> None:
        await self.unsubscribe()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
