"""
Local Conversation Ledger: persisted ordering, unread and preview cache.

Three JSON values per hospital, stored under namespaced keys in a simple
key/value store:

    {hospital}:conversationOrder   ["HOSP-B", "HOSP-C", ...]   newest first
    {hospital}:unreadCounts        {"HOSP-B": 2, ...}
    {hospital}:lastMessages        {"HOSP-B": {"text": ..., "timestamp": ...}}

The ledger is a derived cache: it can always be rebuilt from the messages
relation and is never authoritative for whether a conversation or message
exists.  Several ledgers (views, tabs) may share one store; each mutation
is a narrow per-key write (last-write-wins) followed by a notification.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from medexchange.messaging.broadcast import LedgerBroadcaster, LedgerEvent
from medexchange.messaging.models import Message, MessagePreview

logger = logging.getLogger("messaging.ledger")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Key/value backends
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class KeyValueStore(ABC):
    """Minimal string store shared by every view of one browser profile."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``.  Missing keys are ignored."""


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store.  Share one instance to share state between views."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKeyValueStore(KeyValueStore):
    """
    All keys in one JSON object on disk.

    The file is re-read on every access so separate processes pointing at
    the same path see each other's writes.  Writes go to a temp file and
    are moved into place atomically.
    """

    def __init__(self, path: str) -> None:
        self._path = path

    def _load(self) -> dict[str, str]:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except ValueError as exc:
            logger.warning("Ledger file %s is not valid JSON, starting empty: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, str]) -> None:
        directory = os.path.dirname(self._path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp_path, self._path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._write(data)


class GCSKeyValueStore(KeyValueStore):
    """
    One blob per key in a GCS bucket, via GCSBucketManager.

    Storage path: gs://{bucket}/{prefix}/{key}.json
    """

    DEFAULT_PREFIX = "conversation_ledgers"

    # HTTP timeout for individual GCS operations (seconds)
    GCS_TIMEOUT = 30

    def __init__(self, gcs_bucket_manager, prefix: str = DEFAULT_PREFIX) -> None:
        self._gcs = gcs_bucket_manager
        self._prefix = prefix

    def _blob_path(self, key: str) -> str:
        safe_key = key.replace("/", "_")
        return f"{self._prefix}/{safe_key}.json"

    def get(self, key: str) -> Optional[str]:
        try:
            self._gcs._ensure_initialized()
            blob = self._gcs.bucket.blob(self._blob_path(key))
            return blob.download_as_text(timeout=self.GCS_TIMEOUT)
        except Exception as e:
            err_type = type(e).__name__.lower()
            err_msg = str(e).lower()
            if "notfound" in err_type or "not found" in err_msg or "notfound" in err_msg:
                return None
            raise

    def set(self, key: str, value: str) -> None:
        self._gcs._ensure_initialized()
        blob = self._gcs.bucket.blob(self._blob_path(key))
        blob.upload_from_string(
            value,
            content_type="application/json",
            timeout=self.GCS_TIMEOUT,
        )

    def delete(self, key: str) -> None:
        self._gcs.delete_file(self._blob_path(key))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Ledger
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ConversationLedger:
    """
    Conversation order, unread counts and last-message previews for one
    hospital.

    Nothing is cached in memory: every read goes to the store, so ledgers
    in other views observe writes as soon as they are notified.
    """

    ORDER_KEY = "conversationOrder"
    UNREAD_KEY = "unreadCounts"
    PREVIEW_KEY = "lastMessages"

    def __init__(
        self,
        hospital_id: str,
        store: KeyValueStore | None = None,
        broadcaster: LedgerBroadcaster | None = None,
    ) -> None:
        self._hospital_id = hospital_id
        self._store = store or MemoryKeyValueStore()
        self._broadcaster = broadcaster or LedgerBroadcaster()

    @property
    def hospital_id(self) -> str:
        return self._hospital_id

    @property
    def broadcaster(self) -> LedgerBroadcaster:
        return self._broadcaster

    def rebind(self, hospital_id: str) -> None:
        """Switch to another hospital's keys (identity confirmed after start)."""
        if not hospital_id or hospital_id == self._hospital_id:
            return
        logger.info("Ledger rebound from %s to %s", self._hospital_id, hospital_id)
        self._hospital_id = hospital_id
        for event in LedgerEvent:
            self._broadcaster.notify(event, None)

    # ── Storage helpers ──

    def _key(self, name: str) -> str:
        return f"{self._hospital_id}:{name}"

    def _read(self, name: str, default: Any) -> Any:
        raw = self._store.get(self._key(name))
        if not raw:
            return default
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable ledger value %s", self._key(name))
            return default
        return value if isinstance(value, type(default)) else default

    def _write(self, name: str, value: Any) -> None:
        self._store.set(self._key(name), json.dumps(value, ensure_ascii=False))

    # ── Conversation order ──

    def get_order(self) -> list[str]:
        return [str(cid) for cid in self._read(self.ORDER_KEY, [])]

    def bump_to_front(self, counterparty_id: str) -> None:
        """Move ``counterparty_id`` to the front, removing duplicates."""
        if not counterparty_id:
            return
        order = self.get_order()
        updated = [counterparty_id] + [cid for cid in order if cid != counterparty_id]
        self._write(self.ORDER_KEY, updated)
        self._broadcaster.notify(LedgerEvent.ORDER_CHANGED, counterparty_id)

    # ── Unread counts ──

    def get_unread(self) -> dict[str, int]:
        raw = self._read(self.UNREAD_KEY, {})
        return {str(k): int(v) for k, v in raw.items() if int(v) > 0}

    def get_unread_count(self, counterparty_id: str) -> int:
        return self.get_unread().get(counterparty_id, 0)

    def total_unread(self) -> int:
        return sum(self.get_unread().values())

    def increment(self, counterparty_id: str, amount: int = 1) -> int:
        unread = self.get_unread()
        unread[counterparty_id] = unread.get(counterparty_id, 0) + amount
        self._write(self.UNREAD_KEY, unread)
        self._broadcaster.notify(LedgerEvent.UNREAD_CHANGED, counterparty_id)
        return unread[counterparty_id]

    def decrement(self, counterparty_id: str) -> int:
        """Lower the count by one, never below zero.  Zero buckets are removed."""
        unread = self.get_unread()
        if counterparty_id not in unread:
            return 0
        remaining = max(0, unread[counterparty_id] - 1)
        if remaining == 0:
            del unread[counterparty_id]
        else:
            unread[counterparty_id] = remaining
        self._write(self.UNREAD_KEY, unread)
        self._broadcaster.notify(LedgerEvent.UNREAD_CHANGED, counterparty_id)
        return remaining

    def clear(self, counterparty_id: str) -> None:
        unread = self.get_unread()
        unread.pop(counterparty_id, None)
        self._write(self.UNREAD_KEY, unread)
        self._broadcaster.notify(LedgerEvent.UNREAD_CHANGED, counterparty_id)

    def replace_unread(self, counts: dict[str, int]) -> None:
        """Overwrite the whole unread bucket (corrective recount)."""
        cleaned = {k: int(v) for k, v in counts.items() if int(v) > 0}
        self._write(self.UNREAD_KEY, cleaned)
        self._broadcaster.notify(LedgerEvent.UNREAD_CHANGED, None)

    # ── Last-message previews ──

    def get_previews(self) -> dict[str, MessagePreview]:
        raw = self._read(self.PREVIEW_KEY, {})
        previews: dict[str, MessagePreview] = {}
        for cid, entry in raw.items():
            try:
                previews[str(cid)] = MessagePreview.model_validate(entry)
            except ValueError:
                logger.warning("Skipping malformed preview for %s", cid)
        return previews

    def get_last_message(self, counterparty_id: str) -> MessagePreview | None:
        return self.get_previews().get(counterparty_id)

    def set_last_message(self, counterparty_id: str, text: str, timestamp: datetime) -> None:
        raw = self._read(self.PREVIEW_KEY, {})
        raw[counterparty_id] = {"text": text, "timestamp": timestamp.isoformat()}
        self._write(self.PREVIEW_KEY, raw)
        self._broadcaster.notify(LedgerEvent.PREVIEW_CHANGED, counterparty_id)

    # ── Whole-ledger operations ──

    def reset(self) -> None:
        """Forget everything.  The only path that removes order entries."""
        for name in (self.ORDER_KEY, self.UNREAD_KEY, self.PREVIEW_KEY):
            self._store.delete(self._key(name))
        for event in LedgerEvent:
            self._broadcaster.notify(event, None)
        logger.info("Ledger reset for hospital %s", self._hospital_id)

    def rebuild_from_messages(self, messages: Iterable[Message]) -> None:
        """Derive order, unread and previews from message rows alone."""
        order: list[str] = []
        unread: dict[str, int] = {}
        previews: dict[str, dict[str, str]] = {}

        for msg in sorted(messages, key=lambda m: m.created_at):
            counterparty = msg.counterparty_of(self._hospital_id)
            if counterparty is None or msg.is_optimistic:
                continue
            if counterparty in order:
                order.remove(counterparty)
            order.insert(0, counterparty)
            previews[counterparty] = {
                "text": msg.preview_text(),
                "timestamp": msg.created_at.isoformat(),
            }
            if msg.recipient_hospital_id == self._hospital_id and msg.read_at is None:
                unread[counterparty] = unread.get(counterparty, 0) + 1

        self._write(self.ORDER_KEY, order)
        self._write(self.UNREAD_KEY, unread)
        self._write(self.PREVIEW_KEY, previews)
        for event in LedgerEvent:
            self._broadcaster.notify(event, None)
        logger.info(
            "Ledger rebuilt for hospital %s: %d conversations, %d unread",
            self._hospital_id, len(order), sum(unread.values()),
        )
