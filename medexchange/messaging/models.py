"""
Messaging data model.

A conversation has no id of its own: it is the unordered pair of hospitals
that appear as sender and recipient of a Message.  Rows arrive from the
REST endpoint and the realtime feed in the same shape as the relation:

    id, sender_hospital_id, recipient_hospital_id, content, kind,
    created_at, read_at

Optimistic messages use the same model with a ``temp-`` id and a
``pending`` delivery status until the insert is acknowledged.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

TEMP_ID_PREFIX = "temp-"

# Preview text stored in the ledger is capped at this many characters
PREVIEW_MAX_CHARS = 200


class MessageKind(str, Enum):
    TEXT = "text"
    FILE = "file"
    SYSTEM = "system"


class DeliveryStatus(str, Enum):
    """Local-only status; server rows are always CONFIRMED."""

    PENDING = "pending"
    FAILED = "failed"
    CONFIRMED = "confirmed"


class ConversationState(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


class HospitalIdentity(BaseModel):
    """The acting hospital.  Resolved once by the auth layer."""

    id: str
    name: str = ""

    model_config = {"frozen": True}


class Message(BaseModel):
    id: str
    sender_hospital_id: str
    recipient_hospital_id: str
    content: str = ""
    kind: MessageKind = MessageKind.TEXT
    created_at: datetime = Field(default_factory=_now)
    read_at: Optional[datetime] = None
    # Display-only, filled from the sender join or the local identity
    sender_name: Optional[str] = None
    delivery_status: DeliveryStatus = DeliveryStatus.CONFIRMED

    model_config = {"use_enum_values": False}

    @field_validator("created_at", "read_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Naive and aware datetimes cannot be compared while sorting
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    # ── Convenience factories ──

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Message:
        """Parse a relation row (REST or realtime record)."""
        data = dict(row)
        sender = data.pop("sender_hospital", None)
        if isinstance(sender, dict) and not data.get("sender_name"):
            data["sender_name"] = sender.get("name")
        data.pop("recipient_hospital", None)
        # Older deployments named the column messages_type
        legacy_kind = data.pop("messages_type", None)
        if not data.get("kind"):
            data["kind"] = legacy_kind or MessageKind.TEXT.value
        return cls.model_validate(data)

    @classmethod
    def optimistic(
        cls,
        sender_hospital_id: str,
        recipient_hospital_id: str,
        content: str,
        *,
        kind: MessageKind = MessageKind.TEXT,
        sender_name: str | None = None,
    ) -> Message:
        return cls(
            id=new_temp_id(),
            sender_hospital_id=sender_hospital_id,
            recipient_hospital_id=recipient_hospital_id,
            content=content,
            kind=kind,
            sender_name=sender_name,
            delivery_status=DeliveryStatus.PENDING,
        )

    # ── Relationship helpers ──

    @property
    def is_optimistic(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    def involves(self, hospital_id: str) -> bool:
        return hospital_id in (self.sender_hospital_id, self.recipient_hospital_id)

    def counterparty_of(self, hospital_id: str) -> str | None:
        """The other side of the conversation, or None if not a participant."""
        if self.sender_hospital_id == hospital_id:
            return self.recipient_hospital_id
        if self.recipient_hospital_id == hospital_id:
            return self.sender_hospital_id
        return None

    def same_payload(self, other: Message) -> bool:
        """True if ``other`` carries the same content between the same parties."""
        return (
            self.sender_hospital_id == other.sender_hospital_id
            and self.recipient_hospital_id == other.recipient_hospital_id
            and self.content == other.content
            and self.kind == other.kind
        )

    def preview_text(self) -> str:
        return self.content.strip()[:PREVIEW_MAX_CHARS]


class MessagePreview(BaseModel):
    text: str
    timestamp: datetime


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


class ChangeEvent(BaseModel):
    """One row-level notification from the change feed."""

    change_type: ChangeType
    message: Message
    # read_at of the old record; None also when the feed omits the old value
    previous_read_at: Optional[datetime] = None

    @property
    def is_insert(self) -> bool:
        return self.change_type == ChangeType.INSERT

    @property
    def is_read_transition(self) -> bool:
        """True for an UPDATE that moved read_at from null to a timestamp."""
        return (
            self.change_type == ChangeType.UPDATE
            and self.message.read_at is not None
            and self.previous_read_at is None
        )
