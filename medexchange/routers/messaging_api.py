"""
Messaging API: HTTP endpoints over the Reconciliation Engine.

Endpoints:
  POST   /api/messaging/conversations/{id}/open          Open a conversation (loads history)
  GET    /api/messaging/conversation                     Open conversation state + messages
  POST   /api/messaging/conversation/reload              Retry loading the open conversation
  POST   /api/messaging/conversation/messages            Send a message to the open conversation
  POST   /api/messaging/conversation/messages/{id}/retry Resend a failed message
  DELETE /api/messaging/conversation/messages/{id}       Discard a failed message
  POST   /api/messaging/conversation/read                Mark the open conversation read
  GET    /api/messaging/ledger                           Order, unread counts, previews
  POST   /api/messaging/ledger/rebuild                   Rebuild the ledger from the backend
  POST   /api/messaging/unread/refresh                   Full unread recount
  POST   /api/messaging/focus                            Conversation view gained/lost focus
  GET    /api/messaging/drafts                           Read (and consume) the compose draft
  PUT    /api/messaging/drafts                           Prefill the compose draft
  DELETE /api/messaging/drafts                           Drop the compose draft
  POST   /api/messaging/identity                         Confirm the signed-in hospital
  GET    /api/messaging/status                           Identity, realtime and queue info
  WS     /api/messaging/ws/ledger                        Ledger change notifications
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from medexchange.messaging.broadcast import LedgerEvent
from medexchange.messaging.message_store import FetchError, SendError
from medexchange.messaging.models import (
    DeliveryStatus,
    HospitalIdentity,
    MessageKind,
    MessagePreview,
)

logger = logging.getLogger("messaging.api")

router = APIRouter(prefix="/api/messaging", tags=["messaging"])


# ── Request / Response Models ──


class SendMessageRequest(BaseModel):
    """Request body for POST /api/messaging/conversation/messages."""

    text: str
    kind: str = "text"


class SendMessageResponse(BaseModel):
    success: bool
    message: dict[str, Any] = Field(default_factory=dict)


class FocusRequest(BaseModel):
    focused: bool


class DraftRequest(BaseModel):
    """Compose handoff from another screen (e.g. a medication offer)."""

    text: str = ""
    target: str | None = None


class LedgerResponse(BaseModel):
    order: list[str] = Field(default_factory=list)
    unread: dict[str, int] = Field(default_factory=dict)
    total_unread: int = 0
    previews: dict[str, MessagePreview] = Field(default_factory=dict)


class IdentityRequest(BaseModel):
    """Sent by the auth layer whenever it confirms who is signed in."""

    id: str
    name: str = ""


class MessagingStatusResponse(BaseModel):
    """Response for GET /api/messaging/status."""

    status: str = "ok"
    hospital_id: str | None = None
    subscribed: bool = False
    degraded: bool = False
    counterparty_id: str | None = None
    conversation_state: str = "empty"
    queue_depth: int = 0
    processed_changes: int = 0
    registered_alerts: list[str] = Field(default_factory=list)


# ── Helpers ──


def _require_engine():
    from medexchange.messaging.setup import get_engine

    engine = get_engine()
    if engine is None:
        raise HTTPException(status_code=503, detail="Messaging not initialized")
    return engine


def _ledger_response(engine) -> LedgerResponse:
    ledger = engine.ledger
    return LedgerResponse(
        order=ledger.get_order(),
        unread=ledger.get_unread(),
        total_unread=ledger.total_unread(),
        previews=ledger.get_previews(),
    )


def _send_failed(exc: SendError) -> HTTPException:
    # The text goes back to the client so nothing the user typed is lost
    return HTTPException(
        status_code=502,
        detail={"error": str(exc), "text": exc.text, "temp_id": exc.temp_id},
    )


# ── Conversation ──


@router.post("/conversations/{counterparty_id}/open")
async def open_conversation(counterparty_id: str):
    engine = _require_engine()
    try:
        await engine.open_conversation(counterparty_id)
    except FetchError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return engine.snapshot()


@router.get("/conversation")
async def get_conversation():
    return _require_engine().snapshot()


@router.post("/conversation/reload")
async def reload_conversation():
    engine = _require_engine()
    if not engine.counterparty_id:
        raise HTTPException(status_code=409, detail="No conversation open")
    try:
        await engine.reload()
    except FetchError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return engine.snapshot()


@router.post("/conversation/messages", response_model=SendMessageResponse)
async def send_message(request: SendMessageRequest):
    """
    Send text to the open conversation.

    The optimistic copy is visible in GET /conversation while the insert is
    in flight.  409 means the send was not attempted at all.
    """
    engine = _require_engine()
    try:
        kind = MessageKind(request.kind)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid kind: {request.kind}. "
                   f"Valid kinds: {[k.value for k in MessageKind]}",
        )

    try:
        confirmed = await engine.send_text(request.text, kind)
    except SendError as exc:
        raise _send_failed(exc)
    if confirmed is None:
        raise HTTPException(
            status_code=409,
            detail="Message not sent: empty text, no open conversation or a send in flight",
        )
    return SendMessageResponse(success=True, message=confirmed.model_dump(mode="json"))


@router.post("/conversation/messages/{temp_id}/retry", response_model=SendMessageResponse)
async def retry_message(temp_id: str):
    engine = _require_engine()
    failed = [
        m for m in engine.messages
        if m.id == temp_id and m.delivery_status == DeliveryStatus.FAILED
    ]
    if not failed:
        raise HTTPException(status_code=404, detail=f"No failed message {temp_id}")
    try:
        confirmed = await engine.retry_failed(temp_id)
    except SendError as exc:
        raise _send_failed(exc)
    if confirmed is None:
        raise HTTPException(status_code=409, detail="Retry not attempted")
    return SendMessageResponse(success=True, message=confirmed.model_dump(mode="json"))


@router.delete("/conversation/messages/{temp_id}")
async def discard_message(temp_id: str):
    engine = _require_engine()
    text = engine.discard_failed(temp_id)
    if text is None:
        raise HTTPException(status_code=404, detail=f"No failed message {temp_id}")
    return {"discarded": temp_id, "text": text}


@router.post("/conversation/read")
async def mark_conversation_read():
    engine = _require_engine()
    updated = await engine.mark_current_read()
    return {"counterparty_id": engine.counterparty_id, "updated": updated}


# ── Ledger ──


@router.get("/ledger", response_model=LedgerResponse)
async def get_ledger():
    return _ledger_response(_require_engine())


@router.post("/ledger/rebuild", response_model=LedgerResponse)
async def rebuild_ledger():
    engine = _require_engine()
    try:
        await engine.rebuild_ledger()
    except FetchError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return _ledger_response(engine)


@router.post("/unread/refresh")
async def refresh_unread():
    engine = _require_engine()
    counts = await engine.refresh_unread()
    if counts is None:
        raise HTTPException(status_code=502, detail="Unread recount failed")
    return {"unread": engine.unread, "total_unread": engine.total_unread}


@router.post("/focus")
async def set_focus(request: FocusRequest):
    engine = _require_engine()
    await engine.set_focus(request.focused)
    return {"focused": engine.focused, "unread": engine.unread}


# ── Drafts ──


def _require_drafts():
    from medexchange.messaging.setup import get_drafts

    drafts = get_drafts()
    if drafts is None:
        raise HTTPException(status_code=503, detail="Messaging not initialized")
    return drafts


@router.get("/drafts")
async def consume_draft():
    """Read the handoff once.  A second read returns nothing."""
    drafts = _require_drafts()
    return {"text": drafts.consume_draft(), "target": drafts.consume_target()}


@router.put("/drafts")
async def put_draft(request: DraftRequest):
    drafts = _require_drafts()
    if request.text:
        drafts.set_draft(request.text)
    if request.target:
        drafts.set_target(request.target)
    return {"success": True}


@router.delete("/drafts")
async def delete_draft():
    drafts = _require_drafts()
    drafts.consume_draft()
    drafts.consume_target()
    return {"success": True}


# ── Identity ──


@router.post("/identity")
async def confirm_identity(request: IdentityRequest):
    """
    Bind the hospital identity, or confirm it again.  A dropped realtime
    channel is reopened here.
    """
    from medexchange.messaging.setup import confirm_identity as confirm

    engine = _require_engine()
    if not request.id.strip():
        raise HTTPException(status_code=400, detail="Hospital id is required")
    try:
        await confirm(HospitalIdentity(id=request.id.strip(), name=request.name))
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {
        "hospital_id": engine.hospital_id,
        "subscribed": engine.subscribed,
        "degraded": engine.degraded,
    }


# ── Status ──


@router.get("/status", response_model=MessagingStatusResponse)
async def messaging_status():
    from medexchange.messaging.setup import get_alert_registry

    engine = _require_engine()
    alerts = get_alert_registry()
    return MessagingStatusResponse(
        hospital_id=engine.hospital_id,
        subscribed=engine.subscribed,
        degraded=engine.degraded,
        counterparty_id=engine.counterparty_id,
        conversation_state=engine.state.value,
        queue_depth=engine.queue.depth,
        processed_changes=engine.queue.processed_count,
        registered_alerts=alerts.registered_alerts if alerts else [],
    )


# ── Ledger notifications ──


@router.websocket("/ws/ledger")
async def ledger_updates(websocket: WebSocket):
    """Push every ledger notification as {"event": ..., "key": ...}."""
    from medexchange.messaging.setup import get_engine

    engine = get_engine()
    if engine is None:
        await websocket.close(code=1011, reason="Messaging not initialized")
        return

    loop = asyncio.get_running_loop()
    pending: asyncio.Queue[tuple[LedgerEvent, str | None]] = asyncio.Queue()

    def _on_change(event: LedgerEvent, key: str | None) -> None:
        # Ledger writes may happen off the event loop thread
        loop.call_soon_threadsafe(pending.put_nowait, (event, key))

    # Listen before accepting so no write after the handshake is missed
    unsubscribe = engine.listen(_on_change)
    try:
        await websocket.accept()
        while True:
            event, key = await pending.get()
            await websocket.send_json({"event": event.value, "key": key})
    except WebSocketDisconnect:
        logger.info("Ledger listener disconnected")
    finally:
        unsubscribe()
