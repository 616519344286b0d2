"""
Messaging Setup: initializes and wires together all messaging components.

Called once during app startup.  If anything fails, messaging is disabled
and the rest of the app continues working normally.
"""

from __future__ import annotations

import logging

from medexchange import settings
from medexchange.messaging.alerts import AlertRegistry, LogAlert
from medexchange.messaging.broadcast import LedgerBroadcaster
from medexchange.messaging.drafts import DraftStore
from medexchange.messaging.ledger import (
    ConversationLedger,
    GCSKeyValueStore,
    JsonFileKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
)
from medexchange.messaging.message_store import MessageStoreClient
from medexchange.messaging.models import HospitalIdentity
from medexchange.messaging.reconciler import ReconciliationEngine

logger = logging.getLogger("messaging.setup")

# Module-level singletons (set during initialize)
_engine: ReconciliationEngine | None = None
_store_client: MessageStoreClient | None = None
_ledger: ConversationLedger | None = None
_drafts: DraftStore | None = None
_alert_registry: AlertRegistry | None = None


def build_key_value_store(backend: str | None = None) -> KeyValueStore:
    """Storage behind the ledger and drafts, chosen by LEDGER_BACKEND."""
    backend = (backend or settings.LEDGER_BACKEND).lower()
    if backend == "file":
        return JsonFileKeyValueStore(settings.LEDGER_PATH)
    if backend == "gcs":
        from medexchange.dependencies import get_gcs
        gcs = get_gcs()
        if gcs is None:
            raise RuntimeError("GCS ledger backend selected but GCS is unavailable")
        # Eager init to avoid a cold start on the first ledger write
        gcs._ensure_initialized()
        return GCSKeyValueStore(gcs)
    if backend != "memory":
        logger.warning("Unknown LEDGER_BACKEND '%s', using memory", backend)
    return MemoryKeyValueStore()


def resolve_identity() -> HospitalIdentity | None:
    if not settings.HOSPITAL_ID:
        return None
    return HospitalIdentity(id=settings.HOSPITAL_ID, name=settings.HOSPITAL_NAME)


async def initialize_messaging(
    identity: HospitalIdentity | None = None,
    *,
    store: KeyValueStore | None = None,
    store_client: MessageStoreClient | None = None,
) -> ReconciliationEngine:
    """
    Wire together all messaging components and open the realtime channel.

    Returns the fully initialized ReconciliationEngine.
    """
    global _engine, _store_client, _ledger, _drafts, _alert_registry

    logger.info("Initializing MedExchange messaging...")

    identity = identity or resolve_identity()
    if identity is None:
        logger.warning("No HOSPITAL_ID configured; realtime stays off until identity is confirmed")

    # 1. Local key-value storage shared by ledger and drafts
    kv_store = store or build_key_value_store()
    hospital_key = identity.id if identity else "anonymous"

    # 2. Ledger + broadcaster
    _ledger = ConversationLedger(hospital_key, store=kv_store, broadcaster=LedgerBroadcaster())
    _drafts = DraftStore(hospital_key, store=kv_store)

    # 3. Backend client
    if store_client is None:
        store_client = MessageStoreClient(
            settings.SUPABASE_URL,
            settings.SUPABASE_ANON_KEY,
            identity,
            table=settings.MESSAGES_TABLE,
            timeout_seconds=settings.HTTP_TIMEOUT_SECONDS,
            client_info=settings.CLIENT_INFO,
            filter_by_recipient=settings.REALTIME_FILTER_BY_RECIPIENT,
            heartbeat_seconds=settings.REALTIME_HEARTBEAT_SECONDS,
        )
    _store_client = store_client

    # 4. Alerts
    _alert_registry = AlertRegistry()
    _alert_registry.register(LogAlert())

    # 5. Engine (starts its change queue and the realtime channel)
    _engine = ReconciliationEngine(
        identity=identity,
        store_client=_store_client,
        ledger=_ledger,
        alerts=_alert_registry,
    )
    await _engine.start()

    logger.info(
        "Messaging initialized: hospital=%s, ledger=%s, alerts=%s",
        identity.id if identity else None,
        type(kv_store).__name__,
        _alert_registry.registered_alerts,
    )
    return _engine


async def confirm_identity(identity: HospitalIdentity) -> ReconciliationEngine:
    """
    Called by the auth layer each time it confirms the signed-in hospital.

    Binds the identity if messaging started without one, and reopens the
    realtime channel if it dropped.  Raises ValueError for a different
    hospital than the session already has.
    """
    if _engine is None:
        raise RuntimeError("Messaging not initialized")
    await _engine.confirm_identity(identity)
    if _drafts is not None:
        _drafts.rebind(identity.id)
    return _engine


async def shutdown_messaging() -> None:
    """Gracefully stop background tasks."""
    if _engine:
        await _engine.stop()
    if _store_client:
        await _store_client.close()
        logger.info("Messaging shutdown complete")


def get_engine() -> ReconciliationEngine | None:
    return _engine


def get_store_client() -> MessageStoreClient | None:
    return _store_client


def get_ledger() -> ConversationLedger | None:
    return _ledger


def get_drafts() -> DraftStore | None:
    return _drafts


def get_alert_registry() -> AlertRegistry | None:
    return _alert_registry
