"""
Tests for messaging wiring (initialize / shutdown / storage selection).
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from medexchange.messaging import setup as messaging_setup
from medexchange.messaging.ledger import (
    GCSKeyValueStore,
    JsonFileKeyValueStore,
    MemoryKeyValueStore,
)
from medexchange.messaging.message_store import MessageStoreClient
from medexchange.messaging.models import HospitalIdentity
from medexchange.messaging.tests.fakes import ME, OTHER, FakeMessageStore, make_message


def _reset_singletons():
    messaging_setup._engine = None
    messaging_setup._store_client = None
    messaging_setup._ledger = None
    messaging_setup._drafts = None
    messaging_setup._alert_registry = None


@pytest.fixture
def clean_singletons():
    _reset_singletons()
    yield
    _reset_singletons()


class TestBuildKeyValueStore:

    def test_memory(self):
        assert isinstance(messaging_setup.build_key_value_store("memory"), MemoryKeyValueStore)

    def test_unknown_falls_back_to_memory(self):
        assert isinstance(messaging_setup.build_key_value_store("redis"), MemoryKeyValueStore)

    def test_file(self, tmp_path):
        with patch.object(messaging_setup.settings, "LEDGER_PATH", str(tmp_path / "l.json")):
            store = messaging_setup.build_key_value_store("file")
        assert isinstance(store, JsonFileKeyValueStore)

    def test_gcs(self):
        gcs = MagicMock()
        with patch("medexchange.dependencies.get_gcs", return_value=gcs):
            store = messaging_setup.build_key_value_store("gcs")
        assert isinstance(store, GCSKeyValueStore)
        gcs._ensure_initialized.assert_called_once()

    def test_gcs_unavailable(self):
        with patch("medexchange.dependencies.get_gcs", return_value=None):
            with pytest.raises(RuntimeError):
                messaging_setup.build_key_value_store("gcs")


class TestInitializeMessaging:

    @pytest.mark.asyncio
    async def test_wires_components(self, clean_singletons):
        fake = FakeMessageStore(ME)
        engine = await messaging_setup.initialize_messaging(
            HospitalIdentity(id=ME, name="St. Mary's"),
            store=MemoryKeyValueStore(),
            store_client=fake,
        )

        assert messaging_setup.get_engine() is engine
        assert messaging_setup.get_store_client() is fake
        assert messaging_setup.get_ledger() is engine.ledger
        assert messaging_setup.get_drafts() is not None
        assert messaging_setup.get_alert_registry().registered_alerts == ["log"]
        assert fake.subscribe_calls == 1
        assert engine.queue.running

        await messaging_setup.shutdown_messaging()
        assert not engine.queue.running

    @pytest.mark.asyncio
    async def test_ledger_and_drafts_share_store(self, clean_singletons):
        store = MemoryKeyValueStore()
        await messaging_setup.initialize_messaging(
            HospitalIdentity(id=ME), store=store, store_client=FakeMessageStore(ME),
        )
        engine = messaging_setup.get_engine()
        await engine.handle_insert(make_message("b1", OTHER, ME))
        messaging_setup.get_drafts().set_draft("x")

        assert store.get(f"{ME}:unreadCounts") is not None
        assert store.get(f"{ME}:messageDraft") == "x"
        await messaging_setup.shutdown_messaging()

    @pytest.mark.asyncio
    async def test_builds_client_from_settings(self, clean_singletons):
        with patch.object(MessageStoreClient, "subscribe", return_value=None) as subscribe:
            engine = await messaging_setup.initialize_messaging(
                HospitalIdentity(id=ME), store=MemoryKeyValueStore(),
            )
        client = messaging_setup.get_store_client()

        assert isinstance(client, MessageStoreClient)
        assert client.hospital_id == ME
        subscribe.assert_called_once()
        assert engine.degraded
        await messaging_setup.shutdown_messaging()


class TestConfirmIdentity:

    @pytest.mark.asyncio
    async def test_binds_identity_when_started_without_one(self, clean_singletons):
        subscription = MagicMock()
        subscription.active = True
        subscription.cancel = AsyncMock()
        channel = MagicMock()
        channel.subscribe = AsyncMock(return_value=subscription)
        client = MessageStoreClient("https://abc.supabase.co", "anon-key", None, realtime_channel=channel)
        store = MemoryKeyValueStore()

        with patch.object(messaging_setup.settings, "HOSPITAL_ID", ""):
            engine = await messaging_setup.initialize_messaging(store=store, store_client=client)
        assert engine.degraded

        await messaging_setup.confirm_identity(HospitalIdentity(id=ME))
        messaging_setup.get_drafts().set_draft("x")

        assert engine.subscribed
        assert client.hospital_id == ME
        assert messaging_setup.get_ledger().hospital_id == ME
        assert store.get(f"{ME}:messageDraft") == "x"
        await messaging_setup.shutdown_messaging()

    @pytest.mark.asyncio
    async def test_not_initialized(self, clean_singletons):
        with pytest.raises(RuntimeError):
            await messaging_setup.confirm_identity(HospitalIdentity(id=ME))
