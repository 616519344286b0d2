"""
Shared fixtures for messaging tests.
"""

import pytest

from medexchange.messaging.alerts import AlertRegistry
from medexchange.messaging.broadcast import LedgerBroadcaster
from medexchange.messaging.ledger import ConversationLedger, MemoryKeyValueStore
from medexchange.messaging.models import HospitalIdentity
from medexchange.messaging.reconciler import ReconciliationEngine
from medexchange.messaging.tests.fakes import ME, FakeMessageStore


@pytest.fixture
def identity():
    return HospitalIdentity(id=ME, name="St. Mary's")


@pytest.fixture
def fake_store():
    return FakeMessageStore(ME)


@pytest.fixture
def broadcaster():
    return LedgerBroadcaster()


@pytest.fixture
def ledger(broadcaster):
    return ConversationLedger(ME, store=MemoryKeyValueStore(), broadcaster=broadcaster)


@pytest.fixture
def alerts():
    return AlertRegistry()


@pytest.fixture
def engine(identity, fake_store, ledger, alerts):
    return ReconciliationEngine(
        identity=identity,
        store_client=fake_store,
        ledger=ledger,
        alerts=alerts,
    )
