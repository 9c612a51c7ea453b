# entitlement_engine/conftest.py
import os
from typing import Callable, Dict, Optional

import httpx
import pytest
import pytest_asyncio

from entitlement_engine.core.store import InMemoryKeyValueStore, SqlKeyValueStore
from entitlement_engine.features.payments.config_store import ConfigStore
from entitlement_engine.features.payments.provider import RecordingOpener
from entitlement_engine.features.payments.verifier import PaymentVerifier
from entitlement_engine.features.subscriptions.service import SubscriptionManager
from entitlement_engine.features.subscriptions.state_store import CheckoutBreadcrumbs
from entitlement_engine.models.billing import PaymentConfig

from entitlement_engine.tests.mocks import RECIPIENT, FakeClock, explorer_factory, mined_handler


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def sql_store(tmp_path):
    return SqlKeyValueStore(database_url=f"sqlite:///{tmp_path / 'kv.db'}")


@pytest.fixture
def redis_url():
    """REDIS_URL from environment, or None. Redis tests skip without it."""
    return os.getenv("REDIS_URL")


@pytest.fixture
def opener():
    return RecordingOpener()


@pytest.fixture
def payment_defaults():
    return PaymentConfig(
        stripe_publishable_key="pk_test_123",
        stripe_payment_link_beta="https://buy.stripe.com/test_abc",
        crypto_recipient_address=RECIPIENT,
        supported_chains=[1, 8453, 137],
        beta_price_usd=5.0,
    )


@pytest.fixture
def make_manager(store, clock, opener, payment_defaults):
    """Build managers sharing one store, like several browser contexts would."""

    def _make(
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        *,
        shared_store=None,
        defaults: Optional[PaymentConfig] = None,
    ) -> SubscriptionManager:
        kv = shared_store or store
        verifier = PaymentVerifier(
            CheckoutBreadcrumbs(kv),
            opener=opener,
            client_factory=explorer_factory(handler or mined_handler),
            clock=clock,
        )
        return SubscriptionManager(
            kv,
            verifier=verifier,
            config_store=ConfigStore(kv, defaults=defaults or payment_defaults),
            clock=clock,
        )

    return _make


@pytest_asyncio.fixture
async def manager(make_manager):
    mgr = make_manager()
    await mgr.initialize()
    return mgr


@pytest.fixture
def stored_state(store):
    async def _read() -> Dict:
        data = await store.get(["billing_subscription"])
        return data.get("billing_subscription")

    return _read
