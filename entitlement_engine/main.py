import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from entitlement_engine import __version__
from entitlement_engine.api import billing
from entitlement_engine.core.config import settings, validate_config
from entitlement_engine.core.errors import register_error_handlers
from entitlement_engine.core.logging import LOGGER_NAME, configure_logging
from entitlement_engine.core.middleware.request_id import RequestIdMiddleware
from entitlement_engine.core.store import KeyValueStore, build_store
from entitlement_engine.features.payments.provider import OpenExternalUrl, webbrowser_opener
from entitlement_engine.features.payments.verifier import PaymentVerifier
from entitlement_engine.features.subscriptions.service import SubscriptionManager
from entitlement_engine.features.subscriptions.state_store import CheckoutBreadcrumbs


def build_manager(store: Optional[KeyValueStore] = None, opener: Optional[OpenExternalUrl] = None) -> SubscriptionManager:
    """Wire one SubscriptionManager for this process from settings."""
    store = store or build_store(settings)
    verifier = PaymentVerifier(CheckoutBreadcrumbs(store), opener=opener or webbrowser_opener)
    return SubscriptionManager(store, verifier=verifier)


def create_app(manager: Optional[SubscriptionManager] = None) -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger(LOGGER_NAME)
        mgr: SubscriptionManager = app.state.subscription_manager
        await mgr.initialize()
        logger.info("entitlement engine ready", extra={"plan": mgr.get_plan().value})
        yield
        logger.info("entitlement engine stopped")

    app = FastAPI(title="Entitlement Engine", version=__version__, lifespan=lifespan)
    app.state.subscription_manager = manager or build_manager()

    app.add_middleware(RequestIdMiddleware)
    register_error_handlers(app)
    app.include_router(billing.router)

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    return app
