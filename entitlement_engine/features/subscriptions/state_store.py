"""
BillingState persistence and the checkout breadcrumbs.

Breadcrumbs are short-lived records that tie an external event (a Stripe
redirect, an on-chain transfer) back to the plan it was for. take_payment_success()
reads and deletes in one atomic update so only one manager instance reconciles
a given breadcrumb.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from entitlement_engine.core.store import DELETE, KEEP, KeyValueStore
from entitlement_engine.models.billing import BillingState, PaymentSuccess, PendingCheckout


logger = logging.getLogger("entitlements")

STATE_KEY = "billing_subscription"
PENDING_CHECKOUT_KEY = "billing_pending_checkout"
PAYMENT_SUCCESS_KEY = "billing_payment_success"


def _load_state(raw) -> BillingState:
    try:
        return BillingState.from_store(raw)
    except PydanticValidationError:
        logger.warning("[billing] stored billing state unreadable, using default")
        return BillingState()


class StateStore:
    def __init__(self, store: KeyValueStore, *, key: str = STATE_KEY):
        self.store = store
        self.key = key

    async def load(self) -> BillingState:
        data = await self.store.get([self.key])
        return _load_state(data.get(self.key))

    async def save(self, state: BillingState) -> BillingState:
        await self.store.set({self.key: state.to_store()})
        return state

    async def update(self, mutator: Callable[[BillingState], Optional[BillingState]]) -> BillingState:
        """
        Apply mutator to the latest persisted state and store the result.

        mutator returns the new state, or None to leave the record untouched.
        """
        def mutate(raw):
            new_state = mutator(_load_state(raw))
            if new_state is None:
                return KEEP
            return new_state.to_store()

        stored = await self.store.update(self.key, mutate)
        return _load_state(stored)

    async def reset(self) -> BillingState:
        return await self.save(BillingState())


class CheckoutBreadcrumbs:
    def __init__(self, store: KeyValueStore):
        self.store = store

    async def save_pending_checkout(self, pending: PendingCheckout) -> None:
        await self.store.set({PENDING_CHECKOUT_KEY: pending.to_store()})

    async def load_pending_checkout(self) -> Optional[PendingCheckout]:
        data = await self.store.get([PENDING_CHECKOUT_KEY])
        raw = data.get(PENDING_CHECKOUT_KEY)
        return PendingCheckout.model_validate(raw) if raw else None

    async def clear_pending_checkout(self) -> None:
        await self.store.remove([PENDING_CHECKOUT_KEY])

    async def record_payment_success(self, success: PaymentSuccess) -> None:
        await self.store.set({PAYMENT_SUCCESS_KEY: success.to_store()})

    async def take_payment_success(self) -> Optional[PaymentSuccess]:
        taken = {}

        def mutate(raw):
            taken["raw"] = raw
            return DELETE if raw else KEEP

        await self.store.update(PAYMENT_SUCCESS_KEY, mutate)
        raw = taken.get("raw")
        if not raw:
            return None
        try:
            return PaymentSuccess.model_validate(raw)
        except PydanticValidationError:
            logger.warning("[billing] discarded unreadable payment success breadcrumb")
            return None

    async def clear_all(self) -> None:
        await self.store.remove([PENDING_CHECKOUT_KEY, PAYMENT_SUCCESS_KEY])
