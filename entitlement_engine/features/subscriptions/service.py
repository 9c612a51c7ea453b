"""
SubscriptionManager: the public entitlement API.

Coordinates:
- License key activation (codec + rate limiter)
- Stripe and crypto payment reconciliation (PaymentVerifier)
- The periodic re-verification pass
- Pure read helpers over the in-memory BillingState snapshot

States: community/active, beta/active, beta/cancel-pending.
- community -> beta on license activation or update_subscription(beta)
- beta -> cancel-pending on cancel_subscription()
- cancel-pending -> community once a verification pass sees the period ended
- beta -> community if the stored license key no longer validates

Every write goes through StateStore.update, which re-reads the persisted
record first, so several managers sharing one store do not lose updates.
Construct one manager per process and pass it to whoever needs it.
"""
from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Callable, Dict, List, Optional

from entitlement_engine.core.config import settings
from entitlement_engine.core.errors import AppError, ConfigurationError, RateLimitError, ValidationError
from entitlement_engine.core.locks import KeyLocks
from entitlement_engine.core.logging import log_event, mask_license_key
from entitlement_engine.core.store import KeyValueStore
from entitlement_engine.features.license_keys import codec
from entitlement_engine.features.payments.chains import chain_currency, chain_name, get_chain_info
from entitlement_engine.features.payments.config_store import ConfigStore, is_real_crypto_address
from entitlement_engine.features.payments.verifier import PaymentVerifier
from entitlement_engine.features.ratelimit.service import RateLimiter
from entitlement_engine.features.subscriptions.state_store import CheckoutBreadcrumbs, StateStore
from entitlement_engine.models.billing import (
    BillingState,
    ChainInfo,
    PaymentConfig,
    PaymentMethod,
    PaymentMethodType,
    PaymentSuccess,
    SubscriptionStatus,
)
from entitlement_engine.models.plan import (
    BETA_FEATURES,
    COMMUNITY_FEATURES,
    SUBSCRIPTION_PLANS,
    USAGE_LIMITS,
    PlanId,
    SubscriptionPlan,
    get_plan,
    legacy_pricing_for,
    legacy_tier_for,
    normalize_plan_id,
)
from entitlement_engine.models.results import CheckoutResult, CryptoPaymentResult, LimitCheck, OperationResult


DAY_MS = 24 * 60 * 60 * 1000
MINUTE_MS = 60 * 1000

_KEY_ERRORS = {
    "format": "Invalid license key format",
    "tier": "Invalid tier in license key",
    "charset": "License key verification failed",
    "checksum": "License key verification failed",
}


def epoch_ms() -> int:
    return int(time.time() * 1000)


class SubscriptionManager:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        verifier: Optional[PaymentVerifier] = None,
        config_store: Optional[ConfigStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], int] = epoch_ms,
        verification_interval_ms: Optional[int] = None,
        license_period_days: Optional[int] = None,
        subscription_period_days: Optional[int] = None,
    ):
        self.store = store
        self.clock = clock
        self.locks = KeyLocks()
        self.state_store = StateStore(store)
        self.breadcrumbs = CheckoutBreadcrumbs(store)
        self.config_store = config_store or ConfigStore(store)
        self.rate_limiter = rate_limiter or RateLimiter(store, clock=clock, locks=self.locks)
        self.verifier = verifier or PaymentVerifier(self.breadcrumbs, clock=clock)
        self.verification_interval_ms = (
            verification_interval_ms
            if verification_interval_ms is not None
            else settings.VERIFICATION_INTERVAL_HOURS * 60 * 60 * 1000
        )
        self.license_period_ms = (license_period_days or settings.LICENSE_PERIOD_DAYS) * DAY_MS
        self.subscription_period_ms = (subscription_period_days or settings.SUBSCRIPTION_PERIOD_DAYS) * DAY_MS

        self._state = BillingState()
        self._config = self.config_store.defaults
        self._initialized = False
        self._init_lock = asyncio.Lock()

    # Lifecycle ------------------------------------------------------------

    async def initialize(self) -> None:
        """Load config and state, reconcile a pending payment once, then verify if due."""
        async with self._init_lock:
            if self._initialized:
                return

            self._config = await self.config_store.load()
            self._state = await self.state_store.load()
            await self._reconcile_payment_success()
            await self.verify_subscription_if_needed()
            self._initialized = True

    async def refresh(self) -> BillingState:
        """
        Catch up with the store for a long-lived manager.

        Applies a payment breadcrumb recorded since the last look, runs the
        verification pass if it is due, and re-reads state written by other
        instances.
        """
        await self._reconcile_payment_success()
        await self.verify_subscription_if_needed()
        self._state = await self.state_store.load()
        return self.get_state()

    async def _reconcile_payment_success(self) -> None:
        success = await self.breadcrumbs.take_payment_success()
        if success is None:
            return
        await self._apply_payment_success(success)

    async def _apply_payment_success(self, success: PaymentSuccess) -> None:
        if success.type == PaymentMethodType.STRIPE:
            await self.update_subscription(
                PlanId.BETA,
                stripe_customer_id=success.customer_id,
                subscription_id=success.subscription_id,
                payment_method=PaymentMethod(type=PaymentMethodType.STRIPE),
            )
        else:
            await self.update_subscription(
                PlanId.BETA,
                crypto_tx_hash=success.tx_hash,
                payment_method=PaymentMethod(
                    type=PaymentMethodType.CRYPTO,
                    wallet_address=success.from_address,
                    chain_id=success.chain_id,
                ),
            )
        log_event(
            "info",
            "[billing] payment reconciled",
            event_type="payment.reconciled",
            extra={"type": success.type.value},
        )

    async def _write(self, mutator: Callable[[BillingState], Optional[BillingState]]) -> BillingState:
        self._state = await self.state_store.update(mutator)
        return self._state

    # License keys ---------------------------------------------------------

    async def activate_with_license_key(self, key: str) -> OperationResult:
        try:
            await self._activate_with_license_key(key)
        except AppError as exc:
            return OperationResult.from_error(exc)
        return OperationResult.ok()

    async def _activate_with_license_key(self, key: str) -> None:
        check = {}

        def attempt() -> bool:
            check["result"] = codec.inspect(key)
            return check["result"].valid

        status, ok = await self.rate_limiter.guarded_attempt(attempt)
        if status.blocked:
            minutes = max(1, math.ceil((status.remaining_ms or 0) / MINUTE_MS))
            log_event("warning", "[billing] license activation rate limited", event_type="license.rate_limited", error_code=RateLimitError.code)
            raise RateLimitError(
                f"Too many failed attempts. Try again in {minutes} minutes.",
                remaining_ms=status.remaining_ms or 0,
            )

        result = check["result"]
        if not ok:
            log_event(
                "warning",
                "[billing] license key rejected",
                event_type="license.rejected",
                error_code=ValidationError.code,
                extra={"key": mask_license_key(key), "reason": result.failure},
            )
            raise ValidationError(_KEY_ERRORS.get(result.failure, "License key verification failed"))

        now = self.clock()
        await self._write(
            lambda _current: BillingState(
                plan=PlanId.BETA,
                status=SubscriptionStatus.ACTIVE,
                license_key=key,
                current_period_end=now + self.license_period_ms,
                last_verified=now,
            )
        )
        log_event(
            "info",
            "[billing] license activated",
            event_type="license.activated",
            extra={"key": mask_license_key(key)},
        )

    def generate_test_key(self, tier: str = "beta") -> str:
        return codec.generate(tier)

    # Subscription lifecycle -----------------------------------------------

    async def update_subscription(
        self,
        plan: Any,
        *,
        stripe_customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        payment_method: Optional[PaymentMethod] = None,
        crypto_tx_hash: Optional[str] = None,
    ) -> BillingState:
        plan_id = normalize_plan_id(plan)
        now = self.clock()

        def mutate(current: BillingState) -> BillingState:
            return current.model_copy(
                update={
                    "plan": plan_id,
                    "status": SubscriptionStatus.ACTIVE,
                    "stripe_customer_id": stripe_customer_id,
                    "subscription_id": subscription_id,
                    "payment_method": payment_method,
                    "crypto_tx_hash": crypto_tx_hash,
                    "current_period_end": now + self.subscription_period_ms,
                    "last_verified": now,
                    "cancel_at_period_end": False,
                }
            )

        state = await self._write(mutate)
        log_event("info", "[billing] subscription updated", event_type="subscription.updated", extra={"plan": plan_id.value})
        return state

    async def cancel_subscription(self) -> BillingState:
        state = await self._write(lambda current: current.model_copy(update={"cancel_at_period_end": True}))
        log_event("info", "[billing] subscription set to cancel at period end", event_type="subscription.cancel_pending")
        return state

    async def downgrade_to_community(self, only_if: Optional[Callable[[BillingState], bool]] = None) -> BillingState:
        """
        Reset to the community default.

        only_if is re-evaluated against the freshly read record, so a renewal
        written by another instance in the meantime is not clobbered.
        """
        downgraded = {}

        def mutate(current: BillingState) -> Optional[BillingState]:
            if only_if is not None and not only_if(current):
                downgraded["done"] = False
                return None
            downgraded["done"] = True
            return BillingState()

        state = await self._write(mutate)
        if downgraded.get("done"):
            log_event("info", "[billing] downgraded to community", event_type="subscription.downgraded")
        return state

    async def reset(self) -> BillingState:
        """Erase all billing data: default state, no breadcrumbs, no rate limit."""
        await self.breadcrumbs.clear_all()
        await self.rate_limiter.clear_rate_limit()
        self._state = await self.state_store.reset()
        return self.get_state()

    # Verification ---------------------------------------------------------

    async def verify_subscription_if_needed(self) -> None:
        async with self.locks.hold("verification"):
            self._state = await self.state_store.load()
            if self._state.plan == PlanId.COMMUNITY:
                return

            now = self.clock()
            if self._state.current_period_end and now > self._state.current_period_end:
                if self._state.cancel_at_period_end:
                    await self.downgrade_to_community(
                        only_if=lambda current: current.cancel_at_period_end
                        and bool(current.current_period_end)
                        and now > current.current_period_end
                    )
                    return

            if self._state.last_verified and now - self._state.last_verified < self.verification_interval_ms:
                return

            await self._verify_subscription()

    async def verify_subscription(self) -> bool:
        async with self.locks.hold("verification"):
            self._state = await self.state_store.load()
            return await self._verify_subscription()

    async def _verify_subscription(self) -> bool:
        state = self._state
        if state.plan == PlanId.COMMUNITY:
            return True

        if state.license_key and not codec.validate(state.license_key):
            log_event(
                "warning",
                "[billing] stored license key no longer valid",
                event_type="verify.license.invalid",
                extra={"key": mask_license_key(state.license_key)},
            )
            stale_key = state.license_key
            await self.downgrade_to_community(only_if=lambda current: current.license_key == stale_key)
            return False

        if state.subscription_id and self._config.stripe_publishable_key:
            if not await self.verifier.verify_stripe_subscription(state.subscription_id):
                log_event("warning", "[billing] stripe subscription verification failed", event_type="verify.stripe.failed")

        if state.crypto_tx_hash:
            chain_id = state.payment_method.chain_id if state.payment_method else None
            if not await self.verifier.verify_crypto_payment(
                state.crypto_tx_hash, chain_id, self._config.etherscan_api_key
            ):
                log_event("warning", "[billing] crypto payment verification pending", event_type="verify.crypto.pending")

        now = self.clock()
        await self._write(lambda current: current.model_copy(update={"last_verified": now}))
        return True

    # Payments -------------------------------------------------------------

    async def configure_payment(self, partial: Dict[str, Any]) -> OperationResult:
        try:
            self._config = await self.config_store.configure(partial)
        except ConfigurationError as exc:
            return OperationResult.from_error(exc)
        return OperationResult.ok()

    async def open_checkout(self, plan: Any = PlanId.BETA) -> CheckoutResult:
        try:
            plan_id = normalize_plan_id(plan)
        except ValueError:
            plan_id = None
        if plan_id != PlanId.BETA:
            return CheckoutResult(success=False, error="Only Beta plan is available for purchase", code=ValidationError.code)
        if self._config.stripe_payment_link_beta:
            return await self.open_stripe_checkout()
        return CheckoutResult(success=False, error="No payment method configured", code=ConfigurationError.code)

    async def open_stripe_checkout(self) -> CheckoutResult:
        try:
            url = await self.verifier.open_stripe_checkout(self._config)
        except AppError as exc:
            return CheckoutResult.from_error(exc)
        return CheckoutResult(success=True, url=url)

    async def record_stripe_success(
        self,
        customer_id: Optional[str],
        subscription_id: Optional[str],
        client_reference_id: Optional[str] = None,
    ) -> OperationResult:
        """Entry point for the checkout redirect callback. Reconciled on the next refresh() or initialize()."""
        try:
            await self.verifier.record_stripe_success(customer_id, subscription_id, client_reference_id)
        except AppError as exc:
            return OperationResult.from_error(exc)
        return OperationResult.ok()

    async def initiate_crypto_payment(self, chain_id: int = 1) -> CryptoPaymentResult:
        try:
            request = await self.verifier.initiate_crypto_payment(self._config, chain_id)
        except AppError as exc:
            return CryptoPaymentResult.from_error(exc)
        return CryptoPaymentResult(success=True, payment_request=request)

    async def confirm_crypto_payment(self, tx_hash: str, from_address: str, chain_id: int) -> OperationResult:
        try:
            success = await self.verifier.confirm_crypto_payment(tx_hash, from_address, chain_id)
        except AppError as exc:
            return OperationResult.from_error(exc)

        # Fail-open: access is granted before the transaction is mined. The
        # breadcrumb only has to outlive this write, so consume it here.
        await self._apply_payment_success(success)
        await self.breadcrumbs.take_payment_success()
        return OperationResult.ok()

    def get_payment_config(self) -> PaymentConfig:
        return self._config.model_copy(deep=True)

    def is_payment_configured(self) -> bool:
        return bool(
            self._config.stripe_payment_link_beta
            or is_real_crypto_address(self._config.crypto_recipient_address)
        )

    def get_stripe_checkout_url(self) -> Optional[str]:
        return self._config.stripe_payment_link_beta or None

    def get_chain_info(self, chain_id: int) -> Optional[ChainInfo]:
        return get_chain_info(chain_id)

    def get_supported_chains(self) -> List[Dict[str, Any]]:
        return [
            {"chain_id": chain_id, "name": chain_name(chain_id), "currency": chain_currency(chain_id)}
            for chain_id in self._config.supported_chains
        ]

    # Read helpers (no I/O) ------------------------------------------------

    def get_state(self) -> BillingState:
        return self._state.model_copy(deep=True)

    def get_plan(self) -> PlanId:
        return self._state.plan

    def get_tier(self) -> PlanId:
        return self._state.plan

    def get_tier_mapping(self) -> str:
        return legacy_tier_for(self._state.plan)

    def get_legacy_pricing(self) -> Dict[str, Any]:
        return legacy_pricing_for(self._state.plan)

    def is_active(self) -> bool:
        return self._state.status == SubscriptionStatus.ACTIVE

    def is_beta(self) -> bool:
        return self._state.plan == PlanId.BETA and self.is_active()

    def get_plan_details(self, plan_id: Any = None) -> Optional[SubscriptionPlan]:
        return get_plan(plan_id if plan_id is not None else self._state.plan)

    def get_all_plans(self) -> List[SubscriptionPlan]:
        return list(SUBSCRIPTION_PLANS)

    def has_watermark(self) -> bool:
        plan = get_plan(self._state.plan)
        return plan.watermark if plan else True

    def get_workflow_limit(self) -> int:
        plan = get_plan(self._state.plan)
        return plan.workflow_limit if plan else 3

    def is_within_workflow_limit(self, current_count: int) -> bool:
        limit = self.get_workflow_limit()
        return limit == -1 or current_count < limit

    def get_usage_limit(self) -> Dict[str, int]:
        return dict(USAGE_LIMITS[self._state.plan])

    def is_within_limits(self, actions: int, sessions: int) -> LimitCheck:
        limits = self.get_usage_limit()
        if limits["actions"] == -1:
            return LimitCheck(allowed=True)
        if actions >= limits["actions"]:
            return LimitCheck(
                allowed=False,
                reason=f"Daily action limit ({limits['actions']}) reached. Upgrade to Beta for unlimited access.",
            )
        if sessions >= limits["sessions"]:
            return LimitCheck(
                allowed=False,
                reason=f"Session limit ({limits['sessions']}) reached. Upgrade to Beta for unlimited access.",
            )
        return LimitCheck(allowed=True)

    def get_usage_percentage(self, current_usage: int) -> int:
        limits = self.get_usage_limit()
        if limits["actions"] == -1:
            return 0
        return min(100, round(current_usage / limits["actions"] * 100))

    def is_feature_allowed(self, feature: str) -> bool:
        if self._state.plan == PlanId.BETA:
            return feature in BETA_FEATURES
        return feature in COMMUNITY_FEATURES

    def get_days_remaining(self) -> int:
        if not self._state.current_period_end:
            return -1
        remaining = self._state.current_period_end - self.clock()
        return max(0, math.ceil(remaining / DAY_MS))
