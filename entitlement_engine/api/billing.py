"""
Billing API routes.

Thin HTTP surface over SubscriptionManager for hosts that run the engine as a
local service:
- GET  /billing/status: Current entitlement
- GET  /billing/plans: Plan catalogue
- POST /billing/license: Activate a license key
- POST /billing/cancel: Cancel at period end
- POST /billing/checkout: Open hosted Stripe checkout
- POST /billing/stripe/return: Redirect callback after Stripe checkout
- POST /billing/crypto/initiate: Build a crypto payment request
- POST /billing/crypto/confirm: Submit a transaction hash
- PUT  /billing/config: Update payment configuration
- POST /billing/verify: Force a verification pass
"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from entitlement_engine.core.errors import (
    AppError,
    ConfigurationError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from entitlement_engine.features.subscriptions.service import SubscriptionManager
from entitlement_engine.models.billing import CryptoPaymentRequest
from entitlement_engine.models.plan import SubscriptionPlan
from entitlement_engine.models.results import OperationResult


router = APIRouter(prefix="/billing", tags=["billing"])

_ERRORS_BY_CODE = {
    ValidationError.code: ValidationError,
    ConfigurationError.code: ConfigurationError,
    RateLimitError.code: RateLimitError,
    NetworkError.code: NetworkError,
}


async def get_manager(request: Request) -> SubscriptionManager:
    manager: SubscriptionManager = request.app.state.subscription_manager
    await manager.initialize()
    await manager.refresh()
    return manager


def _raise_for_result(result: OperationResult) -> None:
    if result.success:
        return
    error_cls = _ERRORS_BY_CODE.get(result.code, AppError)
    raise error_cls(result.error or "Billing operation failed")


class LicenseRequest(BaseModel):
    key: str


class CheckoutRequest(BaseModel):
    plan: str = "beta"


class CheckoutResponse(BaseModel):
    url: Optional[str]


class StripeReturnRequest(BaseModel):
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    client_reference_id: Optional[str] = None


class CryptoInitiateRequest(BaseModel):
    chain_id: int = 1


class CryptoConfirmRequest(BaseModel):
    tx_hash: str
    from_address: str
    chain_id: int


class BillingStatusResponse(BaseModel):
    """Entitlement as seen by this instance."""
    plan: str
    status: str
    legacy_tier: str
    watermark: bool
    workflow_limit: int
    cancel_at_period_end: bool
    current_period_end: Optional[int]  # epoch ms
    days_remaining: int
    payment_configured: bool


class SuccessResponse(BaseModel):
    success: bool = True


class VerifyResponse(BaseModel):
    valid: bool
    plan: str


def _status(manager: SubscriptionManager) -> BillingStatusResponse:
    state = manager.get_state()
    return BillingStatusResponse(
        plan=state.plan.value,
        status=state.status.value,
        legacy_tier=manager.get_tier_mapping(),
        watermark=manager.has_watermark(),
        workflow_limit=manager.get_workflow_limit(),
        cancel_at_period_end=state.cancel_at_period_end,
        current_period_end=state.current_period_end,
        days_remaining=manager.get_days_remaining(),
        payment_configured=manager.is_payment_configured(),
    )


@router.get("/status", response_model=BillingStatusResponse)
async def billing_status(manager: SubscriptionManager = Depends(get_manager)):
    return _status(manager)


@router.get("/plans", response_model=List[SubscriptionPlan])
async def list_plans(manager: SubscriptionManager = Depends(get_manager)):
    return manager.get_all_plans()


@router.post("/license", response_model=BillingStatusResponse)
async def activate_license(body: LicenseRequest, manager: SubscriptionManager = Depends(get_manager)):
    """
    Activate a license key.

    Errors:
        400: Malformed key or failed checksum
        429: Too many failed attempts in the last hour
    """
    _raise_for_result(await manager.activate_with_license_key(body.key))
    return _status(manager)


@router.post("/cancel", response_model=BillingStatusResponse)
async def cancel(manager: SubscriptionManager = Depends(get_manager)):
    await manager.cancel_subscription()
    return _status(manager)


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(body: CheckoutRequest, manager: SubscriptionManager = Depends(get_manager)):
    result = await manager.open_checkout(body.plan)
    _raise_for_result(result)
    return {"url": result.url}


@router.post("/stripe/return", response_model=SuccessResponse)
async def stripe_return(body: StripeReturnRequest, manager: SubscriptionManager = Depends(get_manager)):
    """
    Record a completed Stripe checkout.

    The breadcrumb is reconciled into the billing state by the next
    request served by any manager sharing the store.
    """
    _raise_for_result(
        await manager.record_stripe_success(body.customer_id, body.subscription_id, body.client_reference_id)
    )
    return {"success": True}


@router.post("/crypto/initiate", response_model=CryptoPaymentRequest)
async def crypto_initiate(body: CryptoInitiateRequest, manager: SubscriptionManager = Depends(get_manager)):
    result = await manager.initiate_crypto_payment(body.chain_id)
    _raise_for_result(result)
    return result.payment_request


@router.post("/crypto/confirm", response_model=BillingStatusResponse)
async def crypto_confirm(body: CryptoConfirmRequest, manager: SubscriptionManager = Depends(get_manager)):
    _raise_for_result(await manager.confirm_crypto_payment(body.tx_hash, body.from_address, body.chain_id))
    return _status(manager)


@router.put("/config", response_model=SuccessResponse)
async def update_config(body: Dict[str, Any], manager: SubscriptionManager = Depends(get_manager)):
    _raise_for_result(await manager.configure_payment(body))
    return {"success": True}


@router.post("/verify", response_model=VerifyResponse)
async def verify(manager: SubscriptionManager = Depends(get_manager)):
    valid = await manager.verify_subscription()
    return {"valid": valid, "plan": manager.get_plan().value}
