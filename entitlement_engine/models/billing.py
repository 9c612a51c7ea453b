"""
Billing records persisted through the key/value store.

Every record is stored as a camelCase JSON dict. Unknown keys are ignored and
missing keys fall back to defaults, so older and newer schemas load cleanly.
"""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from entitlement_engine.models.plan import PlanId, normalize_plan_id


class StoredRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @classmethod
    def from_store(cls, raw: Optional[Any]):
        if not raw:
            return cls()
        return cls.model_validate(raw)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class PaymentMethodType(str, Enum):
    STRIPE = "stripe"
    CRYPTO = "crypto"


class PaymentMethod(StoredRecord):
    type: PaymentMethodType
    last4: Optional[str] = None
    wallet_address: Optional[str] = None
    chain_id: Optional[int] = None


class BillingState(StoredRecord):
    """The entitlement record. Only SubscriptionManager mutates it."""

    plan: PlanId = PlanId.COMMUNITY
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    payment_method: Optional[PaymentMethod] = None
    stripe_customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    current_period_end: Optional[int] = None  # epoch ms
    cancel_at_period_end: bool = False
    last_verified: Optional[int] = None  # epoch ms
    license_key: Optional[str] = None
    crypto_tx_hash: Optional[str] = None

    @field_validator("plan", mode="before")
    @classmethod
    def _legacy_plan(cls, value):
        return normalize_plan_id(value) if value is not None else PlanId.COMMUNITY

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def _null_flag(cls, value):
        return bool(value) if value is not None else False


class PaymentConfig(StoredRecord):
    stripe_publishable_key: str = ""
    stripe_payment_link_beta: str = ""
    crypto_recipient_address: str = ""
    supported_chains: List[int] = []
    beta_price_usd: float = 5.0
    etherscan_api_key: Optional[str] = None


class RateLimitRecord(StoredRecord):
    attempts: int = 0
    first_attempt_time: int = 0  # epoch ms


class PendingCheckout(StoredRecord):
    plan: PlanId = PlanId.BETA
    type: PaymentMethodType
    client_reference_id: Optional[str] = None
    chain_id: Optional[int] = None
    timestamp: int


class PaymentSuccess(StoredRecord):
    type: PaymentMethodType
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    client_reference_id: Optional[str] = None
    tx_hash: Optional[str] = None
    from_address: Optional[str] = None
    chain_id: Optional[int] = None
    timestamp: int


class CryptoPaymentRequest(StoredRecord):
    to: str
    amount: str  # native currency, 8 decimal places
    chain_id: int
    chain_name: str
    currency: str
    usd_amount: float


class ChainInfo(StoredRecord):
    chain_id: int
    name: str
    currency: str
    explorer: str
    api_url: str
