"""
entitlement_engine/models/plan.py

Plan catalogue.

Two plans exist: community (free) and beta (paid). The legacy tier names
free/premium/unlimited still appear in stored data and license keys and
collapse onto these two.
"""

from enum import Enum
from typing import Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict


class PlanId(str, Enum):
    COMMUNITY = "community"
    BETA = "beta"


LEGACY_PLAN_ALIASES: Dict[str, PlanId] = {
    "free": PlanId.COMMUNITY,
    "premium": PlanId.BETA,
    "unlimited": PlanId.BETA,
}


def normalize_plan_id(value: Union[str, PlanId]) -> PlanId:
    """Map a plan id or legacy tier name onto PlanId. Raises ValueError if unknown."""
    if isinstance(value, PlanId):
        return value
    text = str(value).strip().lower()
    if text in LEGACY_PLAN_ALIASES:
        return LEGACY_PLAN_ALIASES[text]
    return PlanId(text)


def legacy_tier_for(plan: PlanId) -> str:
    return "premium" if plan == PlanId.BETA else "free"


class SubscriptionPlan(BaseModel):
    """
    A purchasable capability tier.

    workflow_limit of -1 means unlimited.
    """
    model_config = ConfigDict(frozen=True)

    id: PlanId
    name: str
    price: float
    features: List[str]
    watermark: bool
    workflow_limit: int


SUBSCRIPTION_PLANS: List[SubscriptionPlan] = [
    SubscriptionPlan(
        id=PlanId.COMMUNITY,
        name="Community",
        price=0,
        features=[
            "Full AI automation features",
            '"Powered by HyperAgent" watermark on exports',
            "3 saved workflows",
            "Public community support",
            "Standard AI processing",
        ],
        watermark=True,
        workflow_limit=3,
    ),
    SubscriptionPlan(
        id=PlanId.BETA,
        name="Beta",
        price=5,
        features=[
            "Everything in Community",
            "No watermark on exports",
            "Unlimited saved workflows",
            "Priority AI processing",
            "Early access to new features",
            "Direct email support",
        ],
        watermark=False,
        workflow_limit=-1,
    ),
]

# Pricing under the legacy tier names, keyed like get_tier_mapping().
PRICING_PLANS = {
    "free": {"name": "Free", "price": 0, "actions_per_month": 500},
    "premium": {"name": "Premium", "price": 5, "actions_per_month": -1},
    "unlimited": {"name": "Unlimited", "price": 49, "actions_per_month": -1},
}

COMMUNITY_FEATURES = ["automation", "extract", "navigate", "forms", "vision"]
BETA_FEATURES = COMMUNITY_FEATURES + ["priority_ai", "early_access", "no_watermark", "unlimited_workflows"]

# Daily usage caps; -1 = unlimited
USAGE_LIMITS = {
    PlanId.COMMUNITY: {"actions": 500, "sessions": 10},
    PlanId.BETA: {"actions": -1, "sessions": -1},
}


def get_plan(plan_id: Union[str, PlanId]) -> Optional[SubscriptionPlan]:
    try:
        wanted = normalize_plan_id(plan_id)
    except ValueError:
        return None
    for plan in SUBSCRIPTION_PLANS:
        if plan.id == wanted:
            return plan
    return None


def legacy_pricing_for(tier: Union[str, PlanId]) -> Dict[str, object]:
    """Legacy pricing row for a tier name or plan id. Raises ValueError if unknown."""
    name = legacy_tier_for(tier) if isinstance(tier, PlanId) else str(tier).strip().lower()
    if name not in PRICING_PLANS:
        raise ValueError(f"Unknown legacy tier: {tier}")
    return {"tier": name, **PRICING_PLANS[name]}
