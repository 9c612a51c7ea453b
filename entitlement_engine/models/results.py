"""Structured results returned to callers instead of raising."""

from typing import Optional

from pydantic import BaseModel

from entitlement_engine.core.errors import AppError
from entitlement_engine.models.billing import CryptoPaymentRequest


class OperationResult(BaseModel):
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls):
        return cls(success=True)

    @classmethod
    def from_error(cls, exc: AppError):
        return cls(success=False, error=exc.message, code=exc.code)


class CryptoPaymentResult(OperationResult):
    payment_request: Optional[CryptoPaymentRequest] = None


class RateLimitStatus(BaseModel):
    blocked: bool
    remaining_ms: Optional[int] = None


class LimitCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None


class CheckoutResult(OperationResult):
    url: Optional[str] = None
