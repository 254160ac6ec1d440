"""Pydantic schemas for admin operations"""
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional

from app.models.credit_transaction import CreditTransactionType


class AdjustCreditsRequest(BaseModel):
    """Signed manual adjustment"""
    user_id: int
    amount: Decimal
    reason: str = Field(..., min_length=1, max_length=500)


class AllocateCreditsRequest(BaseModel):
    user_id: int
    amount: Decimal = Field(..., gt=0)
    transaction_type: CreditTransactionType = CreditTransactionType.PROMOTIONAL
    description: str = Field(..., min_length=1, max_length=500)
    is_expiring: bool = False
    expires_at: Optional[datetime] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=255)


class SubscriptionCreditsRequest(BaseModel):
    """Credits for one subscription period, expiring at period_end"""
    user_id: int
    amount: Decimal = Field(..., gt=0)
    subscription_id: str = Field(..., min_length=1, max_length=100)
    period_end: datetime
    is_renewal: bool = False


class ReverseTransactionRequest(BaseModel):
    description: Optional[str] = Field(None, max_length=500)


class ModelPricingRequest(BaseModel):
    """Credits per 1000 tokens for a model"""
    input_cost_per_1k_tokens: Decimal = Field(..., ge=0)
    output_cost_per_1k_tokens: Decimal = Field(..., ge=0)
    minimum_credits: Decimal = Field(Decimal("1"), ge=0)
    model_multiplier: Decimal = Field(Decimal("1"), gt=0)
