"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.user import User
from app.models.user_credits import UserCredits
from app.models.credit_transaction import (
    CreditTransaction,
    CreditTransactionType,
    CreditTransactionStatus,
    AI_USAGE_TYPES,
    INBOUND_TYPES,
)
from app.models.ai_model_pricing import AiModelPricing

# Export all for convenience
__all__ = [
    "Base", "User", "UserCredits", "CreditTransaction", "CreditTransactionType",
    "CreditTransactionStatus", "AI_USAGE_TYPES", "INBOUND_TYPES", "AiModelPricing"
]
