"""Helpers shared by test modules"""
from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.credit_transaction import CreditTransactionType
from app.services.credit_service import allocate_credits


def fund(user_id: int, amount, db: Session, **kwargs):
    """Allocate purchased credits to a user"""
    return allocate_credits(
        user_id=user_id,
        amount=Decimal(str(amount)),
        transaction_type=kwargs.pop("transaction_type", CreditTransactionType.TOP_UP_PURCHASE),
        description=kwargs.pop("description", "Test top-up"),
        db=db,
        **kwargs
    )
