"""Admin API routes - credit ledger and pricing management"""
import logging
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from app.core.security import require_auth
from app.db.session import get_db
from app.models.credit_transaction import CreditTransaction, CreditTransactionType, INBOUND_TYPES
from app.models.user import User
from app.schemas.admin import (
    AdjustCreditsRequest,
    AllocateCreditsRequest,
    ReverseTransactionRequest,
    ModelPricingRequest,
    SubscriptionCreditsRequest,
)
from app.services.credit_service import (
    admin_adjust_credits,
    allocate_credits,
    allocate_subscription_credits,
    expire_credits,
    get_credit_balance,
    get_statistics,
    get_transaction_history,
    reverse_transaction,
    serialize_transaction,
)
from app.services.pricing_service import (
    deactivate_model_pricing,
    list_model_pricing,
    pricing_from_row,
    upsert_model_pricing,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)


def require_admin(user_id: int = Depends(require_auth), db: Session = Depends(get_db)) -> User:
    """Dependency: Require admin role"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_admin:
        raise HTTPException(403, "Admin access required")
    return user


def _get_user_or_404(user_id: int, db: Session) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(404, "User not found")
    return user


@router.post("/credits/adjust")
def adjust_credits(
    request_data: AdjustCreditsRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Add or remove credits manually"""
    _get_user_or_404(request_data.user_id, db)
    transaction = admin_adjust_credits(
        request_data.user_id,
        request_data.amount,
        request_data.reason,
        admin_user.id,
        db,
    )
    logger.info(f"Admin {admin_user.id} adjusted credits for user {request_data.user_id} by {request_data.amount}")
    return {
        "transaction": serialize_transaction(transaction),
        "balance": get_credit_balance(request_data.user_id, db),
    }


@router.post("/credits/allocate")
def allocate(
    request_data: AllocateCreditsRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Allocate credits (subscription, top-up, promotional, referral, ...)"""
    _get_user_or_404(request_data.user_id, db)
    if request_data.transaction_type not in INBOUND_TYPES:
        raise HTTPException(400, "Transaction type does not add credits")

    transaction = allocate_credits(
        user_id=request_data.user_id,
        amount=request_data.amount,
        transaction_type=request_data.transaction_type,
        description=request_data.description,
        reference_id=request_data.reference_id,
        reference_type=request_data.reference_type,
        is_expiring=request_data.is_expiring,
        expires_at=request_data.expires_at,
        metadata={"admin_user_id": admin_user.id},
        idempotency_key=request_data.idempotency_key,
        db=db,
    )
    return {
        "transaction": serialize_transaction(transaction),
        "balance": get_credit_balance(request_data.user_id, db),
    }


@router.post("/credits/subscription")
def allocate_subscription(
    request_data: SubscriptionCreditsRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Grant a subscription period's credits; a renewal expires the previous period's first"""
    _get_user_or_404(request_data.user_id, db)
    transaction = allocate_subscription_credits(
        user_id=request_data.user_id,
        amount=request_data.amount,
        subscription_id=request_data.subscription_id,
        period_end=request_data.period_end,
        is_renewal=request_data.is_renewal,
        db=db,
    )
    logger.info(
        f"Admin {admin_user.id} allocated {request_data.amount} subscription credits to user {request_data.user_id}"
    )
    return {
        "transaction": serialize_transaction(transaction),
        "balance": get_credit_balance(request_data.user_id, db),
    }


@router.get("/users/{user_id}/credits")
def get_user_credits(
    user_id: int,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Get a user's credit balance"""
    user = _get_user_or_404(user_id, db)
    return {"user_id": user.id, "email": user.email, "credits": get_credit_balance(user_id, db)}


@router.get("/users/{user_id}/transactions")
def get_user_transactions(
    user_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    transaction_type: Optional[CreditTransactionType] = None,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Get a user's credit ledger"""
    _get_user_or_404(user_id, db)
    return get_transaction_history(user_id, db, limit=limit, offset=offset, transaction_type=transaction_type)


@router.post("/transactions/{transaction_id}/reverse")
def reverse(
    transaction_id: int,
    request_data: Optional[ReverseTransactionRequest] = None,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Reverse a completed transaction"""
    original = db.query(CreditTransaction).filter(CreditTransaction.id == transaction_id).first()
    if not original:
        raise HTTPException(404, "Transaction not found")

    reversal = reverse_transaction(
        transaction_id,
        description=request_data.description if request_data else None,
        db=db,
        admin_user_id=admin_user.id,
    )
    logger.info(f"Admin {admin_user.id} reversed transaction {transaction_id}")
    return {
        "reversal": serialize_transaction(reversal),
        "balance": get_credit_balance(reversal.user_id, db),
    }


@router.post("/users/{user_id}/expire-credits")
def expire_user_credits(
    user_id: int,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Sweep a user's expiring credits now if their expiry has passed"""
    _get_user_or_404(user_id, db)
    transaction = expire_credits(user_id, db)
    return {
        "expired": serialize_transaction(transaction) if transaction else None,
        "balance": get_credit_balance(user_id, db),
    }


@router.get("/statistics")
def statistics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Platform-wide credit statistics"""
    return get_statistics(db, start_date, end_date)


@router.get("/pricing")
def get_pricing(
    include_inactive: bool = False,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """List model pricing (configured rows and built-in defaults)"""
    return {"pricing": list_model_pricing(db, include_inactive=include_inactive)}


@router.put("/pricing/{model_name}")
def set_pricing(
    model_name: str,
    request_data: ModelPricingRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Create or update pricing for a model"""
    try:
        row = upsert_model_pricing(
            model_name,
            request_data.input_cost_per_1k_tokens,
            request_data.output_cost_per_1k_tokens,
            minimum_credits=request_data.minimum_credits,
            model_multiplier=request_data.model_multiplier,
            db=db,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    logger.info(f"Admin {admin_user.id} updated pricing for {model_name}")
    return {"model_name": row.model_name, "is_active": row.is_active, **pricing_from_row(row).to_dict()}


@router.delete("/pricing/{model_name}")
def delete_pricing(
    model_name: str,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Deactivate configured pricing; the model falls back to built-in pricing"""
    if not deactivate_model_pricing(model_name, db):
        raise HTTPException(404, "No active pricing configured for this model")
    logger.info(f"Admin {admin_user.id} deactivated pricing for {model_name}")
    return {"message": f"Pricing for {model_name} deactivated"}
