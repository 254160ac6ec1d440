"""Credit API routes"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from app.core.security import require_auth
from app.db.session import get_db
from app.models.credit_transaction import CreditTransactionType
from app.schemas.credits import UpdateThresholdRequest
from app.services.credit_service import (
    get_credit_balance,
    get_transaction_history,
    get_usage_summary,
    get_ai_usage_breakdown,
    get_daily_usage,
    update_low_credit_threshold,
)

router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("/balance")
def get_balance(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Get current credit balance"""
    return get_credit_balance(user_id, db)


@router.get("/transactions")
def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    transaction_type: Optional[CreditTransactionType] = None,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Get credit transaction history"""
    return get_transaction_history(user_id, db, limit=limit, offset=offset, transaction_type=transaction_type)


@router.get("/usage-summary")
def usage_summary(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Credits added and spent over a period (default: last 30 days)"""
    return get_usage_summary(user_id, db, start_date, end_date)


@router.get("/ai-usage")
def ai_usage(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Credits spent per AI operation type"""
    return get_ai_usage_breakdown(user_id, db, start_date, end_date)


@router.get("/daily-usage")
def daily_usage(
    days: int = Query(30, ge=1, le=365),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Credits spent per day"""
    return {"days": days, "usage": get_daily_usage(user_id, db, days)}


@router.patch("/threshold")
def update_threshold(
    request_data: UpdateThresholdRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Set the low credit notification threshold"""
    return update_low_credit_threshold(user_id, request_data.threshold, db)
