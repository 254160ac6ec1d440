"""Credit service - balance store and ledger logic

Every balance change is a guarded UPDATE on ``user_credits`` plus an
appended ``credit_transactions`` row, committed together. If either write
fails, the session is rolled back and neither is kept.
"""
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple
import logging

from sqlalchemy import update, case, func, literal, Numeric
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import CreditOperationError, DuplicateTransactionError, InsufficientCreditsError
from app.core.metrics import credits_consumed_counter, credits_allocated_counter, credits_expired_counter
from app.models.credit_transaction import (
    AI_USAGE_TYPES,
    CreditTransaction,
    CreditTransactionStatus,
    CreditTransactionType,
)
from app.models.user_credits import UserCredits
from app.services.pricing_service import TokenUsage, TokenCostBreakdown, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class ConsumptionResult:
    """Outcome of a debit; ``duplicate`` marks a replay of an already recorded event"""
    transaction: CreditTransaction
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    duplicate: bool = False
    low_credit_triggered: bool = False
    low_credit_threshold: Optional[int] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _amount_param(amount: Decimal):
    return literal(amount, Numeric(12, 2))


def build_idempotency_key(
    user_id: int,
    transaction_type: str,
    reference_type: Optional[str],
    reference_id: Optional[str]
) -> Optional[str]:
    """Key identifying one logical consumption event (None when there is no reference)"""
    if not reference_id:
        return None
    return f"{user_id}:{_type_value(transaction_type)}:{reference_type or ''}:{reference_id}"


def _type_value(transaction_type) -> str:
    return transaction_type.value if isinstance(transaction_type, CreditTransactionType) else str(transaction_type)


def _as_type(transaction_type) -> CreditTransactionType:
    return transaction_type if isinstance(transaction_type, CreditTransactionType) else CreditTransactionType(transaction_type)


def _find_by_idempotency_key(idempotency_key: str, db: Session) -> Optional[CreditTransaction]:
    return db.query(CreditTransaction).filter(CreditTransaction.idempotency_key == idempotency_key).first()


def find_recorded_consumption(
    user_id: int,
    transaction_type,
    reference_type: Optional[str],
    reference_id: Optional[str],
    db: Session
) -> Optional[CreditTransaction]:
    """The debit already recorded for this logical event, if any"""
    idempotency_key = build_idempotency_key(user_id, transaction_type, reference_type, reference_id)
    return _find_by_idempotency_key(idempotency_key, db) if idempotency_key else None


def _read_available(user_id: int, db: Session) -> Decimal:
    value = db.query(UserCredits.available_credits).filter(UserCredits.user_id == user_id).scalar()
    return to_decimal(value or 0)


# ---------------------------------------------------------------------------
# Balance store
# ---------------------------------------------------------------------------

def get_or_create_user_credits(user_id: int, db: Session) -> UserCredits:
    """Get or lazily create the credit balance row for a user"""
    credits = db.query(UserCredits).filter(UserCredits.user_id == user_id).first()

    if not credits:
        credits = UserCredits(
            user_id=user_id,
            available_credits=ZERO,
            total_allocated=ZERO,
            total_consumed=ZERO,
            expiring_credits=ZERO,
            purchased_credits=ZERO,
            low_credit_threshold=settings.DEFAULT_LOW_CREDIT_THRESHOLD,
            low_credit_notified=False,
        )
        db.add(credits)
        try:
            db.commit()
        except IntegrityError:
            # Another request created the row first
            db.rollback()
            credits = db.query(UserCredits).filter(UserCredits.user_id == user_id).first()
        else:
            db.refresh(credits)
            logger.info(f"Created credit balance for user {user_id}")

    return credits


def serialize_balance(credits: UserCredits) -> Dict[str, Any]:
    expires_at = _as_aware(credits.credits_expire_at)
    return {
        'available': float(credits.available_credits or 0),
        'expiring': float(credits.expiring_credits or 0),
        'purchased': float(credits.purchased_credits or 0),
        'total_consumed': float(credits.total_consumed or 0),
        'total_allocated': float(credits.total_allocated or 0),
        'expires_at': expires_at.isoformat() if expires_at else None,
        'is_low_on_credits': credits.is_low_on_credits(),
        'low_credit_threshold': credits.low_credit_threshold,
    }


def get_credit_balance(user_id: int, db: Session) -> Dict[str, Any]:
    """Current balance information for a user"""
    return serialize_balance(get_or_create_user_credits(user_id, db))


def get_available_credits(user_id: int, db: Session) -> Decimal:
    """Spendable balance without creating a balance row (0 when none exists)"""
    return _read_available(user_id, db)


def _apply_credit(
    user_id: int,
    amount: Decimal,
    db: Session,
    is_expiring: bool = False,
    expires_at: Optional[datetime] = None
) -> Tuple[Decimal, Decimal]:
    """Add credits to the balance row (caller commits). Returns (before, after)."""
    get_or_create_user_credits(user_id, db)
    param = _amount_param(amount)
    values = {
        'available_credits': UserCredits.available_credits + param,
        'total_allocated': UserCredits.total_allocated + param,
        # Re-arm the one-time low balance notification once back above the threshold
        'low_credit_notified': case(
            (UserCredits.available_credits + param > UserCredits.low_credit_threshold, False),
            else_=UserCredits.low_credit_notified
        ),
        'updated_at': _utcnow(),
    }
    if is_expiring:
        values['expiring_credits'] = UserCredits.expiring_credits + param
    else:
        values['purchased_credits'] = UserCredits.purchased_credits + param
    if expires_at is not None:
        values['credits_expire_at'] = expires_at

    db.execute(
        update(UserCredits)
        .where(UserCredits.user_id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    balance_after = _read_available(user_id, db)
    return balance_after - amount, balance_after


def _apply_debit(user_id: int, amount: Decimal, db: Session) -> Optional[Tuple[Decimal, Decimal]]:
    """Conditionally remove credits (caller commits).

    Expiring credits are drawn before purchased ones. Returns (before, after),
    or None when the balance cannot cover the amount and nothing changed.
    """
    param = _amount_param(amount)
    covered_by_expiring = UserCredits.expiring_credits >= param
    result = db.execute(
        update(UserCredits)
        .where(
            UserCredits.user_id == user_id,
            UserCredits.available_credits >= param
        )
        .values(
            available_credits=UserCredits.available_credits - param,
            total_consumed=UserCredits.total_consumed + param,
            expiring_credits=case(
                (covered_by_expiring, UserCredits.expiring_credits - param),
                else_=ZERO
            ),
            purchased_credits=case(
                (covered_by_expiring, UserCredits.purchased_credits),
                else_=UserCredits.purchased_credits - (param - UserCredits.expiring_credits)
            ),
            updated_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None

    balance_after = _read_available(user_id, db)
    return balance_after + amount, balance_after


def _flag_low_credit(user_id: int, db: Session) -> bool:
    """Flip low_credit_notified once; True only for the debit that crossed the threshold"""
    result = db.execute(
        update(UserCredits)
        .where(
            UserCredits.user_id == user_id,
            UserCredits.low_credit_notified == False,  # noqa: E712
            UserCredits.available_credits <= UserCredits.low_credit_threshold
        )
        .values(low_credit_notified=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Ledger operations
# ---------------------------------------------------------------------------

def allocate_credits(
    user_id: int,
    amount,
    transaction_type: CreditTransactionType,
    description: str,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    is_expiring: bool = False,
    expires_at: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
    expire_existing: bool = False,
    db: Session = None
) -> CreditTransaction:
    """
    Add credits to a user's balance and record the allocation.

    Args:
        user_id: User ID
        amount: Credits to add (must be positive)
        transaction_type: Inbound transaction type (subscription_allocation, top_up_purchase, ...)
        description: Human readable description stored on the transaction
        reference_id: Optional id of the originating object (payment, subscription, ...)
        reference_type: Optional type of the originating object
        is_expiring: True for credits that are swept at ``expires_at``
        expires_at: Optional expiry for the balance's expiring credits
        metadata: Optional metadata to store with the transaction
        idempotency_key: Optional key making the allocation at-most-once
        expire_existing: Sweep the current expiring credits first, in the same commit
        db: Database session

    Returns:
        The created CreditTransaction

    Raises:
        CreditOperationError: amount is not positive
        DuplicateTransactionError: idempotency_key was already used
    """
    from app.db.session import SessionLocal

    amount = to_decimal(amount)
    transaction_type = _as_type(transaction_type)
    if amount <= 0:
        raise CreditOperationError("Allocation amount must be greater than zero", {"amount": amount})

    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        if idempotency_key:
            existing = _find_by_idempotency_key(idempotency_key, db)
            if existing:
                raise DuplicateTransactionError(idempotency_key, existing.id)

        swept = _sweep_expiring(user_id, db, _utcnow(), force=True) if expire_existing else None
        swept_amount = -to_decimal(swept.amount) if swept else ZERO

        balance_before, balance_after = _apply_credit(user_id, amount, db, is_expiring, expires_at)

        transaction = CreditTransaction(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            status=CreditTransactionStatus.COMPLETED,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
            expires_at=expires_at if is_expiring else None,
            transaction_metadata={**(metadata or {}), 'is_expiring': is_expiring},
            idempotency_key=idempotency_key,
        )
        db.add(transaction)
        db.commit()
        db.refresh(transaction)

        if swept:
            credits_expired_counter.inc(float(swept_amount))
            logger.info(f"Expired {swept_amount} credits for user {user_id} before allocating")
        credits_allocated_counter.labels(transaction_type=_type_value(transaction_type)).inc(float(amount))
        logger.info(
            f"Allocated {amount} credits to user {user_id} ({_type_value(transaction_type)}): "
            f"{balance_before} -> {balance_after}"
        )
        return transaction
    except IntegrityError:
        db.rollback()
        existing = _find_by_idempotency_key(idempotency_key, db) if idempotency_key else None
        if existing:
            raise DuplicateTransactionError(idempotency_key, existing.id)
        raise
    except DuplicateTransactionError:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error allocating credits for user {user_id}: {e}", exc_info=True)
        raise
    finally:
        if should_close:
            db.close()


def allocate_signup_bonus(user_id: int, db: Session, amount: Optional[int] = None) -> Optional[CreditTransaction]:
    """Grant the one-time, non-expiring signup bonus"""
    amount = settings.SIGNUP_BONUS_CREDITS if amount is None else amount
    if amount <= 0:
        return None
    try:
        return allocate_credits(
            user_id=user_id,
            amount=amount,
            transaction_type=CreditTransactionType.SIGNUP_BONUS,
            description="Welcome bonus credits",
            reference_type="signup",
            reference_id=str(user_id),
            is_expiring=False,
            idempotency_key=f"signup_bonus:{user_id}",
            db=db,
        )
    except DuplicateTransactionError:
        logger.info(f"Signup bonus already granted to user {user_id}")
        return None


def allocate_subscription_credits(
    user_id: int,
    amount,
    subscription_id: str,
    period_end: datetime,
    is_renewal: bool = False,
    db: Session = None
) -> CreditTransaction:
    """Grant a subscription period's credits, expiring at the end of the period.

    A renewal first sweeps whatever is left of the previous period, in the
    same commit as the new allocation. One allocation per subscription
    period: a repeated call raises DuplicateTransactionError.
    """
    transaction_type = (
        CreditTransactionType.SUBSCRIPTION_RENEWAL if is_renewal
        else CreditTransactionType.SUBSCRIPTION_ALLOCATION
    )
    period_end = _as_aware(period_end)
    return allocate_credits(
        user_id=user_id,
        amount=amount,
        transaction_type=transaction_type,
        description=(
            f"Credit renewal: {amount} credits" if is_renewal
            else f"Subscription credit allocation: {amount} credits"
        ),
        reference_id=subscription_id,
        reference_type="user_subscription",
        is_expiring=True,
        expires_at=period_end,
        metadata={'subscription_id': subscription_id, 'period_end': period_end.isoformat()},
        idempotency_key=f"subscription:{subscription_id}:{period_end.isoformat()}",
        expire_existing=is_renewal,
        db=db,
    )


def consume_credits(
    user_id: int,
    transaction_type: CreditTransactionType,
    amount,
    description: str = "",
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    token_usage: Optional[TokenUsage] = None,
    ai_model: Optional[str] = None,
    cost_breakdown: Optional[TokenCostBreakdown] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    db: Session = None
) -> ConsumptionResult:
    """
    Debit credits for a completed operation.

    The debit is at-most-once per (user, transaction type, reference type,
    reference id): a replay returns the recorded transaction flagged as a
    duplicate and leaves the balance untouched.

    Raises:
        InsufficientCreditsError: the balance cannot cover ``amount``; nothing is written
    """
    from app.db.session import SessionLocal

    amount = to_decimal(amount)
    transaction_type = _as_type(transaction_type)
    if amount <= 0:
        raise CreditOperationError("Consumption amount must be greater than zero", {"amount": amount})

    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    idempotency_key = build_idempotency_key(user_id, transaction_type, reference_type, reference_id)

    try:
        if idempotency_key:
            existing = _find_by_idempotency_key(idempotency_key, db)
            if existing:
                logger.info(f"Consumption {idempotency_key} already recorded as transaction {existing.id}")
                return _duplicate_result(existing, db)

        get_or_create_user_credits(user_id, db)
        balances = _apply_debit(user_id, amount, db)
        if balances is None:
            db.rollback()
            available = _read_available(user_id, db)
            logger.warning(f"User {user_id} has insufficient credits. Required: {amount}, Available: {available}")
            raise InsufficientCreditsError(required=amount, available=available)
        balance_before, balance_after = balances

        transaction = CreditTransaction(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=-amount,
            balance_before=balance_before,
            balance_after=balance_after,
            status=CreditTransactionStatus.COMPLETED,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
            transaction_metadata={
                **(metadata or {}),
                'pricing_type': 'token-based' if token_usage else 'fixed',
            },
            input_tokens=token_usage.input_tokens if token_usage else None,
            output_tokens=token_usage.output_tokens if token_usage else None,
            total_tokens=token_usage.total_tokens if token_usage else None,
            ai_model=ai_model,
            token_cost_breakdown=cost_breakdown.to_dict() if cost_breakdown else None,
            idempotency_key=idempotency_key,
        )
        db.add(transaction)
        low_credit_triggered = _flag_low_credit(user_id, db)
        db.commit()
        db.refresh(transaction)

        credits_consumed_counter.labels(transaction_type=_type_value(transaction_type)).inc(float(amount))
        token_info = f" ({token_usage.input_tokens} in / {token_usage.output_tokens} out tokens)" if token_usage else ""
        logger.info(
            f"Consumed {amount} credits for user {user_id} ({_type_value(transaction_type)}){token_info}. "
            f"Balance: {balance_before} -> {balance_after}"
        )

        threshold = None
        if low_credit_triggered:
            threshold = db.query(UserCredits.low_credit_threshold).filter(UserCredits.user_id == user_id).scalar()
            logger.info(f"User {user_id} dropped to {balance_after} credits (threshold {threshold})")

        return ConsumptionResult(
            transaction=transaction,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            low_credit_triggered=low_credit_triggered,
            low_credit_threshold=threshold,
        )
    except InsufficientCreditsError:
        raise
    except IntegrityError:
        # Lost the race to record the same event; the winner's debit stands
        db.rollback()
        existing = _find_by_idempotency_key(idempotency_key, db) if idempotency_key else None
        if existing:
            logger.info(f"Consumption {idempotency_key} recorded concurrently as transaction {existing.id}")
            return _duplicate_result(existing, db)
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error consuming credits for user {user_id}: {e}", exc_info=True)
        raise
    finally:
        if should_close:
            db.close()


def _duplicate_result(transaction: CreditTransaction, db: Session) -> ConsumptionResult:
    """A replay charges nothing; it reports the current balance, not the recorded one"""
    available = _read_available(transaction.user_id, db)
    return ConsumptionResult(
        transaction=transaction,
        amount=ZERO,
        balance_before=available,
        balance_after=available,
        duplicate=True,
    )


def admin_adjust_credits(
    user_id: int,
    amount,
    reason: str,
    admin_user_id: int,
    db: Session
) -> CreditTransaction:
    """Signed manual adjustment by an admin; a negative adjustment may not overdraw the balance"""
    amount = to_decimal(amount)
    if amount == 0:
        raise CreditOperationError("Adjustment amount must not be zero")

    if amount > 0:
        return allocate_credits(
            user_id=user_id,
            amount=amount,
            transaction_type=CreditTransactionType.ADMIN_ADJUSTMENT,
            description=reason,
            reference_type="admin",
            reference_id=str(admin_user_id),
            metadata={'admin_user_id': admin_user_id, 'reason': reason},
            db=db,
        )

    debit = -amount
    try:
        get_or_create_user_credits(user_id, db)
        balances = _apply_debit(user_id, debit, db)
        if balances is None:
            db.rollback()
            available = _read_available(user_id, db)
            raise CreditOperationError(
                "Adjustment would make the balance negative",
                {"available": available, "requested": debit},
            )
        balance_before, balance_after = balances

        transaction = CreditTransaction(
            user_id=user_id,
            transaction_type=CreditTransactionType.ADMIN_ADJUSTMENT,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            status=CreditTransactionStatus.COMPLETED,
            description=reason,
            reference_type="admin",
            reference_id=str(admin_user_id),
            transaction_metadata={'admin_user_id': admin_user_id, 'reason': reason},
        )
        db.add(transaction)
        db.commit()
        db.refresh(transaction)
        logger.info(f"Admin {admin_user_id} adjusted user {user_id} by {amount}: {balance_before} -> {balance_after}")
        return transaction
    except CreditOperationError:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error adjusting credits for user {user_id}: {e}", exc_info=True)
        raise


def reverse_transaction(
    transaction_id: int,
    description: Optional[str] = None,
    db: Session = None,
    admin_user_id: Optional[int] = None
) -> CreditTransaction:
    """
    Reverse a completed transaction.

    The original is marked ``reversed`` and an opposite-signed ``refund``
    entry pointing at it is appended. Reversing a debit re-credits the user;
    reversing a credit debits the user and fails if the balance no longer
    covers it.
    """
    original = db.query(CreditTransaction).filter(CreditTransaction.id == transaction_id).first()
    if not original:
        raise CreditOperationError("Transaction not found", {"transactionId": transaction_id})
    if original.status != CreditTransactionStatus.COMPLETED:
        raise CreditOperationError(
            "Only completed transactions can be reversed",
            {"transactionId": transaction_id, "status": original.status.value},
        )

    user_id = original.user_id
    original_amount = to_decimal(original.amount)
    amount = abs(original_amount)

    try:
        marked = db.execute(
            update(CreditTransaction)
            .where(
                CreditTransaction.id == transaction_id,
                CreditTransaction.status == CreditTransactionStatus.COMPLETED
            )
            .values(status=CreditTransactionStatus.REVERSED)
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount == 0:
            db.rollback()
            raise CreditOperationError("Transaction already reversed", {"transactionId": transaction_id})

        if original_amount < 0:
            balance_before, balance_after = _apply_credit(user_id, amount, db)
            signed = amount
        else:
            balances = _apply_debit(user_id, amount, db)
            if balances is None:
                db.rollback()
                available = _read_available(user_id, db)
                raise CreditOperationError(
                    "Balance no longer covers the credits being reversed",
                    {"available": available, "required": amount, "transactionId": transaction_id},
                )
            balance_before, balance_after = balances
            signed = -amount

        reversal = CreditTransaction(
            user_id=user_id,
            transaction_type=CreditTransactionType.REFUND,
            amount=signed,
            balance_before=balance_before,
            balance_after=balance_after,
            status=CreditTransactionStatus.COMPLETED,
            description=description or f"Reversal of transaction #{transaction_id}",
            reference_type="credit_transaction",
            reference_id=str(transaction_id),
            original_transaction_id=transaction_id,
            transaction_metadata={'admin_user_id': admin_user_id} if admin_user_id else {},
            idempotency_key=f"reversal:{transaction_id}",
        )
        db.add(reversal)
        db.commit()
        db.refresh(reversal)
        db.refresh(original)
        logger.info(f"Reversed transaction {transaction_id} for user {user_id}: {balance_before} -> {balance_after}")
        return reversal
    except CreditOperationError:
        raise
    except IntegrityError:
        db.rollback()
        raise CreditOperationError("Transaction already reversed", {"transactionId": transaction_id})
    except Exception as e:
        db.rollback()
        logger.error(f"Error reversing transaction {transaction_id}: {e}", exc_info=True)
        raise


def _sweep_expiring(user_id: int, db: Session, now: datetime, force: bool = False) -> Optional[CreditTransaction]:
    """Remove a user's expiring credits and stage the ``expiration`` entry (caller commits).

    Unless ``force`` is set, nothing happens before ``credits_expire_at``.
    Returns None when there was nothing to sweep.
    """
    # Row lock: the swept amount and the balance it is taken from must be one snapshot
    credits = (
        db.query(UserCredits)
        .filter(UserCredits.user_id == user_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not credits:
        return None

    expires_at = _as_aware(credits.credits_expire_at)
    expiring = to_decimal(credits.expiring_credits or 0)
    if expiring <= 0:
        return None
    if not force and (expires_at is None or expires_at > now):
        return None

    # Credits already spent from the expiring pool are not swept twice
    expired = min(expiring, to_decimal(credits.available_credits or 0))
    param = _amount_param(expired)
    result = db.execute(
        update(UserCredits)
        .where(
            UserCredits.user_id == user_id,
            UserCredits.available_credits >= param
        )
        .values(
            available_credits=UserCredits.available_credits - param,
            expiring_credits=ZERO,
            credits_expire_at=None,
            last_reset_at=now,
            low_credit_notified=False,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None

    balance_after = _read_available(user_id, db)
    balance_before = balance_after + expired

    transaction = CreditTransaction(
        user_id=user_id,
        transaction_type=CreditTransactionType.EXPIRATION,
        amount=-expired,
        balance_before=balance_before,
        balance_after=balance_after,
        status=CreditTransactionStatus.COMPLETED,
        description="Expiring credits removed",
        reference_type="expiration",
        transaction_metadata={
            'expired_at': expires_at.isoformat() if expires_at else None,
            'forced': force,
        },
    )
    db.add(transaction)
    return transaction


def expire_credits(
    user_id: int,
    db: Session,
    now: Optional[datetime] = None,
    force: bool = False
) -> Optional[CreditTransaction]:
    """Sweep a user's expiring credits once their expiry has passed.

    Lifetime counters are left alone; the swept amount is recorded as an
    ``expiration`` transaction. ``force`` sweeps before the expiry date
    (used when a subscription period is renewed). Returns None when nothing
    was due.
    """
    now = now or _utcnow()
    try:
        transaction = _sweep_expiring(user_id, db, now, force=force)
        if transaction is None:
            db.rollback()
            return None
        db.commit()
        db.refresh(transaction)

        expired = -to_decimal(transaction.amount)
        credits_expired_counter.inc(float(expired))
        logger.info(
            f"Expired {expired} credits for user {user_id}: "
            f"{transaction.balance_before} -> {transaction.balance_after}"
        )
        return transaction
    except Exception as e:
        db.rollback()
        logger.error(f"Error expiring credits for user {user_id}: {e}", exc_info=True)
        raise


def expire_due_credits(db: Session, now: Optional[datetime] = None) -> int:
    """Expire credits for every balance past its expiry. Returns the number of users swept."""
    now = now or _utcnow()
    user_ids = [
        user_id for (user_id,) in db.query(UserCredits.user_id).filter(
            UserCredits.credits_expire_at.isnot(None),
            UserCredits.credits_expire_at <= now,
            UserCredits.expiring_credits > 0,
            UserCredits.deleted_at.is_(None)
        ).all()
    ]

    swept = 0
    for user_id in user_ids:
        try:
            if expire_credits(user_id, db, now=now):
                swept += 1
        except Exception as e:
            logger.error(f"Failed to expire credits for user {user_id}: {e}")
            continue

    if swept:
        logger.info(f"Expired credits for {swept} user(s)")
    return swept


def update_low_credit_threshold(user_id: int, threshold: int, db: Session) -> Dict[str, Any]:
    """Set the low balance threshold; re-arms the notification when the balance is above it"""
    if threshold < 0:
        raise CreditOperationError("Threshold must be zero or greater", {"threshold": threshold})

    credits = get_or_create_user_credits(user_id, db)
    credits.low_credit_threshold = threshold
    if to_decimal(credits.available_credits or 0) > threshold:
        credits.low_credit_notified = False
    credits.updated_at = _utcnow()
    db.commit()
    db.refresh(credits)
    logger.info(f"Low credit threshold for user {user_id} set to {threshold}")
    return serialize_balance(credits)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def serialize_transaction(transaction: CreditTransaction) -> Dict[str, Any]:
    created_at = _as_aware(transaction.created_at)
    expires_at = _as_aware(transaction.expires_at)
    return {
        'id': transaction.id,
        'user_id': transaction.user_id,
        'transaction_type': _type_value(transaction.transaction_type),
        'amount': float(transaction.amount),
        'balance_before': float(transaction.balance_before),
        'balance_after': float(transaction.balance_after),
        'status': transaction.status.value if transaction.status else None,
        'description': transaction.description,
        'reference_id': transaction.reference_id,
        'reference_type': transaction.reference_type,
        'input_tokens': transaction.input_tokens,
        'output_tokens': transaction.output_tokens,
        'total_tokens': transaction.total_tokens,
        'ai_model': transaction.ai_model,
        'token_cost_breakdown': transaction.token_cost_breakdown,
        'metadata': transaction.transaction_metadata or {},
        'original_transaction_id': transaction.original_transaction_id,
        'expires_at': expires_at.isoformat() if expires_at else None,
        'created_at': created_at.isoformat() if created_at else None,
    }


def get_transaction_history(
    user_id: int,
    db: Session,
    limit: int = 50,
    offset: int = 0,
    transaction_type: Optional[CreditTransactionType] = None
) -> Dict[str, Any]:
    """Paginated ledger for a user, newest first"""
    query = db.query(CreditTransaction).filter(CreditTransaction.user_id == user_id)
    if transaction_type:
        query = query.filter(CreditTransaction.transaction_type == transaction_type)

    total = query.count()
    transactions = query.order_by(
        CreditTransaction.created_at.desc(), CreditTransaction.id.desc()
    ).offset(offset).limit(limit).all()

    return {
        'transactions': [serialize_transaction(t) for t in transactions],
        'total': total,
        'limit': limit,
        'offset': offset,
    }


def get_usage_summary(
    user_id: int,
    db: Session,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None
) -> Dict[str, Any]:
    """Credits in/out for a period (defaults to the last 30 days)"""
    end_date = end_date or _utcnow()
    start_date = start_date or end_date - timedelta(days=30)

    transactions = db.query(CreditTransaction).filter(
        CreditTransaction.user_id == user_id,
        CreditTransaction.created_at >= start_date,
        CreditTransaction.created_at <= end_date,
        CreditTransaction.status == CreditTransactionStatus.COMPLETED
    ).all()

    total_credits = ZERO
    total_debits = ZERO
    by_type: Dict[str, float] = {}
    for transaction in transactions:
        amount = to_decimal(transaction.amount)
        if amount > 0:
            total_credits += amount
        else:
            total_debits += -amount
        key = _type_value(transaction.transaction_type)
        by_type[key] = by_type.get(key, 0.0) + float(abs(amount))

    return {
        'start_date': start_date.isoformat(),
        'end_date': end_date.isoformat(),
        'total_credits': float(total_credits),
        'total_debits': float(total_debits),
        'net_change': float(total_credits - total_debits),
        'transaction_count': len(transactions),
        'by_type': by_type,
    }


_AI_BREAKDOWN_KEYS = {
    CreditTransactionType.AI_QUESTION: 'questions',
    CreditTransactionType.AI_CHAT_MESSAGE: 'chat_messages',
    CreditTransactionType.AI_DOCUMENT_ANALYSIS: 'document_analysis',
    CreditTransactionType.AI_IMAGE_GENERATION: 'image_generation',
    CreditTransactionType.AI_ADVANCED_MODEL: 'advanced_model',
}


def get_ai_usage_breakdown(
    user_id: int,
    db: Session,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None
) -> Dict[str, Any]:
    """Credits and tokens spent per AI operation type"""
    query = db.query(
        CreditTransaction.transaction_type,
        func.sum(func.abs(CreditTransaction.amount)),
        func.coalesce(func.sum(CreditTransaction.total_tokens), 0),
        func.count(CreditTransaction.id)
    ).filter(
        CreditTransaction.user_id == user_id,
        CreditTransaction.transaction_type.in_(AI_USAGE_TYPES),
        CreditTransaction.status == CreditTransactionStatus.COMPLETED
    )
    if start_date and end_date:
        query = query.filter(CreditTransaction.created_at.between(start_date, end_date))

    breakdown = {key: 0.0 for key in _AI_BREAKDOWN_KEYS.values()}
    tokens = {key: 0 for key in _AI_BREAKDOWN_KEYS.values()}
    operations = 0
    for transaction_type, credits, total_tokens, count in query.group_by(CreditTransaction.transaction_type).all():
        key = _AI_BREAKDOWN_KEYS[CreditTransactionType(_type_value(transaction_type))]
        breakdown[key] = float(credits or 0)
        tokens[key] = int(total_tokens or 0)
        operations += count

    return {
        **breakdown,
        'total': sum(breakdown.values()),
        'tokens': tokens,
        'total_tokens': sum(tokens.values()),
        'operations': operations,
    }


def get_daily_usage(user_id: int, db: Session, days: int = 30) -> List[Dict[str, Any]]:
    """Debited credits per day for the last ``days`` days"""
    start_date = _utcnow() - timedelta(days=days)
    day = func.date(CreditTransaction.created_at)
    rows = db.query(
        day.label('day'),
        func.sum(func.abs(CreditTransaction.amount)),
        func.count(CreditTransaction.id)
    ).filter(
        CreditTransaction.user_id == user_id,
        CreditTransaction.amount < 0,
        CreditTransaction.created_at >= start_date,
        CreditTransaction.status == CreditTransactionStatus.COMPLETED
    ).group_by(day).order_by(day).all()

    return [
        {'date': str(date), 'credits': float(credits or 0), 'transactions': int(count or 0)}
        for date, credits, count in rows
    ]


def get_statistics(
    db: Session,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None
) -> Dict[str, Any]:
    """Platform-wide credit statistics for admins"""
    credited = func.coalesce(func.sum(case((CreditTransaction.amount > 0, CreditTransaction.amount), else_=0)), 0)
    debited = func.coalesce(func.sum(case((CreditTransaction.amount < 0, -CreditTransaction.amount), else_=0)), 0)
    query = db.query(
        CreditTransaction.transaction_type,
        func.count(CreditTransaction.id),
        credited,
        debited
    ).filter(CreditTransaction.status == CreditTransactionStatus.COMPLETED)
    if start_date and end_date:
        query = query.filter(CreditTransaction.created_at.between(start_date, end_date))

    total_transactions = 0
    total_allocated = ZERO
    total_consumed = ZERO
    by_type = []
    for transaction_type, count, credit_sum, debit_sum in query.group_by(CreditTransaction.transaction_type).all():
        credit_sum = to_decimal(credit_sum)
        debit_sum = to_decimal(debit_sum)
        total_transactions += count
        total_allocated += credit_sum
        total_consumed += debit_sum
        by_type.append({
            'type': _type_value(transaction_type),
            'count': count,
            'amount': float(credit_sum + debit_sum),
        })
    by_type.sort(key=lambda item: item['count'], reverse=True)

    balances = db.query(
        func.count(UserCredits.id),
        func.coalesce(func.sum(UserCredits.available_credits), 0)
    ).filter(UserCredits.deleted_at.is_(None)).one()

    return {
        'total_transactions': total_transactions,
        'total_credits_allocated': float(total_allocated),
        'total_credits_consumed': float(total_consumed),
        'top_transaction_types': by_type[:10],
        'users_with_balances': balances[0],
        'total_available_credits': float(to_decimal(balances[1])),
    }
