"""Balance store and ledger tests"""
import pytest
from datetime import datetime, timezone, timedelta
from decimal import Decimal

from app.core.exceptions import CreditOperationError, DuplicateTransactionError, InsufficientCreditsError
from app.models.credit_transaction import CreditTransaction, CreditTransactionStatus, CreditTransactionType
from app.models.user_credits import UserCredits
from app.services.credit_service import (
    admin_adjust_credits,
    allocate_credits,
    allocate_signup_bonus,
    allocate_subscription_credits,
    build_idempotency_key,
    consume_credits,
    expire_credits,
    expire_due_credits,
    get_ai_usage_breakdown,
    get_available_credits,
    get_credit_balance,
    get_daily_usage,
    get_statistics,
    get_transaction_history,
    get_usage_summary,
    reverse_transaction,
    update_low_credit_threshold,
)
from app.services.pricing_service import TokenUsage
from tests.helpers import fund


def _balance_row(user_id, db_session) -> UserCredits:
    return db_session.query(UserCredits).filter(UserCredits.user_id == user_id).first()


@pytest.mark.critical
class TestBalanceStore:
    """Test balance reads"""

    def test_new_user_gets_signup_bonus(self, test_user, db_session):
        balance = get_credit_balance(test_user.id, db_session)

        assert balance["available"] == 50.0
        assert balance["purchased"] == 50.0
        assert balance["total_allocated"] == 50.0
        assert balance["total_consumed"] == 0.0

    def test_signup_bonus_granted_once(self, test_user, db_session):
        assert allocate_signup_bonus(test_user.id, db_session) is None
        assert get_available_credits(test_user.id, db_session) == Decimal("50")

    def test_available_credits_without_row_is_zero(self, db_session):
        assert get_available_credits(999, db_session) == Decimal("0")
        assert _balance_row(999, db_session) is None


@pytest.mark.critical
class TestAllocateCredits:
    """Test credit allocation"""

    def test_allocation_records_balances(self, funded_user, db_session):
        transaction = fund(funded_user.id, 25, db_session)

        assert transaction.amount == Decimal("25")
        assert transaction.balance_before == Decimal("0")
        assert transaction.balance_after == Decimal("25")
        assert transaction.status == CreditTransactionStatus.COMPLETED

    def test_allocation_rejects_non_positive_amount(self, funded_user, db_session):
        with pytest.raises(CreditOperationError):
            fund(funded_user.id, 0, db_session)

    def test_idempotency_key_blocks_second_allocation(self, funded_user, db_session):
        fund(funded_user.id, 10, db_session, idempotency_key="invoice:1")

        with pytest.raises(DuplicateTransactionError):
            fund(funded_user.id, 10, db_session, idempotency_key="invoice:1")
        assert get_available_credits(funded_user.id, db_session) == Decimal("10")

    def test_expiring_allocation_tracks_expiry(self, funded_user, db_session):
        expires_at = datetime.now(timezone.utc) + timedelta(days=30)
        fund(
            funded_user.id, 40, db_session,
            transaction_type=CreditTransactionType.SUBSCRIPTION_ALLOCATION,
            is_expiring=True,
            expires_at=expires_at,
        )

        balance = get_credit_balance(funded_user.id, db_session)
        assert balance["expiring"] == 40.0
        assert balance["purchased"] == 0.0
        assert balance["expires_at"] is not None

    def test_allocation_accepts_string_type(self, funded_user, db_session):
        transaction = allocate_credits(funded_user.id, 5, "promotional", "Promo", db=db_session)
        assert transaction.transaction_type == CreditTransactionType.PROMOTIONAL


@pytest.mark.critical
class TestConsumeCredits:
    """Test debits"""

    def test_debit_updates_balance_and_ledger_together(self, funded_user, db_session):
        fund(funded_user.id, 10, db_session)

        result = consume_credits(
            funded_user.id,
            CreditTransactionType.AI_QUESTION,
            Decimal("4"),
            description="AI question asked",
            token_usage=TokenUsage(100, 200, 300),
            ai_model="gpt-4o",
            db=db_session,
        )

        assert result.duplicate is False
        assert result.balance_before == Decimal("10")
        assert result.balance_after == Decimal("6")
        transaction = result.transaction
        assert transaction.amount == Decimal("-4")
        assert transaction.balance_after == transaction.balance_before + transaction.amount
        assert transaction.total_tokens == 300
        assert transaction.ai_model == "gpt-4o"

        credits = _balance_row(funded_user.id, db_session)
        assert credits.available_credits == Decimal("6")
        assert credits.total_consumed == Decimal("4")

    def test_insufficient_balance_writes_nothing(self, funded_user, db_session):
        fund(funded_user.id, 1, db_session)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("2"), db=db_session)

        assert exc_info.value.shortfall == Decimal("1")
        assert get_available_credits(funded_user.id, db_session) == Decimal("1")
        debits = db_session.query(CreditTransaction).filter(
            CreditTransaction.user_id == funded_user.id,
            CreditTransaction.amount < 0
        ).count()
        assert debits == 0

    def test_same_reference_is_charged_once(self, funded_user, db_session):
        fund(funded_user.id, 10, db_session)

        first = consume_credits(
            funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("3"),
            reference_id="q-1", reference_type="question", db=db_session,
        )
        second = consume_credits(
            funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("3"),
            reference_id="q-1", reference_type="question", db=db_session,
        )

        assert second.duplicate is True
        assert second.transaction.id == first.transaction.id
        assert get_available_credits(funded_user.id, db_session) == Decimal("7")
        assert second.amount == Decimal("0")
        assert second.balance_after == Decimal("7")

    def test_replay_reports_current_balance(self, funded_user, db_session):
        fund(funded_user.id, 10, db_session)
        consume_credits(
            funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("3"),
            reference_id="q-1", reference_type="question", db=db_session,
        )
        fund(funded_user.id, 5, db_session)

        replay = consume_credits(
            funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("3"),
            reference_id="q-1", reference_type="question", db=db_session,
        )

        assert replay.duplicate is True
        assert replay.balance_before == replay.balance_after == Decimal("12")

    def test_different_references_are_charged_separately(self, funded_user, db_session):
        fund(funded_user.id, 10, db_session)
        for reference in ("q-1", "q-2"):
            consume_credits(
                funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("3"),
                reference_id=reference, reference_type="question", db=db_session,
            )
        assert get_available_credits(funded_user.id, db_session) == Decimal("4")

    def test_idempotency_key_includes_type(self):
        assert build_idempotency_key(1, CreditTransactionType.AI_QUESTION, "question", "q-1") == "1:ai_question:question:q-1"
        assert build_idempotency_key(1, "ai_question", None, None) is None

    def test_expiring_credits_are_spent_first(self, funded_user, db_session):
        fund(funded_user.id, 10, db_session)
        fund(
            funded_user.id, 5, db_session,
            transaction_type=CreditTransactionType.SUBSCRIPTION_ALLOCATION,
            is_expiring=True,
            expires_at=datetime.now(timezone.utc) + timedelta(days=30),
        )

        consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("7"), db=db_session)

        credits = _balance_row(funded_user.id, db_session)
        assert credits.expiring_credits == Decimal("0")
        assert credits.purchased_credits == Decimal("8")
        assert credits.available_credits == Decimal("8")

    def test_low_credit_flag_trips_once(self, funded_user, db_session):
        update_low_credit_threshold(funded_user.id, 5, db_session)
        fund(funded_user.id, 10, db_session)

        first = consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("3"), db=db_session)
        second = consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("3"), db=db_session)
        third = consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("1"), db=db_session)

        assert first.low_credit_triggered is False
        assert second.low_credit_triggered is True
        assert second.low_credit_threshold == 5
        assert third.low_credit_triggered is False

    def test_top_up_rearms_low_credit_flag(self, funded_user, db_session):
        update_low_credit_threshold(funded_user.id, 5, db_session)
        fund(funded_user.id, 6, db_session)
        assert consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("2"), db=db_session).low_credit_triggered

        fund(funded_user.id, 10, db_session)
        result = consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("10"), db=db_session)
        assert result.low_credit_triggered is True


@pytest.mark.critical
class TestReversalAndAdjustment:
    """Test reversals and admin adjustments"""

    def test_reversing_a_debit_recredits_user(self, funded_user, db_session):
        fund(funded_user.id, 10, db_session)
        debit = consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("4"), db=db_session)

        reversal = reverse_transaction(debit.transaction.id, db=db_session, admin_user_id=1)

        assert reversal.transaction_type == CreditTransactionType.REFUND
        assert reversal.amount == Decimal("4")
        assert reversal.original_transaction_id == debit.transaction.id
        assert get_available_credits(funded_user.id, db_session) == Decimal("10")
        db_session.refresh(debit.transaction)
        assert debit.transaction.status == CreditTransactionStatus.REVERSED

    def test_transaction_cannot_be_reversed_twice(self, funded_user, db_session):
        fund(funded_user.id, 10, db_session)
        debit = consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("4"), db=db_session)
        reverse_transaction(debit.transaction.id, db=db_session)

        with pytest.raises(CreditOperationError):
            reverse_transaction(debit.transaction.id, db=db_session)
        assert get_available_credits(funded_user.id, db_session) == Decimal("10")

    def test_reversing_spent_credits_fails(self, funded_user, db_session):
        allocation = fund(funded_user.id, 10, db_session)
        consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("8"), db=db_session)

        with pytest.raises(CreditOperationError):
            reverse_transaction(allocation.id, db=db_session)
        assert get_available_credits(funded_user.id, db_session) == Decimal("2")

    def test_negative_adjustment_cannot_overdraw(self, funded_user, db_session):
        fund(funded_user.id, 3, db_session)

        with pytest.raises(CreditOperationError):
            admin_adjust_credits(funded_user.id, Decimal("-5"), "Correction", admin_user_id=1, db=db_session)

        transaction = admin_adjust_credits(funded_user.id, Decimal("-2"), "Correction", admin_user_id=1, db=db_session)
        assert transaction.amount == Decimal("-2")
        assert get_available_credits(funded_user.id, db_session) == Decimal("1")

    def test_zero_adjustment_rejected(self, funded_user, db_session):
        with pytest.raises(CreditOperationError):
            admin_adjust_credits(funded_user.id, 0, "Nothing", admin_user_id=1, db=db_session)


@pytest.mark.critical
class TestExpiration:
    """Test expiring credit sweeps"""

    def _grant_expiring(self, user_id, db_session, amount=20, days=-1):
        return fund(
            user_id, amount, db_session,
            transaction_type=CreditTransactionType.SUBSCRIPTION_ALLOCATION,
            is_expiring=True,
            expires_at=datetime.now(timezone.utc) + timedelta(days=days),
        )

    def test_expired_credits_are_removed(self, funded_user, db_session):
        fund(funded_user.id, 5, db_session)
        self._grant_expiring(funded_user.id, db_session)

        transaction = expire_credits(funded_user.id, db_session)

        assert transaction.transaction_type == CreditTransactionType.EXPIRATION
        assert transaction.amount == Decimal("-20")
        credits = _balance_row(funded_user.id, db_session)
        assert credits.available_credits == Decimal("5")
        assert credits.expiring_credits == Decimal("0")
        assert credits.credits_expire_at is None
        # Lifetime counters are untouched
        assert credits.total_allocated == Decimal("25")
        assert credits.total_consumed == Decimal("0")

    def test_unexpired_credits_are_kept(self, funded_user, db_session):
        self._grant_expiring(funded_user.id, db_session, days=10)

        assert expire_credits(funded_user.id, db_session) is None
        assert get_available_credits(funded_user.id, db_session) == Decimal("20")

    def test_partially_spent_expiring_credits(self, funded_user, db_session):
        fund(funded_user.id, 5, db_session)
        self._grant_expiring(funded_user.id, db_session)
        consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("15"), db=db_session)

        transaction = expire_credits(funded_user.id, db_session)

        assert transaction.amount == Decimal("-5")
        assert transaction.balance_before == Decimal("10")
        assert transaction.balance_after == Decimal("5")
        assert transaction.balance_after - transaction.balance_before == transaction.amount
        assert get_available_credits(funded_user.id, db_session) == Decimal("5")

    def test_forced_sweep_ignores_expiry_date(self, funded_user, db_session):
        self._grant_expiring(funded_user.id, db_session, days=10)

        transaction = expire_credits(funded_user.id, db_session, force=True)

        assert transaction.amount == Decimal("-20")
        assert transaction.transaction_metadata["forced"] is True
        assert get_available_credits(funded_user.id, db_session) == Decimal("0")

    def test_nothing_to_sweep_returns_none(self, funded_user, db_session):
        fund(funded_user.id, 5, db_session)
        assert expire_credits(funded_user.id, db_session, force=True) is None
        assert get_available_credits(funded_user.id, db_session) == Decimal("5")

    def test_sweep_only_touches_due_balances(self, funded_user, test_user, db_session):
        self._grant_expiring(funded_user.id, db_session)
        self._grant_expiring(test_user.id, db_session, days=10)

        assert expire_due_credits(db_session) == 1
        assert get_available_credits(funded_user.id, db_session) == Decimal("0")
        assert get_available_credits(test_user.id, db_session) == Decimal("70")


@pytest.mark.critical
class TestSubscriptionCredits:
    """Test subscription period allocations"""

    def test_first_period_is_expiring(self, funded_user, db_session):
        period_end = datetime.now(timezone.utc) + timedelta(days=30)

        transaction = allocate_subscription_credits(funded_user.id, 100, "sub-1", period_end, db=db_session)

        assert transaction.transaction_type == CreditTransactionType.SUBSCRIPTION_ALLOCATION
        assert transaction.reference_type == "user_subscription"
        credits = _balance_row(funded_user.id, db_session)
        assert credits.available_credits == Decimal("100")
        assert credits.expiring_credits == Decimal("100")

    def test_renewal_expires_previous_period(self, funded_user, db_session):
        now = datetime.now(timezone.utc)
        allocate_subscription_credits(funded_user.id, 100, "sub-1", now + timedelta(days=30), db=db_session)

        renewal = allocate_subscription_credits(
            funded_user.id, 100, "sub-1", now + timedelta(days=60), is_renewal=True, db=db_session
        )

        assert renewal.transaction_type == CreditTransactionType.SUBSCRIPTION_RENEWAL
        assert get_available_credits(funded_user.id, db_session) == Decimal("100")
        expirations = db_session.query(CreditTransaction).filter(
            CreditTransaction.user_id == funded_user.id,
            CreditTransaction.transaction_type == CreditTransactionType.EXPIRATION
        ).all()
        assert [e.amount for e in expirations] == [Decimal("-100")]

        # Only the new period is left; it survives the old period's end
        assert expire_due_credits(db_session, now=now + timedelta(days=31)) == 0
        assert get_available_credits(funded_user.id, db_session) == Decimal("100")
        assert expire_due_credits(db_session, now=now + timedelta(days=61)) == 1
        assert get_available_credits(funded_user.id, db_session) == Decimal("0")

    def test_renewal_keeps_purchased_credits(self, funded_user, db_session):
        now = datetime.now(timezone.utc)
        fund(funded_user.id, 10, db_session)
        allocate_subscription_credits(funded_user.id, 100, "sub-1", now + timedelta(days=30), db=db_session)
        consume_credits(funded_user.id, CreditTransactionType.AI_QUESTION, Decimal("30"), db=db_session)

        allocate_subscription_credits(
            funded_user.id, 100, "sub-1", now + timedelta(days=60), is_renewal=True, db=db_session
        )

        credits = _balance_row(funded_user.id, db_session)
        assert credits.available_credits == Decimal("110")
        assert credits.purchased_credits == Decimal("10")
        assert credits.expiring_credits == Decimal("100")

    def test_period_is_allocated_once(self, funded_user, db_session):
        period_end = datetime.now(timezone.utc) + timedelta(days=30)
        allocate_subscription_credits(funded_user.id, 100, "sub-1", period_end, db=db_session)

        with pytest.raises(DuplicateTransactionError):
            allocate_subscription_credits(funded_user.id, 100, "sub-1", period_end, db=db_session)
        assert get_available_credits(funded_user.id, db_session) == Decimal("100")


@pytest.mark.medium
class TestReporting:
    """Test ledger reporting"""

    def _spend(self, user_id, db_session):
        fund(user_id, 20, db_session)
        consume_credits(
            user_id, CreditTransactionType.AI_QUESTION, Decimal("3"),
            token_usage=TokenUsage(100, 100, 200), db=db_session,
        )
        consume_credits(
            user_id, CreditTransactionType.AI_CHAT_MESSAGE, Decimal("2"),
            token_usage=TokenUsage(50, 50, 100), db=db_session,
        )

    def test_history_is_newest_first_and_paginated(self, funded_user, db_session):
        self._spend(funded_user.id, db_session)

        history = get_transaction_history(funded_user.id, db_session, limit=2)
        assert history["total"] == 3
        assert len(history["transactions"]) == 2
        assert history["transactions"][0]["transaction_type"] == "ai_chat_message"

    def test_history_filters_by_type(self, funded_user, db_session):
        self._spend(funded_user.id, db_session)

        history = get_transaction_history(
            funded_user.id, db_session, transaction_type=CreditTransactionType.AI_QUESTION
        )
        assert history["total"] == 1
        assert history["transactions"][0]["amount"] == -3.0

    def test_usage_summary(self, funded_user, db_session):
        self._spend(funded_user.id, db_session)

        summary = get_usage_summary(funded_user.id, db_session)
        assert summary["total_credits"] == 20.0
        assert summary["total_debits"] == 5.0
        assert summary["net_change"] == 15.0
        assert summary["by_type"]["ai_question"] == 3.0

    def test_ai_usage_breakdown(self, funded_user, db_session):
        self._spend(funded_user.id, db_session)

        breakdown = get_ai_usage_breakdown(funded_user.id, db_session)
        assert breakdown["questions"] == 3.0
        assert breakdown["chat_messages"] == 2.0
        assert breakdown["total"] == 5.0
        assert breakdown["total_tokens"] == 300
        assert breakdown["operations"] == 2

    def test_daily_usage(self, funded_user, db_session):
        self._spend(funded_user.id, db_session)

        days = get_daily_usage(funded_user.id, db_session, days=7)
        assert len(days) == 1
        assert days[0]["credits"] == 5.0
        assert days[0]["transactions"] == 2

    def test_statistics(self, funded_user, db_session):
        self._spend(funded_user.id, db_session)

        stats = get_statistics(db_session)
        assert stats["total_transactions"] == 3
        assert stats["total_credits_allocated"] == 20.0
        assert stats["total_credits_consumed"] == 5.0
        assert stats["total_available_credits"] == 15.0
