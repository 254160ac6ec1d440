"""CreditTransaction model"""
import enum
from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, JSON, Index, DateTime, Enum
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class CreditTransactionType(str, enum.Enum):
    """Kinds of ledger entries"""
    # Inbound (credits added)
    SUBSCRIPTION_ALLOCATION = "subscription_allocation"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    TOP_UP_PURCHASE = "top_up_purchase"
    PROMOTIONAL = "promotional"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    SIGNUP_BONUS = "signup_bonus"
    REFERRAL_BONUS = "referral_bonus"

    # Outbound (credits consumed)
    AI_QUESTION = "ai_question"
    AI_CHAT_MESSAGE = "ai_chat_message"
    AI_DOCUMENT_ANALYSIS = "ai_document_analysis"
    AI_IMAGE_GENERATION = "ai_image_generation"
    AI_ADVANCED_MODEL = "ai_advanced_model"
    FEATURE_USAGE = "feature_usage"

    # System
    EXPIRATION = "expiration"
    SUBSCRIPTION_DOWNGRADE = "subscription_downgrade"
    SUBSCRIPTION_CANCELLATION = "subscription_cancellation"


class CreditTransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


INBOUND_TYPES = (
    CreditTransactionType.SUBSCRIPTION_ALLOCATION,
    CreditTransactionType.SUBSCRIPTION_RENEWAL,
    CreditTransactionType.TOP_UP_PURCHASE,
    CreditTransactionType.PROMOTIONAL,
    CreditTransactionType.REFUND,
    CreditTransactionType.ADMIN_ADJUSTMENT,
    CreditTransactionType.SIGNUP_BONUS,
    CreditTransactionType.REFERRAL_BONUS,
)

AI_USAGE_TYPES = (
    CreditTransactionType.AI_QUESTION,
    CreditTransactionType.AI_CHAT_MESSAGE,
    CreditTransactionType.AI_DOCUMENT_ANALYSIS,
    CreditTransactionType.AI_IMAGE_GENERATION,
    CreditTransactionType.AI_ADVANCED_MODEL,
)


class CreditTransaction(Base):
    """Append-only credit ledger entry"""
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_type = Column(
        Enum(CreditTransactionType, values_callable=lambda e: [m.value for m in e], native_enum=False, length=50),
        nullable=False,
        index=True
    )
    amount = Column(Numeric(12, 2), nullable=False)  # Positive for additions, negative for deductions
    balance_before = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    status = Column(
        Enum(CreditTransactionStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20),
        default=CreditTransactionStatus.COMPLETED,
        nullable=False
    )
    description = Column(String(500), nullable=False, default="")

    # What caused the entry (question id, subscription id, payment id, ...)
    reference_id = Column(String(255), nullable=True, index=True)
    reference_type = Column(String(100), nullable=True)

    # Request origin
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    transaction_metadata = Column(JSON, default=dict)

    # Token pricing snapshot (AI operations)
    input_tokens = Column(Integer, nullable=True)
    output_tokens = Column(Integer, nullable=True)
    total_tokens = Column(Integer, nullable=True)
    ai_model = Column(String(100), nullable=True)
    token_cost_breakdown = Column(JSON, nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=True)
    original_transaction_id = Column(Integer, ForeignKey("credit_transactions.id", ondelete="SET NULL"), nullable=True)

    # At-most-once application per logical event
    idempotency_key = Column(String(255), nullable=True, unique=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    # Relationships
    user = relationship("User", back_populates="credit_transactions")

    # Index for common query patterns
    __table_args__ = (
        Index('ix_credit_transactions_user_created', 'user_id', 'created_at'),
    )

    def is_credit(self) -> bool:
        return self.amount > 0

    def is_debit(self) -> bool:
        return self.amount < 0

    def is_ai_usage(self) -> bool:
        return self.transaction_type in AI_USAGE_TYPES

    def __repr__(self):
        return f"<CreditTransaction(id={self.id}, user_id={self.user_id}, type={self.transaction_type}, amount={self.amount})>"
