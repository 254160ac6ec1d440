"""UserCredits model"""
from decimal import Decimal
from sqlalchemy import Column, Integer, Numeric, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class UserCredits(Base):
    """Per-user credit balance.

    Only the ledger operations in ``app.services.credit_service`` write to
    this row; every write is paired with a ``CreditTransaction``.
    """
    __tablename__ = "user_credits"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)

    # Spendable balance and lifetime counters (counters never decrease)
    available_credits = Column(Numeric(12, 2), default=0, nullable=False)
    total_allocated = Column(Numeric(12, 2), default=0, nullable=False)
    total_consumed = Column(Numeric(12, 2), default=0, nullable=False)

    # Sub-totals of available_credits by origin
    expiring_credits = Column(Numeric(12, 2), default=0, nullable=False)  # Swept to 0 after credits_expire_at
    purchased_credits = Column(Numeric(12, 2), default=0, nullable=False)  # Never expire
    credits_expire_at = Column(DateTime(timezone=True), nullable=True)
    last_reset_at = Column(DateTime(timezone=True), nullable=True)

    # One-time low balance notification
    low_credit_threshold = Column(Integer, default=100, nullable=False)
    low_credit_notified = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)  # Soft delete

    # Relationship
    user = relationship("User", back_populates="credits")

    def has_credits(self, amount=1) -> bool:
        return Decimal(str(self.available_credits or 0)) >= Decimal(str(amount))

    def is_low_on_credits(self) -> bool:
        return Decimal(str(self.available_credits or 0)) <= self.low_credit_threshold

    def __repr__(self):
        return f"<UserCredits(user_id={self.user_id}, available={self.available_credits}, consumed={self.total_consumed})>"
