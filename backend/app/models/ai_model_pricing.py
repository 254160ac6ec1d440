"""AiModelPricing model"""
from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime
from datetime import datetime, timezone
from app.models.base import Base


class AiModelPricing(Base):
    """Per-model token pricing (overrides the built-in defaults)"""
    __tablename__ = "ai_model_pricing"

    id = Column(Integer, primary_key=True, index=True)
    model_name = Column(String(100), unique=True, nullable=False, index=True)
    input_cost_per_1k_tokens = Column(Numeric(12, 4), nullable=False)  # Credits per 1000 input tokens
    output_cost_per_1k_tokens = Column(Numeric(12, 4), nullable=False)  # Credits per 1000 output tokens
    minimum_credits = Column(Numeric(12, 2), default=1, nullable=False)  # Floor per operation
    model_multiplier = Column(Numeric(6, 3), default=1, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<AiModelPricing(model={self.model_name}, in={self.input_cost_per_1k_tokens}, out={self.output_cost_per_1k_tokens})>"
