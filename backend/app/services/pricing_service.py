"""Pricing service - token pricing table and credit cost calculation

Costs are expressed in credits per 1000 tokens, the way AI providers bill.

    cost = max(minimum_credits, model_multiplier * (input/1000 * input_rate + output/1000 * output_rate))

The weighted cost is rounded up to the cent before the minimum is applied,
so a charge is never below ``minimum_credits`` and never undercharges.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy.orm import Session

from app.models.ai_model_pricing import AiModelPricing
from app.models.credit_transaction import CreditTransactionType

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ONE_THOUSAND = Decimal("1000")
DEFAULT_PRICING_KEY = "default"


@dataclass(frozen=True)
class PricingEntry:
    """Rate card for one AI model"""
    input_cost_per_1k: Decimal
    output_cost_per_1k: Decimal
    minimum_credits: Decimal
    model_multiplier: Decimal = Decimal("1")

    def to_dict(self) -> Dict[str, float]:
        return {
            "inputCostPer1kTokens": float(self.input_cost_per_1k),
            "outputCostPer1kTokens": float(self.output_cost_per_1k),
            "minimumCredits": float(self.minimum_credits),
            "modelMultiplier": float(self.model_multiplier),
        }


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @property
    def is_empty(self) -> bool:
        return self.input_tokens == 0 and self.output_tokens == 0 and self.total_tokens == 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(frozen=True)
class TokenCostBreakdown:
    """Result of pricing one operation"""
    input_tokens: int
    output_tokens: int
    total_tokens: int
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    minimum_applied: bool
    model_multiplier: Decimal
    final_cost: Decimal
    model_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "inputCost": float(self.input_cost),
            "outputCost": float(self.output_cost),
            "totalCost": float(self.total_cost),
            "minimumApplied": self.minimum_applied,
            "modelMultiplier": float(self.model_multiplier),
            "finalCost": float(self.final_cost),
        }
        if self.model_name:
            data["model"] = self.model_name
        return data


def _entry(input_rate: str, output_rate: str, minimum: str, multiplier: str = "1") -> PricingEntry:
    return PricingEntry(
        input_cost_per_1k=Decimal(input_rate),
        output_cost_per_1k=Decimal(output_rate),
        minimum_credits=Decimal(minimum),
        model_multiplier=Decimal(multiplier),
    )


# Built-in pricing; rows in ai_model_pricing override these per model
DEFAULT_TOKEN_PRICING: Dict[str, PricingEntry] = {
    # OpenAI
    "gpt-4o": _entry("2.5", "10", "1"),
    "gpt-4o-mini": _entry("0.15", "0.6", "1"),
    "gpt-4-turbo": _entry("5", "15", "1"),
    "gpt-3.5-turbo": _entry("0.25", "0.75", "1"),
    # Anthropic
    "claude-3-opus": _entry("7.5", "37.5", "2"),
    "claude-3-sonnet": _entry("1.5", "7.5", "1"),
    "claude-3-haiku": _entry("0.125", "0.625", "1"),
    DEFAULT_PRICING_KEY: _entry("1", "3", "1"),
}

# Conservative (input, output) token estimates used before the AI call runs
ESTIMATED_TOKENS: Dict[str, Tuple[int, int]] = {
    CreditTransactionType.AI_QUESTION.value: (500, 1500),
    CreditTransactionType.AI_CHAT_MESSAGE.value: (300, 800),
    CreditTransactionType.AI_DOCUMENT_ANALYSIS.value: (2000, 2000),
    CreditTransactionType.AI_IMAGE_GENERATION.value: (100, 0),
    CreditTransactionType.AI_ADVANCED_MODEL.value: (500, 1500),
}

# Flat costs for operations that are not priced by tokens
FIXED_CREDIT_COSTS: Dict[str, Decimal] = {
    CreditTransactionType.FEATURE_USAGE.value: Decimal("1"),
}
DEFAULT_FIXED_COST = Decimal("1")


def to_decimal(value: Any) -> Decimal:
    """Decimal from int/float/str/Decimal without binary float artifacts"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def calculate_token_cost(
    usage: TokenUsage,
    pricing: PricingEntry,
    model_name: Optional[str] = None
) -> TokenCostBreakdown:
    """Price a token usage against a rate card (pure)"""
    input_cost = Decimal(usage.input_tokens) / ONE_THOUSAND * pricing.input_cost_per_1k
    output_cost = Decimal(usage.output_tokens) / ONE_THOUSAND * pricing.output_cost_per_1k
    total_cost = input_cost + output_cost

    weighted = (total_cost * pricing.model_multiplier).quantize(CENT, rounding=ROUND_CEILING)
    minimum_applied = weighted < pricing.minimum_credits
    final_cost = max(pricing.minimum_credits, weighted)

    return TokenCostBreakdown(
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        total_tokens=usage.total_tokens,
        input_cost=input_cost.quantize(CENT, rounding=ROUND_HALF_UP),
        output_cost=output_cost.quantize(CENT, rounding=ROUND_HALF_UP),
        total_cost=total_cost.quantize(CENT, rounding=ROUND_HALF_UP),
        minimum_applied=minimum_applied,
        model_multiplier=pricing.model_multiplier,
        final_cost=final_cost.quantize(CENT),
        model_name=model_name,
    )


def get_estimated_tokens(transaction_type: str) -> Optional[TokenUsage]:
    """Token estimate for an operation type, or None for non-token operations"""
    estimate = ESTIMATED_TOKENS.get(transaction_type)
    if estimate is None:
        return None
    input_tokens, output_tokens = estimate
    return TokenUsage(input_tokens, output_tokens, input_tokens + output_tokens)


def get_fixed_cost(transaction_type: str) -> Decimal:
    return FIXED_CREDIT_COSTS.get(transaction_type, DEFAULT_FIXED_COST)


def estimate_operation_cost(
    transaction_type: str,
    pricing: PricingEntry,
    estimated_tokens: Optional[TokenUsage] = None,
    model_name: Optional[str] = None
) -> TokenCostBreakdown:
    """Estimate the cost of an AI operation before it runs"""
    usage = estimated_tokens or get_estimated_tokens(transaction_type) or get_estimated_tokens(
        CreditTransactionType.AI_QUESTION.value
    )
    return calculate_token_cost(usage, pricing, model_name=model_name)


def pricing_from_row(row: AiModelPricing) -> PricingEntry:
    return PricingEntry(
        input_cost_per_1k=to_decimal(row.input_cost_per_1k_tokens),
        output_cost_per_1k=to_decimal(row.output_cost_per_1k_tokens),
        minimum_credits=to_decimal(row.minimum_credits),
        model_multiplier=to_decimal(row.model_multiplier or 1),
    )


def get_model_pricing(model_name: Optional[str], db: Optional[Session] = None) -> PricingEntry:
    """Resolve the rate card for a model.

    Lookup order: active database row for the model, then the built-in entry
    for the name, then the built-in ``default`` entry.
    """
    if model_name and db is not None:
        row = db.query(AiModelPricing).filter(
            AiModelPricing.model_name == model_name,
            AiModelPricing.is_active == True  # noqa: E712
        ).first()
        if row:
            return pricing_from_row(row)

    if model_name and model_name in DEFAULT_TOKEN_PRICING:
        return DEFAULT_TOKEN_PRICING[model_name]

    if model_name:
        logger.debug(f"No pricing configured for model '{model_name}', using default pricing")
    return DEFAULT_TOKEN_PRICING[DEFAULT_PRICING_KEY]


# ---------------------------------------------------------------------------
# Admin pricing configuration
# ---------------------------------------------------------------------------

def list_model_pricing(db: Session, include_inactive: bool = False) -> List[Dict[str, Any]]:
    """Configured pricing rows plus the built-in table"""
    query = db.query(AiModelPricing)
    if not include_inactive:
        query = query.filter(AiModelPricing.is_active == True)  # noqa: E712
    rows = query.order_by(AiModelPricing.model_name).all()

    configured = [
        {
            "model_name": row.model_name,
            "source": "database",
            "is_active": row.is_active,
            **pricing_from_row(row).to_dict(),
        }
        for row in rows
    ]
    overridden = {row.model_name for row in rows}
    builtin = [
        {"model_name": name, "source": "builtin", "is_active": True, **entry.to_dict()}
        for name, entry in DEFAULT_TOKEN_PRICING.items()
        if name not in overridden
    ]
    return configured + builtin


def upsert_model_pricing(
    model_name: str,
    input_cost_per_1k: Any,
    output_cost_per_1k: Any,
    minimum_credits: Any = 1,
    model_multiplier: Any = 1,
    db: Session = None
) -> AiModelPricing:
    """Create or update the pricing row for a model (reactivates inactive rows)"""
    input_rate = to_decimal(input_cost_per_1k)
    output_rate = to_decimal(output_cost_per_1k)
    minimum = to_decimal(minimum_credits)
    multiplier = to_decimal(model_multiplier)
    if input_rate < 0 or output_rate < 0 or minimum < 0:
        raise ValueError("Pricing values must be zero or greater")
    if multiplier <= 0:
        raise ValueError("Model multiplier must be greater than zero")

    try:
        row = db.query(AiModelPricing).filter(AiModelPricing.model_name == model_name).first()
        if not row:
            row = AiModelPricing(model_name=model_name)
            db.add(row)

        row.input_cost_per_1k_tokens = input_rate
        row.output_cost_per_1k_tokens = output_rate
        row.minimum_credits = minimum
        row.model_multiplier = multiplier
        row.is_active = True
        row.updated_at = datetime.now(timezone.utc)

        db.commit()
        db.refresh(row)
        logger.info(
            f"Pricing for {model_name} set: in={input_rate}/1k out={output_rate}/1k "
            f"min={minimum} multiplier={multiplier}"
        )
        return row
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to save pricing for {model_name}: {e}", exc_info=True)
        raise


def deactivate_model_pricing(model_name: str, db: Session) -> bool:
    """Deactivate a pricing row; the model falls back to built-in pricing"""
    row = db.query(AiModelPricing).filter(AiModelPricing.model_name == model_name).first()
    if not row or not row.is_active:
        return False

    row.is_active = False
    row.updated_at = datetime.now(timezone.utc)
    db.commit()
    logger.info(f"Pricing for {model_name} deactivated")
    return True


def seed_default_pricing(db: Session) -> int:
    """Insert built-in pricing rows for models that have no row yet"""
    existing = {name for (name,) in db.query(AiModelPricing.model_name).all()}
    created = 0
    for name, entry in DEFAULT_TOKEN_PRICING.items():
        if name in existing or name == DEFAULT_PRICING_KEY:
            continue
        db.add(AiModelPricing(
            model_name=name,
            input_cost_per_1k_tokens=entry.input_cost_per_1k,
            output_cost_per_1k_tokens=entry.output_cost_per_1k,
            minimum_credits=entry.minimum_credits,
            model_multiplier=entry.model_multiplier,
            is_active=True,
        ))
        created += 1
    db.commit()
    return created
