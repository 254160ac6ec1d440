"""Credit pipeline - authorize an AI operation before it runs, settle its real cost after

    context = authorize("ai.ask_question", db, session_user_id=user_id)
    response = await run_the_operation()
    outcome = settle(context, response, db, session_user_id=user_id)

``run_with_credits`` wires the three steps together for API handlers. The
context returned by ``authorize`` is the only thing carried from the first
stage to the second.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import DuplicateTransactionError, InsufficientCreditsError
from app.core.metrics import credit_authorization_rejections_counter, credit_settlements_counter
from app.core.otel import get_tracer
from app.models.credit_transaction import CreditTransactionType
from app.services import credit_service
from app.services.event_service import (
    publish_credit_balance_changed,
    publish_credits_insufficient,
    publish_credits_low,
)
from app.services.pricing_service import (
    PricingEntry,
    TokenCostBreakdown,
    TokenUsage,
    calculate_token_cost,
    get_estimated_tokens,
    get_fixed_cost,
    get_model_pricing,
    to_decimal,
)
from app.services.token_usage import extract_model_name, extract_reference, extract_token_usage

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

PRICING_TOKEN = "token"
PRICING_FIXED = "fixed"

_DESCRIPTIONS = {
    CreditTransactionType.AI_QUESTION: "AI question asked",
    CreditTransactionType.AI_CHAT_MESSAGE: "AI chat message sent",
    CreditTransactionType.AI_DOCUMENT_ANALYSIS: "Document analyzed by AI",
    CreditTransactionType.AI_IMAGE_GENERATION: "AI image generated",
    CreditTransactionType.AI_ADVANCED_MODEL: "Advanced AI model used",
}


@dataclass(frozen=True)
class CreditRequirement:
    """Cost declared for an operation"""
    transaction_type: CreditTransactionType
    custom_amount: Optional[Decimal] = None
    model_name: Optional[str] = None
    estimated_tokens: Optional[TokenUsage] = None

    def __post_init__(self):
        object.__setattr__(self, "transaction_type", CreditTransactionType(self.transaction_type))
        if self.custom_amount is not None:
            amount = to_decimal(self.custom_amount)
            if amount <= 0:
                raise ValueError("custom_amount must be greater than zero")
            object.__setattr__(self, "custom_amount", amount)


# Operation id -> declared cost. Operations missing here run free of charge.
CREDIT_REQUIREMENTS: Dict[str, CreditRequirement] = {}


def register_credit_requirement(
    operation_id: str,
    transaction_type: CreditTransactionType,
    custom_amount=None,
    model_name: Optional[str] = None,
    estimated_tokens: Optional[TokenUsage] = None
) -> CreditRequirement:
    requirement = CreditRequirement(
        transaction_type=transaction_type,
        custom_amount=custom_amount,
        model_name=model_name,
        estimated_tokens=estimated_tokens,
    )
    CREDIT_REQUIREMENTS[operation_id] = requirement
    return requirement


register_credit_requirement("ai.ask_question", CreditTransactionType.AI_QUESTION)
register_credit_requirement("ai.chat_message", CreditTransactionType.AI_CHAT_MESSAGE)
register_credit_requirement("ai.analyze_document", CreditTransactionType.AI_DOCUMENT_ANALYSIS)


@dataclass
class RequestMeta:
    """Request details recorded on the ledger entry"""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None

    def to_metadata(self) -> Dict[str, Any]:
        return {key: value for key, value in (("endpoint", self.endpoint), ("method", self.method)) if value}


@dataclass
class CreditContext:
    """What authorization decided, handed to settlement"""
    operation_id: str
    requirement: CreditRequirement
    user_id: Optional[int]
    is_authenticated: bool
    model_name: str
    skip_charge: bool = False
    estimated_cost: Decimal = Decimal("0")
    available_balance: Optional[Decimal] = None
    estimated_tokens: Optional[TokenUsage] = None
    estimate: Optional[TokenCostBreakdown] = None
    pricing_basis: str = PRICING_TOKEN
    # Caller-supplied id of the logical event; otherwise read from the response
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    # Rate cards are read once per model per request
    pricing_cache: Dict[str, PricingEntry] = field(default_factory=dict)

    @property
    def transaction_type(self) -> CreditTransactionType:
        return self.requirement.transaction_type

    def pricing_for(self, model_name: str, db: Session) -> PricingEntry:
        if model_name not in self.pricing_cache:
            self.pricing_cache[model_name] = get_model_pricing(model_name, db)
        return self.pricing_cache[model_name]


@dataclass
class SettlementOutcome:
    consumed: Decimal
    remaining: Decimal
    transaction_id: int
    token_usage: Optional[TokenUsage] = None
    cost_breakdown: Optional[TokenCostBreakdown] = None
    duplicate: bool = False
    low_credit_triggered: bool = False
    low_credit_threshold: Optional[int] = None

    def to_credit_info(self) -> Dict[str, Any]:
        """``creditInfo`` block merged into the operation's response"""
        info = {
            "consumed": float(self.consumed),
            "remaining": float(self.remaining),
        }
        if self.duplicate:
            info["duplicate"] = True
        if self.token_usage:
            info["tokenUsage"] = self.token_usage.to_dict()
        if self.cost_breakdown:
            info["tokenCostBreakdown"] = self.cost_breakdown.to_dict()
        return info


def _estimate(context: CreditContext, db: Session) -> None:
    requirement = context.requirement

    if requirement.custom_amount is not None:
        context.estimated_cost = requirement.custom_amount
        context.pricing_basis = PRICING_FIXED
        return

    tokens = requirement.estimated_tokens or get_estimated_tokens(requirement.transaction_type.value)
    if tokens is not None:
        pricing = context.pricing_for(context.model_name, db)
        context.estimate = calculate_token_cost(tokens, pricing, model_name=context.model_name)
        context.estimated_tokens = tokens
        context.estimated_cost = context.estimate.final_cost
        context.pricing_basis = PRICING_TOKEN
        return

    context.estimated_cost = get_fixed_cost(requirement.transaction_type.value)
    context.pricing_basis = PRICING_FIXED


def authorize(
    operation_id: str,
    db: Session,
    session_user_id: Optional[int] = None,
    body_user_id: Optional[int] = None,
    model_name: Optional[str] = None
) -> Optional[CreditContext]:
    """
    Decide whether a user can plausibly afford an operation before it runs.

    Read-only: no ledger entry is written here.

    Returns:
        None when the operation has no declared cost, a ``skip_charge``
        context when no user can be resolved, otherwise the context to hand
        to ``settle``.

    Raises:
        InsufficientCreditsError: available balance is below the estimated cost
    """
    requirement = CREDIT_REQUIREMENTS.get(operation_id)
    if requirement is None:
        return None

    user_id = session_user_id if session_user_id is not None else body_user_id
    context = CreditContext(
        operation_id=operation_id,
        requirement=requirement,
        user_id=user_id,
        is_authenticated=session_user_id is not None,
        model_name=model_name or requirement.model_name or settings.AI_DEFAULT_MODEL,
    )

    if user_id is None:
        context.skip_charge = True
        logger.debug(f"No user for {operation_id}; running without a charge")
        return context

    with tracer.start_as_current_span("credits.authorize") as span:
        span.set_attribute("credits.operation", operation_id)
        span.set_attribute("credits.user_id", user_id)

        _estimate(context, db)
        available = credit_service.get_available_credits(user_id, db)
        context.available_balance = available
        span.set_attribute("credits.estimated_cost", float(context.estimated_cost))

        if available < context.estimated_cost:
            credit_authorization_rejections_counter.labels(
                transaction_type=requirement.transaction_type.value
            ).inc()
            logger.info(
                f"Rejected {operation_id} for user {user_id}: "
                f"requires {context.estimated_cost}, available {available}"
            )
            raise InsufficientCreditsError(
                required=context.estimated_cost,
                available=available,
                estimated_tokens=context.estimated_tokens.to_dict() if context.estimated_tokens else None,
            )

    return context


def _settlement_cost(context: CreditContext, response: Any, db: Session):
    """(amount, token_usage, breakdown, model) for a completed operation"""
    usage = extract_token_usage(response)
    model = extract_model_name(response) or context.model_name

    if context.requirement.custom_amount is not None:
        return context.requirement.custom_amount, usage, None, model

    if usage is not None:
        breakdown = calculate_token_cost(usage, context.pricing_for(model, db), model_name=model)
        return breakdown.final_cost, usage, breakdown, model

    if context.pricing_basis == PRICING_FIXED:
        return context.estimated_cost, None, None, model

    # Token-priced operation that reported no usage: the minimum charge applies
    breakdown = calculate_token_cost(TokenUsage(), context.pricing_for(model, db), model_name=model)
    return breakdown.final_cost, None, breakdown, model


def settle(
    context: Optional[CreditContext],
    response: Any,
    db: Session,
    session_user_id: Optional[int] = None,
    request_meta: Optional[RequestMeta] = None
) -> Optional[SettlementOutcome]:
    """
    Charge the real cost of a completed operation.

    Returns None when nothing is charged (no context, or a skip-charge
    context). Errors from the ledger propagate; ``run_with_credits`` is the
    layer that keeps them away from the user's response.
    """
    if context is None or context.skip_charge:
        return None

    user_id = session_user_id if session_user_id is not None else context.user_id
    if user_id is None:
        return None

    with tracer.start_as_current_span("credits.settle") as span:
        span.set_attribute("credits.operation", context.operation_id)
        span.set_attribute("credits.user_id", user_id)

        amount, usage, breakdown, model = _settlement_cost(context, response, db)
        if context.reference_id:
            reference_id, reference_type = context.reference_id, context.reference_type
        else:
            reference_id, reference_type = extract_reference(response)
        meta = request_meta or RequestMeta()

        result = credit_service.consume_credits(
            user_id=user_id,
            transaction_type=context.transaction_type,
            amount=amount,
            description=_DESCRIPTIONS.get(context.transaction_type, f"AI operation: {context.operation_id}"),
            reference_id=reference_id,
            reference_type=reference_type,
            token_usage=usage,
            ai_model=model if (usage or breakdown) else None,
            cost_breakdown=breakdown,
            metadata={
                **meta.to_metadata(),
                "operation": context.operation_id,
                "estimated_cost": float(context.estimated_cost),
                "authenticated": context.is_authenticated,
            },
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            db=db,
        )
        span.set_attribute("credits.consumed", float(result.amount))
        span.set_attribute("credits.duplicate", result.duplicate)

    return SettlementOutcome(
        consumed=result.amount,
        remaining=result.balance_after,
        transaction_id=result.transaction.id,
        token_usage=usage,
        cost_breakdown=breakdown,
        duplicate=result.duplicate,
        low_credit_triggered=result.low_credit_triggered,
        low_credit_threshold=result.low_credit_threshold,
    )


async def _publish_settlement_events(user_id: int, context: CreditContext, outcome: SettlementOutcome) -> None:
    try:
        await publish_credit_balance_changed(
            user_id,
            float(outcome.remaining),
            -float(outcome.consumed),
            context.transaction_type.value,
        )
        if outcome.low_credit_triggered:
            await publish_credits_low(user_id, float(outcome.remaining), outcome.low_credit_threshold)
    except Exception as e:
        logger.warning(f"Credit events for user {user_id} not published: {e}")


def _reject_recorded_reference(context: CreditContext, session_user_id: Optional[int], db: Session) -> None:
    user_id = session_user_id if session_user_id is not None else context.user_id
    existing = credit_service.find_recorded_consumption(
        user_id, context.transaction_type, context.reference_type, context.reference_id, db
    )
    if existing:
        logger.info(
            f"Rejected {context.operation_id} for user {user_id}: reference "
            f"{context.reference_id} already charged as transaction {existing.id}"
        )
        raise DuplicateTransactionError(existing.idempotency_key, existing.id)


async def run_with_credits(
    operation_id: str,
    handler: Callable[[Optional[CreditContext]], Awaitable[Any]],
    db: Session,
    session_user_id: Optional[int] = None,
    body_user_id: Optional[int] = None,
    model_name: Optional[str] = None,
    request_meta: Optional[RequestMeta] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None
) -> Any:
    """
    Authorize, run ``handler``, then settle.

    ``InsufficientCreditsError`` from authorization and any exception from the
    handler propagate, and nothing is charged. A failed settlement is logged
    and the handler's response is returned without ``creditInfo``.

    ``reference_id`` names the logical event being charged. When a debit for
    it is already recorded, ``DuplicateTransactionError`` is raised before the
    handler runs, so a reused id never buys a second operation.
    """
    try:
        context = authorize(
            operation_id,
            db,
            session_user_id=session_user_id,
            body_user_id=body_user_id,
            model_name=model_name,
        )
    except InsufficientCreditsError as e:
        user_id = session_user_id if session_user_id is not None else body_user_id
        requirement = CREDIT_REQUIREMENTS[operation_id]
        try:
            await publish_credits_insufficient(
                user_id, float(e.required), float(e.available), requirement.transaction_type.value
            )
        except Exception as publish_error:
            logger.warning(f"credits_insufficient event for user {user_id} not published: {publish_error}")
        raise

    if context is not None and not context.skip_charge and reference_id:
        context.reference_id = reference_id
        context.reference_type = reference_type
        _reject_recorded_reference(context, session_user_id, db)

    response = await handler(context)

    if context is None or context.skip_charge:
        if context is not None:
            credit_settlements_counter.labels(status="skipped").inc()
        return response

    try:
        outcome = settle(context, response, db, session_user_id=session_user_id, request_meta=request_meta)
    except Exception as e:
        credit_settlements_counter.labels(status="failed").inc()
        logger.error(
            f"Credit settlement failed for {operation_id} (user {context.user_id}); "
            f"response delivered without a charge: {e}",
            exc_info=True
        )
        return response

    if outcome is None:
        return response

    credit_settlements_counter.labels(status="duplicate" if outcome.duplicate else "settled").inc()
    if not outcome.duplicate:
        await _publish_settlement_events(session_user_id or context.user_id, context, outcome)

    if isinstance(response, dict):
        return {**response, "creditInfo": outcome.to_credit_info()}
    return response
