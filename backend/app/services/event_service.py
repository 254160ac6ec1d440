"""Event publishing service for real-time credit updates via Redis pub/sub"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.db.redis import get_async_redis_client

logger = logging.getLogger(__name__)

# Balance updates go to the credits channel, notifications to the events channel
CREDITS_CHANNEL_EVENTS = {"credit_balance_changed"}


async def publish_event(
    user_id: int,
    event_type: str,
    data: Dict[str, Any],
    channel: Optional[str] = None
) -> None:
    """Publish an event to Redis pub/sub for real-time updates (async)

    Args:
        user_id: User ID to send event to
        event_type: Event type (e.g., 'credit_balance_changed', 'credits_low')
        data: Event payload data
        channel: Optional channel override (defaults to the credits or events channel by event type)
    """
    try:
        if not channel:
            if event_type in CREDITS_CHANNEL_EVENTS:
                channel = f"user:{user_id}:credits"
            else:
                channel = f"user:{user_id}:events"

        event = {
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        event_json = json.dumps(event, default=str)
        logger.debug(f"Publishing event {event_type} to {channel}, size: {len(event_json)} bytes")

        result = await get_async_redis_client().publish(channel, event_json)
        if result > 0:
            logger.debug(f"Event {event_type} delivered to {result} subscriber(s) on {channel}")

    except Exception as e:
        logger.error(f"Failed to publish event {event_type} for user {user_id}: {e}", exc_info=True)
        raise  # Callers decide whether a lost event matters


async def publish_credit_balance_changed(
    user_id: int,
    new_balance: float,
    change_amount: float,
    reason: Optional[str] = None
) -> None:
    """Publish credit_balance_changed event"""
    await publish_event(
        user_id,
        "credit_balance_changed",
        {
            "new_balance": new_balance,
            "change_amount": change_amount,
            "reason": reason
        }
    )


async def publish_credits_low(user_id: int, balance: float, threshold: int) -> None:
    """Publish credits_low event (fires once per crossing of the threshold)"""
    await publish_event(
        user_id,
        "credits_low",
        {
            "balance": balance,
            "threshold": threshold
        }
    )


async def publish_credits_insufficient(
    user_id: int,
    required: float,
    available: float,
    transaction_type: str
) -> None:
    """Publish credits_insufficient event"""
    await publish_event(
        user_id,
        "credits_insufficient",
        {
            "required": required,
            "available": available,
            "transaction_type": transaction_type
        }
    )
