"""Background scheduler tasks for credit expiry"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.metrics import scheduler_runs_counter
from app.db.session import SessionLocal
from app.services.credit_service import expire_due_credits

logger = logging.getLogger(__name__)


def run_credit_expiry_sweep(db: Optional[Session] = None, now: Optional[datetime] = None) -> int:
    """Expire every balance whose credits_expire_at has passed. Returns users swept."""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        swept = expire_due_credits(db, now=now or datetime.now(timezone.utc))
        scheduler_runs_counter.labels(job="credit_expiry", status="success").inc()
        return swept
    except Exception:
        scheduler_runs_counter.labels(job="credit_expiry", status="failure").inc()
        db.rollback()
        raise
    finally:
        if should_close:
            db.close()


async def credit_expiry_scheduler_task():
    """Background task that sweeps expired credits every CREDIT_EXPIRY_CHECK_INTERVAL seconds"""
    logger.info("Starting credit expiry scheduler task...")

    while True:
        try:
            await asyncio.sleep(settings.CREDIT_EXPIRY_CHECK_INTERVAL)
            swept = await asyncio.to_thread(run_credit_expiry_sweep)
            if swept:
                logger.info(f"Credit expiry sweep expired credits for {swept} user(s)")
        except asyncio.CancelledError:
            logger.info("Credit expiry scheduler task stopped")
            raise
        except Exception as e:
            logger.error(f"Error in credit expiry scheduler: {e}", exc_info=True)
