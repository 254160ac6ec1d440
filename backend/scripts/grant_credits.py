#!/usr/bin/env python3
"""
Grant credits, sweep expired credits, or seed model pricing.

Usage:
    # Grant 100 purchased (non-expiring) credits
    python grant_credits.py --email user@example.com --credits 100

    # Grant 200 expiring credits valid for 30 days
    python grant_credits.py --email user@example.com --credits 200 --expires-in-days 30

    # Run the credit expiry sweep now
    python grant_credits.py --expire-now

    # Insert built-in model pricing rows that are not configured yet
    python grant_credits.py --seed-pricing
"""

import argparse
import sys
import os
from datetime import datetime, timezone, timedelta

# Add parent directory to path to import the app package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.db.session import SessionLocal, init_db
from app.models import CreditTransactionType
from app.services.auth_service import get_user_by_email
from app.services.credit_service import allocate_credits, get_credit_balance
from app.services.pricing_service import seed_default_pricing
from app.tasks.scheduler import run_credit_expiry_sweep


def grant_credits(email: str, credits: float, expires_in_days: int = None, reason: str = None):
    """Grant credits to a user"""
    db = SessionLocal()
    try:
        user = get_user_by_email(email, db)
        if not user:
            print(f"❌ User not found: {email}")
            return False

        old_balance = get_credit_balance(user.id, db)["available"]
        is_expiring = expires_in_days is not None
        expires_at = datetime.now(timezone.utc) + timedelta(days=expires_in_days) if is_expiring else None

        allocate_credits(
            user_id=user.id,
            amount=credits,
            transaction_type=CreditTransactionType.ADMIN_ADJUSTMENT,
            description=reason or "Granted by admin script",
            reference_type="admin_script",
            is_expiring=is_expiring,
            expires_at=expires_at,
            metadata={"admin_script": True},
            db=db,
        )

        new_balance = get_credit_balance(user.id, db)["available"]
        print(f"✅ Granted {credits} credits to {email}")
        print(f"   Balance: {old_balance} → {new_balance}")
        if expires_at:
            print(f"   Expiring on: {expires_at.date()}")
        return True

    except Exception as e:
        print(f"❌ Error: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def expire_now():
    """Run the expiry sweep once"""
    try:
        swept = run_credit_expiry_sweep()
        print(f"✅ Expired credits for {swept} user(s)")
        return True
    except Exception as e:
        print(f"❌ Error: {e}")
        return False


def seed_pricing():
    """Store the built-in pricing table so admins can edit it"""
    init_db()
    db = SessionLocal()
    try:
        created = seed_default_pricing(db)
        print(f"✅ Seeded pricing for {created} model(s)")
        return True
    except Exception as e:
        print(f"❌ Error: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(
        description='Grant credits and run credit maintenance',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Grant 100 credits
  python %(prog)s --email user@example.com --credits 100

  # Grant 200 credits that expire in 30 days
  python %(prog)s --email user@example.com --credits 200 --expires-in-days 30

  # Sweep expired credits now
  python %(prog)s --expire-now

  # Seed model pricing
  python %(prog)s --seed-pricing
        """
    )

    parser.add_argument('--email', help='User email address')
    parser.add_argument('--credits', type=float, help='Number of credits to grant')
    parser.add_argument('--expires-in-days', type=int, help='Grant as expiring credits valid for this many days')
    parser.add_argument('--reason', help='Description stored on the transaction')
    parser.add_argument('--expire-now', action='store_true', help='Run the credit expiry sweep')
    parser.add_argument('--seed-pricing', action='store_true', help='Insert built-in model pricing rows')

    args = parser.parse_args()

    actions = sum([
        args.credits is not None,
        args.expire_now,
        args.seed_pricing
    ])

    if actions == 0:
        print("❌ Error: Must specify one action (--credits, --expire-now, or --seed-pricing)")
        parser.print_help()
        sys.exit(1)

    if actions > 1:
        print("❌ Error: Can only specify one action at a time")
        sys.exit(1)

    if args.credits is not None:
        if not args.email:
            print("❌ Error: --credits requires --email")
            sys.exit(1)
        if args.credits <= 0:
            print("❌ Error: --credits must be greater than zero")
            sys.exit(1)
        success = grant_credits(args.email, args.credits, args.expires_in_days, args.reason)
    elif args.expire_now:
        success = expire_now()
    else:
        success = seed_pricing()

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
