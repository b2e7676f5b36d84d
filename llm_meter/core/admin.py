"""
Administrative balance operations.

Manual resets, reset status reporting, and balance updates.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from .scheduler import ResetScheduler

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def reset_status(scheduler: ResetScheduler) -> Dict[str, Any]:
    """Report the reset configuration and whether a reset is due now."""
    now = scheduler.clock.now()
    return {
        "success": True,
        "reset_day": scheduler.configured_reset_day,
        "effective_reset_day": scheduler.effective_reset_day(now),
        "last_reset": _iso(scheduler.state_store.get_last_reset()),
        "should_reset_today": scheduler.should_reset_now(now),
        "scheduler": scheduler.status(),
    }


def reset_balances(
    scheduler: ResetScheduler, user_id: Optional[str] = None, force: bool = False
) -> Dict[str, Any]:
    """Reset one user's balance, or every user's balance, to default.

    A single-user reset never touches the last-reset timestamp. A bulk
    reset runs only when due, unless ``force`` is set, and then stamps it.

    Raises:
        UserNotFoundError: If ``user_id`` does not exist
    """
    ledger = scheduler.ledger

    if user_id:
        new_balance = ledger.reset_one(user_id)
        logger.info("Balance reset for user %s to %s", user_id, new_balance)
        return {
            "success": True,
            "message": f"Balance reset for user {user_id}",
            "new_balance": float(new_balance),
        }

    now = scheduler.clock.now()
    if not force and not scheduler.should_reset_now(now):
        last_reset = _iso(scheduler.state_store.get_last_reset())
        reset_day = scheduler.configured_reset_day
        effective = scheduler.effective_reset_day(now)
        return {
            "success": False,
            "message": (
                f"Reset not needed. Reset day is {reset_day} (effective this month: "
                f"{effective}), last reset was {last_reset or 'never'}"
            ),
            "reset_day": reset_day,
            "effective_reset_day": effective,
            "last_reset": last_reset,
        }

    count = ledger.reset_all()
    reset_date = scheduler.clock.now()
    scheduler.state_store.set_last_reset(reset_date)
    logger.info("Reset balances for %d users (force=%s)", count, force)
    return {
        "success": True,
        "message": f"Reset balances for {count} users to their default values",
        "users_affected": count,
        "reset_date": reset_date.isoformat(),
    }


def update_default_balance(scheduler: ResetScheduler, user_id: str, default_balance) -> Dict[str, Any]:
    """Set the balance a user is restored to by resets.

    Raises:
        ValueError: If ``default_balance`` is not a number
        BalanceOverflowError: If it exceeds the maximum balance
        UserNotFoundError: If the user does not exist
    """
    amount = _to_amount(default_balance, "Default balance")
    logger.info("Updating default_balance for user %s to %s", user_id, amount)
    value = scheduler.ledger.set_default_balance(user_id, amount)
    return {"success": True, "default_balance": float(value)}


def update_balance(scheduler: ResetScheduler, user_id: str, balance) -> Dict[str, Any]:
    """Overwrite a user's current balance.

    Raises:
        ValueError: If ``balance`` is not a number
        BalanceOverflowError: If it exceeds the maximum balance
        UserNotFoundError: If the user does not exist
    """
    amount = _to_amount(balance, "Balance")
    value = scheduler.ledger.set_balance(user_id, amount)
    return {"success": True, "balance": float(value)}


def _to_amount(value, label: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ValueError(f"{label} must be a number")
    amount = Decimal(str(value))
    if not amount.is_finite():
        raise ValueError(f"{label} must be a number")
    return amount
