"""
Protected operation wrapper: consume first, refund if the operation fails.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from palette.config.usage_limits import PLAN_FREE
from palette.services import credit_ledger
from palette.services.email_sender import MESSAGE_CONVERSION
from palette.services.notification_scheduler import cancel_notification

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ProtectedResult:
    value: Any
    remaining: int
    is_team_credits: bool
    plan: str


def charge(external_id: str, amount: int = 1) -> credit_ledger.ConsumeResult:
    """
    Consume ``amount`` credits and, for a paying caller, drop any pending
    conversion email.
    """
    consumed = credit_ledger.consume(external_id, amount)

    if consumed.plan != PLAN_FREE:
        try:
            cancel_notification(external_id, MESSAGE_CONVERSION)
        except Exception as e:
            logger.warning(f"Could not cancel conversion email for {external_id}: {e}")

    return consumed


def run_protected_operation(
    external_id: str,
    operation: Callable[[], T],
    amount: int = 1,
) -> ProtectedResult:
    """
    Charge ``amount`` credits, then run ``operation``.

    If the operation raises, the charge is refunded to the balance it came from
    and the original exception propagates. InsufficientCreditsError propagates
    before the operation runs.
    """
    consumed = charge(external_id, amount)

    try:
        value = operation()
    except Exception:
        logger.warning(f"Protected operation failed for {external_id}, refunding {amount} credit(s)")
        refunded = credit_ledger.refund(external_id, amount, owner=consumed)
        logger.info(f"Balance for {external_id} restored to {refunded.remaining}")
        raise

    return ProtectedResult(
        value=value,
        remaining=consumed.remaining,
        is_team_credits=consumed.is_team_credits,
        plan=consumed.plan,
    )
