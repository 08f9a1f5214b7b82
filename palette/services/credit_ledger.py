"""
Credit Ledger

Authoritative credit balances. A user without a team spends from
``users.credits_remaining``; a user on a team spends from
``teams.credits_pool`` and their personal balance is left untouched.

Every balance change is a compare-and-set update against the balance that was
just read (``... WHERE credits = <read value>``), retried when another writer
got there first. Combined with the non-negative CHECK constraint this keeps
concurrent consumers from overspending.
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from dateutil.relativedelta import relativedelta

from palette.config.usage_limits import (
    CREDIT_CAS_MAX_ATTEMPTS,
    PLAN_CREDITS,
    PLAN_FREE,
    PROVISIONING_STALE_SECONDS,
    TEAM_POOL_CREDITS,
    VALID_PLANS,
)
from palette.db import teams as teams_db
from palette.db import users as users_db
from palette.services.prometheus_metrics import (
    record_credit_reset,
    record_credits_consumed,
    record_credits_refunded,
    record_insufficient_credits,
)
from palette.services.signup_counter import observe_signup

logger = logging.getLogger(__name__)


class InsufficientCreditsError(Exception):
    """Raised when the effective balance cannot cover a consume"""

    def __init__(self, balance: int, required: int, is_team_credits: bool = False):
        self.balance = balance
        self.required = required
        self.is_team_credits = is_team_credits
        pool = "team pool" if is_team_credits else "balance"
        super().__init__(f"Insufficient credits: {pool} {balance}, required {required}")


class CreditContentionError(Exception):
    """Raised when a balance update kept losing compare-and-set races"""


class UserNotFoundError(LookupError):
    """Raised when an operation targets an identity that was never provisioned"""


@dataclass
class ConsumeResult:
    remaining: int
    is_team_credits: bool
    plan: str
    team_id: int | None = None


def next_reset_at(now: datetime | None = None) -> datetime:
    """One calendar month from ``now`` (day clamped to the target month's length)."""
    return (now or datetime.now(UTC)) + relativedelta(months=1)


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"Credit amount must be a positive integer, got {amount!r}")


def _backoff(attempt: int) -> None:
    time.sleep(random.uniform(0, 0.001 * min(attempt + 1, 10)))


def _require_user(external_id: str) -> dict[str, Any]:
    user = users_db.get_user(external_id)
    if user is None:
        raise UserNotFoundError(f"User {external_id} not found")
    return user


def _get_team_for(user: dict[str, Any]) -> dict[str, Any] | None:
    team_id = user.get("team_id")
    if not team_id:
        return None
    team = teams_db.get_team(team_id)
    if team is None:
        logger.warning(
            f"User {user['external_id']} points at missing team {team_id}; using personal balance"
        )
    return team


# ===== Provisioning =====


def _is_abandoned(user: dict[str, Any], now: datetime) -> bool:
    """A placeholder whose signup grant never landed and nobody is working on."""
    if user.get("signup_tier") is not None:
        return False
    updated_at = user.get("updated_at")
    if not updated_at:
        return False
    cutoff = now - timedelta(seconds=PROVISIONING_STALE_SECONDS)
    return updated_at < cutoff.isoformat()


def _apply_signup_grant(external_id: str, placeholder: dict[str, Any]) -> dict[str, Any]:
    try:
        observation = observe_signup()
    except Exception:
        logger.error(
            f"Signup count failed for {external_id}; dropping placeholder so the next call retries",
            exc_info=True,
        )
        try:
            users_db.delete_unprovisioned_user(external_id)
        except Exception as cleanup_error:
            logger.error(f"Could not drop placeholder for {external_id}: {cleanup_error}")
        raise

    updated = users_db.complete_signup(
        external_id,
        {
            "credits_remaining": observation.grant,
            "is_early_bird": observation.is_early_bird,
            "signup_tier": observation.tier,
        },
    )
    if updated is None:
        logger.warning(f"Signup grant for {external_id} was applied by another request")
        return users_db.get_user(external_id) or placeholder

    logger.info(
        f"Provisioned {external_id}: tier={observation.tier}, credits={observation.grant}"
    )
    return updated


def ensure_provisioned(
    external_id: str,
    email: str | None = None,
    name: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Return the user record, creating it on first sight.

    Only the request whose placeholder insert wins the unique constraint counts
    the signup and applies the tier grant; concurrent losers get the existing
    row back. If counting the signup fails the placeholder is dropped and the
    error propagates, so the next call starts over. A placeholder left without
    a tier for longer than PROVISIONING_STALE_SECONDS is taken over by one
    caller and finished.
    """
    now = now or datetime.now(UTC)
    user = users_db.get_user(external_id)
    if user is not None:
        if not _is_abandoned(user, now):
            return user
        claimed = users_db.claim_unprovisioned_user(external_id, user["updated_at"])
        if claimed is None:
            return users_db.get_user(external_id) or user
        logger.warning(f"Finishing abandoned provisioning for {external_id}")
        return _apply_signup_grant(external_id, claimed)

    placeholder = users_db.insert_placeholder_user(external_id, email=email, name=name)
    if placeholder is None:
        existing = users_db.get_user(external_id)
        if existing is None:
            raise RuntimeError(f"User {external_id} vanished after a concurrent insert")
        return existing

    return _apply_signup_grant(external_id, placeholder)


# ===== Consume / refund =====


def consume(external_id: str, amount: int = 1) -> ConsumeResult:
    """
    Spend ``amount`` credits from the caller's effective balance.

    Raises:
        InsufficientCreditsError: balance < amount (nothing is changed)
        CreditContentionError: compare-and-set retries exhausted
        UserNotFoundError: identity not provisioned
    """
    _validate_amount(amount)

    for attempt in range(CREDIT_CAS_MAX_ATTEMPTS):
        user = _require_user(external_id)
        team = _get_team_for(user)

        if team is not None:
            balance = team["credits_pool"]
            if balance < amount:
                record_insufficient_credits()
                raise InsufficientCreditsError(balance, amount, is_team_credits=True)
            if teams_db.compare_and_set_pool(team["id"], balance, balance - amount):
                record_credits_consumed(amount, is_team=True)
                return ConsumeResult(
                    remaining=balance - amount,
                    is_team_credits=True,
                    plan=user["plan"],
                    team_id=team["id"],
                )
        else:
            balance = user["credits_remaining"]
            if balance < amount:
                record_insufficient_credits()
                raise InsufficientCreditsError(balance, amount)
            if users_db.compare_and_set_credits(external_id, balance, balance - amount):
                record_credits_consumed(amount, is_team=False)
                return ConsumeResult(
                    remaining=balance - amount, is_team_credits=False, plan=user["plan"]
                )

        _backoff(attempt)

    raise CreditContentionError(
        f"Could not consume {amount} credits for {external_id} after {CREDIT_CAS_MAX_ATTEMPTS} attempts"
    )


def refund(external_id: str, amount: int, owner: ConsumeResult | None = None) -> ConsumeResult:
    """
    Give ``amount`` credits back.

    With ``owner`` (the result of the matching consume) the credits go back to
    the balance they were taken from, even if the user joined or left a team in
    between. Without it, the current effective balance is credited.
    """
    _validate_amount(amount)

    for attempt in range(CREDIT_CAS_MAX_ATTEMPTS):
        user = _require_user(external_id)
        if owner is None:
            team = _get_team_for(user)
        elif owner.team_id is not None:
            team = teams_db.get_team(owner.team_id)
            if team is None:
                logger.warning(
                    f"Team {owner.team_id} is gone; refunding {external_id} personally"
                )
        else:
            team = None

        if team is not None:
            balance = team["credits_pool"]
            if teams_db.compare_and_set_pool(team["id"], balance, balance + amount):
                record_credits_refunded(amount, is_team=True)
                logger.info(f"Refunded {amount} credits to team {team['id']} for {external_id}")
                return ConsumeResult(
                    remaining=balance + amount,
                    is_team_credits=True,
                    plan=user["plan"],
                    team_id=team["id"],
                )
        else:
            balance = user["credits_remaining"]
            if users_db.compare_and_set_credits(external_id, balance, balance + amount):
                record_credits_refunded(amount, is_team=False)
                logger.info(f"Refunded {amount} credits to {external_id}")
                return ConsumeResult(
                    remaining=balance + amount, is_team_credits=False, plan=user["plan"]
                )

        _backoff(attempt)

    raise CreditContentionError(
        f"Could not refund {amount} credits for {external_id} after {CREDIT_CAS_MAX_ATTEMPTS} attempts"
    )


# ===== Resets =====


def reset_for_plan(
    external_id: str,
    plan: str,
    now: datetime | None = None,
    extra_fields: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Set the personal balance to the plan's grant and schedule the next reset
    one calendar month from ``now``. Repeating the call is harmless: the
    balance is assigned, not added to.
    """
    if plan not in VALID_PLANS:
        raise ValueError(f"Unknown plan: {plan}")

    _require_user(external_id)
    grant = PLAN_CREDITS[plan]
    updated = users_db.update_user(
        external_id,
        {
            **(extra_fields or {}),
            "plan": plan,
            "credits_remaining": grant,
            "credits_reset_at": next_reset_at(now).isoformat(),
        },
    )
    record_credit_reset(plan)
    logger.info(f"Reset {external_id} to plan {plan} with {grant} credits")
    return updated


def downgrade_to_free(external_id: str, now: datetime | None = None) -> dict[str, Any]:
    """Move a user back to the free plan and forget their subscription."""
    return reset_for_plan(
        external_id,
        PLAN_FREE,
        now=now,
        extra_fields={
            "stripe_subscription_id": None,
            "stripe_price_id": None,
            "stripe_current_period_end": None,
        },
    )


def reset_team_pool(team_id: int, now: datetime | None = None) -> dict[str, Any]:
    """Refill a team's pool to the team grant and push its reset date out a month."""
    for attempt in range(CREDIT_CAS_MAX_ATTEMPTS):
        team = teams_db.get_team(team_id)
        if team is None:
            raise LookupError(f"Team {team_id} not found")

        updated = teams_db.compare_and_set_pool(
            team_id,
            team["credits_pool"],
            TEAM_POOL_CREDITS,
            extra_fields={"credits_reset_at": next_reset_at(now).isoformat()},
        )
        if updated:
            record_credit_reset("team")
            logger.info(f"Reset team {team_id} pool to {TEAM_POOL_CREDITS} credits")
            return updated
        _backoff(attempt)

    raise CreditContentionError(f"Could not reset pool for team {team_id}")


# ===== Reads =====


def get_credit_summary(external_id: str) -> dict[str, Any]:
    """Effective balance as shown to the user."""
    user = _require_user(external_id)
    team = _get_team_for(user)

    if team is not None:
        remaining = team["credits_pool"]
        total = TEAM_POOL_CREDITS
        reset_at = team.get("credits_reset_at")
    else:
        remaining = user["credits_remaining"]
        total = PLAN_CREDITS.get(user["plan"], PLAN_CREDITS[PLAN_FREE])
        reset_at = user.get("credits_reset_at")

    return {
        "remaining": remaining,
        "total": total,
        "plan": user["plan"],
        "can_generate": remaining > 0,
        "reset_at": reset_at,
        "is_team_credits": team is not None,
    }
