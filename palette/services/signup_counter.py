"""
Daily signup tier counter.

One row per UTC calendar day. The first observer of a day inserts the row with
count 1; everyone else increments it with a compare-and-set update, so the
stored count equals the number of observations and each observation sees a
distinct post-increment value.
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import UTC, date, datetime

from palette.config import usage_limits
from palette.db import signup_counts
from palette.services.prometheus_metrics import record_signup

logger = logging.getLogger(__name__)

TIER_EARLY_BIRD = "early_bird"
TIER_NORMAL = "normal"
TIER_CAPACITY_REACHED = "capacity_reached"


class SignupCounterContentionError(Exception):
    """Raised when the counter could not be incremented after repeated contention"""


@dataclass(frozen=True)
class SignupObservation:
    tier: str
    count: int
    grant: int

    @property
    def is_early_bird(self) -> bool:
        return self.tier == TIER_EARLY_BIRD


def tier_for_count(count: int) -> tuple[str, int]:
    """Map a post-increment counter value to (tier, credit grant)."""
    if count <= usage_limits.EARLY_BIRD_LIMIT:
        return TIER_EARLY_BIRD, usage_limits.EARLY_BIRD_CREDITS
    if count <= usage_limits.DAILY_SIGNUP_CAPACITY:
        return TIER_NORMAL, usage_limits.NORMAL_SIGNUP_CREDITS
    return TIER_CAPACITY_REACHED, 0


def _increment(date_key: str) -> int:
    for attempt in range(usage_limits.SIGNUP_COUNTER_CAS_MAX_ATTEMPTS):
        current = signup_counts.get_count(date_key)

        if current is None:
            if signup_counts.insert_first(date_key):
                return 1
            # Lost the creation race; the row exists now
            continue

        if signup_counts.compare_and_set_count(date_key, current, current + 1):
            return current + 1

        # Jittered backoff keeps a burst of signups from retrying in lockstep
        time.sleep(random.uniform(0, 0.002 * min(attempt + 1, 10)))

    raise SignupCounterContentionError(
        f"Could not increment signup counter for {date_key} after "
        f"{usage_limits.SIGNUP_COUNTER_CAS_MAX_ATTEMPTS} attempts"
    )


def observe_signup(today: date | None = None) -> SignupObservation:
    """
    Count one first-time identity against today's counter.

    Must be called at most once per identity (the ledger's provisioning path).
    """
    day = today or datetime.now(UTC).date()
    date_key = day.isoformat()

    count = _increment(date_key)
    tier, grant = tier_for_count(count)
    record_signup(tier)
    logger.info(f"Signup #{count} on {date_key}: tier={tier}, grant={grant}")
    return SignupObservation(tier=tier, count=count, grant=grant)
