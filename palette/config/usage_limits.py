"""
Usage Limits Configuration
Centralized configuration for plan grants, signup tiers, rate limits and
background job batch sizes.
"""

import os

# Plans
PLAN_FREE = "free"
PLAN_TIER1 = "tier1"
PLAN_TIER2 = "tier2"
VALID_PLANS = (PLAN_FREE, PLAN_TIER1, PLAN_TIER2)
PAID_PLANS = (PLAN_TIER1, PLAN_TIER2)  # Eligible for daily jobs

# Credit grants per billing period
PLAN_CREDITS = {
    PLAN_FREE: 3,
    PLAN_TIER1: 50,
    PLAN_TIER2: 150,
}
TEAM_POOL_CREDITS = PLAN_CREDITS[PLAN_TIER2]
TEAM_MAX_MEMBERS = 3  # Pending + accepted memberships, owner included

# Daily signup tiers (counter value after increment)
EARLY_BIRD_LIMIT = int(os.environ.get("EARLY_BIRD_LIMIT", "30"))  # K1
DAILY_SIGNUP_CAPACITY = int(os.environ.get("DAILY_SIGNUP_CAPACITY", "300"))  # K2
EARLY_BIRD_CREDITS = int(os.environ.get("EARLY_BIRD_CREDITS", "2"))  # G1
NORMAL_SIGNUP_CREDITS = int(os.environ.get("NORMAL_SIGNUP_CREDITS", "1"))  # G2

# Compare-and-set loops
CREDIT_CAS_MAX_ATTEMPTS = 50
SIGNUP_COUNTER_CAS_MAX_ATTEMPTS = 200
PROVISIONING_STALE_SECONDS = 30  # Placeholder without a tier older than this is taken over

# Rate limits: (max_requests, window_ms)
RATE_LIMIT_SWEEP_INTERVAL_MS = 5 * 60 * 1000

PAID_USER_RATE_LIMITS = {
    "generate": (50, 60_000),
    "analyze": (20, 60_000),
    "api": (100, 60_000),
    "stripe": (10, 60_000),
}
FREE_USER_RATE_LIMITS = {
    "generate": (2, 60 * 60_000),
    "analyze": (1, 60 * 60_000),
}
FREE_IP_RATE_LIMITS = {
    "generate": (5, 60 * 60_000),
    "analyze": (2, 60 * 60_000),
}
GLOBAL_RATE_LIMITS = {
    "generate": (1000, 60_000),
    "analyze": (200, 60_000),
}

# Batch scheduler
BATCH_SIZE = 50
DAILY_JOB_CREDIT_COST = 1
QUEUE_STATS_UPCOMING_LIMIT = 5

# Notifications
NOTIFICATION_BATCH_SIZE = 50
NOTIFICATION_MAX_ATTEMPTS = 3
