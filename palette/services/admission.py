"""
Admission control for protected operations.

Applies the rate limit scopes in order (user, then origin address for free or
unauthenticated callers, then the global ceiling) and reports the first
denial.
"""

import logging
from dataclasses import dataclass

from palette.config.usage_limits import (
    FREE_IP_RATE_LIMITS,
    FREE_USER_RATE_LIMITS,
    GLOBAL_RATE_LIMITS,
    PAID_USER_RATE_LIMITS,
    PLAN_FREE,
)
from palette.services.prometheus_metrics import record_rate_limited_request
from palette.services.rate_limiting import (
    SCOPE_GLOBAL,
    SCOPE_IP,
    SCOPE_USER,
    FixedWindowRateLimiter,
    RateLimitConfig,
    RateLimitResult,
    build_identifier,
    get_rate_limiter,
)

logger = logging.getLogger(__name__)


class RateLimitExceededError(Exception):
    """Raised when a caller exceeds a rate limit scope"""

    def __init__(self, operation: str, scope: str, result: RateLimitResult):
        self.operation = operation
        self.scope = scope
        self.result = result
        super().__init__(f"Rate limit exceeded for {operation} ({scope} scope)")


@dataclass
class AdmissionDecision:
    allowed: bool
    remaining: int | None = None
    reset_at: int | None = None
    scope: str | None = None  # Scope that denied the call
    reason: str | None = None


def _preset(table: dict[str, tuple[int, int]], operation: str) -> RateLimitConfig | None:
    entry = table.get(operation)
    if entry is None:
        return None
    max_requests, window_ms = entry
    return RateLimitConfig(max_requests=max_requests, window_ms=window_ms)


def get_rate_limit_config(operation: str, scope: str, plan: str | None) -> RateLimitConfig | None:
    """
    Preset for an operation and scope.

    Returns None when no limit of that kind applies (e.g. no global ceiling
    for ``api``).
    """
    is_free = plan in (None, PLAN_FREE)
    if scope == SCOPE_USER:
        if is_free:
            return _preset(FREE_USER_RATE_LIMITS, operation) or _preset(
                PAID_USER_RATE_LIMITS, operation
            )
        return _preset(PAID_USER_RATE_LIMITS, operation)
    if scope == SCOPE_IP:
        return _preset(FREE_IP_RATE_LIMITS, operation) if is_free else None
    if scope == SCOPE_GLOBAL:
        return _preset(GLOBAL_RATE_LIMITS, operation)
    raise ValueError(f"Unknown rate limit scope: {scope}")


def check_admission(
    operation: str,
    plan: str | None,
    user_key: str | None = None,
    client_ip: str | None = None,
    limiter: FixedWindowRateLimiter | None = None,
) -> AdmissionDecision:
    """
    Run the rate limit scopes for one call.

    Args:
        operation: generate, analyze, api or stripe
        plan: caller's plan, None for unauthenticated callers
        user_key: verified identity key, if any
        client_ip: origin address, used for free and unauthenticated callers
    """
    limiter = limiter or get_rate_limiter()
    is_free = plan in (None, PLAN_FREE) or user_key is None

    checks: list[tuple[str, str]] = []
    if user_key:
        checks.append((SCOPE_USER, user_key))
    if is_free and client_ip:
        checks.append((SCOPE_IP, client_ip))
    checks.append((SCOPE_GLOBAL, "all"))

    user_result: RateLimitResult | None = None
    for scope, raw_id in checks:
        config = get_rate_limit_config(operation, scope, None if user_key is None else plan)
        if config is None:
            continue

        result = limiter.check(build_identifier(operation, scope, raw_id), config)
        if not result.allowed:
            record_rate_limited_request(operation, scope)
            logger.info(f"Admission denied for {operation} at {scope} scope ({raw_id})")
            return AdmissionDecision(
                allowed=False,
                remaining=result.remaining,
                reset_at=result.reset_at,
                scope=scope,
                reason=f"Rate limit exceeded ({scope})",
            )
        if scope == SCOPE_USER:
            user_result = result

    if user_result is None:
        return AdmissionDecision(allowed=True)
    return AdmissionDecision(
        allowed=True, remaining=user_result.remaining, reset_at=user_result.reset_at
    )


def enforce_admission(
    operation: str,
    plan: str | None,
    user_key: str | None = None,
    client_ip: str | None = None,
    limiter: FixedWindowRateLimiter | None = None,
) -> AdmissionDecision:
    """Like ``check_admission`` but raises RateLimitExceededError on denial."""
    decision = check_admission(operation, plan, user_key, client_ip, limiter)
    if not decision.allowed:
        raise RateLimitExceededError(
            operation,
            decision.scope,
            RateLimitResult(
                allowed=False,
                remaining=decision.remaining or 0,
                reset_at=decision.reset_at or 0,
                limit=0,
            ),
        )
    return decision
