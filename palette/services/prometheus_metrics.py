"""
Prometheus metrics collection for the Palette backend.

This module initializes and exposes Prometheus metrics for monitoring:
- HTTP request metrics (count, duration, status codes)
- Credit ledger metrics (consumed, refunded, rejected)
- Rate limiting metrics (blocked requests by scope)
- Background job metrics (batch jobs, notifications)
- Onboarding metrics (signup tiers)
"""

import logging
import time
from contextlib import contextmanager

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

# ==================== HTTP Request Metrics ====================
http_request_count = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint and status code",
    ["method", "endpoint", "status_code"],
)

http_request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds by method and endpoint",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
)

# ==================== Credit Ledger Metrics ====================
credits_consumed = Counter(
    "palette_credits_consumed_total",
    "Credits consumed, split by personal or team pool",
    ["pool"],
)

credits_refunded = Counter(
    "palette_credits_refunded_total",
    "Credits refunded after a failed protected operation",
    ["pool"],
)

insufficient_credit_rejections = Counter(
    "palette_insufficient_credit_rejections_total",
    "Consume attempts rejected for insufficient balance",
)

credit_resets = Counter(
    "palette_credit_resets_total",
    "Balance resets by plan",
    ["plan"],
)

# ==================== Rate Limiting Metrics ====================
rate_limited_requests = Counter(
    "rate_limited_requests_total",
    "Requests rejected due to rate limiting by operation and scope",
    ["operation", "scope"],
)

# ==================== Background Job Metrics ====================
batch_jobs = Counter(
    "palette_batch_jobs_total",
    "Batch generation job outcomes",
    ["outcome"],
)

generation_duration = Histogram(
    "palette_generation_duration_seconds",
    "Image generation call duration in seconds",
    buckets=(0.5, 1, 2.5, 5, 10, 25, 60, 120),
)

notifications = Counter(
    "palette_notifications_total",
    "Notification delivery outcomes by message type",
    ["message_type", "outcome"],
)

signups = Counter(
    "palette_signups_total",
    "First-time identity observations by signup tier",
    ["tier"],
)

billing_webhook_events = Counter(
    "palette_billing_webhook_events_total",
    "Billing webhook events by type and result",
    ["event_type", "result"],
)


# ==================== Context Managers & Helpers ====================


def record_http_response(method: str, endpoint: str, status_code: int, duration: float):
    """Record HTTP response metrics."""
    http_request_count.labels(method=method, endpoint=endpoint, status_code=status_code).inc()
    http_request_duration.labels(method=method, endpoint=endpoint).observe(duration)


def record_credits_consumed(amount: int, is_team: bool):
    credits_consumed.labels(pool="team" if is_team else "personal").inc(amount)


def record_credits_refunded(amount: int, is_team: bool):
    credits_refunded.labels(pool="team" if is_team else "personal").inc(amount)


def record_insufficient_credits():
    insufficient_credit_rejections.inc()


def record_credit_reset(plan: str):
    credit_resets.labels(plan=plan).inc()


def record_rate_limited_request(operation: str, scope: str):
    """Record rate-limited request metric."""
    rate_limited_requests.labels(operation=operation, scope=scope).inc()


def record_batch_job(outcome: str):
    batch_jobs.labels(outcome=outcome).inc()


@contextmanager
def track_generation():
    """Context manager timing one generation call."""
    start_time = time.time()
    try:
        yield
    finally:
        generation_duration.observe(time.time() - start_time)


def record_notification(message_type: str, outcome: str):
    notifications.labels(message_type=message_type, outcome=outcome).inc()


def record_signup(tier: str):
    signups.labels(tier=tier).inc()


def record_billing_event(event_type: str, result: str):
    billing_webhook_events.labels(event_type=event_type, result=result).inc()
