#!/usr/bin/env python3
"""
Billing Sync Service
Translates Stripe webhook events into credit ledger mutations.

Events are deduplicated on the Stripe event id. An event is recorded as
processed only after its handler succeeded, so a handler failure surfaces as
a 5xx and Stripe redelivers it. Every handler assigns state rather than adding
to it, so a redelivered event leaves the ledger where the first delivery did.
"""

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import stripe

from palette.config import Config
from palette.config.usage_limits import PAID_PLANS, PLAN_TIER1, PLAN_TIER2
from palette.db import teams as teams_db
from palette.db import users as users_db
from palette.db.webhook_events import is_event_processed, record_processed_event
from palette.services import credit_ledger
from palette.services.prometheus_metrics import record_billing_event

logger = logging.getLogger(__name__)

PLAN_ALIASES = {
    "tier1": PLAN_TIER1,
    "pro": PLAN_TIER1,
    "tier2": PLAN_TIER2,
    "business": PLAN_TIER2,
    "premium": PLAN_TIER2,
}


class WebhookSignatureError(ValueError):
    """Raised when a webhook payload cannot be authenticated or parsed"""


@dataclass
class WebhookProcessingResult:
    success: bool
    event_type: str
    event_id: str
    message: str
    processed_at: datetime
    user_id: str | None = None
    duplicate: bool = False


def _get(obj: Any, *path: str) -> Any:
    """Walk nested dict keys, returning None on the first missing step."""
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _timestamp_to_iso(value: Any) -> str | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), UTC).isoformat()
    except (TypeError, ValueError, OverflowError):
        return None


class BillingSyncService:
    """Stripe webhook verification, deduplication and dispatch"""

    def __init__(self, webhook_secret: str | None = None):
        self.webhook_secret = webhook_secret or Config.STRIPE_WEBHOOK_SECRET
        if not self.webhook_secret:
            logger.warning(
                "STRIPE_WEBHOOK_SECRET not configured - webhook signature validation will fail"
            )

    # ===== entry points =====

    def verify_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Authenticate a raw webhook body and return the event as a plain dict."""
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
            return json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid webhook payload: {e}") from e

    def handle_webhook(
        self, payload: bytes, signature: str | None, now: datetime | None = None
    ) -> WebhookProcessingResult:
        event = self.verify_event(payload, signature)
        return self.process_event(event, now=now)

    def process_event(
        self, event: dict[str, Any], now: datetime | None = None
    ) -> WebhookProcessingResult:
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise WebhookSignatureError("Webhook event missing id or type")

        logger.info(f"Processing webhook: {event_type} (ID: {event_id})")

        if is_event_processed(event_id):
            record_billing_event(event_type, "duplicate")
            return WebhookProcessingResult(
                success=True,
                event_type=event_type,
                event_id=event_id,
                message=f"Event {event_id} already processed (duplicate)",
                processed_at=datetime.now(UTC),
                duplicate=True,
            )

        obj = _get(event, "data", "object") or {}
        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "invoice.paid": self._handle_invoice_paid,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
        }
        handler = handlers.get(event_type)

        try:
            if handler is None:
                logger.info(f"Unhandled event type: {event_type}")
                user_id, message = None, f"Event {event_type} ignored"
            else:
                user_id, message = handler(obj, now)
        except Exception:
            record_billing_event(event_type, "error")
            logger.error(f"Webhook processing error for {event_id} ({event_type})", exc_info=True)
            raise

        record_processed_event(
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            metadata={"stripe_account": event.get("account"), "result": message},
        )
        record_billing_event(event_type, "processed" if user_id else "dropped")

        return WebhookProcessingResult(
            success=True,
            event_type=event_type,
            event_id=event_id,
            message=message,
            processed_at=datetime.now(UTC),
            user_id=user_id,
        )

    # ===== resolution helpers =====

    @staticmethod
    def _resolve_plan(metadata: dict[str, Any] | None, price_id: str | None = None) -> str | None:
        plan = PLAN_ALIASES.get(str((metadata or {}).get("plan") or "").lower())
        if plan:
            return plan
        if price_id and price_id == Config.STRIPE_PRICE_TIER1:
            return PLAN_TIER1
        if price_id and price_id == Config.STRIPE_PRICE_TIER2:
            return PLAN_TIER2
        return None

    @staticmethod
    def _resolve_user(
        metadata: dict[str, Any] | None,
        subscription_id: str | None = None,
        customer_id: str | None = None,
    ) -> dict[str, Any] | None:
        """metadata.user_id first, then the stored subscription, then the customer."""
        external_id = (metadata or {}).get("user_id")
        if external_id:
            user = users_db.get_user(str(external_id))
            if user is not None:
                return user
        if subscription_id:
            user = users_db.get_user_by_stripe_subscription(subscription_id)
            if user is not None:
                return user
        if customer_id:
            return users_db.get_user_by_stripe_customer(customer_id)
        return None

    @staticmethod
    def _reset_owned_team(external_id: str, now: datetime | None) -> None:
        team = teams_db.get_team_by_owner(external_id)
        if team is not None:
            credit_ledger.reset_team_pool(team["id"], now=now)

    @staticmethod
    def _invoice_subscription(invoice: dict[str, Any]) -> tuple[str | None, dict[str, Any]]:
        details = _get(invoice, "parent", "subscription_details") or invoice.get(
            "subscription_details"
        ) or {}
        subscription_id = details.get("subscription") or invoice.get("subscription")
        return subscription_id, details.get("metadata") or {}

    @staticmethod
    def _invoice_price_and_period(invoice: dict[str, Any]) -> tuple[str | None, Any]:
        lines = _get(invoice, "lines", "data") or []
        if not lines:
            return None, invoice.get("period_end")
        line = lines[0]
        price_id = _get(line, "price", "id") or _get(line, "pricing", "price_details", "price")
        return price_id, _get(line, "period", "end") or invoice.get("period_end")

    # ===== handlers: each returns (resolved external id or None, message) =====

    def _handle_checkout_completed(self, session: dict[str, Any], now: datetime | None):
        metadata = session.get("metadata") or {}
        subscription_id = session.get("subscription")
        customer_id = session.get("customer")

        user = self._resolve_user(metadata, subscription_id, customer_id)
        if user is None:
            logger.error(f"Checkout session {session.get('id')} has no resolvable user, dropping")
            return None, "Unknown identity, event dropped"

        plan = self._resolve_plan(metadata)
        if plan is None:
            logger.error(f"Checkout session {session.get('id')} has no plan metadata, dropping")
            return None, "Unknown plan, event dropped"

        external_id = user["external_id"]
        extra = {}
        if subscription_id:
            extra["stripe_subscription_id"] = subscription_id
        if customer_id:
            extra["stripe_customer_id"] = customer_id

        credit_ledger.reset_for_plan(external_id, plan, now=now, extra_fields=extra)
        self._reset_owned_team(external_id, now)
        logger.info(f"User {external_id} upgraded to {plan}")
        return external_id, f"Activated {plan}"

    def _handle_invoice_paid(self, invoice: dict[str, Any], now: datetime | None):
        subscription_id, sub_metadata = self._invoice_subscription(invoice)
        user = self._resolve_user(sub_metadata, subscription_id, invoice.get("customer"))
        if user is None:
            logger.error(f"Invoice {invoice.get('id')} has no resolvable user, dropping")
            return None, "Unknown identity, event dropped"

        price_id, period_end = self._invoice_price_and_period(invoice)
        plan = user["plan"] if user["plan"] in PAID_PLANS else None
        plan = plan or self._resolve_plan(sub_metadata, price_id)
        if plan is None:
            logger.error(f"Invoice {invoice.get('id')} paid for a user without a paid plan")
            return None, "Unknown plan, event dropped"

        external_id = user["external_id"]
        extra = {}
        period_end_iso = _timestamp_to_iso(period_end)
        if period_end_iso:
            extra["stripe_current_period_end"] = period_end_iso
        if subscription_id and not user.get("stripe_subscription_id"):
            extra["stripe_subscription_id"] = subscription_id

        credit_ledger.reset_for_plan(external_id, plan, now=now, extra_fields=extra)
        self._reset_owned_team(external_id, now)
        logger.info(f"Credits reset for {external_id} on renewal ({plan})")
        return external_id, f"Renewed {plan}"

    def _handle_subscription_updated(self, subscription: dict[str, Any], now: datetime | None):
        user = self._resolve_user(
            subscription.get("metadata"), subscription.get("id"), subscription.get("customer")
        )
        if user is None:
            logger.warning(f"Subscription {subscription.get('id')} update for unknown user")
            return None, "Unknown identity, event dropped"

        # Newer API versions moved current_period_end onto subscription items
        period_end = subscription.get("current_period_end")
        if period_end is None:
            items = _get(subscription, "items", "data") or []
            period_end = items[0].get("current_period_end") if items else None

        period_end_iso = _timestamp_to_iso(period_end)
        if period_end_iso:
            users_db.update_user(user["external_id"], {"stripe_current_period_end": period_end_iso})
        return user["external_id"], "Period end updated"

    def _handle_subscription_deleted(self, subscription: dict[str, Any], now: datetime | None):
        user = self._resolve_user(
            subscription.get("metadata"), subscription.get("id"), subscription.get("customer")
        )
        if user is None:
            logger.warning(f"Subscription {subscription.get('id')} deleted for unknown user")
            return None, "Unknown identity, event dropped"

        credit_ledger.downgrade_to_free(user["external_id"], now=now)
        logger.warning(f"User {user['external_id']} downgraded to free")
        return user["external_id"], "Downgraded to free"

    def _handle_invoice_payment_failed(self, invoice: dict[str, Any], now: datetime | None):
        subscription_id, sub_metadata = self._invoice_subscription(invoice)
        user = self._resolve_user(sub_metadata, subscription_id, invoice.get("customer"))
        external_id = user["external_id"] if user else None
        logger.warning(
            f"Payment failed for invoice {invoice.get('id')} (user: {external_id or 'unknown'})"
        )
        return external_id, "Payment failure logged"


_billing_sync_service: BillingSyncService | None = None


def get_billing_sync_service() -> BillingSyncService:
    global _billing_sync_service
    if _billing_sync_service is None:
        _billing_sync_service = BillingSyncService()
    return _billing_sync_service
