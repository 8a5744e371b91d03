"""
Authoritative writer of subscription state from gateway webhooks.

Events reach ``process_event`` only after their signature has been verified.
Return values tell the router what to acknowledge; the only exception that
escapes is ``StoreUnavailable``, which must turn into a non-2xx response so
the gateway redelivers an event that was genuinely not processed.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from oddsly_billing.errors import InvalidPlanType
from oddsly_billing.logging_config import sanitize_log_data
from oddsly_billing.policy import plan_type_from_gateway, utcnow
from oddsly_billing.subscription_store import PaymentApplication, SubscriptionStore


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    LINKED = "linked"
    CANCELLED = "cancelled"
    IGNORED = "ignored"
    REJECTED = "rejected"


class MalformedEvent(ValueError):
    """An authentic event whose payload we cannot act on; redelivery will not help."""


def _event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    return (event.get("data") or {}).get("object") or {}


def _user_id(obj: Dict[str, Any], event_type: str) -> str:
    user_id = (obj.get("metadata") or {}).get("userId")
    if not user_id:
        raise MalformedEvent(f"Missing metadata.userId in {event_type} event")
    return user_id


def _timestamp(value, fallback: datetime) -> datetime:
    if value is None:
        return fallback
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise MalformedEvent(f"Invalid created timestamp {value!r}") from e


def handle_payment_intent_succeeded(event: Dict[str, Any], store: SubscriptionStore, now: datetime) -> WebhookOutcome:
    obj = _event_object(event)
    payment_id = obj.get("id")
    if not payment_id:
        raise MalformedEvent("Missing payment intent id in payment_intent.succeeded event")
    user_id = _user_id(obj, "payment_intent.succeeded")
    metadata = obj.get("metadata") or {}
    plan_type = plan_type_from_gateway(metadata.get("type") == "trial", metadata.get("interval"))

    amount = obj.get("amount_received") or obj.get("amount")
    if not isinstance(amount, int) or amount <= 0:
        raise MalformedEvent(f"Invalid amount {amount!r} in payment_intent.succeeded event")

    outcome = store.apply_payment(PaymentApplication(
        user_id=user_id,
        payment_id=payment_id,
        plan_type=plan_type,
        amount=amount,
        start_date=_timestamp(obj.get("created"), now),
        email=obj.get("receipt_email"),
        source="webhook",
    ))
    return WebhookOutcome.APPLIED if outcome.applied else WebhookOutcome.DUPLICATE


def handle_subscription_upserted(event: Dict[str, Any], store: SubscriptionStore, now: datetime) -> WebhookOutcome:
    obj = _event_object(event)
    subscription_id = obj.get("id")
    if not subscription_id:
        raise MalformedEvent(f"Missing subscription id in {event.get('type')} event")
    user_id = _user_id(obj, event.get("type"))

    store.link_gateway_subscription(user_id, subscription_id, obj.get("customer"))
    if obj.get("cancel_at_period_end"):
        _, changed = store.mark_cancelled(user_id)
        if changed:
            return WebhookOutcome.CANCELLED
    return WebhookOutcome.LINKED


def handle_subscription_deleted(event: Dict[str, Any], store: SubscriptionStore, now: datetime) -> WebhookOutcome:
    obj = _event_object(event)
    user_id = _user_id(obj, "customer.subscription.deleted")
    record, changed = store.mark_cancelled(user_id)
    if record is None:
        logging.info(f"Event {event.get('id', 'N/A')}: no subscription for user {user_id}; nothing to cancel.")
        return WebhookOutcome.IGNORED
    return WebhookOutcome.CANCELLED if changed else WebhookOutcome.DUPLICATE


def handle_invoice_payment_failed(event: Dict[str, Any], store: SubscriptionStore, now: datetime) -> WebhookOutcome:
    obj = _event_object(event)
    logging.warning(
        f"Event {event.get('id', 'N/A')}: invoice payment failed for customer {obj.get('customer')} "
        f"(subscription {obj.get('subscription')}). No state change."
    )
    return WebhookOutcome.IGNORED


EVENT_HANDLERS: Dict[str, Callable[[Dict[str, Any], SubscriptionStore, datetime], WebhookOutcome]] = {
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "customer.subscription.created": handle_subscription_upserted,
    "customer.subscription.updated": handle_subscription_upserted,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_failed": handle_invoice_payment_failed,
}


def process_event(event: Dict[str, Any], db: Session, now: Optional[datetime] = None) -> WebhookOutcome:
    """
    Process a verified Stripe event and update subscription records accordingly.

    :param event: Dictionary representing the Stripe event payload.
    :param db: SQLAlchemy Session instance.
    :param now: Processing time, used when the event carries no creation timestamp.
    :return: What happened, for the acknowledgement body.
    :raises StoreUnavailable: on a transient storage failure; the event must be redelivered.
    """
    event_type = event.get("type")
    event_id = event.get("id", "N/A")
    if not event_type:
        logging.error(f"Missing 'type' in event payload {event_id}")
        return WebhookOutcome.REJECTED

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logging.info(f"Unhandled event type: {event_type} for event {event_id}. No action taken.")
        return WebhookOutcome.IGNORED

    try:
        outcome = handler(event, SubscriptionStore(db), now or utcnow())
    except (MalformedEvent, InvalidPlanType) as e:
        logging.error(
            f"Event {event_id} ({event_type}) rejected: {e}. Payload: {sanitize_log_data(_event_object(event))}"
        )
        return WebhookOutcome.REJECTED

    logging.info(f"Event {event_id}: {event_type} processed, outcome={outcome.value}.")
    return outcome
