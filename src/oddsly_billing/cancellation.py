import logging
from dataclasses import dataclass
from datetime import datetime

from oddsly_billing.errors import InvalidRequest, NoActiveSubscription, SubscriptionNotFound
from oddsly_billing.models.subscription import SubscriptionRecord
from oddsly_billing.policy import SubscriptionStatus
from oddsly_billing.stripe_integration import StripeIntegration
from oddsly_billing.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


@dataclass
class CancellationResult:
    record: SubscriptionRecord
    already_cancelled: bool

    @property
    def end_date(self) -> datetime:
        return self.record.end_date


def cancel_subscription(user_id: str, store: SubscriptionStore, gateway: StripeIntegration) -> CancellationResult:
    """
    Stop a subscription from renewing while keeping access until its end date.

    Gateway-managed plans are cancelled remotely first; if that call fails the
    local record is left untouched so the two sides never disagree. Cancelling
    an already-cancelled plan succeeds without writing anything.

    :param user_id: Owner of the subscription.
    :param store: Subscription store for the request's session.
    :param gateway: Payment gateway client.
    :return: The cancelled record and whether it was already cancelled.
    :raises SubscriptionNotFound: if the user has no account or no subscription.
    :raises NoActiveSubscription: if the subscription has already expired.
    :raises GatewayUnavailable: if the gateway could not be reached; nothing changed locally.
    :raises StoreUnavailable: if the local write failed after the gateway call.
    """
    if not user_id:
        raise InvalidRequest("userId is required")
    if store.get_account(user_id) is None:
        raise SubscriptionNotFound("User not found")
    record = store.get_current(user_id)
    if record is None:
        raise SubscriptionNotFound("No subscription found for user")

    if record.status is SubscriptionStatus.CANCELLED:
        logger.info(f"Subscription for user {user_id} already cancelled; nothing to do.")
        return CancellationResult(record=record, already_cancelled=True)
    if record.status is not SubscriptionStatus.ACTIVE:
        raise NoActiveSubscription("No active subscription or payment found")

    if record.gateway_subscription_id:
        gateway.cancel_at_period_end(record.gateway_subscription_id)
    else:
        logger.info(f"Subscription for user {user_id} is not gateway-managed ({record.plan_type.value}); cancelling locally.")

    record, changed = store.mark_cancelled(user_id)
    return CancellationResult(record=record, already_cancelled=not changed)
