import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import stripe

from oddsly_billing.config import Settings, get_settings
from oddsly_billing.errors import (
    BillingError,
    GatewayUnavailable,
    InvalidRequest,
    InvalidSignature,
)
from oddsly_billing.policy import (
    PlanType,
    gateway_interval,
    idempotency_key,
    parse_plan_type,
    utcnow,
)

logger = logging.getLogger(__name__)

# Errors worth retrying: the request may not have reached the gateway or it failed on its side.
TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.APIError,
    stripe.RateLimitError,
)


@dataclass(frozen=True)
class PaymentIntentResult:
    client_secret: str
    payment_id: str


def configure_stripe(settings: Settings) -> None:
    """
    Point the stripe SDK at our key and bound every call by the gateway timeout.

    Called once at application startup; the SDK settings are process-wide.
    """
    stripe.api_key = settings.stripe_api_key.get_secret_value()
    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.gateway_timeout_seconds)


class StripeIntegration:
    """
    This class encapsulates the integration with the Stripe API: payment
    intent creation, subscription cancellation and webhook verification.

    Stripe exceptions never leave this class; they are translated into
    ``GatewayUnavailable`` (transient) or ``InvalidRequest`` (permanent).
    Only intent creation is retried, because only it is idempotency-keyed.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.max_retries = max_retries if max_retries is not None else self.settings.gateway_max_retries
        self.retry_delay = retry_delay if retry_delay is not None else self.settings.gateway_retry_delay
        self.currency = self.settings.stripe_currency
        self._sleep = sleep

    def create_payment_intent(
        self,
        amount: int,
        plan_type: PlanType,
        user_id: str,
        email: Optional[str] = None,
        intended_start: Optional[datetime] = None,
    ) -> PaymentIntentResult:
        """
        Create a payment intent for a plan purchase, retrying transient failures.

        The request carries an idempotency key derived from the user, the plan
        and the intended start day, so a retry of the same logical purchase is
        collapsed by the gateway into the intent it already created.

        :param amount: Charge in minor currency units; must be positive.
        :param plan_type: Plan being purchased.
        :param user_id: Our user id, echoed back in webhook metadata.
        :param email: Optional receipt email.
        :param intended_start: When the plan is meant to start (defaults to now).
        :return: The intent's client secret and payment id.
        :raises InvalidRequest: on bad input or a gateway 4xx.
        :raises GatewayUnavailable: once all retries are exhausted.
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidRequest("Amount is required")
        if not user_id:
            raise InvalidRequest("userId is required")
        plan_type = parse_plan_type(plan_type)

        key = idempotency_key(user_id, plan_type, intended_start or utcnow())
        metadata = {
            "userId": user_id,
            "type": "trial" if plan_type is PlanType.TRIAL else "subscription",
        }
        interval = gateway_interval(plan_type)
        if interval:
            metadata["interval"] = interval
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": self.currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if email:
            params["receipt_email"] = email

        attempt = 0
        last_error: Optional[BillingError] = None
        while attempt < self.max_retries:
            try:
                intent = stripe.PaymentIntent.create(idempotency_key=key, **params)
                logger.info(
                    f"Created payment intent {intent['id']} for user {user_id} "
                    f"({plan_type.value}, amount={amount}, attempt {attempt + 1})"
                )
                return PaymentIntentResult(client_secret=intent["client_secret"], payment_id=intent["id"])
            except stripe.StripeError as e:
                error = self._translate("create payment intent", e)
                if not isinstance(error, GatewayUnavailable):
                    logger.error(f"Payment intent rejected for user {user_id}: {e}", exc_info=True)
                    raise error from e
                logger.error(f"Error creating payment intent (attempt {attempt + 1}): {e}", exc_info=True)
                last_error = error
                attempt += 1
                if attempt < self.max_retries:
                    self._sleep(self.retry_delay * (2 ** (attempt - 1)))
        raise GatewayUnavailable(
            f"Failed to create payment intent after {self.max_retries} attempts"
            + (f": {last_error.message}" if last_error else "")
        )

    def retrieve_payment_intent(self, payment_id: str) -> Dict[str, Any]:
        """
        Fetch a payment intent to confirm its status and metadata.

        Not retried: it belongs to the confirmation step.
        """
        if not payment_id or not payment_id.strip():
            raise InvalidRequest("paymentIntentId cannot be empty")
        try:
            return stripe.PaymentIntent.retrieve(payment_id)
        except stripe.StripeError as e:
            logger.error(f"Error retrieving payment intent {payment_id}: {e}", exc_info=True)
            raise self._translate("retrieve payment intent", e) from e

    def cancel_at_period_end(self, subscription_id: str) -> Dict[str, Any]:
        """
        Turn off auto-renewal on a gateway-managed subscription.

        The subscription stays active until its current period ends.
        """
        try:
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
            logger.info(f"Disabled auto-renewal for gateway subscription {subscription_id}")
            return subscription
        except stripe.StripeError as e:
            logger.error(f"Error cancelling subscription {subscription_id}: {e}", exc_info=True)
            raise self._translate("cancel subscription", e) from e

    def process_webhook_event(self, payload: str, sig_header: str, endpoint_secret: Optional[str] = None) -> Dict[str, Any]:
        """
        Validate and parse a webhook event from Stripe.

        :param payload: The raw payload from the webhook.
        :param sig_header: The Stripe-Signature header from the webhook.
        :param endpoint_secret: Signing secret; defaults to the configured one.
        :return: The reconstructed event.
        :raises InvalidSignature: if the signature or the payload does not verify.
        """
        secret = endpoint_secret or self.settings.stripe_endpoint_secret.get_secret_value()
        if not sig_header:
            raise InvalidSignature("Missing Stripe-Signature header")
        try:
            return stripe.Webhook.construct_event(payload, sig_header, secret)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Webhook signature verification failed: {e}")
            raise InvalidSignature("Invalid signature.") from e
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise InvalidSignature("Invalid payload.") from e

    @staticmethod
    def _translate(action: str, error: "stripe.StripeError") -> BillingError:
        message = getattr(error, "user_message", None) or str(error)
        status = getattr(error, "http_status", None) or 0
        if isinstance(error, TRANSIENT_STRIPE_ERRORS) or status >= 500:
            return GatewayUnavailable(f"Payment gateway unavailable, could not {action}: {message}")
        return InvalidRequest(message)
