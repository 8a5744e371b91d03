"""
Billing error taxonomy.

Each error carries a stable machine-readable ``code`` and the HTTP status the
router maps it to. ``UserCancelledPayment`` is raised by the payment-sheet
layer when the user dismisses it; the purchase flow turns it into a
non-error outcome.
"""
from typing import Iterable, Optional


class BillingError(Exception):
    code = "billing_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(BillingError):
    code = "configuration_error"

    def __init__(self, missing: Iterable[str], message: Optional[str] = None) -> None:
        self.missing = sorted(missing)
        super().__init__(message or f"Missing required configuration: {', '.join(self.missing)}")


class InvalidPlanType(BillingError, ValueError):
    code = "invalid_plan_type"
    status_code = 400

    def __init__(self, value) -> None:
        self.value = value
        super().__init__(f"Invalid plan type: {value!r}")


class GatewayUnavailable(BillingError):
    code = "gateway_unavailable"
    status_code = 503


class InvalidRequest(BillingError):
    code = "invalid_request"
    status_code = 400


class InvalidSignature(BillingError):
    code = "invalid_signature"
    status_code = 400


class UserCancelledPayment(BillingError):
    code = "user_cancelled"
    status_code = 200


class StoreUnavailable(BillingError):
    code = "store_unavailable"
    status_code = 500


class ActivationFailed(BillingError):
    """The charge went through but the subscription could not be written."""

    code = "activation_failed"
    status_code = 500

    def __init__(self, payment_id: str, message: Optional[str] = None) -> None:
        self.payment_id = payment_id
        super().__init__(
            message
            or f"Payment {payment_id} succeeded but activation failed. Please contact support."
        )


class SubscriptionNotFound(BillingError):
    code = "subscription_not_found"
    status_code = 404


class NoActiveSubscription(BillingError):
    code = "no_active_subscription"
    status_code = 400
