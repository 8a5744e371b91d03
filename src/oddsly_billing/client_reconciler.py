"""
Client-side reconciliation: what a user may see when the app comes to the
foreground, and the purchase flow that gets them there.

``evaluate_launch`` is a blocking check; protected screens render only after
it returns. When an Active monthly or annual plan is found past its end date
it is renewed on the spot without a gateway charge ("simulated renewal"),
recorded in the ledger with a ``renewal_<timestamp>`` payment id and status
``simulated``. Trials never renew: a lapsed trial is marked expired.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol

from oddsly_billing.errors import ActivationFailed, InvalidRequest, StoreUnavailable, UserCancelledPayment
from oddsly_billing.models.subscription import SubscriptionRecord
from oddsly_billing.policy import (
    PlanType,
    SubscriptionStatus,
    has_access,
    is_lapsed,
    parse_plan_type,
    plan_type_from_gateway,
    renewal_payment_id,
    utcnow,
)
from oddsly_billing.stripe_integration import StripeIntegration
from oddsly_billing.subscription_store import ApplyResult, PaymentApplication, SubscriptionStore, UpsertOutcome

logger = logging.getLogger(__name__)

RECHECK_LIMIT = 1


class LaunchState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    NO_PLAN = "no_plan"
    NEEDS_PAYMENT = "needs_payment"
    ACCESS_GRANTED = "access_granted"
    ACCESS_DENIED = "access_denied"


ROUTES = {
    LaunchState.UNAUTHENTICATED: "/auth/login",
    LaunchState.NO_PLAN: "/auth/subscription",
    LaunchState.NEEDS_PAYMENT: "/auth/subscription",
    LaunchState.ACCESS_GRANTED: "/(tabs)",
    LaunchState.ACCESS_DENIED: "/auth/subscription",
}


@dataclass
class LaunchDecision:
    state: LaunchState
    reason: Optional[str] = None
    record: Optional[SubscriptionRecord] = None
    renewed: bool = False

    @property
    def route(self) -> str:
        return ROUTES[self.state]


class PaymentSheetResult(str, Enum):
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


class PaymentSheet(Protocol):
    """The user-facing step that collects a payment method and confirms the intent."""

    def present(self, client_secret: str) -> PaymentSheetResult:
        ...


class PurchaseStatus(str, Enum):
    ACTIVATED = "activated"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"
    ACTIVATION_FAILED = "activation_failed"


@dataclass
class PurchaseOutcome:
    status: PurchaseStatus
    payment_id: Optional[str] = None
    record: Optional[SubscriptionRecord] = None
    duplicate: bool = False
    message: Optional[str] = None


class ClientReconciler:
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: Optional[StripeIntegration] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.state = LaunchState.UNAUTHENTICATED

    def evaluate_launch(self, user_id: Optional[str], now: Optional[datetime] = None) -> LaunchDecision:
        """
        Decide where a user lands on launch or foreground.

        :param user_id: The authenticated user, or ``None``.
        :param now: Evaluation time; defaults to the reconciler's clock.
        :raises StoreUnavailable: if the store cannot be read or reconciled.
        """
        now = now or self.clock()
        decision = self._decide(user_id, now)
        self.state = decision.state
        logger.info(
            f"Launch decision for user {user_id}: {decision.state.value}"
            + (f" ({decision.reason})" if decision.reason else "")
        )
        return decision

    def _decide(self, user_id: Optional[str], now: datetime, retries_left: int = RECHECK_LIMIT) -> LaunchDecision:
        if not user_id:
            return LaunchDecision(LaunchState.UNAUTHENTICATED)

        record = self.store.get_current(user_id)
        if record is None:
            return LaunchDecision(LaunchState.NO_PLAN)

        if has_access(record, now):
            return LaunchDecision(LaunchState.ACCESS_GRANTED, record=record)

        # Writes below are conditional on this payment still being the current one.
        paid_by = record.payment_id
        if is_lapsed(record, now):
            if record.plan_type is PlanType.TRIAL:
                expired, _ = self.store.mark_expired(user_id, paid_by)
                if expired is None or expired.payment_id != paid_by:
                    return self._recheck(user_id, now, retries_left)
                return LaunchDecision(LaunchState.ACCESS_DENIED, reason="trial_expired", record=expired)
            outcome = self._simulate_renewal(record, now)
            if outcome.result is ApplyResult.SUPERSEDED:
                return self._recheck(user_id, now, retries_left)
            return LaunchDecision(LaunchState.ACCESS_GRANTED, record=outcome.record, renewed=outcome.applied)

        if record.status is SubscriptionStatus.CANCELLED:
            expired, _ = self.store.mark_expired(user_id, paid_by)
            if expired is None or expired.payment_id != paid_by:
                return self._recheck(user_id, now, retries_left)
            return LaunchDecision(LaunchState.ACCESS_DENIED, reason="subscription_ended", record=expired)
        return LaunchDecision(LaunchState.ACCESS_DENIED, reason="expired", record=record)

    def _recheck(self, user_id: str, now: datetime, retries_left: int) -> LaunchDecision:
        if retries_left <= 0:
            raise StoreUnavailable(f"Subscription for user {user_id} changed during the launch check; retry")
        logger.info(f"Subscription for user {user_id} changed during the launch check; evaluating again.")
        return self._decide(user_id, now, retries_left - 1)

    def _simulate_renewal(self, record: SubscriptionRecord, now: datetime) -> UpsertOutcome:
        # No gateway charge backs this extension.
        payment_id = renewal_payment_id(now)
        logger.warning(
            f"Simulated renewal for user {record.user_id}: {record.plan_type.value} plan "
            f"ended {record.end_date.isoformat()}, extending without a charge ({payment_id})."
        )
        return self.store.apply_payment(PaymentApplication(
            user_id=record.user_id,
            payment_id=payment_id,
            plan_type=record.plan_type,
            amount=record.amount,
            start_date=now,
            payment_status="simulated",
            source="renewal",
            renews_payment_id=record.payment_id,
        ))

    def purchase(
        self,
        user_id: str,
        plan_type: PlanType,
        amount: int,
        payment_sheet: PaymentSheet,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PurchaseOutcome:
        """
        Create an intent, wait for the payment sheet, then write the plan optimistically.

        A dismissed sheet is not an error: the state returns to what it was
        and nothing is written.

        :raises GatewayUnavailable: if the intent could not be created after retries.
        :raises InvalidRequest: if the gateway rejected the intent.
        """
        if self.gateway is None:
            raise RuntimeError("purchase requires a payment gateway")
        now = now or self.clock()
        plan_type = parse_plan_type(plan_type)
        previous_state = self.state

        intent = self.gateway.create_payment_intent(amount, plan_type, user_id, email, intended_start=now)
        self.state = LaunchState.NEEDS_PAYMENT
        try:
            result = payment_sheet.present(intent.client_secret)
        except UserCancelledPayment:
            result = PaymentSheetResult.CANCELED

        if result is PaymentSheetResult.CANCELED:
            self.state = previous_state
            logger.info(f"User {user_id} dismissed the payment sheet for {intent.payment_id}.")
            return PurchaseOutcome(PurchaseStatus.CANCELLED, payment_id=intent.payment_id)
        if result is PaymentSheetResult.FAILED:
            self.state = previous_state
            logger.warning(f"Payment {intent.payment_id} for user {user_id} failed at confirmation.")
            return PurchaseOutcome(
                PurchaseStatus.PAYMENT_FAILED,
                payment_id=intent.payment_id,
                message="Payment failed. Please try another payment method.",
            )
        return self.confirm_payment(user_id, intent.payment_id, plan_type, amount, email=email, now=now)

    def confirm_payment(
        self,
        user_id: str,
        payment_id: str,
        plan_type: PlanType,
        amount: int,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PurchaseOutcome:
        """
        Optimistic client write after the gateway confirmed a charge.

        A store failure here does not mean the payment failed: it returns an
        ``ACTIVATION_FAILED`` outcome telling the user to contact support.
        """
        now = now or self.clock()
        try:
            outcome = self.store.apply_payment(PaymentApplication(
                user_id=user_id,
                payment_id=payment_id,
                plan_type=parse_plan_type(plan_type),
                amount=amount,
                start_date=now,
                email=email,
                source="client",
            ))
        except StoreUnavailable as e:
            failure = ActivationFailed(payment_id)
            logger.error(f"{failure.message} (user {user_id}): {e}")
            return PurchaseOutcome(PurchaseStatus.ACTIVATION_FAILED, payment_id=payment_id, message=failure.message)

        self.state = LaunchState.ACCESS_GRANTED
        return PurchaseOutcome(
            PurchaseStatus.ACTIVATED,
            payment_id=payment_id,
            record=outcome.record,
            duplicate=not outcome.applied,
        )

    def confirm_gateway_payment(self, user_id: str, payment_id: str, now: Optional[datetime] = None) -> PurchaseOutcome:
        """
        Confirm a payment reported by the app, checking it with the gateway first.

        :raises InvalidRequest: if the intent has not succeeded or belongs to someone else.
        """
        if self.gateway is None:
            raise RuntimeError("confirming a payment requires a payment gateway")
        intent = self.gateway.retrieve_payment_intent(payment_id)
        metadata = intent.get("metadata") or {}
        if metadata.get("userId") != user_id:
            raise InvalidRequest("Payment does not belong to this user")
        if intent.get("status") != "succeeded":
            raise InvalidRequest(f"Payment has not succeeded (status: {intent.get('status')})")

        plan_type = plan_type_from_gateway(metadata.get("type") == "trial", metadata.get("interval"))
        amount = intent.get("amount_received") or intent.get("amount")
        if not isinstance(amount, int) or amount <= 0:
            raise InvalidRequest(f"Payment {payment_id} has no charged amount")
        return self.confirm_payment(
            user_id,
            intent["id"],
            plan_type,
            amount,
            email=intent.get("receipt_email"),
            now=now,
        )
