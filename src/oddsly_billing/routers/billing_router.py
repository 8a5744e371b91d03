import logging
from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from oddsly_billing.cancellation import cancel_subscription
from oddsly_billing.client_reconciler import ClientReconciler, PurchaseStatus
from oddsly_billing.db.session import get_db
from oddsly_billing.errors import (
    BillingError,
    GatewayUnavailable,
    InvalidRequest,
    InvalidSignature,
    NoActiveSubscription,
    StoreUnavailable,
    SubscriptionNotFound,
)
from oddsly_billing.policy import plan_type_from_gateway, utcnow
from oddsly_billing.schemas import (
    BillingSummaryResponse,
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    CreatePaymentIntentRequest,
    CreatePaymentIntentResponse,
    LaunchRequest,
    LaunchResponse,
    PaymentSchema,
    SubscriptionSchema,
)
from oddsly_billing.stripe_event_processor import process_event
from oddsly_billing.stripe_integration import StripeIntegration
from oddsly_billing.subscription_store import SubscriptionStore

router = APIRouter()


def get_gateway() -> StripeIntegration:
    return StripeIntegration()


def get_clock() -> Callable[[], datetime]:
    return utcnow


def _message(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message, **extra})


def _subscription(record) -> Optional[SubscriptionSchema]:
    if record is None:
        return None
    return SubscriptionSchema.model_validate(record)


@router.post("/create-payment-intent", response_model=CreatePaymentIntentResponse)
def create_payment_intent(
    body: CreatePaymentIntentRequest,
    gateway: StripeIntegration = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    try:
        plan_type = plan_type_from_gateway(body.isTrialPeriod, body.interval)
        intent = gateway.create_payment_intent(
            body.amount,
            plan_type,
            body.userId,
            email=body.email,
            intended_start=clock(),
        )
    except BillingError as e:
        logging.error(e, exc_info=True)
        return _message(e.status_code, e.message)
    return CreatePaymentIntentResponse(clientSecret=intent.client_secret, paymentIntentId=intent.payment_id)


@router.post("/confirm-payment", response_model=ConfirmPaymentResponse)
def confirm_payment(
    body: ConfirmPaymentRequest,
    db=Depends(get_db),
    gateway: StripeIntegration = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    reconciler = ClientReconciler(SubscriptionStore(db), gateway, clock)
    try:
        outcome = reconciler.confirm_gateway_payment(body.userId, body.paymentIntentId)
    except BillingError as e:
        logging.error(e, exc_info=True)
        return _message(e.status_code, e.message)

    if outcome.status is PurchaseStatus.ACTIVATION_FAILED:
        return _message(500, outcome.message, code="activation_failed", paymentIntentId=outcome.payment_id)
    return ConfirmPaymentResponse(
        status="duplicate" if outcome.duplicate else "activated",
        subscription=_subscription(outcome.record),
    )


@router.post("/cancel-subscription", response_model=CancelSubscriptionResponse)
def cancel(
    body: CancelSubscriptionRequest,
    db=Depends(get_db),
    gateway: StripeIntegration = Depends(get_gateway),
):
    try:
        result = cancel_subscription(body.userId, SubscriptionStore(db), gateway)
    except SubscriptionNotFound as e:
        return JSONResponse(status_code=404, content={"error": e.message})
    except NoActiveSubscription as e:
        return JSONResponse(status_code=400, content={"error": e.message})
    except (GatewayUnavailable, InvalidRequest) as e:
        logging.error(e, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to cancel Stripe subscription", "details": e.message},
        )
    except StoreUnavailable as e:
        logging.error(e, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to update subscription status in database", "details": e.message},
        )
    return CancelSubscriptionResponse(
        message="Subscription already cancelled" if result.already_cancelled else "Subscription cancelled successfully",
        endDate=result.end_date.isoformat(),
    )


@router.post("/webhook", status_code=200)
async def process_webhook(
    request: Request,
    db=Depends(get_db),
    gateway: StripeIntegration = Depends(get_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    payload_bytes = await request.body()
    payload = payload_bytes.decode("utf-8")
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        logging.warning("Webhook rejected: missing Stripe-Signature header")
        return _message(400, "Missing Stripe-Signature header")
    try:
        event = gateway.process_webhook_event(payload, sig_header)
    except InvalidSignature as e:
        logging.warning(f"Webhook rejected: {e.message}")
        return _message(400, e.message)

    try:
        outcome = process_event(event, db, clock())
    except StoreUnavailable as e:
        logging.error(e, exc_info=True)
        return _message(500, "Error processing webhook event")

    return {"received": True, "outcome": outcome.value}


@router.post("/launch", response_model=LaunchResponse)
def launch(
    body: LaunchRequest,
    db=Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    reconciler = ClientReconciler(SubscriptionStore(db), clock=clock)
    try:
        decision = reconciler.evaluate_launch(body.userId)
    except StoreUnavailable as e:
        logging.error(e, exc_info=True)
        return _message(500, "Could not check your subscription. Please try again.")
    return LaunchResponse(
        state=decision.state.value,
        route=decision.route,
        reason=decision.reason,
        renewed=decision.renewed,
        subscription=_subscription(decision.record),
    )


@router.get("/subscription/{user_id}", response_model=BillingSummaryResponse)
def get_subscription(user_id: str, db=Depends(get_db)):
    store = SubscriptionStore(db)
    try:
        if not user_id.strip() or store.get_account(user_id) is None:
            return _message(404, "User not found")
        current = store.get_current(user_id)
        history = store.get_history(user_id)
        payments = store.get_payments(user_id)
    except StoreUnavailable as e:
        logging.error(e, exc_info=True)
        return _message(500, "Could not load billing details. Please try again.")
    return BillingSummaryResponse(
        subscription=_subscription(current),
        history=[SubscriptionSchema.model_validate(entry) for entry in history],
        payments=[PaymentSchema.model_validate(payment) for payment in payments],
    )
