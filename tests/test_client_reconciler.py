from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from oddsly_billing.client_reconciler import (
    ClientReconciler,
    LaunchState,
    PaymentSheetResult,
    PurchaseStatus,
)
from oddsly_billing.errors import InvalidRequest, StoreUnavailable, UserCancelledPayment
from oddsly_billing.policy import PlanType, SubscriptionStatus
from oddsly_billing.stripe_integration import PaymentIntentResult
from oddsly_billing.subscription_store import ApplyResult, PaymentApplication, SubscriptionStore, UpsertOutcome

USER = "user_1"


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class FakeGateway:
    def __init__(self, intent=None):
        self.created = []
        self.intent = intent

    def create_payment_intent(self, amount, plan_type, user_id, email=None, intended_start=None):
        self.created.append((amount, plan_type, user_id))
        return PaymentIntentResult(client_secret="pi_123_secret", payment_id="pi_123")

    def retrieve_payment_intent(self, payment_id):
        return self.intent


class FakeSheet:
    def __init__(self, result=PaymentSheetResult.COMPLETED, raises=None):
        self.result = result
        self.raises = raises
        self.presented = []

    def present(self, client_secret):
        self.presented.append(client_secret)
        if self.raises:
            raise self.raises
        return self.result


@pytest.fixture
def store(db_session):
    return SubscriptionStore(db_session)


def subscribe(store, plan_type=PlanType.MONTHLY, start=None, payment_id="pi_1", amount=999):
    return store.apply_payment(PaymentApplication(
        user_id=USER,
        payment_id=payment_id,
        plan_type=plan_type,
        amount=amount,
        start_date=start or utc(2024, 1, 15),
    )).record


def test_launch_without_user(store):
    decision = ClientReconciler(store).evaluate_launch(None, utc(2024, 1, 1))
    assert decision.state is LaunchState.UNAUTHENTICATED
    assert decision.route == "/auth/login"


def test_launch_without_plan(store):
    decision = ClientReconciler(store).evaluate_launch(USER, utc(2024, 1, 1))
    assert decision.state is LaunchState.NO_PLAN
    assert decision.route == "/auth/subscription"


def test_launch_within_period(store):
    subscribe(store)
    decision = ClientReconciler(store).evaluate_launch(USER, utc(2024, 2, 1))
    assert decision.state is LaunchState.ACCESS_GRANTED
    assert decision.route == "/(tabs)"
    assert not decision.renewed


def test_lapsed_trial_expires_and_never_renews(store):
    subscribe(store, PlanType.TRIAL, start=utc(2024, 1, 15), payment_id="pi_trial", amount=99)

    decision = ClientReconciler(store).evaluate_launch(USER, utc(2024, 1, 18))

    assert decision.state is LaunchState.ACCESS_DENIED
    assert decision.reason == "trial_expired"
    record = store.get_current(USER)
    assert record.status is SubscriptionStatus.EXPIRED
    assert [p.id for p in store.get_payments(USER)] == ["pi_trial"]

    again = ClientReconciler(store).evaluate_launch(USER, utc(2024, 1, 19))
    assert again.state is LaunchState.ACCESS_DENIED


def test_lapsed_monthly_is_renewed_from_now(store):
    subscribe(store)
    now = utc(2024, 2, 20, 9, 30)

    decision = ClientReconciler(store).evaluate_launch(USER, now)

    assert decision.state is LaunchState.ACCESS_GRANTED
    assert decision.renewed
    record = store.get_current(USER)
    assert record.start_date == now
    assert record.end_date == utc(2024, 3, 20, 9, 30)
    assert record.payment_id == "renewal_2024-02-20T09:30:00.000Z"
    assert record.amount == 999
    payments = store.get_payments(USER)
    assert [p.status for p in payments] == ["succeeded", "simulated"]
    assert [entry.payment_id for entry in store.get_history(USER)] == ["pi_1"]


def test_lapsed_cancelled_plan_expires(store):
    subscribe(store)
    store.mark_cancelled(USER)

    decision = ClientReconciler(store).evaluate_launch(USER, utc(2024, 2, 20))

    assert decision.state is LaunchState.ACCESS_DENIED
    assert decision.reason == "subscription_ended"
    assert store.get_current(USER).status is SubscriptionStatus.EXPIRED
    assert len(store.get_payments(USER)) == 1


def test_launch_read_failure_raises_store_unavailable(store, db_session, monkeypatch):
    subscribe(store)

    def failing_query(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "query", failing_query)
    reconciler = ClientReconciler(store)

    with pytest.raises(StoreUnavailable):
        reconciler.evaluate_launch(USER, utc(2024, 1, 20))
    assert reconciler.state is LaunchState.UNAUTHENTICATED


def test_renewal_that_keeps_losing_to_other_writers_gives_up(store, monkeypatch):
    subscribe(store)
    attempts = []

    def superseded(application):
        attempts.append(application.renews_payment_id)
        return UpsertOutcome(ApplyResult.SUPERSEDED, store.get_current(USER))

    monkeypatch.setattr(store, "apply_payment", superseded)

    with pytest.raises(StoreUnavailable, match="changed during the launch check"):
        ClientReconciler(store).evaluate_launch(USER, utc(2024, 2, 20))
    assert attempts == ["pi_1", "pi_1"]


def test_purchase_activates_plan(store):
    gateway = FakeGateway()
    sheet = FakeSheet()
    reconciler = ClientReconciler(store, gateway)

    outcome = reconciler.purchase(USER, PlanType.MONTHLY, 999, sheet, now=utc(2024, 1, 15))

    assert outcome.status is PurchaseStatus.ACTIVATED
    assert not outcome.duplicate
    assert sheet.presented == ["pi_123_secret"]
    assert reconciler.state is LaunchState.ACCESS_GRANTED
    assert store.get_current(USER).end_date == utc(2024, 2, 15)


@pytest.mark.parametrize("sheet", [
    FakeSheet(PaymentSheetResult.CANCELED),
    FakeSheet(raises=UserCancelledPayment("Canceled")),
])
def test_dismissed_payment_sheet_is_not_an_error(store, sheet):
    reconciler = ClientReconciler(store, FakeGateway())
    reconciler.evaluate_launch(USER, utc(2024, 1, 15))

    outcome = reconciler.purchase(USER, PlanType.ANNUAL, 9999, sheet, now=utc(2024, 1, 15))

    assert outcome.status is PurchaseStatus.CANCELLED
    assert reconciler.state is LaunchState.NO_PLAN
    assert store.get_current(USER) is None


def test_failed_payment_writes_nothing(store):
    reconciler = ClientReconciler(store, FakeGateway())

    outcome = reconciler.purchase(USER, PlanType.MONTHLY, 999, FakeSheet(PaymentSheetResult.FAILED))

    assert outcome.status is PurchaseStatus.PAYMENT_FAILED
    assert store.get_payments(USER) == []


def test_activation_failure_after_successful_charge(store, monkeypatch):
    def unavailable(application):
        raise StoreUnavailable("Could not record payment")

    monkeypatch.setattr(store, "apply_payment", unavailable)
    reconciler = ClientReconciler(store, FakeGateway())

    outcome = reconciler.purchase(USER, PlanType.MONTHLY, 999, FakeSheet())

    assert outcome.status is PurchaseStatus.ACTIVATION_FAILED
    assert outcome.payment_id == "pi_123"
    assert "contact support" in outcome.message


def test_confirm_gateway_payment(store):
    intent = {
        "id": "pi_123",
        "status": "succeeded",
        "amount": 9999,
        "amount_received": 9999,
        "metadata": {"userId": USER, "type": "subscription", "interval": "year"},
    }
    reconciler = ClientReconciler(store, FakeGateway(intent))

    outcome = reconciler.confirm_gateway_payment(USER, "pi_123", now=utc(2024, 1, 15))
    assert outcome.status is PurchaseStatus.ACTIVATED
    assert outcome.record.plan_type is PlanType.ANNUAL
    assert outcome.record.end_date == utc(2025, 1, 15)

    again = reconciler.confirm_gateway_payment(USER, "pi_123", now=utc(2024, 1, 16))
    assert again.duplicate
    assert again.record.end_date == utc(2025, 1, 15)


@pytest.mark.parametrize("intent", [
    {"id": "pi_123", "status": "succeeded", "amount": 999, "metadata": {"userId": "someone_else"}},
    {"id": "pi_123", "status": "requires_payment_method", "amount": 999, "metadata": {"userId": USER}},
])
def test_confirm_gateway_payment_rejects_unusable_intents(store, intent):
    reconciler = ClientReconciler(store, FakeGateway(intent))
    with pytest.raises(InvalidRequest):
        reconciler.confirm_gateway_payment(USER, "pi_123")
    assert store.get_current(USER) is None
