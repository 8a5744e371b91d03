from datetime import datetime, timezone

import pytest

from oddsly_billing.cancellation import cancel_subscription
from oddsly_billing.errors import GatewayUnavailable, NoActiveSubscription, SubscriptionNotFound
from oddsly_billing.policy import PlanType, SubscriptionStatus
from oddsly_billing.subscription_store import PaymentApplication, SubscriptionStore

END_DATE = datetime(2024, 2, 15, tzinfo=timezone.utc)


class FakeGateway:
    def __init__(self, error=None):
        self.error = error
        self.cancelled = []

    def cancel_at_period_end(self, subscription_id):
        self.cancelled.append(subscription_id)
        if self.error:
            raise self.error
        return {"id": subscription_id, "cancel_at_period_end": True}


@pytest.fixture
def store(db_session):
    return SubscriptionStore(db_session)


def subscribe(store, gateway_subscription_id=None):
    return store.apply_payment(PaymentApplication(
        user_id="user_1",
        payment_id="pi_123",
        plan_type=PlanType.MONTHLY,
        amount=999,
        start_date=datetime(2024, 1, 15, tzinfo=timezone.utc),
        gateway_subscription_id=gateway_subscription_id,
    )).record


def test_cancel_keeps_access_until_end_date(store):
    subscribe(store)
    gateway = FakeGateway()

    result = cancel_subscription("user_1", store, gateway)

    assert not result.already_cancelled
    assert result.end_date == END_DATE
    assert result.record.status is SubscriptionStatus.CANCELLED
    assert result.record.auto_renew is False
    assert gateway.cancelled == []


def test_cancel_twice_is_idempotent(store):
    subscribe(store)
    gateway = FakeGateway()

    cancel_subscription("user_1", store, gateway)
    second = cancel_subscription("user_1", store, gateway)

    assert second.already_cancelled
    assert second.end_date == END_DATE
    assert store.get_history("user_1") == []


def test_cancel_gateway_managed_subscription(store):
    subscribe(store, gateway_subscription_id="sub_123")
    gateway = FakeGateway()

    cancel_subscription("user_1", store, gateway)

    assert gateway.cancelled == ["sub_123"]
    assert store.get_current("user_1").status is SubscriptionStatus.CANCELLED


def test_gateway_failure_leaves_local_state_untouched(store):
    subscribe(store, gateway_subscription_id="sub_123")
    gateway = FakeGateway(error=GatewayUnavailable("Payment gateway unavailable"))

    with pytest.raises(GatewayUnavailable):
        cancel_subscription("user_1", store, gateway)

    record = store.get_current("user_1")
    assert record.status is SubscriptionStatus.ACTIVE
    assert record.auto_renew is True


def test_cancel_unknown_user(store):
    with pytest.raises(SubscriptionNotFound, match="User not found"):
        cancel_subscription("nobody", store, FakeGateway())


def test_cancel_expired_subscription(store):
    store.mark_expired("user_1", subscribe(store).payment_id)

    with pytest.raises(NoActiveSubscription):
        cancel_subscription("user_1", store, FakeGateway())
    assert store.get_current("user_1").status is SubscriptionStatus.EXPIRED
