from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from oddsly_billing.client_reconciler import ClientReconciler, LaunchState
from oddsly_billing.db.init_db import init_db
from oddsly_billing.db.session import create_db_engine
from oddsly_billing.policy import PlanType, SubscriptionStatus
from oddsly_billing.subscription_store import ApplyResult, PaymentApplication, SubscriptionStore

USER = "user_1"


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def payment(payment_id, plan_type=PlanType.MONTHLY, start=None, amount=999, source="client"):
    return PaymentApplication(
        user_id=USER,
        payment_id=payment_id,
        plan_type=plan_type,
        amount=amount,
        start_date=start or utc(2024, 1, 15),
        source=source,
    )


@pytest.fixture
def sessions(tmp_path):
    """Two sessions on one file database: the app client's and the webhook handler's."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    init_db(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False)
    client_session, webhook_session = Session(), Session()
    try:
        yield client_session, webhook_session
    finally:
        client_session.close()
        webhook_session.close()
        engine.dispose()


def test_launch_does_not_renew_over_a_webhook_payment(sessions):
    client_session, webhook_session = sessions
    client_store = SubscriptionStore(client_session)
    webhook_store = SubscriptionStore(webhook_session)
    client_store.apply_payment(payment("pi_1"))
    assert client_store.get_current(USER).payment_id == "pi_1"

    webhook_store.apply_payment(payment("pi_new", PlanType.ANNUAL, utc(2024, 2, 19), amount=9999, source="webhook"))

    decision = ClientReconciler(client_store).evaluate_launch(USER, utc(2024, 2, 20, 9))

    assert decision.state is LaunchState.ACCESS_GRANTED
    assert not decision.renewed
    assert decision.record.payment_id == "pi_new"

    current = webhook_store.get_current(USER, for_update=True)
    assert current.payment_id == "pi_new"
    assert current.plan_type is PlanType.ANNUAL
    assert current.amount == 9999
    assert current.end_date == utc(2025, 2, 19)
    assert [entry.payment_id for entry in webhook_store.get_history(USER)] == ["pi_1"]
    assert [p.id for p in webhook_store.get_payments(USER)] == ["pi_1", "pi_new"]


def test_launch_does_not_expire_a_trial_replaced_by_a_webhook_payment(sessions):
    client_session, webhook_session = sessions
    client_store = SubscriptionStore(client_session)
    client_store.apply_payment(payment("pi_trial", PlanType.TRIAL, utc(2024, 1, 10), amount=99))
    assert client_store.get_current(USER).plan_type is PlanType.TRIAL

    SubscriptionStore(webhook_session).apply_payment(payment("pi_month", start=utc(2024, 1, 12), source="webhook"))

    decision = ClientReconciler(client_store).evaluate_launch(USER, utc(2024, 1, 18))

    assert decision.state is LaunchState.ACCESS_GRANTED
    assert decision.record.payment_id == "pi_month"
    assert decision.record.status is SubscriptionStatus.ACTIVE


def test_write_on_an_outdated_record_is_retried(sessions, monkeypatch):
    client_session, webhook_session = sessions
    client_store = SubscriptionStore(client_session)
    webhook_store = SubscriptionStore(webhook_session)
    client_store.apply_payment(payment("pi_1"))

    archive = client_store._archive
    calls = []

    def archive_after_webhook(record):
        calls.append(record.payment_id)
        if len(calls) == 1:
            webhook_store.apply_payment(payment("pi_b", start=utc(2024, 1, 20), source="webhook"))
        return archive(record)

    monkeypatch.setattr(client_store, "_archive", archive_after_webhook)

    outcome = client_store.apply_payment(payment("pi_x", start=utc(2024, 1, 21)))

    assert outcome.result is ApplyResult.APPLIED
    assert calls == ["pi_1", "pi_b"]
    assert outcome.record.payment_id == "pi_x"
    assert [entry.payment_id for entry in client_store.get_history(USER)] == ["pi_1", "pi_b"]
    assert [p.id for p in client_store.get_payments(USER)] == ["pi_1", "pi_b", "pi_x"]
