from typing import Any, Dict

from sqlalchemy import Boolean, Column, Enum, ForeignKey, Integer, String, UniqueConstraint

from oddsly_billing.db.base import Base, UTCDateTime
from oddsly_billing.policy import PlanType, SubscriptionStatus, utcnow


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _plan_type_column(name: str = None) -> Column:
    args = (name,) if name else ()
    return Column(
        *args,
        Enum(PlanType, name="plan_type", values_callable=_enum_values),
        nullable=False,
    )


def _status_column() -> Column:
    return Column(
        Enum(SubscriptionStatus, name="subscription_status", values_callable=_enum_values),
        nullable=False,
    )


class BillingAccount(Base):
    """
    A user's billing aggregate root.

    Owns one current ``SubscriptionRecord``, an append-only history and a
    payment ledger; all three are keyed by ``user_id``.
    """
    __tablename__ = "billing_accounts"

    user_id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    gateway_customer_id = Column(String, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<BillingAccount(user_id={self.user_id}, email={self.email})>"


class SubscriptionRecord(Base):
    """
    The current subscription of a user, one row per user.

    Mutated in place by renewal, cancellation and expiry; never deleted.
    """
    __tablename__ = "subscriptions"

    user_id = Column(String, ForeignKey("billing_accounts.user_id"), primary_key=True)
    plan_type = _plan_type_column()
    status = _status_column()
    start_date = Column(UTCDateTime, nullable=False)
    end_date = Column(UTCDateTime, nullable=False)
    payment_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    auto_renew = Column(Boolean, nullable=False, default=True)
    gateway_subscription_id = Column(String, nullable=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    # Bumped on every UPDATE; a write based on an outdated copy raises StaleDataError.
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def snapshot(self) -> Dict[str, Any]:
        return {
            "plan_type": self.plan_type,
            "status": self.status,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "payment_id": self.payment_id,
            "amount": self.amount,
            "auto_renew": self.auto_renew,
        }

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, plan_type={self.plan_type}, "
            f"status={self.status}, end_date={self.end_date}, payment_id={self.payment_id})>"
        )


class SubscriptionHistoryEntry(Base):
    """
    Frozen snapshot of a superseded ``SubscriptionRecord``.

    ``position`` is the insertion order within a user's history and therefore
    its chronological order. Rows are inserted once and never updated.
    """
    __tablename__ = "subscription_history"
    __table_args__ = (
        UniqueConstraint("user_id", "position", name="uq_subscription_history_position"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("billing_accounts.user_id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    plan_type = _plan_type_column()
    status = _status_column()
    start_date = Column(UTCDateTime, nullable=False)
    end_date = Column(UTCDateTime, nullable=False)
    payment_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    auto_renew = Column(Boolean, nullable=False)
    archived_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<SubscriptionHistoryEntry(user_id={self.user_id}, position={self.position}, "
            f"payment_id={self.payment_id})>"
        )


class PaymentRecord(Base):
    """
    One ledger row per successful (or simulated) charge.

    ``id`` is the gateway payment identifier, unique per user, which makes a
    second write of the same payment detectable and rejectable by the database.
    """
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("user_id", "id", name="uq_payments_user_payment"),
    )

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False)
    user_id = Column(String, ForeignKey("billing_accounts.user_id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    date = Column(UTCDateTime, nullable=False)
    plan_type = _plan_type_column("type")
    status = Column(String, nullable=False, default="succeeded")

    def __repr__(self) -> str:
        return f"<PaymentRecord(id={self.id}, user_id={self.user_id}, amount={self.amount})>"
