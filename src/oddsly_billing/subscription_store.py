"""
Persistence for a user's subscription aggregate.

Two writers share this store: the client, right after a payment
confirmation, and the webhook handler, when the gateway reports the charge.
Both go through ``SubscriptionStore.apply_payment``, an upsert keyed by the
payment id:

* if the payment id is already in the user's ledger the write is a no-op;
* otherwise the current record is archived to history, replaced, and the
  payment is appended to the ledger in the same transaction.

The ledger's ``UNIQUE(user_id, id)`` constraint backs the read-side check,
so two writers that both pass it still converge: the loser's commit fails,
is rolled back, and is reported as a duplicate.

Every write reloads the current record (``SELECT ... FOR UPDATE`` where the
database supports it) before changing it, and ``SubscriptionRecord.version``
rejects an UPDATE based on a copy another writer has since replaced. Such a
write is retried against the fresh record.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from oddsly_billing.errors import StoreUnavailable
from oddsly_billing.models.subscription import (
    BillingAccount,
    PaymentRecord,
    SubscriptionHistoryEntry,
    SubscriptionRecord,
)
from oddsly_billing.policy import (
    PlanType,
    SubscriptionStatus,
    compute_end_date,
    ensure_utc,
    renews_automatically,
)

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


class ApplyResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class PaymentApplication:
    """
    A confirmed (or simulated) charge to be reflected in the store.

    ``renews_payment_id`` makes the write conditional: it applies only while
    the current record is still the active one paid by that payment.
    """

    user_id: str
    payment_id: str
    plan_type: PlanType
    amount: int
    start_date: datetime
    payment_status: str = "succeeded"
    email: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    source: str = "client"
    renews_payment_id: Optional[str] = None


@dataclass
class UpsertOutcome:
    result: ApplyResult
    record: Optional[SubscriptionRecord]

    @property
    def applied(self) -> bool:
        return self.result is ApplyResult.APPLIED


class SubscriptionStore:
    """Read-modify-merge access to one database session's view of the store."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # Reads

    def get_account(self, user_id: str) -> Optional[BillingAccount]:
        with self._reading(f"read billing account for user {user_id}"):
            return self.db.query(BillingAccount).filter(BillingAccount.user_id == user_id).first()

    def get_current(self, user_id: str, for_update: bool = False) -> Optional[SubscriptionRecord]:
        """
        Load the user's current record.

        :param for_update: Reload the row from the database, overwriting the
            session's copy, and lock it where the dialect supports row locks.
        """
        with self._reading(f"read subscription for user {user_id}"):
            query = self.db.query(SubscriptionRecord).filter(SubscriptionRecord.user_id == user_id)
            if for_update:
                if self.db.get_bind().dialect.name != "sqlite":
                    query = query.with_for_update()
                query = query.populate_existing()
            return query.first()

    def get_history(self, user_id: str) -> List[SubscriptionHistoryEntry]:
        with self._reading(f"read subscription history for user {user_id}"):
            return (
                self.db.query(SubscriptionHistoryEntry)
                .filter(SubscriptionHistoryEntry.user_id == user_id)
                .order_by(SubscriptionHistoryEntry.position)
                .all()
            )

    def get_payments(self, user_id: str) -> List[PaymentRecord]:
        with self._reading(f"read payments for user {user_id}"):
            return (
                self.db.query(PaymentRecord)
                .filter(PaymentRecord.user_id == user_id)
                .order_by(PaymentRecord.seq)
                .all()
            )

    def has_payment(self, user_id: str, payment_id: str) -> bool:
        with self._reading(f"read payment {payment_id} for user {user_id}"):
            return (
                self.db.query(PaymentRecord.seq)
                .filter(PaymentRecord.user_id == user_id, PaymentRecord.id == payment_id)
                .first()
                is not None
            )

    # Writes

    def apply_payment(self, application: PaymentApplication) -> UpsertOutcome:
        """
        Idempotent upsert of a charge, keyed by ``payment_id``.

        :param application: The charge to apply.
        :return: ``APPLIED`` with the new current record; ``DUPLICATE`` with the
            record as it stands when the payment was already in the ledger; or
            ``SUPERSEDED`` with the fresh record when a conditional renewal no
            longer matches it.
        :raises StoreUnavailable: if the write fails for any reason other than
            another writer having applied the same payment first.
        """
        user_id = application.user_id
        payment_id = application.payment_id

        start_date = ensure_utc(application.start_date)
        end_date = compute_end_date(application.plan_type, start_date)

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            if self.has_payment(user_id, payment_id):
                logger.info(
                    f"Payment {payment_id} already recorded for user {user_id} "
                    f"({application.source} write ignored)."
                )
                return UpsertOutcome(ApplyResult.DUPLICATE, self.get_current(user_id))

            current = self.get_current(user_id, for_update=True)
            if application.renews_payment_id and not self._renewable(current, application.renews_payment_id):
                self.db.rollback()
                logger.info(
                    f"Skipped {application.source} write {payment_id} for user {user_id}: "
                    f"the subscription paid by {application.renews_payment_id} was replaced or changed."
                )
                return UpsertOutcome(ApplyResult.SUPERSEDED, self.get_current(user_id))

            try:
                account = self._ensure_account(user_id, application.email)
                if current is None:
                    current = SubscriptionRecord(user_id=account.user_id)
                    self.db.add(current)
                else:
                    self._archive(current)

                current.plan_type = application.plan_type
                current.status = SubscriptionStatus.ACTIVE
                current.start_date = start_date
                current.end_date = end_date
                current.payment_id = payment_id
                current.amount = application.amount
                current.auto_renew = renews_automatically(application.plan_type)
                if application.gateway_subscription_id:
                    current.gateway_subscription_id = application.gateway_subscription_id

                self.db.add(PaymentRecord(
                    id=payment_id,
                    user_id=user_id,
                    amount=application.amount,
                    date=start_date,
                    plan_type=application.plan_type,
                    status=application.payment_status,
                ))
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.warning(
                    f"Subscription for user {user_id} changed while applying {payment_id} "
                    f"(attempt {attempt}); retrying against the current record."
                )
                continue
            except IntegrityError as e:
                self.db.rollback()
                if self.has_payment(user_id, payment_id):
                    logger.info(
                        f"Payment {payment_id} for user {user_id} was applied concurrently; "
                        f"{application.source} write converged as duplicate."
                    )
                    return UpsertOutcome(ApplyResult.DUPLICATE, self.get_current(user_id))
                logger.error(e, exc_info=True)
                raise StoreUnavailable(f"Conflicting write for user {user_id}; retry") from e
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(e, exc_info=True)
                raise StoreUnavailable(f"Could not record payment {payment_id}: {e}") from e

            self.db.refresh(current)
            logger.info(
                f"Applied payment {payment_id} for user {user_id} from {application.source}: "
                f"{current.plan_type.value} {current.start_date.isoformat()} -> {current.end_date.isoformat()}"
            )
            return UpsertOutcome(ApplyResult.APPLIED, current)

        raise StoreUnavailable(
            f"Subscription for user {user_id} kept changing; payment {payment_id} not recorded after "
            f"{MAX_WRITE_ATTEMPTS} attempts"
        )

    def mark_cancelled(self, user_id: str) -> Tuple[Optional[SubscriptionRecord], bool]:
        """
        Set the current record to cancelled without touching its end date.

        :return: ``(record, changed)``; ``changed`` is False unless the record was active.
        """
        record = self.get_current(user_id, for_update=True)
        if record is None or record.status is not SubscriptionStatus.ACTIVE:
            self.db.rollback()
            return record, False
        record.status = SubscriptionStatus.CANCELLED
        record.auto_renew = False
        self._commit(f"cancel subscription for user {user_id}")
        logger.info(f"Subscription for user {user_id} cancelled; access until {record.end_date.isoformat()}.")
        return record, True

    def mark_expired(self, user_id: str, payment_id: str) -> Tuple[Optional[SubscriptionRecord], bool]:
        """
        Expire the current record if it is still the one paid by ``payment_id``.

        :return: ``(record, changed)`` with the record as it now stands.
        """
        record = self.get_current(user_id, for_update=True)
        if record is None or record.payment_id != payment_id or record.status is SubscriptionStatus.EXPIRED:
            self.db.rollback()
            return record, False
        previous = record.status
        record.status = SubscriptionStatus.EXPIRED
        record.auto_renew = False
        self._commit(f"expire subscription for user {user_id}")
        logger.info(
            f"Subscription for user {user_id} expired "
            f"({record.plan_type.value}, was {previous.value}, ended {record.end_date.isoformat()})."
        )
        return record, True

    def link_gateway_subscription(
        self,
        user_id: str,
        gateway_subscription_id: str,
        gateway_customer_id: Optional[str] = None,
    ) -> Optional[SubscriptionRecord]:
        """Merge the gateway's subscription/customer ids into the account and current record."""
        account = self._ensure_account(user_id)
        if gateway_customer_id:
            account.gateway_customer_id = gateway_customer_id
        record = self.get_current(user_id, for_update=True)
        if record is not None:
            record.gateway_subscription_id = gateway_subscription_id
        self._commit(f"link gateway subscription {gateway_subscription_id} for user {user_id}")
        return record

    # Internals

    @staticmethod
    def _renewable(record: Optional[SubscriptionRecord], payment_id: str) -> bool:
        return (
            record is not None
            and record.payment_id == payment_id
            and record.status is SubscriptionStatus.ACTIVE
        )

    def _ensure_account(self, user_id: str, email: Optional[str] = None) -> BillingAccount:
        account = self.get_account(user_id)
        if account is None:
            account = BillingAccount(user_id=user_id, email=email)
            self.db.add(account)
        elif email and account.email != email:
            account.email = email
        return account

    def _archive(self, record: SubscriptionRecord) -> SubscriptionHistoryEntry:
        last_position = (
            self.db.query(func.max(SubscriptionHistoryEntry.position))
            .filter(SubscriptionHistoryEntry.user_id == record.user_id)
            .scalar()
        )
        entry = SubscriptionHistoryEntry(
            user_id=record.user_id,
            position=(last_position or 0) + 1,
            **record.snapshot(),
        )
        self.db.add(entry)
        return entry

    @contextmanager
    def _reading(self, action: str):
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to {action}: {e}", exc_info=True)
            raise StoreUnavailable(f"Failed to {action}") from e

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to {action}: {e}", exc_info=True)
            raise StoreUnavailable(f"Failed to {action}") from e
