"""
Plan clock and access policy.

Pure functions only: no I/O and no reads of the wall clock except through
``utcnow()``, which callers inject where determinism matters.
"""
import calendar
import hashlib
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

from oddsly_billing.errors import InvalidPlanType


class PlanType(str, Enum):
    TRIAL = "trial"
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TRIAL_LENGTH = timedelta(days=2)

# Gateway metadata uses the interval names of the price objects.
_INTERVAL_TO_PLAN = {
    "month": PlanType.MONTHLY,
    "year": PlanType.ANNUAL,
}
_PLAN_TO_INTERVAL = {plan: interval for interval, plan in _INTERVAL_TO_PLAN.items()}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_plan_type(value: Union[str, PlanType, None]) -> PlanType:
    """
    Parse a stored or user-supplied plan type.

    :raises InvalidPlanType: for anything that is not exactly one of the plan values.
    """
    if isinstance(value, PlanType):
        return value
    try:
        return PlanType(value)
    except ValueError:
        raise InvalidPlanType(value) from None


def plan_type_from_gateway(is_trial: bool, interval: Optional[str]) -> PlanType:
    """
    Map the ``isTrialPeriod``/``interval`` pair used on the wire to a plan type.

    A missing interval means monthly, matching the payment-intent endpoint default.
    """
    if is_trial:
        return PlanType.TRIAL
    if interval is None:
        return PlanType.MONTHLY
    try:
        return _INTERVAL_TO_PLAN[interval]
    except KeyError:
        raise InvalidPlanType(interval) from None


def gateway_interval(plan_type: PlanType) -> Optional[str]:
    """Interval name for gateway metadata; ``None`` for trials."""
    if plan_type is PlanType.TRIAL:
        return None
    return _PLAN_TO_INTERVAL[plan_type]


def add_months(start: datetime, months: int) -> datetime:
    """
    Move ``start`` forward by calendar months, keeping the time of day.

    The day of month is clamped to the last day of the target month, so
    Jan 31 + 1 month is Feb 28 (or Feb 29 in a leap year).
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def compute_end_date(plan_type: PlanType, start: datetime) -> datetime:
    """
    Compute when a plan started at ``start`` stops granting access.

    Trial: start + 2 days. Monthly: start + 1 calendar month (clamped).
    Annual: start + 1 calendar year (Feb 29 clamps to Feb 28).

    :raises InvalidPlanType: if ``plan_type`` is not a ``PlanType``.
    """
    if not isinstance(plan_type, PlanType):
        raise InvalidPlanType(plan_type)
    if plan_type is PlanType.TRIAL:
        return start + TRIAL_LENGTH
    if plan_type is PlanType.MONTHLY:
        return add_months(start, 1)
    return add_months(start, 12)


def has_access(record, now: datetime) -> bool:
    """
    Whether ``record`` grants access at ``now``.

    Active and cancelled records grant access up to and including their end
    date, so a cancelled plan keeps access for the rest of the paid period.
    Expired records never do. An active record past its end date gets
    ``False``: that is a lapse the client reconciler must resolve.
    """
    if record.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED):
        return ensure_utc(now) <= ensure_utc(record.end_date)
    return False


def is_lapsed(record, now: datetime) -> bool:
    """Active on paper but past its end date: needs reconciliation."""
    return (
        record.status is SubscriptionStatus.ACTIVE
        and ensure_utc(now) > ensure_utc(record.end_date)
    )


def renews_automatically(plan_type: PlanType) -> bool:
    return plan_type is not PlanType.TRIAL


def renewal_payment_id(now: datetime) -> str:
    """Synthetic ledger id for a client-side renewal, e.g. ``renewal_2024-02-20T09:30:00.000Z``."""
    stamp = ensure_utc(now).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"renewal_{stamp}"


def idempotency_key(user_id: str, plan_type: PlanType, intended_start: Union[date, datetime]) -> str:
    """
    Client-side idempotency token for payment-intent creation.

    Derived from (user, plan, intended start day) so retries of the same
    logical purchase on the same day collapse into one gateway intent.
    """
    if isinstance(intended_start, datetime):
        intended_start = ensure_utc(intended_start).date()
    raw = f"{user_id}|{parse_plan_type(plan_type).value}|{intended_start.isoformat()}"
    return "intent_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()
