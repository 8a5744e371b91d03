from sqlalchemy.engine import Engine

from oddsly_billing.db.base import Base
from oddsly_billing.db.session import engine
from oddsly_billing.models.subscription import (  # noqa: F401
    BillingAccount,
    PaymentRecord,
    SubscriptionHistoryEntry,
    SubscriptionRecord,
)


def init_db(bind: Engine = engine) -> None:
    """Create any missing billing tables."""
    Base.metadata.create_all(bind=bind)
