"""SQLAlchemy models for the billing core.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from app.models.credit_transaction import CreditTransaction
from app.models.notification import SubscriptionNotification
from app.models.payment import Payment
from app.models.payment_method import PaymentMethod
from app.models.subscription import Subscription
from app.models.sweep_run import SweepRun
from app.models.user import User

__all__ = [
    "CreditTransaction",
    "Payment",
    "PaymentMethod",
    "Subscription",
    "SubscriptionNotification",
    "SweepRun",
    "User",
]
