"""SQLAlchemy models for the billing service (PostgreSQL)."""

from .base import Base
from .user import User
from .subscription_plan import SubscriptionPlan
from .subscription import Subscription
from .property import Property

__all__ = [
    "Base",
    "User",
    "SubscriptionPlan",
    "Subscription",
    "Property",
]
