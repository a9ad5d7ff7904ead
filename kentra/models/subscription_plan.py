"""SubscriptionPlan model — catalog of plans and their Stripe prices."""

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    stripe_price_id_monthly: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stripe_price_id_yearly: Mapped[str | None] = mapped_column(String(64), nullable=True)
    max_properties: Mapped[int] = mapped_column(Integer, default=1)
    featured_per_month: Mapped[int] = mapped_column(Integer, default=0)
    is_trial: Mapped[bool] = mapped_column(Boolean, default=False)
