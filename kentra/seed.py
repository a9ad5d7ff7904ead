"""Seed script — creates the subscription plans the billing flows expect.

Usage:
    python -m kentra.seed

Price ids come from the environment (STRIPE_PRICE_<PLAN>_MONTHLY /
STRIPE_PRICE_<PLAN>_YEARLY); plans without them can still be used for trials.
"""

import asyncio
import os

PLANS = [
    {
        "name": "agente_trial",
        "display_name": "Prueba gratuita",
        "max_properties": 5,
        "featured_per_month": 0,
        "is_trial": True,
    },
    {
        "name": "agente_basico",
        "display_name": "Agente Básico",
        "max_properties": 10,
        "featured_per_month": 1,
        "is_trial": False,
    },
    {
        "name": "agente_pro",
        "display_name": "Agente Pro",
        "max_properties": 50,
        "featured_per_month": 5,
        "is_trial": False,
    },
    {
        "name": "inmobiliaria",
        "display_name": "Inmobiliaria",
        "max_properties": 200,
        "featured_per_month": 20,
        "is_trial": False,
    },
]


async def main():
    # Ensure .env is loaded before importing settings
    from dotenv import load_dotenv
    load_dotenv()

    from sqlalchemy import select
    from kentra.db.session import async_session_factory, engine
    from kentra.models import Base
    from kentra.models.subscription_plan import SubscriptionPlan

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as db:
        for plan_data in PLANS:
            env_prefix = f"STRIPE_PRICE_{plan_data['name'].upper()}"
            monthly = os.environ.get(f"{env_prefix}_MONTHLY")
            yearly = os.environ.get(f"{env_prefix}_YEARLY")

            plan = await db.scalar(select(SubscriptionPlan).where(SubscriptionPlan.name == plan_data["name"]))
            if plan:
                print(f"Plan {plan_data['name']} already exists (id={plan.id})")
                if monthly:
                    plan.stripe_price_id_monthly = monthly
                if yearly:
                    plan.stripe_price_id_yearly = yearly
                continue

            db.add(SubscriptionPlan(**plan_data, stripe_price_id_monthly=monthly, stripe_price_id_yearly=yearly))
            print(f"Created plan {plan_data['name']}")

        await db.commit()

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
