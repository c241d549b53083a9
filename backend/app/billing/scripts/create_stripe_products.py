"""Create the Stripe product, prices, and launch coupons in test mode.

Run once:
    python -m app.billing.scripts.create_stripe_products

Outputs price IDs to set in .env:
    STRIPE_MONTHLY_PRICE_ID=price_xxx
    STRIPE_YEARLY_PRICE_ID=price_xxx
"""

import asyncio

import stripe

from app.billing.plans import list_plans
from app.billing.stripe_client import get_stripe_client
from app.config import settings

# Coupon ids double as the codes users type in.
COUPONS = [
    {"id": "HALFOFF", "percent_off": 50, "duration": "once", "name": "50% off"},
    {"id": "FREEYEAR", "percent_off": 100, "duration": "repeating", "duration_in_months": 12, "name": "Free year"},
]


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    client = get_stripe_client()

    product = await client.v1.products.create_async(
        params={
            "name": "AskStan",
            "description": "AI-powered social media growth coaching",
        }
    )
    print(f"Created product: {product.name} ({product.id})")

    price_ids: dict[str, str] = {}
    for plan in list_plans():
        price = await client.v1.prices.create_async(
            params={
                "product": product.id,
                "unit_amount": plan.price_cents,
                "currency": "usd",
                "recurring": {"interval": plan.interval},
                "metadata": {"plan_type": plan.plan_type},
            }
        )
        price_ids[plan.plan_type] = price.id
        print(f"  {plan.display_name}: ${plan.price_cents / 100:.2f}/{plan.interval} ({price.id})")

    for coupon in COUPONS:
        try:
            created = await client.v1.coupons.create_async(params=coupon)
            print(f"Created coupon {created.id} ({created.percent_off}% off)")
        except stripe.InvalidRequestError as e:
            print(f"Skipped coupon {coupon['id']}: {e.user_message or e}")

    print("\n--- Add these to your .env ---")
    for plan_type, price_id in price_ids.items():
        print(f"STRIPE_{plan_type.upper()}_PRICE_ID={price_id}")


if __name__ == "__main__":
    asyncio.run(main())
