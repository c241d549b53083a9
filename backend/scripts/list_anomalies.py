"""Print webhook anomalies: Stripe events acknowledged without being applied.

Each row is a paid Stripe subscription (or a vanished one) that no local
user owns yet; reconcile it in the Stripe dashboard or by fixing the user.

Run inside Docker:
    docker compose exec backend python -m scripts.list_anomalies
    docker compose exec backend python -m scripts.list_anomalies --event evt_123
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.database import async_session_factory
from app.services.anomaly_service import list_anomalies


async def main(event_id: str | None, limit: int) -> None:
    async with async_session_factory() as session:
        anomalies = await list_anomalies(session, event_id=event_id, limit=limit)

    if not anomalies:
        print("✅ No webhook anomalies")
        return

    print("=" * 60)
    print(f"⚠️  {len(anomalies)} webhook anomaly(ies), newest first")
    print("=" * 60)
    for anomaly in anomalies:
        print(f"   {anomaly.created_at}  {anomaly.event_type}  {anomaly.event_id}")
        print(f"      reason:       {anomaly.reason}")
        print(f"      customer:     {anomaly.stripe_customer_id}")
        print(f"      subscription: {anomaly.stripe_subscription_id}")
        if anomaly.details:
            print(f"      details:      {json.dumps(anomaly.details, default=str)}")
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--event", dest="event_id", help="Only show anomalies for this Stripe event id")
    parser.add_argument("--limit", type=int, default=50)
    args = parser.parse_args()
    asyncio.run(main(args.event_id, args.limit))
