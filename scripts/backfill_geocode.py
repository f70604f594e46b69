# scripts/backfill_geocode.py
import argparse

from sqlalchemy import select

from dailycup.config import get_settings
from dailycup.db import SessionLocal
from dailycup.geocode import GeocodeQueue
from dailycup.models import DeliveryMethod, GeocodeJob, GeocodeJobStatus, Order, OrderStatus


def main():
    parser = argparse.ArgumentParser(description="Enqueue geocode jobs for delivery orders missing coordinates.")
    parser.add_argument("--limit", type=int, default=500)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    queue = GeocodeQueue(get_settings())
    queued = select(GeocodeJob.order_id).where(
        GeocodeJob.status.in_([GeocodeJobStatus.PENDING, GeocodeJobStatus.PROCESSING])
    )
    with SessionLocal.begin() as db:
        orders = db.scalars(
            select(Order)
            .where(
                Order.delivery_method == DeliveryMethod.DELIVERY,
                Order.status.not_in([OrderStatus.COMPLETED, OrderStatus.CANCELLED]),
                (Order.delivery_lat.is_(None)) | (Order.delivery_lng.is_(None)),
                Order.id.not_in(queued),
            )
            .order_by(Order.id)
            .limit(args.limit)
        ).all()
        for o in orders:
            print(f"{'would enqueue' if args.dry_run else 'enqueue'} {o.order_number}: {o.delivery_address!r}")
            if not args.dry_run:
                queue.enqueue(db, o)
    print(f"{len(orders)} order(s) {'found' if args.dry_run else 'queued'}")


if __name__ == "__main__":
    main()
