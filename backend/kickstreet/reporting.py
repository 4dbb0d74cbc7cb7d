"""Admin dashboard statistics, re-aggregated from the orders collection on every call."""
import calendar
from datetime import datetime, timedelta
from typing import Dict, Optional

from pymongo import DESCENDING

from .checkout import serialize_order
from .errors import ValidationError
from .utils import utcnow

STATS_FILTERS = ("all", "today", "week", "month")
RECENT_ORDERS_LIMIT = 10

PAYMENT_COUNTERS = (
    ("pending_orders", "Pending"),
    ("paid_orders", "Paid"),
    ("failed_orders", "Failed"),
)
LOGISTICS_COUNTERS = (
    ("processing_orders", "Processing"),
    ("shipped_orders", "Shipped"),
    ("delivered_orders", "Delivered"),
    ("cancelled_orders", "Cancelled"),
    ("returned_orders", "Returned"),
)


def one_month_earlier(moment: datetime) -> datetime:
    if moment.month == 1:
        year, month = moment.year - 1, 12
    else:
        year, month = moment.year, moment.month - 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def window_start(stats_filter: str, now: Optional[datetime] = None) -> Optional[datetime]:
    now = now or utcnow()
    if stats_filter == "all":
        return None
    if stats_filter == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if stats_filter == "week":
        return now - timedelta(days=7)
    if stats_filter == "month":
        return one_month_earlier(now)
    raise ValidationError(f"Filter must be one of: {', '.join(STATS_FILTERS)}.")


def get_stats(db, stats_filter: Optional[str] = "all", now: Optional[datetime] = None) -> Dict:
    stats_filter = (stats_filter or "all").strip().lower()
    bound = window_start(stats_filter, now)
    window = {"created_at": {"$gte": bound}} if bound else {}

    revenue = list(
        db.orders.aggregate(
            [
                {"$match": {"status": "Paid", **window}},
                {"$group": {"_id": None, "total_revenue": {"$sum": "$amount_total"}}},
            ]
        )
    )

    stats: Dict[str, object] = {
        "total_revenue": round(revenue[0]["total_revenue"], 2) if revenue else 0,
    }
    for key, status in PAYMENT_COUNTERS:
        stats[key] = db.orders.count_documents({"status": status, **window})
    for key, order_status in LOGISTICS_COUNTERS:
        stats[key] = db.orders.count_documents({"order_status": order_status, **window})

    # Payment statuses are mutually exclusive, so the sum is the order count.
    stats["total_orders"] = sum(stats[key] for key, _ in PAYMENT_COUNTERS)
    stats["products_count"] = db.products.count_documents({})

    recent = db.orders.find({}).sort("created_at", DESCENDING).limit(RECENT_ORDERS_LIMIT)
    stats["recent_orders"] = [serialize_order(order) for order in recent]
    stats["all_orders"] = [
        serialize_order(order)
        for order in db.orders.find(window).sort("created_at", DESCENDING)
    ]
    stats["filter"] = stats_filter
    return stats
