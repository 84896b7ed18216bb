"""Admin dashboard and sales reports."""
from collections import OrderedDict
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

import database
import orders
from errors import ValidationError

NOT_CANCELLED = {"status": {"$ne": "cancelled"}}


def _revenue(match: Dict[str, Any]) -> float:
    pipeline = [
        {"$match": match},
        {"$group": {"_id": None, "total": {"$sum": "$total_price"}}},
    ]
    agg = list(database.db["order"].aggregate(pipeline))
    return round(agg[0]["total"], 2) if agg else 0


def top_products(limit: int = 5) -> List[Dict[str, Any]]:
    return database.get_documents("product", sort=[("sold", -1)], limit=limit)


def recent_orders(limit: int = 5) -> List[Dict[str, Any]]:
    return orders.all_orders(limit)


def dashboard() -> Dict[str, Any]:
    return {
        "totalUsers": database.db["user"].count_documents({}),
        "totalProducts": database.db["product"].count_documents({}),
        "totalOrders": database.db["order"].count_documents({}),
        "totalRevenue": _revenue(NOT_CANCELLED),
        "recentOrders": recent_orders(5),
        "topSellingProducts": top_products(5),
    }


def _parse_day(value: Optional[str], label: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        day = datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid {label}, expected YYYY-MM-DD")
    return day if day.tzinfo else day.replace(tzinfo=timezone.utc)


def sales_report(start_date: Optional[str] = None, end_date: Optional[str] = None) -> Dict[str, Any]:
    """Orders and revenue between two days, both inclusive.

    Defaults to the last 30 days. Cancelled orders are left out.
    """
    end = _parse_day(end_date, "endDate") or database.utcnow()
    start = _parse_day(start_date, "startDate") or (end - timedelta(days=30))
    start = datetime.combine(start.date(), time.min, tzinfo=timezone.utc)
    end = datetime.combine(end.date(), time.max, tzinfo=timezone.utc)
    if start > end:
        raise ValidationError("startDate must be before endDate")

    daily: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    total = 0.0
    count = 0
    query = {**NOT_CANCELLED, "created_at": {"$gte": start, "$lte": end}}
    for order in database.db["order"].find(query).sort([("created_at", 1)]):
        day = order["created_at"].strftime("%Y-%m-%d")
        bucket = daily.setdefault(day, {"date": day, "orders": 0, "revenue": 0.0})
        bucket["orders"] += 1
        bucket["revenue"] = round(bucket["revenue"] + order["total_price"], 2)
        total += order["total_price"]
        count += 1

    return {
        "startDate": start.date().isoformat(),
        "endDate": end.date().isoformat(),
        "totalOrders": count,
        "totalRevenue": round(total, 2),
        "averageOrderValue": round(total / count, 2) if count else 0,
        "dailySales": list(daily.values()),
    }
