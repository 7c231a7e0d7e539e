"""
Filtering, sorting and summary stats over already-fetched lists

Used by the browse page and the admin screens. Nothing here touches the store.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from payments import to_decimal
from schemas import SPONSORSHIP_STATUSES, Agreement, Sponsorship, User

SORTS = ("newest", "amount_desc", "amount_asc", "deadline", "popular")


def _contains(value: Optional[str], needle: str) -> bool:
    return bool(value) and needle in value.lower()


def _created(item) -> datetime:
    return item.created_at or datetime.min.replace(tzinfo=timezone.utc)


def popularity(sponsorship: Sponsorship) -> int:
    return sponsorship.view_count + len(sponsorship.interested_businesses) * 3


def filter_sponsorships(
    items: List[Sponsorship],
    category: Optional[str] = None,
    max_amount: Optional[float] = None,
    location: Optional[str] = None,
    urgency: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    sort: str = "newest",
) -> List[Sponsorship]:
    result = []
    for s in items:
        if category and category != "all" and s.category != category:
            continue
        if urgency and urgency != "all" and s.urgency != urgency:
            continue
        if status and status != "all" and s.status != status:
            continue
        if max_amount is not None and s.amount > max_amount:
            continue
        if location and s.location and location.lower() not in s.location.lower():
            continue
        if search:
            needle = search.lower()
            if not any(_contains(v, needle) for v in (s.title, s.club_name, s.description, s.location)):
                continue
        result.append(s)

    if sort == "amount_desc":
        result.sort(key=lambda s: s.amount, reverse=True)
    elif sort == "amount_asc":
        result.sort(key=lambda s: s.amount)
    elif sort == "deadline":
        # requests without a deadline go last
        result.sort(key=lambda s: (s.deadline is None, s.deadline or datetime.max.date()))
    elif sort == "popular":
        result.sort(key=popularity, reverse=True)
    else:
        result.sort(key=_created, reverse=True)
    return result


def filter_users(
    items: List[User],
    role: Optional[str] = None,
    active: Optional[bool] = None,
    search: Optional[str] = None,
) -> List[User]:
    result = []
    for u in items:
        if role and role != "all" and u.role != role:
            continue
        if active is not None and u.is_active != active:
            continue
        if search:
            needle = search.lower()
            if not any(_contains(v, needle) for v in (u.name, u.email, u.location)):
                continue
        result.append(u)
    return result


def filter_agreements(items: List[Agreement], status: Optional[str] = None, search: Optional[str] = None) -> List[Agreement]:
    result = []
    for a in items:
        if status and status != "all" and a.status != status:
            continue
        if search:
            needle = search.lower()
            if not any(_contains(v, needle) for v in (a.sponsorship_title, a.club_name, a.business_name)):
                continue
        result.append(a)
    return result


def sponsorship_stats(items: List[Sponsorship]) -> Dict[str, float]:
    stats: Dict[str, float] = {status: 0 for status in SPONSORSHIP_STATUSES}
    total_value = to_decimal(0)
    for s in items:
        stats[s.status] += 1
        total_value += to_decimal(s.amount)
    stats["total"] = len(items)
    stats["total_value"] = float(total_value)
    stats["avg_amount"] = float(to_decimal(total_value / len(items))) if items else 0.0
    return stats


def agreement_stats(items: List[Agreement], now: Optional[datetime] = None) -> Dict[str, float]:
    now = now or datetime.now(timezone.utc)
    week_ago = now - timedelta(days=7)
    month_ago = now - timedelta(days=30)
    revenue = fees = this_week = this_month = to_decimal(0)
    active = disputed = 0
    for a in items:
        revenue += to_decimal(a.amount)
        fees += to_decimal(a.platform_fee)
        if a.created_at and a.created_at > month_ago:
            this_month += to_decimal(a.amount)
        if a.created_at and a.created_at > week_ago:
            this_week += to_decimal(a.amount)
        if a.status == "active":
            active += 1
        elif a.status == "disputed":
            disputed += 1
    return {
        "total_payments": len(items),
        "total_revenue": float(revenue),
        "total_fees": float(fees),
        "average_payment": float(to_decimal(revenue / len(items))) if items else 0.0,
        "this_week": float(this_week),
        "this_month": float(this_month),
        "active_payments": active,
        "disputed_payments": disputed,
    }


def user_stats(items: List[User]) -> Dict[str, int]:
    stats = {"total": len(items), "clubs": 0, "businesses": 0, "admins": 0, "active": 0, "inactive": 0}
    for u in items:
        stats[{"club": "clubs", "business": "businesses", "admin": "admins"}[u.role]] += 1
        stats["active" if u.is_active else "inactive"] += 1
    return stats
