"""
Derived flock metrics.

Pure functions over already-loaded flocks (ORM rows or anything with the
same attributes). Nothing here touches the database.
"""
from collections import OrderedDict
from datetime import date, datetime
from typing import Callable, Iterable, Optional, TypeVar

T = TypeVar("T")


def _today(today: Optional[date]) -> date:
    return today or datetime.utcnow().date()


def age_in_weeks(hatch_date: date, today: Optional[date] = None) -> int:
    """Whole weeks since hatch, never negative."""
    days = (_today(today) - hatch_date).days
    return max(days // 7, 0)


def mortality_rate(flock) -> float:
    if flock.initial_count <= 0:
        return 0.0
    return (flock.initial_count - flock.count) / flock.initial_count * 100


def aggregate_mortality_rate(flocks: Iterable) -> float:
    """Farm-wide mortality: total losses over total initial birds."""
    flocks = list(flocks)
    initial = sum(f.initial_count for f in flocks)
    if initial <= 0:
        return 0.0
    lost = sum(f.initial_count - f.count for f in flocks)
    return round(lost / initial * 100, 2)


def feed_conversion_ratio(flock) -> Optional[float]:
    """Feed consumed per kg of live weight; None (N/A) outside broilers or without data."""
    if flock.type != "Broiler":
        return None
    total_weight_gain = flock.count * (flock.average_weight or 0)
    feed = flock.total_feed_consumed or 0
    if feed <= 0 or total_weight_gain <= 0:
        return None
    return round(feed / total_weight_gain, 2)


def cost_per_bird(flock) -> Optional[float]:
    if flock.count <= 0:
        return None
    return round((flock.total_cost or 0) / flock.count, 2)


def egg_production_rate(total_eggs: int, count: int, hatch_date: date,
                        today: Optional[date] = None) -> float:
    """Cumulative eggs over the lay opportunities since hatch, as a percent."""
    weeks = age_in_weeks(hatch_date, today)
    opportunities = weeks * 7 * count
    if opportunities <= 0:
        return 0.0
    return round(total_eggs / opportunities * 100, 2)


def average_metric(flocks: Iterable, metric: Callable) -> Optional[float]:
    """
    Unweighted mean of a per-flock metric. Flocks for which the metric is
    undefined are left out; a large flock counts the same as a small one.
    """
    values = [v for v in (metric(f) for f in flocks) if v is not None]
    if not values:
        return None
    return round(sum(values) / len(values), 2)


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def bucket_by_month(items: Iterable[T], date_of: Callable[[T], date]) -> "OrderedDict[str, list[T]]":
    """Group items by calendar month, oldest month first."""
    buckets: dict[tuple[int, int], list[T]] = {}
    for item in items:
        d = date_of(item)
        buckets.setdefault((d.year, d.month), []).append(item)
    return OrderedDict(
        (month_key(date(year, month, 1)), buckets[(year, month)])
        for year, month in sorted(buckets)
    )
