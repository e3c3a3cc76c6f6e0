"""
Report shaping for the dashboard, financials and performance views.
"""
from datetime import date
from typing import Iterable, Optional

from . import metrics, schemas

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "KES": "KSh",
    "NGN": "₦",
}


def format_currency(amount: float, currency: Optional[str] = "USD") -> str:
    symbol = CURRENCY_SYMBOLS.get(currency or "USD", "$")
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.2f}"


def flock_display_name(flock) -> str:
    breed = flock.breed if len(flock.breed) <= 15 else f"{flock.breed[:15]}..."
    return f"{breed} ({flock.id[:4]})"


def financial_summary(sales: Iterable, expenditures: Iterable, currency: str = "USD") -> schemas.FinancialSummary:
    sales = list(sales)
    expenditures = list(expenditures)
    total_revenue = sum(s.total for s in sales)
    total_expenditure = sum(e.amount for e in expenditures)

    # (date, revenue, expenditure)
    entries = [(s.sale_date, s.total, 0.0) for s in sales]
    entries += [(e.expenditure_date, 0.0, e.amount) for e in expenditures]

    monthly = []
    for month, items in metrics.bucket_by_month(entries, lambda entry: entry[0]).items():
        revenue = sum(item[1] for item in items)
        expenditure = sum(item[2] for item in items)
        monthly.append(schemas.FinancialMonth(
            month=month,
            revenue=round(revenue, 2),
            expenditure=round(expenditure, 2),
            profit=round(revenue - expenditure, 2),
        ))

    net_profit = total_revenue - total_expenditure
    return schemas.FinancialSummary(
        currency=currency,
        total_revenue=round(total_revenue, 2),
        total_expenditure=round(total_expenditure, 2),
        net_profit=round(net_profit, 2),
        formatted_net_profit=format_currency(net_profit, currency),
        monthly=monthly,
    )


def flock_comparison(flocks: Iterable) -> list[schemas.FlockPerformance]:
    return [
        schemas.FlockPerformance(
            flock_id=flock.id,
            name=flock_display_name(flock),
            mortality=round(metrics.mortality_rate(flock), 2),
            fcr=metrics.feed_conversion_ratio(flock),
            average_weight=round(flock.average_weight or 0, 2),
            cost_per_bird=metrics.cost_per_bird(flock),
        )
        for flock in flocks
    ]


def weekly_projection(flock, today: Optional[date] = None) -> list[schemas.WeeklyPerformance]:
    """
    Linear week-by-week projection of weight and feed up to the flock's
    current totals. Mortality is cumulative and reported flat.
    """
    weeks = metrics.age_in_weeks(flock.hatch_date, today)
    mortality = round(metrics.mortality_rate(flock), 2)
    projection = []
    for week in range(1, weeks + 1):
        share = week / weeks
        weight = (flock.average_weight or 0) * share
        feed = (flock.total_feed_consumed or 0) * share
        gain = flock.count * weight
        fcr = None
        if flock.type == "Broiler" and feed > 0 and gain > 0:
            fcr = round(feed / gain, 2)
        projection.append(schemas.WeeklyPerformance(
            name=f"Week {week}",
            mortality=mortality,
            fcr=fcr,
            average_weight=round(weight, 2),
        ))
    return projection


def hatch_month_performance(flocks: Iterable) -> list[schemas.HatchMonthPerformance]:
    buckets = metrics.bucket_by_month(flocks, lambda flock: flock.hatch_date)
    return [
        schemas.HatchMonthPerformance(
            month=month,
            flock_count=len(items),
            birds=sum(flock.count for flock in items),
            average_mortality=metrics.average_metric(items, metrics.mortality_rate),
            average_fcr=metrics.average_metric(items, metrics.feed_conversion_ratio),
        )
        for month, items in buckets.items()
    ]


def dashboard_summary(flocks: Iterable, sales: Iterable, expenditures: Iterable,
                      latest_reading=None) -> schemas.DashboardSummary:
    flocks = list(flocks)
    return schemas.DashboardSummary(
        total_birds=sum(flock.count for flock in flocks),
        flock_count=len(flocks),
        mortality_rate=metrics.aggregate_mortality_rate(flocks),
        average_fcr=metrics.average_metric(flocks, metrics.feed_conversion_ratio),
        average_weight=metrics.average_metric(flocks, lambda flock: flock.average_weight),
        total_eggs_collected=sum(flock.total_eggs_collected or 0 for flock in flocks),
        total_revenue=round(sum(s.total for s in sales), 2),
        total_expenditure=round(sum(e.amount for e in expenditures), 2),
        latest_sensor_reading=(
            schemas.SensorReading.model_validate(latest_reading) if latest_reading is not None else None
        ),
    )
