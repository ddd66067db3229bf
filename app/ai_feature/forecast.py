"""
PREDICTION PATH - straight-line trend forecast over daily snapshot history

History comes from daily_changes_snapshot (ETL output), summed per day.
The model only extracts which metric / entity / horizon the user means;
the numbers come from ordinary least squares here.
"""

import re
import statistics
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models

DEFAULT_HORIZON_DAYS = 7
MAX_HORIZON_DAYS = 90
# ~95% band under normally distributed residuals
Z_95 = 1.96


@dataclass
class ForecastResult:
    points: List[Dict[str, Any]] = field(default_factory=list)
    slope: float = 0.0
    intercept: float = 0.0
    residual_std: float = 0.0
    history_points: int = 0
    method: str = "linear_trend"


def linear_forecast(
    series: Sequence[Tuple[date, float]], horizon: int
) -> ForecastResult:
    """
    Fit value = intercept + slope * day_index and extend it `horizon` days.

    Args:
        series: (day, value) pairs, any order, one per day
        horizon: days to forecast after the last observed day

    Raises:
        ValueError: fewer than two observed days or horizon < 1

    Example:
        [(d0, 10), (d0+1, 12), (d0+2, 14)], horizon=2
        -> slope 2.0, points for d0+3 = 16 and d0+4 = 18
    """
    if horizon < 1:
        raise ValueError("horizon must be at least one day")
    if len(series) < 2:
        raise ValueError("at least two days of history are needed for a forecast")

    ordered = sorted(series, key=lambda pair: pair[0])
    start = ordered[0][0]
    xs = [float((day - start).days) for day, _ in ordered]
    ys = [float(value) for _, value in ordered]

    if len(set(xs)) < 2:
        raise ValueError("history must cover at least two distinct days")

    if len(set(ys)) == 1:
        slope, intercept = 0.0, ys[0]
    else:
        slope, intercept = statistics.linear_regression(xs, ys)

    residuals = [y - (intercept + slope * x) for x, y in zip(xs, ys)]
    residual_std = statistics.pstdev(residuals) if len(residuals) > 1 else 0.0
    band = Z_95 * residual_std

    last_day = ordered[-1][0]
    last_x = xs[-1]
    points = []
    for step in range(1, horizon + 1):
        value = intercept + slope * (last_x + step)
        points.append(
            {
                "date": last_day + timedelta(days=step),
                "value": round(value, 4),
                "lower": round(value - band, 4),
                "upper": round(value + band, 4),
            }
        )

    return ForecastResult(
        points=points,
        slope=slope,
        intercept=intercept,
        residual_std=residual_std,
        history_points=len(ordered),
    )


def clamp_horizon(value: Any) -> int:
    try:
        horizon = int(value)
    except (TypeError, ValueError):
        return DEFAULT_HORIZON_DAYS
    return max(1, min(MAX_HORIZON_DAYS, horizon))


def horizon_from_text(question: str) -> int:
    """
    Read "next 14 days", "next 3 weeks", "next month" from the question.
    Falls back to DEFAULT_HORIZON_DAYS.
    """
    q = (question or "").lower()
    match = re.search(r"(\d+)\s*(day|week|month)s?", q)
    if match:
        amount = int(match.group(1))
        unit = {"day": 1, "week": 7, "month": 30}[match.group(2)]
        return clamp_horizon(amount * unit)
    if "next week" in q:
        return 7
    if "next month" in q:
        return 30
    if "tomorrow" in q:
        return 1
    return DEFAULT_HORIZON_DAYS


# ============================================================================
# Database side
# ============================================================================


async def known_series_keys(db: AsyncSession) -> Tuple[List[str], List[str]]:
    """Distinct metrics and entities available for forecasting."""
    metrics = await db.execute(
        select(models.DailyChangesSnapshot.metric)
        .distinct()
        .order_by(models.DailyChangesSnapshot.metric)
    )
    entities = await db.execute(
        select(models.DailyChangesSnapshot.entity)
        .distinct()
        .order_by(models.DailyChangesSnapshot.entity)
    )
    return list(metrics.scalars().all()), list(entities.scalars().all())


async def load_daily_series(
    db: AsyncSession, metric: str, entity: Optional[str] = None
) -> List[Tuple[date, float]]:
    """Daily totals of one metric, optionally for a single entity."""
    snapshot = models.DailyChangesSnapshot
    stmt = (
        select(snapshot.snapshot_date, func.sum(snapshot.value).label("total"))
        .where(snapshot.metric == metric)
        .group_by(snapshot.snapshot_date)
        .order_by(snapshot.snapshot_date)
    )
    if entity:
        stmt = stmt.where(snapshot.entity == entity)

    result = await db.execute(stmt)
    return [(row.snapshot_date, float(row.total)) for row in result.all()]
