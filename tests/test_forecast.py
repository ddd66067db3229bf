from datetime import date, timedelta

import pytest

from app.ai_feature.forecast import (
    DEFAULT_HORIZON_DAYS,
    MAX_HORIZON_DAYS,
    clamp_horizon,
    horizon_from_text,
    known_series_keys,
    linear_forecast,
    load_daily_series,
)

D0 = date(2025, 1, 1)


def test_perfect_line_extends_trend():
    series = [(D0, 10), (D0 + timedelta(days=1), 12), (D0 + timedelta(days=2), 14)]
    result = linear_forecast(series, horizon=2)

    assert result.slope == pytest.approx(2.0)
    assert result.history_points == 3
    assert [p["date"] for p in result.points] == [
        D0 + timedelta(days=3),
        D0 + timedelta(days=4),
    ]
    assert [p["value"] for p in result.points] == [16.0, 18.0]
    # No residuals, no band
    assert result.points[0]["lower"] == result.points[0]["upper"] == 16.0


def test_unordered_input_is_sorted():
    series = [(D0 + timedelta(days=2), 14), (D0, 10), (D0 + timedelta(days=1), 12)]
    assert linear_forecast(series, horizon=1).points[0]["value"] == 16.0


def test_constant_series_is_flat():
    series = [(D0 + timedelta(days=i), 50) for i in range(5)]
    result = linear_forecast(series, horizon=3)

    assert result.slope == 0.0
    assert {p["value"] for p in result.points} == {50.0}


def test_gaps_use_calendar_days():
    # Day 0 and day 10 only: slope is per calendar day, not per observation
    series = [(D0, 0), (D0 + timedelta(days=10), 100)]
    result = linear_forecast(series, horizon=1)

    assert result.slope == pytest.approx(10.0)
    assert result.points[0]["value"] == pytest.approx(110.0)


def test_noisy_series_has_band_around_value():
    values = [10, 14, 11, 16, 13, 18]
    series = [(D0 + timedelta(days=i), v) for i, v in enumerate(values)]
    point = linear_forecast(series, horizon=1).points[0]

    assert point["lower"] < point["value"] < point["upper"]
    assert point["value"] - point["lower"] == pytest.approx(
        point["upper"] - point["value"], abs=1e-3
    )


def test_needs_two_points():
    with pytest.raises(ValueError):
        linear_forecast([(D0, 1)], horizon=3)


def test_needs_positive_horizon():
    with pytest.raises(ValueError):
        linear_forecast([(D0, 1), (D0 + timedelta(days=1), 2)], horizon=0)


@pytest.mark.parametrize(
    "value, expected",
    [(14, 14), ("30", 30), (0, 1), (-5, 1), (1000, MAX_HORIZON_DAYS), ("soon", DEFAULT_HORIZON_DAYS), (None, DEFAULT_HORIZON_DAYS)],
)
def test_clamp_horizon(value, expected):
    assert clamp_horizon(value) == expected


@pytest.mark.parametrize(
    "question, expected",
    [
        ("Forecast revenue for the next 14 days", 14),
        ("What will revenue be over the next 3 weeks?", 21),
        ("Predict signups next month", 30),
        ("What about next week?", 7),
        ("Revenue tomorrow?", 1),
        ("Where is revenue heading?", DEFAULT_HORIZON_DAYS),
    ],
)
def test_horizon_from_text(question, expected):
    assert horizon_from_text(question) == expected


@pytest.mark.asyncio
async def test_known_series_keys(db_session, snapshot_rows):
    metrics, entities = await known_series_keys(db_session)

    assert metrics == ["revenue"]
    assert entities == ["Store A", "Store B"]


@pytest.mark.asyncio
async def test_load_daily_series_sums_entities(db_session, snapshot_rows):
    series = await load_daily_series(db_session, "revenue")

    assert len(series) == 10
    assert series[0] == (D0, 150.0)
    assert series[-1] == (D0 + timedelta(days=9), 240.0)


@pytest.mark.asyncio
async def test_load_daily_series_single_entity(db_session, snapshot_rows):
    series = await load_daily_series(db_session, "revenue", "Store B")

    assert {value for _, value in series} == {50.0}
