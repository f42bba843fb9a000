from __future__ import annotations

import math
from datetime import datetime, timedelta

import pandas as pd
import pytest

from churn_analyzer.feature_engineering import (
    ALL_TIME_WINDOW,
    FEATURE_NAMES,
    FeatureCache,
    compute_feature_vector,
    extract_all_time_features,
    extract_features,
    features_frame,
)

REFERENCE = datetime(2024, 6, 1)


def make_tickets(rows: list[dict]) -> pd.DataFrame:
    base = {
        "ticket_id": 0,
        "org_id": 1,
        "status": "solved",
        "priority": "normal",
        "ticket_type": "question",
        "category": "Other",
        "satisfaction": None,
        "solved_at": None,
        "resolution_hours": None,
        "is_escalation": False,
        "reopen_count": 0,
    }
    df = pd.DataFrame([{**base, "ticket_id": i, **row} for i, row in enumerate(rows)])
    df["created_at"] = pd.to_datetime(df["created_at"])
    return df


def days_ago(n: float) -> datetime:
    return REFERENCE - timedelta(days=n)


def test_no_tickets_in_window_returns_none() -> None:
    tickets = make_tickets([{"created_at": days_ago(200)}, {"created_at": days_ago(120)}])

    assert extract_features(tickets, REFERENCE, 90) is None
    assert extract_features(tickets.iloc[0:0], REFERENCE, 90) is None


def test_vector_has_every_feature_and_no_nan() -> None:
    tickets = make_tickets(
        [
            {"created_at": days_ago(5), "satisfaction": "bad", "priority": "urgent"},
            {"created_at": days_ago(10), "satisfaction": "good", "status": "open"},
            {"created_at": days_ago(40), "resolution_hours": 10.0, "reopen_count": 2},
            {
                "created_at": days_ago(70),
                "resolution_hours": 30.0,
                "ticket_type": "problem",
                "category": "Integration",
                "is_escalation": True,
            },
        ]
    )

    vector = extract_features(tickets, REFERENCE, 90)

    assert set(vector) == set(FEATURE_NAMES)
    assert all(math.isfinite(v) for v in vector.values())
    assert vector["ticket_count"] == 4
    assert vector["tickets_per_month"] == pytest.approx(4 / 3)
    assert vector["escalation_rate"] == pytest.approx(0.25)
    assert vector["bad_satisfaction_rate"] == pytest.approx(0.5)
    assert vector["avg_resolution_hours"] == pytest.approx(20.0)
    assert vector["reopen_rate"] == pytest.approx(0.25)
    assert vector["reopens_per_record"] == pytest.approx(0.5)
    assert vector["unique_category_count"] == 2
    assert vector["high_priority_rate"] == pytest.approx(0.25)
    assert vector["escalation_record_rate"] == pytest.approx(0.25)
    assert vector["unresolved_rate"] == pytest.approx(0.25)


def test_velocity_compares_recent_month_to_prior_average() -> None:
    rows = [{"created_at": days_ago(d)} for d in (1, 2, 3, 4)]
    rows += [{"created_at": days_ago(d)} for d in (40, 70)]
    vector = extract_features(make_tickets(rows), REFERENCE, 90)

    # 4 recent tickets vs 2 tickets over the prior two months
    assert vector["ticket_velocity"] == pytest.approx(4.0)


def test_velocity_without_prior_activity() -> None:
    vector = extract_features(make_tickets([{"created_at": days_ago(3)}]), REFERENCE, 90)
    assert vector["ticket_velocity"] == 2.0


def test_all_time_features_use_history_span() -> None:
    rows = [{"created_at": days_ago(d)} for d in (0, 60, 120, 180)]
    vector = extract_all_time_features(make_tickets(rows))

    assert vector["ticket_count"] == 4
    assert vector["tickets_per_month"] == pytest.approx(4 / 6)
    assert extract_all_time_features(make_tickets(rows).iloc[0:0]) is None


def test_features_frame_orders_columns() -> None:
    frame = features_frame({"a": {name: 1.0 for name in reversed(FEATURE_NAMES)}})
    assert list(frame.columns) == FEATURE_NAMES
    assert features_frame({}).empty


def test_compute_feature_vector_from_store(session, factory) -> None:
    factory.organization(1, "Org 1")
    factory.organization(2, "Org 2")
    factory.ticket(1, days_ago(3))
    factory.ticket(1, days_ago(20), satisfaction="bad")
    factory.ticket(2, days_ago(300))

    vector = compute_feature_vector(session, 1, REFERENCE, 90)

    assert vector["ticket_count"] == 2
    assert vector["bad_satisfaction_rate"] == 1.0
    assert compute_feature_vector(session, 2, REFERENCE, 90) is None


def test_feature_cache_reuses_snapshots(session, factory) -> None:
    factory.organization(1, "Org 1")
    factory.ticket(1, days_ago(3))

    cache = FeatureCache(session)
    first = cache.all_time(1, REFERENCE.date())
    second = cache.all_time(1, REFERENCE.date())

    assert first == second
    assert (cache.hits, cache.misses) == (1, 1)
    assert cache.get(1, ALL_TIME_WINDOW, REFERENCE.date()) == first


def test_feature_cache_honours_max_age(session, factory) -> None:
    factory.organization(1, "Org 1")
    factory.ticket(1, days_ago(3))

    cache = FeatureCache(session, max_age_days=-1)
    cache.windowed(1, REFERENCE, 90)
    cache.windowed(1, REFERENCE, 90)

    assert cache.hits == 0
    assert cache.misses == 2


def test_windowed_cache_ignores_time_of_day(session, factory) -> None:
    factory.organization(1, "Org 1")
    factory.ticket(1, days_ago(3))
    factory.ticket(1, REFERENCE + timedelta(hours=6))

    cache = FeatureCache(session)
    morning = cache.windowed(1, REFERENCE, 90)
    evening = cache.windowed(1, REFERENCE + timedelta(hours=20), 90)

    assert evening == morning
    assert morning["ticket_count"] == 1
    assert (cache.hits, cache.misses) == (1, 1)
