from __future__ import annotations

import json
from datetime import timedelta

import joblib
import numpy as np
import pandas as pd
import pytest

from churn_analyzer.churn_signature import (
    HIGHER_MEANS_RISK,
    LOWER_MEANS_RISK,
    build_signature,
    compute_signature,
    describe_signature,
    export_signature,
    format_feature_value,
    get_or_build_signature,
    latest_signature,
    score_account,
)
from churn_analyzer.db import ChurnSignatureRecord
from churn_analyzer.feature_engineering import FEATURE_NAMES


def frame(values: dict[str, list[float]]) -> pd.DataFrame:
    n = len(next(iter(values.values())))
    data = {name: values.get(name, [0.0] * n) for name in FEATURE_NAMES}
    return pd.DataFrame(data)


@pytest.fixture
def ticket_count_signature():
    churned = frame({"ticket_count": [30.0, 40.0, 50.0]})
    active = frame({"ticket_count": [0.0, 10.0, 20.0]})
    return compute_signature(churned, active, window_days=90)


def test_separation_direction_and_threshold(ticket_count_signature) -> None:
    stats = ticket_count_signature.features["ticket_count"]

    assert stats.churned_mean == pytest.approx(40.0)
    assert stats.active_mean == pytest.approx(10.0)
    assert stats.separation == pytest.approx(3.0)
    assert stats.direction == HIGHER_MEANS_RISK
    assert stats.threshold == pytest.approx(25.0)
    assert stats.weight == pytest.approx(1.0)


def test_value_beyond_churned_mean_scores_full_and_fires(ticket_count_signature) -> None:
    result = score_account({"ticket_count": 45.0}, ticket_count_signature)

    assert result.score == 100.0
    assert result.risk_level == "critical"
    assert [s.feature for s in result.matched_signals] == ["ticket_count"]
    assert result.matched_signals[0].severity == 100.0
    assert result.matched_signals[0].explanation == (
        "Ticket volume: 45.0 (churned avg: 40.0, active avg: 10.0)"
    )


def test_value_at_active_mean_scores_zero(ticket_count_signature) -> None:
    result = score_account({"ticket_count": 10.0}, ticket_count_signature)
    assert result.score == 0.0
    assert result.risk_level == "low"
    assert result.signal_count == 0


def test_weights_sum_to_one() -> None:
    rng = np.random.default_rng(7)
    churned = pd.DataFrame(rng.normal(5, 2, size=(12, len(FEATURE_NAMES))), columns=FEATURE_NAMES)
    active = pd.DataFrame(rng.normal(3, 2, size=(30, len(FEATURE_NAMES))), columns=FEATURE_NAMES)

    signature = compute_signature(churned, active, window_days=90)

    total = sum(stats.weight for stats in signature.features.values())
    assert total == pytest.approx(1.0, abs=1e-6)


def test_zero_separation_weights_equally() -> None:
    same = frame({"ticket_count": [3.0, 3.0]})
    signature = compute_signature(same, same, window_days=90)

    for stats in signature.features.values():
        assert stats.separation == 0.0
        assert stats.weight == pytest.approx(1 / len(FEATURE_NAMES))


def test_lower_means_risk_direction() -> None:
    churned = frame({"ticket_count": [2.0, 4.0], "avg_resolution_hours": [1.0, 3.0]})
    active = frame({"ticket_count": [8.0, 10.0], "avg_resolution_hours": [1.0, 3.0]})
    signature = compute_signature(churned, active, window_days=90)

    stats = signature.features["ticket_count"]
    assert stats.direction == LOWER_MEANS_RISK
    assert score_account({"ticket_count": 2.0}, signature).score == 100.0
    assert score_account({"ticket_count": 12.0}, signature).score == 0.0


def test_score_is_monotonic_in_risk_direction() -> None:
    churned = frame(
        {"ticket_count": [30.0, 40.0, 50.0], "escalation_rate": [0.5, 0.6, 0.4]}
    )
    active = frame({"ticket_count": [0.0, 10.0, 20.0], "escalation_rate": [0.1, 0.2, 0.0]})
    signature = compute_signature(churned, active, window_days=90)

    scores = [
        score_account({"ticket_count": value, "escalation_rate": 0.3}, signature).score
        for value in np.linspace(0, 60, 25)
    ]
    assert scores == sorted(scores)


def test_missing_features_are_excluded_not_zeroed() -> None:
    churned = frame({"ticket_count": [30.0, 40.0, 50.0], "escalation_rate": [0.5, 0.6, 0.4]})
    active = frame({"ticket_count": [0.0, 10.0, 20.0], "escalation_rate": [0.1, 0.2, 0.0]})
    signature = compute_signature(churned, active, window_days=90)

    only_count = score_account({"ticket_count": 45.0}, signature)
    with_nan = score_account({"ticket_count": 45.0, "escalation_rate": float("nan")}, signature)

    assert only_count.score == 100.0
    assert with_nan.score == 100.0


def test_confidence_tracks_ticket_count(ticket_count_signature) -> None:
    assert score_account({"ticket_count": 12.0}, ticket_count_signature).confidence == "high"
    assert score_account({"ticket_count": 6.0}, ticket_count_signature).confidence == "medium"
    assert score_account({"ticket_count": 2.0}, ticket_count_signature).confidence == "low"


def test_no_churned_vectors_gives_no_signature() -> None:
    active = frame({"ticket_count": [1.0]})
    assert compute_signature(frame({"ticket_count": []}), active, window_days=90) is None


def test_feature_value_formatting() -> None:
    assert format_feature_value("escalation_rate", 0.256) == "26%"
    assert format_feature_value("avg_resolution_hours", 30.4) == "30h"
    assert format_feature_value("ticket_velocity", 1.25) == "1.2x"
    assert format_feature_value("ticket_count", 12.345) == "12.3"


def test_describe_ranks_by_separation() -> None:
    churned = frame({"ticket_count": [30.0, 40.0, 50.0], "escalation_rate": [0.5, 0.6, 0.4]})
    active = frame({"ticket_count": [0.0, 10.0, 20.0], "escalation_rate": [0.3, 0.4, 0.2]})
    table = describe_signature(compute_signature(churned, active, window_days=90))

    assert list(table["feature"][:2]) == ["ticket_count", "escalation_rate"]
    assert table["separation"].is_monotonic_decreasing


def test_build_persists_and_exclusion_does_not(session, churn_dataset) -> None:
    churn_dataset()

    signature = build_signature(session, 30)
    assert signature.id is not None
    assert signature.churned_sample_size == 3
    assert signature.active_sample_size == 3

    holdout = build_signature(session, 30, excluded_account_ids=["churned-0"])
    assert holdout.id is None
    assert holdout.churned_sample_size == 2
    assert session.query(ChurnSignatureRecord).count() == 1


def test_get_or_build_reuses_recent_signature(session, churn_dataset) -> None:
    churn_dataset()

    first = get_or_build_signature(session, 30)
    second = get_or_build_signature(session, 30)
    assert second.id == first.id

    record = session.get(ChurnSignatureRecord, first.id)
    record.computed_at = record.computed_at - timedelta(days=30)
    session.flush()

    assert latest_signature(session, 30) is None
    assert get_or_build_signature(session, 30).id != first.id


def test_export_signature_writes_artifacts(tmp_path, ticket_count_signature) -> None:
    artifact_path, metadata_path = export_signature(ticket_count_signature, tmp_path)

    restored = joblib.load(artifact_path)
    assert restored.features["ticket_count"].threshold == pytest.approx(25.0)
    metadata = json.loads(metadata_path.read_text())
    assert metadata["window_days"] == 90
    assert set(metadata["features"]) == set(FEATURE_NAMES)
