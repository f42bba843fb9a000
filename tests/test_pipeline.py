from __future__ import annotations

from churn_analyzer.db import ChurnPrediction, RiskScore, session_scope
from churn_analyzer.pipeline import (
    run_heuristic_analysis,
    run_matching,
    run_signature_analysis,
)


def test_too_few_churned_accounts_falls_back_to_heuristic(
    engine, session, churn_dataset
) -> None:
    churn_dataset(churned=2)
    session.commit()

    result = run_signature_analysis(window_days=30, engine=engine)

    assert result.fell_back
    assert result.signature is None
    assert result.heuristic is not None
    assert len(result.heuristic.scores) == 5
    with session_scope(engine) as check:
        assert check.query(RiskScore).count() == 5
        assert check.query(ChurnPrediction).count() == 0


def test_signature_analysis_regenerates_predictions(engine, session, churn_dataset) -> None:
    churn_dataset(churned=3)
    session.commit()

    first = run_signature_analysis(window_days=30, engine=engine)
    second = run_signature_analysis(window_days=30, engine=engine, rebuild=True, validate=True)

    assert not first.fell_back
    assert len(first.predictions) == 3
    assert set(first.predictions["churn_risk_level"]) == {"low"}
    assert second.signature.id != first.signature.id
    assert second.cross_validation.recall == 100.0
    assert second.signature.model_quality["recall"] == 100.0
    with session_scope(engine) as check:
        predictions = check.query(ChurnPrediction).all()
        assert len(predictions) == 3
        assert {p.signature_id for p in predictions} == {second.signature.id}


def test_run_matching_and_heuristic(engine, session, factory) -> None:
    factory.account("a1", "Joe's Auto Repair Inc")
    factory.organization(7, "Joes Auto Repair")
    session.commit()

    results = run_matching(engine)
    heuristic = run_heuristic_analysis(engine)

    assert results.counts()["high_confidence"] == 1
    assert list(heuristic.scores["account_id"]) == ["a1"]
    assert heuristic.distribution["low"] == 1


def test_unlinked_store_returns_empty_heuristic(engine, session, factory) -> None:
    factory.account("a1", "Joe's Auto Repair")
    factory.organization(7, "Brake Bros")
    session.commit()

    result = run_signature_analysis(window_days=30, engine=engine)

    assert result.fell_back
    assert result.heuristic.scores.empty
    assert sum(result.heuristic.distribution.values()) == 0
