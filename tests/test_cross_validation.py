from __future__ import annotations

from churn_analyzer.cross_validation import STATUS_INSUFFICIENT, STATUS_OK, validate
from churn_analyzer.db import ChurnSignatureRecord


def test_insufficient_sample_is_reported_not_raised(session, churn_dataset) -> None:
    churn_dataset(churned=2)

    report = validate(session, 30)

    assert report.status == STATUS_INSUFFICIENT
    assert report.sample_size == 2
    assert report.recall is None
    assert session.query(ChurnSignatureRecord).count() == 0


def test_every_holdout_recovered(session, churn_dataset) -> None:
    churn_dataset(churned=3)

    report = validate(session, 30)

    assert report.status == STATUS_OK
    assert report.true_positives == 3
    assert report.false_negatives == 0
    assert report.false_positives == 0
    assert report.recall == 100.0
    assert report.precision == 100.0
    assert report.f1 == 100.0
    assert report.missed == []


def test_metrics_are_percentages(session, churn_dataset) -> None:
    churn_dataset(churned=4)

    report = validate(session, 30)

    for metric in (report.recall, report.precision, report.f1):
        assert 0.0 <= metric <= 100.0
    assert report.active_scored == 3


def test_quality_is_stored_on_full_signature(session, churn_dataset) -> None:
    churn_dataset(churned=3)

    report = validate(session, 30)

    record = session.query(ChurnSignatureRecord).one()
    assert record.model_quality["recall"] == report.recall
    assert record.model_quality["sample_size"] == 3
