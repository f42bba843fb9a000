from __future__ import annotations

from datetime import timedelta

import pandas as pd

from churn_analyzer.report import (
    build_dashboard_payload,
    categorize_factor,
    export_csv,
    store_status,
)
from churn_analyzer.risk_scoring import analyze_accounts


def seed(session, factory, now) -> None:
    factory.matched("noisy", 1, churn_date=(now - timedelta(days=3)).date())
    factory.matched("quiet", 2)
    factory.account("unmatched")
    for day in range(1, 13):
        factory.ticket(
            1, now - timedelta(days=day), status="open", is_escalation=True, satisfaction="bad"
        )
    factory.ticket(2, now - timedelta(days=45), satisfaction="good")
    analyze_accounts(session, reference_time=now)


def test_factor_categories_first_match_wins() -> None:
    assert categorize_factor("Ticket volume increased 300% in last 30 days") == (
        "Ticket volume increasing"
    )
    assert categorize_factor("3 bad CSAT ratings in 90 days") == "Bad CSAT ratings"
    assert categorize_factor("Has open/pending tickets") == "Recent activity"
    assert categorize_factor("Something new") == "Other"


def test_dashboard_payload_summary(session, factory, now) -> None:
    seed(session, factory, now)

    payload = build_dashboard_payload(session)
    summary = payload["summary"]

    assert summary["total_accounts"] == 3
    assert summary["matched"] == 2
    assert summary["unscored"] == 1
    assert summary["model_recall"] == 100
    assert [a["account_id"] for a in payload["accounts"]] == ["noisy", "quiet"]
    assert payload["accounts"][0]["is_churned"] is True
    assert payload["churn_correlation"]["has_churn_data"] is True
    assert payload["churn_correlation"]["avg_tickets_monthly_churned"] == 4.0
    assert {f["name"] for f in payload["top_risk_factors"]} >= {"High escalation rate"}


def test_export_csv(session, factory, now, tmp_path) -> None:
    seed(session, factory, now)

    out_path = export_csv(session, tmp_path / "scores.csv")
    df = pd.read_csv(out_path)

    assert list(df["Account Name"]) == ["noisy", "quiet"]
    assert list(df["Churned"]) == ["Yes", "No"]
    assert "Risk Factors" in df.columns


def test_store_status_counts(session, factory, now) -> None:
    seed(session, factory, now)

    stats = store_status(session)

    assert stats["accounts"] == 3
    assert stats["churned"] == 1
    assert stats["tickets"] == 13
    assert stats["confirmed"] == 2
    assert stats["risk_scores"] == 2
    assert stats["signatures"] == 0
