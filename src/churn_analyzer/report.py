# src/churn_analyzer/report.py
"""
Reports over the stored risk scores and churn predictions.

  • console summary           (default)
  • churn_dashboard.json      (--dashboard)
  • risk_scores_<date>.csv    (--csv)
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Callable

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import config
from .db import (
    Account,
    AccountOrgLink,
    ChurnPrediction,
    Organization,
    RiskScore,
    get_stats,
    session_scope,
    utcnow,
)

logger = logging.getLogger(__name__)

LEVELS = ("critical", "high", "medium", "low")

FACTOR_CATEGORIES: list[tuple[Callable[[str], bool], str]] = [
    (lambda f: "volume increased" in f or "volume trending" in f, "Ticket volume increasing"),
    (lambda f: "escalated" in f, "High escalation rate"),
    (lambda f: "CSAT" in f or "bad" in f, "Bad CSAT ratings"),
    (lambda f: "High ticket volume" in f, "High ticket volume"),
    (lambda f: "resolution time" in f, "Slow resolution times"),
    (lambda f: "categories" in f, "Broad issue categories"),
    (lambda f: "open" in f or "Last ticket" in f, "Recent activity"),
]
DEFAULT_FACTOR_CATEGORY = "Other"

CSV_COLUMNS = {
    "name": "Account Name",
    "overall_score": "Risk Score",
    "risk_level": "Risk Level",
    "mrr": "MRR",
    "status": "CRM Status",
    "churned": "Churned",
    "ticket_count_30d": "Tickets 30d",
    "ticket_count_90d": "Tickets 90d",
    "trend_direction": "Trend",
    "escalation_count_30d": "Escalations 30d",
    "bad_satisfaction_count": "Bad CSAT",
    "avg_resolution_hours": "Avg Resolution Hours",
    "unique_categories": "Unique Categories",
    "volume_score": "Volume Score",
    "escalation_score": "Escalation Score",
    "sentiment_score": "Sentiment Score",
    "velocity_score": "Velocity Score",
    "resolution_score": "Resolution Score",
    "breadth_score": "Breadth Score",
    "recency_score": "Recency Score",
    "risk_factors": "Risk Factors",
}


def categorize_factor(factor: str) -> str:
    for predicate, label in FACTOR_CATEGORIES:
        if predicate(factor):
            return label
    return DEFAULT_FACTOR_CATEGORY


def risk_score_frame(session: Session) -> pd.DataFrame:
    """Stored risk scores joined to account and organization, highest first."""

    session.flush()
    rows = session.execute(
        select(
            RiskScore,
            Account.name,
            Account.mrr,
            Account.status,
            Account.churn_date,
            Organization.name.label("org_name"),
        )
        .join(Account, Account.account_id == RiskScore.account_id)
        .outerjoin(Organization, Organization.org_id == RiskScore.org_id)
        .order_by(RiskScore.overall_score.desc())
    ).all()

    records = []
    for score, name, mrr, status, churn_date, org_name in rows:
        record = {c.key: getattr(score, c.key) for c in RiskScore.__table__.columns}
        record.update(
            name=name,
            mrr=mrr,
            status=status,
            churned=churn_date is not None,
            org_name=org_name,
        )
        records.append(record)

    columns = [c.key for c in RiskScore.__table__.columns] + [
        "name",
        "mrr",
        "status",
        "churned",
        "org_name",
    ]
    df = pd.DataFrame(records, columns=columns)
    for col in ("avg_resolution_hours", "mrr"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["churned"] = df["churned"].astype(bool)
    return df


def prediction_frame(session: Session) -> pd.DataFrame:
    session.flush()
    rows = session.execute(
        select(ChurnPrediction, Account.name, Account.mrr)
        .join(Account, Account.account_id == ChurnPrediction.account_id)
        .order_by(ChurnPrediction.churn_score.desc())
    ).all()
    columns = [
        "account_id",
        "name",
        "mrr",
        "churn_score",
        "churn_risk_level",
        "signal_count",
        "confidence",
        "top_signal",
    ]
    records = [
        (
            p.account_id,
            name,
            mrr,
            p.churn_score,
            p.churn_risk_level,
            p.signal_count,
            p.confidence,
            p.matched_signals[0]["explanation"] if p.matched_signals else None,
        )
        for p, name, mrr in rows
    ]
    return pd.DataFrame(records, columns=columns)


def _round(value: Any) -> float | None:
    if value is None or pd.isna(value):
        return None
    return round(float(value), 1)


def _population_averages(frame: pd.DataFrame) -> dict[str, float | None]:
    tickets = frame["ticket_count_30d"].where(frame["ticket_count_30d"] > 0)
    escalation_rate = (frame["escalation_count_30d"] / tickets).fillna(0.0)
    return {
        "avg_tickets_monthly": _round(frame["ticket_count_90d"].mean() / 3.0),
        "avg_escalation_rate": _round(escalation_rate.mean()),
        "avg_resolution_hours": _round(frame["avg_resolution_hours"].mean()),
    }


def build_dashboard_payload(session: Session) -> dict[str, Any]:
    """Summary, distribution, factor counts, per-account rows and churn comparison."""

    scores = risk_score_frame(session)
    total = int(session.execute(select(func.count()).select_from(Account)).scalar_one())
    matched = int(
        session.execute(
            select(func.count())
            .select_from(AccountOrgLink)
            .where(AccountOrgLink.org_id.is_not(None))
        ).scalar_one()
    )
    churned_total = int(
        session.execute(
            select(func.count()).select_from(Account).where(Account.churn_date.is_not(None))
        ).scalar_one()
    )

    counts = {level: 0 for level in LEVELS}
    counts.update({k: int(v) for k, v in scores["risk_level"].value_counts().items()})

    model_recall = None
    if churned_total > 0:
        flagged = scores[scores["churned"] & scores["risk_level"].isin(["high", "critical"])]
        model_recall = round(len(flagged) / churned_total * 100)

    factor_counts: dict[str, int] = {}
    for factors in scores["risk_factors"]:
        for factor in factors or []:
            category = categorize_factor(factor)
            factor_counts[category] = factor_counts.get(category, 0) + 1
    top_factors = sorted(factor_counts.items(), key=lambda kv: kv[1], reverse=True)

    accounts = []
    for row in scores.to_dict(orient="records"):
        top = row["top_categories"] or []
        accounts.append(
            {
                "name": row["name"],
                "account_id": row["account_id"],
                "org_id": row["org_id"],
                "org_name": row["org_name"],
                "risk_score": row["overall_score"],
                "risk_level": row["risk_level"],
                "status": row["status"],
                "is_churned": bool(row["churned"]),
                "tickets_30d": row["ticket_count_30d"],
                "tickets_60d": row["ticket_count_60d"],
                "tickets_90d": row["ticket_count_90d"],
                "trend": row["trend_direction"],
                "top_category": top[0]["category"] if top else None,
                "escalations_30d": row["escalation_count_30d"],
                "bad_csat": row["bad_satisfaction_count"],
                "avg_resolution_hours": _round(row["avg_resolution_hours"]),
                "mrr": _round(row["mrr"]),
                "scores": {c: row[f"{c}_score"] for c in config.WEIGHTS},
                "risk_factors": row["risk_factors"] or [],
            }
        )

    correlation: dict[str, Any] = {"has_churn_data": False}
    if churned_total > 0 and not scores.empty:
        churned = _population_averages(scores[scores["churned"]])
        active = _population_averages(scores[~scores["churned"]])
        correlation = {
            "has_churn_data": True,
            **{f"{k}_churned": v for k, v in churned.items()},
            **{f"{k}_active": v for k, v in active.items()},
        }

    return {
        "summary": {
            "total_accounts": total,
            "matched": matched,
            **counts,
            "unscored": total - sum(counts.values()),
            "model_recall": model_recall,
        },
        "risk_distribution": [
            {"name": level.capitalize(), "count": counts[level]} for level in LEVELS
        ],
        "top_risk_factors": [{"name": name, "count": n} for name, n in top_factors],
        "accounts": accounts,
        "churn_correlation": correlation,
        "generated_at": utcnow().isoformat(),
    }


def export_csv(session: Session, path: Path | str | None = None) -> Path:
    """Write the stored risk scores as a spreadsheet-friendly CSV."""

    if path is None:
        path = Path(config.REPORTS_DIR) / f"risk_scores_{utcnow().date()}.csv"
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    df = risk_score_frame(session)
    df["churned"] = df["churned"].map({True: "Yes", False: "No"})
    df["avg_resolution_hours"] = df["avg_resolution_hours"].round()
    df["risk_factors"] = df["risk_factors"].map(lambda fs: "; ".join(fs or []))
    df[list(CSV_COLUMNS)].rename(columns=CSV_COLUMNS).to_csv(out_path, index=False)
    logger.info("Wrote %d risk score rows to %s", len(df), out_path)
    return out_path


def write_dashboard_json(session: Session, path: Path | str | None = None) -> Path:
    out_path = Path(path or Path(config.REPORTS_DIR) / "churn_dashboard.json")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    payload = build_dashboard_payload(session)
    out_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    return out_path


def store_status(session: Session) -> dict[str, Any]:
    return get_stats(session)


def print_status(stats: dict[str, Any]) -> None:
    print("=== Churn Analyzer Status ===")
    print(f"  Accounts:       {stats['accounts']} ({stats['churned']} churned)")
    print(f"  Organizations:  {stats['organizations']}")
    print(f"  Tickets:        {stats['tickets']}")
    print(f"  Matched:        {stats['matched']} ({stats['confirmed']} confirmed)")
    print(f"  Risk scores:    {stats['risk_scores']}")
    print(f"  Signatures:     {stats['signatures']}")
    print(f"  Predictions:    {stats['predictions']}")
    if stats["last_signature"]:
        print(f"  Last signature: {stats['last_signature']}")
    if stats["last_ticket_fetch"]:
        print(f"  Last ticket import: {stats['last_ticket_fetch']}")


def print_console_report(payload: dict[str, Any], predictions: pd.DataFrame) -> None:
    s = payload["summary"]
    scored = sum(s[level] for level in LEVELS)
    print("=== Churn Risk Report ===")
    print(f"  Total Accounts: {s['total_accounts']} | Matched: {s['matched']} | Scored: {scored}")
    print("  Risk Distribution:")
    for level in LEVELS:
        print(f"    {level.capitalize():<9} {s[level]}")
    if s["model_recall"] is not None:
        print(f"  Model Recall: {s['model_recall']}%")

    if payload["top_risk_factors"]:
        print("  Top Risk Factors:")
        for f in payload["top_risk_factors"][:5]:
            print(f"    {f['count']:>4} accounts: {f['name']}")

    c = payload["churn_correlation"]
    if c["has_churn_data"]:
        print("  Churn vs Active Comparison:")
        print(
            f"    Avg tickets/month:    Churned {c['avg_tickets_monthly_churned']} "
            f"vs Active {c['avg_tickets_monthly_active']}"
        )
        print(
            f"    Avg escalation rate:  Churned {c['avg_escalation_rate_churned']} "
            f"vs Active {c['avg_escalation_rate_active']}"
        )
        print(
            f"    Avg resolution (hrs): Churned {c['avg_resolution_hours_churned']} "
            f"vs Active {c['avg_resolution_hours_active']}"
        )

    if payload["accounts"]:
        print("  Highest Risk Accounts:")
        print("    Score  Level     Tickets   Trend  Account")
        arrows = {"increasing": "^", "decreasing": "v"}
        for a in payload["accounts"][: config.REPORT_TOP_N]:
            mrr = f" (${a['mrr']:g}/mo)" if a["mrr"] else ""
            print(
                f"    {a['risk_score']:>5}  {a['risk_level']:<9} {a['tickets_30d']:>5}/30d "
                f"{arrows.get(a['trend'], ' ')}  {a['name']}{mrr}"
            )

    if not predictions.empty:
        print("  Signature Predictions (active accounts):")
        for p in predictions.head(config.REPORT_TOP_N).itertuples(index=False):
            print(
                f"    {p.churn_score:>5}  {p.churn_risk_level:<9} [{p.confidence}] {p.name}"
                + (f"  - {p.top_signal}" if p.top_signal else "")
            )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Report stored churn risk results.")
    parser.add_argument("--dashboard", action="store_true", help="Write the dashboard JSON.")
    parser.add_argument("--csv", action="store_true", help="Write risk scores as CSV.")
    parser.add_argument("--out", type=str, default=None, help="Output path override.")
    args = parser.parse_args(argv)

    with session_scope() as session:
        if args.dashboard:
            out_path = write_dashboard_json(session, args.out)
            print(f"Wrote: {out_path}")
        elif args.csv:
            out_path = export_csv(session, args.out)
            print(f"Wrote: {out_path}")
        else:
            print_console_report(build_dashboard_payload(session), prediction_frame(session))


if __name__ == "__main__":
    main()
