# src/churn_analyzer/risk_scoring.py
"""
Compute heuristic churn risk scores from recent ticket activity.

Seven component scores per matched account (volume, escalation, sentiment,
velocity, resolution, breadth, recency), each mapped onto coarse tiers,
combined with the configured weights. Runs without any churn history so
every matched account always has a risk value.
Outputs:
  • risk_scores table         (regenerated in one transaction)
  • risk_scores_<date>.csv    (via report.export_csv)
"""

from __future__ import annotations

import argparse
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pandas as pd
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from . import config
from .db import Account, RiskScore, load_tickets, matched_accounts, session_scope, utcnow

logger = logging.getLogger(__name__)

COMPONENTS = ("volume", "escalation", "sentiment", "velocity", "resolution", "breadth", "recency")
DEFAULT_FLEET_MEDIAN_30D = 1.0
DEFAULT_FLEET_RESOLUTION_HOURS = 24.0
SCORE_COLUMNS = [
    "account_id",
    "name",
    "org_id",
    "churned",
    "overall_score",
    "risk_level",
    *(f"{c}_score" for c in COMPONENTS),
    "ticket_count_30d",
    "ticket_count_60d",
    "ticket_count_90d",
    "escalation_count_30d",
    "avg_resolution_hours",
    "bad_satisfaction_count",
    "unique_categories",
    "days_since_last_ticket",
    "reopened_ticket_count",
    "top_categories",
    "trend_direction",
    "risk_factors",
]


@dataclass(frozen=True)
class FleetStats:
    median_30d: float
    avg_resolution_hours: float


@dataclass
class HeuristicResult:
    scores: pd.DataFrame
    distribution: dict[str, int]
    fleet: FleetStats
    validation: "HeuristicValidation | None" = None


@dataclass
class HeuristicValidation:
    churned: int
    true_positives: int
    false_negatives: int
    recall: float
    missed: list[dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Component scores


def _ratio_tier(ratio: float) -> int:
    if ratio >= 3.0:
        return 100
    elif ratio >= 2.0:
        return 75
    elif ratio >= 1.5:
        return 50
    elif ratio >= 1.0:
        return 25
    else:
        return 0


def volume_score(count_30d: int, fleet_median_30d: float) -> int:
    if fleet_median_30d <= 0:
        return 50 if count_30d > 0 else 0
    return _ratio_tier(count_30d / fleet_median_30d)


def escalation_score(escalation_30d: int, total_30d: int) -> int:
    if total_30d == 0:
        return 0
    return min(100, round(escalation_30d / total_30d * 250))


def sentiment_score(bad: int, good: int) -> int:
    """Neutral 50 when fewer than three ratings exist."""
    total = bad + good
    if total < 3:
        return 50
    return min(100, round(bad / total * 200))


def velocity_score(count_30d: int, count_90d: int) -> int:
    prior_monthly_avg = (count_90d - count_30d) / 2
    if prior_monthly_avg == 0:
        return 80 if count_30d > 0 else 0

    acceleration = count_30d / prior_monthly_avg
    if acceleration >= 2.0:
        return 100
    elif acceleration >= 1.5:
        return 75
    elif acceleration >= 1.2:
        return 50
    elif acceleration >= 1.0:
        return 25
    else:
        return 0


def resolution_score(avg_resolution_hours: float | None, fleet_avg_hours: float) -> int:
    if not avg_resolution_hours or not fleet_avg_hours or fleet_avg_hours <= 0:
        return 0
    return _ratio_tier(avg_resolution_hours / fleet_avg_hours)


def breadth_score(unique_categories: int, total_tickets: int) -> int:
    if total_tickets < 3:
        return 0
    if unique_categories >= 5:
        return 100
    elif unique_categories >= 4:
        return 75
    elif unique_categories >= 3:
        return 50
    elif unique_categories >= 2:
        return 25
    else:
        return 0


def recency_score(days_since_last_ticket: int | None, has_open_tickets: bool) -> int:
    if has_open_tickets:
        return 80
    if days_since_last_ticket is None:
        return 0
    if days_since_last_ticket <= 3:
        return 90
    elif days_since_last_ticket <= 7:
        return 70
    elif days_since_last_ticket <= 14:
        return 50
    elif days_since_last_ticket <= 30:
        return 25
    else:
        return 0


def compute_components(metrics: dict[str, Any], fleet: FleetStats) -> dict[str, int]:
    return {
        "volume": volume_score(metrics["count_30d"], fleet.median_30d),
        "escalation": escalation_score(metrics["escalation_30d"], metrics["count_30d"]),
        "sentiment": sentiment_score(metrics["bad_satisfaction"], metrics["good_satisfaction"]),
        "velocity": velocity_score(metrics["count_30d"], metrics["count_90d"]),
        "resolution": resolution_score(
            metrics["avg_resolution_hours"], fleet.avg_resolution_hours
        ),
        "breadth": breadth_score(metrics["unique_categories"], metrics["count_90d"]),
        "recency": recency_score(metrics["days_since_last_ticket"], metrics["has_open_tickets"]),
    }


def overall_score(components: dict[str, float], weights: dict[str, float] | None = None) -> float:
    w = weights or config.WEIGHTS
    return round(sum(components.get(key, 0) * weight for key, weight in w.items()), 1)


def trend_direction(count_30d: int, count_90d: int) -> str:
    prior_avg = (count_90d - count_30d) / 2
    if prior_avg == 0:
        return "increasing" if count_30d > 0 else "stable"
    ratio = count_30d / prior_avg
    if ratio >= 1.2:
        return "increasing"
    elif ratio <= 0.8:
        return "decreasing"
    else:
        return "stable"


def generate_risk_factors(
    metrics: dict[str, Any], components: dict[str, int], fleet: FleetStats
) -> list[str]:
    """Human-readable reasons behind the high component scores."""

    factors = []
    count_30d, count_90d = metrics["count_30d"], metrics["count_90d"]

    if components["velocity"] >= 75:
        prior_avg = (count_90d - count_30d) / 2
        pct = round(count_30d / prior_avg * 100) if prior_avg > 0 else 0
        factors.append(f"Ticket volume increased {pct}% in last 30 days ({count_30d} tickets)")
    elif components["velocity"] >= 50:
        factors.append(f"Ticket volume trending up ({count_30d} in 30d vs {count_90d} in 90d)")

    if components["escalation"] >= 50:
        esc = metrics["escalation_30d"]
        rate = round(esc / count_30d * 100) if count_30d > 0 else 0
        factors.append(f"{esc} escalated tickets in 30 days ({rate}% rate)")

    if components["sentiment"] >= 50 and metrics["bad_satisfaction"] > 0:
        factors.append(f"{metrics['bad_satisfaction']} bad CSAT ratings in 90 days")

    if components["volume"] >= 75:
        factors.append(
            f"High ticket volume: {count_30d} tickets in 30 days "
            f"(fleet median: {fleet.median_30d:g})"
        )

    if components["resolution"] >= 50 and metrics["avg_resolution_hours"]:
        factors.append(
            f"Avg resolution time {round(metrics['avg_resolution_hours'])}h "
            f"(fleet avg: {round(fleet.avg_resolution_hours)}h)"
        )

    if components["breadth"] >= 50:
        factors.append(f"Issues across {metrics['unique_categories']} different categories")

    if components["recency"] >= 70:
        if metrics["has_open_tickets"]:
            factors.append("Has open/pending tickets")
        else:
            factors.append(f"Last ticket {metrics['days_since_last_ticket']} days ago")

    return factors


# ---------------------------------------------------------------------------
# Metrics


def compute_fleet_stats(recent_tickets: pd.DataFrame, now: datetime) -> FleetStats:
    """Fleet-wide 30-day median volume and 90-day average resolution time."""

    if recent_tickets.empty:
        return FleetStats(DEFAULT_FLEET_MEDIAN_30D, DEFAULT_FLEET_RESOLUTION_HOURS)

    recent_tickets = recent_tickets[recent_tickets["created_at"] <= pd.Timestamp(now)]
    d30 = pd.Timestamp(now - timedelta(days=30))
    d90 = pd.Timestamp(now - timedelta(days=90))
    created = recent_tickets["created_at"]

    counts = (
        recent_tickets.loc[(created >= d30) & recent_tickets["org_id"].notna(), "org_id"]
        .value_counts()
        .sort_values()
        .tolist()
    )
    median = float(counts[len(counts) // 2]) if counts else DEFAULT_FLEET_MEDIAN_30D

    hours = recent_tickets.loc[
        (created >= d90) & (recent_tickets["resolution_hours"] > 0), "resolution_hours"
    ]
    avg_hours = float(hours.mean()) if not hours.empty else DEFAULT_FLEET_RESOLUTION_HOURS
    return FleetStats(median_30d=median, avg_resolution_hours=avg_hours)


def account_metrics(tickets: pd.DataFrame, now: datetime) -> dict[str, Any]:
    """Raw counters for one organization's ticket history up to ``now``."""

    tickets = tickets[tickets["created_at"] <= pd.Timestamp(now)]
    created = tickets["created_at"]
    in_30 = created >= pd.Timestamp(now - timedelta(days=30))
    in_60 = created >= pd.Timestamp(now - timedelta(days=60))
    in_90 = created >= pd.Timestamp(now - timedelta(days=90))
    recent = tickets[in_90]

    resolved = recent.loc[recent["resolution_hours"] > 0, "resolution_hours"]
    top = recent["category"].dropna().value_counts().head(3)

    days_since = None
    if not tickets.empty:
        last = created.max()
        days_since = math.floor((pd.Timestamp(now) - last).total_seconds() / 86400)

    status = tickets["status"].fillna("").str.lower()
    return {
        "count_30d": int(in_30.sum()),
        "count_60d": int(in_60.sum()),
        "count_90d": int(in_90.sum()),
        "escalation_30d": int(tickets.loc[in_30, "is_escalation"].sum()),
        "bad_satisfaction": int((recent["satisfaction"] == "bad").sum()),
        "good_satisfaction": int((recent["satisfaction"] == "good").sum()),
        "avg_resolution_hours": float(resolved.mean()) if not resolved.empty else None,
        "unique_categories": int(recent["category"].dropna().nunique()),
        "top_categories": [{"category": c, "count": int(n)} for c, n in top.items()],
        "days_since_last_ticket": days_since,
        "has_open_tickets": bool(status.isin(config.OPEN_STATUSES).any()),
        "reopened_ticket_count": int(recent["reopen_count"].sum()),
    }


# ---------------------------------------------------------------------------
# Analysis pass


def score_accounts(
    session: Session,
    reference_time: datetime | None = None,
    weights: dict[str, float] | None = None,
) -> tuple[pd.DataFrame, FleetStats]:
    """One row per linked account (confirmed or awaiting review)."""

    now = reference_time or utcnow()
    accounts = matched_accounts(session, confirmed_only=False)
    if accounts.empty:
        logger.warning("No matched accounts found; run matching first.")
        fleet = FleetStats(DEFAULT_FLEET_MEDIAN_30D, DEFAULT_FLEET_RESOLUTION_HOURS)
        return pd.DataFrame(columns=SCORE_COLUMNS), fleet

    fleet = compute_fleet_stats(
        load_tickets(session, start=now - timedelta(days=90), end=now), now
    )
    logger.info(
        "Fleet stats: median %.0f tickets/30d, avg resolution %.0fh",
        fleet.median_30d,
        fleet.avg_resolution_hours,
    )

    org_ids = sorted({int(o) for o in accounts["org_id"]})
    history = load_tickets(session, org_ids=org_ids, end=now)
    by_org = {int(k): g for k, g in history.groupby("org_id")} if not history.empty else {}

    rows = []
    for acct in accounts.itertuples(index=False):
        org_id = int(acct.org_id)
        metrics = account_metrics(by_org.get(org_id, history.iloc[0:0]), now)
        components = compute_components(metrics, fleet)
        score = overall_score(components, weights)
        rows.append(
            {
                "account_id": acct.account_id,
                "name": acct.name,
                "org_id": org_id,
                "churned": acct.churn_date is not None,
                "overall_score": score,
                "risk_level": config.risk_level(score),
                **{f"{k}_score": float(v) for k, v in components.items()},
                "ticket_count_30d": metrics["count_30d"],
                "ticket_count_60d": metrics["count_60d"],
                "ticket_count_90d": metrics["count_90d"],
                "escalation_count_30d": metrics["escalation_30d"],
                "avg_resolution_hours": metrics["avg_resolution_hours"],
                "bad_satisfaction_count": metrics["bad_satisfaction"],
                "unique_categories": metrics["unique_categories"],
                "days_since_last_ticket": metrics["days_since_last_ticket"],
                "reopened_ticket_count": metrics["reopened_ticket_count"],
                "top_categories": metrics["top_categories"],
                "trend_direction": trend_direction(metrics["count_30d"], metrics["count_90d"]),
                "risk_factors": generate_risk_factors(metrics, components, fleet),
            }
        )

    scores = pd.DataFrame(rows, columns=SCORE_COLUMNS).sort_values("overall_score", ascending=False)
    return scores.reset_index(drop=True), fleet


def _native(value: Any) -> Any:
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def save_scores(session: Session, scores: pd.DataFrame, computed_at: datetime) -> None:
    """Replace the stored risk scores with ``scores`` inside the caller's transaction."""

    session.execute(delete(RiskScore))
    columns = {c.key for c in RiskScore.__table__.columns} - {"id", "computed_at"}
    for record in scores.to_dict(orient="records"):
        fields = {k: _native(v) for k, v in record.items() if k in columns}
        if fields["days_since_last_ticket"] is not None:
            fields["days_since_last_ticket"] = int(fields["days_since_last_ticket"])
        session.add(RiskScore(computed_at=computed_at, **fields))
    session.flush()


def validate_heuristic(session: Session) -> HeuristicValidation:
    """Share of historically churned accounts the heuristic flags high/critical."""

    session.flush()
    rows = session.execute(
        select(Account.account_id, Account.name, RiskScore.overall_score, RiskScore.risk_level)
        .outerjoin(RiskScore, RiskScore.account_id == Account.account_id)
        .where(Account.churn_date.is_not(None))
        .order_by(Account.account_id)
    ).all()

    tp = 0
    missed = []
    for account_id, name, score, level in rows:
        if level in ("high", "critical"):
            tp += 1
        else:
            missed.append(
                {"account_id": account_id, "name": name, "score": score, "risk_level": level}
            )
    recall = round(tp / len(rows) * 100, 1) if rows else 0.0
    return HeuristicValidation(
        churned=len(rows),
        true_positives=tp,
        false_negatives=len(missed),
        recall=recall,
        missed=missed,
    )


def analyze_accounts(
    session: Session,
    reference_time: datetime | None = None,
    validate: bool = False,
    weights: dict[str, float] | None = None,
) -> HeuristicResult:
    now = reference_time or utcnow()
    scores, fleet = score_accounts(session, now, weights)
    save_scores(session, scores, now)

    distribution = {level: 0 for level in ("critical", "high", "medium", "low")}
    if not scores.empty:
        distribution.update(scores["risk_level"].value_counts().to_dict())
    logger.info("Heuristic risk distribution: %s", distribution)

    result = HeuristicResult(scores=scores, distribution=distribution, fleet=fleet)
    if validate:
        result.validation = validate_heuristic(session)
    return result


def print_result(result: HeuristicResult) -> None:
    print(f"Analyzed {len(result.scores)} matched accounts")
    print(
        f"Fleet stats: median {result.fleet.median_30d:g} tickets/30d, "
        f"avg resolution {round(result.fleet.avg_resolution_hours)}h"
    )
    print("Risk Distribution:")
    for level, count in result.distribution.items():
        print(f"  {level.capitalize():<9} {count}")

    v = result.validation
    if v is None:
        return
    print("--- Model Validation ---")
    if v.churned == 0:
        print("No churn data available for validation.")
        return
    print(f"Churned accounts: {v.churned}")
    print(f"Predicted correctly (high/critical): {v.true_positives}")
    print(f"Missed (medium/low): {v.false_negatives}")
    print(f"Recall: {v.recall}%")
    for m in v.missed[:10]:
        print(f"  {m['name']}: score {m['score']} ({m['risk_level'] or 'not scored'})")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the heuristic churn risk analysis.")
    parser.add_argument(
        "--validate", action="store_true", help="Report recall against historical churn."
    )
    args = parser.parse_args(argv)

    with session_scope() as session:
        result = analyze_accounts(session, validate=args.validate)
    print_result(result)


if __name__ == "__main__":
    main()
