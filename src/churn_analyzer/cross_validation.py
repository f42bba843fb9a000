# src/churn_analyzer/cross_validation.py
"""
Leave-one-out validation of the churn signature.

Each churned account with ticket data at its churn date is held out in
turn, the signature is rebuilt without it, and the held-out account is
scored at its churn date. Active accounts are scored against the full
signature to count false alarms.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time
from typing import Any

import numpy as np
from sklearn.metrics import f1_score, precision_score, recall_score
from sklearn.model_selection import LeaveOneOut
from sqlalchemy.orm import Session

from . import config
from .churn_signature import (
    attach_model_quality,
    build_signature,
    collect_population_vectors,
    get_or_build_signature,
    score_account,
)
from .db import matched_accounts, session_scope, utcnow
from .feature_engineering import FeatureCache

logger = logging.getLogger(__name__)

FLAGGED_LEVELS = ("high", "critical")
STATUS_OK = "ok"
STATUS_INSUFFICIENT = "insufficient_data"


@dataclass
class CrossValidationReport:
    status: str
    sample_size: int
    recall: float | None = None
    precision: float | None = None
    f1: float | None = None
    true_positives: int = 0
    false_negatives: int = 0
    false_positives: int = 0
    active_scored: int = 0
    missed: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def quality(self) -> dict[str, Any]:
        """The subset stored on the signature as its model quality."""
        return {
            "recall": self.recall,
            "precision": self.precision,
            "f1": self.f1,
            "true_positives": self.true_positives,
            "false_negatives": self.false_negatives,
            "false_positives": self.false_positives,
            "sample_size": self.sample_size,
            "validated_at": utcnow().isoformat(),
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def churn_reference_time(churn_date: date) -> datetime:
    return datetime.combine(churn_date, time.min)


def _pct(value: float) -> float:
    return round(float(value) * 100, 1)


def validate(
    session: Session,
    window_days: int | None = None,
    min_sample: int | None = None,
) -> CrossValidationReport:
    """Leave-one-out recall/precision/F1 (0-100) of the signature scorer."""

    window_days = window_days or config.CHURN_LOOKBACK_WINDOW
    min_sample = config.MIN_CHURNED_SAMPLE if min_sample is None else min_sample
    cache = FeatureCache(session, persist=False)

    holdouts = []
    for row in matched_accounts(session, churned=True).itertuples(index=False):
        vector = cache.windowed(int(row.org_id), churn_reference_time(row.churn_date), window_days)
        if vector is not None:
            holdouts.append((row.account_id, row.name, vector))

    if len(holdouts) < min_sample:
        logger.info(
            "Cross-validation needs %d churned accounts with ticket data; found %d",
            min_sample,
            len(holdouts),
        )
        return CrossValidationReport(status=STATUS_INSUFFICIENT, sample_size=len(holdouts))

    population = collect_population_vectors(session, window_days, cache=cache)
    y_true: list[int] = []
    y_pred: list[int] = []
    missed = []

    logger.info("Leave-one-out over %d churned accounts", len(holdouts))
    for _, test_index in LeaveOneOut().split(np.arange(len(holdouts))):
        account_id, name, vector = holdouts[int(test_index[0])]
        signature = build_signature(
            session, window_days, excluded_account_ids=[account_id], vectors=population
        )
        if signature is None:
            continue

        result = score_account(vector, signature)
        flagged = result.risk_level in FLAGGED_LEVELS
        y_true.append(1)
        y_pred.append(int(flagged))
        if not flagged:
            missed.append(
                {
                    "account_id": account_id,
                    "name": name,
                    "score": result.score,
                    "risk_level": result.risk_level,
                    "signal_count": result.signal_count,
                }
            )

    full_signature = get_or_build_signature(session, window_days)
    active_scored = 0
    if full_signature is not None:
        for vector in population.active.values():
            flagged = score_account(vector, full_signature).risk_level in FLAGGED_LEVELS
            y_true.append(0)
            y_pred.append(int(flagged))
            active_scored += 1

    if not y_true:
        return CrossValidationReport(status=STATUS_INSUFFICIENT, sample_size=len(holdouts))

    tp = sum(1 for t, p in zip(y_true, y_pred) if t and p)
    fn = sum(1 for t, p in zip(y_true, y_pred) if t and not p)
    fp = sum(1 for t, p in zip(y_true, y_pred) if not t and p)

    report = CrossValidationReport(
        status=STATUS_OK,
        sample_size=len(holdouts),
        recall=_pct(recall_score(y_true, y_pred, zero_division=0)),
        precision=_pct(precision_score(y_true, y_pred, zero_division=0)),
        f1=_pct(f1_score(y_true, y_pred, zero_division=0)),
        true_positives=tp,
        false_negatives=fn,
        false_positives=fp,
        active_scored=active_scored,
        missed=missed,
    )

    if full_signature is not None and full_signature.id is not None:
        attach_model_quality(session, full_signature.id, report.quality())
    logger.info(
        "Cross-validation: recall %s%%, precision %s%%, F1 %s",
        report.recall,
        report.precision,
        report.f1,
    )
    return report


def print_report(report: CrossValidationReport) -> None:
    if not report.ok:
        print(
            f"Insufficient data for cross-validation: {report.sample_size} churned accounts "
            f"with ticket data (need {config.MIN_CHURNED_SAMPLE})."
        )
        return
    print(f"Churned accounts tested: {report.true_positives + report.false_negatives}")
    print(f"Detected (high/critical): {report.true_positives}")
    print(f"Missed: {report.false_negatives}")
    print(f"False alarms (active flagged high/critical): {report.false_positives}")
    print(f"Recall: {report.recall}%  Precision: {report.precision}%  F1: {report.f1}")
    for m in report.missed[:10]:
        print(f"  missed {m['name']}: score {m['score']} ({m['risk_level']})")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Leave-one-out validation of the churn signature.")
    parser.add_argument(
        "--window",
        type=int,
        default=config.CHURN_LOOKBACK_WINDOW,
        help="Analysis window in days (default: CHURN_LOOKBACK_WINDOW).",
    )
    args = parser.parse_args(argv)

    with session_scope() as session:
        report = validate(session, args.window)
    print_report(report)


if __name__ == "__main__":
    main()
