# src/churn_analyzer/churn_signature.py
"""
Learn a churn signature from historical churn and score accounts against it.

The signature compares the ticket-feature distributions of churned accounts
(whole history) with active accounts (trailing window) feature by feature:
effect-size separation, risk direction, midpoint threshold and a weight
proportional to separation. Scoring interpolates each feature between the
active and churned means and takes the weighted average.
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Mapping

import joblib
import numpy as np
import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import config
from .db import ChurnSignatureRecord, matched_accounts, orgs_with_tickets, session_scope, utcnow
from .feature_engineering import (
    FEATURE_NAMES,
    FeatureCache,
    FeatureVector,
    compute_feature_vector,
    features_frame,
)

logger = logging.getLogger(__name__)

HIGHER_MEANS_RISK = "higher_means_risk"
LOWER_MEANS_RISK = "lower_means_risk"

FEATURE_LABELS = {
    "ticket_count": "Ticket volume",
    "tickets_per_month": "Monthly ticket rate",
    "escalation_rate": "Escalation rate",
    "bad_satisfaction_rate": "Bad CSAT rate",
    "avg_resolution_hours": "Avg resolution time",
    "reopen_rate": "Ticket reopen rate",
    "unique_category_count": "Issue categories",
    "high_priority_rate": "High priority rate",
    "ticket_velocity": "Ticket acceleration",
    "escalation_record_rate": "Problem ticket rate",
    "reopens_per_record": "Reopens per ticket",
    "unresolved_rate": "Unresolved ticket rate",
}


@dataclass(frozen=True)
class FeatureStats:
    churned_mean: float
    churned_median: float
    churned_stddev: float
    active_mean: float
    active_median: float
    active_stddev: float
    separation: float
    direction: str
    threshold: float
    weight: float


@dataclass(frozen=True)
class ChurnSignature:
    window_days: int
    churned_sample_size: int
    active_sample_size: int
    features: dict[str, FeatureStats]
    computed_at: datetime
    id: int | None = None
    model_quality: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "computed_at": self.computed_at.isoformat(),
            "window_days": self.window_days,
            "churned_sample_size": self.churned_sample_size,
            "active_sample_size": self.active_sample_size,
            "features": {name: asdict(stats) for name, stats in self.features.items()},
        }

    @classmethod
    def from_record(cls, record: ChurnSignatureRecord) -> "ChurnSignature":
        payload = record.signature_json
        return cls(
            window_days=record.window_days,
            churned_sample_size=record.churned_sample_size,
            active_sample_size=record.active_sample_size,
            features={
                name: FeatureStats(**stats) for name, stats in payload["features"].items()
            },
            computed_at=record.computed_at,
            id=record.id,
            model_quality=record.model_quality,
        )


@dataclass(frozen=True)
class MatchedSignal:
    feature: str
    value: float
    threshold: float
    churned_avg: float
    active_avg: float
    severity: float
    explanation: str


@dataclass(frozen=True)
class SignatureScore:
    score: float
    risk_level: str
    matched_signals: list[MatchedSignal] = field(default_factory=list)
    confidence: str = "low"

    @property
    def signal_count(self) -> int:
        return len(self.matched_signals)


@dataclass
class PopulationVectors:
    """Feature vectors per account id for both populations."""

    churned: dict[str, FeatureVector]
    active: dict[str, FeatureVector]
    reference_time: datetime

    def without(self, excluded: Iterable[str]) -> dict[str, FeatureVector]:
        skip = set(excluded)
        return {k: v for k, v in self.churned.items() if k not in skip}


# ---------------------------------------------------------------------------
# Building


def compute_signature(
    churned: pd.DataFrame,
    active: pd.DataFrame,
    window_days: int,
    computed_at: datetime | None = None,
) -> ChurnSignature | None:
    """Per-feature comparison of churned vs active feature frames."""

    if churned.empty:
        return None

    churned = churned.reindex(columns=FEATURE_NAMES).astype(float)
    active = active.reindex(columns=FEATURE_NAMES).astype(float)
    n_churned, n_active = len(churned), len(active)

    c_mean = churned.mean().fillna(0.0)
    c_median = churned.median().fillna(0.0)
    c_std = churned.std(ddof=1).fillna(0.0) if n_churned > 1 else c_mean * 0.0
    a_mean = active.mean().fillna(0.0)
    a_median = active.median().fillna(0.0)
    a_std = active.std(ddof=1).fillna(0.0) if n_active > 1 else a_mean * 0.0

    pooled = np.sqrt(
        ((n_churned - 1) * c_std**2 + max(n_active - 1, 0) * a_std**2)
        / max(1, n_churned + n_active - 2)
    )
    diff = (c_mean - a_mean).abs()
    separation = (diff / pooled.where(pooled > 0)).fillna(0.0)

    total = float(separation.sum())
    if total > 0:
        weights = separation / total
    else:
        weights = pd.Series(1.0 / len(FEATURE_NAMES), index=FEATURE_NAMES)

    features = {}
    for name in FEATURE_NAMES:
        features[name] = FeatureStats(
            churned_mean=float(c_mean[name]),
            churned_median=float(c_median[name]),
            churned_stddev=float(c_std[name]),
            active_mean=float(a_mean[name]),
            active_median=float(a_median[name]),
            active_stddev=float(a_std[name]),
            separation=float(separation[name]),
            direction=HIGHER_MEANS_RISK if c_mean[name] >= a_mean[name] else LOWER_MEANS_RISK,
            threshold=float((c_mean[name] + a_mean[name]) / 2),
            weight=float(weights[name]),
        )

    return ChurnSignature(
        window_days=window_days,
        churned_sample_size=n_churned,
        active_sample_size=n_active,
        features=features,
        computed_at=computed_at or utcnow(),
    )


def collect_population_vectors(
    session: Session,
    window_days: int,
    reference_time: datetime | None = None,
    cache: FeatureCache | None = None,
) -> PopulationVectors:
    """All-history vectors for churned accounts, windowed vectors for active ones."""

    reference_time = reference_time or utcnow()
    cache = cache or FeatureCache(session)

    churned: dict[str, FeatureVector] = {}
    for row in matched_accounts(session, churned=True).itertuples(index=False):
        vector = cache.all_time(int(row.org_id), row.churn_date)
        if vector is not None:
            churned[row.account_id] = vector

    with_tickets = orgs_with_tickets(session)
    active: dict[str, FeatureVector] = {}
    for row in matched_accounts(session, churned=False).itertuples(index=False):
        if int(row.org_id) not in with_tickets:
            continue
        vector = compute_feature_vector(session, int(row.org_id), reference_time, window_days)
        if vector is not None:
            active[row.account_id] = vector

    logger.info(
        "Population vectors: %d churned, %d active (cache hits %d, misses %d)",
        len(churned),
        len(active),
        cache.hits,
        cache.misses,
    )
    return PopulationVectors(churned=churned, active=active, reference_time=reference_time)


def persist_signature(session: Session, signature: ChurnSignature) -> ChurnSignature:
    record = ChurnSignatureRecord(
        computed_at=signature.computed_at,
        window_days=signature.window_days,
        churned_sample_size=signature.churned_sample_size,
        active_sample_size=signature.active_sample_size,
        signature_json=signature.to_dict(),
    )
    session.add(record)
    session.flush()
    return replace(signature, id=record.id)


def build_signature(
    session: Session,
    window_days: int,
    excluded_account_ids: Iterable[str] = (),
    vectors: PopulationVectors | None = None,
) -> ChurnSignature | None:
    """Build (and, unless accounts are excluded, persist) a churn signature."""

    excluded = list(excluded_account_ids)
    if vectors is None:
        cache = FeatureCache(session, persist=not excluded)
        vectors = collect_population_vectors(session, window_days, cache=cache)

    churned = vectors.without(excluded)
    signature = compute_signature(
        features_frame(churned), features_frame(vectors.active), window_days
    )
    if signature is None:
        logger.info("No churned feature vectors available; signature not built")
        return None
    if excluded:
        return signature
    signature = persist_signature(session, signature)
    logger.info(
        "Stored churn signature #%s (%d churned vs %d active, %d-day window)",
        signature.id,
        signature.churned_sample_size,
        signature.active_sample_size,
        window_days,
    )
    return signature


def latest_signature(
    session: Session, window_days: int, max_age_days: int | None = None
) -> ChurnSignature | None:
    max_age = config.CHURN_SIGNATURE_MAX_AGE_DAYS if max_age_days is None else max_age_days
    cutoff = utcnow() - timedelta(days=max_age)
    record = session.scalars(
        select(ChurnSignatureRecord)
        .where(
            ChurnSignatureRecord.window_days == window_days,
            ChurnSignatureRecord.computed_at >= cutoff,
        )
        .order_by(ChurnSignatureRecord.computed_at.desc(), ChurnSignatureRecord.id.desc())
    ).first()
    return ChurnSignature.from_record(record) if record is not None else None


def get_or_build_signature(
    session: Session, window_days: int, max_age_days: int | None = None
) -> ChurnSignature | None:
    """Newest signature younger than the staleness bound, else a fresh build."""

    signature = latest_signature(session, window_days, max_age_days)
    if signature is not None:
        logger.info("Using cached churn signature #%s (%s)", signature.id, signature.computed_at)
        return signature
    logger.info("Building new churn signature (%d-day window)", window_days)
    return build_signature(session, window_days)


def attach_model_quality(session: Session, signature_id: int, quality: dict[str, Any]) -> None:
    record = session.get(ChurnSignatureRecord, signature_id)
    if record is not None:
        record.model_quality = quality


# ---------------------------------------------------------------------------
# Scoring


def _feature_score(value: float, stats: FeatureStats) -> float:
    if stats.direction == HIGHER_MEANS_RISK:
        if value >= stats.churned_mean:
            return 100.0
        if value <= stats.active_mean:
            return 0.0
        span = max(0.001, stats.churned_mean - stats.active_mean)
        score = (value - stats.active_mean) / span * 100
    else:
        if value <= stats.churned_mean:
            return 100.0
        if value >= stats.active_mean:
            return 0.0
        span = max(0.001, stats.active_mean - stats.churned_mean)
        score = (stats.active_mean - value) / span * 100
    return float(min(100.0, max(0.0, score)))


def confidence_tier(ticket_count: float) -> str:
    if ticket_count >= 10:
        return "high"
    elif ticket_count >= 5:
        return "medium"
    else:
        return "low"


def score_account(
    vector: Mapping[str, float],
    signature: ChurnSignature,
    thresholds: dict[str, float] | None = None,
) -> SignatureScore:
    """Weighted 0-100 churn score of one feature vector against a signature."""

    weighted = 0.0
    total_weight = 0.0
    signals: list[MatchedSignal] = []

    for name, stats in signature.features.items():
        value = vector.get(name)
        if value is None or not np.isfinite(value):
            continue

        sub_score = _feature_score(float(value), stats)
        weighted += sub_score * stats.weight
        total_weight += stats.weight

        if stats.direction == HIGHER_MEANS_RISK:
            firing = value >= stats.threshold
        else:
            firing = value <= stats.threshold
        if firing:
            signals.append(
                MatchedSignal(
                    feature=name,
                    value=round(float(value), 4),
                    threshold=stats.threshold,
                    churned_avg=stats.churned_mean,
                    active_avg=stats.active_mean,
                    severity=round(sub_score, 1),
                    explanation=explain_signal(name, float(value), stats),
                )
            )

    score = round(weighted / total_weight, 1) if total_weight > 0 else 0.0
    signals.sort(key=lambda s: s.severity, reverse=True)
    return SignatureScore(
        score=score,
        risk_level=config.risk_level(score, thresholds),
        matched_signals=signals,
        confidence=confidence_tier(float(vector.get("ticket_count") or 0)),
    )


# ---------------------------------------------------------------------------
# Presentation


def format_feature_value(name: str, value: float) -> str:
    if name.endswith("_rate"):
        return f"{value * 100:.0f}%"
    if "hours" in name:
        return f"{round(value)}h"
    if name == "ticket_velocity":
        return f"{value:.1f}x"
    return f"{round(value, 1)}"


def explain_signal(name: str, value: float, stats: FeatureStats) -> str:
    label = FEATURE_LABELS.get(name, name)
    return (
        f"{label}: {format_feature_value(name, value)} "
        f"(churned avg: {format_feature_value(name, stats.churned_mean)}, "
        f"active avg: {format_feature_value(name, stats.active_mean)})"
    )


def describe_signature(signature: ChurnSignature) -> pd.DataFrame:
    """Features ranked by separation, for the CLI and the dashboard."""
    rows = [
        {
            "feature": name,
            "label": FEATURE_LABELS.get(name, name),
            "separation": stats.separation,
            "direction": stats.direction,
            "churned_mean": stats.churned_mean,
            "active_mean": stats.active_mean,
            "threshold": stats.threshold,
            "weight": stats.weight,
        }
        for name, stats in signature.features.items()
    ]
    return pd.DataFrame(rows).sort_values("separation", ascending=False).reset_index(drop=True)


def export_signature(signature: ChurnSignature, out_dir: Path | None = None) -> tuple[Path, Path]:
    """Write the signature artifact (joblib) plus JSON metadata."""

    model_dir = Path(out_dir or config.MODELS_DIR)
    model_dir.mkdir(parents=True, exist_ok=True)
    stamp = signature.computed_at.date().isoformat()

    artifact_path = model_dir / f"churn_signature_{stamp}.pkl"
    metadata_path = model_dir / f"churn_signature_{stamp}.json"

    joblib.dump(signature, artifact_path)
    metadata = signature.to_dict()
    metadata["id"] = signature.id
    metadata["model_quality"] = signature.model_quality
    metadata_path.write_text(json.dumps(metadata, indent=2), encoding="utf-8")
    return artifact_path, metadata_path


def print_signature_summary(signature: ChurnSignature) -> None:
    print(
        f"Based on {signature.churned_sample_size} churned accounts "
        f"({signature.window_days}-day window) vs {signature.active_sample_size} active accounts"
    )
    print("Most predictive signals:")
    for row in describe_signature(signature).itertuples(index=False):
        print(
            f"  {row.label:<24} sep: {row.separation:5.2f}  "
            f"churned: {format_feature_value(row.feature, row.churned_mean):>8}  "
            f"active: {format_feature_value(row.feature, row.active_mean):>8}  "
            f"weight: {row.weight * 100:.0f}%"
        )
    if signature.model_quality:
        q = signature.model_quality
        print(
            f"Cross-validation: recall {q.get('recall')}%, precision {q.get('precision')}%, "
            f"F1 {q.get('f1')}"
        )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Build or inspect the churn signature.")
    parser.add_argument(
        "--window",
        type=int,
        default=config.CHURN_LOOKBACK_WINDOW,
        help="Analysis window in days (default: CHURN_LOOKBACK_WINDOW).",
    )
    parser.add_argument(
        "--rebuild", action="store_true", help="Rebuild even if a recent signature exists."
    )
    parser.add_argument(
        "--export", action="store_true", help="Write the signature artifact to MODELS_DIR."
    )
    args = parser.parse_args(argv)

    with session_scope() as session:
        churned_count = len(matched_accounts(session, churned=True))
        if churned_count < config.MIN_CHURNED_SAMPLE:
            print(
                f"Only {churned_count} churned accounts are matched to organizations; "
                f"need at least {config.MIN_CHURNED_SAMPLE} for signature learning."
            )
            return

        if args.rebuild:
            signature = build_signature(session, args.window)
        else:
            signature = get_or_build_signature(session, args.window)

        if signature is None:
            print("Could not build a signature: no churned accounts with ticket data.")
            return

        print_signature_summary(signature)
        if args.export:
            artifact_path, metadata_path = export_signature(signature)
            print(f"Wrote: {artifact_path}")
            print(f"Wrote: {metadata_path}")


if __name__ == "__main__":
    main()
