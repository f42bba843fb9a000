# src/churn_analyzer/feature_engineering.py
"""
Feature engineering utilities for the churn signature.

Turns one organization's tickets into a twelve-dimension feature vector,
either over a trailing window ending at a reference time or over the
organization's whole history. Absence of tickets yields ``None`` rather
than an all-zero vector so it cannot bias the signature.
"""

from __future__ import annotations

import argparse
import logging
from datetime import date, datetime, timedelta

import numpy as np
import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import config
from .db import FeatureSnapshot, load_tickets, session_scope, utcnow

logger = logging.getLogger(__name__)

FEATURE_NAMES = [
    "ticket_count",
    "tickets_per_month",
    "escalation_rate",
    "bad_satisfaction_rate",
    "avg_resolution_hours",
    "reopen_rate",
    "unique_category_count",
    "high_priority_rate",
    "ticket_velocity",
    "escalation_record_rate",
    "reopens_per_record",
    "unresolved_rate",
]

FeatureVector = dict[str, float]

RECENT_DAYS = 30
PRIOR_DAYS = 60
VELOCITY_CAP = 5.0
ALL_TIME_WINDOW = 0


def _velocity(tickets: pd.DataFrame, anchor: pd.Timestamp) -> float:
    """Recent-30d count over the prior-60d monthly average, ending at ``anchor``."""

    recent_start = anchor - timedelta(days=RECENT_DAYS)
    prior_start = recent_start - timedelta(days=PRIOR_DAYS)
    created = tickets["created_at"]

    recent = int(((created >= recent_start) & (created <= anchor)).sum())
    prior = int(((created >= prior_start) & (created < recent_start)).sum())
    prior_monthly_avg = prior / (PRIOR_DAYS / 30)

    if prior_monthly_avg > 0:
        return float(min(recent / prior_monthly_avg, VELOCITY_CAP))
    return 2.0 if recent > 0 else 0.0


def _summarize(window: pd.DataFrame, months: float, velocity: float) -> FeatureVector:
    count = len(window)
    satisfaction = window["satisfaction"]
    bad = int((satisfaction == "bad").sum())
    rated = bad + int((satisfaction == "good").sum())

    resolved = window.loc[window["resolution_hours"] > 0, "resolution_hours"]
    avg_resolution = float(resolved.mean()) if not resolved.empty else 0.0

    reopens = window["reopen_count"]
    status = window["status"].fillna("").str.lower()
    priority = window["priority"].fillna("").str.lower()
    ticket_type = window["ticket_type"].fillna("").str.lower()

    return {
        "ticket_count": float(count),
        "tickets_per_month": count / months,
        "escalation_rate": float(window["is_escalation"].sum()) / count,
        "bad_satisfaction_rate": bad / rated if rated else 0.0,
        "avg_resolution_hours": avg_resolution,
        "reopen_rate": float((reopens > 0).sum()) / count,
        "unique_category_count": float(window["category"].dropna().nunique()),
        "high_priority_rate": float(priority.isin(config.HIGH_PRIORITIES).sum()) / count,
        "ticket_velocity": velocity,
        "escalation_record_rate": float((ticket_type == config.ESCALATION_RECORD_TYPE).sum())
        / count,
        "reopens_per_record": float(reopens.sum()) / count,
        "unresolved_rate": float(status.isin(config.OPEN_STATUSES).sum()) / count,
    }


def extract_features(
    tickets: pd.DataFrame, reference_time: datetime, window_days: int
) -> FeatureVector | None:
    """Windowed vector over tickets created in [reference - window, reference]."""

    if tickets.empty or window_days <= 0:
        return None

    anchor = pd.Timestamp(reference_time)
    start = anchor - timedelta(days=window_days)
    created = tickets["created_at"]
    window = tickets[(created >= start) & (created <= anchor)]
    if window.empty:
        return None

    vector = _summarize(window, months=window_days / 30, velocity=_velocity(tickets, anchor))
    return _finite(vector)


def extract_all_time_features(tickets: pd.DataFrame) -> FeatureVector | None:
    """Vector over an organization's entire history, months from first-to-last span."""

    if tickets.empty:
        return None

    first = tickets["created_at"].min()
    last = tickets["created_at"].max()
    if pd.isna(first) or pd.isna(last):
        return None

    months = max(1.0, (last - first).total_seconds() / (30 * 24 * 3600))
    vector = _summarize(tickets, months=months, velocity=_velocity(tickets, last))
    return _finite(vector)


def _finite(vector: FeatureVector) -> FeatureVector:
    return {k: float(v) if np.isfinite(v) else 0.0 for k, v in vector.items()}


def compute_feature_vector(
    session: Session, org_id: int, reference_time: datetime, window_days: int
) -> FeatureVector | None:
    """Load the tickets the windowed vector needs and extract it."""

    lookback = max(window_days, RECENT_DAYS + PRIOR_DAYS)
    tickets = load_tickets(
        session,
        org_ids=[org_id],
        start=reference_time - timedelta(days=lookback),
        end=reference_time,
    )
    return extract_features(tickets, reference_time, window_days)


def compute_all_time_feature_vector(session: Session, org_id: int) -> FeatureVector | None:
    return extract_all_time_features(load_tickets(session, org_ids=[org_id]))


def features_frame(vectors: dict[str, FeatureVector]) -> pd.DataFrame:
    """One row per key, one column per feature, in canonical order."""
    if not vectors:
        return pd.DataFrame(columns=FEATURE_NAMES, dtype=float)
    return pd.DataFrame.from_dict(vectors, orient="index").reindex(columns=FEATURE_NAMES)


# ---------------------------------------------------------------------------
# Snapshot cache


class FeatureCache:
    """Feature vectors cached in the store, keyed by (org, window, as-of date).

    Entries older than ``max_age_days`` are treated as missing and recomputed.
    """

    def __init__(self, session: Session, max_age_days: int | None = None, persist: bool = True):
        self.session = session
        self.max_age = timedelta(
            days=config.FEATURE_CACHE_MAX_AGE_DAYS if max_age_days is None else max_age_days
        )
        self.persist = persist
        self.hits = 0
        self.misses = 0

    def _lookup(self, org_id: int, window_days: int, as_of: date) -> FeatureSnapshot | None:
        return self.session.scalars(
            select(FeatureSnapshot).where(
                FeatureSnapshot.org_id == org_id,
                FeatureSnapshot.window_days == window_days,
                FeatureSnapshot.as_of == as_of,
            )
        ).first()

    def get(self, org_id: int, window_days: int, as_of: date) -> FeatureVector | None:
        snapshot = self._lookup(org_id, window_days, as_of)
        if snapshot is None or utcnow() - snapshot.computed_at > self.max_age:
            return None
        return dict(snapshot.feature_vector)

    def put(self, org_id: int, window_days: int, as_of: date, vector: FeatureVector) -> None:
        if not self.persist:
            return
        snapshot = self._lookup(org_id, window_days, as_of)
        if snapshot is None:
            snapshot = FeatureSnapshot(org_id=org_id, window_days=window_days, as_of=as_of)
            self.session.add(snapshot)
        snapshot.feature_vector = dict(vector)
        snapshot.ticket_count = int(vector["ticket_count"])
        snapshot.computed_at = utcnow()

    def all_time(self, org_id: int, as_of: date) -> FeatureVector | None:
        """All-history vector; ``as_of`` is the churn date it stands in for."""
        cached = self.get(org_id, ALL_TIME_WINDOW, as_of)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        vector = compute_all_time_feature_vector(self.session, org_id)
        if vector is not None:
            self.put(org_id, ALL_TIME_WINDOW, as_of, vector)
        return vector

    def windowed(
        self, org_id: int, reference_time: datetime, window_days: int
    ) -> FeatureVector | None:
        """Windowed vector, cached per calendar day of ``reference_time``.

        Snapshots are keyed by (org, window, as-of date), so two reference times on
        the same day share one vector; the time of day only matters on a miss.
        """
        as_of = reference_time.date()
        cached = self.get(org_id, window_days, as_of)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        vector = compute_feature_vector(self.session, org_id, reference_time, window_days)
        if vector is not None:
            self.put(org_id, window_days, as_of, vector)
        return vector


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Show the feature vector for one organization.")
    parser.add_argument("org_id", type=int, help="Ticket-system organization id.")
    parser.add_argument(
        "--window",
        type=int,
        default=config.CHURN_LOOKBACK_WINDOW,
        help="Trailing window in days (default: CHURN_LOOKBACK_WINDOW).",
    )
    parser.add_argument(
        "--as_of",
        type=str,
        default=None,
        help="Reference date (YYYY-MM-DD). Defaults to now.",
    )
    parser.add_argument("--all-time", action="store_true", help="Use the whole ticket history.")
    args = parser.parse_args(argv)

    reference = pd.Timestamp(args.as_of).to_pydatetime() if args.as_of else utcnow()
    with session_scope() as session:
        if args.all_time:
            vector = compute_all_time_feature_vector(session, args.org_id)
        else:
            vector = compute_feature_vector(session, args.org_id, reference, args.window)

    if vector is None:
        print(f"Organization {args.org_id} has no tickets in the requested period.")
        return
    for name in FEATURE_NAMES:
        print(f"  {name:<24} {vector[name]:.4f}")


if __name__ == "__main__":
    main()
