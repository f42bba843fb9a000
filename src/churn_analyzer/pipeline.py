# src/churn_analyzer/pipeline.py
"""
End-to-end analysis passes, one store transaction each.

run_matching            -> link accounts to organizations
run_heuristic_analysis  -> regenerate heuristic risk scores
run_signature_analysis  -> learn/reuse a signature, regenerate predictions,
                           optionally cross-validate; falls back to the
                           heuristic scorer when too few churned accounts
                           are matched to learn from.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime

import pandas as pd
from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from . import config
from .churn_signature import (
    ChurnSignature,
    build_signature,
    get_or_build_signature,
    score_account,
)
from .cross_validation import CrossValidationReport, validate as cross_validate
from .db import ChurnPrediction, matched_accounts, session_scope, utcnow
from .feature_engineering import compute_feature_vector
from .matching import MatchResults, match_accounts
from .risk_scoring import HeuristicResult, analyze_accounts

logger = logging.getLogger(__name__)


@dataclass
class SignatureAnalysis:
    signature: ChurnSignature | None
    predictions: pd.DataFrame = field(default_factory=pd.DataFrame)
    cross_validation: CrossValidationReport | None = None
    heuristic: HeuristicResult | None = None

    @property
    def fell_back(self) -> bool:
        return self.signature is None


def run_matching(engine: Engine | None = None) -> MatchResults:
    with session_scope(engine) as session:
        return match_accounts(session)


def run_heuristic_analysis(
    engine: Engine | None = None,
    validate: bool = False,
    reference_time: datetime | None = None,
) -> HeuristicResult:
    with session_scope(engine) as session:
        return analyze_accounts(session, reference_time=reference_time, validate=validate)


def predict_active_accounts(
    session: Session,
    signature: ChurnSignature,
    reference_time: datetime | None = None,
) -> pd.DataFrame:
    """Score every confirmed-matched active account and replace stored predictions."""

    now = reference_time or utcnow()
    session.execute(delete(ChurnPrediction))

    rows = []
    for acct in matched_accounts(session, churned=False).itertuples(index=False):
        vector = compute_feature_vector(session, int(acct.org_id), now, signature.window_days)
        if vector is None:
            continue
        result = score_account(vector, signature)
        signals = [
            {
                "feature": s.feature,
                "value": s.value,
                "threshold": s.threshold,
                "churned_avg": s.churned_avg,
                "active_avg": s.active_avg,
                "severity": s.severity,
                "explanation": s.explanation,
            }
            for s in result.matched_signals
        ]
        session.add(
            ChurnPrediction(
                account_id=acct.account_id,
                org_id=int(acct.org_id),
                signature_id=signature.id,
                computed_at=now,
                churn_score=result.score,
                churn_risk_level=result.risk_level,
                feature_vector=vector,
                matched_signals=signals,
                signal_count=result.signal_count,
                confidence=result.confidence,
            )
        )
        rows.append(
            {
                "account_id": acct.account_id,
                "name": acct.name,
                "mrr": acct.mrr,
                "churn_score": result.score,
                "churn_risk_level": result.risk_level,
                "signal_count": result.signal_count,
                "confidence": result.confidence,
                "top_signal": signals[0]["explanation"] if signals else None,
            }
        )

    session.flush()
    logger.info("Stored %d churn predictions against signature #%s", len(rows), signature.id)
    if not rows:
        return pd.DataFrame(
            columns=[
                "account_id",
                "name",
                "mrr",
                "churn_score",
                "churn_risk_level",
                "signal_count",
                "confidence",
                "top_signal",
            ]
        )
    return pd.DataFrame(rows).sort_values("churn_score", ascending=False).reset_index(drop=True)


def run_signature_analysis(
    window_days: int | None = None,
    rebuild: bool = False,
    validate: bool = False,
    engine: Engine | None = None,
    reference_time: datetime | None = None,
) -> SignatureAnalysis:
    window_days = window_days or config.CHURN_LOOKBACK_WINDOW

    with session_scope(engine) as session:
        churned_count = len(matched_accounts(session, churned=True))
        signature = None
        if churned_count < config.MIN_CHURNED_SAMPLE:
            logger.info(
                "%d churned accounts matched (need %d); using heuristic scoring",
                churned_count,
                config.MIN_CHURNED_SAMPLE,
            )
        elif rebuild:
            signature = build_signature(session, window_days)
        else:
            signature = get_or_build_signature(session, window_days)

        if signature is None:
            heuristic = analyze_accounts(session, reference_time=reference_time)
            return SignatureAnalysis(signature=None, heuristic=heuristic)

        predictions = predict_active_accounts(session, signature, reference_time)
        report = None
        if validate:
            report = cross_validate(session, window_days)
            if report.ok:
                signature = replace(signature, model_quality=report.quality())
        return SignatureAnalysis(
            signature=signature, predictions=predictions, cross_validation=report
        )
