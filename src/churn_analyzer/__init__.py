"""Convenience exports for the churn analyzer engine."""

from .churn_signature import build_signature, get_or_build_signature, score_account
from .cross_validation import validate
from .feature_engineering import extract_features
from .matching import normalize
from .pipeline import run_heuristic_analysis, run_matching, run_signature_analysis

__all__ = [
    "build_signature",
    "extract_features",
    "get_or_build_signature",
    "normalize",
    "run_heuristic_analysis",
    "run_matching",
    "run_signature_analysis",
    "score_account",
    "validate",
]
