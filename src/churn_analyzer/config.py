import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, raw, default)
        return default


# === Core Directories ===
DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
PROCESSED_DIR = Path(os.getenv("PROCESSED_DIR", "data/processed"))
REPORTS_DIR = Path(os.getenv("REPORTS_DIR", "reports"))
MODELS_DIR = Path(os.getenv("MODELS_DIR", "models"))

# === Store ===
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'churn.db'}")

# === Signature Windows ===
CHURN_LOOKBACK_WINDOW = _env_int("CHURN_LOOKBACK_WINDOW", 90)
MIN_CHURNED_SAMPLE = _env_int("MIN_CHURNED_SAMPLE", 3)
CHURN_SIGNATURE_MAX_AGE_DAYS = _env_int("CHURN_SIGNATURE_MAX_AGE_DAYS", 7)
FEATURE_CACHE_MAX_AGE_DAYS = _env_int("FEATURE_CACHE_MAX_AGE_DAYS", 7)

# === Risk Levels (shared by signature and heuristic scoring) ===
RISK_THRESHOLDS = {
    "critical": _env_float("CHURN_SCORE_CRITICAL", 75.0),
    "high": _env_float("CHURN_SCORE_HIGH", 50.0),
    "medium": _env_float("CHURN_SCORE_MEDIUM", 25.0),
}

# === Heuristic Weights ===
WEIGHTS = {
    "volume": _env_float("RISK_WEIGHT_VOLUME", 0.20),
    "escalation": _env_float("RISK_WEIGHT_ESCALATION", 0.20),
    "sentiment": _env_float("RISK_WEIGHT_SENTIMENT", 0.15),
    "velocity": _env_float("RISK_WEIGHT_VELOCITY", 0.20),
    "resolution": _env_float("RISK_WEIGHT_RESOLUTION", 0.10),
    "breadth": _env_float("RISK_WEIGHT_BREADTH", 0.10),
    "recency": _env_float("RISK_WEIGHT_RECENCY", 0.05),
}

# === Matching ===
MATCH_HIGH_CONFIDENCE = _env_float("MATCH_HIGH_CONFIDENCE", 0.85)
MATCH_REVIEW_MIN = _env_float("MATCH_REVIEW_MIN", 0.5)

# === Ticket Semantics ===
OPEN_STATUSES = ("new", "open", "pending", "hold")
HIGH_PRIORITIES = ("urgent", "high")
ESCALATION_RECORD_TYPE = "problem"

# === Reporting ===
REPORT_TOP_N = 15


def risk_level(score: float, thresholds: dict[str, float] | None = None) -> str:
    """Map a 0-100 score onto critical/high/medium/low."""
    t = thresholds or RISK_THRESHOLDS
    if score >= t["critical"]:
        return "critical"
    elif score >= t["high"]:
        return "high"
    elif score >= t["medium"]:
        return "medium"
    else:
        return "low"
