# src/churn_analyzer/cli.py
"""
``churn-analyzer <command> [options]``

Commands:
  import     load CRM / organization / ticket CSV exports
  match      link accounts to organizations (--link, --reset)
  features   print one organization's feature vector
  analyze    heuristic risk scoring (--validate)
  learn      build or inspect the churn signature (--rebuild, --export)
  validate   leave-one-out validation of the signature
  predict    signature scoring with heuristic fallback (--rebuild, --validate)
  report     console / --dashboard / --csv reports
  status     store counts
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Callable

from . import (
    churn_signature,
    config,
    cross_validation,
    data_prep,
    feature_engineering,
    matching,
    report,
    risk_scoring,
)
from .db import StoreError, session_scope
from .pipeline import run_signature_analysis

logger = logging.getLogger(__name__)


def _predict(argv: list[str]) -> None:
    parser = argparse.ArgumentParser(prog="churn-analyzer predict")
    parser.add_argument("--window", type=int, default=config.CHURN_LOOKBACK_WINDOW)
    parser.add_argument("--rebuild", action="store_true", help="Force a new signature.")
    parser.add_argument("--validate", action="store_true", help="Run cross-validation too.")
    args = parser.parse_args(argv)

    result = run_signature_analysis(args.window, rebuild=args.rebuild, validate=args.validate)
    if result.fell_back:
        print(
            f"Not enough churned accounts to learn a signature "
            f"(need {config.MIN_CHURNED_SAMPLE}); heuristic scores were regenerated instead."
        )
        risk_scoring.print_result(result.heuristic)
        return

    churn_signature.print_signature_summary(result.signature)
    levels = result.predictions["churn_risk_level"].value_counts().to_dict()
    print(f"Scored {len(result.predictions)} active accounts: {levels}")
    for row in result.predictions.head(config.REPORT_TOP_N).itertuples(index=False):
        print(f"  {row.churn_score:>5}  {row.churn_risk_level:<9} [{row.confidence}] {row.name}")
    if result.cross_validation is not None:
        cross_validation.print_report(result.cross_validation)


def _status(argv: list[str]) -> None:
    argparse.ArgumentParser(prog="churn-analyzer status").parse_args(argv)
    with session_scope() as session:
        report.print_status(report.store_status(session))


COMMANDS: dict[str, Callable[[list[str]], None]] = {
    "import": data_prep.main,
    "match": matching.main,
    "features": feature_engineering.main,
    "analyze": risk_scoring.main,
    "learn": churn_signature.main,
    "validate": cross_validation.main,
    "predict": _predict,
    "report": report.main,
    "status": _status,
}


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not argv or argv[0] in {"-h", "--help", "help"}:
        print(__doc__)
        return 0

    command, rest = argv[0], argv[1:]
    handler = COMMANDS.get(command)
    if handler is None:
        print(f"Unknown command: {command}", file=sys.stderr)
        print(__doc__, file=sys.stderr)
        return 1

    try:
        handler(rest)
    except (ValueError, LookupError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except StoreError as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
