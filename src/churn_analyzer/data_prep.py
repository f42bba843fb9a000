# src/churn_analyzer/data_prep.py
"""
Import helpers that turn CRM and ticket-system CSV exports into normalized
store records ready for matching and feature extraction.
"""

from __future__ import annotations

import argparse
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable

import pandas as pd
from sqlalchemy.orm import Session

from . import config
from .db import ChurnEvent, session_scope, upsert_account, upsert_organization, upsert_ticket

logger = logging.getLogger(__name__)

COLUMN_PATTERNS: dict[str, tuple[str, ...]] = {
    "account_id": ("account id", "accountid", "sf id", "salesforce id", "record id"),
    "name": (
        "account name",
        "company",
        "company name",
        "name",
        "organization",
        "customer",
        "customer name",
    ),
    "status": ("account status", "status", "stage", "lifecycle", "lifecycle stage", "account stage"),
    "owner": ("account owner", "owner", "csm", "customer success", "account manager"),
    "industry": ("industry", "vertical", "segment", "type"),
    "mrr": ("mrr", "monthly recurring", "monthly revenue", "monthly amount"),
    "arr": (
        "arr",
        "annual recurring",
        "annual revenue",
        "acv",
        "contract value",
        "annual amount",
        "total contract",
    ),
    "contract_start": (
        "contract start",
        "start date",
        "subscription start",
        "created date",
        "signed date",
        "close date",
    ),
    "contract_end": ("contract end", "end date", "renewal date", "expiration", "expiration date", "renewal"),
    "churn_date": (
        "churn date",
        "cancellation date",
        "cancel date",
        "lost date",
        "churned date",
        "terminated date",
    ),
    "churn_reason": ("churn reason", "cancel reason", "loss reason", "reason", "cancellation reason"),
    "pos_system": ("pos", "pos system", "point of sale", "integration", "sms", "shop management"),
    "shop_count": ("shops", "shop count", "locations", "location count", "sites", "store count"),
}

CHURN_STATUSES = {
    "churned",
    "cancelled",
    "canceled",
    "lost",
    "closed-lost",
    "closed lost",
    "inactive",
    "terminated",
}
DOWNGRADE_STATUSES = {"downgraded", "reduced", "downsell"}

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

# The ticket's first tag (in its own order) that appears here names the category.
TAG_TO_CATEGORY: dict[str, str] = {
    "system_issue": "System Issue",
    "integrations": "Integration",
    "app_workorder": "App/Work Order",
    "bayiq": "BayIQ",
    "high_slack": "High Priority",
}
DEFAULT_CATEGORY = "Other"

IGNORE_TAGS = {"twilio_rejected", "twilio_category", "voicemail"}

TICKET_ALIASES: dict[str, tuple[str, ...]] = {
    "ticket_id": ("ticket_id", "id", "ticket"),
    "org_id": ("org_id", "organization_id", "organization"),
    "subject": ("subject", "title"),
    "status": ("status",),
    "priority": ("priority",),
    "ticket_type": ("ticket_type", "type"),
    "tags": ("tags",),
    "category": ("category",),
    "satisfaction": ("satisfaction", "satisfaction_rating", "csat"),
    "created_at": ("created_at", "created", "requested"),
    "solved_at": ("solved_at", "solved", "resolved_at"),
    "updated_at": ("updated_at", "updated"),
    "reopen_count": ("reopen_count", "reopens"),
    "is_escalation": ("is_escalation", "escalated", "escalation"),
}

ORG_ALIASES: dict[str, tuple[str, ...]] = {
    "org_id": ("org_id", "id", "organization_id"),
    "name": ("name", "organization", "organization_name"),
    "domain_names": ("domain_names", "domains", "domain"),
    "tags": ("tags",),
    "created_at": ("created_at", "created"),
}


@dataclass
class ImportSummary:
    """Counters reported by every importer."""

    imported: int = 0
    skipped: int = 0
    churn_events: int = 0
    mapping: dict[str, str] = field(default_factory=dict)
    unmapped: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Value parsing


def parse_date(value: Any) -> date | None:
    """Parse the date layouts seen in CRM exports; unparseable input gives None."""
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in {"nan", "none", "nat"}:
        return None

    try:
        if re.match(r"^\d{4}-\d{2}-\d{2}", text):
            return date.fromisoformat(text[:10])

        mdy = re.match(r"^(\d{1,2})/(\d{1,2})/(\d{4})$", text)
        if mdy:
            return date(int(mdy[3]), int(mdy[1]), int(mdy[2]))

        mdy_short = re.match(r"^(\d{1,2})/(\d{1,2})/(\d{2})$", text)
        if mdy_short:
            yy = int(mdy_short[3])
            year = 1900 + yy if yy > 50 else 2000 + yy
            return date(year, int(mdy_short[1]), int(mdy_short[2]))

        dmy = re.match(r"^(\d{1,2})-(\w{3})-(\d{4})$", text)
        if dmy and dmy[2].lower() in _MONTHS:
            return date(int(dmy[3]), _MONTHS[dmy[2].lower()], int(dmy[1]))
    except ValueError:
        return None

    parsed = pd.to_datetime(text, errors="coerce")
    if pd.isna(parsed):
        return None
    return parsed.date()


def parse_number(value: Any) -> float | None:
    if value is None:
        return None
    cleaned = re.sub(r"[$,\s]", "", str(value))
    if not cleaned:
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    return None if pd.isna(number) else number


def parse_timestamp(value: Any) -> datetime | None:
    """Timestamps are stored as naive UTC."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    ts = pd.to_datetime(value, errors="coerce", utc=True)
    if pd.isna(ts):
        return None
    return ts.tz_convert(None).to_pydatetime()


def split_tags(value: Any) -> list[str]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip().lower() for v in value if str(v).strip()]
    return [t.strip().lower() for t in re.split(r"[,\s;]+", str(value)) if t.strip()]


def categorize(tags: Iterable[str]) -> str:
    for tag in tags:
        label = TAG_TO_CATEGORY.get(tag)
        if label is not None:
            return label
    return DEFAULT_CATEGORY


def normalize_satisfaction(value: Any) -> str | None:
    text = str(value or "").strip().lower()
    if text in {"good", "positive", "satisfied"}:
        return "good"
    if text in {"bad", "negative", "unsatisfied", "dissatisfied"}:
        return "bad"
    return None


# ---------------------------------------------------------------------------
# Column detection


def detect_mapping(headers: list[str]) -> dict[str, str]:
    """Map CRM fields to CSV headers by exact, then best partial, pattern match."""

    mapping: dict[str, str] = {}
    normalized = [h.lower().strip() for h in headers]

    for target, patterns in COLUMN_PATTERNS.items():
        best_idx: int | None = None
        best_score = 0.0

        for idx, header in enumerate(normalized):
            for pattern in patterns:
                if header == pattern:
                    best_idx, best_score = idx, 100.0
                    break
                if header and (pattern in header or header in pattern):
                    score = len(pattern) / max(len(header), len(pattern)) * 80
                    if score > best_score:
                        best_idx, best_score = idx, score
            if best_score == 100.0:
                break

        if best_idx is not None and best_score >= 40:
            mapping[target] = headers[best_idx]

    return mapping


def apply_overrides(mapping: dict[str, str], overrides: str | None) -> dict[str, str]:
    """Apply ``"field=Column,field=Column"`` overrides on top of a detected mapping."""
    if not overrides:
        return mapping
    merged = dict(mapping)
    for pair in overrides.split(","):
        target, _, column = pair.partition("=")
        if target.strip() and column.strip():
            merged[target.strip()] = column.strip()
    return merged


def _to_snake_case(name: str) -> str:
    return (
        name.replace("-", "_")
        .replace(" ", "_")
        .replace("/", "_")
        .replace("__", "_")
        .strip()
        .lower()
    )


def _rename_aliases(df: pd.DataFrame, aliases: dict[str, tuple[str, ...]]) -> pd.DataFrame:
    df = df.rename(columns={col: _to_snake_case(col) for col in df.columns})
    for target, candidates in aliases.items():
        if target in df.columns:
            continue
        for candidate in candidates:
            if candidate in df.columns:
                df = df.rename(columns={candidate: target})
                break
    return df


def _read_csv(path: Path) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"CSV file not found: {path}")
    return pd.read_csv(path, dtype=str, keep_default_na=False)


# ---------------------------------------------------------------------------
# CRM accounts


def import_accounts(
    session: Session,
    path: Path | str,
    overrides: str | None = None,
    dry_run: bool = False,
) -> ImportSummary:
    """Load a CRM account export; unmapped columns land in ``raw_data``."""

    df = _read_csv(Path(path))
    headers = list(df.columns)
    mapping = apply_overrides(detect_mapping(headers), overrides)
    mapped_cols = set(mapping.values())
    summary = ImportSummary(
        mapping=mapping, unmapped=[h for h in headers if h not in mapped_cols]
    )

    if "name" not in mapping:
        raise ValueError(
            'Could not detect an account name column. Use --map "name=<Column>" to set it.'
        )
    if dry_run:
        return summary

    for idx, row in enumerate(df.to_dict(orient="records")):

        def get(target: str) -> str | None:
            column = mapping.get(target)
            value = (row.get(column) or "").strip() if column else ""
            return value or None

        name = get("name")
        if not name:
            summary.skipped += 1
            continue

        account_id = get("account_id") or f"auto_{idx}"
        status = get("status")
        mrr = parse_number(get("mrr"))
        churn_date = parse_date(get("churn_date"))
        contract_end = parse_date(get("contract_end"))

        upsert_account(
            session,
            account_id=account_id,
            name=name,
            status=status,
            owner=get("owner"),
            industry=get("industry"),
            mrr=mrr,
            arr=parse_number(get("arr")),
            contract_start=parse_date(get("contract_start")),
            contract_end=contract_end,
            churn_date=churn_date,
            churn_reason=get("churn_reason"),
            pos_system=get("pos_system"),
            shop_count=parse_number(get("shop_count")),
            raw_data={h: row[h] for h in summary.unmapped if row.get(h)},
        )
        summary.imported += 1

        status_lower = (status or "").lower().strip()
        if status_lower in CHURN_STATUSES or churn_date is not None:
            event_date = churn_date or contract_end or date.today()
            event_type = "downgraded" if status_lower in DOWNGRADE_STATUSES else "churned"
            exists = (
                session.query(ChurnEvent)
                .filter_by(account_id=account_id, event_type=event_type, event_date=event_date)
                .first()
            )
            if exists is None:
                session.add(
                    ChurnEvent(
                        account_id=account_id,
                        event_type=event_type,
                        event_date=event_date,
                        reason=get("churn_reason"),
                        revenue_impact=mrr,
                    )
                )
                summary.churn_events += 1

    session.flush()
    logger.info(
        "Imported %d accounts (%d skipped, %d churn events)",
        summary.imported,
        summary.skipped,
        summary.churn_events,
    )
    return summary


# ---------------------------------------------------------------------------
# Ticket-system exports


def import_organizations(session: Session, path: Path | str) -> ImportSummary:
    df = _rename_aliases(_read_csv(Path(path)), ORG_ALIASES)
    missing = {"org_id", "name"}.difference(df.columns)
    if missing:
        raise ValueError(
            f"Organization file is missing required columns: {sorted(missing)}. "
            f"Available columns: {list(df.columns)}"
        )

    summary = ImportSummary()
    for row in df.to_dict(orient="records"):
        org_id = parse_number(row.get("org_id"))
        if org_id is None or not row.get("name"):
            summary.skipped += 1
            continue
        upsert_organization(
            session,
            org_id=int(org_id),
            name=row["name"].strip(),
            domain_names=split_tags(row.get("domain_names")),
            tags=split_tags(row.get("tags")),
            created_at=parse_timestamp(row.get("created_at")),
        )
        summary.imported += 1

    session.flush()
    logger.info("Imported %d organizations (%d skipped)", summary.imported, summary.skipped)
    return summary


def normalize_ticket(row: dict[str, Any]) -> dict[str, Any] | None:
    """Turn one raw ticket row into store fields; None for rows to skip."""

    ticket_id = parse_number(row.get("ticket_id"))
    if ticket_id is None:
        return None

    tags = split_tags(row.get("tags"))
    if IGNORE_TAGS.intersection(tags):
        return None

    status = str(row.get("status") or "").strip().lower()
    priority = str(row.get("priority") or "").strip().lower() or "normal"
    ticket_type = str(row.get("ticket_type") or "").strip().lower() or None
    created_at = parse_timestamp(row.get("created_at"))
    solved_at = parse_timestamp(row.get("solved_at"))

    resolution_hours = None
    if created_at is not None and status in {"solved", "closed"}:
        end = solved_at or parse_timestamp(row.get("updated_at"))
        if end is not None:
            hours = (end - created_at).total_seconds() / 3600
            resolution_hours = hours if hours >= 0 else None

    flagged = str(row.get("is_escalation") or "").strip().lower() in {"1", "true", "yes"}
    is_escalation = (
        flagged
        or priority in config.HIGH_PRIORITIES
        or ticket_type == config.ESCALATION_RECORD_TYPE
    )

    org_id = parse_number(row.get("org_id"))
    reopens = parse_number(row.get("reopen_count"))
    known = set(TICKET_ALIASES)

    return {
        "ticket_id": int(ticket_id),
        "org_id": int(org_id) if org_id is not None else None,
        "subject": row.get("subject") or "",
        "status": status,
        "priority": priority,
        "ticket_type": ticket_type,
        "tags": tags,
        "category": (row.get("category") or "").strip() or categorize(tags),
        "satisfaction": normalize_satisfaction(row.get("satisfaction")),
        "created_at": created_at,
        "solved_at": solved_at,
        "resolution_hours": resolution_hours,
        "is_escalation": is_escalation,
        "reopen_count": int(reopens) if reopens is not None else 0,
        "raw_data": {k: v for k, v in row.items() if k not in known and v not in ("", None)},
    }


def import_tickets(session: Session, path: Path | str) -> ImportSummary:
    df = _rename_aliases(_read_csv(Path(path)), TICKET_ALIASES)
    missing = {"ticket_id", "created_at"}.difference(df.columns)
    if missing:
        raise ValueError(
            f"Ticket file is missing required columns: {sorted(missing)}. "
            f"Available columns: {list(df.columns)}"
        )

    summary = ImportSummary()
    for row in df.to_dict(orient="records"):
        fields = normalize_ticket(row)
        if fields is None:
            summary.skipped += 1
            continue
        upsert_ticket(session, **fields)
        summary.imported += 1

    session.flush()
    logger.info("Imported %d tickets (%d skipped)", summary.imported, summary.skipped)
    return summary


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Import CRM and ticket-system CSV exports.")
    parser.add_argument("--accounts", type=str, default=None, help="CRM account CSV export.")
    parser.add_argument("--organizations", type=str, default=None, help="Organization CSV export.")
    parser.add_argument("--tickets", type=str, default=None, help="Ticket CSV export.")
    parser.add_argument(
        "--map",
        dest="overrides",
        type=str,
        default=None,
        help='Override detected account columns, e.g. "churn_date=Close Date,mrr=Monthly Value".',
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Show the account column mapping without importing."
    )
    args = parser.parse_args(argv)

    if not (args.accounts or args.organizations or args.tickets):
        parser.error("nothing to import: pass --accounts, --organizations and/or --tickets")

    with session_scope() as session:
        if args.accounts:
            summary = import_accounts(session, args.accounts, args.overrides, args.dry_run)
            print("Column mapping:")
            for target, column in summary.mapping.items():
                print(f"  {target:<18} <- {column!r}")
            if summary.unmapped:
                print(f"Unmapped columns (kept in raw_data): {', '.join(summary.unmapped)}")
            if args.dry_run:
                print("[DRY RUN] No accounts imported.")
            else:
                print(
                    f"Accounts imported: {summary.imported}; churn events: {summary.churn_events}"
                )
        if args.organizations:
            summary = import_organizations(session, args.organizations)
            print(f"Organizations imported: {summary.imported}")
        if args.tickets:
            summary = import_tickets(session, args.tickets)
            print(f"Tickets imported: {summary.imported} (skipped {summary.skipped})")


if __name__ == "__main__":
    main()
