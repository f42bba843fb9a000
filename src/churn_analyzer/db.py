# src/churn_analyzer/db.py
"""
Durable entity store for the churn analyzer.

SQLAlchemy ORM tables for CRM accounts, ticket-system organizations and
tickets, the account/organization links, and every computed artifact
(signatures, predictions, heuristic risk scores, feature snapshots).
All writes of one analysis pass go through ``session_scope`` so a pass
commits completely or not at all.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

import pandas as pd
from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from . import config

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Raised when a pass cannot be committed to the store."""


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Source entities


class Account(Base):
    """CRM account record."""

    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    owner: Mapped[Optional[str]] = mapped_column(String(255))
    industry: Mapped[Optional[str]] = mapped_column(String(255))
    mrr: Mapped[Optional[float]] = mapped_column(Float)
    arr: Mapped[Optional[float]] = mapped_column(Float)
    contract_start: Mapped[Optional[date]] = mapped_column(Date)
    contract_end: Mapped[Optional[date]] = mapped_column(Date)
    churn_date: Mapped[Optional[date]] = mapped_column(Date, index=True)
    churn_reason: Mapped[Optional[str]] = mapped_column(Text)
    pos_system: Mapped[Optional[str]] = mapped_column(String(255))
    shop_count: Mapped[Optional[float]] = mapped_column(Float)
    raw_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ChurnEvent(Base):
    __tablename__ = "churn_events"
    __table_args__ = (UniqueConstraint("account_id", "event_type", "event_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), index=True)
    event_type: Mapped[str] = mapped_column(String(32))
    event_date: Mapped[date] = mapped_column(Date)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    revenue_impact: Mapped[Optional[float]] = mapped_column(Float)


class Organization(Base):
    """Ticket-system organization. Read-only to the analysis engine."""

    __tablename__ = "organizations"

    org_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    domain_names: Mapped[Optional[list[Any]]] = mapped_column(JSON)
    tags: Mapped[Optional[list[Any]]] = mapped_column(JSON)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Ticket(Base):
    """One support interaction record."""

    __tablename__ = "tickets"

    ticket_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    org_id: Mapped[Optional[int]] = mapped_column(ForeignKey("organizations.org_id"), index=True)
    subject: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[Optional[str]] = mapped_column(String(32))
    priority: Mapped[Optional[str]] = mapped_column(String(32))
    ticket_type: Mapped[Optional[str]] = mapped_column(String(32), index=True)
    tags: Mapped[Optional[list[Any]]] = mapped_column(JSON)
    category: Mapped[Optional[str]] = mapped_column(String(64))
    satisfaction: Mapped[Optional[str]] = mapped_column(String(8))
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    solved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resolution_hours: Mapped[Optional[float]] = mapped_column(Float)
    is_escalation: Mapped[bool] = mapped_column(Boolean, default=False)
    reopen_count: Mapped[int] = mapped_column(Integer, default=0)
    raw_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class AccountOrgLink(Base):
    """At most one organization per account.

    ``org_id`` is set for stored matches (confirmed or needing review);
    unmatched accounts keep only ``candidate_org_id`` for diagnostics.
    """

    __tablename__ = "account_org_links"

    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), primary_key=True)
    org_id: Mapped[Optional[int]] = mapped_column(ForeignKey("organizations.org_id"), index=True)
    candidate_org_id: Mapped[Optional[int]] = mapped_column(Integer)
    match_method: Mapped[str] = mapped_column(String(32))
    match_score: Mapped[float] = mapped_column(Float, default=0.0)
    confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


# ---------------------------------------------------------------------------
# Computed artifacts


class ChurnSignatureRecord(Base):
    __tablename__ = "churn_signatures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    window_days: Mapped[int] = mapped_column(Integer)
    churned_sample_size: Mapped[int] = mapped_column(Integer)
    active_sample_size: Mapped[int] = mapped_column(Integer)
    signature_json: Mapped[dict[str, Any]] = mapped_column(JSON)
    model_quality: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)


class ChurnPrediction(Base):
    __tablename__ = "churn_predictions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), index=True)
    org_id: Mapped[Optional[int]] = mapped_column(Integer)
    signature_id: Mapped[Optional[int]] = mapped_column(ForeignKey("churn_signatures.id"))
    computed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    churn_score: Mapped[float] = mapped_column(Float, index=True)
    churn_risk_level: Mapped[str] = mapped_column(String(16), index=True)
    feature_vector: Mapped[dict[str, Any]] = mapped_column(JSON)
    matched_signals: Mapped[list[Any]] = mapped_column(JSON)
    signal_count: Mapped[int] = mapped_column(Integer)
    confidence: Mapped[str] = mapped_column(String(8))


class RiskScore(Base):
    __tablename__ = "risk_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), index=True)
    org_id: Mapped[Optional[int]] = mapped_column(Integer)
    computed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    overall_score: Mapped[float] = mapped_column(Float, index=True)
    risk_level: Mapped[str] = mapped_column(String(16), index=True)
    volume_score: Mapped[float] = mapped_column(Float)
    escalation_score: Mapped[float] = mapped_column(Float)
    sentiment_score: Mapped[float] = mapped_column(Float)
    velocity_score: Mapped[float] = mapped_column(Float)
    resolution_score: Mapped[float] = mapped_column(Float)
    breadth_score: Mapped[float] = mapped_column(Float)
    recency_score: Mapped[float] = mapped_column(Float)
    ticket_count_30d: Mapped[int] = mapped_column(Integer)
    ticket_count_60d: Mapped[int] = mapped_column(Integer)
    ticket_count_90d: Mapped[int] = mapped_column(Integer)
    escalation_count_30d: Mapped[int] = mapped_column(Integer)
    avg_resolution_hours: Mapped[Optional[float]] = mapped_column(Float)
    bad_satisfaction_count: Mapped[int] = mapped_column(Integer)
    unique_categories: Mapped[int] = mapped_column(Integer)
    days_since_last_ticket: Mapped[Optional[int]] = mapped_column(Integer)
    reopened_ticket_count: Mapped[int] = mapped_column(Integer)
    top_categories: Mapped[list[Any]] = mapped_column(JSON)
    trend_direction: Mapped[str] = mapped_column(String(16))
    risk_factors: Mapped[list[Any]] = mapped_column(JSON)


class FeatureSnapshot(Base):
    """Cached feature vector keyed by (organization, window, as-of date).

    ``window_days == 0`` marks an all-history vector.
    """

    __tablename__ = "feature_snapshots"
    __table_args__ = (UniqueConstraint("org_id", "window_days", "as_of"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, index=True)
    window_days: Mapped[int] = mapped_column(Integer)
    as_of: Mapped[date] = mapped_column(Date)
    feature_vector: Mapped[dict[str, Any]] = mapped_column(JSON)
    ticket_count: Mapped[int] = mapped_column(Integer)
    computed_at: Mapped[datetime] = mapped_column(DateTime)


# ---------------------------------------------------------------------------
# Engine / sessions

_ENGINES: dict[str, Engine] = {}


def get_engine(url: str | None = None) -> Engine:
    """Return a cached engine for ``url`` with the schema created."""

    db_url = url or config.DATABASE_URL
    engine = _ENGINES.get(db_url)
    if engine is not None:
        return engine

    if db_url.startswith("sqlite:///") and db_url != "sqlite:///:memory:":
        Path(db_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(db_url, future=True)
    Base.metadata.create_all(engine)
    _ENGINES[db_url] = engine
    return engine


@contextmanager
def session_scope(engine: Engine | None = None) -> Iterator[Session]:
    """One transaction per pass: commit on success, roll back on any failure."""

    factory = sessionmaker(bind=engine or get_engine(), expire_on_commit=False)
    session = factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StoreError(f"Store transaction failed: {exc}") from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Upserts


def upsert_account(session: Session, **fields: Any) -> Account:
    """Insert or update an account by id; a churn date, once set, is kept."""

    account = session.get(Account, fields["account_id"])
    if account is None:
        account = Account(**fields)
        session.add(account)
        return account

    existing_churn = account.churn_date
    for key, value in fields.items():
        setattr(account, key, value)
    if existing_churn is not None:
        account.churn_date = existing_churn
    return account


def upsert_organization(session: Session, **fields: Any) -> Organization:
    return session.merge(Organization(**fields))


def upsert_ticket(session: Session, **fields: Any) -> Ticket:
    return session.merge(Ticket(**fields))


def upsert_link(session: Session, **fields: Any) -> AccountOrgLink:
    return session.merge(AccountOrgLink(**fields))


# ---------------------------------------------------------------------------
# Queries

TICKET_COLUMNS = [
    "ticket_id",
    "org_id",
    "status",
    "priority",
    "ticket_type",
    "category",
    "satisfaction",
    "created_at",
    "solved_at",
    "resolution_hours",
    "is_escalation",
    "reopen_count",
]


def load_tickets(
    session: Session,
    org_ids: list[int] | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> pd.DataFrame:
    """Range query over tickets by organization and creation time (inclusive)."""

    stmt = select(*[getattr(Ticket, col) for col in TICKET_COLUMNS]).where(
        Ticket.created_at.is_not(None)
    )
    if org_ids is not None:
        stmt = stmt.where(Ticket.org_id.in_(org_ids))
    if start is not None:
        stmt = stmt.where(Ticket.created_at >= start)
    if end is not None:
        stmt = stmt.where(Ticket.created_at <= end)

    session.flush()
    df = pd.read_sql(stmt, session.connection())
    if df.empty:
        return pd.DataFrame(columns=TICKET_COLUMNS)

    df["created_at"] = pd.to_datetime(df["created_at"], errors="coerce")
    df["solved_at"] = pd.to_datetime(df["solved_at"], errors="coerce")
    df["is_escalation"] = df["is_escalation"].fillna(False).astype(bool)
    df["reopen_count"] = pd.to_numeric(df["reopen_count"], errors="coerce").fillna(0).astype(int)
    df["resolution_hours"] = pd.to_numeric(df["resolution_hours"], errors="coerce")
    return df.dropna(subset=["created_at"]).reset_index(drop=True)


def matched_accounts(
    session: Session,
    churned: bool | None = None,
    confirmed_only: bool = True,
) -> pd.DataFrame:
    """Accounts joined to their linked organization.

    ``churned`` filters on presence of a churn date; ``None`` returns both.
    """

    stmt = (
        select(
            Account.account_id,
            Account.name,
            Account.mrr,
            Account.status,
            Account.churn_date,
            AccountOrgLink.org_id,
            AccountOrgLink.confirmed,
        )
        .join(AccountOrgLink, AccountOrgLink.account_id == Account.account_id)
        .where(AccountOrgLink.org_id.is_not(None))
        .order_by(Account.account_id)
    )
    if confirmed_only:
        stmt = stmt.where(AccountOrgLink.confirmed.is_(True))
    if churned is True:
        stmt = stmt.where(Account.churn_date.is_not(None))
    elif churned is False:
        stmt = stmt.where(Account.churn_date.is_(None))

    rows = session.execute(stmt).all()
    columns = ["account_id", "name", "mrr", "status", "churn_date", "org_id", "confirmed"]
    return pd.DataFrame([tuple(r) for r in rows], columns=columns)


def orgs_with_tickets(session: Session) -> set[int]:
    rows = session.execute(select(Ticket.org_id).where(Ticket.org_id.is_not(None)).distinct())
    return {int(r[0]) for r in rows}


def get_stats(session: Session) -> dict[str, Any]:
    def count(stmt: Any) -> int:
        return int(session.execute(stmt).scalar_one())

    return {
        "accounts": count(select(func.count()).select_from(Account)),
        "churned": count(
            select(func.count()).select_from(Account).where(Account.churn_date.is_not(None))
        ),
        "organizations": count(select(func.count()).select_from(Organization)),
        "tickets": count(select(func.count()).select_from(Ticket)),
        "matched": count(
            select(func.count())
            .select_from(AccountOrgLink)
            .where(AccountOrgLink.org_id.is_not(None))
        ),
        "confirmed": count(
            select(func.count())
            .select_from(AccountOrgLink)
            .where(AccountOrgLink.confirmed.is_(True))
        ),
        "risk_scores": count(select(func.count()).select_from(RiskScore)),
        "signatures": count(select(func.count()).select_from(ChurnSignatureRecord)),
        "predictions": count(select(func.count()).select_from(ChurnPrediction)),
        "last_signature": session.execute(
            select(func.max(ChurnSignatureRecord.computed_at))
        ).scalar_one(),
        "last_ticket_fetch": session.execute(select(func.max(Ticket.fetched_at))).scalar_one(),
    }


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
