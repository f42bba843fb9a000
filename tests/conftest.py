from __future__ import annotations

from datetime import date, datetime, timedelta
from itertools import count
from typing import Any, Iterator

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from churn_analyzer.db import (
    Account,
    AccountOrgLink,
    Organization,
    Ticket,
    get_engine,
    session_scope,
    utcnow,
)


class StoreFactory:
    """Small builders for accounts, organizations, tickets and links."""

    def __init__(self, session: Session):
        self.session = session
        self._ticket_ids = count(1)

    def account(
        self,
        account_id: str,
        name: str | None = None,
        churn_date: date | None = None,
        mrr: float | None = None,
    ) -> Account:
        account = Account(
            account_id=account_id,
            name=name or account_id,
            churn_date=churn_date,
            mrr=mrr,
            status="churned" if churn_date else "active",
        )
        self.session.add(account)
        return account

    def organization(self, org_id: int, name: str) -> Organization:
        org = Organization(org_id=org_id, name=name)
        self.session.add(org)
        return org

    def link(self, account_id: str, org_id: int, confirmed: bool = True) -> AccountOrgLink:
        link = AccountOrgLink(
            account_id=account_id,
            org_id=org_id,
            candidate_org_id=org_id,
            match_method="exact",
            match_score=1.0,
            confirmed=confirmed,
        )
        self.session.add(link)
        return link

    def ticket(self, org_id: int, created_at: datetime, **fields: Any) -> Ticket:
        defaults: dict[str, Any] = {
            "status": "solved",
            "priority": "normal",
            "ticket_type": "question",
            "category": "Other",
            "satisfaction": None,
            "resolution_hours": None,
            "is_escalation": False,
            "reopen_count": 0,
        }
        defaults.update(fields)
        ticket = Ticket(
            ticket_id=next(self._ticket_ids), org_id=org_id, created_at=created_at, **defaults
        )
        self.session.add(ticket)
        return ticket

    def tickets(self, org_id: int, end: datetime, n: int, **fields: Any) -> None:
        """``n`` tickets one day apart, the newest one day before ``end``."""
        for i in range(n):
            self.ticket(org_id, end - timedelta(days=i + 1), **fields)

    def matched(
        self,
        account_id: str,
        org_id: int,
        churn_date: date | None = None,
        confirmed: bool = True,
    ) -> None:
        self.account(account_id, churn_date=churn_date)
        self.organization(org_id, f"Org {org_id}")
        self.link(account_id, org_id, confirmed=confirmed)


@pytest.fixture
def engine(tmp_path) -> Engine:
    return get_engine(f"sqlite:///{tmp_path / 'churn.db'}")


@pytest.fixture
def session(engine: Engine) -> Iterator[Session]:
    with session_scope(engine) as s:
        yield s


@pytest.fixture
def factory(session: Session) -> StoreFactory:
    return StoreFactory(session)


@pytest.fixture
def now() -> datetime:
    return utcnow()


def _build_churn_dataset(factory: StoreFactory, now: datetime, churned: int) -> None:
    """Noisy churned accounts (18, 20, 22 ... tickets before churn) and quiet active ones."""

    churn_day = (now - timedelta(days=200)).date()
    churn_midnight = datetime.combine(churn_day, datetime.min.time())
    for i in range(churned):
        factory.matched(f"churned-{i}", 100 + i, churn_date=churn_day)
        factory.tickets(
            100 + i,
            churn_midnight,
            18 + 2 * i,
            status="open",
            priority="urgent",
            satisfaction="bad",
            is_escalation=True,
        )
    for i in range(3):
        factory.matched(f"active-{i}", 200 + i)
        factory.ticket(200 + i, now - timedelta(days=10), satisfaction="good")
    factory.session.flush()


@pytest.fixture
def churn_dataset(factory: StoreFactory, now: datetime):
    def build(churned: int = 3) -> None:
        _build_churn_dataset(factory, now, churned)

    return build
