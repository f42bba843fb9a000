from __future__ import annotations

from datetime import date, datetime

import pytest

from churn_analyzer.data_prep import (
    DEFAULT_CATEGORY,
    apply_overrides,
    categorize,
    detect_mapping,
    import_accounts,
    import_organizations,
    import_tickets,
    normalize_ticket,
    parse_date,
    parse_number,
)
from churn_analyzer.db import Account, ChurnEvent, Organization, Ticket


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2024-03-15", date(2024, 3, 15)),
        ("2024-03-15T10:00:00Z", date(2024, 3, 15)),
        ("3/15/2024", date(2024, 3, 15)),
        ("3/15/24", date(2024, 3, 15)),
        ("3/15/99", date(1999, 3, 15)),
        ("15-Mar-2024", date(2024, 3, 15)),
        ("", None),
        ("not a date", None),
        ("13/45/2024", None),
    ],
)
def test_parse_date(raw: str, expected: date | None) -> None:
    assert parse_date(raw) == expected


def test_parse_number_strips_currency() -> None:
    assert parse_number("$1,250.50") == 1250.5
    assert parse_number(" 42 ") == 42.0
    assert parse_number("n/a") is None
    assert parse_number("") is None


def test_detect_mapping_and_overrides() -> None:
    headers = ["Account ID", "Account Name", "Monthly Recurring Revenue", "Churn Date", "Notes"]
    mapping = detect_mapping(headers)

    assert mapping["account_id"] == "Account ID"
    assert mapping["name"] == "Account Name"
    assert mapping["mrr"] == "Monthly Recurring Revenue"
    assert mapping["churn_date"] == "Churn Date"
    assert "Notes" not in mapping.values()

    merged = apply_overrides(mapping, "churn_date=Notes")
    assert merged["churn_date"] == "Notes"


def test_categorize_uses_first_mapped_tag() -> None:
    assert categorize(["integrations", "system_issue"]) == "Integration"
    assert categorize(["system_issue", "integrations"]) == "System Issue"
    assert categorize(["billing", "bayiq", "high_slack"]) == "BayIQ"
    assert categorize(["bayiq"]) == "BayIQ"
    assert categorize(["misc"]) == DEFAULT_CATEGORY


def test_normalize_ticket_fields() -> None:
    fields = normalize_ticket(
        {
            "ticket_id": "101",
            "org_id": "7",
            "status": "Solved",
            "priority": "Urgent",
            "tags": "integrations, billing",
            "satisfaction": "Bad",
            "created_at": "2024-03-01T00:00:00Z",
            "solved_at": "2024-03-02T12:00:00Z",
            "reopen_count": "2",
            "channel": "email",
        }
    )

    assert fields["ticket_id"] == 101
    assert fields["org_id"] == 7
    assert fields["is_escalation"] is True
    assert fields["resolution_hours"] == pytest.approx(36.0)
    assert fields["category"] == "Integration"
    assert fields["satisfaction"] == "bad"
    assert fields["reopen_count"] == 2
    assert fields["created_at"] == datetime(2024, 3, 1)
    assert fields["raw_data"] == {"channel": "email"}


def test_normalize_ticket_skips_unusable_rows() -> None:
    assert normalize_ticket({"ticket_id": ""}) is None
    assert normalize_ticket({"ticket_id": "5", "tags": "voicemail"}) is None


def test_import_accounts_records_churn(session, tmp_path) -> None:
    csv_path = tmp_path / "accounts.csv"
    csv_path.write_text(
        "Account ID,Account Name,Status,MRR,Churn Date,Favorite Color\n"
        "001,Joe's Auto,Active,$300,,blue\n"
        "002,Brake Bros,Cancelled,$150,1/15/2024,red\n"
        ",Unnamed Id Shop,Active,,,\n"
        "004,,Active,,,\n"
    )

    summary = import_accounts(session, csv_path)

    assert summary.imported == 3
    assert summary.skipped == 1
    assert summary.churn_events == 1
    churned = session.get(Account, "002")
    assert churned.churn_date == date(2024, 1, 15)
    assert churned.mrr == 150.0
    assert churned.raw_data == {"Favorite Color": "red"}
    assert session.get(Account, "auto_2").name == "Unnamed Id Shop"
    event = session.query(ChurnEvent).one()
    assert (event.account_id, event.event_type) == ("002", "churned")


def test_churn_date_is_kept_on_reimport(session, tmp_path) -> None:
    first = tmp_path / "first.csv"
    first.write_text("Account ID,Account Name,Churn Date\n002,Brake Bros,1/15/2024\n")
    second = tmp_path / "second.csv"
    second.write_text("Account ID,Account Name,Churn Date\n002,Brake Bros,6/30/2024\n")

    import_accounts(session, first)
    import_accounts(session, second)

    assert session.get(Account, "002").churn_date == date(2024, 1, 15)


def test_import_accounts_requires_a_name_column(session, tmp_path) -> None:
    csv_path = tmp_path / "accounts.csv"
    csv_path.write_text("Foo,Bar\n1,2\n")

    with pytest.raises(ValueError):
        import_accounts(session, csv_path)


def test_import_organizations_and_tickets(session, tmp_path) -> None:
    orgs = tmp_path / "orgs.csv"
    orgs.write_text("id,name,domain_names\n7,Joes Auto Repair,joesauto.com\n")
    tickets = tmp_path / "tickets.csv"
    tickets.write_text(
        "id,organization_id,status,priority,type,created_at\n"
        "1,7,open,normal,problem,2024-03-01T00:00:00Z\n"
        ",7,open,normal,question,2024-03-01T00:00:00Z\n"
    )

    assert import_organizations(session, orgs).imported == 1
    summary = import_tickets(session, tickets)

    assert (summary.imported, summary.skipped) == (1, 1)
    assert session.get(Organization, 7).domain_names == ["joesauto.com"]
    ticket = session.get(Ticket, 1)
    assert ticket.is_escalation
    assert ticket.ticket_type == "problem"
