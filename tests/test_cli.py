from __future__ import annotations

import pytest

from churn_analyzer import cli, config


@pytest.fixture(autouse=True)
def temp_store(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(config, "DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")


def test_unknown_command_exits_nonzero(capsys) -> None:
    assert cli.main(["bogus"]) == 1
    assert "Unknown command" in capsys.readouterr().err


def test_status_on_empty_store(capsys) -> None:
    assert cli.main(["status"]) == 0
    assert "Accounts:       0" in capsys.readouterr().out


def test_lookup_errors_are_reported(capsys) -> None:
    assert cli.main(["match"]) == 1
    assert "No organizations" in capsys.readouterr().err


def test_predict_falls_back_without_history(tmp_path, capsys) -> None:
    accounts = tmp_path / "accounts.csv"
    accounts.write_text("Account ID,Account Name\n001,Joe's Auto Repair\n")
    orgs = tmp_path / "orgs.csv"
    orgs.write_text("id,name\n7,Joes Auto Repair\n")

    assert cli.main(["import", "--accounts", str(accounts), "--organizations", str(orgs)]) == 0
    assert cli.main(["match"]) == 0
    assert cli.main(["predict"]) == 0
    assert "heuristic scores were regenerated" in capsys.readouterr().out
