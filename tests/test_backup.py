import csv
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO
from pathlib import Path
from uuid import uuid4

import pytest

from clock import FixedClock
from config import Settings
from csv_utils import CSV_HEADER, sanitize_csv_value
from errors import ValidationError
from models import AppTheme, CurrencyCode, TransactionType
from schemas import AccountIn, GoalIn, PreferencesIn, TransactionIn, to_local_naive
from services import Ledger
from storage import MemoryKeyValueStore
from store import DataStore

NOW = datetime(2024, 6, 1, 10, 0)


def make_ledger() -> Ledger:
    settings = Settings(
        data_dir=Path("."),
        database_url="sqlite:///:memory:",
        timezone="UTC",
        lookahead_months=3,
        exclude_future_from_balance=True,
        scheduler_interval_minutes=60,
        app_version="9.9.9",
    )
    ledger = Ledger(DataStore(MemoryKeyValueStore()), clock=FixedClock(NOW), settings=settings)
    ledger.store.load()
    return ledger


def seed(ledger: Ledger, notes: str = "Lunch") -> None:
    account = ledger.accounts.create(AccountIn(name="Checking", opening_balance=Decimal("20")))
    food = next(c.id for c in ledger.categories.list_all() if c.name == "food")
    for offset, amount in ((2, "12.50"), (1, "3.20"), (-3, "8")):
        ledger.transactions.create(
            TransactionIn(
                amount=Decimal(amount),
                type=TransactionType.expense,
                category_id=food,
                account_id=account.id,
                date=NOW - timedelta(days=offset),
                notes=notes,
            )
        )


def test_csv_export_header_order_and_notes():
    ledger = make_ledger()
    seed(ledger, notes="Coffee, milk, bread")

    rows = list(csv.reader(StringIO(ledger.csv.export())))

    assert rows[0] == CSV_HEADER
    assert [row[0] for row in rows[1:]] == ["2024-06-04", "2024-05-31", "2024-05-30"]
    assert rows[1][1:] == ["expense", "food", "8", "Checking", "Coffee; milk; bread"]


def test_csv_values_are_neutralised():
    assert sanitize_csv_value("=SUM(A1:A3)") == "\t=SUM(A1:A3)"
    assert sanitize_csv_value("https://example.com") == "\thttps://example.com"
    assert sanitize_csv_value("  Groceries ") == "Groceries"
    assert sanitize_csv_value("") == ""


def test_json_export_has_backup_keys_and_string_amounts():
    ledger = make_ledger()
    seed(ledger)
    ledger.preferences.update(PreferencesIn(theme=AppTheme.dark))

    data = json.loads(ledger.backup.export_json())

    assert set(data) == {
        "accounts",
        "transactions",
        "categories",
        "budgets",
        "goals",
        "recurringTransactions",
        "theme",
        "currency",
        "language",
        "backupDate",
        "appVersion",
    }
    assert data["appVersion"] == "9.9.9"
    assert data["theme"] == "dark"
    assert data["transactions"][0]["amount"] == "12.50"
    assert "accountId" in data["transactions"][0]


def test_import_overwrites_everything_and_rebuilds_balances():
    source = make_ledger()
    seed(source)
    source.goals.create(GoalIn(name="Bike", target_amount=Decimal("300")))
    source.preferences.update(PreferencesIn(currency=CurrencyCode.chf))
    payload = json.loads(source.backup.export_json())
    payload["accounts"][0]["balance"] = "999"

    target = make_ledger()
    target.accounts.create(AccountIn(name="Old"))
    restored = []
    target.store.events.subscribe("data_restored", restored.append)

    target.backup.import_json(json.dumps(payload))

    assert [a.name for a in target.accounts.list_all()] == ["Checking"]
    assert len(target.transactions.list_all()) == 3
    assert [g.name for g in target.goals.list_all()] == ["Bike"]
    assert target.preferences.get().currency == CurrencyCode.chf
    account = target.accounts.list_all()[0]
    # 20 - 12.50 - 3.20; the future expense is still pending.
    assert account.balance == Decimal("4.30")
    assert len(restored) == 1


def test_invalid_import_leaves_state_untouched():
    ledger = make_ledger()
    seed(ledger)
    before = ledger.backup.export_json()

    with pytest.raises(ValidationError):
        ledger.backup.import_json('{"accounts": []}')
    with pytest.raises(ValidationError):
        ledger.backup.import_json("not json")

    assert len(ledger.transactions.list_all()) == 3
    assert json.loads(ledger.backup.export_json())["accounts"] == json.loads(before)["accounts"]


def test_import_recomputes_applied_flags_from_dates():
    source = make_ledger()
    seed(source)
    payload = json.loads(source.backup.export_json())
    for txn in payload["transactions"]:
        # Flip every stored flag; the dates alone decide.
        txn["balanceApplied"] = not txn["balanceApplied"]

    target = make_ledger()
    target.backup.import_json(json.dumps(payload))
    target.engine.run_pass()

    account = target.accounts.list_all()[0]
    assert account.balance == Decimal("4.30")
    assert [t.balance_applied for t in sorted(target.transactions.list_all(), key=lambda t: t.date)] == [
        True,
        True,
        False,
    ]


def test_import_rejects_dangling_references():
    source = make_ledger()
    seed(source)
    good = json.loads(source.backup.export_json())

    target = make_ledger()
    seed(target, notes="Keep me")

    bad_account = json.loads(json.dumps(good))
    bad_account["transactions"][0]["accountId"] = str(uuid4())
    bad_category = json.loads(json.dumps(good))
    bad_category["transactions"][1]["categoryId"] = str(uuid4())

    for payload in (bad_account, bad_category):
        with pytest.raises(ValidationError):
            target.backup.import_json(json.dumps(payload))

    assert {t.notes for t in target.transactions.list_all()} == {"Keep me"}


def test_import_accepts_utc_suffixed_dates():
    source = make_ledger()
    seed(source)
    payload = json.loads(source.backup.export_json())
    payload["backupDate"] = "2024-06-01T08:00:00Z"
    payload["transactions"][2]["date"] = "2024-06-04T00:00:00Z"

    target = make_ledger()
    target.backup.import_json(json.dumps(payload))
    result = target.engine.run_pass()

    expected = to_local_naive(datetime(2024, 6, 4, tzinfo=timezone.utc))
    assert result.errors == []
    assert all(t.date.tzinfo is None for t in target.transactions.list_all())
    assert expected in {t.date for t in target.transactions.list_all()}
    assert target.accounts.list_all()[0].balance == Decimal("4.30")
