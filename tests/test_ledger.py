from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest

from clock import FixedClock
from config import Settings
from errors import NotFoundError, PersistenceError, ValidationError
from models import TransactionType
from schemas import AccountIn, TransactionIn
from services import Ledger
from storage import MemoryKeyValueStore
from store import DataStore

NOW = datetime(2024, 3, 15, 12, 0)


class FlakyKeyValueStore(MemoryKeyValueStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def save_many(self, values) -> None:
        if self.fail:
            raise PersistenceError("disk full")
        super().save_many(values)


def make_ledger(backend=None, *, exclude_future: bool = True) -> tuple[Ledger, FixedClock]:
    settings = Settings(
        data_dir=Path("."),
        database_url="sqlite:///:memory:",
        timezone="UTC",
        lookahead_months=3,
        exclude_future_from_balance=exclude_future,
        scheduler_interval_minutes=60,
        app_version="test",
    )
    clock = FixedClock(NOW)
    ledger = Ledger(DataStore(backend or MemoryKeyValueStore()), clock=clock, settings=settings)
    ledger.store.load()
    return ledger, clock


def category_id(ledger: Ledger, name: str):
    return next(c.id for c in ledger.categories.list_all() if c.name == name)


def expense(ledger: Ledger, account_id, amount: str, when: datetime = NOW) -> TransactionIn:
    return TransactionIn(
        amount=Decimal(amount),
        type=TransactionType.expense,
        category_id=category_id(ledger, "food"),
        account_id=account_id,
        date=when,
    )


def income(ledger: Ledger, account_id, amount: str, when: datetime = NOW) -> TransactionIn:
    return TransactionIn(
        amount=Decimal(amount),
        type=TransactionType.income,
        category_id=category_id(ledger, "salary"),
        account_id=account_id,
        date=when,
    )


def assert_consistent(ledger: Ledger) -> None:
    for account in ledger.accounts.list_all():
        assert account.balance == ledger.transactions.recompute_balance(account.id)


def test_future_income_is_excluded_until_its_date_passes():
    ledger, clock = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))

    ledger.transactions.create(expense(ledger, account.id, "50"))
    ledger.transactions.create(income(ledger, account.id, "200", NOW + timedelta(days=10)))

    assert ledger.transactions.get_account_balance(account.id) == Decimal("-50")

    clock.advance(timedelta(days=11))
    result = ledger.engine.run_pass()

    assert result.settled == 1
    assert ledger.transactions.get_account_balance(account.id) == Decimal("150")
    assert_consistent(ledger)


def test_future_transactions_apply_immediately_when_toggle_is_off():
    ledger, _ = make_ledger(exclude_future=False)
    account = ledger.accounts.create(AccountIn(name="Checking"))

    ledger.transactions.create(income(ledger, account.id, "200", NOW + timedelta(days=10)))

    assert ledger.transactions.get_account_balance(account.id) == Decimal("200")


def test_balance_tracks_add_update_delete():
    ledger, _ = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking", opening_balance=Decimal("100")))

    first = ledger.transactions.create(expense(ledger, account.id, "20"))
    second = ledger.transactions.create(income(ledger, account.id, "45.50"))
    assert ledger.transactions.get_account_balance(account.id) == Decimal("125.50")
    assert_consistent(ledger)

    ledger.transactions.update(first.id, expense(ledger, account.id, "30"))
    assert ledger.transactions.get_account_balance(account.id) == Decimal("115.50")
    assert_consistent(ledger)

    # Moving a transaction into the future takes it off the balance.
    ledger.transactions.update(second.id, income(ledger, account.id, "45.50", NOW + timedelta(days=3)))
    assert ledger.transactions.get_account_balance(account.id) == Decimal("70")
    assert_consistent(ledger)

    ledger.transactions.delete(first.id)
    assert ledger.transactions.get_account_balance(account.id) == Decimal("100")
    assert_consistent(ledger)


def test_transfer_moves_and_reverts_both_accounts():
    ledger, _ = make_ledger()
    source = ledger.accounts.create(AccountIn(name="Checking", opening_balance=Decimal("100")))
    target = ledger.accounts.create(AccountIn(name="Savings"))

    transfer = ledger.transactions.create(
        TransactionIn(
            amount=Decimal("30"),
            type=TransactionType.transfer,
            account_id=source.id,
            to_account_id=target.id,
            date=NOW,
        )
    )
    assert transfer.category_id == ledger.categories.fallback().id
    assert ledger.transactions.get_account_balance(source.id) == Decimal("70")
    assert ledger.transactions.get_account_balance(target.id) == Decimal("30")

    ledger.transactions.update(transfer.id, expense(ledger, source.id, "30"))
    assert ledger.transactions.get_account_balance(source.id) == Decimal("70")
    assert ledger.transactions.get_account_balance(target.id) == Decimal("0")

    ledger.transactions.delete(transfer.id)
    assert ledger.transactions.get_account_balance(source.id) == Decimal("100")
    assert ledger.transactions.get_account_balance(target.id) == Decimal("0")
    assert_consistent(ledger)


def test_transfer_to_same_account_is_rejected():
    ledger, _ = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))

    with pytest.raises(ValueError):
        TransactionIn(
            amount=Decimal("10"),
            type=TransactionType.transfer,
            account_id=account.id,
            to_account_id=account.id,
            date=NOW,
        )


def test_missing_references_are_rejected_before_mutation():
    ledger, _ = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))

    with pytest.raises(ValidationError):
        ledger.transactions.create(expense(ledger, uuid4(), "10"))

    data = expense(ledger, account.id, "10")
    data.category_id = uuid4()
    with pytest.raises(ValidationError):
        ledger.transactions.create(data)

    data.category_id = None
    with pytest.raises(ValidationError):
        ledger.transactions.create(data)

    assert ledger.transactions.list_all() == []
    assert ledger.transactions.get_account_balance(account.id) == Decimal("0")


def test_unknown_ids_raise_not_found():
    ledger, _ = make_ledger()

    with pytest.raises(NotFoundError):
        ledger.transactions.delete(uuid4())
    with pytest.raises(NotFoundError):
        ledger.transactions.get_account_balance(uuid4())


def test_failed_write_rolls_back_transaction_and_balance():
    backend = FlakyKeyValueStore()
    ledger, _ = make_ledger(backend)
    account = ledger.accounts.create(AccountIn(name="Checking", opening_balance=Decimal("100")))

    backend.fail = True
    with pytest.raises(PersistenceError):
        ledger.transactions.create(expense(ledger, account.id, "40"))

    assert ledger.transactions.list_all() == []
    assert ledger.transactions.get_account_balance(account.id) == Decimal("100")

    backend.fail = False
    ledger.transactions.create(expense(ledger, account.id, "40"))
    assert ledger.transactions.get_account_balance(account.id) == Decimal("60")


def test_account_in_use_cannot_be_deleted():
    ledger, _ = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))
    txn = ledger.transactions.create(expense(ledger, account.id, "5"))

    with pytest.raises(ValidationError):
        ledger.accounts.delete(account.id)

    ledger.transactions.delete(txn.id)
    ledger.accounts.delete(account.id)
    assert ledger.accounts.list_all() == []


def test_opening_balance_change_shifts_cached_balance():
    ledger, _ = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking", opening_balance=Decimal("10")))
    ledger.transactions.create(expense(ledger, account.id, "4"))

    ledger.accounts.update(account.id, AccountIn(name="Main", opening_balance=Decimal("25")))

    assert ledger.transactions.get_account_balance(account.id) == Decimal("21")
    assert_consistent(ledger)


def test_rebuild_balances_repairs_drift():
    ledger, _ = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))
    ledger.transactions.create(income(ledger, account.id, "12"))
    ledger.store.accounts[0].balance = Decimal("999")

    assert ledger.transactions.rebuild_balances() == 1
    assert ledger.transactions.get_account_balance(account.id) == Decimal("12")


def test_mutations_publish_change_events():
    ledger, _ = make_ledger()
    received = []
    ledger.store.events.subscribe("accounts_changed", received.append)
    ledger.store.events.subscribe("transactions_changed", received.append)

    account = ledger.accounts.create(AccountIn(name="Checking"))
    ledger.transactions.create(expense(ledger, account.id, "1"))

    assert [event.name for event in received] == [
        "accounts_changed",
        "accounts_changed",
        "transactions_changed",
    ]


def test_offset_dates_are_stored_as_local_time():
    ledger, _ = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))
    data = TransactionIn.model_validate(
        {
            "amount": "15",
            "type": "income",
            "categoryId": str(category_id(ledger, "salary")),
            "accountId": str(account.id),
            "date": "2024-03-01T09:00:00Z",
        }
    )

    txn = ledger.transactions.create(data)

    assert txn.date.tzinfo is None
    assert txn.date.date() == date(2024, 3, 1)
    assert ledger.transactions.get_account_balance(account.id) == Decimal("15")
    assert ledger.engine.run_pass().errors == []
