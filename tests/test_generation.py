from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Optional
from uuid import uuid4

from clock import FixedClock
from config import Settings
from models import RecurrenceFrequency, TransactionType
from recurrence import add_months
from schemas import AccountIn, RecurrenceRule, RecurringTemplateIn, TransactionIn
from services import Ledger
from storage import MemoryKeyValueStore
from store import DataStore

# A Monday.
T = datetime(2024, 1, 1, 9, 0)


def make_ledger(now: datetime = T) -> tuple[Ledger, FixedClock]:
    settings = Settings(
        data_dir=Path("."),
        database_url="sqlite:///:memory:",
        timezone="UTC",
        lookahead_months=3,
        exclude_future_from_balance=True,
        scheduler_interval_minutes=60,
        app_version="test",
    )
    clock = FixedClock(now)
    ledger = Ledger(DataStore(MemoryKeyValueStore()), clock=clock, settings=settings)
    ledger.store.load()
    return ledger, clock


def food(ledger: Ledger):
    return next(c.id for c in ledger.categories.list_all() if c.name == "food")


def template_in(
    ledger: Ledger,
    account_id,
    rule: RecurrenceRule,
    next_occurrence: datetime,
    amount: str = "50",
) -> RecurringTemplateIn:
    return RecurringTemplateIn(
        amount=Decimal(amount),
        type=TransactionType.expense,
        category_id=food(ledger),
        account_id=account_id,
        rule=rule,
        next_occurrence=next_occurrence,
    )


def recurring_expense(
    ledger: Ledger, account_id, rule: RecurrenceRule, when: datetime = T
) -> TransactionIn:
    return TransactionIn(
        amount=Decimal("50"),
        type=TransactionType.expense,
        category_id=food(ledger),
        account_id=account_id,
        date=when,
        notes="Gym",
        recurrence=rule,
    )


def weekly(end_date: Optional[date] = None) -> RecurrenceRule:
    return RecurrenceRule(frequency=RecurrenceFrequency.weekly, end_date=end_date)


def test_catch_up_generates_missed_weekly_occurrences():
    ledger, clock = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))
    template = ledger.templates.create(
        template_in(ledger, account.id, weekly(), T + timedelta(days=7))
    )

    clock.advance(timedelta(days=22))
    result = ledger.engine.run_pass()

    assert result.caught_up == 3
    assert result.errors == []
    assert ledger.templates.get(template.id).next_occurrence == T + timedelta(days=28)
    assert ledger.transactions.get_account_balance(account.id) == Decimal("-150")
    # Jan 29 through Apr 22, weekly.
    assert result.looked_ahead == 13


def test_second_pass_generates_nothing():
    ledger, clock = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))
    ledger.templates.create(template_in(ledger, account.id, weekly(), T + timedelta(days=7)))
    clock.advance(timedelta(days=22))

    first = ledger.engine.run_pass()
    count = len(ledger.transactions.list_all())
    second = ledger.engine.run_pass()

    assert first.generated > 0
    assert second.generated == 0
    assert second.settled == 0
    assert len(ledger.transactions.list_all()) == count


def test_create_recurring_fills_window_and_later_passes_do_not_duplicate():
    ledger, clock = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))

    txn, template = ledger.engine.create_recurring(
        recurring_expense(ledger, account.id, weekly())
    )

    group = ledger.transactions.for_group(template.recurring_group_id)
    assert txn.is_recurring
    assert template.next_occurrence == T + timedelta(days=7)
    assert len(group) == 14
    assert ledger.transactions.get_account_balance(account.id) == Decimal("-50")

    clock.advance(timedelta(days=22))
    result = ledger.engine.run_pass()

    assert result.settled == 3
    assert result.caught_up == 0
    assert result.looked_ahead == 3
    assert ledger.templates.get(template.id).next_occurrence == T + timedelta(days=28)
    days = [t.date.date() for t in ledger.transactions.for_group(template.recurring_group_id)]
    assert len(days) == len(set(days)) == 17
    assert ledger.transactions.get_account_balance(account.id) == Decimal("-200")


def test_generated_dates_respect_window_ceiling_and_end_date():
    ledger, clock = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))
    end = (T + timedelta(days=5)).date()
    rule = RecurrenceRule(frequency=RecurrenceFrequency.daily, end_date=end)
    template = ledger.templates.create(template_in(ledger, account.id, rule, T))

    result = ledger.engine.run_pass()

    dates = [t.date for t in ledger.transactions.for_group(template.recurring_group_id)]
    assert result.caught_up == 1
    assert result.looked_ahead == 5
    assert max(dates).date() == end

    clock.advance(timedelta(days=10))
    later = ledger.engine.run_pass()

    stored = ledger.templates.get(template.id)
    assert later.generated == 0
    assert stored.next_occurrence == T + timedelta(days=5)
    assert stored.is_active


def test_monthly_window_clamps_to_month_end():
    start = datetime(2024, 1, 31, 8, 0)
    ledger, _ = make_ledger(start)
    account = ledger.accounts.create(AccountIn(name="Checking"))
    rule = RecurrenceRule(frequency=RecurrenceFrequency.monthly, day_of_month=31)
    template = ledger.templates.create(template_in(ledger, account.id, rule, start))

    ledger.engine.run_pass()

    ceiling = add_months(start, 3)
    dates = sorted(t.date for t in ledger.transactions.for_group(template.recurring_group_id))
    assert [d.date() for d in dates] == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
    ]
    assert all(d <= ceiling for d in dates)


def test_disable_series_drops_future_occurrences_and_keeps_history():
    ledger, clock = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))
    rule = weekly(end_date=(T + timedelta(days=28)).date())
    txn, template = ledger.engine.create_recurring(recurring_expense(ledger, account.id, rule))
    assert len(ledger.transactions.for_group(template.recurring_group_id)) == 5

    clock.advance(timedelta(days=15))
    ledger.engine.run_pass()
    removed = ledger.engine.disable_series(template.recurring_group_id)

    remaining = ledger.transactions.for_group(template.recurring_group_id)
    assert removed == 2
    assert sorted(t.date for t in remaining) == [
        T,
        T + timedelta(days=7),
        T + timedelta(days=14),
    ]
    assert not ledger.transactions.get(txn.id).is_recurring
    assert not ledger.templates.get(template.id).is_active
    assert ledger.transactions.get_account_balance(account.id) == Decimal("-150")

    clock.advance(timedelta(days=30))
    assert ledger.engine.run_pass().generated == 0


def test_failing_template_does_not_stop_the_pass():
    ledger, clock = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))
    broken = ledger.templates.create(template_in(ledger, account.id, weekly(), T))
    healthy = ledger.templates.create(template_in(ledger, account.id, weekly(), T))
    ledger.store.templates[0].account_id = uuid4()

    result = ledger.engine.run_pass()

    assert [failure.template_id for failure in result.errors] == [broken.id]
    assert ledger.transactions.for_group(broken.recurring_group_id) == []
    assert len(ledger.transactions.for_group(healthy.recurring_group_id)) == 14


def test_template_update_replaces_pending_occurrences():
    ledger, _ = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))
    _, template = ledger.engine.create_recurring(recurring_expense(ledger, account.id, weekly()))

    ledger.templates.update(
        template.id,
        template_in(ledger, account.id, weekly(), T + timedelta(days=7), amount="80"),
    )
    assert len(ledger.transactions.for_group(template.recurring_group_id)) == 1

    ledger.engine.run_pass()

    future = [t for t in ledger.transactions.for_group(template.recurring_group_id) if t.date > T]
    assert len(future) == 13
    assert {t.amount for t in future} == {Decimal("80")}


def test_inactive_template_is_skipped():
    ledger, clock = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))
    template = ledger.templates.create(template_in(ledger, account.id, weekly(), T))
    ledger.templates.toggle_active(template.id)

    clock.advance(timedelta(days=30))
    result = ledger.engine.run_pass()

    assert result.generated == 0
    assert ledger.templates.get(template.id).next_occurrence == T


def test_statistics_use_monthly_equivalents():
    ledger, _ = make_ledger()
    account = ledger.accounts.create(AccountIn(name="Checking"))
    ledger.templates.create(template_in(ledger, account.id, weekly(), T))
    salary = next(c.id for c in ledger.categories.list_all() if c.name == "salary")
    ledger.templates.create(
        RecurringTemplateIn(
            amount=Decimal("2000"),
            type=TransactionType.income,
            category_id=salary,
            account_id=account.id,
            rule=RecurrenceRule(frequency=RecurrenceFrequency.monthly),
            next_occurrence=T,
        )
    )

    stats = ledger.templates.get_statistics()

    assert stats["total_monthly_expenses"] == Decimal("217.50")
    assert stats["total_monthly_income"] == Decimal("2000.00")
    assert stats["rule_counts"] == {"income": 1, "expense": 1, "total": 2}
