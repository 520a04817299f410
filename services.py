from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, TypeVar
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from clock import Clock, SystemClock
from config import Settings, get_settings
from csv_utils import export_transactions
from errors import NotFoundError, RuleArithmeticError, ValidationError
from events import DATA_RESTORED
from models import RecurrenceFrequency, TransactionType
from periods import Period, budget_period_bounds
from recurrence import GenerationResult, RecurringEngine, calculate_next_date
from schemas import (
    Account,
    AccountIn,
    Budget,
    BudgetIn,
    Category,
    CategoryIn,
    FullBackup,
    Goal,
    GoalIn,
    Preferences,
    PreferencesIn,
    RecurringTemplate,
    RecurringTemplateIn,
    Transaction,
    TransactionIn,
)
from store import (
    ACCOUNTS,
    BUDGETS,
    CATEGORIES,
    CURRENCY,
    GOALS,
    LANGUAGE,
    TEMPLATES,
    THEME,
    TRANSACTIONS,
    DataStore,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")

T = TypeVar("T", Account, Transaction, Category, Budget, Goal, RecurringTemplate)


def _find(items: Iterable[T], entity_id: UUID, kind: str) -> T:
    for item in items:
        if item.id == entity_id:
            return item
    raise NotFoundError(kind, entity_id)


def balance_deltas(txn: Transaction) -> list[tuple[UUID, Decimal]]:
    """Signed amount each account moves by when ``txn`` is applied."""
    if txn.type == TransactionType.income:
        return [(txn.account_id, txn.amount)]
    if txn.type == TransactionType.expense:
        return [(txn.account_id, -txn.amount)]
    return [(txn.account_id, -txn.amount), (txn.to_account_id, txn.amount)]


class AccountService:
    def __init__(self, store: DataStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock

    def list_all(self) -> list[Account]:
        return list(self.store.accounts)

    def get(self, account_id: UUID) -> Account:
        return _find(self.store.accounts, account_id, "Account")

    def create(self, data: AccountIn) -> Account:
        now = self.clock.now()
        account = Account(
            name=data.name,
            type=data.type,
            currency=data.currency,
            opening_balance=data.opening_balance,
            balance=data.opening_balance,
            created_at=now,
            updated_at=now,
        )
        with self.store.mutation(ACCOUNTS):
            self.store.accounts.append(account)
        return account

    def update(self, account_id: UUID, data: AccountIn) -> Account:
        with self.store.mutation(ACCOUNTS):
            account = self.get(account_id)
            account.balance += data.opening_balance - account.opening_balance
            account.name = data.name
            account.type = data.type
            account.currency = data.currency
            account.opening_balance = data.opening_balance
            account.updated_at = self.clock.now()
        return account

    def delete(self, account_id: UUID) -> None:
        with self.store.mutation(ACCOUNTS):
            account = self.get(account_id)
            in_use = any(
                account.id in (txn.account_id, txn.to_account_id)
                for txn in self.store.transactions
            ) or any(
                account.id in (tmpl.account_id, tmpl.to_account_id)
                for tmpl in self.store.templates
            )
            if in_use:
                raise ValidationError("Account has transactions or recurring templates")
            self.store.accounts.remove(account)


class CategoryService:
    def __init__(self, store: DataStore) -> None:
        self.store = store

    def list_all(self) -> list[Category]:
        return list(self.store.categories)

    def get(self, category_id: UUID) -> Category:
        return _find(self.store.categories, category_id, "Category")

    def fallback(self) -> Category:
        for category in self.store.categories:
            if category.is_default and category.name == "other":
                return category
        if not self.store.categories:
            raise ValidationError("No categories available")
        return self.store.categories[-1]

    def create(self, data: CategoryIn) -> Category:
        category = Category(name=data.name, icon=data.icon, color_hex=data.color_hex)
        with self.store.mutation(CATEGORIES):
            self.store.categories.append(category)
        return category

    def update(self, category_id: UUID, data: CategoryIn) -> Category:
        with self.store.mutation(CATEGORIES):
            category = self.get(category_id)
            category.name = data.name
            category.icon = data.icon
            category.color_hex = data.color_hex
        return category

    def delete(self, category_id: UUID) -> None:
        with self.store.mutation(CATEGORIES):
            category = self.get(category_id)
            if category.is_default:
                raise ValidationError("Default categories cannot be deleted")
            referenced = (
                any(t.category_id == category_id for t in self.store.transactions)
                or any(t.category_id == category_id for t in self.store.templates)
                or any(b.category_id == category_id for b in self.store.budgets)
            )
            if referenced:
                raise ValidationError("Category is in use")
            self.store.categories.remove(category)


class TransactionService:
    """The ledger: transactions and the account balances they move.

    A transaction's delta is applied to its account(s) only once its date is
    no longer in the future (unless ``exclude_future`` is off). The
    ``balance_applied`` flag records that, so reverting is exact.
    """

    def __init__(
        self,
        store: DataStore,
        clock: Clock,
        categories: CategoryService,
        *,
        exclude_future: bool = True,
    ) -> None:
        self.store = store
        self.clock = clock
        self.categories = categories
        self.exclude_future = exclude_future

    def validate_references(
        self,
        txn_type: TransactionType,
        category_id: Optional[UUID],
        account_id: UUID,
        to_account_id: Optional[UUID],
    ) -> UUID:
        """Check every referenced entity exists; returns the category id to store."""
        account_ids = {account.id for account in self.store.accounts}
        if account_id not in account_ids:
            raise ValidationError(f"Account not found: {account_id}")
        if to_account_id is not None and to_account_id not in account_ids:
            raise ValidationError(f"Destination account not found: {to_account_id}")
        if category_id is None:
            if txn_type != TransactionType.transfer:
                raise ValidationError("Income and expense transactions need a category")
            return self.categories.fallback().id
        if not any(c.id == category_id for c in self.store.categories):
            raise ValidationError(f"Category not found: {category_id}")
        return category_id

    def is_due(self, txn: Transaction, now: datetime) -> bool:
        return not self.exclude_future or txn.date <= now

    def _shift(self, txn: Transaction, sign: int, now: datetime) -> None:
        for account_id, delta in balance_deltas(txn):
            account = _find(self.store.accounts, account_id, "Account")
            account.balance += sign * delta
            account.updated_at = now

    def _apply(self, txn: Transaction, now: datetime) -> None:
        if txn.balance_applied or not self.is_due(txn, now):
            return
        self._shift(txn, 1, now)
        txn.balance_applied = True

    def _revert(self, txn: Transaction, now: datetime) -> None:
        if not txn.balance_applied:
            return
        self._shift(txn, -1, now)
        txn.balance_applied = False

    def add(self, txn: Transaction, *, now: Optional[datetime] = None) -> Transaction:
        """Append a fully built transaction and apply its delta if it is due."""
        now = now or self.clock.now()
        category_id = self.validate_references(
            txn.type, txn.category_id, txn.account_id, txn.to_account_id
        )
        if any(existing.id == txn.id for existing in self.store.transactions):
            raise ValidationError(f"Duplicate transaction id: {txn.id}")
        txn.category_id = category_id
        txn.balance_applied = False
        with self.store.mutation(TRANSACTIONS, ACCOUNTS):
            self.store.transactions.append(txn)
            self._apply(txn, now)
        return txn

    def create(
        self,
        data: TransactionIn,
        *,
        now: Optional[datetime] = None,
        recurring_group_id: Optional[UUID] = None,
    ) -> Transaction:
        if data.recurrence is not None and recurring_group_id is None:
            raise ValidationError(
                "Recurring transactions are created through the recurring engine"
            )
        now = now or self.clock.now()
        category_id = self.validate_references(
            data.type, data.category_id, data.account_id, data.to_account_id
        )
        txn = Transaction(
            amount=data.amount,
            type=data.type,
            category_id=category_id,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            date=data.date,
            notes=data.notes,
            location=data.location,
            is_recurring=recurring_group_id is not None,
            recurrence_rule=data.recurrence if recurring_group_id else None,
            recurring_group_id=recurring_group_id,
            created_at=now,
            updated_at=now,
        )
        return self.add(txn, now=now)

    def get(self, transaction_id: UUID) -> Transaction:
        return _find(self.store.transactions, transaction_id, "Transaction")

    def update(
        self,
        transaction_id: UUID,
        data: TransactionIn,
        *,
        now: Optional[datetime] = None,
    ) -> Transaction:
        now = now or self.clock.now()
        old = self.get(transaction_id)
        category_id = self.validate_references(
            data.type, data.category_id, data.account_id, data.to_account_id
        )
        try:
            new = Transaction.model_validate(
                {
                    **old.model_dump(),
                    "amount": data.amount,
                    "type": data.type,
                    "category_id": category_id,
                    "account_id": data.account_id,
                    "to_account_id": data.to_account_id,
                    "date": data.date,
                    "notes": data.notes,
                    "location": data.location,
                    "balance_applied": False,
                    "updated_at": now,
                }
            )
        except PydanticValidationError as exc:
            raise ValidationError(str(exc)) from exc
        with self.store.mutation(TRANSACTIONS, ACCOUNTS):
            self._revert(old, now)
            index = self.store.transactions.index(old)
            self.store.transactions[index] = new
            self._apply(new, now)
        return new

    def delete(self, transaction_id: UUID, *, now: Optional[datetime] = None) -> None:
        now = now or self.clock.now()
        with self.store.mutation(TRANSACTIONS, ACCOUNTS):
            txn = self.get(transaction_id)
            self._revert(txn, now)
            self.store.transactions.remove(txn)

    def settle_due(self, *, now: Optional[datetime] = None) -> int:
        """Apply pending transactions whose date has been reached."""
        now = now or self.clock.now()
        pending = [
            txn
            for txn in self.store.transactions
            if not txn.balance_applied and self.is_due(txn, now)
        ]
        if not pending:
            return 0
        with self.store.mutation(TRANSACTIONS, ACCOUNTS):
            for txn in pending:
                self._apply(txn, now)
        logger.info(f"transactions_settled: count={len(pending)}")
        return len(pending)

    def mark_non_recurring(self, transaction_id: UUID) -> Transaction:
        with self.store.mutation(TRANSACTIONS):
            txn = self.get(transaction_id)
            txn.is_recurring = False
            txn.recurrence_rule = None
            txn.updated_at = self.clock.now()
        return txn

    def delete_group_after(self, group_id: UUID, cutoff: datetime) -> int:
        doomed = [txn for txn in self.for_group(group_id) if txn.date > cutoff]
        if not doomed:
            return 0
        with self.store.mutation(TRANSACTIONS, ACCOUNTS):
            for txn in doomed:
                self.delete(txn.id)
        return len(doomed)

    def list_all(self) -> list[Transaction]:
        return sorted(self.store.transactions, key=lambda t: t.date, reverse=True)

    def for_account(self, account_id: UUID) -> list[Transaction]:
        return [
            txn
            for txn in self.list_all()
            if account_id in (txn.account_id, txn.to_account_id)
        ]

    def for_period(
        self, start: datetime, end: datetime, *, now: Optional[datetime] = None
    ) -> list[Transaction]:
        """Transactions in ``[start, end)``, excluding anything dated after now."""
        now = now or self.clock.now()
        return [
            txn
            for txn in self.list_all()
            if start <= txn.date < end and txn.date <= now
        ]

    def upcoming(self, limit: int = 20, *, now: Optional[datetime] = None) -> list[Transaction]:
        now = now or self.clock.now()
        future = sorted(
            (txn for txn in self.store.transactions if txn.date > now),
            key=lambda t: t.date,
        )
        return future[:limit]

    def for_group(self, group_id: UUID) -> list[Transaction]:
        return [t for t in self.store.transactions if t.recurring_group_id == group_id]

    def exists_on_day(self, group_id: UUID, day: date) -> bool:
        return any(
            txn.recurring_group_id == group_id and txn.date.date() == day
            for txn in self.store.transactions
        )

    def get_account_balance(self, account_id: UUID) -> Decimal:
        return _find(self.store.accounts, account_id, "Account").balance

    def recompute_balance(self, account_id: UUID) -> Decimal:
        account = _find(self.store.accounts, account_id, "Account")
        total = account.opening_balance
        for txn in self.store.transactions:
            if not txn.balance_applied:
                continue
            for target, delta in balance_deltas(txn):
                if target == account_id:
                    total += delta
        return total

    def rebuild_balances(self) -> int:
        """Reset every cached balance to its replayed value; returns accounts repaired."""
        drifted = {
            account.id: expected
            for account in self.store.accounts
            if (expected := self.recompute_balance(account.id)) != account.balance
        }
        if not drifted:
            return 0
        now = self.clock.now()
        with self.store.mutation(ACCOUNTS):
            for account in self.store.accounts:
                if account.id in drifted:
                    logger.warning(
                        f"balance_drift: account={account.id} "
                        f"cached={account.balance} expected={drifted[account.id]}"
                    )
                    account.balance = drifted[account.id]
                    account.updated_at = now
        return len(drifted)


class RecurringTemplateService:
    def __init__(
        self,
        store: DataStore,
        clock: Clock,
        transactions: TransactionService,
    ) -> None:
        self.store = store
        self.clock = clock
        self.transactions = transactions

    def get(self, template_id: UUID) -> RecurringTemplate:
        return _find(self.store.templates, template_id, "Recurring template")

    def list_all(self) -> list[RecurringTemplate]:
        return sorted(self.store.templates, key=lambda t: t.next_occurrence)

    def find_by_group(self, group_id: UUID) -> Optional[RecurringTemplate]:
        for template in self.store.templates:
            if template.recurring_group_id == group_id:
                return template
        return None

    def create(self, data: RecurringTemplateIn) -> RecurringTemplate:
        category_id = self.transactions.validate_references(
            data.type, data.category_id, data.account_id, data.to_account_id
        )
        now = self.clock.now()
        template = RecurringTemplate(
            amount=data.amount,
            type=data.type,
            category_id=category_id,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            notes=data.notes,
            rule=data.rule,
            next_occurrence=data.next_occurrence,
            is_active=data.is_active,
            created_at=now,
            updated_at=now,
        )
        with self.store.mutation(TEMPLATES):
            self.store.templates.append(template)
        return template

    def create_from_transaction(
        self, txn: Transaction, *, next_occurrence: datetime
    ) -> RecurringTemplate:
        if txn.recurrence_rule is None or txn.recurring_group_id is None:
            raise ValidationError("Transaction is not part of a recurring series")
        now = self.clock.now()
        template = RecurringTemplate(
            recurring_group_id=txn.recurring_group_id,
            amount=txn.amount,
            type=txn.type,
            category_id=txn.category_id,
            account_id=txn.account_id,
            to_account_id=txn.to_account_id,
            notes=txn.notes,
            rule=txn.recurrence_rule,
            next_occurrence=next_occurrence,
            created_at=now,
            updated_at=now,
        )
        with self.store.mutation(TEMPLATES):
            self.store.templates.append(template)
        return template

    def update(
        self,
        template_id: UUID,
        data: RecurringTemplateIn,
        *,
        now: Optional[datetime] = None,
    ) -> RecurringTemplate:
        """Edit a template; pending occurrences are dropped so the next pass rebuilds them."""
        now = now or self.clock.now()
        category_id = self.transactions.validate_references(
            data.type, data.category_id, data.account_id, data.to_account_id
        )
        with self.store.mutation(TEMPLATES, TRANSACTIONS, ACCOUNTS):
            template = self.get(template_id)
            template.amount = data.amount
            template.type = data.type
            template.category_id = category_id
            template.account_id = data.account_id
            template.to_account_id = data.to_account_id
            template.notes = data.notes
            template.rule = data.rule
            template.next_occurrence = data.next_occurrence
            template.is_active = data.is_active
            template.updated_at = now
            self.transactions.delete_group_after(template.recurring_group_id, now)
        return template

    def delete(self, template_id: UUID, *, now: Optional[datetime] = None) -> None:
        now = now or self.clock.now()
        with self.store.mutation(TEMPLATES, TRANSACTIONS, ACCOUNTS):
            template = self.get(template_id)
            self.transactions.delete_group_after(template.recurring_group_id, now)
            self.store.templates.remove(template)

    def due_templates(self, as_of: Optional[datetime] = None) -> list[RecurringTemplate]:
        as_of = as_of or self.clock.now()
        return [
            template
            for template in self.list_all()
            if template.is_active and template.next_occurrence <= as_of
        ]

    def advance(self, template_id: UUID) -> RecurringTemplate:
        with self.store.mutation(TEMPLATES):
            template = self.get(template_id)
            following = calculate_next_date(template.rule, template.next_occurrence)
            if following <= template.next_occurrence:
                raise RuleArithmeticError(f"Template {template_id} would regress")
            template.next_occurrence = following
            template.updated_at = self.clock.now()
        return template

    def toggle_active(self, template_id: UUID) -> RecurringTemplate:
        with self.store.mutation(TEMPLATES):
            template = self.get(template_id)
            template.is_active = not template.is_active
            template.updated_at = self.clock.now()
        return template

    def deactivate(self, template_id: UUID) -> RecurringTemplate:
        with self.store.mutation(TEMPLATES):
            template = self.get(template_id)
            template.is_active = False
            template.updated_at = self.clock.now()
        return template

    def get_statistics(self) -> dict[str, object]:
        names = {c.id: c.name for c in self.store.categories}

        def monthly_amount(template: RecurringTemplate) -> Decimal:
            count = Decimal(template.rule.interval)
            frequency = template.rule.frequency
            if frequency == RecurrenceFrequency.daily:
                monthly = template.amount * Decimal("30.44") / count
            elif frequency == RecurrenceFrequency.weekly:
                monthly = template.amount * Decimal("4.35") / count
            elif frequency == RecurrenceFrequency.monthly:
                monthly = template.amount / count
            else:
                monthly = template.amount / (12 * count)
            return monthly.quantize(CENT, rounding=ROUND_HALF_UP)

        total_income = ZERO
        total_expenses = ZERO
        income_by_category: dict[str, Decimal] = {}
        expense_by_category: dict[str, Decimal] = {}
        income_count = 0
        expense_count = 0

        for template in self.store.templates:
            if not template.is_active or template.type == TransactionType.transfer:
                continue
            monthly = monthly_amount(template)
            category_name = names.get(template.category_id, "other")
            if template.type == TransactionType.income:
                total_income += monthly
                income_count += 1
                income_by_category[category_name] = (
                    income_by_category.get(category_name, ZERO) + monthly
                )
            else:
                total_expenses += monthly
                expense_count += 1
                expense_by_category[category_name] = (
                    expense_by_category.get(category_name, ZERO) + monthly
                )

        coverage_ratio = (
            float(total_income / total_expenses * 100) if total_expenses > 0 else 100.0
        )

        def build_breakdown(by_category: dict[str, Decimal], total: Decimal) -> list[dict]:
            if total == 0:
                return []
            items = sorted(by_category.items(), key=lambda x: x[1], reverse=True)
            return [
                {"name": name, "amount": amount, "percent": float(amount / total * 100)}
                for name, amount in items
            ]

        return {
            "total_monthly_income": total_income,
            "total_monthly_expenses": total_expenses,
            "net_monthly": total_income - total_expenses,
            "coverage_ratio": coverage_ratio,
            "expense_breakdown": build_breakdown(expense_by_category, total_expenses),
            "income_breakdown": build_breakdown(income_by_category, total_income),
            "rule_counts": {
                "income": income_count,
                "expense": expense_count,
                "total": income_count + expense_count,
            },
        }


@dataclass(frozen=True)
class BudgetProgress:
    spent: Decimal
    remaining: Decimal
    # Unbounded above 1.0; display code clamps.
    percentage: float


class MetricsService:
    def __init__(
        self, store: DataStore, clock: Clock, transactions: TransactionService
    ) -> None:
        self.store = store
        self.clock = clock
        self.transactions = transactions

    def _sum(self, txns: Iterable[Transaction], txn_type: TransactionType) -> Decimal:
        return sum((t.amount for t in txns if t.type == txn_type), ZERO)

    def income_for_period(self, start: datetime, end: datetime) -> Decimal:
        return self._sum(self.transactions.for_period(start, end), TransactionType.income)

    def expenses_for_period(self, start: datetime, end: datetime) -> Decimal:
        return self._sum(self.transactions.for_period(start, end), TransactionType.expense)

    def expenses_by_category(self, start: datetime, end: datetime) -> dict[UUID, Decimal]:
        result: dict[UUID, Decimal] = {}
        for txn in self.transactions.for_period(start, end):
            if txn.type != TransactionType.expense:
                continue
            result[txn.category_id] = result.get(txn.category_id, ZERO) + txn.amount
        return result

    def budget_progress(
        self, budget: Budget, as_of: Optional[datetime] = None
    ) -> BudgetProgress:
        as_of = as_of or self.clock.now()
        start, end = budget_period_bounds(budget.period, as_of).window()
        if budget.category_id is not None:
            spent = self.expenses_by_category(start, end).get(budget.category_id, ZERO)
        else:
            spent = self.expenses_for_period(start, end)
        return BudgetProgress(
            spent=spent,
            remaining=budget.amount - spent,
            percentage=float(spent / budget.amount),
        )

    def total_balance(self, now: Optional[datetime] = None) -> Decimal:
        """Net worth replayed from the transactions dated up to now.

        Opening balances are the starting point; cached account balances are
        not consulted.
        """
        now = now or self.clock.now()
        balances = {account.id: account.opening_balance for account in self.store.accounts}
        for txn in self.store.transactions:
            if txn.date > now:
                continue
            for account_id, delta in balance_deltas(txn):
                balances[account_id] = balances.get(account_id, ZERO) + delta
        return sum(balances.values(), ZERO)

    def kpis(self, period: Period) -> dict[str, Decimal]:
        start, end = period.window()
        txns = self.transactions.for_period(start, end)
        income = self._sum(txns, TransactionType.income)
        expenses = self._sum(txns, TransactionType.expense)
        return {
            "income": income,
            "expenses": expenses,
            "net": income - expenses,
            "balance": self.total_balance(),
        }


class BudgetService:
    def __init__(
        self,
        store: DataStore,
        clock: Clock,
        categories: CategoryService,
        metrics: MetricsService,
    ) -> None:
        self.store = store
        self.clock = clock
        self.categories = categories
        self.metrics = metrics

    def _check_category(self, category_id: Optional[UUID]) -> None:
        if category_id is not None and not any(
            c.id == category_id for c in self.store.categories
        ):
            raise ValidationError(f"Category not found: {category_id}")

    def list_all(self) -> list[Budget]:
        return list(self.store.budgets)

    def get(self, budget_id: UUID) -> Budget:
        return _find(self.store.budgets, budget_id, "Budget")

    def create(self, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        now = self.clock.now()
        budget = Budget(
            name=data.name,
            amount=data.amount,
            period=data.period,
            category_id=data.category_id,
            start_date=data.start_date,
            created_at=now,
            updated_at=now,
        )
        with self.store.mutation(BUDGETS):
            self.store.budgets.append(budget)
        return budget

    def update(self, budget_id: UUID, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        with self.store.mutation(BUDGETS):
            budget = self.get(budget_id)
            budget.name = data.name
            budget.amount = data.amount
            budget.period = data.period
            budget.category_id = data.category_id
            budget.start_date = data.start_date
            budget.updated_at = self.clock.now()
        return budget

    def delete(self, budget_id: UUID) -> None:
        with self.store.mutation(BUDGETS):
            self.store.budgets.remove(self.get(budget_id))

    def active_budgets(self, as_of: Optional[datetime] = None) -> list[Budget]:
        as_of = as_of or self.clock.now()
        return [budget for budget in self.store.budgets if budget.is_active(as_of)]

    def progress_all(
        self, as_of: Optional[datetime] = None
    ) -> list[tuple[Budget, BudgetProgress]]:
        as_of = as_of or self.clock.now()
        return [
            (budget, self.metrics.budget_progress(budget, as_of))
            for budget in self.active_budgets(as_of)
        ]


class GoalService:
    def __init__(self, store: DataStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock

    def list_all(self) -> list[Goal]:
        return list(self.store.goals)

    def get(self, goal_id: UUID) -> Goal:
        return _find(self.store.goals, goal_id, "Goal")

    def create(self, data: GoalIn) -> Goal:
        now = self.clock.now()
        goal = Goal(
            name=data.name,
            icon=data.icon,
            color_hex=data.color_hex,
            target_amount=data.target_amount,
            current_amount=data.current_amount,
            created_at=now,
            updated_at=now,
        )
        with self.store.mutation(GOALS):
            self.store.goals.append(goal)
        return goal

    def update(self, goal_id: UUID, data: GoalIn) -> Goal:
        # The accumulated amount only moves through deposit().
        with self.store.mutation(GOALS):
            goal = self.get(goal_id)
            goal.name = data.name
            goal.icon = data.icon
            goal.color_hex = data.color_hex
            goal.target_amount = data.target_amount
            goal.updated_at = self.clock.now()
        return goal

    def deposit(self, goal_id: UUID, amount: Decimal) -> Goal:
        if amount <= 0:
            raise ValidationError("Deposit must be positive")
        with self.store.mutation(GOALS):
            goal = self.get(goal_id)
            goal.current_amount += amount
            goal.updated_at = self.clock.now()
        return goal

    def delete(self, goal_id: UUID) -> None:
        with self.store.mutation(GOALS):
            self.store.goals.remove(self.get(goal_id))


class PreferencesService:
    def __init__(self, store: DataStore) -> None:
        self.store = store

    def get(self) -> Preferences:
        return self.store.preferences.model_copy()

    def update(self, data: PreferencesIn) -> Preferences:
        changes = {
            key: value
            for key, value in data.model_dump(exclude_none=True).items()
        }
        if changes:
            with self.store.mutation(*changes):
                for key, value in changes.items():
                    setattr(self.store.preferences, key, value)
        return self.get()


class CSVService:
    def __init__(self, store: DataStore) -> None:
        self.store = store

    def export(self) -> str:
        categories = {c.id: c.name for c in self.store.categories}
        accounts = {a.id: a.name for a in self.store.accounts}
        return export_transactions(self.store.transactions, categories, accounts)


class BackupService:
    def __init__(
        self,
        store: DataStore,
        clock: Clock,
        transactions: TransactionService,
        *,
        app_version: str,
    ) -> None:
        self.store = store
        self.clock = clock
        self.transactions = transactions
        self.app_version = app_version

    def export_json(self) -> str:
        prefs = self.store.preferences
        backup = FullBackup(
            accounts=self.store.accounts,
            transactions=self.store.transactions,
            categories=self.store.categories,
            budgets=self.store.budgets,
            goals=self.store.goals,
            recurring_transactions=self.store.templates,
            theme=prefs.theme,
            currency=prefs.currency,
            language=prefs.language,
            backup_date=self.clock.now(),
            app_version=self.app_version,
        )
        return backup.model_dump_json(by_alias=True, indent=2)

    def _check_references(self, backup: FullBackup) -> None:
        account_ids = {account.id for account in backup.accounts}
        category_ids = {category.id for category in backup.categories}
        for kind, items in (
            ("Transaction", backup.transactions),
            ("Recurring template", backup.recurring_transactions),
        ):
            for item in items:
                for account_id in (item.account_id, item.to_account_id):
                    if account_id is not None and account_id not in account_ids:
                        raise ValidationError(
                            f"Invalid backup: {kind} {item.id} references unknown account {account_id}"
                        )
                if item.category_id not in category_ids:
                    raise ValidationError(
                        f"Invalid backup: {kind} {item.id} references unknown category {item.category_id}"
                    )
        for budget in backup.budgets:
            if budget.category_id is not None and budget.category_id not in category_ids:
                raise ValidationError(
                    f"Invalid backup: Budget {budget.id} references unknown category {budget.category_id}"
                )

    def import_json(self, payload: str | bytes) -> FullBackup:
        """Replace every collection with the backup's content; nothing is merged.

        Stored ``balanceApplied`` flags are not trusted: they are recomputed
        from each transaction's date before the balances are rebuilt.
        """
        try:
            backup = FullBackup.model_validate_json(payload)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid backup: {exc.error_count()} error(s)") from exc
        self._check_references(backup)
        now = self.clock.now()
        for txn in backup.transactions:
            txn.balance_applied = self.transactions.is_due(txn, now)
        self.store.replace_all(
            {
                ACCOUNTS: backup.accounts,
                TRANSACTIONS: backup.transactions,
                CATEGORIES: backup.categories,
                BUDGETS: backup.budgets,
                GOALS: backup.goals,
                TEMPLATES: backup.recurring_transactions,
                THEME: backup.theme,
                CURRENCY: backup.currency,
                LANGUAGE: backup.language,
            }
        )
        repaired = self.transactions.rebuild_balances()
        self.store.events.publish(DATA_RESTORED, {"backup_date": backup.backup_date})
        logger.info(
            f"backup_restored: transactions={len(backup.transactions)} "
            f"app_version={backup.app_version} balances_repaired={repaired}"
        )
        return backup


class Ledger:
    """Wires the services around one store; built once at process start."""

    def __init__(
        self,
        store: DataStore,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.store = store
        self.clock = clock or SystemClock(settings.timezone)
        self.accounts = AccountService(store, self.clock)
        self.categories = CategoryService(store)
        self.transactions = TransactionService(
            store,
            self.clock,
            self.categories,
            exclude_future=settings.exclude_future_from_balance,
        )
        self.templates = RecurringTemplateService(store, self.clock, self.transactions)
        self.metrics = MetricsService(store, self.clock, self.transactions)
        self.budgets = BudgetService(store, self.clock, self.categories, self.metrics)
        self.goals = GoalService(store, self.clock)
        self.preferences = PreferencesService(store)
        self.csv = CSVService(store)
        self.backup = BackupService(
            store, self.clock, self.transactions, app_version=settings.app_version
        )
        self.engine = RecurringEngine(
            self.transactions,
            self.templates,
            self.clock,
            lookahead_months=settings.lookahead_months,
        )

    def start(self) -> GenerationResult:
        self.store.load()
        repaired = self.transactions.rebuild_balances()
        if repaired:
            logger.warning(f"ledger_start: balances_repaired={repaired}")
        return self.engine.run_pass()
