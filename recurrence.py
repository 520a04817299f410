from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Optional, TypeVar
from uuid import UUID, uuid4

from errors import NotFoundError, RuleArithmeticError, ValidationError
from models import RecurrenceFrequency
from schemas import RecurrenceRule, RecurringTemplate, Transaction, TransactionIn
from store import ACCOUNTS, TEMPLATES, TRANSACTIONS

if TYPE_CHECKING:  # pragma: no cover
    from clock import Clock
    from services import RecurringTemplateService, TransactionService

logger = logging.getLogger(__name__)

D = TypeVar("D", date, datetime)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: D, months: int, *, desired_day: Optional[int] = None) -> D:
    """Shift ``base`` by whole months, clamping the day to the target month's length."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(desired_day or base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def calculate_next_date(rule: RecurrenceRule, from_date: datetime) -> datetime:
    """Next occurrence strictly after ``from_date``; the time of day is kept.

    ``end_date`` is not consulted here, the caller enforces it.
    """
    try:
        if rule.frequency == RecurrenceFrequency.daily:
            next_date = from_date + timedelta(days=rule.interval)
        elif rule.frequency == RecurrenceFrequency.weekly:
            next_date = from_date + timedelta(weeks=rule.interval)
            if rule.day_of_week is not None:
                next_date += timedelta(days=(rule.day_of_week - next_date.weekday()) % 7)
        elif rule.frequency == RecurrenceFrequency.monthly:
            next_date = add_months(
                from_date,
                rule.interval,
                desired_day=rule.day_of_month or from_date.day,
            )
        else:
            next_date = add_months(from_date, 12 * rule.interval)
    except (OverflowError, ValueError) as exc:
        raise RuleArithmeticError(
            f"Cannot advance {rule.frequency.value} rule from {from_date.isoformat()}"
        ) from exc

    if next_date <= from_date:
        raise RuleArithmeticError(
            f"Rule produced {next_date.isoformat()} which does not follow {from_date.isoformat()}"
        )
    return next_date


def beyond_end(rule: RecurrenceRule, when: datetime) -> bool:
    return rule.end_date is not None and when.date() > rule.end_date


@dataclass(frozen=True)
class GenerationFailure:
    template_id: UUID
    message: str


@dataclass
class GenerationResult:
    settled: int = 0
    caught_up: int = 0
    looked_ahead: int = 0
    errors: list[GenerationFailure] = field(default_factory=list)

    @property
    def generated(self) -> int:
        return self.caught_up + self.looked_ahead


class RecurringEngine:
    """Materializes recurring templates into concrete ledger transactions.

    A pass settles pending transactions that are no longer in the future,
    catches every due template up to "now", then tops up the look-ahead
    window of upcoming occurrences. Every occurrence is checked against the
    group's existing transactions by calendar day first, which makes passes
    idempotent.
    """

    max_iterations = 10_000

    def __init__(
        self,
        transactions: TransactionService,
        templates: RecurringTemplateService,
        clock: Clock,
        *,
        lookahead_months: int = 3,
    ) -> None:
        self.transactions = transactions
        self.templates = templates
        self.clock = clock
        self.lookahead_months = lookahead_months
        self.store = transactions.store

    def run_pass(self, now: Optional[datetime] = None) -> GenerationResult:
        result = GenerationResult()
        with self.store.lock:
            now = now or self.clock.now()
            result.settled = self.transactions.settle_due(now=now)
            due = {template.id for template in self.templates.due_templates(now)}
            for template in list(self.templates.list_all()):
                if not template.is_active:
                    continue
                try:
                    if template.id in due:
                        result.caught_up += self.catch_up(template.id, now)
                    result.looked_ahead += self.look_ahead(template.id, now)
                except Exception as exc:
                    logger.exception(f"generation_failed: template={template.id}")
                    result.errors.append(GenerationFailure(template.id, str(exc)))
        logger.info(
            f"generation_pass: settled={result.settled} caught_up={result.caught_up} "
            f"looked_ahead={result.looked_ahead} failures={len(result.errors)}"
        )
        return result

    def catch_up(self, template_id: UUID, now: Optional[datetime] = None) -> int:
        now = now or self.clock.now()
        template = self.templates.get(template_id)
        posted = 0
        iterations = 0
        while template.is_active and template.next_occurrence <= now:
            if iterations >= self.max_iterations:
                logger.warning(f"catch_up_capped: template={template.id}")
                break
            occurrence = template.next_occurrence
            if beyond_end(template.rule, occurrence):
                break
            if self._materialize(template, occurrence, now):
                posted += 1
            following = calculate_next_date(template.rule, occurrence)
            if beyond_end(template.rule, following):
                # The pointer stays on the last valid date; the template stays active.
                break
            template = self.templates.advance(template.id)
            iterations += 1
        return posted

    def look_ahead(self, template_id: UUID, now: Optional[datetime] = None) -> int:
        now = now or self.clock.now()
        template = self.templates.get(template_id)
        if not template.is_active:
            return 0
        ceiling = add_months(now, self.lookahead_months)
        group = self.transactions.for_group(template.recurring_group_id)
        candidate = template.next_occurrence
        if group:
            latest = max(txn.date for txn in group)
            candidate = max(calculate_next_date(template.rule, latest), candidate)
        posted = 0
        iterations = 0
        while candidate <= ceiling and not beyond_end(template.rule, candidate):
            if iterations >= self.max_iterations:
                logger.warning(f"look_ahead_capped: template={template.id}")
                break
            if self._materialize(template, candidate, now):
                posted += 1
            candidate = calculate_next_date(template.rule, candidate)
            iterations += 1
        return posted

    def create_recurring(
        self, data: TransactionIn, *, now: Optional[datetime] = None
    ) -> tuple[Transaction, RecurringTemplate]:
        """Record the originating transaction of a new series and its template."""
        if data.recurrence is None:
            raise ValidationError("Recurring transactions need a recurrence rule")
        now = now or self.clock.now()
        with self.store.mutation(TRANSACTIONS, ACCOUNTS, TEMPLATES):
            txn = self.transactions.create(data, now=now, recurring_group_id=uuid4())
            template = self.templates.create_from_transaction(
                txn, next_occurrence=calculate_next_date(data.recurrence, txn.date)
            )
        self.look_ahead(template.id, now)
        return txn, template

    def disable_series(
        self,
        group_id: UUID,
        cutoff: Optional[datetime] = None,
    ) -> int:
        """Stop a series: drop its occurrences after ``cutoff`` and deactivate it.

        Occurrences on or before the cutoff are kept as history. Returns the
        number of deleted transactions.
        """
        cutoff = cutoff or self.clock.now()
        with self.store.mutation(TRANSACTIONS, ACCOUNTS, TEMPLATES):
            template = self.templates.find_by_group(group_id)
            group = self.transactions.for_group(group_id)
            if template is None and not group:
                raise NotFoundError("Recurring series", group_id)
            removed = self.transactions.delete_group_after(group_id, cutoff)
            remaining = sorted(self.transactions.for_group(group_id), key=lambda t: t.date)
            if remaining:
                self.transactions.mark_non_recurring(remaining[0].id)
            if template is not None and template.is_active:
                self.templates.deactivate(template.id)
        logger.info(f"series_disabled: group={group_id} removed={removed}")
        return removed

    def _materialize(
        self, template: RecurringTemplate, occurrence: datetime, now: datetime
    ) -> bool:
        if self.transactions.exists_on_day(template.recurring_group_id, occurrence.date()):
            return False
        txn = Transaction(
            amount=template.amount,
            type=template.type,
            category_id=template.category_id,
            account_id=template.account_id,
            to_account_id=template.to_account_id,
            date=occurrence,
            notes=template.notes,
            is_recurring=True,
            recurrence_rule=template.rule,
            recurring_group_id=template.recurring_group_id,
            created_at=now,
            updated_at=now,
        )
        self.transactions.add(txn, now=now)
        return True
