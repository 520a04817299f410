import datetime as dt
from decimal import Decimal
from typing import Annotated, Optional
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from config import get_settings
from models import (
    AccountType,
    AppLanguage,
    AppTheme,
    BudgetPeriod,
    CurrencyCode,
    RecurrenceFrequency,
    TransactionType,
)


def to_local_naive(value: dt.datetime) -> dt.datetime:
    """Naive datetimes are local already; aware ones are shifted into the configured timezone."""
    if value.tzinfo is None:
        return value
    return value.astimezone(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)


LocalDateTime = Annotated[dt.datetime, AfterValidator(to_local_naive)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_transfer_accounts(
    txn_type: TransactionType,
    account_id: UUID,
    to_account_id: Optional[UUID],
) -> None:
    if txn_type == TransactionType.transfer:
        if to_account_id is None:
            raise ValueError("Transfers require a destination account")
        if to_account_id == account_id:
            raise ValueError("Transfer source and destination must differ")
    elif to_account_id is not None:
        raise ValueError("Only transfers may set a destination account")


class Location(CamelModel):
    name: str
    address: str
    latitude: float
    longitude: float


class RecurrenceRule(CamelModel):
    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)  # 0 = Monday
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    end_date: Optional[dt.date] = None


class Account(CamelModel):
    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.checking
    balance: Decimal = Decimal("0")
    opening_balance: Decimal = Decimal("0")
    currency: str = Field(default=CurrencyCode.eur.value, min_length=1, max_length=8)
    created_at: LocalDateTime = Field(default_factory=dt.datetime.now)
    updated_at: LocalDateTime = Field(default_factory=dt.datetime.now)


class Category(CamelModel):
    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = "ellipsis.circle"
    color_hex: str = Field(default="#95A5A6", max_length=9)
    is_default: bool = False


DEFAULT_CATEGORY_TOKENS: list[tuple[str, str, str]] = [
    ("food", "fork.knife", "#FF6B6B"),
    ("housing", "house", "#4ECDC4"),
    ("transportation", "car", "#45B7D1"),
    ("entertainment", "tv", "#FFA07A"),
    ("utilities", "bolt", "#98D8C8"),
    ("healthcare", "cross.case", "#F7B731"),
    ("shopping", "bag", "#A29BFE"),
    ("education", "book", "#6C5CE7"),
    ("salary", "dollarsign.circle", "#00B894"),
    ("other", "ellipsis.circle", "#95A5A6"),
]


def default_categories() -> list[Category]:
    return [
        Category(name=name, icon=icon, color_hex=color, is_default=True)
        for name, icon, color in DEFAULT_CATEGORY_TOKENS
    ]


class Transaction(CamelModel):
    id: UUID = Field(default_factory=uuid4)
    amount: Decimal = Field(..., gt=0)
    type: TransactionType
    category_id: UUID
    account_id: UUID
    to_account_id: Optional[UUID] = None
    date: LocalDateTime
    notes: Optional[str] = Field(default=None, max_length=500)
    is_recurring: bool = False
    recurrence_rule: Optional[RecurrenceRule] = None
    recurring_group_id: Optional[UUID] = None
    # Whether the balance delta is currently reflected on the account(s).
    balance_applied: bool = False
    location: Optional[Location] = None
    created_at: LocalDateTime = Field(default_factory=dt.datetime.now)
    updated_at: LocalDateTime = Field(default_factory=dt.datetime.now)

    @model_validator(mode="after")
    def _transfer_accounts(self) -> "Transaction":
        _check_transfer_accounts(self.type, self.account_id, self.to_account_id)
        return self


class Budget(CamelModel):
    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    category_id: Optional[UUID] = None
    start_date: LocalDateTime = Field(default_factory=dt.datetime.now)
    created_at: LocalDateTime = Field(default_factory=dt.datetime.now)
    updated_at: LocalDateTime = Field(default_factory=dt.datetime.now)

    def is_active(self, on: dt.datetime) -> bool:
        return on >= self.start_date


class Goal(CamelModel):
    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = "star"
    color_hex: str = Field(default="#007AFF", max_length=9)
    target_amount: Decimal = Field(..., gt=0)
    current_amount: Decimal = Field(default=Decimal("0"), ge=0)
    created_at: LocalDateTime = Field(default_factory=dt.datetime.now)
    updated_at: LocalDateTime = Field(default_factory=dt.datetime.now)

    @property
    def progress(self) -> float:
        return min(float(self.current_amount / self.target_amount), 1.0)

    @property
    def remaining(self) -> Decimal:
        return max(self.target_amount - self.current_amount, Decimal("0"))

    @property
    def is_completed(self) -> bool:
        return self.current_amount >= self.target_amount


class RecurringTemplate(CamelModel):
    id: UUID = Field(default_factory=uuid4)
    recurring_group_id: UUID = Field(default_factory=uuid4)
    amount: Decimal = Field(..., gt=0)
    type: TransactionType
    category_id: UUID
    account_id: UUID
    to_account_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    rule: RecurrenceRule
    next_occurrence: LocalDateTime
    is_active: bool = True
    created_at: LocalDateTime = Field(default_factory=dt.datetime.now)
    updated_at: LocalDateTime = Field(default_factory=dt.datetime.now)

    @model_validator(mode="after")
    def _transfer_accounts(self) -> "RecurringTemplate":
        _check_transfer_accounts(self.type, self.account_id, self.to_account_id)
        return self


class AccountIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.checking
    currency: str = Field(default=CurrencyCode.eur.value, min_length=1, max_length=8)
    opening_balance: Decimal = Decimal("0")


class CategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = "ellipsis.circle"
    color_hex: str = Field(default="#95A5A6", max_length=9)


class TransactionIn(CamelModel):
    amount: Decimal = Field(..., gt=0)
    type: TransactionType
    category_id: Optional[UUID] = None
    account_id: UUID
    to_account_id: Optional[UUID] = None
    date: LocalDateTime
    notes: Optional[str] = Field(default=None, max_length=500)
    location: Optional[Location] = None
    recurrence: Optional[RecurrenceRule] = None

    @model_validator(mode="after")
    def _transfer_accounts(self) -> "TransactionIn":
        _check_transfer_accounts(self.type, self.account_id, self.to_account_id)
        return self


class RecurringTemplateIn(CamelModel):
    amount: Decimal = Field(..., gt=0)
    type: TransactionType
    category_id: Optional[UUID] = None
    account_id: UUID
    to_account_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    rule: RecurrenceRule
    next_occurrence: LocalDateTime
    is_active: bool = True

    @model_validator(mode="after")
    def _transfer_accounts(self) -> "RecurringTemplateIn":
        _check_transfer_accounts(self.type, self.account_id, self.to_account_id)
        return self


class BudgetIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    category_id: Optional[UUID] = None
    start_date: LocalDateTime


class GoalIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = "star"
    color_hex: str = Field(default="#007AFF", max_length=9)
    target_amount: Decimal = Field(..., gt=0)
    current_amount: Decimal = Field(default=Decimal("0"), ge=0)


class DepositIn(CamelModel):
    amount: Decimal = Field(..., gt=0)


class Preferences(CamelModel):
    theme: AppTheme = AppTheme.system
    currency: CurrencyCode = CurrencyCode.eur
    language: AppLanguage = AppLanguage.auto


class PreferencesIn(CamelModel):
    theme: Optional[AppTheme] = None
    currency: Optional[CurrencyCode] = None
    language: Optional[AppLanguage] = None


class FullBackup(CamelModel):
    accounts: list[Account]
    transactions: list[Transaction]
    categories: list[Category]
    budgets: list[Budget]
    goals: list[Goal]
    recurring_transactions: list[RecurringTemplate]
    theme: AppTheme
    currency: CurrencyCode
    language: AppLanguage
    backup_date: LocalDateTime
    app_version: str
