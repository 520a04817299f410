from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class AccountType(str, Enum):
    checking = "checking"
    card = "card"
    cash = "cash"
    savings = "savings"


class RecurrenceFrequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class BudgetPeriod(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class AppTheme(str, Enum):
    system = "system"
    light = "light"
    dark = "dark"


class CurrencyCode(str, Enum):
    eur = "EUR"
    usd = "USD"
    gbp = "GBP"
    chf = "CHF"
    jpy = "JPY"
    cny = "CNY"


class AppLanguage(str, Enum):
    auto = "auto"
    french = "français"
    english = "english"


class KeyValueEntry(Base):
    """One persisted collection (or scalar preference) per key."""

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
