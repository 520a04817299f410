from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from errors import PersistenceError
from events import (
    ACCOUNTS_CHANGED,
    BUDGETS_CHANGED,
    CATEGORIES_CHANGED,
    GOALS_CHANGED,
    PREFERENCES_CHANGED,
    TEMPLATES_CHANGED,
    TRANSACTIONS_CHANGED,
    EventBus,
)
from models import AppLanguage, AppTheme, CurrencyCode
from schemas import (
    Account,
    Budget,
    Category,
    Goal,
    Preferences,
    RecurringTemplate,
    Transaction,
    default_categories,
)
from storage import KeyValueStore

logger = logging.getLogger(__name__)

ACCOUNTS = "accounts"
TRANSACTIONS = "transactions"
CATEGORIES = "categories"
BUDGETS = "budgets"
GOALS = "goals"
TEMPLATES = "recurringTemplates"
THEME = "theme"
CURRENCY = "currency"
LANGUAGE = "language"

COLLECTION_KEYS = (ACCOUNTS, TRANSACTIONS, CATEGORIES, BUDGETS, GOALS, TEMPLATES)
PREFERENCE_KEYS = (THEME, CURRENCY, LANGUAGE)
ALL_KEYS = COLLECTION_KEYS + PREFERENCE_KEYS

_ATTRS = {
    ACCOUNTS: "accounts",
    TRANSACTIONS: "transactions",
    CATEGORIES: "categories",
    BUDGETS: "budgets",
    GOALS: "goals",
    TEMPLATES: "templates",
}

_ADAPTERS: dict[str, TypeAdapter] = {
    ACCOUNTS: TypeAdapter(list[Account]),
    TRANSACTIONS: TypeAdapter(list[Transaction]),
    CATEGORIES: TypeAdapter(list[Category]),
    BUDGETS: TypeAdapter(list[Budget]),
    GOALS: TypeAdapter(list[Goal]),
    TEMPLATES: TypeAdapter(list[RecurringTemplate]),
    THEME: TypeAdapter(AppTheme),
    CURRENCY: TypeAdapter(CurrencyCode),
    LANGUAGE: TypeAdapter(AppLanguage),
}

_EVENTS = {
    ACCOUNTS: ACCOUNTS_CHANGED,
    TRANSACTIONS: TRANSACTIONS_CHANGED,
    CATEGORIES: CATEGORIES_CHANGED,
    BUDGETS: BUDGETS_CHANGED,
    GOALS: GOALS_CHANGED,
    TEMPLATES: TEMPLATES_CHANGED,
    THEME: PREFERENCES_CHANGED,
    CURRENCY: PREFERENCES_CHANGED,
    LANGUAGE: PREFERENCES_CHANGED,
}


class DataStore:
    """In-memory collections backed by a key-value provider.

    Every mutation goes through :meth:`mutation`, which holds the writer lock,
    snapshots the touched collections, and persists them on exit. If the body
    or the write fails, the snapshots are restored so callers never observe a
    half-applied change. Mutations nest; only the outermost one writes.
    """

    def __init__(self, backend: KeyValueStore, events: Optional[EventBus] = None) -> None:
        self.backend = backend
        self.events = events or EventBus()
        self.lock = threading.RLock()
        self.accounts: list[Account] = []
        self.transactions: list[Transaction] = []
        self.categories: list[Category] = []
        self.budgets: list[Budget] = []
        self.goals: list[Goal] = []
        self.templates: list[RecurringTemplate] = []
        self.preferences = Preferences()
        self._depth = 0
        self._snapshots: dict[str, Any] = {}
        self._dirty: set[str] = set()

    def load(self) -> None:
        with self.lock:
            for key in ALL_KEYS:
                raw = self.backend.load(key)
                if raw is None:
                    continue
                try:
                    value = _ADAPTERS[key].validate_json(raw)
                except PydanticValidationError as exc:
                    raise PersistenceError(f"Stored '{key}' could not be decoded") from exc
                self._set(key, value)
            if not self.categories:
                with self.mutation(CATEGORIES):
                    self.categories = default_categories()
                logger.info(f"store_seeded: categories={len(self.categories)}")

    def encode(self, key: str) -> bytes:
        try:
            return _ADAPTERS[key].dump_json(self._get(key), by_alias=True)
        except Exception as exc:
            raise PersistenceError(f"Failed to serialize '{key}'") from exc

    def commit(self, *keys: str) -> None:
        payload = {key: self.encode(key) for key in keys}
        self.backend.save_many(payload)

    @contextmanager
    def mutation(self, *keys: str) -> Iterator[None]:
        with self.lock:
            if self._depth == 0:
                self._snapshots = {}
                self._dirty = set()
            for key in keys:
                if key not in self._snapshots:
                    self._snapshots[key] = self._snapshot(key)
            self._dirty.update(keys)
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._rollback()
                raise
            self._depth -= 1
            if self._depth > 0:
                return
            dirty = sorted(self._dirty)
            try:
                self.commit(*dirty)
            except Exception:
                self._rollback()
                raise
            self._snapshots = {}
            self._dirty = set()
            for name in sorted({_EVENTS[key] for key in dirty}):
                self.events.publish(name, {"keys": dirty})

    def replace_all(self, values: dict[str, Any]) -> None:
        """Overwrite every collection and preference in one atomic write."""
        with self.mutation(*ALL_KEYS):
            for key, value in values.items():
                self._set(key, value)

    def _get(self, key: str) -> Any:
        if key in _ATTRS:
            return getattr(self, _ATTRS[key])
        return getattr(self.preferences, key)

    def _set(self, key: str, value: Any) -> None:
        if key in _ATTRS:
            setattr(self, _ATTRS[key], value)
        else:
            setattr(self.preferences, key, value)

    def _snapshot(self, key: str) -> Any:
        value = self._get(key)
        if isinstance(value, list):
            return [item.model_copy() for item in value]
        return value

    def _rollback(self) -> None:
        for key, value in self._snapshots.items():
            self._set(key, value)
        logger.warning(f"store_rollback: keys={sorted(self._snapshots)}")
        self._snapshots = {}
        self._dirty = set()
