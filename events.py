import logging
from datetime import datetime
from typing import Callable, NamedTuple

logger = logging.getLogger(__name__)

__all__ = [
    "ACCOUNTS_CHANGED",
    "TRANSACTIONS_CHANGED",
    "CATEGORIES_CHANGED",
    "BUDGETS_CHANGED",
    "GOALS_CHANGED",
    "TEMPLATES_CHANGED",
    "PREFERENCES_CHANGED",
    "DATA_RESTORED",
    "Event",
    "EventBus",
]

ACCOUNTS_CHANGED = "accounts_changed"
TRANSACTIONS_CHANGED = "transactions_changed"
CATEGORIES_CHANGED = "categories_changed"
BUDGETS_CHANGED = "budgets_changed"
GOALS_CHANGED = "goals_changed"
TEMPLATES_CHANGED = "templates_changed"
PREFERENCES_CHANGED = "preferences_changed"
DATA_RESTORED = "data_restored"


class Event(NamedTuple):
    name: str
    ts: datetime
    payload: dict


Handler = Callable[[Event], None]


class EventBus:
    """Observer list the UI layer subscribes to; the core never knows who listens."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = {}

    def subscribe(self, name: str, handler: Handler) -> None:
        self._subscribers.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> None:
        handlers = self._subscribers.get(name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, name: str, payload: dict | None = None) -> int:
        handlers = list(self._subscribers.get(name, ()))
        if not handlers:
            return 0
        event = Event(name=name, ts=datetime.now(), payload=payload or {})
        for handler in handlers:
            # The mutation is already persisted; subscriber failures are only logged.
            try:
                handler(event)
            except Exception:
                logger.exception(f"event_handler_failed: event={name}")
        return len(handlers)
