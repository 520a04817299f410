from __future__ import annotations

import logging
from typing import Mapping, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database import Base, session_scope
from errors import PersistenceError
from models import KeyValueEntry, utcnow

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def load(self, key: str) -> Optional[bytes]: ...

    def save(self, key: str, value: bytes) -> None: ...

    def save_many(self, values: Mapping[str, bytes]) -> None: ...


class MemoryKeyValueStore:
    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}

    def load(self, key: str) -> Optional[bytes]:
        return self.data.get(key)

    def save(self, key: str, value: bytes) -> None:
        self.data[key] = value

    def save_many(self, values: Mapping[str, bytes]) -> None:
        self.data.update(values)


class SqlKeyValueStore:
    """Key-value persistence over the ``kv_entries`` table.

    ``save_many`` writes all keys in one database transaction, so a ledger
    commit touching transactions and accounts lands together or not at all.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    @classmethod
    def create_all(cls, session_factory: sessionmaker[Session]) -> "SqlKeyValueStore":
        bind = session_factory.kw["bind"]
        Base.metadata.create_all(bind, tables=[KeyValueEntry.__table__])
        return cls(session_factory)

    def load(self, key: str) -> Optional[bytes]:
        try:
            with self.session_factory() as session:
                stmt = select(KeyValueEntry.value).where(KeyValueEntry.key == key)
                return session.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load '{key}'") from exc

    def save(self, key: str, value: bytes) -> None:
        self.save_many({key: value})

    def save_many(self, values: Mapping[str, bytes]) -> None:
        if not values:
            return
        now = utcnow()
        try:
            with session_scope(self.session_factory) as session:
                for key, value in values.items():
                    entry = session.get(KeyValueEntry, key)
                    if entry is None:
                        session.add(KeyValueEntry(key=key, value=value, updated_at=now))
                    else:
                        entry.value = value
                        entry.updated_at = now
        except SQLAlchemyError as exc:
            logger.error(f"storage_write_failed: keys={sorted(values)}")
            raise PersistenceError(
                f"Failed to save {', '.join(sorted(values))}"
            ) from exc
