import json
import logging
from typing import Any, Callable, Optional, Protocol, TypeVar

from sqlalchemy.orm import sessionmaker

from nutriplan.core.errors import StorageParseFailure
from nutriplan.db import session as db_session
from nutriplan.db.models import Record

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


class RecordStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def keys(self, prefix: str = "") -> list[str]:
        ...


class SqlRecordStore:
    """Record store backed by the `records` table.

    Every call is its own short transaction. Read-modify-write sequences built
    on top of it are not isolated from each other.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[str]:
        with db_session.session_scope(self._session_factory) as db:
            row = db.get(Record, key)
            return row.value_json if row else None

    def set(self, key: str, value: str) -> None:
        with db_session.session_scope(self._session_factory) as db:
            row = db.get(Record, key)
            if row:
                row.value_json = value
            else:
                db.add(Record(key=key, value_json=value))
            db.commit()

    def remove(self, key: str) -> None:
        with db_session.session_scope(self._session_factory) as db:
            db.query(Record).filter(Record.key == key).delete(synchronize_session=False)
            db.commit()

    def keys(self, prefix: str = "") -> list[str]:
        with db_session.session_scope(self._session_factory) as db:
            query = db.query(Record.key)
            if prefix:
                query = query.filter(Record.key.startswith(prefix))
            return sorted(row[0] for row in query.all())


class MemoryRecordStore:
    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._data if key.startswith(prefix))


def decode_record(key: str, raw: str, parse: Callable[[Any], T]) -> T:
    try:
        return parse(json.loads(raw))
    except (ValueError, TypeError) as exc:
        raise StorageParseFailure(key, str(exc)[:220]) from exc


def load_record(store: RecordStore, key: str, parse: Callable[[Any], T], default: Callable[[], T]) -> T:
    raw = store.get(key)
    if raw is None:
        return default()
    try:
        return decode_record(key, raw, parse)
    except StorageParseFailure as exc:
        logger.warning("record_discarded key=%s detail=%s", key, str(exc))
        store.remove(key)
        return default()


def save_record(store: RecordStore, key: str, value: Any) -> None:
    store.set(key, json.dumps(value, separators=(",", ":")))


def get_record_store() -> RecordStore:
    return SqlRecordStore()
