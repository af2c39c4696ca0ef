"""
Durable key-value stores backing persistent cache tiers.

A store holds opaque strings. Persistent tiers serialize themselves to JSON
and write one value per tier, so stores only need get/set/remove.
"""

from typing import Protocol

from loguru import logger
from sqlalchemy import Engine, delete, select
from sqlalchemy.exc import SQLAlchemyError

from wikicache.datastore.engine import create_session_factory, create_store_engine
from wikicache.datastore.models import CacheSnapshotDB
from wikicache.services.errors import StorageError, StorageQuotaError

# Roughly a browser's per-origin localStorage budget
DEFAULT_MAX_VALUE_BYTES = 5 * 1024 * 1024


def storage_key(namespace: str, name: str, tenant: str | None = None) -> str:
    """Build a durable key: ``<namespace>[:<tenant>]:<name>``."""
    return f"{namespace}:{tenant}:{name}" if tenant else f"{namespace}:{name}"


class DurableStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...


def _check_quota(key: str, value: str, limit: int | None) -> None:
    if limit is None:
        return
    size = len(value.encode("utf-8"))
    if size > limit:
        raise StorageQuotaError(key, size, limit)


class MemoryStore:
    """Dict-backed store; survives tier re-creation within one process."""

    def __init__(self, max_value_bytes: int | None = DEFAULT_MAX_VALUE_BYTES):
        self._data: dict[str, str] = {}
        self._max_value_bytes = max_value_bytes

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        _check_quota(key, value, self._max_value_bytes)
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._data)


class SqlStore:
    """
    SQLAlchemy-backed store (SQLite by default).

    Usage:
        store = SqlStore("sqlite:///./wikicache.db")
        store.set("cache:github_users", "[...]")
    """

    def __init__(
        self,
        database_url: str = "",
        engine: Engine | None = None,
        max_value_bytes: int | None = DEFAULT_MAX_VALUE_BYTES,
    ):
        self._engine = engine or create_store_engine(database_url)
        self._session_factory = create_session_factory(self._engine)
        self._max_value_bytes = max_value_bytes

    def get(self, key: str) -> str | None:
        try:
            with self._session_factory() as session:
                row = session.get(CacheSnapshotDB, key)
                return row.value if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read '{key}': {e}") from e

    def set(self, key: str, value: str) -> None:
        _check_quota(key, value, self._max_value_bytes)
        try:
            with self._session_factory() as session, session.begin():
                session.merge(CacheSnapshotDB(key=key, value=value))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to write '{key}': {e}") from e

    def remove(self, key: str) -> None:
        try:
            with self._session_factory() as session, session.begin():
                session.execute(
                    delete(CacheSnapshotDB).where(CacheSnapshotDB.key == key)
                )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to remove '{key}': {e}") from e

    def keys(self, prefix: str = "") -> list[str]:
        try:
            with self._session_factory() as session:
                stmt = select(CacheSnapshotDB.key).where(
                    CacheSnapshotDB.key.startswith(prefix, autoescape=True)
                )
                result = session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list keys: {e}") from e

    def close(self) -> None:
        self._engine.dispose()
        logger.debug("SqlStore engine disposed")
