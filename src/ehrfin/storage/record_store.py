"""Record store adapters: the engine's only path to durable rows.

Every operation is a coroutine so that hosts backed by blocking drivers and
hosts backed by async drivers look the same to the engines. The adapters do
not retry; driver failures surface as ``StorageUnavailable``.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional, Union

import structlog
from sqlalchemy import JSON, Column, MetaData, String, Table, create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from ..core.errors import StorageUnavailable
from ..core.models import ROW_TYPES, EntityKind, ViewRow, to_jsonable

logger = structlog.get_logger()

Kind = Union[EntityKind, str]
Predicate = Callable[[Any], bool]


def kind_name(kind: Kind) -> str:
    """Table name for an entity kind or a view table name."""
    return getattr(kind, "value", kind)


def row_from_record(kind: Kind, record: Dict[str, Any]) -> Any:
    """Rebuild a typed row from its stored payload."""
    name = kind_name(kind)
    try:
        row_type = ROW_TYPES[EntityKind(name)]
    except ValueError:
        return ViewRow.from_record(record)
    return row_type.from_record(record)


class RecordStore(ABC):
    """Typed rows keyed by ``(kind, primary key)``."""

    @abstractmethod
    async def get(self, kind: Kind, key: Any) -> Optional[Any]:
        """Return the stored row or ``None`` when it does not exist."""

    @abstractmethod
    async def put(self, row: Any) -> Optional[Any]:
        """Store ``row`` under its own kind and key; return the row it replaced."""

    @abstractmethod
    async def delete(self, kind: Kind, key: Any) -> Optional[Any]:
        """Remove a row; return it, or ``None`` if nothing was stored."""

    @abstractmethod
    def scan(self, kind: Kind, predicate: Optional[Predicate] = None) -> AsyncIterator[Any]:
        """Lazily iterate rows of one kind. Each call starts a fresh pass."""

    async def count(self, kind: Kind) -> int:
        total = 0
        async for _ in self.scan(kind):
            total += 1
        return total

    def close(self) -> None:
        pass


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed store, used by default and in tests."""

    def __init__(self):
        self._tables: Dict[str, Dict[Any, Any]] = {}

    def _table(self, kind: Kind) -> Dict[Any, Any]:
        return self._tables.setdefault(kind_name(kind), {})

    async def get(self, kind: Kind, key: Any) -> Optional[Any]:
        return self._table(kind).get(key)

    async def put(self, row: Any) -> Optional[Any]:
        table = self._table(row.kind)
        previous = table.get(row.primary_key)
        table[row.primary_key] = row
        return previous

    async def delete(self, kind: Kind, key: Any) -> Optional[Any]:
        return self._table(kind).pop(key, None)

    async def scan(self, kind: Kind, predicate: Optional[Predicate] = None) -> AsyncIterator[Any]:
        for row in list(self._table(kind).values()):
            if predicate is None or predicate(row):
                yield row

    async def count(self, kind: Kind) -> int:
        return len(self._table(kind))


class SQLRecordStore(RecordStore):
    """SQLAlchemy-backed store: one table per kind, JSON payload per row."""

    def __init__(self, url: str, echo: bool = False, chunk_size: int = 1000):
        self.url = url
        self.chunk_size = chunk_size
        engine_kwargs: Dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        try:
            self.engine = create_engine(url, **engine_kwargs)
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"Cannot create engine for {url}: {e}") from e
        self.metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        logger.info(f"SQL record store ready: {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except SQLAlchemyError as e:
            logger.error(f"Record store {operation} failed: {e}")
            raise StorageUnavailable(f"{operation} failed: {e}") from e

    def _table(self, kind: Kind) -> Table:
        name = kind_name(kind)
        table = self._tables.get(name)
        if table is None:
            table = Table(
                name,
                self.metadata,
                Column("pk", String(512), primary_key=True),
                Column("payload", JSON, nullable=False),
            )
            with self._guard("create table"):
                self.metadata.create_all(self.engine, tables=[table])
            self._tables[name] = table
        return table

    @staticmethod
    def _key_text(key: Any) -> str:
        return json.dumps(to_jsonable(key), sort_keys=True)

    async def get(self, kind: Kind, key: Any) -> Optional[Any]:
        table = self._table(kind)
        with self._guard("get"), self.engine.connect() as conn:
            payload = conn.execute(
                select(table.c.payload).where(table.c.pk == self._key_text(key))
            ).scalar_one_or_none()
        return None if payload is None else row_from_record(kind, payload)

    async def put(self, row: Any) -> Optional[Any]:
        table = self._table(row.kind)
        pk = self._key_text(row.primary_key)
        payload = row.to_record()
        with self._guard("put"), self.engine.begin() as conn:
            previous = conn.execute(
                select(table.c.payload).where(table.c.pk == pk)
            ).scalar_one_or_none()
            if previous is None:
                conn.execute(table.insert().values(pk=pk, payload=payload))
            else:
                conn.execute(table.update().where(table.c.pk == pk).values(payload=payload))
        return None if previous is None else row_from_record(row.kind, previous)

    async def delete(self, kind: Kind, key: Any) -> Optional[Any]:
        table = self._table(kind)
        pk = self._key_text(key)
        with self._guard("delete"), self.engine.begin() as conn:
            previous = conn.execute(
                select(table.c.payload).where(table.c.pk == pk)
            ).scalar_one_or_none()
            if previous is not None:
                conn.execute(table.delete().where(table.c.pk == pk))
        return None if previous is None else row_from_record(kind, previous)

    async def scan(self, kind: Kind, predicate: Optional[Predicate] = None) -> AsyncIterator[Any]:
        table = self._table(kind)
        with self._guard("scan"), self.engine.connect() as conn:
            result = conn.execute(select(table.c.payload).order_by(table.c.pk))
            for partition in result.partitions(self.chunk_size):
                for (payload,) in partition:
                    row = row_from_record(kind, payload)
                    if predicate is None or predicate(row):
                        yield row

    async def count(self, kind: Kind) -> int:
        table = self._table(kind)
        with self._guard("count"), self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(table)).scalar_one()

    def close(self) -> None:
        self.engine.dispose()
        logger.info("SQL record store disposed")


def build_record_store(config) -> RecordStore:
    """Pick a store implementation from ``config.database``."""
    if config.database.is_memory:
        return InMemoryRecordStore()
    return SQLRecordStore(
        config.database.url,
        echo=config.database.echo,
        chunk_size=config.pipeline.chunk_size,
    )
