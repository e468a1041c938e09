"""Materialized views over engine state with explicit refresh."""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

import pandas as pd
import structlog

from ..core.errors import ConfigurationError, UnknownView
from ..core.models import ViewRow, view_table
from ..storage.record_store import RecordStore

logger = structlog.get_logger()

ViewSource = Callable[[], Union[Iterable[Mapping[str, Any]], Awaitable[Iterable[Mapping[str, Any]]]]]

_USE_CONFIG = object()


@dataclass(frozen=True)
class RefreshPolicy:
    """When a view refreshes: only on demand, or after N upstream deltas."""
    mode: str = "manual"
    batch_deltas: Optional[int] = None

    def __post_init__(self):
        if self.mode not in ("manual", "after_deltas"):
            raise ConfigurationError(f"Unknown refresh mode: {self.mode}")
        if self.mode == "after_deltas" and (self.batch_deltas is None or self.batch_deltas < 1):
            raise ConfigurationError("after_deltas refresh needs batch_deltas >= 1")

    @classmethod
    def manual(cls) -> "RefreshPolicy":
        return cls()

    @classmethod
    def after(cls, deltas: int) -> "RefreshPolicy":
        return cls(mode="after_deltas", batch_deltas=deltas)


@dataclass(frozen=True)
class ViewDefinition:
    name: str
    source: ViewSource
    key_fields: Tuple[str, ...]
    policy: RefreshPolicy
    persist: bool


@dataclass(frozen=True)
class MaterializationResult:
    """What one refresh produced."""
    view_name: str
    rows_written: int
    rows_deleted: int
    duration: float
    refreshed_at: datetime
    version: int
    trigger: str = "manual"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "view_name": self.view_name,
            "rows_written": self.rows_written,
            "rows_deleted": self.rows_deleted,
            "duration": self.duration,
            "refreshed_at": self.refreshed_at.isoformat(),
            "version": self.version,
            "trigger": self.trigger,
        }


@dataclass
class _ViewState:
    definition: ViewDefinition
    rows: Tuple[ViewRow, ...] = ()
    version: int = 0
    refreshed_at: Optional[datetime] = None
    pending: int = 0
    # Keys present in the view's store table; None until first read back.
    persisted: Optional[Set[Tuple[Any, ...]]] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ViewMaterializer:
    """Named views whose snapshots are swapped in whole after each refresh.

    A refresh builds the complete new row set, persists it, and only then
    replaces the published tuple, so ``read`` always returns either the
    previous or the new snapshot and never a mix.
    """

    def __init__(self, config, store: Optional[RecordStore] = None):
        self.config = config
        self.store = store
        self._views: Dict[str, _ViewState] = {}

    def define_view(
        self,
        name: str,
        source: ViewSource,
        key_fields: Sequence[str],
        refresh_policy: Optional[RefreshPolicy] = None,
        persist: Optional[bool] = None,
    ) -> ViewDefinition:
        if name in self._views:
            raise ConfigurationError(f"View already defined: {name}")
        if not callable(source):
            raise ConfigurationError(f"View {name} needs a callable source")
        if not key_fields:
            raise ConfigurationError(f"View {name} needs at least one key field")
        if refresh_policy is None:
            threshold = self.config.views.refresh_after_deltas
            refresh_policy = RefreshPolicy.after(threshold) if threshold else RefreshPolicy.manual()
        definition = ViewDefinition(
            name=name,
            source=source,
            key_fields=tuple(key_fields),
            policy=refresh_policy,
            persist=self.config.views.persist if persist is None else persist,
        )
        self._views[name] = _ViewState(definition)
        logger.info(f"Defined view {name} ({refresh_policy.mode})")
        return definition

    def _state(self, name: str) -> _ViewState:
        try:
            return self._views[name]
        except KeyError:
            raise UnknownView(name) from None

    def view_names(self) -> List[str]:
        return list(self._views)

    def read(self, view_name: str) -> Tuple[ViewRow, ...]:
        """The last complete snapshot; empty before the first refresh."""
        return self._state(view_name).rows

    def version(self, view_name: str) -> int:
        return self._state(view_name).version

    def pending_deltas(self, view_name: str) -> int:
        """Upstream deltas recorded since the view last refreshed."""
        return self._state(view_name).pending

    def last_refreshed(self, view_name: str) -> Optional[datetime]:
        return self._state(view_name).refreshed_at

    async def refresh(self, view_name: str, timeout: Any = _USE_CONFIG, trigger: str = "manual") -> MaterializationResult:
        """Recompute a view from current engine state and publish it."""
        state = self._state(view_name)
        if timeout is _USE_CONFIG:
            timeout = self.config.views.refresh_timeout_seconds
        work = self._refresh(state, trigger)
        if timeout:
            return await asyncio.wait_for(work, timeout)
        return await work

    async def _refresh(self, state: _ViewState, trigger: str) -> MaterializationResult:
        definition = state.definition
        async with state.lock:
            started = time.perf_counter()
            pending_at_start = state.pending

            produced = definition.source()
            if inspect.isawaitable(produced):
                produced = await produced

            rows: List[ViewRow] = []
            seen = set()
            for mapping in produced:
                try:
                    key = tuple(mapping[name] for name in definition.key_fields)
                except KeyError as e:
                    raise ConfigurationError(f"View {definition.name} row lacks key field {e}") from e
                if key in seen:
                    raise ConfigurationError(f"View {definition.name} produced duplicate key {key!r}")
                seen.add(key)
                rows.append(ViewRow(definition.name, key, MappingProxyType(dict(mapping))))

            deleted = 0
            if definition.persist and self.store is not None:
                deleted = await self._persist(state, rows, seen)

            state.rows = tuple(rows)
            state.version += 1
            state.refreshed_at = datetime.now(timezone.utc)
            state.pending = max(0, state.pending - pending_at_start)

            result = MaterializationResult(
                view_name=definition.name,
                rows_written=len(rows),
                rows_deleted=deleted,
                duration=time.perf_counter() - started,
                refreshed_at=state.refreshed_at,
                version=state.version,
                trigger=trigger,
            )
            logger.info(
                f"Refreshed view {definition.name} v{result.version}: "
                f"{result.rows_written} rows, {result.rows_deleted} removed in {result.duration:.3f}s"
            )
            return result

    async def _persist(self, state: _ViewState, rows: List[ViewRow], keys: set) -> int:
        table = view_table(state.definition.name)
        if state.persisted is None:
            state.persisted = {tuple(row.key) async for row in self.store.scan(table)}
        persisted = state.persisted
        # Recorded before the write: the set may name keys the table lacks,
        # never the reverse.
        for row in rows:
            persisted.add(row.key)
            await self.store.put(row)
        deleted = 0
        for key in sorted(persisted - keys, key=repr):
            if await self.store.delete(table, key) is not None:
                deleted += 1
            persisted.discard(key)
        return deleted

    async def record_deltas(self, count: int) -> List[MaterializationResult]:
        """Account for a batch of upstream changes; refresh views that are due.

        Called once per ingested batch, never per row.
        """
        if count <= 0:
            return []
        due = []
        for state in self._views.values():
            state.pending += count
            policy = state.definition.policy
            if policy.mode == "after_deltas" and state.pending >= policy.batch_deltas:
                due.append(state.definition.name)
        results = []
        for name in due:
            results.append(await self.refresh(name, trigger="after_deltas"))
        return results

    def to_frame(self, view_name: str) -> pd.DataFrame:
        """The current snapshot as a DataFrame, one column per row field."""
        state = self._state(view_name)
        rows = state.rows
        if not rows:
            return pd.DataFrame(columns=list(state.definition.key_fields))
        return pd.DataFrame([row.as_dict() for row in rows])

    def get_view_stats(self) -> Dict[str, Any]:
        return {
            name: {
                "rows": len(state.rows),
                "version": state.version,
                "pending_deltas": state.pending,
                "refreshed_at": state.refreshed_at.isoformat() if state.refreshed_at else None,
            }
            for name, state in self._views.items()
        }
