"""Trailing moving averages over time-ordered series.

Each series keeps its points sorted by ``(ordering_key, arrival)`` together
with cached averages for every tracked window size. An in-order append costs
O(1) per tracked window (running tail sum); an out-of-order insert or a
removal repairs only the ``window`` positions whose window contains the
changed point, since every later window holds exactly the same points as
before, just shifted by one index.
"""

import threading
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import structlog

from ..core.errors import ConfigurationError

logger = structlog.get_logger()

SortKey = Tuple[Any, int]


@dataclass
class _Series:
    keys: List[SortKey] = field(default_factory=list)
    values: List[float] = field(default_factory=list)
    ids: List[Any] = field(default_factory=list)
    by_id: Dict[Any, SortKey] = field(default_factory=dict)
    averages: Dict[int, List[float]] = field(default_factory=dict)
    tail_sums: Dict[int, float] = field(default_factory=dict)
    arrivals: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)

    def __len__(self) -> int:
        return len(self.values)


class WindowedStatsEngine:
    """Moving statistics per series, extended point by point."""

    def __init__(self, config=None, tracked_windows: Optional[Iterable[int]] = None):
        self.config = config
        if tracked_windows is None:
            tracked_windows = config.windows.tracked_windows if config else ()
        self._tracked: Set[int] = set()
        self._series: Dict[str, _Series] = {}
        for window in tracked_windows:
            self.track(window)

    @staticmethod
    def _check_window(window: int) -> None:
        if not isinstance(window, int) or window < 1:
            raise ConfigurationError(f"Window size must be a positive integer, got {window!r}")

    def track(self, window: int) -> None:
        """Keep cached averages for ``window`` on every series."""
        self._check_window(window)
        if window in self._tracked:
            return
        self._tracked.add(window)
        for series in self._series.values():
            with series.lock:
                self._rebuild_window(series, window)

    def _get_series(self, series_id: str) -> _Series:
        series = self._series.get(series_id)
        if series is None:
            series = self._series.setdefault(series_id, _Series())
            with series.lock:
                for window in self._tracked:
                    series.averages.setdefault(window, [])
                    series.tail_sums.setdefault(window, 0.0)
        return series

    def append(self, series_id: str, ordering_key: Any, value: float, point_id: Any = None) -> int:
        """Insert a point in order; a known ``point_id`` is replaced. Returns its index."""
        series = self._get_series(series_id)
        with series.lock:
            if point_id is not None and point_id in series.by_id:
                self._remove_locked(series, point_id)
            sort_key = (ordering_key, series.arrivals)
            series.arrivals += 1
            index = bisect_right(series.keys, sort_key)
            in_order = index == len(series)
            series.keys.insert(index, sort_key)
            series.values.insert(index, value)
            series.ids.insert(index, point_id)
            if point_id is not None:
                series.by_id[point_id] = sort_key

            for window in self._tracked:
                averages = series.averages[window]
                if in_order:
                    n = len(series)
                    tail = series.tail_sums[window] + value
                    if n > window:
                        tail -= series.values[n - 1 - window]
                    series.tail_sums[window] = tail
                    averages.append(tail / min(n, window))
                else:
                    averages.insert(index, 0.0)
                    self._repair(series, window, index)
            return index

    def remove(self, series_id: str, point_id: Any) -> bool:
        """Drop a point by id; returns False when the series never had it."""
        series = self._series.get(series_id)
        if series is None:
            return False
        with series.lock:
            if point_id not in series.by_id:
                return False
            self._remove_locked(series, point_id)
            return True

    def _remove_locked(self, series: _Series, point_id: Any) -> None:
        sort_key = series.by_id.pop(point_id)
        index = bisect_left(series.keys, sort_key)
        del series.keys[index]
        del series.values[index]
        del series.ids[index]
        for window in self._tracked:
            del series.averages[window][index]
            if index < len(series):
                self._repair(series, window, index)
            else:
                self._reset_tail(series, window)

    def _repair(self, series: _Series, window: int, start: int) -> None:
        """Recompute the averages of positions ``start .. start + window - 1``."""
        values = series.values
        averages = series.averages[window]
        stop = min(start + window, len(values))
        lo = max(0, start - window + 1)
        running = sum(values[lo:start + 1])
        averages[start] = running / (start + 1 - lo)
        for j in range(start + 1, stop):
            running += values[j]
            if j - window >= 0:
                running -= values[j - window]
            averages[j] = running / min(j + 1, window)
        self._reset_tail(series, window)

    @staticmethod
    def _reset_tail(series: _Series, window: int) -> None:
        series.tail_sums[window] = sum(series.values[-window:]) if series.values else 0.0

    def _rebuild_window(self, series: _Series, window: int) -> None:
        series.averages[window] = [avg for _, avg in _running_average(series.keys, series.values, window)]
        self._reset_tail(series, window)

    def moving_average(self, series_id: str, window_size: Optional[int] = None) -> Iterator[Tuple[Any, float]]:
        """Yield ``(ordering_key, average)`` for every point of the series.

        Each average covers the point and up to ``window_size - 1`` points
        before it, so the first points average over fewer values.
        """
        if window_size is None:
            window_size = self.config.windows.default_window if self.config else 5
        self._check_window(window_size)
        series = self._series.get(series_id)
        if series is None:
            return iter(())
        with series.lock:
            keys = list(series.keys)
            if window_size in self._tracked:
                cached = list(series.averages[window_size])
                return ((key[0], avg) for key, avg in zip(keys, cached))
            values = list(series.values)
        return _running_average(keys, values, window_size)

    def points(self, series_id: str) -> List[Tuple[Any, float]]:
        series = self._series.get(series_id)
        if series is None:
            return []
        with series.lock:
            return [(key[0], value) for key, value in zip(series.keys, series.values)]

    def series_ids(self) -> List[str]:
        return list(self._series)

    def reset(self) -> None:
        self._series.clear()

    def get_series_stats(self) -> Dict[str, int]:
        return {series_id: len(series) for series_id, series in self._series.items()}


def _running_average(keys: List[SortKey], values: List[float], window: int) -> Iterator[Tuple[Any, float]]:
    running = 0.0
    for i, (key, value) in enumerate(zip(keys, values)):
        running += value
        if i >= window:
            running -= values[i - window]
        yield key[0], running / min(i + 1, window)
