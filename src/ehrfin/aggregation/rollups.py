"""Incrementally maintained group-by rollups."""

import math
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import structlog

from ..core.errors import ConfigurationError, InconsistentRollupState, UnknownRollup
from ..core.models import EntityKind, Patient, RowChange

logger = structlog.get_logger()

FUNCTIONS = ("sum", "count", "avg", "var", "stddev")

RollupKey = Tuple[Any, ...]
KeyExtractor = Callable[[Any, Optional[Patient]], Any]
ValueExtractor = Callable[[Any], Optional[float]]
PatientLookup = Callable[[Any], Optional[Patient]]


@dataclass(frozen=True)
class AggregateState:
    """Algebraic summary of the live member rows of one rollup key."""
    sum: float = 0.0
    count: int = 0
    sum_sq: float = 0.0

    def apply(self, old: Optional[float], new: Optional[float]) -> "AggregateState":
        old_v = 0.0 if old is None else old
        new_v = 0.0 if new is None else new
        return AggregateState(
            sum=self.sum + new_v - old_v,
            count=self.count + (new is not None) - (old is not None),
            sum_sq=self.sum_sq + new_v * new_v - old_v * old_v,
        )

    @property
    def avg(self) -> Optional[float]:
        return self.sum / self.count if self.count else None

    @property
    def variance(self) -> Optional[float]:
        if not self.count:
            return None
        mean = self.sum / self.count
        # Guard against tiny negative values from float cancellation.
        return max(self.sum_sq / self.count - mean * mean, 0.0)

    @property
    def stddev(self) -> Optional[float]:
        variance = self.variance
        return None if variance is None else math.sqrt(variance)

    def metric(self, function: str) -> Optional[float]:
        if function == "sum":
            return self.sum
        if function == "count":
            return self.count
        if function == "avg":
            return self.avg
        if function == "var":
            return self.variance
        if function == "stddev":
            return self.stddev
        raise ConfigurationError(f"Unknown aggregate function: {function}")

    def as_dict(self, functions: Sequence[str]) -> Dict[str, Optional[float]]:
        return {fn: self.metric(fn) for fn in functions}


def field_key(names: Sequence[str]) -> KeyExtractor:
    """Group-by extractor over field names.

    A name is looked up on the row first, then on the row's patient;
    ``patient.<field>`` forces the patient lookup.
    """
    names = tuple(names)

    def extract(row: Any, patient: Optional[Patient]) -> RollupKey:
        key = []
        for name in names:
            if name.startswith("patient."):
                attr = name[len("patient."):]
                key.append(getattr(patient, attr, None))
            elif hasattr(row, name):
                key.append(getattr(row, name))
            else:
                key.append(getattr(patient, name, None))
        return tuple(key)

    return extract


def field_value(name: str) -> ValueExtractor:
    def extract(row: Any) -> Optional[float]:
        return getattr(row, name, None)
    return extract


def _sortable(key: RollupKey) -> Tuple[Any, ...]:
    return tuple((True, "", 0) if v is None else (False, type(v).__name__, v) for v in key)


@dataclass(frozen=True)
class RollupDefinition:
    """What a rollup groups, what it sums and which functions it reports."""
    name: str
    source: EntityKind
    group_by: KeyExtractor
    value: ValueExtractor
    functions: Tuple[str, ...]
    order_by: str

    def key_for(self, row: Any, patient: Optional[Patient]) -> RollupKey:
        if self.source is EntityKind.PATIENTS:
            patient = row
        key = self.group_by(row, patient)
        return key if isinstance(key, tuple) else (key,)


@dataclass
class Rollup:
    definition: RollupDefinition
    states: Dict[RollupKey, AggregateState] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)


class AggregationEngine:
    """Named rollups updated by deltas instead of recomputation.

    Writers to one rollup serialize on that rollup's lock. Readers copy the
    key -> state mapping without locking; states are immutable, so a copy is
    a consistent snapshot.
    """

    def __init__(self, config=None):
        self.config = config
        self._rollups: Dict[str, Rollup] = {}

    def define_rollup(
        self,
        name: str,
        group_by: Union[KeyExtractor, Sequence[str]],
        value: Union[ValueExtractor, str],
        functions: Iterable[str] = ("sum", "count"),
        source: Union[EntityKind, str] = EntityKind.TRANSACTIONS,
        order_by: Optional[str] = None,
    ) -> RollupDefinition:
        """Register a rollup; names and functions are checked here, not per row."""
        if name in self._rollups:
            raise ConfigurationError(f"Rollup already defined: {name}")
        functions = tuple(functions)
        if not functions:
            raise ConfigurationError(f"Rollup {name} requests no aggregate functions")
        unknown = [fn for fn in functions if fn not in FUNCTIONS]
        if unknown:
            raise ConfigurationError(f"Rollup {name} requests unknown functions: {unknown}")
        order_by = order_by or functions[0]
        if order_by not in functions:
            raise ConfigurationError(f"Rollup {name} orders by {order_by}, which it does not compute")
        try:
            source = EntityKind(source)
        except ValueError as e:
            raise ConfigurationError(f"Rollup {name} has unknown source: {source}") from e

        definition = RollupDefinition(
            name=name,
            source=source,
            group_by=group_by if callable(group_by) else field_key(group_by),
            value=value if callable(value) else field_value(value),
            functions=functions,
            order_by=order_by,
        )
        self._rollups[name] = Rollup(definition)
        logger.info(f"Defined rollup {name} over {source.value}: {', '.join(functions)}")
        return definition

    def _rollup(self, name: str) -> Rollup:
        try:
            return self._rollups[name]
        except KeyError:
            raise UnknownRollup(name) from None

    def definition(self, name: str) -> RollupDefinition:
        """Definition registered under ``name``."""
        return self._rollup(name).definition

    def rollup_names(self) -> List[str]:
        """Names of all defined rollups, in definition order."""
        return list(self._rollups)

    def apply_delta(
        self,
        rollup_name: str,
        key: RollupKey,
        old_value: Optional[float],
        new_value: Optional[float],
    ) -> Optional[AggregateState]:
        """Move one member value of ``key``: insert, delete or update."""
        rollup = self._rollup(rollup_name)
        if old_value is None and new_value is None:
            return rollup.states.get(key)
        with rollup.lock:
            state = rollup.states.get(key, AggregateState()).apply(old_value, new_value)
            if state.count < 0:
                raise InconsistentRollupState(
                    f"Rollup {rollup_name} key {key!r} would drop below zero members"
                )
            if state.count == 0:
                rollup.states.pop(key, None)
                return None
            rollup.states[key] = state
            return state

    def apply_change(self, change: RowChange, patient_of: PatientLookup) -> None:
        """Route a stored-row change to every rollup fed by its kind."""
        for rollup in self._rollups.values():
            definition = rollup.definition
            if definition.source is not EntityKind(change.kind):
                continue
            old_key = old_value = new_key = new_value = None
            if change.old is not None:
                old_key = definition.key_for(change.old, patient_of(change.old.patient_ref))
                old_value = definition.value(change.old)
            if change.new is not None:
                new_key = definition.key_for(change.new, patient_of(change.new.patient_ref))
                new_value = definition.value(change.new)
            self._move(definition.name, old_key, old_value, new_key, new_value)

    def rekey_patient(
        self,
        old_patient: Optional[Patient],
        new_patient: Optional[Patient],
        children: Dict[EntityKind, Iterable[Any]],
    ) -> None:
        """Move a patient's child rows between groups after the patient changed."""
        for rollup in self._rollups.values():
            definition = rollup.definition
            rows = children.get(definition.source)
            if not rows:
                continue
            for row in rows:
                old_key = definition.key_for(row, old_patient)
                new_key = definition.key_for(row, new_patient)
                if old_key != new_key:
                    value = definition.value(row)
                    self._move(definition.name, old_key, value, new_key, value)

    def _move(self, name, old_key, old_value, new_key, new_value) -> None:
        if old_key == new_key:
            self.apply_delta(name, new_key, old_value, new_value)
            return
        if old_key is not None:
            self.apply_delta(name, old_key, old_value, None)
        if new_key is not None:
            self.apply_delta(name, new_key, None, new_value)

    def state(self, rollup_name: str, key: RollupKey) -> Optional[AggregateState]:
        """Current state of one group, or None when the group is empty."""
        return self._rollup(rollup_name).states.get(key)

    def snapshot(self, rollup_name: str) -> Dict[RollupKey, AggregateState]:
        """Copy of every live group of a rollup.

        States are immutable, so the copy stays consistent while writers
        keep applying deltas.
        """
        return dict(self._rollup(rollup_name).states)

    def query(self, rollup_name: str) -> List[Tuple[RollupKey, Dict[str, Optional[float]]]]:
        """Rows of a rollup, primary metric descending, then key ascending."""
        rollup = self._rollup(rollup_name)
        definition = rollup.definition
        states = dict(rollup.states)
        ordered = sorted(
            states.items(),
            key=lambda item: (-(item[1].metric(definition.order_by) or 0.0), _sortable(item[0])),
        )
        return [(key, state.as_dict(definition.functions)) for key, state in ordered]

    def global_mean(self, rollup_name: str) -> Optional[float]:
        """Mean of the per-row values currently live in a rollup."""
        states = self.snapshot(rollup_name)
        total_count = sum(s.count for s in states.values())
        if not total_count:
            return None
        return math.fsum(s.sum for s in states.values()) / total_count

    def outliers(self, rollup_name: str, factor: Optional[float] = None) -> List[Tuple[RollupKey, float]]:
        """Keys whose summed value exceeds ``factor`` times the per-row mean."""
        if factor is None:
            factor = self.config.aggregation.outlier_factor if self.config else 2.0
        states = self.snapshot(rollup_name)
        total_count = sum(s.count for s in states.values())
        if not total_count:
            return []
        threshold = factor * math.fsum(s.sum for s in states.values()) / total_count
        hits = [(key, s.sum) for key, s in states.items() if s.sum > threshold]
        hits.sort(key=lambda item: (-item[1], _sortable(item[0])))
        logger.debug(f"Outlier query on {rollup_name}: threshold {threshold:.2f}, {len(hits)} keys")
        return hits

    def reset(self, rollup_name: Optional[str] = None) -> None:
        """Drop the groups of one rollup, or of all rollups. Definitions are kept."""
        names = [rollup_name] if rollup_name else list(self._rollups)
        for name in names:
            rollup = self._rollup(name)
            with rollup.lock:
                rollup.states.clear()

    def get_rollup_stats(self) -> Dict[str, Any]:
        """Number of live groups per rollup."""
        return {name: len(rollup.states) for name, rollup in self._rollups.items()}
