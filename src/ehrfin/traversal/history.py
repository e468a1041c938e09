"""Treatment histories over linked patient records.

A patient row may name the record it was merged from
(``linked_patient_id``). The history of a patient is every procedure of
that patient and of every record reachable through those links. Links come
from upstream data and can be corrupted into loops, so the walk keeps a
visited set and a node/depth ceiling instead of recursing blindly.
"""

import asyncio
import threading
import warnings
from collections import deque
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Deque, Dict, Iterator, List, Optional, Tuple

import structlog

from ..core.errors import CycleDetected, TraversalLimitExceeded
from ..core.models import EntityKind, Patient, Procedure, RowChange

logger = structlog.get_logger()

_USE_CONFIG = object()


@dataclass(frozen=True)
class IndexSnapshot:
    patients: Dict[Any, Patient]
    procedures: Dict[Any, Tuple[Procedure, ...]]


class PatientIndex:
    """Live patients and their child rows, kept in step with row changes.

    Child rows are held as tuples that are replaced, never mutated, so a
    shallow copy of the outer mapping is a consistent snapshot.
    """

    CHILD_KINDS = (EntityKind.TRANSACTIONS, EntityKind.PROCEDURES)

    def __init__(self):
        self._patients: Dict[Any, Patient] = {}
        self._children: Dict[EntityKind, Dict[Any, Tuple[Any, ...]]] = {
            kind: {} for kind in self.CHILD_KINDS
        }
        self._lock = threading.Lock()

    def apply(self, change: RowChange) -> None:
        kind = EntityKind(change.kind)
        with self._lock:
            if kind is EntityKind.PATIENTS:
                if change.new is None:
                    self._patients.pop(change.key, None)
                else:
                    self._patients[change.key] = change.new
                return
            children = self._children[kind]
            if change.old is not None:
                pid = change.old.patient_id
                remaining = tuple(r for r in children.get(pid, ()) if r.primary_key != change.key)
                if remaining:
                    children[pid] = remaining
                else:
                    children.pop(pid, None)
            if change.new is not None:
                pid = change.new.patient_id
                children[pid] = children.get(pid, ()) + (change.new,)

    def patient(self, patient_id: Any) -> Optional[Patient]:
        return self._patients.get(patient_id)

    def patients(self) -> List[Patient]:
        return list(self._patients.values())

    def children(self, kind: EntityKind, patient_id: Any) -> Tuple[Any, ...]:
        return self._children[EntityKind(kind)].get(patient_id, ())

    def rows(self, kind: EntityKind) -> List[Any]:
        kind = EntityKind(kind)
        if kind is EntityKind.PATIENTS:
            return self.patients()
        return [row for rows in list(self._children[kind].values()) for row in rows]

    def snapshot(self) -> IndexSnapshot:
        with self._lock:
            return IndexSnapshot(
                patients=dict(self._patients),
                procedures=dict(self._children[EntityKind.PROCEDURES]),
            )

    def reset(self) -> None:
        with self._lock:
            self._patients.clear()
            for children in self._children.values():
                children.clear()


@dataclass(frozen=True)
class TreatmentHistoryNode:
    patient_id: Any
    procedure_id: Any
    procedure_date: date
    procedure_code: Optional[str]
    description: Optional[str]
    cost: float
    doctor_id: Any
    depth: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "procedure_id": self.procedure_id,
            "procedure_date": self.procedure_date,
            "procedure_code": self.procedure_code,
            "description": self.description,
            "cost": self.cost,
            "doctor_id": self.doctor_id,
            "depth": self.depth,
        }


@dataclass(frozen=True)
class TreatmentHistory:
    """Ordered history of one root patient plus any cycles met on the way."""
    root_id: Any
    nodes: Tuple[TreatmentHistoryNode, ...] = ()
    cycles: Tuple[CycleDetected, ...] = field(default=())

    def __iter__(self) -> Iterator[TreatmentHistoryNode]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def __getitem__(self, index):
        return self.nodes[index]

    @property
    def total_cost(self) -> float:
        return sum(node.cost for node in self.nodes)


def _node_order(node: TreatmentHistoryNode) -> Tuple[Any, ...]:
    return (node.procedure_date, type(node.procedure_id).__name__, node.procedure_id)


class HierarchicalTraversalEngine:
    """Bounded, cycle-safe expansion of patient treatment histories."""

    def __init__(self, config, index: PatientIndex):
        self.config = config
        self.index = index
        self.max_nodes = config.traversal.max_nodes
        self.max_depth = config.traversal.max_depth
        self.checkpoint_every = max(1, config.traversal.checkpoint_every)

    async def history(self, patient_id: Any, timeout: Any = _USE_CONFIG) -> TreatmentHistory:
        """History of ``patient_id`` as of the moment of the call.

        Raises ``TraversalLimitExceeded`` instead of returning a truncated
        history, and ``asyncio.TimeoutError`` when ``timeout`` expires.
        """
        if timeout is _USE_CONFIG:
            timeout = self.config.traversal.timeout_seconds
        snapshot = self.index.snapshot()
        walk = self._traverse(patient_id, snapshot)
        if timeout:
            return await asyncio.wait_for(walk, timeout)
        return await walk

    async def _traverse(self, root_id: Any, snapshot: IndexSnapshot) -> TreatmentHistory:
        visited = set()
        nodes: List[TreatmentHistoryNode] = []
        cycles: List[CycleDetected] = []
        frontier: Deque[Tuple[Any, int]] = deque([(root_id, 0)])
        steps = 0

        while frontier:
            patient_id, depth = frontier.popleft()
            if depth > self.max_depth:
                raise TraversalLimitExceeded(root_id, "max_depth", self.max_depth)
            visited.add(patient_id)

            for procedure in snapshot.procedures.get(patient_id, ()):
                nodes.append(
                    TreatmentHistoryNode(
                        patient_id=procedure.patient_id,
                        procedure_id=procedure.procedure_id,
                        procedure_date=procedure.procedure_date,
                        procedure_code=procedure.procedure_code,
                        description=procedure.description,
                        cost=procedure.cost,
                        doctor_id=procedure.performing_doctor_id,
                        depth=depth,
                    )
                )
                if len(nodes) > self.max_nodes:
                    raise TraversalLimitExceeded(root_id, "max_nodes", self.max_nodes)
                steps += 1
                if steps % self.checkpoint_every == 0:
                    await asyncio.sleep(0)

            patient = snapshot.patients.get(patient_id)
            linked = getattr(patient, "linked_patient_id", None)
            if linked is None:
                continue
            if linked in visited:
                cycle = CycleDetected(root_id, linked, patient_id)
                cycles.append(cycle)
                logger.warning(f"{cycle}")
                warnings.warn(cycle, stacklevel=3)
                continue
            frontier.append((linked, depth + 1))
            steps += 1
            if steps % self.checkpoint_every == 0:
                await asyncio.sleep(0)

        nodes.sort(key=_node_order)
        return TreatmentHistory(root_id=root_id, nodes=tuple(nodes), cycles=tuple(cycles))
