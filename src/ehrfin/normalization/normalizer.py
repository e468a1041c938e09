"""Row normalization for EHRFin: validation, deduplication and derived fields."""

import inspect
import math
from contextlib import aclosing
from dataclasses import dataclass, field, fields
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import structlog

from ..core.errors import ConfigurationError, ValidationError
from ..core.locks import KeyedLock
from ..core.models import (
    ROW_TYPES,
    EntityKind,
    Patient,
    RawRecord,
    RowChange,
    coerce_date,
    with_age,
)
from ..storage.record_store import RecordStore

logger = structlog.get_logger()


def year_difference(date_of_birth: date, admission_date: Optional[date]) -> Optional[int]:
    """Age as admission year minus birth year; month and day are ignored."""
    if date_of_birth is None or admission_date is None:
        return None
    return admission_date.year - date_of_birth.year


AGE_POLICIES: Dict[str, Callable[[date, Optional[date]], Optional[int]]] = {
    "year_difference": year_difference,
}
AGE_POLICY = year_difference

REQUIRED_FIELDS = {
    EntityKind.PATIENTS: ("patient_id", "date_of_birth", "gender"),
    EntityKind.TRANSACTIONS: ("transaction_id", "patient_id", "transaction_date", "amount"),
    EntityKind.PROCEDURES: ("procedure_id", "patient_id", "procedure_date", "cost"),
}

# Patients are written before the rows that reference them.
KIND_ORDER = {
    EntityKind.PATIENTS: 0,
    EntityKind.TRANSACTIONS: 1,
    EntityKind.PROCEDURES: 2,
}

DERIVED_FIELDS = frozenset({"age", "ingest_seq"})


class RejectReason(str, Enum):
    """Reason codes attached to rejected rows."""
    MISSING_FIELD = "missing_field"
    INVALID_VALUE = "invalid_value"
    UNKNOWN_PATIENT = "unknown_patient"
    HAS_DEPENDENTS = "has_dependents"


@dataclass(frozen=True)
class RowRejection:
    """A row that failed validation; it was not written."""
    kind: EntityKind
    key: Any
    seq: int
    reason: RejectReason
    detail: str


@dataclass(frozen=True)
class DuplicateKeyResolved:
    """Two rows shared a primary key and only ``kept_seq`` survived."""
    kind: EntityKind
    key: Any
    kept_seq: int
    discarded_seq: int
    replay: bool = False


@dataclass
class NormalizationReport:
    """Outcome of one ``ingest`` call."""
    accepted: List[RowChange] = field(default_factory=list)
    rejected: List[RowRejection] = field(default_factory=list)
    deduplicated: List[DuplicateKeyResolved] = field(default_factory=list)

    @property
    def accepted_count(self) -> int:
        """Rows written to the store."""
        return len(self.accepted)

    @property
    def rejected_count(self) -> int:
        """Rows refused by validation."""
        return len(self.rejected)

    @property
    def deduplicated_count(self) -> int:
        """Rows that lost to a stored or same-batch duplicate."""
        return len(self.deduplicated)

    def merge(self, other: "NormalizationReport") -> "NormalizationReport":
        """Combine two reports into a new one; neither input is modified."""
        return NormalizationReport(
            accepted=self.accepted + other.accepted,
            rejected=self.rejected + other.rejected,
            deduplicated=self.deduplicated + other.deduplicated,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready summary with per-row rejection and duplicate details."""
        return {
            "accepted": self.accepted_count,
            "rejected": self.rejected_count,
            "deduplicated": self.deduplicated_count,
            "rejections": [
                {
                    "kind": r.kind.value,
                    "key": r.key,
                    "seq": r.seq,
                    "reason": r.reason.value,
                    "detail": r.detail,
                }
                for r in self.rejected
            ],
            "duplicates": [
                {
                    "kind": d.kind.value,
                    "key": d.key,
                    "kept_seq": d.kept_seq,
                    "discarded_seq": d.discarded_seq,
                    "replay": d.replay,
                }
                for d in self.deduplicated
            ],
        }


ChangeListener = Callable[[RowChange], Union[None, Awaitable[None]]]


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def _rank(row: Any) -> Tuple[date, int]:
    return (row.event_date or date.min, row.ingest_seq)


class Normalizer:
    """Validates raw records and writes the winning rows to the record store.

    Last-write-wins per primary key: the later event date wins, then the
    higher ingestion sequence number. Rows of one patient are serialized
    across concurrent batches; every write is handed to ``on_change``
    while that patient's critical section is still held.
    """

    def __init__(
        self,
        config,
        store: RecordStore,
        on_change: Optional[ChangeListener] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.config = config
        self.store = store
        self.on_change = on_change
        self.locks = locks or KeyedLock()
        policy_name = config.normalization.age_policy
        if policy_name not in AGE_POLICIES:
            raise ConfigurationError(f"Unknown age policy: {policy_name}")
        self.age_policy = AGE_POLICIES[policy_name]

    async def ingest(self, batch: Iterable[RawRecord]) -> NormalizationReport:
        """Validate, deduplicate and store one batch of raw records."""
        report = NormalizationReport()
        candidates: Dict[Tuple[EntityKind, Any], Any] = {}

        for record in sorted(batch, key=lambda r: (KIND_ORDER[EntityKind(r.kind)], r.seq)):
            try:
                row = self.build_row(record)
            except ValidationError as e:
                rejection = RowRejection(
                    kind=EntityKind(record.kind),
                    key=record.key,
                    seq=record.seq,
                    reason=RejectReason(e.reason),
                    detail=str(e),
                )
                logger.debug(f"Rejected {rejection.kind.value} row {rejection.key}: {rejection.detail}")
                report.rejected.append(rejection)
                continue

            slot = (row.kind, row.primary_key)
            current = candidates.get(slot)
            if current is None:
                candidates[slot] = row
                continue
            winner, loser = (row, current) if _rank(row) > _rank(current) else (current, row)
            candidates[slot] = winner
            report.deduplicated.append(
                DuplicateKeyResolved(row.kind, row.primary_key, winner.ingest_seq, loser.ingest_seq)
            )

        ordered = sorted(candidates.values(), key=lambda r: (KIND_ORDER[r.kind], r.ingest_seq))
        for row in ordered:
            await self._write(row, report)

        logger.info(
            f"Normalized batch: {report.accepted_count} accepted, "
            f"{report.rejected_count} rejected, {report.deduplicated_count} deduplicated"
        )
        return report

    def build_row(self, record: RawRecord) -> Any:
        """Turn a raw record into a typed row, raising ``ValidationError``."""
        kind = EntityKind(record.kind)
        row_type = ROW_TYPES[kind]

        for name in REQUIRED_FIELDS[kind]:
            if _is_missing(record.get(name)):
                raise ValidationError(
                    RejectReason.MISSING_FIELD.value,
                    f"Missing required field '{name}'",
                    field=name,
                )

        allowed = {f.name for f in fields(row_type)} - DERIVED_FIELDS
        values = {
            name: (None if _is_missing(value) else value)
            for name, value in record.fields.items()
            if name in allowed
        }

        for name in row_type.date_fields:
            try:
                values[name] = coerce_date(values.get(name))
            except ValueError as e:
                raise ValidationError(RejectReason.INVALID_VALUE.value, str(e), field=name) from e

        if kind is EntityKind.TRANSACTIONS:
            values["amount"] = self._number(values["amount"], "amount")
        elif kind is EntityKind.PROCEDURES:
            values["cost"] = self._number(values["cost"], "cost")
            if values["cost"] < 0:
                raise ValidationError(
                    RejectReason.INVALID_VALUE.value,
                    f"Procedure cost must be non-negative, got {values['cost']}",
                    field="cost",
                )

        row = row_type(ingest_seq=record.seq, **values)
        if isinstance(row, Patient):
            row = with_age(row, self.age_policy(row.date_of_birth, row.admission_date))
        return row

    @staticmethod
    def _number(value: Any, name: str) -> float:
        if isinstance(value, bool):
            raise ValidationError(RejectReason.INVALID_VALUE.value, f"Not a number: {value!r}", field=name)
        try:
            number = float(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                RejectReason.INVALID_VALUE.value, f"Not a number: {value!r}", field=name
            ) from e
        if math.isnan(number) or math.isinf(number):
            raise ValidationError(RejectReason.INVALID_VALUE.value, f"Not a finite number: {value!r}", field=name)
        return number

    @staticmethod
    def lock_keys(row: Any, stored: Optional[Any] = None) -> FrozenSet[Tuple[str, Any]]:
        keys = {("patient", row.patient_ref)}
        if row.kind is not EntityKind.PATIENTS:
            keys.add((row.kind.value, row.primary_key))
        if stored is not None:
            keys.add(("patient", stored.patient_ref))
        return frozenset(keys)

    async def _write(self, row: Any, report: NormalizationReport) -> None:
        while True:
            peek = await self.store.get(row.kind, row.primary_key)
            held = self.lock_keys(row, peek)
            async with self.locks.hold(*held):
                stored = await self.store.get(row.kind, row.primary_key)
                if not self.lock_keys(row, stored) <= held:
                    # Reassigned to another patient while we waited.
                    continue
                await self._write_locked(row, stored, report)
                return

    async def _write_locked(self, row: Any, stored: Optional[Any], report: NormalizationReport) -> None:
        if stored is not None and _rank(row) <= _rank(stored):
            report.deduplicated.append(
                DuplicateKeyResolved(
                    row.kind,
                    row.primary_key,
                    kept_seq=stored.ingest_seq,
                    discarded_seq=row.ingest_seq,
                    replay=stored.ingest_seq == row.ingest_seq,
                )
            )
            return

        if row.kind is not EntityKind.PATIENTS and self.config.normalization.require_known_patient:
            parent = await self.store.get(EntityKind.PATIENTS, row.patient_id)
            if parent is None:
                report.rejected.append(
                    RowRejection(
                        kind=row.kind,
                        key=row.primary_key,
                        seq=row.ingest_seq,
                        reason=RejectReason.UNKNOWN_PATIENT,
                        detail=f"Patient {row.patient_id} does not exist",
                    )
                )
                return

        previous = await self.store.put(row)
        if previous is not None:
            report.deduplicated.append(
                DuplicateKeyResolved(row.kind, row.primary_key, row.ingest_seq, previous.ingest_seq)
            )
        change = RowChange(row.kind, row.primary_key, previous, row)
        report.accepted.append(change)
        await self._emit(change)

    async def retract(self, kind: EntityKind, key: Any) -> Optional[RowChange]:
        """Delete a stored row; patients with live dependents are refused."""
        kind = EntityKind(kind)
        stored = await self.store.get(kind, key)
        if stored is None:
            return None
        async with self.locks.hold(*self.lock_keys(stored)):
            if kind is EntityKind.PATIENTS:
                for child_kind in (EntityKind.TRANSACTIONS, EntityKind.PROCEDURES):
                    dependents = self.store.scan(child_kind, lambda r: r.patient_id == key)
                    async with aclosing(dependents):
                        async for _ in dependents:
                            raise ValidationError(
                                RejectReason.HAS_DEPENDENTS.value,
                                f"Patient {key} still has {child_kind.value}",
                                field="patient_id",
                            )
            previous = await self.store.delete(kind, key)
            if previous is None:
                return None
            change = RowChange(kind, key, previous, None)
            await self._emit(change)
            logger.info(f"Retracted {kind.value} row {key}")
            return change

    async def _emit(self, change: RowChange) -> None:
        if self.on_change is None:
            return
        result = self.on_change(change)
        if inspect.isawaitable(result):
            await result
