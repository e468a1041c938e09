"""Typed rows and ingestion records for EHRFin."""

from dataclasses import dataclass, field, fields, asdict, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple


class EntityKind(str, Enum):
    """Entity kinds, one logical table each."""
    PATIENTS = "patients"
    TRANSACTIONS = "transactions"
    PROCEDURES = "procedures"


def coerce_date(value: Any) -> Optional[date]:
    """Turn a date-like value into a ``date``; ``None`` stays ``None``."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        return date.fromisoformat(text[:10])
    raise ValueError(f"Not a date: {value!r}")


def to_jsonable(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, tuple):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    return value


class RowMixin:
    """Shared serialization for entity rows."""

    kind: ClassVar[EntityKind]
    key_field: ClassVar[str]
    date_fields: ClassVar[Tuple[str, ...]] = ()

    @property
    def primary_key(self) -> Any:
        return getattr(self, self.key_field)

    def to_record(self) -> Dict[str, Any]:
        return {k: to_jsonable(v) for k, v in asdict(self).items()}

    @classmethod
    def from_record(cls, record: Mapping[str, Any]):
        names = {f.name for f in fields(cls)}
        values = {k: v for k, v in record.items() if k in names}
        for name in cls.date_fields:
            if name in values:
                values[name] = coerce_date(values[name])
        return cls(**values)


@dataclass(frozen=True)
class Patient(RowMixin):
    """Canonical patient row."""
    kind: ClassVar[EntityKind] = EntityKind.PATIENTS
    key_field: ClassVar[str] = "patient_id"
    date_fields: ClassVar[Tuple[str, ...]] = ("date_of_birth", "admission_date", "discharge_date")

    patient_id: Any
    date_of_birth: date
    gender: str
    name: Optional[str] = None
    address: Optional[str] = None
    insurance_provider: Optional[str] = None
    admission_date: Optional[date] = None
    discharge_date: Optional[date] = None
    diagnosis_code: Optional[str] = None
    linked_patient_id: Any = None
    age: Optional[int] = None
    ingest_seq: int = 0

    @property
    def event_date(self) -> Optional[date]:
        return self.admission_date

    @property
    def patient_ref(self) -> Any:
        return self.patient_id


@dataclass(frozen=True)
class Transaction(RowMixin):
    """Canonical financial transaction row."""
    kind: ClassVar[EntityKind] = EntityKind.TRANSACTIONS
    key_field: ClassVar[str] = "transaction_id"
    date_fields: ClassVar[Tuple[str, ...]] = ("transaction_date",)

    transaction_id: Any
    patient_id: Any
    transaction_date: date
    amount: float
    transaction_type: Optional[str] = None
    ingest_seq: int = 0

    @property
    def event_date(self) -> date:
        return self.transaction_date

    @property
    def patient_ref(self) -> Any:
        return self.patient_id


@dataclass(frozen=True)
class Procedure(RowMixin):
    """Canonical procedure row."""
    kind: ClassVar[EntityKind] = EntityKind.PROCEDURES
    key_field: ClassVar[str] = "procedure_id"
    date_fields: ClassVar[Tuple[str, ...]] = ("procedure_date",)

    procedure_id: Any
    patient_id: Any
    procedure_date: date
    cost: float
    procedure_code: Optional[str] = None
    description: Optional[str] = None
    performing_doctor_id: Any = None
    ingest_seq: int = 0

    @property
    def event_date(self) -> date:
        return self.procedure_date

    @property
    def patient_ref(self) -> Any:
        return self.patient_id


ROW_TYPES = {
    EntityKind.PATIENTS: Patient,
    EntityKind.TRANSACTIONS: Transaction,
    EntityKind.PROCEDURES: Procedure,
}


@dataclass(frozen=True)
class ViewRow:
    """One row of a materialized view, keyed by the view's natural key."""
    view_name: str
    key: Tuple[Any, ...]
    values: Mapping[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return view_table(self.view_name)

    @property
    def primary_key(self) -> Tuple[Any, ...]:
        return self.key

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.values)

    def to_record(self) -> Dict[str, Any]:
        return {
            "view_name": self.view_name,
            "key": to_jsonable(tuple(self.key)),
            "values": to_jsonable(dict(self.values)),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ViewRow":
        return cls(
            view_name=record["view_name"],
            key=tuple(record["key"]),
            values=dict(record["values"]),
        )


def view_table(view_name: str) -> str:
    """Store table that holds the persisted rows of a view."""
    return f"view_{view_name}"


@dataclass(frozen=True)
class RawRecord:
    """A typed row as delivered by an upstream loader, not yet validated."""
    kind: EntityKind
    seq: int
    fields: Mapping[str, Any]

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    @property
    def key(self) -> Any:
        return self.fields.get(ROW_TYPES[EntityKind(self.kind)].key_field)


@dataclass(frozen=True)
class RowChange:
    """Before/after image of one stored row."""
    kind: EntityKind
    key: Any
    old: Optional[Any]
    new: Optional[Any]

    @property
    def is_insert(self) -> bool:
        return self.old is None and self.new is not None

    @property
    def is_delete(self) -> bool:
        return self.old is not None and self.new is None


def with_age(patient: Patient, age: Optional[int]) -> Patient:
    return replace(patient, age=age)
