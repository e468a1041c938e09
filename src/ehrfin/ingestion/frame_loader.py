"""Turn tabular extracts into raw records for the normalizer."""

from typing import Any, Dict, Iterator, List

import pandas as pd
import structlog

from ..core.models import EntityKind, RawRecord

logger = structlog.get_logger()

# Column names used by the staging extracts, mapped to row field names.
COLUMN_ALIASES = {
    EntityKind.PATIENTS: {"dob": "date_of_birth"},
    EntityKind.TRANSACTIONS: {},
    EntityKind.PROCEDURES: {
        "procedure_cost": "cost",
        "procedure_description": "description",
    },
}


def _clean(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.date()
    if pd.api.types.is_scalar(value) and pd.isna(value):
        return None
    if hasattr(value, "item"):
        # numpy scalar
        return value.item()
    return value


def _is_id_column(name: str) -> bool:
    return name == "id" or name.endswith("_id")


def _clean_id(value: Any) -> Any:
    """Undo the float upcast pandas applies to integer columns with blanks."""
    value = _clean(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def records_from_frame(frame: pd.DataFrame, kind: EntityKind, start_seq: int = 0) -> List[RawRecord]:
    """One ``RawRecord`` per row, numbered from ``start_seq`` in frame order."""
    kind = EntityKind(kind)
    aliases = COLUMN_ALIASES[kind]
    frame = frame.rename(columns={c: aliases.get(str(c).strip().lower(), str(c).strip().lower()) for c in frame.columns})
    records = []
    for offset, row in enumerate(frame.to_dict(orient="records")):
        fields: Dict[str, Any] = {
            name: _clean_id(value) if _is_id_column(name) else _clean(value)
            for name, value in row.items()
        }
        records.append(RawRecord(kind=kind, seq=start_seq + offset, fields=fields))
    logger.debug(f"Built {len(records)} {kind.value} records starting at seq {start_seq}")
    return records


def read_csv_frame(path: str) -> pd.DataFrame:
    """Read a staging extract; values stay as pandas parsed them."""
    logger.info(f"Reading extract: {path}")
    return pd.read_csv(path)


def iter_chunks(records: List[RawRecord], chunk_size: int) -> Iterator[List[RawRecord]]:
    for i in range(0, len(records), chunk_size):
        yield records[i:i + chunk_size]
