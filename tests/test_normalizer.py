"""Test row normalization."""

import asyncio
from datetime import date, datetime

import pytest

from ehrfin.core.config import Config
from ehrfin.core.errors import ConfigurationError, ValidationError
from ehrfin.core.models import EntityKind, RawRecord
from ehrfin.normalization.normalizer import (
    AGE_POLICY,
    Normalizer,
    RejectReason,
    year_difference,
)
from ehrfin.storage.record_store import InMemoryRecordStore

from conftest import patient, procedure, run, transaction


def make_normalizer(config=None, on_change=None):
    store = InMemoryRecordStore()
    return Normalizer(config or Config(), store, on_change=on_change), store


class TestAgePolicy:
    """Age is derived from years only."""

    def test_year_difference_ignores_month_and_day(self):
        assert year_difference(date(1980, 12, 31), date(1981, 1, 1)) == 1
        assert year_difference(date(1980, 1, 1), date(2024, 12, 31)) == 44

    def test_missing_admission_gives_no_age(self):
        assert year_difference(date(1980, 1, 1), None) is None

    def test_default_policy_is_year_difference(self):
        assert AGE_POLICY is year_difference

    def test_unknown_policy_is_configuration_error(self):
        config = Config(normalization={"age_policy": "exact_days"})
        with pytest.raises(ConfigurationError):
            Normalizer(config, InMemoryRecordStore())


class TestNormalizer:
    """Test validation, deduplication and derived fields."""

    def test_accepts_and_derives_age(self):
        normalizer, store = make_normalizer()

        report = run(normalizer.ingest([patient(1, "P1", dob=date(1980, 6, 1), admission=date(2024, 2, 1))]))

        assert report.accepted_count == 1
        stored = run(store.get(EntityKind.PATIENTS, "P1"))
        assert stored.age == 44
        assert stored.ingest_seq == 1

    def test_supplied_age_is_ignored(self):
        normalizer, store = make_normalizer()

        run(normalizer.ingest([patient(1, "P1", dob=date(1990, 1, 1), admission=date(2020, 1, 1), age=99)]))

        assert run(store.get(EntityKind.PATIENTS, "P1")).age == 30

    def test_missing_required_field_is_rejected_not_dropped(self):
        normalizer, store = make_normalizer()

        report = run(normalizer.ingest([
            patient(1, "P1", dob=None),
            patient(2, "P2", gender=" "),
            patient(3, "P3"),
        ]))

        assert report.accepted_count == 1
        assert report.rejected_count == 2
        assert {r.key for r in report.rejected} == {"P1", "P2"}
        assert all(r.reason is RejectReason.MISSING_FIELD for r in report.rejected)
        assert run(store.get(EntityKind.PATIENTS, "P1")) is None

    def test_child_without_patient_reference_is_rejected(self):
        normalizer, _ = make_normalizer()

        report = run(normalizer.ingest([transaction(1, "T1", None, 10.0)]))

        assert report.rejected[0].reason is RejectReason.MISSING_FIELD
        assert "patient_id" in report.rejected[0].detail

    def test_unknown_patient_is_rejected(self):
        normalizer, store = make_normalizer()

        report = run(normalizer.ingest([transaction(1, "T1", "ghost", 10.0)]))

        assert report.rejected[0].reason is RejectReason.UNKNOWN_PATIENT
        assert run(store.get(EntityKind.TRANSACTIONS, "T1")) is None

    def test_patients_are_written_before_their_rows(self):
        normalizer, _ = make_normalizer()

        report = run(normalizer.ingest([
            transaction(2, "T1", "P1", 10.0),
            patient(5, "P1"),
        ]))

        assert report.accepted_count == 2
        assert report.rejected_count == 0

    @pytest.mark.parametrize("record, reason", [
        (procedure(2, "X1", "P1", -5.0), RejectReason.INVALID_VALUE),
        (procedure(2, "X1", "P1", "lots"), RejectReason.INVALID_VALUE),
        (transaction(2, "T1", "P1", 10.0, when="not-a-date"), RejectReason.INVALID_VALUE),
        (transaction(2, "T1", "P1", float("nan")), RejectReason.MISSING_FIELD),
    ])
    def test_invalid_values_are_rejected(self, record, reason):
        normalizer, _ = make_normalizer()

        report = run(normalizer.ingest([patient(1, "P1"), record]))

        assert report.accepted_count == 1
        assert report.rejected[0].reason is reason

    def test_dates_are_coerced(self):
        normalizer, store = make_normalizer()

        run(normalizer.ingest([
            patient(1, "P1"),
            transaction(2, "T1", "P1", "12.50", when="2024-03-04"),
            transaction(3, "T2", "P1", 1, when=datetime(2024, 3, 5, 14, 30)),
        ]))

        t1 = run(store.get(EntityKind.TRANSACTIONS, "T1"))
        t2 = run(store.get(EntityKind.TRANSACTIONS, "T2"))
        assert t1.transaction_date == date(2024, 3, 4)
        assert t1.amount == 12.5
        assert t2.transaction_date == date(2024, 3, 5)

    def test_later_dated_duplicate_wins(self):
        normalizer, store = make_normalizer()
        run(normalizer.ingest([patient(1, "P1")]))

        report = run(normalizer.ingest([
            transaction(2, "T1", "P1", 10.0, when=date(2024, 2, 1)),
            transaction(3, "T1", "P1", 20.0, when=date(2024, 1, 1)),
        ]))

        assert report.accepted_count == 1
        assert report.deduplicated_count == 1
        resolved = report.deduplicated[0]
        assert (resolved.kept_seq, resolved.discarded_seq) == (2, 3)
        assert run(store.get(EntityKind.TRANSACTIONS, "T1")).amount == 10.0

    def test_date_tie_goes_to_later_ingestion(self):
        normalizer, store = make_normalizer()
        run(normalizer.ingest([patient(1, "P1")]))

        run(normalizer.ingest([transaction(7, "T1", "P1", 10.0)]))
        report = run(normalizer.ingest([transaction(4, "T1", "P1", 99.0)]))
        assert report.accepted_count == 0
        assert report.deduplicated[0].kept_seq == 7

        report = run(normalizer.ingest([transaction(9, "T1", "P1", 30.0)]))
        assert report.accepted_count == 1
        assert report.accepted[0].old.amount == 10.0
        assert run(store.get(EntityKind.TRANSACTIONS, "T1")).amount == 30.0

    def test_replay_is_a_no_op(self):
        changes = []
        normalizer, _ = make_normalizer(on_change=changes.append)
        batch = [patient(1, "P1"), transaction(2, "T1", "P1", 10.0)]

        run(normalizer.ingest(batch))
        report = run(normalizer.ingest(batch))

        assert len(changes) == 2
        assert report.accepted_count == 0
        assert report.deduplicated_count == 2
        assert all(d.replay for d in report.deduplicated)

    def test_report_to_dict(self):
        normalizer, _ = make_normalizer()

        result = run(normalizer.ingest([patient(1, "P1", dob=None)])).to_dict()

        assert result["accepted"] == 0
        assert result["rejected"] == 1
        assert result["rejections"][0]["reason"] == "missing_field"

    def test_retract_refuses_patient_with_rows(self):
        normalizer, store = make_normalizer()
        run(normalizer.ingest([patient(1, "P1"), procedure(2, "X1", "P1", 10.0)]))

        with pytest.raises(ValidationError) as excinfo:
            run(normalizer.retract(EntityKind.PATIENTS, "P1"))
        assert excinfo.value.reason == RejectReason.HAS_DEPENDENTS.value

        change = run(normalizer.retract(EntityKind.PROCEDURES, "X1"))
        assert change.is_delete
        assert run(normalizer.retract(EntityKind.PATIENTS, "P1")).old.patient_id == "P1"
        assert run(store.get(EntityKind.PATIENTS, "P1")) is None

    def test_retract_missing_row(self):
        normalizer, _ = make_normalizer()
        assert run(normalizer.retract(EntityKind.TRANSACTIONS, "nope")) is None

    def test_async_listener_is_awaited(self):
        seen = []

        async def listener(change):
            seen.append(change.key)

        normalizer, _ = make_normalizer(on_change=listener)
        run(normalizer.ingest([patient(1, "P1")]))

        assert seen == ["P1"]

    def test_concurrent_batches_keep_last_write(self):
        normalizer, store = make_normalizer()
        run(normalizer.ingest([patient(1, "P1")]))

        async def scenario():
            batches = [
                [transaction(seq, "T1", "P1", float(seq), when=date(2024, 1, seq)) for seq in range(start, 20, 3)]
                for start in (2, 3, 4)
            ]
            await asyncio.gather(*(normalizer.ingest(batch) for batch in batches))

        run(scenario())

        final = run(store.get(EntityKind.TRANSACTIONS, "T1"))
        assert final.ingest_seq == 19
        assert final.amount == 19.0

    def test_raw_record_key(self):
        record = RawRecord("procedures", 1, {"procedure_id": "X9"})
        assert record.key == "X9"

    def test_refused_retract_closes_dependent_scan(self):
        store = ScanCountingStore()
        normalizer = Normalizer(Config(), store)

        async def scenario():
            await normalizer.ingest([patient(1, "P1"), transaction(2, "T1", "P1", 10.0)])
            with pytest.raises(ValidationError):
                await normalizer.retract(EntityKind.PATIENTS, "P1")
            return store.open_scans

        assert run(scenario()) == 0


class ScanCountingStore(InMemoryRecordStore):
    """In-memory store that counts scans still open."""

    def __init__(self):
        super().__init__()
        self.open_scans = 0

    async def scan(self, kind, predicate=None):
        self.open_scans += 1
        try:
            async for row in super().scan(kind, predicate):
                yield row
        finally:
            self.open_scans -= 1
