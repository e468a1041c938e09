"""Test DataFrame ingestion helpers."""

from datetime import date

import numpy as np
import pandas as pd

from ehrfin.core.models import EntityKind
from ehrfin.core.pipeline import EHRFinPipeline
from ehrfin.ingestion.frame_loader import iter_chunks, read_csv_frame, records_from_frame
from ehrfin.storage.record_store import SQLRecordStore

from conftest import patient, run


class TestFrameLoader:

    def test_aliases_and_cleaning(self):
        frame = pd.DataFrame({
            "Procedure_ID": [1, 2],
            "patient_id": [5, 5],
            "procedure_date": pd.to_datetime(["2024-01-02", None]),
            "procedure_cost": [np.float64(12.5), np.nan],
            "procedure_description": ["Visit", "ECG"],
        })

        first, second = records_from_frame(frame, EntityKind.PROCEDURES, start_seq=100)

        assert (first.seq, second.seq) == (100, 101)
        assert first.key == 1
        assert first.get("procedure_date") == date(2024, 1, 2)
        assert first.get("cost") == 12.5
        assert type(first.get("cost")) is float
        assert first.get("description") == "Visit"
        assert second.get("procedure_date") is None
        assert second.get("cost") is None

    def test_patient_dob_alias(self, temp_dir):
        path = temp_dir / "patients.csv"
        path.write_text("patient_id,dob,gender\n1,1980-01-01,F\n")

        [record] = records_from_frame(read_csv_frame(str(path)), "patients")

        assert record.kind is EntityKind.PATIENTS
        assert record.get("date_of_birth") == "1980-01-01"

    def test_iter_chunks(self):
        frame = pd.DataFrame({"transaction_id": range(5)})
        records = records_from_frame(frame, EntityKind.TRANSACTIONS)

        assert [len(chunk) for chunk in iter_chunks(records, 2)] == [2, 2, 1]

    def test_blank_id_cell_keeps_integer_ids(self, temp_dir):
        path = temp_dir / "transactions.csv"
        path.write_text(
            "transaction_id,patient_id,transaction_date,amount\n"
            "1,1,2024-01-05,100.0\n"
            "2,,2024-01-06,50.0\n"
        )

        first, second = records_from_frame(read_csv_frame(str(path)), EntityKind.TRANSACTIONS)

        assert first.get("patient_id") == 1
        assert type(first.get("patient_id")) is int
        assert second.get("patient_id") is None

    def test_blank_id_cell_against_sql_store(self, sample_config, temp_dir):
        path = temp_dir / "transactions.csv"
        path.write_text(
            "transaction_id,patient_id,transaction_date,amount\n"
            "1,1,2024-01-05,100.0\n"
            "2,,2024-01-06,50.0\n"
        )
        pipeline = EHRFinPipeline(sample_config, store=SQLRecordStore("sqlite://"))

        async def scenario():
            await pipeline.ingest([patient(0, 1)])
            return await pipeline.ingest(records_from_frame(read_csv_frame(str(path)), EntityKind.TRANSACTIONS, 1))

        try:
            report = run(scenario())
        finally:
            pipeline.close()

        assert report.accepted_count == 1
        assert [r.reason.value for r in report.rejected] == ["missing_field"]
