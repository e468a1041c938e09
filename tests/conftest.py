"""Test fixtures and configuration for pytest."""

import asyncio
import tempfile
from datetime import date
from pathlib import Path
from typing import Any, Optional

import pytest

from ehrfin.core.config import Config
from ehrfin.core.models import EntityKind, RawRecord


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_config():
    """Sample configuration for testing."""
    config = Config()
    config.traversal.timeout_seconds = None
    config.views.refresh_timeout_seconds = None
    return config


def run(coro):
    """Drive one coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


def patient(seq: int, patient_id: Any, dob: Optional[date] = date(1980, 1, 1), gender: Optional[str] = "F",
            provider: Optional[str] = "Acme", admission: Optional[date] = date(2024, 1, 1), **extra) -> RawRecord:
    fields = {
        "patient_id": patient_id,
        "name": f"Patient {patient_id}",
        "date_of_birth": dob,
        "gender": gender,
        "insurance_provider": provider,
        "admission_date": admission,
    }
    fields.update(extra)
    return RawRecord(EntityKind.PATIENTS, seq, fields)


def transaction(seq: int, transaction_id: Any, patient_id: Any, amount: Any,
                when: Any = date(2024, 1, 10), kind: str = "payment") -> RawRecord:
    return RawRecord(EntityKind.TRANSACTIONS, seq, {
        "transaction_id": transaction_id,
        "patient_id": patient_id,
        "transaction_date": when,
        "amount": amount,
        "transaction_type": kind,
    })


def procedure(seq: int, procedure_id: Any, patient_id: Any, cost: Any,
              when: Any = date(2024, 1, 10), code: str = "99213", doctor: Any = 7) -> RawRecord:
    return RawRecord(EntityKind.PROCEDURES, seq, {
        "procedure_id": procedure_id,
        "patient_id": patient_id,
        "procedure_date": when,
        "procedure_code": code,
        "description": f"Procedure {code}",
        "cost": cost,
        "performing_doctor_id": doctor,
    })
