"""Test treatment history traversal."""

import asyncio
from datetime import date

import pytest

from ehrfin.core.config import Config
from ehrfin.core.errors import CycleDetected, TraversalLimitExceeded
from ehrfin.core.models import EntityKind, Patient, Procedure, RowChange
from ehrfin.traversal.history import HierarchicalTraversalEngine, PatientIndex

from conftest import run


def add_patient(index, patient_id, linked=None):
    row = Patient(patient_id, date(1980, 1, 1), "F", linked_patient_id=linked)
    index.apply(RowChange(EntityKind.PATIENTS, patient_id, index.patient(patient_id), row))
    return row


def add_procedure(index, procedure_id, patient_id, when, cost=100.0):
    row = Procedure(procedure_id, patient_id, when, cost, "99213", "Office visit", 7)
    index.apply(RowChange(EntityKind.PROCEDURES, procedure_id, None, row))
    return row


def make_engine(index, **traversal):
    config = Config(traversal=dict({"timeout_seconds": None}, **traversal))
    return HierarchicalTraversalEngine(config, index)


class TestPatientIndex:

    def test_children_follow_updates_and_deletes(self):
        index = PatientIndex()
        add_patient(index, 1)
        add_patient(index, 2)
        first = add_procedure(index, 10, 1, date(2024, 1, 1))

        moved = Procedure(10, 2, date(2024, 1, 1), 50.0)
        index.apply(RowChange(EntityKind.PROCEDURES, 10, first, moved))

        assert index.children(EntityKind.PROCEDURES, 1) == ()
        assert index.children(EntityKind.PROCEDURES, 2) == (moved,)

        index.apply(RowChange(EntityKind.PROCEDURES, 10, moved, None))
        assert index.rows(EntityKind.PROCEDURES) == []


class TestHierarchicalTraversalEngine:
    """Test bounded, cycle-safe history expansion."""

    def test_single_patient_history_is_date_ordered(self):
        index = PatientIndex()
        add_patient(index, 1)
        add_procedure(index, 12, 1, date(2024, 3, 1))
        add_procedure(index, 11, 1, date(2024, 1, 1))
        add_procedure(index, 10, 1, date(2024, 3, 1))

        history = run(make_engine(index).history(1))

        assert [node.procedure_id for node in history] == [11, 10, 12]
        assert history.total_cost == 300.0
        assert history.cycles == ()

    def test_linked_records_are_included(self):
        index = PatientIndex()
        add_patient(index, 3)
        add_patient(index, 2, linked=3)
        add_patient(index, 1, linked=2)
        add_procedure(index, 30, 3, date(2020, 1, 1))
        add_procedure(index, 20, 2, date(2022, 1, 1))
        add_procedure(index, 10, 1, date(2024, 1, 1))

        history = run(make_engine(index).history(1))

        assert [(n.patient_id, n.depth) for n in history] == [(3, 2), (2, 1), (1, 0)]

    def test_unknown_patient_has_empty_history(self):
        history = run(make_engine(PatientIndex()).history("nobody"))
        assert len(history) == 0

    def test_cycle_is_reported_and_walk_terminates(self):
        index = PatientIndex()
        add_patient(index, 1, linked=2)
        add_patient(index, 2, linked=1)
        add_procedure(index, 10, 1, date(2024, 1, 1))
        add_procedure(index, 20, 2, date(2024, 2, 1))

        with pytest.warns(CycleDetected):
            history = run(make_engine(index).history(1))

        assert [node.procedure_id for node in history] == [10, 20]
        [cycle] = history.cycles
        assert (cycle.root_id, cycle.patient_id, cycle.via) == (1, 1, 2)

    def test_self_link_is_a_cycle(self):
        index = PatientIndex()
        add_patient(index, 1, linked=1)
        add_procedure(index, 10, 1, date(2024, 1, 1))

        with pytest.warns(CycleDetected):
            history = run(make_engine(index).history(1))

        assert len(history) == 1

    def test_node_ceiling(self):
        index = PatientIndex()
        add_patient(index, 1)
        for i in range(6):
            add_procedure(index, i, 1, date(2024, 1, i + 1))

        with pytest.raises(TraversalLimitExceeded) as excinfo:
            run(make_engine(index, max_nodes=5).history(1))

        assert excinfo.value.limit_name == "max_nodes"
        assert len(run(make_engine(index, max_nodes=6).history(1))) == 6

    def test_depth_ceiling(self):
        index = PatientIndex()
        add_patient(index, 0)
        for i in range(1, 5):
            add_patient(index, i, linked=i - 1)

        with pytest.raises(TraversalLimitExceeded) as excinfo:
            run(make_engine(index, max_depth=2).history(4))

        assert excinfo.value.limit_name == "max_depth"

    def test_history_reflects_state_at_call_time(self):
        index = PatientIndex()
        add_patient(index, 1)
        add_procedure(index, 10, 1, date(2024, 1, 1))
        engine = make_engine(index, checkpoint_every=1)

        async def scenario():
            task = asyncio.ensure_future(engine.history(1))
            await asyncio.sleep(0)
            add_procedure(index, 11, 1, date(2024, 1, 2))
            return await task

        history = run(scenario())

        assert [node.procedure_id for node in history] == [10]
        assert len(run(engine.history(1))) == 2

    def test_timeout(self):
        index = PatientIndex()
        add_patient(index, 1)
        for i in range(50):
            add_procedure(index, i, 1, date(2024, 1, 1))
        engine = make_engine(index, checkpoint_every=1)

        async def scenario():
            return await engine.history(1, timeout=1e-9)

        with pytest.raises(asyncio.TimeoutError):
            run(scenario())
