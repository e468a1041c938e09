"""Main EHRFin pipeline implementation."""

import asyncio
import itertools
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import structlog

from .config import Config
from .locks import KeyedLock
from .models import EntityKind, RawRecord, RowChange
from ..aggregation.rollups import AggregationEngine, RollupDefinition
from ..aggregation.windows import WindowedStatsEngine
from ..export.view_exporter import ViewExporter
from ..normalization.normalizer import NormalizationReport, Normalizer
from ..storage.record_store import RecordStore, build_record_store
from ..traversal.history import HierarchicalTraversalEngine, PatientIndex, TreatmentHistory
from ..views.materializer import MaterializationResult, RefreshPolicy, ViewDefinition, ViewMaterializer

logger = structlog.get_logger()

TRANSACTION_SERIES = "transactions"

REVENUE_BY_PROVIDER = "revenue_by_provider"
AVG_AMOUNT_BY_GENDER_PROVIDER = "avg_amount_by_gender_provider"
PATIENT_SUMMARY = "patient_summary"
PROCEDURE_COST_BY_PATIENT = "procedure_cost_by_patient"


class EHRFinPipeline:
    """Wires the record store, normalizer and engines into one pipeline.

    Raw rows go through the normalizer; every stored change is then fanned
    out to the patient index, the rollups and the transaction series while
    the writer still holds the patient's critical section.
    """

    def __init__(self, config: Optional[Config] = None, store: Optional[RecordStore] = None):
        """Initialize the pipeline with configuration."""
        self.config = config or Config()
        self.store = store or build_record_store(self.config)
        self._sequence = itertools.count()
        self.last_refreshes: List[MaterializationResult] = []
        self._initialize_components()
        self._define_builtin_rollups()
        self._define_builtin_views()

    def _initialize_components(self):
        """Initialize all pipeline components."""
        self.locks = KeyedLock()
        self.index = PatientIndex()
        self.aggregation = AggregationEngine(self.config)
        self.windows = WindowedStatsEngine(self.config)
        self.traversal = HierarchicalTraversalEngine(self.config, self.index)
        self.materializer = ViewMaterializer(self.config, self.store)
        self.normalizer = Normalizer(self.config, self.store, on_change=self._on_change, locks=self.locks)
        self.exporter = ViewExporter(self.config, self.materializer)

        logger.info("Pipeline components initialized")

    def _define_builtin_rollups(self):
        self.define_rollup(REVENUE_BY_PROVIDER, ["insurance_provider"], "amount", ["sum"])
        self.define_rollup(AVG_AMOUNT_BY_GENDER_PROVIDER, ["gender", "insurance_provider"], "amount", ["avg", "count"])
        self.define_rollup(PATIENT_SUMMARY, ["patient_id"], "amount", ["sum", "count"])
        self.define_rollup(
            PROCEDURE_COST_BY_PATIENT, ["patient_id"], "cost", ["sum", "count"],
            source=EntityKind.PROCEDURES,
        )
        for rollup in self.config.aggregation.rollups:
            self.define_rollup(rollup.name, rollup.group_by, rollup.value, rollup.functions, rollup.source, rollup.order_by)

    def _define_builtin_views(self):
        self.define_view("patient_summary", self._patient_summary_rows, ["patient_id"])
        self.define_view(REVENUE_BY_PROVIDER, self._revenue_rows, ["insurance_provider"])
        self.define_view(AVG_AMOUNT_BY_GENDER_PROVIDER, self._gender_provider_rows, ["gender", "insurance_provider"])
        self.define_view("high_cost_patients", self._high_cost_rows, ["patient_id"])
        self.define_view("transaction_moving_average", self._moving_average_rows, ["position"])
        self.define_view("treatment_history", self._treatment_history_rows, ["root_patient_id", "procedure_id"])

    # Change fan-out

    def _on_change(self, change: RowChange) -> None:
        kind = EntityKind(change.kind)
        self.index.apply(change)
        self.aggregation.apply_change(change, self.index.patient)

        if kind is EntityKind.PATIENTS:
            # Rows stored before their patient arrived are grouped without
            # patient attributes until the patient insert re-keys them.
            if change.new is not None:
                children = {
                    child_kind: self.index.children(child_kind, change.key)
                    for child_kind in PatientIndex.CHILD_KINDS
                }
                self.aggregation.rekey_patient(change.old, change.new, children)
        elif kind is EntityKind.TRANSACTIONS:
            if change.new is None:
                self.windows.remove(TRANSACTION_SERIES, change.key)
            else:
                self.windows.append(
                    TRANSACTION_SERIES,
                    change.new.transaction_date,
                    change.new.amount,
                    point_id=change.key,
                )

    # Ingestion

    def reserve_sequence(self, count: int) -> int:
        """Reserve ``count`` ingestion sequence numbers; returns the first."""
        start = next(self._sequence)
        for _ in range(count - 1):
            next(self._sequence)
        return start

    async def ingest(self, batch: Iterable[RawRecord]) -> NormalizationReport:
        """Normalize one batch and let due views refresh."""
        report = await self.normalizer.ingest(batch)
        refreshes = await self.materializer.record_deltas(report.accepted_count)
        if refreshes:
            self.last_refreshes = refreshes
        return report

    async def ingest_many(self, batches: Sequence[Iterable[RawRecord]]) -> NormalizationReport:
        """Ingest several batches concurrently; same-patient rows still serialize."""
        semaphore = asyncio.Semaphore(max(1, self.config.pipeline.max_concurrent_batches))

        async def run(batch):
            async with semaphore:
                return await self.ingest(batch)

        reports = await asyncio.gather(*(run(batch) for batch in batches))
        merged = NormalizationReport()
        for report in reports:
            merged = merged.merge(report)
        return merged

    async def retract(self, kind: EntityKind, key: Any) -> Optional[RowChange]:
        change = await self.normalizer.retract(kind, key)
        if change is not None:
            refreshes = await self.materializer.record_deltas(1)
            if refreshes:
                self.last_refreshes = refreshes
        return change

    async def rebuild(self) -> Dict[str, int]:
        """Drop all engine state and replay every stored row."""
        logger.info("Rebuilding engine state from record store")
        self.index.reset()
        self.aggregation.reset()
        self.windows.reset()
        counts = {}
        max_seq = -1
        for kind in (EntityKind.PATIENTS, EntityKind.TRANSACTIONS, EntityKind.PROCEDURES):
            counts[kind.value] = 0
            async for row in self.store.scan(kind):
                self._on_change(RowChange(kind, row.primary_key, None, row))
                counts[kind.value] += 1
                max_seq = max(max_seq, row.ingest_seq)
        self._sequence = itertools.count(max_seq + 1)
        logger.info(f"Rebuild completed: {counts}")
        return counts

    # Administration

    def define_rollup(
        self,
        name: str,
        group_by,
        value,
        functions: Iterable[str] = ("sum", "count"),
        source: Any = EntityKind.TRANSACTIONS,
        order_by: Optional[str] = None,
    ) -> RollupDefinition:
        """Define a rollup and backfill it from the rows already indexed."""
        definition = self.aggregation.define_rollup(name, group_by, value, functions, source, order_by)
        for row in self.index.rows(definition.source):
            self.aggregation.apply_change(
                RowChange(definition.source, row.primary_key, None, row),
                self.index.patient,
            )
        return definition

    def define_view(
        self,
        name: str,
        source,
        key_fields: Sequence[str],
        refresh_policy: Optional[RefreshPolicy] = None,
    ) -> ViewDefinition:
        return self.materializer.define_view(name, source, key_fields, refresh_policy)

    # Queries

    def query(self, rollup_name: str) -> List[Tuple[Tuple[Any, ...], Dict[str, Any]]]:
        return self.aggregation.query(rollup_name)

    def high_cost_patients(self, factor: Optional[float] = None) -> List[Tuple[Any, float]]:
        """Patients whose total procedure cost exceeds ``factor`` x the mean procedure cost."""
        return [
            (key[0], total)
            for key, total in self.aggregation.outliers(PROCEDURE_COST_BY_PATIENT, factor)
        ]

    def moving_average(self, series_id: str = TRANSACTION_SERIES, window: Optional[int] = None) -> Iterator[Tuple[Any, float]]:
        return self.windows.moving_average(series_id, window)

    async def history(self, patient_id: Any, **kwargs) -> TreatmentHistory:
        return await self.traversal.history(patient_id, **kwargs)

    async def refresh(self, view_name: str) -> MaterializationResult:
        return await self.materializer.refresh(view_name)

    async def refresh_all(self) -> List[MaterializationResult]:
        return [await self.materializer.refresh(name) for name in self.materializer.view_names()]

    def read(self, view_name: str):
        return self.materializer.read(view_name)

    def export_views(self, output_dir: str = "output") -> Dict[str, Any]:
        return self.exporter.export_views(output_dir)

    # View sources

    def _patient_summary_rows(self) -> List[Dict[str, Any]]:
        return [
            {
                "patient_id": key[0],
                "transaction_count": values["count"],
                "total_transaction_amount": values["sum"],
            }
            for key, values in self.query(PATIENT_SUMMARY)
        ]

    def _revenue_rows(self) -> List[Dict[str, Any]]:
        return [
            {"insurance_provider": key[0], "total_revenue": values["sum"]}
            for key, values in self.query(REVENUE_BY_PROVIDER)
        ]

    def _gender_provider_rows(self) -> List[Dict[str, Any]]:
        return [
            {
                "gender": key[0],
                "insurance_provider": key[1],
                "avg_transaction_amount": values["avg"],
                "transaction_count": values["count"],
            }
            for key, values in self.query(AVG_AMOUNT_BY_GENDER_PROVIDER)
        ]

    def _high_cost_rows(self) -> List[Dict[str, Any]]:
        return [
            {"patient_id": patient_id, "total_procedure_cost": total}
            for patient_id, total in self.high_cost_patients()
        ]

    def _moving_average_rows(self) -> List[Dict[str, Any]]:
        points = self.windows.points(TRANSACTION_SERIES)
        averages = self.windows.moving_average(TRANSACTION_SERIES, self.config.windows.default_window)
        return [
            {
                "position": position,
                "transaction_date": ordering_key,
                "amount": amount,
                "moving_avg_amount": avg,
            }
            for position, ((ordering_key, amount), (_, avg)) in enumerate(zip(points, averages))
        ]

    async def _treatment_history_rows(self) -> List[Dict[str, Any]]:
        rows = []
        patient_ids = sorted(
            (p.patient_id for p in self.index.patients()),
            key=lambda pid: (type(pid).__name__, pid),
        )
        for patient_id in patient_ids:
            history = await self.traversal.history(patient_id, timeout=None)
            for node in history:
                row = node.as_dict()
                row["root_patient_id"] = patient_id
                rows.append(row)
        return rows

    # Status

    async def get_pipeline_status(self) -> Dict[str, Any]:
        """Get current pipeline status and statistics."""
        tables = {}
        for kind in EntityKind:
            tables[kind.value] = await self.store.count(kind)
        return {
            "store": type(self.store).__name__,
            "tables": tables,
            "rollups": self.aggregation.get_rollup_stats(),
            "series": self.windows.get_series_stats(),
            "views": self.materializer.get_view_stats(),
            "pipeline_config": self.config.pipeline.model_dump(),
        }

    def close(self):
        """Clean up resources."""
        self.store.close()
        logger.info("Pipeline resources cleaned up")
