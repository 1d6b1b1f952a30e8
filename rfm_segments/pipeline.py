"""
Segmentation Pipeline
=====================

Runs ingestion, validation, RFM feature engineering, clustering and result
persistence for one run_id, holding an exclusive claim on the run_id for
the whole run.

Usage:
    from rfm_segments import SegmentationPipeline, InMemoryRecordSource, InMemoryResultSink

    pipeline = SegmentationPipeline(source, sink)
    summary = pipeline.run("2024-06-01", "2024-06-01T00:00:00Z", k=4, random_seed=1)
    print(summary.cluster_sizes)
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any, Callable, Iterator

import numpy as np
import pandas as pd
from loguru import logger

from .common.config import PipelineSettings
from .common.data_loader import RecordSource
from .common.errors import (
    SegmentationError, ConfigurationError, IngestionError, PersistenceError
)
from .common.storage import ResultSink, RejectSink, validate_run_id
from .common.validation import OrderValidator, to_utc_timestamp, summarize_rejects
from .customer_segmentation import RFMFeatureEngineer, KMeansSegmenter, ResultAssembler


@dataclass
class RunSummary:
    run_id: str
    rows_ingested: int
    rows_rejected: int
    customers_segmented: int
    converged: bool
    cluster_sizes: List[int]
    n_iter: int = 0
    inertia: float = 0.0
    as_of: str = ''
    run_timestamp: str = ''
    reject_reasons: Dict[str, int] = field(default_factory=dict)
    assembly_warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _utc_now() -> pd.Timestamp:
    return pd.Timestamp.now(tz='UTC')


class SegmentationPipeline:
    """
    Single entry point for a segmentation run.

    Configuration and concurrency errors abort before anything is written;
    row-level validation problems are collected and never abort the run.
    The result partition for a run_id is replaced as a whole.

    Example:
        >>> pipeline = SegmentationPipeline(source, sink, PipelineSettings())
        >>> summary = pipeline.run("run-1", "2024-06-01", k=3, random_seed=1)
        >>> sum(summary.cluster_sizes) == summary.customers_segmented
        True
    """

    def __init__(
        self,
        source: RecordSource,
        sink: ResultSink,
        settings: Optional[PipelineSettings] = None,
        reject_sink: Optional[RejectSink] = None,
        clock: Callable[[], pd.Timestamp] = _utc_now,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize SegmentationPipeline.

        Args:
            source: Record source for raw order and customer rows
            sink: Result sink receiving the output table
            settings: Pipeline settings (defaults if None)
            reject_sink: Optional audit sink for rejected rows
            clock: Returns the run timestamp
            sleep: Used between boundary retries
        """
        self.source = source
        self.sink = sink
        self.settings = settings or PipelineSettings()
        self.reject_sink = reject_sink
        self.clock = clock
        self.sleep = sleep

        self.validator = OrderValidator()
        self.engineer = RFMFeatureEngineer(self.settings.zero_order_recency_days)
        self.assembler = ResultAssembler()

        logger.info("SegmentationPipeline initialized")

    def run(
        self,
        run_id: str,
        as_of_timestamp: Any,
        k: Optional[int] = None,
        random_seed: Optional[int] = None,
        max_iterations: Optional[int] = None
    ) -> RunSummary:
        """
        Execute one complete run.

        Args:
            run_id: Run identifier; results replace any earlier output for it
            as_of_timestamp: Reference time for recency and future-order checks
            k: Number of segments (settings.n_clusters if None)
            random_seed: Seed for centroid initialization (settings.random_seed if None)
            max_iterations: Lloyd iteration cap (settings.max_iterations if None)

        Returns:
            RunSummary

        Raises:
            ConfigurationError: Invalid parameters, including INVALID_K
            ConcurrencyError: RUN_ALREADY_IN_PROGRESS
            IngestionError: Source unreadable after retries
            PersistenceError: Sink write failed after retries
        """
        validate_run_id(run_id)
        as_of = self._parse_as_of(as_of_timestamp)
        k = self.settings.n_clusters if k is None else k
        random_seed = self.settings.random_seed if random_seed is None else random_seed
        max_iterations = self.settings.max_iterations if max_iterations is None else max_iterations
        self._check_parameters(k, random_seed, max_iterations)

        run_timestamp = self.clock()
        logger.info(
            f"Starting segmentation run {run_id} (as_of={as_of.isoformat()}, k={k}, "
            f"seed={random_seed}, max_iterations={max_iterations})"
        )

        with self.sink.claim(run_id):
            with self._stage('ingestion'):
                order_rows = self._read('orders', self.source.read_orders)
                customer_rows = self._read('customers', self.source.read_customers)

            with self._stage('validation'):
                customers = self.validator.validate_customers(customer_rows)
                orders = self.validator.validate_orders(
                    order_rows, as_of, customers.customer_ids
                )
                rejected = customers.rejected + orders.rejected

            with self._stage('features'):
                features = self.engineer.calculate_features(
                    orders.orders, customers.customers, as_of
                )

            with self._stage('clustering'):
                segmenter = KMeansSegmenter(
                    n_clusters=k,
                    init=self.settings.init,
                    n_init=self.settings.n_init,
                    max_iter=max_iterations,
                    random_state=random_seed
                )
                segmenter.fit(features, self.settings.feature_columns)
                assignments = segmenter.get_assignments()

            with self._stage('assembly'):
                assembled = self.assembler.assemble(
                    customers.customers, features, assignments, run_id, run_timestamp
                )

            with self._stage('persistence'):
                if self.reject_sink is not None:
                    self._write(
                        'rejected rows',
                        lambda: self.reject_sink.write_rejects(run_id, rejected)
                    )
                self._write(
                    f"partition run_id={run_id}",
                    lambda: self.sink.overwrite_partition(run_id, assembled.table)
                )

        rows_ingested = len(order_rows)
        if not self.source.customers_derived:
            rows_ingested += len(customer_rows)

        model = segmenter.model
        summary = RunSummary(
            run_id=run_id,
            rows_ingested=rows_ingested,
            rows_rejected=len(rejected),
            customers_segmented=len(assembled.table),
            converged=model.converged,
            cluster_sizes=segmenter.get_cluster_sizes(),
            n_iter=model.n_iter,
            inertia=model.inertia,
            as_of=as_of.isoformat(),
            run_timestamp=pd.Timestamp(run_timestamp).isoformat(),
            reject_reasons=summarize_rejects(rejected),
            assembly_warnings=assembled.warnings
        )

        logger.info(
            f"Run {run_id} complete: {summary.customers_segmented} customers in "
            f"{k} segments {summary.cluster_sizes}, converged={summary.converged}"
        )
        return summary

    @staticmethod
    def _parse_as_of(value: Any) -> pd.Timestamp:
        try:
            return to_utc_timestamp(value)
        except ValueError as exc:
            raise ConfigurationError('INVALID_AS_OF', str(exc)) from exc

    @staticmethod
    def _check_parameters(k: Any, random_seed: Any, max_iterations: Any):
        def is_int(value):
            return isinstance(value, (int, np.integer)) and not isinstance(value, bool)

        if not is_int(k) or k < 1:
            raise ConfigurationError('INVALID_K', f"k must be a positive integer, got {k!r}")
        if not is_int(random_seed) or not 0 <= random_seed < 2 ** 32:
            raise ConfigurationError(
                'INVALID_SEED', f"random_seed must be an integer in [0, 2**32), got {random_seed!r}"
            )
        if not is_int(max_iterations) or max_iterations < 1:
            raise ConfigurationError(
                'INVALID_MAX_ITERATIONS',
                f"max_iterations must be a positive integer, got {max_iterations!r}"
            )

    @contextmanager
    def _stage(self, name: str) -> Iterator[None]:
        """Tag errors escaping a stage with the stage name."""
        logger.debug(f"Stage {name} started")
        try:
            yield
        except SegmentationError as exc:
            exc.stage = name
            logger.error(f"Stage {name} failed: {exc}")
            raise
        except Exception as exc:
            logger.error(f"Stage {name} failed: {exc}")
            raise SegmentationError('STAGE_FAILED', str(exc), stage=name) from exc
        logger.debug(f"Stage {name} finished")

    def _retry(self, operation: Callable[[], Any], description: str) -> Any:
        attempts = self.settings.retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except SegmentationError:
                raise
            except Exception as exc:
                if attempt == attempts:
                    raise
                delay = self.settings.retry_backoff * 2 ** (attempt - 1)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{attempts}): {exc}. "
                    f"Retrying in {delay:.2f}s"
                )
                self.sleep(delay)

    def _read(self, what: str, reader: Callable[[], Any]) -> List[Any]:
        try:
            rows = self._retry(lambda: list(reader()), f"Reading {what}")
        except SegmentationError:
            raise
        except Exception as exc:
            raise IngestionError('SOURCE_UNAVAILABLE', f"Could not read {what}: {exc}") from exc
        logger.info(f"Ingested {len(rows)} {what} rows")
        return rows

    def _write(self, what: str, writer: Callable[[], None]):
        try:
            self._retry(writer, f"Writing {what}")
        except SegmentationError:
            raise
        except Exception as exc:
            raise PersistenceError('SINK_UNAVAILABLE', f"Could not write {what}: {exc}") from exc
