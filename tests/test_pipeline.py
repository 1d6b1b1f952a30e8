import subprocess
import sys

import pandas as pd
import pytest

from rfm_segments import SegmentationPipeline
from rfm_segments.common import (
    ConcurrencyError, ConfigurationError, ConvergenceWarning, InMemoryRecordSource,
    FileRecordSource, InMemoryRejectSink, InMemoryResultSink, IngestionError, LocalTableSink,
    PersistenceError, PipelineSettings
)
from rfm_segments.common.records import OUTPUT_COLUMNS


RUN_TS = pd.Timestamp("2024-07-01T00:00:00Z")


def _pipeline(source, sink, settings, **kwargs):
    return SegmentationPipeline(source, sink, settings, clock=lambda: RUN_TS, **kwargs)


class FlakySink(InMemoryResultSink):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def overwrite_partition(self, run_id, table):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise OSError("disk unavailable")
        super().overwrite_partition(run_id, table)


class BrokenSource(InMemoryRecordSource):
    def __init__(self):
        super().__init__([], [])
        self.calls = 0

    def read_orders(self):
        self.calls += 1
        raise ConnectionError("warehouse unreachable")


def test_abc_run(abc_orders, abc_customers, sink, settings, as_of):
    source = InMemoryRecordSource(abc_orders, abc_customers)
    summary = _pipeline(source, sink, settings).run("run-1", as_of, k=2, random_seed=1)

    assert summary.rows_ingested == 6
    assert summary.rows_rejected == 0
    assert summary.customers_segmented == 3
    assert sorted(summary.cluster_sizes) == [1, 2]
    assert sum(summary.cluster_sizes) == summary.customers_segmented
    assert summary.converged
    assert summary.as_of == "2024-06-30T00:00:00+00:00"
    assert summary.run_timestamp == RUN_TS.isoformat()

    table = sink.read_partition("run-1").set_index("customer_id")
    assert list(sink.read_partition("run-1").columns) == OUTPUT_COLUMNS
    assert table.loc["A", "segment_label"] == table.loc["B", "segment_label"]
    assert table.loc["C", "segment_label"] != table.loc["A", "segment_label"]
    assert table.loc["C", "recency"] == settings.zero_order_recency_days
    assert table.loc["A", "monetary_value"] == 80.0
    assert table.loc["B", "recency"] == 40


def test_negative_amount_excluded(abc_orders, abc_customers, sink, settings, as_of):
    orders = abc_orders + [
        {"customer_id": "A", "order_id": "A3", "order_timestamp": "2024-06-28T00:00:00Z", "order_total": -10.0}
    ]
    reject_sink = InMemoryRejectSink()
    summary = _pipeline(
        InMemoryRecordSource(orders, abc_customers), sink, settings, reject_sink=reject_sink
    ).run("run-1", as_of, k=2, random_seed=1)

    assert summary.rows_rejected == 1
    assert summary.reject_reasons == {"NEGATIVE_AMOUNT": 1}
    assert [r.reason_code for r in reject_sink.rejects["run-1"]] == ["NEGATIVE_AMOUNT"]

    table = sink.read_partition("run-1").set_index("customer_id")
    assert table.loc["A", "monetary_value"] == 80.0
    assert table.loc["A", "frequency"] == 2
    assert table.loc["A", "recency"] == 5


def test_labels_dense_on_synthetic_data(synthetic_source, sink, settings, as_of):
    summary = _pipeline(synthetic_source, sink, settings).run("run-1", as_of, k=4, random_seed=3)

    table = sink.read_partition("run-1")
    assert summary.customers_segmented == 40
    assert set(table["segment_label"]) == {0, 1, 2, 3}
    assert table["customer_id"].is_unique
    assert sum(summary.cluster_sizes) == 40


def test_same_inputs_same_output(synthetic_source, settings, as_of):
    first, second = InMemoryResultSink(), InMemoryResultSink()
    _pipeline(synthetic_source, first, settings).run("run-1", as_of, k=3, random_seed=9)
    _pipeline(synthetic_source, second, settings).run("run-1", as_of, k=3, random_seed=9)

    pd.testing.assert_frame_equal(first.read_partition("run-1"), second.read_partition("run-1"))


def test_rerun_replaces_partition(synthetic_source, sink, settings, as_of):
    pipeline = _pipeline(synthetic_source, sink, settings)
    pipeline.run("run-1", as_of, k=5, random_seed=1)
    pipeline.run("run-1", as_of, k=2, random_seed=1)

    table = sink.read_partition("run-1")
    assert len(table) == 40
    assert set(table["segment_label"]) == {0, 1}


def test_k_larger_than_customers(abc_orders, abc_customers, sink, settings, as_of):
    pipeline = _pipeline(InMemoryRecordSource(abc_orders, abc_customers), sink, settings)

    with pytest.raises(ConfigurationError) as excinfo:
        pipeline.run("run-1", as_of, k=5, random_seed=1)

    assert excinfo.value.code == "INVALID_K"
    assert excinfo.value.stage == "clustering"
    assert sink.list_runs() == []

    # claim was released
    pipeline.run("run-1", as_of, k=2, random_seed=1)
    assert sink.list_runs() == ["run-1"]


@pytest.mark.parametrize("kwargs, code", [
    ({"k": 0}, "INVALID_K"),
    ({"k": 2.5}, "INVALID_K"),
    ({"random_seed": -1}, "INVALID_SEED"),
    ({"random_seed": 2 ** 32}, "INVALID_SEED"),
    ({"max_iterations": 0}, "INVALID_MAX_ITERATIONS"),
])
def test_invalid_parameters(abc_orders, abc_customers, sink, settings, as_of, kwargs, code):
    pipeline = _pipeline(InMemoryRecordSource(abc_orders, abc_customers), sink, settings)
    with pytest.raises(ConfigurationError) as excinfo:
        pipeline.run("run-1", as_of, **{"k": 2, "random_seed": 1, **kwargs})
    assert excinfo.value.code == code
    assert sink.list_runs() == []


def test_invalid_as_of_and_run_id(abc_orders, abc_customers, sink, settings):
    pipeline = _pipeline(InMemoryRecordSource(abc_orders, abc_customers), sink, settings)

    with pytest.raises(ConfigurationError) as excinfo:
        pipeline.run("run-1", "not-a-date", k=2)
    assert excinfo.value.code == "INVALID_AS_OF"

    with pytest.raises(ConfigurationError) as excinfo:
        pipeline.run("../run-1", "2024-06-30", k=2)
    assert excinfo.value.code == "INVALID_RUN_ID"


def test_concurrent_run_rejected(abc_orders, abc_customers, sink, settings, as_of):
    pipeline = _pipeline(InMemoryRecordSource(abc_orders, abc_customers), sink, settings)

    with sink.claim("run-1"):
        with pytest.raises(ConcurrencyError) as excinfo:
            pipeline.run("run-1", as_of, k=2, random_seed=1)
        assert excinfo.value.code == "RUN_ALREADY_IN_PROGRESS"
        pipeline.run("run-2", as_of, k=2, random_seed=1)

    assert sink.list_runs() == ["run-2"]


def test_sink_retried_with_backoff(abc_orders, abc_customers, as_of):
    settings = PipelineSettings(retry_attempts=3, retry_backoff=0.5)
    sink = FlakySink(failures=2)
    delays = []
    pipeline = _pipeline(
        InMemoryRecordSource(abc_orders, abc_customers), sink, settings, sleep=delays.append
    )

    pipeline.run("run-1", as_of, k=2, random_seed=1)

    assert sink.attempts == 3
    assert delays == [0.5, 1.0]
    assert len(sink.read_partition("run-1")) == 3


def test_sink_failure_keeps_previous_partition(abc_orders, abc_customers, settings, as_of):
    sink = FlakySink(failures=0)
    pipeline = _pipeline(InMemoryRecordSource(abc_orders, abc_customers), sink, settings)
    pipeline.run("run-1", as_of, k=2, random_seed=1)
    before = sink.read_partition("run-1")

    sink.failures = sink.attempts + 10
    with pytest.raises(PersistenceError) as excinfo:
        pipeline.run("run-1", as_of, k=1, random_seed=1)

    assert excinfo.value.code == "SINK_UNAVAILABLE"
    assert excinfo.value.stage == "persistence"
    pd.testing.assert_frame_equal(sink.read_partition("run-1"), before)


def test_source_failure(sink, settings, as_of):
    source = BrokenSource()
    with pytest.raises(IngestionError) as excinfo:
        _pipeline(source, sink, settings).run("run-1", as_of, k=1, random_seed=1)

    assert excinfo.value.code == "SOURCE_UNAVAILABLE"
    assert excinfo.value.stage == "ingestion"
    assert source.calls == settings.retry_attempts
    assert sink.list_runs() == []


def test_non_convergence_is_flagged(synthetic_source, sink, settings, as_of):
    with pytest.warns(ConvergenceWarning):
        summary = _pipeline(synthetic_source, sink, settings).run(
            "run-1", as_of, k=4, random_seed=1, max_iterations=1
        )

    assert summary.converged is False
    assert summary.n_iter == 1
    assert len(sink.read_partition("run-1")) == 40


def test_defaults_come_from_settings(synthetic_source, sink, as_of):
    settings = PipelineSettings(n_clusters=3, random_seed=5, retry_backoff=0.0)
    summary = _pipeline(synthetic_source, sink, settings).run("run-1", as_of)
    assert len(summary.cluster_sizes) == 3


def test_rows_ingested_counts_only_rows_read(tmp_path, abc_orders, sink, settings, as_of):
    orders_path = tmp_path / "orders.csv"
    pd.DataFrame(abc_orders).to_csv(orders_path, index=False)

    summary = _pipeline(FileRecordSource(orders_path), sink, settings).run(
        "run-1", as_of, k=2, random_seed=1
    )

    assert summary.rows_ingested == 3
    assert summary.customers_segmented == 2


def test_lock_left_by_dead_process_does_not_block_run(tmp_path, abc_orders, abc_customers, settings, as_of):
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    sink = LocalTableSink(tmp_path)
    (tmp_path / ".lock-run-1").write_text(str(proc.pid))

    summary = _pipeline(InMemoryRecordSource(abc_orders, abc_customers), sink, settings).run(
        "run-1", as_of, k=2, random_seed=1
    )

    assert summary.customers_segmented == 3
    assert sink.list_runs() == ["run-1"]
    assert not (tmp_path / ".lock-run-1").exists()
