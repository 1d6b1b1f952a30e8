import json
import os
import subprocess
import sys

import pandas as pd
import pytest

from rfm_segments.common import (
    ConcurrencyError, ConfigurationError, CsvRejectSink, InMemoryRejectSink,
    InMemoryResultSink, LocalTableSink
)
from rfm_segments.common.records import OUTPUT_COLUMNS, RejectedRow
from rfm_segments.common.storage import validate_run_id


def _table(run_id, customer_ids, label=0):
    return pd.DataFrame({
        "customer_id": customer_ids,
        "segment_label": [label] * len(customer_ids),
        "recency": [1] * len(customer_ids),
        "frequency": [2] * len(customer_ids),
        "monetary_value": [10.5] * len(customer_ids),
        "distance_to_centroid": [0.0] * len(customer_ids),
        "run_id": [run_id] * len(customer_ids),
        "run_timestamp": [pd.Timestamp("2024-07-01T00:00:00Z")] * len(customer_ids),
    })[OUTPUT_COLUMNS]


@pytest.fixture
def local_sink(tmp_path):
    return LocalTableSink(tmp_path / "segments")


def test_overwrite_replaces_partition(local_sink):
    local_sink.overwrite_partition("run-1", _table("run-1", ["A", "B", "C"]))
    local_sink.overwrite_partition("run-1", _table("run-1", ["A"], label=1))

    df = local_sink.read_partition("run-1")
    assert df["customer_id"].tolist() == ["A"]
    assert df["segment_label"].tolist() == [1]
    assert local_sink.list_runs() == ["run-1"]


def test_partitions_are_independent(local_sink):
    local_sink.overwrite_partition("run-1", _table("run-1", ["A"]))
    local_sink.overwrite_partition("run-2", _table("run-2", ["B", "C"]))

    assert local_sink.list_runs() == ["run-1", "run-2"]
    assert local_sink.read_partition("run-1")["customer_id"].tolist() == ["A"]
    assert not any(p.name.startswith((".staging", ".backup")) for p in local_sink.root.iterdir())


def test_csv_round_trip_keeps_types(local_sink):
    table = _table("run-1", ["007", "010"])
    local_sink.overwrite_partition("run-1", table)

    df = local_sink.read_partition("run-1")
    assert df["customer_id"].tolist() == ["007", "010"]
    assert df["run_id"].tolist() == ["run-1", "run-1"]
    assert df["run_timestamp"].iloc[0] == pd.Timestamp("2024-07-01T00:00:00Z")
    assert list(df.columns) == OUTPUT_COLUMNS


def test_parquet_partition(tmp_path):
    sink = LocalTableSink(tmp_path, file_format="parquet")
    sink.overwrite_partition("run-1", _table("run-1", ["A", "B"]))

    assert (tmp_path / "run_id=run-1" / "segments.parquet").exists()
    df = sink.read_partition("run-1")
    assert df["customer_id"].tolist() == ["A", "B"]


def test_missing_partition_reads_empty(local_sink):
    df = local_sink.read_partition("never-ran")
    assert df.empty
    assert list(df.columns) == OUTPUT_COLUMNS


def test_local_claim_is_exclusive_and_released(local_sink):
    with local_sink.claim("run-1"):
        assert (local_sink.root / ".lock-run-1").exists()
        with pytest.raises(ConcurrencyError) as excinfo:
            with local_sink.claim("run-1"):
                pass
        assert excinfo.value.code == "RUN_ALREADY_IN_PROGRESS"
        with local_sink.claim("run-2"):
            pass

    assert not (local_sink.root / ".lock-run-1").exists()
    with local_sink.claim("run-1"):
        pass


def test_claim_released_on_error(local_sink):
    with pytest.raises(RuntimeError):
        with local_sink.claim("run-1"):
            raise RuntimeError("boom")
    with local_sink.claim("run-1"):
        pass


def test_in_memory_sink(sink):
    sink.overwrite_partition("run-1", _table("run-1", ["A", "B"]))
    sink.overwrite_partition("run-1", _table("run-1", ["C"]))

    assert sink.read_partition("run-1")["customer_id"].tolist() == ["C"]
    assert sink.read_partition("other").empty

    with sink.claim("run-1"):
        with pytest.raises(ConcurrencyError):
            with sink.claim("run-1"):
                pass
    with sink.claim("run-1"):
        pass


@pytest.mark.parametrize("run_id", ["", "../escape", "a/b", "run 1", None])
def test_invalid_run_id(run_id):
    with pytest.raises(ConfigurationError) as excinfo:
        validate_run_id(run_id)
    assert excinfo.value.code == "INVALID_RUN_ID"


def test_invalid_storage_format(tmp_path):
    with pytest.raises(ConfigurationError):
        LocalTableSink(tmp_path, file_format="xlsx")


def test_csv_reject_sink(tmp_path):
    rejects = [
        RejectedRow({"order_id": "1", "order_total": -5}, "NEGATIVE_AMOUNT", "order_total < 0"),
        RejectedRow({"order_id": "2"}, "MISSING_FIELD", "customer_id"),
    ]
    reject_sink = CsvRejectSink(tmp_path)
    reject_sink.write_rejects("run-1", rejects)
    reject_sink.write_rejects("run-1", rejects[:1])

    df = pd.read_csv(reject_sink.path_for("run-1"))
    assert df["reason_code"].tolist() == ["NEGATIVE_AMOUNT"]
    assert json.loads(df["raw_row"].iloc[0]) == {"order_id": "1", "order_total": -5}


def test_in_memory_reject_sink():
    reject_sink = InMemoryRejectSink()
    reject_sink.write_rejects("run-1", iter([RejectedRow({}, "MISSING_FIELD", "x")]))
    assert [r.reason_code for r in reject_sink.rejects["run-1"]] == ["MISSING_FIELD"]


def _leftovers(sink):
    return [p.name for p in sink.root.iterdir() if p.name.startswith((".staging", ".backup"))]


def test_failed_write_keeps_previous_partition(local_sink, monkeypatch):
    local_sink.overwrite_partition("run-1", _table("run-1", ["A", "B"]))
    before = local_sink.read_partition("run-1")

    def broken_to_csv(self, *args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(pd.DataFrame, "to_csv", broken_to_csv)
    with pytest.raises(OSError, match="disk full"):
        local_sink.overwrite_partition("run-1", _table("run-1", ["C"]))
    monkeypatch.undo()

    pd.testing.assert_frame_equal(local_sink.read_partition("run-1"), before)
    assert _leftovers(local_sink) == []


def test_failed_swap_restores_previous_partition(local_sink, monkeypatch):
    local_sink.overwrite_partition("run-1", _table("run-1", ["A", "B"]))
    before = local_sink.read_partition("run-1")

    real_replace = os.replace
    calls = []

    def flaky_replace(src, dst):
        calls.append((src, dst))
        # second rename moves the staging directory into place
        if len(calls) == 2:
            raise OSError("rename failed")
        return real_replace(src, dst)

    monkeypatch.setattr(os, "replace", flaky_replace)
    with pytest.raises(OSError, match="rename failed"):
        local_sink.overwrite_partition("run-1", _table("run-1", ["C"]))
    monkeypatch.undo()

    assert len(calls) == 3
    pd.testing.assert_frame_equal(local_sink.read_partition("run-1"), before)
    assert _leftovers(local_sink) == []


def _dead_pid():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def test_stale_lock_is_taken_over(local_sink):
    lock_path = local_sink.root / ".lock-run-1"
    lock_path.write_text(str(_dead_pid()))

    with local_sink.claim("run-1"):
        assert lock_path.read_text() == str(os.getpid())
    assert not lock_path.exists()


def test_lock_of_live_process_is_respected(local_sink):
    lock_path = local_sink.root / ".lock-run-1"
    lock_path.write_text(str(os.getpid()))

    with pytest.raises(ConcurrencyError):
        with local_sink.claim("run-1"):
            pass
    assert lock_path.exists()


def test_unreadable_lock_is_respected(local_sink):
    (local_sink.root / ".lock-run-1").write_text("")
    with pytest.raises(ConcurrencyError):
        with local_sink.claim("run-1"):
            pass


def test_missing_lock_file_does_not_mask_error(local_sink):
    with pytest.raises(RuntimeError, match="clustering failed"):
        with local_sink.claim("run-1"):
            (local_sink.root / ".lock-run-1").unlink()
            raise RuntimeError("clustering failed")
