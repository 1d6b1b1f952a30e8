import pandas as pd

from rfm_segments.common.records import CustomerRecord, SegmentAssignment, OUTPUT_COLUMNS
from rfm_segments.customer_segmentation import ResultAssembler


RUN_TS = pd.Timestamp("2024-07-01T08:00:00Z")


def _features():
    return pd.DataFrame({
        "customer_id": ["B", "A"],
        "recency": [40, 5],
        "frequency": [1, 2],
        "monetary_value": [200.0, 80.0],
        "average_order_value": [200.0, 40.0],
    })


def test_output_table_columns_and_order():
    customers = [CustomerRecord("B"), CustomerRecord("A")]
    assignments = [SegmentAssignment("B", 1, 0.0), SegmentAssignment("A", 0, 0.25)]

    result = ResultAssembler().assemble(customers, _features(), assignments, "run-1", RUN_TS)
    table = result.table

    assert list(table.columns) == OUTPUT_COLUMNS
    assert table["customer_id"].tolist() == ["A", "B"]
    assert table["segment_label"].tolist() == [0, 1]
    assert table["monetary_value"].tolist() == [80.0, 200.0]
    assert (table["run_id"] == "run-1").all()
    assert (table["run_timestamp"] == RUN_TS).all()
    assert result.warnings == []


def test_unassigned_customer_is_reported():
    customers = [CustomerRecord("A"), CustomerRecord("B")]
    assignments = [SegmentAssignment("A", 0, 0.0)]

    result = ResultAssembler().assemble(customers, _features(), assignments, "run-1", RUN_TS)

    assert result.table["customer_id"].tolist() == ["A"]
    assert result.warnings == ["Customer B has no segment assignment"]


def test_assignment_for_unknown_customer_is_reported():
    assignments = [SegmentAssignment("A", 0, 0.0), SegmentAssignment("Z", 1, 0.0)]

    result = ResultAssembler().assemble(["A"], _features(), assignments, "run-1", RUN_TS)

    assert result.table["customer_id"].tolist() == ["A"]
    assert result.warnings == ["Assignment for unknown customer Z"]
