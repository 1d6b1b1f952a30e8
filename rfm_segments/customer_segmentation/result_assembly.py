"""
Result Assembly Module
======================

Joins segment assignments back onto the run's customers and features,
producing the output table written to the result sink.

Usage:
    from rfm_segments.customer_segmentation import ResultAssembler

    assembler = ResultAssembler()
    assembled = assembler.assemble(customers, features, assignments, run_id, run_ts)
    sink.overwrite_partition(run_id, assembled.table)
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Union

import pandas as pd
from loguru import logger

from ..common.records import CustomerRecord, SegmentAssignment, OUTPUT_COLUMNS


@dataclass
class AssemblyResult:
    table: pd.DataFrame
    warnings: List[str] = field(default_factory=list)


class ResultAssembler:
    """
    Builds the per-customer output rows for a run.

    Customers without an assignment (which the feature stage should never
    produce) are reported as warnings rather than dropped silently.
    """

    def __init__(self):
        """Initialize ResultAssembler."""
        logger.info("ResultAssembler initialized")

    def assemble(
        self,
        customers: Iterable[Union[CustomerRecord, str]],
        features: pd.DataFrame,
        assignments: List[SegmentAssignment],
        run_id: str,
        run_timestamp: pd.Timestamp
    ) -> AssemblyResult:
        """
        Inner-join customers, assignments and features on customer_id.

        Args:
            customers: Customer records of the run
            features: Feature table from RFMFeatureEngineer
            assignments: Segment assignments from KMeansSegmenter
            run_id: Run identifier stamped on every row
            run_timestamp: Run timestamp stamped on every row

        Returns:
            AssemblyResult with the output table and any warnings
        """
        customer_ids = pd.DataFrame({
            'customer_id': sorted({
                c.customer_id if isinstance(c, CustomerRecord) else str(c)
                for c in customers
            })
        })
        assigned = pd.DataFrame(
            [(a.customer_id, a.segment_label, a.distance_to_centroid) for a in assignments],
            columns=['customer_id', 'segment_label', 'distance_to_centroid']
        )

        merged = customer_ids.merge(assigned, on='customer_id', how='outer', indicator=True)
        warnings = []

        unassigned = merged.loc[merged['_merge'] == 'left_only', 'customer_id'].tolist()
        for customer_id in unassigned:
            warnings.append(f"Customer {customer_id} has no segment assignment")
        orphaned = merged.loc[merged['_merge'] == 'right_only', 'customer_id'].tolist()
        for customer_id in orphaned:
            warnings.append(f"Assignment for unknown customer {customer_id}")

        table = (
            merged[merged['_merge'] == 'both']
            .drop(columns='_merge')
            .merge(
                features[['customer_id', 'recency', 'frequency', 'monetary_value']],
                on='customer_id',
                how='inner'
            )
        )
        if len(table) < (merged['_merge'] == 'both').sum():
            warnings.append("Some assigned customers have no feature row")

        table['segment_label'] = table['segment_label'].astype('int64')
        table['run_id'] = run_id
        table['run_timestamp'] = pd.Timestamp(run_timestamp)
        table = table[OUTPUT_COLUMNS].sort_values('customer_id').reset_index(drop=True)

        for message in warnings:
            logger.warning(f"Assembly warning: {message}")
        logger.info(f"Assembled {len(table)} result rows for run {run_id}")

        return AssemblyResult(table=table, warnings=warnings)
