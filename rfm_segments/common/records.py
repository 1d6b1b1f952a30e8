"""
Record types shared by the pipeline stages.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple

import pandas as pd


# Reason codes for rejected rows
MISSING_FIELD = 'MISSING_FIELD'
NEGATIVE_AMOUNT = 'NEGATIVE_AMOUNT'
INVALID_AMOUNT = 'INVALID_AMOUNT'
UNPARSEABLE_TIMESTAMP = 'UNPARSEABLE_TIMESTAMP'
FUTURE_TIMESTAMP = 'FUTURE_TIMESTAMP'
DUPLICATE_ORDER_ID = 'DUPLICATE_ORDER_ID'
DUPLICATE_CUSTOMER_ID = 'DUPLICATE_CUSTOMER_ID'
UNKNOWN_CUSTOMER = 'UNKNOWN_CUSTOMER'

ORDER_REQUIRED_FIELDS = ('customer_id', 'order_id', 'order_timestamp', 'order_total')
CUSTOMER_REQUIRED_FIELDS = ('customer_id',)

OUTPUT_COLUMNS = [
    'customer_id', 'segment_label', 'recency', 'frequency', 'monetary_value',
    'distance_to_centroid', 'run_id', 'run_timestamp'
]


@dataclass(frozen=True)
class OrderRecord:
    customer_id: str
    order_id: str
    order_timestamp: pd.Timestamp
    order_total: float
    line_items: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class CustomerRecord:
    customer_id: str
    attributes: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class RejectedRow:
    """A raw input row that failed validation, with its reason code."""

    raw_row: Mapping[str, Any]
    reason_code: str
    detail: str = ''


@dataclass(frozen=True)
class FeatureVector:
    customer_id: str
    recency: int
    frequency: int
    monetary_value: float
    average_order_value: float = 0.0


@dataclass(frozen=True)
class SegmentAssignment:
    customer_id: str
    segment_label: int
    distance_to_centroid: float
